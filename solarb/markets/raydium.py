"""Raydium AMM v4 (constant product) pools."""

from __future__ import annotations

import contextlib
import dataclasses
import json
import logging
import math
import struct
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from websockets.exceptions import ConnectionClosed

from solarb.markets.types import (
    DEFAULT_CACHE_DIR,
    Dex,
    DexLabel,
    LoadedDex,
    Market,
    PoolItem,
    Route,
    TokenInfo,
    parse_simulation_response,
)
from solarb.rpc import RpcClient, account_subscribe, b58encode, data_size_filter, memcmp_filter

log = logging.getLogger(__name__)

CACHE_FILE = "raydium-markets.json"
PROGRAM_ID = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
AMM_INFO_SIZE = 752
MARKET_STATE_V3_SIZE = 388
COIN_MINT_OFFSET = 400
PC_MINT_OFFSET = 432
PLACEHOLDER_LIQUIDITY = 666

_TEXT_FIELDS = (
    ("name", "name"),
    ("amm_id", "ammId"),
    ("lp_mint", "lpMint"),
    ("base_mint", "baseMint"),
    ("quote_mint", "quoteMint"),
    ("market", "market"),
)
_NUMBER_FIELDS = (
    ("liquidity", "liquidity"),
    ("volume24h", "volume24h"),
    ("volume24h_quote", "volume24hQuote"),
    ("fee24h", "fee24h"),
    ("fee24h_quote", "fee24hQuote"),
    ("volume7d", "volume7d"),
    ("volume7d_quote", "volume7dQuote"),
    ("fee7d", "fee7d"),
    ("fee7d_quote", "fee7dQuote"),
    ("volume30d", "volume30d"),
    ("volume30d_quote", "volume30dQuote"),
    ("fee30d", "fee30d"),
    ("fee30d_quote", "fee30dQuote"),
    ("price", "price"),
    ("lp_price", "lpPrice"),
    ("token_amount_coin", "tokenAmountCoin"),
    ("token_amount_pc", "tokenAmountPc"),
    ("token_amount_lp", "tokenAmountLp"),
    ("apr24h", "apr24h"),
    ("apr7d", "apr7d"),
    ("apr30d", "apr30d"),
)


@dataclass(frozen=True)
class RaydiumPool:
    """A pair as listed by the Raydium API."""

    name: str
    amm_id: str
    lp_mint: str
    base_mint: str
    quote_mint: str
    market: str
    liquidity: float
    volume24h: float
    volume24h_quote: float
    fee24h: float
    fee24h_quote: float
    volume7d: float
    volume7d_quote: float
    fee7d: float
    fee7d_quote: float
    volume30d: float
    volume30d_quote: float
    fee30d: float
    fee30d_quote: float
    price: float
    lp_price: float
    token_amount_coin: float
    token_amount_pc: float
    token_amount_lp: float
    apr24h: float
    apr7d: float
    apr30d: float

    def to_borsh(self) -> bytes:
        """Borsh encoding of the pool; ValueError for NaN numbers."""
        out = bytearray()
        for item in dataclasses.fields(self):
            value = getattr(self, item.name)
            if isinstance(value, str):
                raw = value.encode("utf-8")
                out += struct.pack("<I", len(raw)) + raw
            else:
                if math.isnan(value):
                    raise ValueError(f"cannot serialize NaN in field {item.name!r}")
                out += struct.pack("<d", value)
        return bytes(out)

    def to_json(self) -> dict[str, Any]:
        """The pool in the API's JSON shape; non-finite numbers become null."""
        body: dict[str, Any] = {key: getattr(self, attr) for attr, key in _TEXT_FIELDS}
        for attr, key in _NUMBER_FIELDS:
            value = getattr(self, attr)
            body[key] = value if math.isfinite(value) else None
        return body


def _rating(entry: dict, key: str) -> float:
    if key not in entry:
        raise ValueError(f"Raydium pool field {key!r} missing")
    value = entry[key]
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"Raydium pool field {key!r}: wrong type")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value != value.strip() or "_" in value:
            raise ValueError(f"Raydium pool field {key!r}: invalid number {value!r}")
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Raydium pool field {key!r}: invalid number {value!r}") from None
    raise ValueError(f"Raydium pool field {key!r}: wrong type")


def _text(entry: dict, key: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str):
        raise ValueError(f"Raydium pool field {key!r} missing or invalid")
    return value


def _pool_from_entry(entry: Any) -> RaydiumPool:
    if not isinstance(entry, dict):
        raise ValueError("Raydium pool entry is not an object")
    values: dict[str, Any] = {attr: _text(entry, key) for attr, key in _TEXT_FIELDS}
    values.update({attr: _rating(entry, key) for attr, key in _NUMBER_FIELDS})
    return RaydiumPool(**values)


def parse_raydium_pools(payload: str | bytes | list) -> list[RaydiumPool]:
    """Pools from an API reply or cache file; ValueError if malformed."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, list):
        raise ValueError("Raydium payload is not a list")
    return [_pool_from_entry(entry) for entry in payload]


class _Reader:
    """Sequential little-endian reader over a fixed-size record."""

    def __init__(self, data: bytes, what: str, size: int):
        self._data = bytes(data)
        if len(self._data) != size:
            raise ValueError(f"{what}: {len(self._data)} bytes, expected {size}")
        self._pos = 0

    def take(self, count: int) -> bytes:
        chunk = self._data[self._pos:self._pos + count]
        self._pos += count
        return chunk

    def u64(self) -> int:
        return int.from_bytes(self.take(8), "little")

    def u128(self) -> int:
        return int.from_bytes(self.take(16), "little")

    def u64s(self, count: int) -> tuple[int, ...]:
        return tuple(self.u64() for _ in range(count))

    def pubkey(self) -> str:
        return b58encode(self.take(32))


@dataclass(frozen=True)
class Fees:
    """Fee ratios of an AMM pool."""

    min_separate_numerator: int
    min_separate_denominator: int
    trade_fee_numerator: int
    trade_fee_denominator: int
    pnl_numerator: int
    pnl_denominator: int
    swap_fee_numerator: int
    swap_fee_denominator: int


@dataclass(frozen=True)
class StateData:
    """Statistics kept by an AMM pool."""

    need_take_pnl_coin: int
    need_take_pnl_pc: int
    total_pnl_pc: int
    total_pnl_coin: int
    pool_open_time: int
    padding: tuple[int, int]
    orderbook_to_init_time: int
    swap_coin_in_amount: int
    swap_pc_out_amount: int
    swap_acc_pc_fee: int
    swap_pc_in_amount: int
    swap_coin_out_amount: int
    swap_acc_coin_fee: int


@dataclass(frozen=True)
class AmmInfo:
    """On-chain state of a Raydium AMM v4 pool."""

    status: int
    nonce: int
    order_num: int
    depth: int
    coin_decimals: int
    pc_decimals: int
    state: int
    reset_flag: int
    min_size: int
    vol_max_cut_ratio: int
    amount_wave: int
    coin_lot_size: int
    pc_lot_size: int
    min_price_multiplier: int
    max_price_multiplier: int
    sys_decimal_value: int
    fees: Fees
    state_data: StateData
    coin_vault: str
    pc_vault: str
    coin_vault_mint: str
    pc_vault_mint: str
    lp_mint: str
    open_orders: str
    market: str
    market_program: str
    target_orders: str
    padding1: tuple[int, ...]
    amm_owner: str
    lp_amount: int
    client_order_id: int
    padding2: tuple[int, ...]


def unpack_amm_info(data: bytes) -> AmmInfo:
    """Decode an AMM account; ValueError unless it is exactly 752 bytes."""
    reader = _Reader(data, "AmmInfo", AMM_INFO_SIZE)
    head = reader.u64s(16)
    fees = Fees(*reader.u64s(8))
    state_data = StateData(
        reader.u64(),
        reader.u64(),
        reader.u64(),
        reader.u64(),
        reader.u64(),
        reader.u64s(2),
        reader.u64(),
        reader.u128(),
        reader.u128(),
        reader.u64(),
        reader.u128(),
        reader.u128(),
        reader.u64(),
    )
    keys = [reader.pubkey() for _ in range(9)]
    padding1 = reader.u64s(8)
    amm_owner = reader.pubkey()
    lp_amount = reader.u64()
    client_order_id = reader.u64()
    padding2 = reader.u64s(2)
    return AmmInfo(
        *head, fees, state_data, *keys, padding1, amm_owner, lp_amount, client_order_id, padding2
    )


@dataclass(frozen=True)
class MarketStateLayoutV3:
    """On-chain state of an order-book market backing a pool."""

    func_signature: bytes
    account_flags: bytes
    owner_address: str
    vault_signer_nonce: int
    base_mint: str
    quote_mint: str
    base_vault: str
    base_deposits_total: int
    base_fees_accrued: int
    quote_vault: str
    quote_deposits_total: int
    quote_fees_accrued: int
    quote_dust_threshold: int
    request_queue: str
    event_queue: str
    bids: str
    asks: str
    base_lot_size: int
    quote_lot_size: int
    fee_rate_bps: int
    referrer_rebates_accrued: int
    nope: bytes


def unpack_market_state_v3(data: bytes) -> MarketStateLayoutV3:
    """Decode a market account; ValueError unless it is exactly 388 bytes."""
    reader = _Reader(data, "MarketStateLayoutV3", MARKET_STATE_V3_SIZE)
    return MarketStateLayoutV3(
        func_signature=reader.take(5),
        account_flags=reader.take(8),
        owner_address=reader.pubkey(),
        vault_signer_nonce=reader.u64(),
        base_mint=reader.pubkey(),
        quote_mint=reader.pubkey(),
        base_vault=reader.pubkey(),
        base_deposits_total=reader.u64(),
        base_fees_accrued=reader.u64(),
        quote_vault=reader.pubkey(),
        quote_deposits_total=reader.u64(),
        quote_fees_accrued=reader.u64(),
        quote_dust_threshold=reader.u64(),
        request_queue=reader.pubkey(),
        event_queue=reader.pubkey(),
        bids=reader.pubkey(),
        asks=reader.pubkey(),
        base_lot_size=reader.u64(),
        quote_lot_size=reader.u64(),
        fee_rate_bps=reader.u64(),
        referrer_rebates_accrued=reader.u64(),
        nope=reader.take(7),
    )


def _saturating(value: float, bits: int) -> int:
    """Float to unsigned integer, clamping like a saturating cast."""
    limit = (1 << bits) - 1
    if math.isnan(value) or value <= 0:
        return 0
    if value >= limit:
        return limit
    return int(value)


def build_raydium_dex(pools: Iterable[RaydiumPool]) -> LoadedDex:
    """Group the pools into a Dex, keeping a PoolItem for each."""
    loaded = LoadedDex(Dex(DexLabel.RAYDIUM))
    for pool in pools:
        account_data = pool.to_borsh()
        loaded.pools.append(
            PoolItem(
                pool.base_mint,
                pool.quote_mint,
                pool.base_mint,
                pool.quote_mint,
                _saturating(pool.volume7d, 128),
            )
        )
        loaded.dex.add_market(
            Market(
                token_mint_a=pool.base_mint,
                token_vault_a=pool.base_mint,
                token_mint_b=pool.quote_mint,
                token_vault_b=pool.quote_mint,
                dex_label=DexLabel.RAYDIUM,
                fee=_saturating(pool.volume7d, 64),
                id=pool.amm_id,
                account_data=account_data,
                liquidity=_saturating(pool.liquidity, 64),
            )
        )
    return loaded


def load_raydium(cache_dir: str | Path = DEFAULT_CACHE_DIR) -> LoadedDex:
    """Build the Raydium Dex from the cached pool list."""
    pools = parse_raydium_pools(Path(cache_dir, CACHE_FILE).read_text(encoding="utf-8"))
    log.info("Raydium: %d pools found", len(pools))
    return build_raydium_dex(pools)


@contextlib.asynccontextmanager
async def _http_client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
    else:
        async with httpx.AsyncClient(timeout=30.0) as own:
            yield own


async def fetch_data_raydium(
    cache_dir: str | Path = DEFAULT_CACHE_DIR, client: httpx.AsyncClient | None = None
) -> Path | None:
    """Download the pool list into the cache; None if it could not be fetched or read."""
    async with _http_client(client) as http:
        response = await http.get(DexLabel.RAYDIUM.api_url())
    if not response.is_success:
        log.error("Fetch of '%s' not successful: %s", CACHE_FILE, response.status_code)
        return None
    try:
        pools = parse_raydium_pools(response.text)
    except ValueError as exc:
        log.error("Failed to deserialize JSON: %s", exc)
        return None
    path = Path(cache_dir, CACHE_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps([pool.to_json() for pool in pools]), encoding="utf-8")
    log.info("Data written to '%s' successfully.", CACHE_FILE)
    return path


def fetch_new_raydium_pools(rpc: RpcClient, token: str, on_token_a: bool) -> list[tuple[str, Market]]:
    """AMM pools on chain holding the token as coin or pc mint."""
    offset = COIN_MINT_OFFSET if on_token_a else PC_MINT_OFFSET
    filters = [memcmp_filter(offset, token), data_size_filter(AMM_INFO_SIZE)]
    markets = []
    for pubkey, data in rpc.get_program_accounts(PROGRAM_ID, filters):
        info = unpack_amm_info(data)
        fee = info.fees.trade_fee_numerator // info.fees.trade_fee_denominator
        market = Market(
            token_mint_a=info.coin_vault_mint,
            token_vault_a=info.coin_vault,
            token_mint_b=info.pc_vault_mint,
            token_vault_b=info.pc_vault,
            dex_label=DexLabel.RAYDIUM,
            fee=fee,
            id=pubkey,
            account_data=bytes(data),
            liquidity=PLACEHOLDER_LIQUIDITY,
        )
        markets.append((pubkey, market))
    return markets


async def stream_raydium(url: str, account: str) -> int:
    """Print every update of a pool account; return how many arrived."""
    count = 0
    try:
        async for _slot, data in account_subscribe(url, account, encoding="jsonParsed"):
            count += 1
            print(f"account subscription data response: {data!r}")
    except ConnectionClosed as exc:
        print(f"account subscription error: {exc}")
    return count


def _direction(
    route: Route, market: Market, tokens: Mapping[str, TokenInfo]
) -> tuple[str, TokenInfo, str, TokenInfo]:
    token_0 = tokens[market.token_mint_a]
    token_1 = tokens[market.token_mint_b]
    if route.token_0to1:
        return market.token_mint_a, token_0, market.token_mint_b, token_1
    return market.token_mint_b, token_1, market.token_mint_a, token_0


def raydium_quote_params(
    route: Route, market: Market, tokens: Mapping[str, TokenInfo], amount_in: int
) -> str:
    """Query string asking the simulator for a Raydium quote."""
    mint_in, info_in, mint_out, info_out = _direction(route, market, tokens)
    return (
        f"poolKeys={market.id}&amountIn={amount_in}"
        f"&currencyIn={mint_in}&decimalsIn={info_in.decimals}&symbolTokenIn={info_in.symbol}"
        f"&currencyOut={mint_out}&decimalsOut={info_out.decimals}&symbolTokenOut={info_out.symbol}"
    )


async def simulate_route_raydium(
    simulator_url: str,
    amount_in: int,
    route: Route,
    market: Market,
    tokens: Mapping[str, TokenInfo],
    client: httpx.AsyncClient | None = None,
    printing_amt: bool = False,
) -> tuple[str, str]:
    """Ask the simulator for (estimated out, minimum out); SimulationError on failure."""
    params = raydium_quote_params(route, market, tokens, amount_in)
    async with _http_client(client) as http:
        response = await http.get(f"{simulator_url}raydium_quote?{params}")
    result = parse_simulation_response(response.text)
    min_out = result.estimated_min_amount_out or ""
    if printing_amt:
        _, info_in, _, info_out = _direction(route, market, tokens)
        print(f"estimatedAmountIn: {result.amount_in} {info_in.symbol}")
        print(f"estimatedAmountOut: {result.estimated_amount_out} {info_out.symbol}")
        print(f"estimatedMinAmountOut: {min_out} {info_out.symbol}")
    return result.estimated_amount_out, min_out