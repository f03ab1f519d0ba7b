"""Orca Whirlpools (concentrated liquidity) pools."""

from __future__ import annotations

import contextlib
import json
import logging
import struct
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
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
from solarb.rpc import (
    RpcClient,
    account_subscribe,
    b58decode,
    b58encode,
    data_size_filter,
    memcmp_filter,
)

log = logging.getLogger(__name__)

CACHE_FILE = "orca_whirpools-markets.json"
PROGRAM_ID = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
ACCOUNT_SIZE = 653
TOKEN_MINT_A_OFFSET = 101
TOKEN_MINT_B_OFFSET = 181
RPC_BATCH_SIZE = 100
ZERO_PUBKEY = b58encode(bytes(32))

_U64_MASK = (1 << 64) - 1
_LAYOUT = struct.Struct("<8x32sBH2sHH16s16siQQ32s32s16s32s32s16sQ")


def _u128(raw: bytes) -> int:
    return int.from_bytes(raw, "little")


@dataclass(frozen=True)
class WhirlpoolAccount:
    """On-chain state of a whirlpool, up to its reward data."""

    address: str
    whirlpools_config: str
    whirlpool_bump: int
    tick_spacing: int
    tick_spacing_seed: bytes
    fee_rate: int
    protocol_fee_rate: int
    liquidity: int
    sqrt_price: int
    tick_current_index: int
    protocol_fee_owed_a: int
    protocol_fee_owed_b: int
    token_mint_a: str
    token_vault_a: str
    fee_growth_global_a: int
    token_mint_b: str
    token_vault_b: str
    fee_growth_global_b: int
    reward_last_updated_timestamp: int


def unpack_whirlpool(data: bytes, address: str = ZERO_PUBKEY) -> WhirlpoolAccount:
    """Decode a whirlpool account; ValueError if the data is too short."""
    data = bytes(data)
    if len(data) < _LAYOUT.size:
        raise ValueError(f"Orca pools bad unpack: {len(data)} bytes, need {_LAYOUT.size}")
    (
        config,
        bump,
        tick_spacing,
        seed,
        fee_rate,
        protocol_fee_rate,
        liquidity,
        sqrt_price,
        tick_index,
        owed_a,
        owed_b,
        mint_a,
        vault_a,
        growth_a,
        mint_b,
        vault_b,
        growth_b,
        reward_ts,
    ) = _LAYOUT.unpack_from(data)
    return WhirlpoolAccount(
        address=address,
        whirlpools_config=b58encode(config),
        whirlpool_bump=bump,
        tick_spacing=tick_spacing,
        tick_spacing_seed=seed,
        fee_rate=fee_rate,
        protocol_fee_rate=protocol_fee_rate,
        liquidity=_u128(liquidity),
        sqrt_price=_u128(sqrt_price),
        tick_current_index=tick_index,
        protocol_fee_owed_a=owed_a,
        protocol_fee_owed_b=owed_b,
        token_mint_a=b58encode(mint_a),
        token_vault_a=b58encode(vault_a),
        fee_growth_global_a=_u128(growth_a),
        token_mint_b=b58encode(mint_b),
        token_vault_b=b58encode(vault_b),
        fee_growth_global_b=_u128(growth_b),
        reward_last_updated_timestamp=reward_ts,
    )


@dataclass(frozen=True)
class WhirlpoolInfo:
    """A whirlpool as listed by the Orca API."""

    address: str
    token_a_mint: str
    token_a_symbol: str
    token_a_decimals: int
    token_b_mint: str
    token_b_symbol: str
    token_b_decimals: int
    whitelisted: bool
    tick_spacing: int
    price: float
    lp_fee_rate: float
    protocol_fee_rate: float
    whirlpools_config: str
    raw: dict = field(default_factory=dict, repr=False, compare=False)


def _field(entry: dict, key: str, kind: type | tuple) -> Any:
    value = entry.get(key)
    valid = isinstance(value, kind) and (kind is bool or not isinstance(value, bool))
    if not valid:
        raise ValueError(f"Whirlpool field {key!r} missing or invalid")
    return value


def _token(entry: dict, key: str) -> tuple[str, str, int]:
    token = entry.get(key)
    if not isinstance(token, dict):
        raise ValueError(f"Whirlpool field {key!r} missing or invalid")
    return _field(token, "mint", str), _field(token, "symbol", str), _field(token, "decimals", int)


def _info_from_entry(entry: Any) -> WhirlpoolInfo:
    if not isinstance(entry, dict):
        raise ValueError("Whirlpool entry is not an object")
    number = (int, float)
    mint_a, symbol_a, decimals_a = _token(entry, "tokenA")
    mint_b, symbol_b, decimals_b = _token(entry, "tokenB")
    return WhirlpoolInfo(
        address=_field(entry, "address", str),
        token_a_mint=mint_a,
        token_a_symbol=symbol_a,
        token_a_decimals=decimals_a,
        token_b_mint=mint_b,
        token_b_symbol=symbol_b,
        token_b_decimals=decimals_b,
        whitelisted=_field(entry, "whitelisted", bool),
        tick_spacing=_field(entry, "tickSpacing", int),
        price=float(_field(entry, "price", number)),
        lp_fee_rate=float(_field(entry, "lpFeeRate", number)),
        protocol_fee_rate=float(_field(entry, "protocolFeeRate", number)),
        whirlpools_config=_field(entry, "whirlpoolsConfig", str),
        raw=entry,
    )


def _load_payload(payload: str | bytes | dict) -> dict:
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if (
        not isinstance(payload, dict)
        or not isinstance(payload.get("whirlpools"), list)
        or not isinstance(payload.get("hasMore"), bool)
    ):
        raise ValueError("Whirlpool payload needs a 'whirlpools' list and 'hasMore'")
    return payload


def parse_whirlpool_list(payload: str | bytes | dict) -> list[WhirlpoolInfo]:
    """Whirlpools from an API reply or cache file; ValueError if malformed."""
    return [_info_from_entry(entry) for entry in _load_payload(payload)["whirlpools"]]


def _market(account: WhirlpoolAccount, account_data: bytes | None = None) -> Market:
    return Market(
        token_mint_a=account.token_mint_a,
        token_vault_a=account.token_vault_a,
        token_mint_b=account.token_mint_b,
        token_vault_b=account.token_vault_b,
        dex_label=DexLabel.ORCA_WHIRLPOOLS,
        fee=account.fee_rate,
        id=account.address,
        account_data=account_data,
        liquidity=account.liquidity & _U64_MASK,
    )


def build_whirlpool_dex(accounts: Iterable[WhirlpoolAccount]) -> LoadedDex:
    """Group whirlpool accounts into a Dex, keeping a PoolItem for each."""
    loaded = LoadedDex(Dex(DexLabel.ORCA_WHIRLPOOLS))
    for account in accounts:
        loaded.pools.append(
            PoolItem(
                account.token_mint_a,
                account.token_mint_b,
                account.token_vault_a,
                account.token_vault_b,
                account.fee_rate,
            )
        )
        loaded.dex.add_market(_market(account))
    return loaded


def _checked_pubkey(text: str) -> str:
    try:
        raw = b58decode(text)
    except ValueError as exc:
        raise ValueError(f"invalid whirlpool address {text!r}") from exc
    if len(raw) != 32:
        raise ValueError(f"invalid whirlpool address {text!r}")
    return text


def load_orca_whirlpools(rpc: RpcClient, cache_dir: str | Path = DEFAULT_CACHE_DIR) -> LoadedDex:
    """Build the Whirlpools Dex from the cached list and on-chain accounts."""
    infos = parse_whirlpool_list(Path(cache_dir, CACHE_FILE).read_text(encoding="utf-8"))
    pubkeys = [_checked_pubkey(info.address) for info in infos]
    accounts: list[WhirlpoolAccount] = []
    for start in range(0, len(pubkeys), RPC_BATCH_SIZE):
        batch = pubkeys[start:start + RPC_BATCH_SIZE]
        for key, data in zip(batch, rpc.get_multiple_accounts(batch)):
            if data is None:
                raise ValueError(f"Whirlpool account not found: {key}")
            accounts.append(unpack_whirlpool(data, key))
    log.info("Orca Whirlpools: %d pools found", len(accounts))
    return build_whirlpool_dex(accounts)


def fetch_new_orca_whirlpools(
    rpc: RpcClient, token: str, on_token_a: bool
) -> list[tuple[str, Market]]:
    """Whirlpools on chain holding the token as mint A or mint B."""
    offset = TOKEN_MINT_A_OFFSET if on_token_a else TOKEN_MINT_B_OFFSET
    filters = [memcmp_filter(offset, token), data_size_filter(ACCOUNT_SIZE)]
    return [
        (pubkey, _market(unpack_whirlpool(data, pubkey), bytes(data)))
        for pubkey, data in rpc.get_program_accounts(PROGRAM_ID, filters)
    ]


@contextlib.asynccontextmanager
async def _http_client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
    else:
        async with httpx.AsyncClient(timeout=30.0) as own:
            yield own


async def fetch_data_orca_whirlpools(
    cache_dir: str | Path = DEFAULT_CACHE_DIR, client: httpx.AsyncClient | None = None
) -> Path | None:
    """Download the whirlpool list into the cache; None if the API refused."""
    async with _http_client(client) as http:
        response = await http.get(DexLabel.ORCA_WHIRLPOOLS.api_url())
    if not response.is_success:
        log.error("Fetch of '%s' not successful: %s", CACHE_FILE, response.status_code)
        return None
    payload = _load_payload(response.text)
    infos = parse_whirlpool_list(payload)
    path = Path(cache_dir, CACHE_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    body = {"whirlpools": [info.raw for info in infos], "hasMore": payload["hasMore"]}
    path.write_text(json.dumps(body), encoding="utf-8")
    log.info("Data written to '%s' successfully.", CACHE_FILE)
    return path


async def stream_orca_whirlpools(url: str, account: str) -> int:
    """Print every decoded update of a whirlpool; return how many arrived."""
    count = 0
    try:
        async for _slot, data in account_subscribe(url, account, encoding="base64"):
            decoded = unpack_whirlpool(data, account)
            count += 1
            print(f"Orca Whirlpools Pool updated: {account}")
            print(f"Data: {decoded!r}")
    except ConnectionClosed as exc:
        log.error("account subscription error: %s", exc)
    return count


def whirlpool_quote_params(
    route: Route, market: Market, tokens: Mapping[str, TokenInfo], amount_in: int
) -> str:
    """Query string asking the simulator for a whirlpool quote."""
    if market.account_data is None:
        raise ValueError("No account data provided")
    pool = unpack_whirlpool(market.account_data)
    token_0 = tokens[market.token_mint_a]
    token_1 = tokens[market.token_mint_b]
    if route.token_0to1:
        key_in, info_in, key_out, info_out = pool.token_mint_a, token_0, pool.token_mint_b, token_1
    else:
        key_in, info_in, key_out, info_out = pool.token_mint_b, token_1, pool.token_mint_a, token_0
    return (
        f"poolId={route.pool_address}"
        f"&tokenInKey={key_in}&tokenInDecimals={info_in.decimals}&tokenInSymbol={info_in.symbol}"
        f"&tokenOutKey={key_out}&tokenOutDecimals={info_out.decimals}&tokenOutSymbol={info_out.symbol}"
        f"&tickSpacing={pool.tick_spacing}&amountIn={amount_in}"
    )


async def simulate_route_orca_whirlpools(
    simulator_url: str,
    amount_in: int,
    route: Route,
    market: Market,
    tokens: Mapping[str, TokenInfo],
    client: httpx.AsyncClient | None = None,
    printing_amt: bool = False,
) -> tuple[str, str]:
    """Ask the simulator for (estimated out, minimum out); SimulationError on failure."""
    params = whirlpool_quote_params(route, market, tokens, amount_in)
    async with _http_client(client) as http:
        response = await http.get(f"{simulator_url}orca_quote?{params}")
    result = parse_simulation_response(response.text)
    min_out = result.estimated_min_amount_out or ""
    if printing_amt:
        symbol_in = tokens[market.token_mint_a].symbol
        symbol_out = tokens[market.token_mint_b].symbol
        print(f"estimatedAmountIn: {result.amount_in} {symbol_in}")
        print(f"estimatedAmountOut: {result.estimated_amount_out} {symbol_out}")
        print(f"estimatedMinAmountOut: {min_out} {symbol_out}")
    return result.estimated_amount_out, min_out