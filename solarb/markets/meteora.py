"""Meteora DLMM (liquidity book) pools."""

from __future__ import annotations

import contextlib
import json
import logging
import math
import struct
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import httpx

from solarb.markets.types import (
    DEFAULT_CACHE_DIR,
    Dex,
    DexLabel,
    LoadedDex,
    Market,
    PoolItem,
    Route,
    SimulationError,
    TokenInfo,
    parse_simulation_response,
)
from solarb.rpc import RpcClient, b58encode, data_size_filter, memcmp_filter

log = logging.getLogger(__name__)

CACHE_FILE = "meteora-markets.json"
RAW_CACHE_FILE = "meteora-markets-raw.json"
PROGRAM_ID = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"
ACCOUNT_SIZE = 904
TOKEN_X_OFFSET = 88
TOKEN_Y_OFFSET = 120
PREVIEW_LENGTH = 500

_U64_MASK = (1 << 64) - 1

_TEXT = "text"
_INT128 = "i128"
_INT64 = "i64"
_RATING = "rating"
_BOOL = "bool"

# Field name (also the JSON key) and kind, in declaration order.
_POOL_FIELDS = (
    ("address", _TEXT),
    ("name", _TEXT),
    ("mint_x", _TEXT),
    ("mint_y", _TEXT),
    ("reserve_x", _TEXT),
    ("reserve_y", _TEXT),
    ("reserve_x_amount", _INT128),
    ("reserve_y_amount", _INT128),
    ("bin_step", _INT64),
    ("base_fee_percentage", _TEXT),
    ("max_fee_percentage", _TEXT),
    ("protocol_fee_percentage", _TEXT),
    ("liquidity", _TEXT),
    ("reward_mint_x", _TEXT),
    ("reward_mint_y", _TEXT),
    ("fees_24h", _RATING),
    ("today_fees", _RATING),
    ("trade_volume_24h", _RATING),
    ("cumulative_trade_volume", _TEXT),
    ("cumulative_fee_volume", _TEXT),
    ("current_price", _RATING),
    ("apr", _RATING),
    ("apy", _RATING),
    ("farm_apr", _RATING),
    ("farm_apy", _RATING),
    ("hide", _BOOL),
)
_KINDS = dict(_POOL_FIELDS)


@dataclass(frozen=True)
class MeteoraPool:
    """A DLMM pair as listed by the Meteora API."""

    address: str
    name: str
    mint_x: str
    mint_y: str
    reserve_x: str
    reserve_y: str
    reserve_x_amount: int
    reserve_y_amount: int
    bin_step: int
    base_fee_percentage: str
    max_fee_percentage: str
    protocol_fee_percentage: str
    liquidity: str
    reward_mint_x: str
    reward_mint_y: str
    fees_24h: float
    today_fees: float
    trade_volume_24h: float
    cumulative_trade_volume: str
    cumulative_fee_volume: str
    current_price: float
    apr: float
    apy: float
    farm_apr: float
    farm_apy: float
    hide: bool

    def to_borsh(self) -> bytes:
        """Borsh encoding of the pool; ValueError for NaN numbers."""
        out = bytearray()
        for item in fields(self):
            value = getattr(self, item.name)
            kind = _KINDS[item.name]
            if kind == _TEXT:
                raw = value.encode("utf-8")
                out += struct.pack("<I", len(raw)) + raw
            elif kind == _INT128:
                out += value.to_bytes(16, "little", signed=True)
            elif kind == _INT64:
                out += struct.pack("<q", value)
            elif kind == _BOOL:
                out += b"\x01" if value else b"\x00"
            else:
                if math.isnan(value):
                    raise ValueError(f"cannot serialize NaN in field {item.name!r}")
                out += struct.pack("<d", value)
        return bytes(out)

    def to_json(self) -> dict[str, Any]:
        """The pool in the API's JSON shape; non-finite numbers become null."""
        body: dict[str, Any] = {}
        for key, kind in _POOL_FIELDS:
            value = getattr(self, key)
            if kind == _RATING and not math.isfinite(value):
                value = None
            body[key] = value
        return body


def _parse_float(text: str) -> float:
    if text != text.strip() or "_" in text or not text:
        raise ValueError(f"invalid float literal {text!r}")
    return float(text)


def _rating(entry: dict, key: str) -> float:
    if key not in entry:
        raise ValueError(f"Meteora pool field {key!r} missing")
    value = entry[key]
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError(f"Meteora pool field {key!r}: wrong type")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return _parse_float(value)
        except ValueError:
            raise ValueError(f"Meteora pool field {key!r}: invalid number {value!r}") from None
    raise ValueError(f"Meteora pool field {key!r}: wrong type")


def _integer(entry: dict, key: str, bits: int) -> int:
    value = entry.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Meteora pool field {key!r} missing or not an integer")
    limit = 1 << (bits - 1)
    if not -limit <= value < limit:
        raise ValueError(f"Meteora pool field {key!r} out of range")
    return value


def _value(entry: dict, key: str, kind: str) -> Any:
    if kind == _RATING:
        return _rating(entry, key)
    if kind == _INT128:
        return _integer(entry, key, 128)
    if kind == _INT64:
        return _integer(entry, key, 64)
    expected = str if kind == _TEXT else bool
    value = entry.get(key)
    if not isinstance(value, expected):
        raise ValueError(f"Meteora pool field {key!r} missing or invalid")
    return value


def _pool_from_entry(entry: Any) -> MeteoraPool:
    if not isinstance(entry, dict):
        raise ValueError("Meteora pool entry is not an object")
    return MeteoraPool(**{key: _value(entry, key, kind) for key, kind in _POOL_FIELDS})


def parse_meteora_pools(payload: str | bytes | list) -> list[MeteoraPool]:
    """Pools from an API reply or cache file; ValueError if malformed."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, list):
        raise ValueError("Meteora payload is not a list")
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

    def _unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    def u8(self) -> int:
        return self._unpack("<B")

    def u16(self) -> int:
        return self._unpack("<H")

    def u32(self) -> int:
        return self._unpack("<I")

    def i32(self) -> int:
        return self._unpack("<i")

    def u64(self) -> int:
        return self._unpack("<Q")

    def i64(self) -> int:
        return self._unpack("<q")

    def u128(self) -> int:
        return int.from_bytes(self.take(16), "little")

    def pubkey(self) -> str:
        return b58encode(self.take(32))


@dataclass(frozen=True)
class StaticParameters:
    """Fee parameters fixed when a pair is created."""

    base_factor: int
    filter_period: int
    decay_period: int
    reduction_factor: int
    variable_fee_control: int
    max_volatility_accumulator: int
    min_bin_id: int
    max_bin_id: int
    protocol_share: int
    padding: bytes


@dataclass(frozen=True)
class VParameters:
    """Volatility state that drives the variable fee."""

    volatility_accumulator: int
    volatility_reference: int
    index_reference: int
    padding: bytes
    last_update_timestamp: int
    padding1: bytes


@dataclass(frozen=True)
class ProtocolFee:
    """Protocol fees owed in each token."""

    amount_x: int
    amount_y: int


@dataclass(frozen=True)
class RewardInfo:
    """One farming reward attached to a pair."""

    mint: str
    vault: str
    funder: str
    reward_duration: int
    reward_duration_end: int
    reward_rate: int
    last_update_time: int
    cumulative_seconds_with_empty_liquidity_reward: int


@dataclass(frozen=True)
class LbPairAccount:
    """On-chain state of a Meteora DLMM pair."""

    offset: int
    parameters: StaticParameters
    v_parameters: VParameters
    bump_seed: bytes
    bin_step_seed: bytes
    pair_type: int
    active_id: int
    bin_step: int
    status: int
    padding1: bytes
    token_x_mint: str
    token_y_mint: str
    reserve_x: str
    reserve_y: str
    protocol_fee: ProtocolFee
    fee_owner: str
    reward_infos: tuple[RewardInfo, RewardInfo]
    oracle: str
    bin_array_bitmap: tuple[int, ...]
    last_updated_at: int
    whitelisted_wallet: tuple[str, str]
    base_key: str
    activation_slot: int
    swap_cap_deactivate_slot: int
    max_swapped_amount: int
    lock_durations_in_slot: int
    creator: str
    reserved: bytes

    def fee(self) -> int:
        """The pair's base fee factor."""
        return self.parameters.base_factor

    def liquidity(self) -> int | None:
        """Protocol fees owed in both tokens, or None when there are none."""
        total = (self.protocol_fee.amount_x + self.protocol_fee.amount_y) & _U64_MASK
        return total if total > 0 else None


def _reward_info(reader: _Reader) -> RewardInfo:
    return RewardInfo(
        mint=reader.pubkey(),
        vault=reader.pubkey(),
        funder=reader.pubkey(),
        reward_duration=reader.u64(),
        reward_duration_end=reader.u64(),
        reward_rate=reader.u128(),
        last_update_time=reader.u64(),
        cumulative_seconds_with_empty_liquidity_reward=reader.u64(),
    )


def unpack_lb_pair(data: bytes) -> LbPairAccount:
    """Decode a DLMM pair account; ValueError unless it is exactly 904 bytes."""
    reader = _Reader(data, "LbPair", ACCOUNT_SIZE)
    offset = reader.u64()
    parameters = StaticParameters(
        base_factor=reader.u16(),
        filter_period=reader.u16(),
        decay_period=reader.u16(),
        reduction_factor=reader.u16(),
        variable_fee_control=reader.u32(),
        max_volatility_accumulator=reader.u32(),
        min_bin_id=reader.i32(),
        max_bin_id=reader.i32(),
        protocol_share=reader.u16(),
        padding=reader.take(6),
    )
    v_parameters = VParameters(
        volatility_accumulator=reader.u32(),
        volatility_reference=reader.u32(),
        index_reference=reader.i32(),
        padding=reader.take(4),
        last_update_timestamp=reader.i64(),
        padding1=reader.take(8),
    )
    return LbPairAccount(
        offset=offset,
        parameters=parameters,
        v_parameters=v_parameters,
        bump_seed=reader.take(1),
        bin_step_seed=reader.take(2),
        pair_type=reader.u8(),
        active_id=reader.i32(),
        bin_step=reader.u16(),
        status=reader.u8(),
        padding1=reader.take(5),
        token_x_mint=reader.pubkey(),
        token_y_mint=reader.pubkey(),
        reserve_x=reader.pubkey(),
        reserve_y=reader.pubkey(),
        protocol_fee=ProtocolFee(reader.u64(), reader.u64()),
        fee_owner=reader.pubkey(),
        reward_infos=(_reward_info(reader), _reward_info(reader)),
        oracle=reader.pubkey(),
        bin_array_bitmap=tuple(reader.u64() for _ in range(16)),
        last_updated_at=reader.i64(),
        whitelisted_wallet=(reader.pubkey(), reader.pubkey()),
        base_key=reader.pubkey(),
        activation_slot=reader.u64(),
        swap_cap_deactivate_slot=reader.u64(),
        max_swapped_amount=reader.u64(),
        lock_durations_in_slot=reader.u64(),
        creator=reader.pubkey(),
        reserved=reader.take(24),
    )


def _saturating(value: float, bits: int) -> int:
    """Float to unsigned integer, clamping like a saturating cast."""
    limit = (1 << bits) - 1
    if math.isnan(value) or value <= 0:
        return 0
    if value >= limit:
        return limit
    return int(value)


def build_meteora_dex(pools: Iterable[MeteoraPool]) -> LoadedDex:
    """Group the pools into a Dex; ValueError if a fee or liquidity is not a number."""
    loaded = LoadedDex(Dex(DexLabel.METEORA))
    for pool in pools:
        account_data = pool.to_borsh()
        fee = _parse_float(pool.max_fee_percentage)
        liquidity = _parse_float(pool.liquidity)
        loaded.pools.append(
            PoolItem(pool.mint_x, pool.mint_y, pool.reserve_x, pool.reserve_y, _saturating(fee, 128))
        )
        loaded.dex.add_market(
            Market(
                token_mint_a=pool.mint_x,
                token_vault_a=pool.reserve_x,
                token_mint_b=pool.mint_y,
                token_vault_b=pool.reserve_y,
                dex_label=DexLabel.METEORA,
                fee=_saturating(fee, 64),
                id=pool.address,
                account_data=account_data,
                liquidity=_saturating(liquidity, 64),
            )
        )
    return loaded


def load_meteora(cache_dir: str | Path = DEFAULT_CACHE_DIR) -> LoadedDex:
    """Build the Meteora Dex from the cached pool list."""
    pools = parse_meteora_pools(Path(cache_dir, CACHE_FILE).read_text(encoding="utf-8"))
    loaded = build_meteora_dex(pools)
    log.info("Meteora: %d pools found", len(pools))
    return loaded


@contextlib.asynccontextmanager
async def _http_client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
    else:
        async with httpx.AsyncClient(timeout=30.0) as own:
            yield own


def _log_bad_payload(data: str) -> None:
    try:
        value = json.loads(data)
    except ValueError:
        log.error("Response is not valid JSON")
        preview = data[:PREVIEW_LENGTH] + "..." if len(data) > PREVIEW_LENGTH else data
        log.error("Response preview: %s", preview)
        return
    log.error("JSON is valid but doesn't match expected structure")
    if isinstance(value, list):
        log.info("Received array with %d items", len(value))
        if value:
            log.info("First item structure: %s", json.dumps(value[0], indent=2))


async def fetch_data_meteora(
    cache_dir: str | Path = DEFAULT_CACHE_DIR, client: httpx.AsyncClient | None = None
) -> Path:
    """Download the pool list into the cache; raise if it cannot be fetched or read."""
    log.info("Fetching Meteora market data from API...")
    path = Path(cache_dir, CACHE_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)

    async with _http_client(client) as http:
        response = await http.get(DexLabel.METEORA.api_url())
    if not response.is_success:
        message = f"API request failed with status: {response.status_code}"
        log.error(message)
        raise RuntimeError(message)

    data = response.text
    if not data.strip():
        message = "Received empty response from API"
        log.error(message)
        raise RuntimeError(message)

    try:
        pools = parse_meteora_pools(data)
    except ValueError as exc:
        log.error("Failed to deserialize JSON: %s", exc)
        raw_path = Path(cache_dir, RAW_CACHE_FILE)
        raw_path.write_text(data, encoding="utf-8")
        log.info("Raw data saved to '%s' for inspection", raw_path)
        _log_bad_payload(data)
        raise ValueError(f"Failed to parse Meteora API response: {exc}") from exc

    path.write_text(json.dumps([pool.to_json() for pool in pools], indent=2), encoding="utf-8")
    log.info("Successfully fetched and cached %d Meteora markets", len(pools))
    return path


def fetch_new_meteora_pools(rpc: RpcClient, token: str, on_token_a: bool) -> list[tuple[str, Market]]:
    """DLMM pairs on chain holding the token as mint X or mint Y; bad accounts are skipped."""
    log.info(
        "Fetching new Meteora pools for token: %s (position: %s)", token, "A" if on_token_a else "B"
    )
    offset = TOKEN_X_OFFSET if on_token_a else TOKEN_Y_OFFSET
    filters = [memcmp_filter(offset, token), data_size_filter(ACCOUNT_SIZE)]
    accounts = rpc.get_program_accounts(PROGRAM_ID, filters)
    log.info("Found %d potential Meteora pools", len(accounts))

    markets: list[tuple[str, Market]] = []
    for pubkey, data in accounts:
        try:
            pair = unpack_lb_pair(data)
        except ValueError as exc:
            log.error("Failed to parse Meteora account data for %s: %s", pubkey, exc)
            continue
        market = Market(
            token_mint_a=pair.token_x_mint,
            token_vault_a=pair.reserve_x,
            token_mint_b=pair.token_y_mint,
            token_vault_b=pair.reserve_y,
            dex_label=DexLabel.METEORA,
            fee=pair.fee(),
            id=pubkey,
            account_data=bytes(data),
            liquidity=pair.liquidity(),
        )
        markets.append((pubkey, market))
    log.info("Successfully parsed %d/%d Meteora pools", len(markets), len(accounts))
    return markets


def _direction(
    route: Route, market: Market, tokens: Mapping[str, TokenInfo]
) -> tuple[TokenInfo, TokenInfo]:
    token_0 = tokens.get(market.token_mint_a)
    if token_0 is None:
        raise KeyError(f"Token info not found for mint A: {market.token_mint_a}")
    token_1 = tokens.get(market.token_mint_b)
    if token_1 is None:
        raise KeyError(f"Token info not found for mint B: {market.token_mint_b}")
    return (token_0, token_1) if route.token_0to1 else (token_1, token_0)


def meteora_quote_params(
    route: Route, market: Market, tokens: Mapping[str, TokenInfo], amount_in: int
) -> str:
    """Query string asking the simulator for a Meteora quote."""
    token_in, token_out = _direction(route, market, tokens)
    direction = "true" if route.token_0to1 else "false"
    return (
        f"poolId={market.id}&token0to1={direction}&amountIn={amount_in}"
        f"&tokenInSymbol={token_in.symbol}&tokenOutSymbol={token_out.symbol}"
    )


def _failure_message(text: str) -> str:
    try:
        body = json.loads(text)
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return f"Meteora simulation failed: {body['error']}"
    log.error("Unexpected response format from Meteora API: %s", text)
    return "Failed to parse Meteora simulation response"


async def simulate_route_meteora(
    simulator_url: str,
    amount_in: int,
    route: Route,
    market: Market,
    tokens: Mapping[str, TokenInfo],
    client: httpx.AsyncClient | None = None,
    printing_amt: bool = False,
) -> tuple[str, str]:
    """Ask the simulator for (estimated out, minimum out); SimulationError on failure."""
    token_in, token_out = _direction(route, market, tokens)
    params = meteora_quote_params(route, market, tokens, amount_in)
    if printing_amt:
        log.info("Simulating Meteora swap: %s %s -> %s", amount_in, token_in.symbol, token_out.symbol)
    async with _http_client(client) as http:
        response = await http.get(f"{simulator_url}meteora_quote?{params}")
    text = response.text
    try:
        result = parse_simulation_response(text)
    except SimulationError:
        raise SimulationError(_failure_message(text)) from None

    if printing_amt:
        print("Meteora Simulation Results:")
        print(f"  Amount In: {result.amount_in} {token_in.symbol}")
        print(f"  Estimated Out: {result.estimated_amount_out} {token_out.symbol}")
        if result.estimated_min_amount_out is not None:
            print(f"  Min Amount Out: {result.estimated_min_amount_out} {token_out.symbol}")

    min_out = result.estimated_min_amount_out
    if min_out is None:
        min_out = result.estimated_amount_out
    return result.estimated_amount_out, min_out