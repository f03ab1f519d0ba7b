"""Orca token-swap (constant product) pools."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import struct
from collections.abc import AsyncIterator, Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from solarb.markets.types import DEFAULT_CACHE_DIR, Dex, DexLabel, LoadedDex, Market, PoolItem
from solarb.rpc import RpcClient, b58decode, b58encode

log = logging.getLogger(__name__)

CACHE_FILE = "orca-markets.json"
RPC_BATCH_SIZE = 100
REQUEST_TIMEOUT = 30.0
LAYOUT_SIZE = 324

_LAYOUT = struct.Struct("<BBB32s32s32s32s32s32s32s8QB32s")
_PERIODS = ("day", "week", "month")


@dataclass(frozen=True)
class TokenSwapLayout:
    """On-chain state of an Orca token-swap pool."""

    version: int
    is_initialized: bool
    bump_seed: int
    pool_token_program_id: str
    token_account_a: str
    token_account_b: str
    token_pool: str
    mint_a: str
    mint_b: str
    fee_account: str
    trade_fee_numerator: int
    trade_fee_denominator: int
    owner_trade_fee_numerator: int
    owner_trade_fee_denominator: int
    owner_withdraw_fee_numerator: int
    owner_withdraw_fee_denominator: int
    host_fee_numerator: int
    host_fee_denominator: int
    curve_type: int
    curve_parameters: bytes

    def trade_fee_percent(self) -> float:
        """Trade fee in percent; 0.0 when the denominator is zero."""
        if self.trade_fee_denominator == 0:
            return 0.0
        return self.trade_fee_numerator / self.trade_fee_denominator * 100.0

    def fee_rate_bps(self) -> float:
        """Trade fee in basis points; ZeroDivisionError when the denominator is zero."""
        return self.trade_fee_numerator / self.trade_fee_denominator * 10000.0


def unpack_token_swap(data: bytes) -> TokenSwapLayout:
    """Decode a token-swap account; ValueError if the data is too short."""
    data = bytes(data)
    if len(data) < LAYOUT_SIZE:
        raise ValueError(f"invalid account data: {len(data)} bytes, need {LAYOUT_SIZE}")
    (
        version,
        initialized,
        bump_seed,
        program_id,
        account_a,
        account_b,
        token_pool,
        mint_a,
        mint_b,
        fee_account,
        *fees,
        curve_type,
        curve_parameters,
    ) = _LAYOUT.unpack_from(data)
    return TokenSwapLayout(
        version,
        initialized != 0,
        bump_seed,
        b58encode(program_id),
        b58encode(account_a),
        b58encode(account_b),
        b58encode(token_pool),
        b58encode(mint_a),
        b58encode(mint_b),
        b58encode(fee_account),
        *fees,
        curve_type,
        curve_parameters,
    )


@dataclass(frozen=True)
class OrcaPool:
    """A pool as listed by the Orca API."""

    pool_id: str
    pool_account: str
    token_a_amount: str
    token_b_amount: str
    pool_token_supply: str
    apy: dict[str, str]
    volume: dict[str, str]

    def to_json(self) -> dict[str, Any]:
        """The pool in the API's own JSON shape."""
        return {
            "poolId": self.pool_id,
            "poolAccount": self.pool_account,
            "tokenAAmount": self.token_a_amount,
            "tokenBAmount": self.token_b_amount,
            "poolTokenSupply": self.pool_token_supply,
            "apy": dict(self.apy),
            "volume": dict(self.volume),
        }


def _string(entry: dict, key: str) -> str:
    value = entry.get(key)
    if not isinstance(value, str):
        raise ValueError(f"Orca pool field {key!r} missing or invalid")
    return value


def _periods(entry: dict, key: str) -> dict[str, str]:
    value = entry.get(key)
    if not isinstance(value, dict):
        raise ValueError(f"Orca pool field {key!r} missing or invalid")
    return {period: _string(value, period) for period in _PERIODS}


def _pool_from_entry(entry: Any) -> OrcaPool:
    if not isinstance(entry, dict):
        raise ValueError("Orca pool entry is not an object")
    return OrcaPool(
        pool_id=_string(entry, "poolId"),
        pool_account=_string(entry, "poolAccount"),
        token_a_amount=_string(entry, "tokenAAmount"),
        token_b_amount=_string(entry, "tokenBAmount"),
        pool_token_supply=_string(entry, "poolTokenSupply"),
        apy=_periods(entry, "apy"),
        volume=_periods(entry, "volume"),
    )


def parse_orca_pools(payload: str | bytes | dict) -> dict[str, OrcaPool]:
    """Pools by name from an API reply or cache file; ValueError if malformed."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, dict):
        raise ValueError("Orca payload is not an object")
    return {name: _pool_from_entry(entry) for name, entry in payload.items()}


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def fetch_pool_accounts(rpc: RpcClient, pubkeys: Iterable[str]) -> list[TokenSwapLayout]:
    """Fetch and decode pool accounts in batches, skipping missing or bad ones."""
    keys = list(pubkeys)
    total = (len(keys) + RPC_BATCH_SIZE - 1) // RPC_BATCH_SIZE
    layouts: list[TokenSwapLayout] = []
    for number, chunk in enumerate(_chunks(keys, RPC_BATCH_SIZE), start=1):
        log.info("Processing batch %d/%d", number, total)
        for key, data in zip(chunk, rpc.get_multiple_accounts(chunk)):
            if data is None:
                log.warning("Account not found: %s", key)
                continue
            try:
                layouts.append(unpack_token_swap(data))
            except ValueError as exc:
                log.warning("Failed to unpack pool data for account %s: %s", key, exc)
    return layouts


def build_orca_dex(layouts: Iterable[TokenSwapLayout]) -> LoadedDex:
    """Group initialised pools with a valid fee into a Dex."""
    loaded = LoadedDex(Dex(DexLabel.ORCA))
    for pool in layouts:
        if not pool.is_initialized:
            log.warning("Skipping uninitialized pool")
            continue
        if pool.trade_fee_denominator == 0:
            log.warning("Skipping pool with zero fee denominator")
            continue
        fee = int(pool.fee_rate_bps())
        loaded.pools.append(
            PoolItem(pool.mint_a, pool.mint_b, pool.token_account_a, pool.token_account_b, fee)
        )
        loaded.dex.add_market(
            Market(
                token_mint_a=pool.mint_a,
                token_vault_a=pool.token_account_a,
                token_mint_b=pool.mint_b,
                token_vault_b=pool.token_account_b,
                dex_label=DexLabel.ORCA,
                fee=fee,
                id=pool.token_pool,
            )
        )
    return loaded


def _checked_pubkey(text: str) -> str:
    try:
        raw = b58decode(text)
    except ValueError as exc:
        raise ValueError(f"Failed to parse pool account address {text!r}") from exc
    if len(raw) != 32:
        raise ValueError(f"Failed to parse pool account address {text!r}")
    return text


def load_orca(rpc: RpcClient, cache_dir: str | Path = DEFAULT_CACHE_DIR) -> LoadedDex:
    """Build the Orca Dex from the cached pool list and on-chain accounts."""
    path = Path(cache_dir, CACHE_FILE)
    pools = parse_orca_pools(path.read_text(encoding="utf-8"))
    log.info("Loaded %d pools from cache", len(pools))
    pubkeys = [_checked_pubkey(pool.pool_account) for pool in pools.values()]
    layouts = fetch_pool_accounts(rpc, pubkeys)
    loaded = build_orca_dex(layouts)
    log.info("Orca: %d pools successfully loaded", len(layouts))
    return loaded


@contextlib.asynccontextmanager
async def _http_client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
    else:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as own:
            yield own


async def fetch_data_orca(
    cache_dir: str | Path = DEFAULT_CACHE_DIR, client: httpx.AsyncClient | None = None
) -> Path:
    """Download the pool list and write it to the cache atomically."""
    log.info("Fetching Orca pool data from API...")
    async with _http_client(client) as http:
        response = await asyncio.wait_for(http.get(DexLabel.ORCA.api_url()), REQUEST_TIMEOUT)
    if not response.is_success:
        raise RuntimeError(f"API request failed with status: {response.status_code}")
    pools = parse_orca_pools(response.text)
    log.info("Successfully fetched %d pools from API", len(pools))

    path = Path(cache_dir, CACHE_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_name(path.name + ".tmp")
    body = {name: pool.to_json() for name, pool in pools.items()}
    temp.write_text(json.dumps(body, indent=2), encoding="utf-8")
    os.replace(temp, path)
    log.info("Data written to '%s' successfully.", path)
    return path