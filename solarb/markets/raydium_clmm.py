"""Raydium concentrated-liquidity pools."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from websockets.exceptions import ConnectionClosed

from solarb.markets.types import DEFAULT_CACHE_DIR, Dex, DexLabel, LoadedDex, Market, PoolItem
from solarb.rpc import account_subscribe

log = logging.getLogger(__name__)

CACHE_FILE = "raydiumclmm-markets.json"


@dataclass(frozen=True)
class RaydiumClmmPool:
    """A CLMM pool as listed by the Raydium API."""

    id: str
    mint_a: str
    mint_b: str
    vault_a: str
    vault_b: str
    mint_decimals_a: int
    mint_decimals_b: int
    trade_fee_rate: int
    tick_spacing: int
    tvl: float
    price: float
    raw: dict = field(default_factory=dict, repr=False, compare=False)


def _field(entry: dict, key: str, kind: type | tuple) -> Any:
    value = entry.get(key)
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ValueError(f"Raydium CLMM pool field {key!r} missing or invalid")
    return value


def _pool_from_entry(entry: Any) -> RaydiumClmmPool:
    if not isinstance(entry, dict):
        raise ValueError("Raydium CLMM pool entry is not an object")
    config = entry.get("ammConfig")
    if not isinstance(config, dict):
        raise ValueError("Raydium CLMM pool field 'ammConfig' missing or invalid")
    number = (int, float)
    return RaydiumClmmPool(
        id=_field(entry, "id", str),
        mint_a=_field(entry, "mintA", str),
        mint_b=_field(entry, "mintB", str),
        vault_a=_field(entry, "vaultA", str),
        vault_b=_field(entry, "vaultB", str),
        mint_decimals_a=_field(entry, "mintDecimalsA", int),
        mint_decimals_b=_field(entry, "mintDecimalsB", int),
        trade_fee_rate=_field(config, "tradeFeeRate", int),
        tick_spacing=_field(config, "tickSpacing", int),
        tvl=float(_field(entry, "tvl", number)),
        price=float(_field(entry, "price", number)),
        raw=entry,
    )


def parse_clmm_pools(payload: str | bytes | dict) -> list[RaydiumClmmPool]:
    """Pools from an API reply or cache file; ValueError if malformed."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise ValueError("Raydium CLMM payload has no 'data' list")
    return [_pool_from_entry(entry) for entry in payload["data"]]


def build_raydium_clmm_dex(pools: Iterable[RaydiumClmmPool]) -> LoadedDex:
    """Group the pools into a Dex, keeping a PoolItem for each."""
    loaded = LoadedDex(Dex(DexLabel.RAYDIUM_CLMM))
    for pool in pools:
        loaded.pools.append(
            PoolItem(pool.mint_a, pool.mint_b, pool.vault_a, pool.vault_b, pool.trade_fee_rate)
        )
        loaded.dex.add_market(
            Market(
                token_mint_a=pool.mint_a,
                token_vault_a=pool.vault_a,
                token_mint_b=pool.mint_b,
                token_vault_b=pool.vault_b,
                dex_label=DexLabel.RAYDIUM_CLMM,
                fee=pool.trade_fee_rate,
                id=pool.id,
            )
        )
    return loaded


def load_raydium_clmm(cache_dir: str | Path = DEFAULT_CACHE_DIR) -> LoadedDex:
    """Build the Raydium CLMM Dex from the cached pool list."""
    pools = parse_clmm_pools(Path(cache_dir, CACHE_FILE).read_text(encoding="utf-8"))
    log.info("Raydium CLMM: %d pools found", len(pools))
    return build_raydium_clmm_dex(pools)


@contextlib.asynccontextmanager
async def _http_client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
    else:
        async with httpx.AsyncClient(timeout=30.0) as own:
            yield own


async def fetch_data_raydium_clmm(
    cache_dir: str | Path = DEFAULT_CACHE_DIR, client: httpx.AsyncClient | None = None
) -> Path | None:
    """Download the pool list into the cache; None if the API refused."""
    async with _http_client(client) as http:
        response = await http.get(DexLabel.RAYDIUM_CLMM.api_url())
    if not response.is_success:
        log.error("Fetch of '%s' not successful: %s", CACHE_FILE, response.status_code)
        return None
    pools = parse_clmm_pools(response.text)
    path = Path(cache_dir, CACHE_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"data": [pool.raw for pool in pools]}), encoding="utf-8")
    log.info("Data written to '%s' successfully.", CACHE_FILE)
    return path


async def stream_raydium_clmm(url: str, account: str) -> int:
    """Print every update of a pool account; return how many arrived."""
    count = 0
    try:
        async for _slot, data in account_subscribe(url, account, encoding="jsonParsed"):
            count += 1
            print(f"account subscription data response: {data!r}")
    except ConnectionClosed as exc:
        log.error("account subscription error: %s", exc)
    return count