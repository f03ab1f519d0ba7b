"""Loading every supported DEX's pools."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from solarb.markets.meteora import fetch_data_meteora, load_meteora
from solarb.markets.orca import fetch_data_orca, load_orca
from solarb.markets.orca_whirlpools import fetch_data_orca_whirlpools, load_orca_whirlpools
from solarb.markets.raydium import fetch_data_raydium, load_raydium
from solarb.markets.raydium_clmm import fetch_data_raydium_clmm, load_raydium_clmm
from solarb.markets.types import DEFAULT_CACHE_DIR, Dex
from solarb.rpc import RpcClient

log = logging.getLogger(__name__)

_FETCHERS = (
    fetch_data_raydium_clmm,
    fetch_data_orca,
    fetch_data_orca_whirlpools,
    fetch_data_raydium,
    fetch_data_meteora,
)


async def _refresh_caches(cache_dir: str | Path) -> None:
    async with httpx.AsyncClient(timeout=30.0) as client:
        for fetch in _FETCHERS:
            try:
                await fetch(cache_dir, client)
            except Exception as exc:
                log.error("Refreshing cache with %s failed: %s", fetch.__name__, exc)


async def load_all_pools(
    rpc: RpcClient, cache_dir: str | Path = DEFAULT_CACHE_DIR, refetch: bool = False
) -> list[Dex]:
    """Dexes for Raydium CLMM, Orca, Orca Whirlpools, Raydium and Meteora, in that order."""
    if refetch:
        await _refresh_caches(cache_dir)
    loaded = [
        load_raydium_clmm(cache_dir),
        load_orca(rpc, cache_dir),
        load_orca_whirlpools(rpc, cache_dir),
        load_raydium(cache_dir),
        load_meteora(cache_dir),
    ]
    return [item.dex for item in loaded]