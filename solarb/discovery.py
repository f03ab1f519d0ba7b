"""Discovery of on-chain pools that hold given tokens."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from solarb.markets.meteora import fetch_new_meteora_pools
from solarb.markets.orca_whirlpools import fetch_new_orca_whirlpools
from solarb.markets.raydium import fetch_new_raydium_pools
from solarb.markets.types import Market
from solarb.rpc import RpcClient

log = logging.getLogger(__name__)

Fetcher = Callable[[RpcClient, str, bool], list[tuple[str, Market]]]

_EXCHANGES: tuple[tuple[str, Fetcher], ...] = (
    ("Orca", fetch_new_orca_whirlpools),
    ("Raydium", fetch_new_raydium_pools),
    ("Meteora", fetch_new_meteora_pools),
)
_NOT_COVERED = "Note: RAYDIUM_CLMM and some ORCA pool types are not included in this search"


async def _fetch_from_exchange(rpc: RpcClient, token: str, fetch: Fetcher) -> dict[str, Market]:
    as_b, as_a = await asyncio.gather(
        asyncio.to_thread(fetch, rpc, token, False),
        asyncio.to_thread(fetch, rpc, token, True),
    )
    return {**dict(as_b), **dict(as_a)}


async def fetch_pools_for_token(
    rpc: RpcClient, token_address: str, delay: float = 0.5
) -> dict[str, Market]:
    """Pools of every supported exchange holding the token, by pool address."""
    markets: dict[str, Market] = {}
    for name, fetch in _EXCHANGES:
        log.debug("Fetching %s pools for token %s", name, token_address)
        found = await _fetch_from_exchange(rpc, token_address, fetch)
        markets.update(found)
        log.debug("Found %d %s pools for token %s", len(found), name, token_address)
        await asyncio.sleep(delay)
    return markets


def _tokens_to_process(tokens: Iterable[str]) -> list[str]:
    tokens = list(tokens)
    if not tokens:
        raise ValueError("at least one token is needed")
    return tokens[1:]


async def get_fresh_pools(
    rpc: RpcClient, tokens: Iterable[str], delay: float = 1.0
) -> dict[str, Market]:
    """Pools for every token but the first, one token at a time."""
    rest = _tokens_to_process(tokens)
    log.debug("Starting pool discovery for %d tokens", len(rest) + 1)
    markets: dict[str, Market] = {}
    for number, token in enumerate(rest, start=1):
        log.info("Processing token %d/%d: %s", number, len(rest), token)
        found = await fetch_pools_for_token(rpc, token, delay / 2)
        markets.update(found)
        log.info("Added %d pools for token %s", len(found), token)
        if number < len(rest):
            await asyncio.sleep(delay)
    log.info("Pool discovery completed. Total pools found: %d", len(markets))
    log.warning(_NOT_COVERED)
    return markets


async def get_fresh_pools_concurrent(rpc: RpcClient, tokens: Iterable[str]) -> dict[str, Market]:
    """Pools for every token but the first, all tokens at once."""
    rest = _tokens_to_process(tokens)
    log.debug("Starting concurrent pool discovery for %d tokens", len(rest) + 1)
    results = await asyncio.gather(*(fetch_pools_for_token(rpc, token) for token in rest))
    markets: dict[str, Market] = {}
    for found in results:
        markets.update(found)
    log.info("Concurrent pool discovery completed. Total pools found: %d", len(markets))
    log.warning(_NOT_COVERED)
    return markets