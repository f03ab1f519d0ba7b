"""Live updates of Orca token-swap pool accounts."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from solarb.markets.orca import TokenSwapLayout, unpack_token_swap
from solarb.rpc import account_subscribe

log = logging.getLogger(__name__)
metrics_log = logging.getLogger("orca_pool_metrics")
detail_log = logging.getLogger("orca_pool_detailed")

TRACE = 5
RECONNECT_DELAY = 5.0
MAX_RECONNECT_ATTEMPTS = 10
HEARTBEAT_INTERVAL = 30.0
STALE_AFTER = 300.0
LOG_RATE_LIMIT_SECONDS = 10


def pool_metrics_line(layout: TokenSwapLayout, account: str, slot: int) -> str:
    """One structured line describing a pool update."""
    return (
        f"pool_update timestamp={int(time.time())} account={account} slot={slot} "
        f"mint_a={layout.mint_a} mint_b={layout.mint_b} "
        f"token_vault_a={layout.token_account_a} token_vault_b={layout.token_account_b} "
        f"fee_rate={layout.trade_fee_percent():.4f}% "
        f"fee_num={layout.trade_fee_numerator} fee_denom={layout.trade_fee_denominator} "
        f"owner_fee_num={layout.owner_trade_fee_numerator} "
        f"owner_fee_denom={layout.owner_trade_fee_denominator} "
        f"host_fee_num={layout.host_fee_numerator} host_fee_denom={layout.host_fee_denominator} "
        f"initialized={str(layout.is_initialized).lower()} version={layout.version} "
        f"curve_type={layout.curve_type}"
    )


def _detail_line(layout: TokenSwapLayout, account: str) -> str:
    return (
        f"pool_detail account={account} pool_token={layout.token_pool} "
        f"fee_account={layout.fee_account} bump_seed={layout.bump_seed} "
        f"owner_withdraw_fee_num={layout.owner_withdraw_fee_numerator} "
        f"owner_withdraw_fee_denom={layout.owner_withdraw_fee_denominator} "
        f"curve_params={list(layout.curve_parameters[:8])}"
    )


def _log_pool_metrics(layout: TokenSwapLayout, account: str, slot: int) -> None:
    if not metrics_log.isEnabledFor(logging.DEBUG):
        return
    metrics_log.debug("%s", pool_metrics_line(layout, account, slot))
    if detail_log.isEnabledFor(TRACE):
        detail_log.log(TRACE, "%s", _detail_line(layout, account))


class RateLimitedMetricsLogger:
    """Logs pool metrics at most once per interval for each account."""

    def __init__(self, interval: int = LOG_RATE_LIMIT_SECONDS, logger: logging.Logger | None = None):
        self.interval = interval
        self.logger = logger or metrics_log
        self._last: dict[str, int] = {}

    def log(self, layout: TokenSwapLayout, account: str, slot: int, now: int | None = None) -> bool:
        """Log the metrics unless disabled or too recent; return whether it logged."""
        if not self.logger.isEnabledFor(logging.DEBUG):
            return False
        if now is None:
            now = int(time.time())
        last = self._last.get(account)
        if last is not None and now - last < self.interval:
            return False
        self._last[account] = now
        self.logger.debug(
            "pool_metrics timestamp=%s account=%s slot=%s mint_a=%s mint_b=%s "
            "fee_rate=%.4f%% initialized=%s version=%s last_log_interval=%ss",
            now,
            account,
            slot,
            layout.mint_a,
            layout.mint_b,
            layout.trade_fee_percent(),
            str(layout.is_initialized).lower(),
            layout.version,
            self.interval,
        )
        return True


@dataclass
class _StreamState:
    updates: int = 0
    last_update: float = field(default_factory=time.monotonic)


async def _heartbeat(account: str, state: _StreamState) -> None:
    while True:
        await asyncio.sleep(HEARTBEAT_INTERVAL)
        idle = time.monotonic() - state.last_update
        log.info(
            "Stream health check for %s - Updates received: %d, Last update: %.1fs ago",
            account,
            state.updates,
            idle,
        )
        if idle > STALE_AFTER:
            log.warning(
                "No updates received for %d seconds, connection may be stale", int(idle)
            )


def _process_update(account: str, slot: int, data: bytes, state: _StreamState) -> None:
    try:
        layout = unpack_token_swap(data)
    except ValueError as exc:
        log.error("Failed to unpack account data for %s: %s", account, exc)
        return
    state.updates += 1
    state.last_update = time.monotonic()
    log.info(
        "Orca Pool Update #%d - Account: %s | Mint A: %s | Mint B: %s | Fee: %.4f%% | Slot: %s",
        state.updates,
        account,
        layout.mint_a,
        layout.mint_b,
        layout.trade_fee_percent(),
        slot,
    )
    _log_pool_metrics(layout, account, slot)


async def _stream_once(url: str, account: str, state: _StreamState) -> None:
    heartbeat = asyncio.create_task(_heartbeat(account, state))
    try:
        subscription = account_subscribe(url, account, encoding="base64", commitment="confirmed")
        log.info("Subscribing to stream for account: %s", account)
        async for slot, data in subscription:
            _process_update(account, slot, data, state)
    finally:
        heartbeat.cancel()
    raise ConnectionError(f"account subscription for {account} closed")


async def stream_orca(
    url: str,
    account: str,
    max_attempts: int | None = None,
    reconnect_delay: float | None = None,
) -> None:
    """Follow a pool account until cancelled; ConnectionError once reconnects run out."""
    allowed = MAX_RECONNECT_ATTEMPTS if max_attempts is None else max_attempts
    delay = RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
    log.info("Starting Orca pool stream for account: %s", account)
    state = _StreamState()
    attempts = 0
    while True:
        try:
            await _stream_once(url, account, state)
        except asyncio.CancelledError:
            log.info("Stream for %s cancelled, closing", account)
            raise
        except Exception as exc:
            attempts += 1
            log.error("Stream error (attempt %d/%d): %s", attempts, allowed, exc)
            if attempts >= allowed:
                log.error("Max reconnection attempts reached. Giving up.")
                raise ConnectionError(
                    f"stream for {account} failed after {attempts} attempts"
                ) from exc
            log.warning("Reconnecting in %s seconds...", delay)
            await asyncio.sleep(delay)


async def stream_multiple_orca_pools(url: str, accounts: Iterable[str]) -> dict[str, BaseException]:
    """Stream several pools at once; return the error each failed stream ended with."""
    accounts = list(accounts)
    log.info("Starting streams for %d Orca pools", len(accounts))
    results = await asyncio.gather(
        *(stream_orca(url, account) for account in accounts), return_exceptions=True
    )
    failures: dict[str, BaseException] = {}
    for account, result in zip(accounts, results):
        if isinstance(result, BaseException):
            log.error("Stream failed for account %s: %s", account, result)
            failures[account] = result
    return failures