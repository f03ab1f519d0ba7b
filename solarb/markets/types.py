"""Core market types shared by every DEX loader."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

DEFAULT_CACHE_DIR = Path("src/markets/cache")


class DexLabel(Enum):
    """The decentralised exchanges the bot knows about."""

    ORCA = "ORCA"
    ORCA_WHIRLPOOLS = "ORCA_WHIRLPOOLS"
    RAYDIUM = "RAYDIUM"
    RAYDIUM_CLMM = "RAYDIUM_CLMM"
    METEORA = "METEORA"

    def display_name(self) -> str:
        """Human readable name of the exchange."""
        return _DISPLAY_NAMES[self]

    def api_url(self) -> str:
        """URL of the public API listing the exchange's pools."""
        return _API_URLS[self]


_DISPLAY_NAMES = {
    DexLabel.ORCA: "Orca",
    DexLabel.ORCA_WHIRLPOOLS: "Orca (Whirlpools)",
    DexLabel.RAYDIUM: "Raydium",
    DexLabel.RAYDIUM_CLMM: "Raydium CLMM",
    DexLabel.METEORA: "Meteora",
}

_API_URLS = {
    DexLabel.ORCA: "https://api.orca.so/allPools",
    DexLabel.ORCA_WHIRLPOOLS: "https://api.mainnet.orca.so/v1/whirlpool/list",
    DexLabel.RAYDIUM: "https://api.raydium.io/v2/main/pairs",
    DexLabel.RAYDIUM_CLMM: "https://api.raydium.io/v2/ammV3/ammPools",
    DexLabel.METEORA: "https://dlmm-api.meteora.ag/pair/all",
}


def to_pair_string(mint_a: str, mint_b: str) -> str:
    """Order-independent key for a pair of token mints."""
    low, high = (mint_a, mint_b) if mint_a < mint_b else (mint_b, mint_a)
    return f"{low}/{high}"


@dataclass
class Market:
    """One pool on one exchange, trading two tokens."""

    token_mint_a: str
    token_vault_a: str
    token_mint_b: str
    token_vault_b: str
    dex_label: DexLabel
    fee: int
    id: str
    account_data: bytes | None = None
    liquidity: int | None = None


@dataclass
class PoolItem:
    """Compact description of a pool as listed by an exchange."""

    mint_a: str
    mint_b: str
    vault_a: str
    vault_b: str
    trade_fee_rate: int


@dataclass(frozen=True)
class TokenInfo:
    """Mint address, symbol and decimals of a token."""

    address: str
    symbol: str
    decimals: int


@dataclass(frozen=True)
class Route:
    """One hop of an arbitrage path through a pool."""

    pool_address: str
    token_0to1: bool
    dex: DexLabel | None = None


@dataclass
class Dex:
    """Markets of one exchange, grouped by token pair."""

    label: DexLabel
    pair_to_markets: dict[str, list[Market]] = field(default_factory=dict)

    def add_market(self, market: Market) -> None:
        """File a market under its pair key."""
        key = to_pair_string(market.token_mint_a, market.token_mint_b)
        self.pair_to_markets.setdefault(key, []).append(market)

    def markets_for_pair(self, mint_a: str, mint_b: str) -> list[Market]:
        """Markets trading the two mints, in either order; KeyError if none."""
        return self.pair_to_markets[to_pair_string(mint_a, mint_b)]

    def all_markets(self) -> list[list[Market]]:
        """Every group of markets, one list per pair."""
        return list(self.pair_to_markets.values())


@dataclass
class LoadedDex:
    """A Dex together with the pool items it was built from."""

    dex: Dex
    pools: list[PoolItem] = field(default_factory=list)


@dataclass(frozen=True)
class SimulationResult:
    """Quote returned by the swap simulator."""

    amount_in: str
    estimated_amount_out: str
    estimated_min_amount_out: str | None = None


class SimulationError(Exception):
    """The swap simulator reported an error or answered unexpectedly."""


def parse_simulation_response(text: str) -> SimulationResult:
    """Read a simulator reply; raise SimulationError for errors."""
    try:
        body = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        raise SimulationError("Unexpected response format") from None
    if isinstance(body, dict):
        amount_in = body.get("amountIn")
        amount_out = body.get("estimatedAmountOut")
        min_out = body.get("estimatedMinAmountOut")
        if (
            isinstance(amount_in, str)
            and isinstance(amount_out, str)
            and (min_out is None or isinstance(min_out, str))
        ):
            return SimulationResult(amount_in, amount_out, min_out)
        if isinstance(body.get("error"), str):
            raise SimulationError(body["error"])
    raise SimulationError("Unexpected response format")