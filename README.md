# solarb

A library for working with liquidity pools on Solana decentralised exchanges:
Raydium AMM v4, Raydium CLMM, Orca token-swap, Orca Whirlpools and Meteora DLMM.

It can:

- download each exchange's pool list from its public API and cache it as JSON;
- build `Dex` objects from those caches (and, for Orca and Whirlpools, from
  on-chain accounts), with markets grouped by token pair;
- decode raw on-chain pool accounts into dataclasses;
- find pools holding a given token through JSON-RPC `getProgramAccounts`;
- ask an external quote simulator service for swap estimates;
- follow pool accounts over a websocket `accountSubscribe` stream.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Core types (`solarb.markets.types`)

- `DexLabel` – `ORCA`, `ORCA_WHIRLPOOLS`, `RAYDIUM`, `RAYDIUM_CLMM`, `METEORA`,
  with `display_name()` and `api_url()`.
- `Market` – one pool: mints, vaults, label, fee, id, optional raw
  `account_data` and `liquidity`.
- `Dex` – markets of one exchange keyed by pair. `add_market(market)`,
  `markets_for_pair(mint_a, mint_b)` (raises `KeyError` when the pair is
  unknown) and `all_markets()`.
- `to_pair_string(a, b)` – the pair key; argument order does not matter.
- `LoadedDex` – a `Dex` together with the `PoolItem` list it was built from.
- `TokenInfo`, `Route`, `SimulationResult`, `SimulationError` and
  `parse_simulation_response(text)`.

## RPC client (`solarb.rpc`)

`RpcClient(url, commitment="confirmed", timeout=30.0)` is a blocking JSON-RPC
client over HTTP and can be used as a context manager. It offers
`get_multiple_accounts`, `get_program_accounts` (with `memcmp_filter` and
`data_size_filter`), `confirm_transaction`, `get_signature_status` and
`close`. Errors from the node or the network raise `RpcError`.

Also here: `b58encode` / `b58decode`, the async generator
`account_subscribe(url, pubkey, encoding, commitment)` yielding
`(slot, data)` pairs, `check_tx_status(client, signature, timeout, poll_interval)`
which polls until a transaction is confirmed or the timeout passes, and
`average(numbers)` (integer mean, rounded down).

## Loading cached markets

Cache files live by default in `src/markets/cache` (`DEFAULT_CACHE_DIR`); every
loader takes a `cache_dir` argument.

```python
import asyncio
from solarb.rpc import RpcClient
from solarb.markets.pools import load_all_pools

async def main():
    with RpcClient("https://rpc.example.com") as rpc:
        dexes = await load_all_pools(rpc, "cache", refetch=False)
        for dex in dexes:
            print(dex.label.display_name(), len(dex.all_markets()))

asyncio.run(main())
```

The list holds Raydium CLMM, Orca, Orca Whirlpools, Raydium and Meteora, in
that order. With `refetch=True` every cache file is first downloaded again;
a failing download is logged and the loaders then read whatever is in the cache.

Each exchange module can also be used on its own: `load_raydium_clmm`,
`load_orca`, `load_orca_whirlpools`, `load_raydium`, `load_meteora`, and the
matching async `fetch_data_*` functions that refresh one cache file.

## Discovering pools for tokens (`solarb.discovery`)

```python
from solarb.discovery import get_fresh_pools

markets = await get_fresh_pools(rpc, ["So1...first", "mint2", "mint3"], delay=1.0)
```

The first token is skipped (it is usually the base asset); every other token
is searched on Orca Whirlpools, Raydium and Meteora, as token A and as token B.
The result maps pool addresses to `Market` objects. An empty token list raises
`ValueError`. `get_fresh_pools_concurrent` searches all tokens at once, and
`fetch_pools_for_token` searches a single token. Raydium CLMM and Orca
token-swap pools are not searched.

## Decoding accounts

| Function | Module | Data |
| --- | --- | --- |
| `unpack_token_swap` | `solarb.markets.orca` | at least 324 bytes |
| `unpack_whirlpool` | `solarb.markets.orca_whirlpools` | at least 269 bytes |
| `unpack_amm_info` | `solarb.markets.raydium` | exactly 752 bytes |
| `unpack_market_state_v3` | `solarb.markets.raydium` | exactly 388 bytes |
| `unpack_lb_pair` | `solarb.markets.meteora` | exactly 904 bytes |

Data of the wrong size raises `ValueError`. Public keys come back as base58
strings.

## Quote simulation

`simulate_route_raydium`, `simulate_route_orca_whirlpools` and
`simulate_route_meteora` take the simulator's base URL, an amount, a `Route`,
a `Market` and a mapping of mint to `TokenInfo`, and return
`(estimated_out, minimum_out)` as strings. When the simulator gives no minimum,
Meteora returns the estimate again and the others return an empty string.
Errors reported by the simulator, or replies in an unknown shape, raise
`SimulationError`. The query strings alone are available from
`raydium_quote_params`, `whirlpool_quote_params` and `meteora_quote_params`.

## Streaming

`stream_raydium`, `stream_raydium_clmm` and `stream_orca_whirlpools` print each
account update and return how many arrived when the socket closes.
`solarb.markets.orca_stream.stream_orca` follows an Orca token-swap pool with
logging, a heartbeat and reconnection, raising `ConnectionError` once the
attempts run out; `stream_multiple_orca_pools` runs several streams and returns
the error each failed one ended with. `RateLimitedMetricsLogger` and
`pool_metrics_line` format per-pool metrics for logging.

## What this package does not do

It has no command-line program. It does not build, sign or send transactions,
and it does not search for or execute arbitrage routes; it only loads, decodes
and quotes pools. Quotes come from a separate simulator service that you must
run and point the functions at.