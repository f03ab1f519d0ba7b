import json
import struct

import httpx
import pytest

from solarb.markets.raydium import (
    AMM_INFO_SIZE,
    CACHE_FILE,
    PROGRAM_ID,
    build_raydium_dex,
    fetch_data_raydium,
    fetch_new_raydium_pools,
    load_raydium,
    parse_raydium_pools,
    raydium_quote_params,
    simulate_route_raydium,
    unpack_amm_info,
    unpack_market_state_v3,
)
from solarb.markets.types import (
    DexLabel,
    Market,
    Route,
    SimulationError,
    TokenInfo,
    to_pair_string,
)
from solarb.rpc import b58encode, data_size_filter, memcmp_filter

NUMBER_KEYS = [
    "liquidity", "volume24h", "volume24hQuote", "fee24h", "fee24hQuote", "volume7d",
    "volume7dQuote", "fee7d", "fee7dQuote", "volume30d", "volume30dQuote", "fee30d",
    "fee30dQuote", "price", "lpPrice", "tokenAmountCoin", "tokenAmountPc", "tokenAmountLp",
    "apr24h", "apr7d", "apr30d",
]


def pool_entry(name="SOL-USDC", base="MintBase", quote="MintQuote", amm="AmmOne", **numbers):
    entry = {
        "name": name,
        "ammId": amm,
        "lpMint": "LpMint",
        "baseMint": base,
        "quoteMint": quote,
        "market": "MarketKey",
    }
    for key in NUMBER_KEYS:
        entry[key] = 1.0
    entry.update(numbers)
    return entry


def amm_bytes(coin_mint=bytes([7]) * 32, pc_mint=bytes([9]) * 32, numerator=30, denominator=3):
    head = struct.pack("<16Q", *range(1, 17))
    fees = struct.pack("<8Q", 1, 2, numerator, denominator, 5, 6, 7, 8)
    state = (
        struct.pack("<8Q", *range(11, 19))
        + (100).to_bytes(16, "little")
        + (200).to_bytes(16, "little")
        + struct.pack("<Q", 300)
        + (400).to_bytes(16, "little")
        + (500).to_bytes(16, "little")
        + struct.pack("<Q", 600)
    )
    keys = bytes([1]) * 32 + bytes([2]) * 32 + coin_mint + pc_mint
    keys += b"".join(bytes([k]) * 32 for k in range(3, 8))
    tail = struct.pack("<8Q", *range(8)) + bytes([20]) * 32 + struct.pack("<4Q", 777, 888, 0, 0)
    return head + fees + state + keys + tail


def market_state_bytes():
    return (
        b"serum"
        + bytes(8)
        + bytes([1]) * 32
        + struct.pack("<Q", 5)
        + bytes([2]) * 32
        + bytes([3]) * 32
        + bytes([4]) * 32
        + struct.pack("<QQ", 10, 11)
        + bytes([5]) * 32
        + struct.pack("<QQQ", 12, 13, 14)
        + b"".join(bytes([k]) * 32 for k in range(6, 10))
        + struct.pack("<4Q", 15, 16, 17, 18)
        + b"padding"
    )


class FakeRpc:
    def __init__(self, accounts):
        self.accounts = accounts
        self.calls = []

    def get_program_accounts(self, program_id, filters=None):
        self.calls.append((program_id, filters))
        return self.accounts


TOKENS = {
    "MintBase": TokenInfo("MintBase", "SOL", 9),
    "MintQuote": TokenInfo("MintQuote", "USDC", 6),
}


def raydium_market():
    return Market("MintBase", "MintBase", "MintQuote", "MintQuote", DexLabel.RAYDIUM, 0, "AmmOne")


def test_parse_accepts_strings_numbers_and_null():
    entry = pool_entry(liquidity="2.5", volume7d=42, price=None)
    (pool,) = parse_raydium_pools(json.dumps([entry]))
    assert pool.liquidity == 2.5
    assert pool.volume7d == 42.0
    assert pool.price == 0.0
    assert pool.amm_id == "AmmOne"
    assert pool.lp_price == 1.0


@pytest.mark.parametrize("bad", [True, [1], {"a": 1}, "abc", " 1.0"])
def test_parse_rejects_bad_numbers(bad):
    with pytest.raises(ValueError):
        parse_raydium_pools([pool_entry(fee7d=bad)])


def test_parse_rejects_missing_field_and_non_list():
    entry = pool_entry()
    del entry["apr30d"]
    with pytest.raises(ValueError):
        parse_raydium_pools([entry])
    with pytest.raises(ValueError):
        parse_raydium_pools({"data": []})


def test_to_borsh_layout():
    (pool,) = parse_raydium_pools([pool_entry(name="AB", apr30d=3.25)])
    raw = pool.to_borsh()
    assert raw.startswith(struct.pack("<I", 2) + b"AB")
    assert raw.endswith(struct.pack("<d", 3.25))
    strings = sum(4 + len(s.encode()) for s in ["AB", "AmmOne", "LpMint", "MintBase", "MintQuote", "MarketKey"])
    assert len(raw) == strings + 8 * len(NUMBER_KEYS)


def test_to_borsh_rejects_nan():
    (pool,) = parse_raydium_pools([pool_entry(price="NaN")])
    with pytest.raises(ValueError):
        pool.to_borsh()


def test_build_groups_pairs_and_uses_mints_as_vaults():
    pools = parse_raydium_pools([
        pool_entry(amm="One", liquidity=1234.9, volume7d=56.7),
        pool_entry(amm="Two", base="MintQuote", quote="MintBase"),
    ])
    loaded = build_raydium_dex(pools)
    markets = loaded.dex.markets_for_pair("MintBase", "MintQuote")
    assert [m.id for m in markets] == ["One", "Two"]
    first = markets[0]
    assert first.token_vault_a == first.token_mint_a == "MintBase"
    assert first.fee == int(pools[0].volume7d)
    assert first.liquidity == int(pools[0].liquidity)
    assert first.account_data == pools[0].to_borsh()
    assert loaded.pools[0].trade_fee_rate == first.fee
    assert list(loaded.dex.pair_to_markets) == [to_pair_string("MintBase", "MintQuote")]


def test_build_saturates_negative_values():
    pools = parse_raydium_pools([pool_entry(volume7d=-5, liquidity="-1")])
    market = build_raydium_dex(pools).dex.all_markets()[0][0]
    assert market.fee == 0
    assert market.liquidity == 0


def test_load_raydium_from_cache(tmp_path):
    (tmp_path / CACHE_FILE).write_text(json.dumps([pool_entry(amm="Cached")]), encoding="utf-8")
    loaded = load_raydium(tmp_path)
    assert loaded.dex.label is DexLabel.RAYDIUM
    assert [m.id for m in loaded.dex.markets_for_pair("MintQuote", "MintBase")] == ["Cached"]


@pytest.mark.asyncio
async def test_fetch_data_writes_cache(tmp_path):
    body = json.dumps([pool_entry(liquidity="7.5")])

    def handler(request):
        assert str(request.url) == DexLabel.RAYDIUM.api_url()
        return httpx.Response(200, text=body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        path = await fetch_data_raydium(tmp_path, client)
    assert path == tmp_path / CACHE_FILE
    assert parse_raydium_pools(path.read_text()) == parse_raydium_pools(body)


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [httpx.Response(500, text="[]"), httpx.Response(200, text='{"x": 1}')])
async def test_fetch_data_failure_writes_nothing(tmp_path, response):
    transport = httpx.MockTransport(lambda request: response)
    async with httpx.AsyncClient(transport=transport) as client:
        result = await fetch_data_raydium(tmp_path, client)
    assert result is None
    assert not (tmp_path / CACHE_FILE).exists()


def test_unpack_amm_info_fields():
    data = amm_bytes()
    assert len(data) == AMM_INFO_SIZE
    assert data[400:432] == bytes([7]) * 32
    info = unpack_amm_info(data)
    assert info.status == 1
    assert info.sys_decimal_value == 16
    assert info.fees.trade_fee_numerator == 30
    assert info.state_data.padding == (16, 17)
    assert info.state_data.swap_coin_in_amount == 100
    assert info.state_data.swap_acc_coin_fee == 600
    assert info.coin_vault == b58encode(bytes([1]) * 32)
    assert info.coin_vault_mint == b58encode(bytes([7]) * 32)
    assert info.pc_vault_mint == b58encode(bytes([9]) * 32)
    assert info.amm_owner == b58encode(bytes([20]) * 32)
    assert (info.lp_amount, info.client_order_id) == (777, 888)


@pytest.mark.parametrize("size_change", [-1, 1])
def test_unpack_amm_info_requires_exact_size(size_change):
    data = amm_bytes()
    data = data[:-1] if size_change < 0 else data + b"\0"
    with pytest.raises(ValueError):
        unpack_amm_info(data)


def test_unpack_market_state_v3():
    state = unpack_market_state_v3(market_state_bytes())
    assert state.func_signature == b"serum"
    assert state.nope == b"padding"
    assert state.vault_signer_nonce == 5
    assert state.base_mint == b58encode(bytes([2]) * 32)
    assert state.quote_vault == b58encode(bytes([5]) * 32)
    assert state.asks == b58encode(bytes([9]) * 32)
    assert (state.base_lot_size, state.referrer_rebates_accrued) == (15, 18)
    with pytest.raises(ValueError):
        unpack_market_state_v3(market_state_bytes()[:-1])


@pytest.mark.parametrize("on_token_a, offset", [(True, 400), (False, 432)])
def test_fetch_new_raydium_pools(on_token_a, offset):
    data = amm_bytes()
    rpc = FakeRpc([("PoolKey", data)])
    token = b58encode(bytes([7]) * 32)
    ((pubkey, market),) = fetch_new_raydium_pools(rpc, token, on_token_a)
    assert rpc.calls == [(PROGRAM_ID, [memcmp_filter(offset, token), data_size_filter(752)])]
    assert pubkey == market.id == "PoolKey"
    assert market.token_mint_a == b58encode(bytes([7]) * 32)
    assert market.token_vault_b == b58encode(bytes([2]) * 32)
    assert market.fee == 10
    assert market.liquidity == 666
    assert market.account_data == data


def test_fetch_new_raydium_pools_zero_denominator():
    rpc = FakeRpc([("PoolKey", amm_bytes(denominator=0))])
    with pytest.raises(ZeroDivisionError):
        fetch_new_raydium_pools(rpc, "Token", True)


def test_quote_params_both_directions():
    market = raydium_market()
    forward = raydium_quote_params(Route("AmmOne", True), market, TOKENS, 1000)
    assert forward == (
        "poolKeys=AmmOne&amountIn=1000&currencyIn=MintBase&decimalsIn=9&symbolTokenIn=SOL"
        "&currencyOut=MintQuote&decimalsOut=6&symbolTokenOut=USDC"
    )
    backward = raydium_quote_params(Route("AmmOne", False), market, TOKENS, 5)
    assert backward == (
        "poolKeys=AmmOne&amountIn=5&currencyIn=MintQuote&decimalsIn=6&symbolTokenIn=USDC"
        "&currencyOut=MintBase&decimalsOut=9&symbolTokenOut=SOL"
    )


def test_quote_params_unknown_token():
    with pytest.raises(KeyError):
        raydium_quote_params(Route("AmmOne", True), raydium_market(), {}, 1)


@pytest.mark.asyncio
async def test_simulate_route_success():
    def handler(request):
        assert request.url.path == "/raydium_quote"
        assert request.url.params["poolKeys"] == "AmmOne"
        return httpx.Response(
            200, json={"amountIn": "1000", "estimatedAmountOut": "990", "estimatedMinAmountOut": "980"}
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        result = await simulate_route_raydium(
            "http://localhost/", 1000, Route("AmmOne", True), raydium_market(), TOKENS, client, True
        )
    assert result == ("990", "980")


@pytest.mark.asyncio
async def test_simulate_route_missing_min_out():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"amountIn": "1", "estimatedAmountOut": "2"})
    )
    async with httpx.AsyncClient(transport=transport) as client:
        result = await simulate_route_raydium(
            "http://localhost/", 1, Route("AmmOne", False), raydium_market(), TOKENS, client
        )
    assert result == ("2", "")


@pytest.mark.asyncio
async def test_simulate_route_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"error": "no route"}))
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(SimulationError, match="no route"):
            await simulate_route_raydium(
                "http://localhost/", 1, Route("AmmOne", True), raydium_market(), TOKENS, client
            )