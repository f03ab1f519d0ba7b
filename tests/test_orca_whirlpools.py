import json

import httpx
import pytest

from solarb.markets import orca_whirlpools as ow
from solarb.markets.types import DexLabel, Route, SimulationError, TokenInfo
from solarb.rpc import b58encode

CONFIG = bytes([1]) * 32
MINT_A = bytes([2]) * 32
VAULT_A = bytes([3]) * 32
MINT_B = bytes([4]) * 32
VAULT_B = bytes([5]) * 32
POOL_ADDR = b58encode(bytes([9]) * 32)


def make_account(liquidity=1000, fee_rate=3000, tick_spacing=64, tick=-12, size=653):
    buf = bytearray(size)
    buf[8:40] = CONFIG
    buf[40] = 254
    buf[41:43] = tick_spacing.to_bytes(2, "little")
    buf[43:45] = b"\x40\x00"
    buf[45:47] = fee_rate.to_bytes(2, "little")
    buf[47:49] = (300).to_bytes(2, "little")
    buf[49:65] = liquidity.to_bytes(16, "little")
    buf[65:81] = (1 << 64).to_bytes(16, "little")
    buf[81:85] = tick.to_bytes(4, "little", signed=True)
    buf[85:93] = (7).to_bytes(8, "little")
    buf[93:101] = (8).to_bytes(8, "little")
    buf[101:133] = MINT_A
    buf[133:165] = VAULT_A
    buf[165:181] = (11).to_bytes(16, "little")
    buf[181:213] = MINT_B
    buf[213:245] = VAULT_B
    buf[245:261] = (12).to_bytes(16, "little")
    buf[261:269] = (1700000000).to_bytes(8, "little")
    return bytes(buf)


def whirlpool_entry(address):
    return {
        "address": address,
        "tokenA": {"mint": b58encode(MINT_A), "symbol": "AAA", "decimals": 9},
        "tokenB": {"mint": b58encode(MINT_B), "symbol": "BBB", "decimals": 6},
        "whitelisted": True,
        "tickSpacing": 64,
        "price": 1.5,
        "lpFeeRate": 0.003,
        "protocolFeeRate": 0.03,
        "whirlpoolsConfig": b58encode(CONFIG),
    }


class FakeRpc:
    def __init__(self, accounts=None, program_accounts=None):
        self.accounts = accounts or {}
        self.program_accounts = program_accounts or []
        self.batches = []
        self.program_calls = []

    def get_multiple_accounts(self, pubkeys):
        keys = list(pubkeys)
        self.batches.append(keys)
        return [self.accounts.get(k) for k in keys]

    def get_program_accounts(self, program_id, filters=None):
        self.program_calls.append((program_id, filters))
        return list(self.program_accounts)


def test_unpack_reads_fields_at_source_offsets():
    acc = ow.unpack_whirlpool(make_account(liquidity=5000, fee_rate=3000, tick_spacing=64, tick=-12), POOL_ADDR)
    assert acc.address == POOL_ADDR
    assert acc.whirlpools_config == b58encode(CONFIG)
    assert acc.whirlpool_bump == 254
    assert acc.tick_spacing == 64
    assert acc.fee_rate == 3000
    assert acc.protocol_fee_rate == 300
    assert acc.liquidity == 5000
    assert acc.sqrt_price == 1 << 64
    assert acc.tick_current_index == -12
    assert (acc.protocol_fee_owed_a, acc.protocol_fee_owed_b) == (7, 8)
    assert acc.token_mint_a == b58encode(MINT_A)
    assert acc.token_vault_b == b58encode(VAULT_B)
    assert (acc.fee_growth_global_a, acc.fee_growth_global_b) == (11, 12)
    assert acc.reward_last_updated_timestamp == 1700000000


def test_unpack_default_address_is_zero_pubkey():
    acc = ow.unpack_whirlpool(make_account())
    assert acc.address == "1" * 32


def test_unpack_short_data_raises():
    with pytest.raises(ValueError):
        ow.unpack_whirlpool(make_account(size=268))


def test_parse_whirlpool_list():
    payload = json.dumps({"whirlpools": [whirlpool_entry(POOL_ADDR)], "hasMore": False})
    infos = ow.parse_whirlpool_list(payload)
    assert len(infos) == 1
    assert infos[0].address == POOL_ADDR
    assert infos[0].token_a_symbol == "AAA"
    assert infos[0].token_b_decimals == 6
    assert infos[0].tick_spacing == 64


@pytest.mark.parametrize("payload", [[], {"whirlpools": []}, {"whirlpools": [{"address": 1}], "hasMore": False}])
def test_parse_whirlpool_list_rejects_malformed(payload):
    with pytest.raises(ValueError):
        ow.parse_whirlpool_list(payload)


def test_build_dex_groups_by_pair_and_truncates_liquidity():
    acc = ow.unpack_whirlpool(make_account(liquidity=(1 << 64) + 5), POOL_ADDR)
    loaded = ow.build_whirlpool_dex([acc])
    markets = loaded.dex.markets_for_pair(b58encode(MINT_B), b58encode(MINT_A))
    assert len(markets) == 1
    assert markets[0].id == POOL_ADDR
    assert markets[0].dex_label is DexLabel.ORCA_WHIRLPOOLS
    assert markets[0].liquidity == 5
    assert markets[0].account_data is None
    assert loaded.pools[0].trade_fee_rate == acc.fee_rate


def test_load_orca_whirlpools_batches(tmp_path):
    addresses = [b58encode(bytes([i + 1]) * 32) for i in range(150)]
    body = {"whirlpools": [whirlpool_entry(a) for a in addresses], "hasMore": False}
    (tmp_path / ow.CACHE_FILE).write_text(json.dumps(body))
    rpc = FakeRpc({a: make_account() for a in addresses})
    loaded = ow.load_orca_whirlpools(rpc, tmp_path)
    assert [len(b) for b in rpc.batches] == [100, 50]
    assert len(loaded.pools) == 150
    ids = {m.id for group in loaded.dex.all_markets() for m in group}
    assert ids == set(addresses)


def test_load_orca_whirlpools_missing_account(tmp_path):
    body = {"whirlpools": [whirlpool_entry(POOL_ADDR)], "hasMore": False}
    (tmp_path / ow.CACHE_FILE).write_text(json.dumps(body))
    with pytest.raises(ValueError):
        ow.load_orca_whirlpools(FakeRpc(), tmp_path)


@pytest.mark.parametrize("on_token_a, offset", [(True, 101), (False, 181)])
def test_fetch_new_orca_whirlpools_filters(on_token_a, offset):
    data = make_account()
    rpc = FakeRpc(program_accounts=[(POOL_ADDR, data)])
    token = b58encode(MINT_A)
    result = ow.fetch_new_orca_whirlpools(rpc, token, on_token_a)
    program, filters = rpc.program_calls[0]
    assert program == "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
    assert filters[0]["memcmp"]["offset"] == offset
    assert filters[0]["memcmp"]["bytes"] == token
    assert filters[1] == {"dataSize": 653}
    pubkey, market = result[0]
    assert pubkey == POOL_ADDR
    assert market.id == POOL_ADDR
    assert market.account_data == data


def tokens():
    return {
        b58encode(MINT_A): TokenInfo(b58encode(MINT_A), "AAA", 9),
        b58encode(MINT_B): TokenInfo(b58encode(MINT_B), "BBB", 6),
    }


def market_with_data():
    acc = ow.unpack_whirlpool(make_account(), POOL_ADDR)
    rpc = FakeRpc(program_accounts=[(POOL_ADDR, make_account())])
    return ow.fetch_new_orca_whirlpools(rpc, acc.token_mint_a, True)[0][1]


def test_quote_params_direction():
    market = market_with_data()
    forward = ow.whirlpool_quote_params(Route(POOL_ADDR, True), market, tokens(), 1000)
    backward = ow.whirlpool_quote_params(Route(POOL_ADDR, False), market, tokens(), 1000)
    assert forward.startswith(f"poolId={POOL_ADDR}&tokenInKey={b58encode(MINT_A)}&tokenInDecimals=9&tokenInSymbol=AAA")
    assert f"tokenOutKey={b58encode(MINT_B)}&tokenOutDecimals=6&tokenOutSymbol=BBB" in forward
    assert f"tokenInKey={b58encode(MINT_B)}" in backward
    assert forward.endswith("&tickSpacing=64&amountIn=1000")


def test_quote_params_needs_account_data():
    market = market_with_data()
    market.account_data = None
    with pytest.raises(ValueError):
        ow.whirlpool_quote_params(Route(POOL_ADDR, True), market, tokens(), 1)


@pytest.mark.asyncio
async def test_simulate_route_success():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, json={"amountIn": "1000", "estimatedAmountOut": "990", "estimatedMinAmountOut": "980"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        out = await ow.simulate_route_orca_whirlpools(
            "http://localhost/", 1000, Route(POOL_ADDR, True), market_with_data(), tokens(), client
        )
    assert out == ("990", "980")
    assert seen[0].path == "/orca_quote"


@pytest.mark.asyncio
async def test_simulate_route_error():
    def handler(request):
        return httpx.Response(200, json={"error": "no liquidity"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(SimulationError, match="no liquidity"):
            await ow.simulate_route_orca_whirlpools(
                "http://localhost/", 1, Route(POOL_ADDR, True), market_with_data(), tokens(), client
            )


@pytest.mark.asyncio
async def test_fetch_data_writes_cache_round_trip(tmp_path):
    body = {"whirlpools": [whirlpool_entry(POOL_ADDR)], "hasMore": True}

    def handler(request):
        return httpx.Response(200, json=body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        path = await ow.fetch_data_orca_whirlpools(tmp_path, client)
    assert path == tmp_path / ow.CACHE_FILE
    cached = json.loads(path.read_text())
    assert cached["hasMore"] is True
    assert ow.parse_whirlpool_list(cached) == ow.parse_whirlpool_list(body)


@pytest.mark.asyncio
async def test_fetch_data_failure_returns_none(tmp_path):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        assert await ow.fetch_data_orca_whirlpools(tmp_path, client) is None
    assert not (tmp_path / ow.CACHE_FILE).exists()