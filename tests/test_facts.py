"""Tests for fact sources and ABI helpers."""

import json

import httpx
import pytest

from policykms.core.facts import (
    ChainFactSource,
    FactLookupError,
    StaticFactSource,
    decode_word,
    encode_call,
    encode_word,
    parse_signature,
)
from policykms.core.hashing import keccak256

REGISTRY = "0x" + "11" * 20
ALICE = "0x" + "a1" * 20
RPC_URL = "http://rpc.test"


def word(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


class FakeChain:
    """Minimal JSON-RPC node answering from fixed tables."""

    def __init__(self):
        self.balances: dict[str, int] = {}
        self.calls: dict[str, str] = {}
        self.requests: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        method, params = body["method"], body["params"]

        if method == "eth_getBalance":
            result = hex(self.balances.get(params[0].lower(), 0))
        elif method == "eth_call":
            data = params[0]["data"]
            if data not in self.calls:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "execution reverted"}})
            result = self.calls[data]
        elif method == "eth_getBlockByNumber":
            result = {"timestamp": hex(1_700_000_123)}
        else:
            return httpx.Response(400)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def source(self, **kwargs) -> ChainFactSource:
        return ChainFactSource({"base": RPC_URL}, transport=httpx.MockTransport(self.handler), **kwargs)


class TestAbiEncoding:
    """Tests for static ABI encoding."""

    def test_parse_signature(self):
        assert parse_signature("hasRole(bytes32, address)") == ("hasRole", ["bytes32", "address"])
        assert parse_signature("totalSupply()") == ("totalSupply", [])

    def test_unsupported_type_rejected(self):
        with pytest.raises(FactLookupError):
            parse_signature("setName(string)")

    def test_known_selectors(self):
        assert encode_call("balanceOf(address)", [ALICE]).startswith("0x70a08231")
        assert encode_call("ownerOf(uint256)", [7]).startswith("0x6352211e")
        assert encode_call("hasRole(bytes32,address)", ["ADMIN", ALICE]).startswith("0x91d14854")

    def test_address_word_is_left_padded(self):
        encoded = encode_word("address", ALICE)
        assert encoded == bytes(12) + bytes.fromhex("a1" * 20)

    def test_role_name_hashed_to_bytes32(self):
        assert encode_word("bytes32", "OPERATOR") == keccak256(b"OPERATOR")
        raw = "0x" + "ab" * 32
        assert encode_word("bytes32", raw) == bytes.fromhex("ab" * 32)

    def test_argument_count_checked(self):
        with pytest.raises(FactLookupError):
            encode_call("balanceOf(address)", [])

    def test_decode_word(self):
        assert decode_word(word(1), "bool") == "true"
        assert decode_word(word(0), "bool") == "false"
        assert decode_word(word(42), "uint256") == "42"
        assert decode_word("0x" + "00" * 12 + "a1" * 20, "address") == ALICE

    def test_decode_short_result(self):
        with pytest.raises(FactLookupError):
            decode_word("0x01", "uint256")


class TestStaticFactSource:
    """Tests for the in-memory fact snapshot."""

    @pytest.mark.asyncio
    async def test_defaults(self):
        facts = StaticFactSource()
        assert await facts.native_balance("base", ALICE) == 0
        assert await facts.stake_of("base", REGISTRY, ALICE) == 0
        assert not await facts.has_role("base", REGISTRY, "ADMIN", ALICE)
        assert await facts.agent_owner("base", REGISTRY, 1) is None

    @pytest.mark.asyncio
    async def test_addresses_normalized(self):
        facts = StaticFactSource()
        facts.set_stake("base", REGISTRY.upper().replace("0X", "0x"), ALICE.upper().replace("0X", "0x"), 9)
        assert await facts.stake_of("base", REGISTRY, ALICE) == 9

    @pytest.mark.asyncio
    async def test_frozen_clock(self, now):
        assert await StaticFactSource(clock=now).current_time("base") == now

    @pytest.mark.asyncio
    async def test_unknown_call_raises(self):
        with pytest.raises(FactLookupError):
            await StaticFactSource().call("base", REGISTRY, "f()", [])


class TestChainFactSource:
    """Tests for JSON-RPC fact lookups."""

    @pytest.mark.asyncio
    async def test_native_balance(self):
        chain = FakeChain()
        chain.balances[ALICE] = 10**18
        facts = chain.source()

        assert await facts.native_balance("base", ALICE) == 10**18
        assert chain.requests[0]["params"] == [ALICE, "latest"]
        await facts.close()

    @pytest.mark.asyncio
    async def test_stake_of(self):
        chain = FakeChain()
        chain.calls[encode_call(ChainFactSource.STAKE_METHOD, [ALICE])] = word(500)
        facts = chain.source()

        assert await facts.stake_of("base", REGISTRY, ALICE) == 500
        assert chain.requests[0]["params"][0]["to"] == REGISTRY
        await facts.close()

    @pytest.mark.asyncio
    async def test_has_role(self):
        chain = FakeChain()
        chain.calls[encode_call(ChainFactSource.ROLE_METHOD, ["OPERATOR", ALICE])] = word(1)
        facts = chain.source()

        assert await facts.has_role("base", REGISTRY, "OPERATOR", ALICE)
        await facts.close()

    @pytest.mark.asyncio
    async def test_agent_owner_zero_address_is_none(self):
        chain = FakeChain()
        chain.calls[encode_call(ChainFactSource.AGENT_OWNER_METHOD, [1])] = word(0)
        chain.calls[encode_call(ChainFactSource.AGENT_OWNER_METHOD, [2])] = "0x" + "00" * 12 + "a1" * 20
        facts = chain.source()

        assert await facts.agent_owner("base", REGISTRY, 1) is None
        assert await facts.agent_owner("base", REGISTRY, 2) == ALICE
        await facts.close()

    @pytest.mark.asyncio
    async def test_contract_call_decodes_return_type(self):
        chain = FakeChain()
        chain.calls[encode_call("totalSupply()", [])] = word(77)
        facts = chain.source()

        assert await facts.call("base", REGISTRY, "totalSupply()", [], "uint256") == "77"
        await facts.close()

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self):
        facts = FakeChain().source()
        with pytest.raises(FactLookupError):
            await facts.call("base", REGISTRY, "isActive()", [])
        await facts.close()

    @pytest.mark.asyncio
    async def test_unknown_chain_raises(self):
        facts = FakeChain().source()
        with pytest.raises(FactLookupError):
            await facts.native_balance("mainnet", ALICE)
        await facts.close()

    @pytest.mark.asyncio
    async def test_block_time(self):
        facts = FakeChain().source(use_block_time=True)
        assert await facts.current_time("base") == 1_700_000_123
        await facts.close()
