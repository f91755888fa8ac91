"""External fact sources for policy evaluation.

The policy engine never talks to a chain client directly. It asks a
FactSource for the handful of read-only facts that access conditions need:
contract call results, balances, stakes, role membership, agent ownership
and the current time.

Sources:
- StaticFactSource: in-memory snapshot, for tests and local development
- ChainFactSource: JSON-RPC reads (eth_call / eth_getBalance) over httpx
"""

import itertools
import re
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from policykms.core.hashing import function_selector, keccak256, to_hex
from policykms.core.logging import get_logger

logger = get_logger(__name__)


class FactLookupError(Exception):
    """A fact could not be fetched (network error, malformed data, unknown chain)."""
    pass


class FactSource(ABC):
    """Read-only fact provider consumed by the policy engine."""

    async def current_time(self, chain: str) -> int:
        """Current unix time in seconds as seen for ``chain``."""
        return int(time.time())

    @abstractmethod
    async def call(
        self,
        chain: str,
        contract: str,
        method: str,
        parameters: list[Any],
        return_type: str = "bool",
    ) -> str:
        """Read-only contract call.

        Returns the decoded first return word normalized to a string:
        "true"/"false" for bool, decimal for uint256, lowercase 0x-hex for
        address and bytes32.
        """

    @abstractmethod
    async def native_balance(self, chain: str, address: str) -> int:
        pass

    @abstractmethod
    async def token_balance(self, chain: str, token: str, address: str) -> int:
        pass

    @abstractmethod
    async def stake_of(self, chain: str, registry: str, address: str) -> int:
        pass

    @abstractmethod
    async def has_role(self, chain: str, registry: str, role: str, address: str) -> bool:
        pass

    @abstractmethod
    async def agent_owner(self, chain: str, registry: str, agent_id: int) -> str | None:
        pass

    async def close(self) -> None:
        """Release any open connections."""
        pass


class StaticFactSource(FactSource):
    """In-memory fact snapshot.

    Unknown balances and stakes read as zero and unknown roles as absent.
    Unknown contract calls raise FactLookupError, which the engine treats as
    an unsatisfied condition.
    """

    def __init__(self, clock: int | None = None):
        self.clock = clock
        self.calls: dict[tuple[str, str, str, tuple], str] = {}
        self.balances: dict[tuple[str, str | None, str], int] = {}
        self.stakes: dict[tuple[str, str, str], int] = {}
        self.roles: set[tuple[str, str, str, str]] = set()
        self.agents: dict[tuple[str, str, int], str] = {}

    async def current_time(self, chain: str) -> int:
        if self.clock is not None:
            return self.clock
        return await super().current_time(chain)

    def set_call(self, chain: str, contract: str, method: str, parameters: list[Any], result: str) -> None:
        key = (chain, contract.lower(), method, tuple(_norm(p) for p in parameters))
        self.calls[key] = result

    def set_balance(self, chain: str, address: str, amount: int, token: str | None = None) -> None:
        self.balances[(chain, token.lower() if token else None, address.lower())] = amount

    def set_stake(self, chain: str, registry: str, address: str, amount: int) -> None:
        self.stakes[(chain, registry.lower(), address.lower())] = amount

    def grant_role(self, chain: str, registry: str, role: str, address: str) -> None:
        self.roles.add((chain, registry.lower(), role, address.lower()))

    def set_agent_owner(self, chain: str, registry: str, agent_id: int, owner: str) -> None:
        self.agents[(chain, registry.lower(), agent_id)] = owner.lower()

    async def call(self, chain, contract, method, parameters, return_type="bool") -> str:
        key = (chain, contract.lower(), method, tuple(_norm(p) for p in parameters))
        if key not in self.calls:
            raise FactLookupError(f"No recorded result for {contract}.{method}")
        return self.calls[key]

    async def native_balance(self, chain, address) -> int:
        return self.balances.get((chain, None, address.lower()), 0)

    async def token_balance(self, chain, token, address) -> int:
        return self.balances.get((chain, token.lower(), address.lower()), 0)

    async def stake_of(self, chain, registry, address) -> int:
        return self.stakes.get((chain, registry.lower(), address.lower()), 0)

    async def has_role(self, chain, registry, role, address) -> bool:
        return (chain, registry.lower(), role, address.lower()) in self.roles

    async def agent_owner(self, chain, registry, agent_id) -> str | None:
        return self.agents.get((chain, registry.lower(), agent_id))


def _norm(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("0x"):
        return value.lower()
    return value


# =============================================================================
# JSON-RPC
# =============================================================================

_SIGNATURE_RE = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_]*)\((?P<args>[^()]*)\)$")
_STATIC_TYPES = {"address", "uint256", "bool", "bytes32"}


def parse_signature(signature: str) -> tuple[str, list[str]]:
    """Split ``name(type1,type2)`` into its name and argument types."""
    match = _SIGNATURE_RE.match(signature.replace(" ", ""))
    if not match:
        raise FactLookupError(f"Invalid ABI signature: {signature}")
    args = [a for a in match.group("args").split(",") if a]
    for arg in args:
        if arg not in _STATIC_TYPES:
            raise FactLookupError(f"Unsupported ABI argument type: {arg}")
    return match.group("name"), args


def encode_word(abi_type: str, value: Any) -> bytes:
    """ABI-encode a single static value into a 32-byte word."""
    if abi_type == "address":
        raw = bytes.fromhex(str(value).lower().removeprefix("0x"))
        if len(raw) != 20:
            raise FactLookupError(f"Invalid address: {value}")
        return raw.rjust(32, b"\x00")
    if abi_type == "uint256":
        number = int(value, 0) if isinstance(value, str) else int(value)
        if number < 0 or number >= 2**256:
            raise FactLookupError(f"uint256 out of range: {value}")
        return number.to_bytes(32, "big")
    if abi_type == "bool":
        if isinstance(value, str):
            value = value.lower() == "true"
        return (1 if value else 0).to_bytes(32, "big")
    if abi_type == "bytes32":
        if isinstance(value, str) and re.fullmatch(r"0x[0-9a-fA-F]{64}", value):
            return bytes.fromhex(value[2:])
        # Human-readable identifiers (role names) are hashed into bytes32
        return keccak256(str(value).encode())
    raise FactLookupError(f"Unsupported ABI type: {abi_type}")


def encode_call(signature: str, parameters: list[Any]) -> str:
    """Build eth_call calldata for a function with static arguments."""
    _, arg_types = parse_signature(signature)
    if len(arg_types) != len(parameters):
        raise FactLookupError(
            f"{signature} expects {len(arg_types)} arguments, got {len(parameters)}"
        )
    data = function_selector(signature)
    for abi_type, value in zip(arg_types, parameters):
        data += encode_word(abi_type, value)
    return to_hex(data)


def decode_word(result: str, return_type: str) -> str:
    """Decode the first 32-byte return word into its normalized string form."""
    raw = bytes.fromhex(result.removeprefix("0x"))
    if len(raw) < 32:
        raise FactLookupError(f"Malformed eth_call result: {result!r}")
    word = raw[:32]
    if return_type == "bool":
        return "true" if int.from_bytes(word, "big") else "false"
    if return_type == "uint256":
        return str(int.from_bytes(word, "big"))
    if return_type == "address":
        return to_hex(word[12:])
    if return_type == "bytes32":
        return to_hex(word)
    raise FactLookupError(f"Unsupported return type: {return_type}")


class ChainFactSource(FactSource):
    """Facts read from EVM chains over JSON-RPC.

    Args:
        rpc_urls: Chain name -> JSON-RPC endpoint
        timeout: Per-request timeout in seconds
        use_block_time: Use the latest block timestamp instead of the local clock
        transport: Optional httpx transport (tests)
    """

    STAKE_METHOD = "getStake(address)"
    ROLE_METHOD = "hasRole(bytes32,address)"
    AGENT_OWNER_METHOD = "ownerOf(uint256)"
    BALANCE_OF_METHOD = "balanceOf(address)"

    def __init__(
        self,
        rpc_urls: dict[str, str],
        timeout: float = 5.0,
        use_block_time: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.rpc_urls = dict(rpc_urls)
        self.use_block_time = use_block_time
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    async def _rpc(self, chain: str, method: str, params: list[Any]) -> Any:
        url = self.rpc_urls.get(chain)
        if not url:
            raise FactLookupError(f"No RPC endpoint configured for chain '{chain}'")

        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("RPC request failed", chain=chain, method=method, error=str(e))
            raise FactLookupError(f"{method} on {chain} failed: {e}") from e

        if data.get("error"):
            raise FactLookupError(f"{method} on {chain} returned error: {data['error']}")
        if "result" not in data:
            raise FactLookupError(f"{method} on {chain} returned no result")
        return data["result"]

    async def _eth_call(self, chain: str, contract: str, signature: str, parameters: list[Any]) -> str:
        calldata = encode_call(signature, parameters)
        result = await self._rpc(chain, "eth_call", [{"to": contract, "data": calldata}, "latest"])
        if not isinstance(result, str):
            raise FactLookupError(f"Malformed eth_call result: {result!r}")
        return result

    async def current_time(self, chain: str) -> int:
        if not self.use_block_time:
            return await super().current_time(chain)
        block = await self._rpc(chain, "eth_getBlockByNumber", ["latest", False])
        try:
            return int(block["timestamp"], 16)
        except (KeyError, TypeError, ValueError) as e:
            raise FactLookupError(f"Malformed block on {chain}") from e

    async def call(self, chain, contract, method, parameters, return_type="bool") -> str:
        result = await self._eth_call(chain, contract, method, parameters)
        return decode_word(result, return_type)

    async def native_balance(self, chain, address) -> int:
        result = await self._rpc(chain, "eth_getBalance", [address, "latest"])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise FactLookupError(f"Malformed balance: {result!r}") from e

    async def token_balance(self, chain, token, address) -> int:
        result = await self._eth_call(chain, token, self.BALANCE_OF_METHOD, [address])
        return int(decode_word(result, "uint256"))

    async def stake_of(self, chain, registry, address) -> int:
        result = await self._eth_call(chain, registry, self.STAKE_METHOD, [address])
        return int(decode_word(result, "uint256"))

    async def has_role(self, chain, registry, role, address) -> bool:
        result = await self._eth_call(chain, registry, self.ROLE_METHOD, [role, address])
        return decode_word(result, "bool") == "true"

    async def agent_owner(self, chain, registry, agent_id) -> str | None:
        result = await self._eth_call(chain, registry, self.AGENT_OWNER_METHOD, [agent_id])
        owner = decode_word(result, "address")
        if int(owner, 16) == 0:
            return None
        return owner

    async def close(self) -> None:
        await self._client.aclose()
