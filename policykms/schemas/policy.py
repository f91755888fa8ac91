"""Access-control policy schemas.

A policy is an ordered list of atomic conditions folded left-to-right by a
single boolean operator. Sub-policies nest as ``policy`` conditions. Policies
serialize as a tagged union (discriminator ``type``) so that they can travel
inside an encrypted payload and be evaluated by any provider instance.
"""

import json
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from policykms.core.hashing import keccak256, to_hex

# Placeholder resolved to the address of the AuthSignature signer at evaluation time
USER_ADDRESS = ":userAddress"

Address = Annotated[str, Field(pattern=r"^0x[0-9a-fA-F]{40}$")]
SubjectAddress = Annotated[str, Field(pattern=r"^(0x[0-9a-fA-F]{40}|:userAddress)$")]


class Comparator(str, Enum):
    """Comparison applied between a fetched fact and the expected value."""
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    CONTAINS = "contains"


class PolicyOperator(str, Enum):
    """Boolean combinator for a policy's conditions."""
    AND = "and"
    OR = "or"


class _Condition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def needs_signer(self) -> bool:
        """Whether evaluating this condition requires an AuthSignature."""
        return False


class ContractCondition(_Condition):
    """Read-only contract call compared against an expected value."""
    type: Literal["contract"] = "contract"
    contract_address: Address
    chain: str
    method: str = Field(description="ABI signature, e.g. isActiveProvider(address)")
    parameters: list[Union[bool, int, str]] = Field(default_factory=list)
    return_type: Literal["bool", "uint256", "address", "bytes32"] = "bool"
    comparator: Comparator = Comparator.EQ
    expected: str

    @field_validator("method")
    @classmethod
    def _method_is_signature(cls, v: str) -> str:
        if "(" not in v or not v.endswith(")"):
            raise ValueError("method must be an ABI signature such as name(address)")
        return v

    def needs_signer(self) -> bool:
        return USER_ADDRESS in self.parameters or self.expected == USER_ADDRESS

    def describe(self) -> str:
        return f"contract:{self.contract_address}.{self.method}{self.comparator.value}{self.expected}"


class TimestampCondition(_Condition):
    """Current chain time compared against a unix timestamp."""
    type: Literal["timestamp"] = "timestamp"
    chain: str
    comparator: Comparator = Comparator.GE
    value: int = Field(ge=0, description="Unix timestamp (seconds)")

    @field_validator("comparator")
    @classmethod
    def _restricted_comparator(cls, v: Comparator) -> Comparator:
        if v not in (Comparator.GE, Comparator.LE, Comparator.EQ):
            raise ValueError("timestamp conditions support >=, <= and == only")
        return v

    def describe(self) -> str:
        return f"timestamp{self.comparator.value}{self.value}"


class BalanceCondition(_Condition):
    """Native (or ERC-20, when token_address is set) balance at least ``minimum``."""
    type: Literal["balance"] = "balance"
    chain: str
    address: SubjectAddress = USER_ADDRESS
    minimum: int = Field(ge=0, description="Minimum balance in wei / token base units")
    token_address: Address | None = None

    def needs_signer(self) -> bool:
        return self.address == USER_ADDRESS

    def describe(self) -> str:
        asset = self.token_address or "native"
        return f"balance:{asset}:{self.address}>={self.minimum}"


class StakeCondition(_Condition):
    """Staked amount in a staking registry at least ``minimum``."""
    type: Literal["stake"] = "stake"
    chain: str
    registry_address: Address
    address: SubjectAddress = USER_ADDRESS
    minimum: int = Field(ge=0)

    def needs_signer(self) -> bool:
        return self.address == USER_ADDRESS

    def describe(self) -> str:
        return f"stake:{self.registry_address}:{self.address}>={self.minimum}"


class RoleCondition(_Condition):
    """Membership of ``address`` in a role registry."""
    type: Literal["role"] = "role"
    chain: str
    registry_address: Address
    role: str = Field(min_length=1)
    address: SubjectAddress = USER_ADDRESS

    def needs_signer(self) -> bool:
        return self.address == USER_ADDRESS

    def describe(self) -> str:
        return f"role:{self.registry_address}:{self.role}:{self.address}"


class AgentCondition(_Condition):
    """Signer must hold ``relationship`` to an agent in an agent registry."""
    type: Literal["agent"] = "agent"
    chain: str
    registry_address: Address
    agent_id: int = Field(ge=0)
    relationship: Literal["owner"] = "owner"

    def needs_signer(self) -> bool:
        return True

    def describe(self) -> str:
        return f"agent:{self.registry_address}:{self.agent_id}:{self.relationship}"


class PolicyCondition(_Condition):
    """A nested policy used as a single condition of its parent."""
    type: Literal["policy"] = "policy"
    policy: "AccessControlPolicy"

    def needs_signer(self) -> bool:
        return any(c.needs_signer() for c in self.policy.conditions)

    def describe(self) -> str:
        return f"policy:{self.policy.operator.value}[{len(self.policy.conditions)}]"


AccessCondition = Annotated[
    Union[
        ContractCondition,
        TimestampCondition,
        BalanceCondition,
        StakeCondition,
        RoleCondition,
        AgentCondition,
        PolicyCondition,
    ],
    Field(discriminator="type"),
]


class AccessControlPolicy(BaseModel):
    """Ordered conditions combined with a single boolean operator.

    A policy with no conditions is valid to construct but never satisfiable.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    conditions: list[AccessCondition] = Field(default_factory=list)
    operator: PolicyOperator = PolicyOperator.AND

    def needs_signer(self) -> bool:
        return any(c.needs_signer() for c in self.conditions)

    def chain(self, default: str) -> str:
        """Chain of the first chain-bound condition, used to address the network."""
        for condition in self.conditions:
            if isinstance(condition, PolicyCondition):
                nested = condition.policy.chain("")
                if nested:
                    return nested
            elif hasattr(condition, "chain"):
                return condition.chain
        return default

    def canonical_json(self) -> str:
        """Deterministic JSON encoding (sorted keys, no whitespace)."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    def policy_hash(self) -> str:
        """keccak256 of the canonical encoding, hex with 0x prefix."""
        return to_hex(keccak256(self.canonical_json().encode()))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "AccessControlPolicy":
        return cls.model_validate_json(data)


PolicyCondition.model_rebuild()
AccessControlPolicy.model_rebuild()
