"""Pydantic schemas for policies, keys and payloads."""

from .policy import (
    USER_ADDRESS,
    AccessCondition,
    AccessControlPolicy,
    AgentCondition,
    BalanceCondition,
    Comparator,
    ContractCondition,
    PolicyCondition,
    PolicyOperator,
    RoleCondition,
    StakeCondition,
    TimestampCondition,
)
from .keys import (
    PROVIDER_PREFERENCE,
    AuthSignature,
    EncryptedPayload,
    GeneratedKey,
    KeyCurve,
    KeyMetadata,
    KeyType,
    ProviderType,
)

__all__ = [
    "USER_ADDRESS",
    "AccessCondition",
    "AccessControlPolicy",
    "AgentCondition",
    "BalanceCondition",
    "Comparator",
    "ContractCondition",
    "PolicyCondition",
    "PolicyOperator",
    "RoleCondition",
    "StakeCondition",
    "TimestampCondition",
    "PROVIDER_PREFERENCE",
    "AuthSignature",
    "EncryptedPayload",
    "GeneratedKey",
    "KeyCurve",
    "KeyMetadata",
    "KeyType",
    "ProviderType",
]
