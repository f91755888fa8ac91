"""Policy builders.

Small functions that produce AccessControlPolicy values for the common
shapes, and combinators to compose them:

    from policykms.policies import and_, stake_gated, time_locked

    policy = and_(
        time_locked(1767225600),
        stake_gated("0x5f...", minimum=10**18),
    )
"""

from typing import Union

from policykms.schemas.policy import (
    USER_ADDRESS,
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

DEFAULT_CHAIN = "base-sepolia"

PolicyPart = Union[AccessControlPolicy, ContractCondition, TimestampCondition, BalanceCondition,
                   StakeCondition, RoleCondition, AgentCondition, PolicyCondition]


def _single(condition) -> AccessControlPolicy:
    return AccessControlPolicy(conditions=[condition])


def time_locked(unlock_at: int, chain: str = DEFAULT_CHAIN) -> AccessControlPolicy:
    """Accessible once chain time reaches ``unlock_at`` (unix seconds)."""
    return _single(TimestampCondition(chain=chain, comparator=Comparator.GE, value=unlock_at))


def stake_gated(
    registry_address: str,
    minimum: int,
    chain: str = DEFAULT_CHAIN,
    address: str = USER_ADDRESS,
) -> AccessControlPolicy:
    """Accessible to addresses with at least ``minimum`` staked."""
    return _single(StakeCondition(
        chain=chain, registry_address=registry_address, address=address, minimum=minimum
    ))


def role_gated(
    registry_address: str,
    role: str,
    chain: str = DEFAULT_CHAIN,
    address: str = USER_ADDRESS,
) -> AccessControlPolicy:
    return _single(RoleCondition(
        chain=chain, registry_address=registry_address, role=role, address=address
    ))


def agent_owner(registry_address: str, agent_id: int, chain: str = DEFAULT_CHAIN) -> AccessControlPolicy:
    """Accessible to the owner of an agent in an agent registry."""
    return _single(AgentCondition(chain=chain, registry_address=registry_address, agent_id=agent_id))


def token_gated(
    minimum: int,
    token_address: str | None = None,
    chain: str = DEFAULT_CHAIN,
    address: str = USER_ADDRESS,
) -> AccessControlPolicy:
    """Accessible to holders of at least ``minimum`` of a token.

    Without ``token_address`` the native balance (wei) is checked.
    """
    return _single(BalanceCondition(
        chain=chain, address=address, minimum=minimum, token_address=token_address
    ))


def contract_gated(
    contract_address: str,
    method: str,
    parameters: list | None = None,
    expected: str = "true",
    comparator: Comparator | str = Comparator.EQ,
    return_type: str = "bool",
    chain: str = DEFAULT_CHAIN,
) -> AccessControlPolicy:
    """Accessible when a read-only contract call returns ``expected``.

    Example:
        contract_gated("0xab...", "isActiveProvider(address)", [":userAddress"])
    """
    return _single(ContractCondition(
        contract_address=contract_address,
        chain=chain,
        method=method,
        parameters=parameters if parameters is not None else [USER_ADDRESS],
        return_type=return_type,
        comparator=Comparator(comparator),
        expected=expected,
    ))


def _combine(operator: PolicyOperator, parts: tuple[PolicyPart, ...]) -> AccessControlPolicy:
    if not parts:
        raise ValueError(f"{operator.value}_ needs at least one policy or condition")

    conditions = []
    for part in parts:
        if not isinstance(part, AccessControlPolicy):
            conditions.append(part)
        elif len(part.conditions) == 1:
            # A one-condition policy is the same predicate as its condition
            conditions.append(part.conditions[0])
        else:
            conditions.append(PolicyCondition(policy=part))
    return AccessControlPolicy(conditions=conditions, operator=operator)


def and_(*parts: PolicyPart) -> AccessControlPolicy:
    """All parts must hold."""
    return _combine(PolicyOperator.AND, parts)


def or_(*parts: PolicyPart) -> AccessControlPolicy:
    """At least one part must hold."""
    return _combine(PolicyOperator.OR, parts)
