"""Policy Evaluation Engine.

Resolves the atomic conditions of an AccessControlPolicy against external
facts and folds the results with the policy's boolean operator.

Evaluation rules:
- and: short-circuits on the first false condition
- or: short-circuits on the first true condition
- nested policies evaluate recursively before being folded into the parent
- a policy with zero conditions is never satisfied
- a fact lookup that fails evaluates its condition to false (fail closed)
- the signer is the AuthSignature address only after its signature verifies;
  otherwise signer-dependent conditions report a missing signer

Within one evaluation the clock is read once per chain and identical fact
lookups are memoised, so re-evaluating a policy against the same facts and
signature always reaches the same verdict.
"""

import operator
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from policykms.core.auth import verify_auth_signature
from policykms.core.errors import AuthRequiredError, PolicyNotSatisfiedError
from policykms.core.facts import FactSource
from policykms.core.logging import get_logger
from policykms.schemas.keys import AuthSignature
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

logger = get_logger(__name__)

SignatureVerifier = Callable[[AuthSignature], Awaitable[bool]]


@dataclass
class ConditionResult:
    """Result of evaluating a single condition."""
    condition: str
    passed: bool
    needs_signer: bool = False
    error: str | None = None


@dataclass
class PolicyDecision:
    """Outcome of evaluating a policy."""
    allowed: bool
    results: list[ConditionResult] = field(default_factory=list)

    @property
    def failed(self) -> list[str]:
        return [r.condition for r in self.results if not r.passed]

    @property
    def missing_signer(self) -> list[str]:
        return [r.condition for r in self.results if r.needs_signer]


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0) if value.lower().startswith("0x") else int(value)
        except ValueError:
            return None
    return None


# Ordering comparators only apply to numbers; equality falls back to
# case-insensitive strings so that hex addresses compare correctly.
OPERATORS: dict[Comparator, Callable[[Any, Any], bool]] = {
    Comparator.EQ: operator.eq,
    Comparator.NE: operator.ne,
    Comparator.GT: operator.gt,
    Comparator.LT: operator.lt,
    Comparator.GE: operator.ge,
    Comparator.LE: operator.le,
}


def compare(actual: Any, comparator: Comparator, expected: Any) -> bool:
    """Compare a fetched fact against an expected value."""
    if comparator == Comparator.CONTAINS:
        return str(expected).lower() in str(actual).lower()

    left, right = _as_int(actual), _as_int(expected)
    if left is not None and right is not None:
        return OPERATORS[comparator](left, right)

    if comparator in (Comparator.EQ, Comparator.NE):
        return OPERATORS[comparator](str(actual).lower(), str(expected).lower())
    return False


class _FactSnapshot:
    """Memoised view over a FactSource for the duration of one evaluation."""

    def __init__(self, facts: FactSource):
        self.facts = facts
        self._cache: dict[tuple, Any] = {}

    async def get(self, key: tuple, fetch: Callable[[], Awaitable[Any]]) -> Any:
        if key not in self._cache:
            self._cache[key] = await fetch()
        return self._cache[key]

    async def now(self, chain: str) -> int:
        return await self.get(("time", chain), lambda: self.facts.current_time(chain))


class PolicyEngine:
    """Evaluates access-control policies against a fact source."""

    def __init__(
        self,
        facts: FactSource,
        verify_signature: SignatureVerifier = verify_auth_signature,
    ):
        """Initialize the engine.

        Args:
            facts: Source of on-chain facts
            verify_signature: Checks that an AuthSignature was produced by the
                address it claims. Unverified signers are treated as absent.
        """
        self.facts = facts
        self.verify_signature = verify_signature

    async def evaluate(
        self,
        policy: AccessControlPolicy,
        auth_sig: AuthSignature | None = None,
    ) -> PolicyDecision:
        """Evaluate a policy to a decision. Never raises for fact failures."""
        signer = await self._resolve_signer(auth_sig)
        snapshot = _FactSnapshot(self.facts)
        results: list[ConditionResult] = []

        allowed = await self._evaluate_policy(policy, signer, snapshot, results, prefix="")
        decision = PolicyDecision(allowed=allowed, results=results)

        if not allowed:
            logger.info(
                "Policy not satisfied",
                policy_hash=policy.policy_hash(),
                failed=decision.failed,
                missing_signer=decision.missing_signer,
            )
        return decision

    async def authorize(
        self,
        policy: AccessControlPolicy,
        auth_sig: AuthSignature | None = None,
    ) -> PolicyDecision:
        """Evaluate a policy and raise if access is refused.

        Raises:
            AuthRequiredError: Refused and at least one condition could not be
                evaluated because no (verified) signer was supplied
            PolicyNotSatisfiedError: Refused with all conditions evaluated
        """
        decision = await self.evaluate(policy, auth_sig)
        if decision.allowed:
            return decision
        if decision.missing_signer:
            raise AuthRequiredError(decision.missing_signer)
        raise PolicyNotSatisfiedError(decision.failed)

    async def _resolve_signer(self, auth_sig: AuthSignature | None) -> str | None:
        if auth_sig is None:
            return None
        try:
            verified = await self.verify_signature(auth_sig)
        except Exception as e:
            logger.warning("Auth signature verification error", address=auth_sig.address, error=str(e))
            return None
        if not verified:
            logger.warning("Auth signature rejected", address=auth_sig.address)
            return None
        return auth_sig.address.lower()

    async def _evaluate_policy(
        self,
        policy: AccessControlPolicy,
        signer: str | None,
        snapshot: _FactSnapshot,
        results: list[ConditionResult],
        prefix: str,
    ) -> bool:
        if not policy.conditions:
            results.append(ConditionResult(condition=f"{prefix}empty-policy", passed=False))
            return False

        short_circuit = policy.operator == PolicyOperator.OR
        for index, condition in enumerate(policy.conditions):
            path = f"{prefix}{index}"
            if isinstance(condition, PolicyCondition):
                passed = await self._evaluate_policy(
                    condition.policy, signer, snapshot, results, prefix=f"{path}."
                )
            else:
                result = await self._evaluate_condition(condition, signer, snapshot, path)
                results.append(result)
                passed = result.passed

            # and stops at the first false, or stops at the first true
            if passed == short_circuit:
                return passed
        return not short_circuit

    async def _evaluate_condition(self, condition, signer, snapshot, path) -> ConditionResult:
        label = f"{path}:{condition.describe()}"

        if condition.needs_signer() and signer is None:
            return ConditionResult(condition=label, passed=False, needs_signer=True)

        try:
            passed = await self._check(condition, signer, snapshot)
        except Exception as e:
            logger.warning(
                "Policy fact lookup failed",
                condition=label,
                error=str(e),
            )
            return ConditionResult(condition=label, passed=False, error=str(e))

        return ConditionResult(condition=label, passed=passed)

    async def _check(self, condition, signer: str | None, snapshot: _FactSnapshot) -> bool:
        facts = self.facts

        def subject(address: str) -> str:
            return signer if address == USER_ADDRESS else address.lower()

        if isinstance(condition, TimestampCondition):
            now = await snapshot.now(condition.chain)
            return compare(now, condition.comparator, condition.value)

        if isinstance(condition, ContractCondition):
            params = [subject(p) if p == USER_ADDRESS else p for p in condition.parameters]
            expected = subject(condition.expected) if condition.expected == USER_ADDRESS else condition.expected
            key = ("call", condition.chain, condition.contract_address.lower(), condition.method, tuple(params))
            actual = await snapshot.get(
                key,
                lambda: facts.call(
                    condition.chain, condition.contract_address, condition.method, params, condition.return_type
                ),
            )
            return compare(actual, condition.comparator, expected)

        if isinstance(condition, BalanceCondition):
            address = subject(condition.address)
            if condition.token_address:
                token = condition.token_address
                key = ("token_balance", condition.chain, token.lower(), address)
                balance = await snapshot.get(key, lambda: facts.token_balance(condition.chain, token, address))
            else:
                key = ("balance", condition.chain, address)
                balance = await snapshot.get(key, lambda: facts.native_balance(condition.chain, address))
            return int(balance) >= condition.minimum

        if isinstance(condition, StakeCondition):
            address = subject(condition.address)
            key = ("stake", condition.chain, condition.registry_address.lower(), address)
            stake = await snapshot.get(
                key, lambda: facts.stake_of(condition.chain, condition.registry_address, address)
            )
            return int(stake) >= condition.minimum

        if isinstance(condition, RoleCondition):
            address = subject(condition.address)
            key = ("role", condition.chain, condition.registry_address.lower(), condition.role, address)
            return bool(await snapshot.get(
                key, lambda: facts.has_role(condition.chain, condition.registry_address, condition.role, address)
            ))

        if isinstance(condition, AgentCondition):
            key = ("agent", condition.chain, condition.registry_address.lower(), condition.agent_id)
            owner = await snapshot.get(
                key, lambda: facts.agent_owner(condition.chain, condition.registry_address, condition.agent_id)
            )
            return owner is not None and owner.lower() == signer

        raise ValueError(f"Unknown condition type: {type(condition).__name__}")
