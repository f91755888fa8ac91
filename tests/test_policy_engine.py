"""Tests for the policy evaluation engine."""

import pytest

from policykms.core.auth import LocalSigner
from policykms.core.errors import AuthRequiredError, PolicyNotSatisfiedError
from policykms.core.facts import StaticFactSource
from policykms.core.policy_engine import PolicyEngine, compare
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

REGISTRY = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
CONTRACT = "0x" + "33" * 20
ALICE_SIGNER = LocalSigner.from_secret(b"alice")
ALICE = ALICE_SIGNER.address
BOB_SIGNER = LocalSigner.from_secret(b"bob")
BOB = BOB_SIGNER.address


class CountingFacts(StaticFactSource):
    """StaticFactSource that counts lookups."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.lookups = 0

    async def current_time(self, chain):
        self.lookups += 1
        return await super().current_time(chain)

    async def stake_of(self, chain, registry, address):
        self.lookups += 1
        return await super().stake_of(chain, registry, address)

    async def call(self, chain, contract, method, parameters, return_type="bool"):
        self.lookups += 1
        return await super().call(chain, contract, method, parameters, return_type)


class ExplodingFacts(StaticFactSource):
    async def stake_of(self, chain, registry, address):
        raise ConnectionError("rpc down")


def policy_of(*conditions, operator=PolicyOperator.AND) -> AccessControlPolicy:
    return AccessControlPolicy(conditions=list(conditions), operator=operator)


def stake(minimum=10, address=USER_ADDRESS):
    return StakeCondition(chain="base", registry_address=REGISTRY, minimum=minimum, address=address)


class TestCompare:
    """Tests for value comparison."""

    def test_numeric(self):
        assert compare("10", Comparator.GT, "9")
        assert compare(10, Comparator.GE, "10")
        assert not compare("9", Comparator.GT, "10")

    def test_hex_numbers(self):
        assert compare("0x10", Comparator.EQ, "16")

    def test_string_equality_is_case_insensitive(self):
        assert compare("0xABCdef" + "00" * 17, Comparator.EQ, "0xabcDEF" + "00" * 17)
        assert compare("true", Comparator.EQ, "TRUE")
        assert compare("alpha", Comparator.NE, "beta")

    def test_ordering_on_strings_is_false(self):
        assert not compare("abc", Comparator.GT, "abb")

    def test_contains(self):
        assert compare("operator,admin", Comparator.CONTAINS, "ADMIN")
        assert not compare("operator", Comparator.CONTAINS, "admin")


class TestEvaluation:
    """Tests for condition evaluation against facts."""

    @pytest.mark.asyncio
    async def test_timestamp(self, now):
        engine = PolicyEngine(StaticFactSource(clock=now))
        assert (await engine.evaluate(policy_of(TimestampCondition(chain="base", value=now)))).allowed
        assert not (await engine.evaluate(policy_of(TimestampCondition(chain="base", value=now + 1)))).allowed

    @pytest.mark.asyncio
    async def test_stake_uses_signer(self, auth_for):
        facts = StaticFactSource()
        facts.set_stake("base", REGISTRY, ALICE, 50)
        engine = PolicyEngine(facts)

        assert (await engine.evaluate(policy_of(stake(10)), auth_for(ALICE_SIGNER))).allowed
        assert not (await engine.evaluate(policy_of(stake(10)), auth_for(BOB_SIGNER))).allowed

    @pytest.mark.asyncio
    async def test_native_and_token_balance(self, auth_for):
        facts = StaticFactSource()
        facts.set_balance("base", ALICE, 100)
        facts.set_balance("base", ALICE, 5, token=TOKEN)
        engine = PolicyEngine(facts)

        native = BalanceCondition(chain="base", minimum=100)
        token = BalanceCondition(chain="base", minimum=10, token_address=TOKEN)
        assert (await engine.evaluate(policy_of(native), auth_for(ALICE_SIGNER))).allowed
        assert not (await engine.evaluate(policy_of(token), auth_for(ALICE_SIGNER))).allowed

    @pytest.mark.asyncio
    async def test_role(self, auth_for):
        facts = StaticFactSource()
        facts.grant_role("base", REGISTRY, "OPERATOR", ALICE)
        engine = PolicyEngine(facts)
        condition = RoleCondition(chain="base", registry_address=REGISTRY, role="OPERATOR")

        assert (await engine.evaluate(policy_of(condition), auth_for(ALICE_SIGNER))).allowed
        assert not (await engine.evaluate(policy_of(condition), auth_for(BOB_SIGNER))).allowed

    @pytest.mark.asyncio
    async def test_agent_owner_case_insensitive(self, auth_for):
        facts = StaticFactSource()
        facts.set_agent_owner("base", REGISTRY, 7, ALICE.upper().replace("0X", "0x"))
        engine = PolicyEngine(facts)
        condition = AgentCondition(chain="base", registry_address=REGISTRY, agent_id=7)

        assert (await engine.evaluate(policy_of(condition), auth_for(ALICE_SIGNER))).allowed
        assert not (await engine.evaluate(policy_of(condition), auth_for(BOB_SIGNER))).allowed

    @pytest.mark.asyncio
    async def test_contract_call_with_signer_parameter(self, auth_for):
        facts = StaticFactSource()
        facts.set_call("base", CONTRACT, "isActiveProvider(address)", [ALICE], "true")
        engine = PolicyEngine(facts)
        condition = ContractCondition(
            chain="base",
            contract_address=CONTRACT,
            method="isActiveProvider(address)",
            parameters=[USER_ADDRESS],
            expected="true",
        )

        assert (await engine.evaluate(policy_of(condition), auth_for(ALICE_SIGNER))).allowed

    @pytest.mark.asyncio
    async def test_nested_policy(self, auth_for, now):
        facts = StaticFactSource(clock=now)
        facts.grant_role("base", REGISTRY, "OPERATOR", ALICE)
        engine = PolicyEngine(facts)
        policy = policy_of(
            TimestampCondition(chain="base", value=now - 10),
            PolicyCondition(policy=policy_of(
                stake(10),
                RoleCondition(chain="base", registry_address=REGISTRY, role="OPERATOR"),
                operator=PolicyOperator.OR,
            )),
        )

        assert (await engine.evaluate(policy, auth_for(ALICE_SIGNER))).allowed
        assert not (await engine.evaluate(policy, auth_for(BOB_SIGNER))).allowed


class TestFolding:
    """Tests for operator folding and short-circuiting."""

    @pytest.mark.asyncio
    async def test_empty_policy_is_never_satisfied(self):
        decision = await PolicyEngine(StaticFactSource()).evaluate(AccessControlPolicy())
        assert not decision.allowed
        assert decision.failed == ["empty-policy"]

    @pytest.mark.asyncio
    async def test_and_short_circuits(self, now, auth_for):
        facts = CountingFacts(clock=now)
        policy = policy_of(TimestampCondition(chain="base", value=now + 100), stake(1))

        decision = await PolicyEngine(facts).evaluate(policy, auth_for(ALICE_SIGNER))

        assert not decision.allowed
        assert facts.lookups == 1
        assert len(decision.results) == 1

    @pytest.mark.asyncio
    async def test_or_short_circuits(self, now, auth_for):
        facts = CountingFacts(clock=now)
        policy = policy_of(
            TimestampCondition(chain="base", value=now - 100),
            stake(1),
            operator=PolicyOperator.OR,
        )

        decision = await PolicyEngine(facts).evaluate(policy, auth_for(ALICE_SIGNER))

        assert decision.allowed
        assert facts.lookups == 1

    @pytest.mark.asyncio
    async def test_identical_lookups_are_memoised(self, auth_for):
        facts = CountingFacts()
        facts.set_stake("base", REGISTRY, ALICE, 100)
        policy = policy_of(stake(10), stake(20), stake(30))

        decision = await PolicyEngine(facts).evaluate(policy, auth_for(ALICE_SIGNER))

        assert decision.allowed
        assert facts.lookups == 1

    @pytest.mark.asyncio
    async def test_evaluation_is_deterministic(self, auth_for, now):
        facts = StaticFactSource(clock=now)
        facts.set_stake("base", REGISTRY, ALICE, 15)
        engine = PolicyEngine(facts)
        policy = policy_of(stake(10), TimestampCondition(chain="base", value=now))

        first = await engine.evaluate(policy, auth_for(ALICE_SIGNER))
        second = await engine.evaluate(policy, auth_for(ALICE_SIGNER))
        assert first == second


class TestFailClosed:
    """Tests for fail-closed behaviour and refusal errors."""

    @pytest.mark.asyncio
    async def test_lookup_error_is_false(self, auth_for):
        decision = await PolicyEngine(ExplodingFacts()).evaluate(policy_of(stake(1)), auth_for(ALICE_SIGNER))

        assert not decision.allowed
        assert decision.results[0].error == "rpc down"

    @pytest.mark.asyncio
    async def test_unknown_contract_call_is_false(self, auth_for):
        condition = ContractCondition(
            chain="base", contract_address=CONTRACT, method="f()", expected="true",
        )
        decision = await PolicyEngine(StaticFactSource()).evaluate(policy_of(condition), auth_for(ALICE_SIGNER))
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_missing_signer_raises_auth_required(self):
        engine = PolicyEngine(StaticFactSource())
        with pytest.raises(AuthRequiredError) as exc_info:
            await engine.authorize(policy_of(stake(1)))
        assert exc_info.value.kind == "auth_required"
        assert len(exc_info.value.conditions) == 1

    @pytest.mark.asyncio
    async def test_refusal_with_signer_raises_not_satisfied(self, auth_for):
        engine = PolicyEngine(StaticFactSource())
        with pytest.raises(PolicyNotSatisfiedError) as exc_info:
            await engine.authorize(policy_of(stake(1)), auth_for(ALICE_SIGNER))
        assert exc_info.value.kind == "policy_not_satisfied"

    @pytest.mark.asyncio
    async def test_signer_free_policy_passes_without_auth(self, now):
        engine = PolicyEngine(StaticFactSource(clock=now))
        decision = await engine.authorize(policy_of(TimestampCondition(chain="base", value=now)))
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_or_satisfied_without_signer(self, now):
        engine = PolicyEngine(StaticFactSource(clock=now))
        policy = policy_of(
            stake(1),
            TimestampCondition(chain="base", value=now),
            operator=PolicyOperator.OR,
        )
        decision = await engine.authorize(policy)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_rejected_signature_counts_as_absent(self, auth_for):
        facts = StaticFactSource()
        facts.set_stake("base", REGISTRY, ALICE, 100)

        async def reject(auth_sig):
            return False

        engine = PolicyEngine(facts, verify_signature=reject)
        with pytest.raises(AuthRequiredError):
            await engine.authorize(policy_of(stake(1)), auth_for(ALICE_SIGNER))

    @pytest.mark.asyncio
    async def test_forged_signature_counts_as_absent(self):
        facts = StaticFactSource()
        facts.set_agent_owner("base", REGISTRY, 7, ALICE)
        forged = AuthSignature(sig="0xdeadbeef", signed_message="anything", address=ALICE)

        engine = PolicyEngine(facts)
        with pytest.raises(AuthRequiredError):
            await engine.authorize(policy_of(AgentCondition(chain="base", registry_address=REGISTRY, agent_id=7)), forged)

    @pytest.mark.asyncio
    async def test_signature_from_another_key_counts_as_absent(self, auth_for):
        facts = StaticFactSource()
        facts.set_stake("base", REGISTRY, ALICE, 100)
        claimed = auth_for(BOB_SIGNER).model_copy(update={"address": ALICE})

        with pytest.raises(AuthRequiredError):
            await PolicyEngine(facts).authorize(policy_of(stake(1)), claimed)
