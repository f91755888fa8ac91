#!/usr/bin/env python3
"""
Policy Encryption Example

Seals data to an access policy and decrypts it once the policy holds.
Runs offline in dev mode: facts come from an in-memory snapshot and the
enclave provider uses a simulated attestation.
"""

import asyncio
import os
import time

os.environ.setdefault("KMS_DEV_MODE", "true")

from policykms import (
    AuthRequiredError,
    DecryptRequest,
    EncryptRequest,
    KMSService,
    PolicyNotSatisfiedError,
)
from policykms.core.auth import LocalSigner
from policykms.core.facts import StaticFactSource
from policykms.policies import and_, or_, role_gated, stake_gated, time_locked

REGISTRY = "0x5f" + "00" * 19
# Wallet keys normally stay with each caller; both live here for the demo
ALICE = LocalSigner.generate()
BOB = LocalSigner.generate()
CHAIN = "base-sepolia"


def auth_for(signer: LocalSigner):
    return signer.auth_signature("Sign in to policykms")


async def main():
    facts = StaticFactSource()
    facts.set_stake(CHAIN, REGISTRY, ALICE.address, 10**18)
    facts.grant_role(CHAIN, REGISTRY, "OPERATOR", BOB.address)

    kms = KMSService(facts=facts)
    provider = await kms.initialize()

    print("policykms Policy Encryption Example")
    print("=" * 50)
    print(f"Active provider: {provider.provider_type.value}")

    # Example 1: Stake-gated data
    print("\n1. Encrypting for stakers...")
    policy = stake_gated(REGISTRY, minimum=10**18, chain=CHAIN)
    payload = await kms.encrypt(EncryptRequest(data=b"model weights key", policy=policy))
    print(f"   Policy hash: {payload.policy_hash}")
    print(f"   Ciphertext:  {payload.ciphertext[:40]}...")

    plaintext = await kms.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(ALICE)))
    print(f"   Alice decrypted: {plaintext}")

    try:
        await kms.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(BOB)))
    except PolicyNotSatisfiedError as e:
        print(f"   Bob refused: {e}")

    try:
        await kms.decrypt(DecryptRequest(payload=payload))
    except AuthRequiredError as e:
        print(f"   Anonymous refused: {e.kind}")

    # Example 2: Composed policy
    print("\n2. Stakers or operators, after an unlock time...")
    unlock_at = int(time.time()) - 60
    policy = and_(
        time_locked(unlock_at, chain=CHAIN),
        or_(stake_gated(REGISTRY, 10**18, chain=CHAIN), role_gated(REGISTRY, "OPERATOR", chain=CHAIN)),
    )
    payload = await kms.encrypt(EncryptRequest(data="shared notes", policy=policy))
    for name, signer in (("Alice", ALICE), ("Bob", BOB)):
        plaintext = await kms.decrypt(DecryptRequest(payload=payload, auth_sig=auth_for(signer)))
        print(f"   {name} decrypted: {plaintext.decode()}")

    # Example 3: Payloads are portable JSON
    print("\n3. Serializing the payload...")
    serialized = payload.to_json()
    print(f"   {len(serialized)} bytes of JSON, provider={payload.provider.value}")

    print("\n" + "=" * 50)
    print(await kms.get_status())
    await kms.close()


if __name__ == "__main__":
    asyncio.run(main())
