#!/usr/bin/env python3
"""
Signing Example

Generates policy-gated signing keys and signs with them, including the
fallback path when the selected provider cannot generate keys.
"""

import asyncio
import os
import time

os.environ.setdefault("KMS_DEV_MODE", "true")

from policykms import KMSService, KeyCurve, KeyType, SignRequest
from policykms import easy
from policykms.config import Settings
from policykms.core.facts import StaticFactSource
from policykms.policies import time_locked

OWNER = "0x" + "a1" * 20


async def main():
    # Force the MPC provider; with no coordinator deployed key generation
    # falls back to the enclave provider.
    settings = Settings(dev_mode=True, provider="mpc", fallback_enabled=True)
    kms = KMSService(settings, StaticFactSource())
    await kms.initialize()

    print("policykms Signing Example")
    print("=" * 50)
    print(f"Active provider: {kms.active_provider.value}")

    policy = time_locked(int(time.time()) - 60)

    # Example 1: secp256k1 key with EVM address
    print("\n1. Generating a secp256k1 signing key...")
    key = await kms.generate_key(OWNER, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="treasury")
    print(f"   Key ID:   {key.metadata.key_id}")
    print(f"   Provider: {key.metadata.provider.value}")
    print(f"   Address:  {key.address}")

    # Example 2: Sign a message (keccak256)
    print("\n2. Signing a message...")
    signed = await kms.sign(SignRequest(message=b"transfer 1 ETH", key_id=key.metadata.key_id))
    print(f"   Digest:    {signed.message}")
    print(f"   Signature: {signed.signature[:42]}...")
    print(f"   v:         {27 + signed.recovery_id}")

    # Example 3: EIP-191 personal message
    print("\n3. personal_sign...")
    signed = await easy.personal_sign("Hello from policykms", key.metadata.key_id, kms=kms)
    print(f"   Signature: {signed.signature[:42]}...")

    # Example 4: Ed25519
    print("\n4. Ed25519 key...")
    ed_key = await kms.generate_key(OWNER, KeyType.SIGNING, KeyCurve.ED25519, policy, label="agent")
    signed = await kms.sign(SignRequest(message=b"agent heartbeat", key_id=ed_key.metadata.key_id))
    print(f"   Public key: {ed_key.public_key}")
    print(f"   Signature:  {signed.signature[:42]}...")

    # Example 5: Regenerating is idempotent
    print("\n5. Regenerating the treasury key...")
    again = await kms.generate_key(OWNER, KeyType.SIGNING, KeyCurve.SECP256K1, policy, label="treasury")
    print(f"   Same key: {again.metadata.key_id == key.metadata.key_id}")

    print("\n" + "=" * 50)
    await kms.close()


if __name__ == "__main__":
    asyncio.run(main())
