"""Multi-party computation coordinator provider.

Key shares are held by independent parties; a coordinator runs distributed
key generation, threshold ECDH and threshold signing rounds. No party ever
holds a complete private key, and neither does this process.

Coordinator HTTP contract:
    GET  /health
    POST /keys/dkg                 -> {keyId, publicKey}
    POST /keys/{id}/ecdh           -> {sharedSecret}
    POST /keys/{id}/refresh
    POST /sessions                 start a signing round
    GET  /sessions/{id}            -> {status, partials: {partyId: partial}}
    POST /sessions/{id}/aggregate  -> {signature}

Until a coordinator is deployed (KMS_MPC_COORDINATOR_ENDPOINT unset) every
operation raises FeatureNotImplementedError and get_status() reports the
provider as not implemented.
"""

import time
from typing import Any, Callable

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils

from policykms.core.errors import (
    DecryptionError,
    InvalidPartyError,
    KMSError,
    KeyBusyError,
    ProviderUnavailableError,
    SessionNotFoundError,
    SessionTerminalError,
)
from policykms.core.hashing import digest_message, from_hex, to_hex
from policykms.core.logging import get_logger, session_context
from policykms.core.secp256k1 import address_of, recovery_id_for
from policykms.core.signing_sessions import (
    SessionStatus,
    SigningSession,
    SigningSessionStore,
)
from policykms.schemas.keys import (
    EncryptedPayload,
    GeneratedKey,
    KeyCurve,
    KeyMetadata,
    KeyType,
    ProviderType,
)
from policykms.schemas.policy import AccessControlPolicy

from .base import (
    DecryptRequest,
    EncryptRequest,
    KMSProvider,
    ProviderStatus,
    SignedMessage,
    SignRequest,
    ThresholdSignature,
    ThresholdSignRequest,
)
from .sealing import (
    b64decode,
    build_payload,
    check_integrity,
    derive_key,
    open_sealed,
    policy_aad,
    seal,
)

logger = get_logger(__name__)

COORDINATOR_HINT = "deploy the MPC coordinator first"
ECIES_SCHEME = "ecies-secp256k1-aes-256-gcm"


class MPCProvider(KMSProvider):
    """KMS provider backed by an MPC coordinator."""

    provider_type = ProviderType.MPC

    def __init__(
        self,
        settings,
        facts,
        engine=None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(settings, facts, engine)
        self.coordinator = settings.mpc_coordinator_endpoint
        self.threshold = settings.mpc_threshold
        self.total_parties = settings.mpc_total_parties
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._public_keys: dict[str, ec.EllipticCurvePublicKey] = {}
        self.sessions = SigningSessionStore(
            self._aggregate,
            max_sessions=settings.max_sessions,
            retention_seconds=settings.session_ttl_seconds * 2,
            clock=clock,
        )

    @property
    def implemented(self) -> bool:
        return bool(self.coordinator)

    def _require_coordinator(self, feature: str) -> None:
        if not self.coordinator:
            self._not_implemented(feature, COORDINATOR_HINT)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.coordinator,
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.provider_type.value, f"{method} {path} failed: {e}") from e
        if response.is_error:
            raise KMSError(f"MPC coordinator error on {path}: HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise KMSError(f"MPC coordinator returned malformed JSON on {path}") from e

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _probe(self) -> bool:
        if not self.coordinator:
            raise ProviderUnavailableError(self.provider_type.value, "no coordinator configured")
        response = await self._http().get("/health", timeout=self.settings.probe_timeout_seconds)
        return response.is_success

    async def connect(self) -> None:
        if not self.coordinator:
            logger.warning("MPC coordinator not configured; provider is inert", hint=COORDINATOR_HINT)
            return
        if self._connected:
            return
        data = await self._request("GET", "/health")
        self._connected = True
        logger.info(
            "MPC provider connected",
            provider=self.provider_type.value,
            coordinator=self.coordinator,
            parties=data.get("parties", self.total_parties),
            threshold=self.threshold,
        )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await super().disconnect()

    async def get_status(self) -> ProviderStatus:
        details: dict[str, Any] = {"coordinator": self.coordinator}
        if self.implemented:
            details.update({
                "threshold": self.threshold,
                "total_parties": self.total_parties,
                "key_count": len(self._keys),
                "session_count": len(self.sessions),
            })
        else:
            details["hint"] = COORDINATOR_HINT
        return ProviderStatus(
            provider=self.provider_type,
            connected=self._connected,
            implemented=self.implemented,
            details=details,
        )

    # =========================================================================
    # Keys
    # =========================================================================

    async def get_key(self, key_id: str) -> KeyMetadata | None:
        if not self.coordinator:
            return None
        return await super().get_key(key_id)

    async def list_keys(self, owner: str | None = None) -> list[KeyMetadata]:
        if not self.coordinator:
            return []
        return await super().list_keys(owner)

    async def generate_key(
        self,
        owner: str,
        key_type: KeyType,
        curve: KeyCurve,
        policy: AccessControlPolicy,
        label: str | None = None,
    ) -> GeneratedKey:
        """Run distributed key generation on the coordinator."""
        self._require_coordinator("generate_key")
        if curve != KeyCurve.SECP256K1:
            self._not_implemented(f"generate_key({curve.value})", "use the enclave provider")
        await self.connect()

        data = await self._request("POST", "/keys/dkg", json={
            "owner": owner,
            "keyType": key_type.value,
            "curve": curve.value,
            "threshold": self.threshold,
            "totalParties": self.total_parties,
        })
        key_id = data["keyId"]
        if key_id in self._keys:
            raise KMSError(f"Coordinator reissued existing key id {key_id}")
        try:
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256K1(), from_hex(data["publicKey"])
            )
        except (KeyError, ValueError) as e:
            raise KMSError(f"Coordinator returned an invalid group public key for {key_id}") from e

        metadata = KeyMetadata(
            key_id=key_id,
            owner=owner,
            key_type=key_type,
            curve=curve,
            created_at=int(time.time()),
            policy=policy,
            provider=self.provider_type,
            label=label,
        )
        self._keys[key_id] = metadata
        self._public_keys[key_id] = public_key

        logger.info(
            "MPC key generated",
            key_id=key_id,
            owner=owner,
            key_type=key_type.value,
            threshold=self.threshold,
            total_parties=self.total_parties,
        )
        return GeneratedKey(
            metadata=metadata,
            public_key=to_hex(_compressed(public_key)),
            address=address_of(public_key),
        )

    async def refresh_shares(self, key_id: str) -> None:
        """Proactively re-randomise the key shares; the group key is unchanged.

        Raises:
            KeyBusyError: A signing session for the key is still in flight
        """
        self._require_coordinator("refresh_shares")
        self._usable_key(key_id)
        await self.sessions.expire()
        active = self.sessions.active_for_key(key_id)
        if active:
            raise KeyBusyError(
                f"Key {key_id} has {len(active)} signing session(s) in flight; retry after they finish"
            )
        await self._request("POST", f"/keys/{key_id}/refresh")
        logger.info("MPC key shares refreshed", key_id=key_id)

    # =========================================================================
    # Encryption (ECIES to the group public key)
    # =========================================================================

    async def encrypt(self, request: EncryptRequest) -> EncryptedPayload:
        self._require_coordinator("encrypt")
        if not request.key_id:
            raise KMSError("MPC encryption requires the key_id of a group key")
        metadata = self._usable_key(request.key_id)
        if metadata.key_type != KeyType.ENCRYPTION:
            raise KMSError(f"Key {request.key_id} is not an encryption key")

        ephemeral = ec.generate_private_key(ec.SECP256K1())
        shared = ephemeral.exchange(ec.ECDH(), self._public_keys[request.key_id])
        ephemeral_public = to_hex(_compressed(ephemeral.public_key()))
        key = self._ecies_key(shared, request.key_id, ephemeral_public)

        plaintext = request.data_bytes
        return build_payload(
            ciphertext=seal(key, plaintext, policy_aad(request.policy)),
            plaintext=plaintext,
            policy=request.policy,
            provider=self.provider_type,
            key_id=request.key_id,
            encapsulation={"scheme": ECIES_SCHEME, "ephemeralPublicKey": ephemeral_public},
            metadata=request.metadata,
        )

    async def decrypt(self, request: DecryptRequest) -> bytes:
        self._require_coordinator("decrypt")
        payload = request.payload
        if payload.provider != self.provider_type:
            raise DecryptionError(f"Payload was sealed by the {payload.provider.value} provider")
        if payload.policy_hash != payload.policy.policy_hash():
            raise DecryptionError("Payload policy does not match its policy hash")
        if not payload.key_id:
            raise DecryptionError("MPC payload has no key_id")
        self._usable_key(payload.key_id)

        ephemeral_public = payload.encapsulation.get("ephemeralPublicKey")
        if not ephemeral_public:
            raise DecryptionError("MPC payload has no ephemeral public key")

        await self.engine.authorize(payload.policy, request.auth_sig)

        data = await self._request("POST", f"/keys/{payload.key_id}/ecdh", json={
            "ephemeralPublicKey": ephemeral_public,
            "policyHash": payload.policy_hash,
        })
        try:
            shared = from_hex(data["sharedSecret"])
        except (KeyError, ValueError) as e:
            raise DecryptionError("Coordinator returned a malformed shared secret") from e

        key = self._ecies_key(shared, payload.key_id, ephemeral_public)
        plaintext = open_sealed(key, b64decode(payload.ciphertext), policy_aad(payload.policy))
        check_integrity(payload, plaintext)
        return plaintext

    def _ecies_key(self, shared: bytes, key_id: str, ephemeral_public: str) -> bytes:
        return derive_key(
            shared,
            (self.settings.hkdf_salt or "").encode(),
            f"ecies:{key_id}:{ephemeral_public}",
        )

    # =========================================================================
    # Threshold signing
    # =========================================================================

    async def sign(self, request: SignRequest) -> SignedMessage:
        """Threshold sign with the configured threshold and party count."""
        self._require_coordinator("sign")
        result = await self.threshold_sign(ThresholdSignRequest(
            message=request.message,
            key_id=request.key_id,
            threshold=self.threshold,
            total_parties=self.total_parties,
            hash_algorithm=request.hash_algorithm,
            auth_sig=request.auth_sig,
        ))
        signature = from_hex(result.signature)
        session = self.sessions.get(result.session_id)
        return SignedMessage(
            message=session.message if session else "",
            signature=result.signature,
            key_id=request.key_id,
            signed_at=result.signed_at,
            recovery_id=signature[64] - 27 if len(signature) == 65 else None,
        )

    async def threshold_sign(self, request: ThresholdSignRequest) -> ThresholdSignature:
        """Open a signing session and drive it to a terminal state.

        Partials arrive by polling the coordinator or through submit_partial;
        whichever delivers the threshold-th partial triggers aggregation.

        Raises:
            KMSError: The session failed (timeout, party error, bad aggregate)
        """
        self._require_coordinator("threshold_sign")
        metadata = self._usable_key(request.key_id)
        if metadata.key_type != KeyType.SIGNING:
            raise KMSError(f"Key {request.key_id} is not a signing key")
        await self.engine.authorize(metadata.policy, request.auth_sig)
        await self.connect()

        digest = digest_message(request.message_bytes, request.hash_algorithm)
        session = await self.sessions.create(
            key_id=request.key_id,
            message=to_hex(digest),
            threshold=request.threshold,
            total_parties=request.total_parties,
            ttl_seconds=self.settings.session_ttl_seconds,
        )

        with session_context(session.session_id):
            try:
                await self._request("POST", "/sessions", json={
                    "sessionId": session.session_id,
                    "keyId": request.key_id,
                    "message": session.message,
                    "threshold": request.threshold,
                    "totalParties": request.total_parties,
                })
            except KMSError as e:
                await self.sessions.fail(session.session_id, f"coordinator rejected session: {e}")
                raise

            try:
                session = await self._drive(session.session_id)
            except BaseException as e:
                # Covers cancellation too, so the key is not left busy
                await self._abort(session.session_id, e)
                raise

        if session.status != SessionStatus.COMPLETE:
            raise KMSError(f"Threshold signing session {session.session_id} failed: {session.error}")

        return ThresholdSignature(
            signature=session.signature,
            participant_count=session.collected,
            threshold=session.threshold,
            key_id=session.key_id,
            session_id=session.session_id,
            signed_at=int(session.finished_at or time.time()),
        )

    async def _abort(self, session_id: str, error: BaseException) -> None:
        try:
            await self.sessions.fail(session_id, f"signing round aborted: {error or type(error).__name__}")
        except (SessionTerminalError, SessionNotFoundError):
            pass

    async def _drive(self, session_id: str) -> SigningSession:
        """Poll the coordinator until the session is terminal."""
        interval = self.settings.mpc_poll_interval_seconds
        while True:
            session = self.sessions.get(session_id)
            if session is None or session.status.is_terminal:
                return session
            if self.sessions.clock() >= session.expires_at:
                await self.sessions.expire()
                continue

            state = await self._request("GET", f"/sessions/{session_id}")
            if state.get("status") == SessionStatus.FAILED.value:
                session = self.sessions.get(session_id)
                if not session.status.is_terminal:
                    await self.sessions.fail(session_id, state.get("error") or "coordinator reported failure")
                continue

            for party_id, partial in sorted(state.get("partials", {}).items()):
                session = self.sessions.get(session_id)
                if session.status.is_terminal:
                    break
                try:
                    await self.sessions.add_partial(session_id, int(party_id), partial)
                except InvalidPartyError as e:
                    logger.warning("Coordinator reported partial from unknown party", error=str(e))
                except SessionTerminalError:
                    break

            await self.sessions.wait(session_id, timeout=interval)

    async def submit_partial(self, session_id: str, party_id: int, partial: str) -> SigningSession:
        """Push a party's partial signature into a session."""
        self._require_coordinator("submit_partial")
        return await self.sessions.add_partial(session_id, party_id, partial)

    async def get_signing_session(self, session_id: str) -> SigningSession | None:
        if not self.coordinator:
            return None
        return self.sessions.get(session_id)

    async def list_pending_sessions(self) -> list[SigningSession]:
        """Signing sessions still waiting on partials, oldest first."""
        if not self.coordinator:
            return []
        await self.sessions.expire()
        return sorted(self.sessions.pending(), key=lambda s: s.created_at)

    async def _aggregate(self, session: SigningSession) -> str:
        """Combine threshold partials on the coordinator and verify the result."""
        data = await self._request("POST", f"/sessions/{session.session_id}/aggregate", json={
            "partials": {str(party): partial for party, partial in session.partials.items()},
        })
        raw = from_hex(data["signature"])
        if len(raw) not in (64, 65):
            raise KMSError(f"Aggregate signature has invalid length {len(raw)}")

        r = int.from_bytes(raw[:32], "big")
        s = int.from_bytes(raw[32:64], "big")
        digest = from_hex(session.message)
        public_key = self._public_keys[session.key_id]
        try:
            public_key.verify(
                utils.encode_dss_signature(r, s),
                digest,
                ec.ECDSA(utils.Prehashed(hashes.SHA256())),
            )
        except InvalidSignature as e:
            raise KMSError("Aggregate signature does not verify against the group key") from e

        recovery_id = recovery_id_for(digest, r, s, public_key)
        return to_hex(raw[:64] + bytes([27 + recovery_id]))


def _compressed(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
