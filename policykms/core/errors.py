"""Exception classes for KMS operations.

Every error carries a ``kind`` string so callers (and UI layers) can drive
remediation without matching on class names.
"""


class KMSError(Exception):
    """Base exception for KMS operations."""

    kind = "kms_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FeatureNotImplementedError(KMSError, NotImplementedError):
    """The active provider does not support this feature.

    Reported, never fatal: the orchestration layer uses it to fall back to
    another provider.
    """

    kind = "not_implemented"

    def __init__(self, feature: str, hint: str = "", provider: str | None = None):
        self.feature = feature
        self.hint = hint
        self.provider = provider
        message = f"{feature} is not implemented"
        if provider:
            message += f" by the {provider} provider"
        if hint:
            message += f": {hint}"
        super().__init__(message)


class PolicyNotSatisfiedError(KMSError):
    """Access-control policy evaluated to false."""

    kind = "policy_not_satisfied"

    def __init__(self, failed_conditions: list[str] | None = None):
        self.failed_conditions = failed_conditions or []
        detail = ", ".join(self.failed_conditions) or "no satisfiable conditions"
        super().__init__(f"Access policy not satisfied ({detail})")


class AuthRequiredError(KMSError):
    """A condition needs a signer but no AuthSignature was supplied."""

    kind = "auth_required"

    def __init__(self, conditions: list[str] | None = None):
        self.conditions = conditions or []
        detail = ", ".join(self.conditions)
        super().__init__(f"Auth signature required to evaluate: {detail}")


class ProviderUnavailableError(KMSError):
    """Provider connectivity or health check failed."""

    kind = "provider_unavailable"

    def __init__(self, provider: str, reason: str = ""):
        self.provider = provider
        self.reason = reason
        message = f"KMS provider '{provider}' is unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class SessionTerminalError(KMSError):
    """Operation attempted on a completed or failed signing session."""

    kind = "session_terminal"

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Signing session {session_id} is already {status}")


class SessionNotFoundError(KMSError):
    kind = "session_not_found"


class InvalidPartyError(KMSError):
    """Partial signature from a party outside the session."""

    kind = "invalid_party"


class KeyNotFoundError(KMSError):
    kind = "key_not_found"


class KeyRevokedError(KMSError):
    """Key has been revoked; revocation is terminal."""

    kind = "key_revoked"

    def __init__(self, key_id: str):
        self.key_id = key_id
        super().__init__(f"Key {key_id} has been revoked")


class KeyBusyError(KMSError):
    """Key has an in-flight signing session."""

    kind = "key_busy"


class DecryptionError(KMSError):
    """Decryption failed (wrong key, tampered ciphertext or policy)."""

    kind = "decryption_failed"
