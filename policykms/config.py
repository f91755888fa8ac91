"""KMS configuration."""

import secrets
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """KMS settings loaded from environment variables (prefix ``KMS_``)."""

    # Environment
    environment: str = "development"  # development, staging, production

    # Development mode (simulated attestation, generated secrets) - MUST be False in production
    dev_mode: bool = False

    # Provider selection: "auto" picks the first available of network, enclave, mpc
    provider: str = "auto"
    fallback_enabled: bool = True
    default_chain: str = "base-sepolia"

    # Bounded health probes (seconds). Must stay below 3s.
    probe_timeout_seconds: float = 2.0
    request_timeout_seconds: float = 10.0

    # Distributed threshold network gateway
    network_endpoint: Optional[str] = None
    network_name: str = "datil-dev"
    # Secret for local sealing when the network is unreachable
    fallback_secret: Optional[str] = None

    # Enclave
    enclave_endpoint: Optional[str] = None
    enclave_api_key: Optional[str] = None
    enclave_root_secret: Optional[str] = None

    # MPC coordinator (absent until deployed)
    mpc_coordinator_endpoint: Optional[str] = None
    mpc_threshold: int = 2
    mpc_total_parties: int = 3
    mpc_poll_interval_seconds: float = 0.5

    # Threshold signing sessions
    session_ttl_seconds: int = 300
    max_sessions: int = 1024

    # HKDF salt for key derivation (should be unique per deployment)
    hkdf_salt: Optional[str] = None

    # Chain name -> JSON-RPC URL for fact lookups
    chain_rpc_urls: dict[str, str] = {}

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @model_validator(mode="after")
    def _set_dev_defaults(self) -> "Settings":
        """Generate random secrets in dev mode; require explicit secrets otherwise."""
        if self.probe_timeout_seconds <= 0 or self.probe_timeout_seconds >= 3:
            raise ValueError("KMS_PROBE_TIMEOUT_SECONDS must be within (0, 3)")
        if self.mpc_threshold < 1 or self.mpc_threshold > self.mpc_total_parties:
            raise ValueError("KMS_MPC_THRESHOLD must be between 1 and KMS_MPC_TOTAL_PARTIES")
        if self.dev_mode and self.is_production:
            raise ValueError("KMS_DEV_MODE must be false when KMS_ENVIRONMENT=production")

        if self.dev_mode:
            if not self.enclave_root_secret:
                self.enclave_root_secret = secrets.token_hex(32)
            if not self.fallback_secret:
                self.fallback_secret = secrets.token_hex(32)
            if not self.hkdf_salt:
                self.hkdf_salt = secrets.token_hex(16)
        else:
            missing = []
            if not self.enclave_root_secret:
                missing.append("KMS_ENCLAVE_ROOT_SECRET")
            if not self.hkdf_salt:
                missing.append("KMS_HKDF_SALT")
            if self.fallback_enabled and not self.fallback_secret:
                missing.append("KMS_FALLBACK_SECRET")
            if missing:
                raise ValueError(f"Missing required secrets (set KMS_DEV_MODE=true for development): {', '.join(missing)}")
        return self

    model_config = SettingsConfigDict(env_prefix="KMS_", env_file=".env", case_sensitive=False)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
