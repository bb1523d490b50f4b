"""
config.py - Centralised settings for the identity subsystem
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class IdentitySettings(BaseSettings):
    # DID namespace: did:<method>:<network>:<address>
    DID_METHOD: str = "ethr"
    NETWORK: str = "sepolia"

    # scrypt cost parameters (recorded in every envelope)
    KDF_N: int = 2 ** 15
    KDF_R: int = 8
    KDF_P: int = 1
    KDF_LENGTH: int = 32

    # Verification
    CLOCK_SKEW_SECONDS: int = 300
    CREDENTIAL_VALIDITY_DAYS: int = 365  # 0 = no expiration
    REVOCATION_LIST_ID: str = "tourist-safety-revocations"

    # Local persistence (in-memory when unset)
    KEY_STORE_DIR: Optional[Path] = None
    CONTENT_STORE_DIR: Optional[Path] = None

    # Caller retry policy for transient storage / ledger failures
    LEDGER_MAX_ATTEMPTS: int = 3
    LEDGER_BACKOFF_SECONDS: float = 0.5
    PIN_MAX_ATTEMPTS: int = 3

    class Config:
        env_prefix = "TOURIST_ID_"
        env_file = ".env"


@lru_cache()
def get_settings() -> IdentitySettings:
    return IdentitySettings()
