"""
Error taxonomy for the identity subsystem
=========================================

Every failure carries the operation name and the non-secret parameters it
was called with. ``retryable`` marks transient failures that a caller may
retry with backoff (see ``retry.py``); everything else is fatal to the
current operation.

A negative credential verification is NOT an exception: see
``credential_verifier.VerificationError``.
"""

from typing import Any, Dict, Optional


class IdentitySystemError(Exception):
    """Base class for all subsystem failures"""

    retryable = False

    def __init__(
        self,
        message: str = "",
        operation: str = "",
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.operation = operation
        self.context = dict(context or {})

    def __str__(self) -> str:
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "operation": self.operation,
            "retryable": self.retryable,
            "context": self.context
        }


# ==================== CRYPTO ====================

class CryptoError(IdentitySystemError):
    """Key, derivation or signature failure. Never retried automatically."""


class DecryptionFailed(CryptoError):
    """
    Authenticated decryption failed.

    Raised both for a wrong key (wrong password) and for tampered
    ciphertext/tag: AES-GCM reports a single failure for both cases.
    """


class KeyDerivationError(CryptoError):
    """Password-based key derivation could not run with the given parameters"""


class SignatureError(CryptoError):
    """Signing failed or key material is malformed"""


# ==================== STORAGE ====================

class StorageError(IdentitySystemError):
    """Off-chain content or local envelope storage failure"""


class NotFound(StorageError):
    """Content id or local envelope does not exist (or was collected)"""


class Unavailable(StorageError):
    """Store temporarily unreachable"""

    retryable = True


class ContentIntegrityError(StorageError):
    """Retrieved bytes do not hash to the requested content id"""


# ==================== LEDGER ====================

class LedgerError(IdentitySystemError):
    """Failure reported by (or while reaching) the ledger"""


class LedgerNetworkError(LedgerError):
    """Transport failure; the write may or may not have been applied"""

    retryable = True


class InsufficientFunds(LedgerError):
    """Signer cannot pay for the write yet"""

    retryable = True


class AlreadyRegistered(LedgerError):
    """DID or revocation slot is controlled by a different signer"""


class Unauthorized(LedgerError):
    """Signer is not allowed to perform this write"""


class DIDNotFound(LedgerError):
    """DID has no registered document on the ledger"""


# ==================== IDENTITY ====================

class IdentityError(IdentitySystemError):
    """Identity lifecycle violation"""


class AliasInUse(IdentityError):
    """A local identity with this alias already exists"""


class IdentityLocked(IdentityError):
    """Operation needs private key material but the identity is not loaded"""


# ==================== KYC REVIEW ====================

class KycReviewError(IdentitySystemError):
    """KYC review workflow violation"""


class NoPendingSubmission(KycReviewError):
    """The tourist has no KYC submission awaiting review"""


class InvalidReview(KycReviewError):
    """Unknown review outcome or verification level"""


# ==================== SESSION ====================

class SessionError(IdentitySystemError):
    """User-facing session failure"""


class NoActiveSession(SessionError):
    """No identity is unlocked in the session wallet"""

    def __init__(self, operation: str = ""):
        super().__init__("No active session", operation=operation)


class WrongPassword(SessionError):
    """
    Unlock or re-authentication failed.

    The message never says whether the password or the stored data was at
    fault.
    """

    def __init__(self, operation: str = "", context: Optional[Dict[str, Any]] = None):
        super().__init__("Unable to unlock identity", operation=operation, context=context)
