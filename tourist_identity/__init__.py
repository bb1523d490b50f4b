"""
Tourist Identity System
=======================

Decentralized identity and Verifiable Credentials for tourist safety.

Components:
- CryptoService: key generation, password-based encryption, signing
- ContentStore: content-addressed storage for encrypted payloads
- LedgerClient: DID registry and revocation registry
- IdentityManager: create, load and resolve DIDs
- CredentialService: issue, verify and revoke credentials
- SessionWallet: the unlocked identity of the current user

Standards:
- W3C DID Core 1.0: https://www.w3.org/TR/did-core/
- W3C Verifiable Credentials: https://www.w3.org/TR/vc-data-model/
"""

from .config import IdentitySettings, get_settings
from .content_store import ContentStore, FileContentStore, InMemoryContentStore, compute_content_id
from .credential_service import CredentialService
from .credential_verifier import CredentialVerifier, VerificationError, VerificationResult, VerificationStatus
from .credentials import CredentialType, KycEnvelopeMeta, VerifiableCredential, VerifiablePresentation
from .crypto_service import CryptoService, EncryptedEnvelope, KeyPair, SealedMessage
from .did_document import DIDDocument, Identity, IdentityState, ServiceEndpoint
from .identity_manager import IdentityManager
from .kyc import KycData, KycSubmission, calculate_verification_level
from .ledger_client import InMemoryLedger, LedgerClient, RevocationRecord, TxReceipt
from .session_wallet import SessionIdentity, SessionWallet
from .stack import IdentityStack, build_identity_stack

__version__ = "1.0.0"
__all__ = [
    # Config
    "IdentitySettings",
    "get_settings",

    # Crypto
    "CryptoService",
    "EncryptedEnvelope",
    "KeyPair",
    "SealedMessage",

    # Storage / ledger
    "ContentStore",
    "FileContentStore",
    "InMemoryContentStore",
    "compute_content_id",
    "LedgerClient",
    "InMemoryLedger",
    "RevocationRecord",
    "TxReceipt",

    # Identity
    "IdentityManager",
    "Identity",
    "IdentityState",
    "DIDDocument",
    "ServiceEndpoint",

    # Credentials
    "CredentialService",
    "CredentialVerifier",
    "CredentialType",
    "VerifiableCredential",
    "VerifiablePresentation",
    "VerificationError",
    "VerificationResult",
    "VerificationStatus",
    "KycData",
    "KycSubmission",
    "KycEnvelopeMeta",
    "calculate_verification_level",

    # Session
    "SessionWallet",
    "SessionIdentity",
    "IdentityStack",
    "build_identity_stack"
]
