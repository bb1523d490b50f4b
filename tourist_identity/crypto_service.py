"""
Crypto Service - Cryptographic primitives for the identity subsystem

Supports:
- Ed25519: DID assertion/authentication keys (W3C recommended)
- X25519: key agreement for sealing data to a DID
- secp256k1: ledger account that controls the DID (Ethereum compatible)
- scrypt + AES-256-GCM: password-based envelopes for private keys and KYC data
"""

import base64
import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from eth_account import Account
from eth_account.messages import encode_defunct

from .config import IdentitySettings, get_settings
from .errors import DecryptionFailed, KeyDerivationError, SignatureError


SALT_BYTES = 16
NONCE_BYTES = 12
SYMMETRIC_ALGORITHM = "AES-256-GCM"
SEAL_INFO = b"tourist-identity-seal"


def b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding used for hashing and signing"""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass
class KeyPair:
    """Raw asymmetric key pair"""
    algorithm: str  # Ed25519, X25519
    public_key: bytes
    private_key: bytes = field(repr=False)

    @property
    def public_key_b64(self) -> str:
        return b64encode(self.public_key)


@dataclass
class LedgerAccount:
    """secp256k1 account used to sign ledger writes"""
    address: str
    private_key: str = field(repr=False)  # 0x-prefixed hex


@dataclass(frozen=True)
class KdfParams:
    """Cost parameters for the password KDF; travel with every envelope"""
    algorithm: str = "scrypt"
    n: int = 2 ** 15
    r: int = 8
    p: int = 1
    length: int = 32

    def to_dict(self) -> Dict[str, Any]:
        return {"algorithm": self.algorithm, "n": self.n, "r": self.r, "p": self.p, "length": self.length}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KdfParams":
        return cls(
            algorithm=data.get("algorithm", "scrypt"),
            n=int(data["n"]),
            r=int(data["r"]),
            p=int(data["p"]),
            length=int(data.get("length", 32))
        )


@dataclass
class EncryptedEnvelope:
    """
    Self-describing symmetric ciphertext.

    Salt, nonce and KDF parameters travel with the ciphertext so that the
    same password re-derives the same key. The password is never stored.
    """
    ciphertext: bytes = field(repr=False)
    nonce: bytes
    salt: bytes = b""
    kdf_params: Optional[KdfParams] = None
    algorithm: str = SYMMETRIC_ALGORITHM

    def metadata(self) -> Dict[str, Any]:
        """Non-secret parameters (everything except the ciphertext)"""
        return {
            "algorithm": self.algorithm,
            "salt": b64encode(self.salt),
            "nonce": b64encode(self.nonce),
            "kdfParams": self.kdf_params.to_dict() if self.kdf_params else None
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.metadata()
        data["ciphertext"] = b64encode(self.ciphertext)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        kdf = data.get("kdfParams")
        return cls(
            ciphertext=b64decode(data["ciphertext"]),
            nonce=b64decode(data["nonce"]),
            salt=b64decode(data.get("salt", "")),
            kdf_params=KdfParams.from_dict(kdf) if kdf else None,
            algorithm=data.get("algorithm", SYMMETRIC_ALGORITHM)
        )


@dataclass
class SealedMessage:
    """Ciphertext sealed to a recipient's X25519 key"""
    ciphertext: bytes = field(repr=False)
    nonce: bytes
    ephemeral_public_key: bytes
    algorithm: str = "X25519-HKDF-SHA256-AES-256-GCM"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "ciphertext": b64encode(self.ciphertext),
            "nonce": b64encode(self.nonce),
            "ephemeralPublicKey": b64encode(self.ephemeral_public_key)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SealedMessage":
        return cls(
            ciphertext=b64decode(data["ciphertext"]),
            nonce=b64decode(data["nonce"]),
            ephemeral_public_key=b64decode(data["ephemeralPublicKey"]),
            algorithm=data.get("algorithm", "X25519-HKDF-SHA256-AES-256-GCM")
        )


class CryptoService:
    """
    Stateless cryptographic operations

    Features:
    - Generate Ed25519 / X25519 key pairs and secp256k1 ledger accounts
    - Derive keys from passwords (scrypt, fixed cost parameters)
    - Authenticated symmetric encryption (AES-256-GCM)
    - Seal/open data for a recipient public key
    - Sign and verify messages

    Failures are raised immediately and are never retried. Secret inputs are
    never included in log records or exception context.
    """

    def __init__(self, settings: Optional[IdentitySettings] = None):
        settings = settings or get_settings()
        self.kdf_params = KdfParams(
            n=settings.KDF_N,
            r=settings.KDF_R,
            p=settings.KDF_P,
            length=settings.KDF_LENGTH
        )

    # ==================== KEY GENERATION ====================

    def generate_key_pair(self) -> KeyPair:
        """Generate an Ed25519 signing key pair"""
        private_key = ed25519.Ed25519PrivateKey.generate()
        return KeyPair(
            algorithm="Ed25519",
            public_key=private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            ),
            private_key=private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption()
            )
        )

    def generate_agreement_key_pair(self) -> KeyPair:
        """Generate an X25519 key-agreement key pair"""
        private_key = x25519.X25519PrivateKey.generate()
        return KeyPair(
            algorithm="X25519",
            public_key=private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            ),
            private_key=private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption()
            )
        )

    def generate_ledger_account(self) -> LedgerAccount:
        """Generate a secp256k1 account (Ethereum compatible)"""
        account = Account.create()
        return LedgerAccount(address=account.address, private_key="0x" + bytes(account.key).hex())

    def ledger_account_from_key(self, private_key: str) -> LedgerAccount:
        account = Account.from_key(private_key)
        return LedgerAccount(address=account.address, private_key=private_key)

    # ==================== KEY DERIVATION ====================

    def new_salt(self) -> bytes:
        return os.urandom(SALT_BYTES)

    def derive_key(self, password: str, salt: bytes, params: Optional[KdfParams] = None) -> bytes:
        """
        Derive a symmetric key from a password

        Deterministic for fixed (password, salt, params).

        Args:
            password: User password
            salt: Random salt stored alongside the ciphertext
            params: Cost parameters (defaults to the configured ones)

        Returns:
            Raw key bytes
        """
        params = params or self.kdf_params
        if params.algorithm != "scrypt":
            raise KeyDerivationError(
                f"Unsupported KDF: {params.algorithm}",
                operation="derive_key",
                context={"algorithm": params.algorithm}
            )
        try:
            kdf = Scrypt(salt=salt, length=params.length, n=params.n, r=params.r, p=params.p)
            return kdf.derive(password.encode("utf-8"))
        except (ValueError, MemoryError) as e:
            raise KeyDerivationError(
                f"Key derivation failed: {type(e).__name__}",
                operation="derive_key",
                context=params.to_dict()
            ) from e

    # ==================== SYMMETRIC ENCRYPTION ====================

    def encrypt(
        self,
        plaintext: bytes,
        key: bytes,
        salt: bytes = b"",
        kdf_params: Optional[KdfParams] = None
    ) -> EncryptedEnvelope:
        """
        Encrypt with AES-256-GCM under a fresh random nonce

        Args:
            plaintext: Bytes to protect
            key: 32-byte symmetric key
            salt: Salt the key was derived with (recorded, not used here)
            kdf_params: KDF parameters the key was derived with

        Returns:
            EncryptedEnvelope
        """
        nonce = os.urandom(NONCE_BYTES)
        try:
            ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
        except ValueError as e:
            raise KeyDerivationError("Invalid symmetric key", operation="encrypt") from e
        return EncryptedEnvelope(ciphertext=ciphertext, nonce=nonce, salt=salt, kdf_params=kdf_params)

    def decrypt(self, envelope: EncryptedEnvelope, key: bytes) -> bytes:
        """
        Decrypt an envelope

        Raises:
            DecryptionFailed: wrong key or tampered ciphertext/tag
        """
        if envelope.algorithm != SYMMETRIC_ALGORITHM:
            raise DecryptionFailed(
                f"Unsupported algorithm: {envelope.algorithm}",
                operation="decrypt"
            )
        try:
            return AESGCM(key).decrypt(envelope.nonce, envelope.ciphertext, None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionFailed("Decryption failed", operation="decrypt") from e

    def encrypt_with_password(self, plaintext: bytes, password: str) -> EncryptedEnvelope:
        """Derive a key under a fresh salt and encrypt"""
        salt = self.new_salt()
        key = self.derive_key(password, salt)
        return self.encrypt(plaintext, key, salt=salt, kdf_params=self.kdf_params)

    def decrypt_with_password(self, envelope: EncryptedEnvelope, password: str) -> bytes:
        """Re-derive the key from the envelope's salt and parameters and decrypt"""
        if envelope.kdf_params is None:
            raise DecryptionFailed("Envelope has no KDF parameters", operation="decrypt_with_password")
        key = self.derive_key(password, envelope.salt, envelope.kdf_params)
        return self.decrypt(envelope, key)

    # ==================== ASYMMETRIC ENCRYPTION ====================

    def seal(self, plaintext: bytes, recipient_public_key: bytes) -> SealedMessage:
        """
        Encrypt for the holder of an X25519 private key

        Uses an ephemeral X25519 key, HKDF-SHA256 and AES-256-GCM.
        """
        ephemeral = x25519.X25519PrivateKey.generate()
        try:
            recipient = x25519.X25519PublicKey.from_public_bytes(recipient_public_key)
        except ValueError as e:
            raise SignatureError("Invalid recipient key", operation="seal") from e

        key = self._seal_key(ephemeral.exchange(recipient))
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)

        return SealedMessage(
            ciphertext=ciphertext,
            nonce=nonce,
            ephemeral_public_key=ephemeral.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw
            )
        )

    def open(self, sealed: SealedMessage, private_key: bytes) -> bytes:
        """Open a sealed message with the recipient's X25519 private key"""
        try:
            recipient = x25519.X25519PrivateKey.from_private_bytes(private_key)
            ephemeral = x25519.X25519PublicKey.from_public_bytes(sealed.ephemeral_public_key)
            key = self._seal_key(recipient.exchange(ephemeral))
            return AESGCM(key).decrypt(sealed.nonce, sealed.ciphertext, None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionFailed("Decryption failed", operation="open") from e

    def _seal_key(self, shared_secret: bytes) -> bytes:
        return HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=SEAL_INFO
        ).derive(shared_secret)

    # ==================== SIGNING ====================

    def sign(self, message: bytes, private_key: bytes) -> bytes:
        """Sign message with an Ed25519 private key"""
        try:
            key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key)
        except ValueError as e:
            raise SignatureError("Invalid Ed25519 private key", operation="sign") from e
        return key.sign(message)

    def verify(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        """
        Verify an Ed25519 signature

        Returns:
            True if signature is valid
        """
        try:
            key = ed25519.Ed25519PublicKey.from_public_bytes(public_key)
            key.verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False

    def sign_ledger_message(self, message: str, private_key: str) -> str:
        """Sign a ledger request (Ethereum personal_sign style), hex encoded"""
        try:
            signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
        except (ValueError, TypeError) as e:
            raise SignatureError("Invalid ledger key", operation="sign_ledger_message") from e
        return "0x" + bytes(signed.signature).hex()

    def recover_ledger_signer(self, message: str, signature: str) -> str:
        """Recover the address that signed a ledger request"""
        try:
            return Account.recover_message(encode_defunct(text=message), signature=signature)
        except Exception as e:
            raise SignatureError("Unrecoverable ledger signature", operation="recover_ledger_signer") from e

    # ==================== HASHING ====================

    def hash(self, data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    def hash_hex(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()
