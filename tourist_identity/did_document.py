"""
DID Document - Identity and DID Document types (W3C DID Core 1.0)

DID Format: did:<method>:<network>:<address>

The address is the secp256k1 ledger account that controls the DID, so
the identifier value never changes while the key set can be rotated.

Reference: https://www.w3.org/TR/did-core/
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .crypto_service import LedgerAccount, b64decode, b64encode
from .ledger_client import TxReceipt, document_hash

ED25519_KEY_TYPE = "Ed25519VerificationKey2020"
X25519_KEY_TYPE = "X25519KeyAgreementKey2020"
SECP256K1_KEY_TYPE = "EcdsaSecp256k1RecoveryMethod2020"

_KEY_TYPES = {
    "Ed25519": ED25519_KEY_TYPE,
    "X25519": X25519_KEY_TYPE,
    "secp256k1": SECP256K1_KEY_TYPE,
}
_ALGORITHMS = {v: k for k, v in _KEY_TYPES.items()}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class IdentityState(Enum):
    """Lifecycle of a local identity"""
    UNINITIALIZED = "uninitialized"
    CREATED = "created"        # keys generated, envelope stored locally
    REGISTERED = "registered"  # document anchored on the ledger
    LOADED = "loaded"          # private keys decrypted in memory
    LOCKED = "locked"          # private keys wiped from memory


@dataclass
class PublicKeyEntry:
    """One verification method of a DID"""
    id: str
    algorithm: str  # Ed25519, X25519, secp256k1
    public_key: bytes = b""
    controller: str = ""
    ethereum_address: Optional[str] = None

    def to_verification_method(self) -> Dict[str, Any]:
        """Convert to W3C Verification Method format"""
        method = {
            "id": self.id,
            "type": _KEY_TYPES[self.algorithm],
            "controller": self.controller,
        }
        if self.ethereum_address:
            method["ethereumAddress"] = self.ethereum_address
        else:
            # multibase 'u' = base64url, no padding
            method["publicKeyMultibase"] = "u" + b64encode(self.public_key)
        return method

    @classmethod
    def from_verification_method(cls, data: Dict[str, Any]) -> "PublicKeyEntry":
        multibase = data.get("publicKeyMultibase", "")
        return cls(
            id=data["id"],
            algorithm=_ALGORITHMS.get(data.get("type", ""), data.get("type", "")),
            public_key=b64decode(multibase[1:]) if multibase.startswith("u") else b"",
            controller=data.get("controller", ""),
            ethereum_address=data.get("ethereumAddress")
        )


@dataclass
class ServiceEndpoint:
    """Service endpoint in DID Document"""
    id: str
    type: str
    endpoint: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "serviceEndpoint": self.endpoint}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceEndpoint":
        return cls(id=data["id"], type=data["type"], endpoint=data["serviceEndpoint"])


@dataclass
class DIDDocument:
    """
    W3C DID Document

    Reference: https://www.w3.org/TR/did-core/#core-properties
    """
    id: str
    controller: str = ""
    verification_method: List[PublicKeyEntry] = field(default_factory=list)
    authentication: List[str] = field(default_factory=list)
    assertion_method: List[str] = field(default_factory=list)
    key_agreement: List[str] = field(default_factory=list)
    service: List[ServiceEndpoint] = field(default_factory=list)
    created: str = ""
    updated: str = ""

    def __post_init__(self):
        if not self.controller:
            self.controller = self.id
        if not self.created:
            self.created = utc_now()
        if not self.updated:
            self.updated = self.created

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C DID Document JSON format"""
        doc = {
            "@context": [
                "https://www.w3.org/ns/did/v1",
                "https://w3id.org/security/suites/ed25519-2020/v1",
                "https://w3id.org/security/suites/x25519-2020/v1"
            ],
            "id": self.id,
            "controller": self.controller,
            "verificationMethod": [vm.to_verification_method() for vm in self.verification_method],
            "authentication": list(self.authentication),
            "assertionMethod": list(self.assertion_method),
        }
        if self.key_agreement:
            doc["keyAgreement"] = list(self.key_agreement)
        if self.service:
            doc["service"] = [s.to_dict() for s in self.service]
        doc["created"] = self.created
        doc["updated"] = self.updated
        return doc

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def document_hash(self) -> str:
        return document_hash(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DIDDocument":
        return cls(
            id=data["id"],
            controller=data.get("controller", ""),
            verification_method=[
                PublicKeyEntry.from_verification_method(vm) for vm in data.get("verificationMethod", [])
            ],
            authentication=list(data.get("authentication", [])),
            assertion_method=list(data.get("assertionMethod", [])),
            key_agreement=list(data.get("keyAgreement", [])),
            service=[ServiceEndpoint.from_dict(s) for s in data.get("service", [])],
            created=data.get("created", ""),
            updated=data.get("updated", "")
        )

    def find_key(self, key_id: str) -> Optional[PublicKeyEntry]:
        for vm in self.verification_method:
            if vm.id == key_id:
                return vm
        return None


@dataclass
class PrivateKeyMaterial:
    """
    Private half of an identity. Lives in memory only while the identity is
    loaded; at rest it exists solely inside the password envelope.
    """
    signing_key_id: str
    signing_key: bytes = field(repr=False)
    agreement_key_id: str = ""
    agreement_key: bytes = field(default=b"", repr=False)
    ledger_account: Optional[LedgerAccount] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signingKeyId": self.signing_key_id,
            "signingKey": b64encode(self.signing_key),
            "agreementKeyId": self.agreement_key_id,
            "agreementKey": b64encode(self.agreement_key),
            "ledgerAddress": self.ledger_account.address if self.ledger_account else None,
            "ledgerKey": self.ledger_account.private_key if self.ledger_account else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrivateKeyMaterial":
        account = None
        if data.get("ledgerKey"):
            account = LedgerAccount(address=data["ledgerAddress"], private_key=data["ledgerKey"])
        return cls(
            signing_key_id=data["signingKeyId"],
            signing_key=b64decode(data["signingKey"]),
            agreement_key_id=data.get("agreementKeyId", ""),
            agreement_key=b64decode(data.get("agreementKey", "")),
            ledger_account=account
        )


@dataclass
class Identity:
    """
    A user's DID plus (while loaded) its private key material

    The identifier is immutable; the public key set changes on rotation.
    """
    identifier: str
    alias: str
    controller_key: str
    public_keys: List[PublicKeyEntry] = field(default_factory=list)
    service_endpoints: List[ServiceEndpoint] = field(default_factory=list)
    state: IdentityState = IdentityState.UNINITIALIZED
    key_version: int = 1
    created: str = ""
    updated: str = ""
    receipt: Optional[TxReceipt] = None
    keys: Optional[PrivateKeyMaterial] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.created:
            self.created = utc_now()

    @property
    def is_loaded(self) -> bool:
        return self.state == IdentityState.LOADED and self.keys is not None

    def signing_key_id(self) -> str:
        return f"{self.identifier}#key-{self.key_version}"

    def agreement_key_id(self) -> str:
        return f"{self.identifier}#key-agreement-{self.key_version}"

    def to_document(self) -> DIDDocument:
        """Build the DID Document that is anchored on the ledger"""
        signing = [k for k in self.public_keys if k.algorithm == "Ed25519"]
        agreement = [k for k in self.public_keys if k.algorithm == "X25519"]
        return DIDDocument(
            id=self.identifier,
            controller=self.identifier,
            verification_method=list(self.public_keys),
            authentication=[k.id for k in signing] + [self.controller_key],
            assertion_method=[k.id for k in signing],
            key_agreement=[k.id for k in agreement],
            service=list(self.service_endpoints),
            created=self.created,
            updated=self.updated
        )

    def wipe_keys(self) -> None:
        self.keys = None
        if self.state == IdentityState.LOADED:
            self.state = IdentityState.LOCKED

    def public_view(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "alias": self.alias,
            "controllerKey": self.controller_key,
            "publicKeys": [k.to_verification_method() for k in self.public_keys],
            "serviceEndpoints": [s.to_dict() for s in self.service_endpoints],
            "state": self.state.value
        }
