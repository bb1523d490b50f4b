"""
Verifiable Credentials - Data model
===================================

W3C Verifiable Credentials Data Model 1.1 documents for the tourist
safety credentials (KYC, group membership, emergency contact, travel
completion) and the presentations that bundle them.

Reference: https://www.w3.org/TR/vc-data-model/
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .crypto_service import EncryptedEnvelope, KdfParams, b64decode, b64encode, canonical_json

VC_CONTEXT = [
    "https://www.w3.org/2018/credentials/v1",
    "https://w3id.org/security/suites/ed25519-2020/v1"
]
PROOF_TYPE = "Ed25519Signature2020"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CredentialType(Enum):
    """Types of credentials we issue"""
    KYC = "KYCCredential"
    GROUP_MEMBERSHIP = "GroupMembershipCredential"
    EMERGENCY_CONTACT = "EmergencyContactCredential"
    TRAVEL_COMPLETION = "TravelCompletionCredential"

    @classmethod
    def from_types(cls, types: List[str]) -> Optional["CredentialType"]:
        if not isinstance(types, list):
            return None
        for value in reversed(types):
            for member in cls:
                if member.value == value:
                    return member
        return None


@dataclass
class CredentialProof:
    """Proof attached to a credential or presentation"""
    verification_method: str  # Key ID used for signing
    signature_value: str      # base64url Ed25519 signature
    created: str = ""
    proof_purpose: str = "assertionMethod"
    type: str = PROOF_TYPE
    challenge: Optional[str] = None

    def __post_init__(self):
        if not self.created:
            self.created = utc_now()

    @property
    def signature_bytes(self) -> bytes:
        return b64decode(self.signature_value)

    def to_dict(self) -> Dict[str, Any]:
        proof = {
            "type": self.type,
            "created": self.created,
            "verificationMethod": self.verification_method,
            "proofPurpose": self.proof_purpose,
            "signatureValue": self.signature_value
        }
        if self.challenge is not None:
            proof["challenge"] = self.challenge
        return proof

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialProof":
        return cls(
            verification_method=data.get("verificationMethod", ""),
            signature_value=data.get("signatureValue", ""),
            created=data.get("created", ""),
            proof_purpose=data.get("proofPurpose", "assertionMethod"),
            type=data.get("type", PROOF_TYPE),
            challenge=data.get("challenge")
        )

    @classmethod
    def create(cls, verification_method: str, signature: bytes, **kwargs) -> "CredentialProof":
        return cls(verification_method=verification_method, signature_value=b64encode(signature), **kwargs)


@dataclass
class VerifiableCredential:
    """
    W3C Verifiable Credential

    A credential containing claims about a subject, signed by an issuer.
    Immutable once signed: revocation is recorded on the ledger, never in
    the document.
    """
    context: List[str] = field(default_factory=lambda: list(VC_CONTEXT))
    id: str = ""
    type: List[str] = field(default_factory=lambda: ["VerifiableCredential"])
    issuer: str = ""  # Issuer's DID
    issuance_date: str = ""
    expiration_date: Optional[str] = None
    credential_subject: Dict[str, Any] = field(default_factory=dict)
    credential_status: Optional[Dict[str, Any]] = None
    evidence: Optional[List[Dict[str, Any]]] = None
    proof: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"urn:uuid:{uuid.uuid4()}"
        if not self.issuance_date:
            self.issuance_date = utc_now()

    @property
    def credential_type(self) -> Optional[CredentialType]:
        return CredentialType.from_types(self.type)

    @property
    def subject(self) -> str:
        if not isinstance(self.credential_subject, dict):
            return ""
        subject = self.credential_subject.get("id", "")
        return subject if isinstance(subject, str) else ""

    @property
    def claims(self) -> Dict[str, Any]:
        if not isinstance(self.credential_subject, dict):
            return {}
        return {k: v for k, v in self.credential_subject.items() if k != "id"}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to W3C VC JSON format"""
        vc = {
            "@context": self.context,
            "id": self.id,
            "type": self.type,
            "issuer": self.issuer,
            "issuanceDate": self.issuance_date,
            "credentialSubject": self.credential_subject
        }
        if self.expiration_date:
            vc["expirationDate"] = self.expiration_date
        if self.credential_status:
            vc["credentialStatus"] = self.credential_status
        if self.evidence:
            vc["evidence"] = self.evidence
        if self.proof:
            vc["proof"] = self.proof
        return vc

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def signing_input(self) -> bytes:
        """Canonical bytes covered by the proof (document without proof)"""
        vc_dict = self.to_dict()
        vc_dict.pop("proof", None)
        return canonical_json(vc_dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifiableCredential":
        return cls(
            context=data.get("@context", []),
            id=data.get("id", ""),
            type=data.get("type", []),
            issuer=data.get("issuer", ""),
            issuance_date=data.get("issuanceDate", ""),
            expiration_date=data.get("expirationDate"),
            credential_subject=data.get("credentialSubject", {}),
            credential_status=data.get("credentialStatus"),
            evidence=data.get("evidence"),
            proof=data.get("proof")
        )


@dataclass
class VerifiablePresentation:
    """Holder-signed bundle of credentials"""
    holder: str
    verifiable_credential: List[VerifiableCredential] = field(default_factory=list)
    id: str = ""
    context: List[str] = field(default_factory=lambda: list(VC_CONTEXT))
    type: List[str] = field(default_factory=lambda: ["VerifiablePresentation"])
    proof: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"urn:uuid:{uuid.uuid4()}"

    def to_dict(self) -> Dict[str, Any]:
        vp = {
            "@context": self.context,
            "id": self.id,
            "type": self.type,
            "holder": self.holder,
            "verifiableCredential": [vc.to_dict() for vc in self.verifiable_credential]
        }
        if self.proof:
            vp["proof"] = self.proof
        return vp

    def signing_input(self, challenge: Optional[str] = None) -> bytes:
        vp_dict = self.to_dict()
        vp_dict.pop("proof", None)
        if challenge is not None:
            vp_dict["challenge"] = challenge
        return canonical_json(vp_dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifiablePresentation":
        """
        Raises:
            ValueError: ``verifiableCredential`` is not a list of objects
        """
        credentials = data.get("verifiableCredential", [])
        if not isinstance(credentials, list) or not all(isinstance(vc, dict) for vc in credentials):
            raise ValueError("verifiableCredential must be a list of objects")
        return cls(
            holder=data.get("holder", ""),
            verifiable_credential=[VerifiableCredential.from_dict(vc) for vc in credentials],
            id=data.get("id", ""),
            context=data.get("@context", []),
            type=data.get("type", []),
            proof=data.get("proof")
        )


@dataclass
class KycEnvelopeMeta:
    """
    Pointer to an encrypted payload in the content store

    Holds only non-secret parameters: no plaintext, key or password.
    """
    content_id: str
    salt: bytes
    nonce: bytes
    kdf_params: KdfParams
    submission_timestamp: int
    algorithm: str = "AES-256-GCM"
    pinned: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contentId": self.content_id,
            "salt": b64encode(self.salt),
            "nonce": b64encode(self.nonce),
            "kdfParams": self.kdf_params.to_dict(),
            "submissionTimestamp": self.submission_timestamp,
            "algorithm": self.algorithm
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KycEnvelopeMeta":
        return cls(
            content_id=data["contentId"],
            salt=b64decode(data["salt"]),
            nonce=b64decode(data["nonce"]),
            kdf_params=KdfParams.from_dict(data["kdfParams"]),
            submission_timestamp=int(data["submissionTimestamp"]),
            algorithm=data.get("algorithm", "AES-256-GCM")
        )

    def to_envelope(self, ciphertext: bytes) -> EncryptedEnvelope:
        return EncryptedEnvelope(
            ciphertext=ciphertext,
            nonce=self.nonce,
            salt=self.salt,
            kdf_params=self.kdf_params,
            algorithm=self.algorithm
        )
