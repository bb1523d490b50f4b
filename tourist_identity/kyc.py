"""
KYC payload helpers
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .credentials import KycEnvelopeMeta
from .crypto_service import b64decode, b64encode

DOCUMENT_KINDS = ("idDocument", "addressProof", "photo")
VERIFICATION_LEVELS = ("basic", "enhanced", "premium")
REVIEW_OUTCOMES = ("verified", "rejected")


@dataclass
class KycData:
    """Personal data a tourist submits for KYC (always stored encrypted)"""
    full_name: str
    email: str
    phone: str
    nationality: str = ""
    address: str = ""
    emergency_contact: str = ""
    blood_group: str = ""
    documents: Dict[str, bytes] = field(default_factory=dict, repr=False)

    def document_hashes(self) -> List[str]:
        return [hashlib.sha256(self.documents[k]).hexdigest() for k in sorted(self.documents)]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "fullName": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "nationality": self.nationality,
            "address": self.address,
            "emergencyContact": self.emergency_contact,
            "bloodGroup": self.blood_group,
            "documents": {k: b64encode(v) for k, v in self.documents.items()}
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "KycData":
        return cls(
            full_name=data.get("fullName", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
            nationality=data.get("nationality", ""),
            address=data.get("address", ""),
            emergency_contact=data.get("emergencyContact", ""),
            blood_group=data.get("bloodGroup", ""),
            documents={k: b64decode(v) for k, v in data.get("documents", {}).items()}
        )


def calculate_verification_level(data: KycData) -> str:
    """
    Score the completeness of a KYC submission

    name + email + phone: 30
    address + nationality + emergency contact: +30
    each supporting document: +15

    Returns:
        "premium" (>= 75), "enhanced" (>= 45) or "basic"
    """
    score = 0
    if data.full_name and data.email and data.phone:
        score += 30
    if data.address and data.nationality and data.emergency_contact:
        score += 30
    score += 15 * sum(1 for k in DOCUMENT_KINDS if data.documents.get(k))

    if score >= 75:
        return "premium"
    if score >= 45:
        return "enhanced"
    return "basic"


@dataclass
class KycSubmission:
    """
    Record of a submission; holds only non-secret metadata

    Starts ``pending``. A reviewer moves it to ``verified`` (and issues a
    KYC credential of their own) or ``rejected``.
    """
    tourist_did: str
    credential_id: str
    envelope: KycEnvelopeMeta
    document_hashes: List[str]
    verification_level: str
    verification_status: str = "pending"
    verified_at: Optional[str] = None
    reviewer: Optional[str] = None
    review_credential_id: Optional[str] = None
    notes: str = ""

    @property
    def is_pending(self) -> bool:
        return self.verification_status == "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "touristDID": self.tourist_did,
            "credentialId": self.credential_id,
            "envelope": self.envelope.to_dict(),
            "documentHashes": self.document_hashes,
            "submissionTimestamp": self.envelope.submission_timestamp,
            "verificationLevel": self.verification_level,
            "verificationStatus": self.verification_status,
            "verifiedAt": self.verified_at,
            "reviewer": self.reviewer,
            "reviewCredentialId": self.review_credential_id,
            "notes": self.notes,
            "pinned": self.envelope.pinned
        }
