"""
Verifiable Credentials Verifier
================================

Checks, in order:
1. Structure validation (malformed documents stop here)
2. Issuer DID resolution
3. Signature against the issuer's registered assertion key
4. Revocation status on the ledger
5. Issuance date sanity (clock-skew tolerance) and expiration

Every failing check after structure validation is collected, so a
credential that is both revoked and tampered reports both. A negative
result is a return value, never an exception; ledger/storage outages
still raise.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import IdentitySettings, get_settings
from .credentials import (
    PROOF_TYPE,
    CredentialProof,
    VerifiableCredential,
    VerifiablePresentation,
    parse_timestamp,
    utc_now,
)
from .crypto_service import CryptoService
from .did_document import DIDDocument
from .errors import DIDNotFound
from .identity_manager import IdentityManager
from .ledger_client import LedgerClient

logger = logging.getLogger(__name__)


class VerificationStatus(Enum):
    """Credential verification status"""
    VALID = "valid"
    MALFORMED = "malformed"
    ISSUER_NOT_FOUND = "issuer_not_found"
    KEY_NOT_FOUND = "key_not_found"
    INVALID_SIGNATURE = "invalid_signature"
    REVOKED = "revoked"
    STATUS_UNKNOWN = "status_unknown"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    UNTRUSTED_ISSUER = "untrusted_issuer"
    HOLDER_MISMATCH = "holder_mismatch"
    CHALLENGE_MISMATCH = "challenge_mismatch"


@dataclass(frozen=True)
class VerificationError:
    """One failed check"""
    code: VerificationStatus
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code.value, "message": self.message}


@dataclass
class VerificationResult:
    """Result of credential or presentation verification"""
    valid: bool
    errors: List[VerificationError]
    credential_id: str = ""
    issuer: str = ""
    subject: str = ""
    claims: Dict[str, Any] = field(default_factory=dict)
    checks: Dict[str, bool] = field(default_factory=dict)
    credential_results: List["VerificationResult"] = field(default_factory=list)
    verified_at: str = ""

    def __post_init__(self):
        if not self.verified_at:
            self.verified_at = utc_now()

    @property
    def status(self) -> VerificationStatus:
        return self.errors[0].code if self.errors else VerificationStatus.VALID

    def has_error(self, code: VerificationStatus) -> bool:
        return any(e.code == code for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.status.value,
            "valid": self.valid,
            "credentialId": self.credential_id,
            "issuer": self.issuer,
            "subject": self.subject,
            "checks": self.checks,
            "errors": [e.to_dict() for e in self.errors],
            "verifiedAt": self.verified_at
        }
        if self.credential_results:
            result["credentials"] = [r.to_dict() for r in self.credential_results]
        return result


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _proof_errors(proof: Any) -> List[VerificationError]:
    """Shape checks shared by credential and presentation proofs"""
    if not proof:
        message = "Missing proof"
    elif not isinstance(proof, dict):
        message = "Proof must be an object"
    elif not _is_text(proof.get("signatureValue")) or not _is_text(proof.get("verificationMethod")):
        message = "Incomplete proof"
    elif not isinstance(proof.get("type", PROOF_TYPE), str):
        message = "Proof type must be a string"
    else:
        return []
    return [VerificationError(VerificationStatus.MALFORMED, message)]


class CredentialVerifier:
    """
    Verifies Verifiable Credentials and Presentations

    Issuer keys come from the ledger through ``IdentityManager.resolve``;
    revocation state comes from the ledger's revocation registry.
    """

    def __init__(
        self,
        crypto: CryptoService,
        identity_manager: IdentityManager,
        ledger: LedgerClient,
        settings: Optional[IdentitySettings] = None,
        trusted_issuers: Optional[Iterable[str]] = None
    ):
        self.crypto = crypto
        self.identity_manager = identity_manager
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.trusted_issuers = set(trusted_issuers or [])

    # ==================== CREDENTIALS ====================

    def verify(
        self,
        credential: VerifiableCredential,
        require_trusted_issuer: bool = False,
        now: Optional[datetime] = None
    ) -> VerificationResult:
        """
        Verify a Verifiable Credential

        Args:
            credential: The credential to verify
            require_trusted_issuer: Whether issuer must be in trusted list
            now: Reference time (defaults to current UTC time)

        Returns:
            VerificationResult with every failed check listed
        """
        now = now or datetime.now(timezone.utc)
        checks = {
            "structure": False,
            "issuer": False,
            "signature": False,
            "revocation": False,
            "issuanceDate": False,
            "expiration": False,
        }

        structure_errors = self._validate_structure(credential)
        if structure_errors:
            return self._result(credential, checks, structure_errors)
        checks["structure"] = True

        errors: List[VerificationError] = []

        # (a) issuer resolution
        issuer_doc = self._resolve(credential.issuer, errors)
        checks["issuer"] = issuer_doc is not None

        # (b) signature
        if issuer_doc is not None:
            checks["signature"] = self._check_signature(
                credential.signing_input(),
                CredentialProof.from_dict(credential.proof),
                issuer_doc,
                issuer_doc.assertion_method,
                errors
            )

        # (c) revocation
        checks["revocation"] = self._check_revocation(credential, errors)

        # (d) dates
        checks["issuanceDate"], checks["expiration"] = self._check_dates(credential, now, errors)

        if require_trusted_issuer:
            trusted = credential.issuer in self.trusted_issuers
            checks["trustedIssuer"] = trusted
            if not trusted:
                errors.append(VerificationError(
                    VerificationStatus.UNTRUSTED_ISSUER, f"Issuer {credential.issuer} is not trusted"
                ))

        if errors:
            logger.info(
                "Credential %s failed verification: %s",
                credential.id, ", ".join(e.code.value for e in errors)
            )
        return self._result(credential, checks, errors)

    # ==================== PRESENTATIONS ====================

    def verify_presentation(
        self,
        presentation: VerifiablePresentation,
        challenge: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> VerificationResult:
        """
        Verify the holder's proof and every embedded credential

        Fails closed: one bad credential makes the whole presentation invalid.

        Args:
            presentation: The presentation to verify
            challenge: Expected challenge (replay protection), if any
            now: Reference time for the embedded credentials
        """
        errors: List[VerificationError] = []
        checks = {"structure": False, "holder": False, "signature": False, "credentials": False}

        if not _is_text(presentation.holder):
            errors.append(VerificationError(VerificationStatus.MALFORMED, "Holder must be a DID string"))
        if not isinstance(presentation.type, list) or "VerifiablePresentation" not in presentation.type:
            errors.append(VerificationError(VerificationStatus.MALFORMED, "Invalid or missing presentation type"))
        errors.extend(_proof_errors(presentation.proof))
        if not presentation.verifiable_credential:
            errors.append(VerificationError(VerificationStatus.MALFORMED, "Presentation contains no credentials"))
        if errors:
            return self._presentation_result(presentation, checks, errors, [])
        checks["structure"] = True

        proof = CredentialProof.from_dict(presentation.proof)
        if challenge is not None and proof.challenge != challenge:
            errors.append(VerificationError(VerificationStatus.CHALLENGE_MISMATCH, "Presentation challenge does not match"))

        holder_doc = self._resolve(presentation.holder, errors)
        checks["holder"] = holder_doc is not None
        if holder_doc is not None:
            checks["signature"] = self._check_signature(
                presentation.signing_input(proof.challenge),
                proof,
                holder_doc,
                holder_doc.authentication,
                errors,
                subject="Presentation"
            )

        results = []
        for credential in presentation.verifiable_credential:
            result = self.verify(credential, now=now)
            results.append(result)
            for error in result.errors:
                errors.append(VerificationError(error.code, f"{credential.id}: {error.message}"))
            if credential.subject != presentation.holder:
                errors.append(VerificationError(
                    VerificationStatus.HOLDER_MISMATCH,
                    f"{credential.id}: subject is not the presentation holder"
                ))
        checks["credentials"] = all(r.valid for r in results)

        return self._presentation_result(presentation, checks, errors, results)

    # ==================== CHECKS ====================

    def _validate_structure(self, credential: VerifiableCredential) -> List[VerificationError]:
        errors = []

        def malformed(message: str):
            errors.append(VerificationError(VerificationStatus.MALFORMED, message))

        if not _is_text(credential.id):
            malformed("Missing credential ID")
        if not isinstance(credential.type, list) or "VerifiableCredential" not in credential.type:
            malformed("Invalid or missing credential type")
        elif credential.credential_type is None:
            malformed("Unknown credential kind")
        if not _is_text(credential.issuer):
            malformed("Issuer must be a DID string")
        if not _is_text(credential.issuance_date):
            malformed("Missing issuance date")
        if credential.expiration_date is not None and not isinstance(credential.expiration_date, str):
            malformed("Expiration date must be a string")
        if not isinstance(credential.credential_subject, dict):
            malformed("Credential subject must be an object")
        elif not credential.subject:
            malformed("Missing credential subject")
        if credential.credential_status is not None and not isinstance(credential.credential_status, dict):
            malformed("Credential status must be an object")
        if credential.evidence is not None and not isinstance(credential.evidence, list):
            malformed("Evidence must be a list")
        errors.extend(_proof_errors(credential.proof))

        return errors

    def _resolve(self, did: str, errors: List[VerificationError]) -> Optional[DIDDocument]:
        try:
            return self.identity_manager.resolve(did)
        except DIDNotFound:
            errors.append(VerificationError(VerificationStatus.ISSUER_NOT_FOUND, f"Could not resolve DID: {did}"))
            return None

    def _check_signature(
        self,
        message: bytes,
        proof: CredentialProof,
        document: DIDDocument,
        allowed_methods: List[str],
        errors: List[VerificationError],
        subject: str = "Credential"
    ) -> bool:
        method = proof.verification_method
        key = document.find_key(method)
        if key is None or method not in allowed_methods or key.algorithm != "Ed25519":
            errors.append(VerificationError(
                VerificationStatus.KEY_NOT_FOUND, f"Verification method not usable: {method}"
            ))
            return False

        if proof.type != PROOF_TYPE:
            errors.append(VerificationError(
                VerificationStatus.INVALID_SIGNATURE, f"Unsupported proof type: {proof.type}"
            ))
            return False

        try:
            signature = proof.signature_bytes
        except ValueError:
            signature = b""

        if not self.crypto.verify(message, signature, key.public_key):
            errors.append(VerificationError(
                VerificationStatus.INVALID_SIGNATURE, f"{subject} signature verification failed"
            ))
            return False
        return True

    def _check_revocation(self, credential: VerifiableCredential, errors: List[VerificationError]) -> bool:
        record = self.ledger.get_revocation_record(credential.id)
        if record is None:
            errors.append(VerificationError(
                VerificationStatus.STATUS_UNKNOWN, "No revocation entry registered for credential"
            ))
            return False

        status = credential.credential_status or {}
        if record.issuer != credential.issuer or (
            status and (status.get("revocationListIndex") != record.index
                        or status.get("revocationListCredential") != record.list_id)
        ):
            errors.append(VerificationError(
                VerificationStatus.STATUS_UNKNOWN, "Revocation entry does not match credential status"
            ))
            return False

        if record.revoked:
            reason = f" ({record.reason})" if record.reason else ""
            errors.append(VerificationError(
                VerificationStatus.REVOKED, f"Credential has been revoked{reason}"
            ))
            return False
        return True

    def _check_dates(
        self,
        credential: VerifiableCredential,
        now: datetime,
        errors: List[VerificationError]
    ) -> Tuple[bool, bool]:
        issuance_ok = True
        try:
            issued = parse_timestamp(credential.issuance_date)
            if issued > now + timedelta(seconds=self.settings.CLOCK_SKEW_SECONDS):
                errors.append(VerificationError(
                    VerificationStatus.NOT_YET_VALID, "Issuance date is in the future"
                ))
                issuance_ok = False
        except (ValueError, TypeError):
            errors.append(VerificationError(VerificationStatus.MALFORMED, "Invalid issuance date format"))
            issuance_ok = False

        expiration_ok = True
        if credential.expiration_date:
            try:
                if now > parse_timestamp(credential.expiration_date):
                    errors.append(VerificationError(VerificationStatus.EXPIRED, "Credential has expired"))
                    expiration_ok = False
            except (ValueError, TypeError):
                errors.append(VerificationError(VerificationStatus.MALFORMED, "Invalid expiration date format"))
                expiration_ok = False

        return issuance_ok, expiration_ok

    # ==================== RESULTS ====================

    def _result(
        self,
        credential: VerifiableCredential,
        checks: Dict[str, bool],
        errors: List[VerificationError]
    ) -> VerificationResult:
        return VerificationResult(
            valid=not errors,
            errors=errors,
            credential_id=credential.id if isinstance(credential.id, str) else "",
            issuer=credential.issuer if isinstance(credential.issuer, str) else "",
            subject=credential.subject,
            claims=credential.claims,
            checks=checks
        )

    def _presentation_result(
        self,
        presentation: VerifiablePresentation,
        checks: Dict[str, bool],
        errors: List[VerificationError],
        results: List[VerificationResult]
    ) -> VerificationResult:
        holder = presentation.holder if isinstance(presentation.holder, str) else ""
        return VerificationResult(
            valid=not errors,
            errors=errors,
            credential_id=presentation.id if isinstance(presentation.id, str) else "",
            issuer=holder,
            subject=holder,
            checks=checks,
            credential_results=results
        )

    # ==================== TRUST MANAGEMENT ====================

    def add_trusted_issuer(self, issuer_did: str):
        self.trusted_issuers.add(issuer_did)

    def remove_trusted_issuer(self, issuer_did: str):
        self.trusted_issuers.discard(issuer_did)
