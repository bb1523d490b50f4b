"""
Credential Service
==================

Issues, verifies and revokes tourist-safety Verifiable Credentials and
keeps encrypted KYC payloads in the content store.

Every credential gets a revocation slot on the ledger before it is signed,
so ``credentialStatus`` is covered by the issuer's signature and verifiers
can always find exactly one revocation record.
"""

import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .config import IdentitySettings, get_settings
from .content_store import ContentStore
from .credential_verifier import CredentialVerifier, VerificationResult
from .credentials import (
    CredentialProof,
    CredentialType,
    KycEnvelopeMeta,
    VerifiableCredential,
    VerifiablePresentation,
    utc_now,
)
from .crypto_service import CryptoService, canonical_json
from .did_document import Identity
from .errors import (
    DecryptionFailed,
    IdentityLocked,
    InvalidReview,
    NoPendingSubmission,
    NotFound,
    StorageError,
    Unauthorized,
)
from .identity_manager import IdentityManager
from .kyc import REVIEW_OUTCOMES, VERIFICATION_LEVELS, KycSubmission
from .ledger_client import LedgerClient, RevocationRecord, RevocationSlot
from .locking import KeyedLock
from .retry import call_with_retry

logger = logging.getLogger(__name__)


class CredentialService:
    """
    Issues and manages Verifiable Credentials

    Features:
    - Issue KYC, group membership, emergency contact and travel completion
      credentials
    - Verify credentials and presentations
    - Revoke credentials (issuer only)
    - Store and retrieve password-encrypted payloads
    """

    def __init__(
        self,
        crypto: CryptoService,
        identity_manager: IdentityManager,
        ledger: LedgerClient,
        content_store: ContentStore,
        settings: Optional[IdentitySettings] = None,
        verifier: Optional[CredentialVerifier] = None
    ):
        self.crypto = crypto
        self.identity_manager = identity_manager
        self.ledger = ledger
        self.content_store = content_store
        self.settings = settings or get_settings()
        self.verifier = verifier or CredentialVerifier(crypto, identity_manager, ledger, self.settings)
        self._locks = KeyedLock()
        self._book_lock = threading.Lock()
        self._issued: Dict[str, VerifiableCredential] = {}
        self._by_subject: Dict[str, List[str]] = {}
        self._kyc_submissions: Dict[str, List[KycSubmission]] = {}

    # ==================== CREDENTIAL ISSUANCE ====================

    def issue(
        self,
        issuer: Identity,
        subject_did: str,
        claims: Dict[str, Any],
        credential_type: CredentialType,
        evidence: Optional[List[Dict[str, Any]]] = None,
        validity_days: Optional[int] = None
    ) -> VerifiableCredential:
        """
        Issue a signed credential

        Args:
            issuer: Loaded issuer identity
            subject_did: DID the claims are about
            claims: Type-specific claims (``id`` is set from subject_did)
            credential_type: Kind of credential
            evidence: Optional W3C evidence entries
            validity_days: Overrides CREDENTIAL_VALIDITY_DAYS (0 = no expiry)

        Returns:
            Signed VerifiableCredential

        Raises:
            IdentityLocked: issuer keys are not loaded
            LedgerError: revocation slot could not be allocated
        """
        self._require_loaded(issuer, "issue")

        days = self.settings.CREDENTIAL_VALIDITY_DAYS if validity_days is None else validity_days
        expiration = None
        if days > 0:
            expiration = (datetime.now(timezone.utc) + timedelta(days=days)).isoformat().replace("+00:00", "Z")

        vc = VerifiableCredential(
            type=["VerifiableCredential", credential_type.value],
            issuer=issuer.identifier,
            expiration_date=expiration,
            credential_subject={**claims, "id": subject_did},
            evidence=evidence
        )

        with self._locks.hold(vc.id):
            slot = self._allocate_status(vc.id, issuer)
            vc.credential_status = {
                "id": f"{slot.list_id}#{slot.index}",
                "type": "RevocationList2021Status",
                "revocationListIndex": slot.index,
                "revocationListCredential": slot.list_id
            }

            signature = self.crypto.sign(vc.signing_input(), issuer.keys.signing_key)
            vc.proof = CredentialProof.create(issuer.keys.signing_key_id, signature).to_dict()

            with self._book_lock:
                self._issued[vc.id] = vc
                self._by_subject.setdefault(subject_did, []).append(vc.id)

        logger.info("Issued %s %s to %s", credential_type.value, vc.id, subject_did)
        return vc

    def issue_kyc_credential(
        self,
        issuer: Identity,
        subject_did: str,
        name: str,
        email: str,
        phone: str,
        nationality: str,
        verification_level: str = "basic",
        evidence: Optional[List[Dict[str, Any]]] = None
    ) -> VerifiableCredential:
        claims = {
            "name": name,
            "email": email,
            "phone": phone,
            "nationality": nationality,
            "verificationLevel": verification_level,
            "verificationDate": utc_now()
        }
        return self.issue(issuer, subject_did, claims, CredentialType.KYC, evidence=evidence)

    def issue_emergency_contact_credential(
        self,
        issuer: Identity,
        subject_did: str,
        blood_group: str,
        emergency_contact: Dict[str, str],
        allergies: Optional[List[str]] = None,
        medical_conditions: Optional[List[str]] = None
    ) -> VerifiableCredential:
        """
        Args:
            emergency_contact: {"name", "phone", "relationship"}
        """
        claims = {
            "bloodGroup": blood_group,
            "allergies": list(allergies or []),
            "medicalConditions": list(medical_conditions or []),
            "emergencyContact": {
                "name": emergency_contact.get("name", ""),
                "phone": emergency_contact.get("phone", ""),
                "relationship": emergency_contact.get("relationship", "")
            }
        }
        return self.issue(issuer, subject_did, claims, CredentialType.EMERGENCY_CONTACT)

    def issue_travel_completion_credential(
        self,
        issuer: Identity,
        subject_did: str,
        destination: str,
        start_date: str,
        end_date: str,
        purpose: str = "tourism",
        safety_score: Optional[int] = None
    ) -> VerifiableCredential:
        claims = {
            "destination": destination,
            "startDate": start_date,
            "endDate": end_date,
            "purpose": purpose
        }
        if safety_score is not None:
            claims["safetyScore"] = safety_score
        return self.issue(issuer, subject_did, claims, CredentialType.TRAVEL_COMPLETION)

    def issue_group_membership_credential(
        self,
        issuer: Identity,
        subject_did: str,
        group_id: str,
        group_name: str,
        role: str = "member",
        joined_at: Optional[str] = None
    ) -> VerifiableCredential:
        claims = {
            "groupId": group_id,
            "groupName": group_name,
            "role": role,
            "joinedAt": joined_at or utc_now()
        }
        return self.issue(issuer, subject_did, claims, CredentialType.GROUP_MEMBERSHIP)

    # ==================== VERIFICATION ====================

    def verify(self, credential: VerifiableCredential) -> VerificationResult:
        """Verify a credential. An invalid credential is a result, not an error."""
        return self.verifier.verify(credential)

    def verify_presentation(
        self,
        presentation: VerifiablePresentation,
        challenge: Optional[str] = None
    ) -> VerificationResult:
        return self.verifier.verify_presentation(presentation, challenge=challenge)

    def create_presentation(
        self,
        holder: Identity,
        credentials: Iterable[VerifiableCredential],
        challenge: Optional[str] = None
    ) -> VerifiablePresentation:
        """
        Bundle credentials into a presentation signed with the holder's
        authentication key

        Args:
            holder: Loaded holder identity
            credentials: Credentials to present
            challenge: Verifier-supplied nonce, bound into the signature
        """
        self._require_loaded(holder, "create_presentation")
        vp = VerifiablePresentation(holder=holder.identifier, verifiable_credential=list(credentials))
        signature = self.crypto.sign(vp.signing_input(challenge), holder.keys.signing_key)
        vp.proof = CredentialProof.create(
            holder.keys.signing_key_id,
            signature,
            proof_purpose="authentication",
            challenge=challenge
        ).to_dict()
        return vp

    # ==================== REVOCATION ====================

    def revoke(self, caller: Identity, credential_id: str, reason: str = "") -> RevocationRecord:
        """
        Revoke a credential on the ledger

        Only the original issuer may revoke. Revoking twice is a no-op.

        Raises:
            IdentityLocked: caller keys are not loaded
            NotFound: no revocation entry exists for the credential
            Unauthorized: caller is not the credential's issuer
        """
        self._require_loaded(caller, "revoke")

        with self._locks.hold(credential_id):
            record = self.ledger.get_revocation_record(credential_id)
            if record is None:
                raise NotFound("Unknown credential", operation="revoke", context={"credentialId": credential_id})

            issued = self.get_credential(credential_id)
            issuer = issued.issuer if issued is not None else record.issuer
            if caller.identifier != issuer:
                raise Unauthorized(
                    "Only the issuer may revoke a credential",
                    operation="revoke",
                    context={"credentialId": credential_id, "caller": caller.identifier}
                )
            if record.revoked:
                return record

            account = caller.keys.ledger_account

            def submit() -> RevocationRecord:
                self.ledger.revoke(credential_id, reason, account)
                return self.ledger.get_revocation_record(credential_id)

            def already_revoked(error) -> Optional[RevocationRecord]:
                current = self.ledger.get_revocation_record(credential_id)
                return current if current is not None and current.revoked else None

            record = call_with_retry(
                submit,
                operation="revoke",
                max_attempts=self.settings.LEDGER_MAX_ATTEMPTS,
                backoff_seconds=self.settings.LEDGER_BACKOFF_SECONDS,
                before_retry=already_revoked
            )

        logger.info("Revoked credential %s", credential_id)
        return record

    def is_revoked(self, credential_id: str) -> bool:
        return self.ledger.is_revoked(credential_id)

    def _allocate_status(self, credential_id: str, issuer: Identity) -> RevocationSlot:
        list_id = self.settings.REVOCATION_LIST_ID

        def submit() -> RevocationSlot:
            return self.ledger.register_revocation_entry(
                credential_id, list_id, issuer.identifier, issuer.keys.ledger_account
            )

        def already_allocated(error) -> Optional[RevocationSlot]:
            record = self.ledger.get_revocation_record(credential_id)
            if record is not None and record.issuer == issuer.identifier:
                return RevocationSlot(credential_id=credential_id, list_id=record.list_id, index=record.index)
            return None

        return call_with_retry(
            submit,
            operation="registerRevocationEntry",
            max_attempts=self.settings.LEDGER_MAX_ATTEMPTS,
            backoff_seconds=self.settings.LEDGER_BACKOFF_SECONDS,
            before_retry=already_allocated
        )

    # ==================== ENCRYPTED PAYLOADS ====================

    def store_encrypted_payload(self, data: Dict[str, Any], password: str) -> KycEnvelopeMeta:
        """
        Encrypt ``data`` under ``password`` and upload the ciphertext

        Returns:
            Non-secret pointer (content id, salt, nonce, KDF parameters).
            ``pinned`` is False when pinning kept failing; the content is
            stored but may be garbage-collected.
        """
        envelope = self.crypto.encrypt_with_password(canonical_json(data), password)

        content_id = call_with_retry(
            lambda: self.content_store.put(envelope.ciphertext),
            operation="put",
            max_attempts=self.settings.LEDGER_MAX_ATTEMPTS,
            backoff_seconds=self.settings.LEDGER_BACKOFF_SECONDS
        )

        return KycEnvelopeMeta(
            content_id=content_id,
            salt=envelope.salt,
            nonce=envelope.nonce,
            kdf_params=envelope.kdf_params,
            submission_timestamp=int(time.time()),
            algorithm=envelope.algorithm,
            pinned=self._pin(content_id)
        )

    def retrieve_encrypted_payload(self, meta: KycEnvelopeMeta, password: str) -> Dict[str, Any]:
        """
        Fetch and decrypt a stored payload

        Raises:
            NotFound: content unknown or garbage-collected
            DecryptionFailed: wrong password or tampered content
        """
        ciphertext = call_with_retry(
            lambda: self.content_store.get(meta.content_id),
            operation="get",
            max_attempts=self.settings.LEDGER_MAX_ATTEMPTS,
            backoff_seconds=self.settings.LEDGER_BACKOFF_SECONDS
        )
        plaintext = self.crypto.decrypt_with_password(meta.to_envelope(ciphertext), password)
        try:
            return json.loads(plaintext)
        except ValueError as e:
            raise DecryptionFailed("Decryption failed", operation="retrieve_encrypted_payload") from e

    def _pin(self, content_id: str) -> bool:
        try:
            call_with_retry(
                lambda: self.content_store.pin(content_id),
                operation="pin",
                max_attempts=self.settings.PIN_MAX_ATTEMPTS,
                backoff_seconds=self.settings.LEDGER_BACKOFF_SECONDS
            )
        except StorageError as e:
            if not e.retryable:
                raise
            logger.error(
                "Pinning %s failed after %d attempts; content is not durable",
                content_id, self.settings.PIN_MAX_ATTEMPTS
            )
            return False
        return True

    # ==================== KYC REVIEW ====================

    def record_kyc_submission(self, submission: KycSubmission) -> None:
        """Queue a submission for review"""
        with self._book_lock:
            self._kyc_submissions.setdefault(submission.tourist_did, []).append(submission)

    def kyc_submissions(self, tourist_did: str) -> List[KycSubmission]:
        with self._book_lock:
            return list(self._kyc_submissions.get(tourist_did, []))

    def kyc_status(self, tourist_did: str) -> Optional[KycSubmission]:
        """Latest submission for a tourist, or None"""
        submissions = self.kyc_submissions(tourist_did)
        return submissions[-1] if submissions else None

    def review_kyc(
        self,
        reviewer: Identity,
        tourist_did: str,
        outcome: str,
        verification_level: str,
        notes: str = ""
    ) -> KycSubmission:
        """
        Verify or reject a tourist's pending KYC submission

        On ``verified`` the reviewer issues a KYC credential to the tourist
        whose evidence points at the encrypted submission. On ``rejected``
        every KYC credential the reviewer previously issued to the tourist
        is revoked.

        Args:
            reviewer: Loaded identity of the reviewing authority
            tourist_did: Subject of the submission
            outcome: "verified" or "rejected"
            verification_level: "basic", "enhanced" or "premium"
            notes: Free-text reviewer notes (no personal data)

        Raises:
            InvalidReview: unknown outcome or level
            NoPendingSubmission: latest submission is not awaiting review
            IdentityLocked: reviewer keys are not loaded
        """
        if outcome not in REVIEW_OUTCOMES:
            raise InvalidReview(f"Invalid status: {outcome}", operation="review_kyc", context={"status": outcome})
        if verification_level not in VERIFICATION_LEVELS:
            raise InvalidReview(
                f"Invalid verification level: {verification_level}",
                operation="review_kyc",
                context={"verificationLevel": verification_level}
            )
        self._require_loaded(reviewer, "review_kyc")

        with self._locks.hold(f"kyc:{tourist_did}"):
            submission = self.kyc_status(tourist_did)
            if submission is None or not submission.is_pending:
                raise NoPendingSubmission(
                    "No pending KYC submission found", operation="review_kyc", context={"touristDID": tourist_did}
                )

            if outcome == "verified":
                evidence = [{
                    "type": "ReviewedKYCSubmission",
                    "submissionCredential": submission.credential_id,
                    "contentId": submission.envelope.content_id,
                    "documentHashes": submission.document_hashes
                }]
                vc = self.issue(
                    reviewer,
                    tourist_did,
                    {"verificationLevel": verification_level, "verificationDate": utc_now()},
                    CredentialType.KYC,
                    evidence=evidence
                )
                submission.review_credential_id = vc.id
            else:
                for vc in self.list_credentials(subject_did=tourist_did):
                    if (vc.issuer == reviewer.identifier and vc.credential_type == CredentialType.KYC
                            and not self.is_revoked(vc.id)):
                        self.revoke(reviewer, vc.id, reason="KYC rejected")

            submission.verification_status = outcome
            submission.verification_level = verification_level
            submission.verified_at = utc_now()
            submission.reviewer = reviewer.identifier
            submission.notes = notes

        logger.info("KYC for %s %s by %s (level=%s)", tourist_did, outcome, reviewer.identifier, verification_level)
        return submission

    # ==================== UTILITIES ====================

    def get_credential(self, credential_id: str) -> Optional[VerifiableCredential]:
        """Get an issued credential by ID"""
        with self._book_lock:
            return self._issued.get(credential_id)

    def list_credentials(self, subject_did: Optional[str] = None) -> List[VerifiableCredential]:
        """List issued credentials, optionally filtered by subject"""
        with self._book_lock:
            if subject_did is None:
                return list(self._issued.values())
            return [self._issued[i] for i in self._by_subject.get(subject_did, [])]

    def get_statistics(self) -> Dict[str, int]:
        credentials = self.list_credentials()
        revoked = sum(1 for vc in credentials if self.ledger.is_revoked(vc.id))
        return {
            "total_issued": len(credentials),
            "total_revoked": revoked,
            "active": len(credentials) - revoked
        }

    def _require_loaded(self, identity: Identity, operation: str) -> None:
        if not identity.is_loaded:
            raise IdentityLocked(
                "Identity must be loaded",
                operation=operation,
                context={"identifier": identity.identifier}
            )
