"""
Session Wallet - the logged-in user's unlocked identity

One identity is unlocked per process. Private key material lives only in
memory for the lifetime of the session; the password is never kept, and
sensitive operations (revoke, export) ask for it again.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .credential_service import CredentialService
from .credentials import CredentialType, KycEnvelopeMeta, VerifiableCredential, VerifiablePresentation, utc_now
from .crypto_service import CryptoService, SealedMessage
from .did_document import Identity
from .errors import DecryptionFailed, NoActiveSession, NotFound, WrongPassword
from .identity_manager import IdentityManager
from .kyc import KycData, KycSubmission, calculate_verification_level
from .ledger_client import RevocationRecord

logger = logging.getLogger(__name__)


@dataclass
class SessionIdentity:
    """State of an unlocked session; never persisted"""
    identity: Identity
    decryption_key: bytes = field(repr=False)
    credentials: List[VerifiableCredential] = field(default_factory=list)
    kyc_submissions: List[KycSubmission] = field(default_factory=list)
    unlocked_at: str = field(default_factory=utc_now)


class SessionWallet:
    """
    Mediates every user-level operation through the unlocked identity

    All operations except ``unlock`` and ``current_identity`` raise
    ``NoActiveSession`` when nothing is unlocked.
    """

    def __init__(
        self,
        identity_manager: IdentityManager,
        credential_service: CredentialService,
        crypto: Optional[CryptoService] = None
    ):
        self.identity_manager = identity_manager
        self.credential_service = credential_service
        self.crypto = crypto or credential_service.crypto
        self._lock = threading.RLock()
        self._session: Optional[SessionIdentity] = None

    # ==================== SESSION LIFECYCLE ====================

    def unlock(self, identifier: str, password: str) -> Identity:
        """
        Load an identity into the session, replacing any current one

        Raises:
            WrongPassword: password did not open the local envelope
            NotFound: no local identity with this identifier
        """
        try:
            identity = self.identity_manager.load(identifier, password)
        except DecryptionFailed:
            logger.warning("Unlock failed for %s", identifier)
            raise WrongPassword(operation="unlock", context={"identifier": identifier}) from None

        with self._lock:
            if self._session is not None:
                self._close()
            self._session = SessionIdentity(
                identity=identity,
                decryption_key=identity.keys.agreement_key,
                credentials=self.credential_service.list_credentials(subject_did=identifier),
                kyc_submissions=self.credential_service.kyc_submissions(identifier)
            )
        logger.info("Session unlocked for %s", identifier)
        return identity

    def lock(self) -> None:
        """End the session and drop key material. No-op when already locked."""
        with self._lock:
            if self._session is not None:
                self._close()

    def _close(self) -> None:
        identifier = self._session.identity.identifier
        self.identity_manager.lock(self._session.identity)
        self._session.decryption_key = b""
        self._session = None
        logger.info("Session locked for %s", identifier)

    def current_identity(self) -> Optional[Identity]:
        with self._lock:
            return self._session.identity if self._session else None

    def require_session(self, operation: str = "") -> SessionIdentity:
        with self._lock:
            if self._session is None:
                raise NoActiveSession(operation=operation)
            return self._session

    @property
    def kyc_submissions(self) -> List[KycSubmission]:
        return list(self.require_session("kyc_submissions").kyc_submissions)

    # ==================== OPERATIONS ====================

    def issue(
        self,
        subject_did: str,
        claims: Dict[str, Any],
        credential_type: CredentialType,
        evidence: Optional[List[Dict[str, Any]]] = None
    ) -> VerifiableCredential:
        """Issue a credential signed by the session identity"""
        with self._lock:
            session = self.require_session("issue")
            vc = self.credential_service.issue(session.identity, subject_did, claims, credential_type, evidence=evidence)
            if subject_did == session.identity.identifier:
                session.credentials.append(vc)
            return vc

    def sign(self, message: bytes) -> bytes:
        with self._lock:
            session = self.require_session("sign")
            return self.crypto.sign(message, session.identity.keys.signing_key)

    def open_sealed(self, sealed: SealedMessage) -> bytes:
        """Decrypt a message sealed to this identity's key-agreement key"""
        with self._lock:
            session = self.require_session("open_sealed")
            return self.crypto.open(sealed, session.decryption_key)

    def present(
        self,
        credentials: Optional[List[VerifiableCredential]] = None,
        challenge: Optional[str] = None
    ) -> VerifiablePresentation:
        """Presentation of the given (default: all session) credentials"""
        with self._lock:
            session = self.require_session("present")
            chosen = session.credentials if credentials is None else credentials
            return self.credential_service.create_presentation(session.identity, chosen, challenge=challenge)

    def credentials(self) -> List[VerifiableCredential]:
        with self._lock:
            return list(self.require_session("credentials").credentials)

    # ==================== KYC ====================

    def submit_kyc(self, data: KycData, password: str) -> KycSubmission:
        """
        Encrypt and store KYC data, then self-issue a KYC credential that
        points at it

        Args:
            data: Personal data (never leaves this process unencrypted)
            password: Protects the stored payload
        """
        with self._lock:
            session = self.require_session("submit_kyc")
            identity = session.identity

            level = calculate_verification_level(data)
            meta = self.credential_service.store_encrypted_payload(data.to_payload(), password)
            document_hashes = data.document_hashes()

            evidence = [{
                "type": "EncryptedKYCSubmission",
                **meta.to_dict(),
                "documentHashes": document_hashes
            }]
            vc = self.credential_service.issue_kyc_credential(
                identity,
                identity.identifier,
                name=data.full_name,
                email=data.email,
                phone=data.phone,
                nationality=data.nationality,
                verification_level=level,
                evidence=evidence
            )

            submission = KycSubmission(
                tourist_did=identity.identifier,
                credential_id=vc.id,
                envelope=meta,
                document_hashes=document_hashes,
                verification_level=level
            )
            session.kyc_submissions.append(submission)
            session.credentials.append(vc)
            self.credential_service.record_kyc_submission(submission)

        logger.info("KYC submitted for %s (level=%s, content=%s)", identity.identifier, level, meta.content_id)
        return submission

    def decrypt_own_kyc(self, password: str, meta: Optional[KycEnvelopeMeta] = None) -> KycData:
        """
        Decrypt a KYC payload (the latest submission by default)

        Raises:
            NotFound: nothing submitted in this session and no ``meta`` given
            WrongPassword: password does not open the payload
        """
        with self._lock:
            session = self.require_session("decrypt_own_kyc")
            if meta is None:
                if not session.kyc_submissions:
                    raise NotFound("No KYC submission in session", operation="decrypt_own_kyc")
                meta = session.kyc_submissions[-1].envelope

        try:
            payload = self.credential_service.retrieve_encrypted_payload(meta, password)
        except DecryptionFailed:
            raise WrongPassword(operation="decrypt_own_kyc", context={"contentId": meta.content_id}) from None
        return KycData.from_payload(payload)

    def kyc_status(self, tourist_did: Optional[str] = None) -> Optional[KycSubmission]:
        """Latest KYC submission of ``tourist_did`` (the session identity by default)"""
        if tourist_did is None:
            tourist_did = self.require_session("kyc_status").identity.identifier
        return self.credential_service.kyc_status(tourist_did)

    def review_kyc(
        self,
        tourist_did: str,
        outcome: str,
        verification_level: str,
        notes: str = ""
    ) -> KycSubmission:
        """Review a tourist's pending KYC submission as the session identity"""
        with self._lock:
            session = self.require_session("review_kyc")
            submission = self.credential_service.review_kyc(
                session.identity, tourist_did, outcome, verification_level, notes=notes
            )
            if submission.review_credential_id and tourist_did == session.identity.identifier:
                session.credentials.append(self.credential_service.get_credential(submission.review_credential_id))
        return submission

    # ==================== SENSITIVE OPERATIONS ====================

    def revoke(self, credential_id: str, password: str, reason: str = "") -> RevocationRecord:
        """Revoke a credential issued by the session identity (re-authenticates)"""
        with self._lock:
            session = self.require_session("revoke")
            self._reauthenticate(session, password, "revoke")
            return self.credential_service.revoke(session.identity, credential_id, reason)

    def export_credentials(self, password: str) -> List[Dict[str, Any]]:
        """Session credentials as W3C JSON (re-authenticates)"""
        with self._lock:
            session = self.require_session("export_credentials")
            self._reauthenticate(session, password, "export_credentials")
            return [vc.to_dict() for vc in session.credentials]

    def _reauthenticate(self, session: SessionIdentity, password: str, operation: str) -> None:
        if not self.identity_manager.verify_password(session.identity.identifier, password):
            raise WrongPassword(operation=operation, context={"identifier": session.identity.identifier})
