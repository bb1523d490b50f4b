"""
Identity Manager - DID lifecycle for tourist identities

State machine::

    Uninitialized -> Created -> Registered -> Loaded (unlocked) -> Locked

- create: generate keys, build the DID document, store the password
  envelope locally, anchor the document on the ledger
- load: decrypt the local envelope (single-device custody, no recovery)
- resolve: read someone's DID document from the ledger
"""

import json
import logging
import threading
from typing import List, Optional, Tuple

from .config import IdentitySettings, get_settings
from .crypto_service import CryptoService, canonical_json
from .did_document import (
    DIDDocument,
    Identity,
    IdentityState,
    PrivateKeyMaterial,
    PublicKeyEntry,
    ServiceEndpoint,
    utc_now,
)
from .errors import AliasInUse, DecryptionFailed, DIDNotFound, IdentityLocked, KeyDerivationError, LedgerError
from .key_store import KeyStore, StoredIdentity
from .ledger_client import LedgerClient, TxReceipt, document_hash
from .locking import KeyedLock
from .retry import call_with_retry

logger = logging.getLogger(__name__)


class IdentityManager:
    """
    Owns creation, custody and resolution of DIDs

    Features:
    - Create a DID controlled by a fresh secp256k1 ledger account
    - Keep private keys in a password envelope on this device only
    - Load/lock identities
    - Resolve DIDs through the ledger (no private key needed)
    - Rotate keys and add service endpoints by re-registering
    """

    def __init__(
        self,
        crypto: CryptoService,
        ledger: LedgerClient,
        key_store: KeyStore,
        settings: Optional[IdentitySettings] = None
    ):
        self.crypto = crypto
        self.ledger = ledger
        self.key_store = key_store
        self.settings = settings or get_settings()
        self._locks = KeyedLock()
        self._alias_lock = threading.Lock()

    # ==================== CREATION ====================

    def create(
        self,
        alias: str,
        password: str,
        service_endpoints: Optional[List[ServiceEndpoint]] = None
    ) -> Identity:
        """
        Create and register a new DID

        Args:
            alias: Local, unique name for the identity
            password: Protects the private key envelope
            service_endpoints: Optional services to publish in the document

        Returns:
            Registered Identity (keys not loaded; call ``load``)

        Raises:
            AliasInUse: alias already taken on this device
            LedgerError: anchoring failed; the local envelope is kept and
                ``complete_registration`` can finish the job
        """
        with self._alias_lock:
            if self.key_store.find_by_alias(alias) is not None:
                raise AliasInUse("Alias already in use", operation="create", context={"alias": alias})

            account = self.crypto.generate_ledger_account()
            did = f"did:{self.settings.DID_METHOD}:{self.settings.NETWORK}:{account.address}"
            signing = self.crypto.generate_key_pair()
            agreement = self.crypto.generate_agreement_key_pair()

            identity = Identity(
                identifier=did,
                alias=alias,
                controller_key=f"{did}#controller",
                service_endpoints=list(service_endpoints or []),
                state=IdentityState.CREATED
            )
            identity.public_keys = [
                PublicKeyEntry(identity.signing_key_id(), "Ed25519", signing.public_key, did),
                PublicKeyEntry(identity.agreement_key_id(), "X25519", agreement.public_key, did),
                PublicKeyEntry(identity.controller_key, "secp256k1", controller=did, ethereum_address=account.address),
            ]
            identity.keys = PrivateKeyMaterial(
                signing_key_id=identity.signing_key_id(),
                signing_key=signing.private_key,
                agreement_key_id=identity.agreement_key_id(),
                agreement_key=agreement.private_key,
                ledger_account=account
            )

            record = StoredIdentity(
                identifier=did,
                alias=alias,
                document=identity.to_document().to_dict(),
                envelope=self._seal_keys(identity.keys, password),
                key_version=identity.key_version
            )
            self.key_store.save(record)
            logger.info("Created identity %s (alias=%s)", did, alias)

        try:
            with self._locks.hold(did):
                receipt = self._anchor(did, record.document, account)
                record.registered = True
                record.receipt = receipt
                self.key_store.save(record)
        except LedgerError:
            logger.error("Ledger registration failed for %s; envelope kept locally", did)
            raise
        finally:
            identity.wipe_keys()

        identity.state = IdentityState.REGISTERED
        identity.receipt = receipt
        return identity

    def complete_registration(self, identifier: str, password: str) -> Identity:
        """
        Anchor a locally stored identity whose registration did not finish

        Checks ledger state first so a write that landed but was never
        acknowledged is not submitted twice.
        """
        with self._locks.hold(identifier):
            record, keys = self._unseal(identifier, password, "complete_registration")
            doc_hash = document_hash(record.document)
            existing = self.ledger.resolve_did(identifier)
            if existing is not None and existing.document_hash == doc_hash:
                receipt = self.ledger.get_receipt(existing.tx_hash)
            else:
                receipt = self._anchor(identifier, record.document, keys.ledger_account)
            record.registered = True
            record.receipt = receipt
            self.key_store.save(record)

        identity = self._identity_from_record(record)
        identity.receipt = receipt
        return identity

    # ==================== LOADING ====================

    def load(self, identifier: str, password: str) -> Identity:
        """
        Decrypt a local identity

        Raises:
            NotFound: no local envelope for this identifier
            DecryptionFailed: wrong password or corrupted envelope
        """
        with self._locks.hold(identifier):
            record, keys = self._unseal(identifier, password, "load")

        identity = self._identity_from_record(record)
        identity.keys = keys
        identity.state = IdentityState.LOADED
        logger.info("Loaded identity %s", identifier)
        return identity

    def lock(self, identity: Identity) -> None:
        """Drop private key material from memory"""
        identity.wipe_keys()
        identity.state = IdentityState.LOCKED
        logger.info("Locked identity %s", identity.identifier)

    def verify_password(self, identifier: str, password: str) -> bool:
        """Re-authentication check for sensitive operations"""
        try:
            self._unseal(identifier, password, "verify_password")
        except DecryptionFailed:
            return False
        return True

    def list_identities(self) -> List[Identity]:
        """Public view of every identity stored on this device"""
        return [self._identity_from_record(r) for r in self.key_store.list()]

    # ==================== RESOLUTION ====================

    def resolve(self, identifier: str) -> DIDDocument:
        """
        Resolve a DID to its registered document

        Raises:
            DIDNotFound: not registered
            LedgerError: registry returned a document that does not match
                its anchored hash
        """
        record = self.ledger.resolve_did(identifier)
        if record is None:
            raise DIDNotFound("DID not registered", operation="resolve", context={"did": identifier})
        if document_hash(record.document) != record.document_hash:
            raise LedgerError("Document does not match anchored hash", operation="resolve", context={"did": identifier})
        return DIDDocument.from_dict(record.document)

    # ==================== UPDATES ====================

    def rotate_keys(self, identity: Identity, password: str) -> Identity:
        """
        Replace the signing and key-agreement keys

        The controller (ledger account) and the identifier stay the same.
        Credentials signed with the old key stop verifying once the new
        document is anchored.
        """
        self._require_loaded(identity, "rotate_keys")
        with self._locks.hold(identity.identifier):
            record, _ = self._unseal(identity.identifier, password, "rotate_keys")

            account = identity.keys.ledger_account
            signing = self.crypto.generate_key_pair()
            agreement = self.crypto.generate_agreement_key_pair()

            identity.key_version += 1
            identity.updated = utc_now()
            identity.public_keys = [k for k in identity.public_keys if k.algorithm == "secp256k1"] + [
                PublicKeyEntry(identity.signing_key_id(), "Ed25519", signing.public_key, identity.identifier),
                PublicKeyEntry(identity.agreement_key_id(), "X25519", agreement.public_key, identity.identifier),
            ]
            identity.keys = PrivateKeyMaterial(
                signing_key_id=identity.signing_key_id(),
                signing_key=signing.private_key,
                agreement_key_id=identity.agreement_key_id(),
                agreement_key=agreement.private_key,
                ledger_account=account
            )

            record.document = identity.to_document().to_dict()
            record.envelope = self._seal_keys(identity.keys, password)
            record.key_version = identity.key_version
            record.registered = False
            self.key_store.save(record)

            record.receipt = self._anchor(identity.identifier, record.document, account)
            record.registered = True
            self.key_store.save(record)

        identity.receipt = record.receipt
        logger.info("Rotated keys for %s (version %d)", identity.identifier, identity.key_version)
        return identity

    def add_service(self, identity: Identity, endpoint: ServiceEndpoint) -> Identity:
        """Publish a service endpoint (e.g. emergency contact relay) in the document"""
        self._require_loaded(identity, "add_service")
        with self._locks.hold(identity.identifier):
            record = self.key_store.get(identity.identifier)
            identity.service_endpoints.append(endpoint)
            identity.updated = utc_now()
            record.document = identity.to_document().to_dict()
            record.registered = False
            self.key_store.save(record)

            record.receipt = self._anchor(identity.identifier, record.document, identity.keys.ledger_account)
            record.registered = True
            self.key_store.save(record)

        identity.receipt = record.receipt
        return identity

    def wipe(self, identifier: str, password: str) -> None:
        """Delete the local envelope. Ledger state is untouched."""
        with self._locks.hold(identifier):
            self._unseal(identifier, password, "wipe")
            self.key_store.delete(identifier)
        logger.info("Wiped local identity %s", identifier)

    # ==================== HELPERS ====================

    def _anchor(self, identifier: str, document: dict, account) -> TxReceipt:
        """Register a document, checking ledger state before every retry"""
        doc_hash = document_hash(document)

        def submit() -> TxReceipt:
            return self.ledger.register_did(identifier, document, doc_hash, account)

        def already_landed(error) -> Optional[TxReceipt]:
            existing = self.ledger.resolve_did(identifier)
            if existing is not None and existing.document_hash == doc_hash:
                return self.ledger.get_receipt(existing.tx_hash)
            return None

        return call_with_retry(
            submit,
            operation="registerDID",
            max_attempts=self.settings.LEDGER_MAX_ATTEMPTS,
            backoff_seconds=self.settings.LEDGER_BACKOFF_SECONDS,
            before_retry=already_landed
        )

    def _seal_keys(self, keys: PrivateKeyMaterial, password: str):
        return self.crypto.encrypt_with_password(canonical_json(keys.to_dict()), password)

    def _unseal(self, identifier: str, password: str, operation: str) -> Tuple[StoredIdentity, PrivateKeyMaterial]:
        """
        Read the local record and decrypt its keys

        A corrupted record or envelope is reported exactly like a wrong
        password.

        Raises:
            NotFound: no local envelope for this identifier
            DecryptionFailed: wrong password or corrupted record
        """
        try:
            record = self.key_store.get(identifier)
            plaintext = self.crypto.decrypt_with_password(record.envelope, password)
            return record, PrivateKeyMaterial.from_dict(json.loads(plaintext))
        except (ValueError, KeyError, TypeError, AttributeError, KeyDerivationError, DecryptionFailed):
            raise DecryptionFailed(
                "Decryption failed", operation=operation, context={"identifier": identifier}
            ) from None

    def _identity_from_record(self, record: StoredIdentity) -> Identity:
        doc = DIDDocument.from_dict(record.document)
        controller = next(
            (k.id for k in doc.verification_method if k.algorithm == "secp256k1"),
            f"{record.identifier}#controller"
        )
        return Identity(
            identifier=record.identifier,
            alias=record.alias,
            controller_key=controller,
            public_keys=list(doc.verification_method),
            service_endpoints=list(doc.service),
            state=IdentityState.REGISTERED if record.registered else IdentityState.CREATED,
            key_version=record.key_version,
            created=doc.created,
            updated=doc.updated,
            receipt=record.receipt
        )

    def _require_loaded(self, identity: Identity, operation: str) -> None:
        if not identity.is_loaded:
            raise IdentityLocked(
                "Identity must be loaded",
                operation=operation,
                context={"identifier": identity.identifier}
            )
