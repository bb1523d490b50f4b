"""
Ledger Client - Typed interface to the DID / revocation registries
===================================================================

Every ledger operation has its own request struct. The client turns a
request into a canonical payload, signs it with the caller's secp256k1
ledger account and submits it to a ``LedgerBackend``. Every write returns
a ``TxReceipt``; how many confirmations to wait for is the caller's call
(``LedgerClient.confirmations``).

``InMemoryLedger`` is an append-only, single-process backend: one block per
accepted write, signer recovered from the signature exactly as an
Ethereum contract would see ``msg.sender``.
"""

import hashlib
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .crypto_service import CryptoService, LedgerAccount, canonical_json
from .errors import AlreadyRegistered, DIDNotFound, LedgerError, Unauthorized

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def document_hash(document: Dict[str, Any]) -> str:
    """sha256 over the canonical JSON form of a DID document"""
    return hashlib.sha256(canonical_json(document)).hexdigest()


def did_address(did: str) -> str:
    """Ledger address segment of ``did:<method>:<network>:<address>``"""
    parts = did.split(":")
    if len(parts) != 4 or parts[0] != "did":
        raise LedgerError("Malformed DID", operation="did_address", context={"did": did})
    return parts[3]


# ==================== REQUESTS / RESPONSES ====================

@dataclass(frozen=True)
class TxReceipt:
    """Result of an accepted write"""
    tx_hash: str
    block_number: int
    operation: str
    signer: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "operation": self.operation,
            "signer": self.signer
        }


@dataclass(frozen=True)
class RegisterDidRequest:
    did: str
    document: Dict[str, Any] = field(hash=False, compare=False)
    document_hash: str = ""
    operation = "registerDID"

    def payload(self) -> Dict[str, Any]:
        return {"did": self.did, "documentHash": self.document_hash}


@dataclass(frozen=True)
class RegisterRevocationRequest:
    credential_id: str
    list_id: str
    issuer: str
    operation = "registerRevocationEntry"

    def payload(self) -> Dict[str, Any]:
        return {"credentialId": self.credential_id, "listId": self.list_id, "issuer": self.issuer}


@dataclass(frozen=True)
class RevokeRequest:
    credential_id: str
    reason: str = ""
    operation = "revoke"

    def payload(self) -> Dict[str, Any]:
        return {"credentialId": self.credential_id, "reason": self.reason}


LedgerRequest = Union[RegisterDidRequest, RegisterRevocationRequest, RevokeRequest]


@dataclass(frozen=True)
class SignedRequest:
    """A request plus the signature that authorises it"""
    request: LedgerRequest
    nonce: str
    signature: str

    def message(self) -> str:
        return signing_message(self.request, self.nonce)


def signing_message(request: LedgerRequest, nonce: str) -> str:
    body = {"op": request.operation, "nonce": nonce, "params": request.payload()}
    return canonical_json(body).decode("utf-8")


@dataclass
class DidRecord:
    """Registry entry for a DID"""
    did: str
    document: Dict[str, Any]
    document_hash: str
    controller: str
    version: int
    tx_hash: str
    block_number: int
    updated_at: str


@dataclass
class RevocationSlot:
    """Allocated (listId, index) for a credential"""
    credential_id: str
    list_id: str
    index: int
    receipt: Optional[TxReceipt] = None


@dataclass
class RevocationRecord:
    """Revocation registry entry; exactly one per credential"""
    credential_id: str
    list_id: str
    index: int
    issuer: str
    revoked: bool = False
    revoked_at: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credentialId": self.credential_id,
            "listId": self.list_id,
            "index": self.index,
            "issuer": self.issuer,
            "revoked": self.revoked,
            "revokedAt": self.revoked_at,
            "reason": self.reason
        }


# ==================== BACKENDS ====================

class LedgerBackend(ABC):
    """Transport + registry state behind ``LedgerClient``"""

    @abstractmethod
    def submit(self, signed: SignedRequest) -> TxReceipt:
        ...

    @abstractmethod
    def get_did(self, did: str) -> Optional[DidRecord]:
        ...

    @abstractmethod
    def get_revocation(self, credential_id: str) -> Optional[RevocationRecord]:
        ...

    @abstractmethod
    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        ...

    @abstractmethod
    def head(self) -> int:
        """Latest block number"""


class InMemoryLedger(LedgerBackend):
    """
    Append-only in-process ledger

    Enforces the registry rules:
    - a DID is controlled by the address in its identifier
    - only the controller may re-register (rotate) a DID document
    - one revocation slot per credential, allocated by its issuer
    - only the issuer's controller may revoke
    """

    def __init__(self, crypto: Optional[CryptoService] = None):
        self.crypto = crypto or CryptoService()
        self._dids: Dict[str, DidRecord] = {}
        self._revocations: Dict[str, RevocationRecord] = {}
        self._list_sizes: Dict[str, int] = {}
        self._receipts: Dict[str, TxReceipt] = {}
        self._blocks: List[str] = []
        self._lock = threading.Lock()

    def submit(self, signed: SignedRequest) -> TxReceipt:
        signer = self.crypto.recover_ledger_signer(signed.message(), signed.signature)
        request = signed.request

        with self._lock:
            if isinstance(request, RegisterDidRequest):
                self._check_register_did(request, signer)
            elif isinstance(request, RegisterRevocationRequest):
                self._check_register_revocation(request, signer)
            elif isinstance(request, RevokeRequest):
                self._check_revoke(request, signer)
            else:
                raise LedgerError("Unknown request", operation="submit")

            tx_hash = "0x" + hashlib.sha256(
                (signed.message() + signed.signature).encode("utf-8")
            ).hexdigest()
            self._blocks.append(tx_hash)
            receipt = TxReceipt(
                tx_hash=tx_hash,
                block_number=len(self._blocks),
                operation=request.operation,
                signer=signer
            )

            if isinstance(request, RegisterDidRequest):
                self._apply_register_did(request, signer, receipt)
            elif isinstance(request, RegisterRevocationRequest):
                self._apply_register_revocation(request)
            else:
                self._apply_revoke(request)

            self._receipts[tx_hash] = receipt
            return receipt

    # ---- registerDID ----

    def _check_register_did(self, request: RegisterDidRequest, signer: str) -> None:
        context = {"did": request.did}
        if document_hash(request.document) != request.document_hash:
            raise LedgerError("Document hash mismatch", operation="registerDID", context=context)
        existing = self._dids.get(request.did)
        if existing is not None and existing.controller.lower() != signer.lower():
            raise AlreadyRegistered("DID controlled by another signer", operation="registerDID", context=context)
        if did_address(request.did).lower() != signer.lower():
            raise Unauthorized("Signer does not control this DID", operation="registerDID", context=context)

    def _apply_register_did(self, request: RegisterDidRequest, signer: str, receipt: TxReceipt) -> None:
        existing = self._dids.get(request.did)
        self._dids[request.did] = DidRecord(
            did=request.did,
            document=dict(request.document),
            document_hash=request.document_hash,
            controller=signer,
            version=existing.version + 1 if existing else 1,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            updated_at=_now()
        )

    # ---- registerRevocationEntry ----

    def _check_register_revocation(self, request: RegisterRevocationRequest, signer: str) -> None:
        context = {"credential_id": request.credential_id, "list_id": request.list_id}
        if request.credential_id in self._revocations:
            raise AlreadyRegistered("Revocation slot already allocated", operation="registerRevocationEntry", context=context)
        issuer = self._dids.get(request.issuer)
        if issuer is None:
            raise DIDNotFound("Issuer DID not registered", operation="registerRevocationEntry", context={"did": request.issuer})
        if issuer.controller.lower() != signer.lower():
            raise Unauthorized("Signer does not control issuer DID", operation="registerRevocationEntry", context=context)

    def _apply_register_revocation(self, request: RegisterRevocationRequest) -> None:
        index = self._list_sizes.get(request.list_id, 0)
        self._list_sizes[request.list_id] = index + 1
        self._revocations[request.credential_id] = RevocationRecord(
            credential_id=request.credential_id,
            list_id=request.list_id,
            index=index,
            issuer=request.issuer
        )

    # ---- revoke ----

    def _check_revoke(self, request: RevokeRequest, signer: str) -> None:
        context = {"credential_id": request.credential_id}
        record = self._revocations.get(request.credential_id)
        if record is None:
            raise LedgerError("No revocation slot for credential", operation="revoke", context=context)
        issuer = self._dids.get(record.issuer)
        if issuer is None or issuer.controller.lower() != signer.lower():
            raise Unauthorized("Only the issuer may revoke", operation="revoke", context=context)

    def _apply_revoke(self, request: RevokeRequest) -> None:
        record = self._revocations[request.credential_id]
        if not record.revoked:
            record.revoked = True
            record.revoked_at = _now()
            record.reason = request.reason

    # ---- queries ----

    def get_did(self, did: str) -> Optional[DidRecord]:
        with self._lock:
            return self._dids.get(did)

    def get_revocation(self, credential_id: str) -> Optional[RevocationRecord]:
        with self._lock:
            return self._revocations.get(credential_id)

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        with self._lock:
            return self._receipts.get(tx_hash)

    def head(self) -> int:
        with self._lock:
            return len(self._blocks)


# ==================== CLIENT ====================

class LedgerClient:
    """
    Thin read/write interface to the ledger

    Write methods sign with the supplied ``LedgerAccount`` and return a
    receipt. They never retry: a write that failed in transit may still have
    landed, so callers check state before resubmitting (see
    ``IdentityManager`` and ``CredentialService``).
    """

    def __init__(self, backend: LedgerBackend, crypto: Optional[CryptoService] = None):
        self.backend = backend
        self.crypto = crypto or CryptoService()

    def _submit(self, request: LedgerRequest, account: LedgerAccount) -> TxReceipt:
        nonce = uuid.uuid4().hex
        signature = self.crypto.sign_ledger_message(signing_message(request, nonce), account.private_key)
        receipt = self.backend.submit(SignedRequest(request=request, nonce=nonce, signature=signature))
        logger.info("%s accepted in block %d (%s)", request.operation, receipt.block_number, receipt.tx_hash)
        return receipt

    # ==================== DID REGISTRY ====================

    def register_did(
        self,
        did: str,
        document: Dict[str, Any],
        doc_hash: str,
        account: LedgerAccount
    ) -> TxReceipt:
        """
        Register (or re-register) a DID document

        Raises:
            AlreadyRegistered: DID controlled by a different signer
            LedgerNetworkError / InsufficientFunds: transient, retryable
        """
        request = RegisterDidRequest(did=did, document=document, document_hash=doc_hash)
        return self._submit(request, account)

    def resolve_did(self, did: str) -> Optional[DidRecord]:
        return self.backend.get_did(did)

    # ==================== REVOCATION REGISTRY ====================

    def register_revocation_entry(
        self,
        credential_id: str,
        list_id: str,
        issuer: str,
        account: LedgerAccount
    ) -> RevocationSlot:
        """Allocate the revocation slot for a credential (unique per credential)"""
        request = RegisterRevocationRequest(credential_id=credential_id, list_id=list_id, issuer=issuer)
        receipt = self._submit(request, account)
        record = self.backend.get_revocation(credential_id)
        return RevocationSlot(
            credential_id=credential_id,
            list_id=list_id,
            index=record.index if record else -1,
            receipt=receipt
        )

    def revoke(self, credential_id: str, reason: str, account: LedgerAccount) -> TxReceipt:
        return self._submit(RevokeRequest(credential_id=credential_id, reason=reason), account)

    def is_revoked(self, credential_id: str) -> bool:
        record = self.backend.get_revocation(credential_id)
        return bool(record and record.revoked)

    def get_revocation_record(self, credential_id: str) -> Optional[RevocationRecord]:
        return self.backend.get_revocation(credential_id)

    # ==================== RECEIPTS ====================

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return self.backend.get_receipt(tx_hash)

    def confirmations(self, tx_hash: str) -> int:
        """Blocks mined on top of (and including) the transaction; 0 if unknown"""
        receipt = self.backend.get_receipt(tx_hash)
        if receipt is None:
            return 0
        return self.backend.head() - receipt.block_number + 1
