"""
Key Store - Local custody of password-encrypted identities

Private key material is stored only on this device, only inside an
``EncryptedEnvelope``, and is never uploaded anywhere (not even encrypted).
Single-device custody: losing the store loses the keys.
"""

import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .crypto_service import EncryptedEnvelope
from .errors import NotFound, StorageError, Unavailable
from .ledger_client import TxReceipt

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^did:[A-Za-z0-9]+:[A-Za-z0-9-]+:0x[0-9a-fA-F]{40}$")


@dataclass
class StoredIdentity:
    """At-rest form of an identity: public document + private-key envelope"""
    identifier: str
    alias: str
    document: Dict[str, Any]
    envelope: EncryptedEnvelope
    key_version: int = 1
    registered: bool = False
    receipt: Optional[TxReceipt] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "alias": self.alias,
            "document": self.document,
            "envelope": self.envelope.to_dict(),
            "keyVersion": self.key_version,
            "registered": self.registered,
            "receipt": self.receipt.to_dict() if self.receipt else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredIdentity":
        receipt = data.get("receipt")
        return cls(
            identifier=data["identifier"],
            alias=data["alias"],
            document=data["document"],
            envelope=EncryptedEnvelope.from_dict(data["envelope"]),
            key_version=data.get("keyVersion", 1),
            registered=data.get("registered", False),
            receipt=TxReceipt(
                tx_hash=receipt["txHash"],
                block_number=receipt["blockNumber"],
                operation=receipt["operation"],
                signer=receipt["signer"]
            ) if receipt else None
        )


class KeyStore(ABC):
    """Storage backend for ``StoredIdentity`` records"""

    def get(self, identifier: str) -> StoredIdentity:
        record = self.find(identifier)
        if record is None:
            raise NotFound("No local identity", operation="load", context={"identifier": identifier})
        return record

    @abstractmethod
    def find(self, identifier: str) -> Optional[StoredIdentity]:
        ...

    @abstractmethod
    def find_by_alias(self, alias: str) -> Optional[StoredIdentity]:
        ...

    @abstractmethod
    def save(self, record: StoredIdentity) -> None:
        ...

    @abstractmethod
    def delete(self, identifier: str) -> None:
        ...

    @abstractmethod
    def list(self) -> List[StoredIdentity]:
        ...


class InMemoryKeyStore(KeyStore):
    """Process-local key store (tests)"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def find(self, identifier: str) -> Optional[StoredIdentity]:
        with self._lock:
            data = self._records.get(identifier)
        return StoredIdentity.from_dict(data) if data else None

    def find_by_alias(self, alias: str) -> Optional[StoredIdentity]:
        with self._lock:
            for data in self._records.values():
                if data["alias"] == alias:
                    return StoredIdentity.from_dict(data)
        return None

    def save(self, record: StoredIdentity) -> None:
        with self._lock:
            self._records[record.identifier] = record.to_dict()

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    def list(self) -> List[StoredIdentity]:
        with self._lock:
            return [StoredIdentity.from_dict(d) for d in self._records.values()]


class FileKeyStore(KeyStore):
    """
    One JSON file per identity under ``root``

    Writes go to a temp file first and are renamed into place, so a crash
    mid-write never leaves a truncated envelope behind. File names are
    derived from the identifier, so only ``did:<method>:<network>:0x<address>``
    identifiers are accepted.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise Unavailable(str(e), operation="open", context={"root": str(self.root)}) from e

    def _path(self, identifier: str) -> Optional[Path]:
        if not isinstance(identifier, str) or not IDENTIFIER_PATTERN.match(identifier):
            return None
        return self.root / (identifier.replace(":", "_") + ".json")

    def _read(self, path: Path) -> StoredIdentity:
        try:
            with open(path, "r") as f:
                return StoredIdentity.from_dict(json.load(f))
        except OSError as e:
            raise Unavailable(str(e), operation="read", context={"path": str(path)}) from e

    def find(self, identifier: str) -> Optional[StoredIdentity]:
        path = self._path(identifier)
        if path is None or not path.exists():
            return None
        return self._read(path)

    def find_by_alias(self, alias: str) -> Optional[StoredIdentity]:
        for record in self.list():
            if record.alias == alias:
                return record
        return None

    def save(self, record: StoredIdentity) -> None:
        path = self._path(record.identifier)
        if path is None:
            raise StorageError("Invalid identifier", operation="save", context={"identifier": record.identifier})
        try:
            fd, tmp = tempfile.mkstemp(dir=self.root, suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            raise Unavailable(str(e), operation="save", context={"identifier": record.identifier}) from e

    def delete(self, identifier: str) -> None:
        path = self._path(identifier)
        if path is not None:
            path.unlink(missing_ok=True)

    def list(self) -> List[StoredIdentity]:
        return [self._read(path) for path in sorted(self.root.glob("*.json"))]
