"""
Identity stack wiring
======================

Builds every component explicitly and hands the same instances to the
components that depend on them. Nothing here is a process-wide singleton:
call ``build_identity_stack`` once per application (or per test).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import IdentitySettings, get_settings
from .content_store import ContentStore, FileContentStore, InMemoryContentStore
from .credential_service import CredentialService
from .crypto_service import CryptoService
from .identity_manager import IdentityManager
from .key_store import FileKeyStore, InMemoryKeyStore, KeyStore
from .ledger_client import InMemoryLedger, LedgerBackend, LedgerClient
from .session_wallet import SessionWallet

logger = logging.getLogger(__name__)


@dataclass
class IdentityStack:
    """All components of one identity subsystem instance"""
    settings: IdentitySettings
    crypto: CryptoService
    content_store: ContentStore
    ledger: LedgerClient
    key_store: KeyStore
    identity_manager: IdentityManager
    credential_service: CredentialService
    wallet: SessionWallet


def build_identity_stack(
    settings: Optional[IdentitySettings] = None,
    ledger_backend: Optional[LedgerBackend] = None,
    content_store: Optional[ContentStore] = None,
    key_store: Optional[KeyStore] = None
) -> IdentityStack:
    """
    Construct a complete stack

    Stores default to the directories in ``settings`` (in-memory when
    unset); the ledger defaults to an in-process ledger.
    """
    settings = settings or get_settings()
    crypto = CryptoService(settings)

    if content_store is None:
        if settings.CONTENT_STORE_DIR:
            content_store = FileContentStore(settings.CONTENT_STORE_DIR)
        else:
            content_store = InMemoryContentStore()
    if key_store is None:
        if settings.KEY_STORE_DIR:
            key_store = FileKeyStore(settings.KEY_STORE_DIR)
        else:
            key_store = InMemoryKeyStore()

    ledger = LedgerClient(ledger_backend or InMemoryLedger(crypto), crypto)
    identity_manager = IdentityManager(crypto, ledger, key_store, settings)
    credential_service = CredentialService(crypto, identity_manager, ledger, content_store, settings)
    wallet = SessionWallet(identity_manager, credential_service, crypto)

    logger.info(
        "Identity stack ready (did:%s:%s, content=%s, keys=%s)",
        settings.DID_METHOD, settings.NETWORK,
        type(content_store).__name__, type(key_store).__name__
    )
    return IdentityStack(
        settings=settings,
        crypto=crypto,
        content_store=content_store,
        ledger=ledger,
        key_store=key_store,
        identity_manager=identity_manager,
        credential_service=credential_service,
        wallet=wallet
    )
