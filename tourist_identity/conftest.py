"""Shared fixtures for identity tests"""

import pytest

from tourist_identity.config import IdentitySettings
from tourist_identity.stack import build_identity_stack


@pytest.fixture
def settings():
    """Cheap scrypt cost and no backoff so tests stay fast"""
    return IdentitySettings(
        KDF_N=2 ** 10,
        KDF_R=8,
        KDF_P=1,
        LEDGER_MAX_ATTEMPTS=3,
        LEDGER_BACKOFF_SECONDS=0,
        PIN_MAX_ATTEMPTS=2,
        KEY_STORE_DIR=None,
        CONTENT_STORE_DIR=None
    )


@pytest.fixture
def stack(settings):
    return build_identity_stack(settings)


@pytest.fixture
def crypto(stack):
    return stack.crypto


@pytest.fixture
def alice(stack):
    """Registered and loaded identity 'alice' (password p1)"""
    created = stack.identity_manager.create("alice", "p1")
    return stack.identity_manager.load(created.identifier, "p1")


@pytest.fixture
def bob(stack):
    created = stack.identity_manager.create("bob", "b0b")
    return stack.identity_manager.load(created.identifier, "b0b")
