"""
Ledger Client Tests
"""

import pytest

from tourist_identity.errors import AlreadyRegistered, DIDNotFound, LedgerError, LedgerNetworkError, Unauthorized
from tourist_identity.ledger_client import InMemoryLedger, LedgerClient, did_address, document_hash
from tourist_identity.retry import call_with_retry


class TestHelpers:

    def test_did_address(self):
        assert did_address("did:ethr:sepolia:0xabc") == "0xabc"

    def test_did_address_rejects_other_shapes(self):
        with pytest.raises(LedgerError):
            did_address("did:key:z6Mk")

    def test_document_hash_ignores_key_order(self):
        assert document_hash({"a": 1, "b": 2}) == document_hash({"b": 2, "a": 1})


class TestDidRegistry:

    @pytest.fixture(autouse=True)
    def setup(self, crypto):
        self.crypto = crypto
        self.ledger = LedgerClient(InMemoryLedger(crypto), crypto)
        self.account = crypto.generate_ledger_account()
        self.did = f"did:ethr:sepolia:{self.account.address}"
        self.document = {"id": self.did, "verificationMethod": []}

    def _register(self, document=None, account=None):
        document = document or self.document
        return self.ledger.register_did(self.did, document, document_hash(document), account or self.account)

    def test_register_and_resolve(self):
        receipt = self._register()
        record = self.ledger.resolve_did(self.did)

        assert receipt.tx_hash.startswith("0x")
        assert receipt.block_number == 1
        assert receipt.signer == self.account.address
        assert record.document == self.document
        assert record.version == 1

    def test_resolve_unknown(self):
        assert self.ledger.resolve_did("did:ethr:sepolia:0x0000000000000000000000000000000000000000") is None

    def test_controller_can_update(self):
        self._register()
        updated = dict(self.document, service=[{"id": "x"}])
        self._register(updated)

        record = self.ledger.resolve_did(self.did)
        assert record.version == 2
        assert record.document["service"] == [{"id": "x"}]

    def test_other_signer_rejected_for_fresh_did(self):
        with pytest.raises(Unauthorized):
            self._register(account=self.crypto.generate_ledger_account())

    def test_other_signer_rejected_for_registered_did(self):
        self._register()

        with pytest.raises(AlreadyRegistered):
            self._register(account=self.crypto.generate_ledger_account())

    def test_hash_mismatch_rejected(self):
        with pytest.raises(LedgerError):
            self.ledger.register_did(self.did, self.document, "0" * 64, self.account)

    def test_receipts_and_confirmations(self):
        first = self._register()
        assert self.ledger.confirmations(first.tx_hash) == 1

        self._register(dict(self.document, updated="later"))

        assert self.ledger.get_receipt(first.tx_hash) == first
        assert self.ledger.confirmations(first.tx_hash) == 2
        assert self.ledger.confirmations("0xunknown") == 0


class TestRevocationRegistry:

    @pytest.fixture(autouse=True)
    def setup(self, crypto):
        self.crypto = crypto
        self.ledger = LedgerClient(InMemoryLedger(crypto), crypto)
        self.account = crypto.generate_ledger_account()
        self.issuer = f"did:ethr:sepolia:{self.account.address}"
        document = {"id": self.issuer}
        self.ledger.register_did(self.issuer, document, document_hash(document), self.account)

    def test_slots_are_sequential_per_list(self):
        first = self.ledger.register_revocation_entry("urn:uuid:1", "list-a", self.issuer, self.account)
        second = self.ledger.register_revocation_entry("urn:uuid:2", "list-a", self.issuer, self.account)
        other = self.ledger.register_revocation_entry("urn:uuid:3", "list-b", self.issuer, self.account)

        assert (first.index, second.index, other.index) == (0, 1, 0)
        assert first.receipt is not None

    def test_slot_unique_per_credential(self):
        self.ledger.register_revocation_entry("urn:uuid:1", "list-a", self.issuer, self.account)

        with pytest.raises(AlreadyRegistered):
            self.ledger.register_revocation_entry("urn:uuid:1", "list-b", self.issuer, self.account)

    def test_unregistered_issuer(self):
        stranger = self.crypto.generate_ledger_account()

        with pytest.raises(DIDNotFound):
            self.ledger.register_revocation_entry(
                "urn:uuid:1", "list-a", f"did:ethr:sepolia:{stranger.address}", stranger
            )

    def test_revoke(self):
        self.ledger.register_revocation_entry("urn:uuid:1", "list-a", self.issuer, self.account)
        assert self.ledger.is_revoked("urn:uuid:1") is False

        self.ledger.revoke("urn:uuid:1", "lost passport", self.account)

        record = self.ledger.get_revocation_record("urn:uuid:1")
        assert self.ledger.is_revoked("urn:uuid:1") is True
        assert record.reason == "lost passport"
        assert record.revoked_at is not None

    def test_revoke_twice_keeps_first_record(self):
        self.ledger.register_revocation_entry("urn:uuid:1", "list-a", self.issuer, self.account)
        self.ledger.revoke("urn:uuid:1", "first", self.account)
        revoked_at = self.ledger.get_revocation_record("urn:uuid:1").revoked_at

        self.ledger.revoke("urn:uuid:1", "second", self.account)

        record = self.ledger.get_revocation_record("urn:uuid:1")
        assert record.reason == "first"
        assert record.revoked_at == revoked_at

    def test_only_issuer_may_revoke(self):
        self.ledger.register_revocation_entry("urn:uuid:1", "list-a", self.issuer, self.account)

        with pytest.raises(Unauthorized):
            self.ledger.revoke("urn:uuid:1", "", self.crypto.generate_ledger_account())
        assert self.ledger.is_revoked("urn:uuid:1") is False

    def test_revoke_without_slot(self):
        with pytest.raises(LedgerError):
            self.ledger.revoke("urn:uuid:missing", "", self.account)


class TestRetry:

    def test_retries_retryable_errors(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise LedgerNetworkError("timeout", operation="submit")
            return "ok"

        assert call_with_retry(flaky, "submit", max_attempts=3, backoff_seconds=0) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        def down():
            raise LedgerNetworkError("timeout", operation="submit")

        with pytest.raises(LedgerNetworkError):
            call_with_retry(down, "submit", max_attempts=2, backoff_seconds=0)

    def test_fatal_errors_not_retried(self):
        calls = []

        def fatal():
            calls.append(1)
            raise Unauthorized("no", operation="submit")

        with pytest.raises(Unauthorized):
            call_with_retry(fatal, "submit", max_attempts=5, backoff_seconds=0)
        assert len(calls) == 1

    def test_status_check_stops_resubmission(self):
        calls = []

        def lost_ack():
            calls.append(1)
            raise LedgerNetworkError("connection reset", operation="submit")

        result = call_with_retry(lost_ack, "submit", max_attempts=3, backoff_seconds=0,
                                 before_retry=lambda error: "landed")

        assert result == "landed"
        assert len(calls) == 1

    def test_backoff_doubles(self):
        delays = []

        def down():
            raise LedgerNetworkError("timeout", operation="submit")

        with pytest.raises(LedgerNetworkError):
            call_with_retry(down, "submit", max_attempts=4, backoff_seconds=0.5, sleep=delays.append)
        assert delays == [0.5, 1.0, 2.0]
