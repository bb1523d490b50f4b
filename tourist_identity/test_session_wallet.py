"""
Session Wallet Tests
"""

import pytest

from tourist_identity.credential_verifier import VerificationStatus
from tourist_identity.credentials import CredentialType
from tourist_identity.errors import InvalidReview, NoActiveSession, NoPendingSubmission, NotFound, WrongPassword
from tourist_identity.kyc import KycData, calculate_verification_level


def _kyc(**overrides) -> KycData:
    fields = dict(full_name="A", email="a@example.com", phone="123")
    fields.update(overrides)
    return KycData(**fields)


class TestVerificationLevel:

    def test_basic(self):
        assert calculate_verification_level(_kyc()) == "basic"

    def test_incomplete_contact_details(self):
        assert calculate_verification_level(_kyc(email="")) == "basic"

    def test_enhanced(self):
        data = _kyc(address="MG Road", nationality="IN", emergency_contact="+91 1")
        assert calculate_verification_level(data) == "enhanced"

    def test_premium_with_document(self):
        data = _kyc(address="MG Road", nationality="IN", emergency_contact="+91 1",
                    documents={"idDocument": b"passport"})
        assert calculate_verification_level(data) == "premium"

    def test_documents_alone_reach_enhanced(self):
        data = _kyc(documents={"idDocument": b"p", "photo": b"f"})
        assert calculate_verification_level(data) == "enhanced"

    def test_payload_round_trip(self):
        data = _kyc(documents={"photo": b"\x89PNG"})
        assert KycData.from_payload(data.to_payload()) == data


class TestSessionLifecycle:

    @pytest.fixture(autouse=True)
    def setup(self, stack):
        self.stack = stack
        self.wallet = stack.wallet
        self.alice = stack.identity_manager.create("alice", "p1")

    def test_no_session_initially(self):
        assert self.wallet.current_identity() is None

        with pytest.raises(NoActiveSession):
            self.wallet.require_session()

    @pytest.mark.parametrize("call", [
        lambda w: w.issue("did:ethr:sepolia:0x1", {}, CredentialType.KYC),
        lambda w: w.sign(b"msg"),
        lambda w: w.submit_kyc(_kyc(), "p2"),
        lambda w: w.decrypt_own_kyc("p2"),
        lambda w: w.credentials(),
        lambda w: w.export_credentials("p1"),
        lambda w: w.revoke("urn:uuid:1", "p1"),
    ])
    def test_operations_require_session(self, call):
        with pytest.raises(NoActiveSession):
            call(self.wallet)

    def test_unlock_and_lock(self):
        identity = self.wallet.unlock(self.alice.identifier, "p1")

        assert self.wallet.current_identity() is identity
        assert identity.is_loaded

        self.wallet.lock()

        assert self.wallet.current_identity() is None
        assert identity.keys is None

    def test_wrong_password_is_generic(self):
        with pytest.raises(WrongPassword) as exc:
            self.wallet.unlock(self.alice.identifier, "wrong")

        assert exc.value.message == "Unable to unlock identity"
        assert exc.value.__cause__ is None
        assert self.wallet.current_identity() is None

    @pytest.mark.parametrize("field, value", [
        ("ciphertext", "a"),
        ("nonce", "a"),
        ("kdfParams", {"algorithm": "scrypt", "n": 3, "r": 8, "p": 1, "length": 32}),
    ])
    def test_corrupted_envelope_is_generic(self, field, value):
        self.stack.key_store._records[self.alice.identifier]["envelope"][field] = value

        with pytest.raises(WrongPassword) as exc:
            self.wallet.unlock(self.alice.identifier, "p1")

        assert exc.value.message == "Unable to unlock identity"
        assert exc.value.__cause__ is None

    def test_unknown_identity(self):
        with pytest.raises(NotFound):
            self.wallet.unlock("did:ethr:sepolia:0x0000000000000000000000000000000000000000", "p1")

    def test_single_active_session(self):
        bob = self.stack.identity_manager.create("bob", "b0b")
        first = self.wallet.unlock(self.alice.identifier, "p1")
        self.wallet.unlock(bob.identifier, "b0b")

        assert self.wallet.current_identity().identifier == bob.identifier
        assert first.keys is None

    def test_lock_without_session_is_noop(self):
        self.wallet.lock()
        assert self.wallet.current_identity() is None


class TestSessionOperations:

    @pytest.fixture(autouse=True)
    def setup(self, stack):
        self.stack = stack
        self.wallet = stack.wallet
        created = stack.identity_manager.create("alice", "p1")
        self.identity = self.wallet.unlock(created.identifier, "p1")
        self.did = created.identifier

    def test_self_issued_credential_kept_in_session(self):
        vc = self.wallet.issue(self.did, {"nationality": "IN", "verificationLevel": "basic"}, CredentialType.KYC)

        assert self.wallet.credentials() == [vc]
        assert self.stack.credential_service.verify(vc).valid

    def test_credentials_restored_on_unlock(self):
        vc = self.wallet.issue(self.did, {}, CredentialType.TRAVEL_COMPLETION)
        self.wallet.lock()
        self.wallet.unlock(self.did, "p1")

        assert [c.id for c in self.wallet.credentials()] == [vc.id]

    def test_sign(self):
        signature = self.wallet.sign(b"sos")
        key = self.stack.identity_manager.resolve(self.did).find_key(f"{self.did}#key-1")

        assert self.stack.crypto.verify(b"sos", signature, key.public_key)

    def test_open_sealed(self):
        doc = self.stack.identity_manager.resolve(self.did)
        agreement = doc.find_key(doc.key_agreement[0])
        sealed = self.stack.crypto.seal(b"medical note", agreement.public_key)

        assert self.wallet.open_sealed(sealed) == b"medical note"

    def test_present(self):
        self.wallet.issue(self.did, {"groupId": "g1"}, CredentialType.GROUP_MEMBERSHIP)

        vp = self.wallet.present(challenge="c-1")

        assert vp.holder == self.did
        assert self.stack.credential_service.verify_presentation(vp, challenge="c-1").valid

    def test_revoke_requires_reauthentication(self):
        vc = self.wallet.issue(self.did, {}, CredentialType.KYC)

        with pytest.raises(WrongPassword):
            self.wallet.revoke(vc.id, "wrong")
        assert self.stack.ledger.is_revoked(vc.id) is False

        record = self.wallet.revoke(vc.id, "p1", reason="left group")
        assert record.revoked is True

    def test_export_requires_reauthentication(self):
        vc = self.wallet.issue(self.did, {}, CredentialType.KYC)

        with pytest.raises(WrongPassword):
            self.wallet.export_credentials("wrong")

        exported = self.wallet.export_credentials("p1")
        assert [c["id"] for c in exported] == [vc.id]

    def test_password_not_kept(self):
        self.wallet.require_session()

        assert not any(v == "p1" for v in vars(self.wallet).values())


class TestKycSubmission:

    @pytest.fixture(autouse=True)
    def setup(self, stack):
        self.stack = stack
        self.wallet = stack.wallet
        created = stack.identity_manager.create("alice", "p1")
        self.wallet.unlock(created.identifier, "p1")
        self.did = created.identifier
        self.data = _kyc(nationality="IN", address="MG Road", emergency_contact="+91 1",
                         documents={"idDocument": b"passport scan"})

    def test_submit_issues_kyc_credential(self):
        submission = self.wallet.submit_kyc(self.data, "p2")
        vc = self.wallet.credentials()[-1]

        assert submission.credential_id == vc.id
        assert submission.verification_level == "premium"
        assert vc.claims["verificationLevel"] == "premium"
        assert vc.evidence[0]["contentId"] == submission.envelope.content_id
        assert vc.evidence[0]["documentHashes"] == submission.document_hashes
        assert self.stack.credential_service.verify(vc).valid
        assert self.wallet.kyc_submissions == [submission]

    def test_evidence_carries_no_secrets(self):
        self.wallet.submit_kyc(self.data, "p2")
        evidence = self.wallet.credentials()[-1].evidence[0]

        assert set(evidence) == {
            "type", "contentId", "salt", "nonce", "kdfParams", "submissionTimestamp", "algorithm", "documentHashes"
        }
        assert b"MG Road" not in self.stack.content_store.get(evidence["contentId"])

    def test_decrypt_own_kyc(self):
        self.wallet.submit_kyc(self.data, "p2")

        assert self.wallet.decrypt_own_kyc("p2") == self.data

    def test_decrypt_own_kyc_wrong_password(self):
        self.wallet.submit_kyc(self.data, "p2")

        with pytest.raises(WrongPassword):
            self.wallet.decrypt_own_kyc("p3")

    def test_decrypt_without_submission(self):
        with pytest.raises(NotFound):
            self.wallet.decrypt_own_kyc("p2")

    def test_revoked_kyc_credential(self):
        submission = self.wallet.submit_kyc(self.data, "p2")
        self.wallet.revoke(submission.credential_id, "p1", reason="data changed")

        vc = self.wallet.credentials()[-1]
        result = self.stack.credential_service.verify(vc)
        assert result.has_error(VerificationStatus.REVOKED)


class TestKycReview:

    @pytest.fixture(autouse=True)
    def setup(self, stack):
        self.stack = stack
        self.wallet = stack.wallet
        self.service = stack.credential_service
        self.tourist = stack.identity_manager.create("alice", "p1").identifier
        self.authority = stack.identity_manager.create("police", "badge").identifier
        self._submit()
        self.wallet.unlock(self.authority, "badge")

    def _submit(self):
        self.wallet.unlock(self.tourist, "p1")
        submission = self.wallet.submit_kyc(_kyc(documents={"idDocument": b"passport"}), "p2")
        self.wallet.lock()
        return submission

    def test_submission_queued_for_review(self):
        submission = self.service.kyc_status(self.tourist)

        assert submission.is_pending
        assert submission.verified_at is None
        assert submission.to_dict()["verificationStatus"] == "pending"

    def test_verify_issues_reviewer_credential(self):
        submission = self.wallet.review_kyc(self.tourist, "verified", "premium", notes="documents checked")

        assert submission.verification_status == "verified"
        assert submission.verification_level == "premium"
        assert submission.verified_at is not None
        assert submission.reviewer == self.authority
        assert submission.to_dict()["verifiedAt"] == submission.verified_at

        vc = self.service.get_credential(submission.review_credential_id)
        assert vc.issuer == self.authority
        assert vc.subject == self.tourist
        assert vc.claims["verificationLevel"] == "premium"
        assert vc.evidence[0]["contentId"] == submission.envelope.content_id
        assert self.service.verify(vc).valid

    def test_reject(self):
        submission = self.wallet.review_kyc(self.tourist, "rejected", "basic", notes="blurry scan")

        assert submission.verification_status == "rejected"
        assert submission.review_credential_id is None
        assert submission.verified_at is not None
        assert submission.notes == "blurry scan"

    def test_reject_revokes_earlier_reviewer_credential(self):
        first = self.wallet.review_kyc(self.tourist, "verified", "enhanced")
        self._submit()
        self.wallet.unlock(self.authority, "badge")

        self.wallet.review_kyc(self.tourist, "rejected", "basic")

        assert self.service.is_revoked(first.review_credential_id)
        result = self.service.verify(self.service.get_credential(first.review_credential_id))
        assert result.has_error(VerificationStatus.REVOKED)

    def test_only_pending_submission_can_be_reviewed(self):
        self.wallet.review_kyc(self.tourist, "verified", "basic")

        with pytest.raises(NoPendingSubmission):
            self.wallet.review_kyc(self.tourist, "rejected", "basic")

    def test_nothing_submitted(self):
        with pytest.raises(NoPendingSubmission):
            self.wallet.review_kyc(self.authority, "verified", "basic")

    @pytest.mark.parametrize("outcome, level", [
        ("approved", "basic"),
        ("verified", "gold"),
        ("pending", "basic"),
    ])
    def test_invalid_review(self, outcome, level):
        with pytest.raises(InvalidReview):
            self.wallet.review_kyc(self.tourist, outcome, level)

        assert self.service.kyc_status(self.tourist).is_pending

    def test_review_requires_session(self):
        self.wallet.lock()

        with pytest.raises(NoActiveSession):
            self.wallet.review_kyc(self.tourist, "verified", "basic")

    def test_tourist_sees_outcome_after_unlock(self):
        self.wallet.review_kyc(self.tourist, "verified", "enhanced")
        self.wallet.unlock(self.tourist, "p1")

        status = self.wallet.kyc_status()

        assert status.verification_status == "verified"
        assert self.wallet.decrypt_own_kyc("p2").full_name == "A"
