"""
HTTP API Tests
"""

import json

from fastapi.testclient import TestClient

from backend.api import create_app
from tourist_identity.config import IdentitySettings
from tourist_identity.stack import build_identity_stack


class TestTouristIdentityAPI:

    def setup_method(self):
        settings = IdentitySettings(KDF_N=2 ** 10, LEDGER_BACKOFF_SECONDS=0)
        self.stack = build_identity_stack(settings)
        self.client = TestClient(create_app(self.stack))

    def _create(self, alias="alice", password="p1"):
        response = self.client.post("/api/did/create", data={"alias": alias, "password": password})
        assert response.status_code == 200
        return response.json()["did"]

    def _unlock(self, did, password="p1"):
        return self.client.post("/api/session/unlock", data={"identifier": did, "password": password})

    def test_create_and_resolve(self):
        did = self._create()

        response = self.client.get(f"/api/did/resolve/{did}")

        assert response.status_code == 200
        assert response.json()["document"]["id"] == did

    def test_duplicate_alias(self):
        self._create()
        response = self.client.post("/api/did/create", data={"alias": "alice", "password": "x"})

        assert response.status_code == 409

    def test_resolve_unknown(self):
        response = self.client.get("/api/did/resolve/did:ethr:sepolia:0x0000000000000000000000000000000000000000")

        assert response.status_code == 404

    def test_session(self):
        did = self._create()
        assert self.client.get("/api/session").json() == {"active": False}

        assert self._unlock(did).status_code == 200
        session = self.client.get("/api/session").json()
        assert session["active"] is True
        assert session["identity"]["identifier"] == did

        self.client.post("/api/session/lock")
        assert self.client.get("/api/session").json() == {"active": False}

    def test_wrong_password(self):
        did = self._create()

        response = self._unlock(did, "wrong")

        assert response.status_code == 401
        assert response.json()["detail"] == "Unable to unlock identity"

    def test_issue_requires_session(self):
        response = self.client.post("/api/credential/issue", data={
            "subject_did": "did:ethr:sepolia:0x1",
            "credential_type": "KYCCredential"
        })

        assert response.status_code == 401

    def test_issue_verify_revoke(self):
        did = self._create()
        self._unlock(did)

        issued = self.client.post("/api/credential/issue", data={
            "subject_did": did,
            "credential_type": "KYCCredential",
            "claims_json": json.dumps({"nationality": "IN", "verificationLevel": "basic"})
        })
        assert issued.status_code == 200
        credential = issued.json()["credential"]

        verified = self.client.post("/api/credential/verify", data={"credential_json": json.dumps(credential)})
        assert verified.json()["valid"] is True

        wrong = self.client.post("/api/credential/revoke", data={
            "credential_id": credential["id"], "password": "wrong"
        })
        assert wrong.status_code == 401

        revoked = self.client.post("/api/credential/revoke", data={
            "credential_id": credential["id"], "password": "p1", "reason": "expired visa"
        })
        assert revoked.json()["revoked"] is True

        verified = self.client.post("/api/credential/verify", data={"credential_json": json.dumps(credential)})
        body = verified.json()
        assert body["valid"] is False
        assert "revoked" in [e["code"] for e in body["errors"]]

    def test_unknown_credential_type(self):
        did = self._create()
        self._unlock(did)

        response = self.client.post("/api/credential/issue", data={
            "subject_did": did, "credential_type": "PassportCredential"
        })

        assert response.status_code == 400

    def test_invalid_json(self):
        response = self.client.post("/api/credential/verify", data={"credential_json": "{not json"})

        assert response.status_code == 400

    def test_presentation_verify(self):
        did = self._create()
        self._unlock(did)
        self.client.post("/api/credential/issue", data={
            "subject_did": did, "credential_type": "GroupMembershipCredential",
            "claims_json": json.dumps({"groupId": "g1"})
        })
        vp = self.stack.wallet.present(challenge="abc")

        response = self.client.post("/api/presentation/verify", data={
            "presentation_json": json.dumps(vp.to_dict()), "challenge": "abc"
        })

        assert response.status_code == 200
        assert response.json()["valid"] is True

    def test_kyc_submit_and_retrieve(self):
        did = self._create()
        self._unlock(did)

        submitted = self.client.post(
            "/api/kyc/submit",
            data={"full_name": "A", "email": "a@example.com", "phone": "123", "password": "p2"},
            files={"id_document": ("passport.jpg", b"passport bytes", "image/jpeg")}
        )
        assert submitted.status_code == 200
        body = submitted.json()
        assert body["touristDID"] == did
        assert body["verificationLevel"] == "enhanced"
        assert len(body["documentHashes"]) == 1

        retrieved = self.client.post("/api/kyc/retrieve", data={"password": "p2"})
        assert retrieved.json()["fullName"] == "A"
        assert retrieved.json()["documents"] == ["idDocument"]

        wrong = self.client.post("/api/kyc/retrieve", data={"password": "p3"})
        assert wrong.status_code == 401

    def test_info(self):
        self._create()

        info = self.client.get("/api/did/info").json()

        assert info["available"] is True
        assert info["method"] == "ethr"
        assert info["identities"] == 1
        assert info["session_did"] is None

    def test_wrong_shape_credential_is_malformed(self):
        credential = {"id": "urn:uuid:1", "type": ["VerifiableCredential"], "issuer": "did:ethr:sepolia:0x1",
                      "issuanceDate": "2024-01-01T00:00:00Z", "credentialSubject": "x"}

        response = self.client.post("/api/credential/verify", data={"credential_json": json.dumps(credential)})

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert "malformed" in [e["code"] for e in body["errors"]]

    def test_presentation_with_non_object_credentials(self):
        presentation = {"holder": "did:ethr:sepolia:0x1", "type": ["VerifiablePresentation"],
                        "verifiableCredential": ["x"]}

        response = self.client.post("/api/presentation/verify", data={
            "presentation_json": json.dumps(presentation)
        })

        assert response.status_code == 400

    def _submit_kyc(self, did):
        self._unlock(did)
        response = self.client.post("/api/kyc/submit", data={
            "full_name": "A", "email": "a@example.com", "phone": "123", "password": "p2"
        })
        assert response.status_code == 200
        return response.json()

    def test_kyc_review(self):
        tourist = self._create()
        authority = self._create("police", "badge")
        self._submit_kyc(tourist)

        pending = self.client.get("/api/kyc/status", params={"did": tourist}).json()
        assert pending["kycStatus"] == "pending"
        assert pending["verifiedAt"] is None

        self._unlock(authority, "badge")
        reviewed = self.client.post("/api/kyc/verify", data={
            "tourist_did": tourist, "status": "verified", "verification_level": "premium"
        })
        assert reviewed.status_code == 200
        assert reviewed.json()["message"] == "KYC verified successfully"

        status = self.client.get("/api/kyc/status", params={"did": tourist}).json()
        assert status["kycStatus"] == "verified"
        assert status["verificationLevel"] == "premium"
        assert status["verifiedAt"] is not None

        credentials = self.client.get(f"/api/credential/user/{tourist}").json()["credentials"]
        issued = [vc for vc in credentials if vc["id"] == status["credentialId"]]
        assert issued[0]["issuer"] == authority

        again = self.client.post("/api/kyc/verify", data={
            "tourist_did": tourist, "status": "rejected", "verification_level": "basic"
        })
        assert again.status_code == 409

    def test_kyc_review_bad_status(self):
        tourist = self._create()
        self._submit_kyc(tourist)

        response = self.client.post("/api/kyc/verify", data={
            "tourist_did": tourist, "status": "approved", "verification_level": "basic"
        })

        assert response.status_code == 400

    def test_kyc_status_not_submitted(self):
        did = self._create()
        self._unlock(did)

        body = self.client.get("/api/kyc/status").json()

        assert body["kycStatus"] == "not_submitted"

    def test_kyc_status_requires_session_without_did(self):
        response = self.client.get("/api/kyc/status")

        assert response.status_code == 401

    def test_user_credentials_empty(self):
        did = self._create()

        body = self.client.get(f"/api/credential/user/{did}").json()

        assert body == {"did": did, "credentials": []}
