import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tourist_identity import (
    CredentialType,
    IdentityStack,
    KycData,
    VerifiableCredential,
    VerifiablePresentation,
    build_identity_stack,
)
from tourist_identity.errors import (
    AliasInUse,
    AlreadyRegistered,
    DIDNotFound,
    IdentityLocked,
    IdentitySystemError,
    InvalidReview,
    NoPendingSubmission,
    NotFound,
    SessionError,
    Unauthorized,
)

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB


def _status_for(error: IdentitySystemError) -> int:
    if isinstance(error, (SessionError, IdentityLocked)):
        return 401
    if isinstance(error, Unauthorized):
        return 403
    if isinstance(error, (NotFound, DIDNotFound)):
        return 404
    if isinstance(error, InvalidReview):
        return 400
    if isinstance(error, (AliasInUse, AlreadyRegistered, NoPendingSubmission)):
        return 409
    if error.retryable:
        return 503
    return 500


def _read_upload(upload: Optional[UploadFile]) -> Optional[bytes]:
    if upload is None:
        return None
    content = upload.file.read()
    if len(content) > MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File too large")
    return content


def _parse_json(raw: str) -> dict:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON format")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return data


def create_app(stack: Optional[IdentityStack] = None) -> FastAPI:
    """
    Build the HTTP surface over one identity stack

    Args:
        stack: Pre-built stack (tests); built from settings at startup otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "stack", None) is None:
            app.state.stack = build_identity_stack()
        logger.info("Tourist identity API started")
        yield
        app.state.stack.wallet.lock()
        logger.info("Shutting down...")

    app = FastAPI(title="Tourist Identity API", version="1.0.0", lifespan=lifespan)
    app.state.stack = stack

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IdentitySystemError)
    async def identity_error_handler(request: Request, exc: IdentitySystemError):
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s failed: %s", exc.operation or request.url.path, exc.message)
        return JSONResponse(status_code=status, content={"detail": exc.message, "operation": exc.operation})

    # ============================================================
    # DID ENDPOINTS
    # ============================================================

    @app.post("/api/did/create")
    def create_did(alias: str = Form(...), password: str = Form(...)):
        """
        Create and register a DID whose keys are kept on this server

        Returns:
            DID, W3C DID Document and ledger receipt
        """
        stack = app.state.stack
        identity = stack.identity_manager.create(alias, password)
        return {
            "did": identity.identifier,
            "identity": identity.public_view(),
            "document": identity.to_document().to_dict(),
            "receipt": identity.receipt.to_dict() if identity.receipt else None
        }

    @app.get("/api/did/resolve/{did}")
    def resolve_did(did: str):
        """
        Resolve a DID to its DID Document

        Args:
            did: The DID to resolve (e.g., did:ethr:sepolia:0xabc...)
        """
        doc = app.state.stack.identity_manager.resolve(did)
        return {
            "did": did,
            "document": doc.to_dict()
        }

    @app.get("/api/did/info")
    def get_did_info():
        """Get DID system information"""
        stack = app.state.stack
        current = stack.wallet.current_identity()
        return {
            "available": True,
            "method": stack.settings.DID_METHOD,
            "network": stack.settings.NETWORK,
            "identities": len(stack.identity_manager.list_identities()),
            "session_did": current.identifier if current else None,
            "statistics": stack.credential_service.get_statistics()
        }

    # ============================================================
    # SESSION ENDPOINTS
    # ============================================================

    @app.post("/api/session/unlock")
    def unlock_session(identifier: str = Form(...), password: str = Form(...)):
        identity = app.state.stack.wallet.unlock(identifier, password)
        return {"active": True, "identity": identity.public_view()}

    @app.post("/api/session/lock")
    def lock_session():
        app.state.stack.wallet.lock()
        return {"active": False}

    @app.get("/api/session")
    def get_session():
        wallet = app.state.stack.wallet
        identity = wallet.current_identity()
        if identity is None:
            return {"active": False}
        return {
            "active": True,
            "identity": identity.public_view(),
            "credentials": [vc.id for vc in wallet.credentials()]
        }

    # ============================================================
    # CREDENTIAL ENDPOINTS
    # ============================================================

    @app.post("/api/credential/issue")
    def issue_credential(
        subject_did: str = Form(...),
        credential_type: str = Form(...),
        claims_json: str = Form("{}")
    ):
        """
        Issue a credential signed by the session identity

        Args:
            credential_type: e.g. KYCCredential, GroupMembershipCredential
            claims_json: Type-specific claims as a JSON object
        """
        try:
            kind = CredentialType(credential_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown credential type: {credential_type}")

        credential = app.state.stack.wallet.issue(subject_did, _parse_json(claims_json), kind)
        return {
            "credential": credential.to_dict(),
            "credential_id": credential.id
        }

    @app.post("/api/credential/verify")
    def verify_credential(credential_json: str = Form(...)):
        """
        Verify a Verifiable Credential

        Args:
            credential_json: The credential in JSON format
        """
        credential = VerifiableCredential.from_dict(_parse_json(credential_json))
        return app.state.stack.credential_service.verify(credential).to_dict()

    @app.post("/api/credential/revoke")
    def revoke_credential(
        credential_id: str = Form(...),
        password: str = Form(...),
        reason: str = Form("")
    ):
        record = app.state.stack.wallet.revoke(credential_id, password, reason=reason)
        return record.to_dict()

    @app.get("/api/credential/user/{did}")
    def get_user_credentials(did: str):
        """
        List credentials issued to a DID

        Args:
            did: Subject DID
        """
        credentials = app.state.stack.credential_service.list_credentials(subject_did=did)
        return {
            "did": did,
            "credentials": [vc.to_dict() for vc in credentials]
        }

    @app.post("/api/presentation/verify")
    def verify_presentation(presentation_json: str = Form(...), challenge: Optional[str] = Form(None)):
        try:
            presentation = VerifiablePresentation.from_dict(_parse_json(presentation_json))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return app.state.stack.credential_service.verify_presentation(presentation, challenge=challenge).to_dict()

    # ============================================================
    # KYC ENDPOINTS
    # ============================================================

    @app.post("/api/kyc/submit")
    def submit_kyc(
        full_name: str = Form(...),
        email: str = Form(...),
        phone: str = Form(...),
        password: str = Form(...),
        nationality: str = Form(""),
        address: str = Form(""),
        emergency_contact: str = Form(""),
        blood_group: str = Form(""),
        id_document: Optional[UploadFile] = File(None),
        address_proof: Optional[UploadFile] = File(None),
        photo: Optional[UploadFile] = File(None)
    ):
        """
        Encrypt KYC data, store it off-chain and self-issue a KYC credential

        Returns:
            Submission metadata (no personal data, no password)
        """
        documents = {
            kind: content
            for kind, content in (
                ("idDocument", _read_upload(id_document)),
                ("addressProof", _read_upload(address_proof)),
                ("photo", _read_upload(photo)),
            )
            if content
        }
        data = KycData(
            full_name=full_name,
            email=email,
            phone=phone,
            nationality=nationality,
            address=address,
            emergency_contact=emergency_contact,
            blood_group=blood_group,
            documents=documents
        )
        submission = app.state.stack.wallet.submit_kyc(data, password)
        return submission.to_dict()

    @app.post("/api/kyc/retrieve")
    def retrieve_kyc(password: str = Form(...)):
        """Decrypt the session's latest KYC submission"""
        data = app.state.stack.wallet.decrypt_own_kyc(password)
        return {
            "fullName": data.full_name,
            "email": data.email,
            "phone": data.phone,
            "nationality": data.nationality,
            "address": data.address,
            "emergencyContact": data.emergency_contact,
            "bloodGroup": data.blood_group,
            "documents": sorted(data.documents)
        }

    @app.post("/api/kyc/verify")
    def review_kyc(
        tourist_did: str = Form(...),
        status: str = Form(...),
        verification_level: str = Form(...),
        notes: str = Form("")
    ):
        """
        Verify or reject a tourist's pending KYC submission

        The session identity acts as the reviewer and issues the KYC
        credential when the submission is verified.

        Args:
            status: "verified" or "rejected"
            verification_level: "basic", "enhanced" or "premium"
        """
        submission = app.state.stack.wallet.review_kyc(tourist_did, status, verification_level, notes=notes)
        return {
            "message": f"KYC {status} successfully",
            "submission": submission.to_dict()
        }

    @app.get("/api/kyc/status")
    def get_kyc_status(did: Optional[str] = None):
        """KYC status of ``did`` (the session identity by default)"""
        submission = app.state.stack.wallet.kyc_status(did)
        if submission is None:
            return {"kycStatus": "not_submitted", "verificationLevel": None, "submittedAt": None, "verifiedAt": None}
        return {
            "kycStatus": submission.verification_status,
            "verificationLevel": submission.verification_level,
            "submittedAt": submission.envelope.submission_timestamp,
            "verifiedAt": submission.verified_at,
            "credentialId": submission.review_credential_id or submission.credential_id
        }

    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
