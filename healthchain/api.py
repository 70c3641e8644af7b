"""
HTTP API for the HealthChain engine.

The service exposes ledger-level operations only: descriptors, grants, the
audit log and raw (already encrypted) content. Encryption and decryption stay
on the client, so no key material ever reaches this service. The caller is
identified by ``wallet_address``; wallet authentication happens upstream.
"""

import logging
import time
from typing import Optional

from fastapi import Body, FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healthchain.audit import AuditLog
from healthchain.constants import CONTENT_STORE_URL, LEDGER_BACKEND, REQUEST_TIMEOUT
from healthchain.content_store import create_content_store
from healthchain.errors import (
    Conflict,
    DecryptionError,
    Forbidden,
    HealthChainError,
    LedgerRejected,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from healthchain.grants import AccessGrantEngine
from healthchain.ledger import InMemoryLedger
from healthchain.models import (
    AccessDecision,
    AccessRequest,
    AccessRevocation,
    ReadRecordRequest,
    RegisterRecordRequest,
    UpdateRecordRequest,
)
from healthchain.registry import RecordRegistry
from healthchain.retry import RetryPolicy, call_with_retry
from healthchain.session import Session
from healthchain.web3_ledger import Web3Ledger

logger = logging.getLogger(__name__)

# Most specific class first
STATUS_CODES = [
    (ValidationError, 400),
    (Forbidden, 403),
    (NotFoundError, 404),
    (Conflict, 409),
    (LedgerRejected, 409),
    (DecryptionError, 422),
    (UnavailableError, 503),
]


def status_code_for(error):
    for cls, code in STATUS_CODES:
        if isinstance(error, cls):
            return code
    return 500


# Standard API response helpers
def success_response(data=None, message=None, pending_confirmation=None):
    """
    Create a standardized success response.

    Args:
        data: Optional data to include in the response
        message: Optional message to include in the response
        pending_confirmation: Set on reads that may not reflect unconfirmed writes

    Returns:
        dict: A standardized success response
    """
    response = {"status": "success"}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    if pending_confirmation is not None:
        response["pending_confirmation"] = pending_confirmation

    return response


def error_response(error):
    """Create a standardized error response for a HealthChainError"""
    body = {"status": "error"}
    body.update(error.to_dict())
    return JSONResponse(status_code=status_code_for(error), content=body)


def _dump(model):
    return model.model_dump(mode="json") if model is not None else None


def default_ledger():
    if LEDGER_BACKEND == "web3":
        return Web3Ledger.connect()
    return InMemoryLedger()


def create_app(ledger=None, content_store=None, retry_policy=None):
    """Build the FastAPI application around a ledger and a content store"""
    app = FastAPI(title="HealthChain API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.ledger = ledger if ledger is not None else default_ledger()
    app.state.content_store = content_store if content_store is not None else create_content_store(CONTENT_STORE_URL)
    app.state.retry_policy = retry_policy or RetryPolicy()

    def session_for(wallet_address):
        return Session(wallet_address, app.state.ledger)

    @app.exception_handler(HealthChainError)
    async def handle_engine_error(request: Request, exc: HealthChainError):
        if exc.retryable:
            logger.warning(f"{request.method} {request.url.path} unavailable: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return error_response(exc)

    @app.get("/health")
    @app.get("/api/health")
    def health_check():
        """Health check endpoint"""
        return success_response(
            data={"timestamp": int(time.time())},
            message="Service is healthy"
        )

    # Records

    @app.post("/api/records")
    def register_record(body: RegisterRecordRequest):
        session = session_for(body.wallet_address)
        record_id = RecordRegistry(session).register(body.record_type, body.content_ref, body.metadata, body.integrity)
        return success_response(data={"record_id": record_id}, message="Record registered")

    @app.put("/api/records/{record_id}")
    def update_record(record_id: str, body: UpdateRecordRequest):
        session = session_for(body.wallet_address)
        record = RecordRegistry(session).update(record_id, body.content_ref, body.metadata, body.integrity)
        return success_response(data=_dump(record), message="Record updated")

    @app.post("/api/records/{record_id}/archive")
    def archive_record(record_id: str, wallet_address: str = Body(..., embed=True)):
        session = session_for(wallet_address)
        record = RecordRegistry(session).archive(record_id)
        return success_response(data=_dump(record), message="Record archived")

    @app.get("/api/records")
    def list_records(owner: str, wallet_address: Optional[str] = None, include_archived: bool = False):
        session = session_for(wallet_address or owner)
        records = RecordRegistry(session).list_by_owner(owner, include_archived=include_archived)
        return success_response(
            data=[_dump(r) for r in records],
            pending_confirmation=session.pending_confirmation,
        )

    @app.get("/api/records/{record_id}")
    def get_record(record_id: str, owner: str):
        session = session_for(owner)
        record = RecordRegistry(session).get(owner, record_id)
        return success_response(data=_dump(record), pending_confirmation=session.pending_confirmation)

    @app.get("/api/records/{record_id}/history")
    def record_history(record_id: str, owner: str):
        session = session_for(owner)
        versions = RecordRegistry(session).history(owner, record_id)
        return success_response(data=[_dump(v) for v in versions])

    @app.post("/api/records/{record_id}/read")
    def read_record(record_id: str, body: ReadRecordRequest):
        """Audited dereference; returns the descriptor whose content the caller may fetch"""
        session = session_for(body.wallet_address)
        record = session.transact("read_record", patient=body.patient_address, record_id=record_id)
        return success_response(data=_dump(record), message="Read recorded")

    # Access grants

    @app.post("/api/access/request")
    def request_access(body: AccessRequest):
        engine = AccessGrantEngine(session_for(body.wallet_address))
        grant = engine.request_access_days(body.patient_address, body.duration_days)
        return success_response(data=_dump(grant), message="Access request sent")

    @app.post("/api/access/decide")
    def decide_access(body: AccessDecision):
        engine = AccessGrantEngine(session_for(body.wallet_address))
        grant = engine.decide(body.provider_address, body.approve, patient=body.patient_address)
        return success_response(data=_dump(grant), message="Access approved" if body.approve else "Access rejected")

    @app.post("/api/access/revoke")
    def revoke_access(body: AccessRevocation):
        engine = AccessGrantEngine(session_for(body.wallet_address))
        grant = engine.revoke(body.provider_address, patient=body.patient_address)
        return success_response(data=_dump(grant), message="Access revoked")

    @app.get("/api/access/check")
    def check_access(patient: str, provider: str):
        engine = AccessGrantEngine(session_for(provider))
        grant = engine.get_grant(patient, provider)
        return success_response(data={
            "authorized": engine.check_access(patient, provider),
            "grant": _dump(grant),
        })

    @app.get("/api/access/pending")
    def pending_requests(patient: str):
        engine = AccessGrantEngine(session_for(patient))
        return success_response(data=[_dump(g) for g in engine.pending_requests(patient)])

    @app.get("/api/access/providers")
    def authorized_providers(patient: str):
        engine = AccessGrantEngine(session_for(patient))
        return success_response(data=engine.authorized_providers(patient))

    # Audit log

    @app.get("/api/audit")
    def query_audit(subject: str, start: Optional[int] = None, end: Optional[int] = None,
                    action: Optional[str] = None):
        audit_log = AuditLog(session_for(subject))
        entries = audit_log.query_by_subject(subject, start, end, action)
        return success_response(data=[_dump(e) for e in entries])

    # Content

    def with_retry(func):
        return call_with_retry(func, app.state.retry_policy, timeout=REQUEST_TIMEOUT)

    @app.post("/api/content")
    async def put_content(request: Request):
        data = await request.body()
        cid = await run_in_threadpool(with_retry, lambda: app.state.content_store.put(data))
        return success_response(data={"cid": cid, "size": len(data)}, message="Content stored")

    @app.get("/api/content/{cid}")
    def get_content(cid: str):
        data = with_retry(lambda: app.state.content_store.get(cid))
        return Response(content=data, media_type="application/octet-stream")

    return app


app = create_app()
