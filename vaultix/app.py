# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the vaultix escrow host (FastAPI).

Exposes the escrow operation surface: platform configuration, escrow
creation, milestone release, delivery confirmation, cancel and complete.

Ed25519 authentication: every mutating request must be signed. A request
signed by pubkey P proves the identity vx_<P> for the duration of the call.
"""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from crypto import ReplayGuard
from protocol import DEFAULT_PAGE_LIMIT, REQUEST_MAX_AGE, AuthorizationError, EscrowError
from vaultix.auth import SignedRequestAuth
from vaultix.escrow import EscrowManager
from vaultix.ledger import TransferError

logger = logging.getLogger(__name__)


# --- Request models ---

class InitializeRequest(BaseModel):
    treasury: str
    fee_bps: int | None = None

class UpdateFeeRequest(BaseModel):
    new_fee_bps: int

class MilestoneIn(BaseModel):
    amount: int
    description: str = ""
    status: str = "pending"  # ignored: every milestone starts pending

class CreateEscrowRequest(BaseModel):
    escrow_id: int
    depositor: str
    recipient: str
    milestones: list[MilestoneIn]
    token: str

class ReleaseRequest(BaseModel):
    milestone_index: int
    token_address: str

class ConfirmRequest(BaseModel):
    milestone_index: int
    buyer: str


# HTTP status per error category
CATEGORY_STATUS = {
    "not_found": 404,
    "conflict": 409,
    "authorization": 403,
    "validation": 400,
    "state": 409,
    "configuration": 503,
}


async def _signed_auth(request: Request) -> SignedRequestAuth:
    """Verify Ed25519-signed request. Requires X-Vaultix-Timestamp,
    X-Vaultix-Signature and X-Vaultix-Pubkey headers.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get("X-Vaultix-Timestamp", "")
    signature = request.headers.get("X-Vaultix-Signature", "")
    pubkey_hex = request.headers.get("X-Vaultix-Pubkey", "")

    if not timestamp or not signature or not pubkey_hex:
        raise HTTPException(401, "Signed request required (X-Vaultix-Timestamp + X-Vaultix-Signature + X-Vaultix-Pubkey headers)")

    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        auth = SignedRequestAuth.from_request(
            request.method, request.url.path, body, timestamp, signature, pubkey_hex,
            max_age=request.app.state.request_max_age,
        )
    except AuthorizationError as e:
        raise HTTPException(401, f"Authentication failed: {e.reason}")

    if not request.app.state.replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")
    return auth


def create_app(manager: EscrowManager | None = None,
               request_max_age: int = REQUEST_MAX_AGE) -> FastAPI:
    """Create FastAPI app with an injected escrow manager."""

    app = FastAPI(title="Vaultix Escrow", version="1.0")

    app.state.manager = manager or EscrowManager()
    app.state.replay_guard = ReplayGuard(ttl=request_max_age)
    app.state.request_max_age = request_max_age

    @app.exception_handler(EscrowError)
    async def _escrow_error(request: Request, exc: EscrowError):
        status = CATEGORY_STATUS[exc.code.category]
        logger.debug("%s %s -> %s", request.method, request.url.path, exc.code.title)
        return JSONResponse(status_code=status, content={
            "error": exc.code.title, "code": int(exc.code), "detail": str(exc),
        })

    @app.exception_handler(AuthorizationError)
    async def _auth_error(request: Request, exc: AuthorizationError):
        return JSONResponse(status_code=401, content={"error": "AuthorizationFailed", "detail": str(exc)})

    @app.exception_handler(TransferError)
    async def _transfer_error(request: Request, exc: TransferError):
        return JSONResponse(status_code=402, content={"error": "TransferFailed", "detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "InvalidArgument", "detail": str(exc)})

    # --- Configuration ---

    @app.post("/initialize")
    async def initialize(req: InitializeRequest, request: Request):
        auth = await _signed_auth(request)
        cfg = app.state.manager.initialize(req.treasury, req.fee_bps, auth=auth)
        return cfg.to_dict()

    @app.post("/config/fee")
    async def update_fee(req: UpdateFeeRequest, request: Request):
        auth = await _signed_auth(request)
        cfg = app.state.manager.update_fee(req.new_fee_bps, auth=auth)
        return cfg.to_dict()

    @app.get("/config")
    async def get_config():
        return app.state.manager.get_config().to_dict()

    # --- Escrows ---

    @app.post("/escrows")
    async def create_escrow(req: CreateEscrowRequest, request: Request):
        auth = await _signed_auth(request)
        escrow = app.state.manager.create_escrow(
            req.escrow_id, req.depositor, req.recipient,
            [m.model_dump() for m in req.milestones], req.token, auth=auth,
        )
        return {"escrow_id": req.escrow_id, **escrow.to_dict()}

    @app.get("/escrows")
    async def list_escrows(status: str | None = None, party: str | None = None,
                           page: int = 1, limit: int = DEFAULT_PAGE_LIMIT):
        result = app.state.manager.list_escrows(status=status, party=party, page=page, limit=limit)
        result["data"] = [{"escrow_id": eid, **e.to_dict()} for eid, e in result["data"]]
        return result

    @app.get("/escrows/{escrow_id}")
    async def get_escrow(escrow_id: int):
        return {"escrow_id": escrow_id, **app.state.manager.get_escrow(escrow_id).to_dict()}

    @app.get("/escrows/{escrow_id}/state")
    async def get_state(escrow_id: int):
        return {"escrow_id": escrow_id, "status": app.state.manager.get_state(escrow_id).value}

    @app.post("/escrows/{escrow_id}/release")
    async def release_milestone(escrow_id: int, req: ReleaseRequest, request: Request):
        auth = await _signed_auth(request)
        return app.state.manager.release_milestone(
            escrow_id, req.milestone_index, req.token_address, auth=auth,
        )

    @app.post("/escrows/{escrow_id}/confirm")
    async def confirm_delivery(escrow_id: int, req: ConfirmRequest, request: Request):
        auth = await _signed_auth(request)
        return app.state.manager.confirm_delivery(
            escrow_id, req.milestone_index, req.buyer, auth=auth,
        )

    @app.post("/escrows/{escrow_id}/cancel")
    async def cancel_escrow(escrow_id: int, request: Request):
        auth = await _signed_auth(request)
        escrow = app.state.manager.cancel_escrow(escrow_id, auth=auth)
        return {"escrow_id": escrow_id, "status": escrow.status.value}

    @app.post("/escrows/{escrow_id}/complete")
    async def complete_escrow(escrow_id: int, request: Request):
        auth = await _signed_auth(request)
        escrow = app.state.manager.complete_escrow(escrow_id, auth=auth)
        return {"escrow_id": escrow_id, "status": escrow.status.value}

    # --- Inspection ---

    @app.get("/events")
    async def list_events():
        events = app.state.manager.host.events
        if not hasattr(events, "all"):
            raise HTTPException(404, "Event sink is write-only")
        return {"events": [e.to_dict() for e in events.all()]}

    return app
