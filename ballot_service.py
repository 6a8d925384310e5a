#!/usr/bin/env python3
"""
Ballot Voting Service
=====================
HTTP front for the anonymous promotion / probation / demotion ballot engine.

  - Voters are identified by the X-Voter-Ref header set by the auth gateway
  - Admin routes: Bearer BALLOT_ADMIN_KEY
  - Audit routes (history, identity resolution): Bearer BALLOT_AUDIT_KEY
  - Rate limiting (slowapi)
  - Structured logging (structlog)
  - Prometheus /metrics endpoint
  - Optional background trigger sweep (BALLOT_SWEEP_SECONDS)
"""

import os
import re
import hmac
import time
from datetime import datetime, timezone, timedelta
from typing import Optional, List

import structlog
from fastapi import FastAPI, HTTPException, Header, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

from ballot_engine import BallotEngine, DEFAULT_QUORUM_FLOOR
from ballot_integrity import IntegrityCodec
from ballot_models import (
    AuditTrailGap, BallotError, CampaignNotActive, CampaignNotFound, CampaignStatus,
    CampaignStillActive, CampaignType, CandidateNotFound, ConcurrentModification, Decision,
    DuplicateCandidate, DuplicateOpenCampaign, IntegrityViolation, InvalidTransition,
    ModificationLimitExceeded, NoEligibleVotersOrCandidates, NotEligible, PrivilegeRequired,
    VoteNotFound,
)
from ballot_notify import LogNotifier, WebhookNotifier
from ballot_store import BallotStore
from ballot_triggers import StaticRoster, TriggerEngine, TriggerScheduler

# ============================================
# Configuration
# ============================================
DB_PATH = os.environ.get("BALLOT_DB", "ballot.db")
API_VERSION = "1.0.0"

ADMIN_KEY = os.environ.get("BALLOT_ADMIN_KEY", "")
AUDIT_KEY = os.environ.get("BALLOT_AUDIT_KEY", "")
QUORUM_FLOOR = float(os.environ.get("BALLOT_QUORUM_FLOOR", str(DEFAULT_QUORUM_FLOOR)))
INTEGRITY_SECRET = os.environ.get("BALLOT_INTEGRITY_SECRET") or None
ROSTER_FILE = os.environ.get("BALLOT_ROSTER_FILE")
WEBHOOK_URL = os.environ.get("BALLOT_WEBHOOK_URL")
SWEEP_SECONDS = int(os.environ.get("BALLOT_SWEEP_SECONDS", "0"))  # 0 = no background sweep
AUTO_ACTIVATE = os.environ.get("BALLOT_AUTO_ACTIVATE", "0") == "1"

# CORS: comma-separated list of allowed origins, or "*" for open (dev only)
_CORS_RAW = os.environ.get("BALLOT_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000")
ALLOWED_ORIGINS: List[str] = (
    ["*"] if _CORS_RAW == "*"
    else [o.strip() for o in _CORS_RAW.split(",") if o.strip()]
)

# ============================================
# Logging
# ============================================
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(),
    ]
)
log = structlog.get_logger()

# ============================================
# Prometheus Metrics
# ============================================
REQUEST_COUNT = Counter("ballot_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram("ballot_request_duration_seconds", "Request latency", ["endpoint"])
VOTE_OPS = Counter("ballot_vote_operations_total", "Vote casts and revisions", ["operation"])
BALLOT_ERRORS = Counter("ballot_errors_total", "Typed engine errors returned", ["code"])
CAMPAIGN_GAUGE = Gauge("ballot_campaigns", "Campaigns by status", ["status"])

# ============================================
# Input Sanitization
# ============================================
_HTML_RE = re.compile(r"<[^>]+>")
_NULL_RE = re.compile(r"\x00")

def sanitize(text: str) -> str:
    text = _NULL_RE.sub("", text)
    text = _HTML_RE.sub("", text)
    return text.strip()

# ============================================
# Engine wiring
# ============================================
engine: Optional[BallotEngine] = None
scheduler: Optional[TriggerScheduler] = None

def init_engine() -> BallotEngine:
    """(Re)build the engine from the environment-derived configuration."""
    global engine, scheduler
    roster = StaticRoster.from_file(ROSTER_FILE) if ROSTER_FILE else None
    notifier = WebhookNotifier(WEBHOOK_URL) if WEBHOOK_URL else LogNotifier()
    engine = BallotEngine(
        BallotStore(DB_PATH),
        eligibility_source=roster,
        notifier=notifier,
        codec=IntegrityCodec(secret=INTEGRITY_SECRET),
        quorum_floor=QUORUM_FLOOR,
    )
    scheduler = None
    if roster is not None:
        scheduler = TriggerScheduler(
            TriggerEngine(engine, roster, auto_activate=AUTO_ACTIVATE),
            interval_seconds=SWEEP_SECONDS or 300,
        )
    log.info("engine_initialized", path=DB_PATH, roster=bool(roster),
             keyed_integrity=engine.codec.keyed, quorum_floor=QUORUM_FLOOR)
    return engine

def get_engine() -> BallotEngine:
    if engine is None:
        return init_engine()
    return engine

def refresh_campaign_gauge():
    counts = get_engine().store.counts()
    for status in CampaignStatus:
        CAMPAIGN_GAUGE.labels(status.value).set(counts.get(status.value, 0))

# ============================================
# Auth
# ============================================
def _safe_compare(a: str, b: str) -> bool:
    """Timing-safe string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())

def _bearer(authorization: str, expected: str, role: str) -> str:
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "Invalid authorization. Use: Bearer <key>")
    if not expected or not _safe_compare(authorization[7:], expected):
        raise HTTPException(401, f"Invalid {role} key.")
    return role

def verify_admin(authorization: str = Header(...)) -> str:
    return _bearer(authorization, ADMIN_KEY, "admin")

def verify_auditor(authorization: str = Header(...)) -> str:
    return _bearer(authorization, AUDIT_KEY, "auditor")

def voter_ref(x_voter_ref: str = Header(..., min_length=1, max_length=200)) -> str:
    return x_voter_ref.strip()

# ============================================
# Rate Limiter
# ============================================
limiter = Limiter(key_func=get_remote_address)

# ============================================
# Models
# ============================================
class CampaignCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    campaign_type: CampaignType
    target_employee_ref: str = Field(..., min_length=1, max_length=200)
    current_position: str = Field(..., min_length=1, max_length=100)
    target_position: str = Field(..., min_length=1, max_length=100)
    window_start: Optional[datetime] = None
    window_days: int = Field(5, ge=1, le=60)
    required_pass_percentage: float = Field(..., gt=0.0, le=1.0)
    justification: Optional[str] = Field(None, max_length=2000)
    candidates: List[str] = Field(default_factory=list, description="Real refs to mint. Defaults to the target.")
    activate: bool = False

    @field_validator("title", "justification")
    @classmethod
    def clean_text(cls, v):
        return sanitize(v) if v else v

    @field_validator("candidates")
    @classmethod
    def distinct_candidates(cls, v):
        if len(set(v)) != len(v):
            raise ValueError("candidates must not repeat an employee")
        return v

class CandidateAdd(BaseModel):
    employee_ref: str = Field(..., min_length=1, max_length=200)

class VoteCast(BaseModel):
    candidate_id: str = Field(..., min_length=1, max_length=50)
    decision: Decision
    reason: Optional[str] = Field(None, max_length=500)

    @field_validator("reason")
    @classmethod
    def clean_reason(cls, v):
        return sanitize(v) if v else v

class CloseRequest(BaseModel):
    force: bool = False

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    override: bool = False

class ExtendRequest(BaseModel):
    extra_days: int = Field(..., ge=1, le=30)
    reason: Optional[str] = Field(None, max_length=500)

# ============================================
# App
# ============================================
app = FastAPI(
    title="Ballot Voting Service",
    description="""
# Ballot Voting Service

**Anonymous peer votes on probation, promotion and demotion.**

## Voters (X-Voter-Ref header)
1. `GET /campaigns?status=active` → open ballots
2. `POST /campaigns/{id}/votes` → cast (a second cast counts as a revision)
3. `PUT /campaigns/{id}/votes/me` → revise, at most twice
4. `GET /campaigns/{id}/votes/me/status` → remaining modifications
5. `GET /campaigns/{id}/tally` → result, once closed
""",
    version=API_VERSION,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Authorization", "Content-Type", "X-Voter-Ref", "X-Session-Id"],
)

ERROR_STATUS = {
    CampaignNotFound: 404,
    CandidateNotFound: 404,
    VoteNotFound: 404,
    NotEligible: 403,
    PrivilegeRequired: 403,
    CampaignNotActive: 409,
    CampaignStillActive: 409,
    InvalidTransition: 409,
    ModificationLimitExceeded: 409,
    ConcurrentModification: 409,
    DuplicateCandidate: 409,
    DuplicateOpenCampaign: 409,
    NoEligibleVotersOrCandidates: 422,
    AuditTrailGap: 423,
    IntegrityViolation: 500,
}

@app.exception_handler(BallotError)
async def ballot_error_handler(request: Request, exc: BallotError):
    BALLOT_ERRORS.labels(exc.code).inc()
    return JSONResponse(status_code=ERROR_STATUS.get(type(exc), 400), content=exc.to_dict())

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "invalid_request", "message": str(exc)})

# ============================================
# Middleware: metrics + logging
# ============================================
@app.middleware("http")
async def instrument(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    latency = time.perf_counter() - start
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint, response.status_code).inc()
    REQUEST_LATENCY.labels(endpoint).observe(latency)
    log.info("request", method=request.method, path=endpoint,
             status=response.status_code, latency_ms=round(latency * 1000, 1))
    return response

# ============================================
# Startup
# ============================================
@app.on_event("startup")
async def startup():
    init_engine()
    refresh_campaign_gauge()
    if scheduler is not None and SWEEP_SECONDS > 0:
        scheduler.start()

@app.on_event("shutdown")
async def shutdown():
    if scheduler is not None:
        scheduler.stop()

# ============================================
# Routes
# ============================================

@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request):
    return {
        "service": "Ballot Voting Service",
        "version": API_VERSION,
        "status": "operational",
        "campaigns": get_engine().store.counts(),
        "docs": "/docs",
    }

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    refresh_campaign_gauge()
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/health")
async def health():
    store = get_engine().store
    return {"status": "healthy", "version": API_VERSION,
            "schema_version": store.schema_version(), "campaigns": store.counts()}

# --- Campaigns (voter view) ---
@app.get("/campaigns")
@limiter.limit("120/minute")
async def list_campaigns(request: Request, status: Optional[CampaignStatus] = Query(None)):
    campaigns = get_engine().store.list_campaigns(status)
    return {"campaigns": [c.public_view() for c in campaigns], "total": len(campaigns)}

@app.get("/campaigns/{campaign_id}")
@limiter.limit("120/minute")
async def get_campaign(campaign_id: str, request: Request):
    eng = get_engine()
    campaign = eng.get_campaign(campaign_id)
    return {**campaign.public_view(), "candidates": eng.list_candidates(campaign_id)}

@app.get("/campaigns/{campaign_id}/tally")
@limiter.limit("60/minute")
async def get_tally(campaign_id: str, request: Request):
    return get_engine().tally(campaign_id).to_dict()

# --- Votes ---
@app.post("/campaigns/{campaign_id}/votes", status_code=201)
@limiter.limit("120/minute")
async def cast_vote(campaign_id: str, data: VoteCast, request: Request,
                    voter: str = Depends(voter_ref),
                    x_session_id: Optional[str] = Header(None)):
    """Cast a vote. If you already voted, this counts as one of your two revisions."""
    record = get_engine().cast_vote(
        campaign_id, voter, data.candidate_id, data.decision,
        reason=data.reason,
        ip_address=request.client.host if request.client else None,
        session_id=x_session_id,
    )
    VOTE_OPS.labels("cast" if record.sequence_number == 0 else "revise").inc()
    return {"success": True, "vote": record.receipt()}

@app.put("/campaigns/{campaign_id}/votes/me")
@limiter.limit("120/minute")
async def revise_vote(campaign_id: str, data: VoteCast, request: Request,
                      voter: str = Depends(voter_ref),
                      x_session_id: Optional[str] = Header(None)):
    record = get_engine().revise_vote(
        campaign_id, voter, data.candidate_id, data.decision,
        reason=data.reason,
        ip_address=request.client.host if request.client else None,
        session_id=x_session_id,
    )
    VOTE_OPS.labels("revise").inc()
    return {"success": True, "vote": record.receipt()}

@app.get("/campaigns/{campaign_id}/votes/me")
@limiter.limit("120/minute")
async def my_vote(campaign_id: str, request: Request, voter: str = Depends(voter_ref)):
    return {"vote": get_engine().get_current_vote(campaign_id, voter).receipt()}

@app.get("/campaigns/{campaign_id}/votes/me/status")
@limiter.limit("120/minute")
async def my_modification_status(campaign_id: str, request: Request, voter: str = Depends(voter_ref)):
    return get_engine().modification_status(campaign_id, voter)

# --- Admin ---
@app.post("/admin/campaigns", status_code=201)
@limiter.limit("300/minute")
async def create_campaign(data: CampaignCreate, request: Request, actor: str = Depends(verify_admin)):
    eng = get_engine()
    start = data.window_start or datetime.now(timezone.utc)
    campaign = eng.create_campaign(
        title=data.title,
        campaign_type=data.campaign_type,
        target_employee_ref=data.target_employee_ref,
        current_position=data.current_position,
        target_position=data.target_position,
        window_start=start,
        window_end=start + timedelta(days=data.window_days),
        required_pass_percentage=data.required_pass_percentage,
        justification=data.justification,
        candidates=data.candidates or [data.target_employee_ref],
    )
    candidates = eng.list_candidates(campaign.id)
    if data.activate:
        campaign = eng.activate(campaign.id)
    refresh_campaign_gauge()
    return {"success": True, "campaign": campaign.public_view(), "candidates": candidates}

@app.post("/admin/campaigns/{campaign_id}/candidates", status_code=201)
@limiter.limit("300/minute")
async def add_candidate(campaign_id: str, data: CandidateAdd, request: Request,
                        actor: str = Depends(verify_admin)):
    anonymous_id = get_engine().mint_candidate(campaign_id, data.employee_ref)
    return {"success": True, "candidate_id": anonymous_id}

@app.post("/admin/campaigns/{campaign_id}/activate")
@limiter.limit("300/minute")
async def activate_campaign(campaign_id: str, request: Request, actor: str = Depends(verify_admin)):
    campaign = get_engine().activate(campaign_id)
    return {"success": True, "campaign": campaign.public_view()}

@app.post("/admin/campaigns/{campaign_id}/close")
@limiter.limit("300/minute")
async def close_campaign(campaign_id: str, data: CloseRequest, request: Request,
                         actor: str = Depends(verify_admin)):
    result = get_engine().close(campaign_id, force=data.force, actor=actor)
    return {"success": True, "tally": result.to_dict()}

@app.post("/admin/campaigns/{campaign_id}/cancel")
@limiter.limit("300/minute")
async def cancel_campaign(campaign_id: str, data: CancelRequest, request: Request,
                          actor: str = Depends(verify_admin)):
    campaign = get_engine().cancel(campaign_id, actor=actor, reason=data.reason,
                                   override=data.override)
    return {"success": True, "campaign": campaign.public_view()}

@app.post("/admin/campaigns/{campaign_id}/extend")
@limiter.limit("300/minute")
async def extend_campaign(campaign_id: str, data: ExtendRequest, request: Request,
                          actor: str = Depends(verify_admin)):
    campaign = get_engine().extend_window(campaign_id, data.extra_days, actor=actor,
                                          reason=data.reason)
    return {"success": True, "campaign": campaign.public_view()}

@app.post("/admin/close-expired")
@limiter.limit("30/minute")
async def close_expired(request: Request, actor: str = Depends(verify_admin)):
    results = get_engine().close_expired_campaigns()
    return {"success": True, "closed": [r.to_dict() for r in results]}

@app.post("/admin/sweep")
@limiter.limit("30/minute")
async def run_sweep(request: Request, actor: str = Depends(verify_admin)):
    get_engine()
    if scheduler is None:
        raise HTTPException(409, "No roster configured. Set BALLOT_ROSTER_FILE.")
    summary = scheduler.run_once()
    refresh_campaign_gauge()
    return {"success": True, **summary}

# --- Audit ---
@app.get("/audit/campaigns/{campaign_id}/history")
@limiter.limit("60/minute")
async def audit_history(campaign_id: str, request: Request,
                        voter: Optional[str] = Query(None, max_length=200),
                        actor: str = Depends(verify_auditor)):
    entries = get_engine().history(campaign_id, voter)
    return {"history": [e.to_dict() for e in entries], "total": len(entries)}

@app.get("/audit/campaigns/{campaign_id}/events")
@limiter.limit("60/minute")
async def audit_events(campaign_id: str, request: Request, actor: str = Depends(verify_auditor)):
    get_engine().get_campaign(campaign_id)
    events = get_engine().audit_events(campaign_id)
    return {"events": [e.to_dict() for e in events], "total": len(events)}

@app.get("/audit/campaigns/{campaign_id}/verify")
@limiter.limit("30/minute")
async def audit_verify(campaign_id: str, request: Request, actor: str = Depends(verify_auditor)):
    results = get_engine().verify_votes(campaign_id)
    return {"votes": results, "all_valid": all(r["valid"] for r in results)}

@app.get("/audit/campaigns/{campaign_id}/candidates/{candidate_id}")
@limiter.limit("30/minute")
async def audit_resolve(campaign_id: str, candidate_id: str, request: Request,
                        actor: str = Depends(verify_auditor)):
    real = get_engine().resolve_real(campaign_id, candidate_id, actor=actor)
    return {"campaign_id": campaign_id, "candidate_id": candidate_id, "employee_ref": real}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"""
Ballot Voting Service v{API_VERSION}

Docs:     http://localhost:{port}/docs
Health:   http://localhost:{port}/health
Metrics:  http://localhost:{port}/metrics
""")
    uvicorn.run(app, host="0.0.0.0", port=port)
