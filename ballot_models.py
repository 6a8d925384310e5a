"""
Ballot - Domain Model
=====================
Enums, records and the error taxonomy shared by every Ballot component.

Records are plain dataclasses. Storage, integrity and policy live in their
own modules; nothing here touches the database or the clock.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Any


# ==========================================
# CONSTANTS
# ==========================================

MAX_VOTE_OPERATIONS = 3                       # original cast + 2 revisions
MAX_SEQUENCE_NUMBER = MAX_VOTE_OPERATIONS - 1
ANONYMOUS_ID_PREFIX = "CANDIDATE"


# ==========================================
# ENUMS
# ==========================================

class CampaignType(Enum):
    PROBATION_CONVERSION  = "probation_conversion"
    PROMOTION_REQUEST     = "promotion_request"
    DISCIPLINARY_DEMOTION = "disciplinary_demotion"


class CampaignStatus(Enum):
    DRAFT     = "draft"
    ACTIVE    = "active"
    CLOSED    = "closed"
    CANCELLED = "cancelled"


class CampaignOrigin(Enum):
    MANUAL           = "manual"
    SYSTEM_TRIGGERED = "system_triggered"


class Decision(Enum):
    AGREE    = "agree"
    DISAGREE = "disagree"
    ABSTAIN  = "abstain"


class Outcome(Enum):
    PASSED    = "passed"
    FAILED    = "failed"
    NO_QUORUM = "no_quorum"


class NotificationEvent(Enum):
    CAMPAIGN_OPENED  = "campaign_opened"
    CAMPAIGN_CLOSED  = "campaign_closed"
    DECISION_REACHED = "decision_reached"


# Pseudonym bucket per campaign type: CANDIDATE_<bucket>_<seq>
BUCKET_LETTERS: Dict[CampaignType, str] = {
    CampaignType.PROMOTION_REQUEST:     "A",
    CampaignType.DISCIPLINARY_DEMOTION: "B",
    CampaignType.PROBATION_CONVERSION:  "C",
}

TERMINAL_STATUSES = (CampaignStatus.CLOSED, CampaignStatus.CANCELLED)

ALLOWED_TRANSITIONS: Dict[CampaignStatus, tuple] = {
    CampaignStatus.DRAFT:     (CampaignStatus.ACTIVE, CampaignStatus.CANCELLED),
    CampaignStatus.ACTIVE:    (CampaignStatus.CLOSED, CampaignStatus.CANCELLED),
    CampaignStatus.CLOSED:    (),
    CampaignStatus.CANCELLED: (),
}


def format_anonymous_id(campaign_type: CampaignType, seq: int) -> str:
    return f"{ANONYMOUS_ID_PREFIX}_{BUCKET_LETTERS[campaign_type]}_{seq:03d}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ==========================================
# RECORDS
# ==========================================

@dataclass
class Campaign:
    id: str
    title: str
    campaign_type: CampaignType
    target_employee_ref: str      # never leaves the engine's privileged paths
    current_position: str
    target_position: str
    window_start: datetime
    window_end: datetime
    required_pass_percentage: float
    origin: CampaignOrigin = CampaignOrigin.MANUAL
    trigger_rule: Optional[str] = None
    trigger_key: Optional[str] = None
    justification: Optional[str] = None
    status: CampaignStatus = CampaignStatus.DRAFT
    outcome: Optional[Outcome] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def window_contains(self, moment: datetime) -> bool:
        return self.window_start <= moment < self.window_end

    def can_transition(self, target: CampaignStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def public_view(self) -> Dict[str, Any]:
        """Voter-facing view. The target employee is deliberately absent."""
        return {
            "id": self.id,
            "title": self.title,
            "campaign_type": self.campaign_type.value,
            "current_position": self.current_position,
            "target_position": self.target_position,
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "required_pass_percentage": self.required_pass_percentage,
            "origin": self.origin.value,
            "trigger_rule": self.trigger_rule,
            "justification": self.justification,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "closed_at": _iso(self.closed_at),
        }


@dataclass
class Candidate:
    campaign_id: str
    anonymous_id: str
    real_employee_ref: str
    minted_at: Optional[datetime] = None


@dataclass
class VoteRecord:
    campaign_id: str
    voter_ref: str
    candidate_anonymous_id: str
    decision: Decision
    weight: float = 1.0
    salt: str = ""
    integrity_hash: str = ""
    sequence_number: int = 0
    finalized: bool = False
    anomaly: Optional[str] = None
    cast_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def remaining_modifications(self) -> int:
        if self.finalized:
            return 0
        return max(0, MAX_SEQUENCE_NUMBER - self.sequence_number)

    def receipt(self) -> Dict[str, Any]:
        """What the voter gets back: their own choice plus the commitment."""
        return {
            "campaign_id": self.campaign_id,
            "candidate_id": self.candidate_anonymous_id,
            "decision": self.decision.value,
            "sequence_number": self.sequence_number,
            "remaining_modifications": self.remaining_modifications,
            "finalized": self.finalized,
            "integrity_hash": self.integrity_hash,
            "updated_at": _iso(self.updated_at or self.cast_at),
        }


@dataclass
class VoteModificationHistoryEntry:
    original_vote_id: int
    voter_ref: str
    campaign_id: str
    modification_number: int
    old_decision: Decision
    new_decision: Decision
    old_candidate_id: str
    new_candidate_id: str
    modified_at: datetime
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["old_decision"] = self.old_decision.value
        data["new_decision"] = self.new_decision.value
        data["modified_at"] = _iso(self.modified_at)
        return data


@dataclass
class AuditEvent:
    campaign_id: Optional[str]
    kind: str
    actor: str
    created_at: datetime
    detail: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass(frozen=True)
class CandidateTally:
    anonymous_id: str
    agree: float = 0.0
    disagree: float = 0.0
    abstain: float = 0.0

    @property
    def decisive(self) -> float:
        return self.agree + self.disagree

    @property
    def agree_ratio(self) -> Optional[float]:
        if self.decisive <= 0:
            return None
        return round(self.agree / self.decisive, 6)


@dataclass(frozen=True)
class TallyResult:
    campaign_id: str
    candidates: tuple
    total_eligible_voters: int
    total_cast: int
    participation_rate: float
    quorum_floor: float
    required_pass_percentage: float
    outcome: Outcome
    leading_candidate: Optional[str] = None
    agree_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "candidates": [
                {
                    "anonymous_id": c.anonymous_id,
                    "agree": c.agree,
                    "disagree": c.disagree,
                    "abstain": c.abstain,
                    "agree_ratio": c.agree_ratio,
                }
                for c in self.candidates
            ],
            "total_eligible_voters": self.total_eligible_voters,
            "total_cast": self.total_cast,
            "participation_rate": self.participation_rate,
            "quorum_floor": self.quorum_floor,
            "required_pass_percentage": self.required_pass_percentage,
            "outcome": self.outcome.value,
            "leading_candidate": self.leading_candidate,
            "agree_ratio": self.agree_ratio,
        }


# ==========================================
# ERRORS
# ==========================================

class BallotError(Exception):
    """Base for every typed failure the engine hands back to its caller."""
    code = "ballot_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class CampaignNotFound(BallotError):
    code = "campaign_not_found"


class CandidateNotFound(BallotError):
    code = "candidate_not_found"


class VoteNotFound(BallotError):
    code = "vote_not_found"


class CampaignNotActive(BallotError):
    code = "campaign_not_active"


class CampaignStillActive(BallotError):
    code = "campaign_still_active"


class InvalidTransition(BallotError):
    code = "invalid_transition"


class NotEligible(BallotError):
    code = "not_eligible"


class ModificationLimitExceeded(BallotError):
    code = "modification_limit_exceeded"


class ConcurrentModification(BallotError):
    code = "concurrent_modification"


class IntegrityViolation(BallotError):
    code = "integrity_violation"


class AuditTrailGap(BallotError):
    code = "audit_trail_gap"


class DuplicateCandidate(BallotError):
    code = "duplicate_candidate"


class DuplicateOpenCampaign(BallotError):
    code = "duplicate_open_campaign"


class NoEligibleVotersOrCandidates(BallotError):
    code = "no_eligible_voters_or_candidates"


class PrivilegeRequired(BallotError):
    code = "privilege_required"
