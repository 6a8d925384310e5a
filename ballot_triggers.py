"""
Ballot - Trigger Rules
======================
Automatic campaign creation from HR and attendance signals.

Rules are pure: they look at one EmployeeSnapshot and either propose a
campaign or return None. The TriggerEngine turns proposals into Draft
campaigns. Running a sweep twice is harmless: the store refuses a second
open campaign per (employee, type), and demotions carry a per-month trigger
key so one bad month opens one campaign.
"""

import json
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

import structlog

from ballot_models import (
    Campaign, CampaignOrigin, CampaignStatus, CampaignType, DuplicateOpenCampaign,
    NoEligibleVotersOrCandidates,
)

log = structlog.get_logger()


# ==========================================
# POSITIONS
# ==========================================

# Highest first
POSITION_HIERARCHY = [
    "Regional Manager",
    "Store Manager",
    "Assistant Manager",
    "Staff",
    "Trainee",
]


def position_above(position: str) -> Optional[str]:
    idx = POSITION_HIERARCHY.index(position)
    return POSITION_HIERARCHY[idx - 1] if idx > 0 else None


def position_below(position: str) -> Optional[str]:
    idx = POSITION_HIERARCHY.index(position)
    return POSITION_HIERARCHY[idx + 1] if idx < len(POSITION_HIERARCHY) - 1 else None


# ==========================================
# SNAPSHOTS & PROPOSALS
# ==========================================

@dataclass(frozen=True)
class AttendanceStats:
    late_count: int = 0
    late_minutes: int = 0


@dataclass(frozen=True)
class EmployeeSnapshot:
    employee_ref: str
    position: str
    tenure_days: int
    month: str                       # YYYY-MM the attendance figures cover
    attendance: AttendanceStats = AttendanceStats()
    disciplinary_flags: int = 0
    performance_score: Optional[float] = None


@dataclass(frozen=True)
class CampaignProposal:
    rule: str
    campaign_type: CampaignType
    employee_ref: str
    current_position: str
    target_position: str
    window_days: int
    required_pass_percentage: float
    justification: str
    trigger_key: Optional[str] = None

    @property
    def title(self) -> str:
        label = self.campaign_type.value.replace("_", " ").title()
        return f"{label}: {self.current_position} -> {self.target_position}"


# ==========================================
# RULES
# ==========================================

class TriggerRule:
    name = "rule"
    campaign_type: CampaignType = None
    window_days = 5
    required_pass_percentage = 0.5
    cooldown_days = 0

    def evaluate(self, snap: EmployeeSnapshot) -> Optional[CampaignProposal]:
        raise NotImplementedError

    def _propose(self, snap: EmployeeSnapshot, target_position: str, justification: str,
                 trigger_key: Optional[str] = None) -> CampaignProposal:
        return CampaignProposal(
            rule=self.name,
            campaign_type=self.campaign_type,
            employee_ref=snap.employee_ref,
            current_position=snap.position,
            target_position=target_position,
            window_days=self.window_days,
            required_pass_percentage=self.required_pass_percentage,
            justification=justification,
            trigger_key=trigger_key,
        )


class ProbationConversionRule(TriggerRule):
    """A clean Trainee past the probation period goes to a Staff vote."""
    name = "probation_conversion"
    campaign_type = CampaignType.PROBATION_CONVERSION

    def __init__(self, probation_days: int = 20, window_days: int = 5,
                 required_pass_percentage: float = 0.5, cooldown_days: int = 30):
        self.probation_days = probation_days
        self.window_days = window_days
        self.required_pass_percentage = required_pass_percentage
        self.cooldown_days = cooldown_days

    def evaluate(self, snap: EmployeeSnapshot) -> Optional[CampaignProposal]:
        if snap.position != "Trainee":
            return None
        if snap.tenure_days < self.probation_days or snap.disciplinary_flags > 0:
            return None
        return self._propose(
            snap, "Staff",
            f"Probation period completed: {snap.tenure_days} days "
            f"(required {self.probation_days}), no disciplinary flags.",
        )


class PromotionEligibilityRule(TriggerRule):
    """Seniority plus a strong performance score proposes one step up."""
    name = "promotion_eligibility"
    campaign_type = CampaignType.PROMOTION_REQUEST

    def __init__(self, min_tenure_days: int = 365, min_performance: float = 0.8,
                 window_days: int = 5, required_pass_percentage: float = 0.5,
                 cooldown_days: int = 30):
        self.min_tenure_days = min_tenure_days
        self.min_performance = min_performance
        self.window_days = window_days
        self.required_pass_percentage = required_pass_percentage
        self.cooldown_days = cooldown_days

    def evaluate(self, snap: EmployeeSnapshot) -> Optional[CampaignProposal]:
        # Trainees move up through probation instead
        if snap.position == "Trainee":
            return None
        target = position_above(snap.position)
        if target is None or snap.performance_score is None:
            return None
        if snap.tenure_days < self.min_tenure_days or snap.performance_score < self.min_performance:
            return None
        if snap.disciplinary_flags > 0:
            return None
        return self._propose(
            snap, target,
            f"Tenure {snap.tenure_days} days and performance score "
            f"{snap.performance_score:.2f} meet the promotion threshold "
            f"({self.min_tenure_days} days, {self.min_performance:.2f}).",
        )


class DisciplinaryDemotionRule(TriggerRule):
    """Too many late arrivals in a month proposes one step down."""
    name = "disciplinary_demotion"
    campaign_type = CampaignType.DISCIPLINARY_DEMOTION

    def __init__(self, max_late_count: int = 3, max_late_minutes: int = 10,
                 window_days: int = 3, required_pass_percentage: float = 0.3):
        self.max_late_count = max_late_count
        self.max_late_minutes = max_late_minutes
        self.window_days = window_days
        self.required_pass_percentage = required_pass_percentage

    def evaluate(self, snap: EmployeeSnapshot) -> Optional[CampaignProposal]:
        target = position_below(snap.position)
        if target is None:
            return None

        stats = snap.attendance
        tripped = []
        if stats.late_count > self.max_late_count:
            tripped.append(f"late {stats.late_count} times (limit {self.max_late_count})")
        if stats.late_minutes > self.max_late_minutes:
            tripped.append(f"{stats.late_minutes} minutes late in total (limit {self.max_late_minutes})")
        if not tripped:
            return None

        return self._propose(
            snap, target,
            f"Attendance for {snap.month}: " + "; ".join(tripped) + ".",
            trigger_key=f"{self.name}:{snap.month}",
        )


def default_rules() -> List[TriggerRule]:
    return [ProbationConversionRule(), PromotionEligibilityRule(), DisciplinaryDemotionRule()]


# ==========================================
# ROSTER (eligibility + signal source)
# ==========================================

class StaticRoster:
    """
    In-memory roster. Serves both collaborator interfaces:
      get_eligible_voters(as_of)                      -> set of voter refs
      get_monthly_attendance_stats(ref, month)        -> AttendanceStats
      get_tenure(ref, as_of)                          -> days
    Each employee: {"ref", "position", "hired_on" | "tenure_days", "active",
    "disciplinary_flags", "performance_score", "attendance": {"YYYY-MM": {...}}}
    """

    def __init__(self, employees: Iterable[Dict]):
        self._employees: Dict[str, Dict] = {}
        for emp in employees:
            if emp.get("position") not in POSITION_HIERARCHY:
                raise ValueError(f"Unknown position for {emp.get('ref')}: {emp.get('position')}")
            self._employees[emp["ref"]] = dict(emp)

    @classmethod
    def from_file(cls, path: str) -> "StaticRoster":
        with open(path) as f:
            data = json.load(f)
        return cls(data["employees"] if isinstance(data, dict) else data)

    def list_employees(self) -> List[str]:
        return [ref for ref, emp in self._employees.items() if emp.get("active", True)]

    def get_position(self, employee_ref: str) -> str:
        return self._employees[employee_ref]["position"]

    def get_tenure(self, employee_ref: str, as_of: Optional[datetime] = None) -> int:
        emp = self._employees[employee_ref]
        if "hired_on" in emp:
            today = as_of.date() if as_of else date.today()
            return (today - date.fromisoformat(emp["hired_on"])).days
        return int(emp.get("tenure_days", 0))

    def get_monthly_attendance_stats(self, employee_ref: str, month: str) -> AttendanceStats:
        raw = self._employees[employee_ref].get("attendance", {}).get(month, {})
        return AttendanceStats(
            late_count=int(raw.get("late_count", 0)),
            late_minutes=int(raw.get("late_minutes", 0)),
        )

    def get_disciplinary_flags(self, employee_ref: str) -> int:
        return int(self._employees[employee_ref].get("disciplinary_flags", 0))

    def get_performance_score(self, employee_ref: str) -> Optional[float]:
        score = self._employees[employee_ref].get("performance_score")
        return float(score) if score is not None else None

    def get_eligible_voters(self, as_of: datetime) -> Set[str]:
        # Trainees do not vote
        return {
            ref for ref, emp in self._employees.items()
            if emp.get("active", True) and emp["position"] != "Trainee"
        }


# ==========================================
# SWEEP
# ==========================================

class TriggerEngine:
    """Evaluates every rule against every active employee and opens campaigns."""

    def __init__(self, engine, signals, rules: Optional[List[TriggerRule]] = None,
                 auto_activate: bool = False):
        self.engine = engine
        self.signals = signals
        self.rules = rules if rules is not None else default_rules()
        self.auto_activate = auto_activate

    def snapshot(self, employee_ref: str, now: datetime) -> EmployeeSnapshot:
        month = now.strftime("%Y-%m")
        return EmployeeSnapshot(
            employee_ref=employee_ref,
            position=self.signals.get_position(employee_ref),
            tenure_days=self.signals.get_tenure(employee_ref, now),
            month=month,
            attendance=self.signals.get_monthly_attendance_stats(employee_ref, month),
            disciplinary_flags=self.signals.get_disciplinary_flags(employee_ref),
            performance_score=self.signals.get_performance_score(employee_ref),
        )

    def _cooling_down(self, rule: TriggerRule, employee_ref: str, now: datetime) -> bool:
        if not rule.cooldown_days:
            return False
        last = self.engine.store.last_closed_campaign(employee_ref, rule.campaign_type)
        if last is None or last.closed_at is None:
            return False
        return now < last.closed_at + timedelta(days=rule.cooldown_days)

    def sweep(self, now: Optional[datetime] = None) -> List[Campaign]:
        """One pass over the roster. Returns the campaigns it created or completed."""
        now = now or self.engine.now()
        created = []
        for employee_ref in self.signals.list_employees():
            snap = self.snapshot(employee_ref, now)
            for rule in self.rules:
                proposal = rule.evaluate(snap)
                if proposal is None or self._cooling_down(rule, employee_ref, now):
                    continue
                if proposal.trigger_key and self.engine.store.has_trigger_key(
                        employee_ref, proposal.trigger_key):
                    campaign = self._complete_orphan(proposal)
                else:
                    campaign = self._open(proposal, now)
                if campaign is not None:
                    created.append(campaign)

        log.info("trigger_sweep_complete", employees=len(self.signals.list_employees()),
                 campaigns_created=len(created))
        return created

    def _open(self, proposal: CampaignProposal, now: datetime) -> Optional[Campaign]:
        try:
            campaign = self.engine.create_campaign(
                title=proposal.title,
                campaign_type=proposal.campaign_type,
                target_employee_ref=proposal.employee_ref,
                current_position=proposal.current_position,
                target_position=proposal.target_position,
                window_start=now,
                window_end=now + timedelta(days=proposal.window_days),
                required_pass_percentage=proposal.required_pass_percentage,
                origin=CampaignOrigin.SYSTEM_TRIGGERED,
                trigger_rule=proposal.rule,
                trigger_key=proposal.trigger_key,
                justification=proposal.justification,
                candidates=[proposal.employee_ref],
            )
        except DuplicateOpenCampaign:
            return self._complete_orphan(proposal)

        log.info("campaign_triggered", campaign_id=campaign.id, rule=proposal.rule)
        return self._maybe_activate(campaign)

    def _complete_orphan(self, proposal: CampaignProposal) -> Optional[Campaign]:
        """
        A triggered Draft with no candidate (left by a crash between the two
        writes of an older release) would block its employee forever. Mint
        the target into it and carry on as if it had just been opened.
        """
        store = self.engine.store
        campaign = store.find_open_campaign(proposal.employee_ref, proposal.campaign_type)
        if (campaign is None
                or campaign.status != CampaignStatus.DRAFT
                or campaign.origin != CampaignOrigin.SYSTEM_TRIGGERED
                or store.count_candidates(campaign.id) > 0):
            return None

        self.engine.mint_candidate(campaign.id, proposal.employee_ref)
        log.warning("triggered_campaign_repaired", campaign_id=campaign.id,
                    rule=campaign.trigger_rule)
        return self._maybe_activate(campaign)

    def _maybe_activate(self, campaign: Campaign) -> Campaign:
        if self.auto_activate:
            try:
                campaign = self.engine.activate(campaign.id)
            except NoEligibleVotersOrCandidates as e:
                log.warning("triggered_campaign_left_in_draft", campaign_id=campaign.id,
                            reason=e.code)
        return campaign


# ==========================================
# SCHEDULER
# ==========================================

class TriggerScheduler:
    """Background thread: trigger sweep, then close expired campaigns, every interval."""

    def __init__(self, triggers: TriggerEngine, interval_seconds: float = 300.0):
        self.triggers = triggers
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Dict[str, int]:
        engine = self.triggers.engine
        created = self.triggers.sweep()
        closed = engine.close_expired_campaigns()
        return {
            "created": len(created),
            "closed": len(closed),
            "active": len(engine.store.list_campaigns(CampaignStatus.ACTIVE)),
        }

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                log.exception("trigger_sweep_failed")
            self._stop.wait(self.interval_seconds)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ballot-trigger-sweep", daemon=True)
        self._thread.start()
        log.info("trigger_scheduler_started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
        log.info("trigger_scheduler_stopped")
