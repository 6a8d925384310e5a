"""
Tests for ballot_triggers.py

Run with:  pytest tests/test_triggers.py -v
"""

import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from ballot_engine import BallotEngine
from ballot_models import CampaignOrigin, CampaignStatus, CampaignType
from ballot_store import BallotStore
from ballot_triggers import (
    AttendanceStats, DisciplinaryDemotionRule, EmployeeSnapshot, ProbationConversionRule,
    PromotionEligibilityRule, StaticRoster, TriggerEngine, TriggerScheduler,
    position_above, position_below,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

EMPLOYEES = [
    {"ref": "t1", "position": "Trainee", "tenure_days": 25},
    {"ref": "t2", "position": "Trainee", "tenure_days": 10},
    {"ref": "t3", "position": "Trainee", "tenure_days": 30, "disciplinary_flags": 1},
    {"ref": "t4", "position": "Trainee", "tenure_days": 5,
     "attendance": {"2026-03": {"late_count": 9, "late_minutes": 90}}},
    {"ref": "s1", "position": "Staff", "tenure_days": 400, "performance_score": 0.9},
    {"ref": "s2", "position": "Staff", "tenure_days": 400, "performance_score": 0.5,
     "attendance": {"2026-03": {"late_count": 5, "late_minutes": 3}}},
    {"ref": "m1", "position": "Store Manager", "tenure_days": 100,
     "attendance": {"2026-03": {"late_count": 1, "late_minutes": 15}}},
    {"ref": "rm", "position": "Regional Manager", "tenure_days": 2000, "performance_score": 0.95},
    {"ref": "gone", "position": "Staff", "tenure_days": 900, "performance_score": 0.99,
     "active": False},
]


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def snap(**overrides) -> EmployeeSnapshot:
    base = dict(employee_ref="e1", position="Staff", tenure_days=100, month="2026-03")
    base.update(overrides)
    return EmployeeSnapshot(**base)


# ==========================================
# Fixtures
# ==========================================

@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def roster():
    return StaticRoster(EMPLOYEES)


@pytest.fixture()
def engine(tmp_path, roster, clock):
    return BallotEngine(BallotStore(str(tmp_path / "ballot.db")),
                        eligibility_source=roster, clock=clock)


@pytest.fixture()
def triggers(engine, roster):
    return TriggerEngine(engine, roster)


def open_by_type(engine):
    found = {}
    for c in engine.store.list_campaigns():
        if c.status in (CampaignStatus.DRAFT, CampaignStatus.ACTIVE):
            found.setdefault(c.campaign_type, set()).add(c.target_employee_ref)
    return found


# ==========================================
# Positions
# ==========================================

class TestPositions:
    def test_one_level_up_and_down(self):
        assert position_above("Staff") == "Assistant Manager"
        assert position_below("Staff") == "Trainee"

    def test_edges(self):
        assert position_above("Regional Manager") is None
        assert position_below("Trainee") is None


# ==========================================
# Rules
# ==========================================

class TestRules:
    def test_probation_after_twenty_days(self):
        rule = ProbationConversionRule()
        proposal = rule.evaluate(snap(position="Trainee", tenure_days=20))
        assert proposal.target_position == "Staff"
        assert proposal.window_days == 5
        assert proposal.required_pass_percentage == 0.5
        assert rule.evaluate(snap(position="Trainee", tenure_days=19)) is None

    def test_probation_blocked_by_flags(self):
        rule = ProbationConversionRule()
        assert rule.evaluate(snap(position="Trainee", tenure_days=40, disciplinary_flags=2)) is None

    def test_probation_only_for_trainees(self):
        assert ProbationConversionRule().evaluate(snap(tenure_days=40)) is None

    def test_promotion(self):
        rule = PromotionEligibilityRule()
        proposal = rule.evaluate(snap(tenure_days=365, performance_score=0.8))
        assert proposal.target_position == "Assistant Manager"
        assert proposal.campaign_type == CampaignType.PROMOTION_REQUEST
        assert rule.evaluate(snap(tenure_days=364, performance_score=0.9)) is None
        assert rule.evaluate(snap(tenure_days=500, performance_score=0.79)) is None
        assert rule.evaluate(snap(tenure_days=500)) is None

    def test_no_promotion_past_the_top(self):
        rule = PromotionEligibilityRule()
        assert rule.evaluate(snap(position="Regional Manager", tenure_days=999,
                                  performance_score=1.0)) is None

    def test_demotion_on_late_count(self):
        rule = DisciplinaryDemotionRule()
        proposal = rule.evaluate(snap(attendance=AttendanceStats(late_count=4)))
        assert proposal.target_position == "Trainee"
        assert proposal.window_days == 3
        assert proposal.required_pass_percentage == 0.3
        assert proposal.trigger_key == "disciplinary_demotion:2026-03"
        assert "late 4 times" in proposal.justification
        assert "minutes" not in proposal.justification

    def test_demotion_on_late_minutes(self):
        proposal = DisciplinaryDemotionRule().evaluate(
            snap(position="Store Manager", attendance=AttendanceStats(late_minutes=11)))
        assert proposal.target_position == "Assistant Manager"
        assert "11 minutes" in proposal.justification

    def test_demotion_thresholds_are_exclusive(self):
        rule = DisciplinaryDemotionRule()
        assert rule.evaluate(snap(attendance=AttendanceStats(late_count=3, late_minutes=10))) is None

    def test_lowest_level_cannot_be_demoted(self):
        rule = DisciplinaryDemotionRule()
        assert rule.evaluate(snap(position="Trainee",
                                  attendance=AttendanceStats(late_count=20))) is None


# ==========================================
# Roster
# ==========================================

class TestRoster:
    def test_unknown_position_rejected(self):
        with pytest.raises(ValueError):
            StaticRoster([{"ref": "x", "position": "Intern"}])

    def test_from_file_and_hired_on(self, tmp_path):
        path = tmp_path / "roster.json"
        path.write_text(json.dumps({"employees": [
            {"ref": "a", "position": "Staff", "hired_on": "2026-02-01"},
        ]}))
        roster = StaticRoster.from_file(str(path))
        assert roster.get_tenure("a", T0) == 29

    def test_eligible_voters_exclude_trainees_and_inactive(self, roster):
        assert roster.get_eligible_voters(T0) == {"s1", "s2", "m1", "rm"}

    def test_monthly_stats(self, roster):
        assert roster.get_monthly_attendance_stats("s2", "2026-03") == AttendanceStats(5, 3)
        assert roster.get_monthly_attendance_stats("s2", "2026-02") == AttendanceStats()


# ==========================================
# Sweep
# ==========================================

class TestSweep:
    def test_sweep_opens_expected_campaigns(self, triggers, engine):
        created = triggers.sweep()
        assert len(created) == 4
        assert open_by_type(engine) == {
            CampaignType.PROBATION_CONVERSION: {"t1"},
            CampaignType.PROMOTION_REQUEST: {"s1"},
            CampaignType.DISCIPLINARY_DEMOTION: {"s2", "m1"},
        }
        for campaign in created:
            assert campaign.origin == CampaignOrigin.SYSTEM_TRIGGERED
            assert campaign.status == CampaignStatus.DRAFT
            assert campaign.trigger_rule
            assert len(engine.list_candidates(campaign.id)) == 1

    def test_sweep_is_idempotent(self, triggers, engine):
        triggers.sweep()
        assert triggers.sweep() == []
        assert len(engine.store.list_campaigns()) == 4

    def test_demotion_windows_and_justification(self, triggers):
        created = {c.target_employee_ref: c for c in triggers.sweep()}
        demotion = created["s2"]
        assert demotion.window_end - demotion.window_start == timedelta(days=3)
        assert demotion.required_pass_percentage == 0.3
        assert demotion.target_position == "Trainee"
        assert "late 5 times" in demotion.justification

    def test_one_demotion_per_month(self, triggers, engine):
        created = {c.target_employee_ref: c for c in triggers.sweep()}
        engine.cancel(created["s2"].id, actor="admin")
        again = triggers.sweep()
        assert "s2" not in {c.target_employee_ref for c in again}

    def test_cooldown_after_closed_probation(self, triggers, engine, clock):
        created = {c.target_employee_ref: c for c in triggers.sweep()}
        probation = created["t1"]
        engine.activate(probation.id)
        engine.close(probation.id, force=True)

        assert triggers.sweep() == []
        clock.now = T0 + timedelta(days=31)
        retriggered = [c for c in triggers.sweep() if c.target_employee_ref == "t1"]
        assert len(retriggered) == 1
        assert retriggered[0].campaign_type == CampaignType.PROBATION_CONVERSION

    def test_auto_activate(self, engine, roster):
        created = TriggerEngine(engine, roster, auto_activate=True).sweep()
        assert {c.status for c in created} == {CampaignStatus.ACTIVE}
        promotion = next(c for c in created if c.target_employee_ref == "s1")
        # the target is not part of their own electorate
        assert not engine.store.is_eligible(promotion.id, "s1")
        assert engine.store.count_eligible(promotion.id) == 3

    @pytest.mark.parametrize("with_key", [True, False])
    def test_candidateless_triggered_draft_is_completed(self, engine, roster, with_key):
        triggers = TriggerEngine(engine, roster, auto_activate=True)
        proposal = ProbationConversionRule().evaluate(triggers.snapshot("t1", T0))
        orphan = engine.create_campaign(
            title=proposal.title,
            campaign_type=proposal.campaign_type,
            target_employee_ref="t1",
            current_position=proposal.current_position,
            target_position=proposal.target_position,
            window_start=T0,
            window_end=T0 + timedelta(days=proposal.window_days),
            required_pass_percentage=proposal.required_pass_percentage,
            origin=CampaignOrigin.SYSTEM_TRIGGERED,
            trigger_rule=proposal.rule,
            trigger_key=proposal.trigger_key if with_key else None,
        )

        created = {c.target_employee_ref: c for c in triggers.sweep()}
        assert created["t1"].id == orphan.id
        assert created["t1"].status == CampaignStatus.ACTIVE
        assert engine.list_candidates(orphan.id) == ["CANDIDATE_C_001"]
        assert len(engine.store.list_campaigns()) == 4
        assert "t1" not in {c.target_employee_ref for c in triggers.sweep()}

    def test_manual_draft_is_left_alone(self, triggers, engine):
        manual = engine.create_campaign(
            title="Trainee to Staff", campaign_type=CampaignType.PROBATION_CONVERSION,
            target_employee_ref="t1", current_position="Trainee", target_position="Staff",
            window_start=T0, window_end=T0 + timedelta(days=5), required_pass_percentage=0.5,
        )
        created = triggers.sweep()
        assert "t1" not in {c.target_employee_ref for c in created}
        assert engine.list_candidates(manual.id) == []


# ==========================================
# Scheduler
# ==========================================

class TestScheduler:
    def test_run_once_sweeps_and_closes(self, triggers, engine, clock):
        first = TriggerScheduler(triggers).run_once()
        assert first["created"] == 4
        for c in engine.store.list_campaigns(CampaignStatus.DRAFT):
            engine.activate(c.id)
        clock.now = T0 + timedelta(days=5)
        second = TriggerScheduler(triggers).run_once()
        assert second["closed"] == 4
        assert second["active"] == 0

    def test_background_thread(self, triggers, engine):
        scheduler = TriggerScheduler(triggers, interval_seconds=0.05)
        scheduler.start()
        deadline = time.time() + 5
        while time.time() < deadline and not engine.store.list_campaigns():
            time.sleep(0.02)
        scheduler.stop()
        assert len(engine.store.list_campaigns()) == 4
        assert not scheduler._thread.is_alive()
