"""
Ballot - Voting Engine
======================
Anonymous promotion / probation / demotion ballots.

  - Campaign lifecycle: Draft -> Active -> Closed, with Cancelled as the
    administrative escape hatch
  - Anonymization registry: CANDIDATE_<bucket>_<seq> pseudonyms
  - Vote ledger: one current record per voter, at most two revisions,
    every revision committed with a fresh salt and an append-only history row
  - Tally: weighted Agree/Disagree, quorum floor, "ties fail" policy

Work on a campaign is serialized behind that campaign's lock. Campaigns never
share a lock. The store adds compare-and-swap on top, so two processes
sharing a database still cannot overwrite each other's revisions.
"""

import secrets
import threading
from dataclasses import replace
from datetime import datetime, timezone, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Union

import structlog

from ballot_integrity import IntegrityCodec, tamper_log
from ballot_models import (
    MAX_SEQUENCE_NUMBER, TERMINAL_STATUSES,
    AuditEvent, AuditTrailGap, Campaign, CampaignNotActive, CampaignNotFound,
    CampaignOrigin, CampaignStatus, CampaignStillActive, CampaignType, Candidate,
    CandidateNotFound, CandidateTally, Decision, IntegrityViolation, InvalidTransition,
    ModificationLimitExceeded, NoEligibleVotersOrCandidates, NotEligible,
    NotificationEvent, Outcome, PrivilegeRequired, TallyResult,
    VoteModificationHistoryEntry, VoteNotFound, VoteRecord, format_anonymous_id,
)
from ballot_notify import LogNotifier
from ballot_store import BallotStore

log = structlog.get_logger()

DEFAULT_QUORUM_FLOOR = 0.5
RATIO_TOLERANCE = 1e-9
HISTORY_GAP_MARKER = "history_gap"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _default_weight(campaign: Campaign, voter_ref: str) -> float:
    return 1.0


# ==========================================
# TALLY
# ==========================================

def compute_tally(
    campaign: Campaign,
    candidate_ids: Iterable[str],
    records: Iterable[VoteRecord],
    total_eligible: int,
    quorum_floor: float = DEFAULT_QUORUM_FLOOR,
) -> TallyResult:
    """
    Aggregate a closed set of vote records. Pure and deterministic.

    Abstain counts toward participation only. Below the quorum floor the
    outcome is NO_QUORUM whatever the ratio. Otherwise the single candidate
    (or, on a multi-candidate ballot, the candidate with the most Agree
    weight) passes iff Agree / (Agree + Disagree) >= the pass percentage.
    A tie for the lead fails, as does a ballot with no decisive weight.
    """
    sums: Dict[str, Dict[str, float]] = {
        cid: {d.value: 0.0 for d in Decision} for cid in candidate_ids
    }
    total_cast = 0
    for record in records:
        bucket = sums.setdefault(
            record.candidate_anonymous_id, {d.value: 0.0 for d in Decision}
        )
        bucket[record.decision.value] += record.weight
        total_cast += 1

    tallies = tuple(
        CandidateTally(
            anonymous_id=cid,
            agree=round(s["agree"], 6),
            disagree=round(s["disagree"], 6),
            abstain=round(s["abstain"], 6),
        )
        for cid, s in sorted(sums.items())
    )
    participation = round(total_cast / total_eligible, 6) if total_eligible else 0.0

    leader: Optional[CandidateTally] = None
    tied = False
    if len(tallies) == 1:
        leader = tallies[0]
    elif tallies:
        top = max(t.agree for t in tallies)
        leaders = [t for t in tallies if t.agree == top]
        leader = leaders[0]
        tied = len(leaders) > 1

    ratio = leader.agree_ratio if leader else None

    if participation + RATIO_TOLERANCE < quorum_floor:
        outcome = Outcome.NO_QUORUM
    elif tied or ratio is None:
        outcome = Outcome.FAILED
    elif ratio + RATIO_TOLERANCE >= campaign.required_pass_percentage:
        outcome = Outcome.PASSED
    else:
        outcome = Outcome.FAILED

    return TallyResult(
        campaign_id=campaign.id,
        candidates=tallies,
        total_eligible_voters=total_eligible,
        total_cast=total_cast,
        participation_rate=participation,
        quorum_floor=quorum_floor,
        required_pass_percentage=campaign.required_pass_percentage,
        outcome=outcome,
        leading_candidate=None if tied or leader is None else leader.anonymous_id,
        agree_ratio=None if tied else ratio,
    )


# ==========================================
# THE ENGINE
# ==========================================

class BallotEngine:
    """
    Campaign store, anonymization registry, vote ledger and tally behind
    one facade. Collaborators:
      eligibility_source.get_eligible_voters(as_of) -> iterable of voter refs
      notifier.notify(event, payload)               -> fire-and-forget
    """

    def __init__(
        self,
        store: BallotStore,
        eligibility_source=None,
        notifier=None,
        codec: Optional[IntegrityCodec] = None,
        quorum_floor: float = DEFAULT_QUORUM_FLOOR,
        weight_policy: Callable[[Campaign, str], float] = _default_weight,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not 0.0 <= quorum_floor <= 1.0:
            raise ValueError("quorum_floor must be between 0 and 1.")
        self.store = store
        self.eligibility_source = eligibility_source
        self.notifier = notifier or LogNotifier()
        self.codec = codec or IntegrityCodec()
        self.quorum_floor = quorum_floor
        self.weight_policy = weight_policy
        self._clock = clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------ plumbing ------

    def now(self) -> datetime:
        return _as_utc(self._clock())

    def campaign_lock(self, campaign_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(campaign_id)
            if lock is not None:
                return lock
        # Unknown ids never get an entry; terminal campaigns no longer change
        if self.get_campaign(campaign_id).status in TERMINAL_STATUSES:
            return threading.RLock()
        with self._locks_guard:
            return self._locks.setdefault(campaign_id, threading.RLock())

    def _drop_lock(self, campaign_id: str):
        """Terminal campaigns no longer need serializing."""
        with self._locks_guard:
            self._locks.pop(campaign_id, None)

    def _emit(self, event: NotificationEvent, payload: Dict):
        try:
            self.notifier.notify(event, payload)
        except Exception as e:
            log.warning("notification_failed", notification=event.value, error=str(e))

    def _audit(self, campaign_id: Optional[str], kind: str, actor: str, **detail) -> AuditEvent:
        return self.store.insert_audit_event(
            AuditEvent(campaign_id=campaign_id, kind=kind, actor=actor,
                       created_at=self.now(), detail=detail)
        )

    def get_campaign(self, campaign_id: str) -> Campaign:
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"Campaign {campaign_id} does not exist.", campaign_id=campaign_id)
        return campaign

    def _invalid(self, campaign: Campaign, target: CampaignStatus) -> InvalidTransition:
        return InvalidTransition(
            f"Campaign {campaign.id} cannot go from {campaign.status.value} to {target.value}.",
            campaign_id=campaign.id,
            status=campaign.status.value,
            requested=target.value,
        )

    # ------ campaign lifecycle ------

    def create_campaign(
        self,
        title: str,
        campaign_type: Union[CampaignType, str],
        target_employee_ref: str,
        current_position: str,
        target_position: str,
        window_start: datetime,
        window_end: datetime,
        required_pass_percentage: float,
        origin: CampaignOrigin = CampaignOrigin.MANUAL,
        trigger_rule: Optional[str] = None,
        trigger_key: Optional[str] = None,
        justification: Optional[str] = None,
        candidates: Iterable[str] = (),
    ) -> Campaign:
        """
        Create a Draft campaign. One Draft/Active campaign per (employee, type).
        `candidates` are minted in the same transaction, so a failure leaves
        neither the campaign nor a partial registry behind.
        """
        window_start, window_end = _as_utc(window_start), _as_utc(window_end)
        if window_start >= window_end:
            raise ValueError("window_start must be before window_end.")
        if not 0.0 < required_pass_percentage <= 1.0:
            raise ValueError("required_pass_percentage must be in (0, 1].")
        if origin == CampaignOrigin.SYSTEM_TRIGGERED and not trigger_rule:
            raise ValueError("System-triggered campaigns must name their trigger rule.")

        campaign = Campaign(
            id=secrets.token_hex(8),
            title=title,
            campaign_type=CampaignType(campaign_type),
            target_employee_ref=target_employee_ref,
            current_position=current_position,
            target_position=target_position,
            window_start=window_start,
            window_end=window_end,
            required_pass_percentage=required_pass_percentage,
            origin=origin,
            trigger_rule=trigger_rule,
            trigger_key=trigger_key,
            justification=justification,
            created_at=self.now(),
        )
        minted = [
            Candidate(
                campaign_id=campaign.id,
                anonymous_id=format_anonymous_id(campaign.campaign_type, seq),
                real_employee_ref=ref,
                minted_at=campaign.created_at,
            )
            for seq, ref in enumerate(candidates, start=1)
        ]
        self.store.insert_campaign(campaign, minted)
        log.info("campaign_created", campaign_id=campaign.id,
                 campaign_type=campaign.campaign_type.value, origin=origin.value,
                 trigger_rule=trigger_rule, candidates=len(minted))
        return campaign

    def activate(self, campaign_id: str) -> Campaign:
        """Draft -> Active. Snapshots the electorate; the target never votes on themselves."""
        with self.campaign_lock(campaign_id):
            campaign = self.get_campaign(campaign_id)
            if not campaign.can_transition(CampaignStatus.ACTIVE):
                raise self._invalid(campaign, CampaignStatus.ACTIVE)

            now = self.now()
            if now >= campaign.window_end:
                raise InvalidTransition(
                    "The voting window has already ended.",
                    campaign_id=campaign_id,
                    window_end=campaign.window_end.isoformat(),
                )

            n_candidates = self.store.count_candidates(campaign_id)
            voters = set()
            if self.eligibility_source is not None:
                voters = set(self.eligibility_source.get_eligible_voters(now))
            voters.discard(campaign.target_employee_ref)

            if n_candidates == 0 or not voters:
                raise NoEligibleVotersOrCandidates(
                    "A campaign needs at least one candidate and one eligible voter to open.",
                    campaign_id=campaign_id,
                    candidates=n_candidates,
                    eligible_voters=len(voters),
                )

            if not self.store.activate_campaign(campaign_id, voters):
                raise self._invalid(self.get_campaign(campaign_id), CampaignStatus.ACTIVE)
            campaign.status = CampaignStatus.ACTIVE

        log.info("campaign_activated", campaign_id=campaign_id,
                 eligible_voters=len(voters), candidates=n_candidates)
        self._emit(NotificationEvent.CAMPAIGN_OPENED, {
            "campaign": campaign.public_view(),
            "candidates": self.store.list_candidate_ids(campaign_id),
            "eligible_voters": len(voters),
        })
        return campaign

    def cancel(
        self,
        campaign_id: str,
        actor: str,
        reason: Optional[str] = None,
        override: bool = False,
    ) -> Campaign:
        """
        Draft -> Cancelled always. Active -> Cancelled only before any vote for
        probation/promotion campaigns; an active disciplinary campaign needs a
        privileged override, which is recorded as an audit event.
        """
        with self.campaign_lock(campaign_id):
            campaign = self.get_campaign(campaign_id)
            if not campaign.can_transition(CampaignStatus.CANCELLED):
                raise self._invalid(campaign, CampaignStatus.CANCELLED)

            if campaign.status == CampaignStatus.ACTIVE:
                if campaign.campaign_type == CampaignType.DISCIPLINARY_DEMOTION:
                    if not override:
                        raise PrivilegeRequired(
                            "Cancelling an active disciplinary campaign requires an override.",
                            campaign_id=campaign_id,
                        )
                    self._audit(campaign_id, "disciplinary_cancel_override", actor,
                                reason=reason, votes_cast=self.store.count_votes(campaign_id))
                elif self.store.count_votes(campaign_id) > 0:
                    raise InvalidTransition(
                        "Votes have already been cast; this campaign can no longer be cancelled.",
                        campaign_id=campaign_id,
                        votes_cast=self.store.count_votes(campaign_id),
                    )

            if not self.store.transition(campaign_id, campaign.status, CampaignStatus.CANCELLED):
                raise self._invalid(self.get_campaign(campaign_id), CampaignStatus.CANCELLED)
            self._audit(campaign_id, "campaign_cancelled", actor,
                        reason=reason, previous_status=campaign.status.value)
            campaign.status = CampaignStatus.CANCELLED
        self._drop_lock(campaign_id)

        log.info("campaign_cancelled", campaign_id=campaign_id, actor=actor, override=override)
        return campaign

    def extend_window(self, campaign_id: str, extra_days: int, actor: str,
                      reason: Optional[str] = None) -> Campaign:
        if extra_days < 1:
            raise ValueError("extra_days must be at least 1.")
        with self.campaign_lock(campaign_id):
            campaign = self.get_campaign(campaign_id)
            if campaign.status != CampaignStatus.ACTIVE:
                raise CampaignNotActive(
                    "Only an active campaign's window can be extended.",
                    campaign_id=campaign_id,
                    status=campaign.status.value,
                )
            old_end = campaign.window_end
            campaign.window_end = old_end + timedelta(days=extra_days)
            self.store.update_window_end(campaign_id, campaign.window_end)
            self._audit(campaign_id, "window_extended", actor, reason=reason,
                        old_window_end=old_end.isoformat(),
                        new_window_end=campaign.window_end.isoformat())
        log.info("campaign_window_extended", campaign_id=campaign_id, extra_days=extra_days)
        return campaign

    def close(self, campaign_id: str, force: bool = False, actor: str = "system") -> TallyResult:
        """
        Active -> Closed under the campaign lock: finalize every vote, tally,
        then hand the decision to the notifier. Without `force` the window
        must have ended.
        """
        with self.campaign_lock(campaign_id):
            campaign = self.get_campaign(campaign_id)
            if not campaign.can_transition(CampaignStatus.CLOSED):
                raise self._invalid(campaign, CampaignStatus.CLOSED)

            now = self.now()
            if not force and now < campaign.window_end:
                raise CampaignStillActive(
                    "The voting window is still open.",
                    campaign_id=campaign_id,
                    window_end=campaign.window_end.isoformat(),
                )

            finalized = self.store.close_campaign(campaign_id, now)
            if finalized < 0:
                raise self._invalid(self.get_campaign(campaign_id), CampaignStatus.CLOSED)
            if force:
                self._audit(campaign_id, "force_close", actor,
                            window_end=campaign.window_end.isoformat())

            # The close stands even when the ledger fails verification; the
            # outcome stays unset until an administrator resolves the record.
            failure: Optional[IntegrityViolation] = None
            try:
                result = self.tally(campaign_id)
            except IntegrityViolation as e:
                failure = e
                self._audit(campaign_id, "tally_failed", actor,
                            vote_id=e.details.get("vote_id"), error=e.code)
            else:
                self.store.set_outcome(campaign_id, result.outcome)
            campaign = self.get_campaign(campaign_id)
        self._drop_lock(campaign_id)

        self._emit(NotificationEvent.CAMPAIGN_CLOSED, {"campaign": campaign.public_view()})
        if failure is not None:
            log.error("campaign_tally_failed", campaign_id=campaign_id, forced=force,
                      votes_finalized=finalized, vote_id=failure.details.get("vote_id"))
            raise failure

        log.info("campaign_closed", campaign_id=campaign_id, forced=force,
                 votes_finalized=finalized, outcome=result.outcome.value,
                 participation=result.participation_rate)
        self._emit(NotificationEvent.DECISION_REACHED, {
            "campaign": campaign.public_view(),
            "tally": result.to_dict(),
        })
        return result

    def close_expired_campaigns(self) -> List[TallyResult]:
        """
        Close every Active campaign whose window has ended. Safe to repeat.
        A campaign whose ledger fails verification is still closed, but has
        no result; the sweep moves on to the next one.
        """
        results = []
        now = self.now()
        for campaign in self.store.list_campaigns(CampaignStatus.ACTIVE):
            if now < campaign.window_end:
                continue
            try:
                results.append(self.close(campaign.id))
            except InvalidTransition:
                # closed by a concurrent sweep or an administrator
                continue
            except IntegrityViolation as e:
                log.warning("expired_campaign_without_result", campaign_id=campaign.id,
                            vote_id=e.details.get("vote_id"))
                continue
        return results

    # ------ anonymization registry ------

    def mint_candidate(self, campaign_id: str, real_employee_ref: str) -> str:
        """Assign the next pseudonym in this campaign. Only while Draft."""
        with self.campaign_lock(campaign_id):
            campaign = self.get_campaign(campaign_id)
            if campaign.status != CampaignStatus.DRAFT:
                raise InvalidTransition(
                    "Candidates can only be added while the campaign is a draft.",
                    campaign_id=campaign_id,
                    status=campaign.status.value,
                )
            seq = self.store.count_candidates(campaign_id) + 1
            anonymous_id = format_anonymous_id(campaign.campaign_type, seq)
            self.store.insert_candidate(Candidate(
                campaign_id=campaign_id,
                anonymous_id=anonymous_id,
                real_employee_ref=real_employee_ref,
                minted_at=self.now(),
            ))
        log.info("candidate_minted", campaign_id=campaign_id, anonymous_id=anonymous_id)
        return anonymous_id

    def list_candidates(self, campaign_id: str) -> List[str]:
        self.get_campaign(campaign_id)
        return self.store.list_candidate_ids(campaign_id)

    def resolve_real(self, campaign_id: str, anonymous_id: str, actor: str) -> str:
        """Privileged audit path. Only once the campaign is Closed or Cancelled."""
        campaign = self.get_campaign(campaign_id)
        if campaign.status not in TERMINAL_STATUSES:
            raise CampaignStillActive(
                "Identities are only resolvable after the campaign has ended.",
                campaign_id=campaign_id,
                status=campaign.status.value,
            )
        candidate = self.store.get_candidate(campaign_id, anonymous_id)
        if candidate is None:
            raise CandidateNotFound(
                f"No candidate {anonymous_id} in campaign {campaign_id}.",
                campaign_id=campaign_id,
                candidate_id=anonymous_id,
            )
        self._audit(campaign_id, "identity_resolved", actor, anonymous_id=anonymous_id)
        return candidate.real_employee_ref

    # ------ vote ledger ------

    def _require_open(self, campaign_id: str) -> Campaign:
        campaign = self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.ACTIVE:
            raise CampaignNotActive(
                f"Campaign {campaign_id} is {campaign.status.value}; votes are not accepted.",
                campaign_id=campaign_id,
                status=campaign.status.value,
                window_start=campaign.window_start.isoformat(),
                window_end=campaign.window_end.isoformat(),
            )
        if not campaign.window_contains(self.now()):
            raise CampaignNotActive(
                f"Voting is open from {campaign.window_start.isoformat()} "
                f"until {campaign.window_end.isoformat()}.",
                campaign_id=campaign_id,
                status=campaign.status.value,
                window_start=campaign.window_start.isoformat(),
                window_end=campaign.window_end.isoformat(),
            )
        return campaign

    def _require_candidate(self, campaign_id: str, anonymous_id: str):
        if self.store.get_candidate(campaign_id, anonymous_id) is None:
            raise CandidateNotFound(
                f"No candidate {anonymous_id} in campaign {campaign_id}.",
                campaign_id=campaign_id,
                candidate_id=anonymous_id,
            )

    def cast_vote(
        self,
        campaign_id: str,
        voter_ref: str,
        candidate_anonymous_id: str,
        decision: Union[Decision, str],
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> VoteRecord:
        """Cast a vote. A voter who already voted is routed to a revision."""
        decision = Decision(decision)
        with self.campaign_lock(campaign_id):
            campaign = self._require_open(campaign_id)
            if not self.store.is_eligible(campaign_id, voter_ref):
                raise NotEligible(
                    "You are not in this campaign's electorate.", campaign_id=campaign_id
                )
            self._require_candidate(campaign_id, candidate_anonymous_id)

            existing = self.store.get_vote(campaign_id, voter_ref)
            if existing is not None:
                return self._revise_locked(existing, candidate_anonymous_id, decision,
                                           reason, ip_address, session_id)

            now = self.now()
            record = self.codec.seal(VoteRecord(
                campaign_id=campaign_id,
                voter_ref=voter_ref,
                candidate_anonymous_id=candidate_anonymous_id,
                decision=decision,
                weight=float(self.weight_policy(campaign, voter_ref)),
                sequence_number=0,
                cast_at=now,
                updated_at=now,
            ))
            record = self.store.insert_vote(record)

        log.info("vote_cast", campaign_id=campaign_id, vote_id=record.id, sequence_number=0)
        return record

    def revise_vote(
        self,
        campaign_id: str,
        voter_ref: str,
        new_candidate_anonymous_id: str,
        new_decision: Union[Decision, str],
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> VoteRecord:
        new_decision = Decision(new_decision)
        with self.campaign_lock(campaign_id):
            self._require_open(campaign_id)
            existing = self.store.get_vote(campaign_id, voter_ref)
            if existing is None:
                raise VoteNotFound("There is no vote to revise.", campaign_id=campaign_id)
            self._require_candidate(campaign_id, new_candidate_anonymous_id)
            return self._revise_locked(existing, new_candidate_anonymous_id, new_decision,
                                       reason, ip_address, session_id)

    def _revise_locked(
        self,
        existing: VoteRecord,
        candidate_id: str,
        decision: Decision,
        reason: Optional[str],
        ip_address: Optional[str],
        session_id: Optional[str],
    ) -> VoteRecord:
        if existing.anomaly:
            raise AuditTrailGap(
                "This vote is frozen pending audit; it cannot be modified.",
                campaign_id=existing.campaign_id,
                anomaly=existing.anomaly,
                remaining_modifications=0,
            )
        if existing.finalized or existing.sequence_number >= MAX_SEQUENCE_NUMBER:
            raise ModificationLimitExceeded(
                "You have used all of your vote modifications; 0 remain.",
                campaign_id=existing.campaign_id,
                sequence_number=existing.sequence_number,
                remaining_modifications=0,
            )

        self.codec.verify(existing)
        self._check_history(existing)

        now = self.now()
        new_sequence = existing.sequence_number + 1
        entry = VoteModificationHistoryEntry(
            original_vote_id=existing.id,
            voter_ref=existing.voter_ref,
            campaign_id=existing.campaign_id,
            modification_number=new_sequence,
            old_decision=existing.decision,
            new_decision=decision,
            old_candidate_id=existing.candidate_anonymous_id,
            new_candidate_id=candidate_id,
            reason=reason,
            modified_at=now,
            ip_address=ip_address,
            session_id=session_id,
        )
        updated = self.codec.seal(replace(
            existing,
            candidate_anonymous_id=candidate_id,
            decision=decision,
            sequence_number=new_sequence,
            finalized=new_sequence >= MAX_SEQUENCE_NUMBER,
            updated_at=now,
        ))
        self.store.record_revision(entry, updated, expected_sequence=existing.sequence_number)

        log.info("vote_revised", campaign_id=existing.campaign_id, vote_id=existing.id,
                 sequence_number=new_sequence,
                 remaining_modifications=updated.remaining_modifications)
        return updated

    def _check_history(self, record: VoteRecord):
        """History numbers must be exactly 1..sequence_number. A gap freezes the vote."""
        numbers = [
            e.modification_number
            for e in self.store.history_for_voter(record.campaign_id, record.voter_ref)
        ]
        if numbers == list(range(1, record.sequence_number + 1)):
            return

        self.store.flag_anomaly(record.id, HISTORY_GAP_MARKER)
        self._audit(record.campaign_id, "history_gap", "system", vote_id=record.id,
                    sequence_number=record.sequence_number, history_numbers=numbers)
        tamper_log.error("audit_trail_gap", campaign_id=record.campaign_id, vote_id=record.id,
                         sequence_number=record.sequence_number, history_numbers=numbers)
        raise AuditTrailGap(
            "The modification history for this vote is incomplete; it has been frozen.",
            campaign_id=record.campaign_id,
            sequence_number=record.sequence_number,
            history_numbers=numbers,
            remaining_modifications=0,
        )

    def get_current_vote(self, campaign_id: str, voter_ref: str) -> VoteRecord:
        self.get_campaign(campaign_id)
        record = self.store.get_vote(campaign_id, voter_ref)
        if record is None:
            raise VoteNotFound("No vote recorded for this voter.", campaign_id=campaign_id)
        self.codec.verify(record)
        return record

    def modification_status(self, campaign_id: str, voter_ref: str) -> Dict:
        campaign = self.get_campaign(campaign_id)
        record = self.store.get_vote(campaign_id, voter_ref)
        return {
            "campaign_id": campaign_id,
            "campaign_status": campaign.status.value,
            "eligible": self.store.is_eligible(campaign_id, voter_ref),
            "has_voted": record is not None,
            "sequence_number": record.sequence_number if record else None,
            "remaining_modifications": (
                record.remaining_modifications if record else MAX_SEQUENCE_NUMBER
            ),
            "finalized": record.finalized if record else False,
        }

    def verify_votes(self, campaign_id: str) -> List[Dict]:
        """Check every stored commitment. Returns one {vote_id, valid} row per vote."""
        self.get_campaign(campaign_id)
        results = []
        for record in self.store.list_votes(campaign_id):
            try:
                valid = self.codec.verify(record)
            except IntegrityViolation:
                valid = False
            results.append({"vote_id": record.id, "valid": valid})
        return results

    # ------ audit export ------

    def history(self, campaign_id: str, voter_ref: Optional[str] = None) -> List[VoteModificationHistoryEntry]:
        self.get_campaign(campaign_id)
        if voter_ref is not None:
            return self.store.history_for_voter(campaign_id, voter_ref)
        return self.store.history_for_campaign(campaign_id)

    def audit_events(self, campaign_id: Optional[str] = None) -> List[AuditEvent]:
        return self.store.list_audit_events(campaign_id)

    # ------ tally ------

    def tally(self, campaign_id: str) -> TallyResult:
        """Only for Closed campaigns; no partial results while voting is open."""
        campaign = self.get_campaign(campaign_id)
        if campaign.status == CampaignStatus.CANCELLED:
            raise InvalidTransition(
                "Cancelled campaigns have no tally.", campaign_id=campaign_id
            )
        if campaign.status != CampaignStatus.CLOSED:
            raise CampaignStillActive(
                "Results are only available once the campaign is closed.",
                campaign_id=campaign_id,
                status=campaign.status.value,
            )

        records = self.store.list_votes(campaign_id)
        for record in records:
            self.codec.verify(record)

        return compute_tally(
            campaign,
            self.store.list_candidate_ids(campaign_id),
            records,
            self.store.count_eligible(campaign_id),
            self.quorum_floor,
        )
