"""
Ballot - SQLite Store
=====================
Persistence for campaigns, candidates, eligibility snapshots, vote records,
the append-only modification history and audit events.

The engine only relies on atomic read-modify-write per entity:
  - campaign status changes are compare-and-swap on the current status
  - vote revisions are compare-and-swap on sequence_number, written in the
    same transaction as their history row (history row first)
  - one Draft/Active campaign per (employee, type) is a partial unique index

Schema changes are ordered migrations recorded in schema_migrations.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog

from ballot_models import (
    AuditEvent, Campaign, CampaignOrigin, CampaignStatus, CampaignType, Candidate,
    ConcurrentModification, Decision, DuplicateCandidate, DuplicateOpenCampaign,
    Outcome, VoteModificationHistoryEntry, VoteRecord,
)

log = structlog.get_logger()


# ============================================
# Migrations
# ============================================
MIGRATIONS = [
    (1, "initial_schema", """
        CREATE TABLE IF NOT EXISTS campaigns (
            id                        TEXT PRIMARY KEY,
            title                     TEXT NOT NULL,
            campaign_type             TEXT NOT NULL,
            target_employee_ref       TEXT NOT NULL,
            current_position          TEXT NOT NULL,
            target_position           TEXT NOT NULL,
            window_start              TEXT NOT NULL,
            window_end                TEXT NOT NULL,
            required_pass_percentage  REAL NOT NULL,
            origin                    TEXT NOT NULL DEFAULT 'manual',
            trigger_rule              TEXT,
            justification             TEXT,
            status                    TEXT NOT NULL DEFAULT 'draft',
            outcome                   TEXT,
            created_at                TEXT NOT NULL,
            closed_at                 TEXT,
            CHECK (window_start < window_end)
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_campaigns_one_open
            ON campaigns(target_employee_ref, campaign_type)
            WHERE status IN ('draft', 'active');

        CREATE TABLE IF NOT EXISTS candidates (
            campaign_id        TEXT NOT NULL,
            anonymous_id       TEXT NOT NULL,
            real_employee_ref  TEXT NOT NULL,
            minted_at          TEXT NOT NULL,
            PRIMARY KEY (campaign_id, anonymous_id),
            UNIQUE (campaign_id, real_employee_ref),
            FOREIGN KEY (campaign_id) REFERENCES campaigns(id)
        );

        CREATE TABLE IF NOT EXISTS eligible_voters (
            campaign_id  TEXT NOT NULL,
            voter_ref    TEXT NOT NULL,
            PRIMARY KEY (campaign_id, voter_ref),
            FOREIGN KEY (campaign_id) REFERENCES campaigns(id)
        );

        CREATE TABLE IF NOT EXISTS vote_records (
            id                      INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id             TEXT NOT NULL,
            voter_ref               TEXT NOT NULL,
            candidate_anonymous_id  TEXT NOT NULL,
            decision                TEXT NOT NULL,
            weight                  REAL NOT NULL DEFAULT 1.0,
            salt                    TEXT NOT NULL,
            integrity_hash          TEXT NOT NULL,
            sequence_number         INTEGER NOT NULL DEFAULT 0,
            finalized               INTEGER NOT NULL DEFAULT 0,
            anomaly                 TEXT,
            cast_at                 TEXT NOT NULL,
            updated_at              TEXT NOT NULL,
            UNIQUE (campaign_id, voter_ref),
            FOREIGN KEY (campaign_id) REFERENCES campaigns(id),
            FOREIGN KEY (campaign_id, candidate_anonymous_id)
                REFERENCES candidates(campaign_id, anonymous_id)
        );

        CREATE TABLE IF NOT EXISTS vote_history (
            id                   INTEGER PRIMARY KEY AUTOINCREMENT,
            original_vote_id     INTEGER NOT NULL,
            voter_ref            TEXT NOT NULL,
            campaign_id          TEXT NOT NULL,
            modification_number  INTEGER NOT NULL,
            old_decision         TEXT NOT NULL,
            new_decision         TEXT NOT NULL,
            old_candidate_id     TEXT NOT NULL,
            new_candidate_id     TEXT NOT NULL,
            reason               TEXT,
            modified_at          TEXT NOT NULL,
            ip_address           TEXT,
            session_id           TEXT,
            UNIQUE (campaign_id, voter_ref, modification_number),
            FOREIGN KEY (original_vote_id) REFERENCES vote_records(id)
        );

        -- History is append-only
        CREATE TRIGGER IF NOT EXISTS vote_history_no_update BEFORE UPDATE ON vote_history BEGIN
            SELECT RAISE(ABORT, 'vote_history is append-only');
        END;

        CREATE TRIGGER IF NOT EXISTS vote_history_no_delete BEFORE DELETE ON vote_history BEGIN
            SELECT RAISE(ABORT, 'vote_history is append-only');
        END;

        CREATE INDEX IF NOT EXISTS idx_votes_campaign    ON vote_records(campaign_id);
        CREATE INDEX IF NOT EXISTS idx_history_voter     ON vote_history(campaign_id, voter_ref);
        CREATE INDEX IF NOT EXISTS idx_campaigns_status  ON campaigns(status, window_end);
    """),
    (2, "audit_events", """
        CREATE TABLE IF NOT EXISTS audit_events (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id  TEXT,
            kind         TEXT NOT NULL,
            actor        TEXT NOT NULL,
            detail       TEXT DEFAULT '{}',
            created_at   TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_audit_campaign ON audit_events(campaign_id, id);
    """),
    (3, "campaign_trigger_key", """
        ALTER TABLE campaigns ADD COLUMN trigger_key TEXT;

        -- A trigger period (e.g. one attendance month) opens at most one campaign
        CREATE UNIQUE INDEX IF NOT EXISTS idx_campaigns_trigger_key
            ON campaigns(target_employee_ref, trigger_key)
            WHERE trigger_key IS NOT NULL;
    """),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ============================================
# Row mapping
# ============================================
def _row_to_campaign(row: sqlite3.Row) -> Campaign:
    return Campaign(
        id=row["id"],
        title=row["title"],
        campaign_type=CampaignType(row["campaign_type"]),
        target_employee_ref=row["target_employee_ref"],
        current_position=row["current_position"],
        target_position=row["target_position"],
        window_start=_parse(row["window_start"]),
        window_end=_parse(row["window_end"]),
        required_pass_percentage=row["required_pass_percentage"],
        origin=CampaignOrigin(row["origin"]),
        trigger_rule=row["trigger_rule"],
        trigger_key=row["trigger_key"],
        justification=row["justification"],
        status=CampaignStatus(row["status"]),
        outcome=Outcome(row["outcome"]) if row["outcome"] else None,
        created_at=_parse(row["created_at"]),
        closed_at=_parse(row["closed_at"]),
    )


def _row_to_vote(row: sqlite3.Row) -> VoteRecord:
    return VoteRecord(
        id=row["id"],
        campaign_id=row["campaign_id"],
        voter_ref=row["voter_ref"],
        candidate_anonymous_id=row["candidate_anonymous_id"],
        decision=Decision(row["decision"]),
        weight=row["weight"],
        salt=row["salt"],
        integrity_hash=row["integrity_hash"],
        sequence_number=row["sequence_number"],
        finalized=bool(row["finalized"]),
        anomaly=row["anomaly"],
        cast_at=_parse(row["cast_at"]),
        updated_at=_parse(row["updated_at"]),
    )


def _row_to_history(row: sqlite3.Row) -> VoteModificationHistoryEntry:
    return VoteModificationHistoryEntry(
        id=row["id"],
        original_vote_id=row["original_vote_id"],
        voter_ref=row["voter_ref"],
        campaign_id=row["campaign_id"],
        modification_number=row["modification_number"],
        old_decision=Decision(row["old_decision"]),
        new_decision=Decision(row["new_decision"]),
        old_candidate_id=row["old_candidate_id"],
        new_candidate_id=row["new_candidate_id"],
        reason=row["reason"],
        modified_at=_parse(row["modified_at"]),
        ip_address=row["ip_address"],
        session_id=row["session_id"],
    )


# ============================================
# Store
# ============================================
class BallotStore:
    """One SQLite database. Safe to share across threads."""

    def __init__(self, db_path: str = "ballot.db"):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self.migrate()

    @contextmanager
    def transaction(self):
        """Serialize on the store lock; commit on success, roll back on error."""
        with self._lock, self._conn:
            yield self._conn

    def close(self):
        with self._lock:
            self._conn.close()

    # ------ migrations ------

    def migrate(self) -> List[int]:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version     INTEGER PRIMARY KEY,
                    name        TEXT NOT NULL,
                    applied_at  TEXT NOT NULL
                )
            """)
            self._conn.commit()
            applied = {
                r["version"] for r in self._conn.execute("SELECT version FROM schema_migrations")
            }
            newly_applied = []
            for version, name, script in MIGRATIONS:
                if version in applied:
                    continue
                # Schema change and its version row commit together
                record = "INSERT INTO schema_migrations (version, name, applied_at) VALUES (%d, '%s', '%s');" % (
                    version, name, datetime.now().astimezone().isoformat())
                try:
                    self._conn.executescript("BEGIN;\n" + script + "\n" + record + "\nCOMMIT;")
                except sqlite3.Error:
                    if self._conn.in_transaction:
                        self._conn.rollback()
                    log.error("schema_migration_failed", path=self.db_path, version=version, name=name)
                    raise
                newly_applied.append(version)
            if newly_applied:
                log.info("schema_migrated", path=self.db_path, versions=newly_applied)
            return newly_applied

    def schema_version(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT MAX(version) AS v FROM schema_migrations").fetchone()
            return row["v"] or 0

    # ------ campaigns ------

    def insert_campaign(self, campaign: Campaign, candidates: Iterable[Candidate] = ()) -> Campaign:
        """Insert a campaign together with its initial candidates; both or neither."""
        with self.transaction() as conn:
            try:
                conn.execute(
                    """INSERT INTO campaigns
                       (id, title, campaign_type, target_employee_ref, current_position,
                        target_position, window_start, window_end, required_pass_percentage,
                        origin, trigger_rule, trigger_key, justification, status, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (campaign.id, campaign.title, campaign.campaign_type.value,
                     campaign.target_employee_ref, campaign.current_position,
                     campaign.target_position, _iso(campaign.window_start),
                     _iso(campaign.window_end), campaign.required_pass_percentage,
                     campaign.origin.value, campaign.trigger_rule, campaign.trigger_key,
                     campaign.justification, campaign.status.value, _iso(campaign.created_at)),
                )
            except sqlite3.IntegrityError as e:
                # Only the open-campaign and trigger-key indexes mean "duplicate"
                if "UNIQUE" not in str(e):
                    raise
                raise DuplicateOpenCampaign(
                    "An open campaign of this type already exists for this employee.",
                    campaign_type=campaign.campaign_type.value,
                    trigger_key=campaign.trigger_key,
                ) from e
            for candidate in candidates:
                self._insert_candidate(conn, candidate)
        return campaign

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM campaigns WHERE id = ?", (campaign_id,)).fetchone()
        return _row_to_campaign(row) if row else None

    def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        with self._lock:
            if status:
                rows = self._conn.execute(
                    "SELECT * FROM campaigns WHERE status = ? ORDER BY created_at, id",
                    (status.value,),
                ).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM campaigns ORDER BY created_at, id").fetchall()
        return [_row_to_campaign(r) for r in rows]

    def find_open_campaign(self, employee_ref: str, campaign_type: CampaignType) -> Optional[Campaign]:
        with self._lock:
            row = self._conn.execute(
                """SELECT * FROM campaigns
                   WHERE target_employee_ref = ? AND campaign_type = ?
                     AND status IN ('draft', 'active')""",
                (employee_ref, campaign_type.value),
            ).fetchone()
        return _row_to_campaign(row) if row else None

    def last_closed_campaign(self, employee_ref: str, campaign_type: CampaignType) -> Optional[Campaign]:
        with self._lock:
            row = self._conn.execute(
                """SELECT * FROM campaigns
                   WHERE target_employee_ref = ? AND campaign_type = ? AND status = 'closed'
                   ORDER BY closed_at DESC LIMIT 1""",
                (employee_ref, campaign_type.value),
            ).fetchone()
        return _row_to_campaign(row) if row else None

    def has_trigger_key(self, employee_ref: str, trigger_key: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM campaigns WHERE target_employee_ref = ? AND trigger_key = ?",
                (employee_ref, trigger_key),
            ).fetchone()
        return row is not None

    def transition(self, campaign_id: str, expected: CampaignStatus, new: CampaignStatus) -> bool:
        with self.transaction() as conn:
            result = conn.execute(
                "UPDATE campaigns SET status = ? WHERE id = ? AND status = ?",
                (new.value, campaign_id, expected.value),
            )
        return result.rowcount == 1

    def activate_campaign(self, campaign_id: str, voters: Iterable[str]) -> bool:
        """Snapshot the electorate and flip Draft -> Active in one transaction."""
        with self.transaction() as conn:
            result = conn.execute(
                "UPDATE campaigns SET status = 'active' WHERE id = ? AND status = 'draft'",
                (campaign_id,),
            )
            if result.rowcount != 1:
                return False
            conn.executemany(
                "INSERT OR IGNORE INTO eligible_voters (campaign_id, voter_ref) VALUES (?, ?)",
                [(campaign_id, v) for v in sorted(voters)],
            )
        return True

    def close_campaign(self, campaign_id: str, closed_at: datetime) -> int:
        """Active -> Closed and finalize every vote. Returns votes finalized, -1 if not Active."""
        with self.transaction() as conn:
            result = conn.execute(
                "UPDATE campaigns SET status = 'closed', closed_at = ? WHERE id = ? AND status = 'active'",
                (_iso(closed_at), campaign_id),
            )
            if result.rowcount != 1:
                return -1
            finalized = conn.execute(
                "UPDATE vote_records SET finalized = 1 WHERE campaign_id = ? AND finalized = 0",
                (campaign_id,),
            )
        return finalized.rowcount

    def set_outcome(self, campaign_id: str, outcome: Outcome):
        with self.transaction() as conn:
            conn.execute("UPDATE campaigns SET outcome = ? WHERE id = ?", (outcome.value, campaign_id))

    def update_window_end(self, campaign_id: str, window_end: datetime) -> bool:
        with self.transaction() as conn:
            result = conn.execute(
                "UPDATE campaigns SET window_end = ? WHERE id = ? AND status = 'active'",
                (_iso(window_end), campaign_id),
            )
        return result.rowcount == 1

    # ------ candidates ------

    def _insert_candidate(self, conn: sqlite3.Connection, candidate: Candidate):
        try:
            conn.execute(
                """INSERT INTO candidates (campaign_id, anonymous_id, real_employee_ref, minted_at)
                   VALUES (?, ?, ?, ?)""",
                (candidate.campaign_id, candidate.anonymous_id,
                 candidate.real_employee_ref, _iso(candidate.minted_at)),
            )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" not in str(e):
                raise
            raise DuplicateCandidate(
                "This employee already has a pseudonym in this campaign.",
                campaign_id=candidate.campaign_id,
            ) from e

    def insert_candidate(self, candidate: Candidate) -> Candidate:
        with self.transaction() as conn:
            self._insert_candidate(conn, candidate)
        return candidate

    def count_candidates(self, campaign_id: str) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) AS c FROM candidates WHERE campaign_id = ?", (campaign_id,)
            ).fetchone()["c"]

    def get_candidate(self, campaign_id: str, anonymous_id: str) -> Optional[Candidate]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM candidates WHERE campaign_id = ? AND anonymous_id = ?",
                (campaign_id, anonymous_id),
            ).fetchone()
        if not row:
            return None
        return Candidate(row["campaign_id"], row["anonymous_id"],
                         row["real_employee_ref"], _parse(row["minted_at"]))

    def list_candidate_ids(self, campaign_id: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT anonymous_id FROM candidates WHERE campaign_id = ? ORDER BY anonymous_id",
                (campaign_id,),
            ).fetchall()
        return [r["anonymous_id"] for r in rows]

    # ------ eligibility ------

    def is_eligible(self, campaign_id: str, voter_ref: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM eligible_voters WHERE campaign_id = ? AND voter_ref = ?",
                (campaign_id, voter_ref),
            ).fetchone()
        return row is not None

    def count_eligible(self, campaign_id: str) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) AS c FROM eligible_voters WHERE campaign_id = ?", (campaign_id,)
            ).fetchone()["c"]

    # ------ votes ------

    def insert_vote(self, record: VoteRecord) -> VoteRecord:
        try:
            with self.transaction() as conn:
                cur = conn.execute(
                    """INSERT INTO vote_records
                       (campaign_id, voter_ref, candidate_anonymous_id, decision, weight, salt,
                        integrity_hash, sequence_number, finalized, cast_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (record.campaign_id, record.voter_ref, record.candidate_anonymous_id,
                     record.decision.value, record.weight, record.salt, record.integrity_hash,
                     record.sequence_number, int(record.finalized),
                     _iso(record.cast_at), _iso(record.updated_at)),
                )
        except sqlite3.IntegrityError as e:
            raise ConcurrentModification(
                "Another request recorded this voter's ballot first. Reload and retry.",
                campaign_id=record.campaign_id,
            ) from e
        record.id = cur.lastrowid
        return record

    def get_vote(self, campaign_id: str, voter_ref: str) -> Optional[VoteRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM vote_records WHERE campaign_id = ? AND voter_ref = ?",
                (campaign_id, voter_ref),
            ).fetchone()
        return _row_to_vote(row) if row else None

    def list_votes(self, campaign_id: str) -> List[VoteRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM vote_records WHERE campaign_id = ? ORDER BY id", (campaign_id,)
            ).fetchall()
        return [_row_to_vote(r) for r in rows]

    def count_votes(self, campaign_id: str) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) AS c FROM vote_records WHERE campaign_id = ?", (campaign_id,)
            ).fetchone()["c"]

    def record_revision(
        self,
        entry: VoteModificationHistoryEntry,
        record: VoteRecord,
        expected_sequence: int,
    ) -> VoteModificationHistoryEntry:
        """Append the history row, then compare-and-swap the vote; both or neither."""
        with self.transaction() as conn:
            try:
                cur = conn.execute(
                    """INSERT INTO vote_history
                       (original_vote_id, voter_ref, campaign_id, modification_number,
                        old_decision, new_decision, old_candidate_id, new_candidate_id,
                        reason, modified_at, ip_address, session_id)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (entry.original_vote_id, entry.voter_ref, entry.campaign_id,
                     entry.modification_number, entry.old_decision.value,
                     entry.new_decision.value, entry.old_candidate_id, entry.new_candidate_id,
                     entry.reason, _iso(entry.modified_at), entry.ip_address, entry.session_id),
                )
            except sqlite3.IntegrityError as e:
                raise ConcurrentModification(
                    "This modification number was already recorded by another request.",
                    campaign_id=entry.campaign_id,
                    modification_number=entry.modification_number,
                ) from e
            result = conn.execute(
                """UPDATE vote_records
                   SET candidate_anonymous_id = ?, decision = ?, weight = ?, salt = ?,
                       integrity_hash = ?, sequence_number = ?, finalized = ?, updated_at = ?
                   WHERE id = ? AND sequence_number = ? AND finalized = 0""",
                (record.candidate_anonymous_id, record.decision.value, record.weight,
                 record.salt, record.integrity_hash, record.sequence_number,
                 int(record.finalized), _iso(record.updated_at), record.id, expected_sequence),
            )
            if result.rowcount != 1:
                raise ConcurrentModification(
                    "The vote changed while this revision was in flight. Reload and retry.",
                    campaign_id=record.campaign_id,
                    expected_sequence=expected_sequence,
                )
        entry.id = cur.lastrowid
        return entry

    def flag_anomaly(self, vote_id: int, marker: str):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE vote_records SET finalized = 1, anomaly = ? WHERE id = ?", (marker, vote_id)
            )

    # ------ history ------

    def history_for_voter(self, campaign_id: str, voter_ref: str) -> List[VoteModificationHistoryEntry]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM vote_history WHERE campaign_id = ? AND voter_ref = ?
                   ORDER BY modification_number""",
                (campaign_id, voter_ref),
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    def history_for_campaign(self, campaign_id: str) -> List[VoteModificationHistoryEntry]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM vote_history WHERE campaign_id = ? ORDER BY id", (campaign_id,)
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    # ------ audit events ------

    def insert_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO audit_events (campaign_id, kind, actor, detail, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (event.campaign_id, event.kind, event.actor,
                 json.dumps(event.detail, default=str), _iso(event.created_at)),
            )
        event.id = cur.lastrowid
        return event

    def list_audit_events(self, campaign_id: Optional[str] = None) -> List[AuditEvent]:
        with self._lock:
            if campaign_id:
                rows = self._conn.execute(
                    "SELECT * FROM audit_events WHERE campaign_id = ? ORDER BY id", (campaign_id,)
                ).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM audit_events ORDER BY id").fetchall()
        return [
            AuditEvent(
                id=r["id"],
                campaign_id=r["campaign_id"],
                kind=r["kind"],
                actor=r["actor"],
                detail=json.loads(r["detail"] or "{}"),
                created_at=_parse(r["created_at"]),
            )
            for r in rows
        ]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS c FROM campaigns GROUP BY status"
            ).fetchall()
        return {r["status"]: r["c"] for r in rows}
