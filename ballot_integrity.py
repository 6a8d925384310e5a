"""
Ballot - Integrity Codec
========================
Salted commitments over a single vote record.

Every cast and every revision gets a fresh random salt, so two identical
votes (or two revisions of one vote) never share a hash. Verification
recomputes the digest from the stored plaintext fields and compares it in
constant time. A mismatch is never repaired: it is reported on the
tamper-alert channel and raised as IntegrityViolation.

The digest algorithm is a constructor argument. With a server secret the
commitment becomes an HMAC, so a reader of the database cannot forge a
matching hash even knowing the salt.
"""

import hashlib
import hmac
import json
import secrets
from dataclasses import replace
from typing import Optional, Union

import structlog

from ballot_models import Decision, IntegrityViolation, VoteRecord

DEFAULT_ALGORITHM = "sha256"
SALT_BYTES = 16
MIN_DIGEST_BITS = 256

tamper_log = structlog.get_logger("tamper_alert")


def new_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def canonical_message(
    voter_ref: str,
    campaign_id: str,
    candidate_id: str,
    decision: Union[Decision, str],
    sequence_number: int,
    salt: str,
    weight: float = 1.0,
) -> bytes:
    """Unambiguous byte form of the committed fields (JSON array, fixed order)."""
    decision_value = decision.value if isinstance(decision, Decision) else str(decision)
    payload = [
        campaign_id,
        voter_ref,
        candidate_id,
        decision_value,
        int(sequence_number),
        "%.6f" % float(weight),
        salt,
    ]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode()


def _safe_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


class IntegrityCodec:
    """Commit and verify vote records. Swappable digest, optional HMAC key."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM, secret: Optional[str] = None):
        probe = hashlib.new(algorithm)
        if probe.digest_size * 8 < MIN_DIGEST_BITS:
            raise ValueError(
                f"{algorithm} yields {probe.digest_size * 8} bits; need at least {MIN_DIGEST_BITS}."
            )
        self.algorithm = algorithm
        self._secret = secret.encode() if secret else None

    @property
    def keyed(self) -> bool:
        return self._secret is not None

    def commit(
        self,
        voter_ref: str,
        campaign_id: str,
        candidate_id: str,
        decision: Union[Decision, str],
        sequence_number: int,
        salt: str,
        weight: float = 1.0,
    ) -> str:
        message = canonical_message(
            voter_ref, campaign_id, candidate_id, decision, sequence_number, salt, weight
        )
        if self._secret is not None:
            return hmac.new(self._secret, message, self.algorithm).hexdigest()
        return hashlib.new(self.algorithm, message).hexdigest()

    def _commit_record(self, record: VoteRecord) -> str:
        return self.commit(
            record.voter_ref,
            record.campaign_id,
            record.candidate_anonymous_id,
            record.decision,
            record.sequence_number,
            record.salt,
            record.weight,
        )

    def seal(self, record: VoteRecord) -> VoteRecord:
        """Return a copy of `record` with a fresh salt and matching commitment."""
        salted = replace(record, salt=new_salt())
        return replace(salted, integrity_hash=self._commit_record(salted))

    def verify(self, record: VoteRecord) -> bool:
        expected = self._commit_record(record)
        if _safe_compare(expected, record.integrity_hash or ""):
            return True

        tamper_log.error(
            "integrity_violation",
            campaign_id=record.campaign_id,
            vote_id=record.id,
            sequence_number=record.sequence_number,
            algorithm=self.algorithm,
        )
        raise IntegrityViolation(
            "Vote record does not match its integrity commitment.",
            campaign_id=record.campaign_id,
            vote_id=record.id,
        )
