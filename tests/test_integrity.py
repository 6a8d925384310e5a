"""
Tests for ballot_integrity.py

Run with:  pytest tests/test_integrity.py -v
"""

from dataclasses import replace

import pytest

from ballot_integrity import IntegrityCodec, canonical_message, new_salt
from ballot_models import Decision, IntegrityViolation, VoteRecord


def make_record(**overrides) -> VoteRecord:
    base = dict(
        campaign_id="c1",
        voter_ref="v01",
        candidate_anonymous_id="CANDIDATE_A_001",
        decision=Decision.AGREE,
        sequence_number=0,
        id=1,
    )
    base.update(overrides)
    return VoteRecord(**base)


# ==========================================
# Canonical message
# ==========================================

class TestCanonicalMessage:
    def test_field_boundaries_are_unambiguous(self):
        a = canonical_message("v1", "c:1", "X", "agree", 0, "s")
        b = canonical_message("v1:c", "1", "X", "agree", 0, "s")
        assert a != b

    def test_enum_and_string_decisions_match(self):
        a = canonical_message("v", "c", "X", Decision.ABSTAIN, 1, "s")
        b = canonical_message("v", "c", "X", "abstain", 1, "s")
        assert a == b

    def test_weight_is_committed(self):
        a = canonical_message("v", "c", "X", "agree", 0, "s", weight=1.0)
        b = canonical_message("v", "c", "X", "agree", 0, "s", weight=2.0)
        assert a != b


# ==========================================
# Codec
# ==========================================

class TestIntegrityCodec:
    def test_seal_then_verify(self):
        codec = IntegrityCodec()
        sealed = codec.seal(make_record())
        assert sealed.salt
        assert len(sealed.integrity_hash) == 64
        assert codec.verify(sealed) is True

    def test_fresh_salt_each_seal(self):
        codec = IntegrityCodec()
        record = make_record()
        a, b = codec.seal(record), codec.seal(record)
        assert a.salt != b.salt
        assert a.integrity_hash != b.integrity_hash

    def test_salts_are_random(self):
        assert len({new_salt() for _ in range(50)}) == 50

    @pytest.mark.parametrize("field,value", [
        ("decision", Decision.DISAGREE),
        ("candidate_anonymous_id", "CANDIDATE_A_002"),
        ("voter_ref", "v02"),
        ("campaign_id", "c2"),
        ("sequence_number", 1),
        ("weight", 3.0),
        ("salt", "00" * 16),
    ])
    def test_tampering_any_field_fails(self, field, value):
        codec = IntegrityCodec()
        sealed = codec.seal(make_record())
        with pytest.raises(IntegrityViolation) as exc:
            codec.verify(replace(sealed, **{field: value}))
        assert exc.value.code == "integrity_violation"
        assert exc.value.details["vote_id"] == 1

    def test_missing_hash_fails(self):
        with pytest.raises(IntegrityViolation):
            IntegrityCodec().verify(make_record())

    def test_keyed_codec_differs_from_plain(self):
        plain = IntegrityCodec()
        keyed = IntegrityCodec(secret="server-secret")
        assert keyed.keyed and not plain.keyed
        sealed = keyed.seal(make_record())
        assert keyed.verify(sealed)
        with pytest.raises(IntegrityViolation):
            plain.verify(sealed)

    def test_wrong_secret_fails(self):
        sealed = IntegrityCodec(secret="one").seal(make_record())
        with pytest.raises(IntegrityViolation):
            IntegrityCodec(secret="two").verify(sealed)

    def test_algorithm_is_swappable(self):
        codec = IntegrityCodec(algorithm="sha512")
        sealed = codec.seal(make_record())
        assert len(sealed.integrity_hash) == 128
        assert codec.verify(sealed)

    def test_short_digest_rejected(self):
        with pytest.raises(ValueError):
            IntegrityCodec(algorithm="md5")
