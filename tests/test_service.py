"""
Tests for ballot_service.py

Run with:  pytest tests/test_service.py -v
"""

import json
import os
import secrets
import tempfile

import pytest
from fastapi.testclient import TestClient

# Point the service at a temp DB and roster for the test session
_tmp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_tmp_roster = tempfile.NamedTemporaryFile("w", suffix=".json", delete=False)
json.dump({"employees": [
    {"ref": "v1", "position": "Staff", "tenure_days": 100},
    {"ref": "v2", "position": "Staff", "tenure_days": 100},
    {"ref": "v3", "position": "Assistant Manager", "tenure_days": 300},
    {"ref": "v4", "position": "Store Manager", "tenure_days": 900},
    {"ref": "tr1", "position": "Trainee", "tenure_days": 25},
]}, _tmp_roster)
_tmp_roster.close()

ADMIN_KEY = "admin-test-key"
AUDIT_KEY = "audit-test-key"
os.environ["BALLOT_DB"] = _tmp_db.name
os.environ["BALLOT_ROSTER_FILE"] = _tmp_roster.name
os.environ["BALLOT_ADMIN_KEY"] = ADMIN_KEY
os.environ["BALLOT_AUDIT_KEY"] = AUDIT_KEY
os.environ["BALLOT_CORS_ORIGINS"] = "http://localhost:3000"

from ballot_service import app, init_engine

init_engine()
client = TestClient(app, raise_server_exceptions=True)


# ==========================================
# Helpers
# ==========================================

def admin() -> dict:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}


def auditor() -> dict:
    return {"Authorization": f"Bearer {AUDIT_KEY}"}


def voter(ref: str) -> dict:
    return {"X-Voter-Ref": ref}


def create(campaign_type: str = "promotion_request", activate: bool = True, **extra) -> dict:
    target = f"emp-{secrets.token_hex(4)}"
    body = {
        "title": "Staff to Assistant Manager",
        "campaign_type": campaign_type,
        "target_employee_ref": target,
        "current_position": "Staff",
        "target_position": "Assistant Manager",
        "required_pass_percentage": 0.5,
        "activate": activate,
    }
    body.update(extra)
    r = client.post("/admin/campaigns", json=body, headers=admin())
    assert r.status_code == 201, r.text
    data = r.json()
    data["target"] = target
    return data


# ==========================================
# Health & metrics
# ==========================================

class TestHealth:
    def test_health(self):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"
        assert r.json()["schema_version"] == 3

    def test_metrics(self):
        client.get("/health")
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "ballot_requests_total" in r.text


# ==========================================
# Auth
# ==========================================

class TestAuth:
    def test_missing_auth_header(self):
        r = client.post("/admin/close-expired")
        assert r.status_code == 422  # FastAPI validation: missing required header

    def test_wrong_admin_key(self):
        r = client.post("/admin/close-expired", headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401

    def test_admin_key_is_not_an_audit_key(self):
        campaign = create()
        r = client.get(f"/audit/campaigns/{campaign['campaign']['id']}/history", headers=admin())
        assert r.status_code == 401

    def test_missing_voter_header(self):
        campaign = create()
        r = client.post(f"/campaigns/{campaign['campaign']['id']}/votes",
                        json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"})
        assert r.status_code == 422


# ==========================================
# Campaigns
# ==========================================

class TestCampaigns:
    def test_create_and_view(self):
        data = create(justification="<b>Strong</b> year")
        campaign = data["campaign"]
        assert campaign["status"] == "active"
        assert campaign["justification"] == "Strong year"
        assert data["candidates"] == ["CANDIDATE_A_001"]

        r = client.get(f"/campaigns/{campaign['id']}")
        assert r.status_code == 200
        assert r.json()["candidates"] == ["CANDIDATE_A_001"]
        assert data["target"] not in r.text

    def test_unknown_campaign_is_404(self):
        r = client.get("/campaigns/doesnotexist")
        assert r.status_code == 404
        assert r.json()["error"] == "campaign_not_found"

    def test_list_by_status(self):
        create(activate=False)
        r = client.get("/campaigns", params={"status": "draft"})
        assert r.status_code == 200
        assert all(c["status"] == "draft" for c in r.json()["campaigns"])

    def test_invalid_pass_percentage(self):
        r = client.post("/admin/campaigns", headers=admin(), json={
            "title": "x", "campaign_type": "promotion_request", "target_employee_ref": "e",
            "current_position": "Staff", "target_position": "Assistant Manager",
            "required_pass_percentage": 1.5,
        })
        assert r.status_code == 422

    def test_duplicate_open_campaign(self):
        data = create()
        r = client.post("/admin/campaigns", headers=admin(), json={
            "title": "again", "campaign_type": "promotion_request",
            "target_employee_ref": data["target"], "current_position": "Staff",
            "target_position": "Assistant Manager", "required_pass_percentage": 0.5,
        })
        assert r.status_code == 409
        assert r.json()["error"] == "duplicate_open_campaign"

    def test_repeated_candidates_rejected_and_retry_succeeds(self):
        target = f"emp-{secrets.token_hex(4)}"
        body = {
            "title": "Staff to Assistant Manager", "campaign_type": "promotion_request",
            "target_employee_ref": target, "current_position": "Staff",
            "target_position": "Assistant Manager", "required_pass_percentage": 0.5,
            "candidates": [target, target],
        }
        r = client.post("/admin/campaigns", headers=admin(), json=body)
        assert r.status_code == 422

        body["candidates"] = [target, f"emp-{secrets.token_hex(4)}"]
        r = client.post("/admin/campaigns", headers=admin(), json=body)
        assert r.status_code == 201, r.text
        assert r.json()["candidates"] == ["CANDIDATE_A_001", "CANDIDATE_A_002"]
        assert r.json()["campaign"]["status"] == "draft"

    def test_disciplinary_cancel_needs_override(self):
        cid = create("disciplinary_demotion", window_days=3,
                     required_pass_percentage=0.3)["campaign"]["id"]
        r = client.post(f"/admin/campaigns/{cid}/cancel", json={}, headers=admin())
        assert r.status_code == 403
        r = client.post(f"/admin/campaigns/{cid}/cancel",
                        json={"override": True, "reason": "wrong month"}, headers=admin())
        assert r.status_code == 200
        assert r.json()["campaign"]["status"] == "cancelled"

        events = client.get(f"/audit/campaigns/{cid}/events", headers=auditor()).json()["events"]
        assert events[0]["kind"] == "disciplinary_cancel_override"

    def test_extend_window(self):
        campaign = create()["campaign"]
        r = client.post(f"/admin/campaigns/{campaign['id']}/extend",
                        json={"extra_days": 2}, headers=admin())
        assert r.status_code == 200
        assert r.json()["campaign"]["window_end"] > campaign["window_end"]


# ==========================================
# Votes
# ==========================================

class TestVotes:
    def test_cast_and_revise_to_ceiling(self):
        cid = create()["campaign"]["id"]
        url = f"/campaigns/{cid}/votes"

        r = client.post(url, json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"},
                        headers=voter("v1"))
        assert r.status_code == 201, r.text
        assert r.json()["vote"]["sequence_number"] == 0
        assert len(r.json()["vote"]["integrity_hash"]) == 64

        r = client.post(url, json={"candidate_id": "CANDIDATE_A_001", "decision": "disagree"},
                        headers=voter("v1"))
        assert r.json()["vote"]["sequence_number"] == 1

        r = client.put(f"{url}/me", json={"candidate_id": "CANDIDATE_A_001", "decision": "abstain"},
                       headers=voter("v1"))
        assert r.status_code == 200
        assert r.json()["vote"]["remaining_modifications"] == 0

        r = client.put(f"{url}/me", json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"},
                       headers=voter("v1"))
        assert r.status_code == 409
        assert r.json()["error"] == "modification_limit_exceeded"
        assert r.json()["remaining_modifications"] == 0

        history = client.get(f"/audit/campaigns/{cid}/history", params={"voter": "v1"},
                             headers=auditor()).json()
        assert [h["modification_number"] for h in history["history"]] == [1, 2]

    def test_not_eligible(self):
        cid = create()["campaign"]["id"]
        r = client.post(f"/campaigns/{cid}/votes",
                        json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"},
                        headers=voter("stranger"))
        assert r.status_code == 403
        assert r.json()["error"] == "not_eligible"

    def test_trainees_do_not_vote(self):
        cid = create()["campaign"]["id"]
        r = client.post(f"/campaigns/{cid}/votes",
                        json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"},
                        headers=voter("tr1"))
        assert r.status_code == 403

    def test_invalid_decision(self):
        cid = create()["campaign"]["id"]
        r = client.post(f"/campaigns/{cid}/votes",
                        json={"candidate_id": "CANDIDATE_A_001", "decision": "maybe"},
                        headers=voter("v1"))
        assert r.status_code == 422

    def test_vote_on_draft_is_rejected(self):
        cid = create(activate=False)["campaign"]["id"]
        r = client.post(f"/campaigns/{cid}/votes",
                        json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"},
                        headers=voter("v1"))
        assert r.status_code == 409
        body = r.json()
        assert body["error"] == "campaign_not_active"
        assert "window_start" in body and "window_end" in body

    def test_my_vote_and_status(self):
        cid = create()["campaign"]["id"]
        r = client.get(f"/campaigns/{cid}/votes/me", headers=voter("v2"))
        assert r.status_code == 404
        client.post(f"/campaigns/{cid}/votes",
                    json={"candidate_id": "CANDIDATE_A_001", "decision": "agree"},
                    headers=voter("v2"))
        r = client.get(f"/campaigns/{cid}/votes/me", headers=voter("v2"))
        assert r.json()["vote"]["decision"] == "agree"
        status = client.get(f"/campaigns/{cid}/votes/me/status", headers=voter("v2")).json()
        assert status["has_voted"] is True
        assert status["remaining_modifications"] == 2


# ==========================================
# Close, tally & audit
# ==========================================

class TestCloseAndTally:
    def test_tally_hidden_until_closed(self):
        cid = create()["campaign"]["id"]
        r = client.get(f"/campaigns/{cid}/tally")
        assert r.status_code == 409
        assert r.json()["error"] == "campaign_still_active"

    def test_close_requires_force_before_window_end(self):
        cid = create()["campaign"]["id"]
        r = client.post(f"/admin/campaigns/{cid}/close", json={}, headers=admin())
        assert r.status_code == 409

    def test_full_ballot(self):
        cid = create()["campaign"]["id"]
        for ref, decision in [("v1", "agree"), ("v2", "agree"), ("v3", "disagree")]:
            r = client.post(f"/campaigns/{cid}/votes",
                            json={"candidate_id": "CANDIDATE_A_001", "decision": decision},
                            headers=voter(ref))
            assert r.status_code == 201

        r = client.post(f"/admin/campaigns/{cid}/close", json={"force": True}, headers=admin())
        assert r.status_code == 200
        tally = r.json()["tally"]
        assert tally["total_eligible_voters"] == 4
        assert tally["participation_rate"] == 0.75
        assert tally["outcome"] == "passed"

        assert client.get(f"/campaigns/{cid}/tally").json() == tally
        assert client.get(f"/campaigns/{cid}").json()["outcome"] == "passed"

        verify = client.get(f"/audit/campaigns/{cid}/verify", headers=auditor()).json()
        assert verify["all_valid"] is True
        assert len(verify["votes"]) == 3

    def test_resolve_identity_after_close(self):
        data = create()
        cid = data["campaign"]["id"]
        url = f"/audit/campaigns/{cid}/candidates/CANDIDATE_A_001"
        assert client.get(url, headers=auditor()).status_code == 409
        client.post(f"/admin/campaigns/{cid}/close", json={"force": True}, headers=admin())
        r = client.get(url, headers=auditor())
        assert r.status_code == 200
        assert r.json()["employee_ref"] == data["target"]


# ==========================================
# Trigger sweep
# ==========================================

class TestSweep:
    def test_sweep_opens_probation_once(self):
        r = client.post("/admin/sweep", headers=admin())
        assert r.status_code == 200
        assert r.json()["created"] == 1
        r = client.post("/admin/sweep", headers=admin())
        assert r.json()["created"] == 0

        drafts = client.get("/campaigns", params={"status": "draft"}).json()["campaigns"]
        probation = [c for c in drafts if c["campaign_type"] == "probation_conversion"]
        assert len(probation) == 1
        assert probation[0]["origin"] == "system_triggered"
        assert probation[0]["target_position"] == "Staff"
