"""
HTTP tests for the workflow, catalog, automation and health blueprints.

Checks status codes, the error envelope ({error, code, details?}) and the
request-shape validation done in the blueprints.
"""

import pytest

from portal.services import automation_engine

BASE = "/api/v1"


def _start(client, project_id="proj-1", services=("SP",)):
    res = client.post(f"{BASE}/projects/{project_id}/workflow",
                      json={"services": list(services), "actor_id": "admin-1"})
    assert res.status_code == 201
    return res.get_json()


def _submit(client, project_id, key, actor="client-1", **extra):
    return client.post(f"{BASE}/projects/{project_id}/workflow/requirements/{key}",
                       json={"actor_id": actor, **extra})


# ═════════════════════════════════════════════════════════════════════════════
# Workflow blueprint
# ═════════════════════════════════════════════════════════════════════════════


class TestStartAndRead:
    def test_start_returns_progress(self, client):
        data = _start(client)
        assert data["state"]["phase_keys"] == ["ONB", "IDEA", "PREP", "PRINT", "LAUNCH"]
        assert data["phases"][0]["status"] == "current"

    def test_start_twice_conflicts(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow", json={"services": ["SP"], "actor_id": "admin-1"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_ALREADY_TRACKED"

    def test_start_requires_actor(self, client):
        res = client.post(f"{BASE}/projects/proj-1/workflow", json={"services": ["SP"]})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_services_must_be_list(self, client):
        res = client.post(f"{BASE}/projects/proj-1/workflow", json={"services": "SP", "actor_id": "a"})
        assert res.status_code == 400

    def test_unknown_service(self, client):
        res = client.post(f"{BASE}/projects/proj-1/workflow", json={"services": ["NOPE"], "actor_id": "a"})
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_progress_of_untracked_project(self, client):
        res = client.get(f"{BASE}/projects/ghost/workflow")
        assert res.status_code == 404

    def test_pending_and_history(self, client):
        _start(client)
        pending = client.get(f"{BASE}/projects/proj-1/workflow/pending").get_json()
        assert pending["total"] == 3
        history = client.get(f"{BASE}/projects/proj-1/workflow/history").get_json()
        assert history["items"][0]["transition_type"] == "initial"


class TestSubmitRequirement:
    def test_onboarding_flow_advances(self, client):
        _start(client)
        _submit(client, "proj-1", "intake_form")
        _submit(client, "proj-1", "service_agreement")
        res = _submit(client, "proj-1", "deposit_payment", metadata={"payment_id": "pi_1"})
        assert res.status_code == 200
        data = res.get_json()
        assert data["automation"]["status"] == "advanced"
        assert data["state"]["current_phase_key"] == "IDEA"
        assert data["completion"]["metadata"] == {"payment_id": "pi_1"}

    def test_unknown_requirement(self, client):
        _start(client)
        res = _submit(client, "proj-1", "nope")
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_UNKNOWN_REQUIREMENT"

    def test_metadata_must_be_object(self, client):
        _start(client)
        res = _submit(client, "proj-1", "intake_form", metadata="form-1")
        assert res.status_code == 400

    def test_actor_required(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/requirements/intake_form", json={})
        assert res.status_code == 400


class TestTransitions:
    def test_advance(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/advance", json={"actor_id": "admin-1"})
        assert res.status_code == 200
        assert res.get_json()["state"]["current_phase_key"] == "IDEA"

    def test_advance_at_last_phase(self, client):
        _start(client)
        client.post(f"{BASE}/projects/proj-1/workflow/override",
                    json={"actor_id": "admin-1", "target_phase_key": "LAUNCH", "reason": "rush"})
        before = client.get(f"{BASE}/projects/proj-1/workflow").get_json()["state"]

        res = client.post(f"{BASE}/projects/proj-1/workflow/advance", json={"actor_id": "admin-1"})

        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_TERMINAL_PHASE"
        assert client.get(f"{BASE}/projects/proj-1/workflow").get_json()["state"] == before

    def test_override_requires_reason(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/override",
                          json={"actor_id": "admin-1", "target_phase_key": "PRINT"})
        assert res.status_code == 400

    def test_override_backwards(self, client):
        _start(client, services=("GD",))
        client.post(f"{BASE}/projects/proj-1/workflow/override",
                    json={"actor_id": "admin-1", "target_phase_key": "DSGN", "reason": "skip ahead"})
        res = client.post(f"{BASE}/projects/proj-1/workflow/override",
                          json={"actor_id": "admin-1", "target_phase_key": "IDEA",
                                "reason": "client requested redo"})
        assert res.status_code == 200
        data = res.get_json()
        assert data["transition"]["is_override"] is True
        assert data["state"]["current_phase_key"] == "IDEA"

    def test_override_outside_composition(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/override",
                          json={"actor_id": "admin-1", "target_phase_key": "DSGN", "reason": "x"})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_BUSINESS_RULE"

    def test_complete(self, client):
        _start(client)
        client.post(f"{BASE}/projects/proj-1/workflow/override",
                    json={"actor_id": "admin-1", "target_phase_key": "LAUNCH", "reason": "rush"})
        res = client.post(f"{BASE}/projects/proj-1/workflow/complete", json={"actor_id": "admin-1"})
        assert res.status_code == 200
        assert res.get_json()["state"]["is_completed"] is True

    def test_complete_too_early(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/complete", json={"actor_id": "admin-1"})
        assert res.status_code == 422

    def test_evaluate(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/evaluate")
        assert res.status_code == 200
        assert res.get_json()["automation"]["status"] == "not_satisfied"


class TestPayments:
    def test_payment_recorded(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/payments",
                          json={"payment_id": "pi_1", "amount": 99.5, "received_at": "2026-01-05T10:00:00Z"})
        assert res.status_code == 201
        payment = res.get_json()["payment"]
        assert payment["amount"] == 99.5
        assert payment["received_at"].startswith("2026-01-05T10:00:00")

    def test_payment_id_required(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/payments", json={"amount": 1})
        assert res.status_code == 400

    def test_bad_received_at(self, client):
        _start(client)
        res = client.post(f"{BASE}/projects/proj-1/workflow/payments",
                          json={"payment_id": "pi_1", "received_at": "yesterday"})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"


class TestStuckReport:
    def test_negative_threshold(self, client):
        assert client.get(f"{BASE}/workflow/stuck?threshold_days=-1").status_code == 400

    def test_lists_projects(self, client):
        _start(client)
        data = client.get(f"{BASE}/workflow/stuck?threshold_days=0").get_json()
        assert [i["project_id"] for i in data["items"]] == ["proj-1"]


class TestUnexpectedErrors:
    def test_internal_error_envelope(self, client, monkeypatch):
        from portal.services import workflow_service

        def _boom(project_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(workflow_service, "get_progress", _boom)
        res = client.get(f"{BASE}/projects/proj-1/workflow")
        assert res.status_code == 500
        assert res.get_json()["code"] == "ERR_INTERNAL"


# ═════════════════════════════════════════════════════════════════════════════
# Catalog blueprint
# ═════════════════════════════════════════════════════════════════════════════


class TestCatalogApi:
    def test_list_phases(self, client):
        data = client.get(f"{BASE}/phases").get_json()
        onb = next(p for p in data["items"] if p["key"] == "ONB")
        assert [r["requirement_key"] for r in onb["requirements"]] == [
            "intake_form", "service_agreement", "deposit_payment",
        ]

    def test_get_phase_case_insensitive(self, client):
        assert client.get(f"{BASE}/phases/dsgn").get_json()["key"] == "DSGN"

    def test_unknown_phase(self, client):
        assert client.get(f"{BASE}/phases/NOPE").status_code == 404

    def test_service_types(self, client):
        data = client.get(f"{BASE}/service-types").get_json()
        assert "SP" in {s["code"] for s in data["items"]}
        sp = client.get(f"{BASE}/service-types/sp").get_json()
        assert sp["default_phase_keys"] == ["ONB", "IDEA", "PREP", "PRINT", "LAUNCH"]

    def test_compose_preview(self, client):
        res = client.post(f"{BASE}/service-types/compose", json={"services": []})
        assert res.get_json()["phase_keys"] == ["ONB", "WRAP"]

    def test_requirements_need_phase_key(self, client):
        assert client.get(f"{BASE}/requirements").status_code == 400

    def test_create_and_update_requirement(self, client):
        res = client.post(f"{BASE}/requirements", json={
            "phase_key": "PREP", "requirement_key": "approve_proof",
            "requirement_type": "approval", "requirement_text": "Approve proof",
            "is_mandatory": True,
        })
        assert res.status_code == 201
        req_id = res.get_json()["id"]

        res = client.put(f"{BASE}/requirements/{req_id}", json={"is_mandatory": False})
        assert res.status_code == 200
        assert res.get_json()["is_mandatory"] is False

        items = client.get(f"{BASE}/requirements?phase_key=prep").get_json()["items"]
        assert [i["requirement_key"] for i in items] == ["approve_proof"]

    def test_sort_order_must_be_int(self, client):
        res = client.post(f"{BASE}/requirements", json={
            "phase_key": "PREP", "requirement_key": "x", "requirement_type": "form",
            "requirement_text": "x", "sort_order": "first",
        })
        assert res.status_code == 400

    def test_duplicate_requirement(self, client):
        res = client.post(f"{BASE}/requirements", json={
            "phase_key": "ONB", "requirement_key": "intake_form",
            "requirement_type": "form", "requirement_text": "again",
        })
        assert res.status_code == 409


# ═════════════════════════════════════════════════════════════════════════════
# Automation blueprint
# ═════════════════════════════════════════════════════════════════════════════


class TestAutomationApi:
    def test_list_rules(self, client):
        data = client.get(f"{BASE}/automation/rules?from_phase_key=onb").get_json()
        assert data["total"] == 1
        assert data["items"][0]["condition_type"] == "all_actions_complete"

    def test_create_rule(self, client):
        res = client.post(f"{BASE}/automation/rules", json={
            "name": "Proof window", "from_phase_key": "PREP",
            "condition_type": "time_elapsed", "condition_params": {"threshold_days": 2},
        })
        assert res.status_code == 201
        assert res.get_json()["to_phase_key"] is None

    @pytest.mark.parametrize("body,status", [
        ({"from_phase_key": "PREP", "condition_type": "manual_only"}, 400),
        ({"name": "x", "from_phase_key": "PREP", "condition_type": "manual_only",
          "condition_params": []}, 400),
        ({"name": "x", "from_phase_key": "PREP", "condition_type": "time_elapsed"}, 422),
        ({"name": "x", "from_phase_key": "NOPE", "condition_type": "manual_only"}, 404),
        ({"name": "x", "from_phase_key": "ONB", "condition_type": "all_actions_complete"}, 409),
    ])
    def test_create_rule_errors(self, client, body, status):
        assert client.post(f"{BASE}/automation/rules", json=body).status_code == status

    def test_update_rule(self, client):
        rule_id = automation_engine.list_rules(from_phase_key="ONB")[0].id
        res = client.put(f"{BASE}/automation/rules/{rule_id}", json={"is_active": False})
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False

    def test_unknown_rule(self, client):
        assert client.get(f"{BASE}/automation/rules/9999").status_code == 404

    def test_dry_run_and_executions(self, client):
        _start(client)
        rule_id = automation_engine.list_rules(from_phase_key="ONB")[0].id

        res = client.post(f"{BASE}/automation/rules/{rule_id}/test", json={"project_id": "proj-1"})
        assert res.status_code == 200
        assert res.get_json()["would_advance"] is False

        logs = client.get(f"{BASE}/automation/rules/{rule_id}/executions").get_json()
        assert [i["outcome"] for i in logs["items"]] == ["test"]
        by_project = client.get(f"{BASE}/automation/executions?project_id=proj-1").get_json()
        assert by_project["total"] == 1

    def test_dry_run_requires_project(self, client):
        rule_id = automation_engine.list_rules(from_phase_key="ONB")[0].id
        assert client.post(f"{BASE}/automation/rules/{rule_id}/test", json={}).status_code == 400

    def test_jobs(self, client):
        data = client.get(f"{BASE}/automation/jobs").get_json()
        assert {j["job_name"] for j in data["items"]} == {"phase_time_elapsed_sweep", "stuck_project_scan"}

    def test_run_unknown_job(self, client):
        assert client.post(f"{BASE}/automation/jobs/nope/run").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Health blueprint
# ═════════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_ready(self, client):
        assert client.get(f"{BASE}/health/ready").get_json() == {"status": "ok"}

    def test_live(self, client):
        data = client.get(f"{BASE}/health/live").get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["catalog"]["phases"] > 0

    def test_unknown_route(self, client):
        res = client.get(f"{BASE}/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"
