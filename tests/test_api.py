# tests/test_api.py
import time

from fastapi.testclient import TestClient


def _wait_until(fn, timeout_s: float = 5.0, poll_s: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if fn():
            return True
        time.sleep(poll_s)
    return False


def _job(client: TestClient, job_id: str) -> dict:
    r = client.get(f"/jobs/{job_id}")
    assert r.status_code == 200, r.text
    return r.json()


def _manual(client: TestClient, *commands: str) -> dict:
    tasks = [{"title": f"step {i}", "description": cmd} for i, cmd in enumerate(commands, start=1)]
    r = client.post("/jobs/manual", json={"requirements": "api test", "tasks": tasks})
    assert r.status_code == 201, r.text
    return r.json()


def test_healthz(client: TestClient):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_manual_job_runs_to_completion(client: TestClient):
    job = _manual(client, "echo one", "echo two")
    assert job["status"] == "ready"
    assert [n["id"] for n in job["workflow_plan"]["nodes"]] == ["start", "task1", "task2", "end"]

    r = client.post(f"/jobs/{job['id']}/approve")
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "running"

    ok = _wait_until(lambda: _job(client, job["id"])["status"] == "completed")
    assert ok, "Job did not reach completed in time"

    done = _job(client, job["id"])
    assert done["progress"] == 100
    assert "Task completed: step 2" in done["logs"]

    r = client.get("/jobs")
    assert r.status_code == 200
    assert any(j["id"] == job["id"] for j in r.json()["jobs"])

    r = client.get(f"/jobs/{job['id']}/events", params={"limit": 1})
    assert r.status_code == 200
    assert r.json()[-1]["status"] == "completed"


def test_failing_command_fails_job(client: TestClient):
    job = _manual(client, "echo nope >&2; exit 3")
    client.post(f"/jobs/{job['id']}/approve")

    ok = _wait_until(lambda: _job(client, job["id"])["status"] == "failed")
    assert ok, "Job did not fail in time"
    logs = _job(client, job["id"])["logs"]
    assert any("exit status 3" in line and "nope" in line for line in logs)


def test_runner_command_template_from_settings(client_factory):
    with client_factory(overrides={"FLOWCORE_RUNNER_COMMAND": "false"}) as client:
        job = _manual(client, "echo fine")
        client.post(f"/jobs/{job['id']}/approve")

        ok = _wait_until(lambda: _job(client, job["id"])["status"] == "failed")
        assert ok, "Job did not fail in time"


def test_submit_requirements_plans_in_background(client: TestClient):
    r = client.post("/jobs", json={"requirements": "1. Run tests\n2. Fix errors\n3. Deploy"})
    assert r.status_code == 201, r.text
    job_id = r.json()["id"]

    ok = _wait_until(lambda: _job(client, job_id)["status"] == "ready")
    assert ok, "Planning did not finish in time"

    plan = _job(client, job_id)["workflow_plan"]
    assert [n["title"] for n in plan["nodes"] if n["kind"] == "task"] == ["Run tests", "Fix errors", "Deploy"]

    r = client.get(f"/jobs/{job_id}/loops/suggestions")
    assert r.status_code == 200
    [suggestion] = r.json()
    assert (suggestion["start_task_id"], suggestion["end_task_id"]) == ("task1", "task2")

    r = client.post(f"/jobs/{job_id}/loops", json=suggestion)
    assert r.status_code == 201, r.text
    assert r.json()["current_attempt"] == 0

    r = client.get(f"/jobs/{job_id}/loops/suggestions")
    assert r.json() == []


def test_empty_requirements_rejected(client: TestClient):
    r = client.post("/jobs", json={"requirements": ""})
    assert r.status_code == 422

    r = client.post("/jobs", json={"requirements": "   "})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"


def test_unknown_job_returns_404(client: TestClient):
    r = client.get("/jobs/job-missing")
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"

    r = client.post("/jobs/job-missing/tasks/task1/complete", json={"generation": 0})
    assert r.status_code == 404


def test_illegal_transition_returns_409(client: TestClient):
    job = _manual(client, "echo one")

    r = client.post(f"/jobs/{job['id']}/pause")
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "INVALID_TRANSITION"
    assert body["details"]["status"] == "ready"


def test_graph_error_returns_400_and_plan_unchanged(client: TestClient):
    job = _manual(client, "echo one", "echo two")

    r = client.patch(f"/jobs/{job['id']}/plan/tasks/task1", json={"dependencies": ["task2"]})
    assert r.status_code == 400
    assert r.json()["code"] == "CYCLE_DETECTED"

    plan = _job(client, job["id"])["workflow_plan"]
    assert next(n for n in plan["nodes"] if n["id"] == "task1")["dependencies"] == ["start"]


def test_plan_editing_endpoints(client: TestClient):
    job = _manual(client, "echo one", "echo two")
    job_id = job["id"]

    r = client.post(
        f"/jobs/{job_id}/plan/tasks",
        json={"id": "side", "title": "side", "description": "echo side", "dependencies": ["task1"]},
    )
    assert r.status_code == 201, r.text
    end = next(n for n in r.json()["workflow_plan"]["nodes"] if n["id"] == "end")
    assert "side" in end["dependencies"]

    r = client.get(f"/jobs/{job_id}/parallel-groups")
    assert r.json() == {"groups": [["task2", "side"]]}

    r = client.delete(f"/jobs/{job_id}/plan/tasks/side")
    assert r.status_code == 200
    assert "side" not in [n["id"] for n in r.json()["workflow_plan"]["nodes"]]

    r = client.delete(f"/jobs/{job_id}/plan/tasks/start")
    assert r.status_code == 400


def test_stop_aborts_running_command(client: TestClient):
    job = _manual(client, "sleep 30")
    job_id = job["id"]
    client.post(f"/jobs/{job_id}/approve")

    r = client.post(f"/jobs/{job_id}/stop")
    assert r.status_code == 200, r.text
    stopped = r.json()
    assert stopped["status"] == "failed"
    assert stopped["generation"] == 1
    assert stopped["progress"] == 0

    r = client.post(f"/jobs/{job_id}/tasks/task1/complete", json={"generation": 0})
    assert r.status_code == 202
    assert r.json() == {"accepted": False}

    r = client.delete(f"/jobs/{job_id}")
    assert r.json() == {"id": job_id, "deleted": True}
    assert client.get(f"/jobs/{job_id}").status_code == 404


def test_external_runner_callback_completes_task(client: TestClient):
    job = _manual(client, "sleep 30")
    job_id = job["id"]
    client.post(f"/jobs/{job_id}/approve")

    r = client.post(f"/jobs/{job_id}/tasks/task1/complete", json={"generation": 7})
    assert r.status_code == 202

    r = client.post(f"/jobs/{job_id}/tasks/task1/fail", json={"generation": 0, "error": "reported by hand"})
    assert r.status_code == 200
    assert r.json() == {"accepted": True}

    failed = _job(client, job_id)
    assert failed["status"] == "failed"
    assert "Task failed: step 1: reported by hand" in failed["logs"]


def test_checkpoint_survives_restart(client_factory, tmp_path):
    db_path = tmp_path / "restart.db"

    with client_factory(db_path=db_path) as client:
        job = _manual(client, "sleep 30", "echo two")
        job_id = job["id"]
        client.post(f"/jobs/{job_id}/approve")
        r = client.post(f"/jobs/{job_id}/checkpoint")
        assert r.status_code == 200
        assert r.json()["status"] == "running"

    with client_factory(db_path=db_path) as client:
        restored = _job(client, job_id)
        assert restored["status"] == "ready"
        statuses = {n["id"]: n["status"] for n in restored["workflow_plan"]["nodes"]}
        assert statuses["task1"] == "pending"
        assert restored["logs"][-1] == "Restored after restart; approve to continue"
