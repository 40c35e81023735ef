"""Tests for the task and status endpoints."""

import asyncio

import pytest

CRON_TASK = {
    "name": "Nightly",
    "taskType": "analyze_context",
    "scheduleType": "cron",
    "cronExpression": "0 2 * * *",
}


class TestCreateTask:
    async def test_create_cron_task(self, client):
        response = await client.post("/tasks", json=CRON_TASK)

        assert response.status_code == 201
        task = response.json()["task"]
        assert task["name"] == "Nightly"
        assert task["enabled"] is True
        assert task["scheduleType"] == "cron"
        assert task["cronExpression"] == "0 2 * * *"
        assert task["scheduleDescription"] == "Every day at 2:00 AM"
        assert task["nextRunAt"] is not None
        assert task["intervalHours"] is None

    async def test_name_required(self, client):
        body = {**CRON_TASK}
        del body["name"]

        response = await client.post("/tasks", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "name is required"}

    async def test_cron_expression_required(self, client):
        body = {**CRON_TASK, "cronExpression": None}

        response = await client.post("/tasks", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "cronExpression is required"}

    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"taskType": "mine_bitcoin"}, "taskType must be one of:"),
            ({"scheduleType": "sometimes"}, "scheduleType must be one of:"),
            ({"cronExpression": "0 2 * *"}, "Invalid cron expression: expected 5 fields, got 4"),
            (
                {"scheduleType": "interval", "intervalHours": 0},
                "intervalHours must be a positive integer",
            ),
            (
                {"scheduleType": "threshold", "thresholdMetric": "health_score"},
                "thresholdMetric, thresholdValue and thresholdOp are required",
            ),
        ],
    )
    async def test_validation_errors(self, client, overrides, error):
        response = await client.post("/tasks", json={**CRON_TASK, **overrides})

        assert response.status_code == 400
        assert response.json()["error"].startswith(error)

    async def test_interval_task(self, client):
        response = await client.post(
            "/tasks",
            json={
                "name": "Sweep",
                "taskType": "custom",
                "scheduleType": "interval",
                "intervalHours": 6,
                "cronExpression": "ignored",
            },
        )

        task = response.json()["task"]
        assert task["intervalHours"] == 6
        assert task["cronExpression"] is None
        assert task["scheduleDescription"] == "Every 6 hours"

    async def test_unknown_machine(self, client):
        response = await client.post("/tasks", json={**CRON_TASK, "machineId": "nope"})

        assert response.status_code == 404
        assert response.json() == {"error": "Machine not found"}

    async def test_duplicate_name(self, client):
        await client.post("/tasks", json=CRON_TASK)
        response = await client.post("/tasks", json=CRON_TASK)

        assert response.status_code == 409
        assert response.json() == {"error": "A task named 'Nightly' already exists"}

    async def test_disabled_task_has_no_next_run(self, client):
        response = await client.post("/tasks", json={**CRON_TASK, "enabled": False})

        task = response.json()["task"]
        assert task["enabled"] is False
        assert task["nextRunAt"] is None


class TestReadTasks:
    async def test_get_unknown(self, client):
        response = await client.get("/tasks/missing")

        assert response.status_code == 404
        assert response.json() == {"error": "Task not found"}

    async def test_list_filters(self, client, make_task):
        await make_task(name="Health", task_type="health_check")
        await make_task(name="Off", enabled=False)

        response = await client.get("/tasks", params={"taskType": "health_check"})
        assert [t["name"] for t in response.json()["tasks"]] == ["Health"]

        response = await client.get("/tasks", params={"enabled": "false"})
        assert [t["name"] for t in response.json()["tasks"]] == ["Off"]

    async def test_list_includes_recent_runs(self, client, app, make_task):
        task_id = await make_task(task_config={"tokensSaved": 300})
        await client.post(f"/tasks/{task_id}/run")
        await app.state.engine.drain()

        response = await client.get("/tasks")

        task = response.json()["tasks"][0]
        assert len(task["recentExecutions"]) == 1
        assert task["stats"] == {
            "recentRuns": 1,
            "successfulRuns": 1,
            "failedRuns": 0,
            "totalTokensSaved": 300,
        }

    async def test_detail_stats(self, client, app, make_task):
        task_id = await make_task(task_config={"tokensSaved": 300, "projectsProcessed": 2})
        await client.post(f"/tasks/{task_id}/run")
        await app.state.engine.drain()

        response = await client.get(f"/tasks/{task_id}")

        task = response.json()["task"]
        assert len(task["executions"]) == 1
        assert task["stats"]["totalRuns"] == 1
        assert task["stats"]["totalTokensSaved"] == 300
        assert task["stats"]["totalProjectsProcessed"] == 2


class TestUpdateTask:
    async def test_partial_update(self, client, make_task):
        task_id = await make_task()

        response = await client.patch(
            f"/tasks/{task_id}", json={"description": "new", "notifyOnSuccess": False}
        )

        task = response.json()["task"]
        assert task["description"] == "new"
        assert task["notifyOnSuccess"] is False
        assert task["name"] == "Nightly Health"

    async def test_switch_schedule_type_requires_fields(self, client, make_task):
        task_id = await make_task()

        response = await client.patch(f"/tasks/{task_id}", json={"scheduleType": "cron"})

        assert response.status_code == 400
        assert response.json() == {"error": "cronExpression is required"}

    async def test_switch_to_interval(self, client, make_task):
        task_id = await make_task()

        response = await client.patch(
            f"/tasks/{task_id}", json={"scheduleType": "interval", "intervalHours": 12}
        )

        task = response.json()["task"]
        assert task["scheduleType"] == "interval"
        assert task["intervalHours"] == 12
        assert task["nextRunAt"] is not None

    async def test_disable_clears_next_run(self, client, make_task):
        task_id = await make_task(schedule_type="interval", interval_hours=2)

        response = await client.patch(f"/tasks/{task_id}", json={"enabled": False})

        assert response.json()["task"]["nextRunAt"] is None

    async def test_update_unknown(self, client):
        response = await client.patch("/tasks/missing", json={"name": "x"})
        assert response.status_code == 404


class TestDeleteTask:
    async def test_delete_keeps_history(self, client, app, make_task):
        """Deleted tasks disappear from listings but their executions remain."""
        task_id = await make_task()
        run = await client.post(f"/tasks/{task_id}/run")
        await app.state.engine.drain()

        response = await client.delete(f"/tasks/{task_id}")
        assert response.json() == {"success": True, "message": "Task deleted successfully"}

        assert (await client.get(f"/tasks/{task_id}")).status_code == 404
        assert (await client.get("/tasks")).json()["tasks"] == []
        execution = await client.get(f"/executions/{run.json()['executionId']}")
        assert execution.status_code == 200
        assert execution.json()["execution"]["task"]["id"] == task_id

    async def test_delete_unknown(self, client):
        response = await client.delete("/tasks/missing")
        assert response.status_code == 404


class TestRunTask:
    async def test_run_and_single_flight(self, client, gate, make_task, make_machine):
        machine_id = await make_machine()
        task_id = await make_task(
            name="Context Sweep", task_type="analyze_context", machine_id=machine_id
        )

        response = await client.post(f"/tasks/{task_id}/run")

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "running"
        assert body["triggerType"] == "manual"
        assert body["taskName"] == "Context Sweep"
        assert body["machineName"] == "build-01"
        assert body["message"] == "Task execution started"

        await asyncio.wait_for(gate.entered.wait(), timeout=5)
        second = await client.post(f"/tasks/{task_id}/run")
        assert second.status_code == 409
        assert second.json() == {"error": "Task already has an execution in progress"}

    async def test_run_with_trigger_type(self, client, make_task):
        task_id = await make_task()

        response = await client.post(f"/tasks/{task_id}/run", json={"triggerType": "webhook"})

        assert response.status_code == 202
        assert response.json()["triggerType"] == "webhook"

    async def test_run_disabled(self, client, make_task):
        task_id = await make_task(enabled=False)

        response = await client.post(f"/tasks/{task_id}/run")

        assert response.status_code == 409
        assert response.json() == {"error": "Task is disabled"}

    async def test_run_unknown(self, client):
        response = await client.post("/tasks/missing/run")
        assert response.status_code == 404


class TestStatus:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "ok"}

    async def test_status_counts(self, client, gate, make_task, make_webhook):
        await make_webhook(enabled=False)
        await client.post(
            "/tasks",
            json={
                "name": "Idle",
                "taskType": "custom",
                "scheduleType": "interval",
                "intervalHours": 3,
            },
        )
        running_id = await make_task(name="Busy", task_type="analyze_context")
        await client.post(f"/tasks/{running_id}/run")
        await asyncio.wait_for(gate.entered.wait(), timeout=5)

        body = (await client.get("/status")).json()

        assert body["scheduler"]["running"] is False
        assert body["tasks"] == {"total": 2, "enabled": 2, "disabled": 0}
        assert body["webhooks"] == {"total": 1, "enabled": 0}
        assert body["today"]["running"] == 1
        assert [r["taskName"] for r in body["running"]] == ["Busy"]
        assert body["next"]["taskName"] == "Idle"

    async def test_upcoming_windows(self, client):
        await client.post(
            "/tasks",
            json={
                "name": "Soon",
                "taskType": "custom",
                "scheduleType": "interval",
                "intervalHours": 4,
            },
        )

        body = (await client.get("/upcoming", params={"hours": 24})).json()

        assert [t["name"] for t in body["upcoming"]] == ["Soon"]
        assert [t["name"] for t in body["windows"]["nextHour"]] == ["Soon"]
        assert body["summary"]["total"] == 1
        assert body["queryPeriod"]["hours"] == 24

    @pytest.mark.parametrize("hours", [0, 169])
    async def test_upcoming_hours_bounds(self, client, hours):
        response = await client.get("/upcoming", params={"hours": hours})

        assert response.status_code == 400
        assert response.json() == {"error": "hours must be between 1 and 168"}
