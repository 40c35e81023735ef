"""Tests for WebhookRepository and MachineRepository database operations."""

from uuid import uuid4

import pytest

from cadence.db.models import WebhookType
from cadence.db.repositories.machines import MachineRepository
from cadence.db.repositories.webhooks import WebhookRepository

URL = "https://hooks.slack.com/services/T000/B000/XXXXXXXXXXXX"


class TestWebhookRepository:
    """Tests for WebhookRepository."""

    @pytest.fixture
    async def repo(self, db_session):
        return WebhookRepository(db_session)

    async def test_create_webhook(self, repo, db_session):
        webhook = await repo.create(
            name="Ops",
            webhook_type="slack",
            webhook_url=URL,
            event_types=["task_failed"],
        )
        await db_session.commit()

        assert webhook.webhook_id is not None
        assert webhook.webhook_type == WebhookType.SLACK
        assert webhook.event_types == ["task_failed"]
        assert webhook.failure_count == 0
        assert webhook.last_used_at is None
        assert webhook.enabled is True

    async def test_record_failure_increments(self, repo, db_session):
        webhook = await repo.create(
            name="Ops", webhook_type="generic", webhook_url=URL, event_types=[]
        )
        await db_session.commit()

        await repo.record_failure(webhook.webhook_id)
        updated = await repo.record_failure(webhook.webhook_id)
        await db_session.commit()

        assert updated.failure_count == 2
        assert updated.last_used_at is None

    async def test_record_success_resets(self, repo, db_session):
        webhook = await repo.create(
            name="Ops", webhook_type="generic", webhook_url=URL, event_types=[]
        )
        await repo.record_failure(webhook.webhook_id)
        await db_session.commit()

        updated = await repo.record_success(webhook.webhook_id)
        await db_session.commit()

        assert updated.failure_count == 0
        assert updated.last_used_at is not None

    async def test_update_ignores_failure_count(self, repo, db_session):
        webhook = await repo.create(
            name="Ops", webhook_type="generic", webhook_url=URL, event_types=[]
        )
        await repo.record_failure(webhook.webhook_id)
        await db_session.commit()

        updated = await repo.update(
            webhook.webhook_id, {"name": "Renamed", "failure_count": 0}
        )
        await db_session.commit()

        assert updated.name == "Renamed"
        assert updated.failure_count == 1

    async def test_list_candidates_scope(self, repo, db_session):
        machine = await MachineRepository(db_session).create(name="build-01")
        await repo.create(name="Global", webhook_type="generic", webhook_url=URL, event_types=[])
        await repo.create(
            name="Scoped",
            webhook_type="generic",
            webhook_url=URL,
            event_types=[],
            machine_id=machine.machine_id,
        )
        await repo.create(
            name="Off", webhook_type="generic", webhook_url=URL, event_types=[], enabled=False
        )
        await db_session.commit()

        assert [w.name for w in await repo.list_candidates(None)] == ["Global"]
        names = {w.name for w in await repo.list_candidates(machine.machine_id)}
        assert names == {"Global", "Scoped"}

    async def test_count_and_delete(self, repo, db_session):
        webhook = await repo.create(
            name="Ops", webhook_type="generic", webhook_url=URL, event_types=[]
        )
        await repo.create(
            name="Off", webhook_type="generic", webhook_url=URL, event_types=[], enabled=False
        )
        await db_session.commit()

        assert await repo.count() == {"total": 2, "enabled": 1}
        assert await repo.delete(webhook.webhook_id) is True
        assert await repo.delete(webhook.webhook_id) is False


class TestMachineRepository:
    """Tests for MachineRepository."""

    @pytest.fixture
    async def repo(self, db_session):
        return MachineRepository(db_session)

    async def test_update_metrics_merges(self, repo, db_session):
        machine = await repo.create(name="build-01", metrics={"health_score": 80})
        await db_session.commit()

        updated = await repo.update_metrics(machine.machine_id, {"issue_count": 4})
        await db_session.commit()

        assert updated.metrics == {"health_score": 80, "issue_count": 4}
        assert updated.metrics_updated_at is not None

    async def test_update_metrics_unknown_machine(self, repo):
        assert await repo.update_metrics(str(uuid4()), {"health_score": 1}) is None

    async def test_get_many(self, repo, db_session):
        a = await repo.create(name="a")
        b = await repo.create(name="b")
        await db_session.commit()

        found = await repo.get_many([a.machine_id, b.machine_id, str(uuid4())])
        assert set(found) == {a.machine_id, b.machine_id}
        assert await repo.exists(a.machine_id) is True
