"""Fleet registry and metric reporting."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cadence.db.engine import get_session
from cadence.db.repositories.machines import MachineRepository
from cadence.errors import NotFoundError, ValidationError
from cadence.models.api import MachineCreate
from cadence.services.serializers import machine_to_dict

logger = logging.getLogger(__name__)


class MachineService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def register(self, data: MachineCreate) -> dict[str, Any]:
        if not data.name.strip():
            raise ValidationError("name is required")
        async with get_session(self._session_factory) as session:
            model = await MachineRepository(session).create(
                name=data.name.strip(),
                hostname=data.hostname,
                platform=data.platform,
                metrics=data.metrics,
            )
        logger.info(f"Registered machine {model.machine_id} ({model.name})")
        return machine_to_dict(model)

    async def list_machines(self) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            models = await MachineRepository(session).list_all()
        return [machine_to_dict(m) for m in models]

    async def report_metrics(
        self, machine_id: str, metrics: dict[str, float]
    ) -> dict[str, Any]:
        """Merge reported metrics into the machine's snapshot.

        Threshold tasks see the new values on the next poll cycle.

        Raises:
            NotFoundError: if the machine does not exist
        """
        async with get_session(self._session_factory) as session:
            model = await MachineRepository(session).update_metrics(machine_id, metrics)
        if model is None:
            raise NotFoundError("Machine not found")
        return machine_to_dict(model)
