"""Machine repository for database operations."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.db.models import MachineModel


class MachineRepository:
    """Repository for machine database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        name: str,
        hostname: str | None = None,
        platform: str | None = None,
        metrics: dict[str, Any] | None = None,
        machine_id: str | None = None,
    ) -> MachineModel:
        """Register a machine.

        Args:
            name: Display name
            hostname: Optional host name
            platform: Optional platform string (e.g. "linux")
            metrics: Initial metric snapshot
            machine_id: Optional specific machine ID

        Returns:
            The created MachineModel
        """
        model = MachineModel(
            name=name,
            hostname=hostname,
            platform=platform,
            metrics=metrics or {},
            metrics_updated_at=datetime.now(timezone.utc) if metrics else None,
        )
        if machine_id:
            model.machine_id = machine_id

        self.session.add(model)
        await self.session.flush()
        return model

    async def get(self, machine_id: str) -> MachineModel | None:
        result = await self.session.execute(
            select(MachineModel).where(MachineModel.machine_id == machine_id)
        )
        return result.scalar_one_or_none()

    async def exists(self, machine_id: str) -> bool:
        result = await self.session.execute(
            select(MachineModel.machine_id).where(MachineModel.machine_id == machine_id)
        )
        return result.scalar_one_or_none() is not None

    async def list_all(self) -> list[MachineModel]:
        result = await self.session.execute(
            select(MachineModel).order_by(MachineModel.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_many(self, machine_ids: list[str]) -> dict[str, MachineModel]:
        """Fetch machines by ID, keyed by machine_id."""
        if not machine_ids:
            return {}
        result = await self.session.execute(
            select(MachineModel).where(MachineModel.machine_id.in_(machine_ids))
        )
        return {m.machine_id: m for m in result.scalars().all()}

    async def update_metrics(
        self,
        machine_id: str,
        metrics: dict[str, Any],
    ) -> MachineModel | None:
        """Merge reported metric values into the machine's snapshot.

        Args:
            machine_id: The machine to update
            metrics: Metric name to value; merged over the previous snapshot

        Returns:
            Updated MachineModel if found
        """
        machine = await self.get(machine_id)
        if machine is None:
            return None

        merged = {**(machine.metrics or {}), **metrics}
        result = await self.session.execute(
            update(MachineModel)
            .where(MachineModel.machine_id == machine_id)
            .values(metrics=merged, metrics_updated_at=datetime.now(timezone.utc))
            .returning(MachineModel)
        )
        return result.scalar_one_or_none()
