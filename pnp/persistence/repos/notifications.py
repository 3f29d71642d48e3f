from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pnp.domain.models import Notification


async def get_notification_for_update(session: AsyncSession, record_id: str) -> Notification | None:
    # Row lock serializes concurrent writers of the same (source, source_id, crn).
    result = await session.execute(
        select(Notification).where(Notification.record_id == record_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def list_by_source_record(session: AsyncSession, *, source: str, source_id: str) -> list[Notification]:
    result = await session.execute(
        select(Notification)
        .where(Notification.source == source, Notification.source_id == source_id)
        .order_by(Notification.record_id)
    )
    return list(result.scalars().all())


async def list_by_incident(session: AsyncSession, *, incident_id: str) -> list[Notification]:
    # All BSPNs of one incident, regardless of their individual source ids.
    result = await session.execute(
        select(Notification)
        .where(Notification.incident_id == incident_id, Notification.type == "incident")
        .order_by(Notification.record_id)
    )
    return list(result.scalars().all())


async def list_by_source(session: AsyncSession, source: str) -> list[Notification]:
    result = await session.execute(
        select(Notification).where(Notification.source == source).order_by(Notification.record_id)
    )
    return list(result.scalars().all())
