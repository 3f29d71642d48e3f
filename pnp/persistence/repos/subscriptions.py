from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from pnp.domain.models import Subscription, Watch


async def create_subscription(
    session: AsyncSession,
    *,
    record_id: str,
    name: str,
    href: str,
    target_address: str,
    target_token: str | None,
    expiration: datetime | None,
) -> Subscription:
    subscription = Subscription(
        record_id=record_id,
        name=name,
        href=href,
        target_address=target_address,
        target_token=target_token,
        expiration=expiration,
        failure_count=0,
        disabled=False,
    )
    session.add(subscription)
    return subscription


async def create_watch(
    session: AsyncSession,
    *,
    record_id: str,
    subscription_url: str,
    kind: str,
    path: str = "",
    crn_masks: list[str] | None = None,
    record_ids: list[str] | None = None,
    tags: list[str] | None = None,
) -> Watch:
    watch = Watch(
        record_id=record_id,
        subscription_url=subscription_url,
        kind=kind,
        path=path,
        crn_masks=list(crn_masks or []),
        record_ids=list(record_ids or []),
        tags=list(tags or []),
    )
    session.add(watch)
    return watch


async def get_subscription(session: AsyncSession, record_id: str) -> Subscription | None:
    return await session.get(Subscription, record_id)


async def get_subscription_by_href(session: AsyncSession, href: str) -> Subscription | None:
    # Watches hold the URL only; resolve it at delivery time.
    result = await session.execute(select(Subscription).where(Subscription.href == href))
    return result.scalar_one_or_none()


async def list_watches_by_kind(session: AsyncSession, kind: str) -> list[Watch]:
    result = await session.execute(select(Watch).where(Watch.kind == kind).order_by(Watch.record_id))
    return list(result.scalars().all())


async def purge_expired_subscriptions(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(
        select(Subscription).where(Subscription.expiration.is_not(None), Subscription.expiration <= now)
    )
    expired = list(result.scalars().all())
    if not expired:
        return 0
    hrefs = [subscription.href for subscription in expired]
    await session.execute(delete(Watch).where(Watch.subscription_url.in_(hrefs)))
    await session.execute(
        delete(Subscription).where(Subscription.record_id.in_([subscription.record_id for subscription in expired]))
    )
    return len(expired)
