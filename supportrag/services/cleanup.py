"""
Orphan cleanup.

Deletes rag_sources rows whose CRM record no longer exists, and rows that lost
their customer while the record still has one. Chunks go with their source via
ON DELETE CASCADE.
"""

import logging

from sqlalchemy import String, and_, cast, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportrag.models import (
    Order,
    RagSource,
    Shipment,
    ShipstationShipment,
    SourceType,
    Ticket,
    TicketComment,
)
from supportrag.services.extractors import ORDER_PROVIDERS
from supportrag.services.fetchers import AMAZON_SHIPMENT_PROVIDERS

logger = logging.getLogger(__name__)

DEFAULT_LIMIT_PER_TYPE = 100


def _order_join_condition():
    by_provider = [
        and_(RagSource.source_type == source_type, Order.provider == provider)
        for provider, (source_type, _label) in ORDER_PROVIDERS.items()
    ]
    return and_(Order.external_id == RagSource.source_id, or_(*by_provider))


def _amazon_shipment_join_condition():
    return and_(
        Shipment.external_id == RagSource.source_id,
        Shipment.provider.in_(AMAZON_SHIPMENT_PROVIDERS),
    )


def _shipstation_join_condition():
    return cast(ShipstationShipment.shipstation_shipment_id, String) == RagSource.source_id


PROVIDER_ORDER_TYPES = [source_type for source_type, _label in ORDER_PROVIDERS.values()]

# name -> (source types, parent model, join condition)
MISSING_PARENT_CHECKS = {
    "ticket": (
        [SourceType.TICKET],
        Ticket,
        lambda: cast(Ticket.id, String) == RagSource.source_id,
    ),
    "ticket_comment": (
        [SourceType.TICKET_COMMENT],
        TicketComment,
        lambda: cast(TicketComment.id, String) == RagSource.source_id,
    ),
    "order": (PROVIDER_ORDER_TYPES, Order, _order_join_condition),
    "shipstation_shipment": (
        [SourceType.SHIPSTATION_SHIPMENT],
        ShipstationShipment,
        _shipstation_join_condition,
    ),
    "amazon_shipment": (
        [SourceType.AMAZON_SHIPMENT],
        Shipment,
        _amazon_shipment_join_condition,
    ),
}


async def _delete_sources(session: AsyncSession, ids: list) -> int:
    if not ids:
        return 0
    await session.execute(delete(RagSource).where(RagSource.id.in_(ids)))
    return len(ids)


async def delete_missing_parent_orphans(
    session: AsyncSession, name: str, limit: int = DEFAULT_LIMIT_PER_TYPE
) -> int:
    """Delete up to `limit` sources of one kind whose CRM record is gone."""
    source_types, parent, join_condition = MISSING_PARENT_CHECKS[name]
    result = await session.execute(
        select(RagSource.id)
        .outerjoin(parent, join_condition())
        .where(RagSource.source_type.in_(source_types), parent.id.is_(None))
        .limit(limit)
    )
    return await _delete_sources(session, list(result.scalars().all()))


async def delete_null_customer_orphans(
    session: AsyncSession, limit: int = DEFAULT_LIMIT_PER_TYPE
) -> int:
    """
    Delete sources with no customer whose CRM record does have one.

    Such rows belonged to a deleted customer. Left alone they would surface in
    allow_global searches, so they go even though the record itself survives.
    Sources whose record also has no customer are legitimate and kept.
    """
    per_check = max(limit // 4, 1)
    checks = [
        select(RagSource.id)
        .join(Ticket, cast(Ticket.id, String) == RagSource.source_id)
        .where(RagSource.source_type == SourceType.TICKET, Ticket.customer_id.is_not(None)),
        select(RagSource.id)
        .join(TicketComment, cast(TicketComment.id, String) == RagSource.source_id)
        .join(Ticket, Ticket.id == TicketComment.ticket_id)
        .where(
            RagSource.source_type == SourceType.TICKET_COMMENT,
            Ticket.customer_id.is_not(None),
        ),
        select(RagSource.id)
        .join(Order, _order_join_condition())
        .where(RagSource.source_type.in_(PROVIDER_ORDER_TYPES), Order.customer_id.is_not(None)),
        select(RagSource.id)
        .join(ShipstationShipment, _shipstation_join_condition())
        .where(
            RagSource.source_type == SourceType.SHIPSTATION_SHIPMENT,
            ShipstationShipment.customer_id.is_not(None),
        ),
        select(RagSource.id)
        .join(Shipment, _amazon_shipment_join_condition())
        .where(
            RagSource.source_type == SourceType.AMAZON_SHIPMENT,
            Shipment.customer_id.is_not(None),
        ),
    ]

    ids = []
    for query in checks:
        result = await session.execute(
            query.where(RagSource.customer_id.is_(None)).limit(per_check)
        )
        ids.extend(result.scalars().all())
    return await _delete_sources(session, ids)


async def cleanup_orphaned_sources(
    session: AsyncSession, limit_per_type: int = DEFAULT_LIMIT_PER_TYPE
) -> dict[str, int]:
    """Run every orphan check and commit. Returns deleted counts per check."""
    logger.info("Starting orphaned RAG source cleanup")
    deleted: dict[str, int] = {}
    try:
        for name in MISSING_PARENT_CHECKS:
            deleted[name] = await delete_missing_parent_orphans(session, name, limit_per_type)
        deleted["null_customer"] = await delete_null_customer_orphans(session, limit_per_type)
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception("Orphaned RAG source cleanup failed")
        raise

    logger.info(f"Orphan cleanup deleted {sum(deleted.values())} sources: {deleted}")
    return deleted
