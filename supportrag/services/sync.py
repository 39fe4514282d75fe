"""
Sync cursors.

Walks the CRM tables in (timestamp, id) keyset order from a per-source-type
watermark and enqueues an ingestion job for every changed record. Re-running
a sync is idempotent: the queue collapses duplicates onto the live job.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from supportrag.config import settings
from supportrag.models import (
    CustomerIdentity,
    Email,
    IngestionOperation,
    Interaction,
    Order,
    QboCustomerSnapshot,
    QboEstimate,
    QboInvoice,
    RagSyncCursor,
    Shipment,
    ShipstationShipment,
    SourceType,
    Ticket,
    TicketComment,
    utcnow,
)
from supportrag.services.extractors import ORDER_PROVIDERS
from supportrag.services.fetchers import AMAZON_SHIPMENT_PROVIDERS
from supportrag.services.ingestion import enqueue_ingestion_job

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

SourceKey = tuple[SourceType, str]


def _order_key(row) -> SourceKey:
    source_type = ORDER_PROVIDERS.get(row.provider, (SourceType.ORDER, "Order"))[0]
    return source_type, str(row.external_id or row.id)


@dataclass(frozen=True)
class SyncSpec:
    """How to page one CRM table and map its rows to ingestion keys."""

    cursor_type: SourceType
    model: Any
    timestamp_column: Any
    id_column: Any
    to_key: Callable[[Any], SourceKey | None]
    extra_columns: tuple = ()
    conditions: tuple = ()
    initial_id: int | str = 0


SYNC_SPECS: dict[SourceType, SyncSpec] = {
    spec.cursor_type: spec
    for spec in [
        SyncSpec(
            SourceType.TICKET,
            Ticket,
            Ticket.updated_at,
            Ticket.id,
            lambda row: (SourceType.TICKET, str(row.id)),
        ),
        SyncSpec(
            SourceType.TICKET_COMMENT,
            TicketComment,
            TicketComment.created_at,
            TicketComment.id,
            lambda row: (SourceType.TICKET_COMMENT, str(row.id)),
        ),
        SyncSpec(
            SourceType.INTERACTION,
            Interaction,
            Interaction.occurred_at,
            Interaction.id,
            lambda row: (SourceType.INTERACTION, str(row.id)),
        ),
        SyncSpec(
            SourceType.EMAIL,
            Email,
            Email.updated_at,
            Email.id,
            lambda row: (SourceType.EMAIL, row.id),
            initial_id="",
        ),
        SyncSpec(
            SourceType.ORDER,
            Order,
            Order.updated_at,
            Order.id,
            _order_key,
            extra_columns=(Order.provider, Order.external_id),
        ),
        SyncSpec(
            SourceType.SHOPIFY_CUSTOMER,
            CustomerIdentity,
            CustomerIdentity.updated_at,
            CustomerIdentity.id,
            lambda row: (SourceType.SHOPIFY_CUSTOMER, row.external_id) if row.external_id else None,
            extra_columns=(CustomerIdentity.external_id,),
            conditions=(CustomerIdentity.provider == "shopify",),
        ),
        SyncSpec(
            SourceType.QBO_INVOICE,
            QboInvoice,
            QboInvoice.updated_at,
            QboInvoice.id,
            lambda row: (SourceType.QBO_INVOICE, row.qbo_invoice_id),
            extra_columns=(QboInvoice.qbo_invoice_id,),
        ),
        SyncSpec(
            SourceType.QBO_ESTIMATE,
            QboEstimate,
            QboEstimate.updated_at,
            QboEstimate.id,
            lambda row: (SourceType.QBO_ESTIMATE, row.qbo_estimate_id),
            extra_columns=(QboEstimate.qbo_estimate_id,),
        ),
        SyncSpec(
            SourceType.QBO_CUSTOMER,
            QboCustomerSnapshot,
            QboCustomerSnapshot.snapshot_taken_at,
            QboCustomerSnapshot.id,
            lambda row: (SourceType.QBO_CUSTOMER, row.qbo_customer_id),
            extra_columns=(QboCustomerSnapshot.qbo_customer_id,),
        ),
        SyncSpec(
            SourceType.SHIPSTATION_SHIPMENT,
            ShipstationShipment,
            ShipstationShipment.updated_at,
            ShipstationShipment.id,
            lambda row: (SourceType.SHIPSTATION_SHIPMENT, str(row.shipstation_shipment_id)),
            extra_columns=(ShipstationShipment.shipstation_shipment_id,),
        ),
        SyncSpec(
            SourceType.AMAZON_SHIPMENT,
            Shipment,
            Shipment.updated_at,
            Shipment.id,
            lambda row: (SourceType.AMAZON_SHIPMENT, row.external_id),
            extra_columns=(Shipment.external_id,),
            conditions=(Shipment.provider.in_(AMAZON_SHIPMENT_PROVIDERS),),
        ),
    ]
}

# Order rows fan out to shopify_order / amazon_order / order under one cursor
CURSOR_ALIASES = {
    SourceType.SHOPIFY_ORDER: SourceType.ORDER,
    SourceType.AMAZON_ORDER: SourceType.ORDER,
}


def spec_for(source_type: SourceType) -> SyncSpec:
    return SYNC_SPECS[CURSOR_ALIASES.get(source_type, source_type)]


# ============================================================================
# Cursors
# ============================================================================


def parse_cursor(spec: SyncSpec, cursor_value: dict | None) -> tuple[datetime, int | str]:
    cursor_value = cursor_value or {}
    raw_timestamp = cursor_value.get("lastUpdatedAt")
    timestamp = datetime.fromisoformat(raw_timestamp) if raw_timestamp else EPOCH
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    last_id = cursor_value.get("lastId")
    return timestamp, spec.initial_id if last_id is None else last_id


async def get_cursor(session: AsyncSession, source_type: SourceType) -> RagSyncCursor | None:
    return await session.get(RagSyncCursor, source_type)


async def update_cursor(
    session: AsyncSession,
    source_type: SourceType,
    cursor_value: dict[str, Any],
    items_synced: int,
) -> None:
    now = utcnow()
    stmt = pg_insert(RagSyncCursor).values(
        source_type=source_type,
        cursor_value=cursor_value,
        items_synced=items_synced,
        last_success_at=now,
        last_error=None,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[RagSyncCursor.source_type],
        set_={
            "cursor_value": stmt.excluded.cursor_value,
            "items_synced": stmt.excluded.items_synced,
            "last_success_at": stmt.excluded.last_success_at,
            "last_error": None,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt)
    await session.commit()


async def mark_cursor_error(session: AsyncSession, source_type: SourceType, error: str) -> None:
    """Record a sync failure without moving the watermark."""
    now = utcnow()
    stmt = pg_insert(RagSyncCursor).values(
        source_type=source_type,
        cursor_value={},
        items_synced=0,
        last_error=error,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[RagSyncCursor.source_type],
        set_={"last_error": error, "updated_at": now},
    )
    await session.execute(stmt)
    await session.commit()


# ============================================================================
# Sync
# ============================================================================


@dataclass
class SyncResult:
    enqueued: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


async def sync_source(
    session: AsyncSession,
    source_type: SourceType,
    operation: IngestionOperation = IngestionOperation.UPSERT,
    page_size: int | None = None,
    max_pages: int | None = None,
    start_at: datetime | None = None,
) -> int:
    """
    Enqueue jobs for records changed since the cursor (or since start_at).

    max_pages=None with start_at set walks the whole table, as a reindex does.
    Returns the number of jobs enqueued.
    """
    spec = spec_for(source_type)
    page_size = page_size or settings.sync_page_size
    if max_pages is None and start_at is None:
        max_pages = settings.sync_max_pages

    if start_at is not None:
        last_timestamp, last_id = start_at, spec.initial_id
    else:
        cursor = await get_cursor(session, spec.cursor_type)
        last_timestamp, last_id = parse_cursor(spec, cursor.cursor_value if cursor else None)

    items_synced = 0
    page = 0
    while max_pages is None or page < max_pages:
        result = await session.execute(
            select(spec.timestamp_column, spec.id_column, *spec.extra_columns)
            .where(
                or_(
                    spec.timestamp_column > last_timestamp,
                    and_(spec.timestamp_column == last_timestamp, spec.id_column > last_id),
                ),
                *spec.conditions,
            )
            .order_by(spec.timestamp_column.asc(), spec.id_column.asc())
            .limit(page_size)
        )
        rows = result.all()
        if not rows:
            break

        for row in rows:
            key = spec.to_key(row)
            if key is None:
                continue
            await enqueue_ingestion_job(session, key[0], key[1], operation)
            items_synced += 1

        last_timestamp, last_id = rows[-1][0], rows[-1][1]
        page += 1

    # Reindex walks leave the incremental watermark alone
    if start_at is None:
        await update_cursor(
            session,
            spec.cursor_type,
            {"lastUpdatedAt": last_timestamp.isoformat(), "lastId": last_id},
            items_synced,
        )
    logger.info(
        f"Synced {spec.cursor_type.value}: enqueued={items_synced}, pages={page}, "
        f"watermark={last_timestamp.isoformat()}/{last_id}"
    )
    return items_synced


async def sync_all(
    session: AsyncSession, source_types: list[SourceType] | None = None
) -> SyncResult:
    """Run every cursor; one failing source type does not stop the others."""
    cursor_types = list(
        dict.fromkeys(spec_for(t).cursor_type for t in (source_types or list(SYNC_SPECS)))
    )
    outcome = SyncResult()
    for cursor_type in cursor_types:
        try:
            outcome.enqueued[cursor_type.value] = await sync_source(session, cursor_type)
        except Exception as e:
            logger.exception(f"Sync failed for {cursor_type.value}")
            await session.rollback()
            await mark_cursor_error(session, cursor_type, str(e))
            outcome.errors[cursor_type.value] = str(e)
    return outcome


# ============================================================================
# Reindex
# ============================================================================


async def reindex_source_type(
    session: AsyncSession, source_type: SourceType, since_days: int | None = None
) -> int:
    """Force re-embedding for every record of a type, optionally only recent ones."""
    start_at = utcnow() - timedelta(days=since_days) if since_days else EPOCH
    return await sync_source(
        session, source_type, operation=IngestionOperation.REINDEX, start_at=start_at
    )


async def customer_source_keys(session: AsyncSession, customer_id: int) -> list[SourceKey]:
    """Every ingestion key that belongs to one customer."""
    keys: list[SourceKey] = []

    async def collect(query, to_key: Callable[[Any], SourceKey | None]) -> None:
        result = await session.execute(query)
        keys.extend(k for k in (to_key(row) for row in result.all()) if k)

    ticket_ids = select(Ticket.id).where(Ticket.customer_id == customer_id)
    await collect(ticket_ids, lambda row: (SourceType.TICKET, str(row.id)))
    await collect(
        select(TicketComment.id).where(TicketComment.ticket_id.in_(ticket_ids.scalar_subquery())),
        lambda row: (SourceType.TICKET_COMMENT, str(row.id)),
    )
    await collect(
        select(Interaction.id).where(Interaction.customer_id == customer_id),
        lambda row: (SourceType.INTERACTION, str(row.id)),
    )
    await collect(
        select(Email.id).where(Email.customer_id == customer_id),
        lambda row: (SourceType.EMAIL, row.id),
    )
    await collect(
        select(Order.id, Order.provider, Order.external_id).where(
            Order.customer_id == customer_id
        ),
        _order_key,
    )
    await collect(
        select(QboCustomerSnapshot.qbo_customer_id).where(
            QboCustomerSnapshot.customer_id == customer_id
        ),
        lambda row: (SourceType.QBO_CUSTOMER, row.qbo_customer_id),
    )
    await collect(
        select(QboInvoice.qbo_invoice_id).where(QboInvoice.customer_id == customer_id),
        lambda row: (SourceType.QBO_INVOICE, row.qbo_invoice_id),
    )
    await collect(
        select(QboEstimate.qbo_estimate_id).where(QboEstimate.customer_id == customer_id),
        lambda row: (SourceType.QBO_ESTIMATE, row.qbo_estimate_id),
    )
    await collect(
        select(ShipstationShipment.shipstation_shipment_id).where(
            ShipstationShipment.customer_id == customer_id
        ),
        lambda row: (SourceType.SHIPSTATION_SHIPMENT, str(row.shipstation_shipment_id)),
    )
    await collect(
        select(Shipment.external_id).where(
            Shipment.customer_id == customer_id,
            Shipment.provider.in_(AMAZON_SHIPMENT_PROVIDERS),
        ),
        lambda row: (SourceType.AMAZON_SHIPMENT, row.external_id),
    )
    await collect(
        select(CustomerIdentity.external_id).where(
            CustomerIdentity.customer_id == customer_id,
            CustomerIdentity.provider == "shopify",
        ),
        lambda row: (SourceType.SHOPIFY_CUSTOMER, row.external_id) if row.external_id else None,
    )
    return keys


async def reindex_customer(session: AsyncSession, customer_id: int) -> dict[str, int]:
    """Enqueue reindex jobs for all of a customer's records; counts per source type."""
    counts: dict[str, int] = {}
    for source_type, source_id in await customer_source_keys(session, customer_id):
        await enqueue_ingestion_job(session, source_type, source_id, IngestionOperation.REINDEX)
        counts[source_type.value] = counts.get(source_type.value, 0) + 1
    logger.info(f"Queued reindex for customer {customer_id}: {counts}")
    return counts
