"""
Record fetchers for ingestion.

Each fetcher loads the originating CRM record for a (source_type, source_id)
key and returns the keyword arguments its extractor expects, or None when the
record no longer exists.
"""

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from supportrag.models import (
    Customer,
    CustomerIdentity,
    Email,
    Interaction,
    Order,
    QboCustomerSnapshot,
    QboEstimate,
    QboInvoice,
    Shipment,
    ShipstationShipment,
    SourceType,
    Ticket,
    TicketComment,
)
from supportrag.services.extractors import normalize_email

logger = logging.getLogger(__name__)

Payload = dict[str, Any]
Fetcher = Callable[[AsyncSession, str], Awaitable[Payload | None]]

AMAZON_SHIPMENT_PROVIDERS = ("amazon_fba", "amazon_mfn")


def _as_int(value: str) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def _customer_name(session: AsyncSession, customer_id: int | None) -> str | None:
    if customer_id is None:
        return None
    customer = await session.get(Customer, customer_id)
    return customer.display_name if customer else None


async def resolve_customer_id_for_emails(
    session: AsyncSession, emails: list[str | None]
) -> int | None:
    """
    Map message participants to a customer.

    Identity emails take precedence over customer primary emails; the first
    participant (sender before recipients) that maps to a customer wins.
    """
    normalized = [e for e in (normalize_email(email) for email in emails) if e]
    if not normalized:
        return None
    unique = list(dict.fromkeys(normalized))

    identity_rows = await session.execute(
        select(CustomerIdentity.email, CustomerIdentity.customer_id).where(
            CustomerIdentity.email.in_(unique)
        )
    )
    customer_rows = await session.execute(
        select(Customer.primary_email, Customer.id).where(Customer.primary_email.in_(unique))
    )

    mapping: dict[str, int] = {}
    for email, customer_id in [*identity_rows.all(), *customer_rows.all()]:
        if email:
            mapping.setdefault(email.lower(), customer_id)

    for email in normalized:
        if email in mapping:
            return mapping[email]
    return None


async def fetch_ticket(session: AsyncSession, source_id: str) -> Payload | None:
    ticket_id = _as_int(source_id)
    if ticket_id is None:
        return None
    ticket = await session.get(Ticket, ticket_id)
    return {"ticket": ticket} if ticket else None


async def fetch_ticket_comment(session: AsyncSession, source_id: str) -> Payload | None:
    comment_id = _as_int(source_id)
    if comment_id is None:
        return None
    comment = await session.get(TicketComment, comment_id)
    if not comment:
        return None
    ticket = await session.get(Ticket, comment.ticket_id) if comment.ticket_id else None
    return {"comment": comment, "ticket": ticket}


async def fetch_interaction(session: AsyncSession, source_id: str) -> Payload | None:
    interaction_id = _as_int(source_id)
    if interaction_id is None:
        return None
    interaction = await session.get(Interaction, interaction_id)
    return {"interaction": interaction} if interaction else None


async def fetch_email(session: AsyncSession, source_id: str) -> Payload | None:
    email = await session.get(Email, source_id)
    if not email:
        return None

    customer_id = email.customer_id
    if customer_id is None:
        customer_id = await resolve_customer_id_for_emails(
            session, [email.from_email, *(email.to_emails or []), *(email.cc_emails or [])]
        )
    return {"email": email, "customer_id": customer_id}


async def fetch_order(session: AsyncSession, source_id: str) -> Payload | None:
    conditions = [Order.external_id == source_id, Order.order_number == source_id]
    numeric_id = _as_int(source_id)
    if numeric_id is not None:
        conditions.append(Order.id == numeric_id)

    result = await session.execute(
        select(Order)
        .where(or_(*conditions))
        .options(selectinload(Order.items), selectinload(Order.customer))
        .limit(1)
    )
    order = result.scalar_one_or_none()
    if not order:
        return None
    return {"order": order, "items": list(order.items), "customer": order.customer}


async def fetch_qbo_invoice(session: AsyncSession, source_id: str) -> Payload | None:
    result = await session.execute(select(QboInvoice).where(QboInvoice.qbo_invoice_id == source_id))
    invoice = result.scalar_one_or_none()
    if not invoice:
        return None

    terms = None
    if invoice.customer_id is not None:
        snapshot = await session.execute(
            select(QboCustomerSnapshot.terms)
            .where(QboCustomerSnapshot.customer_id == invoice.customer_id)
            .limit(1)
        )
        terms = snapshot.scalar_one_or_none()

    return {
        "invoice": invoice,
        "customer_name": await _customer_name(session, invoice.customer_id),
        "terms": terms,
    }


async def fetch_qbo_estimate(session: AsyncSession, source_id: str) -> Payload | None:
    result = await session.execute(
        select(QboEstimate).where(QboEstimate.qbo_estimate_id == source_id)
    )
    estimate = result.scalar_one_or_none()
    if not estimate:
        return None
    return {
        "estimate": estimate,
        "customer_name": await _customer_name(session, estimate.customer_id),
    }


async def fetch_qbo_customer(session: AsyncSession, source_id: str) -> Payload | None:
    result = await session.execute(
        select(QboCustomerSnapshot).where(QboCustomerSnapshot.qbo_customer_id == source_id)
    )
    snapshot = result.scalar_one_or_none()
    if not snapshot:
        return None
    return {
        "snapshot": snapshot,
        "customer_name": await _customer_name(session, snapshot.customer_id),
    }


async def fetch_shopify_customer(session: AsyncSession, source_id: str) -> Payload | None:
    result = await session.execute(
        select(CustomerIdentity).where(
            CustomerIdentity.provider == "shopify",
            CustomerIdentity.external_id == source_id,
        )
    )
    identity = result.scalars().first()
    if not identity:
        return None
    customer = await session.get(Customer, identity.customer_id)
    if not customer:
        return None
    return {"identity": identity, "customer": customer}


async def fetch_shipstation_shipment(session: AsyncSession, source_id: str) -> Payload | None:
    shipment_id = _as_int(source_id)
    if shipment_id is None:
        return None
    result = await session.execute(
        select(ShipstationShipment).where(
            ShipstationShipment.shipstation_shipment_id == shipment_id
        )
    )
    shipment = result.scalar_one_or_none()
    return {"shipment": shipment} if shipment else None


async def fetch_amazon_shipment(session: AsyncSession, source_id: str) -> Payload | None:
    result = await session.execute(
        select(Shipment).where(
            Shipment.external_id == source_id,
            Shipment.provider.in_(AMAZON_SHIPMENT_PROVIDERS),
        )
    )
    shipment = result.scalars().first()
    return {"shipment": shipment} if shipment else None


FETCHERS: dict[SourceType, Fetcher] = {
    SourceType.TICKET: fetch_ticket,
    SourceType.TICKET_COMMENT: fetch_ticket_comment,
    SourceType.EMAIL: fetch_email,
    SourceType.INTERACTION: fetch_interaction,
    SourceType.QBO_INVOICE: fetch_qbo_invoice,
    SourceType.QBO_ESTIMATE: fetch_qbo_estimate,
    SourceType.QBO_CUSTOMER: fetch_qbo_customer,
    SourceType.SHOPIFY_ORDER: fetch_order,
    SourceType.AMAZON_ORDER: fetch_order,
    SourceType.ORDER: fetch_order,
    SourceType.SHOPIFY_CUSTOMER: fetch_shopify_customer,
    SourceType.SHIPSTATION_SHIPMENT: fetch_shipstation_shipment,
    SourceType.AMAZON_SHIPMENT: fetch_amazon_shipment,
}


async def fetch_source_payload(
    session: AsyncSession, source_type: SourceType, source_id: str
) -> Payload | None:
    fetcher = FETCHERS.get(source_type)
    if fetcher is None:
        logger.warning(f"No fetcher registered for source type {source_type}")
        return None
    return await fetcher(session, source_id)
