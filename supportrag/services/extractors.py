"""
Source extraction.

One extractor per SourceType turns an originating CRM record into a
RagSourceInput: the canonical text, links, scope columns and identifier
metadata that ingestion stores and chunks.
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable
from uuid import UUID

from pydantic import BaseModel

from supportrag.config import settings
from supportrag.models import (
    Customer,
    CustomerIdentity,
    Email,
    Interaction,
    Order,
    OrderItem,
    QboCustomerSnapshot,
    QboEstimate,
    QboInvoice,
    Sensitivity,
    Shipment,
    ShipstationShipment,
    SourceType,
    Ticket,
    TicketComment,
    utcnow,
)
from supportrag.services.cleaning import (
    clean_email_text,
    clean_structured_text,
    clean_ticket_text,
)
from supportrag.services.intent import extract_identifiers

MISSING = "n/a"


class RagSourceInput(BaseModel):
    """Uniform extractor output, stored as one rag_sources row."""

    source_type: SourceType
    source_id: str
    source_uri: str
    customer_id: int | None = None
    ticket_id: int | None = None
    thread_id: str | None = None
    parent_id: UUID | None = None
    sensitivity: Sensitivity = Sensitivity.PUBLIC
    owner_user_id: str | None = None
    title: str | None = None
    content_text: str
    metadata: dict[str, Any] = {}
    source_created_at: datetime
    source_updated_at: datetime | None = None


# ============================================================================
# Formatting helpers
# ============================================================================


def format_currency(value: Decimal | str | float | None, currency: str = "USD") -> str:
    if value is None:
        return f"{currency} 0"
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return f"{currency} {value}"
    return f"{currency} {amount:.2f}"


def format_date(value: date | datetime | None) -> str:
    if value is None:
        return MISSING
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def normalize_email(email: str | None) -> str | None:
    return email.strip().lower() if email and email.strip() else None


def as_datetime(value: date | datetime | None) -> datetime | None:
    """Promote a calendar date to midnight UTC; datetimes pass through."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def json_safe(value: Any) -> Any:
    """Coerce dates and decimals so metadata can be stored as JSONB."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def merge_identifiers(*parts: str | None) -> dict[str, Any]:
    """First identifier of each kind found across the given text fragments."""
    identifiers = extract_identifiers("\n".join(p for p in parts if p))
    return {
        "orderNumber": next(iter(identifiers.order_numbers), None),
        "invoiceNumber": next(iter(identifiers.invoice_numbers), None),
        "poNumber": next(iter(identifiers.po_numbers), None),
        "trackingNumber": next(iter(identifiers.tracking_numbers), None),
        "sku": next(iter(identifiers.skus), None),
        "itemSkus": list(identifiers.skus),
    }


def _customer_uri(customer_id: int | None) -> str:
    return f"/customers/{customer_id}" if customer_id else "/customers"


# ============================================================================
# Narrative sources
# ============================================================================


def extract_ticket(ticket: Ticket) -> RagSourceInput:
    identifier_meta = merge_identifiers(
        ticket.title, ticket.description, ticket.order_number, ticket.tracking_number
    )
    lines = [
        f"Ticket #{ticket.id}: {ticket.title}",
        f"Status: {ticket.status}",
        f"Priority: {ticket.priority}",
        f"Type: {ticket.type}" if ticket.type else "",
        ticket.description or "",
        f"Order: {ticket.order_number}" if ticket.order_number else "",
        f"Tracking: {ticket.tracking_number}" if ticket.tracking_number else "",
    ]

    return RagSourceInput(
        source_type=SourceType.TICKET,
        source_id=str(ticket.id),
        source_uri=f"/tickets/{ticket.id}",
        customer_id=ticket.customer_id,
        ticket_id=ticket.id,
        thread_id=ticket.conversation_id or f"ticket-{ticket.id}",
        sensitivity=Sensitivity.PUBLIC,
        owner_user_id=ticket.assignee_id or ticket.reporter_id,
        title=ticket.title,
        content_text=clean_ticket_text("\n".join(line for line in lines if line)),
        metadata={
            **identifier_meta,
            "ticketId": ticket.id,
            "status": ticket.status,
            "priority": ticket.priority,
            "type": ticket.type,
            "orderNumber": ticket.order_number or identifier_meta["orderNumber"],
            "trackingNumber": ticket.tracking_number or identifier_meta["trackingNumber"],
            "senderEmail": ticket.sender_email,
            "senderName": ticket.sender_name,
            "senderPhone": ticket.sender_phone,
            "sentiment": ticket.sentiment,
            "conversationId": ticket.conversation_id,
        },
        source_created_at=ticket.created_at,
        source_updated_at=ticket.updated_at,
    )


def extract_ticket_comment(comment: TicketComment, ticket: Ticket | None) -> RagSourceInput:
    customer_id = ticket.customer_id if ticket else None
    thread_id = (ticket.conversation_id if ticket else None) or f"ticket-{comment.ticket_id}"

    return RagSourceInput(
        source_type=SourceType.TICKET_COMMENT,
        source_id=str(comment.id),
        source_uri=f"/tickets/{comment.ticket_id}#comment-{comment.id}",
        customer_id=customer_id,
        ticket_id=comment.ticket_id,
        thread_id=thread_id,
        sensitivity=Sensitivity.INTERNAL if comment.is_internal_note else Sensitivity.PUBLIC,
        owner_user_id=comment.commenter_id,
        title=f"Ticket #{comment.ticket_id} comment",
        content_text=clean_ticket_text(comment.comment_text),
        metadata={
            "ticketId": comment.ticket_id,
            "commentId": comment.id,
            "isFromCustomer": comment.is_from_customer,
            "isInternalNote": comment.is_internal_note,
            "isOutgoingReply": comment.is_outgoing_reply,
            "externalMessageId": comment.external_message_id,
            **merge_identifiers(comment.comment_text),
        },
        source_created_at=comment.created_at,
    )


def extract_interaction(interaction: Interaction) -> RagSourceInput:
    summary = f"Interaction ({interaction.channel}, {interaction.direction})"
    details = (
        json.dumps(json_safe(interaction.details), sort_keys=True) if interaction.details else ""
    )
    if interaction.ticket_id:
        source_uri = f"/tickets/{interaction.ticket_id}"
    else:
        source_uri = _customer_uri(interaction.customer_id)

    return RagSourceInput(
        source_type=SourceType.INTERACTION,
        source_id=str(interaction.id),
        source_uri=source_uri,
        customer_id=interaction.customer_id,
        ticket_id=interaction.ticket_id,
        thread_id=f"ticket-{interaction.ticket_id}" if interaction.ticket_id else None,
        sensitivity=Sensitivity.INTERNAL,
        title=summary,
        content_text=clean_ticket_text(f"{summary}\n{details}"),
        metadata={
            "interactionId": interaction.id,
            "channel": interaction.channel,
            "direction": interaction.direction,
            "ticketId": interaction.ticket_id,
            "commentId": interaction.comment_id,
            "metadata": json_safe(interaction.details),
        },
        source_created_at=interaction.occurred_at,
    )


def extract_email(email: Email, customer_id: int | None) -> RagSourceInput:
    cleaned = clean_email_text(email.body_html or email.body_preview or "")
    subject = email.subject or "Email"

    return RagSourceInput(
        source_type=SourceType.EMAIL,
        source_id=email.id,
        source_uri=email.web_link or _customer_uri(customer_id),
        customer_id=customer_id,
        thread_id=email.conversation_id or email.internet_message_id or email.id,
        sensitivity=Sensitivity.PUBLIC,
        title=subject,
        content_text=cleaned,
        metadata={
            "subject": subject,
            "fromEmail": normalize_email(email.from_email),
            "toEmails": [normalize_email(e) for e in email.to_emails or [] if e],
            "ccEmails": [normalize_email(e) for e in email.cc_emails or [] if e],
            "internetMessageId": email.internet_message_id,
            "inReplyTo": email.in_reply_to,
            "conversationId": email.conversation_id,
            **merge_identifiers(subject, cleaned),
        },
        source_created_at=email.received_at or email.sent_at or utcnow(),
        source_updated_at=email.sent_at,
    )


# ============================================================================
# Structured sources
# ============================================================================

ORDER_PROVIDERS = {
    "shopify": (SourceType.SHOPIFY_ORDER, "Shopify"),
    "amazon": (SourceType.AMAZON_ORDER, "Amazon"),
}


def order_source_id(order: Order) -> str:
    return str(order.external_id or order.id)


def extract_order(
    order: Order, items: list[OrderItem], customer: Customer | None = None
) -> RagSourceInput:
    source_type, provider_label = ORDER_PROVIDERS.get(order.provider, (SourceType.ORDER, "Order"))
    label = order.order_number or order.external_id or order.id
    item_count = sum(item.quantity or 0 for item in items)
    item_skus = [item.sku for item in items if item.sku]
    top_skus = [item.sku or item.title for item in items if item.sku or item.title][:3]
    customer_name = customer.display_name if customer else "Customer"

    content_text = clean_structured_text(
        f"{provider_label} {label} for {customer_name}: {item_count} items, "
        f"top SKUs {', '.join(top_skus) or MISSING}, "
        f"total {format_currency(order.total, order.currency)}, "
        f"fulfillment {order.status}, financial {order.financial_status}, "
        f"placed {format_date(order.placed_at)}."
    )

    source_uri = _customer_uri(order.customer_id)
    if order.provider == "shopify" and settings.shopify_store_url and order.external_id:
        store = settings.shopify_store_url.split("://", 1)[-1].rstrip("/")
        source_uri = f"https://{store}/admin/orders/{order.external_id}"

    return RagSourceInput(
        source_type=source_type,
        source_id=order_source_id(order),
        source_uri=source_uri,
        customer_id=order.customer_id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"{order.provider.upper()} Order {label}",
        content_text=content_text,
        metadata=json_safe(
            {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "provider": order.provider,
                "externalId": order.external_id,
                "status": order.status,
                "financialStatus": order.financial_status,
                "currency": order.currency,
                "total": order.total,
                "placedAt": order.placed_at,
                "dueAt": order.due_at,
                "paidAt": order.paid_at,
                "itemSkus": item_skus,
                "sku": ", ".join(item_skus) or None,
                "metadata": order.details,
            }
        ),
        source_created_at=order.placed_at or order.created_at,
        source_updated_at=order.paid_at or order.due_at,
    )


def extract_qbo_invoice(
    invoice: QboInvoice, customer_name: str | None = None, terms: str | None = None
) -> RagSourceInput:
    label = invoice.doc_number or invoice.qbo_invoice_id
    content_text = clean_structured_text(
        f"QBO Invoice {label} for {customer_name or 'customer'}: "
        f"balance {format_currency(invoice.balance, invoice.currency)}, "
        f"total {format_currency(invoice.total_amount, invoice.currency)}, "
        f"terms {terms or MISSING}, due {format_date(invoice.due_date)}, "
        f"status {invoice.status or 'unknown'}."
    )

    return RagSourceInput(
        source_type=SourceType.QBO_INVOICE,
        source_id=invoice.qbo_invoice_id,
        source_uri=_customer_uri(invoice.customer_id),
        customer_id=invoice.customer_id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"QBO Invoice {label}",
        content_text=content_text,
        metadata=json_safe(
            {
                "invoiceNumber": invoice.doc_number,
                "qboInvoiceId": invoice.qbo_invoice_id,
                "qboCustomerId": invoice.qbo_customer_id,
                "status": invoice.status,
                "totalAmount": invoice.total_amount,
                "balance": invoice.balance,
                "currency": invoice.currency,
                "txnDate": invoice.txn_date,
                "dueDate": invoice.due_date,
                "metadata": invoice.details,
            }
        ),
        source_created_at=as_datetime(invoice.txn_date) or invoice.updated_at,
        source_updated_at=as_datetime(invoice.due_date),
    )


def extract_qbo_estimate(estimate: QboEstimate, customer_name: str | None = None) -> RagSourceInput:
    label = estimate.doc_number or estimate.qbo_estimate_id
    content_text = clean_structured_text(
        f"QBO Estimate {label} for {customer_name or 'customer'}: "
        f"total {format_currency(estimate.total_amount, estimate.currency)}, "
        f"status {estimate.status or 'unknown'}, expires {format_date(estimate.expiration_date)}."
    )

    return RagSourceInput(
        source_type=SourceType.QBO_ESTIMATE,
        source_id=estimate.qbo_estimate_id,
        source_uri=_customer_uri(estimate.customer_id),
        customer_id=estimate.customer_id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"QBO Estimate {label}",
        content_text=content_text,
        metadata=json_safe(
            {
                "estimateNumber": estimate.doc_number,
                "poNumber": estimate.doc_number,
                "qboEstimateId": estimate.qbo_estimate_id,
                "qboCustomerId": estimate.qbo_customer_id,
                "status": estimate.status,
                "totalAmount": estimate.total_amount,
                "currency": estimate.currency,
                "txnDate": estimate.txn_date,
                "expirationDate": estimate.expiration_date,
                "metadata": estimate.details,
            }
        ),
        source_created_at=as_datetime(estimate.txn_date) or estimate.updated_at,
        source_updated_at=as_datetime(estimate.expiration_date),
    )


def extract_qbo_customer(
    snapshot: QboCustomerSnapshot, customer_name: str | None = None
) -> RagSourceInput:
    name = customer_name or snapshot.qbo_customer_id
    content_text = clean_structured_text(
        f"QBO Customer {name}: balance {format_currency(snapshot.balance, snapshot.currency)}, "
        f"terms {snapshot.terms or MISSING}, "
        f"last invoice {format_date(snapshot.last_invoice_date)}, "
        f"last payment {format_date(snapshot.last_payment_date)}."
    )

    return RagSourceInput(
        source_type=SourceType.QBO_CUSTOMER,
        source_id=snapshot.qbo_customer_id,
        source_uri=_customer_uri(snapshot.customer_id),
        customer_id=snapshot.customer_id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"QBO Customer {name}",
        content_text=content_text,
        metadata=json_safe(
            {
                "qboCustomerId": snapshot.qbo_customer_id,
                "balance": snapshot.balance,
                "currency": snapshot.currency,
                "terms": snapshot.terms,
                "lastInvoiceDate": snapshot.last_invoice_date,
                "lastPaymentDate": snapshot.last_payment_date,
                "snapshotTakenAt": snapshot.snapshot_taken_at,
            }
        ),
        source_created_at=snapshot.snapshot_taken_at,
    )


def extract_shopify_customer(identity: CustomerIdentity, customer: Customer) -> RagSourceInput:
    name = customer.display_name
    email = identity.email or customer.primary_email
    phone = identity.phone or customer.primary_phone
    content_text = clean_structured_text(
        f"Shopify Customer {name}: email {email or MISSING}, phone {phone or MISSING}, "
        f"company {customer.company or MISSING}."
    )

    return RagSourceInput(
        source_type=SourceType.SHOPIFY_CUSTOMER,
        source_id=identity.external_id or str(customer.id),
        source_uri=f"/customers/{customer.id}",
        customer_id=customer.id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"Shopify Customer {name}",
        content_text=content_text,
        metadata={
            "shopifyCustomerId": identity.external_id,
            "email": email,
            "phone": phone,
            "company": customer.company,
        },
        source_created_at=customer.created_at,
        source_updated_at=customer.updated_at,
    )


def extract_shipstation_shipment(shipment: ShipstationShipment) -> RagSourceInput:
    label = shipment.order_number or str(shipment.shipstation_shipment_id)
    content_text = clean_structured_text(
        f"Shipment {label}: carrier {shipment.carrier_code or MISSING}, "
        f"service {shipment.service_code or MISSING}, "
        f"tracking {shipment.tracking_number or MISSING}, "
        f"cost {format_currency(shipment.cost or 0)}, "
        f"weight {shipment.weight or MISSING} {shipment.weight_unit or ''}, "
        f"status {shipment.status or 'unknown'}."
    )

    if shipment.shipstation_order_id:
        source_uri = f"{settings.shipstation_order_url.rstrip('/')}/{shipment.shipstation_order_id}"
    else:
        source_uri = f"/customers/{shipment.customer_id or ''}"

    return RagSourceInput(
        source_type=SourceType.SHIPSTATION_SHIPMENT,
        source_id=str(shipment.shipstation_shipment_id),
        source_uri=source_uri,
        customer_id=shipment.customer_id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"Shipment {label}",
        content_text=content_text,
        metadata=json_safe(
            {
                "shipmentId": str(shipment.shipstation_shipment_id),
                "orderNumber": shipment.order_number,
                "trackingNumber": shipment.tracking_number,
                "carrierCode": shipment.carrier_code,
                "serviceCode": shipment.service_code,
                "shipDate": shipment.ship_date,
                "deliveryDate": shipment.delivery_date,
                "status": shipment.status,
                "cost": shipment.cost,
                "weight": shipment.weight,
                "weightUnit": shipment.weight_unit,
                "metadata": shipment.details,
            }
        ),
        source_created_at=as_datetime(shipment.ship_date) or shipment.updated_at,
        source_updated_at=as_datetime(shipment.delivery_date),
    )


def extract_amazon_shipment(shipment: Shipment) -> RagSourceInput:
    label = shipment.order_number or shipment.external_id
    provider_label = "Amazon FBA" if shipment.provider == "amazon_fba" else "Amazon MFN"
    content_text = clean_structured_text(
        f"{provider_label} Shipment {label}: carrier {shipment.carrier_code or 'Amazon'}, "
        f"tracking {shipment.tracking_number or MISSING}, "
        f"ship date {format_date(shipment.ship_date)}, "
        f"estimated delivery {format_date(shipment.estimated_delivery_date)}, "
        f"status {shipment.status or 'unknown'}."
    )

    return RagSourceInput(
        source_type=SourceType.AMAZON_SHIPMENT,
        source_id=shipment.external_id,
        source_uri=_customer_uri(shipment.customer_id),
        customer_id=shipment.customer_id,
        sensitivity=Sensitivity.INTERNAL,
        title=f"{provider_label} Shipment {label}",
        content_text=content_text,
        metadata=json_safe(
            {
                "shipmentId": shipment.external_id,
                "provider": shipment.provider,
                "orderNumber": shipment.order_number,
                "trackingNumber": shipment.tracking_number,
                "carrierCode": shipment.carrier_code,
                "serviceCode": shipment.service_code,
                "shipDate": shipment.ship_date,
                "estimatedDeliveryDate": shipment.estimated_delivery_date,
                "actualDeliveryDate": shipment.actual_delivery_date,
                "status": shipment.status,
                "cost": shipment.cost,
                "weight": shipment.weight,
                "weightUnit": shipment.weight_unit,
                "metadata": shipment.details,
            }
        ),
        source_created_at=as_datetime(shipment.ship_date) or shipment.updated_at,
        source_updated_at=as_datetime(
            shipment.actual_delivery_date or shipment.estimated_delivery_date
        ),
    )


# Source type to extractor mapping; fetchers supply the keyword arguments
EXTRACTORS: dict[SourceType, Callable[..., RagSourceInput]] = {
    SourceType.TICKET: extract_ticket,
    SourceType.TICKET_COMMENT: extract_ticket_comment,
    SourceType.EMAIL: extract_email,
    SourceType.INTERACTION: extract_interaction,
    SourceType.QBO_INVOICE: extract_qbo_invoice,
    SourceType.QBO_ESTIMATE: extract_qbo_estimate,
    SourceType.QBO_CUSTOMER: extract_qbo_customer,
    SourceType.SHOPIFY_ORDER: extract_order,
    SourceType.AMAZON_ORDER: extract_order,
    SourceType.ORDER: extract_order,
    SourceType.SHOPIFY_CUSTOMER: extract_shopify_customer,
    SourceType.SHIPSTATION_SHIPMENT: extract_shipstation_shipment,
    SourceType.AMAZON_SHIPMENT: extract_amazon_shipment,
}


def extract_source(source_type: SourceType, payload: dict[str, Any]) -> RagSourceInput:
    extractor = EXTRACTORS.get(source_type)
    if extractor is None:
        raise ValueError(f"No extractor registered for source type: {source_type}")
    return extractor(**payload)
