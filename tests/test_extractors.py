from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from supportrag.config import settings
from supportrag.models import (
    Customer,
    Order,
    OrderItem,
    QboInvoice,
    Sensitivity,
    SourceType,
    Ticket,
    TicketComment,
)
from supportrag.services.extractors import (
    EXTRACTORS,
    MISSING,
    as_datetime,
    extract_order,
    extract_qbo_invoice,
    extract_source,
    extract_ticket,
    extract_ticket_comment,
    format_currency,
    format_date,
    json_safe,
    normalize_email,
)

CREATED = datetime(2026, 1, 5, 12, 30, tzinfo=timezone.utc)


def make_ticket(**overrides) -> Ticket:
    fields = dict(
        id=5,
        title="Late delivery",
        description="Customer says the pallet never arrived.",
        status="open",
        priority="high",
        order_number="A1001",
        customer_id=7,
        assignee_id="agent-1",
        created_at=CREATED,
        updated_at=CREATED,
    )
    fields.update(overrides)
    return Ticket(**fields)


# ============================================================================
# Helpers
# ============================================================================


def test_format_currency():
    assert format_currency(Decimal("42.5")) == "USD 42.50"
    assert format_currency("10", "CAD") == "CAD 10.00"
    assert format_currency(None) == "USD 0"
    assert format_currency("n/a") == "USD n/a"


def test_format_date():
    assert format_date(None) == MISSING
    assert format_date(CREATED) == "2026-01-05"
    assert format_date(date(2026, 2, 1)) == "2026-02-01"


def test_as_datetime_promotes_dates_to_utc_midnight():
    assert as_datetime(date(2026, 2, 1)) == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert as_datetime(CREATED) is CREATED
    assert as_datetime(None) is None


def test_json_safe_handles_nested_values():
    value = {"total": Decimal("1.10"), "dates": [date(2026, 1, 1)], "n": 3}
    assert json_safe(value) == {"total": "1.10", "dates": ["2026-01-01"], "n": 3}


def test_normalize_email():
    assert normalize_email("  Jane@Example.COM ") == "jane@example.com"
    assert normalize_email("   ") is None


def test_every_source_type_has_an_extractor():
    assert set(EXTRACTORS) == set(SourceType)


# ============================================================================
# Narrative sources
# ============================================================================


def test_ticket_extraction():
    source = extract_ticket(make_ticket())

    assert source.source_type == SourceType.TICKET
    assert source.source_id == "5"
    assert source.source_uri == "/tickets/5"
    assert source.customer_id == 7
    assert source.ticket_id == 5
    assert source.thread_id == "ticket-5"
    assert source.sensitivity == Sensitivity.PUBLIC
    assert source.owner_user_id == "agent-1"
    assert source.content_text.startswith("Ticket #5: Late delivery")
    assert "Order: A1001" in source.content_text
    assert source.metadata["orderNumber"] == "A1001"
    assert source.metadata["ticketId"] == 5
    assert source.source_created_at == CREATED


def test_ticket_thread_prefers_conversation_id():
    source = extract_ticket(make_ticket(conversation_id="conv-9"))
    assert source.thread_id == "conv-9"


@pytest.mark.parametrize(
    "is_internal_note, expected",
    [(True, Sensitivity.INTERNAL), (False, Sensitivity.PUBLIC)],
)
def test_comment_sensitivity_follows_internal_flag(is_internal_note, expected):
    comment = TicketComment(
        id=31,
        ticket_id=5,
        comment_text="<p>We reshipped it today.</p>",
        commenter_id="agent-1",
        is_from_customer=False,
        is_internal_note=is_internal_note,
        is_outgoing_reply=not is_internal_note,
        created_at=CREATED,
    )
    source = extract_ticket_comment(comment, make_ticket())

    assert source.sensitivity == expected
    assert source.customer_id == 7
    assert source.thread_id == "ticket-5"
    assert source.source_uri == "/tickets/5#comment-31"
    assert source.metadata["isOutgoingReply"] is (not is_internal_note)
    assert "<p>" not in source.content_text


def test_comment_without_ticket_has_no_customer():
    comment = TicketComment(id=1, ticket_id=9, comment_text="hello", created_at=CREATED)
    source = extract_ticket_comment(comment, None)
    assert source.customer_id is None
    assert source.thread_id == "ticket-9"


# ============================================================================
# Structured sources
# ============================================================================


def make_order(provider: str = "shopify") -> Order:
    return Order(
        id=11,
        customer_id=7,
        provider=provider,
        external_id="998877",
        order_number="A1001",
        status="fulfilled",
        financial_status="paid",
        currency="USD",
        total=Decimal("42.5"),
        placed_at=CREATED,
    )


def test_shopify_order_extraction(monkeypatch):
    monkeypatch.setattr(settings, "shopify_store_url", "https://acme.myshopify.com/")
    items = [
        OrderItem(sku="SKU-1", title="Widget", quantity=2),
        OrderItem(sku=None, title="Gadget", quantity=1),
    ]
    customer = Customer(id=7, first_name="Jane", last_name="Doe")

    source = extract_order(make_order(), items, customer)

    assert source.source_type == SourceType.SHOPIFY_ORDER
    assert source.source_id == "998877"
    assert source.source_uri == "https://acme.myshopify.com/admin/orders/998877"
    assert source.sensitivity == Sensitivity.INTERNAL
    assert source.title == "SHOPIFY Order A1001"
    assert source.content_text == (
        "Shopify A1001 for Jane Doe: 3 items, top SKUs SKU-1, Gadget, total USD 42.50, "
        "fulfillment fulfilled, financial paid, placed 2026-01-05."
    )
    assert source.metadata["orderNumber"] == "A1001"
    assert source.metadata["itemSkus"] == ["SKU-1"]
    assert source.metadata["total"] == "42.5"
    assert source.metadata["placedAt"] == CREATED.isoformat()


def test_unknown_provider_falls_back_to_generic_order():
    source = extract_order(make_order(provider="wholesale"), [])
    assert source.source_type == SourceType.ORDER
    assert source.source_uri == "/customers/7"
    assert "top SKUs " + MISSING in source.content_text


def test_qbo_invoice_extraction():
    invoice = QboInvoice(
        qbo_invoice_id="qbo-1",
        customer_id=7,
        doc_number="INV-2044",
        status="open",
        total_amount=Decimal("100"),
        balance=Decimal("25"),
        currency="USD",
        txn_date=date(2026, 1, 2),
        due_date=date(2026, 2, 1),
    )

    source = extract_source(
        SourceType.QBO_INVOICE, {"invoice": invoice, "customer_name": "Acme", "terms": "Net 30"}
    )

    assert source.source_id == "qbo-1"
    assert source.title == "QBO Invoice INV-2044"
    assert "balance USD 25.00" in source.content_text
    assert "terms Net 30" in source.content_text
    assert "due 2026-02-01" in source.content_text
    assert source.metadata["invoiceNumber"] == "INV-2044"
    assert source.source_created_at == datetime(2026, 1, 2, tzinfo=timezone.utc)


def test_extract_qbo_invoice_without_terms():
    invoice = QboInvoice(qbo_invoice_id="qbo-2", txn_date=date(2026, 1, 2))
    source = extract_qbo_invoice(invoice)
    assert f"terms {MISSING}" in source.content_text
    assert "status unknown" in source.content_text
