"""
Structured lookup.

Resolves business identifiers found in a query (order, invoice, PO, tracking,
SKU) to exact CRM records. Results are "truth" records that sit ahead of
narrative evidence for precision intents.
"""

import logging
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from supportrag.models import (
    Order,
    OrderItem,
    QboCustomerSnapshot,
    QboEstimate,
    QboInvoice,
    Shipment,
    ShipstationShipment,
    SourceType,
)
from supportrag.schemas import RagTruthResult, ScoreBreakdown
from supportrag.services.access import ViewerScope, customer_scope_condition
from supportrag.services.extractors import (
    MISSING,
    ORDER_PROVIDERS,
    format_currency,
    format_date,
    json_safe,
    order_source_id,
)
from supportrag.services.intent import Identifiers, Intent

logger = logging.getLogger(__name__)

MATCH_LIMIT = 10
FALLBACK_SHIPPING_LIMIT = 3
FALLBACK_BILLING_LIMIT = 5

BASE_MATCH_SCORE = 100.0
EXACT_MATCH_BONUS = 50.0
AR_SNAPSHOT_SCORE = 1.0
FALLBACK_SCORE = 0.9

AMAZON_PROVIDERS = {"amazon_fba", "amazon_mfn"}


def match_score(identifier: str, *values: str | None) -> float:
    """
    Score a substring match of identifier against the best of the given values.

    Every match scores above any fuzzy evidence; an exact (case-insensitive)
    match gets the full bonus, partial matches a share proportional to how
    much of the matched value the identifier covers.
    """
    needle = identifier.lower()
    best = 0.0
    for value in values:
        if not value:
            continue
        haystack = value.lower()
        if haystack == needle:
            return BASE_MATCH_SCORE + EXACT_MATCH_BONUS
        if needle in haystack:
            best = max(best, EXACT_MATCH_BONUS * len(needle) / len(haystack))
    return BASE_MATCH_SCORE + best


def _customer_uri(customer_id: int | None) -> str | None:
    return f"/customers/{customer_id}" if customer_id else None


# ============================================================================
# Record → truth result
# ============================================================================


def order_result(
    order: Order, score: float, matched_skus: list[str] | None = None
) -> RagTruthResult:
    label = order.order_number or order.external_id or str(order.id)
    source_type = ORDER_PROVIDERS.get(order.provider, (SourceType.ORDER, "Order"))[0]
    data: dict[str, Any] = {
        "orderId": order.id,
        "provider": order.provider,
        "orderNumber": order.order_number,
        "externalId": order.external_id,
        "status": order.status,
        "financialStatus": order.financial_status,
        "currency": order.currency,
        "total": order.total,
        "placedAt": order.placed_at,
        "customerId": order.customer_id,
        "items": [
            {"sku": item.sku, "title": item.title, "quantity": item.quantity}
            for item in order.items
        ],
    }
    if matched_skus:
        data["matchedSkus"] = matched_skus

    return RagTruthResult(
        type="order",
        label=f"Order {label}",
        source_uri=_customer_uri(order.customer_id),
        snippet=(
            f"Order {label}: status {order.status}, financial {order.financial_status}, "
            f"total {format_currency(order.total, order.currency)}."
        ),
        data=json_safe(data),
        score=ScoreBreakdown(final_score=score),
        source_type=source_type,
        source_id=order_source_id(order),
    )


def shipstation_result(shipment: ShipstationShipment, score: float) -> RagTruthResult:
    label = shipment.order_number or str(shipment.shipstation_shipment_id)
    return RagTruthResult(
        type="shipment",
        label=f"Shipment {label}",
        source_uri=_customer_uri(shipment.customer_id),
        snippet=(
            f"Shipment {label}: carrier {shipment.carrier_code or MISSING}, "
            f"tracking {shipment.tracking_number or MISSING}, "
            f"shipped {format_date(shipment.ship_date)}, status {shipment.status or 'unknown'}."
        ),
        data=json_safe(
            {
                "provider": "shipstation",
                "shipmentId": shipment.shipstation_shipment_id,
                "orderNumber": shipment.order_number,
                "trackingNumber": shipment.tracking_number,
                "carrierCode": shipment.carrier_code,
                "serviceCode": shipment.service_code,
                "shipDate": shipment.ship_date,
                "deliveryDate": shipment.delivery_date,
                "status": shipment.status,
                "customerId": shipment.customer_id,
            }
        ),
        score=ScoreBreakdown(final_score=score),
        source_type=SourceType.SHIPSTATION_SHIPMENT,
        source_id=str(shipment.shipstation_shipment_id),
    )


def unified_shipment_result(shipment: Shipment, score: float) -> RagTruthResult:
    label = shipment.order_number or shipment.external_id
    is_amazon = shipment.provider in AMAZON_PROVIDERS
    return RagTruthResult(
        type="shipment",
        label=f"Shipment {label} ({shipment.provider})",
        source_uri=_customer_uri(shipment.customer_id),
        snippet=(
            f"Shipment {label}: carrier {shipment.carrier_code or MISSING}, "
            f"tracking {shipment.tracking_number or MISSING}, "
            f"shipped {format_date(shipment.ship_date)}, "
            f"estimated delivery {format_date(shipment.estimated_delivery_date)}, "
            f"status {shipment.status or 'unknown'}."
        ),
        data=json_safe(
            {
                "provider": shipment.provider,
                "shipmentId": shipment.external_id,
                "orderNumber": shipment.order_number,
                "trackingNumber": shipment.tracking_number,
                "carrierCode": shipment.carrier_code,
                "shipDate": shipment.ship_date,
                "estimatedDeliveryDate": shipment.estimated_delivery_date,
                "actualDeliveryDate": shipment.actual_delivery_date,
                "status": shipment.status,
                "customerId": shipment.customer_id,
            }
        ),
        score=ScoreBreakdown(final_score=score),
        source_type=SourceType.AMAZON_SHIPMENT if is_amazon else None,
        source_id=shipment.external_id if is_amazon else None,
    )


def invoice_result(invoice: QboInvoice, score: float) -> RagTruthResult:
    label = invoice.doc_number or invoice.qbo_invoice_id
    return RagTruthResult(
        type="invoice",
        label=f"Invoice {label}",
        source_uri=_customer_uri(invoice.customer_id),
        snippet=(
            f"Invoice {label}: total {format_currency(invoice.total_amount, invoice.currency)}, "
            f"balance {format_currency(invoice.balance, invoice.currency)}, "
            f"due {format_date(invoice.due_date)}, status {invoice.status or 'unknown'}."
        ),
        data=json_safe(
            {
                "qboInvoiceId": invoice.qbo_invoice_id,
                "docNumber": invoice.doc_number,
                "status": invoice.status,
                "totalAmount": invoice.total_amount,
                "balance": invoice.balance,
                "currency": invoice.currency,
                "txnDate": invoice.txn_date,
                "dueDate": invoice.due_date,
                "customerId": invoice.customer_id,
            }
        ),
        score=ScoreBreakdown(final_score=score),
        source_type=SourceType.QBO_INVOICE,
        source_id=invoice.qbo_invoice_id,
    )


def estimate_result(estimate: QboEstimate, score: float) -> RagTruthResult:
    label = estimate.doc_number or estimate.qbo_estimate_id
    return RagTruthResult(
        type="estimate",
        label=f"Estimate {label}",
        source_uri=_customer_uri(estimate.customer_id),
        snippet=(
            f"Estimate {label}: total {format_currency(estimate.total_amount, estimate.currency)}, "
            f"expires {format_date(estimate.expiration_date)}, "
            f"status {estimate.status or 'unknown'}."
        ),
        data=json_safe(
            {
                "qboEstimateId": estimate.qbo_estimate_id,
                "docNumber": estimate.doc_number,
                "status": estimate.status,
                "totalAmount": estimate.total_amount,
                "currency": estimate.currency,
                "txnDate": estimate.txn_date,
                "expirationDate": estimate.expiration_date,
                "customerId": estimate.customer_id,
            }
        ),
        score=ScoreBreakdown(final_score=score),
        source_type=SourceType.QBO_ESTIMATE,
        source_id=estimate.qbo_estimate_id,
    )


def ar_snapshot_result(snapshot: QboCustomerSnapshot) -> RagTruthResult:
    return RagTruthResult(
        type="qbo_customer",
        label="Customer AR Snapshot",
        source_uri=_customer_uri(snapshot.customer_id),
        snippet=(
            f"Customer balance {snapshot.currency} {snapshot.balance}, "
            f"terms {snapshot.terms or MISSING}."
        ),
        data=json_safe(
            {
                "qboCustomerId": snapshot.qbo_customer_id,
                "balance": snapshot.balance,
                "currency": snapshot.currency,
                "terms": snapshot.terms,
                "lastInvoiceDate": snapshot.last_invoice_date,
                "lastPaymentDate": snapshot.last_payment_date,
                "customerId": snapshot.customer_id,
            }
        ),
        score=ScoreBreakdown(final_score=AR_SNAPSHOT_SCORE),
        source_type=SourceType.QBO_CUSTOMER,
        source_id=snapshot.qbo_customer_id,
    )


# ============================================================================
# Lookups
# ============================================================================


class StructuredLookup:
    """Collects truth results for one query, keeping the best score per record."""

    def __init__(self, session: AsyncSession, scope: ViewerScope, customer_id: int | None = None):
        self.session = session
        self.scope = scope
        self.customer_id = customer_id
        self._results: dict[tuple, RagTruthResult] = {}

    def add(self, result: RagTruthResult) -> None:
        # Distinct records can share a display label
        if result.source_type and result.source_id:
            key = ("record", result.source_type, result.source_id)
        else:
            key = ("label", result.type, result.label)
        existing = self._results.get(key)
        if existing is None or result.score.final_score > existing.score.final_score:
            self._results[key] = result

    @property
    def results(self) -> list[RagTruthResult]:
        return sorted(self._results.values(), key=lambda r: r.score.final_score, reverse=True)

    def _scoped(self, query, column):
        query = query.where(customer_scope_condition(self.scope, column))
        if self.customer_id:
            query = query.where(column == self.customer_id)
        return query

    async def _all(self, query) -> list:
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def lookup_orders(self, order_number: str) -> None:
        query = (
            select(Order)
            .where(
                or_(
                    Order.order_number.icontains(order_number, autoescape=True),
                    Order.external_id.icontains(order_number, autoescape=True),
                )
            )
            .options(selectinload(Order.items))
            .limit(MATCH_LIMIT)
        )
        for order in await self._all(self._scoped(query, Order.customer_id)):
            score = match_score(order_number, order.order_number, order.external_id)
            self.add(order_result(order, score))

        await self._lookup_shipments(
            order_number, ShipstationShipment.order_number, Shipment.order_number
        )

    async def lookup_tracking(self, tracking_number: str) -> None:
        await self._lookup_shipments(
            tracking_number, ShipstationShipment.tracking_number, Shipment.tracking_number
        )

    async def _lookup_shipments(self, identifier: str, shipstation_column, unified_column) -> None:
        query = (
            select(ShipstationShipment)
            .where(shipstation_column.icontains(identifier, autoescape=True))
            .limit(MATCH_LIMIT)
        )
        query = self._scoped(query, ShipstationShipment.customer_id)
        for shipment in await self._all(query):
            score = match_score(identifier, shipment.order_number, shipment.tracking_number)
            self.add(shipstation_result(shipment, score))

        query = (
            select(Shipment)
            .where(unified_column.icontains(identifier, autoescape=True))
            .limit(MATCH_LIMIT)
        )
        query = self._scoped(query, Shipment.customer_id)
        for shipment in await self._all(query):
            score = match_score(identifier, shipment.order_number, shipment.tracking_number)
            self.add(unified_shipment_result(shipment, score))

    async def lookup_invoices(self, invoice_number: str) -> None:
        query = (
            select(QboInvoice)
            .where(
                or_(
                    QboInvoice.doc_number.icontains(invoice_number, autoescape=True),
                    QboInvoice.qbo_invoice_id.icontains(invoice_number, autoescape=True),
                )
            )
            .limit(MATCH_LIMIT)
        )
        query = self._scoped(query, QboInvoice.customer_id)
        for invoice in await self._all(query):
            score = match_score(invoice_number, invoice.doc_number, invoice.qbo_invoice_id)
            self.add(invoice_result(invoice, score))

    async def lookup_estimates(self, po_number: str) -> None:
        query = (
            select(QboEstimate)
            .where(
                or_(
                    QboEstimate.doc_number.icontains(po_number, autoescape=True),
                    QboEstimate.qbo_estimate_id.icontains(po_number, autoescape=True),
                )
            )
            .limit(MATCH_LIMIT)
        )
        query = self._scoped(query, QboEstimate.customer_id)
        for estimate in await self._all(query):
            score = match_score(po_number, estimate.doc_number, estimate.qbo_estimate_id)
            self.add(estimate_result(estimate, score))

    async def lookup_skus(self, skus: list[str]) -> None:
        lowered = [sku.lower() for sku in skus]
        item_rows = await self.session.execute(
            select(OrderItem.order_id, OrderItem.sku).where(
                or_(*(OrderItem.sku.icontains(sku, autoescape=True) for sku in skus))
            )
        )
        matched: dict[int, list[str]] = {}
        for order_id, sku in item_rows.all():
            if sku:
                matched.setdefault(order_id, []).append(sku)
        if not matched:
            return

        query = (
            select(Order)
            .where(Order.id.in_(list(matched)))
            .options(selectinload(Order.items))
            .order_by(Order.updated_at.desc())
            .limit(MATCH_LIMIT)
        )
        for order in await self._all(self._scoped(query, Order.customer_id)):
            order_skus = list(dict.fromkeys(matched.get(order.id, [])))
            score = max(
                (match_score(sku, *order_skus) for sku in skus),
                default=BASE_MATCH_SCORE,
            )
            exact = [s for s in order_skus if s.lower() in lowered]
            self.add(order_result(order, score, matched_skus=exact or order_skus))

    async def lookup_ar_snapshot(self) -> None:
        if not self.scope.can_access_customer(self.customer_id):
            return
        result = await self.session.execute(
            select(QboCustomerSnapshot)
            .where(QboCustomerSnapshot.customer_id == self.customer_id)
            .order_by(QboCustomerSnapshot.snapshot_taken_at.desc())
            .limit(1)
        )
        snapshot = result.scalar_one_or_none()
        if snapshot:
            self.add(ar_snapshot_result(snapshot))

    async def recent_shipping(self) -> None:
        orders = await self._all(
            self._scoped(select(Order).options(selectinload(Order.items)), Order.customer_id)
            .order_by(Order.updated_at.desc())
            .limit(FALLBACK_SHIPPING_LIMIT)
        )
        for order in orders:
            self.add(order_result(order, FALLBACK_SCORE))

        shipments = await self._all(
            self._scoped(select(ShipstationShipment), ShipstationShipment.customer_id)
            .order_by(ShipstationShipment.ship_date.desc().nulls_last())
            .limit(FALLBACK_SHIPPING_LIMIT)
        )
        for shipment in shipments:
            self.add(shipstation_result(shipment, FALLBACK_SCORE))

        unified = await self._all(
            self._scoped(select(Shipment), Shipment.customer_id)
            .order_by(Shipment.ship_date.desc().nulls_last())
            .limit(FALLBACK_SHIPPING_LIMIT)
        )
        for shipment in unified:
            self.add(unified_shipment_result(shipment, FALLBACK_SCORE))

    async def recent_billing(self) -> None:
        invoices = await self._all(
            self._scoped(select(QboInvoice), QboInvoice.customer_id)
            .order_by(QboInvoice.updated_at.desc())
            .limit(FALLBACK_BILLING_LIMIT)
        )
        for invoice in invoices:
            self.add(invoice_result(invoice, FALLBACK_SCORE))

        estimates = await self._all(
            self._scoped(select(QboEstimate), QboEstimate.customer_id)
            .order_by(QboEstimate.updated_at.desc())
            .limit(FALLBACK_BILLING_LIMIT)
        )
        for estimate in estimates:
            self.add(estimate_result(estimate, FALLBACK_SCORE))


async def structured_lookup(
    session: AsyncSession,
    identifiers: Identifiers,
    intent: Intent,
    scope: ViewerScope,
    customer_id: int | None = None,
) -> list[RagTruthResult]:
    """
    Exact record matches for the identifiers in a query.

    With no identifiers but a known customer, shipping and billing intents
    fall back to the customer's most recent records.
    """
    lookup = StructuredLookup(session, scope, customer_id)

    for order_number in identifiers.order_numbers:
        await lookup.lookup_orders(order_number)
    for invoice_number in identifiers.invoice_numbers:
        await lookup.lookup_invoices(invoice_number)
    for po_number in identifiers.po_numbers:
        await lookup.lookup_estimates(po_number)
    for tracking_number in identifiers.tracking_numbers:
        await lookup.lookup_tracking(tracking_number)
    if identifiers.skus:
        await lookup.lookup_skus(identifiers.skus)

    if intent == Intent.PAYMENTS_TERMS and customer_id:
        await lookup.lookup_ar_snapshot()

    if not identifiers.has_any and customer_id:
        if intent == Intent.LOGISTICS_SHIPPING and not lookup.results:
            await lookup.recent_shipping()
        elif intent == Intent.PAYMENTS_TERMS:
            await lookup.recent_billing()

    results = lookup.results
    logger.debug(
        f"Structured lookup: intent={intent.value}, customer={customer_id}, results={len(results)}"
    )
    return results
