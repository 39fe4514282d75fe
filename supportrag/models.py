import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Computed,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, TSVECTOR
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from supportrag.config import settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pg_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Store the lower-case values, not the member names
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


# ============================================================================
# Enums
# ============================================================================


class SourceType(str, enum.Enum):
    TICKET = "ticket"
    TICKET_COMMENT = "ticket_comment"
    EMAIL = "email"
    INTERACTION = "interaction"
    QBO_INVOICE = "qbo_invoice"
    QBO_ESTIMATE = "qbo_estimate"
    QBO_CUSTOMER = "qbo_customer"
    SHOPIFY_ORDER = "shopify_order"
    SHOPIFY_CUSTOMER = "shopify_customer"
    AMAZON_ORDER = "amazon_order"
    SHIPSTATION_SHIPMENT = "shipstation_shipment"
    AMAZON_SHIPMENT = "amazon_shipment"
    ORDER = "order"


class Sensitivity(str, enum.Enum):
    PUBLIC = "public"
    INTERNAL = "internal"


class IngestionOperation(str, enum.Enum):
    UPSERT = "upsert"
    REINDEX = "reindex"
    DELETE = "delete"

    @property
    def rank(self) -> int:
        return OPERATION_RANK[self]


OPERATION_RANK = {
    IngestionOperation.UPSERT: 0,
    IngestionOperation.REINDEX: 1,
    IngestionOperation.DELETE: 2,
}


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


LIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)

NARRATIVE_SOURCE_TYPES = (
    SourceType.TICKET,
    SourceType.TICKET_COMMENT,
    SourceType.EMAIL,
    SourceType.INTERACTION,
)

ORDER_SOURCE_TYPES = (SourceType.SHOPIFY_ORDER, SourceType.AMAZON_ORDER, SourceType.ORDER)


# ============================================================================
# RAG Store
# ============================================================================


class RagSource(Base):
    __tablename__ = "rag_sources"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    source_type: Mapped[SourceType] = mapped_column(
        _pg_enum(SourceType, "rag_source_type"), nullable=False
    )
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_uri: Mapped[str] = mapped_column(Text, nullable=False)
    customer_id: Mapped[int | None] = mapped_column(Integer)
    ticket_id: Mapped[int | None] = mapped_column(Integer)
    thread_id: Mapped[str | None] = mapped_column(Text)
    parent_id: Mapped[UUID | None] = mapped_column()
    sensitivity: Mapped[Sensitivity] = mapped_column(
        _pg_enum(Sensitivity, "rag_sensitivity"), nullable=False, default=Sensitivity.PUBLIC
    )
    owner_user_id: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(Text)
    content_text: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
    source_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    reindexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    chunks: Mapped[list["RagChunk"]] = relationship(
        back_populates="source", cascade="all, delete", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_rag_sources_type_id"),
        Index("ix_rag_sources_customer_id", "customer_id"),
        Index("ix_rag_sources_ticket_id", "ticket_id"),
        Index("ix_rag_sources_thread_created", "thread_id", "source_created_at"),
    )


class RagChunk(Base):
    __tablename__ = "rag_chunks"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    source_id: Mapped[UUID] = mapped_column(
        ForeignKey("rag_sources.id", ondelete="CASCADE"), nullable=False
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_hash: Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(Vector(settings.embedding_dim))
    embedded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    tsv: Mapped[str | None] = mapped_column(
        TSVECTOR, Computed("to_tsvector('english', chunk_text)", persisted=True)
    )

    # Relationships
    source: Mapped["RagSource"] = relationship(back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("source_id", "chunk_index", name="uq_rag_chunks_source_index"),
        CheckConstraint(
            "chunk_index >= 0 AND chunk_index < chunk_count", name="ck_rag_chunks_index_range"
        ),
        Index("ix_rag_chunks_chunk_hash", "chunk_hash"),
        Index("ix_rag_chunks_tsv", "tsv", postgresql_using="gin"),
        Index(
            "ix_rag_chunks_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


class RagIngestionJob(Base):
    __tablename__ = "rag_ingestion_jobs"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    source_type: Mapped[SourceType] = mapped_column(
        _pg_enum(SourceType, "rag_source_type"), nullable=False
    )
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    operation: Mapped[IngestionOperation] = mapped_column(
        _pg_enum(IngestionOperation, "rag_ingestion_operation"),
        nullable=False,
        default=IngestionOperation.UPSERT,
    )
    status: Mapped[JobStatus] = mapped_column(
        _pg_enum(JobStatus, "rag_job_status"), nullable=False, default=JobStatus.PENDING
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_code: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    result_source_id: Mapped[UUID | None] = mapped_column()
    result_chunk_count: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "uq_rag_jobs_inflight",
            "source_type",
            "source_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_rag_jobs_claim", "status", "priority", "created_at"),
    )


class RagSyncCursor(Base):
    __tablename__ = "rag_sync_cursors"

    source_type: Mapped[SourceType] = mapped_column(
        _pg_enum(SourceType, "rag_source_type"), primary_key=True
    )
    cursor_value: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    items_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class RagQueryLog(Base):
    __tablename__ = "rag_query_log"

    id: Mapped[UUID] = mapped_column(primary_key=True)
    user_id: Mapped[str | None] = mapped_column(Text)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    intent: Mapped[str | None] = mapped_column(Text)
    customer_id: Mapped[int | None] = mapped_column(Integer)
    ticket_id: Mapped[int | None] = mapped_column(Integer)
    confidence: Mapped[str | None] = mapped_column(Text)
    retrieval_path: Mapped[str | None] = mapped_column(Text)
    structured_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    evidence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deny_reason: Mapped[str | None] = mapped_column(Text)
    latency_ms: Mapped[int | None] = mapped_column(Integer)
    filters: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (Index("ix_rag_query_log_created_at", "created_at"),)


# ============================================================================
# CRM Records (owned by the ticketing service, read here)
# ============================================================================


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    email: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[str] = mapped_column(Text, nullable=False, default="agent")
    is_external: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ticketing_role: Mapped[str | None] = mapped_column(Text)
    departments: Mapped[list[str] | None] = mapped_column(ARRAY(Text))


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str | None] = mapped_column(Text)
    last_name: Mapped[str | None] = mapped_column(Text)
    company: Mapped[str | None] = mapped_column(Text)
    primary_email: Mapped[str | None] = mapped_column(Text)
    primary_phone: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p).strip()
        return name or self.company or "Customer"


class CustomerIdentity(Base):
    __tablename__ = "customer_identities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[str | None] = mapped_column(Text)
    email: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new")
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="medium")
    type: Mapped[str | None] = mapped_column(Text)
    order_number: Mapped[str | None] = mapped_column(Text)
    tracking_number: Mapped[str | None] = mapped_column(Text)
    sender_email: Mapped[str | None] = mapped_column(Text)
    sender_name: Mapped[str | None] = mapped_column(Text)
    sender_phone: Mapped[str | None] = mapped_column(Text)
    sentiment: Mapped[str | None] = mapped_column(Text)
    conversation_id: Mapped[str | None] = mapped_column(Text)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    assignee_id: Mapped[str | None] = mapped_column(Text)
    reporter_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Relationships
    comments: Mapped[list["TicketComment"]] = relationship(
        back_populates="ticket", order_by="TicketComment.created_at"
    )


class TicketComment(Base):
    __tablename__ = "ticket_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_id: Mapped[int] = mapped_column(
        ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    comment_text: Mapped[str] = mapped_column(Text, nullable=False)
    commenter_id: Mapped[str | None] = mapped_column(Text)
    is_from_customer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_internal_note: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_outgoing_reply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    external_message_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Relationships
    ticket: Mapped["Ticket"] = relationship(back_populates="comments")


class Interaction(Base):
    __tablename__ = "interactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    ticket_id: Mapped[int | None] = mapped_column(Integer)
    comment_id: Mapped[int | None] = mapped_column(Integer)
    channel: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    details: Mapped[dict | None] = mapped_column("metadata", JSONB)


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[str | None] = mapped_column(Text)
    order_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="unfulfilled")
    financial_status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    details: Mapped[dict | None] = mapped_column("metadata", JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Relationships
    items: Mapped[list["OrderItem"]] = relationship(back_populates="order")
    customer: Mapped["Customer"] = relationship()


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    sku: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Relationships
    order: Mapped["Order"] = relationship(back_populates="items")


class QboInvoice(Base):
    __tablename__ = "qbo_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    qbo_invoice_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    qbo_customer_id: Mapped[str | None] = mapped_column(Text)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    doc_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(Text)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    txn_date: Mapped[date | None] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)
    details: Mapped[dict | None] = mapped_column("metadata", JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class QboEstimate(Base):
    __tablename__ = "qbo_estimates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    qbo_estimate_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    qbo_customer_id: Mapped[str | None] = mapped_column(Text)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    doc_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str | None] = mapped_column(Text)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    txn_date: Mapped[date | None] = mapped_column(Date)
    expiration_date: Mapped[date | None] = mapped_column(Date)
    details: Mapped[dict | None] = mapped_column("metadata", JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class QboCustomerSnapshot(Base):
    __tablename__ = "qbo_customer_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    qbo_customer_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="USD")
    terms: Mapped[str | None] = mapped_column(Text)
    last_invoice_date: Mapped[date | None] = mapped_column(Date)
    last_payment_date: Mapped[date | None] = mapped_column(Date)
    snapshot_taken_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ShipstationShipment(Base):
    __tablename__ = "shipstation_shipments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipstation_shipment_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    shipstation_order_id: Mapped[int | None] = mapped_column(BigInteger)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    order_number: Mapped[str | None] = mapped_column(Text)
    tracking_number: Mapped[str | None] = mapped_column(Text)
    carrier_code: Mapped[str | None] = mapped_column(Text)
    service_code: Mapped[str | None] = mapped_column(Text)
    ship_date: Mapped[date | None] = mapped_column(Date)
    delivery_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str | None] = mapped_column(Text)
    cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    weight: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    weight_unit: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column("metadata", JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Shipment(Base):
    """Unified shipments across carriers and marketplaces (Amazon FBA/MFN, ShipStation)."""

    __tablename__ = "shipments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    external_id: Mapped[str] = mapped_column(Text, nullable=False)
    order_id: Mapped[int | None] = mapped_column(Integer)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    order_number: Mapped[str | None] = mapped_column(Text)
    tracking_number: Mapped[str | None] = mapped_column(Text)
    carrier_code: Mapped[str | None] = mapped_column(Text)
    service_code: Mapped[str | None] = mapped_column(Text)
    ship_date: Mapped[date | None] = mapped_column(Date)
    estimated_delivery_date: Mapped[date | None] = mapped_column(Date)
    actual_delivery_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str | None] = mapped_column(Text)
    cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    weight: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    weight_unit: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column("metadata", JSONB)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Email(Base):
    """Mailbox mirror maintained by the mail triage pipeline."""

    __tablename__ = "emails"

    id: Mapped[str] = mapped_column(Text, primary_key=True)  # provider message id
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    subject: Mapped[str | None] = mapped_column(Text)
    body_html: Mapped[str | None] = mapped_column(Text)
    body_preview: Mapped[str | None] = mapped_column(Text)
    from_email: Mapped[str | None] = mapped_column(Text)
    from_name: Mapped[str | None] = mapped_column(Text)
    to_emails: Mapped[list[str] | None] = mapped_column(ARRAY(Text))
    cc_emails: Mapped[list[str] | None] = mapped_column(ARRAY(Text))
    conversation_id: Mapped[str | None] = mapped_column(Text)
    internet_message_id: Mapped[str | None] = mapped_column(Text)
    in_reply_to: Mapped[str | None] = mapped_column(Text)
    web_link: Mapped[str | None] = mapped_column(Text)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class CrmTask(Base):
    __tablename__ = "crm_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    assigned_to_id: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(Text)


class Opportunity(Base):
    __tablename__ = "opportunities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id"))
    owner_id: Mapped[str | None] = mapped_column(Text)
    name: Mapped[str | None] = mapped_column(Text)
