"""RAG schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

CRM tables (tickets, orders, invoices, ...) belong to the ticketing service
and are not created here.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

EMBEDDING_DIM = 1536

SOURCE_TYPES = (
    "ticket",
    "ticket_comment",
    "email",
    "interaction",
    "qbo_invoice",
    "qbo_estimate",
    "qbo_customer",
    "shopify_order",
    "shopify_customer",
    "amazon_order",
    "shipstation_shipment",
    "amazon_shipment",
    "order",
)


def _source_type_enum() -> sa.Enum:
    return sa.Enum(*SOURCE_TYPES, name="rag_source_type", create_type=False)


def upgrade() -> None:
    # pgvector for embeddings, pg_trgm for fuzzy identifier matching
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # Create enums
    quoted = ", ".join(f"'{t}'" for t in SOURCE_TYPES)
    op.execute(f"CREATE TYPE rag_source_type AS ENUM ({quoted})")
    op.execute("""
        CREATE TYPE rag_sensitivity AS ENUM ('public', 'internal');
        CREATE TYPE rag_ingestion_operation AS ENUM ('upsert', 'reindex', 'delete');
        CREATE TYPE rag_job_status AS ENUM (
            'pending', 'processing', 'completed', 'failed', 'skipped'
        );
    """)

    # rag_sources
    op.create_table(
        "rag_sources",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("source_type", _source_type_enum(), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column("source_uri", sa.Text(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("ticket_id", sa.Integer(), nullable=True),
        sa.Column("thread_id", sa.Text(), nullable=True),
        sa.Column("parent_id", sa.UUID(), nullable=True),
        sa.Column(
            "sensitivity",
            sa.Enum("public", "internal", name="rag_sensitivity", create_type=False),
            nullable=False,
            server_default="public",
        ),
        sa.Column("owner_user_id", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("content_text", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("source_created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "indexed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("reindexed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_type", "source_id", name="uq_rag_sources_type_id"),
    )
    op.create_index("ix_rag_sources_customer_id", "rag_sources", ["customer_id"])
    op.create_index("ix_rag_sources_ticket_id", "rag_sources", ["ticket_id"])
    op.create_index(
        "ix_rag_sources_thread_created", "rag_sources", ["thread_id", "source_created_at"]
    )
    op.create_index(
        "ix_rag_sources_metadata",
        "rag_sources",
        ["metadata"],
        postgresql_using="gin",
        postgresql_ops={"metadata": "jsonb_path_ops"},
    )

    # rag_chunks
    op.create_table(
        "rag_chunks",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("source_id", sa.UUID(), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("chunk_count", sa.Integer(), nullable=False),
        sa.Column("chunk_text", sa.Text(), nullable=False),
        sa.Column("chunk_hash", sa.Text(), nullable=False),
        sa.Column("token_count", sa.Integer(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIM), nullable=True),
        sa.Column("embedded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "tsv",
            postgresql.TSVECTOR(),
            sa.Computed("to_tsvector('english', chunk_text)", persisted=True),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["source_id"], ["rag_sources.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_id", "chunk_index", name="uq_rag_chunks_source_index"),
        sa.CheckConstraint(
            "chunk_index >= 0 AND chunk_index < chunk_count", name="ck_rag_chunks_index_range"
        ),
    )
    op.create_index("ix_rag_chunks_chunk_hash", "rag_chunks", ["chunk_hash"])
    op.create_index("ix_rag_chunks_tsv", "rag_chunks", ["tsv"], postgresql_using="gin")
    op.create_index(
        "ix_rag_chunks_embedding_hnsw",
        "rag_chunks",
        ["embedding"],
        postgresql_using="hnsw",
        postgresql_ops={"embedding": "vector_cosine_ops"},
    )

    # rag_ingestion_jobs
    op.create_table(
        "rag_ingestion_jobs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("source_type", _source_type_enum(), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column(
            "operation",
            sa.Enum(
                "upsert", "reindex", "delete", name="rag_ingestion_operation", create_type=False
            ),
            nullable=False,
            server_default="upsert",
        ),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "processing",
                "completed",
                "failed",
                "skipped",
                name="rag_job_status",
                create_type=False,
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("result_source_id", sa.UUID(), nullable=True),
        sa.Column("result_chunk_count", sa.Integer(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    # At most one live job per source key
    op.create_index(
        "uq_rag_jobs_inflight",
        "rag_ingestion_jobs",
        ["source_type", "source_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )
    op.create_index(
        "ix_rag_jobs_claim", "rag_ingestion_jobs", ["status", "priority", "created_at"]
    )

    # rag_sync_cursors
    op.create_table(
        "rag_sync_cursors",
        sa.Column("source_type", _source_type_enum(), nullable=False),
        sa.Column(
            "cursor_value",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("items_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("source_type"),
    )

    # rag_query_log
    op.create_table(
        "rag_query_log",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("query_text", sa.Text(), nullable=False),
        sa.Column("intent", sa.Text(), nullable=True),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        sa.Column("ticket_id", sa.Integer(), nullable=True),
        sa.Column("confidence", sa.Text(), nullable=True),
        sa.Column("retrieval_path", sa.Text(), nullable=True),
        sa.Column("structured_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("evidence_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deny_reason", sa.Text(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("filters", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rag_query_log_created_at", "rag_query_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_rag_query_log_created_at", table_name="rag_query_log")
    op.drop_table("rag_query_log")
    op.drop_table("rag_sync_cursors")
    op.drop_index("ix_rag_jobs_claim", table_name="rag_ingestion_jobs")
    op.drop_index("uq_rag_jobs_inflight", table_name="rag_ingestion_jobs")
    op.drop_table("rag_ingestion_jobs")
    op.drop_index("ix_rag_chunks_embedding_hnsw", table_name="rag_chunks")
    op.drop_index("ix_rag_chunks_tsv", table_name="rag_chunks")
    op.drop_index("ix_rag_chunks_chunk_hash", table_name="rag_chunks")
    op.drop_table("rag_chunks")
    op.drop_index("ix_rag_sources_metadata", table_name="rag_sources")
    op.drop_index("ix_rag_sources_thread_created", table_name="rag_sources")
    op.drop_index("ix_rag_sources_ticket_id", table_name="rag_sources")
    op.drop_index("ix_rag_sources_customer_id", table_name="rag_sources")
    op.drop_table("rag_sources")

    op.execute("DROP TYPE rag_job_status")
    op.execute("DROP TYPE rag_ingestion_operation")
    op.execute("DROP TYPE rag_sensitivity")
    op.execute("DROP TYPE rag_source_type")
    op.execute("DROP EXTENSION IF EXISTS pg_trgm")
    op.execute("DROP EXTENSION IF EXISTS vector")
