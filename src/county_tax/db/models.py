"""SQLAlchemy 2.0 table definitions for the tax pipeline."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from county_tax.enums import (
    Confidence,
    PaymentStatus,
    ProcessingStatus,
    RunStatus,
    RunType,
    SkipReason,
)

Money = Numeric(12, 2)
Rate = Numeric(8, 5)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum(enum_cls: type, name: str) -> Enum:
    # Store the enum values ("counted"), not the member names ("COUNTED")
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Base(DeclarativeBase):
    """Shared declarative base for all pipeline tables."""


class SyncedInvoice(Base):
    """Local mirror of an invoice in the invoicing system."""

    __tablename__ = "synced_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(64))
    invoice_date: Mapped[date | None] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)
    external_customer_id: Mapped[str | None] = mapped_column(String(64), index=True)
    # Customer fields are a snapshot taken at sync time
    customer_name: Mapped[str] = mapped_column(String(255), default="Unknown")
    customer_address: Mapped[str | None] = mapped_column(Text)
    customer_email: Mapped[str | None] = mapped_column(String(255))
    subtotal: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    amount_due: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), default=PaymentStatus.UNPAID
    )
    paid_date: Mapped[date | None] = mapped_column(Date)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("ix_synced_invoices_invoice_date", "invoice_date"),)


class TaxResult(Base):
    """Tax determination for one invoice; exactly one row per invoice."""

    __tablename__ = "tax_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_invoice_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(64))
    invoice_date: Mapped[date | None] = mapped_column(Date)
    paid_date: Mapped[date | None] = mapped_column(Date)
    external_customer_id: Mapped[str | None] = mapped_column(String(64))
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_address: Mapped[str | None] = mapped_column(Text)
    subtotal: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))

    status: Mapped[ProcessingStatus] = mapped_column(
        _enum(ProcessingStatus, "processing_status"), nullable=False
    )
    skip_reason: Mapped[SkipReason | None] = mapped_column(_enum(SkipReason, "skip_reason"))
    error_message: Mapped[str | None] = mapped_column(Text)

    geocoded_county: Mapped[str | None] = mapped_column(String(128))
    geocoding_confidence: Mapped[Confidence | None] = mapped_column(
        _enum(Confidence, "geocoding_confidence")
    )
    geocoding_raw_response: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    state_tax_rate: Mapped[Decimal | None] = mapped_column(Rate)
    state_tax_amount: Mapped[Decimal | None] = mapped_column(Money)
    county_tax_rate: Mapped[Decimal | None] = mapped_column(Rate)
    county_tax_amount: Mapped[Decimal | None] = mapped_column(Money)
    total_tax: Mapped[Decimal | None] = mapped_column(Money)

    run_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_tax_results_status", "status"),
        Index("ix_tax_results_county", "geocoded_county"),
    )


class PipelineRun(Base):
    """One execution of the sync or calculate stage."""

    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    run_type: Mapped[RunType] = mapped_column(_enum(RunType, "run_type"), nullable=False)
    status: Mapped[RunStatus] = mapped_column(
        _enum(RunStatus, "run_status"), nullable=False, default=RunStatus.IN_PROGRESS
    )
    current_status: Mapped[str | None] = mapped_column(Text)

    total_items: Mapped[int] = mapped_column(Integer, default=0)
    items_processed: Mapped[int] = mapped_column(Integer, default=0)
    items_succeeded: Mapped[int] = mapped_column(Integer, default=0)
    items_skipped: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    # Page number for sync runs, batch number for calculate runs
    current_batch: Mapped[int] = mapped_column(Integer, default=0)
    total_batches: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list[str]] = mapped_column(JSON, default=list)

    created_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    error_stack: Mapped[str | None] = mapped_column(Text)
    cancelled: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (Index("ix_pipeline_runs_type_status", "run_type", "status"),)


class CountyTaxRate(Base):
    """County rate reference data, maintained outside the pipeline."""

    __tablename__ = "county_tax_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    county_name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    state_tax_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    county_tax_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    total_tax_rate: Mapped[Decimal] = mapped_column(Rate, nullable=False)


class CustomerExclusion(Base):
    """Customer whose invoices are never taxed (e.g. exempt or test accounts)."""

    __tablename__ = "customer_exclusions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_address: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class CustomerInclusion(Base):
    """Customer processed when the calculation runs in include-only mode."""

    __tablename__ = "customer_inclusions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_customer_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255))
    customer_address: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
