from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from biosignal.utils import utc_now

WARMTH_CATEGORIES = ("active_client", "past_client", "in_pipeline", "new_prospect")

SIGNAL_STATUSES = ("new", "carried_forward", "claimed", "contacted", "closed")
ACTIVE_STATUSES = ("new", "carried_forward")

RUN_STATUSES = ("running", "completed", "failed")


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    # Lower-cased, legal-suffix-stripped identity; one row per organization.
    name_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True, index=True)
    industry: Mapped[str] = mapped_column(String(100), default="Life Sciences")
    relationship_warmth: Mapped[str] = mapped_column(String(30), default="new_prospect")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    signals: Mapped[list[Signal]] = relationship(
        "Signal", back_populates="company", cascade="all, delete-orphan",
    )


class Signal(Base):
    __tablename__ = "signals"
    __table_args__ = (
        UniqueConstraint("company_id", "kind", "dedup_key", name="uq_signal_identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    summary: Mapped[str] = mapped_column(Text, default="")
    detail_json: Mapped[str] = mapped_column(Text, default="{}")
    dedup_key: Mapped[str] = mapped_column(String(500), nullable=False)
    source_name: Mapped[str] = mapped_column(String(100), default="")
    status: Mapped[str] = mapped_column(String(30), default="new", index=True)  # see SIGNAL_STATUSES
    priority_score: Mapped[int] = mapped_column(Integer, default=0)
    score_breakdown_json: Mapped[str] = mapped_column(Text, default="{}")
    days_in_queue: Mapped[int] = mapped_column(Integer, default=0)
    first_detected_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    claimed_by: Mapped[str] = mapped_column(String(200), default="")

    company: Mapped[Company] = relationship("Company", back_populates="signals")


class PastClient(Base):
    __tablename__ = "past_clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    name_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ExcludedCompany(Base):
    __tablename__ = "excluded_companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    name_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    reason: Mapped[str] = mapped_column(String(300), default="")
    employee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_checked_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class JobPosting(Base):
    """Open roles seen by the job collectors; read by the pre-hiring adjustment."""

    __tablename__ = "job_postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), default="")
    source_url: Mapped[str] = mapped_column(String(500), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class DismissalRule(Base):
    __tablename__ = "dismissal_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signal_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)  # company | role_title | location
    rule_value: Mapped[str] = mapped_column(String(300), nullable=False)
    auto_exclude: Mapped[bool] = mapped_column(Boolean, default=True)


class AgentRun(Base):
    __tablename__ = "agent_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    signals_found: Mapped[int] = mapped_column(Integer, default=0)
    signals_carried_forward: Mapped[int] = mapped_column(Integer, default=0)
    detail_json: Mapped[str] = mapped_column(Text, default="{}")
    error_message: Mapped[str] = mapped_column(Text, default="")
