"""SQLAlchemy models describing the generation pipeline tables."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from photogen.services.stages import PipelineStage, TaskStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for ORM models."""

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )


class User(Base):
    """Account holding the spendable credit balance."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_consumed_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    works: Mapped[list["Work"]] = relationship(back_populates="user")


class Task(Base):
    """Internal lifecycle record of one generation request."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="photography", nullable=False)
    mode: Mapped[str] = mapped_column(String(32), default="normal", nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        default=TaskStatus.PENDING.value,
        index=True,
        nullable=False,
    )
    stage: Mapped[str] = mapped_column(String(32), default=PipelineStage.QUEUED.value)
    params: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    credits_cost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    work: Mapped["Work"] = relationship(back_populates="task", uselist=False)


class Work(Base):
    """User-facing record exposing the result of a task."""

    __tablename__ = "works"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    task_id: Mapped[str] = mapped_column(ForeignKey("tasks.id"), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(32), default="photography", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.PENDING.value, nullable=False)
    images: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    parameters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    original_images: Mapped[list[str]] = mapped_column(JSON, default=list)
    scene_id: Mapped[str | None] = mapped_column(String(64))
    scene_info: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    reference_work_id: Mapped[str | None] = mapped_column(String(64))
    pose_description: Mapped[str | None] = mapped_column(Text)
    ai_model: Mapped[str | None] = mapped_column(String(128))
    ai_prompt: Mapped[str | None] = mapped_column(Text)
    ai_description: Mapped[str | None] = mapped_column(Text)
    error: Mapped[str | None] = mapped_column(Text)
    is_favorite: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    task: Mapped[Task] = relationship(back_populates="work")
    user: Mapped[User] = relationship(back_populates="works")


class CreditLedgerEntry(Base):
    """Append-only audit trail of balance changes.

    At most one debit and one credit exist per task; the credit row is the
    refund marker that makes compensation idempotent.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (UniqueConstraint("task_id", "direction", name="uq_ledger_task_direction"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    task_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(String(256))
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)


class AIModel(Base):
    """Registered generation backend."""

    __tablename__ = "ai_models"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), default="openai_compatible")
    model_name: Mapped[str] = mapped_column(String(128), nullable=False)
    api_format: Mapped[str] = mapped_column(String(32), default="openai_compatible")
    api_url: Mapped[str] = mapped_column(String(256), nullable=False)
    api_key: Mapped[str] = mapped_column(String(256), default="")
    capability: Mapped[str] = mapped_column(String(32), default="text-to-image")
    status: Mapped[str] = mapped_column(String(16), default="active")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    weight: Mapped[int] = mapped_column(Integer, default=0)


class Scene(Base):
    """Photography scene used as prompt context."""

    __tablename__ = "scenes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    prompt_hint: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
