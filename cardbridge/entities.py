# cardbridge/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from cardbridge.variants import DeliverableStatus, EvaluationStatus, TERMINAL_STATUSES

Base = declarative_base()

JsonColumn = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def to_epoch_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on backends (sqlite) that drop tzinfo."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Card(Base):
    __tablename__ = "card"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    variant: Mapped[str] = mapped_column(String(20), nullable=False)
    security: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_kind: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_card_organization_slug"),
        Index("ix_card_organization_subject", "organization_id", "subject_kind"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "slug": self.slug,
            "label": self.label,
            "variant": self.variant,
            "security": self.security,
            "subject_kind": self.subject_kind,
            "created_by": self.created_by,
            "created_at": to_epoch_ms(self.created_at),
        }


class Procedure(Base):
    __tablename__ = "procedure"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    # {"kind": ..., "operation": ...}
    subject: Mapped[dict | None] = mapped_column(JsonColumn)
    # [{"card_id": ..., "required": bool, "write_to": {"path": ...}}, ...]
    card_refs: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_procedure_organization_source", "organization_id", "source"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "source": self.source,
            "subject": self.subject,
            "card_refs": list(self.card_refs or []),
            "created_at": to_epoch_ms(self.created_at),
            "updated_at": to_epoch_ms(self.updated_at),
        }


class Deliverable(Base):
    __tablename__ = "deliverable"

    id: Mapped[str] = mapped_column(String(255), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    subject_kind: Mapped[str] = mapped_column(String(255), nullable=False)

    required_card_slugs: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    required_deliverable_ids: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    schedule: Mapped[dict | None] = mapped_column(JsonColumn)

    callback_action: Mapped[str | None] = mapped_column(String(255))
    callback_url: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeliverableStatus.ACTIVE.value,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_deliverable_organization_subject", "organization_id", "subject_kind", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "subject_kind": self.subject_kind,
            "required_card_slugs": list(self.required_card_slugs or []),
            "required_deliverable_ids": list(self.required_deliverable_ids or []),
            "schedule": self.schedule,
            "callback_action": self.callback_action,
            "callback_url": self.callback_url,
            "status": self.status,
            "created_at": to_epoch_ms(self.created_at),
            "updated_at": to_epoch_ms(self.updated_at),
        }


class Evaluation(Base):
    __tablename__ = "evaluation"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    deliverable_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)

    subject_kind: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mutated_fields: Mapped[list | None] = mapped_column(JsonColumn)

    variables: Mapped[dict] = mapped_column(JsonColumn, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EvaluationStatus.PENDING.value,  # pending, running, completed, failed
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime())
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # {"success": bool, "duration": ..., "error": ..., "logs": [...], "artifacts": [...]}
    result: Mapped[dict | None] = mapped_column(JsonColumn)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = (
        Index("ix_evaluation_deliverable_subject", "deliverable_id", "subject_id", "status"),
        Index("ix_evaluation_organization", "organization_id"),
        Index("ix_evaluation_status_scheduled", "status", "scheduled_for"),
        # one open readiness event per (deliverable, subject)
        Index(
            "uq_evaluation_pending",
            "deliverable_id",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        context = {
            "subject_kind": self.subject_kind,
            "subject_id": self.subject_id,
        }
        if self.mutated_fields is not None:
            context["mutated_fields"] = list(self.mutated_fields)

        return {
            "id": self.id,
            "deliverable_id": self.deliverable_id,
            "organization_id": self.organization_id,
            "context": context,
            "variables": dict(self.variables or {}),
            "status": self.status,
            "scheduled_for": to_epoch_ms(self.scheduled_for),
            "started_at": to_epoch_ms(self.started_at),
            "result": self.result,
            "created_at": to_epoch_ms(self.created_at),
            "completed_at": to_epoch_ms(self.completed_at),
        }
