"""Database models for the media credits service."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.session import Base

__all__ = [
    "Base",
    "ApiKey",
    "GenerationKind",
    "GenerationOutput",
    "GenerationTask",
    "OutputStatus",
    "ProviderType",
    "QueueEntry",
    "QueueStatus",
    "Subject",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionStatus",
    "User",
]


def _new_id() -> str:
    return str(uuid4())


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    """Enum column that persists member values rather than names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class SubscriptionStatus(str, enum.Enum):
    """Billing status of a subscription."""

    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    IN_GRACE = "in_grace"


class GenerationKind(str, enum.Enum):
    """Kind of media a generation task produces."""

    MUSIC = "music"
    VIDEO = "video"


class ProviderType(str, enum.Enum):
    """Outbound generation providers, one dispatch queue each."""

    MUSIC = "music"
    VIDEO = "video"


class OutputStatus(str, enum.Enum):
    """Status of one output within a generation task."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class QueueStatus(str, enum.Enum):
    """Status of a dispatch queue entry."""

    PENDING = "pending"
    IN_FLIGHT = "inFlight"
    COMPLETED = "completed"
    FAILED = "failed"


class User(Base):
    """Account owner. The billing provider's app user id is this id."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    active_subscription_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    # Relationships
    api_keys: Mapped[list["ApiKey"]] = relationship("ApiKey", back_populates="user")


class Subscription(Base):
    """Per-user credit counter for the current period."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    tier: Mapped[str] = mapped_column(String(20), default="free")
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus), default=SubscriptionStatus.ACTIVE
    )
    product_id: Mapped[str] = mapped_column(String(100), default="free-tier")
    platform: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Ledger state; written only by src.services.ledger
    consumed_credits: Mapped[int] = mapped_column(Integer, default=0)
    period_start: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    custom_credit_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_verified_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms
    expires_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # epoch ms
    version: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class SubscriptionEvent(Base):
    """Audit log of billing events applied to a subscription."""

    __tablename__ = "subscription_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    event_type: Mapped[str] = mapped_column(String(50), index=True)
    product_id: Mapped[str] = mapped_column(String(100))
    tier: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20))
    store: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    entitlement_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    tier_reset: Mapped[bool] = mapped_column(default=False)
    recorded_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms


class Subject(Base):
    """User content a generation is made from (e.g. a diary entry)."""

    __tablename__ = "subjects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    content: Mapped[str] = mapped_column(Text)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    primary_audio_output_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    primary_video_output_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    updated_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # epoch ms
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class GenerationTask(Base):
    """One accepted provider request; its id is the provider's task id."""

    __tablename__ = "generation_tasks"

    task_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    subject_id: Mapped[str] = mapped_column(String(36), index=True)
    kind: Mapped[GenerationKind] = mapped_column(_enum_column(GenerationKind))
    output_count: Mapped[int] = mapped_column(Integer)
    credit_cost: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[int] = mapped_column(BigInteger)  # epoch ms

    # Relationships
    outputs: Mapped[list["GenerationOutput"]] = relationship(
        "GenerationOutput",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="GenerationOutput.output_index",
    )


class GenerationOutput(Base):
    """One indexable result unit of a generation task."""

    __tablename__ = "generation_outputs"
    __table_args__ = (
        UniqueConstraint("task_id", "output_index", name="uq_generation_outputs_task_index"),
        Index("ix_generation_outputs_subject_status", "subject_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("generation_tasks.task_id", ondelete="CASCADE"), index=True
    )
    subject_id: Mapped[str] = mapped_column(String(36))
    kind: Mapped[GenerationKind] = mapped_column(_enum_column(GenerationKind))
    output_index: Mapped[int] = mapped_column(Integer)
    status: Mapped[OutputStatus] = mapped_column(
        _enum_column(OutputStatus), default=OutputStatus.PENDING
    )

    # Results
    result_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    duration: Mapped[Optional[float]] = mapped_column(nullable=True)
    result_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps (epoch ms)
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)

    # Relationships
    task: Mapped["GenerationTask"] = relationship("GenerationTask", back_populates="outputs")


class QueueEntry(Base):
    """A generation request waiting for (or holding) a provider slot."""

    __tablename__ = "queue_entries"
    __table_args__ = (
        Index("ix_queue_entries_provider_status", "provider_type", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_type: Mapped[ProviderType] = mapped_column(_enum_column(ProviderType))
    owner_id: Mapped[str] = mapped_column(String(36), index=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    status: Mapped[QueueStatus] = mapped_column(
        _enum_column(QueueStatus), default=QueueStatus.PENDING
    )
    correlation_task_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps (epoch ms)
    created_at: Mapped[int] = mapped_column(BigInteger)
    started_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger)


class ApiKey(Base):
    """API keys for authentication."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    key_hash: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(12), index=True)  # "gk_" + first 8 chars
    name: Mapped[str] = mapped_column(String(100))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    scopes: Mapped[list] = mapped_column(JSON, default=list)  # ["music", "video"]
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="api_keys")
