"""
SQLAlchemy Models for the RSS Wrangler story pipeline

Every entity except Tenant is scoped by tenant_id. All models use UUID
primary keys, timezone-aware UTC timestamps, and the natural-key indexes the
ingestion pipeline relies on for idempotent upserts.
"""
import enum
from datetime import datetime, timezone
from uuid import UUID, uuid4
from typing import Optional

from sqlalchemy import (
    Column, String, Text, Float, DateTime, Integer, BigInteger, Boolean,
    Enum as SAEnum, ForeignKey, Index, UniqueConstraint, JSON, Uuid, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, Mapped
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from wrangler.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always binds and returns timezone-aware UTC values."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# Enum Definitions
# ============================================================================

class FeedWeight(enum.Enum):
    """User-assigned source weight"""
    PREFER = "prefer"
    NEUTRAL = "neutral"
    DEPRIORITIZE = "deprioritize"

    @property
    def rank(self) -> int:
        return WEIGHT_RANK[self]


WEIGHT_RANK = {
    FeedWeight.PREFER: 3,
    FeedWeight.NEUTRAL: 2,
    FeedWeight.DEPRIORITIZE: 1,
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================================================
# Entity Models
# ============================================================================

class Tenant(Base):
    """
    Isolation boundary. No read or write ever crosses tenants.
    """
    __tablename__ = "tenants"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = Column(String(200), nullable=False)
    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )


class Folder(Base):
    """User-defined grouping of feeds"""
    __tablename__ = "folders"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = Column(String(200), nullable=False)
    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_folders_tenant_name"),
    )


class Feed(Base):
    """
    Subscribed RSS/Atom/JSON Feed/RDF source

    Created on subscription. The pipeline mutates only the polling cursor
    (etag, last_modified, last_polled_at) and circuit-breaker state; it never
    deletes a feed.
    """
    __tablename__ = "feeds"

    # Primary Key
    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )

    # Core Fields
    url: Mapped[str] = Column(String(2000), nullable=False)
    title: Mapped[str] = Column(String(500), nullable=False, default="")
    site_url: Mapped[Optional[str]] = Column(String(2000), nullable=True)
    folder_id: Mapped[Optional[UUID]] = Column(
        Uuid, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True
    )
    weight: Mapped[FeedWeight] = Column(
        SAEnum(FeedWeight, native_enum=True, name="feed_weight",
               values_callable=_enum_values),
        nullable=False,
        default=FeedWeight.NEUTRAL
    )
    muted: Mapped[bool] = Column(Boolean, nullable=False, default=False)

    # Polling cursor
    etag: Mapped[Optional[str]] = Column(String(500), nullable=True)
    last_modified: Mapped[Optional[str]] = Column(String(100), nullable=True)
    last_polled_at: Mapped[Optional[datetime]] = Column(UTCDateTime(timezone=True), nullable=True)

    # Circuit breaker
    consecutive_failures: Mapped[int] = Column(Integer, nullable=False, default=0)
    circuit_open_until: Mapped[Optional[datetime]] = Column(UTCDateTime(timezone=True), nullable=True)
    blocked: Mapped[bool] = Column(Boolean, nullable=False, default=False)
    last_failure_reason: Mapped[Optional[str]] = Column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    # Relationships
    items: Mapped[list["Item"]] = relationship("Item", back_populates="feed")

    # Indexes
    __table_args__ = (
        UniqueConstraint("tenant_id", "url", name="uq_feeds_tenant_url"),
        Index("ix_feeds_tenant_last_polled", "tenant_id", "last_polled_at"),
    )


class Item(Base):
    """
    One fetched entry from one feed

    Identity is (tenant, feed, guid) when a guid exists, otherwise
    (tenant, feed, canonical_url, published_at). Identity fields never change
    after insert; title, summary and hero image follow the latest poll.
    """
    __tablename__ = "items"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    feed_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False
    )

    # Identity
    guid: Mapped[Optional[str]] = Column(String(2000), nullable=True)
    url: Mapped[str] = Column(String(2000), nullable=False)
    canonical_url: Mapped[str] = Column(String(2000), nullable=False)
    published_at: Mapped[datetime] = Column(UTCDateTime(timezone=True), nullable=False)

    # Content
    title: Mapped[str] = Column(String(1000), nullable=False)
    summary: Mapped[Optional[str]] = Column(Text, nullable=True)
    ai_summary: Mapped[Optional[str]] = Column(Text, nullable=True)
    author: Mapped[Optional[str]] = Column(String(500), nullable=True)
    hero_image_url: Mapped[Optional[str]] = Column(String(2000), nullable=True)

    # Similarity fingerprint (unsigned 64-bit stored as signed BIGINT)
    simhash: Mapped[Optional[int]] = Column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    # Relationships
    feed: Mapped["Feed"] = relationship("Feed", back_populates="items")

    # Indexes
    __table_args__ = (
        Index("uq_items_feed_guid", "tenant_id", "feed_id", "guid", unique=True,
              postgresql_where=text("guid IS NOT NULL"),
              sqlite_where=text("guid IS NOT NULL")),
        Index("uq_items_feed_canonical", "tenant_id", "feed_id", "canonical_url", "published_at",
              unique=True,
              postgresql_where=text("guid IS NULL"),
              sqlite_where=text("guid IS NULL")),
        Index("ix_items_tenant_published", "tenant_id", "published_at"),
    )

    @property
    def fingerprint(self) -> Optional[int]:
        """Unsigned 64-bit view of the stored simhash."""
        if self.simhash is None:
            return None
        return to_unsigned64(self.simhash)


class Cluster(Base):
    """
    A story: items from one or more feeds judged to report the same event

    Grows by member addition only; the pipeline never merges two clusters.
    """
    __tablename__ = "clusters"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    rep_item_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    size: Mapped[int] = Column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow
    )

    # Relationships
    rep_item: Mapped["Item"] = relationship("Item", foreign_keys=[rep_item_id])
    members: Mapped[list["ClusterMember"]] = relationship(
        "ClusterMember",
        back_populates="cluster",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_clusters_tenant_updated", "tenant_id", "updated_at"),
    )


class ClusterMember(Base):
    """Membership row; an item belongs to at most one cluster"""
    __tablename__ = "cluster_members"

    cluster_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("clusters.id", ondelete="CASCADE"), primary_key=True
    )
    item_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("items.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    added_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    cluster: Mapped["Cluster"] = relationship("Cluster", back_populates="members")
    item: Mapped["Item"] = relationship("Item")

    __table_args__ = (
        UniqueConstraint("item_id", name="uq_cluster_members_item"),
        Index("ix_cluster_members_tenant", "tenant_id"),
    )


class ReadState(Base):
    """
    Per-cluster read/saved/not-interested markers

    Written by the UI; the pipeline only reads it (and the retention job
    auto-marks stale clusters read).
    """
    __tablename__ = "read_states"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    cluster_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("clusters.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    read_at: Mapped[Optional[datetime]] = Column(UTCDateTime(timezone=True), nullable=True)
    saved_at: Mapped[Optional[datetime]] = Column(UTCDateTime(timezone=True), nullable=True)
    not_interested_at: Mapped[Optional[datetime]] = Column(UTCDateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_read_states_tenant", "tenant_id"),
    )


class Digest(Base):
    """
    Time-windowed snapshot of unread clusters

    One per tenant per window; never mutated after creation.
    """
    __tablename__ = "digests"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    window_start: Mapped[datetime] = Column(UTCDateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = Column(UTCDateTime(timezone=True), nullable=False)
    title: Mapped[str] = Column(String(200), nullable=False)
    body: Mapped[str] = Column(Text, nullable=False)
    entries: Mapped[list] = Column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "window_start", name="uq_digests_tenant_window"),
        Index("ix_digests_tenant_created", "tenant_id", "created_at"),
    )


class AppSetting(Base):
    """
    Per-tenant key-value settings store

    The pipeline reads the 'main' key for feature flags and thresholds.
    """
    __tablename__ = "app_settings"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    key: Mapped[str] = Column(String(100), nullable=False)
    data: Mapped[dict] = Column(JSONType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "key", name="uq_app_settings_tenant_key"),
    )


class AiUsage(Base):
    """Token and cost accounting for AI completion calls"""
    __tablename__ = "ai_usage"

    id: Mapped[UUID] = Column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = Column(
        Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = Column(String(50), nullable=False)
    model: Mapped[str] = Column(String(100), nullable=False)
    input_tokens: Mapped[int] = Column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = Column(Integer, nullable=False, default=0)
    estimated_cost_usd: Mapped[float] = Column(Float, nullable=False, default=0.0)
    feature: Mapped[str] = Column(String(50), nullable=False)  # summary, digest
    duration_ms: Mapped[Optional[int]] = Column(Integer, nullable=True)
    created_at: Mapped[datetime] = Column(
        UTCDateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now()
    )

    __table_args__ = (
        Index("ix_ai_usage_tenant_created", "tenant_id", "created_at"),
    )


# ============================================================================
# Helper Functions
# ============================================================================

def to_signed64(value: int) -> int:
    """Map an unsigned 64-bit fingerprint onto the signed BIGINT range."""
    return value - (1 << 64) if value >= (1 << 63) else value


def to_unsigned64(value: int) -> int:
    """Inverse of to_signed64."""
    return value + (1 << 64) if value < 0 else value
