from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, UniqueConstraint

from .base import Base, TimestampMixin


class MutationKind:
    UPSERT = "upsert"
    DELETE = "delete"


class EntityRow(Base, TimestampMixin):
    """One cached entity. ``seq`` preserves insertion order across upserts."""
    __tablename__ = "entity_records"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id", name="uq_entity_key"),)

    seq = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(40), nullable=False, index=True)
    entity_id = Column(String(200), nullable=False)
    payload = Column(JSON, nullable=False)


class CacheMetadata(Base):
    """Last local write per entity; drives time-based eviction."""
    __tablename__ = "cache_metadata"

    entity_type = Column(String(40), primary_key=True)
    entity_id = Column(String(200), primary_key=True)
    last_updated = Column(DateTime, nullable=False, index=True)


class PendingMutation(Base):
    """Durable retry record. Composite key: one row per (type, id, kind)."""
    __tablename__ = "mutation_queue"

    entity_type = Column(String(40), primary_key=True)
    entity_id = Column(String(200), primary_key=True)
    kind = Column(String(10), primary_key=True)  # upsert, delete
    enqueued_at = Column(DateTime, nullable=False, index=True)

    # Retry bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
