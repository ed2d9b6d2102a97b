from sqlalchemy import Column, Integer, String, DateTime, JSON, BigInteger, Index
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class EntityRecord(Base):
    """One persisted entity. ``payload`` is the entity's field dict."""
    __tablename__ = 'entity_records'

    entity_type = Column(String(64), primary_key=True)
    entity_id = Column(String(256), primary_key=True)
    payload = Column(JSON, nullable=False)

    # Metadata
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_entity_records_type', 'entity_type'),
    )

    def __repr__(self):
        return f"<EntityRecord(type='{self.entity_type}', id='{self.entity_id}')>"


class ProcessedEvent(Base):
    """Marker for a log that has already been applied, keyed ``{txHash}:{logIndex}``."""
    __tablename__ = 'processed_events'

    event_key = Column(String(100), primary_key=True)
    event_name = Column(String(100), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    log_index = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime, default=func.now())

    def __repr__(self):
        return f"<ProcessedEvent(key='{self.event_key}', event='{self.event_name}')>"
