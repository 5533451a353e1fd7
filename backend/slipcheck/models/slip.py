import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")


def _json_type():
    # as_mutable() binds per type instance; mutable columns each need their own.
    return JSON().with_variant(JSONB, "postgresql")

SLIP_STATUSES = ("pending", "processing", "validated", "failed")
SLIP_SOURCES = ("pos", "website")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Slip(Base):
    __tablename__ = "slips"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    filename = Column(String(255))
    file_url = Column(Text)
    storage_key = Column(String(512))
    content_type = Column(String(128))
    source = Column(String(16), nullable=False, default="pos", server_default=text("'pos'"))
    uploaded_by = Column(String(64))
    uploaded_by_name = Column(String(255))
    status = Column(String(16), nullable=False, default="processing", server_default=text("'processing'"))

    ocr_text = Column(Text, nullable=False, default="", server_default=text("''"))
    ocr_confidence = Column(Float)
    entered_reference = Column(String(128))
    expected_amount = Column(Numeric(14, 2))
    detected_amount = Column(Numeric(14, 2))
    detected_reference = Column(String(128))
    reference_match = Column(Boolean)
    amount_match = Column(Boolean)

    # Merge-only evidence bag and append-only review trail.
    validation_result = Column(MutableDict.as_mutable(_json_type()), nullable=False, default=dict)
    review_events = Column(MutableList.as_mutable(_json_type()), nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','validated','failed')",
            name="ck_slips_status",
        ),
        CheckConstraint("source IN ('pos','website')", name="ck_slips_source"),
        Index("idx_slips_status_created", "status", "created_at"),
        Index("idx_slips_source_created", "source", "created_at"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_entity", "entity_type", "entity_id"),
        Index("idx_audit_logs_timestamp", "timestamp"),
    )
