"""
models/assessment.py - SQLAlchemy ORM for committed skill assessments.

Table: assessments
One row per successfully validated assessment. Written exactly once per chat
session by the persistence gate; never updated afterwards.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from skillpath.database import Base


class AssessmentORM(Base):
    """
    ORM model for a single assessment result.

    owner_key: SHA-256 of the caller's auth token. The raw token is never stored.
    raw_json:  full validated + sanitized AssessmentResult (camelCase keys).
    """
    __tablename__ = "assessments"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    owner_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="SHA-256 hex digest of the caller token",
    )
    skill_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
