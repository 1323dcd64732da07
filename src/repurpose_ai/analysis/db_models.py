from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Float, Index, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisRecord(Base):
    __tablename__ = "analyses"

    id = Column(String, primary_key=True)
    # Idempotency guard: one committed analysis per video, ever
    videoId = Column(String, nullable=False, unique=True)  # noqa: N815
    userId = Column(String, nullable=False)  # noqa: N815
    keyMoments = Column(JSON, nullable=False)  # noqa: N815
    overallSummary = Column(Text, nullable=True)  # noqa: N815
    totalDuration = Column(Float, nullable=True)  # noqa: N815
    createdAt = Column(DateTime, default=utcnow, nullable=False)  # noqa: N815
    updatedAt = Column(  # noqa: N815
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        # "most recent analyses for a user"
        Index("ix_analyses_user_created", "userId", "createdAt"),
    )
