"""Commit layer: writes a validated analysis exactly once per video.

The unique constraint on ``analyses.videoId`` is the only idempotency
mechanism. A duplicate insert (redelivered job, concurrent workers, repeat
submission) surfaces as ``CommitConflictError`` and is absorbed by
``AnalysisStore.commit``, which reports the already-committed analysis id
instead of failing.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import CommitConflictError, TransientStoreError
from ..models import StorageConfig
from .db_models import AnalysisRecord, Base, utcnow
from .models import Analysis, ValidatedAnalysis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitResult:
    analysis_id: str
    already_committed: bool = False


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def create_store_engine(config: StorageConfig):
    """Engine with a bounded connection pool (low/high watermarks from config)."""
    url = config.url

    if _is_memory_sqlite(url):
        # Single shared connection; a pool would give each thread its own empty DB
        return create_engine(
            url,
            echo=config.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    pool_size = max(config.pool_min, 1)
    kwargs = {
        "echo": config.echo,
        "pool_size": pool_size,
        "max_overflow": max(config.pool_max - pool_size, 0),
        "pool_timeout": config.pool_timeout_s,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 15}

    return create_engine(url, **kwargs)


def _to_model(record: AnalysisRecord) -> Analysis:
    return Analysis(
        id=record.id,
        videoId=record.videoId,
        userId=record.userId,
        keyMoments=record.keyMoments,
        overallSummary=record.overallSummary,
        totalDuration=record.totalDuration,
        createdAt=record.createdAt,
        updatedAt=record.updatedAt,
    )


class AnalysisStore:
    """Durable store of committed analyses.

    Every call checks a connection out of the engine pool and returns it
    when the session closes; no connection is held between jobs.
    """

    def __init__(self, engine, create_schema: bool = True):
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_config(cls, config: StorageConfig) -> "AnalysisStore":
        return cls(create_store_engine(config))

    def commit(self, video_id: str, user_id: str, analysis: ValidatedAnalysis) -> CommitResult:
        """Insert the analysis for ``video_id`` unless one already exists.

        Returns:
            CommitResult with the new id, or the existing id and
            ``already_committed=True`` when the uniqueness guard fired

        Raises:
            TransientStoreError: Store unavailable; caller should retry
        """
        try:
            analysis_id = self.insert(video_id, user_id, analysis)
        except CommitConflictError as conflict:
            logger.info(
                "Analysis for video %s already committed (%s); duplicate absorbed",
                video_id, conflict.analysis_id,
            )
            return CommitResult(analysis_id=conflict.analysis_id, already_committed=True)

        logger.info("Committed analysis %s for video %s", analysis_id, video_id)
        return CommitResult(analysis_id=analysis_id)

    def insert(self, video_id: str, user_id: str, analysis: ValidatedAnalysis) -> str:
        """Plain insert.

        Raises:
            CommitConflictError: An analysis for this video already exists
            TransientStoreError: Store unavailable
        """
        now = utcnow()
        record = AnalysisRecord(
            id=str(uuid.uuid4()),
            videoId=video_id,
            userId=user_id,
            keyMoments=[m.model_dump(by_alias=True) for m in analysis.key_moments],
            overallSummary=analysis.overall_summary,
            totalDuration=analysis.total_duration,
            createdAt=now,
            updatedAt=now,
        )

        try:
            with self.Session() as session:
                session.add(record)
                try:
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    existing = self._existing_id(video_id)
                    if existing is None:
                        raise TransientStoreError(f"insert rejected for video {video_id}: {e}") from e
                    raise CommitConflictError(video_id, existing) from e
        except (OperationalError, PoolTimeoutError) as e:
            raise TransientStoreError(f"analysis store unavailable: {e}") from e

        return record.id

    def _existing_id(self, video_id: str) -> Optional[str]:
        with self.Session() as session:
            return session.scalar(
                select(AnalysisRecord.id).where(AnalysisRecord.videoId == video_id)
            )

    def get(self, analysis_id: str) -> Optional[Analysis]:
        with self.Session() as session:
            record = session.get(AnalysisRecord, analysis_id)
            return _to_model(record) if record else None

    def get_by_video(self, video_id: str) -> Optional[Analysis]:
        with self.Session() as session:
            record = session.scalar(
                select(AnalysisRecord).where(AnalysisRecord.videoId == video_id)
            )
            return _to_model(record) if record else None

    def recent_for_user(self, user_id: str, limit: int = 10) -> List[Analysis]:
        """Most recent analyses for a user (served by the userId/createdAt index)."""
        with self.Session() as session:
            records = session.scalars(
                select(AnalysisRecord)
                .where(AnalysisRecord.userId == user_id)
                .order_by(AnalysisRecord.createdAt.desc())
                .limit(limit)
            ).all()
            return [_to_model(r) for r in records]

    def count_for_video(self, video_id: str) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count()).select_from(AnalysisRecord).where(
                    AnalysisRecord.videoId == video_id
                )
            )

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Analysis store connections released")
