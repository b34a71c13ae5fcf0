"""
SQLAlchemy-backed checkpoint store for changes feed sequences.

Persists the ``since`` a consumer has fully processed so a new follower can
resume from it.
"""

from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, BigInteger, UniqueConstraint, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from datetime import datetime, timezone
from typing import Optional, List
import logging
from prometheus_client import Counter
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .errors import CheckpointError

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangesCheckpoint(Base):
    """
    Changes feed checkpoint model.

    Stores:
    - feed_id: Name the consumer stores its position under
    - db: Database whose feed is followed
    - since: Opaque sequence token to resume after
    - created_at: First checkpoint time
    - updated_at: Last update time
    """
    __tablename__ = "changes_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    feed_id = Column(String(255), nullable=False, index=True)
    db = Column(String(255), nullable=False)
    since = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint('feed_id', 'db', name='uq_changes_checkpoints_feed_db'),
        Index('idx_changes_checkpoints_updated_at', 'updated_at'),
    )


checkpoint_saves_total = Counter(
    'couchfeed_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'couchfeed_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)

_db_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(OperationalError),
    reraise=True
)


class CheckpointStore:
    """
    Thread-safe checkpoint store.

    Features:
    - Transactional upsert per (feed_id, db)
    - Automatic retry on transient database failures
    - Connection pooling
    - Metrics instrumentation

    Thread Safety: YES (SQLAlchemy session per call)

    Example:
        >>> store = CheckpointStore("sqlite:///checkpoints.db")
        >>> store.save_checkpoint("orders-indexer", "orders", "42-g1AAAA")
        >>> store.load_checkpoint("orders-indexer", "orders")
        '42-g1AAAA'
    """

    def __init__(self, database_url: str):
        """
        Initialize checkpoint store.

        Args:
            database_url: SQLAlchemy connection URL

        Raises:
            CheckpointError: If database connection fails
        """
        try:
            engine_options = {"pool_pre_ping": True, "echo": False}
            if not database_url.startswith("sqlite"):
                engine_options.update(pool_size=5, max_overflow=10, pool_recycle=3600)
            self.engine = create_engine(database_url, **engine_options)

            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False
            )

            # Create tables if not exist
            Base.metadata.create_all(self.engine)

            # Test connection
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("CheckpointStore initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize CheckpointStore: {e}")
            raise CheckpointError(f"Database connection failed: {e}") from e

    def save_checkpoint(self, feed_id: str, db: str, since: str) -> None:
        """
        Save checkpoint (upsert).

        Args:
            feed_id: Consumer identifier
            db: Database name
            since: Sequence token the consumer has processed up to

        Raises:
            CheckpointError: If save fails after retries
        """
        if not isinstance(since, str) or not since:
            raise CheckpointError("Invalid since: must be a non-empty sequence string")
        try:
            self._save(feed_id, db, since)
        except SQLAlchemyError as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(
                f"Database error saving checkpoint: {e}",
                extra={"feed_id": feed_id, "db": db}
            )
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug(
            f"Saved checkpoint for {feed_id} on database {db}",
            extra={"feed_id": feed_id, "db": db, "since": since}
        )

    @_db_retry
    def _save(self, feed_id: str, db: str, since: str) -> None:
        session: Session = self.SessionLocal()
        try:
            with session.begin():
                checkpoint = session.query(ChangesCheckpoint).filter_by(
                    feed_id=feed_id,
                    db=db
                ).with_for_update().first()

                if checkpoint:
                    checkpoint.since = since
                    checkpoint.updated_at = _utcnow()
                else:
                    session.add(ChangesCheckpoint(feed_id=feed_id, db=db, since=since))
        finally:
            session.close()

    def load_checkpoint(self, feed_id: str, db: str) -> Optional[str]:
        """
        Load checkpoint for feed_id+db.

        Returns:
            Stored since if one exists, None otherwise

        Raises:
            CheckpointError: If load fails after retries
        """
        try:
            since = self._load(feed_id, db)
        except SQLAlchemyError as e:
            checkpoint_loads_total.labels(status='error').inc()
            logger.error(
                f"Database error loading checkpoint: {e}",
                extra={"feed_id": feed_id, "db": db}
            )
            raise CheckpointError(f"Database error: {e}") from e

        if since is None:
            checkpoint_loads_total.labels(status='not_found').inc()
            logger.debug(
                f"No checkpoint found for {feed_id} on database {db}",
                extra={"feed_id": feed_id, "db": db}
            )
            return None

        checkpoint_loads_total.labels(status='success').inc()
        return since

    @_db_retry
    def _load(self, feed_id: str, db: str) -> Optional[str]:
        session: Session = self.SessionLocal()
        try:
            checkpoint = session.query(ChangesCheckpoint).filter_by(feed_id=feed_id, db=db).first()
            return checkpoint.since if checkpoint else None
        finally:
            session.close()

    def delete_checkpoint(self, feed_id: str, db: str) -> None:
        """
        Delete checkpoint, so the next follower starts from its default position.
        """
        session: Optional[Session] = None
        try:
            session = self.SessionLocal()

            with session.begin():
                checkpoint = session.query(ChangesCheckpoint).filter_by(
                    feed_id=feed_id,
                    db=db
                ).first()

                if checkpoint:
                    session.delete(checkpoint)
                    logger.info(
                        f"Deleted checkpoint for {feed_id} on database {db}",
                        extra={"feed_id": feed_id, "db": db}
                    )

        except SQLAlchemyError as e:
            logger.error(
                f"Database error deleting checkpoint: {e}",
                extra={"feed_id": feed_id, "db": db}
            )
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            if session:
                session.close()

    def get_all_checkpoints(self) -> List[ChangesCheckpoint]:
        """
        Get all checkpoints.

        Returns:
            List of all checkpoints
        """
        session: Optional[Session] = None
        try:
            session = self.SessionLocal()
            checkpoints = session.query(ChangesCheckpoint).order_by(ChangesCheckpoint.feed_id).all()
            session.expunge_all()
            return checkpoints

        except SQLAlchemyError as e:
            logger.error(f"Database error loading all checkpoints: {e}")
            raise CheckpointError(f"Database error: {e}") from e

        finally:
            if session:
                session.close()

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("CheckpointStore connections closed")
