"""Database operations and models."""

from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional

from loguru import logger
from sqlalchemy import Column, Date, Float, Integer, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


class DailyUsage(Base):
    """Database model for one day of analysis spend."""
    __tablename__ = 'daily_usage'

    day = Column(Date, primary_key=True)
    total_cost = Column(Float, nullable=False, default=0.0)
    analysis_count = Column(Integer, nullable=False, default=0)
    cached_count = Column(Integer, nullable=False, default=0)
    high_count = Column(Integer, nullable=False, default=0)
    medium_count = Column(Integer, nullable=False, default=0)
    low_count = Column(Integer, nullable=False, default=0)


class UsageStore:
    """SQLite store for daily usage records."""

    def __init__(self, db_path: Path, history_days: int = 90) -> None:
        """Initialize usage store.

        Args:
            db_path: Path to SQLite database file
            history_days: Number of most recent days to retain
        """
        self.db_path = Path(db_path)
        self.history_days = history_days
        self.engine = None
        self.session_factory = None
        self._init_database()

    def _init_database(self) -> None:
        """Initialize database connection and create tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_url = f"sqlite:///{self.db_path}"
        # Usage is written from the capture thread and read from timer threads
        self.engine = create_engine(db_url, echo=False, connect_args={"check_same_thread": False})

        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        logger.info(f"Usage database initialized: {self.db_path}")

    def get_session(self) -> Session:
        """Get a database session."""
        return self.session_factory()

    def load(self, day: date) -> Optional[DailyUsage]:
        """Get the record for one day.

        Args:
            day: Calendar day

        Returns:
            Detached record or None
        """
        with self.get_session() as session:
            row = session.get(DailyUsage, day)
            if row:
                session.expunge(row)
            return row

    def save(self, row: DailyUsage) -> None:
        """Insert or update a day's record, then trim old history."""
        with self.get_session() as session:
            session.merge(row)
            session.commit()
        self.trim()

    def history(self, days: int) -> List[DailyUsage]:
        """Get records for the most recent days, newest first.

        Args:
            days: Number of days to return

        Returns:
            List of detached records
        """
        with self.get_session() as session:
            rows = session.query(DailyUsage).order_by(DailyUsage.day.desc()).limit(days).all()
            for row in rows:
                session.expunge(row)
            return rows

    def trim(self, today: Optional[date] = None) -> int:
        """Delete records older than the retention window.

        Args:
            today: Reference day (defaults to the newest stored day)

        Returns:
            Number of deleted rows
        """
        with self.get_session() as session:
            if today is None:
                newest = session.query(DailyUsage.day).order_by(DailyUsage.day.desc()).first()
                if newest is None:
                    return 0
                today = newest[0]
            cutoff = today - timedelta(days=self.history_days - 1)
            deleted = session.query(DailyUsage).filter(DailyUsage.day < cutoff).delete()
            session.commit()

        if deleted:
            logger.info(f"Trimmed {deleted} usage records older than {cutoff}")
        return deleted

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
