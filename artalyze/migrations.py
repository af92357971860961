"""
Database migrations for the Artalyze API.
Tables come from SQLModel metadata; this adds the indexes the hot
queries rely on and records which steps have run.
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import os
import logging

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    ("001_puzzle_indexes", """
    CREATE INDEX IF NOT EXISTS idx_puzzleday_status_date ON puzzleday(status, scheduled_date);
    CREATE INDEX IF NOT EXISTS idx_imagepair_day_position ON imagepair(day_id, position)
    """),
    ("002_staging_indexes", """
    CREATE INDEX IF NOT EXISTS idx_pendingimage_unused ON pendingimage(used, uploaded_at)
    """),
    ("003_player_indexes", """
    CREATE INDEX IF NOT EXISTS idx_playersession_last_played ON playersession(last_played_date)
    """),
]


def get_engine():
    db_path = os.getenv("DATABASE_URL", "sqlite:///./artalyze.db")
    connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
    return create_engine(db_path, echo=False, connect_args=connect_args)


def has_migration_been_applied(engine, migration_name: str) -> bool:
    Migration.metadata.create_all(engine, tables=[Migration.__table__])  # type: ignore[attr-defined]
    with Session(engine) as session:
        return session.exec(select(Migration).where(Migration.name == migration_name)).first() is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration once; returns False if it had already run"""
    if has_migration_been_applied(engine, migration_name):
        logger.info("migration_skipped", extra={"kind": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("migration_failed", extra={"kind": migration_name, "error": str(e)})
            raise
    logger.info("migration_applied", extra={"kind": migration_name})
    return True


def run_migrations(engine=None) -> int:
    """Run all pending migrations, returning how many were applied"""
    engine = engine or get_engine()
    applied = sum(1 for name, sql in MIGRATIONS if apply_migration(engine, name, sql))
    logger.info("migrations_complete", extra={"applied": applied})
    return applied


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_migrations()
