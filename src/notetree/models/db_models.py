"""SQLAlchemy database models for the notetree store."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer,
                        String, Text, create_engine, event, inspect, text)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from notetree.config import config
from notetree.models.schema import utc_now

# Create base class for SQLAlchemy models
Base = declarative_base()


def naive_utc_now() -> datetime.datetime:
    # SQLite DateTime columns drop tzinfo; values are always UTC
    return utc_now().replace(tzinfo=None)


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = "folders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(Integer, ForeignKey("folders.id"), nullable=True, index=True)
    position = Column(Integer, nullable=False, default=0)
    is_public = Column(Boolean, nullable=False, default=False)
    is_favorite = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_folders_parent_position", "parent_id", "position"),
    )

    def __repr__(self) -> str:
        """Return string representation of folder."""
        return f"<Folder(id={self.id}, name='{self.name}', parent_id={self.parent_id})>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    folder_id = Column(Integer, ForeignKey("folders.id"), nullable=True, index=True)
    position = Column(Integer, nullable=False, default=0)
    is_public = Column(Boolean, nullable=False, default=False)
    is_favorite = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=naive_utc_now, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id={self.id}, title='{self.title}', folder_id={self.folder_id})>"


def init_db(db_url: Optional[str] = None):
    """Create the engine and the schema.

    - foreign keys are enforced on every connection
    - file databases run in WAL mode
    - in-memory databases share one connection, so every session sees
      the same data

    Args:
        db_url: SQLAlchemy URL; defaults to the configured database path.

    Returns:
        The SQLAlchemy engine.
    """
    url = db_url or config.get_db_url()
    in_memory = url in ("sqlite://", "sqlite:///:memory:")

    engine_kwargs = {"connect_args": {"check_same_thread": False}}
    if in_memory:
        engine_kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **engine_kwargs)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            # WAL mode: writes go to separate journal, preventing corruption on crash
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    Base.metadata.create_all(engine)

    # Run migrations for schema updates
    _migrate_add_flag_columns(engine)

    return engine


def _migrate_add_flag_columns(engine) -> None:
    """Migration: add is_public / is_favorite to databases created without them.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check
    the schema first. This is idempotent and safe to run multiple times.
    """
    inspector = inspect(engine)
    with engine.connect() as conn:
        for table in ("folders", "notes"):
            columns = [col["name"] for col in inspector.get_columns(table)]
            for column in ("is_public", "is_favorite"):
                if column not in columns:
                    conn.execute(text(
                        f"ALTER TABLE {table} ADD COLUMN {column} BOOLEAN "
                        "NOT NULL DEFAULT 0"
                    ))
        conn.commit()


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine)
