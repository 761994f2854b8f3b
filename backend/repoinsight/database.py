"""
Database models and configuration for durable analysis results.
"""
from sqlalchemy import create_engine, Column, String, Integer, DateTime, JSON
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisResultRow(Base):
    __tablename__ = "analysis_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_url = Column(String(500), unique=True, nullable=False, index=True)
    owner = Column(String(255), nullable=False)
    repo = Column(String(255), nullable=False)
    analysis_type = Column(String(50), default="full")
    metadata_ = Column("metadata", JSON, nullable=False)
    structure = Column(JSON, nullable=False)
    dependencies = Column(JSON, nullable=False)
    code_quality = Column(JSON, nullable=True)
    insights = Column(JSON, nullable=True)
    status = Column(String(50), default="completed")  # completed/degraded
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


def create_engine_instance(database_url: str) -> Engine:
    """Create SQLAlchemy engine with proper configuration."""
    if database_url.startswith("sqlite:///"):
        db_path = database_url[len("sqlite:///"):]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=300,
        echo=False,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(engine: Optional[Engine]) -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)
