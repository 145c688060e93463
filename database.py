"""
database.py — SQLAlchemy models and session management.

Uses PostgreSQL in production (via DATABASE_URL env var set by Railway).
Falls back to SQLite locally so you can develop without Postgres.
"""

import logging
import os
from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("article-agents")

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./article_agents.db")

# Railway (and some other hosts) expose postgres:// but SQLAlchemy requires postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def make_engine(url: str):
    """Build an engine with the connect args each backend needs."""
    kwargs: dict = {"pool_pre_ping": True}   # drop stale connections before use
    if url.startswith("sqlite"):
        # Background jobs write from executor threads
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every thread sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class Workflow(Base):
    __tablename__ = "workflows"

    id               = Column(String(36), primary_key=True)
    user_id          = Column(String(36), index=True, nullable=True)
    title            = Column(String(255), nullable=False)
    # {"steps": [{"id": "content-audit", "title": ..., "outputs": {...}}]}
    content_json     = Column(Text, nullable=False)
    created_at       = Column(DateTime, default=datetime.utcnow)
    updated_at       = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ArticleSession(Base):
    __tablename__ = "article_sessions"
    __table_args__ = (
        UniqueConstraint("workflow_id", "kind", "version", name="uq_article_session_version"),
    )

    id                 = Column(String(36), primary_key=True)
    workflow_id        = Column(String(36), nullable=False, index=True)  # soft reference
    kind               = Column(String(50), nullable=False, index=True)  # semantic_audit | final_polish
    version            = Column(Integer, nullable=False)
    step_id            = Column(String(100), nullable=False)
    status             = Column(String(50), default="pending", index=True)
    original_article   = Column(Text, nullable=False)
    context            = Column(Text, nullable=True)      # research outline / research context
    total_sections     = Column(Integer, default=0)
    completed_sections = Column(Integer, default=0)
    citations_used     = Column(Integer, default=0)
    conflicts_found    = Column(Integer, default=0)
    # Parsed sections, approaches used, etc. Stored as text so SQLite and Postgres behave alike.
    metadata_json      = Column(Text, nullable=True)
    final_article      = Column(Text, nullable=True)
    error_message      = Column(Text, nullable=True)
    started_at         = Column(DateTime, nullable=True)
    completed_at       = Column(DateTime, nullable=True)
    created_at         = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at         = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ArticleSection(Base):
    __tablename__ = "article_sections"
    __table_args__ = (
        UniqueConstraint("session_id", "section_number", name="uq_article_section_number"),
    )

    id               = Column(String(36), primary_key=True)
    session_id       = Column(String(36), ForeignKey("article_sessions.id"), nullable=False, index=True)
    workflow_id      = Column(String(36), nullable=False, index=True)
    version          = Column(Integer, nullable=False)
    section_number   = Column(Integer, nullable=False)
    title            = Column(Text, nullable=False)
    header_level     = Column(String(5), default="h2")
    original_content = Column(Text, nullable=True)
    revised_content  = Column(Text, nullable=True)   # audited or polished text
    strengths        = Column(Text, nullable=True)
    weaknesses       = Column(Text, nullable=True)
    approach         = Column(Text, nullable=True)   # editing pattern / polish approach
    citations_added  = Column(Integer, nullable=True)
    brand_conflicts  = Column(Text, nullable=True)
    engagement_score = Column(Float, nullable=True)
    clarity_score    = Column(Float, nullable=True)
    status           = Column(String(50), default="completed")
    metadata_json    = Column(Text, nullable=True)
    created_at       = Column(DateTime, default=datetime.utcnow)
    updated_at       = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TargetPageIntelligence(Base):
    __tablename__ = "target_page_intelligence"

    target_page_id        = Column(String(36), primary_key=True)
    target_page_url       = Column(String(2048), nullable=True)
    research_status       = Column(String(50), default="idle")
    research_session_id   = Column(String(100), nullable=True)
    research_started_at   = Column(DateTime, nullable=True)
    research_completed_at = Column(DateTime, nullable=True)
    research_output_json  = Column(Text, nullable=True)
    client_input          = Column(Text, nullable=True)
    # editedResearch / clientAnswers / additionalInfo
    metadata_json         = Column(Text, nullable=True)
    brief_status          = Column(String(50), default="idle")
    brief_session_id      = Column(String(100), nullable=True)
    brief_generated_at    = Column(DateTime, nullable=True)
    final_brief           = Column(Text, nullable=True)
    created_at            = Column(DateTime, default=datetime.utcnow)
    updated_at            = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ---------------------------------------------------------------------------
# Migration helpers — idempotent ALTER TABLE for existing databases
# ---------------------------------------------------------------------------

def _migrate_schema() -> None:
    """Add columns introduced after the first deploy. Safe to run repeatedly."""
    new_columns = [
        ("article_sessions", "conflicts_found", "INTEGER"),
        ("article_sessions", "final_article",   "TEXT"),
        ("article_sections", "header_level",    "VARCHAR(5)"),
        ("workflows",        "user_id",         "VARCHAR(36)"),
    ]
    with engine.connect() as conn:
        for table, col_name, col_type in new_columns:
            try:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}"))
                conn.commit()
                logger.info(f"Migration: added {table}.{col_name}")
            except Exception:
                conn.rollback()
                # Column already exists — expected on subsequent startups


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def init_db() -> None:
    """Create all tables + run migrations. Safe to call on every startup."""
    Base.metadata.create_all(bind=engine)
    _migrate_schema()
