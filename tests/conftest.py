"""Pytest configuration.

Points the service at a throwaway SQLite file and a test JWT secret before any
project module is imported (they read their settings at import time).
"""

import os
import sys
import tempfile
from pathlib import Path

_project_root = Path(__file__).resolve().parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

_tmp_dir = tempfile.mkdtemp(prefix="article-agents-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmp_dir}/test.db"
os.environ["ANTHROPIC_API_KEY"] = "test-key"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["RATE_LIMIT_PER_MIN"] = "1000"
os.environ["SSE_BACKLOG_RETENTION_SECONDS"] = "0"

import pytest

from broadcaster import ProgressBroadcaster
from database import init_db
from knowledge_base import KnowledgeBase
from session_store import SessionStore

WORKFLOW_STEPS = [
    {"id": "content-audit", "title": "Semantic SEO Audit", "outputs": {}},
    {"id": "final-polish", "title": "Final Polish", "outputs": {}},
]


@pytest.fixture(scope="session", autouse=True)
def _database():
    init_db()
    yield


@pytest.fixture
def store() -> SessionStore:
    return SessionStore()


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster(keepalive_seconds=0.05)


@pytest.fixture
def knowledge_base() -> KnowledgeBase:
    kb = KnowledgeBase()
    kb.add_document(
        "brand-voice.md",
        "# Brand voice\n\nKeep the reader engaged with warm, direct language.\n\nAvoid jargon and filler.",
    )
    kb.add_document(
        "semantic-seo.md",
        "# Semantic SEO\n\nCover the entities and related terms behind the search intent.",
    )
    return kb


@pytest.fixture
def workflow(store) -> dict:
    return store.create_workflow("Guide to standing desks", WORKFLOW_STEPS, user_id="user-1")


@pytest.fixture
def make_agent(store, broadcaster, knowledge_base):
    """Build an agent of the given class driven by a scripted fake client."""
    from tests.fakes import FakeAnthropic

    def _make(agent_cls, turns, **overrides):
        settings = dict(
            client=FakeAnthropic(turns),
            model="claude-test",
            store=store,
            broadcaster=broadcaster,
            knowledge_base=knowledge_base,
            turn_delay=0,
            retry_delay=0,
        )
        settings.update(overrides)
        return agent_cls(**settings)

    return _make
