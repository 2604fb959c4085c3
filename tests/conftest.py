"""
StarChat Test Configuration
---------------------------
Shared fixtures and configuration for all tests.
"""

import sys
import tempfile
from pathlib import Path
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from infra.database import ChatDatabase, Persona
from infra.logging import reset_logging
from memory.store import MemoryStore


# =============================================================================
# Test Isolation
# =============================================================================

@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Keep real credentials and STARCHAT_* overrides out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("STARCHAT_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("LLM_API_KEY", raising=False)


@pytest.fixture(autouse=True)
def clean_logging():
    """Drop handlers installed by a test."""
    yield
    reset_logging()


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = ChatDatabase(db_path)
    db.initialize()

    yield db

    db.close()
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def persona(temp_db):
    """An active persona stored in the temp database."""
    return temp_db.create_persona(Persona(
        name="Luna",
        english_name="Luna",
        gender="female",
        nationality="Korea",
        occupation="Singer",
        introduction="A cheerful pop singer.",
        style_features="Warm and playful.",
    ))


@pytest.fixture
def conversation(temp_db, persona):
    """A conversation between user 7 and the persona."""
    return temp_db.create_conversation(user_id=7, persona_id=persona.id, title="Test chat")


@pytest.fixture
def memory_store():
    """Fresh in-process memory store."""
    return MemoryStore()
