"""Shared database fixtures."""

import tempfile
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from listing_hub.db.engine import create_db_engine, create_session_factory
from listing_hub.db.models import Base


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test_listing_hub.db"


@pytest.fixture
def engine(temp_db_path):
    """Create a test database engine with all tables."""
    engine = create_db_engine(temp_db_path)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    """Session factory bound to the test engine."""
    return create_session_factory(engine)


@pytest.fixture
def session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


APP_SOURCES = """
pipeline:
  circuit_breaker_threshold: 20
  default_limit: 50

sources:
  - name: fixture
    adapter: fixture
    enabled: true
    custom_config:
      page_size: 2

  - name: dormant
    adapter: fixture
    enabled: false
"""


@pytest.fixture
def app_env(tmp_path, monkeypatch):
    """Point the process-wide database, registry and blob store at tmp_path."""
    from listing_hub.db.engine import init_db, reset_engine
    from listing_hub.ingestion.registry import reset_default_registry

    config_path = tmp_path / "sources.yaml"
    config_path.write_text(APP_SOURCES, encoding="utf-8")
    db_path = tmp_path / "app.db"

    monkeypatch.setenv("DATABASE_URL", str(db_path))
    monkeypatch.setenv("SOURCES_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("BLOB_STORAGE_PATH", str(tmp_path / "blobs"))
    reset_engine()
    reset_default_registry()
    init_db()

    yield tmp_path

    reset_engine()
    reset_default_registry()
