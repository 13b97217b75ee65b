import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ["TRACING_ENABLED"] = "false"
os.environ["OUTBOX_PUBLISHER_ENABLED"] = "false"
os.environ["RESUME_ON_STARTUP"] = "false"
os.environ["AUTO_CREATE_SCHEMA"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from statuscheck.common.db import Base
from statuscheck.services.orchestrator import models  # noqa: F401


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite schema shared by every session of one test."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()
