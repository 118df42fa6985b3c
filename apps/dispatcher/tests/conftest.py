from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from expdispatch.config import get_settings
from expdispatch.db import create_db_engine
from expdispatch.store import JobStore


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite+pysqlite:///{tmp_path / 'dispatcher-tests.db'}"


@pytest.fixture
def engine(sqlite_url: str) -> Iterator[Engine]:
    engine = create_db_engine(sqlite_url)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine) -> JobStore:
    job_store = JobStore(engine, "experiments")
    job_store.create_table()
    return job_store
