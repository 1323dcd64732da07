import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from repurpose_ai.analysis.capability import DemoCapability
from repurpose_ai.analysis.store import AnalysisStore, create_store_engine
from repurpose_ai.api.main import create_app
from repurpose_ai.models import PipelineConfig, StorageConfig
from repurpose_ai.pipeline import PipelineHandles
from repurpose_ai.queue import SQLiteQueue

from helpers import FakeClock, make_tutorial_payload


@pytest.fixture
def temp_dir():
    """Create temporary directory for database files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db(temp_dir):
    return str(temp_dir / "queue.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(temp_db):
    """SQLiteQueue on the real clock."""
    q = SQLiteQueue(temp_db)
    yield q
    q.close()


@pytest.fixture
def clocked_queue(temp_db, clock):
    """SQLiteQueue on a FakeClock."""
    q = SQLiteQueue(temp_db, clock=clock)
    yield q
    q.close()


@pytest.fixture
def store(temp_dir):
    """AnalysisStore over a temporary SQLite file."""
    s = AnalysisStore(create_store_engine(StorageConfig(url=f"sqlite:///{temp_dir / 'analyses.db'}")))
    yield s
    s.close()


@pytest.fixture
def tutorial_payload():
    return make_tutorial_payload()


@pytest.fixture
def handles(queue, store):
    return PipelineHandles(queue=queue, store=store, capability=DemoCapability())


@pytest.fixture(scope="function")
async def client(handles):
    app = create_app(PipelineConfig(), handles=handles)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
