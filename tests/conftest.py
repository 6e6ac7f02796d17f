import tempfile
import threading
import time
import uuid
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from doc_convert.api.main import create_app
from doc_convert.dispatcher import ConversionOutput, Dispatcher
from doc_convert.errors import ConversionError
from doc_convert.models import DocConvertConfig
from doc_convert.queue.results import InputCleanup, ResultStore
from doc_convert.queue.sqlite_backend import SQLiteQueueStore


class FakeConverter:
    """Scriptable converter: fails ``failures`` times, then returns ``output``."""

    def __init__(self, failures=0, output=b"converted", error=None, delay_s=0.0, cooperative=True):
        self.failures = failures
        self.output = output
        self.error = error
        self.delay_s = delay_s
        self.cooperative = cooperative
        self.calls = []
        self.started = threading.Event()

    def convert(self, input_ref, options, context):
        self.calls.append({"input_ref": input_ref, "options": dict(options), "attempt": context.attempt})
        self.started.set()

        deadline = time.monotonic() + self.delay_s
        while time.monotonic() < deadline:
            if self.cooperative:
                context.raise_if_cancelled()
            time.sleep(0.01)

        if len(self.calls) <= self.failures:
            raise self.error or ConversionError(f"Simulated failure #{len(self.calls)}")
        context.report_progress(100)
        return ConversionOutput(
            output_bytes=self.output,
            filename=f"{Path(input_ref).stem}.out",
            content_type="text/plain",
            metadata={"fake": True},
        )


@pytest.fixture
def temp_dir():
    """Create temporary working directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """Create SQLiteQueueStore instance."""
    queue_store = SQLiteQueueStore(str(temp_dir / "queue.db"))
    yield queue_store
    queue_store.close()


@pytest.fixture
def make_input(temp_dir):
    """Factory for distinct input files (each job owns its own input)."""

    def _make(suffix=".xlsx", content=b"input data"):
        uploads = temp_dir / "uploads"
        uploads.mkdir(exist_ok=True)
        path = uploads / f"{uuid.uuid4()}{suffix}"
        path.write_bytes(content)
        return str(path)

    return _make


@pytest.fixture
def results(temp_dir):
    return ResultStore(str(temp_dir / "results"))


@pytest.fixture
def cleanup(temp_dir):
    return InputCleanup(str(temp_dir / "uploads"), delete_inputs=True)


@pytest.fixture
def fake_converter():
    return FakeConverter()


@pytest.fixture
def dispatcher(fake_converter):
    """Dispatcher with a fake converter for every spreadsheet/markup type."""
    registry = Dispatcher(job_timeout_s=5)
    for type_name in (
        "excel-to-csv",
        "csv-to-excel",
        "excel-to-json",
        "json-to-excel",
        "markdown-to-html",
        "html-to-markdown",
        "office-to-pdf",
    ):
        registry.register(type_name, fake_converter)
    return registry


@pytest.fixture
def config(temp_dir):
    """Config rooted in the temp dir with fast polling."""
    return DocConvertConfig.from_dict(
        {
            "queue": {"db_path": str(temp_dir / "queue.db"), "backoff_base_ms": 2000},
            "workers": {
                "concurrency": 2,
                "poll_interval_s": 0.05,
                "lease_timeout_s": 30,
                "heartbeat_interval_s": 0.05,
                "reaper_interval_s": 0.5,
            },
            "dispatch": {"job_timeout_s": 5},
            "storage": {
                "uploads_dir": str(temp_dir / "uploads"),
                "results_dir": str(temp_dir / "results"),
            },
            "logging": {"level": "WARNING"},
        }
    )


@pytest.fixture(scope="function")
async def client(config, dispatcher):
    app = create_app(config=config, dispatcher=dispatcher, start_workers=False)

    # ASGITransport does not run the lifespan; drive it explicitly
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            ac.app = app
            yield ac
