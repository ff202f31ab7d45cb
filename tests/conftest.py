# tests/conftest.py

import os
import sys
import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db, make_engine
from exceptions import QueueUnavailableError, RenderHostError, ShaderCompileError
from main import create_app
from services import EncodeResult, ShaderRenderer
from storage import DeliveryService
from worker import ExportWorker

SHADER = "void main() { gl_FragColor = vec4(1.0); }"


class FakeQueueClient:
    """Stands in for QueueClient; records enqueued messages."""

    def __init__(self, available=True, capacity=None):
        self.available = available
        self.capacity = capacity
        self.messages = []
        self.is_connected = False

    def connect(self, max_retries=1):
        if not self.available:
            raise QueueUnavailableError()
        self.is_connected = True

    def close(self):
        self.is_connected = False

    def enqueue(self, message, options=None):
        if not self.available or (self.capacity is not None and len(self.messages) >= self.capacity):
            raise QueueUnavailableError()
        self.messages.append(message)
        return message.job_id


class FakeRenderHost:
    """Writes small placeholder frames instead of driving a browser."""

    instances = []
    lock = threading.Lock()

    def __init__(self, job_id, never_ready=False, crash_at=None, launch_error=None):
        self.job_id = job_id
        self.never_ready = never_ready
        self.crash_at = crash_at
        self.launch_error = launch_error
        self.times = []
        self.paths = []
        self.size = None
        self.closed = False
        self.foreign_files = []
        with FakeRenderHost.lock:
            FakeRenderHost.instances.append(self)

    def launch(self, width, height):
        if self.launch_error:
            raise self.launch_error
        self.size = (width, height)

    def initialize(self, shader_code, width, height):
        if self.never_ready:
            raise ShaderCompileError()

    def render_frame(self, t, path):
        if self.crash_at is not None and len(self.times) == self.crash_at:
            raise RenderHostError(f"Rendering host failed at t={t:.3f}s: Target crashed")
        with open(path, "w") as f:
            f.write(self.job_id)
        self.times.append(t)
        self.paths.append(path)
        frames_dir = os.path.dirname(path)
        for name in os.listdir(frames_dir):
            with open(os.path.join(frames_dir, name)) as f:
                if f.read() != self.job_id:
                    self.foreign_files.append(name)

    def close(self):
        self.closed = True


class FakeEncoder:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def encode(self, job_id, frames_dir, fps, quality, output_path):
        self.calls.append((job_id, sorted(os.listdir(frames_dir)), fps, quality))
        if self.error:
            raise self.error
        with open(output_path, "wb") as f:
            f.write(b"fake-video-" + job_id.encode())
        return EncodeResult(output_path=output_path, elapsed_seconds=0.01)


@pytest.fixture(autouse=True)
def reset_fake_hosts():
    FakeRenderHost.instances = []
    yield


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def scratch_root(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return str(path)


@pytest.fixture
def delivery(tmp_path):
    return DeliveryService(exports_dir=str(tmp_path / "exports"), public_base_url="http://testserver")


@pytest.fixture
def make_worker(session_factory, delivery, scratch_root):
    def _make(host_options=None, encoder=None, job_timeout=None):
        host_options = host_options or {}
        renderer = ShaderRenderer(host_factory=lambda job_id: FakeRenderHost(job_id, **host_options))
        return ExportWorker(
            session_factory,
            renderer=renderer,
            encoder=encoder or FakeEncoder(),
            delivery=delivery,
            scratch_root=scratch_root,
            job_timeout=job_timeout,
        )
    return _make


@pytest.fixture
def queue_client():
    client = FakeQueueClient()
    client.connect()
    return client


@pytest.fixture
def app(queue_client, delivery, session_factory):
    application = create_app(queue_client=queue_client, delivery=delivery)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = override_get_db
    return application


@pytest.fixture
def api(app):
    return TestClient(app)
