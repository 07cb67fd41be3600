"""Shared fixtures: in-memory Supabase, a scripted inference backend, mock HTTP."""

import io
import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from PIL import Image

from visionary.config import Settings
from visionary.errors import CancellationFailed, PollingTransportError, SubmissionFailed
from visionary.history.metadata import ProcessingMetadataStore
from visionary.history.recorder import HistoryRecorder
from visionary.jobs.dispatcher import InferenceBackend
from visionary.jobs.models import Job, JobHandle, JobKind
from visionary.jobs.submitter import JobSubmitter
from visionary.orchestration.orchestrator import VisualizationOrchestrator
from visionary.prompts.enhancer import PromptEnhancer
from visionary.storage.access_urls import AccessUrlResolver
from visionary.storage.media_store import MediaStore

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (2, 2), (200, 40, 40)).save(buf, format="PNG")
    return buf.getvalue()


PNG_BYTES = _png_bytes()

SUPABASE_URL = "https://proj.supabase.co"


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------


class FakeQuery:
    """Mimics the supabase-py table query builder over a list of dicts."""

    def __init__(self, table: "FakeTable"):
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: List[tuple] = []
        self._limit: Optional[int] = None
        self._on_conflict: Optional[str] = None
        self._ignore_duplicates = False

    def select(self, *columns):
        self._op = "select"
        return self

    def insert(self, row):
        self._op, self._payload = "insert", row
        return self

    def update(self, data):
        self._op, self._payload = "update", data
        return self

    def upsert(self, row, on_conflict: str = "", ignore_duplicates: bool = False):
        self._op, self._payload = "upsert", row
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matches(self, row) -> bool:
        return all(row.get(c) == v for c, v in self._filters)

    def execute(self):
        table = self._table
        if table.fail:
            raise RuntimeError(f"{table.name} unavailable")
        table.calls.append((self._op, self._payload, list(self._filters)))

        if self._op == "select":
            rows = [dict(r) for r in table.rows if self._matches(r)]
            if self._limit is not None:
                rows = rows[: self._limit]
            return SimpleNamespace(data=rows)

        if self._op == "insert":
            row = dict(self._payload)
            row.setdefault("id", f"hist-{next(table.ids)}")
            table.rows.append(row)
            return SimpleNamespace(data=[dict(row)])

        if self._op == "update":
            updated = []
            for row in table.rows:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated)

        # upsert
        key = self._on_conflict
        for row in table.rows:
            if key and row.get(key) == self._payload.get(key):
                if not self._ignore_duplicates:
                    row.update(self._payload)
                return SimpleNamespace(data=[dict(row)])
        table.rows.append(dict(self._payload))
        return SimpleNamespace(data=[dict(self._payload)])


class FakeTable:
    def __init__(self, name: str):
        self.name = name
        self.rows: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []
        self.ids = itertools.count(1)
        self.fail = False

    def updates(self) -> List[Dict[str, Any]]:
        return [payload for op, payload, _ in self.calls if op == "update"]


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str):
        self._storage = storage
        self.name = name

    def upload(self, path, data, file_options=None):
        if self._storage.fail_upload:
            raise RuntimeError("storage unavailable")
        self._storage.objects[(self.name, path)] = data
        self._storage.uploads.append((self.name, path, file_options))
        return {"Key": f"{self.name}/{path}"}

    def get_public_url(self, path):
        if self._storage.fail_public_url:
            raise RuntimeError("storage unavailable")
        return f"{SUPABASE_URL}/storage/v1/object/public/{self.name}/{path}?"

    def create_signed_url(self, path, expires_in):
        if self._storage.fail_sign:
            raise RuntimeError("signing failed")
        self._storage.signed.append((self.name, path, expires_in))
        return {
            "signedURL": f"{SUPABASE_URL}/storage/v1/object/sign/{self.name}/{path}?token=tok"
        }


class FakeStorage:
    def __init__(self):
        self.objects: Dict[tuple, bytes] = {}
        self.uploads: List[tuple] = []
        self.signed: List[tuple] = []
        self.fail_upload = False
        self.fail_sign = False
        self.fail_public_url = False

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self, bucket)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, FakeTable] = {}
        self.storage = FakeStorage()

    def table(self, name: str) -> FakeTable:
        if name not in self.tables:
            self.tables[name] = FakeTable(name)
        return FakeQuery(self.tables[name])

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(name, FakeTable(name)).rows

    def get(self, name: str) -> FakeTable:
        return self.tables.setdefault(name, FakeTable(name))


# ---------------------------------------------------------------------------
# Inference backend
# ---------------------------------------------------------------------------


class FakeBackend(InferenceBackend):
    """Jobs are scripted by the test through ``set_job``."""

    def __init__(self):
        self.jobs: Dict[str, Job] = {}
        self.created: List[tuple] = []
        self.canceled: List[str] = []
        self.polled: List[str] = []
        self.fail_create = False
        self.fail_cancel = False
        self.fail_poll = False
        self._ids = itertools.count(1)

    async def create_job(self, kind: JobKind, model: str, input: Dict[str, Any]) -> JobHandle:
        if self.fail_create:
            raise SubmissionFailed("provider rejected the job")
        prefix = "fs" if kind == JobKind.FACE_SWAP else "pred"
        job_id = f"{prefix}-{next(self._ids)}"
        self.created.append((kind, model, input))
        self.jobs[job_id] = Job(id=job_id, kind=kind, status="starting", created_at=NOW)
        return JobHandle(id=job_id, kind=kind, status="starting")

    async def get_job(self, job_id: str, kind: JobKind) -> Job:
        self.polled.append(job_id)
        if self.fail_poll:
            raise PollingTransportError("connection reset")
        job = self.jobs[job_id]
        return job.model_copy(update={"kind": kind})

    async def cancel_job(self, job_id: str) -> None:
        if self.fail_cancel:
            raise CancellationFailed("cannot cancel")
        self.canceled.append(job_id)
        self.jobs[job_id] = self.jobs[job_id].model_copy(update={"status": "canceled"})

    def set_job(self, job_id: str, status: str, output: Any = None, error: Optional[str] = None,
                created_at: datetime = NOW) -> None:
        kind = JobKind.FACE_SWAP if job_id.startswith("fs") else JobKind.BASE_GENERATION
        self.jobs[job_id] = Job(
            id=job_id, kind=kind, status=status, output=output, error=error, created_at=created_at
        )

    def kinds_created(self) -> List[JobKind]:
        return [kind for kind, _, _ in self.created]


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class MediaServer:
    """MockTransport handler serving PNG bytes for every GET and 200 for HEAD."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail_get = False
        self.head_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            return httpx.Response(self.head_status)
        if self.fail_get:
            return httpx.Response(404)
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    def gets(self) -> List[str]:
        return [str(r.url) for r in self.requests if r.method == "GET"]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        supabase_url=SUPABASE_URL,
        supabase_service_role_key="service-key",
        replicate_api_token="r8-token",
        openai_api_key=None,
        poll_interval_seconds=0,
        poll_switch_delay_seconds=0,
    )


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def media_server():
    return MediaServer()


@pytest.fixture
def http(media_server):
    return httpx.AsyncClient(transport=httpx.MockTransport(media_server))


@pytest.fixture
def clock():
    holder = {"now": NOW}

    def now() -> datetime:
        return holder["now"]

    now.advance = lambda seconds: holder.update(now=holder["now"] + timedelta(seconds=seconds))
    return now


@pytest.fixture
def make_orchestrator(backend, supabase, http, settings, clock) -> Callable[..., VisualizationOrchestrator]:
    def build(**overrides) -> VisualizationOrchestrator:
        resolver = AccessUrlResolver(supabase, http, settings)
        parts = dict(
            backend=backend,
            submitter=JobSubmitter(backend, resolver, http, settings),
            recorder=HistoryRecorder(supabase, settings),
            metadata=ProcessingMetadataStore(supabase, settings),
            media_store=MediaStore(supabase, http, settings),
            enhancer=PromptEnhancer(http, settings),
            settings=settings,
            clock=clock,
        )
        parts.update(overrides)
        return VisualizationOrchestrator(**parts)

    return build


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
