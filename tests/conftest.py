import asyncio
import os
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

from omnisync.db.helpers import DatabaseError  # noqa: E402
from omnisync.features.ingestion.batch_fetcher import BatchFetcher  # noqa: E402
from omnisync.features.ingestion.job_handoff import JobHandoff  # noqa: E402
from omnisync.features.ingestion.orchestrator import SyncOrchestrator  # noqa: E402
from omnisync.features.ingestion.remote_lister import RemoteLister  # noqa: E402
from omnisync.features.ingestion.repository.raw_event_repository import (  # noqa: E402
    is_ingestible,
)
from omnisync.features.ingestion.sources import GmailSource  # noqa: E402
from omnisync.features.ingestion.window_planner import SyncWindowPlanner  # noqa: E402
from omnisync.models.domain.credential_domain import IntegrationCredential  # noqa: E402
from omnisync.services.google.api_client import GoogleApiError  # noqa: E402
from omnisync.services.google_oauth_service import TokenResponse  # noqa: E402
from omnisync.services.token_service import TokenLifecycleManager  # noqa: E402

USER_ID = "user-123"


def build_credential(
    service: str = "gmail",
    access_token: str = "token-1",
    refresh_token: str | None = "refresh-1",
    expires_in_minutes: int = 60,
    user_id: str = USER_ID,
) -> IntegrationCredential:
    return IntegrationCredential(
        user_id=user_id,
        service=service,
        access_token=access_token,
        refresh_token=refresh_token,
        expiry_date=datetime.now(UTC) + timedelta(minutes=expires_in_minutes),
    )


def build_ids(count: int, prefix: str = "m") -> list[str]:
    return [f"{prefix}{i}" for i in range(1, count + 1)]


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRawEventStore:
    """In-memory raw_events keyed like the real unique index."""

    def __init__(self, fail_bulk: bool = False, fail_ids=()):
        self.rows: dict[tuple, object] = {}
        self.created_at: dict[tuple, datetime] = {}
        self.fail_bulk = fail_bulk
        self.fail_ids = set(fail_ids)
        self.bulk_calls = 0
        self.single_calls = 0
        self.now = datetime(2024, 3, 10, 15, 0, tzinfo=UTC)

    async def upsert_many(self, rows):
        self.bulk_calls += 1
        if self.fail_bulk:
            raise DatabaseError("bulk insert failed", operation="execute")

        accepted = [row for row in rows if is_ingestible(row)]
        for row in accepted:
            self._write(row)
        return len(accepted)

    async def upsert_one(self, row):
        self.single_calls += 1
        if row.source_id in self.fail_ids:
            raise DatabaseError(f"row {row.source_id} rejected", operation="execute")
        if not is_ingestible(row):
            return False
        self._write(row)
        return True

    def _write(self, row) -> None:
        self.created_at.setdefault(row.dedup_key, self.now)
        self.rows[row.dedup_key] = row

    async def latest_created_at(self, user_id: str, provider: str):
        matching = [
            created
            for (row_user, row_provider, _), created in self.created_at.items()
            if row_user == user_id and row_provider == provider
        ]
        return max(matching) if matching else None


class FakeJobRepository:
    def __init__(self, statuses=None, fail: bool = False):
        self.jobs: dict[str, dict] = {}
        self.status_sequence = list(statuses or [])
        self.fail = fail
        self.status_calls = 0

    async def enqueue(self, user_id, kind, payload, batch_id=None):
        if self.fail:
            raise DatabaseError("jobs table unavailable", operation="fetch_one")
        job_id = f"job-{len(self.jobs) + 1}"
        self.jobs[job_id] = {
            "user_id": user_id,
            "kind": kind,
            "payload": payload,
            "batch_id": batch_id,
            "status": "queued",
        }
        return job_id

    async def get_status(self, job_id):
        self.status_calls += 1
        job = self.jobs.get(job_id)
        if job is None:
            return None
        if self.status_sequence:
            job["status"] = self.status_sequence.pop(0)
        return job["status"]


class FakeCredentialRepository:
    def __init__(self, credentials=(), fail_save: bool = False):
        self.credentials = {credential.key: credential for credential in credentials}
        self.fail_save = fail_save
        self.saved: list[IntegrationCredential] = []
        self.save_calls = 0
        self.deleted: list[tuple[str, str]] = []

    async def get(self, user_id, service):
        return self.credentials.get((user_id, service))

    async def save(self, credential):
        self.save_calls += 1
        if self.fail_save:
            raise DatabaseError("user_integrations unavailable", operation="execute")
        # Rotations only update an existing row
        if credential.key not in self.credentials:
            return False
        self.saved.append(credential)
        self.credentials[credential.key] = credential
        return True

    async def delete(self, user_id, service):
        self.deleted.append((user_id, service))
        return self.credentials.pop((user_id, service), None) is not None


class FakeOAuthService:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[str] = []

    async def refresh_access_token(self, refresh_token):
        self.calls.append(refresh_token)
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return TokenResponse({"access_token": f"fresh-{len(self.calls)}", "expires_in": 3600})


class FakeSource:
    """Gmail-shaped source backed by an in-memory mailbox."""

    provider = "gmail"
    service = "gmail"
    job_kind = "normalize_google_email"
    item_label = "emails"

    def __init__(
        self,
        ids=(),
        page_size: int | None = None,
        fail_ids=(),
        list_error: Exception | None = None,
        rotate_on=None,
    ):
        ids = list(ids)
        size = page_size or max(len(ids), 1)
        self.pages = [ids[i : i + size] for i in range(0, len(ids), size)] or [[]]
        self.fail_ids = set(fail_ids)
        self.list_error = list_error
        self.rotate_on = dict(rotate_on or {})
        self.list_calls: list[tuple] = []
        self.get_calls: list[tuple] = []
        self.closed = False
        self._mapper = GmailSource(api_client=None)

    async def close(self):
        self.closed = True

    async def list_partitions(self, credential, preferred=None, *, max_retries=0):
        return [None], None

    async def list_page(self, credential, query, page_token, *, partition=None, max_retries=0):
        self.list_calls.append((credential.access_token, query, page_token))
        if self.list_error:
            raise self.list_error
        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return list(self.pages[index]), next_token, None

    async def get_item(self, credential, source_id):
        self.get_calls.append((credential.access_token, source_id))
        await asyncio.sleep(0)
        if source_id in self.fail_ids:
            raise GoogleApiError("Backend Error", error_code="backendError", status_code=500)

        payload = {
            "id": source_id,
            "internalDate": "1710000000000",
            "labelIds": ["INBOX"],
            "snippet": f"body of {source_id}",
        }
        return payload, self.rotate_on.pop(source_id, None)

    def to_record(self, user_id, source_id, payload, batch_id, query):
        return self._mapper.to_record(user_id, source_id, payload, batch_id, query)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_credential():
    return build_credential


@pytest.fixture
def make_ids():
    return build_ids


@pytest.fixture
def make_source():
    return FakeSource


@pytest.fixture
def make_store():
    return FakeRawEventStore


@pytest.fixture
def make_jobs():
    return FakeJobRepository


@pytest.fixture
def make_credentials():
    return FakeCredentialRepository


@pytest.fixture
def make_oauth():
    return FakeOAuthService


@pytest.fixture
def sync_harness():
    """Wire a real pipeline around in-memory fakes."""

    def _build(
        ids=(),
        source=None,
        store=None,
        jobs=None,
        credentials=None,
        oauth=None,
        batch_size: int = 20,
        parallel_batches: int = 5,
    ):
        clock = FakeClock()
        source = source or FakeSource(ids)
        store = store or FakeRawEventStore()
        jobs = jobs or FakeJobRepository()
        credentials = credentials or FakeCredentialRepository([build_credential()])
        oauth = oauth or FakeOAuthService()

        token_manager = TokenLifecycleManager(
            repository=credentials, oauth_service=oauth, threshold_minutes=5
        )
        fetcher = BatchFetcher(
            source,
            token_manager,
            store=store,
            batch_size=batch_size,
            parallel_batches=parallel_batches,
            wave_delay_seconds=0.2,
            sleep=clock.sleep,
        )
        orchestrator = SyncOrchestrator(
            source=source,
            token_manager=token_manager,
            planner=SyncWindowPlanner(store),
            lister=RemoteLister(source, token_manager, max_retries=0),
            fetcher=fetcher,
            handoff=JobHandoff(jobs),
            jobs=jobs,
            clock=clock,
            sleep=clock.sleep,
            wait_timeout_seconds=300,
            poll_interval_seconds=2,
        )
        return SimpleNamespace(
            orchestrator=orchestrator,
            source=source,
            store=store,
            jobs=jobs,
            credentials=credentials,
            oauth=oauth,
            token_manager=token_manager,
            fetcher=fetcher,
            clock=clock,
        )

    return _build
