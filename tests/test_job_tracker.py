"""Tests for the job tracker -- state machine, transactions, edit saves."""

import copy
import uuid
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest

from app.errors import (
    BadRequestError,
    InvalidTransitionError,
    JobTransactionError,
    NotFoundError,
    UpstreamError,
)
from app.services import job_tracker
from app.services.content_cache import KIND_CONTENTS, get_content_cache
from app.services.job_tracker import (
    ExistingJob,
    JobStatus,
    MigrationMeta,
    NewJob,
    can_transition,
    ensure_transition,
)
from tests.conftest import MOCK_REPOSITORY, MOCK_USER, NOW, OTHER_USER_ID

OWNER = "qeqqe"
REPO = "Code-Migration-Tool"
USER = MOCK_USER["id"]

FILES = [
    {"path": "src/a.ts", "content": "const a = 2;", "originalContent": "const a = 1;"},
    {"path": "src/b.ts", "content": "export {}", "originalContent": ""},
]


# ---------------------------------------------------------------------------
# In-memory stand-in for the four tables, with transactional rollback
# ---------------------------------------------------------------------------


class _Transaction:
    def __init__(self, store):
        self._store = store

    async def __aenter__(self):
        self._snapshot = self._store.snapshot()
        self._store.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._store.restore(self._snapshot)
            self._store.rollbacks += 1
        return False


class _Conn:
    def __init__(self, store):
        self._store = store

    def transaction(self):
        return _Transaction(self._store)


class _Acquire:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, *exc):
        return False


class InMemoryStore:
    def __init__(self):
        self.repositories = {MOCK_REPOSITORY["id"]: dict(MOCK_REPOSITORY)}
        self.migrations: dict = {}
        self.jobs: dict = {}
        self.transactions = 0
        self.rollbacks = 0
        self.fail_on: str | None = None
        self._conn = _Conn(self)

    # pool surface
    def acquire(self):
        return _Acquire(self._conn)

    def snapshot(self):
        return copy.deepcopy((self.repositories, self.migrations, self.jobs))

    def restore(self, snap):
        self.repositories, self.migrations, self.jobs = snap

    def _maybe_fail(self, name):
        if self.fail_on == name:
            raise asyncpg.InterfaceError(f"{name} failed")

    # repo_repo
    async def get_repository(self, user_id, owner, name, conn=None):
        for r in self.repositories.values():
            if r["user_id"] == user_id and r["owner"] == owner and r["name"] == name:
                return dict(r)
        return None

    async def get_repository_by_id(self, repository_id, conn=None):
        r = self.repositories.get(repository_id)
        return dict(r) if r else None

    async def update_migration_status(self, repository_id, status, conn=None):
        self._maybe_fail("update_migration_status")
        self.repositories[repository_id]["migration_status"] = status
        return True

    # job_repo
    async def insert_migration(self, conn, repository_id, user_id, name, description, mtype, src, tgt):
        self._maybe_fail("insert_migration")
        row = {"id": uuid.uuid4(), "repository_id": repository_id, "user_id": user_id, "name": name,
               "description": description, "type": mtype, "source_version": src, "target_version": tgt,
               "created_at": NOW}
        self.migrations[row["id"]] = row
        return dict(row)

    async def insert_job(self, conn, repository_id, user_id, migration_id, status, progress=0, files_changed=None):
        self._maybe_fail("insert_job")
        row = {"id": uuid.uuid4(), "repository_id": repository_id, "user_id": user_id,
               "migration_id": migration_id, "status": status, "progress": progress,
               "files_changed": list(files_changed or []), "created_at": NOW, "updated_at": NOW,
               "seq": len(self.jobs)}
        self.jobs[row["id"]] = row
        return dict(row)

    async def update_job(self, conn, job_id, status, progress, files_changed=None):
        self._maybe_fail("update_job")
        row = self.jobs.get(job_id)
        if row is None:
            return None
        row.update(status=status, progress=progress)
        if files_changed is not None:
            row["files_changed"] = copy.deepcopy(files_changed)
        return dict(row)

    async def get_job_by_id(self, job_id, conn=None, *, for_update=False):
        row = self.jobs.get(job_id)
        return dict(row) if row else None

    async def get_open_job(self, repository_id, user_id, conn=None):
        open_jobs = [j for j in self.jobs.values()
                     if j["repository_id"] == repository_id and j["user_id"] == user_id
                     and j["status"] not in ("COMPLETED", "FAILED")]
        if not open_jobs:
            return None
        return dict(max(open_jobs, key=lambda j: j["seq"]))

    async def list_jobs(self, repository_id, limit=50):
        rows = [j for j in self.jobs.values() if j["repository_id"] == repository_id]
        return [dict(j) for j in sorted(rows, key=lambda j: j["seq"], reverse=True)][:limit]


@pytest.fixture
def store():
    store = InMemoryStore()
    patches = [
        patch("app.repos.db.get_pool", AsyncMock(return_value=store)),
        patch.object(job_tracker, "get_repository", store.get_repository),
        patch.object(job_tracker, "get_repository_by_id", store.get_repository_by_id),
        patch.object(job_tracker, "update_migration_status", store.update_migration_status),
        patch.object(job_tracker, "insert_migration", store.insert_migration),
        patch.object(job_tracker, "insert_job", store.insert_job),
        patch.object(job_tracker, "update_job", store.update_job),
        patch.object(job_tracker, "get_job_by_id", store.get_job_by_id),
        patch.object(job_tracker, "get_open_job", store.get_open_job),
        patch.object(job_tracker, "list_job_rows", store.list_jobs),
    ]
    for p in patches:
        p.start()
    yield store
    for p in reversed(patches):
        p.stop()


def _repo_status(store):
    return store.repositories[MOCK_REPOSITORY["id"]]["migration_status"]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def test_forward_transitions_allowed():
    chain = ["PENDING", "ANALYZING", "READY", "MIGRATING", "COMPLETED"]
    for current, target in zip(chain, chain[1:]):
        assert can_transition(current, target)


@pytest.mark.parametrize("status", ["PENDING", "ANALYZING", "READY", "MIGRATING"])
def test_failed_reachable_from_every_non_terminal(status):
    assert can_transition(status, "FAILED")


@pytest.mark.parametrize("status", ["COMPLETED", "FAILED"])
def test_terminal_states_are_final(status):
    for target in JobStatus:
        assert not can_transition(status, target.value)


def test_backward_and_unknown_transitions_rejected():
    assert not can_transition("READY", "PENDING")
    assert not can_transition("PENDING", "BOGUS")
    with pytest.raises(InvalidTransitionError) as exc_info:
        ensure_transition("COMPLETED", "FAILED")
    assert exc_info.value.status_code == 409


# ---------------------------------------------------------------------------
# create_job
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_job_writes_all_three_records(store):
    meta = MigrationMeta(name="Angular 15 → 17", description="upgrade", type="FRAMEWORK",
                         source_version="15", target_version="17")
    job = await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, meta)

    assert job["status"] == "PENDING"
    assert job["progress"] == 0
    assert job["filesChanged"] == []
    assert len(store.migrations) == 1
    migration = next(iter(store.migrations.values()))
    assert migration["type"] == "FRAMEWORK"
    assert job["migrationId"] == str(migration["id"])
    assert _repo_status(store) == "ANALYZING"


@pytest.mark.asyncio
async def test_create_job_rolls_back_on_failure(store):
    store.fail_on = "update_migration_status"
    with pytest.raises(JobTransactionError):
        await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="x"))

    assert store.rollbacks == 1
    assert store.migrations == {}
    assert store.jobs == {}
    assert _repo_status(store) == "PENDING"


@pytest.mark.asyncio
async def test_create_job_for_someone_elses_repository(store):
    with pytest.raises(NotFoundError):
        await job_tracker.create_job(MOCK_REPOSITORY["id"], uuid.UUID(OTHER_USER_ID), MigrationMeta(name="x"))
    assert store.jobs == {}


# ---------------------------------------------------------------------------
# save_edits
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_save_auto_provisions_and_completes(store):
    result = await job_tracker.save_edits(USER, OWNER, REPO, FILES)

    assert result["success"] is True
    job = store.jobs[uuid.UUID(result["jobId"])]
    assert job["status"] == "COMPLETED"
    assert job["progress"] == 100
    assert job["files_changed"] == FILES
    assert str(job["migration_id"]) == result["migrationId"]
    assert _repo_status(store) == "COMPLETED"
    assert store.transactions == 1


@pytest.mark.asyncio
async def test_save_twice_yields_two_jobs_same_status(store):
    first = await job_tracker.save_edits(USER, OWNER, REPO, FILES)
    assert _repo_status(store) == "COMPLETED"
    second = await job_tracker.save_edits(USER, OWNER, REPO, FILES)
    assert _repo_status(store) == "COMPLETED"

    assert first["jobId"] != second["jobId"]
    jobs = [store.jobs[uuid.UUID(r["jobId"])] for r in (first, second)]
    assert jobs[0]["files_changed"] == jobs[1]["files_changed"] == FILES


@pytest.mark.asyncio
async def test_save_reuses_open_job(store):
    created = await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="planned"))
    result = await job_tracker.save_edits(USER, OWNER, REPO, FILES)

    assert result["jobId"] == created["id"]
    assert result["migrationId"] == created["migrationId"]
    assert len(store.jobs) == 1
    assert len(store.migrations) == 1


@pytest.mark.asyncio
async def test_open_or_provision_is_tagged(store):
    conn = store._conn
    repository = dict(MOCK_REPOSITORY)
    provisioned = await job_tracker._open_or_provision(conn, repository, USER)
    assert isinstance(provisioned, NewJob)
    assert provisioned.migration["name"] == "Edits to qeqqe/Code-Migration-Tool"
    reused = await job_tracker._open_or_provision(conn, repository, USER)
    assert isinstance(reused, ExistingJob)
    assert reused.job["id"] == provisioned.job["id"]


@pytest.mark.asyncio
async def test_save_rolls_back_everything_on_failure(store):
    store.fail_on = "update_migration_status"
    with pytest.raises(JobTransactionError):
        await job_tracker.save_edits(USER, OWNER, REPO, FILES)

    assert store.rollbacks == 1
    assert store.jobs == {}
    assert store.migrations == {}
    assert _repo_status(store) == "PENDING"


@pytest.mark.asyncio
async def test_save_reconciles_missing_original_content(store):
    files = [{"path": "src/a.ts", "content": "new", "originalContent": None}]
    upstream = AsyncMock(return_value={"path": "src/a.ts", "content": "old", "sha": "s"})
    with patch.object(job_tracker, "get_file_content", upstream):
        result = await job_tracker.save_edits(USER, OWNER, REPO, files)

    upstream.assert_awaited_once_with(USER, OWNER, REPO, "src/a.ts")
    job = store.jobs[uuid.UUID(result["jobId"])]
    assert job["files_changed"] == [{"path": "src/a.ts", "content": "new", "originalContent": "old"}]


@pytest.mark.asyncio
async def test_save_rejected_when_reconciliation_fails(store):
    files = [{"path": "src/a.ts", "content": "new", "originalContent": None}]
    failing = AsyncMock(side_effect=UpstreamError("Get file", 404))
    with patch.object(job_tracker, "get_file_content", failing):
        with pytest.raises(UpstreamError):
            await job_tracker.save_edits(USER, OWNER, REPO, files)

    assert store.transactions == 0
    assert store.jobs == {}
    assert _repo_status(store) == "PENDING"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "files",
    [
        [],
        [{"path": "", "content": "x", "originalContent": ""}],
        [{"path": "a.ts", "content": None, "originalContent": ""}],
        [{"path": "a.ts", "content": "x", "originalContent": 3}],
    ],
)
async def test_save_validates_changes(store, files):
    with pytest.raises(BadRequestError):
        await job_tracker.save_edits(USER, OWNER, REPO, files)
    assert store.transactions == 0


@pytest.mark.asyncio
async def test_save_unknown_repository(store):
    with pytest.raises(NotFoundError):
        await job_tracker.save_edits(USER, OWNER, "missing", FILES)


# ---------------------------------------------------------------------------
# fail_job / list_jobs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fail_job_mirrors_repository_status(store):
    created = await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="x"))
    failed = await job_tracker.fail_job(USER, uuid.UUID(created["id"]), "analysis crashed")

    assert failed["status"] == "FAILED"
    assert _repo_status(store) == "FAILED"


@pytest.mark.asyncio
async def test_fail_completed_job_is_invalid(store):
    result = await job_tracker.save_edits(USER, OWNER, REPO, FILES)
    with pytest.raises(InvalidTransitionError):
        await job_tracker.fail_job(USER, uuid.UUID(result["jobId"]))
    assert _repo_status(store) == "COMPLETED"


@pytest.mark.asyncio
async def test_fail_job_of_other_user_is_not_found(store):
    created = await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="x"))
    with pytest.raises(NotFoundError):
        await job_tracker.fail_job(uuid.UUID(OTHER_USER_ID), uuid.UUID(created["id"]))


@pytest.mark.asyncio
async def test_list_jobs_newest_first(store):
    first = await job_tracker.save_edits(USER, OWNER, REPO, FILES)
    second = await job_tracker.save_edits(USER, OWNER, REPO, FILES[:1])

    jobs = await job_tracker.list_jobs(USER, OWNER, REPO)

    assert [j["id"] for j in jobs] == [second["jobId"], first["jobId"]]
    assert jobs[0]["filesChanged"] == FILES[:1]


# ---------------------------------------------------------------------------
# Cached listings follow status writes
# ---------------------------------------------------------------------------


async def _warm_listing():
    cache = get_content_cache()
    listing = {"repository": {"id": MOCK_REPOSITORY["id"], "migrationStatus": "PENDING"}, "contents": []}
    await cache.put(OWNER, REPO, "", listing, kind=KIND_CONTENTS)
    return cache


@pytest.mark.asyncio
async def test_create_job_drops_cached_listing(store):
    cache = await _warm_listing()
    await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="x"))
    assert await cache.get(OWNER, REPO, "", kind=KIND_CONTENTS) is None


@pytest.mark.asyncio
async def test_save_drops_cached_listing(store):
    cache = await _warm_listing()
    await job_tracker.save_edits(USER, OWNER, REPO, FILES)
    assert await cache.get(OWNER, REPO, "", kind=KIND_CONTENTS) is None


@pytest.mark.asyncio
async def test_fail_job_drops_cached_listing(store):
    created = await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="x"))
    cache = await _warm_listing()
    await job_tracker.fail_job(USER, uuid.UUID(created["id"]), "analysis crashed")
    assert await cache.get(OWNER, REPO, "", kind=KIND_CONTENTS) is None


@pytest.mark.asyncio
async def test_rolled_back_create_keeps_cached_listing(store):
    cache = await _warm_listing()
    store.fail_on = "update_migration_status"
    with pytest.raises(JobTransactionError):
        await job_tracker.create_job(MOCK_REPOSITORY["id"], USER, MigrationMeta(name="x"))
    assert await cache.get(OWNER, REPO, "", kind=KIND_CONTENTS) is not None
