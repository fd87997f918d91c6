from __future__ import annotations

import json
import multiprocessing
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from fakes import make_record
from sqlalchemy.exc import OperationalError

from omc_dispatch.models import JobStatus, Provider, utc_now
from omc_dispatch.storage import STALE_JOB_ERROR, JobStateStore
from omc_dispatch.storage import state
from omc_dispatch.storage.common import jobs_db_path
from omc_dispatch.storage.sql_store import SqlJobStore

pytestmark = [
    allure.epic("Job Store"),
    allure.feature("Dual Backend"),
]


def test_upsert_lands_in_json_and_sqlite(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path)
    record = make_record()
    try:
        assert store.upsert(record)

        assert store.sql_available
        assert store.json.status_path(record).is_file()
        assert store.sql is not None
        assert store.sql.get(Provider.CODEX, record.job_id) is not None
        assert jobs_db_path(tmp_path).is_file()
    finally:
        store.close()


def test_json_only_mode_serves_every_query(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path, enable_sql=False)
    now = utc_now()
    store.upsert(make_record(job_id="aaaaaaaa", spawned_at=now))
    store.upsert(
        make_record(
            job_id="bbbbbbbb",
            status=JobStatus.COMPLETED,
            spawned_at=now - timedelta(minutes=1),
        ),
    )

    assert not store.sql_available
    assert not jobs_db_path(tmp_path).exists()
    assert [record.job_id for record in store.list_all()] == ["aaaaaaaa", "bbbbbbbb"]
    assert [record.job_id for record in store.list_active()] == ["aaaaaaaa"]
    assert [record.job_id for record in store.list_by_status(JobStatus.COMPLETED)] == ["bbbbbbbb"]
    assert store.stats().total == 2


def test_unusable_database_path_falls_back_to_json(tmp_path: Path) -> None:
    (tmp_path / ".omc").mkdir()
    (tmp_path / ".omc" / "state").write_text("not a directory", "utf-8")
    store = JobStateStore(tmp_path)

    assert store.upsert(make_record())
    assert not store.sql_available
    assert store.get(Provider.CODEX, "0123abcd") is not None


def test_update_resolves_and_rewrites(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path)
    try:
        store.upsert(make_record())

        assert store.update(Provider.CODEX, "0123abcd", status=JobStatus.FAILED, error="boom")
        assert not store.update(Provider.CODEX, "ffffffff", error="missing")

        loaded = store.get(Provider.CODEX, "0123abcd")
        assert loaded is not None
        assert loaded.status is JobStatus.FAILED
        resolved = store.resolve(Provider.CODEX, "0123abcd")
        assert resolved is not None
        assert resolved.error == "boom"
    finally:
        store.close()


def test_killed_flag_blocks_later_success(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path)
    try:
        store.upsert(make_record(killed_by_user=True, status=JobStatus.FAILED))

        assert not store.upsert(make_record(status=JobStatus.COMPLETED))
        loaded = store.get(Provider.CODEX, "0123abcd")
        assert loaded is not None
        assert loaded.status is JobStatus.FAILED
    finally:
        store.close()


def test_delete_removes_from_both_backends(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path)
    try:
        record = make_record()
        store.upsert(record)

        assert store.delete(Provider.CODEX, record.job_id)
        assert store.get(Provider.CODEX, record.job_id) is None
        assert not store.json.status_path(record).exists()
    finally:
        store.close()


def test_mark_stale_jobs_moves_old_active_jobs_to_timeout(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path)
    try:
        old = utc_now() - timedelta(hours=5)
        store.upsert(make_record(job_id="aaaaaaaa", spawned_at=old))
        store.upsert(make_record(job_id="bbbbbbbb"))
        store.upsert(make_record(job_id="cccccccc", status=JobStatus.COMPLETED, spawned_at=old))

        assert store.mark_stale_jobs(timedelta(hours=1)) == 1

        stale = store.get(Provider.CODEX, "aaaaaaaa")
        assert stale is not None
        assert stale.status is JobStatus.TIMEOUT
        assert stale.error == STALE_JOB_ERROR
        assert stale.completed_at is not None
        fresh = store.get(Provider.CODEX, "bbbbbbbb")
        assert fresh is not None
        assert fresh.status is JobStatus.RUNNING
    finally:
        store.close()


def test_cleanup_old_jobs_reports_removed_count(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path)
    try:
        old = utc_now() - timedelta(hours=48)
        store.upsert(make_record(job_id="aaaaaaaa", status=JobStatus.COMPLETED, spawned_at=old))
        store.upsert(make_record(job_id="bbbbbbbb", status=JobStatus.TIMEOUT, spawned_at=old))
        store.upsert(make_record(job_id="cccccccc", status=JobStatus.COMPLETED))

        assert store.cleanup_old_jobs(timedelta(hours=24)) == 2
        assert [record.job_id for record in store.list_all()] == ["cccccccc"]
        assert [record.job_id for record in store.json.list_all()] == ["cccccccc"]
    finally:
        store.close()


def test_migrate_json_to_sql_imports_status_files(tmp_path: Path) -> None:
    json_only = JobStateStore(tmp_path, enable_sql=False)
    json_only.upsert(make_record(job_id="aaaaaaaa"))
    json_only.upsert(make_record(job_id="bbbbbbbb", provider=Provider.GEMINI))
    (json_only.json.prompts_dir / "codex-status-bad-cccccccc.json").write_text(
        json.dumps({"status": "running"}),
        "utf-8",
    )

    store = JobStateStore(tmp_path)
    try:
        result = store.migrate_json_to_sql()

        assert (result.imported, result.errors) == (2, 1)
        assert store.sql is not None
        assert {record.job_id for record in store.sql.list_all()} == {"aaaaaaaa", "bbbbbbbb"}
    finally:
        store.close()


def test_migrate_is_a_no_op_without_sql(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path, enable_sql=False)
    store.upsert(make_record())

    result = store.migrate_json_to_sql()

    assert (result.imported, result.errors) == (0, 0)


def test_resolve_prefers_active_record_across_slugs(tmp_path: Path) -> None:
    store = JobStateStore(tmp_path, enable_sql=False)
    store.upsert(make_record(slug="done", status=JobStatus.COMPLETED, spawned_at=utc_now()))
    store.upsert(
        make_record(
            slug="live",
            status=JobStatus.RUNNING,
            spawned_at=utc_now() - timedelta(hours=1),
        ),
    )

    resolved = store.resolve(Provider.CODEX, "0123abcd")

    assert resolved is not None
    assert resolved.slug == "live"


def _open_store_and_upsert(root: str, job_id: str, barrier, results) -> None:
    barrier.wait(timeout=30)
    store = JobStateStore(Path(root))
    try:
        store.upsert(make_record(job_id=job_id))
        results.put((job_id, store.sql_available))
    finally:
        store.close()


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(),
    reason="needs fork start method",
)
def test_processes_opening_a_fresh_store_together_all_mirror_to_sqlite(tmp_path: Path) -> None:
    context = multiprocessing.get_context("fork")
    job_ids = [f"{index:08x}" for index in range(6)]
    barrier = context.Barrier(len(job_ids))
    results = context.Queue()
    workers = [
        context.Process(
            target=_open_store_and_upsert,
            args=(str(tmp_path), job_id, barrier, results),
        )
        for job_id in job_ids
    ]
    for worker in workers:
        worker.start()
    reported = dict(results.get(timeout=60) for _ in workers)
    for worker in workers:
        worker.join(timeout=60)

    assert [worker.exitcode for worker in workers] == [0] * len(workers)
    assert reported == {job_id: True for job_id in job_ids}
    reader = JobStateStore(tmp_path)
    try:
        assert reader.sql_available
        assert sorted(record.job_id for record in reader.list_active()) == job_ids
    finally:
        reader.close()


def test_probe_retries_once_before_falling_back(tmp_path: Path, monkeypatch) -> None:
    calls: list[Path] = []
    original = SqlJobStore.init_schema

    def flaky_init_schema(self, **kwargs) -> None:
        calls.append(self.db_path)
        if len(calls) == 1:
            raise OperationalError("upgrade", {}, Exception("database is locked"))
        original(self, **kwargs)

    monkeypatch.setattr(SqlJobStore, "init_schema", flaky_init_schema)
    monkeypatch.setattr(state.time, "sleep", lambda _seconds: None)
    store = JobStateStore(tmp_path)
    try:
        assert store.sql_available
        assert len(calls) == 2
    finally:
        store.close()
