from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from docjob.storage.sqlite_store import SQLiteStore
from scripts import cancel_job


def test_cancel_job_script_cancels_queued_job(capsys: pytest.CaptureFixture[str]) -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = str(Path(td) / "docjob.db")
        store = SQLiteStore(db_path)
        job = store.insert("cleanup", {"target": "jobs"})
        store.close()

        assert cancel_job.main(["--job-id", job.job_id, "--db-path", db_path, "--reason", "no longer needed"]) == 0
        assert capsys.readouterr().out.strip() == f"{job.job_id} canceled"

        store = SQLiteStore(db_path)
        try:
            got = store.get(job.job_id)
            assert got.status == "canceled"
            assert got.error == "no longer needed"
        finally:
            store.close()


def test_cancel_job_script_unknown_id_exits_1() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = str(Path(td) / "docjob.db")
        assert cancel_job.main(["--job-id", "job_missing", "--db-path", db_path]) == 1


def test_cancel_job_script_explicit_empty_argv_is_not_sys_argv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.argv", ["cancel_job.py", "--job-id", "job_from_sys_argv"])
    with pytest.raises(SystemExit) as exc:
        cancel_job.main([])
    assert exc.value.code == 2
