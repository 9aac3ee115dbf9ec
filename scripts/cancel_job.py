#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from docjob.errors import DocJobError  # noqa: E402
from docjob.runtime.engine import JobEngine  # noqa: E402
from docjob.storage.sqlite_store import SQLiteStore  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description=(
            "Cancel a queued job, or a running row left behind by a stopped server (SQLite-backed). "
            "Running jobs inside a live server should be canceled through its API."
        )
    )
    p.add_argument("--job-id", required=True, help="Job id to cancel (e.g. job_<uuid>).")
    p.add_argument("--db-path", default="", help="SQLite path (default: env DOCJOB_SQLITE_PATH or data/docjob.db).")
    p.add_argument("--reason", default="Canceled by user request", help="Reason to record on the job.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    store = SQLiteStore(args.db_path or None)
    try:
        engine = JobEngine(store)
        try:
            view = engine.cancel(str(args.job_id), reason=str(args.reason))
        except DocJobError as e:
            print(str(e), file=sys.stderr)
            return 1
        print(f"{view.id} {view.status}")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
