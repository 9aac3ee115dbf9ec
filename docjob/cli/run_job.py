from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from docjob.config.load_config import ConfigError, default_app_config, load_app_config
from docjob.runtime.engine import JobEngine
from docjob.runtime.handlers import default_registry
from docjob.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one docjob job in-process and print its final status.")
    parser.add_argument("--type", required=True, help="Job type, e.g. text_transform, cleanup.")
    parser.add_argument("--payload-json", default="", help="Job payload as a JSON object.")
    parser.add_argument(
        "--text-file",
        default="",
        help="For text_transform: read payload.text from this file (UTF-8).",
    )
    parser.add_argument("--instructions", default="", help="For text_transform: override the instructions.")
    parser.add_argument("--output", default="", help="For text_transform: write the merged text to this path.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env DOCJOB_SQLITE_PATH or data/docjob.db).",
    )
    parser.add_argument("--timeout", type=float, default=0.0, help="Give up after N seconds (0 = wait forever).")
    return parser.parse_args(argv)


def _build_payload(args: argparse.Namespace) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if args.payload_json:
        try:
            obj = json.loads(args.payload_json)
        except json.JSONDecodeError as e:
            raise SystemExit(f"--payload-json is not valid JSON: {e}") from e
        if not isinstance(obj, dict):
            raise SystemExit("--payload-json must be a JSON object.")
        payload.update(obj)
    if args.text_file:
        payload["text"] = Path(args.text_file).read_text(encoding="utf-8")
    if args.instructions:
        payload["instructions"] = args.instructions
    if args.output:
        payload["output_path"] = args.output
    return payload


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    try:
        cfg = load_app_config()
    except ConfigError as e:
        logger.warning("config not loaded, using defaults: %s", e)
        cfg = default_app_config()

    store = SQLiteStore(args.db_path or None)
    engine = JobEngine(store, config=cfg.engine, registry=default_registry(store, cfg))
    try:
        # Enqueue before start so the first scheduler tick picks the job up.
        job_id = engine.enqueue(args.type, _build_payload(args))
        engine.start()
        try:
            view = await engine.wait_for(job_id, timeout=(args.timeout or None))
        except asyncio.TimeoutError:
            logger.error("job did not finish within %.1fs: %s", args.timeout, job_id)
            engine.cancel(job_id, reason="CLI timeout")
            view = engine.get_status(job_id)
        return view.to_dict()
    finally:
        await engine.shutdown()
        store.close()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=os.getenv("DOCJOB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    status = asyncio.run(_run(args))
    print(json.dumps(status, ensure_ascii=False, indent=2))
    return 0 if status["status"] == "succeeded" else 1


if __name__ == "__main__":
    raise SystemExit(main())
