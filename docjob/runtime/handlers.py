from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol

from docjob.chunking.chunker import chunk_text
from docjob.chunking.merger import ProcessedChunk, merge_chunks
from docjob.config.load_config import AppConfig, CleanupConfig, TransformConfig, default_app_config
from docjob.errors import CollaboratorUnavailable
from docjob.llm.offline import OfflineTextTransform
from docjob.runtime.executor import HandlerRegistry, JobContext
from docjob.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


SECONDS_PER_DAY = 24 * 60 * 60
CLEANUP_TARGETS = ("jobs", "cache", "logs", "temp")


class TextTransform(Protocol):
    async def __call__(self, text: str, instructions: str) -> str: ...


class PdfRenderer(Protocol):
    async def __call__(self, markdown: str, output_path: str, options: dict[str, Any]) -> dict[str, Any]: ...


class MarkdownCompiler(Protocol):
    async def __call__(self, md_path: str, options: dict[str, Any]) -> dict[str, Any]: ...


class UnavailablePdfRenderer:
    async def __call__(self, markdown: str, output_path: str, options: dict[str, Any]) -> dict[str, Any]:
        raise CollaboratorUnavailable("No PDF renderer configured.")


class UnavailableMarkdownCompiler:
    async def __call__(self, md_path: str, options: dict[str, Any]) -> dict[str, Any]:
        raise CollaboratorUnavailable("No Markdown compiler configured.")


def build_text_transform(cfg: TransformConfig) -> TextTransform:
    """Pick the configured transform; fall back to the offline rules when the client can't be built."""
    if cfg.provider == "offline":
        return OfflineTextTransform()

    from docjob.llm.openai_compat import LLMConfigError, OpenAICompatibleTextTransform

    try:
        return OpenAICompatibleTextTransform()
    except LLMConfigError as e:
        if not cfg.offline_fallback:
            raise
        logger.warning("text transform client unavailable, using offline rules: %s", e)
        return OfflineTextTransform()


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"payload.{key} must be a non-empty string.")
    return value


def _options(payload: dict[str, Any]) -> dict[str, Any]:
    options = payload.get("options") or {}
    if not isinstance(options, dict):
        raise ValueError("payload.options must be an object.")
    return dict(options)


class TextTransformHandler:
    """Chunk the text, transform each fragment in order, merge the results.

    A fragment whose transform call fails keeps its original text and is
    counted in `failed_chunks`; the job only fails when every fragment did.
    """

    def __init__(
        self,
        app_config: AppConfig,
        *,
        transform: TextTransform | None = None,
    ) -> None:
        self._config = app_config
        self._transform = transform

    def _get_transform(self) -> TextTransform:
        if self._transform is None:
            self._transform = build_text_transform(self._config.transform)
        return self._transform

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        text = ctx.payload.get("text")
        if not isinstance(text, str):
            raise ValueError("payload.text must be a string.")
        transform_cfg: TransformConfig = self._config.transform
        instructions = str(ctx.payload.get("instructions") or transform_cfg.default_instructions)
        overrides = ctx.payload.get("chunking")
        if overrides is not None and not isinstance(overrides, dict):
            raise ValueError("payload.chunking must be an object.")

        result = chunk_text(text, self._config.chunking.with_overrides(overrides))
        chunks = result.chunks
        total = len(chunks)
        ctx.report_progress(5.0)
        if total == 0:
            return {"text": "", "total_chunks": 0, "failed_chunks": 0}

        transform = self._get_transform()
        processed: list[ProcessedChunk] = []
        failed = 0
        for i, chunk in enumerate(chunks):
            ctx.cancel.raise_if_cancelled()
            if i > 0:
                await ctx.cancel.sleep(transform_cfg.inter_call_delay_s)
            try:
                out = await transform(chunk.text, instructions)
            except Exception as e:
                failed += 1
                ctx.logger.warning("chunk transform failed, keeping original: chunk=%s error=%s", chunk.id, e)
                out = chunk.text
            processed.append(ProcessedChunk(chunk_id=chunk.id, processed_text=out))
            ctx.report_progress(5.0 + 90.0 * (i + 1) / total)

        if failed == total:
            raise RuntimeError(f"All {total} chunk(s) failed to transform.")

        merged = merge_chunks(processed, chunks, min_overlap_ratio=self._config.merge.min_overlap_ratio)

        out: dict[str, Any] = {"text": merged, "total_chunks": total, "failed_chunks": failed}
        output_path = ctx.payload.get("output_path")
        if output_path:
            path = Path(str(output_path)).expanduser()
            await asyncio.to_thread(_write_text, path, merged)
            out["output_path"] = str(path)
        return out


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


class PdfGenerationHandler:
    def __init__(self, renderer: PdfRenderer | None = None) -> None:
        self._renderer = renderer or UnavailablePdfRenderer()

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = ctx.payload
        output_path = _require_str(payload, "output_path")
        options = _options(payload)
        markdown = payload.get("markdown")
        if markdown is None and payload.get("md_path"):
            markdown = await asyncio.to_thread(Path(str(payload["md_path"])).read_text, encoding="utf-8")
        if not isinstance(markdown, str):
            raise ValueError("payload requires `markdown` or `md_path`.")

        ctx.report_progress(10.0)
        ctx.cancel.raise_if_cancelled()
        rendered = await self._renderer(markdown, output_path, options)
        ctx.report_progress(90.0)
        ctx.cancel.raise_if_cancelled()
        return dict(rendered)


class MarkdownCompileHandler:
    def __init__(self, compiler: MarkdownCompiler | None = None) -> None:
        self._compiler = compiler or UnavailableMarkdownCompiler()

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        md_path = _require_str(ctx.payload, "md_path")
        options = _options(ctx.payload)
        ctx.cancel.raise_if_cancelled()
        compiled = await self._compiler(md_path, options)
        return dict(compiled)


class CleanupHandler:
    """Retention sweeps: terminal job rows, or old files under a configured directory."""

    def __init__(self, store: SQLiteStore, cleanup_config: CleanupConfig) -> None:
        self._store = store
        self._config = cleanup_config

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        target = str(ctx.payload.get("target") or "")
        if target not in CLEANUP_TARGETS:
            raise ValueError(f"payload.target must be one of {', '.join(CLEANUP_TARGETS)}; got {target!r}.")
        try:
            older_than_days = float(ctx.payload.get("older_than_days", 30))
        except (TypeError, ValueError) as e:
            raise ValueError("payload.older_than_days must be a number.") from e
        if older_than_days < 0:
            raise ValueError("payload.older_than_days must be >= 0.")
        older_than_s = older_than_days * SECONDS_PER_DAY

        if target == "jobs":
            deleted = self._store.purge_terminal(older_than_s=older_than_s)
            return {"target": target, "jobs_deleted": deleted, "bytes_freed": 0}

        root = self._config.dir_for(target)
        if not await asyncio.to_thread(root.is_dir):
            ctx.logger.info("cleanup target directory does not exist: %s", root)
            return {"target": target, "files_deleted": 0, "bytes_freed": 0}

        cutoff = self._store.now() - older_than_s
        candidates = await asyncio.to_thread(_list_files, root)
        files_deleted = 0
        bytes_freed = 0
        for i, path in enumerate(candidates):
            ctx.cancel.raise_if_cancelled()
            freed = await asyncio.to_thread(_unlink_if_older, path, cutoff)
            if freed is not None:
                files_deleted += 1
                bytes_freed += freed
            ctx.report_progress(100.0 * (i + 1) / len(candidates))

        return {"target": target, "files_deleted": files_deleted, "bytes_freed": bytes_freed}


def _list_files(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*") if p.is_file())


def _unlink_if_older(path: Path, cutoff: float) -> int | None:
    """Delete `path` when its mtime is before `cutoff`; returns the bytes freed."""
    stat = path.stat()
    if stat.st_mtime >= cutoff:
        return None
    path.unlink()
    return int(stat.st_size)


def default_registry(
    store: SQLiteStore,
    app_config: AppConfig | None = None,
    *,
    transform: TextTransform | None = None,
    pdf_renderer: PdfRenderer | None = None,
    markdown_compiler: MarkdownCompiler | None = None,
) -> HandlerRegistry:
    cfg = app_config or default_app_config()
    registry = HandlerRegistry()
    registry.register("text_transform", TextTransformHandler(cfg, transform=transform))
    registry.register("pdf_generation", PdfGenerationHandler(pdf_renderer))
    registry.register("markdown_compile", MarkdownCompileHandler(markdown_compiler))
    registry.register("cleanup", CleanupHandler(store, cfg.cleanup))
    return registry
