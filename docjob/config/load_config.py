from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from docjob.chunking.chunker import ChunkingConfig


REPO_ROOT = Path(__file__).resolve().parents[2]


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str, min_value: int | None = None) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e
    if min_value is not None and out < min_value:
        raise ConfigError(f"Invalid {key}: must be >= {min_value}, got {out}")
    return out


def _as_float(value: Any, *, key: str, min_value: float | None = None) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e
    if min_value is not None and out < min_value:
        raise ConfigError(f"Invalid {key}: must be >= {min_value}, got {out}")
    return out


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _resolve_dir(value: Any, *, key: str, base_dir: Path) -> Path:
    p = Path(_as_str(value, key=key)).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclass(frozen=True)
class EngineConfig:
    max_concurrent: int = 3
    poll_interval_s: float = 2.0
    stale_after_s: float = 24 * 60 * 60
    shutdown_grace_s: float = 5.0
    wake_on_enqueue: bool = False


@dataclass(frozen=True)
class MergeConfig:
    min_overlap_ratio: float = 0.7


TRANSFORM_PROVIDERS = ("openai", "offline")


@dataclass(frozen=True)
class TransformConfig:
    inter_call_delay_s: float = 1.0
    default_instructions: str = ""
    provider: str = "openai"
    offline_fallback: bool = True


@dataclass(frozen=True)
class CleanupConfig:
    cache_dir: str = "data/cache"
    logs_dir: str = "data/logs"
    temp_dir: str = "data/tmp"

    def dir_for(self, target: str) -> Path:
        dirs = {"cache": self.cache_dir, "logs": self.logs_dir, "temp": self.temp_dir}
        if target not in dirs:
            raise ValueError(f"Unknown cleanup target: {target!r}")
        return Path(dirs[target])


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig
    chunking: ChunkingConfig
    merge: MergeConfig
    transform: TransformConfig
    cleanup: CleanupConfig


def default_app_config() -> AppConfig:
    return AppConfig(
        engine=EngineConfig(),
        chunking=ChunkingConfig(max_chunk_size=5000, overlap_size=100),
        merge=MergeConfig(),
        transform=TransformConfig(),
        cleanup=CleanupConfig(),
    )


def default_config_path() -> Path:
    raw = os.getenv("DOCJOB_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return REPO_ROOT / "config" / "default.toml"


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    engine = raw.get("engine", {})
    chunking = raw.get("chunking", {})
    merge = raw.get("merge", {})
    transform = raw.get("transform", {})
    cleanup = raw.get("cleanup", {})

    # Relative cleanup dirs are resolved against the repo root when the config lives in `<repo>/config/`.
    base_dir = cfg_path.parent.parent if cfg_path.parent.name == "config" else cfg_path.parent

    max_chunk_size = _as_int(chunking.get("max_chunk_size", 5000), key="chunking.max_chunk_size", min_value=1)
    overlap_size = _as_int(chunking.get("overlap_size", 100), key="chunking.overlap_size", min_value=0)

    min_overlap_ratio = _as_float(merge.get("min_overlap_ratio", 0.7), key="merge.min_overlap_ratio", min_value=0.0)
    if min_overlap_ratio > 1.0:
        raise ConfigError(f"Invalid merge.min_overlap_ratio: must be <= 1.0, got {min_overlap_ratio}")

    provider = _as_str(transform.get("provider", "openai"), key="transform.provider").strip().lower()
    if provider not in TRANSFORM_PROVIDERS:
        raise ConfigError(f"Invalid transform.provider: must be one of {', '.join(TRANSFORM_PROVIDERS)}, got {provider!r}")

    return AppConfig(
        engine=EngineConfig(
            max_concurrent=_as_int(engine.get("max_concurrent", 3), key="engine.max_concurrent", min_value=1),
            poll_interval_s=_as_float(engine.get("poll_interval_s", 2.0), key="engine.poll_interval_s", min_value=0.01),
            stale_after_s=_as_float(engine.get("stale_after_s", 86400), key="engine.stale_after_s", min_value=0.0),
            shutdown_grace_s=_as_float(
                engine.get("shutdown_grace_s", 5.0), key="engine.shutdown_grace_s", min_value=0.0
            ),
            wake_on_enqueue=_as_bool(engine.get("wake_on_enqueue", False), key="engine.wake_on_enqueue"),
        ),
        chunking=ChunkingConfig(
            max_chunk_size=max_chunk_size,
            overlap_size=overlap_size,
            split_on_sentence=_as_bool(chunking.get("split_on_sentence", True), key="chunking.split_on_sentence"),
            preserve_speakers=_as_bool(chunking.get("preserve_speakers", True), key="chunking.preserve_speakers"),
        ),
        merge=MergeConfig(min_overlap_ratio=min_overlap_ratio),
        transform=TransformConfig(
            inter_call_delay_s=_as_float(
                transform.get("inter_call_delay_s", 1.0), key="transform.inter_call_delay_s", min_value=0.0
            ),
            default_instructions=str(transform.get("default_instructions", "")),
            provider=provider,
            offline_fallback=_as_bool(transform.get("offline_fallback", True), key="transform.offline_fallback"),
        ),
        cleanup=CleanupConfig(
            cache_dir=str(_resolve_dir(cleanup.get("cache_dir", "data/cache"), key="cleanup.cache_dir", base_dir=base_dir)),
            logs_dir=str(_resolve_dir(cleanup.get("logs_dir", "data/logs"), key="cleanup.logs_dir", base_dir=base_dir)),
            temp_dir=str(_resolve_dir(cleanup.get("temp_dir", "data/tmp"), key="cleanup.temp_dir", base_dir=base_dir)),
        ),
    )
