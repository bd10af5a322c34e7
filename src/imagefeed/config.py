"""Configuration loader and typed settings for the imagefeed workers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DatabaseConfig:
    """Connection target for the shared entry store."""

    primary_url: str = "sqlite:///data/imagefeed.db"


@dataclass
class QueueConfig:
    """Celery broker and queue names.

    Ingestion and image jobs live on separate queues so a slow image backlog
    never delays entry upserts.
    """

    broker_url: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    ingest_queue: str = "parse"
    image_queue: str = "crawl"
    maintenance_queue: str = "maintenance"
    default_concurrency: int = 2


@dataclass
class StorageConfig:
    """Remote storage for processed images.

    ``backend`` is one of ``s3``, ``cdn`` or ``local`` and is resolved once
    at worker startup by :func:`imagefeed.storage.build_storage`.
    """

    backend: str = "local"
    bucket: str | None = None
    region: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    public_base_url: str | None = None
    key_prefix: str = "images/"
    cdn_url: str | None = None
    cdn_folder: str = "imagefeed"
    local_root: str = "data/images"
    local_base_url: str = "http://localhost:8000/images/"


@dataclass
class TransformPreset:
    """Resize and encode parameters for one class of image."""

    max_side: int = 1200
    quality: int = 85
    min_side: int = 100


def _default_presets() -> dict[str, TransformPreset]:
    return {
        "primary": TransformPreset(max_side=1200, quality=85, min_side=100),
        "thumbnail": TransformPreset(max_side=400, quality=80, min_side=50),
    }


@dataclass
class ImageConfig:
    """Fetch limits and transform presets for the image upload pipeline."""

    connect_timeout: float = 5.0
    read_timeout: float = 20.0
    max_bytes: int = 20 * 1024 * 1024
    user_agent: str = "imagefeed/0.1 (+image crawler)"
    default_preset: str = "primary"
    temp_dir: str | None = None
    presets: dict[str, TransformPreset] = field(default_factory=_default_presets)

    def preset(self, name: str | None) -> TransformPreset:
        """Return the named preset, falling back to ``default_preset``."""

        if name and name in self.presets:
            return self.presets[name]
        if self.default_preset in self.presets:
            return self.presets[self.default_preset]
        return TransformPreset()


@dataclass
class PurgeConfig:
    """Completeness purge knobs."""

    grace_period_seconds: float = 3600.0
    batch_size: int = 500
    schedule_seconds: float = 3600.0


@dataclass
class CleanupConfig:
    """Non-English entry cleanup knobs."""

    batch_size: int = 500
    max_deletions: int = 5000


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    images: ImageConfig = field(default_factory=ImageConfig)
    purge: PurgeConfig = field(default_factory=PurgeConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)


def _project_root() -> Path:
    """Best-effort detection of the repository root for config discovery."""

    module_path = Path(__file__).resolve()
    try:
        return module_path.parents[2]
    except IndexError:  # pragma: no cover - defensive fallback
        return module_path.parent


def _default_settings_paths() -> list[Path]:
    cwd_candidate = (Path.cwd() / "config" / "settings.yaml").resolve()
    repo_candidate = (_project_root() / "config" / "settings.yaml").resolve()
    if cwd_candidate == repo_candidate:
        return [cwd_candidate]
    return [cwd_candidate, repo_candidate]


def _resolve_settings_path(settings_path: Path | str | None) -> Path:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("IMAGEFEED_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    candidates = _default_settings_paths()
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _apply_strings(target: Any, raw: dict[str, Any], names: tuple[str, ...]) -> None:
    for name in names:
        if isinstance(raw.get(name), str):
            setattr(target, name, raw[name])


def _parse_presets(raw: dict[str, Any]) -> dict[str, TransformPreset]:
    presets: dict[str, TransformPreset] = {}
    for name, preset_raw in raw.items():
        if not isinstance(preset_raw, dict):
            continue
        preset = TransformPreset()
        if isinstance(preset_raw.get("max_side"), int):
            preset.max_side = preset_raw["max_side"]
        if isinstance(preset_raw.get("quality"), int):
            preset.quality = preset_raw["quality"]
        if isinstance(preset_raw.get("min_side"), int):
            preset.min_side = preset_raw["min_side"]
        presets[str(name)] = preset
    return presets


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    A missing file or a document that is not a mapping yields the defaults;
    individual keys of the wrong type are ignored.
    """

    path = _resolve_settings_path(settings_path)
    settings = Settings()

    if not path.exists() or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        return settings

    databases_raw = _as_dict(raw.get("databases"))
    _apply_strings(settings.databases, databases_raw, ("primary_url",))

    queue_raw = _as_dict(raw.get("queues"))
    queue_cfg = settings.queues
    _apply_strings(
        queue_cfg,
        queue_raw,
        ("broker_url", "result_backend", "ingest_queue", "image_queue", "maintenance_queue"),
    )
    if isinstance(queue_raw.get("default_concurrency"), int):
        queue_cfg.default_concurrency = queue_raw["default_concurrency"]

    storage_raw = _as_dict(raw.get("storage"))
    _apply_strings(
        settings.storage,
        storage_raw,
        (
            "backend",
            "bucket",
            "region",
            "endpoint_url",
            "access_key_id",
            "secret_access_key",
            "public_base_url",
            "key_prefix",
            "cdn_url",
            "cdn_folder",
            "local_root",
            "local_base_url",
        ),
    )

    images_raw = _as_dict(raw.get("images"))
    images_cfg = settings.images
    if _is_number(images_raw.get("connect_timeout")):
        images_cfg.connect_timeout = float(images_raw["connect_timeout"])
    if _is_number(images_raw.get("read_timeout")):
        images_cfg.read_timeout = float(images_raw["read_timeout"])
    if isinstance(images_raw.get("max_bytes"), int):
        images_cfg.max_bytes = images_raw["max_bytes"]
    _apply_strings(images_cfg, images_raw, ("user_agent", "default_preset", "temp_dir"))
    presets = _parse_presets(_as_dict(images_raw.get("presets")))
    if presets:
        images_cfg.presets = {**images_cfg.presets, **presets}

    purge_raw = _as_dict(raw.get("purge"))
    purge_cfg = settings.purge
    if _is_number(purge_raw.get("grace_period_seconds")):
        purge_cfg.grace_period_seconds = float(purge_raw["grace_period_seconds"])
    if isinstance(purge_raw.get("batch_size"), int):
        purge_cfg.batch_size = purge_raw["batch_size"]
    if _is_number(purge_raw.get("schedule_seconds")):
        purge_cfg.schedule_seconds = float(purge_raw["schedule_seconds"])

    cleanup_raw = _as_dict(raw.get("cleanup"))
    cleanup_cfg = settings.cleanup
    if isinstance(cleanup_raw.get("batch_size"), int):
        cleanup_cfg.batch_size = cleanup_raw["batch_size"]
    if isinstance(cleanup_raw.get("max_deletions"), int):
        cleanup_cfg.max_deletions = cleanup_raw["max_deletions"]

    return settings


__all__ = [
    "CleanupConfig",
    "DatabaseConfig",
    "ImageConfig",
    "PurgeConfig",
    "QueueConfig",
    "Settings",
    "StorageConfig",
    "TransformPreset",
    "load_settings",
]
