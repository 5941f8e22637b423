"""Configuration paths and runtime settings for the conductor.

Settings are read from ``~/.codegraph/config.toml`` (or ``$CODEGRAPH_HOME``).
Every section is optional; missing keys fall back to the dataclass defaults::

    [workers]
    indexer = 2
    semantic = 4

    [fusion]
    k = 60
    structural_weight = 1.0
    semantic_weight = 1.0

    [embeddings]
    provider = "hash"        # hash | transformer | voyage
    model = "hash"

    [rerank]
    provider = "none"        # none | voyage
    model = "rerank-2"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Set

import toml

logger = logging.getLogger(__name__)

BASE_DIR = Path(os.environ.get("CODEGRAPH_HOME", str(Path.home() / ".codegraph"))).expanduser()
MEMORY_DIR = BASE_DIR / "memory"
CONFIG_FILE = BASE_DIR / "config.toml"
DEFAULT_EMBEDDING_DIM = 256

SKIP_DIRS: Set[str] = {
    ".venv", "venv", "__pycache__", "node_modules", ".git",
    "site-packages", ".tox", ".pytest_cache", "build", "dist",
    ".mypy_cache", ".ruff_cache", "htmlcov", ".eggs",
    "egg-info", ".codegraph", "lancedb",
}


@dataclass
class WorkerSettings:
    """Maximum number of in-flight operations per worker."""

    parser: int = 4
    indexer: int = 2
    semantic: int = 4
    query: int = 8
    system: int = 16

    def limit_for(self, worker: str) -> int:
        return int(getattr(self, worker))


@dataclass
class FusionSettings:
    k: int = 60
    structural_weight: float = 1.0
    semantic_weight: float = 1.0
    candidate_limit: int = 50
    rerank_multiplier: int = 3


@dataclass
class EmbeddingSettings:
    provider: str = "hash"
    model: str = "hash"
    dimension: int = DEFAULT_EMBEDDING_DIM
    api_key: str = ""
    base_url: str = "https://api.voyageai.com"
    timeout_seconds: float = 30.0
    max_batch_size: int = 128
    device: str = "cpu"


@dataclass
class RerankSettings:
    provider: str = "none"
    model: str = "rerank-2"
    api_key: str = ""
    base_url: str = "https://api.voyageai.com"
    timeout_seconds: float = 30.0


@dataclass
class CacheSettings:
    max_entries: int = 256
    warmup_limit: int = 200


@dataclass
class IndexSettings:
    parse_concurrency: int = 4
    max_file_bytes: int = 1_000_000
    embed_batch_size: int = 64
    parser_backend: str = "auto"


@dataclass
class BusSettings:
    retained_messages: int = 100


@dataclass
class Settings:
    """Top-level settings tree handed to :class:`~codegraph_conductor.conductor.Conductor`."""

    data_dir: Path = MEMORY_DIR / "default"
    workers: WorkerSettings = field(default_factory=WorkerSettings)
    fusion: FusionSettings = field(default_factory=FusionSettings)
    embeddings: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    rerank: RerankSettings = field(default_factory=RerankSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    index: IndexSettings = field(default_factory=IndexSettings)
    bus: BusSettings = field(default_factory=BusSettings)


def _coerce(current: Any, value: Any) -> Any:
    """*value* converted to the type of *current*; raises on a mismatch."""
    if isinstance(current, Path):
        if not isinstance(value, str):
            raise TypeError(f"expected a path string, got {type(value).__name__}")
        return Path(value).expanduser()
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise TypeError(f"expected true or false, got {value!r}")
        return value
    if isinstance(value, bool):
        raise TypeError(f"expected a number, got {value!r}")
    if isinstance(current, int):
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"expected an integer, got {value!r}")
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str) and not isinstance(value, str):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    return value


def _apply_section(target: Any, values: Dict[str, Any], section: str) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            logger.warning("Ignoring unknown config key [%s].%s", section, key)
            continue
        try:
            setattr(target, key, _coerce(getattr(target, key), value))
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid config value [%s].%s: %s", section, key, exc)


def settings_from_dict(payload: Dict[str, Any]) -> Settings:
    """Build :class:`Settings` from a parsed TOML mapping."""
    settings = Settings()
    for section, values in payload.items():
        if section == "data_dir":
            try:
                settings.data_dir = _coerce(settings.data_dir, values)
            except TypeError as exc:
                logger.warning("Ignoring invalid config value data_dir: %s", exc)
            continue
        target = getattr(settings, section, None)
        if target is None or not is_dataclass(target) or not isinstance(values, dict):
            logger.warning("Ignoring unknown config section [%s]", section)
            continue
        _apply_section(target, values, section)

    if not settings.embeddings.api_key:
        settings.embeddings.api_key = os.environ.get("VOYAGE_API_KEY", "")
    if not settings.rerank.api_key:
        settings.rerank.api_key = os.environ.get("VOYAGE_API_KEY", "")
    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings from TOML.

    Falls back to defaults when the file is missing or unreadable.
    """
    config_path = path or CONFIG_FILE
    if not config_path.exists():
        return settings_from_dict({})
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            payload = toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Could not read %s, using defaults: %s", config_path, exc)
        return settings_from_dict({})
    return settings_from_dict(payload)


def ensure_base_dirs() -> None:
    """Create base directories for local storage if needed."""
    MEMORY_DIR.mkdir(parents=True, exist_ok=True)
    BASE_DIR.mkdir(parents=True, exist_ok=True)
