"""Configuration for the dual-mode test-context engine.

Configuration is read once at process start and cached by `get_config()`;
nothing re-reads it mid-run. Sources, highest precedence first:
- Environment variables (e.g. `TEST_MODE`, `LIVE_STORE_URL`).
- Optional text files under `config/` (e.g. `config/live.store_url`).
- `dualmode_config.json` at the project root.
- Defaults suitable for local isolated runs.

Validation: Pydantic models enforce required fields and value constraints.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from dualmode.models.test_mode import TestMode


CONFIG_DIR = Path("config")
ROOT_CONFIG = Path("dualmode_config.json")
BUNDLE_OVERRIDE_PREFIX = "TEST_FIXTURE_BUNDLE_"
logger = logging.getLogger(__name__)


def _read_config_file(rel_path: str) -> Optional[str]:
    path = CONFIG_DIR / rel_path
    try:
        if path.exists():
            return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read override %s: %s", path, e)
        return None
    return None


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(key, default)
    if value is not None and not str(value).strip():
        return default
    return value


def _read_json_file(path: Path) -> dict:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Failed to read JSON config %s: %s", path, e)
    return {}


class GeoBoundary(BaseModel):
    """Rectangular test-safe service area."""

    name: str
    north: float
    south: float
    east: float
    west: float

    @model_validator(mode="after")
    def edges_must_be_ordered(self) -> "GeoBoundary":
        if self.north <= self.south:
            raise ValueError(f"boundary {self.name!r}: north must be greater than south")
        if self.east <= self.west:
            raise ValueError(f"boundary {self.name!r}: east must be greater than west")
        return self

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.south <= latitude <= self.north and self.west <= longitude <= self.east


DEFAULT_BOUNDARIES = [
    GeoBoundary(name="Cedar Falls Test Area", north=42.55, south=42.40, east=-92.20, west=-92.60),
]
DEFAULT_ALLOWED_LOCATIONS = ["Cedar Falls", "Winfield", "O'Fallon"]
DEFAULT_LIVE_ENTITIES = {"customers": "customers", "routes": "routes", "tickets": "tickets"}


class IsolatedConfig(BaseModel):
    fixture_dir: str = Field(default="fixtures")
    default_bundle: str = Field(default="baseline")
    bundle_overrides: Dict[str, str] = Field(default_factory=dict)
    # `{context_id}` is substituted so file-backed stores are unique per context
    store_url: str = Field(default="sqlite+pysqlite:///:memory:")

    @field_validator("store_url", "default_bundle")
    @classmethod
    def must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("isolated store url and default bundle must be non-empty")
        return v


class LiveStoreConfig(BaseModel):
    store_url: Optional[str] = None
    api_base_url: Optional[str] = None
    readiness_path: str = Field(default="/health")
    entities: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_LIVE_ENTITIES))

    @field_validator("entities")
    @classmethod
    def entities_must_be_declared(cls, v: Dict[str, str]) -> Dict[str, str]:
        if not v:
            raise ValueError("live.entities must name at least one entity kind")
        return v


class SafetyConfig(BaseModel):
    marker: str = Field(default="looneyTunesTest")
    allowed_locations: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_LOCATIONS))
    boundaries: List[GeoBoundary] = Field(default_factory=lambda: list(DEFAULT_BOUNDARIES))
    max_batch_size: int = Field(default=10, gt=0)

    @field_validator("marker")
    @classmethod
    def marker_must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("safety.marker must be a non-empty string")
        return v.strip()


class TimeoutConfig(BaseModel):
    setup: float = Field(default=30.0, gt=0)
    validation: float = Field(default=10.0, gt=0)
    cleanup: float = Field(default=30.0, gt=0)
    readiness: float = Field(default=5.0, gt=0)
    element_isolated: float = Field(default=5.0, gt=0)
    element_production: float = Field(default=10.0, gt=0)
    retries_isolated: int = Field(default=1, ge=0)
    retries_production: int = Field(default=3, ge=0)


class EngineConfig(BaseModel):
    mode_override: Optional[TestMode] = None
    run_id: str
    isolated: IsolatedConfig
    live: LiveStoreConfig
    safety: SafetyConfig
    timeouts: TimeoutConfig
    cleanup_ledger_path: str = Field(default="logs/cleanup_ledger.json")


def _bundle_overrides(base: dict) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    raw = base.get("isolated", {}).get("bundle_overrides") if isinstance(base.get("isolated"), dict) else None
    if isinstance(raw, dict):
        overrides.update({str(k).lower(): str(v) for k, v in raw.items()})
    for key, value in os.environ.items():
        if key.startswith(BUNDLE_OVERRIDE_PREFIX) and value.strip():
            overrides[key[len(BUNDLE_OVERRIDE_PREFIX):].lower()] = value.strip()
    return overrides


def _parse_pairs(text: str) -> Dict[str, str]:
    pairs: Dict[str, str] = {}
    for item in text.split(","):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        if key.strip() and value.strip():
            pairs[key.strip().lower()] = value.strip()
    return pairs


def load_config() -> EngineConfig:
    """Load configuration with validation.

    Precedence (highest first):
    1) Environment variables
    2) Text files in `config/` (optional)
    3) dualmode_config.json at project root
    4) Defaults for isolated local runs
    """

    base = _read_json_file(ROOT_CONFIG)

    def _base(path: str, default: Optional[str] = None) -> Optional[str]:
        cur: object = base
        for key in path.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return default
            cur = cur[key]
        return str(cur) if cur is not None else default

    def _base_obj(path: str) -> object:
        cur: object = base
        for key in path.split("."):
            if not isinstance(cur, dict) or key not in cur:
                return None
            cur = cur[key]
        return cur

    mode_text = _env("TEST_MODE") or _read_config_file("test.mode") or _base("mode")
    run_id = _env("TEST_RUN_ID") or _read_config_file("test.run_id") or f"run-{uuid.uuid4().hex[:12]}"

    # Isolated fixtures
    fixture_dir = _env("TEST_FIXTURE_DIR") or _read_config_file("isolated.fixture_dir") or _base("isolated.fixture_dir", "fixtures")
    bundle = _env("TEST_FIXTURE_BUNDLE") or _read_config_file("isolated.bundle") or _base("isolated.default_bundle", "baseline")
    isolated_url = _env("ISOLATED_STORE_URL") or _read_config_file("isolated.store_url") or _base("isolated.store_url", "sqlite+pysqlite:///:memory:")

    # Live system
    live_url = _env("LIVE_STORE_URL") or _read_config_file("live.store_url") or _base("live.store_url")
    api_url = _env("LIVE_API_BASE_URL") or _read_config_file("live.api_base_url") or _base("live.api_base_url")
    readiness_path = _env("LIVE_API_READINESS_PATH") or _read_config_file("live.readiness_path") or _base("live.readiness_path", "/health")
    entities_text = _env("LIVE_ENTITY_TABLES") or _read_config_file("live.entities")
    entities = _parse_pairs(entities_text) if entities_text else (_base_obj("live.entities") or dict(DEFAULT_LIVE_ENTITIES))

    # Safety
    marker = _env("TEST_MARKER") or _read_config_file("safety.marker") or _base("safety.marker", "looneyTunesTest")
    locations_text = _env("TEST_ALLOWED_LOCATIONS") or _read_config_file("safety.allowed_locations")
    if locations_text:
        allowed_locations = [loc.strip() for loc in locations_text.split(",") if loc.strip()]
    else:
        allowed_locations = _base_obj("safety.allowed_locations") or list(DEFAULT_ALLOWED_LOCATIONS)
    boundaries_text = _env("TEST_SAFE_BOUNDARIES") or _read_config_file("safety.boundaries.json")
    try:
        boundaries = json.loads(boundaries_text) if boundaries_text else (_base_obj("safety.boundaries") or [b.model_dump() for b in DEFAULT_BOUNDARIES])
    except json.JSONDecodeError as e:
        logger.error("Invalid TEST_SAFE_BOUNDARIES JSON: %s", e)
        raise
    max_batch = _env("TEST_MAX_BATCH_SIZE") or _read_config_file("safety.max_batch_size") or _base("safety.max_batch_size", "10")

    # Timeouts (seconds)
    timeouts = {
        "setup": _env("CONTEXT_SETUP_TIMEOUT") or _base("timeouts.setup", "30"),
        "validation": _env("CONTEXT_VALIDATE_TIMEOUT") or _base("timeouts.validation", "10"),
        "cleanup": _env("CONTEXT_CLEANUP_TIMEOUT") or _base("timeouts.cleanup", "30"),
        "readiness": _env("LIVE_API_READINESS_TIMEOUT") or _base("timeouts.readiness", "5"),
        "element_isolated": _env("ELEMENT_TIMEOUT_ISOLATED") or _base("timeouts.element_isolated", "5"),
        "element_production": _env("ELEMENT_TIMEOUT_PRODUCTION") or _base("timeouts.element_production", "10"),
        "retries_isolated": _env("ELEMENT_RETRIES_ISOLATED") or _base("timeouts.retries_isolated", "1"),
        "retries_production": _env("ELEMENT_RETRIES_PRODUCTION") or _base("timeouts.retries_production", "3"),
    }
    ledger_path = _env("CLEANUP_LEDGER_PATH") or _read_config_file("cleanup.ledger_path") or _base("cleanup_ledger_path", "logs/cleanup_ledger.json")

    try:
        cfg = EngineConfig(
            mode_override=mode_text.strip().lstrip("@").lower() if mode_text else None,
            run_id=run_id,
            isolated=IsolatedConfig(
                fixture_dir=fixture_dir,
                default_bundle=bundle,
                bundle_overrides=_bundle_overrides(base),
                store_url=isolated_url,
            ),
            live=LiveStoreConfig(
                store_url=live_url,
                api_base_url=api_url,
                readiness_path=readiness_path,
                entities=entities,
            ),
            safety=SafetyConfig(
                marker=marker,
                allowed_locations=allowed_locations,
                boundaries=boundaries,
                max_batch_size=max_batch,
            ),
            timeouts=TimeoutConfig(**timeouts),
            cleanup_ledger_path=ledger_path,
        )
    except PydanticValidationError as e:
        logger.error("Invalid engine configuration: %s", e)
        raise
    logger.info(
        "config_loaded run_id=%s mode_override=%s fixture_dir=%s bundle=%s live_configured=%s",
        cfg.run_id,
        cfg.mode_override,
        cfg.isolated.fixture_dir,
        cfg.isolated.default_bundle,
        bool(cfg.live.store_url and cfg.live.api_base_url),
    )
    return cfg


_CONFIG: Optional[EngineConfig] = None


def get_config() -> EngineConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config() -> None:
    """Drop the cached configuration so the next `get_config()` reloads it."""
    global _CONFIG
    _CONFIG = None


__all__ = [
    "EngineConfig",
    "GeoBoundary",
    "IsolatedConfig",
    "LiveStoreConfig",
    "SafetyConfig",
    "TimeoutConfig",
    "load_config",
    "get_config",
    "reset_config",
]
