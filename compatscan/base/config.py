# ============================================================================
# compatscan/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# Every tunable of the engine lives here: scheduler limits, walker filters,
# storage location, compatibility datasets, suggestion guardrails, logging
# and the HTTP surface. Values come from COMPATSCAN_* environment variables
# with safe defaults.
#
# KEY CONCEPTS:
# 1. Frozen dataclasses: one immutable section per concern
# 2. from_env(): the only place that reads os.environ
# 3. get_config()/set_config(): one shared instance, swappable in tests
#
# ============================================================================

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple

from compatscan.errors import ErrorCode, SchedulerConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2

DEFAULT_EXTENSIONS: Tuple[str, ...] = (
    ".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs",
    ".css", ".scss",
    ".html", ".py", ".ipynb", ".java", ".kt", ".go",
)

DEFAULT_IGNORE_DIRS: Tuple[str, ...] = (
    "node_modules", ".git", "dist", "build", ".next", ".nuxt",
    "coverage", ".cache", "tmp", "vendor", "target", "out",
    ".svelte-kit", ".gradle", "__pycache__", "venv", ".venv",
    ".mypy_cache", ".pytest_cache", ".yarn", ".pnpm", ".idea", ".vscode",
)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() == "true"


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    parts = [p.strip() for p in raw.replace(";", ",").split(",")]
    return tuple(p for p in parts if p)


def _env_optional_path(name: str) -> Optional[Path]:
    raw = os.getenv(name, "").strip()
    return Path(raw).expanduser() if raw else None


def parse_max_concurrent(raw: Any) -> int:
    """
    Strictly parse a concurrency ceiling.

    Raises:
        SchedulerConfigurationError: value is missing, not an integer, or < 1
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise SchedulerConfigurationError(ErrorCode.CONFIG_INVALID_CONCURRENCY, "max_concurrent is unset")
    if isinstance(raw, bool):
        raise SchedulerConfigurationError(
            ErrorCode.CONFIG_INVALID_CONCURRENCY, f"max_concurrent must be an integer, got {raw!r}"
        )
    try:
        value = int(str(raw).strip()) if not isinstance(raw, int) else raw
    except ValueError as exc:
        raise SchedulerConfigurationError(
            ErrorCode.CONFIG_INVALID_CONCURRENCY,
            f"max_concurrent must be an integer, got {raw!r}",
        ) from exc
    if value <= 0:
        raise SchedulerConfigurationError(
            ErrorCode.CONFIG_INVALID_CONCURRENCY,
            f"max_concurrent must be positive, got {value}",
            details={"value": value},
        )
    return value


def resolve_max_concurrent(raw: Any, default: int = DEFAULT_MAX_CONCURRENT) -> int:
    """Lenient variant: invalid or unset values fall back to ``default``."""
    try:
        return parse_max_concurrent(raw)
    except SchedulerConfigurationError as exc:
        if raw is not None:
            logger.warning(f"[Config] {exc.message}; using default of {default}")
        return default


# ============================================================================
# Scheduler
# ============================================================================

@dataclass(frozen=True)
class SchedulerConfig:
    # Ceiling on the active set. Bounded parallelism is enforced only here.
    max_concurrent: int = DEFAULT_MAX_CONCURRENT

    # Soft wall-clock budget per job in milliseconds (0 disables it).
    scan_timeout_ms: int = 0


# ============================================================================
# File walking / analysis
# ============================================================================

@dataclass(frozen=True)
class ScanConfig:
    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    ignore_dirs: Tuple[str, ...] = DEFAULT_IGNORE_DIRS

    # 0 means "no size cap"
    max_file_mb: float = 0

    # Skip paths that .gitattributes routes through Git LFS
    skip_lfs: bool = False

    # Substring exclusions merged with each job's excludePaths
    user_exclude_paths: Tuple[str, ...] = ()

    # Remote clones
    clone_depth: int = 1
    clone_timeout_seconds: float = 300.0

    @property
    def max_file_bytes(self) -> int:
        return int(self.max_file_mb * 1024 * 1024) if self.max_file_mb > 0 else 0


# ============================================================================
# Storage
# ============================================================================

@dataclass(frozen=True)
class StorageConfig:
    base_dir: Path = field(default_factory=lambda: Path.home() / ".compatscan")
    db_name: str = "compatscan.db"

    # When False the JobStore runs purely in memory (no durable shadow).
    persistence_enabled: bool = True

    @property
    def db_path(self) -> Path:
        return self.base_dir / self.db_name


# ============================================================================
# Compatibility datasets
# ============================================================================

@dataclass(frozen=True)
class CompatConfig:
    # Extra feature -> status entries merged over the bundled map
    feature_map_path: Optional[Path] = None

    # MDN browser-compat-data style JSON (the "data.json" build)
    bcd_path: Optional[Path] = None

    # web-features style JSON (list of features or {"features": [...]})
    web_features_path: Optional[Path] = None


# ============================================================================
# AI suggestions
# ============================================================================

@dataclass(frozen=True)
class SuggestionConfig:
    disabled: bool = False

    # Token bucket guarding the generator
    rate_capacity: int = 10
    rate_refill_ms: int = 60_000
    rate_disabled: bool = False

    # Optional Ollama-compatible endpoint; when unset the rule-based generator is used
    provider_url: Optional[str] = None
    model: str = "llama3:latest"
    request_timeout: float = 30.0


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file_enabled: bool = False
    file_name: str = "compatscan.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


@dataclass(frozen=True)
class ServerConfig:
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # Interval between SSE heartbeat events
    heartbeat_seconds: float = 15.0


@dataclass
class CompatScanConfig:
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    compat: CompatConfig = field(default_factory=CompatConfig)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)
    log: LogConfig = field(default_factory=LogConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    debug: bool = False

    @classmethod
    def from_env(cls) -> "CompatScanConfig":
        scheduler = SchedulerConfig(
            max_concurrent=resolve_max_concurrent(os.getenv("COMPATSCAN_MAX_CONCURRENT_JOBS")),
            scan_timeout_ms=max(0, int(os.getenv("COMPATSCAN_SCAN_TIMEOUT_MS", "0") or 0)),
        )

        extensions = _env_list("COMPATSCAN_EXTENSIONS") or DEFAULT_EXTENSIONS
        scan = ScanConfig(
            extensions=tuple(e if e.startswith(".") else f".{e}" for e in extensions),
            max_file_mb=float(os.getenv("COMPATSCAN_MAX_FILE_MB", "0") or 0),
            skip_lfs=_env_bool("COMPATSCAN_SKIP_LFS", False),
            user_exclude_paths=_env_list("COMPATSCAN_USER_EXCLUDE_PATHS"),
            clone_depth=int(os.getenv("COMPATSCAN_CLONE_DEPTH", "1")),
            clone_timeout_seconds=float(os.getenv("COMPATSCAN_CLONE_TIMEOUT", "300")),
        )

        base_dir = Path(os.getenv("COMPATSCAN_DATA_DIR", str(Path.home() / ".compatscan"))).expanduser()
        storage = StorageConfig(
            base_dir=base_dir,
            db_name=os.getenv("COMPATSCAN_DB_NAME", "compatscan.db"),
            persistence_enabled=_env_bool("COMPATSCAN_PERSISTENCE", True),
        )

        compat = CompatConfig(
            feature_map_path=_env_optional_path("COMPATSCAN_FEATURE_MAP"),
            bcd_path=_env_optional_path("COMPATSCAN_BCD_PATH"),
            web_features_path=_env_optional_path("COMPATSCAN_WEB_FEATURES_PATH"),
        )

        suggestions = SuggestionConfig(
            disabled=_env_bool("COMPATSCAN_SUGGESTIONS_DISABLE", False),
            rate_capacity=max(1, int(os.getenv("COMPATSCAN_SUGGESTIONS_RATE_CAPACITY", "10"))),
            rate_refill_ms=max(250, int(os.getenv("COMPATSCAN_SUGGESTIONS_RATE_REFILL_MS", "60000"))),
            rate_disabled=_env_bool("COMPATSCAN_SUGGESTIONS_RATE_DISABLE", False),
            provider_url=os.getenv("COMPATSCAN_SUGGESTIONS_URL") or None,
            model=os.getenv("COMPATSCAN_SUGGESTIONS_MODEL", "llama3:latest"),
            request_timeout=float(os.getenv("COMPATSCAN_SUGGESTIONS_TIMEOUT", "30")),
        )

        log = LogConfig(
            level=os.getenv("COMPATSCAN_LOG_LEVEL", "INFO"),
            file_enabled=_env_bool("COMPATSCAN_LOG_FILE", False),
        )

        server = ServerConfig(
            api_host=os.getenv("COMPATSCAN_API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("COMPATSCAN_API_PORT", "8765")),
            heartbeat_seconds=float(os.getenv("COMPATSCAN_HEARTBEAT_SECONDS", "15")),
        )

        return cls(
            scheduler=scheduler,
            scan=scan,
            storage=storage,
            compat=compat,
            suggestions=suggestions,
            log=log,
            server=server,
            debug=_env_bool("COMPATSCAN_DEBUG", False),
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[CompatScanConfig] = None


def get_config() -> CompatScanConfig:
    """Return the shared configuration, loading it from the environment on first use."""
    global _config
    if _config is None:
        _config = CompatScanConfig.from_env()
    return _config


def set_config(config: Optional[CompatScanConfig]) -> None:
    """Replace the shared configuration (tests pass None to force a reload)."""
    global _config
    _config = config


def setup_logging(config: Optional[CompatScanConfig] = None) -> None:
    """
    Configure console logging, plus a rotating file when enabled.

    Call this once at process startup (CLI / server entry points).
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.base_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.storage.base_dir / cfg.log.file_name,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
