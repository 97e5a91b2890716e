"""
Process-wide configuration for the genrec runtime.

Per-handle knobs live in InitOptions / RequestParams (genrec.types). This
module holds what is shared by every handle in the process: logging, the
request worker pool size, the device kind order used for "auto" placement
and the generation cache memory-pressure watermark.

Configuration can be loaded from a YAML file (path passed explicitly or via
GENREC_CONFIG) and individual values overridden through the environment.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEVICE_KINDS = ("cuda", "npu")


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@dataclass
class RuntimeConfig:
    log_level: str = "warning"
    worker_threads: int = 4
    auto_device_kinds: List[str] = field(default_factory=lambda: list(DEVICE_KINDS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeConfig":
        return cls(
            log_level=data.get("log_level", "warning"),
            worker_threads=data.get("worker_threads", 4),
            auto_device_kinds=list(data.get("auto_device_kinds", DEVICE_KINDS)),
        )


@dataclass
class CacheConfig:
    # Fraction of the cache budget above which the pool signals memory pressure
    pressure_watermark: float = 0.9
    # Floor used when an entry holds no attention state yet
    min_entry_bytes: int = 256

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        return cls(
            pressure_watermark=data.get("pressure_watermark", 0.9),
            min_entry_bytes=data.get("min_entry_bytes", 256),
        )


@dataclass
class GenRecConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenRecConfig":
        return cls(
            runtime=RuntimeConfig.from_dict(data.get("runtime", {}) or {}),
            cache=CacheConfig.from_dict(data.get("cache", {}) or {}),
        )

    def validate(self) -> None:
        """
        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.runtime.worker_threads < 1:
            raise ValueError(
                f"worker_threads must be >= 1, got {self.runtime.worker_threads}"
            )
        if not self.runtime.auto_device_kinds:
            raise ValueError("auto_device_kinds must not be empty")
        unknown = [k for k in self.runtime.auto_device_kinds if k not in DEVICE_KINDS]
        if unknown:
            raise ValueError(f"auto_device_kinds contains unknown kinds: {unknown}")
        if not 0.0 < self.cache.pressure_watermark <= 1.0:
            raise ValueError(
                f"pressure_watermark must be in (0, 1], got {self.cache.pressure_watermark}"
            )
        if self.cache.min_entry_bytes < 0:
            raise ValueError(
                f"min_entry_bytes must be >= 0, got {self.cache.min_entry_bytes}"
            )


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    runtime = dict(data.get("runtime", {}) or {})
    if os.getenv("GENREC_LOG_LEVEL"):
        runtime["log_level"] = os.environ["GENREC_LOG_LEVEL"]
    if os.getenv("GENREC_WORKER_THREADS"):
        raw = os.environ["GENREC_WORKER_THREADS"]
        try:
            runtime["worker_threads"] = int(raw)
        except ValueError as e:
            raise ValueError(f"GENREC_WORKER_THREADS must be an integer, got {raw!r}") from e
    if os.getenv("GENREC_AUTO_DEVICE_KIND"):
        kinds = [k.strip().lower() for k in os.environ["GENREC_AUTO_DEVICE_KIND"].split(",")]
        runtime["auto_device_kinds"] = [k for k in kinds if k]
    return {**data, "runtime": runtime}


def load_config(config_path: Optional[str] = None) -> GenRecConfig:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML file (defaults to $GENREC_CONFIG; when
                     neither is set only defaults and env overrides apply)

    Returns:
        Validated GenRecConfig

    Raises:
        FileNotFoundError: If an explicit config file does not exist
        ValueError: If the file is not valid YAML or a value is invalid
    """
    config_path = config_path or os.getenv("GENREC_CONFIG")
    data: Dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Config file '{config_path}' must contain a mapping")
        logger.info(f"Loaded genrec config from {path}")

    return GenRecConfig.from_dict(_apply_env_overrides(data))


_global_config: Optional[GenRecConfig] = None
_config_lock = threading.Lock()


def get_config() -> GenRecConfig:
    """Get global configuration (lazily loaded on first use)."""
    global _global_config
    if _global_config is not None:
        return _global_config
    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config


def set_config(config: Optional[GenRecConfig]) -> None:
    """Replace the global configuration (None resets to lazy loading)."""
    global _global_config
    with _config_lock:
        _global_config = config
