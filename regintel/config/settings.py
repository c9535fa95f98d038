"""
Runtime settings for ingestion, validation and storage.

Resolution order: built-in defaults < config/ingest.yaml < environment variables.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DEFAULT_CONFIDENCE_MIN = 0.7
DEFAULT_COOLDOWN_HOURS = 6.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 2.0
DEFAULT_TIMEOUT_SECONDS = 45.0


def load_ingest_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load ingestion configuration from config/ingest.yaml.

    Returns:
        Config dict or empty dict if file not found
    """
    if config_path:
        config_paths = [config_path]
    else:
        config_paths = [
            "config/ingest.yaml",
            os.path.join(REPO_ROOT, "config", "ingest.yaml"),
        ]

    for path in config_paths:
        if os.path.exists(path):
            try:
                with open(path, "r") as f:
                    return yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load ingest config from {path}: {e}")

    return {}


@dataclass
class Settings:
    """Resolved runtime settings."""
    confidence_min: float = DEFAULT_CONFIDENCE_MIN
    download_cooldown_hours: float = DEFAULT_COOLDOWN_HOURS
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    object_store_dir: str = "storage/objects"
    download_index_path: str = "storage/download-index.json"
    repository_path: Optional[str] = "storage/repository.json"
    policy_path: str = os.path.join(REPO_ROOT, "config", "trust_policy.yaml")
    connector_workers: int = 4
    default_max_results: int = 5
    worker_concurrency: Dict[str, int] = field(default_factory=lambda: {"scan": 2, "merge": 1})
    allowed_domains: List[str] = field(default_factory=list)

    @property
    def download_cooldown_seconds(self) -> float:
        return self.download_cooldown_hours * 3600.0


def _env_float(name: str, current: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return current
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}")
        return current


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Build Settings from config/ingest.yaml and REGINTEL_* environment variables."""
    config = load_ingest_config(config_path)
    settings = Settings()

    validation = config.get("validation", {})
    settings.confidence_min = float(validation.get("confidence_min", settings.confidence_min))
    settings.allowed_domains = list(validation.get("allowed_domains", []) or [])

    download = config.get("download", {})
    settings.download_cooldown_hours = float(
        download.get("cooldown_hours", settings.download_cooldown_hours)
    )

    retry = config.get("retry", {})
    settings.max_retries = int(retry.get("max_retries", settings.max_retries))
    settings.backoff_seconds = float(retry.get("backoff_seconds", settings.backoff_seconds))
    settings.timeout_seconds = float(retry.get("timeout_seconds", settings.timeout_seconds))

    storage = config.get("storage", {})
    settings.object_store_dir = storage.get("object_store_dir", settings.object_store_dir)
    settings.download_index_path = storage.get("download_index_path", settings.download_index_path)
    settings.repository_path = storage.get("repository_path", settings.repository_path)
    settings.policy_path = config.get("policy_path", settings.policy_path)

    workers = config.get("workers", {})
    settings.connector_workers = int(workers.get("connector", settings.connector_workers))
    concurrency = dict(settings.worker_concurrency)
    concurrency.update(workers.get("concurrency", {}) or {})
    settings.worker_concurrency = concurrency

    settings.default_max_results = int(config.get("default_max_results", settings.default_max_results))

    # Environment overrides
    settings.confidence_min = _env_float("REGINTEL_CONFIDENCE_MIN", settings.confidence_min)
    settings.download_cooldown_hours = _env_float(
        "REGINTEL_DOWNLOAD_COOLDOWN_HOURS", settings.download_cooldown_hours
    )
    settings.object_store_dir = os.environ.get("REGINTEL_OBJECT_STORE_DIR", settings.object_store_dir)
    settings.download_index_path = os.environ.get(
        "REGINTEL_DOWNLOAD_INDEX_PATH", settings.download_index_path
    )
    settings.repository_path = os.environ.get("REGINTEL_REPOSITORY_PATH", settings.repository_path)

    return settings
