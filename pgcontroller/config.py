"""
Controller configuration and logging setup.

Settings are read from environment variables and may be overridden by a YAML
file whose path is given in CONFIG_FILE. Keys in the file use the attribute
names below, for example:

    SYNC_INTERVAL: 10
    MAX_WORKERS: 8
"""

import os
import sys
import logging

import yaml

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'

logger = logging.getLogger("postgres-controller.config")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Controller configuration loaded from environment variables"""

    # Kubernetes settings
    NAMESPACE = os.getenv("NAMESPACE", "")
    CRD_GROUP = os.getenv("CRD_GROUP", "postgresql.gitops.io")
    CRD_VERSION = os.getenv("CRD_VERSION", "v1alpha1")
    FINALIZER = os.getenv("FINALIZER", "postgresql.gitops.io/finalizer")
    EVENT_COMPONENT = os.getenv("EVENT_COMPONENT", "postgres-controller")

    # Controller settings
    SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "5"))
    RESYNC_INTERVAL = int(os.getenv("RESYNC_INTERVAL", "300"))
    MAX_WORKERS = int(os.getenv("MAX_WORKERS", "4"))
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2.0"))
    MAX_BACKOFF_SECONDS = float(os.getenv("MAX_BACKOFF_SECONDS", "300"))
    RECONCILE_TIMEOUT = float(os.getenv("RECONCILE_TIMEOUT", "30"))
    DEFER_WHILE_DETACHED = _env_bool("DEFER_WHILE_DETACHED", "true")
    DETACHED_RECHECK_SECONDS = float(os.getenv("DETACHED_RECHECK_SECONDS", "5"))
    NOT_READY_REQUEUE_SECONDS = float(os.getenv("NOT_READY_REQUEUE_SECONDS", "10"))
    DRAIN_RECHECK_SECONDS = float(os.getenv("DRAIN_RECHECK_SECONDS", "30"))

    # Connection pool settings
    DB_POOL_MIN_CONN = int(os.getenv("DB_POOL_MIN_CONN", "1"))
    DB_POOL_MAX_CONN = int(os.getenv("DB_POOL_MAX_CONN", "5"))
    DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))

    # Observability
    METRICS_PORT = int(os.getenv("METRICS_PORT", "9187"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def load_file(cls, path: str) -> None:
        """
        Override settings from a YAML mapping

        Args:
            path: Path to a YAML file with upper-case setting names as keys
        """
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}

        if not isinstance(overrides, dict):
            raise ValueError(f"configuration file {path} must contain a mapping")

        for key, value in overrides.items():
            if not key.isupper() or not hasattr(cls, key):
                logger.warning(f"Ignoring unknown configuration key {key}")
                continue
            current = getattr(cls, key)
            # Keep the declared type of each setting
            if isinstance(current, bool):
                value = str(value).lower() == "true"
            elif current is not None and not isinstance(value, type(current)):
                value = type(current)(value)
            setattr(cls, key, value)

        logger.info(f"Loaded configuration overrides from {path}")


def configure_logging(level: str = None) -> None:
    """Configure structured JSON-line logging on stdout"""
    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
