"""Configuration management for the sync service."""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from ..exceptions import ConfigurationError
from ..models.config import (
    ConflictPolicyName, DirectionSettings, QueueSettings, SyncMode, SyncSettings
)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

SYNC_MODE_ALIASES = {
    "realgreen-led": SyncMode.A_LED,
    "realgreen_led": SyncMode.A_LED,
    "a_led": SyncMode.A_LED,
    "ghl-led": SyncMode.B_LED,
    "ghl_led": SyncMode.B_LED,
    "b_led": SyncMode.B_LED,
    "hybrid": SyncMode.HYBRID,
}


def setup_logging(level: str = "INFO", log_file: Optional[str] = None,
                  max_bytes: int = 10 * 1024 * 1024, backup_count: int = 14) -> None:
    """Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Also write to this file, rotated by size
        max_bytes: Size at which the log file is rotated
        backup_count: Rotated files to keep
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )


def setup_logging_from_env(level: Optional[str] = None) -> None:
    """Set up logging from LOG_LEVEL, LOG_FILE, LOG_MAX_BYTES and LOG_BACKUP_COUNT."""
    setup_logging(
        level=level or get_optional_env('LOG_LEVEL', 'INFO'),
        log_file=get_optional_env('LOG_FILE') or None,
        max_bytes=_env_int('LOG_MAX_BYTES', 10 * 1024 * 1024),
        backup_count=_env_int('LOG_BACKUP_COUNT', 14),
    )


def load_environment(env_file: Optional[str] = None) -> None:
    """Load environment variables from .env file.

    Args:
        env_file: Path to .env file. If None, looks for .env in current directory.
    """
    if env_file:
        env_path = Path(env_file)
    else:
        env_path = Path('.env')

    if env_path.exists():
        load_dotenv(env_path)
        logging.info(f"Loaded environment from {env_path}")
    else:
        logging.warning(f"No .env file found at {env_path}")


def get_required_env(key: str) -> str:
    """Get a required environment variable.

    Raises:
        ConfigurationError: If the environment variable is not set
    """
    value = os.getenv(key)
    if not value:
        raise ConfigurationError(f"Required environment variable {key} is not set")
    return value


def get_optional_env(key: str, default: str = "") -> str:
    """Get an optional environment variable."""
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def _env_float(key: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {value!r}")


def _env_enabled(key: str) -> bool:
    # Directions are on unless explicitly switched off
    return os.getenv(key, "").strip().lower() != "false"


def parse_sync_mode(value: str) -> SyncMode:
    """Accept both the engine names and the realgreen-led / ghl-led spellings."""
    mode = SYNC_MODE_ALIASES.get(value.strip().lower())
    if mode is None:
        raise ConfigurationError(f"Unknown sync mode: {value}")
    return mode


def load_settings_from_env() -> SyncSettings:
    """Build SyncSettings from SYNC_* environment variables.

    SYNC_INTERVAL is in milliseconds; the other durations are in seconds.

    Raises:
        ConfigurationError: A value is malformed or out of range
    """
    try:
        interval_seconds = _env_int('SYNC_INTERVAL', 300000) / 1000.0
        direction_values = dict(
            batch_size=_env_int('SYNC_BATCH_SIZE', 50),
            interval_seconds=interval_seconds,
            max_attempts=_env_int('SYNC_MAX_RETRIES', 3),
            concurrency=_env_int('SYNC_CONCURRENCY', 4),
        )

        policy = get_optional_env('SYNC_CONFLICT_POLICY', 'newest_wins').strip().lower().replace('-', '_')
        try:
            conflict_policy = ConflictPolicyName(policy)
        except ValueError:
            raise ConfigurationError(f"Unknown conflict policy: {policy}")

        entity_types = [
            name.strip()
            for name in get_optional_env('SYNC_ENTITY_TYPES', 'customer,appointment').split(',')
            if name.strip()
        ]

        return SyncSettings(
            mode=parse_sync_mode(get_optional_env('SYNC_MODE', 'hybrid')),
            conflict_policy=conflict_policy,
            a_to_b=DirectionSettings(enabled=_env_enabled('SYNC_RG_TO_GHL'), **direction_values),
            b_to_a=DirectionSettings(enabled=_env_enabled('SYNC_GHL_TO_RG'), **direction_values),
            queue=QueueSettings(
                visibility_timeout_seconds=_env_float('SYNC_VISIBILITY_TIMEOUT', 120.0),
            ),
            entity_types=entity_types,
            min_trigger_gap_seconds=_env_float('SYNC_MIN_TRIGGER_GAP', None),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sync settings: {e}")


def create_store_from_env(persistent: bool = False):
    """Create the state store selected by SYNC_STORE (memory or firestore).

    Args:
        persistent: Refuse the memory store, whose state dies with the process
    """
    backend = get_optional_env('SYNC_STORE', 'memory').strip().lower()

    if backend == 'memory':
        if persistent:
            raise ConfigurationError(
                "This command needs state shared across runs; set SYNC_STORE=firestore"
            )
        from ..services.store import MemoryStateStore
        return MemoryStateStore()

    if backend == 'firestore':
        from ..services.firestore import FirestoreStateStore
        return FirestoreStateStore(
            project_id=get_optional_env('GOOGLE_CLOUD_PROJECT') or None,
            prefix=get_optional_env('SYNC_FIRESTORE_PREFIX', 'hybrid_sync'),
        )

    raise ConfigurationError(f"Unknown SYNC_STORE backend: {backend}")


def create_mapper_from_env():
    """Built-in mapping tables, overridden by the tables in SYNC_MAPPINGS_FILE if set."""
    from ..engine.transforms import default_mapper, load_mapping_tables

    mapper = default_mapper()
    mappings_file = get_optional_env('SYNC_MAPPINGS_FILE')
    if mappings_file:
        for table in load_mapping_tables(mappings_file):
            mapper.register(table)
    return mapper


def create_orchestrator_from_env(status_publisher: Optional[Callable] = None, persistent: bool = False):
    """Wire connectors, store, mapper and settings from the environment.

    One-shot commands pass persistent=True, since a memory store would start
    empty on every invocation.

    Raises:
        ConfigurationError: Settings are invalid
        ValueError: API credentials are missing
    """
    from ..connectors.gohighlevel import GoHighLevelConnector
    from ..connectors.realgreen import RealGreenConnector
    from ..engine.orchestrator import SyncOrchestrator
    from ..integrations.gohighlevel.client import create_gohighlevel_client_from_env
    from ..integrations.realgreen.client import create_realgreen_client_from_env

    settings = load_settings_from_env()
    store = create_store_from_env(persistent=persistent)
    realgreen = RealGreenConnector(client=create_realgreen_client_from_env())
    gohighlevel = GoHighLevelConnector(
        client=create_gohighlevel_client_from_env(),
        calendar_id=get_optional_env('GHL_CALENDAR_ID') or None,
    )

    return SyncOrchestrator(
        realgreen,
        gohighlevel,
        settings=settings,
        store=store,
        mapper=create_mapper_from_env(),
        status_publisher=status_publisher,
    )
