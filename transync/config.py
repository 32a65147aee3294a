
import copy
import json
from dataclasses import dataclass, fields
from typing import Dict, Any, Optional

from transync.core import database as db
from transync.core.schema import initialize_database
from transync.logger import get_logger, set_log_mode

logger = get_logger(__name__)

SOURCE_LANGUAGE = "en"

# Placeholder API key written into a fresh configuration
API_KEY_PLACEHOLDER = "YOUR_API_KEY_HERE"

# Default configuration templates
DEFAULT_CONFIG = {
    "service": {
        "base_url": "http://localhost:54321/functions/v1",
        "api_key": API_KEY_PLACEHOLDER,
        "timeout": 120,
        "evaluate_path": "/evaluate-translation-quality",
        "translate_path": "/translate-content",
        "refine_path": "/refine-translation",
    },
    "pipeline": {
        "source_language": SOURCE_LANGUAGE,
        "refine_batch_size": 5,
        "batch_delay_seconds": 1.5,
        "rate_limit_backoff_seconds": 30,
        "max_rate_limit_retries": 3,
        "evaluation_step_delay_seconds": 1,
        "language_delay_seconds": 2,
        "auto_approve_threshold": 85,
        "needs_review_threshold": 70,
        "visibility_threshold": 0.95,
        "stuck_heartbeat_minutes": 10,
        "stuck_no_progress_minutes": 5,
        "max_evaluation_steps": 10000,
        "tov_content": "",
    },
    "log_mode": "off"
}


@dataclass
class PipelineSettings:
    """Typed view of the ``pipeline`` configuration section.

    Batch sizes, pacing delays and thresholds were tuned against the external
    service's rate limits; every orchestrator accepts an instance so callers
    (and tests) can override them without touching the stored configuration.
    """

    source_language: str = SOURCE_LANGUAGE
    refine_batch_size: int = 5
    batch_delay_seconds: float = 1.5
    rate_limit_backoff_seconds: float = 30
    max_rate_limit_retries: int = 3
    evaluation_step_delay_seconds: float = 1
    language_delay_seconds: float = 2
    auto_approve_threshold: int = 85
    needs_review_threshold: int = 70
    visibility_threshold: float = 0.95
    stuck_heartbeat_minutes: float = 10
    stuck_no_progress_minutes: float = 5
    max_evaluation_steps: int = 10000
    tov_content: str = ""

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "PipelineSettings":
        """
        Build settings from a configuration dict (loaded from the database if omitted).

        Raises:
            ValueError: If a known setting has the wrong type.
        """
        if config is None:
            config = load_config()
        section = config.get("pipeline") or {}
        types = {f.name: f.type for f in fields(cls)}
        values = {k: _coerce_setting(k, types[k], v) for k, v in section.items() if k in types}
        unknown = set(section) - set(types)
        if unknown:
            logger.warning(f"Ignoring unknown pipeline settings: {sorted(unknown)}")
        return cls(**values)


def _coerce_setting(name: str, field_type: type, value: Any) -> Any:
    """
    Check a pipeline value against its field type.

    Integral floats are accepted for int fields and ints for float fields;
    booleans and strings are never accepted for numbers.

    Raises:
        ValueError: If the value does not fit the field.
    """
    if field_type is str:
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    if field_type is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"{name} must be an integer")
        return int(value)
    return float(value)


def initialize_app():
    """
    Initialize the application.
    This function is called on first run or when performing a factory reset.
    It creates the database and default configuration in database.
    """
    logger.info("Initializing application...")

    initialize_database()
    logger.info("Database initialized")

    existing_config = db.get_app_config('config')
    if not existing_config:
        logger.info("No config in database, initializing default config")
        save_config(DEFAULT_CONFIG)
    else:
        logger.debug("Config already exists in database")
        try:
            set_log_mode(json.loads(existing_config).get("log_mode", "off"))
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning(f"Stored config is unreadable, log mode unchanged: {e}")

    logger.info("Application initialization complete")


def _merge_defaults(config: Dict[str, Any]) -> Dict[str, Any]:
    """Fill sections missing from a stored config with their defaults."""
    merged = copy.deepcopy(DEFAULT_CONFIG)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def load_config() -> Dict[str, Any]:
    """Load the configuration from database."""
    try:
        config_json = db.get_app_config('config')
    except Exception as e:
        logger.error(f"Failed to load config from database: {e}")
        logger.warning("Using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)

    if not config_json:
        logger.info("No config in database, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        config = json.loads(config_json)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse config from database: {e}")
        logger.warning("Using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)

    logger.debug("Configuration loaded from database")
    return _merge_defaults(config)


def save_config(config: Dict[str, Any]):
    """Save the configuration to database."""
    try:
        config_json = json.dumps(config, ensure_ascii=False)
        db.set_app_config('config', config_json)
        logger.info("Configuration saved to database")
    except Exception as e:
        logger.error(f"Failed to save config to database: {e}")
        raise
    set_log_mode(config.get("log_mode", "off"))


def factory_reset():
    """
    Perform a factory reset.
    WARNING: This will delete all data and reset to defaults.
    """
    logger.warning("Performing factory reset...")

    db_file = db.DB_FILE
    if db_file.exists():
        db_file.unlink()
        logger.info("Database deleted")

    initialize_app()
    logger.info("Factory reset complete")
