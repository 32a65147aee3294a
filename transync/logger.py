
import logging
import os
from pathlib import Path

LOG_DIR = Path(__file__).parent.parent / "logs"
LOG_FILE = LOG_DIR / "app.log"

LOG_MODES = ("off", "info", "debug")

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Cache for log mode to avoid repeated environment lookups
_log_mode_cache = None


def _get_log_mode() -> str:
    """Get log mode from the environment (TRANSYNC_LOG_MODE), defaulting to 'off'."""
    global _log_mode_cache
    if _log_mode_cache is not None:
        return _log_mode_cache

    log_mode = os.environ.get("TRANSYNC_LOG_MODE", "off").strip().lower()
    if log_mode not in LOG_MODES:
        log_mode = "off"
    _log_mode_cache = log_mode
    return log_mode


def _levels_for(log_mode: str):
    if log_mode == 'debug':
        return logging.DEBUG, logging.DEBUG
    if log_mode == 'off':
        # Off mode: a level higher than CRITICAL disables everything
        return logging.CRITICAL + 1, logging.CRITICAL + 1
    return logging.INFO, logging.INFO


def _file_handler() -> logging.FileHandler:
    LOG_DIR.mkdir(exist_ok=True)
    handler = logging.FileHandler(LOG_FILE)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    return handler


def _apply_mode(logger: logging.Logger, log_mode: str) -> None:
    """Bring an already configured logger in line with the given mode."""
    logger_level, console_level = _levels_for(log_mode)
    logger.setLevel(logger_level)

    has_file_handler = any(isinstance(h, logging.FileHandler) for h in logger.handlers)
    if log_mode != 'off' and not has_file_handler:
        logger.addHandler(_file_handler())
    elif log_mode == 'off' and has_file_handler:
        for handler in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
            handler.close()
            logger.removeHandler(handler)

    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(console_level)


def set_log_mode(log_mode: str) -> None:
    """
    Switch the log mode at runtime and update every logger created by get_logger.

    Called when the saved configuration changes.
    """
    global _log_mode_cache
    log_mode = (log_mode or "off").lower()
    _log_mode_cache = log_mode if log_mode in LOG_MODES else "off"

    # Only loggers that have handlers were created by get_logger
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        if logger.handlers and logger_name.startswith("transync"):
            _apply_mode(logger, _log_mode_cache)


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    log_mode = _get_log_mode()

    # Prevent duplicate handlers if logger already configured
    if logger.handlers:
        _apply_mode(logger, log_mode)
        return logger

    logger_level, console_level = _levels_for(log_mode)
    logger.setLevel(logger_level)

    # Console handler is always attached so a later mode switch can raise its level
    c_handler = logging.StreamHandler()
    c_handler.setLevel(console_level)
    c_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger.addHandler(c_handler)

    if log_mode != 'off':
        logger.addHandler(_file_handler())

    return logger
