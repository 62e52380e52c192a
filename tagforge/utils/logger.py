"""
Centralized Logging and Security Filtering
==========================================

This module provides the logging infrastructure for TagForge. It centralizes
diagnostic output while ensuring that catalog access tokens never reach the
log files or the console.

Key Features:
-------------
- Sensitive Data Masking: Automatic redaction of Hub tokens, Bearer headers
  and keys using regex and recursive dictionary filtering.
- API Instrumentation: Helpers for logging catalog requests/responses and a
  decorator that times long-running operations.
- Contextual Logging: Timestamps, module origin and line numbers in every record.

Dependencies:
-------------
- logging: Standard library for output routing.
- re: Used for pattern-based masking of sensitive strings.
"""

import json
import logging
import os
import re
import sys
import time
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Optional


# Log directory, overridable for tests and packaged installs
LOG_DIR = Path(os.environ.get("TAGFORGE_LOG_DIR", Path.cwd() / "logs"))
LOG_FILENAME = "tagforge.log"

# Sensitive field patterns to mask
SENSITIVE_FIELDS = {
    'password', 'passwd', 'secret', 'token', 'api_key',
    'apikey', 'auth', 'authorization', 'credentials'
}

# Regex patterns for sensitive data in strings
SENSITIVE_PATTERNS = [
    (re.compile(r'(hf_[a-zA-Z0-9]{20,})'), lambda m: f"hf_***{m.group(1)[-4:]}"),  # Hub access tokens
    (re.compile(r'(Bearer\s+[a-zA-Z0-9\-._~+/]+=*)'), 'Bearer ***'),  # Bearer tokens
    (re.compile(r'(sk-[a-zA-Z0-9]{20,})'), '***'),  # Generic secret keys
]

DEFAULT_LOG_FORMAT = (
    '%(asctime)s - %(name)s - %(levelname)s - '
    '[%(filename)s:%(lineno)d] - %(message)s'
)


def _mask_string(text: str) -> str:
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SensitiveDataFilter(logging.Filter):
    """
    Filtering hook to redact credentials from log records.

    Attached to both file and console handlers. Scans the message and its
    arguments for tokens and replaces them with masks before the record is
    persisted or displayed.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _mask_string(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_sensitive_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    mask_sensitive_data(arg) if isinstance(arg, (dict, str)) else arg
                    for arg in record.args
                )

        return True


def mask_sensitive_data(data: Any, mask_value: str = "***") -> Any:
    """
    Recursively redact sensitive fields from nested data structures.

    Keys matching a known credential label are masked (tokens and keys keep
    their last 4 characters); strings are scrubbed with the regex patterns.

    Args:
        data: The input data structure (dict, list, str, etc.) to be scrubbed.
        mask_value: The string used to replace sensitive content.

    Returns:
        A copy of the input data with sensitive values masked.
    """
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                if ('key' in key_lower or 'token' in key_lower) and isinstance(value, str) and len(value) > 4:
                    masked[key] = f"{mask_value}{value[-4:]}"
                else:
                    masked[key] = mask_value
            else:
                masked[key] = mask_sensitive_data(value, mask_value)
        return masked

    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item, mask_value) for item in data)

    if isinstance(data, str):
        return _mask_string(data)

    return data


def setup_logging(
    log_level: int = logging.DEBUG,
    console_level: int = logging.INFO,
    log_format: Optional[str] = None,
    log_dir: Optional[Path] = None
) -> Path:
    """
    Initialize application-wide logging.

    Configures:
    - Root Logger: Set to DEBUG to capture all events.
    - File Handler: Persists detailed logs to 'logs/tagforge.log' (overwritten per run).
    - Console Handler: Displays human-readable INFO logs on stderr.

    Args:
        log_level: Granularity for the persistent log file.
        console_level: Granularity for the terminal output.
        log_format: Optional custom formatting string.
        log_dir: Optional directory overriding LOG_DIR.

    Returns:
        Path: The path to the log file.
    """
    directory = Path(log_dir) if log_dir else LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / LOG_FILENAME

    formatter = logging.Formatter(log_format or DEFAULT_LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture everything, handlers will filter

    # Remove existing handlers to avoid duplicates on repeated setup
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(console_handler)

    # Third-party loggers are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    logging.info("=" * 80)
    logging.info(f"TagForge started - Log file: {log_file}")
    logging.info("=" * 80)

    return log_file


def shutdown_logging():
    """Flush and close all root handlers. Call before process exit."""
    logging.info("Shutting down logging system...")
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        handler.flush()
        handler.close()
        root_logger.removeHandler(handler)


def log_config(config_name: str, config_data: Dict[str, Any], logger: Optional[logging.Logger] = None):
    """
    Log configuration settings with automatic sensitive data masking.

    Args:
        config_name: Name of the configuration being logged
        config_data: Dictionary of configuration settings
        logger: Optional logger instance
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    masked_config = mask_sensitive_data(config_data)

    logger.info(f"Configuration: {config_name}")
    logger.debug(f"{config_name} details: {json.dumps(masked_config, indent=2, default=str)}")


def log_api_call(func: Optional[Callable] = None, *, api_name: str = "Operation"):
    """
    Decorator that logs entry, outcome and duration of a long-running call.

    Exceptions are logged with their traceback and re-raised.

    Args:
        func: The function to be instrumented.
        api_name: Context label for the log entry (e.g., 'Catalog').
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(f.__module__)
            func_name = f.__name__

            logger.info(f"{api_name} call: {func_name}")
            logger.debug(f"{api_name} {func_name} - kwargs: {mask_sensitive_data(kwargs)}")

            start_time = time.time()
            error_occurred = False

            try:
                return f(*args, **kwargs)
            except Exception as e:
                error_occurred = True
                logger.error(f"{api_name} {func_name} failed: {type(e).__name__}: {e}", exc_info=True)
                raise
            finally:
                elapsed = time.time() - start_time
                status = "FAILED" if error_occurred else "SUCCESS"
                logger.info(f"{api_name} {func_name} completed - Status: {status}, Duration: {elapsed:.3f}s")

        return wrapper

    if func is None:
        return decorator
    return decorator(func)


def log_api_request(
    logger: logging.Logger,
    method: str,
    endpoint: str,
    headers: Optional[Dict] = None,
    params: Optional[Dict] = None
):
    """
    Log an outgoing catalog request with masked sensitive data.

    Args:
        logger: Logger instance to use
        method: HTTP method (GET, POST, etc.)
        endpoint: Request URL
        headers: Request headers
        params: Query parameters
    """
    logger.debug(f"API Request: {method} {endpoint}")

    if headers:
        logger.debug(f"Request headers: {mask_sensitive_data(headers)}")

    if params:
        logger.debug(f"Request params: {mask_sensitive_data(params)}")


def log_api_response(
    logger: logging.Logger,
    status_code: int,
    response_text: Optional[str] = None,
    elapsed_time: Optional[float] = None
):
    """
    Log a catalog response with timing information.

    Args:
        logger: Logger instance to use
        status_code: HTTP status code
        response_text: Raw response body (truncated in the log)
        elapsed_time: Request duration in seconds
    """
    timing_info = f" ({elapsed_time:.3f}s)" if elapsed_time else ""
    logger.debug(f"API Response: {status_code}{timing_info}")

    if response_text:
        body = _mask_string(response_text)
        if len(body) > 500:
            body = body[:500] + "... (truncated)"
        logger.debug(f"Response body: {body}")
