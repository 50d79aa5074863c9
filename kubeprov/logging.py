"""Logging configuration for the kubeprov package."""
import logging
import re
import sys
from typing import Any, Optional

from .config import Config


def setup_logging(debug_mode: bool = False, log_file: Optional[str] = None) -> None:
    """Configure root logging for a CLI run.

    Args:
        debug_mode: Log at DEBUG instead of the configured level
        log_file: Optional audit log file, in addition to the console
    """
    log_level = logging.DEBUG if debug_mode else getattr(logging, Config.LOG_LEVEL, logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_file or Config.LOG_FILE
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format=Config.LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('paramiko').setLevel(logging.WARNING)


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


# Flags whose value grants access to the cluster
_SECRET_FLAGS = re.compile(
    r"(--(?:token|certificate-key|discovery-token-ca-cert-hash)(?:=|\s+))\S+"
)


def redact_command(command: str) -> str:
    """Mask join tokens and certificate keys in a command line before logging it."""
    return _SECRET_FLAGS.sub(r"\1[REDACTED]", command)
