"""Configuration management for the kubeprov application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


def _int_env(name: str, default: str):
    """Integer setting; a malformed value is kept as text for validate() to report."""
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        return value


class Config:
    """Application configuration with sensible defaults."""

    # Execution
    MAX_WORKERS: int = _int_env("KUBEPROV_MAX_WORKERS", "10")
    TASK_TIMEOUT: int = _int_env("KUBEPROV_TASK_TIMEOUT", "900")  # 15 minutes

    # SSH
    SSH_TIMEOUT: int = _int_env("KUBEPROV_SSH_TIMEOUT", "30")
    SSH_USER: str = os.getenv("KUBEPROV_SSH_USER", "ubuntu")
    SSH_KEY_PATH: str = os.getenv("KUBEPROV_SSH_KEY_PATH", "")  # empty: agent and ~/.ssh defaults

    # Templates shipped with the playbook (daemon.json.j2 etc.)
    TEMPLATE_DIR: str = os.getenv("KUBEPROV_TEMPLATE_DIR", "")

    # Logging
    LOG_LEVEL: str = os.getenv("KUBEPROV_LOG_LEVEL", "INFO").upper()
    LOG_FILE: str = os.getenv("KUBEPROV_LOG_FILE", "")
    LOG_FORMAT: str = os.getenv(
        "KUBEPROV_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("token", "password", "secret", "key")

    # Prefix for variable overrides taken from the environment
    VAR_ENV_PREFIX: str = "KUBEPROV_VAR_"

    @classmethod
    def validate(cls) -> None:
        """Validate numeric settings.

        Raises:
            ConfigurationError: If a setting is not a positive integer
        """
        from .modules.errors import ConfigurationError

        for env, value in (
            ("KUBEPROV_MAX_WORKERS", cls.MAX_WORKERS),
            ("KUBEPROV_TASK_TIMEOUT", cls.TASK_TIMEOUT),
            ("KUBEPROV_SSH_TIMEOUT", cls.SSH_TIMEOUT),
        ):
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{env} must be a positive integer, got {value!r}")

# Don't validate on import to allow for dynamic configuration
# Call Config.validate() explicitly when needed
