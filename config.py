#!/usr/bin/env python3
"""
Configuration management for the Feed Prefetcher.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # Keep aiohttp's own chatter out of the prefetch logs unless debugging
    aiohttp_level = level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("aiohttp", "aiohttp.client", "aiohttp.internal"):
        getLogger(name).setLevel(aiohttp_level)

    return getLogger("FeedPrefetcher")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "cache", "workqueue")

    Returns:
        A logger instance named "FeedPrefetcher.{name}"
    """
    return getLogger(f"FeedPrefetcher.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the Feed Prefetcher.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Example secrets.yaml format:
    ```yaml
    API_KEY: "your-api-key"
    PROXY_URL: "http://proxy.internal:3128"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _parse_expire_time(self, env_var: str) -> Optional[datetime]:
        """Parse an ISO-8601 absolute cache cutoff; naive values are taken as UTC."""
        raw = environ.get(env_var, "").strip()
        if not raw:
            return None
        try:
            value = datetime.fromisoformat(raw)
        except ValueError:
            logger.warning(f"Invalid {env_var} value '{raw}', falling back to CACHE_TTL_SECONDS")
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Remote API
        self.API_BASE_URL = environ.get("API_BASE_URL", "https://ibl.api.bbci.co.uk/ibl/v1/")
        if not self.API_BASE_URL.endswith("/"):
            self.API_BASE_URL += "/"
        self.API_KEY = environ.get("API_KEY", "")
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedPrefetcher/1.0)")
        proxy = environ.get("PROXY_URL", "").strip()
        self.PROXY_URL = proxy or None

        # Retry/backoff configuration (delays double as per-attempt timeouts)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 3, 1)
        self.RETRY_FACTOR = self._validate_positive_float("RETRY_FACTOR", 1.5, 1.0)
        self.RETRY_MIN_TIMEOUT = self._validate_positive_float("RETRY_MIN_TIMEOUT", 2.0, 0.1)
        self.RETRY_MAX_TIMEOUT = self._validate_positive_float("RETRY_MAX_TIMEOUT", 5.0, 0.1)
        if self.RETRY_MAX_TIMEOUT < self.RETRY_MIN_TIMEOUT:
            logger.warning("RETRY_MAX_TIMEOUT is below RETRY_MIN_TIMEOUT; raising it to match")
            self.RETRY_MAX_TIMEOUT = self.RETRY_MIN_TIMEOUT

        # Work queue configuration; 100 matches aiohttp's default connector limit
        self.QUEUE_CONCURRENCY = self._validate_positive_int("QUEUE_CONCURRENCY", 100, 1)
        self.QUEUE_TIMEOUT = self._validate_positive_float("QUEUE_TIMEOUT", 60.0, 1.0)
        self.QUEUE_CANCEL_ON_TIMEOUT = environ.get("QUEUE_CANCEL_ON_TIMEOUT", "true").lower() != "false"

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        # DATA_PATH: base folder for generated artifacts (defaults to repo root)
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.CACHE_DIR = environ.get("CACHE_DIR", path.join(self.DATA_PATH, "cache"))
        self.PREFETCH_OUTPUT = environ.get("PREFETCH_OUTPUT") or None

        # Cache expiry: an absolute cutoff wins over the rolling TTL
        self.CACHE_TTL_SECONDS = self._validate_positive_int("CACHE_TTL_SECONDS", 3600, 0)
        self.CACHE_EXPIRE_TIME = self._parse_expire_time("CACHE_EXPIRE_TIME")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        API_KEY: "your-api-key"

        # Backward-compatible: nested under `environment`
        # environment:
        #   API_KEY: "your-api-key"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
            return

        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "api_base_url": self.API_BASE_URL,
            "has_api_key": bool(self.API_KEY),
            "proxy_configured": bool(self.PROXY_URL),
            "cache_dir": self.CACHE_DIR,
            "cache_ttl_seconds": self.CACHE_TTL_SECONDS,
            "cache_expire_time": self.CACHE_EXPIRE_TIME.isoformat() if self.CACHE_EXPIRE_TIME else None,
            "max_retries": self.MAX_RETRIES,
            "retry_timeouts": (self.RETRY_MIN_TIMEOUT, self.RETRY_MAX_TIMEOUT, self.RETRY_FACTOR),
            "queue_concurrency": self.QUEUE_CONCURRENCY,
            "queue_timeout": self.QUEUE_TIMEOUT,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
