"""
Configuration management for WhatsApp Archive.
Loads and validates settings from environment variables.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger(__name__)

VALID_SYNC_MODES = ('bootstrap', 'once', 'follow')


@dataclass
class DeviceIdentity:
    """
    Device identity overrides handed to the session constructor.

    Loaded once at startup; the session never reads these from globals.
    """
    os_name: str = ''
    platform: str = ''
    version: str = ''

    def is_default(self) -> bool:
        return not (self.os_name or self.platform or self.version)


class Config:
    """Configuration settings loaded from environment variables."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        # Store directory: one account identity per directory
        self.store_dir = os.getenv('STORE_DIR', '/data/wacli').strip()
        if not self.store_dir:
            raise ValueError(
                "Required environment variable 'STORE_DIR' is empty. "
                "Please set it in your .env file or environment."
            )

        # Derived paths
        self.database_path = os.getenv('DB_PATH') or os.path.join(self.store_dir, 'wacli.db')
        self.media_path = os.getenv('MEDIA_DIR') or os.path.join(self.store_dir, 'media')
        self.session_path = os.getenv('SESSION_PATH') or os.path.join(self.store_dir, 'session.db')
        self.socket_path = os.path.join(self.store_dir, 'send.sock')

        # Sync options
        self.sync_mode = os.getenv('SYNC_MODE', 'follow').strip().lower()
        self._validate_sync_mode()
        self.idle_exit_seconds = self._get_float_env('IDLE_EXIT_SECONDS', 30.0)
        self.refresh_contacts = os.getenv('REFRESH_CONTACTS', 'false').lower() == 'true'
        self.refresh_groups = os.getenv('REFRESH_GROUPS', 'false').lower() == 'true'

        # Media download options
        self.download_media = os.getenv('DOWNLOAD_MEDIA', 'false').lower() == 'true'
        self.media_workers = self._get_positive_int_env('MEDIA_WORKERS', 4)
        self.media_queue_size = self._get_positive_int_env('MEDIA_QUEUE_SIZE', 512)

        # IPC gateway
        self.send_server = os.getenv('SEND_SERVER', 'true').lower() == 'true'

        # Search index
        self.disable_fts = os.getenv('DISABLE_FTS', 'false').lower() == 'true'

        # External session collaborator, as "package.module:callable"
        self.session_factory = os.getenv('SESSION_FACTORY', '').strip()
        self.device = DeviceIdentity(
            os_name=os.getenv('DEVICE_OS', '').strip(),
            platform=os.getenv('DEVICE_PLATFORM', '').strip(),
            version=os.getenv('DEVICE_VERSION', '').strip(),
        )

        # Logging
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()
        self.log_level = getattr(logging, log_level, logging.INFO)

        # Ensure directories exist
        self._ensure_directories()

        logger.info("Configuration loaded successfully")
        logger.debug(f"Store dir: {self.store_dir}")
        logger.debug(f"Sync mode: {self.sync_mode}")
        logger.debug(f"Download media: {self.download_media}")

    def _validate_sync_mode(self):
        """Validate that the sync mode is a known option."""
        if self.sync_mode not in VALID_SYNC_MODES:
            raise ValueError(
                f"Invalid SYNC_MODE: {self.sync_mode!r}. "
                f"Valid options are: {', '.join(VALID_SYNC_MODES)}"
            )

    def _get_positive_int_env(self, key: str, default: int) -> int:
        """
        Read an integer environment variable that must be greater than zero.

        Args:
            key: Environment variable name
            default: Value used when the variable is unset or empty

        Returns:
            Parsed integer value

        Raises:
            ValueError: If the value is not an integer or is not positive
        """
        raw = os.getenv(key, '').strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"Environment variable '{key}' must be a valid int: {e}")
        if value <= 0:
            raise ValueError(f"Environment variable '{key}' must be positive, got {value}")
        return value

    def _get_float_env(self, key: str, default: float) -> float:
        """Read a float environment variable (seconds)."""
        raw = os.getenv(key, '').strip()
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError as e:
            raise ValueError(f"Environment variable '{key}' must be a number: {e}")

    def _ensure_directories(self):
        """Create necessary directories if they don't exist."""
        os.makedirs(self.store_dir, mode=0o700, exist_ok=True)
        db_dir = os.path.dirname(self.database_path)
        if db_dir:
            os.makedirs(db_dir, mode=0o700, exist_ok=True)
        if self.download_media:
            os.makedirs(self.media_path, exist_ok=True)

    def session_factory_parts(self) -> Optional[tuple]:
        """
        Split SESSION_FACTORY into (module, attribute).

        Returns:
            Tuple of module path and callable name, or None when unset

        Raises:
            ValueError: If the value is not in "module:callable" form
        """
        if not self.session_factory:
            return None
        module_name, sep, attr = self.session_factory.partition(':')
        if not sep or not module_name or not attr:
            raise ValueError(
                f"SESSION_FACTORY must look like 'package.module:callable', got {self.session_factory!r}"
            )
        return module_name, attr


def setup_logging(config: Config):
    """
    Configure logging for the application.

    Args:
        config: Configuration object with log level
    """
    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Database driver chatter is rarely useful
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)


if __name__ == '__main__':
    # Test configuration loading
    try:
        config = Config()
        setup_logging(config)
        logger.info("Configuration test successful")
        logger.info(f"Store dir: {config.store_dir}")
        logger.info(f"Sync mode: {config.sync_mode}")
        logger.info(f"Download media: {config.download_media}")
    except ValueError as e:
        print(f"Configuration error: {e}")
