"""
@configuration
Application configuration and logging setup
"""

import os
import socket
import logging
from datetime import datetime

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        logging.warning(f"Ignoring non-integer value for {name}: {value!r}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        logging.warning(f"Ignoring non-numeric value for {name}: {value!r}")
        return default


def _env_list(name: str, default: str) -> list:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


# =============================================================================
# @configuration - Application Configuration Class
# =============================================================================
class AppConfig:
    """Centralized application configuration.

    Defaults come from the environment (and a ``.env`` file when present).
    Keyword overrides passed to the constructor win over both.
    """

    SECRET_KEY = os.getenv('SECRET_KEY', 'your-secret-key-change-this-in-production')
    DATA_DIR = os.getenv('DATA_DIR', 'data')
    HOST = os.getenv('HOST', '0.0.0.0')
    PORT = _env_int('PORT', 3000)
    THREADS = _env_int('THREADS', 4)
    API_KEY = os.getenv('API_KEY', '')

    MAX_CONTENT_LENGTH = _env_int('MAX_FILE_SIZE', 500 * 1024 * 1024)  # 500MB
    ALLOWED_VIDEO_TYPES = _env_list('ALLOWED_VIDEO_TYPES', 'video/mp4,video/quicktime,video/webm')
    ALLOWED_IMAGE_TYPES = _env_list('ALLOWED_IMAGE_TYPES', 'image/jpeg,image/png')
    ALLOWED_ORIGINS = _env_list('ALLOWED_ORIGINS', 'http://localhost:5173,http://localhost:3000')
    DEFAULT_DURATION = 10

    # Document store
    CACHE_TTL = _env_float('CACHE_TTL', 2.0)
    LOCK_TIMEOUT = _env_float('LOCK_TIMEOUT', 0.5)

    # Backups
    BACKUP_INTERVAL = _env_int('BACKUP_INTERVAL', 60 * 60)
    MAX_BACKUPS = _env_int('MAX_BACKUPS', 24)

    # Device pairing
    OTP_EXPIRY_SECONDS = _env_int('OTP_EXPIRY_SECONDS', 10 * 60)
    OTP_MAX_ATTEMPTS = _env_int('OTP_MAX_ATTEMPTS', 3)
    OTP_LENGTH = 4
    SMS_PROVIDER = os.getenv('SMS_PROVIDER', 'msg91').lower()
    MSG91_AUTH_KEY = os.getenv('MSG91_AUTH_KEY')
    MSG91_TEMPLATE_ID = os.getenv('MSG91_TEMPLATE_ID')

    ONLINE_WINDOW_SECONDS = _env_int('ONLINE_WINDOW_SECONDS', 5 * 60)
    ANALYTICS_LIMIT = _env_int('ANALYTICS_LIMIT', 10000)

    LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"Unknown configuration setting: {key}")
            setattr(self, key, value)

    # Paths derived from DATA_DIR
    @property
    def DB_FILE(self) -> str:
        return os.path.join(self.DATA_DIR, 'database.json')

    @property
    def BACKUP_DIR(self) -> str:
        return os.path.join(self.DATA_DIR, 'backups')

    @property
    def AUDIT_LOG(self) -> str:
        return os.path.join(self.DATA_DIR, 'audit.log')

    @property
    def CONTENT_FOLDER(self) -> str:
        return os.path.join(self.DATA_DIR, 'content')

    @property
    def LOG_DIR(self) -> str:
        return os.path.join(self.DATA_DIR, 'logs')

    @property
    def ALLOWED_MIME_TYPES(self) -> list:
        return list(self.ALLOWED_VIDEO_TYPES) + list(self.ALLOWED_IMAGE_TYPES)

    def ensure_directories(self) -> None:
        """@directory_setup - Ensure required directories exist"""
        for path in (self.DATA_DIR, self.BACKUP_DIR, self.CONTENT_FOLDER, self.LOG_DIR):
            os.makedirs(path, exist_ok=True)

    @staticmethod
    def get_server_ip() -> str:
        """@network_utils - Get server IP automatically"""
        try:
            s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            s.connect(("8.8.8.8", 80))
            ip = s.getsockname()[0]
            s.close()
            return ip
        except OSError:
            return "localhost"


def setup_logging(config: AppConfig) -> None:
    """Configure root logging with a dated log file and the console."""
    os.makedirs(config.LOG_DIR, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format=config.LOG_FORMAT,
        handlers=[
            logging.FileHandler(os.path.join(config.LOG_DIR, f'signage_{datetime.now().strftime("%Y%m%d")}.log')),
            logging.StreamHandler()
        ]
    )
