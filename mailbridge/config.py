"""
Configuration loading.

Settings come from ``config.ini``; OAuth client secrets may also be given as
environment variables, optionally through a ``.env`` file.
"""

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Get the config path relative to the project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.ini"
ENV_PATH = PROJECT_ROOT / ".env"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class OAuthClients:
    google_client_id: str = ""
    google_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_authority: str = "https://login.microsoftonline.com/common"
    yahoo_client_id: str = ""
    yahoo_client_secret: str = ""


@dataclass
class Settings:
    db_path: str = "mailbridge.db"
    max_messages: int = 100
    drafts_max_messages: int = 50
    batch_size: int = 20
    timeout_seconds: Optional[float] = None
    interval_minutes: int = 15
    log_level: str = "INFO"
    oauth: OAuthClients = field(default_factory=OAuthClients)


def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """Load configuration from file."""
    if config_path is None:
        config_path = str(CONFIG_PATH)
    cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        cfg.read(config_path)
    else:
        logger.warning(f"Configuration file {config_path} not found, using defaults")
    return cfg


def _env_or(cfg: configparser.ConfigParser, option: str, env_name: str) -> str:
    return os.environ.get(env_name) or cfg.get("oauth", option, fallback="")


def load_settings(config_path: Optional[str] = None, env_path: Optional[str] = None) -> Settings:
    """
    Build Settings from ``config.ini`` and the environment.

    Args:
        config_path: Path to the ini file (default: project root config.ini)
        env_path: Path to a .env file (default: project root .env)

    Returns:
        Settings instance
    """
    env_file = Path(env_path) if env_path else ENV_PATH
    if env_file.exists():
        load_dotenv(env_file, override=False)

    cfg = load_config(config_path)

    timeout = cfg.get("sync", "timeout_seconds", fallback="").strip()

    oauth = OAuthClients(
        google_client_id=_env_or(cfg, "google_client_id", "GOOGLE_CLIENT_ID"),
        google_client_secret=_env_or(cfg, "google_client_secret", "GOOGLE_CLIENT_SECRET"),
        microsoft_client_id=_env_or(cfg, "microsoft_client_id", "MICROSOFT_CLIENT_ID"),
        microsoft_client_secret=_env_or(cfg, "microsoft_client_secret", "MICROSOFT_CLIENT_SECRET"),
        microsoft_authority=cfg.get(
            "oauth", "microsoft_authority", fallback="https://login.microsoftonline.com/common"
        ),
        yahoo_client_id=_env_or(cfg, "yahoo_client_id", "YAHOO_CLIENT_ID"),
        yahoo_client_secret=_env_or(cfg, "yahoo_client_secret", "YAHOO_CLIENT_SECRET"),
    )

    return Settings(
        db_path=cfg.get("storage", "db_path", fallback="mailbridge.db"),
        max_messages=cfg.getint("sync", "max_messages", fallback=100),
        drafts_max_messages=cfg.getint("sync", "drafts_max_messages", fallback=50),
        batch_size=cfg.getint("sync", "batch_size", fallback=20),
        timeout_seconds=float(timeout) if timeout else None,
        interval_minutes=cfg.getint("sync", "interval_minutes", fallback=15),
        log_level=cfg.get("logging", "level", fallback="INFO"),
        oauth=oauth,
    )


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging with the project format."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger().setLevel(numeric_level)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("msal").setLevel(logging.WARNING)
