"""
Configuration loading.
Reads config.ini (path overridable with MAILHUB_CONFIG) and a .env file for
secrets. Environment variables win over file values for secrets.
"""

import os
import logging
import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .email.crypto import CredentialCipher, KEY_ENV_VAR

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "MAILHUB_CONFIG"
DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class Settings:
    """Application settings, built once at startup."""
    db_path: str = "mailhub.db"
    provider_timeout: float = 30.0
    default_max_results: int = 50
    default_urgent_limit: int = 20
    max_results_cap: int = 500
    gmail_client_id: Optional[str] = None
    gmail_client_secret: Optional[str] = None
    gmail_token_uri: str = DEFAULT_TOKEN_URI
    imap_default_port: int = 993
    imap_connect_timeout: float = 20.0
    log_level: str = "INFO"
    encryption_key: Optional[str] = None

    def cipher(self) -> CredentialCipher:
        """Credential cipher for the configured key."""
        if not self.encryption_key:
            raise RuntimeError(
                f"{KEY_ENV_VAR} is not set. Generate one with: mailhub generate-key"
            )
        return CredentialCipher(self.encryption_key)


def load_config(config_path: Optional[str] = None) -> configparser.ConfigParser:
    """Load configuration from file. A missing file yields an empty config."""
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    cfg = configparser.ConfigParser()
    if os.path.exists(config_path):
        cfg.read(config_path)
        logger.debug(f"Loaded configuration from {config_path}")
    return cfg


def load_settings(config_path: Optional[str] = None, env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from config.ini and the environment.

    Args:
        config_path: INI file (defaults to $MAILHUB_CONFIG or ./config.ini)
        env_file: .env file to load (defaults to ./.env when present)
    """
    env_path = Path(env_file) if env_file else Path.cwd() / '.env'
    if env_path.exists():
        load_dotenv(env_path)

    cfg = load_config(config_path)

    return Settings(
        db_path=cfg.get("storage", "db_path", fallback="mailhub.db"),
        provider_timeout=cfg.getfloat("search", "provider_timeout", fallback=30.0),
        default_max_results=cfg.getint("search", "default_max_results", fallback=50),
        default_urgent_limit=cfg.getint("search", "default_urgent_limit", fallback=20),
        max_results_cap=cfg.getint("search", "max_results_cap", fallback=500),
        gmail_client_id=os.environ.get("GOOGLE_CLIENT_ID") or cfg.get("gmail", "client_id", fallback=None) or None,
        gmail_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET") or cfg.get("gmail", "client_secret", fallback=None) or None,
        gmail_token_uri=cfg.get("gmail", "token_uri", fallback=DEFAULT_TOKEN_URI),
        imap_default_port=cfg.getint("imap", "default_port", fallback=993),
        imap_connect_timeout=cfg.getfloat("imap", "connect_timeout", fallback=20.0),
        log_level=cfg.get("system", "log_level", fallback="INFO").upper(),
        encryption_key=os.environ.get(KEY_ENV_VAR) or None,
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
