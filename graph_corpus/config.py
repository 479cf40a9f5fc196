"""Configuration helpers for the graph corpus crawler."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

CORPUS_NAME_ENV = "CORPUS_NAME"
DATA_DIR_ENV = "CORPUS_DATA_DIR"
BEARER_TOKEN_ENV = "X_BEARER_TOKEN"
CREDENTIALS_PATH_ENV = "X_CREDENTIALS_PATH"
RATE_WINDOW_ENV = "RATE_LIMIT_WINDOW_SECONDS"
PASS_PERIOD_ENV = "CRAWL_PASS_PERIOD_SECONDS"
WRITE_QUEUE_SIZE_ENV = "WRITE_QUEUE_SIZE"

DEFAULT_CORPUS_NAME = "corpus"
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_RATE_WINDOW_SECONDS = 15 * 60
DEFAULT_PASS_PERIOD_SECONDS = 2.0
DEFAULT_WRITE_QUEUE_SIZE = 100


@dataclass(frozen=True)
class CrawlConfig:
    """Runtime settings shared by the store, API client and scheduler."""

    corpus_name: str = DEFAULT_CORPUS_NAME
    data_dir: Path = DEFAULT_DATA_DIR
    rate_limit_window_seconds: int = DEFAULT_RATE_WINDOW_SECONDS
    pass_period_seconds: float = DEFAULT_PASS_PERIOD_SECONDS
    write_queue_size: int = DEFAULT_WRITE_QUEUE_SIZE
    abort_on_error: bool = True

    @property
    def db_path(self) -> Path:
        return self.data_dir / f"{self.corpus_name}.db"

    @property
    def db_url(self) -> str:
        return f"sqlite:///{self.db_path}"

    @property
    def rate_state_path(self) -> Path:
        return self.data_dir / f"{self.corpus_name}_rate_state.json"


@dataclass(frozen=True)
class APICredentials:
    """Bearer token used for application-only API access."""

    bearer_token: str

    def __repr__(self) -> str:
        return "APICredentials(bearer_token='***')"


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_positive_int(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer; received '{raw}'.") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive; received {value}.")
    return value


def _get_non_negative_float(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number; received '{raw}'.") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative; received {value}.")
    return value


def get_crawl_config(corpus_name: Optional[str] = None, *, abort_on_error: bool = True) -> CrawlConfig:
    """Resolve crawl configuration from the environment with sensible defaults.

    ``corpus_name`` overrides ``CORPUS_NAME`` (the CLI passes its positional
    argument here).
    """

    name = corpus_name or _get_env(CORPUS_NAME_ENV, DEFAULT_CORPUS_NAME)
    if not name or any(sep in name for sep in ("/", "\\")):
        raise ConfigError(f"Corpus name must be a plain file stem; received '{name}'.")
    data_dir = Path(_get_env(DATA_DIR_ENV, str(DEFAULT_DATA_DIR))).expanduser().resolve()
    return CrawlConfig(
        corpus_name=name,
        data_dir=data_dir,
        rate_limit_window_seconds=_get_positive_int(RATE_WINDOW_ENV, DEFAULT_RATE_WINDOW_SECONDS),
        pass_period_seconds=_get_non_negative_float(PASS_PERIOD_ENV, DEFAULT_PASS_PERIOD_SECONDS),
        write_queue_size=_get_positive_int(WRITE_QUEUE_SIZE_ENV, DEFAULT_WRITE_QUEUE_SIZE),
        abort_on_error=abort_on_error,
    )


def get_api_credentials(credentials_path: Optional[Path] = None) -> APICredentials:
    """Return API credentials or raise a descriptive error.

    A credentials file (explicit argument or ``X_CREDENTIALS_PATH``) wins over
    the ``X_BEARER_TOKEN`` variable. The file is JSON with a ``bearer_token``
    key.
    """

    raw_path = credentials_path or _get_env(CREDENTIALS_PATH_ENV)
    if raw_path:
        path = Path(raw_path).expanduser()
        try:
            payload = json.loads(path.read_text())
        except FileNotFoundError as exc:
            raise ConfigError(f"Credentials file not found at {path}.") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Credentials file {path} is not valid JSON: {exc}") from exc
        token = payload.get("bearer_token") if isinstance(payload, dict) else None
        if not token:
            raise ConfigError(f"Credentials file {path} has no 'bearer_token' entry.")
        return APICredentials(bearer_token=str(token))

    token = _get_env(BEARER_TOKEN_ENV)
    if not token:
        raise ConfigError(
            "X_BEARER_TOKEN is not configured. Set it in .env, export it, or pass --credentials."
        )
    return APICredentials(bearer_token=token)
