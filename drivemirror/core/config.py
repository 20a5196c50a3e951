from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

PROJECT_ROOT = Path(os.environ.get("DRIVEMIRROR_HOME") or Path.home() / ".drivemirror")
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"

PAGE_LIMIT_MIN = 1
PAGE_LIMIT_MAX = 10
PAGE_LIMIT_DEFAULT = 5


class AuthConfig(BaseModel):
    # Static bearer token wins over the token file when both are set.
    access_token: str = ""
    token_file: str = ""
    client_id: str = ""
    client_secret: str = ""
    timeout_sec: int = 30


class SyncConfig(BaseModel):
    page_limit: int = Field(default=PAGE_LIMIT_DEFAULT, ge=PAGE_LIMIT_MIN, le=PAGE_LIMIT_MAX)
    change_page_size: int = Field(default=1000, ge=1, le=1000)
    preview_node_limit: int = Field(default=5000, ge=1)
    # 0 means disabled; positive values are seconds between scheduled polls.
    poll_interval_sec: int = Field(default=0, ge=0, le=86400)


def _expand_path(value: str) -> str:
    raw = (value or "").strip()
    return str(Path(raw).expanduser()) if raw else raw


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")

    @field_validator("file")
    @classmethod
    def expand_file(cls, value: str) -> str:
        return _expand_path(value)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "service.db")

    @field_validator("path")
    @classmethod
    def expand_db_path(cls, value: str) -> str:
        return _expand_path(value)


class AppConfig(BaseModel):
    auth: AuthConfig = Field(default_factory=AuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    web_bind_host: str = "127.0.0.1"
    web_port: int = 8765


def clamp_page_limit(value: object, default: int = PAGE_LIMIT_DEFAULT) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        raw = int(value)
    except (TypeError, ValueError):
        return default
    return min(max(raw, PAGE_LIMIT_MIN), PAGE_LIMIT_MAX)


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
