from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_API_URL = "https://api.github.com"


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid or incomplete."""


class SecretRef(BaseModel):
    """Reference to a secret stored in an environment variable or file."""

    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")

    def resolve(self) -> Optional[str]:
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file).expanduser()
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
        return None


# --- GitHub ------------------------------------------------------------------


class GitHubConfig(BaseModel):
    username: SecretRef = SecretRef(env="GITHUB_USERNAME")
    password: SecretRef = SecretRef(env="GITHUB_PASSWORD")
    api_url: str = DEFAULT_API_URL


# --- Storage -----------------------------------------------------------------


class StorageConfig(BaseModel):
    bucket: SecretRef = SecretRef(env="S3_BUCKET")
    region: SecretRef = SecretRef(env="AWS_REGION")
    endpoint_url: Optional[str] = None
    access_key: SecretRef = SecretRef(env="AWS_ACCESS_KEY_ID")
    secret_key: SecretRef = SecretRef(env="AWS_SECRET_ACCESS_KEY")


# --- Scheduler ---------------------------------------------------------------


class SchedulerConfig(BaseModel):
    cron: str
    timezone: str = "UTC"
    run_on_startup: bool = True

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            croniter(value, datetime.now())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value


# --- Root --------------------------------------------------------------------


class BackupConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    organisations: List[str] = Field(alias="organizations")
    keep_last_backup_days: int = Field(default=30, ge=0)
    scratch_dir: Path = Path("repositories")
    max_workers: Optional[int] = Field(default=None, ge=1)
    github: GitHubConfig = GitHubConfig()
    storage: StorageConfig = StorageConfig()
    scheduler: Optional[SchedulerConfig] = None

    @field_validator("organisations")
    @classmethod
    def _clean_organisations(cls, value: List[str]) -> List[str]:
        cleaned = [org.strip() for org in value if org and org.strip()]
        if not cleaned:
            raise ValueError("At least one organisation must be configured.")
        return cleaned

    @field_validator("scratch_dir")
    @classmethod
    def _expand_scratch_dir(cls, value: Path) -> Path:
        return value.expanduser()


@dataclass(frozen=True)
class RunCredentials:
    """Secrets resolved once per run and threaded through to the collaborators."""

    bucket: str
    username: str
    password: str
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None


def load_config(path: Path) -> BackupConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot read configuration {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration {path} must be a mapping")

    try:
        return BackupConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


def resolve_credentials(config: BackupConfig) -> RunCredentials:
    """Resolve every secret, failing before any work starts if one is empty."""
    values = {
        "bucket": config.storage.bucket.resolve(),
        "username": config.github.username.resolve(),
        "password": config.github.password.resolve(),
    }
    missing = sorted(name for name, value in values.items() if not value)
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    return RunCredentials(
        bucket=values["bucket"],
        username=values["username"],
        password=values["password"],
        region=config.storage.region.resolve(),
        access_key=config.storage.access_key.resolve(),
        secret_key=config.storage.secret_key.resolve(),
    )


def describe(config: BackupConfig) -> List[str]:
    """Printable summary of the configuration with secrets left out."""
    return [
        f"S3 bucket: {config.storage.bucket.resolve() or '<unset>'}",
        f"AWS region: {config.storage.region.resolve() or '<default>'}",
        f"S3 endpoint: {config.storage.endpoint_url or '<default>'}",
        f"GitHub user: {config.github.username.resolve() or '<unset>'}",
        f"GitHub API: {config.github.api_url}",
        f"Organisations: {', '.join(config.organisations)}",
        f"Keep last backup days: {config.keep_last_backup_days}",
        f"Scratch directory: {config.scratch_dir}",
        f"Max workers: {config.max_workers or 'unbounded'}",
    ]
