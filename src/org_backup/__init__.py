"""Scheduled GitHub organization backups to S3."""

from __future__ import annotations

from .config import BackupConfig, load_config  # noqa: F401
from .orchestrator import BackupOrchestrator, RunReport  # noqa: F401
