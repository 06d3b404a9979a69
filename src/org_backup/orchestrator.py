from __future__ import annotations

import enum
import logging
import shutil
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from .archive import archive_directory, archive_path_for
from .config import BackupConfig
from .exceptions import AuthError, ForgeError, MalformedTimestamp, RepositoryFailure, StoreUnavailable, SweepError
from .github.api import RepositoryDescriptor, RepositoryLister, fetch_repositories
from .github.clone import RepositorySource, clone_repository
from .retention import SweepReport, sweep
from .storage import ObjectStore, artifact_key, upload_artifact
from .timecodec import parse_time, render_time

LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RunState(str, enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    BACKING_UP = "backing_up"
    SWEEPING = "sweeping"
    CLEANUP = "cleanup"
    DONE = "done"
    ABORTED = "aborted"


class Forge(RepositoryLister, Protocol):
    def authenticate(self) -> object:
        ...


@dataclass
class RepositoryResult:
    organization: str
    repository: str
    status: str
    key: Optional[str] = None
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status in ("success", "empty")


@dataclass
class RunReport:
    created_at: str
    repositories: List[RepositoryResult] = field(default_factory=list)
    organization_errors: Dict[str, str] = field(default_factory=dict)
    sweep: Optional[SweepReport] = None
    sweep_error: str = ""

    @property
    def succeeded(self) -> List[RepositoryResult]:
        return [result for result in self.repositories if result.success]

    @property
    def failed(self) -> List[RepositoryResult]:
        return [result for result in self.repositories if not result.success]


class BackupOrchestrator:
    """Runs one backup pass: fetch, mirror, archive, upload, sweep, clean up."""

    def __init__(
        self,
        config: BackupConfig,
        forge: Forge,
        store: ObjectStore,
        source: RepositorySource,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._forge = forge
        self._store = store
        self._source = source
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._scratch_root = Path(config.scratch_dir)
        self.state = RunState.IDLE

    def run(self) -> RunReport:
        created_at = render_time(self._clock())
        report = RunReport(created_at=created_at)
        run_root = self._scratch_root / created_at
        created_scratch_root = not self._scratch_root.exists()
        LOG.info("Starting a backup at %s", created_at)

        try:
            self._transition(RunState.AUTHENTICATING)
            self._forge.authenticate()

            for organization in self._config.organisations:
                self._backup_organization(organization, run_root, created_at, report)

            self._transition(RunState.SWEEPING)
            self._sweep(report)
        except Exception:
            self._transition(RunState.ABORTED)
            raise
        finally:
            if self.state is not RunState.ABORTED:
                self._transition(RunState.CLEANUP)
            self._cleanup(run_root, created_scratch_root)

        self._transition(RunState.DONE)
        LOG.info(
            "Backup %s finished: %d repositories stored, %d failed",
            created_at,
            len(report.succeeded),
            len(report.failed),
        )
        return report

    def _backup_organization(self, organization: str, run_root: Path, created_at: str, report: RunReport) -> None:
        self._transition(RunState.FETCHING)
        try:
            repositories = fetch_repositories(self._forge, organization)
        except AuthError:
            raise
        except ForgeError as exc:
            LOG.error("Cannot list repositories for %s: %s", organization, exc)
            report.organization_errors[organization] = str(exc)
            return
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error while listing repositories for %s", organization)
            report.organization_errors[organization] = str(exc) or type(exc).__name__
            return

        if not repositories:
            LOG.info("No repositories to back up in %s", organization)
            return

        self._transition(RunState.BACKING_UP)
        max_workers = self._config.max_workers or len(repositories)
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"backup-{organization}") as executor:
            futures: List[Future] = []
            for repo in repositories:
                LOG.info("Spawning backup task for %s", repo.full_name)
                futures.append(executor.submit(self._backup_repository, organization, repo, run_root, created_at))
            wait(futures)

        for future in futures:
            report.repositories.append(future.result())

    def _backup_repository(
        self, organization: str, repo: RepositoryDescriptor, run_root: Path, created_at: str
    ) -> RepositoryResult:
        clone_path = run_root / organization / repo.name
        artifact = archive_path_for(clone_path)
        result = RepositoryResult(organization=organization, repository=repo.full_name, status="failed")

        try:
            clone = clone_repository(repo, clone_path, self._source)
            try:
                archive_directory(clone.path, artifact)
            finally:
                shutil.rmtree(clone.path, ignore_errors=True)

            key = artifact_key(created_at, artifact, run_root)
            uploaded = upload_artifact(self._store, artifact, key)
            result.status = "success" if uploaded else "empty"
            result.key = key if uploaded else None
        except RepositoryFailure as exc:
            LOG.error("Backup of %s failed: %s", repo.full_name, exc)
            result.error = str(exc)
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error while backing up %s", repo.full_name)
            result.error = str(exc)
        finally:
            shutil.rmtree(clone_path, ignore_errors=True)
            artifact.unlink(missing_ok=True)
        return result

    def _sweep(self, report: RunReport) -> None:
        try:
            report.sweep = sweep(self._store, self._config.keep_last_backup_days, now=self._clock())
        except SweepError as exc:
            LOG.error("Retention sweep incomplete: %s", exc)
            report.sweep = exc.report
            report.sweep_error = str(exc)
        except StoreUnavailable as exc:
            LOG.error("Retention sweep could not list %s: %s", self._store.bucket, exc)
            report.sweep_error = str(exc)

    def _cleanup(self, run_root: Path, created_scratch_root: bool) -> None:
        """Remove this run's scratch tree and any left behind by interrupted runs.

        Only directories named like a run timestamp are touched. The scratch
        root itself is removed only when this run created it and it is empty.
        """
        LOG.info("Removing scratch directory %s", run_root)
        shutil.rmtree(run_root, ignore_errors=True)
        if not self._scratch_root.is_dir():
            return

        for entry in self._scratch_root.iterdir():
            if entry.is_dir() and not entry.is_symlink() and _is_run_directory(entry.name):
                LOG.info("Removing stale scratch directory %s", entry)
                shutil.rmtree(entry, ignore_errors=True)

        if created_scratch_root and not any(self._scratch_root.iterdir()):
            self._scratch_root.rmdir()

    def _transition(self, state: RunState) -> None:
        LOG.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state


def _is_run_directory(name: str) -> bool:
    try:
        parse_time(name)
    except MalformedTimestamp:
        return False
    return True
