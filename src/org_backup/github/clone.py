from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import quote, urlsplit, urlunsplit

from org_backup.exceptions import CloneFailure
from org_backup.github.api import RepositoryDescriptor

LOG = logging.getLogger(__name__)

REDACTED = "***"


@dataclass(frozen=True)
class LocalClone:
    repository: str
    path: Path


class RepositorySource(Protocol):
    def clone(self, url: str, destination: Path) -> None:
        ...

    def strip_credentials(self, repo_path: Path, url: str) -> None:
        ...


class GitCliSource:
    """Repository source backed by the ``git`` binary."""

    def __init__(self, username: str, password: str, git_binary: str = "git") -> None:
        self._username = username
        self._password = password
        self._git = git_binary

    def clone(self, url: str, destination: Path) -> None:
        cmd = [self._git, "clone", "--mirror", self._authenticated_url(url), str(destination)]
        LOG.info("Cloning %s to %s", url, destination)
        self._run(cmd, f"git clone --mirror {url}")

    def strip_credentials(self, repo_path: Path, url: str) -> None:
        try:
            self._run([self._git, "remote", "remove", "origin"], "git remote remove origin", cwd=repo_path)
            return
        except subprocess.CalledProcessError:
            LOG.warning("Could not remove origin from %s; resetting its URL instead", repo_path)
        self._run(
            [self._git, "config", "remote.origin.url", _strip_userinfo(url)],
            "git config remote.origin.url",
            cwd=repo_path,
        )

    def _authenticated_url(self, url: str) -> str:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https"):
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        userinfo = f"{quote(self._username, safe='')}:{quote(self._password, safe='')}"
        return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))

    def _run(self, cmd: List[str], description: str, cwd: Optional[Path] = None) -> None:
        try:
            subprocess.run(cmd, cwd=cwd, check=True, capture_output=True)
        except subprocess.CalledProcessError as exc:
            stderr = self._redact(exc.stderr.decode("utf-8", "ignore").strip())
            LOG.error("%s failed (exit %s): %s", description, exc.returncode, stderr)
            # The command line carries the password; drop it from the exception.
            raise subprocess.CalledProcessError(exc.returncode, description, stderr=stderr) from None

    def _redact(self, text: str) -> str:
        for secret in {self._password, quote(self._password, safe="")}:
            if secret:
                text = text.replace(secret, REDACTED)
        return text


def clone_repository(
    descriptor: RepositoryDescriptor,
    destination: Path,
    source: RepositorySource,
) -> LocalClone:
    """Mirror-clone a repository and remove its credential-bearing remote.

    Nothing is left at ``destination`` when this raises.
    """
    try:
        if destination.exists():
            shutil.rmtree(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        source.clone(descriptor.clone_url, destination)
        source.strip_credentials(destination, descriptor.clone_url)
    except Exception as exc:  # noqa: BLE001
        shutil.rmtree(destination, ignore_errors=True)
        if isinstance(exc, CloneFailure):
            raise
        raise CloneFailure(descriptor.full_name, f"clone failed: {exc}") from exc

    if not destination.is_dir():
        raise CloneFailure(descriptor.full_name, f"clone produced no directory at {destination}")
    return LocalClone(repository=descriptor.full_name, path=destination)


def _strip_userinfo(url: str) -> str:
    parts = urlsplit(url)
    if not parts.username and not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))
