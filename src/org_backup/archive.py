from __future__ import annotations

import logging
import os
import tarfile
from pathlib import Path
from typing import Iterator

from .exceptions import ArchiveFailure

LOG = logging.getLogger(__name__)


def archive_path_for(clone_path: Path) -> Path:
    return clone_path.with_name(f"{clone_path.name}.tar")


def archive_directory(source: Path, destination: Path) -> Path:
    """Write ``source`` into an uncompressed tar at ``destination``.

    Entries are named ``<source name>/<relative path>``. Each directory is
    written before the files it contains. On failure the partial archive is
    removed so it can never be uploaded.
    """
    try:
        info = source.stat()
    except OSError as exc:
        raise ArchiveFailure(source.name, f"cannot stat {source}: {exc}") from exc
    if not source.is_dir():
        raise ArchiveFailure(source.name, f"{source} is not a directory (mode {oct(info.st_mode)})")

    LOG.info("Creating archive %s", destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(destination, "w") as tar:
            for path in _walk(source):
                arcname = Path(source.name, path.relative_to(source)).as_posix()
                tar.add(str(path), arcname=arcname, recursive=False)
    except (OSError, tarfile.TarError) as exc:
        destination.unlink(missing_ok=True)
        raise ArchiveFailure(source.name, f"archiving {source} failed: {exc}") from exc
    return destination


def _walk(source: Path) -> Iterator[Path]:
    def _raise(exc: OSError) -> None:
        raise exc

    for dirpath, dirnames, filenames in os.walk(source, onerror=_raise):
        dirnames.sort()
        current = Path(dirpath)
        yield current
        # os.walk lists symlinked directories with dirnames but never descends.
        for dirname in dirnames:
            if (current / dirname).is_symlink():
                yield current / dirname
        for filename in sorted(filenames):
            yield current / filename
