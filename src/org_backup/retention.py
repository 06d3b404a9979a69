from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .exceptions import DeleteFailure, MalformedTimestamp, SweepError
from .storage import ObjectStore, StoredObject
from .timecodec import parse_time

LOG = logging.getLogger(__name__)


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: List[str] = field(default_factory=list)
    retained: int = 0
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


def list_all_objects(store: ObjectStore) -> List[StoredObject]:
    """List the whole bucket, following the marker across truncated pages."""
    objects: List[StoredObject] = []
    marker: Optional[str] = None
    while True:
        page = store.list_objects_page(marker)
        objects.extend(page.objects)
        if not page.truncated:
            break
        if not page.last_key:
            LOG.warning("Listing of %s reported more pages but returned no keys; stopping", store.bucket)
            break
        marker = page.last_key
    return objects


def sweep(store: ObjectStore, threshold_days: int, now: Optional[datetime] = None) -> SweepReport:
    """Delete every object whose run timestamp is older than ``threshold_days``.

    Objects whose key does not start with a run timestamp are left alone.
    Raises SweepError after visiting every object if any deletion failed.
    """
    report = SweepReport()
    if threshold_days <= 0:
        LOG.info("Retention disabled; not sweeping %s", store.bucket)
        return report

    now = now or datetime.now(timezone.utc)
    max_age = timedelta(days=threshold_days)
    objects = list_all_objects(store)
    LOG.info("Found %d objects in %s for retention check", len(objects), store.bucket)

    for obj in objects:
        report.scanned += 1
        try:
            created_at = parse_time(obj.key.split("/", 1)[0])
        except MalformedTimestamp:
            LOG.debug("Skipping object without run timestamp: %s", obj.key)
            report.skipped.append(obj.key)
            continue

        if now - created_at <= max_age:
            report.retained += 1
            continue

        LOG.info("Deleting expired backup %s", obj.key)
        try:
            store.delete_object(obj.key)
        except DeleteFailure as exc:
            LOG.error("Failed to delete %s: %s", obj.key, exc)
            report.failed.append(obj.key)
            continue
        report.deleted.append(obj.key)

    LOG.info(
        "Retention sweep of %s: %d deleted, %d retained, %d skipped, %d failed",
        store.bucket,
        len(report.deleted),
        report.retained,
        len(report.skipped),
        len(report.failed),
    )
    if report.failed:
        raise SweepError(f"{len(report.failed)} expired objects could not be deleted", report)
    return report
