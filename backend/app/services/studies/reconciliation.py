"""Detection (and optional repair) of blob/record inconsistencies.

Failed compensations and failed record deletions leave two kinds of gap:

* orphan blobs: blobs under the study prefix that no record references
* orphan records: records whose blob no longer exists

Blobs younger than the grace period are never reported, since a create may
still be between its upload and its insert.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from app.core.errors import StorageDeleteError
from app.core.logging import get_logger
from app.services.storage.blob_store import BlobStore
from app.services.storage.metadata_store import MetadataStore

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconciliationReport:
    scanned_blobs: int = 0
    scanned_records: int = 0
    orphan_blobs: list[str] = field(default_factory=list)
    orphan_records: dict[int, str] = field(default_factory=dict)
    removed_blobs: list[str] = field(default_factory=list)
    failed_removals: dict[str, str] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return not self.orphan_blobs and not self.orphan_records

    def to_dict(self) -> dict:
        return {
            "scanned_blobs": self.scanned_blobs,
            "scanned_records": self.scanned_records,
            "orphan_blobs": self.orphan_blobs,
            "orphan_records": [
                {"study_id": study_id, "storage_path": path}
                for study_id, path in sorted(self.orphan_records.items())
            ],
            "removed_blobs": self.removed_blobs,
            "failed_removals": self.failed_removals,
        }


class StudyReconciler:
    """Compares the blob store with the metadata store."""

    def __init__(
        self,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        *,
        prefix: str = "dicom_files",
        grace_period: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.prefix = prefix.strip("/")
        self.grace_period = grace_period
        self.clock = clock

    async def scan(self, repair: bool = False) -> ReconciliationReport:
        """Find orphan blobs and orphan records.

        Args:
            repair: Remove orphan blobs. Orphan records are only reported.

        """
        referenced = await self.metadata_store.storage_paths()
        blobs = await self.blob_store.list_blobs(f"{self.prefix}/" if self.prefix else "")
        stored = {blob.path for blob in blobs}
        cutoff = self.clock() - self.grace_period

        report = ReconciliationReport(scanned_blobs=len(blobs), scanned_records=len(referenced))

        for blob in blobs:
            if blob.path not in referenced and blob.modified_at <= cutoff:
                report.orphan_blobs.append(blob.path)

        for path, study_id in referenced.items():
            if path in stored:
                continue
            # Records may point outside the scanned prefix
            if not await self.blob_store.exists(path):
                report.orphan_records[study_id] = path

        for path in report.orphan_blobs:
            logger.warning("Orphan blob found", storage_path=path)
        for study_id, path in report.orphan_records.items():
            logger.warning("Orphan record found", study_id=study_id, storage_path=path)

        if repair:
            for path in report.orphan_blobs:
                try:
                    await self.blob_store.remove(path)
                    report.removed_blobs.append(path)
                except StorageDeleteError as e:
                    logger.error("Failed to remove orphan blob", storage_path=path, error=e.message)
                    report.failed_removals[path] = e.message

        logger.info(
            "Reconciliation finished",
            scanned_blobs=report.scanned_blobs,
            scanned_records=report.scanned_records,
            orphan_blobs=len(report.orphan_blobs),
            orphan_records=len(report.orphan_records),
            removed_blobs=len(report.removed_blobs),
        )
        return report
