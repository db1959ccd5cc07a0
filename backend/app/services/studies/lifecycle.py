"""Study record lifecycle: create, update and delete across two stores.

The blob store and the metadata store fail independently and share no
transaction, so every operation is an ordered sequence of steps (a saga).
Steps that leave something behind register a compensation; when a later
step fails the compensations run in reverse order and the original error
is re-raised. Work that must only happen once the new state is committed
(removing a superseded blob) runs after the metadata write succeeds.

Remaining consistency gaps are never silent: they are written to the audit
log and counted in ``dicom_catalog_consistency_gaps_total``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from prometheus_client import Counter

from app.core.errors import (
    BackendTimeoutError,
    NotFoundError,
    StudyCatalogError,
    ValidationError,
)
from app.core.logging import audit_logger, get_logger
from app.services.storage.blob_store import BlobStore
from app.services.storage.metadata_store import MetadataStore
from app.services.storage.records import StudyRecord
from app.services.studies.path_namer import PathNamer
from app.services.studies.validation import (
    UploadPayload,
    validate_study_fields,
    validate_upload,
)

logger = get_logger(__name__)

T = TypeVar("T")

CONSISTENCY_GAPS = Counter(
    "dicom_catalog_consistency_gaps_total",
    "Blob/record inconsistencies left behind by failed operations",
    ["kind"],
)


def local_now() -> datetime:
    """Current local time, timezone-aware."""
    return datetime.now().astimezone()


@dataclass
class Compensation:
    """Undo action for a completed saga step."""

    description: str
    storage_path: str
    action: Callable[[], Awaitable[None]]


@dataclass
class Saga:
    """Ordered list of compensations for one lifecycle operation."""

    operation: str
    compensations: list[Compensation] = field(default_factory=list)

    def on_failure(
        self, description: str, storage_path: str, action: Callable[[], Awaitable[None]]
    ) -> None:
        self.compensations.append(Compensation(description, storage_path, action))

    async def compensate(self) -> list[tuple[Compensation, StudyCatalogError]]:
        """Run compensations newest first; return the ones that failed."""
        failures = []
        for compensation in reversed(self.compensations):
            try:
                await compensation.action()
                logger.info(
                    "Compensation applied",
                    operation=self.operation,
                    step=compensation.description,
                    storage_path=compensation.storage_path,
                )
            except StudyCatalogError as e:
                logger.error(
                    "Compensation failed",
                    operation=self.operation,
                    step=compensation.description,
                    storage_path=compensation.storage_path,
                    error=e.message,
                )
                failures.append((compensation, e))
        self.compensations.clear()
        return failures


@dataclass(frozen=True)
class UpdateResult:
    """Updated record plus non-fatal problems met on the way."""

    record: StudyRecord
    warnings: tuple[str, ...] = ()


class StudyLifecycleCoordinator:
    """Sole writer of study records and their blobs."""

    def __init__(
        self,
        blob_store: BlobStore,
        metadata_store: MetadataStore,
        path_namer: PathNamer,
        *,
        call_timeout: float = 10.0,
        clock: Callable[[], datetime] = local_now,
        on_change: Callable[[], None] | None = None,
    ):
        """Initialize the coordinator.

        Args:
            blob_store: Where DICOM binaries live
            metadata_store: Where study records live
            path_namer: Derives blob paths for new uploads
            call_timeout: Seconds allowed for each backend call
            clock: Source of "now" for path derivation
            on_change: Called after every successful mutation
                (the catalog uses it to drop cached listings)

        """
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.path_namer = path_namer
        self.call_timeout = call_timeout
        self.clock = clock
        self.on_change = on_change

    async def _call(self, step: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except BackendTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            logger.error("Backend call timed out", step=step, timeout=self.call_timeout)
            raise BackendTimeoutError(
                f"{step} did not complete within {self.call_timeout}s", {"step": step}
            ) from e

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _record_gap(
        self,
        gap_kind: str,
        storage_path: str,
        operation: str,
        error: StudyCatalogError,
        study_id: int | None = None,
    ) -> None:
        CONSISTENCY_GAPS.labels(kind=gap_kind).inc()
        audit_logger.log_consistency_gap(
            gap_kind=gap_kind,
            storage_path=storage_path,
            study_id=study_id,
            operation=operation,
            error=error.message,
        )

    async def _roll_back(
        self, saga: Saga, error: StudyCatalogError, study_id: int | None = None
    ) -> None:
        logger.warning(
            "Operation failed, rolling back",
            operation=saga.operation,
            study_id=study_id,
            error=error.message,
            error_kind=error.kind,
        )
        for compensation, failure in await saga.compensate():
            self._record_gap(
                "orphan_blob", compensation.storage_path, saga.operation, failure, study_id
            )

    async def _settle_timeout(
        self,
        saga: Saga,
        error: BackendTimeoutError,
        lookup: Awaitable[StudyRecord | None],
        study_id: int | None = None,
    ) -> StudyRecord:
        """Decide a timed-out metadata write by reading it back.

        The write may have committed after the wait was abandoned. It is
        only compensated when the read-back shows it did not land; when the
        read-back itself fails the blob is kept and the gap is recorded.
        """
        try:
            record = await lookup
        except StudyCatalogError as e:
            logger.error(
                "Could not confirm timed-out write",
                operation=saga.operation,
                study_id=study_id,
                error=e.message,
            )
            for compensation in saga.compensations:
                self._record_gap(
                    "unconfirmed_write", compensation.storage_path, saga.operation, e, study_id
                )
            saga.compensations.clear()
            raise error from e

        if record is None:
            await self._roll_back(saga, error, study_id)
            raise error

        logger.warning(
            "Write committed after timeout",
            operation=saga.operation,
            study_id=record.id,
            storage_path=record.storage_path,
        )
        saga.compensations.clear()
        return record

    async def _inserted_record(self, storage_path: str) -> StudyRecord | None:
        paths = await self._call("metadata_storage_paths", self.metadata_store.storage_paths())
        study_id = paths.get(storage_path)
        if study_id is None:
            return None
        return await self._call("metadata_get", self.metadata_store.get(study_id))

    async def _updated_record(self, study_id: int, new_path: str) -> StudyRecord | None:
        record = await self._call("metadata_get", self.metadata_store.get(study_id))
        if record is None or record.storage_path != new_path:
            return None
        return record

    def _remove_blob_action(self, storage_path: str) -> Callable[[], Awaitable[None]]:
        async def action() -> None:
            await self._call("blob_remove", self.blob_store.remove(storage_path))

        return action

    async def _load(self, study_id: int) -> StudyRecord:
        record = await self._call("metadata_get", self.metadata_store.get(study_id))
        if record is None:
            raise NotFoundError(f"Study not found: {study_id}", {"study_id": study_id})
        return record

    async def _upload(self, saga: Saga, file: UploadPayload, name: str) -> str:
        storage_path = self.path_namer.derive(name, file.file_name, self.clock())
        await self._call(
            "blob_upload", self.blob_store.upload(storage_path, file.data, overwrite=False)
        )
        saga.on_failure("remove uploaded blob", storage_path, self._remove_blob_action(storage_path))
        return storage_path

    async def create_study(
        self, name: str | None, description: str | None, file: UploadPayload | None
    ) -> StudyRecord:
        """Upload the file, then insert its record.

        Raises:
            ValidationError: bad input, nothing was stored
            StorageWriteError: upload failed, nothing was stored
            MetadataWriteError: insert failed, the uploaded blob was removed
            BackendTimeoutError: a backend call timed out; a timed-out insert
                found committed on read-back is returned as a success

        """
        name, description = validate_study_fields(name, description)
        file = validate_upload(file)

        saga = Saga("create")
        storage_path = await self._upload(saga, file, name)

        try:
            record = await self._call(
                "metadata_insert",
                self.metadata_store.insert(
                    name=name,
                    description=description,
                    storage_path=storage_path,
                    file_name=file.file_name,
                ),
            )
        except BackendTimeoutError as e:
            record = await self._settle_timeout(saga, e, self._inserted_record(storage_path))
        except StudyCatalogError as e:
            await self._roll_back(saga, e)
            raise

        logger.info(
            "Study created",
            study_id=record.id,
            storage_path=storage_path,
            size=file.size,
        )
        self._changed()
        return record

    async def update_study(
        self,
        study_id: int,
        name: str | None,
        description: str | None,
        replacement: UploadPayload | None = None,
        previous_storage_path: str | None = None,
    ) -> UpdateResult:
        """Update metadata and optionally replace the binary.

        With a replacement the new blob is uploaded first, the record is
        switched over to it, and only then is the old blob removed. Failing
        to remove the old blob is reported as a warning.

        Args:
            study_id: Record to update
            name: New display name
            description: New description
            replacement: Optional new DICOM file
            previous_storage_path: Path the caller saw when editing began;
                must match the record's current path when given

        """
        name, description = validate_study_fields(name, description)
        if replacement is not None:
            replacement = validate_upload(replacement)

        current = await self._load(study_id)
        if previous_storage_path and previous_storage_path != current.storage_path:
            raise ValidationError(
                f"Storage path does not belong to study {study_id}",
                {
                    "study_id": study_id,
                    "storage_path": previous_storage_path,
                    "current_storage_path": current.storage_path,
                },
            )

        if replacement is None:
            record = await self._call(
                "metadata_update",
                self.metadata_store.update(study_id, name=name, description=description),
            )
            logger.info("Study metadata updated", study_id=study_id)
            self._changed()
            return UpdateResult(record=record)

        old_path = current.storage_path
        saga = Saga("update")
        new_path = await self._upload(saga, replacement, name)

        try:
            record = await self._call(
                "metadata_update",
                self.metadata_store.update(
                    study_id,
                    name=name,
                    description=description,
                    storage_path=new_path,
                    file_name=replacement.file_name,
                ),
            )
        except BackendTimeoutError as e:
            record = await self._settle_timeout(
                saga, e, self._updated_record(study_id, new_path), study_id
            )
        except StudyCatalogError as e:
            await self._roll_back(saga, e, study_id)
            raise

        warnings: list[str] = []
        if old_path != new_path:
            try:
                await self._call("blob_remove", self.blob_store.remove(old_path))
            except StudyCatalogError as e:
                logger.warning(
                    "Failed to remove previous blob",
                    study_id=study_id,
                    storage_path=old_path,
                    error=e.message,
                )
                self._record_gap("orphan_blob", old_path, "update", e, study_id)
                warnings.append(f"Previous file could not be removed ({old_path}): {e.message}")

        logger.info(
            "Study file replaced",
            study_id=study_id,
            old_storage_path=old_path,
            storage_path=new_path,
        )
        self._changed()
        return UpdateResult(record=record, warnings=tuple(warnings))

    async def delete_study(self, study_id: int, storage_path: str | None = None) -> StudyRecord:
        """Remove the blob, then the record.

        The record is kept whenever the blob removal fails. If the record
        deletion fails after the blob is gone, the gap is logged.

        Args:
            study_id: Record to delete
            storage_path: Blob the caller believes belongs to the record;
                defaults to the record's current path

        Returns:
            The record as it was before deletion

        """
        current = await self._load(study_id)
        path = storage_path or current.storage_path

        if path != current.storage_path and await self._call(
            "blob_exists", self.blob_store.exists(path)
        ):
            raise ValidationError(
                f"Storage path does not belong to study {study_id}",
                {"study_id": study_id, "storage_path": path},
            )

        await self._call("blob_remove", self.blob_store.remove(path))

        try:
            await self._call("metadata_delete", self.metadata_store.delete(study_id))
        except StudyCatalogError as e:
            logger.error(
                "Study record left without blob",
                study_id=study_id,
                storage_path=path,
                error=e.message,
            )
            self._record_gap("orphan_record", path, "delete", e, study_id)
            raise

        logger.info("Study deleted", study_id=study_id, storage_path=path)
        self._changed()
        return current
