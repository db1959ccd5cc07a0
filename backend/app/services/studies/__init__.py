"""Study lifecycle, catalog and reconciliation services."""

from app.services.studies.catalog import StudyCatalogQuery, TimeFilter
from app.services.studies.lifecycle import StudyLifecycleCoordinator, UpdateResult
from app.services.studies.path_namer import PathNamer
from app.services.studies.reconciliation import ReconciliationReport, StudyReconciler
from app.services.studies.validation import UploadPayload, classify_as_dicom

__all__ = [
    "StudyCatalogQuery",
    "TimeFilter",
    "StudyLifecycleCoordinator",
    "UpdateResult",
    "PathNamer",
    "ReconciliationReport",
    "StudyReconciler",
    "UploadPayload",
    "classify_as_dicom",
]
