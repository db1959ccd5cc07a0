"""
DICOM Study Catalog Backend

This module provides the backend services for cataloguing DICOM imaging
studies: uploading a file with its metadata, browsing and searching the
catalog, editing or replacing a study, and deleting it, while keeping the
blob store and the metadata store consistent.
"""

__version__ = "1.0.0"
__author__ = "DICOM Study Catalog Team"
