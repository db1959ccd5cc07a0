"""Input validation for study create/update requests.

Everything here is pure: a failed check raises ValidationError before any
backend is contacted.
"""

from dataclasses import dataclass

from app.core.errors import ValidationError

DICOM_MEDIA_TYPE = "application/dicom"
DICOM_EXTENSION = ".dcm"


@dataclass(frozen=True)
class UploadPayload:
    """A file received from the client."""

    file_name: str
    content_type: str | None
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def _media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def classify_as_dicom(file: UploadPayload) -> bool:
    """Whether the upload is accepted as a DICOM file.

    Any one of these is enough:
    - the declared media type is ``application/dicom``
    - the name ends in ``.dcm``
    - the name ends in ``.DCM``, or any other casing of the extension
    """
    if _media_type(file.content_type) == DICOM_MEDIA_TYPE:
        return True
    name = file.file_name or ""
    if name.endswith(DICOM_EXTENSION) or name.endswith(DICOM_EXTENSION.upper()):
        return True
    return name.lower().endswith(DICOM_EXTENSION)


def validate_study_fields(name: str | None, description: str | None) -> tuple[str, str]:
    """Return the stripped name and description, or raise ValidationError."""
    missing = []
    clean_name = (name or "").strip()
    clean_description = (description or "").strip()
    if not clean_name:
        missing.append("name")
    if not clean_description:
        missing.append("description")
    if missing:
        raise ValidationError(
            f"Required fields are empty: {', '.join(missing)}", {"fields": missing}
        )
    return clean_name, clean_description


def validate_upload(file: UploadPayload | None) -> UploadPayload:
    """Check the uploaded file is present, non-empty and DICOM."""
    if file is None or not file.file_name:
        raise ValidationError("A DICOM file is required", {"fields": ["file"]})
    if file.size == 0:
        raise ValidationError(f"File {file.file_name} is empty", {"fields": ["file"]})
    if not classify_as_dicom(file):
        raise ValidationError(
            "The file must be DICOM (.dcm or application/dicom)",
            {"file_name": file.file_name, "content_type": file.content_type},
        )
    return file
