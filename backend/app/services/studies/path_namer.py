"""Blob path derivation for uploaded studies."""

import re
from datetime import datetime, timezone

_WHITESPACE = re.compile(r"\s")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

NAME_SEPARATOR = "_"


def sanitize_name(name: str) -> str:
    """Replace every whitespace character with the separator.

    Nothing else is touched: a ``/`` in a name yields an extra path level.
    """
    return _WHITESPACE.sub(NAME_SEPARATOR, name)


def epoch_millis(moment: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are read as local time."""
    # Integer arithmetic, float timestamps can round down a millisecond
    delta = moment.astimezone(timezone.utc) - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


class PathNamer:
    """Derives ``<prefix>/<sanitized-name>-<epoch-millis>/<file-name>`` paths.

    Two derivations for the same name inside the same millisecond collide;
    the blob store's non-overwriting upload turns that into a write error.
    """

    def __init__(self, prefix: str = "dicom_files"):
        self.prefix = prefix.strip("/")

    def derive(self, name: str, original_file_name: str, now: datetime) -> str:
        return f"{self.prefix}/{sanitize_name(name)}-{epoch_millis(now)}/{original_file_name}"
