"""
Structured logging configuration for the DICOM study catalog.

Provides consistent, structured logging with support for different
output formats and log levels based on environment.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add application context to log entries."""
    event_dict["app"] = "dicom-study-catalog"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    log_file: str | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: If True, output logs as JSON (for production)
        log_file: Optional file path for log output
    """
    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # Shared processors for all outputs
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_app_context,
    ]

    if json_logs:
        # JSON output for production
        processors: list[Processor] = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Human-readable output for development
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure file handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        if json_logs:
            file_handler.setFormatter(logging.Formatter("%(message)s"))
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog BoundLogger
    """
    return structlog.get_logger(name)


class AuditLogger:
    """
    Specialized logger for the study audit trail.

    Records who touched which study and every window in which the blob
    store and the metadata store disagree.
    """

    def __init__(self):
        """Initialize audit logger."""
        self.logger = get_logger("audit")

    def log_access(
        self,
        user_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        success: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log a resource access event.

        Args:
            user_id: ID of the user accessing the resource
            resource_type: Type of resource (e.g., "study")
            resource_id: ID of the accessed resource
            action: Action performed (e.g., "CREATE", "DELETE")
            success: Whether the action succeeded
            details: Additional details
        """
        log_method = self.logger.info if success else self.logger.warning
        log_method(
            "resource_access",
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            success=success,
            details=details or {},
            audit_type="access",
        )

    def log_consistency_gap(
        self,
        gap_kind: str,
        storage_path: str,
        study_id: int | None = None,
        operation: str | None = None,
        error: str | None = None,
    ) -> None:
        """
        Log a blob/record inconsistency left behind by a failed operation.

        Args:
            gap_kind: "orphan_blob" (blob with no record) or
                "orphan_record" (record whose blob is gone)
            storage_path: Blob path involved
            study_id: Record ID involved, when one exists
            operation: Lifecycle operation that left the gap
            error: Backend error that caused it
        """
        self.logger.error(
            "consistency_gap",
            gap_kind=gap_kind,
            storage_path=storage_path,
            study_id=study_id,
            operation=operation,
            error=error,
            audit_type="consistency",
        )


# Global audit logger instance
audit_logger = AuditLogger()
