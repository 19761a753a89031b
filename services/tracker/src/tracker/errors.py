from __future__ import annotations


class TrackerError(Exception):
    """Base class for errors raised by the tracker service."""


class ValidationError(TrackerError):
    """Input fields are missing or carry values the store refuses to persist."""


class NotFoundError(TrackerError):
    """No application exists with the requested id."""


class ImportFailed(TrackerError):
    """An import-from-link run aborted before anything was written."""

    stage = "import"


class FetchError(ImportFailed):
    stage = "fetch"


class ServiceError(ImportFailed):
    stage = "extract"


class ParseError(ImportFailed):
    stage = "parse"


class ExtractionIncomplete(ImportFailed):
    stage = "validate"
