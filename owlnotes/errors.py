"""
Error taxonomy for the meeting job pipeline.

Assembly, transcription and analysis errors fail the owning job.
Persistence and notification errors are logged and never change the job
outcome.
"""


class PipelineError(Exception):
    """Base class for every error raised by owlnotes."""


class ValidationError(PipelineError):
    """Bad input from the caller (missing session id, empty chunk list...)."""


class StorageError(PipelineError):
    """Chunk store unavailable or key missing."""


class StoragePermissionError(StorageError):
    """Storage credentials lack access to the requested bucket."""


class AssemblyError(PipelineError):
    """No chunks to merge, or the merge itself failed."""


class TranscriptionError(PipelineError):
    pass


class AnalysisError(PipelineError):
    pass


class PersistenceError(PipelineError):
    pass


class NotificationError(PipelineError):
    pass


class JobNotFoundError(PipelineError):
    pass
