"""
Exceptions raised by the export pipeline.

Each class carries the HTTP status the API maps it to and whether the
work queue should retry a job that failed with it.
"""


class ExportError(Exception):
    """Base exception for all export pipeline errors."""

    status_code: int = 500
    retriable: bool = False
    message: str = "Video export failed"

    def __init__(self, message: str = None):
        self.message = message or self.__class__.message
        super().__init__(self.message)


class RetriableError(ExportError):
    """Transient failure; the queue may redeliver the job with backoff."""

    retriable = True


# --- Job Store ---

class JobNotFoundError(ExportError):
    status_code = 404
    message = "Job not found."


class InvalidTransitionError(ExportError):
    message = "Job state transition is not allowed."


# --- Work Queue ---

class QueueUnavailableError(ExportError):
    status_code = 503
    message = "Queue unavailable"


# --- Render Driver ---

class RenderHostError(ExportError):
    """The rendering host crashed or failed while capturing frames."""

    message = "Rendering host failed"


class RenderHostLaunchError(RetriableError):
    """The rendering host process could not be started."""

    message = "Could not launch rendering host"


class ShaderCompileError(RenderHostError):
    message = "Shader compilation failed on server"


class JobTimeoutError(ExportError):
    status_code = 504
    message = "Export exceeded the maximum job duration"


# --- Encoder ---

class EncoderError(ExportError):
    message = "Video encoding failed"


# --- Delivery ---

class InvalidFilenameError(ExportError):
    status_code = 400
    message = "Invalid filename"


class ArtifactNotFoundError(ExportError):
    status_code = 404
    message = "File not found or already downloaded/deleted."
