from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    PERMISSION_DENIED = "permission_denied"
    VIDEO_TOO_LONG = "video_too_long"
    RESOURCE_TIMEOUT = "resource_timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CLASSIFIER_ERROR = "classifier_error"


class AnalysisError(Exception):
    """Terminal failure of an analysis run.

    `redo_recording` tells the client whether the user should record again
    (a correctable input problem) or simply retry the same video.
    """

    kind: ErrorKind = ErrorKind.SERVICE_UNAVAILABLE
    default_message = "Analysis failed. Please try again."
    redo_recording = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, object]:
        return {
            "error_kind": self.kind.value,
            "error_message": self.message,
            "redo_recording": self.redo_recording,
        }


class ValidationError(AnalysisError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "The video could not be used for analysis."
    redo_recording = True


class NoFaceDetected(ValidationError):
    default_message = (
        "No face detected in the video. Please upload a video where your face is clearly visible."
    )


class PermissionDenied(AnalysisError):
    kind = ErrorKind.PERMISSION_DENIED
    default_message = "Speech recognition is not authorized."


class VideoTooLong(AnalysisError):
    kind = ErrorKind.VIDEO_TOO_LONG
    default_message = "Video duration exceeds 5 minutes."


class ResourceTimeout(AnalysisError):
    kind = ErrorKind.RESOURCE_TIMEOUT
    default_message = "Analysis took too long and was stopped."


class ServiceUnavailable(AnalysisError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    default_message = "Speech recognition is currently unavailable."


class ClassifierError(AnalysisError):
    kind = ErrorKind.CLASSIFIER_ERROR
    default_message = "Failed to process the video frames. Please try again."


# Signals raised by a transcription backend. They never leave the
# resilience layer; callers only ever see the AnalysisError kinds above.


class TranscriptionBackendError(Exception):
    pass


class TranscriptionTimeout(TranscriptionBackendError):
    pass


class TranscriptionDegraded(TranscriptionBackendError):
    """The backend handle is worn out and must be recreated before reuse."""


class TranscriptionHardError(TranscriptionBackendError):
    pass
