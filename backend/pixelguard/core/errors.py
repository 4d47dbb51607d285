from enum import Enum


class ErrorKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    MISSING_API_KEY = "missing_api_key"
    NOT_FOUND = "not_found"
    DECODE_FAILURE = "decode_failure"
    MASK_INVALID = "mask_invalid"
    GENERATOR_FAILURE = "generator_failure"
    GENERATOR_TIMEOUT = "generator_timeout"
    COMPOSITING_FAILURE = "compositing_failure"


class EditError(Exception):
    """Base class for every failure surfaced to the caller as kind + message."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "error": self.message}


class InvalidRequestError(EditError):
    kind = ErrorKind.INVALID_REQUEST


class MissingApiKeyError(EditError):
    kind = ErrorKind.MISSING_API_KEY


class NotFoundError(EditError):
    kind = ErrorKind.NOT_FOUND


class DecodeError(EditError):
    """Image bytes could not be decoded by Pillow nor by any conversion tool."""

    kind = ErrorKind.DECODE_FAILURE


class MaskResolutionError(EditError):
    """Mask data is corrupt or could not be resampled to the target size."""

    kind = ErrorKind.MASK_INVALID


class GeneratorError(EditError):
    kind = ErrorKind.GENERATOR_FAILURE


class GenerationTimeoutError(EditError):
    kind = ErrorKind.GENERATOR_TIMEOUT


class CompositingError(EditError):
    kind = ErrorKind.COMPOSITING_FAILURE
