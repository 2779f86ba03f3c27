"""Error taxonomy shared by the adapters and the generation pipeline.

Expected failures (``ApiError``, ``NetworkError``,
``CapabilityNotImplementedError``) are recorded on the failed message only.
Anything else is treated as a programming or environment fault and is
additionally reported to the error tracker.
"""

from typing import Optional


class BaseError(Exception):
    """Base class for errors that carry a numeric code."""

    code = 1

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class ApiError(BaseError):
    """The provider answered, but with an error or a malformed payload."""

    code = 10001


class NetworkError(BaseError):
    """The provider could not be reached."""

    code = 10002

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class CapabilityNotImplementedError(BaseError):
    """The selected provider does not support the requested operation."""

    code = 10003


EXPECTED_ERRORS = (ApiError, NetworkError, CapabilityNotImplementedError)
