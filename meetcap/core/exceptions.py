"""
meetcap exception hierarchy.

All capture errors inherit from MeetCapError so callers can handle the
whole family in one place and surface ``detail`` / ``code`` to the user.
"""

from datetime import UTC, datetime


class MeetCapError(Exception):
    """Base exception for all meetcap errors."""

    def __init__(
        self,
        detail: str = "An unexpected capture error occurred",
        code: str = "MEETCAP_ERROR",
    ) -> None:
        self.detail = detail
        self.code = code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)


class ConfigurationError(MeetCapError):
    """Raised when a capture config requests no source at all."""

    def __init__(self, detail: str = "At least one audio source must be requested") -> None:
        super().__init__(detail=detail, code="CONFIGURATION_ERROR")


class SourceUnavailableError(MeetCapError):
    """Raised when a requested audio source could not be acquired."""

    def __init__(self, kind: str, reason: str = "source could not be acquired") -> None:
        self.kind = kind
        self.reason = reason
        super().__init__(
            detail=f"{kind} unavailable: {reason}",
            code="SOURCE_UNAVAILABLE",
        )


class EncodingUnsupportedError(MeetCapError):
    """Raised when none of the attempted output encodings can be used."""

    def __init__(self, attempted: list[str] | None = None) -> None:
        self.attempted = list(attempted or [])
        tried = ", ".join(self.attempted) or "none"
        super().__init__(
            detail=f"No supported audio encoding (tried: {tried})",
            code="ENCODING_UNSUPPORTED",
        )


class FinalizationError(MeetCapError):
    """Raised when the encoder fails to produce a complete recording on stop."""

    def __init__(self, detail: str = "Failed to finalize recording") -> None:
        super().__init__(detail=detail, code="FINALIZATION_ERROR")


class RecordingAlreadyActiveError(MeetCapError):
    """Raised when trying to start a recording while one is already active."""

    def __init__(self) -> None:
        super().__init__(
            detail="A recording is already active",
            code="RECORDING_ALREADY_ACTIVE",
        )
