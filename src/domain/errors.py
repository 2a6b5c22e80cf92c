"""
Exception classes for the calendar invite pipeline.

Each stage maps low-level failures (boto3, HTTP, JSON) to one of these
errors with a short descriptive message. The boundary only ever reports
StepFailedError; the detailed error is logged.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigurationError(PipelineError):
    """Raised when configuration or the stage list is invalid."""
    pass


class InvalidNotificationError(PipelineError):
    """Raised when the inbound SES notification has an unexpected shape."""
    pass


class MessageFetchError(PipelineError):
    """Raised when the raw message cannot be loaded from S3."""
    pass


class EventParseError(PipelineError):
    """Raised when the completion service fails or returns unusable output."""
    pass


class InvalidAddressError(PipelineError):
    """Raised when the sender or from address is not usable."""
    pass


class InviteSendError(PipelineError):
    """Raised when SES rejects the calendar invite."""
    pass


class StepFailedError(PipelineError):
    """Generic failure reported across the Lambda boundary."""

    def __init__(self, message: str = "Error: Step returned error."):
        super().__init__(message)
