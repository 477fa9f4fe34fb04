"""Error taxonomy for conversions.

Request-level problems (missing file, bad target format, oversize upload) are
rejected before a job exists. Everything raised while a job runs is a
``ConversionError`` and ends up as the job's ``failed`` state.
"""


class ConversionError(Exception):
    kind = "processing_error"


class UnsupportedFormat(ConversionError):
    kind = "unsupported_format"


class ToolUnavailable(ConversionError):
    """An external tool or library needed by a strategy is not installed."""

    kind = "tool_unavailable"


class ProcessingError(ConversionError):
    kind = "processing_error"


class ConversionTimeout(ConversionError):
    kind = "timeout"


class StrategyFailure(ConversionError):
    """A strategy ran but produced no usable output.

    Only meaningful inside a fallback chain, where it becomes a warning.
    """

    kind = "processing_error"


class RequestValidationError(ValueError):
    pass


class InvalidFormatError(RequestValidationError):
    pass


class UploadTooLarge(ValueError):
    pass


class JobNotFound(KeyError):
    pass


class InvalidTransition(RuntimeError):
    pass
