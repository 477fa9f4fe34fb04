"""
Domain layer for file conversion.
Provides the job store, the per-family converters and the service that runs
them, so front-ends (HTTP or others) share the same core logic.
"""

from .dispatcher import Dispatcher
from .errors import (
    ConversionError,
    ConversionTimeout,
    InvalidFormatError,
    InvalidTransition,
    JobNotFound,
    ProcessingError,
    RequestValidationError,
    StrategyFailure,
    ToolUnavailable,
    UnsupportedFormat,
    UploadTooLarge,
)
from .formats import ConverterFamily, classify_format, normalize_format
from .interfaces import ConversionArtifact, ConverterGateway, JobStoreGateway, StorageGateway
from .options import ConversionOptions, QualityTier
from .service import ConversionService
from .store import ConversionJob, InMemoryJobStore, JobStatus, LocalJobStore
from .sweeper import RetentionSweeper
