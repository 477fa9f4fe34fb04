"""Ordered fallback chain of conversion strategies.

A chain is a plain list. The driver walks it once, skips strategies that do
not apply, turns each abandoned attempt into one warning and stops at the first
success. A timeout is never downgraded: it aborts the whole chain.
"""

import logging
from typing import Iterable, Protocol

from .errors import (
    ConversionError,
    ConversionTimeout,
    ProcessingError,
    ToolUnavailable,
    UnsupportedFormat,
)
from .interfaces import ConversionArtifact, ConversionRequest

logger = logging.getLogger(__name__)


class Strategy(Protocol):
    name: str
    label: str

    def applies(self, request: ConversionRequest) -> bool:
        ...

    def run(self, request: ConversionRequest) -> ConversionArtifact:
        ...


def run_chain(strategies: Iterable[Strategy], request: ConversionRequest) -> ConversionArtifact:
    warnings: list[str] = []
    failures: list[tuple[Strategy, ConversionError]] = []
    attempted: set[str] = set()

    for strategy in strategies:
        if strategy.name in attempted or not strategy.applies(request):
            continue
        attempted.add(strategy.name)
        logger.debug("trying %s for .%s", strategy.name, request.target_format)
        try:
            artifact = strategy.run(request)
        except ConversionTimeout:
            raise
        except ConversionError as e:
            err = e
        except Exception as e:
            # Library errors on bad input surface as plain exceptions
            err = ProcessingError(f"{type(e).__name__}: {e}")
        else:
            artifact.warnings = warnings + artifact.warnings
            return artifact

        failures.append((strategy, err))
        warnings.append(f"{strategy.label} failed ({err}); used fallback")
        logger.warning("strategy %s abandoned: %s", strategy.name, err)

    if not failures:
        raise UnsupportedFormat(
            f"no conversion strategy can produce .{request.target_format} from {request.input_path.suffix or 'this file'}"
        )
    detail = "; ".join(f"{s.label}: {e}" for s, e in failures)
    if all(isinstance(e, ToolUnavailable) for _, e in failures):
        raise ToolUnavailable(f"no conversion tool available ({detail})")
    raise ProcessingError(f"all conversion strategies failed ({detail})")
