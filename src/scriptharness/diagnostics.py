"""Diagnostic channel protocol and the buffering sink used for each run.

The engine reports warnings and errors through a ``DiagnosticChannel``.
``DiagnosticSink`` wraps the engine's default channel for the duration of
one run: warnings pass straight through, errors are recorded as
``ScriptDiagnostic`` values so the driver can classify them once the unit
has finished.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from scriptharness.models import ScriptDiagnostic

logger = logging.getLogger(__name__)


@runtime_checkable
class DiagnosticChannel(Protocol):
    """Receiver of structured engine diagnostics.

    Every method takes the message, source name, 1-based line number,
    source line text and 1-based column of the report.
    """

    def warning(  # noqa: D102
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> None: ...

    def error(  # noqa: D102
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> None: ...

    def runtime_error(  # noqa: D102
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> Exception: ...


class DiagnosticSink:
    """Channel adapter that buffers errors instead of raising them.

    Not thread-safe: one sink belongs to exactly one run.

    Attributes:
        original: The wrapped channel that still receives warnings and
            builds runtime errors.
    """

    def __init__(self, original: DiagnosticChannel) -> None:
        self.original = original
        self._errors: list[ScriptDiagnostic] = []
        self._sealed = False

    @property
    def diagnostics(self) -> tuple[ScriptDiagnostic, ...]:
        """Recorded errors in report order."""
        return tuple(self._errors)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        """Stop recording; errors reported afterwards are dropped."""
        self._sealed = True

    def warning(
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> None:
        self.original.warning(message, source_name, line, line_source, column)

    def error(
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> None:
        if self._sealed:
            logger.debug("Dropping diagnostic reported after seal: %s", message)
            return
        self._errors.append(
            ScriptDiagnostic(
                message=message,
                source_name=source_name,
                line=line,
                line_source=line_source,
                column=column,
            )
        )

    def runtime_error(
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> Exception:
        return self.original.runtime_error(message, source_name, line, line_source, column)
