"""Verdict observers: the status protocol the driver reports a run through.

``VerdictObserver`` is the abstract lifecycle interface. ``CompositeObserver``
broadcasts every call to an ordered list of observers. ``RecordingObserver``
collects a ``RunVerdict`` and ``LoggingObserver`` writes each event to the
``scriptharness`` logger.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from pathlib import Path
import traceback
from typing import TYPE_CHECKING

from scriptharness.models import RunVerdict, VerdictEvent, join_diagnostics

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from scriptharness.models import ScriptDiagnostic

logger = logging.getLogger(__name__)


def format_exception(exc: BaseException) -> str:
    """Return the full traceback text of *exc*."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class VerdictObserver(ABC):
    """Receives the lifecycle events of one test unit.

    Subclasses implement the six event methods. ``had_errors`` turns the
    diagnostics buffered during a run into a ``failed`` call according to
    the negative-test flag.
    """

    _negative: bool = False

    def set_negative(self) -> None:
        """Mark the current unit as expected to produce engine errors."""
        self._negative = True

    @property
    def negative(self) -> bool:
        return self._negative

    def had_errors(
        self,
        diagnostics: Sequence[ScriptDiagnostic],
        unit: Path | str | None = None,
    ) -> None:
        """Report a failure when the diagnostics contradict the negative flag.

        A positive test with at least one diagnostic, or a negative test with
        none, calls ``failed``. Every other combination is silent.

        Args:
            diagnostics: Errors buffered by the run's diagnostic sink.
            unit: Unit path to name in the failure message, if any.
        """
        where = f" in {unit}" if unit is not None else ""
        if not self._negative and diagnostics:
            self.failed(f"Script errors{where}:\n{join_diagnostics(list(diagnostics))}")
        elif self._negative and not diagnostics:
            self.failed(f"Should have produced runtime error{where}.")

    @abstractmethod
    def running(self, unit: Path) -> None:
        """The unit is about to run; emitted once, before any bootstrap file."""

    @abstractmethod
    def failed(self, reason: str) -> None:
        """The unit failed for a reason expressible as text."""

    @abstractmethod
    def threw(self, exc: BaseException) -> None:
        """A host exception escaped the unit's own error handling."""

    @abstractmethod
    def timed_out(self, timeout_ms: int) -> None:
        """The timeout elapsed before the unit completed."""

    @abstractmethod
    def exit_codes_were(self, expected: int, actual: int) -> None:
        """Expected versus recorded exit code; emitted exactly once."""

    @abstractmethod
    def output_was(self, text: str) -> None:
        """Full captured output; emitted exactly once."""


class CompositeObserver(VerdictObserver):
    """Broadcasts every event to its members in composition order."""

    def __init__(self, observers: Iterable[VerdictObserver]) -> None:
        self.observers: tuple[VerdictObserver, ...] = tuple(observers)

    def set_negative(self) -> None:
        super().set_negative()
        for observer in self.observers:
            observer.set_negative()

    def running(self, unit: Path) -> None:
        for observer in self.observers:
            observer.running(unit)

    def failed(self, reason: str) -> None:
        for observer in self.observers:
            observer.failed(reason)

    def threw(self, exc: BaseException) -> None:
        for observer in self.observers:
            observer.threw(exc)

    def timed_out(self, timeout_ms: int) -> None:
        for observer in self.observers:
            observer.timed_out(timeout_ms)

    def exit_codes_were(self, expected: int, actual: int) -> None:
        for observer in self.observers:
            observer.exit_codes_were(expected, actual)

    def output_was(self, text: str) -> None:
        for observer in self.observers:
            observer.output_was(text)


def compose(*observers: VerdictObserver) -> CompositeObserver:
    """Build a ``CompositeObserver`` from *observers* in the given order."""
    return CompositeObserver(observers)


class RecordingObserver(VerdictObserver):
    """Collects every event of one run into a ``RunVerdict``."""

    def __init__(self) -> None:
        self._unit: str | None = None
        self._events: list[VerdictEvent] = []
        self._failures: list[str] = []
        self._exceptions: list[str] = []
        self._timeout_ms: int | None = None
        self._expected: int | None = None
        self._actual: int | None = None
        self._output: str | None = None
        self.thrown: list[BaseException] = []

    def running(self, unit: Path) -> None:
        self._events.append(VerdictEvent.RUNNING)
        self._unit = str(unit)

    def failed(self, reason: str) -> None:
        self._events.append(VerdictEvent.FAILED)
        self._failures.append(reason)

    def threw(self, exc: BaseException) -> None:
        self._events.append(VerdictEvent.THREW)
        self._exceptions.append(format_exception(exc))
        self.thrown.append(exc)

    def timed_out(self, timeout_ms: int) -> None:
        self._events.append(VerdictEvent.TIMED_OUT)
        self._timeout_ms = timeout_ms

    def exit_codes_were(self, expected: int, actual: int) -> None:
        self._events.append(VerdictEvent.EXIT_CODES_WERE)
        self._expected = expected
        self._actual = actual

    def output_was(self, text: str) -> None:
        self._events.append(VerdictEvent.OUTPUT_WAS)
        self._output = text

    def verdict(self) -> RunVerdict:
        """Snapshot everything recorded so far."""
        return RunVerdict(
            unit=self._unit,
            negative=self._negative,
            events=list(self._events),
            failures=list(self._failures),
            exceptions=list(self._exceptions),
            timed_out=self._timeout_ms is not None,
            timeout_ms=self._timeout_ms,
            expected_exit_code=self._expected,
            actual_exit_code=self._actual,
            output=self._output,
        )


class LoggingObserver(VerdictObserver):
    """Writes each lifecycle event to a logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log if log is not None else logger
        self._unit: Path | None = None

    def running(self, unit: Path) -> None:
        self._unit = unit
        self._log.info("Running %s", unit)

    def failed(self, reason: str) -> None:
        self._log.warning("FAILED %s: %s", self._unit, reason.rstrip("\n"))

    def threw(self, exc: BaseException) -> None:
        self._log.error(
            "%s threw %s: %s\n%s",
            self._unit,
            type(exc).__name__,
            exc,
            format_exception(exc).rstrip("\n"),
        )

    def timed_out(self, timeout_ms: int) -> None:
        self._log.warning("%s timed out after %d ms", self._unit, timeout_ms)

    def exit_codes_were(self, expected: int, actual: int) -> None:
        if expected != actual:
            self._log.warning(
                "%s exit code mismatch: expected=%d, actual=%d",
                self._unit,
                expected,
                actual,
            )
        else:
            self._log.debug("%s exit code %d", self._unit, actual)

    def output_was(self, text: str) -> None:
        self._log.debug("%s output (%d chars):\n%s", self._unit, len(text), text)
