"""Core data models for the script harness.

Defines the immutable diagnostic record reported by the engine, the
per-run parameters, the harness configuration, and the verdict record
collected by ``RecordingObserver``. Every other module builds on these
types.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


class ScriptDiagnostic(BaseModel):
    """One error reported by the engine while compiling or running a script.

    Created exactly once per reported error by the ``DiagnosticSink`` that
    received it and never modified afterward.

    Attributes:
        message: Human-readable error message.
        source_name: Name of the source unit, if known.
        line: 1-based line number, or 0 when unknown.
        line_source: Text of the offending line, if known.
        column: 1-based column of the offending character, or 0.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    source_name: str | None = None
    line: int = 0
    line_source: str | None = None
    column: int = 0

    def caret_line(self) -> str | None:
        """Return the caret pointer line for ``line_source``.

        Characters before ``column - 1`` are replaced by whitespace (tabs
        are kept as tabs so the caret lines up), the character at
        ``column - 1`` becomes ``^`` and nothing follows it.

        Returns:
            The caret line, or ``None`` when ``line_source`` is unset.
        """
        if self.line_source is None:
            return None
        caret: list[str] = []
        for i, ch in enumerate(self.line_source):
            if i < self.column - 1:
                caret.append("\t" if ch == "\t" else " ")
            elif i == self.column - 1:
                caret.append("^")
        return "".join(caret)

    def render(self) -> str:
        """Render as ``<source>:<line>: <message>`` plus source and caret lines."""
        location = ""
        if self.source_name is not None:
            location += f"{self.source_name}:"
        if self.line != 0:
            location += f"{self.line}: "
        location += self.message

        parts = [location]
        if self.line_source is not None:
            parts.append(self.line_source)
            parts.append(self.caret_line() or "")
        return "\n".join(parts)

    def __str__(self) -> str:
        return self.render()


def join_diagnostics(diagnostics: tuple[ScriptDiagnostic, ...] | list[ScriptDiagnostic]) -> str:
    """Render each diagnostic and join them with newlines."""
    return "\n".join(d.render() for d in diagnostics)


# ---------------------------------------------------------------------------
# Run parameters & configuration
# ---------------------------------------------------------------------------


class RunParameters(BaseModel):
    """Parameters for a single run.

    Attributes:
        timeout_ms: Wall-clock budget for the run in milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = 60000

    @field_validator("timeout_ms")
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        """Validate that the timeout is >= 1."""
        if v < 1:
            msg = "timeout_ms must be >= 1"
            raise ValueError(msg)
        return v


class HarnessConfig(BaseModel):
    """Harness configuration loaded from YAML and environment overrides.

    Attributes:
        timeout_ms: Per-run timeout in milliseconds.
        framework_file: Path of the mandatory, pre-compiled framework script.
        bootstrap_name: File name of the per-directory bootstrap script.
        negative_suffix: File name suffix marking a negative test.
        cancel_grace_ms: How long to wait for a cancelled worker to unwind.
        log_level: Logging level string.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = 60000
    framework_file: str = "tests/shell.py"
    bootstrap_name: str = "shell.py"
    negative_suffix: str = "-n.py"
    cancel_grace_ms: int = 500
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("timeout_ms")
    @classmethod
    def _timeout_must_be_positive(cls, v: int) -> int:
        """Validate that the timeout is >= 1."""
        if v < 1:
            msg = "timeout_ms must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator("cancel_grace_ms")
    @classmethod
    def _grace_must_not_be_negative(cls, v: int) -> int:
        """Validate that the cancellation grace period is >= 0."""
        if v < 0:
            msg = "cancel_grace_ms must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("bootstrap_name", "negative_suffix")
    @classmethod
    def _must_not_be_empty(cls, v: str) -> str:
        """Validate that file name conventions are non-empty."""
        if not v:
            msg = "Value must not be empty"
            raise ValueError(msg)
        return v

    def parameters(self) -> RunParameters:
        """Build the per-run parameters from this configuration."""
        return RunParameters(timeout_ms=self.timeout_ms)


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


class VerdictEvent(StrEnum):
    """Lifecycle events an observer receives for one unit."""

    RUNNING = "running"
    FAILED = "failed"
    THREW = "threw"
    TIMED_OUT = "timed_out"
    EXIT_CODES_WERE = "exit_codes_were"
    OUTPUT_WAS = "output_was"


class RunVerdict(BaseModel):
    """Everything one observer saw during a single run.

    Attributes:
        unit: Path of the test unit, or ``None`` if ``running`` never fired.
        negative: Whether the unit was treated as a negative test.
        events: Observer events in the order they were received.
        failures: Reasons passed to ``failed``.
        exceptions: Formatted tracebacks of exceptions passed to ``threw``.
        timed_out: Whether ``timed_out`` was signalled.
        timeout_ms: The timeout reported by ``timed_out``, if any.
        expected_exit_code: Exit code declared by the unit's output.
        actual_exit_code: Exit code the run recorded.
        output: Captured standard output and error text.
    """

    model_config = ConfigDict(frozen=True)

    unit: str | None = None
    negative: bool = False
    events: list[VerdictEvent] = []
    failures: list[str] = []
    exceptions: list[str] = []
    timed_out: bool = False
    timeout_ms: int | None = None
    expected_exit_code: int | None = None
    actual_exit_code: int | None = None
    output: str | None = None

    @property
    def passed(self) -> bool:
        """True when nothing failed, nothing was thrown, and exit codes agree."""
        return (
            not self.failures
            and not self.exceptions
            and not self.timed_out
            and self.expected_exit_code == self.actual_exit_code
        )
