"""Execution driver: runs one test unit and reduces it to observer signals.

Provides the pure helpers the driver is built from (negative-test
detection, bootstrap chain resolution, output marker parsing), the
pre-compiled framework script handle, and ``ExecutionDriver`` with its two
entry points: ``run`` executes the unit on a daemon worker thread and
enforces the timeout by forced cancellation; ``run_no_fork`` executes the
same steps on the calling thread without a timeout.
"""

from __future__ import annotations

import ctypes
from dataclasses import dataclass, field
import functools
import logging
from pathlib import Path
import re
import threading
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from scriptharness.diagnostics import DiagnosticSink
from scriptharness.engine import (
    FrameworkError,
    HostError,
    PropertyAttribute,
    RunCancelled,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from scriptharness.engine import CompiledScript, Engine, EngineContext, GlobalEnvironment
    from scriptharness.models import HarnessConfig, RunParameters
    from scriptharness.observers import VerdictObserver

logger = logging.getLogger(__name__)

NEGATIVE_SUFFIX = "-n.py"
BOOTSTRAP_NAME = "shell.py"

_FAILED_MARKER = "FAILED!"
_EXIT_CODE_MARKER = "EXPECT EXIT CODE "
_LINE_BREAK: re.Pattern[str] = re.compile(r"\r\n|\r|\n")
_OPTIONS_ATTRIBUTES = (
    PropertyAttribute.DONTENUM | PropertyAttribute.PERMANENT | PropertyAttribute.READONLY
)
_DEFAULT_CANCEL_GRACE_MS = 500


def options(*args: Any, **kwargs: Any) -> str:
    """No-op stand-in for the engine-options toggle some suites call."""
    return ""


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def is_negative_test(path: Path | str, suffix: str = NEGATIVE_SUFFIX) -> bool:
    """Return True when the unit's file name declares it expects an error."""
    return Path(path).name.endswith(suffix)


def bootstrap_chain(unit: Path | str, bootstrap_name: str = BOOTSTRAP_NAME) -> list[Path]:
    """Return the files to run for *unit*, most general first.

    The bootstrap file at the great-grandparent, grandparent and parent
    directory of the unit, followed by the unit itself. Paths are resolved
    and duplicates (near the filesystem root) dropped. Existence is not
    checked here.

    Args:
        unit: Path to the test unit.
        bootstrap_name: File name of the per-directory bootstrap script.

    Returns:
        Resolved paths in execution order.
    """
    unit_path = Path(unit).resolve()
    parent = unit_path.parent
    candidates = [
        parent.parent.parent / bootstrap_name,
        parent.parent / bootstrap_name,
        parent / bootstrap_name,
        unit_path,
    ]
    chain: list[Path] = []
    for candidate in candidates:
        if candidate not in chain:
            chain.append(candidate)
    return chain


class OutputMarkers(BaseModel):
    """Markers found in a unit's captured output.

    Attributes:
        failures: Every line containing ``FAILED!``, verbatim.
        expected_exit_code: Digit after the last ``EXPECT EXIT CODE``, or 0.
    """

    model_config = ConfigDict(frozen=True)

    failures: list[str] = []
    expected_exit_code: int = 0

    @property
    def failure_text(self) -> str:
        """Failure lines, each terminated by a newline."""
        return "".join(f"{line}\n" for line in self.failures)


def parse_output_markers(text: str) -> OutputMarkers:
    """Scan captured output line by line for failure and exit-code markers.

    Only a single decimal digit directly after ``EXPECT EXIT CODE `` is
    honored; the last such line wins.

    Args:
        text: Full captured output.

    Returns:
        The markers found.
    """
    failures: list[str] = []
    expected = 0
    lines = _LINE_BREAK.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    for line in lines:
        if _FAILED_MARKER in line:
            failures.append(line)
        index = line.find(_EXIT_CODE_MARKER)
        if index != -1:
            digit = line[index + len(_EXIT_CODE_MARKER) : index + len(_EXIT_CODE_MARKER) + 1]
            if digit and digit in "0123456789":
                expected = int(digit)
    return OutputMarkers(failures=failures, expected_exit_code=expected)


def _exit_status(code: object) -> int:
    """Map a ``SystemExit.code`` to an integer exit status."""
    if code is None:
        return 0
    if isinstance(code, int):
        return int(code)
    return 1


# ---------------------------------------------------------------------------
# Shared run state
# ---------------------------------------------------------------------------


class OutputBuffer:
    """Append-only byte buffer standing in for a run's stdout and stderr.

    Writes are encoded as UTF-8 and serialized by a lock, so a cancelled
    writer can never leave the buffer half-truncated. After ``seal`` later
    writes are discarded.
    """

    encoding = "utf-8"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data = bytearray()
        self._sealed = False

    def write(self, s: str) -> int:
        data = s.encode(self.encoding, errors="replace")
        with self._lock:
            if not self._sealed:
                self._data.extend(data)
        return len(s)

    def flush(self) -> None:
        pass

    def writable(self) -> bool:
        return True

    def getvalue(self) -> bytes:
        with self._lock:
            return bytes(self._data)

    def seal(self) -> bytes:
        """Stop accepting writes and return everything written so far."""
        with self._lock:
            self._sealed = True
            return bytes(self._data)


class RunState:
    """State shared between the worker and the supervising thread.

    ``finished`` goes from False to True exactly once. ``cancelled`` is only
    ever set while ``finished`` is still False. The worker never calls the
    observer itself: it defers its signals here and the supervising thread
    emits them, so a slow observer cannot hold the timeout open. Once
    ``cancelled`` is set, nothing more is deferred and anything still
    pending is dropped.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._finished = False
        self._cancelled = False
        self._exit_code = 0
        self._captured: list[BaseException] = []
        self._pending: list[Callable[[], None]] = []

    @property
    def finished(self) -> bool:
        with self._cond:
            return self._finished

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    @property
    def exit_code(self) -> int:
        with self._cond:
            return self._exit_code

    def set_exit_code(self, code: int) -> None:
        with self._cond:
            self._exit_code = code

    def capture(self, exc: BaseException) -> None:
        """Keep a harness-internal exception to be reported after the wait."""
        with self._cond:
            self._captured.append(exc)

    def captured(self) -> list[BaseException]:
        with self._cond:
            return list(self._captured)

    def defer(self, signal: Callable[[], None]) -> bool:
        """Queue an observer call for the supervising thread.

        Returns:
            False if the run was already cancelled and *signal* was dropped.
        """
        with self._cond:
            if self._cancelled:
                return False
            self._pending.append(signal)
            return True

    def take_pending(self) -> list[Callable[[], None]]:
        """Remove and return the queued observer calls in order."""
        with self._cond:
            pending, self._pending = self._pending, []
            return pending

    def mark_finished(self) -> None:
        with self._cond:
            self._finished = True
            self._cond.notify_all()

    def wait_finished(self, timeout: float | None) -> bool:
        """Block until finished or *timeout* seconds pass; return ``finished``."""
        with self._cond:
            return self._cond.wait_for(lambda: self._finished, timeout)

    def cancel_if_unfinished(self) -> bool:
        """Atomically mark the run cancelled unless it already finished."""
        with self._cond:
            if self._finished:
                return False
            self._cancelled = True
            self._pending.clear()
            return True


@dataclass
class _UnitRun:
    """Everything that belongs to one run of one unit."""

    unit: Path
    observer: VerdictObserver
    env: GlobalEnvironment
    output: OutputBuffer = field(default_factory=OutputBuffer)
    state: RunState = field(default_factory=RunState)
    sink: DiagnosticSink | None = None


def _raise_in_thread(thread: threading.Thread, exc_type: type[BaseException]) -> bool:
    """Asynchronously raise *exc_type* inside *thread*.

    The exception is delivered at the thread's next bytecode boundary; a
    thread blocked inside native code only sees it once it returns.

    Returns:
        True if the exception was scheduled, False if the thread is gone.

    Raises:
        SystemError: If the interpreter reports more than one affected thread.
    """
    ident = thread.ident
    if ident is None or not thread.is_alive():
        return False
    affected = ctypes.pythonapi.PyThreadState_SetAsyncExc(
        ctypes.c_ulong(ident), ctypes.py_object(exc_type)
    )
    if affected > 1:
        ctypes.pythonapi.PyThreadState_SetAsyncExc(ctypes.c_ulong(ident), None)
        msg = f"Async exception reached {affected} threads for {thread.name}"
        raise SystemError(msg)
    return affected == 1


# ---------------------------------------------------------------------------
# Framework script
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FrameworkScript:
    """Read-only handle on the pre-compiled, mandatory framework script."""

    path: Path
    script: CompiledScript


def load_framework(engine: Engine, path: Path | str) -> FrameworkScript:
    """Compile the framework script once, before any run.

    Args:
        engine: Engine used to compile the script.
        path: Location of the framework script.

    Returns:
        Handle to pass to ``ExecutionDriver``.

    Raises:
        FrameworkError: If the file is missing, unreadable, or does not compile.
    """
    framework_path = Path(path).resolve()
    if not framework_path.is_file():
        msg = f"Can't find test framework file {framework_path}"
        raise FrameworkError(msg)
    try:
        with engine.enter_context() as cx:
            script = cx.compile_file(framework_path)
    except (OSError, UnicodeDecodeError) as exc:
        msg = f"Can't read test framework file {framework_path}: {exc}"
        raise FrameworkError(msg) from exc
    except SyntaxError as exc:
        msg = f"Can't compile test framework file {framework_path}: {exc}"
        raise FrameworkError(msg) from exc
    logger.info("Framework script compiled: %s", framework_path)
    return FrameworkScript(path=framework_path, script=script)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class ExecutionDriver:
    """Runs single test units against an engine and reports to an observer.

    Attributes:
        framework: Pre-compiled framework script substituted for its file.
        bootstrap_name: File name of the per-directory bootstrap script.
        negative_suffix: File name suffix of negative tests.
        cancel_grace_ms: How long ``run`` waits for a cancelled worker.
    """

    def __init__(
        self,
        framework: FrameworkScript,
        *,
        bootstrap_name: str = BOOTSTRAP_NAME,
        negative_suffix: str = NEGATIVE_SUFFIX,
        cancel_grace_ms: int = _DEFAULT_CANCEL_GRACE_MS,
    ) -> None:
        self.framework = framework
        self.bootstrap_name = bootstrap_name
        self.negative_suffix = negative_suffix
        self.cancel_grace_ms = cancel_grace_ms

    @classmethod
    def from_config(cls, framework: FrameworkScript, config: HarnessConfig) -> ExecutionDriver:
        """Build a driver using the conventions in *config*."""
        return cls(
            framework,
            bootstrap_name=config.bootstrap_name,
            negative_suffix=config.negative_suffix,
            cancel_grace_ms=config.cancel_grace_ms,
        )

    def run(
        self,
        engine: Engine,
        unit_path: Path | str,
        parameters: RunParameters,
        observer: VerdictObserver,
    ) -> None:
        """Run *unit_path* on a worker thread, cancelling it after the timeout.

        Script errors, host exceptions and timeouts all become observer
        signals; nothing below a harness-internal failure escapes.

        Args:
            engine: Engine providing environments and execution contexts.
            unit_path: Path to the test unit.
            parameters: Run parameters (timeout).
            observer: Receives the lifecycle signals.
        """
        run = self._prepare(engine, unit_path, observer)
        timeout_ms = parameters.timeout_ms
        logger.info("Run start: unit=%s, timeout_ms=%d", run.unit, timeout_ms)

        observer.running(run.unit)
        worker = threading.Thread(
            target=self._execute,
            args=(engine, run),
            name=str(run.unit),
            daemon=True,
        )
        worker.start()

        if not run.state.wait_finished(timeout_ms / 1000) and run.state.cancel_if_unfinished():
            self._cancel(worker, run, timeout_ms)
            observer.timed_out(timeout_ms)
        else:
            self._emit_deferred(run)

        self._report(run)

    def run_no_fork(
        self,
        engine: Engine,
        unit_path: Path | str,
        parameters: RunParameters,
        observer: VerdictObserver,
    ) -> None:
        """Run *unit_path* on the calling thread with no timeout.

        Produces the same observer signals as ``run`` for a unit that
        completes in time. *parameters* is accepted for symmetry only.
        """
        run = self._prepare(engine, unit_path, observer)
        logger.info("Run start (no fork): unit=%s", run.unit)
        observer.running(run.unit)
        self._execute(engine, run)
        self._emit_deferred(run)
        self._report(run)

    def _prepare(
        self, engine: Engine, unit_path: Path | str, observer: VerdictObserver
    ) -> _UnitRun:
        """Derive the negative flag and build the run's isolated environment."""
        unit = Path(unit_path)
        if is_negative_test(unit, self.negative_suffix):
            observer.set_negative()
        env = engine.create_environment()
        run = _UnitRun(unit=unit, observer=observer, env=env)
        env.set_out(run.output)  # type: ignore[arg-type]
        env.set_err(run.output)  # type: ignore[arg-type]
        return run

    def _execute(self, engine: Engine, run: _UnitRun) -> None:
        """Body of the cancellable unit of work."""
        try:
            with engine.enter_context() as cx:
                sink = DiagnosticSink(cx.error_reporter)
                cx.error_reporter = sink
                run.sink = sink
                run.env.init()
                run.env.define_function("options", options, _OPTIONS_ATTRIBUTES)
                try:
                    self._run_chain(cx, run)
                    run.state.defer(
                        functools.partial(run.observer.had_errors, sink.diagnostics, run.unit)
                    )
                except RunCancelled:
                    logger.debug("Run cancelled inside %s", run.unit)
                except BaseException as exc:
                    # Anything a unit raises is a verdict, KeyboardInterrupt included.
                    run.state.defer(functools.partial(run.observer.threw, exc))
        except RunCancelled:
            logger.debug("Run cancelled outside the script chain: %s", run.unit)
        except BaseException as exc:
            logger.exception("Harness failure while running %s", run.unit)
            run.state.capture(exc)
        finally:
            run.state.mark_finished()

    def _run_chain(self, cx: EngineContext, run: _UnitRun) -> None:
        """Run the bootstrap files then the unit; stop early on an exit request."""
        for path in bootstrap_chain(run.unit, self.bootstrap_name):
            run.env.check_cancelled()
            try:
                self._run_file_if_exists(cx, run.env, path)
            except SystemExit as exc:
                status = _exit_status(exc.code)
                if exc.code is not None and not isinstance(exc.code, int):
                    run.output.write(f"{exc.code}\n")
                run.state.set_exit_code(status)
                logger.info("Exit requested in %s: exit_code=%d", path, status)
                return

    def _run_file_if_exists(self, cx: EngineContext, env: GlobalEnvironment, path: Path) -> None:
        if path == self.framework.path:
            try:
                cx.execute(self.framework.script, env)
            except HostError:
                raise
            except Exception as exc:
                # A broken framework script invalidates every unit.
                msg = f"Test framework script {path} failed: {type(exc).__name__}: {exc}"
                raise FrameworkError(msg) from exc
        elif path.is_file():
            cx.process_file(env, path)

    def _cancel(self, worker: threading.Thread, run: _UnitRun, timeout_ms: int) -> None:
        """Tear down a worker that overran its timeout. Best effort."""
        logger.warning("Timed out after %d ms; cancelling %s", timeout_ms, run.unit)
        run.env.cancel_event.set()
        if run.sink is not None:
            run.sink.seal()
        try:
            _raise_in_thread(worker, RunCancelled)
        except Exception as exc:
            logger.exception("Forced cancellation of %s failed", run.unit)
            run.state.capture(exc)
        worker.join(self.cancel_grace_ms / 1000)
        if worker.is_alive():
            logger.warning(
                "Worker for %s did not stop after cancellation; continuing (daemon thread)",
                run.unit,
            )

    @staticmethod
    def _emit_deferred(run: _UnitRun) -> None:
        """Deliver the worker's queued signals on the calling thread."""
        for signal in run.state.take_pending():
            signal()

    def _report(self, run: _UnitRun) -> None:
        """Emit the post-run signals; ``output_was`` and ``exit_codes_were`` close the run."""
        observer = run.observer
        output = run.output.seal().decode(OutputBuffer.encoding, errors="replace")

        for exc in run.state.captured():
            observer.threw(exc)

        markers = parse_output_markers(output)
        if markers.failures:
            observer.failed(markers.failure_text)

        observer.output_was(output)
        exit_code = run.state.exit_code
        observer.exit_codes_were(markers.expected_exit_code, exit_code)
        logger.info(
            "Run complete: unit=%s, expected_exit=%d, exit_code=%d, marker_failures=%d, "
            "output_len=%d",
            run.unit,
            markers.expected_exit_code,
            exit_code,
            len(markers.failures),
            len(output),
        )
