"""Embedded engine contract and the CPython-backed engine.

The harness needs three things from an engine: an isolated global
environment with redirectable output, compile-then-execute of a named
source unit with diagnostics routed through an installable
``DiagnosticChannel``, and host functions registered into the global
namespace. ``PythonEngine`` provides all three on top of the running
interpreter's own ``compile()`` and ``exec()``.
"""

from __future__ import annotations

import builtins
import contextlib
from dataclasses import dataclass, field
from enum import IntFlag
import functools
import logging
from pathlib import Path
import sys
import threading
import traceback
from typing import TYPE_CHECKING, Any, Protocol, TextIO
import warnings

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from scriptharness.diagnostics import DiagnosticChannel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class HostError(Exception):
    """Failure raised by the host side rather than by the script."""


class FrameworkError(HostError):
    """The framework script is missing, does not compile, or raised."""


class EvaluatorError(Exception):
    """Runtime error built by a diagnostic channel.

    Attributes:
        source_name: Name of the source unit, if known.
        line: 1-based line number, or 0.
        line_source: Text of the offending line, if known.
        column: 1-based column, or 0.
    """

    def __init__(
        self,
        message: str,
        source_name: str | None = None,
        line: int = 0,
        line_source: str | None = None,
        column: int = 0,
    ) -> None:
        super().__init__(message)
        self.source_name = source_name
        self.line = line
        self.line_source = line_source
        self.column = column


class RunCancelled(BaseException):  # noqa: N818
    """Injected into a worker to tear down a run; never reported."""


class ScriptExit(SystemExit):  # noqa: N818
    """Raised by the ``quit``/``exit`` host functions."""


# ---------------------------------------------------------------------------
# Default diagnostic channel
# ---------------------------------------------------------------------------


class ConsoleReporter:
    """Default channel: logs warnings and raises on errors."""

    def warning(
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> None:
        logger.warning("%s:%d: warning: %s", source_name or "<unknown>", line, message)

    def error(
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> None:
        raise self.runtime_error(message, source_name, line, line_source, column)

    def runtime_error(
        self,
        message: str,
        source_name: str | None,
        line: int,
        line_source: str | None,
        column: int,
    ) -> EvaluatorError:
        return EvaluatorError(message, source_name, line, line_source, column)


# ---------------------------------------------------------------------------
# Process stream routing
# ---------------------------------------------------------------------------

_ACTIVE = threading.local()
_ROUTER_LOCK = threading.Lock()


class _StreamRouter:
    """Stand-in for ``sys.stdout``/``sys.stderr`` that follows the calling thread.

    While a thread executes a script, writes go to the bound environment's
    ``out`` or ``err`` stream; every other thread writes to the stream the
    router replaced.
    """

    def __init__(self, fallback: TextIO, attr: str) -> None:
        self._fallback = fallback
        self._attr = attr

    @property
    def fallback(self) -> TextIO:
        return self._fallback

    def _target(self) -> TextIO:
        env: GlobalEnvironment | None = getattr(_ACTIVE, "env", None)
        if env is None:
            return self._fallback
        return getattr(env, self._attr)

    def write(self, s: str) -> int:
        return self._target().write(s)

    def flush(self) -> None:
        self._target().flush()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._target(), name)


def _process_stream(stream: TextIO) -> TextIO:
    """Return the real stream behind a router, or *stream* itself."""
    if isinstance(stream, _StreamRouter):
        return stream.fallback
    return stream


def _install_routers() -> None:
    """Put routers on ``sys.stdout`` and ``sys.stderr`` unless already there."""
    with _ROUTER_LOCK:
        if not isinstance(sys.stdout, _StreamRouter):
            sys.stdout = _StreamRouter(sys.stdout, "out")
        if not isinstance(sys.stderr, _StreamRouter):
            sys.stderr = _StreamRouter(sys.stderr, "err")


@contextlib.contextmanager
def _bound_streams(env: GlobalEnvironment) -> Iterator[None]:
    """Route the calling thread's ``sys.stdout``/``sys.stderr`` writes to *env*."""
    _install_routers()
    previous = getattr(_ACTIVE, "env", None)
    _ACTIVE.env = env
    try:
        yield
    finally:
        _ACTIVE.env = previous


# ---------------------------------------------------------------------------
# Compiled scripts & environments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompiledScript:
    """A compiled source unit, reusable across environments."""

    name: str
    code: Any = field(repr=False)
    source: str = field(repr=False)

    def line(self, lineno: int) -> str | None:
        """Return the 1-based source line *lineno*, or ``None`` if out of range."""
        lines = self.source.splitlines()
        if 1 <= lineno <= len(lines):
            return lines[lineno - 1]
        return None


class PropertyAttribute(IntFlag):
    """Attributes of a host function registered in an environment."""

    EMPTY = 0
    READONLY = 1
    DONTENUM = 2
    PERMANENT = 4


class GlobalEnvironment:
    """Isolated global namespace for one run.

    Scripts execute against ``globals``. Built-ins live in a private copy of
    the interpreter's builtins so host functions registered as
    non-enumerable are reachable by name but invisible to ``globals()`` and
    cannot be deleted or replaced by the script.
    """

    def __init__(self) -> None:
        self.globals: dict[str, Any] = {"__name__": "__main__"}
        self.builtins: dict[str, Any] = {}
        self.cancel_event = threading.Event()
        self._out: TextIO = _process_stream(sys.stdout)
        self._err: TextIO = _process_stream(sys.stderr)
        self._initialized = False

    @property
    def out(self) -> TextIO:
        return self._out

    @property
    def err(self) -> TextIO:
        return self._err

    def set_out(self, stream: TextIO) -> None:
        self._out = _process_stream(stream)

    def set_err(self, stream: TextIO) -> None:
        self._err = _process_stream(stream)

    def check_cancelled(self) -> None:
        """Raise ``RunCancelled`` if the run has been cancelled."""
        if self.cancel_event.is_set():
            raise RunCancelled

    def init(self) -> None:
        """Install the standard built-ins plus the host ``print``/``quit``/``exit``."""
        self.builtins = dict(vars(builtins))
        quit_fn = self._quit
        self.builtins["print"] = self._print
        self.builtins["quit"] = quit_fn
        self.builtins["exit"] = quit_fn
        self.globals["__builtins__"] = self.builtins
        self._initialized = True

    def define_function(
        self,
        name: str,
        fn: Callable[..., Any],
        attributes: PropertyAttribute = PropertyAttribute.EMPTY,
    ) -> None:
        """Register *fn* as a host function callable by scripts.

        Calls check the cancel event first, so every host function is a
        cooperative cancellation point.

        ``READONLY`` and ``PERMANENT`` are only enforceable in the private
        built-ins, so they must be combined with ``DONTENUM``.

        Args:
            name: Global name of the function.
            fn: Host callable.
            attributes: ``DONTENUM`` functions go to the private built-ins;
                others are bound in ``globals``.

        Raises:
            HostError: If ``init`` has not been called yet, or if
                ``READONLY``/``PERMANENT`` is requested without ``DONTENUM``.
        """
        if not self._initialized:
            msg = f"Cannot define {name!r} before the environment is initialized"
            raise HostError(msg)
        protected = attributes & (PropertyAttribute.READONLY | PropertyAttribute.PERMANENT)
        if protected and not attributes & PropertyAttribute.DONTENUM:
            msg = f"Cannot protect enumerable function {name!r}: globals can always be rebound"
            raise HostError(msg)

        @functools.wraps(fn)
        def host_function(*args: Any, **kwargs: Any) -> Any:
            self.check_cancelled()
            return fn(*args, **kwargs)

        target = self.builtins if attributes & PropertyAttribute.DONTENUM else self.globals
        target[name] = host_function

    def _print(
        self,
        *args: Any,
        sep: str | None = " ",
        end: str | None = "\n",
        file: TextIO | None = None,
        flush: bool = False,
    ) -> None:
        self.check_cancelled()
        builtins.print(
            *args,
            sep=sep,
            end=end,
            file=file if file is not None else self._out,
            flush=flush,
        )

    def _quit(self, code: object = None) -> None:
        raise ScriptExit(code)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_COMPILE_LOCK = threading.Lock()


class EngineContext:
    """Execution context: compiles and runs scripts, reports diagnostics.

    Attributes:
        error_reporter: The active diagnostic channel.
    """

    def __init__(self) -> None:
        self.error_reporter: DiagnosticChannel = ConsoleReporter()

    def compile_source(self, source: str, name: str) -> CompiledScript:
        """Compile *source* under *name*, reporting compile-time warnings.

        Raises:
            SyntaxError: If the source does not compile.
        """
        with _COMPILE_LOCK, warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            code = compile(source, name, "exec", dont_inherit=True)
        script = CompiledScript(name=name, code=code, source=source)
        for w in caught:
            lineno = w.lineno or 0
            self.error_reporter.warning(str(w.message), name, lineno, script.line(lineno), 0)
        return script

    def compile_file(self, path: Path | str) -> CompiledScript:
        """Read and compile the file at *path*.

        Raises:
            OSError: If the file cannot be read.
            UnicodeDecodeError: If the file is not valid UTF-8.
            SyntaxError: If the source does not compile.
        """
        source = Path(path).read_text(encoding="utf-8")
        return self.compile_source(source, str(path))

    def execute(self, script: CompiledScript, env: GlobalEnvironment) -> None:
        """Run *script* against *env*; exceptions propagate unchanged.

        For the duration of the call, ``sys.stdout`` and ``sys.stderr``
        writes from this thread go to the environment's streams.
        """
        with _bound_streams(env):
            exec(script.code, env.globals)  # noqa: S102

    def process_file(self, env: GlobalEnvironment, path: Path | str) -> None:
        """Compile and run *path*, reporting script errors instead of raising.

        Compile errors and uncaught ``Exception`` subclasses go to
        ``error_reporter.error``. ``HostError`` and anything that is not an
        ``Exception`` (cancellation, exit requests) propagate.
        """
        name = str(path)
        try:
            script = self.compile_file(path)
        except SyntaxError as exc:
            text = exc.text.rstrip("\r\n") if exc.text is not None else None
            self.error_reporter.error(
                exc.msg, exc.filename or name, exc.lineno or 0, text, exc.offset or 0
            )
            return
        except (OSError, UnicodeDecodeError) as exc:
            self.error_reporter.error(f"Couldn't read file {name!r}: {exc}", name, 0, None, 0)
            return

        try:
            self.execute(script, env)
        except HostError:
            raise
        except Exception as exc:
            self._report_exception(exc, script)

    def _report_exception(self, exc: Exception, script: CompiledScript) -> None:
        """Report *exc* at the innermost traceback frame inside *script*."""
        line, column, line_source = 0, 0, None
        for frame in reversed(traceback.extract_tb(exc.__traceback__)):
            if frame.filename == script.name:
                line = frame.lineno or 0
                line_source = script.line(line)
                colno = getattr(frame, "colno", None)
                column = colno + 1 if colno is not None else 0
                break
        self.error_reporter.error(
            f"{type(exc).__name__}: {exc}", script.name, line, line_source, column
        )


class Engine(Protocol):
    """What the driver needs from an engine."""

    def create_environment(self) -> GlobalEnvironment: ...  # noqa: D102

    def enter_context(self) -> contextlib.AbstractContextManager[EngineContext]: ...  # noqa: D102


class PythonEngine:
    """Engine that runs scripts with the host interpreter."""

    def create_environment(self) -> GlobalEnvironment:
        return GlobalEnvironment()

    @contextlib.contextmanager
    def enter_context(self) -> Iterator[EngineContext]:
        """Yield a fresh ``EngineContext`` for the calling thread."""
        cx = EngineContext()
        logger.debug("Entered engine context on %s", threading.current_thread().name)
        try:
            yield cx
        finally:
            logger.debug("Exited engine context on %s", threading.current_thread().name)
