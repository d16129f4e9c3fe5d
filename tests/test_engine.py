"""Tests for the CPython-backed engine adapter.

Covers environment isolation and output redirection, host function
registration attributes, compile/runtime error reporting through the
installed channel, warning forwarding, and which exceptions propagate.
"""

from __future__ import annotations

import io
from pathlib import Path
import sys
import threading
from unittest.mock import MagicMock

from scriptharness.diagnostics import DiagnosticSink
from scriptharness.engine import (
    ConsoleReporter,
    EvaluatorError,
    GlobalEnvironment,
    HostError,
    PropertyAttribute,
    PythonEngine,
    RunCancelled,
    ScriptExit,
)
import pytest

from tests.conftest import write_script

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _env(out: io.StringIO | None = None) -> GlobalEnvironment:
    env = PythonEngine().create_environment()
    if out is not None:
        env.set_out(out)
        env.set_err(out)
    env.init()
    return env


# ===========================================================================
# Environment
# ===========================================================================


@pytest.mark.unit
class TestGlobalEnvironment:
    """Environments are isolated and redirect print()."""

    def test_print_goes_to_redirected_stream(self, tmp_path: Path) -> None:
        """print() inside a script writes to the environment's out stream."""
        out = io.StringIO()
        env = _env(out)
        unit = write_script(tmp_path / "unit.py", 'print("hello", 42)\n')
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        assert out.getvalue() == "hello 42\n"

    def test_print_inside_function_redirected(self, tmp_path: Path) -> None:
        """Functions defined by a script resolve print() through the same builtins."""
        out = io.StringIO()
        env = _env(out)
        unit = write_script(
            tmp_path / "unit.py",
            """\
            def shout(x):
                print(x.upper())

            shout("quiet")
            """,
        )
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        assert out.getvalue() == "QUIET\n"

    def test_environments_do_not_share_globals(self, tmp_path: Path) -> None:
        """A name bound in one environment is absent from another."""
        first, second = _env(io.StringIO()), _env(io.StringIO())
        unit = write_script(tmp_path / "unit.py", "marker = 1\n")
        with PythonEngine().enter_context() as cx:
            cx.process_file(first, unit)
        assert first.globals["marker"] == 1
        assert "marker" not in second.globals

    def test_cancelled_print_raises(self) -> None:
        """print() is a cooperative cancellation point."""
        env = _env(io.StringIO())
        env.cancel_event.set()
        with pytest.raises(RunCancelled):
            env.builtins["print"]("x")

    def test_quit_raises_script_exit(self) -> None:
        """quit(n) raises ScriptExit carrying n."""
        env = _env(io.StringIO())
        with pytest.raises(ScriptExit) as excinfo:
            env.builtins["quit"](4)
        assert excinfo.value.code == 4
        assert env.builtins["exit"] is env.builtins["quit"]


@pytest.mark.unit
class TestStreamRouting:
    """sys.stdout and sys.stderr follow the environment while a script runs."""

    def test_sys_streams_reach_environment(self, tmp_path: Path) -> None:
        """Writes through sys.stderr and sys.stdout land in err and out."""
        out, err = io.StringIO(), io.StringIO()
        env = PythonEngine().create_environment()
        env.set_out(out)
        env.set_err(err)
        env.init()
        unit = write_script(
            tmp_path / "unit.py",
            """\
            import sys
            print("to-err", file=sys.stderr)
            sys.stdout.write("raw\\n")
            """,
        )
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        assert out.getvalue() == "raw\n"
        assert err.getvalue() == "to-err\n"

    def test_writes_after_execution_not_captured(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Once the script returns, sys.stdout is the process stream again."""
        out = io.StringIO()
        env = _env(out)
        unit = write_script(tmp_path / "unit.py", 'import sys\nsys.stdout.write("inside\\n")\n')
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        print("outside")
        assert out.getvalue() == "inside\n"
        assert capsys.readouterr().out == "outside\n"

    def test_other_threads_not_captured(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """A thread the script did not run on keeps writing to the process stream."""
        out = io.StringIO()
        env = _env(out)

        def write_elsewhere() -> None:
            t = threading.Thread(target=lambda: sys.stdout.write("elsewhere\n"))
            t.start()
            t.join()

        env.define_function("write_elsewhere", write_elsewhere)
        unit = write_script(tmp_path / "unit.py", 'write_elsewhere()\nprint("here")\n')
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        assert out.getvalue() == "here\n"
        assert "elsewhere" in capsys.readouterr().out


@pytest.mark.unit
class TestDefineFunction:
    """Host functions honor their attributes."""

    def test_dontenum_function_hidden_from_globals(self, tmp_path: Path) -> None:
        """Non-enumerable functions are callable but not listed in globals()."""
        out = io.StringIO()
        env = _env(out)
        env.define_function("answer", lambda: 42, PropertyAttribute.DONTENUM)
        unit = write_script(
            tmp_path / "unit.py", 'print(answer(), "answer" in globals())\n'
        )
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        assert out.getvalue() == "42 False\n"

    def test_permanent_function_survives_shadowing(self, tmp_path: Path) -> None:
        """Rebinding the name in globals does not replace the host function."""
        env = _env(io.StringIO())
        env.define_function(
            "answer",
            lambda: 42,
            PropertyAttribute.DONTENUM | PropertyAttribute.PERMANENT | PropertyAttribute.READONLY,
        )
        unit = write_script(tmp_path / "unit.py", "answer = 0\ndel answer\n")
        with PythonEngine().enter_context() as cx:
            cx.process_file(env, unit)
        assert env.builtins["answer"]() == 42

    def test_enumerable_function_bound_in_globals(self) -> None:
        """Functions without DONTENUM are visible in globals."""
        env = _env(io.StringIO())
        env.define_function("helper", lambda: "ok")
        assert env.globals["helper"]() == "ok"

    @pytest.mark.parametrize(
        "attributes",
        [
            PropertyAttribute.READONLY,
            PropertyAttribute.PERMANENT,
            PropertyAttribute.READONLY | PropertyAttribute.PERMANENT,
        ],
    )
    def test_protection_requires_dontenum(self, attributes: PropertyAttribute) -> None:
        """READONLY/PERMANENT cannot be honored for a rebindable globals entry."""
        env = _env(io.StringIO())
        with pytest.raises(HostError, match="enumerable"):
            env.define_function("answer", lambda: 42, attributes)
        assert "answer" not in env.globals
        assert "answer" not in env.builtins

    def test_define_before_init_raises(self) -> None:
        """Host functions need an initialized environment."""
        env = GlobalEnvironment()
        with pytest.raises(HostError):
            env.define_function("answer", lambda: 42)

    def test_host_function_checks_cancellation(self) -> None:
        """Calling a host function after cancellation raises RunCancelled."""
        env = _env(io.StringIO())
        env.define_function("answer", lambda: 42)
        env.cancel_event.set()
        with pytest.raises(RunCancelled):
            env.globals["answer"]()


# ===========================================================================
# Diagnostics
# ===========================================================================


@pytest.mark.unit
class TestProcessFile:
    """process_file reports script errors instead of raising."""

    def _run(self, unit: Path) -> DiagnosticSink:
        env = _env(io.StringIO())
        with PythonEngine().enter_context() as cx:
            sink = DiagnosticSink(cx.error_reporter)
            cx.error_reporter = sink
            cx.process_file(env, unit)
        return sink

    def test_syntax_error_reported(self, tmp_path: Path) -> None:
        """A compile error becomes one diagnostic with its location."""
        unit = write_script(tmp_path / "unit.py", "ok = 1\nx = = 2\n")
        (diag,) = self._run(unit).diagnostics
        assert diag.source_name == str(unit)
        assert diag.line == 2
        assert diag.line_source == "x = = 2"
        assert diag.column >= 1

    def test_runtime_error_reported_at_unit_line(self, tmp_path: Path) -> None:
        """An uncaught exception is reported at the unit's failing line."""
        unit = write_script(tmp_path / "unit.py", "a = 1\nb = a / 0\n")
        (diag,) = self._run(unit).diagnostics
        assert diag.message.startswith("ZeroDivisionError:")
        assert diag.line == 2
        assert diag.line_source == "b = a / 0"

    def test_runtime_error_in_nested_call_uses_innermost_frame(self, tmp_path: Path) -> None:
        """The innermost frame belonging to the unit is reported."""
        unit = write_script(
            tmp_path / "unit.py",
            """\
            def inner():
                return {}["missing"]

            inner()
            """,
        )
        (diag,) = self._run(unit).diagnostics
        assert diag.message.startswith("KeyError:")
        assert diag.line == 2

    def test_execution_stops_at_first_runtime_error(self, tmp_path: Path) -> None:
        """Statements after an uncaught error do not run."""
        out = io.StringIO()
        env = _env(out)
        unit = write_script(tmp_path / "unit.py", 'raise ValueError("x")\nprint("after")\n')
        with PythonEngine().enter_context() as cx:
            cx.error_reporter = DiagnosticSink(cx.error_reporter)
            cx.process_file(env, unit)
        assert out.getvalue() == ""

    def test_missing_file_reported(self, tmp_path: Path) -> None:
        """An unreadable file is a script diagnostic, not an exception."""
        (diag,) = self._run(tmp_path / "absent.py").diagnostics
        assert "Couldn't read file" in diag.message

    def test_caught_exceptions_are_not_reported(self, tmp_path: Path) -> None:
        """Exceptions handled by the script itself leave no diagnostic."""
        unit = write_script(
            tmp_path / "unit.py",
            """\
            try:
                1 / 0
            except ZeroDivisionError:
                pass
            """,
        )
        assert self._run(unit).diagnostics == ()

    def test_compile_warning_forwarded(self, tmp_path: Path) -> None:
        """Compile-time warnings reach the channel's warning() and are not errors."""
        unit = write_script(tmp_path / "unit.py", 'pattern = "\\d+"\n')
        reporter = MagicMock(spec=ConsoleReporter)
        env = _env(io.StringIO())
        with PythonEngine().enter_context() as cx:
            sink = DiagnosticSink(reporter)
            cx.error_reporter = sink
            cx.process_file(env, unit)
        assert reporter.warning.call_count >= 1
        args = reporter.warning.call_args_list[0].args
        assert args[1] == str(unit)
        assert args[2] == 1
        assert sink.diagnostics == ()

    def test_default_channel_raises_on_error(self, tmp_path: Path) -> None:
        """Without a sink, the default channel turns errors into EvaluatorError."""
        unit = write_script(tmp_path / "unit.py", "x = = 2\n")
        env = _env(io.StringIO())
        with PythonEngine().enter_context() as cx, pytest.raises(EvaluatorError) as excinfo:
            cx.process_file(env, unit)
        assert excinfo.value.line == 1

    def test_host_error_propagates(self, tmp_path: Path) -> None:
        """HostError raised by a host function is not a script diagnostic."""

        def explode() -> None:
            msg = "host side"
            raise HostError(msg)

        env = _env(io.StringIO())
        env.define_function("explode", explode, PropertyAttribute.DONTENUM)
        unit = write_script(tmp_path / "unit.py", "explode()\n")
        with PythonEngine().enter_context() as cx:
            cx.error_reporter = DiagnosticSink(cx.error_reporter)
            with pytest.raises(HostError, match="host side"):
                cx.process_file(env, unit)

    def test_exit_propagates(self, tmp_path: Path) -> None:
        """quit() escapes process_file so the driver can record the exit code."""
        env = _env(io.StringIO())
        unit = write_script(tmp_path / "unit.py", "quit(3)\n")
        with PythonEngine().enter_context() as cx:
            cx.error_reporter = DiagnosticSink(cx.error_reporter)
            with pytest.raises(SystemExit) as excinfo:
                cx.process_file(env, unit)
        assert excinfo.value.code == 3


@pytest.mark.unit
class TestCompiledScript:
    """Compiled scripts can be reused across environments."""

    def test_execute_in_two_environments(self, tmp_path: Path) -> None:
        """One compiled script runs independently in separate environments."""
        unit = write_script(tmp_path / "lib.py", "counter = globals().get('counter', 0) + 1\n")
        first, second = _env(io.StringIO()), _env(io.StringIO())
        with PythonEngine().enter_context() as cx:
            script = cx.compile_file(unit)
            cx.execute(script, first)
            cx.execute(script, first)
            cx.execute(script, second)
        assert first.globals["counter"] == 2
        assert second.globals["counter"] == 1

    def test_line_lookup(self) -> None:
        """line() returns 1-based lines and None out of range."""
        with PythonEngine().enter_context() as cx:
            script = cx.compile_source("a = 1\nb = 2\n", "inline")
        assert script.line(2) == "b = 2"
        assert script.line(0) is None
        assert script.line(3) is None
