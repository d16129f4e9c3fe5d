"""Shared fixtures for the scriptharness test suite."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import textwrap
from typing import Any

from scriptharness.engine import PythonEngine
from scriptharness.execution import ExecutionDriver, FrameworkScript, load_framework
from scriptharness.models import HarnessConfig, RunParameters, RunVerdict
from scriptharness.observers import RecordingObserver
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------

FRAMEWORK_SOURCE = """\
BOOTSTRAP = ["framework"]


def report_compare(expected, actual, description=""):
    if expected != actual:
        print(f"FAILED! {description}: expected {expected!r}, got {actual!r}")
"""


def make_config(**overrides: Any) -> HarnessConfig:
    """Build a valid HarnessConfig with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed HarnessConfig instance.
    """
    defaults: dict[str, Any] = {}
    defaults.update(overrides)
    return HarnessConfig(**defaults)


def write_script(path: Path, content: str) -> Path:
    """Write dedented *content* to *path*, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


@dataclass
class SuiteLayout:
    """A three-level suite tree: root (framework) / suite / section."""

    root: Path
    suite: Path
    section: Path

    @property
    def framework_file(self) -> Path:
        return self.root / "shell.py"

    def unit(self, name: str, content: str) -> Path:
        """Write a test unit into the section directory."""
        return write_script(self.section / name, content)


def make_suite(
    tmp_path: Path,
    *,
    framework: str = FRAMEWORK_SOURCE,
    suite_shell: str | None = 'BOOTSTRAP.append("suite")\n',
    section_shell: str | None = 'BOOTSTRAP.append("section")\n',
) -> SuiteLayout:
    """Create a suite tree under *tmp_path*; ``None`` omits a bootstrap file."""
    layout = SuiteLayout(
        root=tmp_path / "tests",
        suite=tmp_path / "tests" / "lang",
        section=tmp_path / "tests" / "lang" / "basics",
    )
    layout.section.mkdir(parents=True)
    write_script(layout.framework_file, framework)
    if suite_shell is not None:
        write_script(layout.suite / "shell.py", suite_shell)
    if section_shell is not None:
        write_script(layout.section / "shell.py", section_shell)
    return layout


def run_unit(
    driver: ExecutionDriver,
    unit: Path,
    *,
    timeout_ms: int = 10000,
    fork: bool = True,
) -> RunVerdict:
    """Run *unit* with a fresh engine and return what a recorder saw."""
    recorder = RecordingObserver()
    engine = PythonEngine()
    parameters = RunParameters(timeout_ms=timeout_ms)
    if fork:
        driver.run(engine, unit, parameters, recorder)
    else:
        driver.run_no_fork(engine, unit, parameters, recorder)
    return recorder.verdict()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine() -> PythonEngine:
    """Return a fresh CPython-backed engine."""
    return PythonEngine()


@pytest.fixture()
def suite(tmp_path: Path) -> SuiteLayout:
    """Provide a suite tree with framework, suite and section bootstrap files."""
    return make_suite(tmp_path)


@pytest.fixture()
def framework(suite: SuiteLayout, engine: PythonEngine) -> FrameworkScript:
    """Return the suite's framework script, pre-compiled."""
    return load_framework(engine, suite.framework_file)


@pytest.fixture()
def driver(framework: FrameworkScript) -> ExecutionDriver:
    """Return a driver with a short cancellation grace period."""
    return ExecutionDriver(framework, cancel_grace_ms=200)
