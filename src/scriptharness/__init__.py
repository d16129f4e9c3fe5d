"""Conformance-test harness: run one script unit, reduce it to a verdict."""

from scriptharness.engine import FrameworkError, PythonEngine
from scriptharness.execution import ExecutionDriver, load_framework
from scriptharness.models import HarnessConfig, RunParameters, RunVerdict, ScriptDiagnostic
from scriptharness.observers import (
    CompositeObserver,
    LoggingObserver,
    RecordingObserver,
    VerdictObserver,
    compose,
)

__all__ = [
    "CompositeObserver",
    "ExecutionDriver",
    "FrameworkError",
    "HarnessConfig",
    "LoggingObserver",
    "PythonEngine",
    "RecordingObserver",
    "RunParameters",
    "RunVerdict",
    "ScriptDiagnostic",
    "VerdictObserver",
    "compose",
    "load_framework",
]
