"""CLI entry point for the script harness.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``scriptharness = "scriptharness.cli:main"``. Loads
the configuration, compiles the framework script, runs one test unit and
prints its verdict.
"""

from __future__ import annotations

import argparse
import sys

from pydantic import ValidationError

from scriptharness.config import apply_env_overrides, configure_logging, load_config
from scriptharness.engine import FrameworkError, PythonEngine
from scriptharness.execution import ExecutionDriver, load_framework
from scriptharness.models import HarnessConfig, RunParameters, RunVerdict
from scriptharness.observers import LoggingObserver, RecordingObserver, compose

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_HARNESS_ERROR = 2


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="scriptharness",
        description="Run one conformance test script and report its verdict.",
    )
    parser.add_argument("unit", help="Path to the test unit script.")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional HarnessConfig YAML file.",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Override the per-run timeout in milliseconds.",
    )
    parser.add_argument(
        "--no-fork",
        action="store_true",
        help="Run on the calling thread without a timeout.",
    )
    return parser


def _print_verdict(verdict: RunVerdict) -> None:
    """Print a one-line verdict followed by failure details."""
    status = "PASSED" if verdict.passed else "FAILED"
    kind = " (negative)" if verdict.negative else ""
    print(f"{status}{kind}: {verdict.unit}")
    if verdict.timed_out:
        print(f"  timed out after {verdict.timeout_ms} ms")
    if verdict.expected_exit_code != verdict.actual_exit_code:
        print(
            f"  exit code: expected {verdict.expected_exit_code}, "
            f"got {verdict.actual_exit_code}"
        )
    for reason in verdict.failures:
        print(f"  {reason.rstrip()}")
    for exc_text in verdict.exceptions:
        print(exc_text.rstrip(), file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the scriptharness CLI.

    Returns:
        0 when the unit passed, 1 when it failed, 2 when the harness itself
        could not start (bad config or broken framework script).
    """
    args = _build_parser().parse_args(argv)

    try:
        config: HarnessConfig = apply_env_overrides(load_config(args.config))
        if args.timeout_ms is not None:
            config = config.model_copy(update={"timeout_ms": args.timeout_ms})
            parameters = RunParameters(timeout_ms=args.timeout_ms)
        else:
            parameters = config.parameters()
    except (FileNotFoundError, ValueError, ValidationError) as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return EXIT_HARNESS_ERROR

    configure_logging(config)
    engine = PythonEngine()
    try:
        framework = load_framework(engine, config.framework_file)
    except FrameworkError as exc:
        print(f"Harness error: {exc}", file=sys.stderr)
        return EXIT_HARNESS_ERROR

    driver = ExecutionDriver.from_config(framework, config)
    recorder = RecordingObserver()
    observer = compose(LoggingObserver(), recorder)
    if args.no_fork:
        driver.run_no_fork(engine, args.unit, parameters, observer)
    else:
        driver.run(engine, args.unit, parameters, observer)

    verdict = recorder.verdict()
    _print_verdict(verdict)
    return EXIT_PASSED if verdict.passed else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
