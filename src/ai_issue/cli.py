"""CLI entry point for ai-issue.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``ai-issue = "ai_issue.cli:main"``. Parses the
command line, loads the configuration and delegates to the synchronous
entry points in ``ai_issue.orchestrator``.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import TYPE_CHECKING

from ai_issue import __version__
from ai_issue.agent import check_agent_cli
from ai_issue.config import (
    CONFIG_FILE,
    load_config,
    reset_config,
    set_config_value,
    validate_config,
)
from ai_issue.errors import IssueSolverError
from ai_issue.models import TaskOptions
from ai_issue.orchestrator import (
    configure_logging,
    evaluate_issue_sync,
    run_batch_sync,
    solve_issue_sync,
)

if TYPE_CHECKING:
    from ai_issue.config import SolverConfig
    from ai_issue.models import BatchResult, TaskOutcome

_SEP = "=" * 60


def _positive_int(value: str) -> int:
    """Argparse type for ``--concurrency``."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return number


def _add_run_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-eval",
        action="store_true",
        help="Skip the evaluation phase.",
    )
    parser.add_argument("--model", default=None, help="Override the configured model.")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log agent command lines and run the agent at debug level.",
    )


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser`` with one sub-command per action.
    """
    parser = argparse.ArgumentParser(
        prog="ai-issue",
        description="AI issue solver: research, solve and evaluate issues with the Copilot CLI.",
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help=f"Path to the config file (default: {CONFIG_FILE}).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    solve = sub.add_parser("solve", help="Research and solve one issue.")
    solve.add_argument("issue", help="Issue number.")
    _add_run_flags(solve)

    evaluate = sub.add_parser("evaluate", help="Evaluate an already solved issue.")
    evaluate.add_argument("issue", help="Issue number.")
    evaluate.add_argument("--model", default=None, help="Override the configured model.")
    evaluate.add_argument("--debug", action="store_true", help="Debug logging.")

    batch = sub.add_parser("batch", help="Process several issues concurrently.")
    batch.add_argument("issues", nargs="+", help="Issue numbers.")
    batch.add_argument(
        "--concurrency",
        type=_positive_int,
        default=3,
        help="Maximum number of issues processed at once (default: 3).",
    )
    _add_run_flags(batch)

    config = sub.add_parser("config", help="Show or change the configuration.")
    config.add_argument("action", choices=["show", "get", "set", "reset"])
    config.add_argument("key", nargs="?", default=None)
    config.add_argument("value", nargs="?", default=None)

    sub.add_parser("check", help="Check the environment and configuration.")
    sub.add_parser("version", help="Print the version.")
    return parser


def _print_startup_summary(title: str, config: SolverConfig, options: TaskOptions) -> None:
    """Print a startup summary banner to stdout."""
    print(_SEP)
    print(title)
    print(_SEP)
    print(f"  Repository:   {config.repo_path or '(not set)'}")
    print(f"  Reports:      {config.report_path}")
    print(f"  Model:        {options.model_override or config.model}")
    print(f"  Evaluation:   {'skipped' if options.skip_evaluation else 'enabled'}")
    print(_SEP)


def _print_outcome(outcome: TaskOutcome) -> None:
    print(f"Issue #{outcome.task_id} completed ({outcome.classification}).")
    print(f"Solution report: {outcome.solution_path}")
    if outcome.evaluation_path:
        print(f"Evaluation report: {outcome.evaluation_path}")
    print(f"Total duration: {outcome.duration_seconds:.1f}s")
    for warning in outcome.warnings:
        print(f"Warning: {warning}")


def _print_batch_result(result: BatchResult) -> None:
    print(_SEP)
    print("Batch Processing Statistics")
    print(_SEP)
    print(f"Total: {result.attempted}")
    print(f"Success: {len(result.succeeded)}")
    print(f"Failed: {len(result.failed)}")
    print(f"Concurrency: {result.concurrency}")
    if result.failed:
        print("\nFailed Issues:")
        for failure in result.failed:
            print(f"   - #{failure.task_id}: {failure.cause}")
        print(f"\nDetailed error logs: {result.log_path}")
    if result.succeeded:
        print("\nSuccessful Issues:")
        for task_id in result.succeeded:
            print(f"   - #{task_id}")
    for task_id, warnings in result.warnings.items():
        for warning in warnings:
            print(f"Warning (#{task_id}): {warning}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _preflight(config: SolverConfig) -> None:
    """Fail before any agent run when the agent CLI is not installed."""
    check_agent_cli(config)


def _cmd_solve(args: argparse.Namespace, config: SolverConfig) -> int:
    _preflight(config)
    options = TaskOptions(
        skip_evaluation=args.no_eval,
        debug=args.debug,
        model_override=args.model,
    )
    _print_startup_summary(f"AI Issue Solver: Issue #{args.issue}", config, options)
    outcome = solve_issue_sync(args.issue, options, config)
    _print_outcome(outcome)
    return 0


def _cmd_evaluate(args: argparse.Namespace, config: SolverConfig) -> int:
    _preflight(config)
    options = TaskOptions(debug=args.debug, model_override=args.model)
    path = evaluate_issue_sync(args.issue, options, config)
    print(f"Evaluation report: {path}")
    return 0


def _cmd_batch(args: argparse.Namespace, config: SolverConfig) -> int:
    _preflight(config)
    options = TaskOptions(
        concurrency=args.concurrency,
        skip_evaluation=args.no_eval,
        silent=True,
        debug=args.debug,
        model_override=args.model,
    )
    _print_startup_summary(
        f"Batch Processing: {len(args.issues)} issues ({args.concurrency} concurrent)",
        config,
        options,
    )
    result = run_batch_sync(args.issues, options, config)
    _print_batch_result(result)
    return 0 if result.ok else 1


def _cmd_config(args: argparse.Namespace, config: SolverConfig) -> int:
    if args.action == "show":
        print(json.dumps(config.model_dump(), indent=2))
        print(f"Config file: {args.config_path or CONFIG_FILE}")
        return 0
    if args.action == "get":
        if args.key is None:
            print("Usage: ai-issue config get <key>", file=sys.stderr)
            return 1
        if args.key not in type(config).model_fields:
            print(f"Unknown configuration key: {args.key}", file=sys.stderr)
            return 1
        value = getattr(config, args.key)
        print(json.dumps(value) if isinstance(value, list) else ("" if value is None else value))
        return 0
    if args.action == "set":
        if args.key is None or args.value is None:
            print("Usage: ai-issue config set <key> <value>", file=sys.stderr)
            return 1
        set_config_value(args.key, args.value, args.config_path)
        print(f"{args.key} updated")
        return 0
    reset_config(args.config_path)
    print("Configuration reset to default values")
    return 0


def _cmd_check(config: SolverConfig) -> int:
    checks: list[tuple[str, str | None]] = []
    try:
        version = check_agent_cli(config)
    except FileNotFoundError as exc:
        checks.append(("Agent CLI installed", str(exc)))
    else:
        checks.append((f"Agent CLI installed ({version})", None))

    problems = validate_config(config)
    checks.append(("Configuration valid", "; ".join(problems) if problems else None))

    print(_SEP)
    print("Environment Check")
    print(_SEP)
    for index, (name, problem) in enumerate(checks, start=1):
        print(f"{index}. {'✅' if problem is None else '❌'} {name}")
        if problem is not None:
            print(f"   {problem}")
    all_ok = all(problem is None for _, problem in checks)
    print("All checks passed!" if all_ok else "Some checks failed, please fix the above issues")
    return 0 if all_ok else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> int:
    """Entry point for the ai-issue CLI application.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    parser = _build_parser()
    args = parser.parse_args()

    if args.command == "version":
        print(f"ai-issue {__version__}")
        return 0

    try:
        overrides = {"log_level": "debug"} if getattr(args, "debug", False) else {}
        config = load_config(args.config_path, **overrides)
        configure_logging(config)

        if args.command == "config":
            return _cmd_config(args, config)
        if args.command == "check":
            return _cmd_check(config)
        if args.command == "solve":
            return _cmd_solve(args, config)
        if args.command == "evaluate":
            return _cmd_evaluate(args, config)
        return _cmd_batch(args, config)

    except IssueSolverError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.diagnostics:
            print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
