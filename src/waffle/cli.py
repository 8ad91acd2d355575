"""
Command-line interface for Waffle.

Runs Well-Architected Framework Reviews against the Terraform in the
current directory and manages the resulting review sessions.

Commands:
    review   Start a new review of a Terraform directory
    resume   Continue an interrupted or failed review
    status   Show the status of a review session
    results  Export the results of a review (JSON or PDF)
    sessions List stored review sessions
    init     Validate configuration and AWS access

Exit codes:
    0  Success
    1  General error
    2  Invalid arguments
    3  Directory access error
    4  Bedrock API error
    5  Analysis incomplete (IaC parsing or syntax error)

Usage:
    waffle review --workload-id my-app
    waffle review --workload-id my-app --scope pillar --pillar security
    waffle results 3f6c... --format pdf --output report.pdf
"""

import argparse
import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import Any

from waffle import __version__
from waffle.bedrock_client import BedrockClient, BedrockClientConfig
from waffle.config import Settings, config_file_paths, load_settings, save_settings
from waffle.engine import ReviewEngine
from waffle.errors import (
    BedrockAPIError,
    BedrockInvocationFailedError,
    DirectoryAccessError,
    IaCParsingError,
    InvalidWorkloadIDError,
    PillarRequiredError,
    QuestionIDRequiredError,
    TerraformSyntaxError,
    ValidationError,
    WaffleError,
    is_error_kind,
)
from waffle.iac_analyzer import IaCAnalyzer
from waffle.logging_config import get_logger, log_with_context, setup_logging
from waffle.models import ReviewScope, ScopeLevel, SessionStatus, parse_pillar
from waffle.output import (
    results_output,
    review_output,
    status_output,
    write_json,
    write_json_error,
    write_json_success,
)
from waffle.progress import TerminalProgressReporter
from waffle.session_store import SessionStore
from waffle.setup_checks import run_setup_checks
from waffle.wafr_evaluator import WAFREvaluator

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_INVALID_ARGUMENTS = 2
EXIT_DIRECTORY_ACCESS = 3
EXIT_BEDROCK_API_ERROR = 4
EXIT_ANALYSIS_INCOMPLETE = 5

# Commands whose stdout is a JSON document
_JSON_COMMANDS = frozenset({"review", "resume", "status", "results", "sessions"})

_INVALID_ARGUMENT_ERRORS: tuple[type[BaseException], ...] = (
    ValidationError,
    InvalidWorkloadIDError,
    PillarRequiredError,
    QuestionIDRequiredError,
)


def exit_code_for(error: BaseException) -> int:
    """
    Map an exception (or anything in its cause chain) to an exit code.

    Args:
        error: Exception raised by a command

    Returns:
        Process exit code
    """
    if is_error_kind(error, DirectoryAccessError):
        return EXIT_DIRECTORY_ACCESS
    if is_error_kind(error, BedrockAPIError) or is_error_kind(error, BedrockInvocationFailedError):
        return EXIT_BEDROCK_API_ERROR
    if is_error_kind(error, IaCParsingError) or is_error_kind(error, TerraformSyntaxError):
        return EXIT_ANALYSIS_INCOMPLETE
    if isinstance(error, _INVALID_ARGUMENT_ERRORS):
        return EXIT_INVALID_ARGUMENTS
    return EXIT_GENERAL_ERROR


def error_code_for(exit_code: int) -> str:
    """Error code string written in JSON error envelopes."""
    return {
        EXIT_INVALID_ARGUMENTS: "INVALID_ARGUMENTS",
        EXIT_DIRECTORY_ACCESS: "DIRECTORY_ACCESS_ERROR",
        EXIT_BEDROCK_API_ERROR: "BEDROCK_API_ERROR",
        EXIT_ANALYSIS_INCOMPLETE: "ANALYSIS_INCOMPLETE",
    }.get(exit_code, "GENERAL_ERROR")


# =============================================================================
# Argument parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """
    Build the argument parser with all subcommands.

    Returns:
        Configured parser
    """
    parser = argparse.ArgumentParser(
        prog="waffle",
        description="Waffle - Automated AWS Well-Architected Framework Reviews for Terraform",
    )
    _ = parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _ = parser.add_argument("--region", help="AWS region for Bedrock and the Well-Architected Tool")
    _ = parser.add_argument("--profile", help="AWS named profile")
    _ = parser.add_argument("--model-id", help="Bedrock model id")
    _ = parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    verbosity = parser.add_mutually_exclusive_group()
    _ = verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log errors, no progress output")
    _ = verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    review_parser = subparsers.add_parser("review", help="Start a new review")
    _ = review_parser.add_argument("--workload-id", required=True, help="Workload identifier")
    _ = review_parser.add_argument("--plan-file", help="Terraform plan JSON (terraform show -json)")
    _ = review_parser.add_argument(
        "--scope",
        choices=[level.value for level in ScopeLevel],
        help="Review scope (default: wafr.default_scope, normally workload)",
    )
    _ = review_parser.add_argument("--pillar", help="Pillar for --scope pillar")
    _ = review_parser.add_argument("--question-id", help="Question id for --scope question")
    _ = review_parser.add_argument("--directory", default=".", help="Terraform directory (default: .)")

    resume_parser = subparsers.add_parser("resume", help="Resume a review session")
    _ = resume_parser.add_argument("session_id", help="Session id")

    status_parser = subparsers.add_parser("status", help="Show review session status")
    _ = status_parser.add_argument("session_id", help="Session id")

    results_parser = subparsers.add_parser("results", help="Export review results")
    _ = results_parser.add_argument("session_id", help="Session id")
    _ = results_parser.add_argument("--format", choices=["json", "pdf"], default="json", help="Output format")
    _ = results_parser.add_argument("--output", help="Output file (required for pdf)")
    _ = results_parser.add_argument(
        "--offline",
        action="store_true",
        help="Build JSON results from the stored session only, without calling AWS",
    )

    sessions_parser = subparsers.add_parser("sessions", help="List review sessions")
    _ = sessions_parser.add_argument("--workload-id", help="Only sessions for this workload")

    _ = subparsers.add_parser("init", help="Validate configuration and AWS access")

    return parser


def settings_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """
    Translate global flags into nested settings overrides.

    ``--region`` applies to both AWS and Bedrock; ``--verbose`` and
    ``--quiet`` take precedence over ``--log-level``.
    """
    overrides: dict[str, dict[str, Any]] = {}
    if args.region:
        overrides.setdefault("aws", {})["region"] = args.region
        overrides.setdefault("bedrock", {})["region"] = args.region
    if args.profile:
        overrides.setdefault("aws", {})["profile"] = args.profile
    if args.model_id:
        overrides.setdefault("bedrock", {})["model_id"] = args.model_id

    level = args.log_level
    if args.verbose:
        level = "DEBUG"
    elif args.quiet:
        level = "ERROR"
    if level:
        overrides.setdefault("logging", {})["level"] = level
    return dict(overrides)


def parse_review_scope(
    scope: str | None,
    pillar: str | None,
    question_id: str | None,
    default_scope: str = "workload",
) -> ReviewScope:
    """
    Build and validate a review scope from command-line values.

    Args:
        scope: "workload", "pillar" or "question" (None for the default)
        pillar: Pillar name when scope is pillar
        question_id: Question id when scope is question
        default_scope: Scope used when ``scope`` is None

    Returns:
        Validated ReviewScope

    Raises:
        ValidationError: Unknown scope or pillar name
        PillarRequiredError: Pillar scope without --pillar
        QuestionIDRequiredError: Question scope without --question-id
    """
    level = (scope or default_scope).strip().lower()
    if level == ScopeLevel.WORKLOAD.value:
        review_scope = ReviewScope.workload()
    elif level == ScopeLevel.PILLAR.value:
        if not pillar:
            raise PillarRequiredError("--pillar is required when --scope is pillar")
        review_scope = ReviewScope.for_pillar(parse_pillar(pillar))
    elif level == ScopeLevel.QUESTION.value:
        review_scope = ReviewScope.for_question(question_id or "")
    else:
        raise ValidationError("scope", "must be one of: workload, pillar, question", value=scope)
    review_scope.validate_scope()
    return review_scope


# =============================================================================
# Wiring
# =============================================================================


def build_engine(settings: Settings, directory: str | Path = ".") -> ReviewEngine:
    """
    Construct a review engine from settings.

    Args:
        settings: Loaded settings
        directory: Terraform working directory

    Returns:
        Wired ReviewEngine
    """
    bedrock_config = BedrockClientConfig(
        model_id=settings.bedrock.model_id,
        region=settings.bedrock.region,
        max_tokens=settings.bedrock.max_tokens,
        temperature=settings.bedrock.temperature,
        max_retries=settings.bedrock.max_retries,
        timeout_seconds=settings.bedrock.timeout,
        profile=settings.aws.profile,
    )
    analyzer = IaCAnalyzer(
        working_dir=directory,
        max_file_size=settings.max_file_size_bytes,
        max_files=settings.iac.max_files,
        redact_sensitive_data=settings.security.redact_sensitive_data,
    )
    evaluator = WAFREvaluator(
        region=settings.aws.region or settings.bedrock.region,
        profile=settings.aws.profile or None,
        max_retries=settings.bedrock.max_retries,
    )
    return ReviewEngine(
        session_store=SessionStore(settings.storage.session_dir),
        iac_analyzer=analyzer,
        wafr_evaluator=evaluator,
        bedrock_client=BedrockClient(bedrock_config),
    )


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """
    Turn the first Ctrl-C into a cancellation request.

    The first SIGINT sets the yielded event so the running review stops at
    the next checkpoint; a second SIGINT raises KeyboardInterrupt.
    """
    cancel_event = threading.Event()

    def handler(signum: int, frame: FrameType | None) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        print("\nCancelling after the current step (press Ctrl-C again to abort)...", file=sys.stderr)
        log_with_context(logger, "warning", "Cancellation requested", signal=signum)

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel_event
    finally:
        _ = signal.signal(signal.SIGINT, previous)


def _progress(args: argparse.Namespace) -> TerminalProgressReporter | None:
    return None if args.quiet else TerminalProgressReporter()


def _echo(args: argparse.Namespace, message: str) -> None:
    if not args.quiet:
        print(message, file=sys.stderr)


# =============================================================================
# Commands
# =============================================================================


def cmd_review(args: argparse.Namespace, settings: Settings) -> int:
    """
    Start and run a new review.

    Args:
        args: Command arguments
        settings: Application settings

    Returns:
        Exit code
    """
    if not args.workload_id.strip():
        raise InvalidWorkloadIDError("--workload-id must not be empty")

    scope = parse_review_scope(args.scope, args.pillar, args.question_id, settings.wafr.default_scope)
    directory = Path(args.directory).resolve()
    if not directory.is_dir():
        raise DirectoryAccessError(str(directory), "not a directory")

    plan_file = args.plan_file or settings.iac.plan_file_path or None

    _echo(args, "Starting WAFR review...")
    _echo(args, f"Workload ID: {args.workload_id}")
    _echo(args, f"Directory: {directory}")
    _echo(args, f"Scope: {scope.describe()}")
    if plan_file:
        _echo(args, f"Analysis: Terraform plan JSON ({plan_file})")
    else:
        _echo(args, "Analysis: Terraform configuration files (.tf)")

    engine = build_engine(settings, directory)
    with cancel_on_interrupt() as cancel_event:
        session = engine.initiate_review(args.workload_id, scope, plan_file, cancel_event)
        log_with_context(logger, "info", "Executing review", session_id=session.session_id)
        _ = engine.execute_review(session, _progress(args), cancel_event)

    output = review_output(session)
    output.metadata = {
        **(output.metadata or {}),
        "scope": scope.describe(),
        "directory": str(directory),
    }
    if plan_file:
        output.metadata["plan_file"] = plan_file
    write_json_success(sys.stdout, output)
    return EXIT_SUCCESS


def cmd_resume(args: argparse.Namespace, settings: Settings) -> int:
    """
    Resume a review session from its last checkpoint.

    Args:
        args: Command arguments
        settings: Application settings

    Returns:
        Exit code
    """
    _echo(args, f"Resuming session: {args.session_id}")
    stored = SessionStore(settings.storage.session_dir).load_session(args.session_id)
    engine = build_engine(settings, stored.working_directory or ".")
    with cancel_on_interrupt() as cancel_event:
        session = engine.resume_session(args.session_id, _progress(args), cancel_event)
    write_json_success(sys.stdout, review_output(session))
    return EXIT_SUCCESS


def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    """Print the status of a session."""
    session = SessionStore(settings.storage.session_dir).load_session(args.session_id)

    _echo(args, f"Session {session.session_id}")
    _echo(args, f"  Status: {session.status.value}")
    _echo(args, f"  Workload ID: {session.workload_id}")
    _echo(args, f"  AWS Workload ID: {session.aws_workload_id}")
    if session.checkpoint.value:
        _echo(args, f"  Checkpoint: {session.checkpoint.value}")

    write_json_success(sys.stdout, status_output(session))
    return EXIT_SUCCESS


def cmd_results(args: argparse.Namespace, settings: Settings) -> int:
    """
    Export the results of a session.

    JSON goes to ``--output`` or stdout; PDF requires ``--output``.

    Args:
        args: Command arguments
        settings: Application settings

    Returns:
        Exit code
    """
    if args.format == "pdf" and not args.output:
        print("Error: --output is required for pdf format", file=sys.stderr)
        return EXIT_INVALID_ARGUMENTS

    session = SessionStore(settings.storage.session_dir).load_session(args.session_id)
    if session.status == SessionStatus.FAILED:
        print("Error: session failed, cannot retrieve results", file=sys.stderr)
        return EXIT_GENERAL_ERROR
    if session.status != SessionStatus.COMPLETED:
        print(f"Warning: session is not completed (status: {session.status.value})", file=sys.stderr)

    if args.format == "json" and args.offline:
        data: Any = results_output(session)
        if args.output:
            with open(args.output, "w", encoding="utf-8") as handle:
                write_json_success(handle, data)
            _echo(args, f"Results written to {args.output}")
        else:
            write_json_success(sys.stdout, data)
        return EXIT_SUCCESS

    evaluator = WAFREvaluator(
        region=settings.aws.region or settings.bedrock.region,
        profile=settings.aws.profile or None,
        max_retries=settings.bedrock.max_retries,
    )

    if args.format == "pdf":
        pdf = evaluator.get_consolidated_report(session.aws_workload_id, "pdf")
        _ = Path(args.output).write_bytes(pdf)
        _echo(args, f"PDF report written to {args.output}")
        return EXIT_SUCCESS

    report = evaluator.get_results_json(session.aws_workload_id, session)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            write_json(handle, report)
        _echo(args, f"Results written to {args.output}")
    else:
        write_json(sys.stdout, report)
    return EXIT_SUCCESS


def cmd_sessions(args: argparse.Namespace, settings: Settings) -> int:
    """List stored sessions, newest first."""
    store = SessionStore(settings.storage.session_dir)
    sessions = store.list_sessions(args.workload_id) if args.workload_id else store.list_all_sessions()
    write_json_success(sys.stdout, [status_output(s) for s in sessions])
    return EXIT_SUCCESS


def cmd_init(args: argparse.Namespace, settings: Settings) -> int:
    """
    Validate configuration, prepare storage and check AWS access.

    Writes a default config file when none of the config locations exist.

    Args:
        args: Command arguments
        settings: Application settings

    Returns:
        Exit code (0 when every check passes)
    """
    print("Validating Waffle setup...\n", file=sys.stderr)
    print("Configuration loaded successfully", file=sys.stderr)
    print(f"  Bedrock Region: {settings.bedrock.region}", file=sys.stderr)
    print(f"  Bedrock Model: {settings.bedrock.model_id}", file=sys.stderr)
    if settings.aws.profile:
        print(f"  AWS Profile: {settings.aws.profile}", file=sys.stderr)
    if settings.aws.region:
        print(f"  AWS Region: {settings.aws.region}", file=sys.stderr)

    for directory in (settings.storage.session_dir, settings.storage.log_dir):
        Path(directory).mkdir(parents=True, exist_ok=True)
    print(f"  Session directory: {settings.storage.session_dir}", file=sys.stderr)

    if not any(path.exists() for path in config_file_paths()):
        written = save_settings(settings, config_file_paths()[0])
        print(f"  Wrote default configuration to {written}", file=sys.stderr)

    print("\nRunning validation checks...\n", file=sys.stderr)
    results = run_setup_checks(settings)
    for result in results:
        mark = "✓" if result.success else "✗"
        print(f"{mark} {result.name}\n  {result.message}", file=sys.stderr)
        if result.error:
            print(f"  Error: {result.error}", file=sys.stderr)
        print("", file=sys.stderr)

    if all(result.success for result in results):
        print("✓ All validation checks passed!", file=sys.stderr)
        print("\nNext steps:", file=sys.stderr)
        print("  1. Navigate to your IaC directory", file=sys.stderr)
        print("  2. Run: waffle review --workload-id <your-workload-id>", file=sys.stderr)
        return EXIT_SUCCESS

    print("✗ Some validation checks failed", file=sys.stderr)
    print("\nPlease address the issues above before running reviews.", file=sys.stderr)
    return EXIT_GENERAL_ERROR


_COMMANDS = {
    "review": cmd_review,
    "resume": cmd_resume,
    "status": cmd_status,
    "results": cmd_results,
    "sessions": cmd_sessions,
    "init": cmd_init,
}


def main(argv: list[str] | None = None) -> int:
    """
    CLI main entry point.

    Args:
        argv: Arguments (defaults to ``sys.argv[1:]``)

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    command: str | None = str(args.command) if args.command else None
    if not command:
        parser.print_help()
        return EXIT_INVALID_ARGUMENTS

    try:
        settings = load_settings(settings_overrides(args))
    except WaffleError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return EXIT_GENERAL_ERROR

    setup_logging(settings.logging.level, settings.logging.format, settings.storage.log_dir)

    if settings.storage.retention_days > 0:
        try:
            _ = SessionStore(settings.storage.session_dir).cleanup_old_sessions(
                settings.storage.retention_days
            )
        except WaffleError as e:
            log_with_context(logger, "warning", "Session cleanup failed", error=str(e))

    try:
        return _COMMANDS[command](args, settings)
    except KeyboardInterrupt:
        print("\nAborted", file=sys.stderr)
        return EXIT_GENERAL_ERROR
    except Exception as e:
        exit_code = exit_code_for(e)
        log_with_context(
            logger,
            "error",
            "Command failed",
            command=command,
            error=str(e),
            exit_code=exit_code,
        )
        print(f"Error: {e}", file=sys.stderr)
        if command in _JSON_COMMANDS:
            write_json_error(sys.stdout, error_code_for(exit_code), str(e))
        return exit_code
