"""Entry point for running the triage engine from the command line.

This module provides the main entry point for the triage engine.
It handles:
- Configuration loading
- Logging setup with secret sanitization
- Fetching and displaying the composed issue view
- Exporting the visible issues
- Estimating a fix run before dispatching it
- Dispatching a fix run and following its activity until it ends
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from triage_engine._version import __version__
from triage_engine.core.grouping import ALL_KEY
from triage_engine.core.options import PRESETS, ProcessingPreview, get_preset
from triage_engine.core.sorting import DEFAULT_DIRECTIONS
from triage_engine.models.session import (
    Activity,
    ExecutionMetrics,
    ProcessingOptions,
    SessionStatus,
    StreamEvent,
    StreamEventType,
)
from triage_engine.models.view import GroupBy, SearchScope, SortDirection, SortField, ViewResult

if TYPE_CHECKING:
    from triage_engine.core.service import TriageService

log = structlog.get_logger()


def setup_logging(
    debug: bool = False,
    log_format: str = "console",
    file_path: Path | None = None,
    file_enabled: bool = False,
) -> None:
    """Configure structured logging with secret sanitization.

    Args:
        debug: Enable debug logging if True
        log_format: Output format ("json" or "console")
        file_path: Path to log file (if file logging enabled)
        file_enabled: Whether to enable file logging
    """
    from triage_engine.utils.logging import LogFormat, LogLevel, configure_logging

    level = LogLevel.DEBUG if debug else LogLevel.INFO
    configure_logging(
        level=level,
        log_format=LogFormat(log_format.lower()),
        file_path=file_path,
        file_enabled=file_enabled,
    )


def _id_list(value: str) -> list[str]:
    ids = [part.strip() for part in value.split(",") if part.strip()]
    if not ids:
        raise argparse.ArgumentTypeError("expected a comma-separated list of issue IDs")
    return ids


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed argument namespace
    """
    parser = argparse.ArgumentParser(
        prog="triage-engine",
        description="Triage engine - search, filter and bulk-fix provider issues",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: TRIAGE_* environment only)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Parse config and validate without fetching issues",
    )
    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log output format (default: console)",
    )

    view = parser.add_argument_group("view")
    view.add_argument("--search", default="", help="Search query")
    view.add_argument("--scope", choices=[s.value for s in SearchScope], help="Search scope")
    view.add_argument(
        "--provider", action="append", default=[], help="Keep only this provider (repeatable)"
    )
    view.add_argument(
        "--severity", action="append", default=[], help="Keep only this severity (repeatable)"
    )
    view.add_argument("--min-priority", type=int, help="Lowest priority to show")
    view.add_argument("--sort", choices=[f.value for f in SortField], help="Sort field")
    view.add_argument(
        "--direction", choices=[d.value for d in SortDirection], help="Sort direction"
    )
    view.add_argument("--group-by", choices=[g.value for g in GroupBy], help="Group issues")

    actions = parser.add_argument_group("actions")
    actions.add_argument("--export", choices=["csv", "json"], help="Print visible issues")
    actions.add_argument(
        "--process",
        type=_id_list,
        metavar="ID,...",
        help="Dispatch a fix run for these issues and follow it",
    )
    actions.add_argument(
        "--preset",
        choices=[preset.id for preset in PRESETS],
        help="Run options preset for --process (default: processing config)",
    )
    actions.add_argument(
        "--estimate",
        action="store_true",
        help="With --process, print the cost and time estimate instead of running",
    )

    return parser.parse_args(argv)


def render_view(result: ViewResult) -> str:
    """Plain-text listing of a composed view."""
    lines = [f"{result.visible_count} of {result.total} issues"]
    for group in result.groups:
        if group.key != ALL_KEY:
            lines.append(f"\n{group.label} ({group.count})")
        for issue in group.issues:
            lines.append(
                f"  [{issue.priority:>3}] {issue.severity.value:<8} {issue.id:<24} {issue.title}"
            )
    return "\n".join(lines)


def render_event(event: StreamEvent) -> str | None:
    """One line for a live event; None for heartbeats."""
    if event.type is StreamEventType.HEARTBEAT:
        return None
    prefix = f"[{event.issue_id}]"
    payload = event.payload
    if isinstance(payload, Activity):
        tool = f" {payload.tool}" if payload.tool else ""
        return f"{prefix} {payload.type.value}{tool} ({payload.status.value}): {payload.details}"
    if isinstance(payload, ExecutionMetrics):
        return (
            f"{prefix} iteration {payload.iteration}/{payload.max_iterations}, "
            f"${payload.total_cost_usd:.4f}"
        )
    message = event.message
    if message:
        return f"{prefix} {event.type.value}: {message}"
    return f"{prefix} {event.type.value}"


def render_preview(preview: ProcessingPreview) -> str:
    """Plain-text estimate for a dispatch that has not started."""
    opts = preview.options
    label = preview.preset_id or "custom"
    lines = [
        f"{preview.issue_count} issues, {opts.mode} with {opts.model}, "
        f"up to {opts.max_iterations} iterations ({label})",
        f"Cost: ${preview.cost.min:.2f}-${preview.cost.max:.2f} "
        f"(~${preview.cost.average:.2f})",
        f"Time: {preview.duration.describe()}",
    ]
    lines.extend(f"Warning: {warning}" for warning in preview.warnings)
    return "\n".join(lines)


def _apply_view_args(service: "TriageService", args: argparse.Namespace) -> None:
    pipeline = service.pipeline
    if args.search or args.scope:
        pipeline.set_query(args.search, args.scope)
    if args.provider:
        pipeline.filters.set_providers(args.provider)
    if args.severity:
        pipeline.filters.set_severities(args.severity)
    if args.min_priority is not None:
        pipeline.filters.set_priority_range(args.min_priority, 100)
    if args.sort:
        field = SortField(args.sort)
        pipeline.sort.set(field, args.direction or DEFAULT_DIRECTIONS[field])
    elif args.direction:
        pipeline.sort.set(pipeline.sort.field, args.direction)
    if args.group_by:
        pipeline.grouping.set_group_by(args.group_by)


async def follow_run(
    service: "TriageService",
    issue_ids: list[str],
    options: ProcessingOptions | None = None,
) -> int:
    """Dispatch a run and print its events until every session ends.

    SIGINT and SIGTERM cancel the run; the agent is terminated before
    this returns.

    Returns:
        0 if every session completed, 1 otherwise
    """
    handle = await service.process(issue_ids, options)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle.cancel, "Interrupted")
    try:
        async with service.stream(handle.issue_ids, handle=handle) as stream:
            async for event in stream:
                line = render_event(event)
                if line:
                    print(line, flush=True)
        await handle.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    statuses = [service.store.get_session(issue_id) for issue_id in handle.issue_ids]
    ok = all(s is not None and s.status is SessionStatus.COMPLETED for s in statuses)
    return 0 if ok else 1


async def run(args: argparse.Namespace) -> int:
    """Run one CLI invocation.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    from triage_engine.config.loader import load_config
    from triage_engine.utils.async_helpers import TriageError

    log.info("starting_triage_engine", version=__version__, config_path=str(args.config))

    try:
        config = load_config(args.config)
        log.info("configuration_loaded")

        from triage_engine.utils.logging import configure_logging

        configure_logging(
            level="DEBUG" if args.debug else config.logging.level,
            log_format=config.logging.format,
            file_path=config.logging.file.path if config.logging.file.enabled else None,
            file_enabled=config.logging.file.enabled,
        )

        if args.dry_run:
            log.info("dry_run_mode_config_valid")
            return 0

        from triage_engine.core.service import create_service

        service = await create_service(config)
        try:
            if args.process:
                options = get_preset(args.preset).options if args.preset else None
                if args.estimate:
                    await service.refresh()
                    print(render_preview(service.preview(args.process, options)))
                    return 0
                return await follow_run(service, args.process, options)

            await service.refresh()
            _apply_view_args(service, args)
            if args.export:
                print(service.export(args.export))
            else:
                print(render_view(service.view()))
            return 0
        finally:
            service.close()

    except FileNotFoundError as e:
        log.error("configuration_file_not_found", path=str(args.config), error=str(e))
        return 1
    except ValueError as e:
        log.error("configuration_invalid", error=str(e))
        return 1
    except TriageError as e:
        log.error("triage_failed", error_type=type(e).__name__, error=str(e))
        return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(debug=args.debug, log_format=args.format)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        log.info("shutting_down_gracefully")
        return 130


if __name__ == "__main__":
    sys.exit(main())
