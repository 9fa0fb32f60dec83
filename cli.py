#!/usr/bin/env python3
"""
Command-line interface for the inventory monitoring core.

Usage:
    uv run python cli.py [command] [options]

Commands:
    serve       Start the API server (runtime and scheduler included)
    tasks       List the default scheduled tasks and their next run
    run-task    Fire one default task now and print what it did
    test        Run the test suite

Examples:
    uv run python cli.py tasks
    uv run python cli.py run-task hourly-checks
    uv run python cli.py serve --reload
"""

import argparse
import subprocess
import sys

from monitoring.event_bus import EventName
from monitoring.jobs import DAILY_CLEANUP, HEALTH_CHECK, HOURLY_CHECKS
from monitoring.runtime import MonitoringRuntime, build_runtime
from shared.channels import EmailChannel
from shared.config import MonitoringConfig, configure_logging

TASK_NAMES = [DAILY_CLEANUP, HOURLY_CHECKS, HEALTH_CHECK]


def build_cli_runtime() -> MonitoringRuntime:
    """A runtime with the default jobs registered and no timer thread."""
    config = MonitoringConfig.from_env().model_copy(update={"scheduling_enabled": True})
    configure_logging(config.log_level)
    runtime = build_runtime(config, transport=EmailChannel())
    runtime.start(run_scheduler=False)
    return runtime


def list_tasks() -> None:
    """Print the default tasks."""
    runtime = build_cli_runtime()
    try:
        for task in runtime.scheduler.list_tasks():
            print(f"{task.name:<16} {task.expression:<14} next run {task.next_run_at:%Y-%m-%d %H:%M} UTC")
    finally:
        runtime.stop()


def run_task(name: str) -> None:
    """Fire one task and report the outcome."""
    runtime = build_cli_runtime()
    try:
        run = runtime.scheduler.fire(name)

        status = "ok" if run.success else f"FAILED: {run.error}"
        print(f"\n{name}: {status} ({run.duration_seconds * 1000:.0f}ms)")

        events = runtime.event_bus.get_event_log()
        print(f"\nEvents published: {len(events)}")
        for event in events:
            print(f"  {event.event_type.value:<28} {event.source}")

        created = runtime.event_bus.events_named(EventName.NOTIFICATION_CREATED)
        print(f"\nNotifications created: {len(created)}")
        for event in created:
            notification = runtime.dispatcher.repository.get(event.payload["notification_id"])
            if notification is not None:
                recipients = ", ".join(notification.recipient_ids())
                print(f"  {notification.type.value:<14} {notification.message} -> {recipients}")

        emails = runtime.transport.get_history()
        print(f"\nEmails: {len(emails)}")
        for message in emails:
            print(f"  {message}")
    finally:
        runtime.stop()

    if not run.success:
        sys.exit(1)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Inventory Monitoring CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s tasks
  %(prog)s run-task health-check
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Tasks command
    subparsers.add_parser("tasks", help="List the default scheduled tasks")

    # Run-task command
    run_parser = subparsers.add_parser("run-task", help="Fire a scheduled task now")
    run_parser.add_argument("name", choices=TASK_NAMES, help="Which task to run")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "tasks":
        list_tasks()
    elif args.command == "run-task":
        run_task(args.name)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
