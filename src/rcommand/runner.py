#!/usr/bin/env python3
"""Main entry point for rcommand."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import signal
import sys
from pathlib import Path

from .config import HostSpec, Settings, load_settings, resolve_hosts
from .errors import ConfigError
from .executor import Executor
from .summary import Summary

logger = logging.getLogger(__name__)

PASSWORD_ENV = "RCOMMAND_PASSWORD"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rcommand",
        description="Run a command or a local script on multiple hosts over SSH",
        usage="%(prog)s [options] HOST [HOST ...] -- COMMAND [ARG ...]",
    )
    parser.add_argument("hosts", nargs="*", metavar="HOST", help="Target hosts, or @group")
    parser.add_argument(
        "-c",
        "--concurrency",
        type=int,
        help="Number of hosts to run at the same time (default: 5)",
    )
    parser.add_argument(
        "-s",
        "--script",
        type=Path,
        help="Local script to copy to each host and run",
    )
    parser.add_argument(
        "--sudo",
        action="store_true",
        help="Run the command with sudo",
    )
    parser.add_argument(
        "-a",
        "--ask-password",
        action="store_true",
        help="Prompt for the sudo password once before connecting",
    )
    parser.add_argument("--config", type=Path, help="Path to YAML settings file")
    parser.add_argument("-u", "--user", help="SSH user")
    parser.add_argument("-p", "--port", type=int, help="SSH port")
    parser.add_argument(
        "-i",
        "--key",
        type=Path,
        help="Override SSH key path from config",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        help="Write per-host transcripts under this directory",
    )
    parser.add_argument(
        "--no-logs",
        action="store_true",
        help="Disable transcripts even if the config sets log_dir",
    )
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def split_argv(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split at the first ``--``: options and hosts before, command after."""
    if "--" in argv:
        index = argv.index("--")
        return argv[:index], argv[index + 1 :]
    return argv, []


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Let command line flags win over the settings file."""
    if args.concurrency is not None:
        if args.concurrency <= 0:
            raise ConfigError(f"--concurrency must be positive, got {args.concurrency}")
        settings.concurrency = args.concurrency
    if args.user:
        settings.user = args.user
    if args.port is not None:
        settings.port = args.port
    if args.key:
        settings.ssh_key = args.key.expanduser()
    if args.log_dir:
        settings.log_dir = args.log_dir.expanduser().resolve()
    if args.no_logs:
        settings.log_dir = None

    if settings.ssh_key and not settings.ssh_key.exists():
        raise ConfigError(f"SSH key not found: {settings.ssh_key}")
    return settings


def check_script(script: Path | None) -> Path | None:
    if script is None:
        return None
    script = script.expanduser()
    if not script.is_file() or not os.access(script, os.R_OK):
        raise ConfigError(f"Cannot read script: {script}")
    return script


def resolve_password(ask: bool) -> str | None:
    """Get the sudo password once, before any host is contacted."""
    if ask:
        return getpass.getpass("sudo password: ")
    return os.environ.get(PASSWORD_ENV)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    front, command = split_argv(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    args = parser.parse_args(front)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = apply_overrides(load_settings(args.config), args)
        hosts = resolve_hosts(args.hosts, settings.host_groups)
        if not hosts:
            raise ConfigError("No hosts given")
        script = check_script(args.script)
        if script is None and not command:
            raise ConfigError("No command given; use -- COMMAND or --script FILE")
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    password = resolve_password(args.ask_password)
    color = not args.no_color and sys.stdout.isatty()

    if not args.dashboard:
        # Run without TUI dashboard (default)
        summary = _run_headless(settings, hosts, command, script, args.sudo, password, color)
    else:
        from .dashboard import Dashboard

        app = Dashboard(settings, hosts, command, script=script, sudo=args.sudo, password=password)
        app.run()
        if app.executor is None:
            return 1
        summary = Summary.from_outcomes(app.executor.outcomes)

    report = summary.render(color=color)
    if report:
        print(report)
    return summary.exit_status


def _run_headless(
    settings: Settings,
    hosts: list[HostSpec],
    command: list[str],
    script: Path | None,
    sudo: bool,
    password: str | None,
    color_enabled: bool,
) -> Summary:
    """Run executor without TUI dashboard."""
    # ANSI colors for different hosts
    colors = [
        "\033[36m",  # Cyan
        "\033[33m",  # Yellow
        "\033[35m",  # Magenta
        "\033[32m",  # Green
        "\033[34m",  # Blue
        "\033[91m",  # Light Red
        "\033[96m",  # Light Cyan
        "\033[93m",  # Light Yellow
    ]
    reset = "\033[0m" if color_enabled else ""

    # Assign colors to hosts
    host_colors = {
        spec.name: colors[i % len(colors)] if color_enabled else ""
        for i, spec in enumerate(hosts)
    }

    def on_output(host: str, line: str, is_stderr: bool) -> None:
        color = host_colors.get(host, "")
        stream = sys.stderr if is_stderr else sys.stdout
        print(f"{color}[{host}]{reset} {line}", file=stream, flush=True)

    executor = Executor(
        settings,
        hosts,
        command,
        script=script,
        sudo=sudo,
        password=password,
        on_output=on_output,
    )

    asyncio.run(_run_with_interrupts(executor))
    return Summary.from_outcomes(executor.outcomes)


async def _run_with_interrupts(executor: Executor) -> None:
    """Run the executor, turning the first Ctrl-C into a cancellation."""
    loop = asyncio.get_running_loop()

    def on_interrupt() -> None:
        print("Interrupted, stopping all hosts (press again to abort)", file=sys.stderr)
        executor.cancel()
        # A second interrupt gets the default behaviour
        loop.remove_signal_handler(signal.SIGINT)

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable, Ctrl-C will abort immediately")
        await executor.run_all()
        return

    try:
        await executor.run_all()
    finally:
        loop.remove_signal_handler(signal.SIGINT)


if __name__ == "__main__":
    sys.exit(main())
