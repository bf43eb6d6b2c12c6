"""
Command-line interface for devserver-manager.

A thin adapter over ServerManager: every sub-command maps to one manager
operation and renders its result with rich.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .inventory.parsers import safe_parse_pid
from .managers.server_manager import ServerManager
from .models import BatchResult, ProcessTree, ServerRecord, TerminationResult
from .utils.config import load_config
from .utils.errors import ConfigurationError
from .utils.logging import setup_logging

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devserver-manager",
        description="Find, stop and restart local development servers"
    )
    parser.add_argument("--config", action="append", default=[], help="Extra config file (repeatable)")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument("--json", action="store_true", help="Print raw JSON instead of tables")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    list_cmd = subparsers.add_parser("list", help="List detected development servers")
    list_cmd.add_argument("--refresh", action="store_true", help="Bypass the detection cache")

    stop_cmd = subparsers.add_parser("stop", help="Stop one or more servers")
    stop_cmd.add_argument("pids", nargs="+", help="Process IDs")

    subparsers.add_parser("stop-all", help="Stop every detected server")

    restart_cmd = subparsers.add_parser("restart", help="Restart a server")
    restart_cmd.add_argument("pid", help="Process ID")

    tree_cmd = subparsers.add_parser("tree", help="Show a process with its children")
    tree_cmd.add_argument("pid", help="Process ID")

    logs_cmd = subparsers.add_parser("logs", help="Show a server's diagnostic log")
    logs_cmd.add_argument("pid", help="Process ID")
    logs_cmd.add_argument("--export", choices=["json", "text"], help="Print the full log in this format")

    clear_cmd = subparsers.add_parser("clear-logs", help="Clear a server's diagnostic log")
    clear_cmd.add_argument("pid", help="Process ID")

    return parser


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def render_servers(servers: List[ServerRecord]) -> None:
    if not servers:
        console.print("[yellow]No development servers found[/yellow]")
        return

    table = Table(title=f"Development servers ({len(servers)})")
    table.add_column("PID", justify="right")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Port", justify="right")
    table.add_column("URL")
    table.add_column("Category")
    for server in servers:
        table.add_row(
            str(server.pid),
            server.name,
            server.type.value,
            server.port,
            server.url or "-",
            server.category,
        )
    console.print(table)


def render_termination(result: TerminationResult) -> None:
    if result.success:
        console.print(f"[green]✓[/green] {result.message}")
        return
    kind = result.error_kind.value if result.error_kind else "error"
    console.print(f"[red]✗[/red] PID {result.pid} ({kind}): {result.error}")
    for attempt in result.attempts:
        console.print(f"    {attempt.strategy.value}: {attempt.command_tried} -> {attempt.error or 'ok'}")


def render_batch(result: BatchResult) -> None:
    for item in result.results.values():
        render_termination(item)
    style = "green" if result.success else "red"
    console.print(
        f"[{style}]{result.successful}/{result.total} stopped, {result.failed} failed[/{style}]"
    )


def render_tree(tree: ProcessTree) -> None:
    console.print(f"[bold]{tree.pid}[/bold] {tree.name}  (parent {tree.parent_pid})")
    console.print(f"  {tree.command_line}")
    for child in tree.children:
        console.print(f"  └─ {child.pid} {child.name}")


async def run_command(manager: ServerManager, args: argparse.Namespace) -> int:
    """Execute one parsed sub-command. Returns the process exit code."""
    if args.command == "list":
        servers = await (manager.force_refresh() if args.refresh else manager.detect_servers())
        if args.json:
            _print_json([s.to_dict() for s in servers])
        else:
            render_servers(servers)
        return 0

    if args.command in ("stop", "stop-all"):
        if args.command == "stop-all":
            batch = await manager.stop_all_servers()
        elif len(args.pids) == 1:
            single = await manager.stop_server(args.pids[0])
            if args.json:
                _print_json(single.to_dict())
            else:
                render_termination(single)
            return 0 if single.success else 1
        else:
            batch = await manager.stop_multiple_servers(args.pids)
        if args.json:
            _print_json(batch.to_dict())
        else:
            render_batch(batch)
        return 0 if batch.success else 1

    if args.command == "restart":
        restarted = await manager.restart_server(args.pid)
        if args.json:
            _print_json(restarted.to_dict())
        elif restarted.success:
            console.print(f"[green]✓[/green] {restarted.message}")
        else:
            console.print(f"[red]✗[/red] {restarted.error}")
        return 0 if restarted.success else 1

    if args.command == "tree":
        tree = await manager.get_process_tree(args.pid)
        if tree is None:
            console.print(f"[red]Process {args.pid} not found[/red]")
            return 1
        if args.json:
            _print_json(tree.to_dict())
        else:
            render_tree(tree)
        return 0

    if args.command == "logs":
        if args.export:
            pid = safe_parse_pid(args.pid)
            if pid is None:
                console.print(f"[red]Invalid PID: {args.pid}[/red]")
                return 1
            console.print(await manager.log_store.export_logs(pid, args.export), markup=False)
            return 0
        logs = await manager.get_server_error_logs(args.pid)
        if args.json or not logs.success:
            _print_json(logs.to_dict())
            return 0 if logs.success else 1
        console.print(f"{logs.message} ({logs.file_path})")
        for entry in logs.logs:
            console.print(
                f"[dim]{entry.timestamp.isoformat()}[/dim] {entry.level.value.upper():5} {escape(entry.message)}",
                highlight=False,
            )
        return 0

    if args.command == "clear-logs":
        cleared = await manager.clear_server_error_logs(args.pid)
        if args.json:
            _print_json(cleared.to_dict())
        else:
            console.print(cleared.message or cleared.error)
        return 0 if cleared.success else 1

    return 2


async def main_async(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = await load_config(config_paths=args.config)
    except ConfigurationError as e:
        console.print(f"[red]{e.message}[/red]")
        return 1

    setup_logging(
        app_name=config.app_name,
        log_level=args.log_level or config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == "json",
        max_bytes=config.logging.max_size,
        backup_count=config.logging.backup_count,
    )

    async with ServerManager(config) as manager:
        return await run_command(manager, args)


def main(argv: Optional[List[str]] = None) -> int:
    """Console script entry point."""
    return asyncio.run(main_async(argv))


if __name__ == "__main__":
    sys.exit(main())
