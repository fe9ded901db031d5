import os
import sys
import json
import signal
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from . import __version__
from .context import AppContext
from .errors import HerculesError
from .improve import add_metadata, extract_metadata
from .serializers import EnvironmentType
from .terminal import Terminal
from .utils import get_default_filesystem_root, is_cdp_port_open, load_all_dotenv

logger = logging.getLogger(__name__)

console = Console()


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────


def _setup_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else os.getenv("HERCULES_RUNNER_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _print_terminal_line(line: str) -> None:
    console.print(Text.assemble(("  | ", "dim green"), line), highlight=False)


def _parse_value(raw: str) -> Any:
    """Interpret CLI values as JSON where possible (true, 3, "x"), else as plain text."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _install_sigint(callback: Callable[[], None]) -> bool:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, callback)
        return True
    except NotImplementedError:
        return False  # Windows doesn't support signal handlers in asyncio


def _remove_sigint() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except NotImplementedError:
        pass


# ──────────────────────────────────────────────────────────────────────────────
# config
# ──────────────────────────────────────────────────────────────────────────────


def cmd_config(ctx: AppContext, args: argparse.Namespace) -> int:
    store = ctx.config_store

    if args.config_command == "path":
        console.print(str(store.get_config_path()), soft_wrap=True, highlight=False)
    elif args.config_command == "reset":
        if not args.yes and not Confirm.ask("  Reset configuration to defaults?", default=False):
            console.print("  [dim]Configuration unchanged.[/]")
            return 0
        store.reset()
        console.print("  [green]✓[/] Configuration reset to defaults")
    elif args.config_command == "set":
        section, _, key = args.key.partition(".")
        if not key:
            raise HerculesError("Keys must look like <section>.<key>, e.g. browser.headless")
        store.set_value(section, key, _parse_value(args.value))
        console.print(f"  [green]✓[/] {args.key} = {store.get_value(section, key)!r}")
    else:
        rendered = json.dumps(store.get_config().to_json_dict(), indent=2)
        console.print(Syntax(rendered, "json", theme="ansi_dark", background_color="default"))
    return 0


def cmd_folders(ctx: AppContext, args: argparse.Namespace) -> int:
    folders = ctx.paths.create_folders()
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Folder")
    table.add_column("Path")
    for name, path in folders.as_dict().items():
        table.add_row(name, path)
    console.print(table)
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# env
# ──────────────────────────────────────────────────────────────────────────────


def _show_environment(ctx: AppContext) -> None:
    options = ctx.environment.get_options()
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Option", style="bold")
    table.add_column("Value")
    table.add_row("Environment", ctx.environment.get_environment_label())
    table.add_row("Docker image", options.docker_image)
    table.add_row("Use virtual env", str(options.use_virtual_env))
    table.add_row("Virtual env path", options.virtual_env_path or "[dim](not set)[/]")
    table.add_row("Install if missing", str(options.install_if_missing))
    console.print(table)


async def cmd_env(ctx: AppContext, args: argparse.Namespace) -> int:
    resolver = ctx.environment

    if args.env_command == "set":
        partial = {}
        if args.type:
            partial["environment_type"] = args.type
        if args.image:
            partial["docker_image"] = args.image
        if args.venv is not None:
            partial["use_virtual_env"] = args.venv
        if args.venv_path:
            partial["virtual_env_path"] = str(Path(args.venv_path).expanduser().resolve())
        if args.install is not None:
            partial["install_if_missing"] = args.install
        resolver.set_options(**partial)
        console.print("  [green]✓[/] Execution environment updated")
        _show_environment(ctx)

    elif args.env_command == "check":
        with console.status("[cyan]Checking environment...[/]", spinner="dots"):
            docker_ok = await resolver.is_runtime_available("docker")
            python_ok = await resolver.is_runtime_available("python")
            tool_ok = await resolver.is_tool_available()
        for label, ok in (
            ("Docker", docker_ok),
            ("Python", python_ok),
            (f"Hercules ({resolver.get_environment_label()})", tool_ok),
        ):
            mark = "[green]✓[/]" if ok else "[red]✗[/]"
            console.print(f"  {mark} {label}")

    elif args.env_command == "setup":
        with console.status("[cyan]Preparing environment...[/]", spinner="dots") as status:
            await resolver.ensure_ready(
                lambda msg: status.update(f"[cyan]{msg}[/]")
            )
        console.print(f"  [green]✓[/] {resolver.get_environment_label()} environment ready")

    else:
        _show_environment(ctx)
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# run / rerun / stop
# ──────────────────────────────────────────────────────────────────────────────


async def _follow(ctx: AppContext, terminal: Terminal, wait: bool) -> int:
    console.print(Rule(f"[bold cyan]{terminal.name}[/]", style="cyan"))
    if not wait:
        console.print(
            f"  [dim]Hercules is running (pid {terminal.process.pid}). "
            "Use 'hercules-runner stop' to stop it.[/]"
        )
        console.print(f"  [dim]Output: {terminal.log_path}[/]", soft_wrap=True)
        return 0

    def _stop():
        console.print("\n  [yellow]Stopping test...[/]")
        ctx.orchestrator.stop_execution(terminal)

    _install_sigint(_stop)
    try:
        code = await terminal.wait()
    finally:
        _remove_sigint()

    console.print(Rule(style="dim cyan"))
    if code == 0:
        console.print("  [green]✓[/] Hercules finished successfully")
    else:
        console.print(f"  [red]✗[/] Hercules exited with code {code}")
    return code


async def cmd_run(ctx: AppContext, args: argparse.Namespace) -> int:
    with console.status("[cyan]Preparing environment...[/]", spinner="dots") as status:
        progress = lambda msg: status.update(f"[cyan]{msg}[/]")
        if args.command == "rerun":
            terminal = await ctx.orchestrator.rerun_last(progress, detach=args.no_wait)
        else:
            terminal = await ctx.orchestrator.run_hercules(
                args.script, progress, detach=args.no_wait
            )
    return await _follow(ctx, terminal, wait=not args.no_wait)


def cmd_stop(ctx: AppContext, args: argparse.Namespace) -> int:
    stop_file = ctx.orchestrator.stop_execution()
    console.print(f"  [green]✓[/] Signal sent to stop test execution ([dim]{stop_file}[/])")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# browser
# ──────────────────────────────────────────────────────────────────────────────


async def cmd_browser(ctx: AppContext, args: argparse.Namespace) -> int:
    manager = ctx.browser

    if args.browser_command == "stop":
        if manager.close_detached_browser():
            console.print("  [green]✓[/] CDP browser session closed")
        else:
            console.print("  [dim]No CDP browser is running.[/]")
        return 0

    if args.browser_command == "status":
        url = manager.get_last_endpoint()
        if not url:
            console.print("  [dim]No CDP Browser Running[/]")
            return 0
        port = urlparse(url).port
        alive = bool(port) and is_cdp_port_open(port)
        mark = "[green]reachable[/]" if alive else "[yellow]not reachable[/]"
        console.print(f"  CDP Browser: [bold]{url}[/] ({mark})")
        return 0

    with console.status("[cyan]Launching Chrome...[/]", spinner="dots"):
        cdp_url = await manager.spawn_browser()

    console.print(
        Panel(
            Text(cdp_url, style="bold"),
            title="CDP URL",
            subtitle=f"port {manager.get_debug_port()}",
            border_style="cyan",
        )
    )
    console.print("  [dim]Press Ctrl+C to close the browser.[/]")

    stopped = asyncio.Event()

    def _on_status_change():
        if not manager.is_browser_running():
            stopped.set()

    manager.add_listener(_on_status_change)
    _install_sigint(stopped.set)
    try:
        await stopped.wait()
    finally:
        _remove_sigint()
        manager.remove_listener(_on_status_change)
        await manager.close_browser()
    console.print("  [dim]CDP browser session closed[/]")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# improve
# ──────────────────────────────────────────────────────────────────────────────


async def cmd_improve(ctx: AppContext, args: argparse.Namespace) -> int:
    feature = Path(args.feature)
    if feature.suffix != ".feature":
        raise HerculesError("This command only works with .feature files.")
    text = feature.read_text(encoding="utf-8")

    if not extract_metadata(text) and args.meta:
        text = add_metadata(text, args.meta)
        feature.write_text(text, encoding="utf-8")
    elif not extract_metadata(text):
        console.print(
            "  [yellow]No metadata found.[/] [dim]Use --meta to describe the test purpose "
            "for better improvements.[/]"
        )

    improver = ctx.gherkin_improver()
    cancel = asyncio.Event()
    _install_sigint(cancel.set)
    try:
        with console.status("[cyan]Improving Gherkin script...[/]", spinner="dots"):
            improved = await improver.improve(text, cancel_event=cancel)
    finally:
        _remove_sigint()

    if cancel.is_set():
        console.print("  [yellow]Cancelled.[/]")
        return 1
    if not improved:
        raise HerculesError("Failed to generate an improved Gherkin script.")

    if args.write:
        feature.write_text(improved + "\n", encoding="utf-8")
        console.print(f"  [green]✓[/] Gherkin script improved: {feature}")
    else:
        console.print(Syntax(improved, "gherkin", theme="ansi_dark", background_color="default"))
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hercules-runner",
        description="Configure, launch and monitor TestZeus Hercules test runs",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--workspace",
        help="Workspace root mounted into Docker runs (defaults to the current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    config = sub.add_parser("config", help="Show or edit the configuration")
    config_sub = config.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Print the configuration")
    config_sub.add_parser("path", help="Print the configuration file path")
    reset = config_sub.add_parser("reset", help="Restore the default configuration")
    reset.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    set_ = config_sub.add_parser("set", help="Set <section>.<key> to a value")
    set_.add_argument("key")
    set_.add_argument("value")

    sub.add_parser("folders", help="Create and list the project folders")

    env = sub.add_parser("env", help="Manage the execution environment")
    env_sub = env.add_subparsers(dest="env_command")
    env_sub.add_parser("show", help="Show the execution environment options")
    env_set = env_sub.add_parser("set", help="Change execution environment options")
    env_set.add_argument("--type", choices=[t.value for t in EnvironmentType])
    env_set.add_argument("--image", help="Docker image to run")
    env_set.add_argument("--venv", action=argparse.BooleanOptionalAction, default=None)
    env_set.add_argument("--venv-path", help="Virtual environment directory")
    env_set.add_argument("--install", action=argparse.BooleanOptionalAction, default=None)
    env_sub.add_parser("check", help="Probe Docker, Python and Hercules availability")
    env_sub.add_parser("setup", help="Install whatever the environment is missing")

    run = sub.add_parser("run", help="Run a Gherkin script (or the whole project)")
    run.add_argument("script", nargs="?", help="Feature file; relative names resolve to the input folder")
    run.add_argument("--no-wait", action="store_true", help="Return once Hercules has started")
    rerun = sub.add_parser("rerun", help="Run the last executed script again")
    rerun.add_argument("--no-wait", action="store_true")
    sub.add_parser("stop", help="Signal a running Hercules to stop")

    browser = sub.add_parser("browser", help="Manage a CDP debugging browser")
    browser_sub = browser.add_subparsers(dest="browser_command")
    browser_sub.add_parser("start", help="Launch Chrome with remote debugging and wait")
    browser_sub.add_parser("status", help="Show the recorded CDP browser")
    browser_sub.add_parser("stop", help="Close the recorded CDP browser")

    improve = sub.add_parser("improve", help="Improve a Gherkin script with OpenAI")
    improve.add_argument("feature", help="Path to a .feature file")
    improve.add_argument("--meta", help="Metadata describing the test purpose")
    improve.add_argument("--write", action="store_true", help="Write the result back to the file")

    return parser


async def _dispatch(ctx: AppContext, args: argparse.Namespace) -> int:
    if args.command == "config":
        return cmd_config(ctx, args)
    if args.command == "folders":
        return cmd_folders(ctx, args)
    if args.command == "env":
        return await cmd_env(ctx, args)
    if args.command in ("run", "rerun"):
        return await cmd_run(ctx, args)
    if args.command == "stop":
        return cmd_stop(ctx, args)
    if args.command == "browser":
        return await cmd_browser(ctx, args)
    if args.command == "improve":
        return await cmd_improve(ctx, args)
    raise HerculesError(f"Unknown command: {args.command}")


def main(argv: Optional[list] = None) -> int:
    """Entry point for the hercules-runner CLI."""
    args = build_parser().parse_args(argv)
    load_all_dotenv()
    _setup_logging(args.verbose)

    workspace = (
        Path(args.workspace).expanduser().resolve()
        if args.workspace
        else get_default_filesystem_root()
    )

    try:
        ctx = AppContext(workspace_root=workspace, output_callback=_print_terminal_line)
        code = asyncio.run(_dispatch(ctx, args))
    except HerculesError as e:
        console.print(f"  [bold red]Error:[/] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[dim]Exiting...[/]")
        return 130
    return code


if __name__ == "__main__":
    sys.exit(main())
