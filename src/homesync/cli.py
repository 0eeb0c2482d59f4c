import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import daemon
from .config import CONFIG_TEMPLATE, Config, find_config
from .constants import APP_NAME, DEFAULT_CONFIG_PATHS, SENTINEL_FILE
from .engine import OperationReport, OutcomeStatus, SyncEngine
from .errors import BackendFailure, ConfigError, HomesyncError, IoFailure
from .git_wrapper import GitRepo, PullResult
from .package import PackageModel
from .path import ResolutionState, expand

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    OutcomeStatus.STAGED: "green",
    OutcomeStatus.UNCHANGED: "dim",
    OutcomeStatus.SKIPPED: "yellow",
    OutcomeStatus.REMOVED: "magenta",
    OutcomeStatus.APPLIED: "green",
    OutcomeStatus.OVERWRITE_REFUSED: "bold yellow",
    OutcomeStatus.FAILED: "bold red",
}


def _load_config(path: Path | None) -> Config:
    try:
        return Config.load(path)
    except ConfigError as e:
        err_console.print(f"[bold red]Config Error:[/bold red] {escape(str(e))}")
        sys.exit(1)


def _open_engine(config: Config) -> SyncEngine:
    try:
        return SyncEngine.from_config(config)
    except ConfigError as e:
        err_console.print(f"[bold red]Config Error:[/bold red] {escape(str(e))}")
    except BackendFailure as e:
        err_console.print(
            f"[bold red]ERROR:[/bold red] {escape(str(e))}\n"
            "   Run [bold cyan]homesync init[/bold cyan] to create the mirror."
        )
    sys.exit(1)


def print_report(report: OperationReport) -> None:
    """Prints one line per package outcome; failures go to stderr."""
    if not report.outcomes:
        console.print("[dim]No packages.[/dim]")
        return
    for outcome in report.outcomes:
        style = _STATUS_STYLES[outcome.status]
        line = f"[{style}]{outcome.status.value:>17}[/{style}]  {outcome.name}"
        if outcome.detail:
            line += f"  [dim]{escape(outcome.detail)}[/dim]"
        if outcome.status.is_failure:
            err_console.print(line)
        else:
            console.print(line)


def init_mirror(config: Config) -> GitRepo:
    """Sets up the local mirror repository.

    An existing mirror is left as is. Otherwise the remote is cloned; if that
    fails (or no URL is configured) an empty repository is created and the
    remote registered. A cloned repository must carry the sentinel file that
    marks it as managed by homesync.

    Raises:
        ConfigError: If the mirror path is occupied or the remote is not a
            homesync repository.
        BackendFailure: If git fails.
    """
    root = config.local_path
    remote = config.repos.remote
    identity = {"user_name": config.user.name, "user_email": config.user.email}
    ssh_key = expand(config.ssh.private) if config.ssh.private else None

    if (root / ".git").exists():
        repo = GitRepo(root, ssh_key=ssh_key, **identity)
        repo.ensure_remote(remote)
        console.print(f"Mirror already initialized at [cyan]{root}[/cyan].")
        return repo

    if root.exists() and any(root.iterdir()):
        raise ConfigError(f"{root} exists, is not empty, and is not a git repository.")

    repo = None
    if remote.url:
        try:
            with console.status(f"Cloning {remote.url}...", spinner="dots"):
                repo = GitRepo.clone(remote, root, ssh_key=ssh_key, **identity)
        except BackendFailure as e:
            logger.debug(f"Clone failed: {e}")
            console.print(
                f"[yellow]Could not clone {remote.url}; "
                "creating a new repository.[/yellow]"
            )

    sentinel = root / SENTINEL_FILE
    if repo is not None:
        if repo.rev_parse("HEAD") and not sentinel.exists():
            raise ConfigError(
                f"{remote.url} is not managed by homesync (no {SENTINEL_FILE} file)."
            )
    else:
        repo = GitRepo.init(root, remote.branch, ssh_key=ssh_key, **identity)
        repo.ensure_remote(remote)

    if not sentinel.exists():
        sentinel.write_text(
            "This repository is managed by homesync. Do not delete this file.\n"
        )
        repo.stage_path(sentinel)

    console.print(f"[bold green]✔ Mirror ready at[/bold green] [cyan]{root}[/cyan]")
    return repo


def list_packages(config: Config) -> None:
    """Lists configured packages in declared order with their active path."""
    try:
        model = PackageModel.from_config(config)
    except ConfigError as e:
        err_console.print(f"[bold red]Config Error:[/bold red] {escape(str(e))}")
        sys.exit(1)

    console.print(f"Listing packages in [cyan]{config.path}[/cyan]...\n")
    home = str(Path.home())
    for package in model:
        resolution = model.resolution(package.name)
        if resolution.path is None:
            console.print(f"• {package.name} [dim](not found)[/dim]")
        else:
            shown = str(resolution.path).replace(home, "~", 1)
            console.print(f"• {package.name} [cyan]{shown}[/cyan]")


def show_status(config: Config) -> None:
    """Displays the daemon state and, per package, resolution and mirror drift."""
    engine = _open_engine(config)
    model = engine.model
    mirror = engine.mirror

    pid = daemon.read_pid()
    if pid is not None:
        console.print(f"[bold]Daemon:[/bold] [green]Running (pid {pid})[/green]")
    else:
        console.print("[bold]Daemon:[/bold] [bold red]Stopped[/bold red]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Package", style="cyan")
    table.add_column("Path")
    table.add_column("Mirror")

    home = str(Path.home())
    warnings = []
    for package in model:
        resolution = model.resolution(package.name)
        if resolution.path is None:
            table.add_row(package.name, "[dim]not found[/dim]", "-")
            continue

        if resolution.state is ResolutionState.AMBIGUOUS:
            others = ", ".join(str(p) for p in resolution.matches[1:])
            warnings.append(f"{package.name}: also found at {others} (ignored)")

        if mirror.entry(package.name) is None:
            drift = "[yellow]not staged[/yellow]"
        else:
            try:
                changed = mirror.diff_against_disk(package, resolution.path)
                if changed:
                    drift = "[yellow]modified[/yellow]"
                else:
                    drift = "[green]in sync[/green]"
            except IoFailure as e:
                drift = f"[red]{escape(str(e))}[/red]"
        table.add_row(package.name, str(resolution.path).replace(home, "~", 1), drift)

    console.print(table)
    for warning in warnings:
        console.print(f"[bold yellow]⚠[/bold yellow] {escape(warning)}")

    try:
        pending = engine.repo.staged_paths()
    except BackendFailure as e:
        logger.debug(f"Could not read staged paths: {e}")
        pending = []
    if pending:
        console.print(f"[dim]{len(pending)} staged change(s) waiting for push.[/dim]")


def open_config(path: Path | None) -> None:
    """Opens the config file in the user's editor, creating it from a template."""
    if path is None:
        try:
            path = find_config()
        except ConfigError:
            path = expand(DEFAULT_CONFIG_PATHS[1])

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(CONFIG_TEMPLATE)

    editor = os.environ.get("EDITOR")
    if not editor:
        editor = "open" if sys.platform == "darwin" else "nano"

    console.print(f"Opening [cyan]{path}[/cyan]...")
    try:
        subprocess.run([editor, str(path)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def show_config_reference() -> None:
    """Displays a formatted table of all available configuration options."""
    table = Table(title="homesync Configuration Schema", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Type", style="dim")
    table.add_column("Default", style="yellow")
    table.add_column("Description")

    table.add_row(
        "(top)", "unmanaged", "list[str]", "[]", "Mirror files never synced."
    )
    table.add_row("user", "name", "str", '""', "Commit author name.")
    table.add_row("", "email", "str", '""', "Commit author email.")
    table.add_row("ssh", "private", "str", "None", "Private key for the remote.")
    table.add_row(
        "repos", "local", "str", '"$HOME/.homesync"', "Mirror repository directory."
    )
    table.add_row("repos.remote", "name", "str", '"origin"', "Git remote name.")
    table.add_row("", "branch", "str", '"master"', "Branch pushed and pulled.")
    table.add_row("", "url", "str", '""', "Remote URL used by init.")
    table.add_row(
        "daemon",
        "debounce",
        "float | str",
        '"500ms"',
        "Window in which repeated saves of one file coalesce.",
    )
    table.add_row(
        "",
        "poll_interval",
        "float | str",
        '"5s"',
        "How often missing directories are checked for.",
    )
    table.add_row(
        "limits",
        "max_log_size",
        "int | str",
        '"5mb"',
        "Max daemon log size before rotation.",
    )
    table.add_row(
        "packages",
        "<name>",
        "list[str]",
        "-",
        "Candidate paths, highest priority first. $VARS are expanded.",
    )
    console.print(table)


class HomesyncHelpFormatter(argparse.HelpFormatter):
    """Groups the subcommands into logical categories in the help output."""

    def _format_action(self, action: argparse.Action) -> str:
        if isinstance(action, argparse._SubParsersAction):
            parts = []
            groups = {
                "Sync": ["stage", "push", "pull", "apply"],
                "Inspect": ["list", "status"],
                "Setup": ["init", "config", "daemon"],
                "General": ["help"],
            }
            subactions = list(self._iter_indented_subactions(action))

            for group_name, commands in groups.items():
                group_actions = [a for a in subactions if a.dest in commands]
                if not group_actions:
                    continue
                parts.append(f"\n  {group_name}:\n")
                self._indent()
                for subaction in group_actions:
                    parts.append(self._format_action(subaction))
                self._dedent()

            return self._join_parts(parts)

        return super()._format_action(action)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="homesync",
        formatter_class=HomesyncHelpFormatter,
        description="Keep configuration files in sync through a git mirror.",
    )
    parser.add_argument(
        "--config", "-c", type=Path, default=None, help="Path to homesync.toml"
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", help="Create or clone the mirror repository")

    stage_parser = subparsers.add_parser(
        "stage", help="Copy changed files into the mirror"
    )
    stage_parser.add_argument("packages", nargs="*", help="Packages (default: all)")

    push_parser = subparsers.add_parser("push", help="Commit and push the mirror")
    push_parser.add_argument(
        "--all", action="store_true", help="Stage every package before pushing"
    )

    pull_parser = subparsers.add_parser("pull", help="Fast-forward the mirror")
    pull_parser.add_argument(
        "--all", action="store_true", help="Apply every package after pulling"
    )
    pull_parser.add_argument(
        "--overwrite", action="store_true", help="Replace existing files when applying"
    )

    apply_parser = subparsers.add_parser(
        "apply", help="Write mirrored files back to disk"
    )
    target = apply_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("package", nargs="?", help="Package to apply")
    target.add_argument("--all", action="store_true", help="Apply every package")
    apply_parser.add_argument(
        "--overwrite", action="store_true", help="Replace existing files"
    )

    subparsers.add_parser("daemon", help="Watch tracked files and stage changes")
    subparsers.add_parser("list", help="List configured packages")
    subparsers.add_parser("status", help="Show daemon and package status")

    config_parser = subparsers.add_parser(
        "config", help="Open the config file or view options"
    )
    config_parser.add_argument(
        "--list", "-l", action="store_true", help="List all configuration options"
    )
    subparsers.add_parser("help", help="Show this help message")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the homesync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "help"):
        parser.print_help()
        return
    if args.command == "config":
        if args.list:
            show_config_reference()
        else:
            open_config(args.config)
        return
    if args.command == "daemon":
        daemon.main(args.config)
        return

    daemon.setup_logging(interactive=True)
    config = _load_config(args.config)

    try:
        if args.command == "init":
            init_mirror(config)
            return
        if args.command == "list":
            list_packages(config)
            return
        if args.command == "status":
            show_status(config)
            return

        engine = _open_engine(config)
        ok = True
        if args.command == "stage":
            report = engine.stage(args.packages or None)
            print_report(report)
            ok = report.ok
        elif args.command == "push":
            with console.status("Pushing mirror...", spinner="dots"):
                result = engine.push(stage_all=args.all)
            if result.stage_report is not None:
                print_report(result.stage_report)
            if result.committed:
                console.print(f"Committed {len(result.committed)} file(s).")
            pushed = engine.remote.tracking_branch
            console.print(f"[bold green]✔ Pushed to {pushed}.[/bold green]")
            ok = result.ok
        elif args.command == "pull":
            with console.status("Pulling mirror...", spinner="dots"):
                outcome = engine.pull(apply_all=args.all, overwrite=args.overwrite)
            if outcome.result is PullResult.CONFLICT:
                err_console.print(
                    f"[bold red]CONFLICT:[/bold red] {engine.mirror.root} has diverged "
                    f"from {engine.remote.tracking_branch}.\n"
                    f"   Resolve it with git in {engine.mirror.root}, then pull again."
                )
            else:
                result_text = outcome.result.value
                console.print(f"[bold green]✔ Pull: {result_text}.[/bold green]")
            if outcome.apply_report is not None:
                print_report(outcome.apply_report)
            ok = outcome.ok
        elif args.command == "apply":
            names = None if args.all else [args.package]
            report = engine.apply(names, overwrite=args.overwrite)
            print_report(report)
            ok = report.ok
    except HomesyncError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {escape(str(e))}")
        sys.exit(1)

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
