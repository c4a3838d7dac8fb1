"""Command line interface for modelvc."""

import asyncio
import logging
import os
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .api_clients.sync_client import CloudSyncClient
from .config import Config, ConfigManager
from .events import (
    BranchEvent,
    ChangeEvent,
    ChangeKind,
    CommitEvent,
    SyncStatusEvent,
    dispatch_event,
)
from .exceptions import ModelVCError, TransportError
from .session import (
    ProjectSession,
    SyncDirection,
    bootstrap_tracked_file,
    open_tracked_file,
)
from .utils.exception_logger import ExceptionLogger

logger = logging.getLogger(__name__)

console = Console()

TOKEN_ENV_VAR = "MODELVC_TOKEN"


def run_async(coro):
    """Run a coroutine from synchronous CLI code.

    Works both with no event loop (normal CLI usage) and when a loop is
    already running (some test environments), in which case the coroutine runs
    on a fresh loop in a helper thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    result = None
    exception = None

    def run_in_new_loop():
        nonlocal result, exception
        try:
            new_loop = asyncio.new_event_loop()
            asyncio.set_event_loop(new_loop)
            try:
                result = new_loop.run_until_complete(coro)
            finally:
                new_loop.close()
        except Exception as e:
            exception = e

    thread = threading.Thread(target=run_in_new_loop)
    thread.start()
    thread.join()

    if exception:
        raise exception
    return result


def _token_from_env() -> str:
    return os.environ.get(TOKEN_ENV_VAR, "")


def _create_remote(config: Config, file_path: Path) -> Optional[CloudSyncClient]:
    """Build the sync client when a backend and project are configured."""
    if not config.remote.is_configured:
        return None
    return CloudSyncClient.from_config(
        config.remote,
        _token_from_env,
        project_id=config.remote.project_id,
        extension=file_path.suffix or ".3dm",
    )


async def _run_with_remote(remote: Optional[CloudSyncClient], coro):
    """Await coro, then close the remote's HTTP session on the same loop."""
    try:
        return await coro
    finally:
        if remote is not None:
            await remote.close()


def _report_error(e: Exception) -> None:
    console.print(f"❌ {e}", style="red", markup=False)
    if isinstance(e, TransportError) and e.user_guidance:
        console.print(e.user_guidance)
    sys.exit(1)


def _format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _open(ctx, file_path: str, watch: bool = False) -> ProjectSession:
    config: Config = ctx.obj["config"]
    path = Path(file_path).expanduser().absolute()
    return open_tracked_file(
        path, config, remote=_create_remote(config, path), watch=watch
    )


file_argument = click.argument("file_path", type=click.Path(dir_okay=False))


@click.group(invoke_without_command=True)
@click.option("--config", "-c", type=click.Path(exists=False), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__, prog_name="modelvc")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """File-based version control for binary 3D model files.

    \b
    Every commit stores an immutable snapshot of the model next to it:
      model.3dm
      0studio/model/commit-<id>.3dm
      0studio/model/tree.json

    \b
    GETTING STARTED:
      1. modelvc init model.3dm            # Track a file (initial commit)
      2. modelvc commit model.3dm -m "..."  # Save a version
      3. modelvc log model.3dm             # Show history

    \b
    CLOUD SYNC:
      Set remote.backend_url and remote.project_id in ~/.modelvc/config.json
      (or MODELVC_BACKEND_URL / MODELVC_PROJECT_ID) and provide the session
      token in MODELVC_TOKEN, then use 'modelvc sync push|pull|status'.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    # Background watcher threads report uncaught errors here
    exception_logger = ExceptionLogger.initialize()
    exception_logger.install_thread_exception_hook()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("watchdog").setLevel(logging.WARNING)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    config_manager = ConfigManager(Path(config)) if config else ConfigManager()
    try:
        ctx.obj["config"] = config_manager.load()
    except ValueError as e:
        console.print(f"❌ {e}", style="red", markup=False)
        sys.exit(1)
    ctx.obj["config_manager"] = config_manager


@cli.command()
@file_argument
@click.pass_context
def init(ctx, file_path: str):
    """Start tracking FILE_PATH (creates the initial commit)."""
    try:
        with _open(ctx, file_path) as session:
            commits = session.list_commits()
            console.print(
                f"✅ Tracking {session.tracked_file} ({len(commits)} commit(s))",
                style="green",
            )
            console.print(f"📁 Snapshots: {session.store.root}", style="dim")
            if session.missing_blobs:
                console.print(
                    f"⚠️  {len(session.missing_blobs)} snapshot(s) missing locally",
                    style="yellow",
                )
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.option("--message", "-m", required=True, help="Commit message")
@click.pass_context
def commit(ctx, file_path: str, message: str):
    """Save the current contents of FILE_PATH as a new version."""
    try:
        with _open(ctx, file_path) as session:
            new_commit = session.commit(message)
            branch = session.tree.get_branch(new_commit.branch_id)
            console.print(
                f"✅ [{branch.name}] {new_commit.id} {new_commit.message}",
                style="green",
                markup=False,
            )
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.option("--branch", "-b", "branch_name", help="Only show commits of this branch")
@click.option("--starred", is_flag=True, help="Only show starred commits")
@click.pass_context
def log(ctx, file_path: str, branch_name: Optional[str], starred: bool):
    """Show version history, newest first."""
    try:
        with _open(ctx, file_path) as session:
            branch_id = None
            if branch_name:
                branch_id = session.resolve_branch(branch_name).id
            commits = session.list_commits(branch_id)
            if starred:
                commits = [c for c in commits if c.starred]

            synced = set(session.tree.synced_commit_ids())
            table = Table(title=f"History of {session.tracked_file.name}")
            table.add_column("", style="yellow", width=2)
            table.add_column("Commit", style="cyan")
            table.add_column("Branch", style="green")
            table.add_column("Date", style="blue")
            table.add_column("Message", style="white")
            table.add_column("Cloud", style="magenta")

            for c in commits:
                marker = "*" if c.id == session.tree.current_commit_id else ""
                if c.starred:
                    marker += "★"
                table.add_row(
                    marker,
                    c.id,
                    session.tree.get_branch(c.branch_id).name,
                    _format_timestamp(c.timestamp),
                    c.message,
                    "synced" if c.id in synced else "",
                )
            console.print(table)
    except ModelVCError as e:
        _report_error(e)


@cli.group()
def branch():
    """Create and list branches."""
    pass


@branch.command("create")
@file_argument
@click.argument("name")
@click.option("--from", "from_commit", help="Commit to fork from (default: current)")
@click.option("--color", help="Branch color, e.g. #10b981")
@click.option("--switch", "switch_to", is_flag=True, help="Switch to the new branch")
@click.pass_context
def branch_create(
    ctx,
    file_path: str,
    name: str,
    from_commit: Optional[str],
    color: Optional[str],
    switch_to: bool,
):
    """Create branch NAME."""
    try:
        with _open(ctx, file_path) as session:
            new_branch = session.create_branch(name, from_commit, color)
            console.print(
                f"✅ Created branch {new_branch.name} at {new_branch.origin_commit_id}",
                style="green",
                markup=False,
            )
            if switch_to:
                session.switch_branch(new_branch.id)
                console.print(f"🔀 Switched to {new_branch.name}", markup=False)
    except ModelVCError as e:
        _report_error(e)


@branch.command("list")
@file_argument
@click.pass_context
def branch_list(ctx, file_path: str):
    """List branches."""
    try:
        with _open(ctx, file_path) as session:
            table = Table(title="Branches")
            table.add_column("", width=2)
            table.add_column("Name", style="cyan")
            table.add_column("Head", style="green")
            table.add_column("Forked from", style="yellow")
            table.add_column("Commits", justify="right", style="magenta")

            active_id = session.tree.active_branch_id
            for b in session.tree.branches:
                table.add_row(
                    "*" if b.id == active_id else "",
                    f"[{b.color}]{b.name}[/]" + (" (main)" if b.is_main else ""),
                    b.head_commit_id or "-",
                    b.origin_commit_id or "-",
                    str(len(session.list_commits(b.id))),
                )
            console.print(table)
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.argument("branch_name")
@click.option(
    "--checkout",
    is_flag=True,
    help="Also write the branch head into the working file",
)
@click.pass_context
def switch(ctx, file_path: str, branch_name: str, checkout: bool):
    """Make BRANCH_NAME (name or id) the active branch."""
    try:
        with _open(ctx, file_path) as session:
            switched = session.switch_branch(branch_name)
            console.print(f"🔀 Switched to {switched.name}", markup=False)
            if checkout and switched.head_commit_id:
                _checkout(session, switched.head_commit_id)
    except ModelVCError as e:
        _report_error(e)


def _checkout(session: ProjectSession, commit_id: str) -> None:
    if session.remote is not None:
        run_async(
            _run_with_remote(session.remote, session.restore_with_fetch(commit_id))
        )
    data = session.pull_commit_to_working_file(commit_id)
    console.print(
        f"📥 Wrote {len(data)} bytes of {commit_id} to {session.tracked_file}",
        markup=False,
    )


@cli.command()
@file_argument
@click.argument("commit_id")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    help="Write the snapshot bytes to this file",
)
@click.pass_context
def restore(ctx, file_path: str, commit_id: str, output: Optional[str]):
    """View COMMIT_ID without moving any branch head."""
    try:
        with _open(ctx, file_path) as session:
            if session.remote is not None:
                data = run_async(
                    _run_with_remote(
                        session.remote, session.restore_with_fetch(commit_id)
                    )
                )
            else:
                data = session.restore(commit_id)
            console.print(f"⏪ Restored view to {commit_id} ({len(data)} bytes)")
            if output:
                Path(output).write_bytes(data)
                console.print(f"💾 Saved snapshot to {output}", style="green")
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.argument("commit_id")
@click.pass_context
def checkout(ctx, file_path: str, commit_id: str):
    """Overwrite FILE_PATH with the snapshot of COMMIT_ID."""
    try:
        with _open(ctx, file_path) as session:
            _checkout(session, commit_id)
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.argument("commit_id")
@click.option("--unstar", is_flag=True, help="Remove the star instead")
@click.pass_context
def star(ctx, file_path: str, commit_id: str, unstar: bool):
    """Star (or unstar) COMMIT_ID."""
    try:
        with _open(ctx, file_path) as session:
            starred = session.star(commit_id, not unstar)
            state = "Starred" if starred.starred else "Unstarred"
            console.print(f"★ {state} {starred.id}", markup=False)
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.pass_context
def verify(ctx, file_path: str):
    """Check tree structure and that every commit has its snapshot."""
    try:
        with _open(ctx, file_path) as session:
            missing = session.verify()
            if not missing:
                console.print("✅ All snapshots present", style="green")
                return
            console.print(
                f"⚠️  {len(missing)} snapshot(s) missing locally:", style="yellow"
            )
            for commit_id in sorted(missing):
                console.print(f"  • {commit_id}", markup=False)
            if session.remote is None:
                console.print(
                    "💡 Configure a remote and run 'modelvc restore' to fetch them",
                    style="dim",
                )
            sys.exit(1)
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.pass_context
def status(ctx, file_path: str):
    """Show branch, current commit and storage status."""
    try:
        with _open(ctx, file_path) as session:
            tree = session.tree
            current = tree.current_commit()
            active = tree.active_branch()

            table = Table(title=f"📊 {session.tracked_file.name}")
            table.add_column("Item", style="cyan")
            table.add_column("Value", style="green")

            table.add_row("Active branch", active.name)
            if current is not None:
                size = session.store.blob_size(current.id)
                table.add_row(
                    "Current commit",
                    f"{current.id} ({size if size is not None else '?'} bytes)",
                )
                table.add_row("Message", current.message)
            else:
                table.add_row("Current commit", "-")
            table.add_row("Commits", str(len(tree.commits)))
            table.add_row("Branches", str(len(tree.branches)))
            table.add_row("Starred", str(len(tree.starred_commits())))
            table.add_row("Missing snapshots", str(len(session.missing_blobs)))
            table.add_row("Storage", str(session.store.root))
            remote = session.config.remote
            table.add_row(
                "Remote",
                f"{remote.backend_url} ({remote.project_id})"
                if remote.is_configured
                else "not configured",
            )
            console.print(table)
    except ModelVCError as e:
        _report_error(e)


@cli.command()
@file_argument
@click.option(
    "--duration",
    type=float,
    default=None,
    help="Stop after this many seconds (default: until Ctrl-C)",
)
@click.pass_context
def watch(ctx, file_path: str, duration: Optional[float]):
    """Report external changes to FILE_PATH as they happen."""
    try:
        with _open(ctx, file_path) as session:
            if not session.start_watching():
                for event in session.drain_events():
                    _print_event(event)
                sys.exit(1)

            console.print(
                f"👀 Watching {session.tracked_file} (Ctrl-C to stop)", style="blue"
            )
            deadline = time.monotonic() + duration if duration else None
            try:
                while deadline is None or time.monotonic() < deadline:
                    event = session.events.get(timeout=0.2)
                    if event is not None:
                        _print_event(event)
            except KeyboardInterrupt:
                console.print("\n👋 Stopped watching", style="dim")
    except ModelVCError as e:
        _report_error(e)


def _print_event(event) -> None:
    def on_change(e: ChangeEvent) -> None:
        if e.kind == ChangeKind.MODIFIED:
            console.print(
                "📝 File changed outside modelvc; commit to keep it", style="yellow"
            )
        elif e.kind == ChangeKind.DELETED:
            console.print("🗑️  Tracked file was deleted", style="red")
        else:
            console.print(f"⚠️  Cannot access file: {e.error}", style="red", markup=False)

    def on_commit(e: CommitEvent) -> None:
        console.print(f"Commit {e.action.value}: {e.commit_id}", markup=False)

    def on_branch(e: BranchEvent) -> None:
        console.print(f"Branch {e.action.value}: {e.name}", markup=False)

    def on_sync(e: SyncStatusEvent) -> None:
        console.print(
            f"Sync {e.direction}: {len(e.local_only)} local only, "
            f"{len(e.remote_only)} remote only, {len(e.synced)} synced"
        )

    dispatch_event(event, on_change, on_commit, on_branch, on_sync)


@cli.group()
def sync():
    """Synchronize history with the linked cloud project."""
    pass


def _require_remote(session: ProjectSession) -> CloudSyncClient:
    if session.remote is None:
        console.print(
            "❌ No cloud project configured. Set remote.backend_url and "
            "remote.project_id (or MODELVC_BACKEND_URL / MODELVC_PROJECT_ID).",
            style="red",
        )
        sys.exit(1)
    return session.remote


@sync.command("push")
@file_argument
@click.pass_context
def sync_push(ctx, file_path: str):
    """Upload local-only commits and the tree record."""
    try:
        with _open(ctx, file_path) as session:
            remote = _require_remote(session)
            result = run_async(
                _run_with_remote(remote, session.sync(SyncDirection.PUSH))
            )
            console.print(f"☁️  Pushed {len(result.pushed)} commit(s)", style="green")
            for commit_id, reason in result.failed.items():
                console.print(f"  ❌ {commit_id}: {reason}", style="red", markup=False)
            for commit_id in result.missing_blobs:
                console.print(
                    f"  ⚠️  {commit_id}: snapshot missing locally", style="yellow"
                )
            if result.failed:
                sys.exit(1)
    except ModelVCError as e:
        _report_error(e)


@sync.command("pull")
@file_argument
@click.pass_context
def sync_pull(ctx, file_path: str):
    """Merge remote history into the local tree (snapshots fetched on demand)."""
    try:
        with _open(ctx, file_path) as session:
            remote = _require_remote(session)
            result = run_async(
                _run_with_remote(remote, session.sync(SyncDirection.PULL))
            )
            console.print(
                f"☁️  Pulled {len(result.new_commits)} commit(s), "
                f"{len(result.new_branches)} new branch(es), "
                f"{len(result.moved_branches)} updated branch(es)",
                style="green",
            )
    except ModelVCError as e:
        _report_error(e)


@sync.command("status")
@file_argument
@click.pass_context
def sync_status(ctx, file_path: str):
    """Compare local and remote commit sets."""
    try:
        with _open(ctx, file_path) as session:
            remote = _require_remote(session)
            result = run_async(_run_with_remote(remote, session.sync_status()))

            table = Table(title="Cloud Sync Status")
            table.add_column("State", style="cyan")
            table.add_column("Count", justify="right", style="green")
            table.add_column("Commits", style="white")
            for label, ids in (
                ("Local only", result.local_only),
                ("Remote only", result.remote_only),
                ("Synced", result.synced),
            ):
                table.add_row(label, str(len(ids)), ", ".join(ids[:5]))
            console.print(table)
    except ModelVCError as e:
        _report_error(e)


@sync.command("bootstrap")
@file_argument
@click.pass_context
def sync_bootstrap(ctx, file_path: str):
    """Create FILE_PATH from the cloud project's latest snapshot."""
    config: Config = ctx.obj["config"]
    path = Path(file_path).expanduser().absolute()
    remote = _create_remote(config, path)
    if remote is None:
        console.print("❌ No cloud project configured", style="red")
        sys.exit(1)
    try:
        session = run_async(
            _run_with_remote(
                remote, bootstrap_tracked_file(path, remote, config, watch=False)
            )
        )
        with session:
            current = session.tree.current_commit()
            console.print(
                f"✅ Downloaded {current.id if current else '-'} to {path} "
                f"({len(session.tree.commits)} commit(s) in history)",
                style="green",
                markup=False,
            )
    except ModelVCError as e:
        _report_error(e)


def main():
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n❌ Interrupted by user", style="red")
        sys.exit(1)
    except Exception as e:
        console.print(f"❌ Unexpected error: {str(e)}", style="red", markup=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
