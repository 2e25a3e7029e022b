"""
devtrack CLI - Main entry point for the application.

This module defines a thin operator command-line interface using Typer.
It wires the engine components together; no language-model provider is
configured here, so commands run without summaries or embeddings.
"""

import json
from datetime import date, datetime
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from . import repository as repo
from .config import Settings, get_settings
from .database import StorageError
from .git_reader import GitReader, SourceControlError
from .indexer import StructuralIndexer
from .ingest import CommitIngestor, IngestError
from .log import configure_logging
from .manager import ConnectionManager, StorageLockedError
from .search import SearchResultFormatter, SemanticSearcher
from .worklog import WorklogCache, WorklogScope

# Create the main Typer application
app = typer.Typer(
    name="devtrack",
    help="devtrack - Developer Activity Tracker\n\n"
    "Ingest git history, index code and build worklogs from a local store.",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)
profile_app = typer.Typer(help="Manage storage profiles.", no_args_is_help=True)
app.add_typer(profile_app, name="profile")
branch_app = typer.Typer(help="Inspect and describe ingested branches.", no_args_is_help=True)
app.add_typer(branch_app, name="branch")

# Initialize Rich console for output
console = Console()


def _settings(profile: Optional[str]) -> Settings:
    settings = get_settings()
    if profile:
        settings.profile = profile
    configure_logging(settings.log_level, settings.log_json)
    return settings


def _fail(message: str, hint: str | None = None) -> NoReturn:
    console.print(f"[red]❌ {message}[/red]")
    if hint:
        console.print(f"[dim]{hint}[/dim]")
    raise typer.Exit(1)


def _resolve_codebase_id(manager: ConnectionManager, path: Path) -> Optional[int]:
    with manager.for_profile().read_session() as session:
        if session is None:
            return None
        codebase = repo.get_codebase_by_path(session, str(path.resolve()))
        return codebase.id if codebase else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        _fail(f"Invalid date: {value}", "Use YYYY-MM-DD")
    return None


def version_callback(value: bool) -> None:
    """Show version information."""
    if value:
        from . import __version__

        rprint(f"[bold blue]devtrack[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    _version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    )
) -> None:
    """
    devtrack - Developer Activity Tracker

    Ingest git history, index code and build worklogs from a local store.
    """
    pass


@app.command()
def ingest(
    path: Path = typer.Argument(Path("."), help="Repository working tree"),
    branch: Optional[List[str]] = typer.Option(
        None, "--branch", "-b", help="Branch to ingest (repeatable); all when omitted"
    ),
    since: Optional[str] = typer.Option(None, "--since", help="Skip commits before YYYY-MM-DD"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    📥 Ingest new commits from a repository.

    Examples:
        devtrack ingest ~/code/app
        devtrack ingest . -b main -b feature/login --since 2024-01-01
    """
    settings = _settings(profile)
    since_date = _parse_date(since)
    try:
        with ConnectionManager(settings) as manager:
            reader = GitReader(path)
            ingestor = CommitIngestor(manager.for_profile(), reader, settings=settings)
            report = ingestor.ingest(
                branches=branch or None,
                since=datetime.combine(since_date, datetime.min.time()) if since_date else None,
            )
    except StorageLockedError as e:
        _fail(str(e), "Another devtrack process is writing to this profile; retry shortly")
    except (SourceControlError, IngestError) as e:
        _fail(f"Ingest failed: {str(e)}")
    except StorageError as e:
        _fail(f"Storage error: {str(e)}")

    table = Table(title=f"Ingested {reader.path.name}")
    table.add_column("Branch", style="cyan")
    table.add_column("New commits", style="green", justify="right")
    table.add_column("Cursor", style="magenta")
    for result in report.branches:
        table.add_row(result.name, str(result.new_commits), (result.cursor or "")[:7])
    console.print(table)
    console.print(
        f"[green]✅ {report.new_commits} new commits[/green] "
        f"({report.user_commits} yours, {report.missing_summaries} awaiting summaries)"
    )


@app.command()
def index(
    path: Path = typer.Argument(Path("."), help="Repository working tree"),
    force: bool = typer.Option(False, "--force", "-f", help="Reindex every file"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    🗂️ Index the working tree's folders and files.
    """
    settings = _settings(profile)
    if not path.is_dir():
        _fail(f"Not a directory: {path}")
    try:
        with ConnectionManager(settings) as manager:
            report = StructuralIndexer(manager.for_profile(), settings=settings).reindex(
                path, force=force
            )
    except StorageLockedError as e:
        _fail(str(e), "Another devtrack process is writing to this profile; retry shortly")
    except StorageError as e:
        _fail(f"Storage error: {str(e)}")

    console.print(
        f"[green]✅ Indexed {path.resolve().name}:[/green] "
        f"{report.new_files} new, {report.changed_files} changed, "
        f"{report.unchanged_files} unchanged, {report.removed_files} removed"
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to search for"),
    path: Path = typer.Option(Path("."), "--path", help="Repository working tree"),
    kind: str = typer.Option("file", "--kind", "-k", help="file or folder"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum results"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    🔍 Search indexed files or folders.
    """
    settings = _settings(profile)
    with ConnectionManager(settings) as manager:
        codebase_id = _resolve_codebase_id(manager, path)
        if codebase_id is None:
            console.print(f"[yellow]No index found for {path.resolve()}[/yellow]")
            return
        engine = manager.for_profile().reader()
        try:
            response = SemanticSearcher(engine).find(codebase_id, query, kind=kind, limit=limit)
        except ValueError as e:
            _fail(str(e))
        finally:
            engine.dispose()

    if not response.results:
        console.print(f"[yellow]No matches for '{query}'[/yellow]")
        return
    console.print(SearchResultFormatter(console).format_results_table(response, query))


@app.command()
def worklog(
    path: Path = typer.Argument(Path("."), help="Repository working tree"),
    day: Optional[str] = typer.Option(None, "--day", help="Day (YYYY-MM-DD)"),
    week: Optional[str] = typer.Option(None, "--week", help="Any day in the week"),
    month: Optional[str] = typer.Option(None, "--month", help="Any day in the month"),
    branch: Optional[str] = typer.Option(None, "--branch", help="Branch name"),
    group_by: str = typer.Option("date", "--group-by", help="date or branch"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    📝 Show the worklog for a day, week, month or branch (default: today).
    """
    settings = _settings(profile)
    try:
        with ConnectionManager(settings) as manager:
            codebase_id = _resolve_codebase_id(manager, path)
            if codebase_id is None:
                console.print(f"[yellow]No commits ingested for {path.resolve()}[/yellow]")
                return
            store = manager.for_profile()

            if branch:
                with store.read_session() as session:
                    row = repo.get_branch(session, codebase_id, branch)
                if row is None:
                    _fail(f"Unknown branch: {branch}")
                scope = WorklogScope.branch(row.id)
            elif week:
                scope = WorklogScope.week(_parse_date(week))
            elif month:
                scope = WorklogScope.month(_parse_date(month))
            else:
                scope = WorklogScope.day(_parse_date(day) or date.today())

            result = WorklogCache(store, settings=settings).get_or_build(
                codebase_id, scope, group_by
            )
    except StorageLockedError as e:
        _fail(str(e), "Another devtrack process is writing to this profile; retry shortly")
    except ValueError as e:
        _fail(str(e))

    if not result.found:
        console.print("[yellow]No commits in this period[/yellow]")
        return
    console.print(result.content, markup=False, highlight=False)


@app.command()
def worklogs(
    path: Path = typer.Argument(Path("."), help="Repository working tree"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    📅 List dates with stored worklog entries.
    """
    settings = _settings(profile)
    with ConnectionManager(settings) as manager:
        codebase_id = _resolve_codebase_id(manager, path)
        dates = (
            WorklogCache(manager.for_profile(), settings=settings).list_worklog_dates(codebase_id)
            if codebase_id is not None
            else []
        )

    if not dates:
        console.print("[yellow]No worklog entries stored[/yellow]")
        return
    table = Table(title="Worklog entries")
    table.add_column("Date", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Commits", style="green", justify="right")
    table.add_column("Lines", justify="right")
    for info in dates:
        table.add_row(
            info.entry_date.isoformat(),
            str(info.entry_count),
            str(info.commit_count),
            f"+{info.additions} / -{info.deletions}",
        )
    console.print(table)


@app.command()
def stats(
    path: Path = typer.Argument(Path("."), help="Repository working tree"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    📊 Show index statistics for a codebase.
    """
    settings = _settings(profile)
    with ConnectionManager(settings) as manager:
        with manager.for_profile().read_session() as session:
            codebase = (
                repo.get_codebase_by_path(session, str(path.resolve())) if session else None
            )
            if codebase is None:
                console.print(f"[yellow]No index found for {path.resolve()}[/yellow]")
                return
            figures = repo.get_codebase_stats(session, codebase.id)
            commits = repo.get_commit_count(session, codebase.id)

    table = Table(title=f"Statistics: {codebase.name}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Folders", str(figures.folder_count))
    table.add_row("Files", str(figures.file_count))
    table.add_row("Total bytes", str(figures.total_bytes))
    table.add_row("Total lines", str(figures.total_lines))
    table.add_row("Commits", str(commits))
    for language, count in sorted(figures.languages.items()):
        table.add_row(f"  {language}", str(count))
    console.print(table)


@app.command()
def query(
    sql: str = typer.Argument(..., help="SQL statement to run read-only"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """
    🧾 Run a raw read-only SQL query and print rows as JSON.
    """
    settings = _settings(profile)
    with ConnectionManager(settings) as manager:
        with manager.for_profile().read_session() as session:
            if session is None:
                _fail(f"Profile '{settings.profile}' has no data yet")
            try:
                rows = repo.execute_query(session, sql)
            except repo.RepositoryError as e:
                _fail(str(e))
    typer.echo(json.dumps(rows, indent=2, default=str))


@branch_app.command("show")
def branch_show(
    name: str = typer.Argument(..., help="Branch name"),
    path: Path = typer.Option(Path("."), "--path", help="Repository working tree"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """Show a branch's status, story, summary and recent commits."""
    settings = _settings(profile)
    with ConnectionManager(settings) as manager:
        with manager.for_profile().read_session() as session:
            codebase = (
                repo.get_codebase_by_path(session, str(path.resolve())) if session else None
            )
            if codebase is None:
                _fail(f"No commits ingested for {path.resolve()}")
            branch = repo.get_branch(session, codebase.id, name)
            if branch is None:
                _fail(f"Unknown branch: {name}", "Has it been ingested?")
            commits = repo.get_branch_commits(session, branch.id)

    table = Table(title=f"Branch: {branch.name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", branch.status + (" (default)" if branch.is_default else ""))
    table.add_row("Base", branch.base_branch or "-")
    table.add_row("Commits", str(len(commits)))
    table.add_row("Story", branch.story or "-")
    table.add_row("Summary", branch.summary or "-")
    console.print(table)

    for commit in reversed(commits[-5:]):
        title = commit.message.splitlines()[0] if commit.message else ""
        console.print(
            f"  {commit.committed_at:%b %d} {commit.short_hash} {title}",
            markup=False,
            highlight=False,
        )


@branch_app.command("story")
def branch_story(
    name: str = typer.Argument(..., help="Branch name"),
    story: str = typer.Argument(..., help="Description; an empty string clears it"),
    path: Path = typer.Option(Path("."), "--path", help="Repository working tree"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile name"),
) -> None:
    """Set the story shown on a branch's worklog."""
    settings = _settings(profile)
    try:
        with ConnectionManager(settings) as manager:
            codebase_id = _resolve_codebase_id(manager, path)
            if codebase_id is None:
                _fail(f"No commits ingested for {path.resolve()}")
            with manager.for_profile().transaction() as session:
                repo.set_branch_story(session, codebase_id, name, story)
    except StorageLockedError as e:
        _fail(str(e), "Another devtrack process is writing to this profile; retry shortly")
    except repo.RepositoryError as e:
        _fail(str(e))

    console.print(f"[green]✅ Updated story for {name}[/green]")


@profile_app.command("create")
def profile_create(name: str = typer.Argument(..., help="Profile name")) -> None:
    """Create a new profile."""
    settings = _settings(None)
    try:
        ConnectionManager(settings).create_profile(name)
    except (StorageError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✅ Created profile {name}[/green]")


@profile_app.command("list")
def profile_list() -> None:
    """List profiles."""
    settings = _settings(None)
    profiles = ConnectionManager(settings).list_profiles()
    if not profiles:
        console.print("[yellow]No profiles found[/yellow]")
        return
    for name in profiles:
        marker = " (active)" if name == settings.profile else ""
        console.print(f"{name}{marker}", markup=False)


if __name__ == "__main__":
    app()
