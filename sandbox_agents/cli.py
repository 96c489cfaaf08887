"""Sandbox Agents CLI - command-line interface for the task API."""

import os
import time
from datetime import datetime
from pathlib import Path

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from sandbox_agents.services.api_client import TERMINAL_STATUSES, ApiClientService
from sandbox_agents.services.git import GitError, GitService

# Load .env file from project root (parent of sandbox_agents/ directory)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

app = typer.Typer(help="Sandbox Agents CLI")
task_app = typer.Typer(help="Task management commands")
app.add_typer(task_app, name="task")

console = Console()

DEFAULT_OWNER = os.getenv("SANDBOX_AGENTS_OWNER")


def _fail(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")
    raise typer.Exit(1)


def _call(fn, *args, **kwargs):
    """Run an API call, turning HTTP errors into a clean exit."""
    try:
        return fn(*args, **kwargs)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        _fail(f"API error {e.response.status_code}: {detail}")
    except httpx.RequestError as e:
        _fail(f"Could not reach the API: {e}")


def _resolve_repo(repo: str | None) -> str:
    if repo is not None:
        return repo
    try:
        repo_url, _ = GitService.get_current_repo()
    except GitError as e:
        console.print(f"[red]✗[/red] {e}")
        console.print("  Either run from a git repo or specify --repo explicitly")
        raise typer.Exit(1) from None
    return repo_url


@task_app.command("create")
def create_task(
    instruction: str = typer.Argument(..., help="Natural language instruction for the agent"),
    repo: str = typer.Option(
        None, "--repo", help="Repository (org/name or URL, defaults to current git repo)"
    ),
    owner: str = typer.Option(
        DEFAULT_OWNER, "--owner", help="Owner id (defaults to SANDBOX_AGENTS_OWNER)"
    ),
    agent: str = typer.Option("claude", "--agent", "-a", help="Agent to run"),
    branch: str = typer.Option(None, "--branch", "-b", help="Target branch name"),
    keep_alive: bool = typer.Option(
        False, "--keep-alive", help="Keep the sandbox for follow-ups"
    ),
):
    """Create a new task."""
    if not owner:
        _fail("No owner given; pass --owner or set SANDBOX_AGENTS_OWNER")

    task = _call(
        ApiClientService.create_task,
        owner_id=owner,
        instruction=instruction,
        repository_url=_resolve_repo(repo),
        agent=agent,
        keep_alive=keep_alive,
        branch_name=branch,
    )

    console.print(f"[green]✓[/green] Task created: [bold]{task['id']}[/bold]")
    console.print(f"  Status: {task['status']}")
    console.print(f"  Agent: {task['agent']}")
    console.print(f"  Repository: {task['repository_url']}")

    if task.get("branch_name"):
        console.print(f"  Branch: [cyan]{task['branch_name']}[/cyan]")


@task_app.command("continue")
def continue_task(
    task_id: str = typer.Argument(..., help="Finished task to follow up on"),
    instruction: str = typer.Argument(..., help="Follow-up instruction"),
):
    """Send a follow-up instruction to a finished task."""
    task = _call(ApiClientService.continue_task, task_id, instruction)

    console.print(f"[green]✓[/green] Follow-up created: [bold]{task['id']}[/bold]")
    console.print(f"  Parent: [dim]{task_id}[/dim]")
    console.print(f"  Status: {task['status']}")


@task_app.command("cancel")
def cancel_task(task_id: str = typer.Argument(..., help="Task ID")):
    """Cancel a task."""
    task = _call(ApiClientService.cancel_task, task_id)

    if task["status"] == "cancelled":
        console.print(f"[green]✓[/green] Task {task_id} cancelled")
    elif task["status"] in TERMINAL_STATUSES:
        console.print(f"[yellow]Task {task_id} already {task['status']}[/yellow]")
    else:
        console.print(f"[green]✓[/green] Cancellation requested for {task_id}")


@task_app.command("list")
def list_tasks(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of tasks to show"),
    owner: str = typer.Option(DEFAULT_OWNER, "--owner", help="Only this owner's tasks"),
):
    """List recent tasks."""
    data = _call(ApiClientService.list_tasks, limit=limit, owner_id=owner)
    tasks = data["tasks"]

    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title=f"Recent Tasks (showing {len(tasks)} of {data['total']})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Agent")
    table.add_column("Instruction", style="white")
    table.add_column("Created", style="dim")

    for task in tasks:
        instruction = task["instruction"]
        if len(instruction) > 50:
            instruction = instruction[:50] + "..."

        table.add_row(
            task["id"][:8],  # Show first 8 chars of UUID
            task["status"],
            task["agent"],
            instruction,
            task["created_at"][:10],
        )

    console.print(table)


@task_app.command("get")
def get_task(task_id: str = typer.Argument(..., help="Task ID")):
    """Get task details."""
    task = _call(ApiClientService.get_task, task_id)

    created = datetime.fromisoformat(task["created_at"].replace("Z", "+00:00"))
    updated = datetime.fromisoformat(task["updated_at"].replace("Z", "+00:00"))
    duration = updated - created

    console.print(f"[bold]Task {task['id']}[/bold]")
    console.print(f"  Status: {task['status']}")
    console.print(f"  Agent: {task['agent']}")
    console.print(f"  Repository: {task['repository_url']}")
    console.print(f"  Created: {task['created_at']}")
    console.print(f"  Updated: {task['updated_at']}")
    console.print(f"  Duration: {duration.total_seconds():.1f}s")

    if task.get("parent_task_id"):
        console.print(f"  Parent: [dim]{task['parent_task_id']}[/dim]")
    if task.get("branch_name"):
        pushed = " (pushed)" if task.get("branch_pushed") else ""
        console.print(f"  Branch: [cyan]{task['branch_name']}[/cyan]{pushed}")
    if task.get("commit_sha"):
        console.print(f"  Commit: {task['commit_sha']}")
    if task.get("error_code"):
        console.print(f"  Error: [red]{task['error_code']}[/red]")

    console.print(f"\n[bold]Instruction:[/bold]\n{task['instruction']}")

    if task.get("result"):
        console.print(f"\n[bold]Result:[/bold]\n{task['result']}")


def _print_message(message: dict) -> None:
    if message["kind"] == "event":
        console.print(f"» {message['content']}", style="bold blue", markup=False)
    elif message["stream"] == "stderr":
        console.print(message["content"], style="red", markup=False, highlight=False)
    else:
        console.print(message["content"], markup=False, highlight=False)


@task_app.command("logs")
def get_logs(
    task_id: str = typer.Argument(..., help="Task ID"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream until the task ends"),
):
    """Print the task message stream."""
    after_seq = 0
    finished = not follow
    while True:
        data = _call(ApiClientService.get_messages, task_id, after_seq=after_seq)
        for message in data["messages"]:
            _print_message(message)
            after_seq = message["seq"]

        if data["messages"]:
            continue
        if finished:
            break
        # One more pass after the task ends picks up its final messages
        task = _call(ApiClientService.get_task, task_id)
        finished = task["status"] in TERMINAL_STATUSES
        if not finished:
            time.sleep(2)


@task_app.command("wait")
def wait_task(
    task_id: str = typer.Argument(..., help="Task ID"),
    timeout: int = typer.Option(600, "--timeout", "-t", help="Timeout in seconds"),
):
    """Wait for task to finish."""
    try:
        task = _call(ApiClientService.wait_for_task, task_id, timeout=timeout)
    except TimeoutError:
        _fail(f"Timeout after {timeout}s")

    if task["status"] == "completed":
        console.print("[green]✓[/green] Task completed")
        if task.get("result"):
            console.print(f"  {task['result']}")
    else:
        console.print(f"[red]✗[/red] Task {task['status']}")
        if task.get("result"):
            console.print(f"  {task['result']}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
