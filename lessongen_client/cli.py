"""
Lesson Generation CLI Tool
Command-line interface for the Lesson Generation API.
"""

import json
import sys
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .client import LessonGenClient
from .models import LessonGenAPIError


console = Console()


def get_client(url: str, token: Optional[str] = None) -> LessonGenClient:
    """Create a client instance."""
    return LessonGenClient(base_url=url, token=token)


def fail(e: Exception) -> None:
    """Print an error and exit non-zero."""
    if isinstance(e, LessonGenAPIError):
        console.print(f"❌ [red]{e.error}: {e.message}[/red]")
        if e.retry_after:
            console.print(f"   Retry after {e.retry_after}s")
    else:
        console.print(f"❌ [red]Error: {e}[/red]")
    sys.exit(1)


@click.group()
@click.option("--url", "-u", default="http://localhost:8000", help="API server URL")
@click.option("--token", "-t", envvar="LESSONGEN_TOKEN", help="Bearer token")
@click.pass_context
def cli(ctx, url: str, token: Optional[str]):
    """Lesson Generation CLI - seed the catalog and generate custom lessons."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["token"] = token


@cli.command()
@click.pass_context
def health(ctx):
    """Check API server health."""
    with get_client(ctx.obj["url"], ctx.obj["token"]) as client:
        try:
            status = client.health()
        except (httpx.HTTPError, LessonGenAPIError) as e:
            console.print(f"❌ [red]Connection failed: {e}[/red]")
            sys.exit(1)

        if status.get("status") == "healthy":
            console.print("✅ [green]API is healthy[/green]")
        else:
            console.print("⚠️ [yellow]API is degraded[/yellow]")
        console.print(f"   Database: {'ok' if status.get('database') else 'unreachable'}")
        console.print(f"   Counters: {status.get('counter_backend', 'unknown')}")
        console.print(f"   Provider circuit: {status.get('provider_circuit', 'unknown')}")


@cli.command()
@click.option("--grade", "-g", "grades", type=int, multiple=True, help="Grade to fill (repeatable, 0 = K)")
@click.option("--subject", "-s", "subjects", multiple=True, help="Subject to fill (repeatable)")
@click.option("--per-subject", "-n", type=int, default=None, help="Lessons per grade and subject")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def seed(ctx, grades: tuple, subjects: tuple, per_subject: Optional[int], as_json: bool):
    """Run bulk lesson seeding (admin)."""
    with get_client(ctx.obj["url"], ctx.obj["token"]) as client:
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Generating lessons...", total=None)
                summary = client.seed(
                    grades=list(grades) or None,
                    subjects=list(subjects) or None,
                    lessons_per_subject=per_subject,
                )
        except (httpx.HTTPError, LessonGenAPIError) as e:
            fail(e)
            return

        if as_json:
            console.print(json.dumps(summary.__dict__, indent=2))
            return

        table = Table(title=f"Seeding Run {summary.job_id or ''}".strip())
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Created", f"[green]{summary.created}[/green]")
        table.add_row("Skipped", str(summary.skipped))
        table.add_row("Failed", f"[red]{len(summary.errors)}[/red]" if summary.errors else "0")
        table.add_row("Total", str(summary.total))
        console.print(table)

        if summary.aborted:
            console.print(f"⚠️ [yellow]Aborted: {summary.abort_reason}[/yellow]")
        elif summary.cancelled:
            console.print("⚠️ [yellow]Cancelled[/yellow]")

        for error in summary.errors[:10]:
            console.print(f"  [dim]{error.get('label', '?')}:[/dim] {error.get('message', '')}")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_context
def job(ctx, job_id: int):
    """Show the status of a bulk run (admin)."""
    with get_client(ctx.obj["url"], ctx.obj["token"]) as client:
        try:
            run = client.get_job(job_id)
        except (httpx.HTTPError, LessonGenAPIError) as e:
            fail(e)
            return

        color = {"completed": "green", "running": "cyan"}.get(run.status, "yellow")
        console.print(f"Job {run.job_id} ({run.job_name}): [{color}]{run.status}[/{color}]")
        console.print(f"   Created {run.created}, skipped {run.skipped}, failed {run.failed} of {run.total}")
        if run.abort_reason:
            console.print(f"   Abort reason: {run.abort_reason}")
        if run.cancel_requested and run.status == "running":
            console.print("   [dim]Cancellation requested[/dim]")


@cli.command()
@click.argument("job_id", type=int)
@click.pass_context
def cancel(ctx, job_id: int):
    """Cancel a running bulk job (admin)."""
    with get_client(ctx.obj["url"], ctx.obj["token"]) as client:
        try:
            client.cancel_job(job_id)
        except (httpx.HTTPError, LessonGenAPIError) as e:
            fail(e)
            return
        console.print(f"✅ [green]Cancellation requested for job {job_id}[/green]")


@cli.command()
@click.argument("topic")
@click.option("--child", "-c", "child_id", type=int, required=True, help="Child id")
@click.option("--subject", "-s", required=True, help="Subject")
@click.option("--grade", "-g", "grade_level", type=int, required=True, help="Grade level (0 = K)")
@click.option("--key", "idempotency_key", default=None, help="Idempotency key")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def generate(ctx, topic: str, child_id: int, subject: str, grade_level: int, idempotency_key: Optional[str], as_json: bool):
    """Generate a custom lesson for a child."""
    with get_client(ctx.obj["url"], ctx.obj["token"]) as client:
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Checking and generating...", total=None)
                lesson = client.generate_custom_lesson(
                    child_id=child_id,
                    topic=topic,
                    subject=subject,
                    grade_level=grade_level,
                    idempotency_key=idempotency_key,
                )
        except (httpx.HTTPError, LessonGenAPIError) as e:
            fail(e)
            return

        if as_json:
            console.print(json.dumps(lesson.__dict__, indent=2))
            return

        console.print(Panel(
            lesson.content_markdown,
            title=f"[cyan]{lesson.title}[/cyan]",
            border_style="green",
        ))
        console.print(f"[dim]{len(lesson.quiz_questions)} quiz questions[/dim]")
        if lesson.quota_remaining is not None:
            console.print(f"[dim]Lessons left today: {lesson.quota_remaining}[/dim]")
        if lesson.duplicate:
            console.print("[dim]Replayed from an earlier request[/dim]")


@cli.command()
@click.argument("child_id", type=int)
@click.pass_context
def quota(ctx, child_id: int):
    """Show today's custom lesson quota for a child."""
    with get_client(ctx.obj["url"], ctx.obj["token"]) as client:
        try:
            status = client.child_quota(child_id)
        except (httpx.HTTPError, LessonGenAPIError) as e:
            fail(e)
            return

        color = "green" if status.remaining > 0 else "red"
        console.print(f"Child {child_id}: [{color}]{status.remaining}/{status.limit}[/{color}] lessons left")
        if status.reset_at:
            console.print(f"   Resets at {status.reset_at} UTC")


def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
