"""CLI entry point for Artive."""

import asyncio
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from artive.config import ConfigManager, default_config_path
from artive.models.events import CompleteEvent, ContentEvent, ErrorEvent
from artive.models.rewrite import ContentItem, RewriteRequest, TaskStatus
from artive.services.exceptions import ContentNotFound, TaskAlreadyRunning
from artive.services.task_engine import RewriteEngine
from artive.utils.logging import configure_logging, get_logger


logger = get_logger(__name__)
console = Console()


def load_config(path: Optional[Path] = None) -> ConfigManager:
    """
    Load configuration from ~/.config/artive/config.yaml (or the given path).

    Raises:
        click.ClickException: If config is missing, has invalid permissions, or validation fails
    """
    config_path = path or default_config_path()

    try:
        return ConfigManager.load_from_path(config_path)
    except (FileNotFoundError, PermissionError) as e:
        raise click.ClickException(str(e))
    except ValueError as e:
        raise click.ClickException(f"Configuration validation failed:\n{e}")


def _engine(ctx: click.Context) -> RewriteEngine:
    return load_config(ctx.obj["config_path"]).build_engine()


@click.group()
@click.version_option(version="0.1.0", prog_name="artive")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="ARTIVE_CONFIG",
    help="Path to config.yaml (default: ~/.config/artive/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path]):
    """Artive: rewrite WeChat articles with streaming LLM output."""
    configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context):
    """Create the database tables."""
    engine = _engine(ctx)
    asyncio.run(engine.store.init_schema())
    click.echo(f"Database ready: {engine.store.path}")


@cli.command("add-content")
@click.argument("title")
@click.argument("url")
@click.pass_context
def add_content(ctx: click.Context, title: str, url: str):
    """Add a content item pointing at an article URL."""
    engine = _engine(ctx)
    item = asyncio.run(engine.store.add_content(ContentItem(title=title, original_url=url)))
    logger.info("content_added", content_id=item.id, url=url)
    click.echo(item.id)


@cli.command("create-task")
@click.argument("content_id")
@click.option("--model", "ai_model", default=None, help="Model key (default from config)")
@click.option(
    "--template-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Prompt template with {{title}} and {{content}} placeholders",
)
@click.pass_context
def create_task(ctx: click.Context, content_id: str, ai_model: Optional[str], template_file: Optional[Path]):
    """Create a pending rewrite task for a content item."""
    engine = _engine(ctx)
    template = template_file.read_text(encoding="utf-8") if template_file else None

    try:
        task = asyncio.run(engine.submit(content_id, ai_model=ai_model, prompt_template=template))
    except (ValueError, ContentNotFound) as e:
        raise click.ClickException(str(e))

    click.echo(task.id)


async def _run_and_render(engine: RewriteEngine, task_id: str) -> bool:
    task = await engine.store.get_task(task_id)
    if task is None:
        raise click.ClickException(f"任务不存在: {task_id}")

    try:
        channel, run = engine.start(RewriteRequest.for_task(task))
    except TaskAlreadyRunning as e:
        raise click.ClickException(e.message)

    succeeded = False
    with console.status("[bold green]Rewriting...") as status:
        async for event in channel:
            if isinstance(event, ContentEvent):
                status.update(f"[bold green]Rewriting...[/] [dim]{event.content[:60]}[/]")
            elif isinstance(event, CompleteEvent):
                succeeded = True
                result = event.result
                console.print(Panel(
                    result.content_text or result.content_html,
                    title=f"{result.title} (v{result.version})",
                ))
            elif isinstance(event, ErrorEvent):
                console.print(f"[bold red]Failed:[/] {event.error}")
            else:
                console.print(f"[dim]{event.message}[/]")

    await run
    return succeeded


@cli.command()
@click.argument("task_id")
@click.pass_context
def run(ctx: click.Context, task_id: str):
    """
    Run a rewrite task and stream its progress.

    Running a completed task again stores a new result version.
    """
    engine = _engine(ctx)
    logger.info("run_command_started", task_id=task_id)

    if not asyncio.run(_run_and_render(engine, task_id)):
        raise click.exceptions.Exit(1)


@cli.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in TaskStatus]),
    default=None,
    help="Only show tasks in this state",
)
@click.pass_context
def tasks(ctx: click.Context, status: Optional[str]):
    """List rewrite tasks, newest first."""
    engine = _engine(ctx)

    async def collect():
        found = await engine.store.list_tasks(status=TaskStatus(status) if status else None)
        return [(task, await engine.store.max_version(task.id)) for task in found]

    rows = asyncio.run(collect())
    if not rows:
        click.echo("No tasks found.")
        return

    table = Table()
    table.add_column("Task")
    table.add_column("Content")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Versions", justify="right")
    table.add_column("Error")

    for task, versions in rows:
        table.add_row(
            task.id,
            task.content_id,
            task.ai_model,
            task.status.value,
            str(versions),
            task.error_message or "",
        )

    console.print(table)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Bind port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]):
    """Serve the HTTP API."""
    from artive.server import create_app

    config = load_config(ctx.obj["config_path"])
    app = create_app(config.build_engine())

    host = host or config.server.host
    port = port or config.server.port
    logger.info("serve_command_started", host=host, port=port)
    app.run(host=host, port=port)


def main():
    """Main entry point for setuptools console script."""
    cli()


if __name__ == "__main__":
    main()
