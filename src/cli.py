"""CLI interface for incurio."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from incurio.config import IncurioConfig, load_config, merge_cli_overrides
from incurio.errors import IncurioError, StoreError
from incurio.pipeline import in_generation_window, run_daily_generation
from incurio.shared.llm import PROVIDER_ERRORS
from incurio.sparks import (
    AVAILABLE_TOPICS,
    DeliveryStatus,
    Reaction,
    SparkComponents,
    SparkStore,
    UserProfile,
    build_components,
)
from incurio.sparks.days import utcnow
from incurio.sparks.topics import unknown_topics

app = typer.Typer(
    name="incurio",
    help="Generate, deduplicate and deliver a daily batch of sparks.",
)

console = Console()


class _State:
    config_path: Path | None = None


_state = _State()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from incurio import __version__

        console.print(f"incurio {__version__}")
        raise typer.Exit()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load(store_url: str | None = None) -> IncurioConfig:
    config = load_config(_state.config_path)
    return merge_cli_overrides(config, store_url=store_url)


def _components(config: IncurioConfig) -> SparkComponents:
    try:
        return build_components(config)
    except (IncurioError, *PROVIDER_ERRORS) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.callback()
def main(
    config: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to an incurio TOML config file.",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable debug logging."),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """Incurio - daily sparks of curiosity."""
    _state.config_path = config
    _setup_logging(verbose)


@app.command("init-db")
def init_db(
    store_url: Annotated[
        Optional[str],
        typer.Option("--store-url", help="SQLAlchemy URL of the durable store."),
    ] = None,
) -> None:
    """Create the durable store's tables."""
    config = _load(store_url)
    try:
        store = SparkStore.from_url(config.store.url, echo=config.store.echo)
    except StoreError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    store.dispose()
    console.print(f"[green]Initialized[/green] {config.store.url}")


@app.command("add-user")
def add_user(
    user_id: Annotated[str, typer.Argument(help="User identifier.")],
    topic: Annotated[
        list[str],
        typer.Option("--topic", "-t", help="Preferred topic (repeatable)."),
    ],
    preferences: Annotated[
        str,
        typer.Option("--preferences", "-p", help="Free-text preference hint."),
    ] = "",
    store_url: Annotated[
        Optional[str],
        typer.Option("--store-url", help="SQLAlchemy URL of the durable store."),
    ] = None,
) -> None:
    """Register a user and their topic preferences."""
    bad = unknown_topics(topic)
    if bad:
        console.print(f"[red]Error:[/red] Unknown topic(s): {', '.join(bad)}")
        console.print(f"Available topics: {', '.join(AVAILABLE_TOPICS)}")
        raise typer.Exit(1)

    config = _load(store_url)
    try:
        store = SparkStore.from_url(config.store.url, echo=config.store.echo)
    except StoreError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    try:
        profile = store.upsert_user(
            UserProfile(id=user_id, topics=list(topic), preference_text=preferences)
        )
    except StoreError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        store.dispose()
    console.print(f"Saved [bold]{profile.id}[/bold] with topics: {', '.join(profile.topics)}")


@app.command()
def today(
    user_id: Annotated[str, typer.Argument(help="User identifier.")],
    store_url: Annotated[
        Optional[str],
        typer.Option("--store-url", help="SQLAlchemy URL of the durable store."),
    ] = None,
) -> None:
    """Show today's next spark, generating the batch if needed."""
    config = _load(store_url)
    components = _components(config)
    try:
        user = components.store.get_user(user_id)
        if user is None:
            console.print(f"[red]Error:[/red] Unknown user: {user_id}")
            raise typer.Exit(1)

        preference_text = user.preference_text or config.background.default_preference_text
        delivery = components.service.deliver(user.id, user.topics, preference_text)
    finally:
        components.store.dispose()

    if delivery.status == DeliveryStatus.ALL_CONSUMED:
        console.print("[green]All of today's sparks are consumed.[/green] Come back tomorrow!")
        return
    if delivery.spark is None:
        console.print(f"[yellow]No spark available yet:[/yellow] {delivery.reason}")
        raise typer.Exit(2)

    spark = delivery.spark
    console.print(
        Panel(
            f"[bold]{spark.content}[/bold]\n\n{spark.details}",
            title=f"{spark.topic} · {spark.batch_index}/{config.generation.batch_size}",
            subtitle=spark.id,
        )
    )


@app.command()
def react(
    user_id: Annotated[str, typer.Argument(help="User identifier.")],
    spark_id: Annotated[str, typer.Argument(help="Spark identifier.")],
    reaction: Annotated[Reaction, typer.Argument(help="dislike, like or love.")],
    store_url: Annotated[
        Optional[str],
        typer.Option("--store-url", help="SQLAlchemy URL of the durable store."),
    ] = None,
) -> None:
    """Record a reaction to a spark."""
    config = _load(store_url)
    components = _components(config)
    try:
        spark = components.store.get_spark(spark_id)
        index = spark.batch_index if spark is not None else 0
        outcome = components.service.mark_interacted(user_id, spark_id, index, reaction)
    except KeyError as exc:
        console.print(f"[red]Error:[/red] Unknown spark for {user_id}: {spark_id}")
        raise typer.Exit(1) from exc
    except StoreError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        components.store.dispose()

    console.print(f"Recorded [bold]{outcome.interaction.reaction}[/bold] on {spark_id}")
    if outcome.love_count is not None:
        console.print(f"{outcome.love_count.topic}: {outcome.love_count.count} love(s)")
    if outcome.recommendation is not None:
        rec = outcome.recommendation
        console.print(
            Panel(
                f"{rec.content}\n\n{rec.details}",
                title=f"Recommended {rec.recommendation_kind}",
            )
        )


@app.command()
def status(
    user_id: Annotated[str, typer.Argument(help="User identifier.")],
    store_url: Annotated[
        Optional[str],
        typer.Option("--store-url", help="SQLAlchemy URL of the durable store."),
    ] = None,
) -> None:
    """Show whether today's batch exists and how many sparks remain."""
    config = _load(store_url)
    components = _components(config)
    try:
        has_batch = components.service.has_batch_for_today(user_id)
        remaining = components.service.remaining_today(user_id)
    except StoreError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    finally:
        components.store.dispose()

    table = Table(title=f"Today for {user_id}")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Day", components.orchestrator.today().isoformat())
    table.add_row("Batch complete", "yes" if has_batch else "no")
    table.add_row("Remaining", str(remaining))
    console.print(table)


@app.command("run-daily")
def run_daily(
    force: Annotated[
        bool,
        typer.Option("--force", help="Run even outside the generation window."),
    ] = False,
    store_url: Annotated[
        Optional[str],
        typer.Option("--store-url", help="SQLAlchemy URL of the durable store."),
    ] = None,
) -> None:
    """Generate today's batch for every registered user."""
    config = _load(store_url)
    if not force and not in_generation_window(
        utcnow(), config.delivery.zone, config.background.generation_hours
    ):
        console.print("Outside the generation window; use --force to run anyway.")
        return

    components = _components(config)
    try:
        report = run_daily_generation(
            components.store,
            components.orchestrator,
            default_preference_text=config.background.default_preference_text,
            pause_seconds=config.background.user_pause_seconds,
        )
    finally:
        components.store.dispose()

    console.print(
        f"Users: {report.total}  succeeded: {report.succeeded}  "
        f"failed: {report.failed}  skipped: {report.skipped}"
    )
    for error in report.errors:
        console.print(f"[red]{error.source or error.stage}[/red]: {error.message}")
    if report.failed:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
