"""modelbridge CLI.

Small utilities for inspecting how query options are normalized before they
reach a connector.
"""

import json
import sys
from typing import Optional

import structlog
import typer

from modelbridge.errors import ORMError
from modelbridge.models.query import like_to_regex, prepare_query_options

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    logger_factory=lambda name: structlog.PrintLogger(file=sys.stderr),
    wrapper_class=structlog.BoundLogger,
    context_class=dict,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="modelbridge",
    help="""Inspect query option normalization.

Examples:

  # Normalize query options
  uv run modelbridge normalize '{"per_page": 3, "page": 3}'

  # Translate a SQL LIKE pattern
  uv run modelbridge like 'Hello%'""",
    rich_markup_mode="markdown",
)


@app.command()
def normalize(
    options: str = typer.Argument(
        ...,
        help="Query options as a JSON object",
    ),
    defaults: Optional[str] = typer.Option(
        None,
        "--defaults",
        "-d",
        help="Model default query options as a JSON object",
    ),
    translate_like: bool = typer.Option(
        False,
        "--translate-like",
        "-l",
        help="Rewrite $like/$notLike operators into $regex",
    ),
) -> None:
    """Print the normalized form of a query options document."""
    try:
        raw = json.loads(options)
        default_options = json.loads(defaults) if defaults else None
    except json.JSONDecodeError as e:
        logger.error("invalid_json", error=str(e))
        raise typer.Exit(1)

    if not isinstance(raw, dict):
        logger.error("invalid_options", reason="options must be a JSON object")
        raise typer.Exit(1)

    try:
        prepared = prepare_query_options(raw, default_options, translate_regex=translate_like)
    except ORMError as e:
        logger.error("normalization_failed", error=e.message)
        raise typer.Exit(1)

    typer.echo(json.dumps(prepared.model_dump(exclude_none=True), indent=2, sort_keys=True))


@app.command()
def like(
    pattern: str = typer.Argument(
        ...,
        help="SQL LIKE pattern, e.g. 'Hello%'",
    ),
) -> None:
    """Print the regular expression a LIKE pattern translates to."""
    typer.echo(like_to_regex(pattern))


@app.command()
def version() -> None:
    """Show version information."""
    from modelbridge import __version__

    typer.echo(f"modelbridge {__version__}")


if __name__ == "__main__":
    app()
