"""
CLI interface for the card catalog.

Usage:
    cardstore init
    cardstore search "dragon" --include elf,warrior --mode and
    cardstore check-tags
    cardstore rebuild-tags
"""

import json
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .aliases import AliasTable
from .config import CatalogConfig, load_or_create_config
from .filters import SearchFilters
from .logging_config import configure_from_env, configure_ops_log, enable_debug_mode
from .query_builder import SEARCH_TYPES, SORT_ORDERS, TAG_MATCH_MODES
from .repository import CatalogRepository
from .types import SearchPage


# Quiet console by default; CARDSTORE_VERBOSE=1 turns on debug output
configure_from_env()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="cardstore",
    help="Character card catalog with alias-aware tag search.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="CARDSTORE_PATH",
        help="Path to the store directory (default: ~/.cardstore/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Character card catalog with alias-aware tag search."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _open_store(ensure_index: bool = False) -> tuple[CatalogConfig, CatalogRepository]:
    """Open the configured store, creating its config on first use."""
    import atexit

    try:
        config = load_or_create_config(_store_override)
        configure_ops_log(config.path)
        repo = CatalogRepository.from_config(config, ensure_index=ensure_index)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(repo.close)
    return config, repo


def _open_repository() -> CatalogRepository:
    return _open_store()[1]


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _format_page(page: SearchPage) -> str:
    if not page.records:
        return "No cards found."
    lines = []
    for card in page.records:
        tags = ", ".join(card.topics[:6])
        lines.append(f"{card.id:>10}  {card.name}  by {card.author or '?'}  [{tags}]")
    lines.append(f"Page {page.page}/{max(page.total_pages, 1)} ({page.total_count} cards)")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def init():
    """Create the store directory, config and database, then check the tag index."""
    config, repo = _open_store(ensure_index=True)
    if _get_json_output():
        _echo_json({"store": str(config.path), "database": str(config.database_path), "cards": repo.count()})
    else:
        typer.echo(f"Store: {config.path}")
        typer.echo(f"Database: {config.database_path} ({repo.count()} cards)")


@app.command("check-tags")
def check_tags():
    """Compare tagged cards against the tag index."""
    check = _open_repository().needs_rebuild()
    if _get_json_output():
        _echo_json({
            "needs_rebuild": check.needs_rebuild,
            "reason": check.reason,
            "tagged": check.tagged,
            "indexed": check.indexed,
        })
    else:
        state = "needs rebuild" if check.needs_rebuild else "ok"
        typer.echo(f"Tag index {state}: {check.reason}")


@app.command("rebuild-tags")
def rebuild_tags(
    force: Annotated[bool, typer.Option(
        "--force", "-f",
        help="Rebuild even if the index looks consistent",
    )] = False,
):
    """Rebuild the tag index from stored topics."""
    repo = _open_repository()
    if not force:
        check = repo.needs_rebuild()
        if not check.needs_rebuild:
            typer.echo(f"Tag index ok: {check.reason}")
            return
    processed = repo.rebuild_tag_index()
    if _get_json_output():
        _echo_json({"processed": processed})
    else:
        typer.echo(f"Rebuilt tag index for {processed} cards")


@app.command()
def search(
    query: Annotated[Optional[str], typer.Argument(help="Search text")] = None,
    include: Annotated[Optional[str], typer.Option(
        "--include", "-i",
        help="Comma-separated tags to require",
    )] = None,
    exclude: Annotated[Optional[str], typer.Option(
        "--exclude", "-x",
        help="Comma-separated tags to exclude",
    )] = None,
    mode: Annotated[str, typer.Option(
        "--mode", "-m",
        help=f"Tag match mode ({', '.join(TAG_MATCH_MODES)})",
    )] = "or",
    sort: Annotated[str, typer.Option(
        "--sort",
        help="Sort order (e.g. new, most_stars_desc, engagement_desc)",
    )] = "new",
    page: Annotated[int, typer.Option("--page", "-p", help="Page number")] = 1,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n",
        help="Cards per page",
    )] = None,
    search_type: Annotated[str, typer.Option(
        "--type", "-t",
        help=f"Search type ({', '.join(SEARCH_TYPES)})",
    )] = "full",
):
    """Search the catalog."""
    if sort not in SORT_ORDERS:
        typer.echo(f"Unknown sort '{sort}', using 'new'", err=True)
    config, repo = _open_store()
    filters = SearchFilters.from_params(
        {
            "query": query or "",
            "include": include or "",
            "exclude": exclude or "",
            "tagMatchMode": mode,
            "sort": sort,
            "page": page,
            "limit": limit,
            "type": search_type,
        },
        default_limit=config.default_limit,
        max_limit=config.max_limit,
    )
    result = repo.search(filters)
    if _get_json_output():
        _echo_json({
            "cards": [card.to_dict() for card in result.records],
            "total": result.total_count,
            "page": result.page,
            "totalPages": result.total_pages,
        })
    else:
        typer.echo(_format_page(result))


@app.command()
def tags(
    query: Annotated[str, typer.Argument(help="Tag prefix or fragment")] = "",
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum tags")] = 20,
    random: Annotated[bool, typer.Option("--random", help="Sample random tags instead")] = False,
):
    """Autocomplete tag names from the index."""
    repo = _open_repository()
    found = repo.random_tags(limit) if random else repo.search_tags(query, limit)
    if _get_json_output():
        _echo_json(found)
    else:
        for tag in found:
            typer.echo(tag)


@app.command()
def aliases(
    file: Annotated[Optional[Path], typer.Option(
        "--file", "-f",
        help="Alias file to read instead of the configured one",
    )] = None,
):
    """Show the tag alias table."""
    if file is not None:
        snapshot = AliasTable.load(file).snapshot()
    else:
        snapshot = _open_repository().alias_snapshot()
    if _get_json_output():
        _echo_json(snapshot)
    else:
        for canonical, variants in sorted(snapshot.items()):
            typer.echo(f"{canonical}: {', '.join(variants)}")


@app.command()
def expand(
    tag: Annotated[str, typer.Argument(help="Tag to expand")],
):
    """Show every tag variant a filter on TAG would match."""
    variants = sorted(_open_repository().expand_tag(tag), key=str.casefold)
    if _get_json_output():
        _echo_json(variants)
    else:
        typer.echo("\n".join(variants))


@app.command()
def languages():
    """List languages present in the catalog."""
    found = _open_repository().get_all_languages()
    if _get_json_output():
        _echo_json(found)
    else:
        for code, name in found.items():
            typer.echo(f"{code}\t{name}")


@app.command()
def delete(
    card_id: Annotated[int, typer.Argument(help="Card id")],
):
    """Delete a card and its tag index rows."""
    if not _open_repository().delete(card_id):
        typer.echo(f"Card not found: {card_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {card_id}")


@app.command()
def favorite(
    card_id: Annotated[int, typer.Argument(help="Card id")],
):
    """Toggle a card's favorite flag."""
    result = _open_repository().toggle_favorite(card_id)
    if not result.success:
        typer.echo(f"Error: {result.message}", err=True)
        raise typer.Exit(1)
    if _get_json_output():
        _echo_json({"id": card_id, "favorited": result.favorited})
    else:
        typer.echo(f"{card_id} {'favorited' if result.favorited else 'unfavorited'}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="cardstore CLI", store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
