"""
Command line entry point using Click.

Commands:
- rank QUERY CANDIDATE... - rank candidate photos against a query photo
- describe IMAGE          - print the visual descriptor of one photo
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from .decoding import DEFAULT_DECODE_TIMEOUT, DEFAULT_RASTER_SIDE
from .engine import (
    DEFAULT_MAX_CONCURRENCY, DEFAULT_RESULT_LIMIT, DEFAULT_SIMILARITY_THRESHOLD,
    CandidateItem, SimilarityRanker,
)
from .errors import ExtractionFailure, QueryImageInvalid
from .features import extract


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose):
    """Visual similarity matching for lost and found item photos"""
    _configure_logging(verbose)


@cli.command()
@click.argument('query')
@click.argument('candidates', nargs=-1, required=True)
@click.option('--threshold', type=click.FloatRange(0.0, 1.0),
              default=DEFAULT_SIMILARITY_THRESHOLD, show_default=True,
              help='Minimum similarity to report')
@click.option('--limit', type=int, default=DEFAULT_RESULT_LIMIT, show_default=True,
              help='Maximum number of matches')
@click.option('--side', type=click.IntRange(min=3), default=DEFAULT_RASTER_SIDE,
              show_default=True, help='Comparison raster size in pixels')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True),
              default=DEFAULT_DECODE_TIMEOUT, show_default=True,
              help='Seconds allowed per image')
@click.option('--concurrency', type=click.IntRange(min=1), default=DEFAULT_MAX_CONCURRENCY,
              show_default=True, help='Images decoded in parallel')
def rank(query, candidates, threshold, limit, side, timeout, concurrency):
    """
    Rank CANDIDATES (paths or URLs) by similarity to QUERY

    Example: rank found_wallet.jpg lost/*.jpg --limit 3
    """
    items = [
        CandidateItem(item_id=Path(ref).name or ref, image_refs=(ref,))
        for ref in candidates
    ]
    ranker = SimilarityRanker(
        side=side, max_concurrency=concurrency, decode_timeout=timeout,
    )

    try:
        results = asyncio.run(
            ranker.rank(query, items, threshold=threshold, limit=limit)
        )
    except QueryImageInvalid as e:
        click.echo(f"Could not analyze {query}, try a different photo ({e.cause})", err=True)
        sys.exit(2)

    click.echo(json.dumps([r.to_dict() for r in results], indent=2, default=str))

    if not results:
        click.echo("No similar items found", err=True)


@cli.command()
@click.argument('image')
@click.option('--side', type=click.IntRange(min=3), default=DEFAULT_RASTER_SIDE,
              show_default=True, help='Comparison raster size in pixels')
def describe(image, side):
    """Print the visual descriptor of IMAGE as JSON"""
    try:
        descriptor = asyncio.run(extract(image, side=side))
    except ExtractionFailure as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    click.echo(json.dumps(descriptor.summary(), indent=2))


if __name__ == '__main__':
    cli()
