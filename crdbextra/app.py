"""Command line entry point for crdb-extra."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Sequence

from .config import AppConfig, load_config
from .errors import CrdbExtraError
from .resources import ResourceRegistry
from .session import ClusterSessionManager

LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crdb-extra", description="Manage CockroachDB cluster objects.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    commands = parser.add_subparsers(dest="command", required=True)
    importer = commands.add_parser("import", help="Read a resource by id and print its state as JSON")
    importer.add_argument("resource_id", help="Composite id, e.g. changefeed|<cluster>|<job id>")
    return parser


async def import_resource(config: AppConfig, resource_id: str) -> str | None:
    """Import ``resource_id`` and return its state as JSON, or ``None`` when absent."""

    session = ClusterSessionManager.from_config(config)
    try:
        state = await ResourceRegistry.for_session(session).import_state(resource_id)
    finally:
        await session.close()
    if state is None:
        return None
    return state.model_dump_json(indent=2)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        output = asyncio.run(import_resource(config, args.resource_id))
    except CrdbExtraError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if output is None:
        print(f"error: resource {args.resource_id} not found", file=sys.stderr)
        return 1
    print(output)
    return 0


__all__ = ["build_parser", "import_resource", "main"]
