"""
Command line entry point for the LinkHub gateway.

    linkhub [--host HOST] [--port PORT]
    linkhub --export-schema schema.graphql
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from linkhub.core.config import Settings, get_settings
from linkhub.core.exceptions import SchemaValidationError
from linkhub.core.logging import get_logger
from linkhub.graphql.assembler import assemble
from linkhub.graphql.resolvers import RESOLVERS
from linkhub.graphql.typedefs import TYPE_DEFS
from linkhub.lifecycle import LifecycleCoordinator

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="linkhub",
        description="GraphQL gateway for the links catalogue",
    )
    parser.add_argument("--host", help="Interface to bind (default: settings.api_host)")
    parser.add_argument("--port", type=int, help="Port to bind (default: settings.api_port)")
    parser.add_argument(
        "--export-schema",
        metavar="PATH",
        help="Write the GraphQL SDL to PATH and exit",
    )
    return parser.parse_args(argv)


async def serve(settings: Settings) -> None:
    """Run the gateway until a signal shuts it down."""
    coordinator = LifecycleCoordinator(settings)
    await coordinator.start()
    await coordinator.wait_closed()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    overrides = {"api_host": args.host, "api_port": args.port}
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        settings = settings.model_copy(update=overrides)

    try:
        if args.export_schema:
            assemble(TYPE_DEFS, RESOLVERS).export(args.export_schema)
            return 0
        asyncio.run(serve(settings))
    except SchemaValidationError as e:
        logger.error(f"Invalid schema: {e}", problems=e.problems)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
