"""Command line tool for building the images of a pipeline."""

import argparse
import asyncio
import logging
import sys
import traceback

from image_builder.exceptions import ImageBuilderException

from . import build, detect

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for building container images.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    build.BuildAction.register(subparsers)
    detect.DetectAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Image-builder command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except ImageBuilderException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("image-builder error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
