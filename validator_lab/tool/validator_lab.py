"""Command line tool for deploying validator clusters on kubernetes."""

import argparse
import asyncio
import logging
import sys
import traceback

from validator_lab.exceptions import ValidatorLabException

from . import deploy, get, teardown

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for deploying and inspecting validator clusters.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    deploy.DeployAction.register(subparsers)
    teardown.TeardownAction.register(subparsers)
    get.GetAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Validator-lab command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except ValidatorLabException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("validator-lab error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
