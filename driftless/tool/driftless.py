"""Command line tool for managing and syncing driftless applications."""

import argparse
import asyncio
import logging
import pathlib
import sys
import traceback
from typing import Any, NoReturn

import yaml

from driftless.exceptions import DriftlessException

from . import application, build, serve, status, sync
from .common import EXIT_OK, EXIT_USER_ERROR, exit_code

_LOGGER = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser reporting usage errors as user errors."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USER_ERROR, f"{self.prog}: error: {message}\n")


def _make_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="driftless",
        description="Command line utility for syncing applications from git.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    parser.add_argument(
        "--state-file",
        type=pathlib.Path,
        default=None,
        help="File holding applications, their status and live objects",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        default=None,
        help="YAML configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    application.CreateApplicationAction.register(subparsers)
    sync.SyncAction.register(subparsers)
    status.GetStatusAction.register(subparsers)
    application.DeleteApplicationAction.register(subparsers)
    application.ListApplicationsAction.register(subparsers)
    build.BuildAction.register(subparsers)
    serve.ServeAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Driftless command line tool main entry point, returns the exit code."""

    def str_presenter(dumper: yaml.Dumper, data: Any) -> Any:
        """Represent multi-line yaml strings as you'd expect."""
        return dumper.represent_scalar(
            "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
        )

    yaml.add_representer(str, str_presenter)

    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        return asyncio.run(action.run(**vars(args))) or EXIT_OK
    except DriftlessException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("driftless error:", err, file=sys.stderr)
        return exit_code(err)
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
