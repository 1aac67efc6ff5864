"""Driftless sync action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import cast

from .common import open_orchestrator, status_exit_code
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)


class SyncAction:
    """Run a reconciliation pass of an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Sync an application once",
                description=(
                    "Render the tracked revision of an application and "
                    "reconcile it into the object store"
                ),
            ),
        )
        args.add_argument("name", help="Name of the application")
        args.add_argument(
            "--prune",
            default=False,
            action=BooleanOptionalAction,
            help="Delete owned objects no longer in the repository",
        )
        args.add_argument(
            "--dry-run",
            default=False,
            action=BooleanOptionalAction,
            help="Print the changes without applying them",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        prune: bool,
        dry_run: bool,
        state_file: pathlib.Path | None,
        config: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        async with open_orchestrator(state_file, config) as orchestrator:
            result = await orchestrator.sync(name, prune=prune, dry_run=dry_run)

        status = result.status
        if dry_run:
            for line in result.diff:
                print(line, end="")
        if status.objects:
            PrintFormatter(["resource", "action", "result", "attempts"]).print(
                [
                    {
                        "resource": outcome.resource,
                        "action": str(outcome.action),
                        "result": str(outcome.result),
                        "attempts": str(outcome.attempts),
                    }
                    for outcome in status.objects
                ]
            )
        if status.message:
            print(status.message)
        print(f"application/{name}: {status}")
        return status_exit_code(status)
