"""Driftless get-status action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from .common import EXIT_OK, open_orchestrator
from .format import PrintFormatter, struct_formatter

_LOGGER = logging.getLogger(__name__)


class GetStatusAction:
    """Print the status of an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get-status",
                aliases=["status"],
                help="Print the sync status of an application",
                description=(
                    "Print the health, sync state and object outcomes of the "
                    "last pass of an application and its latest pipeline run"
                ),
            ),
        )
        args.add_argument("name", help="Name of the application")
        args.add_argument(
            "--output",
            "-o",
            choices=["text", "yaml", "json"],
            default="text",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        output: str,
        state_file: pathlib.Path | None,
        config: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        async with open_orchestrator(state_file, config) as orchestrator:
            app_status = await orchestrator.get_status(name)

        if output != "text":
            struct_formatter(output).print(app_status.to_dict())
            return EXIT_OK

        for key, value in app_status.summary().items():
            print(f"{key}: {value}")
        if app_status.status.objects:
            print()
            PrintFormatter(["resource", "action", "result", "health"]).print(
                [
                    {
                        "resource": outcome.resource,
                        "action": str(outcome.action),
                        "result": str(outcome.result),
                        "health": str(outcome.health or ""),
                    }
                    for outcome in app_status.status.objects
                ]
            )
        return EXIT_OK
