"""Driftless serve action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

from .common import EXIT_OK, open_orchestrator

_LOGGER = logging.getLogger(__name__)


class ServeAction:
    """Run the controller until interrupted."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "serve",
                help="Run the controller loop",
                description=(
                    "Watch the deployment repositories and owned objects of "
                    "every application and reconcile them until interrupted"
                ),
            ),
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        state_file: pathlib.Path | None,
        config: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        async with open_orchestrator(state_file, config) as orchestrator:
            _LOGGER.info(
                "Serving %d applications", len(await orchestrator.list_applications())
            )
            await orchestrator.serve()
        return EXIT_OK
