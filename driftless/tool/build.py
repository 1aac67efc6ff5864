"""Driftless build action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import cast

from driftless.pipeline import RunOutcome

from .common import EXIT_OK, EXIT_SYNC_FAILURE, open_orchestrator

_LOGGER = logging.getLogger(__name__)


class BuildAction:
    """Run the build-and-push pipeline of an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Build and push an image for an application",
                description=(
                    "Run the configured pipeline.build_command for a source "
                    "reference and wait for the pushed image digest"
                ),
            ),
        )
        args.add_argument("name", help="Name of the application")
        args.add_argument(
            "--source-ref", required=True, help="Source reference to build"
        )
        args.add_argument(
            "--image-tag", required=True, help="Image reference to push"
        )
        args.add_argument(
            "--timeout",
            type=float,
            default=None,
            help="Seconds to wait for the run before returning it as Pending",
        )
        args.add_argument(
            "--promote",
            default=False,
            action=BooleanOptionalAction,
            help="Deploy the built image digest to the application",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        source_ref: str,
        image_tag: str,
        timeout: float | None,
        promote: bool,
        state_file: pathlib.Path | None,
        config: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        async with open_orchestrator(state_file, config) as orchestrator:
            run = await orchestrator.build(
                name, source_ref, image_tag, timeout=timeout, promote=promote
            )
        print(run.summary())
        if run.outcome == RunOutcome.FAILED:
            return EXIT_SYNC_FAILURE
        return EXIT_OK
