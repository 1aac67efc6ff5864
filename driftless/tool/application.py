"""Driftless application management actions."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import cast

from driftless.manifest import (
    DEFAULT_REVISION,
    Application,
    SyncMode,
    SyncPolicy,
)

from .common import EXIT_OK, open_orchestrator
from .format import PrintFormatter

_LOGGER = logging.getLogger(__name__)

DEFAULT_DEST_NAMESPACE = "default"


class CreateApplicationAction:
    """Create an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "create-application",
                help="Track a path of a deployment repository",
                description=(
                    "Create an Application that syncs the manifests of a "
                    "deployment repository path into a namespace"
                ),
            ),
        )
        args.add_argument("name", help="Unique name of the application")
        args.add_argument(
            "--repo", required=True, help="URL or local path of the repository"
        )
        args.add_argument(
            "--path", required=True, help="Path of the manifests in the repository"
        )
        args.add_argument(
            "--revision",
            default=DEFAULT_REVISION,
            help="Branch, tag or commit to track",
        )
        args.add_argument(
            "--dest-namespace",
            default=DEFAULT_DEST_NAMESPACE,
            help="Namespace for objects that do not name one",
        )
        args.add_argument(
            "--sync-policy",
            choices=[mode.value for mode in SyncMode],
            default=SyncMode.MANUAL.value,
            help="Sync only when asked to, or on every change",
        )
        args.add_argument(
            "--self-heal",
            default=False,
            action=BooleanOptionalAction,
            help="Revert changes made to live objects outside of a sync",
        )
        args.add_argument(
            "--prune",
            default=False,
            action=BooleanOptionalAction,
            help="Delete live objects removed from the repository",
        )
        args.add_argument(
            "--image-repository",
            default=None,
            help="Image repository built for this application",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        repo: str,
        path: str,
        revision: str,
        dest_namespace: str,
        sync_policy: str,
        self_heal: bool,
        prune: bool,
        image_repository: str | None,
        state_file: pathlib.Path | None,
        config: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        app = Application(
            name=name,
            repo_url=repo,
            path=path,
            destination_namespace=dest_namespace,
            target_revision=revision,
            policy=SyncPolicy(
                mode=SyncMode(sync_policy), self_heal=self_heal, prune=prune
            ),
            image_repository=image_repository,
        )
        async with open_orchestrator(state_file, config) as orchestrator:
            await orchestrator.create_application(app)
        print(f"application/{name} created")
        return EXIT_OK


class DeleteApplicationAction:
    """Delete an Application."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "delete-application",
                help="Stop tracking an application",
                description=(
                    "Delete an Application. Live objects are left in place "
                    "unless --cascade is set"
                ),
            ),
        )
        args.add_argument("name", help="Name of the application")
        args.add_argument(
            "--cascade",
            default=False,
            action=BooleanOptionalAction,
            help="Also delete the live objects owned by the application",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        cascade: bool,
        state_file: pathlib.Path | None,
        config: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> int:
        """Async Action implementation."""
        async with open_orchestrator(state_file, config) as orchestrator:
            await orchestrator.delete_application(name, cascade=cascade)
        print(f"application/{name} deleted")
        return EXIT_OK


class ListApplicationsAction:
    """List Applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "list-applications",
                aliases=["ls"],
                help="List applications and their status",
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
            statuses = await orchestrator.reporter.list_status()
        if not statuses:
            print("No applications found")
            return EXIT_OK
        PrintFormatter(["name", "health", "sync", "revision", "fingerprint"]).print(
            [
                {
                    **status.summary(),
                    "fingerprint": (status.status.last_synced_fingerprint or "")[:12],
                }
                for status in statuses
            ]
        )
        return EXIT_OK
