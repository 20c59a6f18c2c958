"""Image-builder detect action."""

from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import cast

from image_builder import jib

from .format import PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)


class DetectAction:
    """Image-builder detect action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "detect",
                help="Detect projects that build images with Jib",
                description="""Walk a project tree and list the maven and
                    gradle modules that build an image with the Jib plugin.""",
            ),
        )
        args.add_argument(
            "path",
            type=pathlib.Path,
            help="Build file or directory to search for build files",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["yaml"],
            default=None,
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        if path.is_dir():
            results = await jib.discover_builders(path)
        else:
            results = await jib.validate_jib_config(path)
        if not results:
            print("No Jib projects found")
            return
        data = [
            {
                "builder": result.builder_name,
                "project": result.project,
                "image": result.image,
                "path": str(result.file_path),
            }
            for result in results
        ]
        if output == "yaml":
            YamlFormatter().print(data)
            return
        PrintFormatter(["builder", "project", "image", "path"]).print(data)
