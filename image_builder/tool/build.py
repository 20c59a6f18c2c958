"""Image-builder build action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
from dataclasses import replace
import logging
import pathlib
from typing import cast

from image_builder import coordinator
from image_builder.config import Artifact, BuildStrategy, read_build_config
from image_builder.dispatch import builder_from_config
from image_builder.output import OutputSink
from image_builder.tag import tagger_from_policy

from .format import PrintFormatter, YamlFormatter

_LOGGER = logging.getLogger(__name__)


def _resolve_workspace(config_dir: pathlib.Path, artifact: Artifact) -> Artifact:
    """Return the artifact with its workspace relative to the config file."""
    if artifact.workspace_path.is_absolute():
        return artifact
    return replace(artifact, workspace=str(config_dir / artifact.workspace))


class BuildAction:
    """Image-builder build action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Build the artifacts of a build configuration",
                description="""Tag and build every artifact of the build
                    configuration, with the local docker daemon or with kaniko
                    pods in a cluster.""",
            ),
        )
        args.add_argument(
            "config", type=pathlib.Path, help="Path to the build configuration file"
        )
        args.add_argument(
            "--strategy",
            choices=[strategy.value for strategy in BuildStrategy],
            default=None,
            help="Override the strategy used to schedule the builds",
        )
        args.add_argument(
            "--push",
            type=bool,
            action=BooleanOptionalAction,
            default=None,
            help="Override pushing images built locally",
        )
        args.add_argument(
            "--output-file",
            type=str,
            default=None,
            help="Write the built images as yaml to this file",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        strategy: str | None,
        push: bool | None,
        output_file: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        build_config = await read_build_config(config)
        artifacts = [
            _resolve_workspace(config.parent, artifact)
            for artifact in build_config.artifacts
        ]
        results = await coordinator.build_all(
            artifacts,
            tagger_from_policy(build_config.tag_policy),
            builder_from_config(build_config, push=push),
            strategy=BuildStrategy(strategy) if strategy else build_config.strategy,
            sink=OutputSink(),
        )
        PrintFormatter(["image_name", "tag"]).print(
            [{"image_name": result.image_name, "tag": result.tag} for result in results]
        )
        if output_file:
            with open(output_file, "w") as file:
                YamlFormatter().print(
                    {
                        "builds": [
                            {"imageName": result.image_name, "tag": result.tag}
                            for result in results
                        ]
                    },
                    file=file,
                )
