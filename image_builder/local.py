"""Builders that run on the local host: docker, bazel and jib."""

from dataclasses import dataclass, field
import logging
from pathlib import Path

from .command import Command, run
from .config import (
    BazelArtifact,
    DockerArtifact,
    JibGradleArtifact,
    JibMavenArtifact,
)
from .docker import DOCKER_BIN, LocalDaemon, get_build_args
from .docker_context import normalize_dockerfile_path
from .exceptions import (
    BazelException,
    BuildException,
    DockerException,
    ImageBuilderException,
    InputException,
    JibException,
)
from .jib import GRADLE, MAVEN, resolve_executable
from .output import LineWriter

__all__ = [
    "LocalBuilder",
    "LocalBuilderConfig",
]

_LOGGER = logging.getLogger(__name__)

BAZEL_BIN = "bazel"


@dataclass
class LocalBuilderConfig:
    """Configuration for building on the local host."""

    push: bool = False
    """Push images once built and return them pinned to their digest."""

    use_docker_cli: bool = False
    """Build Dockerfiles with `docker build` rather than the daemon client."""

    use_buildkit: bool = False
    """Build Dockerfiles with `docker build` and buildkit enabled."""

    env: dict[str, str] = field(default_factory=dict)
    """Extra environment for the external tools."""


class LocalBuilder:
    """Builds artifacts with tools on the local host."""

    def __init__(self, daemon: LocalDaemon, config: LocalBuilderConfig) -> None:
        """Initialize LocalBuilder."""
        self._daemon = daemon
        self._config = config

    async def _finish(self, out: LineWriter, fqn: str) -> str:
        """Push the built image when enabled and return its final reference."""
        if not self._config.push:
            return fqn
        try:
            digest = await self._daemon.push(out, fqn)
        except ImageBuilderException as err:
            raise BuildException("pushing image", err) from err
        return f"{fqn}@{digest}"

    async def build_docker(
        self, out: LineWriter, workspace: Path, artifact: DockerArtifact, fqn: str
    ) -> str:
        """Build a Dockerfile artifact."""
        try:
            if self._config.use_docker_cli or self._config.use_buildkit:
                dockerfile = normalize_dockerfile_path(workspace, artifact.dockerfile_path)
                args = [
                    DOCKER_BIN,
                    "build",
                    str(workspace),
                    "--file",
                    str(dockerfile),
                    "-t",
                    fqn,
                ]
                args.extend(get_build_args(artifact))
                env = dict(self._config.env)
                if self._config.use_buildkit:
                    env["DOCKER_BUILDKIT"] = "1"
                await Command(args, exc=DockerException, env=env).stream(out)
            else:
                await self._daemon.build(out, workspace, artifact, fqn)
        except ImageBuilderException as err:
            raise BuildException("running build", err) from err
        return await self._finish(out, fqn)

    async def build_bazel(
        self, out: LineWriter, workspace: Path, artifact: BazelArtifact, fqn: str
    ) -> str:
        """Build a bazel image target, load it in the daemon and tag it."""
        if not artifact.build_target.endswith(".tar"):
            raise InputException(
                f"The bazel target should end with .tar: {artifact.build_target}"
            )
        try:
            args = [BAZEL_BIN, "build", *(artifact.build_args or []), artifact.build_target]
            await Command(
                args, cwd=workspace, exc=BazelException, env=self._config.env
            ).stream(out)
            bazel_bin = (
                await run(
                    Command(
                        [BAZEL_BIN, "info", "bazel-bin", *(artifact.build_args or [])],
                        cwd=workspace,
                        exc=BazelException,
                    )
                )
            ).strip()
            tar_path = Path(bazel_bin) / _bazel_tar_path(artifact.build_target)
            image = await self._daemon.load(out, tar_path)
            await self._daemon.tag(image, fqn)
        except ImageBuilderException as err:
            raise BuildException("running build", err) from err
        return await self._finish(out, fqn)

    async def build_jib_maven(
        self, out: LineWriter, workspace: Path, artifact: JibMavenArtifact, fqn: str
    ) -> str:
        """Build an image with the jib maven plugin into the local daemon."""
        args = [await resolve_executable(MAVEN, workspace), "-Djib.console=plain"]
        args.extend(artifact.flags or [])
        if artifact.project:
            args.extend(["--projects", artifact.project, "--also-make"])
        args.extend(["jib:dockerBuild", f"-Dimage={fqn}"])
        try:
            await Command(
                args, cwd=workspace, exc=JibException, env=self._config.env
            ).stream(out)
        except ImageBuilderException as err:
            raise BuildException("running build", err) from err
        return await self._finish(out, fqn)

    async def build_jib_gradle(
        self, out: LineWriter, workspace: Path, artifact: JibGradleArtifact, fqn: str
    ) -> str:
        """Build an image with the jib gradle plugin into the local daemon."""
        task = "jibDockerBuild"
        if artifact.project:
            task = f":{artifact.project}:{task}"
        args = [await resolve_executable(GRADLE, workspace), "-Djib.console=plain"]
        args.extend(artifact.flags or [])
        args.extend([task, f"--image={fqn}"])
        try:
            await Command(
                args, cwd=workspace, exc=JibException, env=self._config.env
            ).stream(out)
        except ImageBuilderException as err:
            raise BuildException("running build", err) from err
        return await self._finish(out, fqn)


def _bazel_tar_path(target: str) -> str:
    """Return the path of the tarball within bazel-bin for a target.

    For example `//app/server:image.tar` is built at `app/server/image.tar`.
    """
    package, _, name = target.lstrip("/").partition(":")
    if not name:
        name = package.rsplit("/", 1)[-1]
    return f"{package}/{name}" if package else name
