"""Library for talking to the local docker daemon.

The daemon is reached through the `docker` command line. Builds send only
the packaged build context on stdin, the same way a daemon API client would.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from pathlib import Path
import re

from . import docker_context
from .command import Command, run
from .config import DockerArtifact
from .exceptions import DockerException, ImageBuilderException
from .output import LineWriter

__all__ = [
    "LocalDaemon",
    "DockerCli",
    "get_build_args",
]

_LOGGER = logging.getLogger(__name__)

DOCKER_BIN = "docker"

_DIGEST_RE = re.compile(r"digest: (sha256:[0-9a-f]{64})")
_LOADED_RE = re.compile(r"Loaded image(?: ID)?: (\S+)")


def get_build_args(artifact: DockerArtifact) -> list[str]:
    """Return the `--build-arg` flags for the artifact, sorted by name."""
    args: list[str] = []
    for key in sorted(artifact.build_args or {}):
        value = (artifact.build_args or {})[key]
        args.append("--build-arg")
        args.append(key if value is None else f"{key}={value}")
    return args


class LocalDaemon(ABC):
    """Operations of the local image daemon used by the builders."""

    @abstractmethod
    async def build(
        self, out: LineWriter, workspace: Path, artifact: DockerArtifact, ref: str
    ) -> str:
        """Build an image from a Dockerfile tagged as ref, returning its id."""

    @abstractmethod
    async def push(self, out: LineWriter, ref: str) -> str:
        """Push an image to its registry, returning the digest."""

    @abstractmethod
    async def load(self, out: LineWriter, tar_path: Path) -> str:
        """Load an image tarball, returning the reference of the loaded image."""

    @abstractmethod
    async def tag(self, image: str, ref: str) -> None:
        """Tag an existing image as ref."""

    @abstractmethod
    async def remote_digest(self, ref: str) -> str:
        """Return the digest of an image in its registry."""


class DockerCli(LocalDaemon):
    """LocalDaemon backed by the docker command line."""

    def __init__(self, env: dict[str, str] | None = None) -> None:
        """Initialize DockerCli."""
        self._env = env

    def _command(self, args: list[str], timeout: float | None = None) -> Command:
        return Command(
            [DOCKER_BIN, *args], exc=DockerException, env=self._env, timeout=timeout
        )

    async def build(
        self, out: LineWriter, workspace: Path, artifact: DockerArtifact, ref: str
    ) -> str:
        """Build an image from a Dockerfile tagged as ref, returning its id."""
        archive = await asyncio.to_thread(
            docker_context.package,
            workspace,
            artifact.dockerfile_path,
            artifact.build_args,
        )
        dockerfile = Path(artifact.dockerfile_path)
        if dockerfile.is_absolute():
            dockerfile = dockerfile.relative_to(workspace.resolve())
        args = ["build", "--file", dockerfile.as_posix(), "-t", ref]
        args.extend(get_build_args(artifact))
        args.append("-")
        await self._command(args).stream(out, stdin=archive.data)
        return (await run(self._command(["inspect", "--format", "{{.Id}}", ref]))).strip()

    async def push(self, out: LineWriter, ref: str) -> str:
        """Push an image to its registry, returning the digest."""
        output = await run(self._command(["push", ref], timeout=None))
        out.write(output)
        out.flush()
        if not (match := _DIGEST_RE.search(output)):
            raise DockerException(f"Unable to find digest in output of push of {ref}")
        return match.group(1)

    async def load(self, out: LineWriter, tar_path: Path) -> str:
        """Load an image tarball, returning the reference of the loaded image."""
        output = await run(self._command(["load", "-i", str(tar_path)], timeout=None))
        out.write(output)
        out.flush()
        if not (match := _LOADED_RE.search(output)):
            raise DockerException(f"Unable to find loaded image in output: {output}")
        return match.group(1)

    async def tag(self, image: str, ref: str) -> None:
        """Tag an existing image as ref."""
        await run(self._command(["tag", image, ref]))

    async def remote_digest(self, ref: str) -> str:
        """Return the digest of an image in its registry."""
        output = await run(
            self._command(
                ["buildx", "imagetools", "inspect", ref, "--format", "{{.Manifest.Digest}}"]
            )
        )
        if not (digest := output.strip()).startswith("sha256:"):
            raise DockerException(f"Unexpected digest for {ref}: {digest}")
        return digest


async def full_remote_reference(daemon: LocalDaemon, ref: str) -> str:
    """Return the reference pinned to the digest in the registry, if known."""
    try:
        digest = await daemon.remote_digest(ref)
    except ImageBuilderException as err:
        _LOGGER.warning("Unable to resolve the digest of %s: %s", ref, err)
        return ref
    return f"{ref}@{digest}"
