"""Strategies for delivering a build context to a kaniko pod.

A source packages the build context, says where kaniko reads it from and may
change the pod to receive it. Its cleanup removes anything it left behind.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
from typing import Any
import uuid

from slugify import slugify

from image_builder import docker_context
from image_builder.command import Command, Stash, run, run_piped
from image_builder.config import Artifact, ClusterBuild, DockerArtifact, LocalDir
from image_builder.docker_context import BuildContextArchive
from image_builder.exceptions import CommandException, InputException
from image_builder.kubectl import ClusterClient, wait_for_container_running
from image_builder.output import LineWriter

from .pod import KANIKO_CONTAINER

__all__ = [
    "ContextSource",
    "LocalDirSource",
    "BucketSource",
    "retrieve",
]

_LOGGER = logging.getLogger(__name__)

GSUTIL_BIN = "gsutil"

INIT_CONTAINER = "kaniko-init-container"
CONTEXT_VOLUME = "kaniko-emptydir"
CONTEXT_MOUNT_PATH = "/kaniko/buildcontext"
COMPLETE_MARKER = "/tmp/complete"
INIT_TIMEOUT = 5 * 60.0


async def _package(artifact: Artifact) -> BuildContextArchive:
    """Package the build context of a Dockerfile artifact off the event loop."""
    if not isinstance(artifact.artifact_type, DockerArtifact):
        raise InputException(
            f"Artifact '{artifact.image_name}' is not built from a Dockerfile"
        )
    return await asyncio.to_thread(
        docker_context.package,
        artifact.workspace_path,
        artifact.artifact_type.dockerfile_path,
        artifact.artifact_type.build_args,
    )


class ContextSource(ABC):
    """Delivers the build context of one artifact to a kaniko pod."""

    @abstractmethod
    async def setup(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        """Package and stage the build context, returning the kaniko context flag value."""

    def pod(self, pod: dict[str, Any]) -> dict[str, Any]:
        """Return the pod manifest updated to receive the context."""
        return pod

    async def modify_pod(
        self, client: ClusterClient, namespace: str, pod_name: str
    ) -> None:
        """Deliver the context to the created pod."""

    @abstractmethod
    async def cleanup(self) -> None:
        """Remove anything staged by setup."""


class LocalDirSource(ContextSource):
    """Streams the context into the pod through an init container.

    The init container waits for a marker file. The archive is extracted into
    a volume shared with the kaniko container, then the marker is created so
    the init container exits and kaniko starts.
    """

    def __init__(self, init_image: str) -> None:
        """Initialize LocalDirSource."""
        self._init_image = init_image
        self._archive: BuildContextArchive | None = None

    async def setup(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        """Package the build context."""
        self._archive = await _package(artifact)
        out.println(
            f"Packaged {len(self._archive.entries)} files for the build context"
        )
        return f"dir://{CONTEXT_MOUNT_PATH}"

    def pod(self, pod: dict[str, Any]) -> dict[str, Any]:
        """Add the init container and the shared context volume."""
        mount = {"name": CONTEXT_VOLUME, "mountPath": CONTEXT_MOUNT_PATH}
        spec = pod["spec"]
        spec["initContainers"] = [
            {
                "name": INIT_CONTAINER,
                "image": self._init_image,
                "command": [
                    "sh",
                    "-c",
                    f"while [ ! -f {COMPLETE_MARKER} ]; do sleep 1; done",
                ],
                "volumeMounts": [mount],
            }
        ]
        for container in spec["containers"]:
            if container["name"] == KANIKO_CONTAINER:
                container.setdefault("volumeMounts", []).append(dict(mount))
        spec.setdefault("volumes", []).append({"name": CONTEXT_VOLUME, "emptyDir": {}})
        return pod

    async def modify_pod(
        self, client: ClusterClient, namespace: str, pod_name: str
    ) -> None:
        """Copy the context into the init container and release it."""
        if self._archive is None:
            raise InputException("Build context was not set up")
        await wait_for_container_running(
            client, namespace, pod_name, INIT_CONTAINER, INIT_TIMEOUT
        )
        await client.exec_in_pod(
            namespace,
            pod_name,
            INIT_CONTAINER,
            ["tar", "-xzf", "-", "-C", CONTEXT_MOUNT_PATH],
            stdin=self._archive.data,
        )
        await client.exec_in_pod(
            namespace, pod_name, INIT_CONTAINER, ["touch", COMPLETE_MARKER]
        )

    async def cleanup(self) -> None:
        """Drop the packaged context."""
        self._archive = None


class BucketSource(ContextSource):
    """Uploads the context to a Google Cloud Storage bucket."""

    def __init__(self, bucket: str) -> None:
        """Initialize BucketSource."""
        self._bucket = bucket
        self._uri: str | None = None

    async def setup(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        """Upload the build context to the bucket."""
        archive = await _package(artifact)
        name = f"context-{slugify(fqn, max_length=60)}-{uuid.uuid4().hex[:8]}.tar.gz"
        uri = f"gs://{self._bucket}/{name}"
        out.println(f"Uploading build context to {uri}")
        upload = Command([GSUTIL_BIN, "cp", "-", uri], exc=CommandException, timeout=None)
        await run_piped([Stash(archive.data), upload])
        self._uri = uri
        return uri

    async def cleanup(self) -> None:
        """Remove the uploaded context from the bucket."""
        if not (uri := self._uri):
            return
        await run(Command([GSUTIL_BIN, "rm", uri], exc=CommandException))
        self._uri = None


def retrieve(config: ClusterBuild) -> ContextSource:
    """Return the context source selected by the cluster build config."""
    if config.build_context.gcs_bucket:
        return BucketSource(config.build_context.gcs_bucket)
    local_dir = config.build_context.local_dir or LocalDir()
    return LocalDirSource(local_dir.init_image)
