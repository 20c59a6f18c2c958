"""Builds Dockerfile artifacts with kaniko pods in a Kubernetes cluster.

Each build runs in its own `RemoteBuildSession` which owns the secret, the
staged build context and the pod it creates:
```python
from image_builder.kaniko import KanikoBuilder
from image_builder.kubectl import KubectlClient

builder = KanikoBuilder(KubectlClient(), config.cluster)
ref = await builder.build(out, artifact, "gcr.io/example/app:v1")
```
"""

from collections.abc import Callable
import functools
import logging

from image_builder.config import Artifact, ClusterBuild
from image_builder.docker import LocalDaemon, full_remote_reference
from image_builder.kubectl import ClusterClient
from image_builder.output import LineWriter

from .pod import kaniko_args, kaniko_pod
from .session import RemoteBuildSession
from .sources import BucketSource, ContextSource, LocalDirSource, retrieve

__all__ = [
    "KanikoBuilder",
    "RemoteBuildSession",
    "ContextSource",
    "LocalDirSource",
    "BucketSource",
    "kaniko_args",
    "kaniko_pod",
]

_LOGGER = logging.getLogger(__name__)

SourceFactory = Callable[[ClusterBuild], ContextSource]


class KanikoBuilder:
    """Builds Dockerfile artifacts in the cluster."""

    def __init__(
        self,
        client: ClusterClient,
        config: ClusterBuild,
        daemon: LocalDaemon | None = None,
        source_factory: SourceFactory = retrieve,
    ) -> None:
        """Initialize KanikoBuilder.

        When a local daemon is available, the result is pinned to the digest
        of the pushed image.
        """
        self._client = client
        self._config = config
        self._daemon = daemon
        self._source_factory = source_factory

    def session(self, out: LineWriter) -> RemoteBuildSession:
        """Return a new session for building one artifact."""
        resolve = (
            functools.partial(full_remote_reference, self._daemon)
            if self._daemon is not None
            else None
        )
        return RemoteBuildSession(
            self._client,
            self._config,
            self._source_factory(self._config),
            out,
            resolve_reference=resolve,
        )

    async def build(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        """Build and push the artifact, returning the reference of the image."""
        _LOGGER.debug("Building %s in namespace %s", fqn, self._config.namespace)
        return await self.session(out).run(artifact, fqn)
