"""Library for building an artifact with the backend matching its type.

The `build` section of the configuration selects the backends that are
available. Each artifact is then sent to exactly one of them based on its
declared type:

| Artifact type       | Backend                                    |
|---------------------|--------------------------------------------|
| `kaniko`            | kaniko pod in the cluster                  |
| `docker`            | local daemon, or kaniko if only a cluster  |
| `bazel`             | bazel, then loaded in the local daemon     |
| `jibMaven`          | maven with the Jib plugin                  |
| `jibGradle`         | gradle with the Jib plugin                 |
"""

import logging

from .config import (
    Artifact,
    BazelArtifact,
    BuildConfig,
    DockerArtifact,
    JibGradleArtifact,
    JibMavenArtifact,
    KanikoArtifact,
)
from .docker import DockerCli
from .exceptions import InputException
from .kaniko import KanikoBuilder
from .kubectl import KubectlClient
from .local import LocalBuilder, LocalBuilderConfig
from .output import LineWriter

__all__ = [
    "Builder",
    "builder_from_config",
]

_LOGGER = logging.getLogger(__name__)


class Builder:
    """Builds artifacts with the configured backends."""

    def __init__(
        self,
        local: LocalBuilder | None = None,
        cluster: KanikoBuilder | None = None,
    ) -> None:
        """Initialize Builder."""
        self._local = local
        self._cluster = cluster

    def _require_local(self, artifact: Artifact) -> LocalBuilder:
        if self._local is None:
            raise InputException(
                f"Artifact '{artifact.image_name}' can only be built locally"
            )
        return self._local

    def _require_cluster(self, artifact: Artifact) -> KanikoBuilder:
        if self._cluster is None:
            raise InputException(
                f"Artifact '{artifact.image_name}' needs a cluster build configuration"
            )
        return self._cluster

    async def build(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        """Build the artifact as fqn, returning the reference of the built image."""
        artifact_type = artifact.artifact_type
        workspace = artifact.workspace_path
        if isinstance(artifact_type, KanikoArtifact):
            return await self._require_cluster(artifact).build(out, artifact, fqn)
        if isinstance(artifact_type, DockerArtifact):
            if self._local is None and self._cluster is not None:
                return await self._cluster.build(out, artifact, fqn)
            return await self._require_local(artifact).build_docker(
                out, workspace, artifact_type, fqn
            )
        if isinstance(artifact_type, BazelArtifact):
            return await self._require_local(artifact).build_bazel(
                out, workspace, artifact_type, fqn
            )
        if isinstance(artifact_type, JibMavenArtifact):
            return await self._require_local(artifact).build_jib_maven(
                out, workspace, artifact_type, fqn
            )
        if isinstance(artifact_type, JibGradleArtifact):
            return await self._require_local(artifact).build_jib_gradle(
                out, workspace, artifact_type, fqn
            )
        raise InputException(
            f"undefined artifact type: {type(artifact_type).__name__}"
        )


def builder_from_config(config: BuildConfig, push: bool | None = None) -> Builder:
    """Return a Builder with the backends selected by the build configuration.

    The push flag overrides the `push` option of a local build.
    """
    daemon = DockerCli()
    if config.cluster is not None:
        _LOGGER.debug("Building in namespace %s", config.cluster.namespace)
        return Builder(cluster=KanikoBuilder(KubectlClient(), config.cluster, daemon))
    local = config.local
    local_config = LocalBuilderConfig(
        push=local.push if local is not None else False,
        use_docker_cli=local.use_docker_cli if local is not None else False,
        use_buildkit=local.use_buildkit if local is not None else False,
    )
    if push is not None:
        local_config.push = push
    return Builder(local=LocalBuilder(daemon, local_config))
