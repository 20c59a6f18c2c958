"""Tests for sending artifacts to their backend."""

import io
from pathlib import Path
from typing import Any

import pytest

from image_builder.config import (
    Artifact,
    BazelArtifact,
    BuildConfig,
    ClusterBuild,
    DockerArtifact,
    JibGradleArtifact,
    JibMavenArtifact,
    KanikoArtifact,
    LocalBuild,
)
from image_builder.dispatch import Builder, builder_from_config
from image_builder.exceptions import InputException
from image_builder.kaniko import KanikoBuilder
from image_builder.local import LocalBuilder, LocalBuilderConfig
from image_builder.output import LineWriter, OutputSink

from .fakes import FakeClusterClient, FakeDaemon

FQN = "app:v1"


class RecordingLocal(LocalBuilder):
    """A local builder that records the backend used."""

    def __init__(self) -> None:
        super().__init__(FakeDaemon(), LocalBuilderConfig())
        self.calls: list[tuple[str, Path, Any]] = []

    async def build_docker(
        self, out: LineWriter, workspace: Path, artifact: DockerArtifact, fqn: str
    ) -> str:
        self.calls.append(("docker", workspace, artifact))
        return fqn

    async def build_bazel(
        self, out: LineWriter, workspace: Path, artifact: BazelArtifact, fqn: str
    ) -> str:
        self.calls.append(("bazel", workspace, artifact))
        return fqn

    async def build_jib_maven(
        self, out: LineWriter, workspace: Path, artifact: JibMavenArtifact, fqn: str
    ) -> str:
        self.calls.append(("jibMaven", workspace, artifact))
        return fqn

    async def build_jib_gradle(
        self, out: LineWriter, workspace: Path, artifact: JibGradleArtifact, fqn: str
    ) -> str:
        self.calls.append(("jibGradle", workspace, artifact))
        return fqn


class RecordingKaniko(KanikoBuilder):
    """A kaniko builder that records the artifacts it builds."""

    def __init__(self) -> None:
        super().__init__(FakeClusterClient(), ClusterBuild())
        self.artifacts: list[Artifact] = []

    async def build(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        self.artifacts.append(artifact)
        return f"{fqn}@remote"


@pytest.fixture(name="out")
def out_fixture() -> LineWriter:
    """Fixture for the output of a build."""
    return OutputSink(io.StringIO()).prefixed()


@pytest.mark.parametrize(
    ("artifact_type", "backend"),
    [
        (DockerArtifact(), "docker"),
        (BazelArtifact(build_target="//:image.tar"), "bazel"),
        (JibMavenArtifact(project="svc"), "jibMaven"),
        (JibGradleArtifact(), "jibGradle"),
    ],
)
async def test_local_backends(artifact_type: Any, backend: str, out: LineWriter) -> None:
    """Test each artifact type is sent to its local backend."""
    local = RecordingLocal()
    builder = Builder(local=local)
    artifact = Artifact(image_name="app", artifact_type=artifact_type, workspace="src")
    assert await builder.build(out, artifact, FQN) == FQN
    assert local.calls == [(backend, Path("src"), artifact_type)]


async def test_kaniko_artifact(out: LineWriter) -> None:
    """Test a kaniko artifact is built in the cluster even when local is available."""
    local = RecordingLocal()
    cluster = RecordingKaniko()
    builder = Builder(local=local, cluster=cluster)
    artifact = Artifact(image_name="app", artifact_type=KanikoArtifact())
    assert await builder.build(out, artifact, FQN) == f"{FQN}@remote"
    assert cluster.artifacts == [artifact]
    assert not local.calls


async def test_docker_artifact_cluster_only(out: LineWriter) -> None:
    """Test a docker artifact is built in the cluster when there is no local backend."""
    cluster = RecordingKaniko()
    builder = Builder(cluster=cluster)
    artifact = Artifact(image_name="app", artifact_type=DockerArtifact())
    assert await builder.build(out, artifact, FQN) == f"{FQN}@remote"


async def test_missing_backend(out: LineWriter) -> None:
    """Test artifacts that need a backend that is not configured."""
    with pytest.raises(InputException, match="needs a cluster"):
        await Builder(local=RecordingLocal()).build(
            out, Artifact(image_name="app", artifact_type=KanikoArtifact()), FQN
        )
    with pytest.raises(InputException, match="can only be built locally"):
        await Builder(cluster=RecordingKaniko()).build(
            out, Artifact(image_name="app", artifact_type=JibGradleArtifact()), FQN
        )


async def test_undefined_artifact_type(out: LineWriter) -> None:
    """Test an artifact type without a backend."""
    artifact = Artifact(image_name="app", artifact_type=object())  # type: ignore[arg-type]
    with pytest.raises(InputException, match="undefined artifact type"):
        await Builder(local=RecordingLocal()).build(out, artifact, FQN)


def test_builder_from_config() -> None:
    """Test the backends selected by the build section."""
    builder = builder_from_config(
        BuildConfig(artifacts=[], local=LocalBuild(push=True)), push=False
    )
    assert builder._local is not None
    assert builder._cluster is None
    assert not builder._local._config.push

    builder = builder_from_config(BuildConfig(artifacts=[], cluster=ClusterBuild()))
    assert builder._local is None
    assert builder._cluster is not None
