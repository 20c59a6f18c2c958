"""Tests for the build configuration."""

from pathlib import Path

import pytest
import yaml

from image_builder.config import (
    Artifact,
    BazelArtifact,
    BuildConfig,
    BuildStrategy,
    DockerArtifact,
    JibMavenArtifact,
    KanikoArtifact,
    read_build_config,
)
from image_builder.exceptions import InputException

CONFIG = """\
artifacts:
- image: gcr.io/example/app
  workspace: app
  docker:
    dockerfile: build/Dockerfile
    buildArgs:
      VERSION: "1.2"
      TOKEN:
- image: gcr.io/example/svc
  jibMaven:
    project: svc
    args: ["-DskipTests"]
- image: gcr.io/example/bzl
  bazel:
    target: //app:image.tar
build:
  strategy: parallel
  tagPolicy:
    envTemplate:
      template: "{{.IMAGE_NAME}}:{{.VERSION}}"
  local:
    push: true
    useBuildkit: true
"""


def test_parse_artifacts() -> None:
    """Test parsing the artifacts of a build configuration."""
    config = BuildConfig.parse_doc(yaml.safe_load(CONFIG))
    assert [artifact.image_name for artifact in config.artifacts] == [
        "gcr.io/example/app",
        "gcr.io/example/svc",
        "gcr.io/example/bzl",
    ]
    app = config.artifacts[0]
    assert app.workspace == "app"
    assert app.artifact_type == DockerArtifact(
        dockerfile_path="build/Dockerfile",
        build_args={"VERSION": "1.2", "TOKEN": None},
    )
    svc = config.artifacts[1]
    assert svc.workspace == "."
    assert svc.artifact_type == JibMavenArtifact(project="svc", flags=["-DskipTests"])
    assert config.artifacts[2].artifact_type == BazelArtifact(
        build_target="//app:image.tar"
    )


def test_parse_build_section() -> None:
    """Test parsing the build section of a build configuration."""
    config = BuildConfig.parse_doc(yaml.safe_load(CONFIG))
    assert config.strategy == BuildStrategy.PARALLEL
    assert config.tag_policy.env_template
    assert config.tag_policy.env_template.template == "{{.IMAGE_NAME}}:{{.VERSION}}"
    assert config.local
    assert config.local.push
    assert config.local.use_buildkit
    assert not config.local.use_docker_cli
    assert config.cluster is None


def test_defaults() -> None:
    """Test the defaults of a minimal build configuration."""
    config = BuildConfig.parse_doc(
        {"artifacts": [{"image": "app", "docker": None}]}
    )
    assert config.strategy == BuildStrategy.SEQUENTIAL
    assert config.local
    assert not config.local.push
    assert config.artifacts[0].artifact_type == DockerArtifact()
    assert config.artifacts[0].artifact_type.dockerfile_path == "Dockerfile"


def test_cluster_build() -> None:
    """Test parsing a cluster build section."""
    config = BuildConfig.parse_doc(
        {
            "artifacts": [{"image": "app", "kaniko": {"dockerfile": "Dockerfile"}}],
            "build": {
                "cluster": {
                    "namespace": "builds",
                    "pullSecret": "/keys/key.json",
                    "timeout": 60,
                    "cache": {"repo": "gcr.io/example/cache"},
                    "buildContext": {"gcsBucket": "my-bucket"},
                }
            },
        }
    )
    assert isinstance(config.artifacts[0].artifact_type, KanikoArtifact)
    assert config.local is None
    assert config.cluster
    assert config.cluster.namespace == "builds"
    assert config.cluster.pull_secret == "/keys/key.json"
    assert config.cluster.pull_secret_name == "kaniko-secret"
    assert config.cluster.timeout == 60
    assert config.cluster.cache
    assert config.cluster.cache.repo == "gcr.io/example/cache"
    assert config.cluster.build_context.gcs_bucket == "my-bucket"


@pytest.mark.parametrize(
    ("doc", "match"),
    [
        ({"docker": {}}, "missing image"),
        ({"image": "app"}, "exactly one of"),
        ({"image": "app", "docker": {}, "bazel": {"target": "//:a.tar"}}, "exactly one of"),
        ({"image": "app", "bazel": {}}, "bazel section"),
    ],
)
def test_invalid_artifact(doc: dict, match: str) -> None:
    """Test artifacts without exactly one valid artifact type."""
    with pytest.raises(InputException, match=match):
        Artifact.parse_doc(doc)


def test_local_and_cluster() -> None:
    """Test a build section may not be both local and cluster."""
    with pytest.raises(InputException, match="both local and cluster"):
        BuildConfig.parse_doc({"artifacts": [], "build": {"local": {}, "cluster": {}}})


def test_invalid_strategy() -> None:
    """Test an unknown build strategy."""
    with pytest.raises(InputException, match="Invalid build strategy"):
        BuildConfig.parse_doc({"artifacts": [], "build": {"strategy": "random"}})


async def test_read_build_config(tmp_path: Path) -> None:
    """Test reading a build configuration file."""
    config_file = tmp_path / "build.yaml"
    config_file.write_text(CONFIG)
    config = await read_build_config(config_file)
    assert len(config.artifacts) == 3


async def test_read_invalid_yaml(tmp_path: Path) -> None:
    """Test reading a file that is not yaml."""
    config_file = tmp_path / "build.yaml"
    config_file.write_text("artifacts: [")
    with pytest.raises(InputException, match="Unable to parse"):
        await read_build_config(config_file)
