"""Representation of a build pipeline configuration.

A build configuration lists the artifacts to build, the policy used to tag
them and the backend that builds them. It is typically read from a YAML file:

```yaml
artifacts:
- image: gcr.io/example/app
  workspace: app
  docker:
    dockerfile: Dockerfile
    buildArgs:
      VERSION: "1.2"
- image: gcr.io/example/svc
  jibMaven:
    project: svc
build:
  strategy: parallel
  tagPolicy:
    envTemplate:
      template: "{{.IMAGE_NAME}}:{{.VERSION}}"
  local:
    push: false
```

Each artifact carries exactly one artifact type that selects its backend.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "read_build_config",
    "BuildConfig",
    "Artifact",
    "ArtifactType",
    "DockerArtifact",
    "BazelArtifact",
    "JibMavenArtifact",
    "JibGradleArtifact",
    "KanikoArtifact",
    "BuildStrategy",
    "TagPolicy",
    "LocalBuild",
    "ClusterBuild",
]

_LOGGER = logging.getLogger(__name__)


DEFAULT_DOCKERFILE = "Dockerfile"
DEFAULT_WORKSPACE = "."
DEFAULT_NAMESPACE = "default"
DEFAULT_PULL_SECRET_NAME = "kaniko-secret"
DEFAULT_PULL_SECRET_MOUNT_PATH = "/secret"
DEFAULT_KANIKO_IMAGE = "gcr.io/kaniko-project/executor:latest"
DEFAULT_INIT_IMAGE = "busybox"
DEFAULT_TIMEOUT = 20 * 60.0


class BuildStrategy(StrEnum):
    """How the artifacts of a build run are scheduled."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass
class BaseSchema(DataClassDictMixin):
    """Base class for all configuration objects."""

    class Config(BaseConfig):
        omit_none = True


@dataclass
class DockerArtifact(BaseSchema):
    """An artifact built from a Dockerfile with the local docker daemon."""

    dockerfile_path: str = field(
        metadata=field_options(alias="dockerfile"), default=DEFAULT_DOCKERFILE
    )
    """Path of the Dockerfile relative to the workspace."""

    build_args: dict[str, str | None] | None = field(
        metadata=field_options(alias="buildArgs"), default=None
    )
    """Arguments passed to the build. A None value forwards the environment."""


@dataclass
class KanikoArtifact(DockerArtifact):
    """An artifact built from a Dockerfile by a kaniko pod in the cluster."""


@dataclass
class BazelArtifact(BaseSchema):
    """An artifact built by a bazel container image target."""

    build_target: str = field(metadata=field_options(alias="target"))
    """The bazel target, which must produce a `.tar` image."""

    build_args: list[str] | None = field(
        metadata=field_options(alias="args"), default=None
    )
    """Additional arguments passed to `bazel build`."""


@dataclass
class JibMavenArtifact(BaseSchema):
    """An artifact built with the Jib maven plugin."""

    project: str | None = None
    """The maven module to build, for multi-module projects."""

    flags: list[str] | None = field(metadata=field_options(alias="args"), default=None)
    """Additional arguments passed to maven."""


@dataclass
class JibGradleArtifact(BaseSchema):
    """An artifact built with the Jib gradle plugin."""

    project: str | None = None
    """The gradle project to build, for multi-project builds."""

    flags: list[str] | None = field(metadata=field_options(alias="args"), default=None)
    """Additional arguments passed to gradle."""


ArtifactType = (
    DockerArtifact | BazelArtifact | JibMavenArtifact | JibGradleArtifact | KanikoArtifact
)

ARTIFACT_TYPES: dict[str, type[BaseSchema]] = {
    "docker": DockerArtifact,
    "bazel": BazelArtifact,
    "jibMaven": JibMavenArtifact,
    "jibGradle": JibGradleArtifact,
    "kaniko": KanikoArtifact,
}


@dataclass(frozen=True)
class Artifact:
    """A buildable unit of the pipeline, built by exactly one backend."""

    image_name: str
    """The name of the image, before tagging."""

    artifact_type: ArtifactType
    """Selects the backend and holds its options."""

    workspace: str = DEFAULT_WORKSPACE
    """Directory containing the sources of the artifact."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Artifact":
        """Parse an Artifact from an entry of the `artifacts` list."""
        if not (image_name := doc.get("image")):
            raise InputException(f"Invalid artifact missing image: {doc}")
        types = [key for key in ARTIFACT_TYPES if key in doc]
        if len(types) != 1:
            raise InputException(
                f"Invalid artifact '{image_name}' must have exactly one of "
                f"{', '.join(ARTIFACT_TYPES)}: {doc}"
            )
        key = types[0]
        try:
            artifact_type = ARTIFACT_TYPES[key].from_dict(doc[key] or {})
        except (ValueError, LookupError, TypeError) as err:
            raise InputException(
                f"Invalid artifact '{image_name}' {key} section: {err}"
            ) from err
        return cls(
            image_name=image_name,
            artifact_type=artifact_type,  # type: ignore[arg-type]
            workspace=doc.get("workspace", DEFAULT_WORKSPACE),
        )

    @property
    def workspace_path(self) -> Path:
        """The workspace as a path."""
        return Path(self.workspace)


@dataclass
class EnvTemplateTagPolicy(BaseSchema):
    """Tag with a template filled from environment variables."""

    template: str


@dataclass
class DateTimeTagPolicy(BaseSchema):
    """Tag with the time of the build."""

    format: str | None = None


@dataclass
class GitCommitTagPolicy(BaseSchema):
    """Tag with the commit of the workspace."""


@dataclass
class Sha256TagPolicy(BaseSchema):
    """Tag with `latest`, the digest identifies the image."""


@dataclass
class TagPolicy(BaseSchema):
    """Selects how images are tagged. The first policy set wins."""

    env_template: EnvTemplateTagPolicy | None = field(
        metadata=field_options(alias="envTemplate"), default=None
    )
    git_commit: GitCommitTagPolicy | None = field(
        metadata=field_options(alias="gitCommit"), default=None
    )
    date_time: DateTimeTagPolicy | None = field(
        metadata=field_options(alias="dateTime"), default=None
    )
    sha256: Sha256TagPolicy | None = None


@dataclass
class LocalBuild(BaseSchema):
    """Options for building on the local host."""

    push: bool = False
    """Push images to their registry once built."""

    use_docker_cli: bool = field(
        metadata=field_options(alias="useDockerCLI"), default=False
    )
    """Build with the docker command line rather than the daemon client."""

    use_buildkit: bool = field(
        metadata=field_options(alias="useBuildkit"), default=False
    )
    """Build with the docker command line and buildkit enabled."""


@dataclass
class KanikoCache(BaseSchema):
    """Kaniko layer cache options."""

    repo: str | None = None
    """Remote repository for cached layers."""


@dataclass
class LocalDir(BaseSchema):
    """Deliver the build context by streaming it into the pod."""

    init_image: str = field(
        metadata=field_options(alias="initImage"), default=DEFAULT_INIT_IMAGE
    )


@dataclass
class BuildContextSource(BaseSchema):
    """Where the kaniko pod reads its build context from."""

    gcs_bucket: str | None = field(
        metadata=field_options(alias="gcsBucket"), default=None
    )
    local_dir: LocalDir | None = field(
        metadata=field_options(alias="localDir"), default=None
    )


@dataclass
class ClusterBuild(BaseSchema):
    """Options for building with kaniko pods in a cluster."""

    pull_secret: str | None = field(
        metadata=field_options(alias="pullSecret"), default=None
    )
    """Path to a key file used by kaniko to push images."""

    pull_secret_name: str = field(
        metadata=field_options(alias="pullSecretName"),
        default=DEFAULT_PULL_SECRET_NAME,
    )
    """Name of the secret holding the key, reused if it already exists."""

    pull_secret_mount_path: str = field(
        metadata=field_options(alias="pullSecretMountPath"),
        default=DEFAULT_PULL_SECRET_MOUNT_PATH,
    )

    namespace: str = DEFAULT_NAMESPACE
    """Namespace where secrets and pods are created."""

    timeout: float = DEFAULT_TIMEOUT
    """Seconds to wait for a kaniko pod to complete."""

    cache: KanikoCache | None = None
    flags: list[str] = field(default_factory=list)
    """Additional flags passed to the kaniko executor."""

    image: str = DEFAULT_KANIKO_IMAGE
    verbosity: str = "info"
    build_context: BuildContextSource = field(
        metadata=field_options(alias="buildContext"),
        default_factory=BuildContextSource,
    )


@dataclass
class BuildConfig:
    """A parsed build configuration."""

    artifacts: list[Artifact]
    strategy: BuildStrategy = BuildStrategy.SEQUENTIAL
    tag_policy: TagPolicy = field(default_factory=TagPolicy)
    local: LocalBuild | None = None
    cluster: ClusterBuild | None = None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "BuildConfig":
        """Parse a BuildConfig from a YAML document."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid build config, expected a mapping: {doc}")
        artifacts = [Artifact.parse_doc(subdoc) for subdoc in doc.get("artifacts") or []]
        build = doc.get("build") or {}
        if "local" in build and "cluster" in build:
            raise InputException("Invalid build config with both local and cluster")
        try:
            strategy = BuildStrategy(build.get("strategy", BuildStrategy.SEQUENTIAL))
        except (ValueError, LookupError, TypeError) as err:
            raise InputException(f"Invalid build strategy: {err}") from err
        try:
            tag_policy = TagPolicy.from_dict(build.get("tagPolicy") or {})
            cluster = (
                ClusterBuild.from_dict(build["cluster"] or {})
                if "cluster" in build
                else None
            )
            local = (
                LocalBuild.from_dict(build.get("local") or {}) if not cluster else None
            )
        except (ValueError, LookupError, TypeError) as err:
            raise InputException(f"Invalid build section: {err}") from err
        return cls(
            artifacts=artifacts,
            strategy=strategy,
            tag_policy=tag_policy,
            local=local,
            cluster=cluster,
        )


async def read_build_config(config_path: Path) -> BuildConfig:
    """Return the contents of a build configuration file."""
    async with aiofiles.open(str(config_path)) as config_file:
        content = await config_file.read()
    if not content:
        raise InputException(f"Build config file {config_path} is empty")
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {config_path}: {err}") from err
    return BuildConfig.parse_doc(doc)
