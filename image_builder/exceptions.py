"""Exceptions related to image-builder."""

from typing import Any

__all__ = [
    "ImageBuilderException",
    "InputException",
    "CommandException",
    "BuildException",
    "ArtifactBuildError",
    "ResourceCleanupError",
]


class ImageBuilderException(Exception):
    """Generic base exception used for this library."""


class InputException(ImageBuilderException):
    """Raised when the configuration or inputs are not formatted as expected."""


class CommandException(ImageBuilderException):
    """Raised when there is a failure running a subcommand."""


class DockerException(CommandException):
    """Raised when there is a failure running a docker command."""


class BazelException(CommandException):
    """Raised when there is a failure running a bazel command."""


class JibException(CommandException):
    """Raised when there is a failure running a maven or gradle command."""


class KubectlException(CommandException):
    """Raised when there is a failure running a kubectl command."""


class BuildException(ImageBuilderException):
    """Raised when a step of an image build has failed."""

    def __init__(self, phase: str, cause: Exception | str) -> None:
        super().__init__(f"{phase}: {cause}")
        self.phase = phase


class ArtifactBuildError(BuildException):
    """Raised when the build of an artifact in a build run has failed.

    The `results` hold one entry per input artifact, in input order, so
    that callers can inspect what was built before the failure.
    """

    def __init__(
        self, image_name: str, cause: Exception, results: list[Any] | None = None
    ) -> None:
        super().__init__(f"building [{image_name}]", cause)
        self.image_name = image_name
        self.results = results or []


class PodTimeoutError(ImageBuilderException):
    """Raised when a pod does not reach a terminal phase in time."""

    def __init__(self, pod_name: str, timeout: float) -> None:
        super().__init__(f"Pod {pod_name} did not complete within {timeout}s")
        self.pod_name = pod_name
        self.timeout = timeout


class PodFailedError(ImageBuilderException):
    """Raised when a pod has reached the Failed phase."""

    def __init__(self, pod_name: str, message: str | None = None) -> None:
        super().__init__(f"Pod {pod_name} failed: {message or 'Unknown error'}")
        self.pod_name = pod_name
        self.message = message


class ResourceCleanupError(ImageBuilderException):
    """Raised when a cluster resource created for a build could not be removed.

    This means the resource was leaked and needs to be removed by hand.
    """

    def __init__(self, resource: str, cause: Exception) -> None:
        super().__init__(f"Failed to delete {resource}: {cause}")
        self.resource = resource
        self.cause = cause
