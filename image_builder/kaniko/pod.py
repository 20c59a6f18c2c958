"""Specifications of the pods and flags used for kaniko builds."""

from typing import Any

from image_builder.config import ClusterBuild, DockerArtifact
from image_builder.docker import get_build_args

__all__ = [
    "kaniko_args",
    "kaniko_pod",
]

KANIKO_CONTAINER = "kaniko"
SECRET_VOLUME = "kaniko-secret"
SECRET_KEY = "kaniko-secret"
LABEL = "image-builder/kaniko"
GENERATE_NAME = "kaniko-"


def kaniko_args(
    config: ClusterBuild, artifact: DockerArtifact, context: str, fqn: str
) -> list[str]:
    """Return the flags of the kaniko executor.

    The order is fixed: dockerfile, context, destination and verbosity, then
    user flags, build args and cache flags.
    """
    args = [
        f"--dockerfile={artifact.dockerfile_path}",
        f"--context={context}",
        f"--destination={fqn}",
        f"-v={config.verbosity}",
    ]
    args.extend(config.flags)
    args.extend(get_build_args(artifact))
    if config.cache is not None:
        args.append("--cache=true")
        if config.cache.repo:
            args.append(f"--cache-repo={config.cache.repo}")
    return args


def kaniko_pod(config: ClusterBuild, secret_name: str, args: list[str]) -> dict[str, Any]:
    """Return the manifest of a pod running the kaniko executor."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "generateName": GENERATE_NAME,
            "namespace": config.namespace,
            "labels": {LABEL: "true"},
        },
        "spec": {
            "containers": [
                {
                    "name": KANIKO_CONTAINER,
                    "image": config.image,
                    "imagePullPolicy": "IfNotPresent",
                    "args": args,
                    "volumeMounts": [
                        {
                            "name": SECRET_VOLUME,
                            "mountPath": config.pull_secret_mount_path,
                        }
                    ],
                    "env": [
                        {
                            "name": "GOOGLE_APPLICATION_CREDENTIALS",
                            "value": f"{config.pull_secret_mount_path}/{SECRET_KEY}",
                        }
                    ],
                }
            ],
            "restartPolicy": "Never",
            "volumes": [
                {
                    "name": SECRET_VOLUME,
                    "secret": {"secretName": secret_name},
                }
            ],
        },
    }
