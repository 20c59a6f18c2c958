"""Fake collaborators used by the image-builder tests."""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from image_builder.command import Task
from image_builder.config import Artifact, DockerArtifact
from image_builder.dispatch import Builder
from image_builder.docker import LocalDaemon
from image_builder.exceptions import (
    BuildException,
    CommandException,
    KubectlException,
)
from image_builder.kubectl import ClusterClient, PodPhase
from image_builder.output import LineWriter

DIGEST = "sha256:" + "a" * 64


class FakeRunner:
    """A command runner that records commands and returns canned output."""

    def __init__(self, output: str = "", error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.commands: list[Task] = []

    async def __call__(self, cmd: Task) -> str:
        self.commands.append(cmd)
        if self.error:
            raise self.error
        return self.output


class FakeDaemon(LocalDaemon):
    """A local daemon that records the calls made to it."""

    def __init__(self, push_error: Exception | None = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.push_error = push_error

    async def build(
        self, out: LineWriter, workspace: Path, artifact: DockerArtifact, ref: str
    ) -> str:
        self.calls.append(("build", str(workspace), artifact.dockerfile_path, ref))
        out.write(f"Successfully built {ref}\n")
        return "sha256:" + "b" * 64

    async def push(self, out: LineWriter, ref: str) -> str:
        self.calls.append(("push", ref))
        if self.push_error:
            raise self.push_error
        return DIGEST

    async def load(self, out: LineWriter, tar_path: Path) -> str:
        self.calls.append(("load", str(tar_path)))
        return "bazel/app:image"

    async def tag(self, image: str, ref: str) -> None:
        self.calls.append(("tag", image, ref))

    async def remote_digest(self, ref: str) -> str:
        self.calls.append(("remote_digest", ref))
        return DIGEST


class FakeClusterClient(ClusterClient):
    """An in-memory cluster that records calls and can fail any of them."""

    def __init__(
        self,
        phases: list[str] | None = None,
        logs: list[bytes] | None = None,
        existing_secrets: set[str] | None = None,
    ) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.phases = phases or [PodPhase.SUCCEEDED]
        self.logs = logs if logs is not None else []
        self.secrets: dict[str, dict[str, bytes]] = {
            name: {} for name in existing_secrets or set()
        }
        self.pods: dict[str, dict[str, Any]] = {}
        self.pod_started = asyncio.Event()
        self.block_status = False
        self.deleting_pod = asyncio.Event()
        self.delete_pod_gate: asyncio.Event | None = None

    def _maybe_fail(self, name: str) -> None:
        if err := self.failures.get(name):
            raise err

    def count(self, name: str) -> int:
        """Return the number of calls of a method."""
        return len([call for call in self.calls if call[0] == name])

    async def secret_exists(self, namespace: str, name: str) -> bool:
        self.calls.append(("secret_exists", namespace, name))
        return name in self.secrets

    async def create_secret(
        self, namespace: str, name: str, data: dict[str, bytes]
    ) -> None:
        self.calls.append(("create_secret", namespace, name))
        self._maybe_fail("create_secret")
        self.secrets[name] = data

    async def delete_secret(self, namespace: str, name: str) -> None:
        self.calls.append(("delete_secret", namespace, name))
        self._maybe_fail("delete_secret")
        del self.secrets[name]

    async def create_pod(self, namespace: str, pod: dict[str, Any]) -> str:
        self.calls.append(("create_pod", namespace))
        self._maybe_fail("create_pod")
        name = f"{pod['metadata']['generateName']}{len(self.pods)}"
        self.pods[name] = pod
        return name

    async def delete_pod(
        self, namespace: str, name: str, grace_period: int = 0
    ) -> None:
        self.calls.append(("delete_pod", namespace, name, grace_period))
        self.deleting_pod.set()
        if self.delete_pod_gate is not None:
            await self.delete_pod_gate.wait()
        self._maybe_fail("delete_pod")
        del self.pods[name]

    async def pod_status(self, namespace: str, name: str) -> dict[str, Any]:
        self.calls.append(("pod_status", namespace, name))
        self.pod_started.set()
        if self.block_status:
            await asyncio.Event().wait()
        self._maybe_fail("pod_status")
        phase = self.phases.pop(0) if len(self.phases) > 1 else self.phases[0]
        status: dict[str, Any] = {"phase": phase}
        if phase == PodPhase.FAILED:
            status["containerStatuses"] = [
                {
                    "name": "kaniko",
                    "state": {"terminated": {"message": "error building image"}},
                }
            ]
        return status

    async def exec_in_pod(
        self,
        namespace: str,
        name: str,
        container: str,
        cmd: list[str],
        stdin: bytes | None = None,
    ) -> None:
        self.calls.append(("exec_in_pod", namespace, name, container, cmd))
        self._maybe_fail("exec_in_pod")

    async def stream_logs(
        self, namespace: str, name: str, container: str | None = None
    ) -> AsyncIterator[bytes]:
        self.calls.append(("stream_logs", namespace, name, container))
        self._maybe_fail("stream_logs")
        for line in self.logs:
            yield line


class FakeBuilder(Builder):
    """A builder that returns a digest reference after a per-image delay."""

    def __init__(
        self,
        delays: dict[str, float] | None = None,
        failures: set[str] | None = None,
    ) -> None:
        super().__init__()
        self.delays = delays or {}
        self.failures = failures or set()
        self.started: list[str] = []
        self.finished: list[str] = []

    async def build(self, out: LineWriter, artifact: Artifact, fqn: str) -> str:
        self.started.append(artifact.image_name)
        await asyncio.sleep(self.delays.get(artifact.image_name, 0))
        self.finished.append(artifact.image_name)
        if artifact.image_name in self.failures:
            raise BuildException(
                "running build", CommandException(f"{artifact.image_name} failed")
            )
        out.write(f"built {fqn}\n")
        return f"{fqn}@{DIGEST}"


def kubectl_error(message: str) -> KubectlException:
    """Return an error like one raised by a failing kubectl command."""
    return KubectlException(f"Command 'kubectl' failed with return code 1\n{message}")
