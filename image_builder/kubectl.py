"""Library for the cluster operations used by builds that run in a cluster.

The `ClusterClient` interface covers the handful of calls a remote build
needs. `KubectlClient` implements it with the `kubectl` command line:
```python
from image_builder.kubectl import KubectlClient, wait_for_pod_complete

client = KubectlClient(context="my-cluster")
name = await client.create_pod("default", pod)
await wait_for_pod_complete(client, "default", name, timeout=600)
```
"""

from abc import ABC, abstractmethod
import asyncio
import base64
from collections.abc import AsyncIterator
import json
import logging
import subprocess
from typing import Any

import yaml

from .command import Command, Stash, run, run_piped
from .exceptions import KubectlException, PodFailedError, PodTimeoutError

__all__ = [
    "ClusterClient",
    "KubectlClient",
    "PodPhase",
    "wait_for_pod_complete",
]

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"

POLL_INTERVAL = 1.0


class PodPhase:
    """Phases reported in the status of a pod."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class ClusterClient(ABC):
    """Cluster operations used by a remote build."""

    @abstractmethod
    async def secret_exists(self, namespace: str, name: str) -> bool:
        """Return True if the secret exists."""

    @abstractmethod
    async def create_secret(
        self, namespace: str, name: str, data: dict[str, bytes]
    ) -> None:
        """Create an opaque secret."""

    @abstractmethod
    async def delete_secret(self, namespace: str, name: str) -> None:
        """Delete a secret."""

    @abstractmethod
    async def create_pod(self, namespace: str, pod: dict[str, Any]) -> str:
        """Create a pod from a manifest and return its name."""

    @abstractmethod
    async def delete_pod(
        self, namespace: str, name: str, grace_period: int = 0
    ) -> None:
        """Delete a pod."""

    @abstractmethod
    async def pod_status(self, namespace: str, name: str) -> dict[str, Any]:
        """Return the status of a pod."""

    @abstractmethod
    async def exec_in_pod(
        self,
        namespace: str,
        name: str,
        container: str,
        cmd: list[str],
        stdin: bytes | None = None,
    ) -> None:
        """Run a command in a running container of a pod."""

    @abstractmethod
    def stream_logs(
        self, namespace: str, name: str, container: str | None = None
    ) -> AsyncIterator[bytes]:
        """Follow the logs of a pod until its container exits."""


async def wait_for_pod_complete(
    client: ClusterClient,
    namespace: str,
    name: str,
    timeout: float,
    interval: float = POLL_INTERVAL,
) -> None:
    """Wait until the pod has succeeded.

    Raises `PodFailedError` if the pod failed and `PodTimeoutError` if it did
    not complete within the timeout.
    """

    async def poll() -> None:
        while True:
            status = await client.pod_status(namespace, name)
            phase = status.get("phase", PodPhase.UNKNOWN)
            _LOGGER.debug("Pod %s/%s is %s", namespace, name, phase)
            if phase == PodPhase.SUCCEEDED:
                return
            if phase == PodPhase.FAILED:
                raise PodFailedError(name, _failure_message(status))
            await asyncio.sleep(interval)

    try:
        await asyncio.wait_for(poll(), timeout)
    except asyncio.exceptions.TimeoutError as err:
        raise PodTimeoutError(name, timeout) from err


async def wait_for_container_running(
    client: ClusterClient,
    namespace: str,
    name: str,
    container: str,
    timeout: float,
    interval: float = POLL_INTERVAL,
) -> None:
    """Wait until a container (or init container) of the pod is running."""

    async def poll() -> None:
        while True:
            status = await client.pod_status(namespace, name)
            if status.get("phase") == PodPhase.FAILED:
                raise PodFailedError(name, _failure_message(status))
            for container_status in [
                *status.get("initContainerStatuses", []),
                *status.get("containerStatuses", []),
            ]:
                if container_status.get("name") != container:
                    continue
                if "running" in (container_status.get("state") or {}):
                    return
            await asyncio.sleep(interval)

    try:
        await asyncio.wait_for(poll(), timeout)
    except asyncio.exceptions.TimeoutError as err:
        raise PodTimeoutError(name, timeout) from err


def _failure_message(status: dict[str, Any]) -> str | None:
    """Return the reason a pod failed, from the terminated container state."""
    for container_status in status.get("containerStatuses", []):
        terminated = (container_status.get("state") or {}).get("terminated") or {}
        if message := terminated.get("message") or terminated.get("reason"):
            return str(message)
    return status.get("message") or status.get("reason")


class KubectlClient(ClusterClient):
    """ClusterClient backed by the kubectl command line."""

    def __init__(self, context: str | None = None, kubeconfig: str | None = None) -> None:
        """Initialize KubectlClient."""
        self._flags: list[str] = []
        if context:
            self._flags.extend(["--context", context])
        if kubeconfig:
            self._flags.extend(["--kubeconfig", kubeconfig])

    def _command(self, namespace: str, args: list[str]) -> Command:
        return Command(
            [KUBECTL_BIN, *self._flags, "--namespace", namespace, *args],
            exc=KubectlException,
        )

    async def secret_exists(self, namespace: str, name: str) -> bool:
        """Return True if the secret exists."""
        out = await run(
            self._command(
                namespace, ["get", "secret", name, "--ignore-not-found", "-o", "name"]
            )
        )
        return bool(out.strip())

    async def create_secret(
        self, namespace: str, name: str, data: dict[str, bytes]
    ) -> None:
        """Create an opaque secret."""
        secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": namespace},
            "data": {
                key: base64.b64encode(value).decode("utf-8")
                for key, value in data.items()
            },
        }
        await run_piped(
            [
                Stash(yaml.dump(secret, sort_keys=False).encode("utf-8")),
                self._command(namespace, ["create", "-f", "-"]),
            ]
        )

    async def delete_secret(self, namespace: str, name: str) -> None:
        """Delete a secret."""
        await run(
            self._command(namespace, ["delete", "secret", name, "--ignore-not-found"])
        )

    async def create_pod(self, namespace: str, pod: dict[str, Any]) -> str:
        """Create a pod from a manifest and return its name."""
        out = await run_piped(
            [
                Stash(yaml.dump(pod, sort_keys=False).encode("utf-8")),
                self._command(
                    namespace, ["create", "-f", "-", "-o", "jsonpath={.metadata.name}"]
                ),
            ]
        )
        if not (name := out.strip()):
            raise KubectlException("Pod was created without a name")
        return name

    async def delete_pod(
        self, namespace: str, name: str, grace_period: int = 0
    ) -> None:
        """Delete a pod."""
        args = ["delete", "pod", name, f"--grace-period={grace_period}", "--wait=false"]
        if grace_period == 0:
            args.append("--force")
        await run(self._command(namespace, args))

    async def pod_status(self, namespace: str, name: str) -> dict[str, Any]:
        """Return the status of a pod."""
        out = await run(self._command(namespace, ["get", "pod", name, "-o", "json"]))
        try:
            pod = json.loads(out)
        except json.JSONDecodeError as err:
            raise KubectlException(f"Unable to parse pod {name}: {err}") from err
        return pod.get("status") or {}

    async def exec_in_pod(
        self,
        namespace: str,
        name: str,
        container: str,
        cmd: list[str],
        stdin: bytes | None = None,
    ) -> None:
        """Run a command in a running container of a pod."""
        args = ["exec", "-i", name, "-c", container, "--", *cmd]
        exec_cmd = self._command(namespace, args)
        exec_cmd.timeout = None
        await run_piped([Stash(stdin or b""), exec_cmd])

    async def stream_logs(
        self, namespace: str, name: str, container: str | None = None
    ) -> AsyncIterator[bytes]:
        """Follow the logs of a pod until its container exits."""
        cmd = self._command(namespace, ["logs", "-f", name])
        if container:
            cmd.cmd.extend(["-c", container])
        _LOGGER.debug("Streaming logs: %s", cmd)
        proc = await asyncio.create_subprocess_exec(
            *cmd.cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        if proc.stdout is None or proc.stderr is None:
            proc.kill()
            await proc.wait()
            raise KubectlException(f"Command '{cmd}' has no output pipes")
        stderr = asyncio.create_task(proc.stderr.read())
        try:
            async for line in proc.stdout:
                yield line
            await proc.wait()
            err = await stderr
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr.done():
                stderr.cancel()
        if proc.returncode:
            raise KubectlException(
                f"Command '{cmd}' failed with return code {proc.returncode}\n"
                + err.decode("utf-8", errors="replace")
            )
