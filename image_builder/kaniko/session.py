"""A single image build run by a kaniko pod in the cluster.

A session walks through a fixed sequence of phases:

1. Provision the secret kaniko uses to push the image.
2. Stage the build context with a `ContextSource`.
3. Create the kaniko pod, then let the source deliver the context to it.
4. Stream the pod logs to the build output while waiting for the pod to
   complete.

Each resource is registered for teardown as soon as it exists, so a failure
or cancellation in any later phase still removes everything the session
created. Teardown runs to completion even when the build is cancelled.

A pod that could not be deleted is leaked in the cluster. That is logged as
critical and recorded in `cleanup_errors`, but never replaces the outcome of
the build itself.
"""

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
import functools
import logging
import uuid

import aiofiles
from slugify import slugify

from image_builder.config import Artifact, ClusterBuild, DockerArtifact
from image_builder.context import trace_context
from image_builder.exceptions import (
    BuildException,
    ImageBuilderException,
    InputException,
    ResourceCleanupError,
)
from image_builder.kubectl import ClusterClient, wait_for_pod_complete
from image_builder.output import LineWriter

from .pod import KANIKO_CONTAINER, SECRET_KEY, kaniko_args, kaniko_pod
from .sources import ContextSource

__all__ = [
    "RemoteBuildSession",
]

_LOGGER = logging.getLogger(__name__)

LOG_RETRY_INTERVAL = 1.0

SETTING_UP_SECRET = "setting up secret"
SETTING_UP_CONTEXT = "setting up build context"
CREATING_POD = "creating pod"
MODIFYING_POD = "modifying pod"
WAITING_FOR_POD = "waiting for pod to complete"


class RemoteBuildSession:
    """Builds one artifact with an ephemeral kaniko pod."""

    def __init__(
        self,
        client: ClusterClient,
        config: ClusterBuild,
        source: ContextSource,
        out: LineWriter,
        resolve_reference: Callable[[str], Awaitable[str]] | None = None,
    ) -> None:
        """Initialize RemoteBuildSession."""
        self._client = client
        self._config = config
        self._source = source
        self._out = out
        self._resolve_reference = resolve_reference
        self.secret_name: str | None = None
        self.context: str | None = None
        self.pod_name: str | None = None
        self.cleanup_errors: list[ResourceCleanupError] = []

    @property
    def namespace(self) -> str:
        """Namespace holding the resources of the session."""
        return self._config.namespace

    async def run(self, artifact: Artifact, fqn: str) -> str:
        """Build the artifact as fqn, returning the reference of the pushed image."""
        try:
            async with contextlib.AsyncExitStack() as stack:
                return await self._build(stack, artifact, fqn)
        except Exception as err:
            for cleanup_error in self.cleanup_errors:
                err.add_note(f"Teardown error: {cleanup_error}")
            raise

    async def _build(
        self, stack: contextlib.AsyncExitStack, artifact: Artifact, fqn: str
    ) -> str:
        if not isinstance(artifact.artifact_type, DockerArtifact):
            raise InputException(
                f"Artifact '{artifact.image_name}' is not built from a Dockerfile"
            )

        with trace_context(SETTING_UP_SECRET):
            try:
                secret_name, created = await self._setup_secret()
            except ImageBuilderException as err:
                raise BuildException(SETTING_UP_SECRET, err) from err
            self.secret_name = secret_name
            if created:
                stack.push_async_callback(
                    self._teardown,
                    f"secret {self.namespace}/{secret_name}",
                    functools.partial(
                        self._client.delete_secret, self.namespace, secret_name
                    ),
                )

        with trace_context(SETTING_UP_CONTEXT):
            try:
                context = await self._source.setup(self._out, artifact, fqn)
            except ImageBuilderException as err:
                raise BuildException(SETTING_UP_CONTEXT, err) from err
            self.context = context
            stack.push_async_callback(
                self._teardown, f"build context {context}", self._source.cleanup
            )

        args = kaniko_args(self._config, artifact.artifact_type, context, fqn)
        pod = self._source.pod(kaniko_pod(self._config, secret_name, args))

        with trace_context(CREATING_POD):
            try:
                pod_name = await self._client.create_pod(self.namespace, pod)
            except ImageBuilderException as err:
                raise BuildException(CREATING_POD, err) from err
            self.pod_name = pod_name
            stack.push_async_callback(
                self._teardown,
                f"pod {self.namespace}/{pod_name}",
                functools.partial(
                    self._client.delete_pod, self.namespace, pod_name, grace_period=0
                ),
                True,
            )
        _LOGGER.info("Created kaniko pod %s/%s for %s", self.namespace, pod_name, fqn)

        with trace_context(MODIFYING_POD):
            try:
                await self._source.modify_pod(self._client, self.namespace, pod_name)
            except ImageBuilderException as err:
                raise BuildException(MODIFYING_POD, err) from err

        with trace_context(WAITING_FOR_POD):
            try:
                await self._wait_with_logs(pod_name)
            except ImageBuilderException as err:
                raise BuildException(WAITING_FOR_POD, err) from err

        if self._resolve_reference is None:
            return fqn
        return await self._resolve_reference(fqn)

    async def _setup_secret(self) -> tuple[str, bool]:
        """Provision the push credential, returning its name and if it was created."""
        if not self._config.pull_secret:
            if not await self._client.secret_exists(
                self.namespace, self._config.pull_secret_name
            ):
                raise InputException(
                    f"Secret {self.namespace}/{self._config.pull_secret_name} "
                    "does not exist and no pullSecret key file is configured"
                )
            _LOGGER.debug("Using existing secret %s", self._config.pull_secret_name)
            return self._config.pull_secret_name, False

        try:
            async with aiofiles.open(self._config.pull_secret, mode="rb") as key_file:
                key = await key_file.read()
        except OSError as err:
            raise InputException(
                f"Unable to read pullSecret {self._config.pull_secret}: {err}"
            ) from err
        name = slugify(
            f"{self._config.pull_secret_name}-{uuid.uuid4().hex[:8]}", max_length=63
        )
        await self._client.create_secret(self.namespace, name, {SECRET_KEY: key})
        _LOGGER.debug("Created secret %s/%s", self.namespace, name)
        return name, True

    async def _teardown(
        self,
        resource: str,
        delete: Callable[[], Awaitable[None]],
        critical: bool = False,
    ) -> None:
        """Remove a resource of the session, recording any failure.

        The deletion always runs to completion. A cancellation received while
        waiting for it is raised once the resource is gone.
        """
        _LOGGER.debug("Deleting %s", resource)
        deletion = asyncio.ensure_future(delete())
        interrupted = False
        while not deletion.done():
            try:
                await asyncio.wait([deletion])
            except asyncio.CancelledError:
                _LOGGER.debug("Cancelled while deleting %s; still waiting", resource)
                interrupted = True
        error: BaseException | None
        if deletion.cancelled():
            error = ImageBuilderException("deletion was cancelled")
        else:
            error = deletion.exception()
        if error is not None:
            if not isinstance(error, ImageBuilderException):
                raise error
            cleanup_error = ResourceCleanupError(resource, error)
            self.cleanup_errors.append(cleanup_error)
            if critical:
                _LOGGER.critical(
                    "%s; it is leaked in the cluster and must be deleted by hand",
                    cleanup_error,
                )
            else:
                _LOGGER.error("%s", cleanup_error)
        if interrupted:
            raise asyncio.CancelledError()

    async def _wait_with_logs(self, pod_name: str) -> None:
        """Wait for the pod to complete while copying its logs to the output.

        The log copy is joined before returning so no output is lost.
        """
        done = asyncio.Event()
        logs = asyncio.create_task(self._stream_logs(pod_name, done))
        try:
            await wait_for_pod_complete(
                self._client, self.namespace, pod_name, self._config.timeout
            )
        except BaseException:
            logs.cancel()
            raise
        finally:
            done.set()
            await asyncio.gather(logs, return_exceptions=True)

    async def _stream_logs(self, pod_name: str, done: asyncio.Event) -> None:
        """Copy the logs of the kaniko container, retrying until it has started."""
        streamed = False
        try:
            while True:
                try:
                    async for line in self._client.stream_logs(
                        self.namespace, pod_name, KANIKO_CONTAINER
                    ):
                        streamed = True
                        self._out.write(line)
                    return
                except ImageBuilderException as err:
                    if streamed or done.is_set():
                        _LOGGER.warning("Unable to stream logs of pod %s: %s", pod_name, err)
                        return
                    _LOGGER.debug("Waiting for logs of pod %s: %s", pod_name, err)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(done.wait(), LOG_RETRY_INTERVAL)
        finally:
            self._out.flush()
