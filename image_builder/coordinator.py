"""Library for building all the artifacts of a pipeline.

Each artifact is tagged and then built by the backend matching its type.
The results are always returned in the order of the input artifacts:
```python
from image_builder import coordinator

results = await coordinator.build_all(
    config.artifacts, tagger, builder, strategy=BuildStrategy.PARALLEL
)
for result in results:
    print(result.image_name, result.tag)
```

Failure handling depends on the strategy:

- `sequential` builds one artifact at a time and stops at the first failure.
  The artifacts after it are never started and are reported as skipped.
- `parallel` starts every build at once. A failure does not cancel builds
  that are already running: they all finish, then the first failure to
  happen is raised.

In both cases the failure is an `ArtifactBuildError` naming the artifact,
and its `results` hold the outcome of every artifact in input order.
"""

import asyncio
from dataclasses import dataclass
import logging

from .config import Artifact, BuildStrategy
from .context import trace_context
from .dispatch import Builder
from .exceptions import ArtifactBuildError, ImageBuilderException
from .output import LineWriter, OutputSink
from .tag import Tagger

__all__ = [
    "BuildResult",
    "build_all",
]

_LOGGER = logging.getLogger(__name__)

SKIPPED = "skipped after earlier failure"


@dataclass
class BuildResult:
    """The outcome of building one artifact."""

    image_name: str
    """The name of the artifact image."""

    tag: str | None = None
    """The reference of the built image, when the build succeeded."""

    error: ImageBuilderException | None = None
    """The reason the build failed or was skipped."""

    @property
    def ok(self) -> bool:
        """True if the image was built."""
        return self.error is None and self.tag is not None


async def _build_one(
    artifact: Artifact, tagger: Tagger, builder: Builder, out: LineWriter
) -> str:
    """Tag and build a single artifact."""
    with trace_context(f"Build '{artifact.image_name}'"):
        fqn = tagger.generate_fully_qualified_image_name(
            artifact.workspace_path, artifact.image_name
        )
        out.println(f"Building [{artifact.image_name}] as {fqn}...")
        _LOGGER.info("Building %s as %s", artifact.image_name, fqn)
        try:
            ref = await builder.build(out, artifact, fqn)
        finally:
            out.flush()
        out.println(f"Built [{artifact.image_name}]: {ref}")
        _LOGGER.info("Built %s", ref)
        return ref


async def _build_sequential(
    artifacts: list[Artifact], tagger: Tagger, builder: Builder, sink: OutputSink
) -> list[BuildResult]:
    results: list[BuildResult] = []
    for index, artifact in enumerate(artifacts):
        out = sink.prefixed(f"[{artifact.image_name}] ")
        try:
            tag = await _build_one(artifact, tagger, builder, out)
        except ImageBuilderException as err:
            results.append(BuildResult(artifact.image_name, error=err))
            results.extend(
                BuildResult(skipped.image_name, error=ImageBuilderException(SKIPPED))
                for skipped in artifacts[index + 1 :]
            )
            raise ArtifactBuildError(artifact.image_name, err, results) from err
        results.append(BuildResult(artifact.image_name, tag=tag))
    return results


async def _build_parallel(
    artifacts: list[Artifact], tagger: Tagger, builder: Builder, sink: OutputSink
) -> list[BuildResult]:
    failures: list[tuple[Artifact, ImageBuilderException]] = []

    async def run(artifact: Artifact) -> str:
        out = sink.prefixed(f"[{artifact.image_name}] ")
        try:
            return await _build_one(artifact, tagger, builder, out)
        except ImageBuilderException as err:
            failures.append((artifact, err))
            raise

    tasks = [
        asyncio.create_task(run(artifact), name=f"build-{artifact.image_name}")
        for artifact in artifacts
    ]
    try:
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    results: list[BuildResult] = []
    for artifact, outcome in zip(artifacts, outcomes):
        if isinstance(outcome, ImageBuilderException):
            results.append(BuildResult(artifact.image_name, error=outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            results.append(BuildResult(artifact.image_name, tag=outcome))
    if failures:
        artifact, err = failures[0]
        raise ArtifactBuildError(artifact.image_name, err, results) from err
    return results


async def build_all(
    artifacts: list[Artifact],
    tagger: Tagger,
    builder: Builder,
    strategy: BuildStrategy = BuildStrategy.SEQUENTIAL,
    sink: OutputSink | None = None,
) -> list[BuildResult]:
    """Build every artifact, returning one result per artifact in input order.

    Raises `ArtifactBuildError` if any artifact failed to build.
    """
    if sink is None:
        sink = OutputSink()
    _LOGGER.debug("Building %d artifacts (%s)", len(artifacts), strategy)
    with trace_context("Build all"):
        if strategy == BuildStrategy.PARALLEL:
            return await _build_parallel(artifacts, tagger, builder, sink)
        return await _build_sequential(artifacts, tagger, builder, sink)
