"""Tests for building all the artifacts of a pipeline."""

import asyncio
import io

import pytest

from image_builder.config import Artifact, BuildStrategy, DockerArtifact
from image_builder.coordinator import SKIPPED, BuildResult, build_all
from image_builder.exceptions import ArtifactBuildError, BuildException, InputException
from image_builder.output import OutputSink
from image_builder.tag import EnvTemplateTagger, Sha256Tagger

from .fakes import DIGEST, FakeBuilder

ARTIFACTS = [
    Artifact(image_name=name, artifact_type=DockerArtifact())
    for name in ["app", "svc", "web", "db"]
]


async def test_parallel_order() -> None:
    """Test parallel results are in input order, not completion order."""
    builder = FakeBuilder(delays={"app": 0.3, "svc": 0.0, "web": 0.2, "db": 0.1})
    results = await build_all(
        ARTIFACTS,
        Sha256Tagger(),
        builder,
        strategy=BuildStrategy.PARALLEL,
        sink=OutputSink(io.StringIO()),
    )
    assert builder.finished == ["svc", "db", "web", "app"]
    assert results == [
        BuildResult(image_name=name, tag=f"{name}:latest@{DIGEST}")
        for name in ["app", "svc", "web", "db"]
    ]
    assert all(result.ok for result in results)


async def test_sequential_order() -> None:
    """Test sequential builds run one at a time in input order."""
    builder = FakeBuilder(delays={"app": 0.1})
    results = await build_all(
        ARTIFACTS, Sha256Tagger(), builder, sink=OutputSink(io.StringIO())
    )
    assert builder.started == ["app", "svc", "web", "db"]
    assert [result.tag for result in results] == [
        f"{name}:latest@{DIGEST}" for name in ["app", "svc", "web", "db"]
    ]


async def test_sequential_fail_fast() -> None:
    """Test a sequential failure stops the remaining builds."""
    builder = FakeBuilder(failures={"svc"})
    with pytest.raises(
        ArtifactBuildError, match=r"building \[svc\]: running build"
    ) as exc_info:
        await build_all(
            ARTIFACTS, Sha256Tagger(), builder, sink=OutputSink(io.StringIO())
        )
    assert builder.started == ["app", "svc"]
    err = exc_info.value
    assert err.image_name == "svc"
    assert isinstance(err.__cause__, BuildException)
    assert [result.image_name for result in err.results] == ["app", "svc", "web", "db"]
    assert err.results[0].ok
    assert err.results[1].error is err.__cause__
    assert str(err.results[2].error) == SKIPPED
    assert str(err.results[3].error) == SKIPPED


async def test_parallel_failure_siblings_finish() -> None:
    """Test a parallel failure lets the builds already started finish."""
    builder = FakeBuilder(
        delays={"app": 0.2, "svc": 0.0, "web": 0.1, "db": 0.3}, failures={"web", "svc"}
    )
    with pytest.raises(ArtifactBuildError) as exc_info:
        await build_all(
            ARTIFACTS,
            Sha256Tagger(),
            builder,
            strategy=BuildStrategy.PARALLEL,
            sink=OutputSink(io.StringIO()),
        )
    assert sorted(builder.finished) == ["app", "db", "svc", "web"]
    err = exc_info.value
    assert err.image_name == "svc"
    results = err.results
    assert [result.image_name for result in results] == ["app", "svc", "web", "db"]
    assert [result.ok for result in results] == [True, False, False, True]
    assert results[3].tag == f"db:latest@{DIGEST}"


async def test_tagging_failure() -> None:
    """Test an artifact that cannot be tagged is reported as a build failure."""
    tagger = EnvTemplateTagger("{{.IMAGE_NAME}}:{{.VERSION}}", environ=lambda: {})
    builder = FakeBuilder()
    with pytest.raises(ArtifactBuildError, match="VERSION") as exc_info:
        await build_all(ARTIFACTS[:1], tagger, builder, sink=OutputSink(io.StringIO()))
    assert isinstance(exc_info.value.__cause__, InputException)
    assert not builder.started


async def test_progress_output() -> None:
    """Test the progress lines of each build carry the image name."""
    stream = io.StringIO()
    await build_all(
        ARTIFACTS[:2],
        Sha256Tagger(),
        FakeBuilder(),
        strategy=BuildStrategy.PARALLEL,
        sink=OutputSink(stream),
    )
    lines = stream.getvalue().splitlines()
    assert sorted(lines) == sorted(
        [
            "[app] Building [app] as app:latest...",
            "[app] built app:latest",
            f"[app] Built [app]: app:latest@{DIGEST}",
            "[svc] Building [svc] as svc:latest...",
            "[svc] built svc:latest",
            f"[svc] Built [svc]: svc:latest@{DIGEST}",
        ]
    )
    assert [line for line in lines if line.startswith("[app]")] == [
        "[app] Building [app] as app:latest...",
        "[app] built app:latest",
        f"[app] Built [app]: app:latest@{DIGEST}",
    ]


async def test_parallel_cancel() -> None:
    """Test cancelling a parallel run cancels every build."""
    builder = FakeBuilder(delays={name: 30 for name in ["app", "svc", "web", "db"]})
    task = asyncio.create_task(
        build_all(
            ARTIFACTS,
            Sha256Tagger(),
            builder,
            strategy=BuildStrategy.PARALLEL,
            sink=OutputSink(io.StringIO()),
        )
    )
    await asyncio.sleep(0.1)
    assert len(builder.started) == 4
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not builder.finished


async def test_empty() -> None:
    """Test building no artifacts."""
    assert await build_all([], Sha256Tagger(), FakeBuilder()) == []
