"""Library for detecting projects configured with the Jib maven or gradle plugin.

Detection asks the project's own build tool, through a private Jib task, for
the images it would build. The task prints one JSON payload per module:
```
BEGIN JIB JSON
{"image":"gcr.io/example/app","project":"app"}
```

Example usage:
```python
from image_builder import jib

for result in await jib.validate_jib_config(Path("pom.xml")):
    print(f"Found {result.describe()}")
```

Detection is best effort: a project without Jib, a failing build tool or
unparsable output all produce no results.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
import json
import logging
import os
from pathlib import Path
import re

import aiofiles
from aiofiles.ospath import exists

from . import command
from .command import Command, Task
from .config import Artifact, JibGradleArtifact, JibMavenArtifact
from .exceptions import ImageBuilderException, JibException

__all__ = [
    "validate_jib_config",
    "discover_builders",
    "JibProbeResult",
    "PluginType",
    "MAVEN",
    "GRADLE",
]

_LOGGER = logging.getLogger(__name__)

_JIB_JSON_RE = re.compile(r"BEGIN JIB JSON\r?\n(\{.*\})")

DETECT_TIMEOUT = 5 * 60.0

Runner = Callable[[Task], Awaitable[str]]
"""Runs a command and returns its output."""


@dataclass(frozen=True)
class PluginType:
    """A build tool family that may carry the Jib plugin."""

    name: str
    """Name of the builder shown to users."""

    executable: str
    """Build tool on the PATH."""

    wrapper: str
    """Wrapper script checked in to a project, pinning the tool version."""

    marker: str
    """Text that must appear in the build file when the plugin is configured."""

    task_name: str
    """Private task that prints the Jib configuration."""

    suffixes: tuple[str, ...]
    """Names of build files handled by the tool."""

    def matches(self, path: Path) -> bool:
        """Return True if the file is a build file of this tool."""
        return path.name.endswith(self.suffixes)


MAVEN = PluginType(
    name="Jib Maven Plugin",
    executable="mvn",
    wrapper="mvnw",
    marker="<artifactId>jib-maven-plugin</artifactId>",
    task_name="jib:_skaffold-init",
    suffixes=("pom.xml",),
)

GRADLE = PluginType(
    name="Jib Gradle Plugin",
    executable="gradle",
    wrapper="gradlew",
    marker="com.google.cloud.tools.jib",
    task_name="_jibSkaffoldInit",
    suffixes=("build.gradle", "build.gradle.kts"),
)

PLUGIN_TYPES = [MAVEN, GRADLE]


@dataclass(frozen=True)
class JibProbeResult:
    """A module of a project that builds an image with Jib."""

    builder_name: str
    """Name of the plugin that builds the module."""

    file_path: Path
    """The build file that was probed."""

    image: str | None = None
    """The image configured for the module, if any."""

    project: str | None = None
    """The module or sub-project, for multi-module builds."""

    def describe(self) -> str:
        """Return a description used when listing builders."""
        if self.project:
            return f"{self.builder_name} ({self.project}, {self.file_path})"
        return f"{self.builder_name} ({self.file_path})"

    def update_artifact(self, artifact: Artifact) -> Artifact:
        """Return the artifact updated to be built by this module."""
        artifact_type: JibMavenArtifact | JibGradleArtifact
        if self.builder_name == MAVEN.name:
            artifact_type = JibMavenArtifact(project=self.project)
        else:
            artifact_type = JibGradleArtifact(project=self.project)
        workspace = os.path.dirname(self.file_path) or artifact.workspace
        return replace(artifact, artifact_type=artifact_type, workspace=workspace)


def plugin_type(path: Path) -> PluginType | None:
    """Return the build tool family of a build file, if any."""
    for plugin in PLUGIN_TYPES:
        if plugin.matches(path):
            return plugin
    return None


async def resolve_executable(plugin: PluginType, directory: Path) -> str:
    """Return the wrapper script of the project if present, else the tool."""
    if await exists(directory / plugin.wrapper):
        return str((directory / plugin.wrapper).absolute())
    return plugin.executable


def parse_jib_output(
    plugin: PluginType, path: Path, output: str
) -> list[JibProbeResult]:
    """Parse the output of the Jib task into one result per module."""
    results: list[JibProbeResult] = []
    for match in _JIB_JSON_RE.findall(output):
        # Windows path separators are not valid JSON escapes
        line = match.replace("\\", "\\\\")
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError as err:
            _LOGGER.warning("failed to parse jib json: %s", err)
            return []
        if not isinstance(parsed, dict):
            _LOGGER.warning("failed to parse jib json: expected object: %s", line)
            return []
        results.append(
            JibProbeResult(
                builder_name=plugin.name,
                file_path=path,
                image=parsed.get("image") or None,
                project=parsed.get("project") or None,
            )
        )
    return results


async def validate_jib_config(
    path: Path, runner: Runner = command.run
) -> list[JibProbeResult]:
    """Return the Jib modules built by a build file, or none if Jib is not configured."""
    if not (plugin := plugin_type(path)):
        return []

    # Look for the plugin in the build file before running the build tool
    try:
        async with aiofiles.open(str(path)) as build_file:
            content = await build_file.read()
    except (OSError, UnicodeDecodeError) as err:
        _LOGGER.debug("Unable to read %s: %s", path, err)
        return []
    if plugin.marker not in content:
        return []

    directory = path.parent
    executable = await resolve_executable(plugin, directory)
    cmd = Command(
        [executable, plugin.task_name, "-q"],
        cwd=directory,
        exc=JibException,
        timeout=DETECT_TIMEOUT,
        merge_stderr=True,
    )
    try:
        output = await runner(cmd)
    except ImageBuilderException as err:
        _LOGGER.debug("Jib detection failed for %s: %s", path, err)
        return []
    return parse_jib_output(plugin, path, output)


Validator = Callable[[Path], Awaitable[list[JibProbeResult]]]

SKIP_DIRS = {"node_modules", "target", "build"}


async def discover_builders(
    root: Path, validate: Validator = validate_jib_config
) -> list[JibProbeResult]:
    """Walk a project tree and return the Jib modules of every build file."""
    results: list[JibProbeResult] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in SKIP_DIRS
        )
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if plugin_type(path) is None:
                continue
            results.extend(await validate(path))
    return results
