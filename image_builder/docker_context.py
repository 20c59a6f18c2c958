"""Library for packaging the build context of a Dockerfile.

Only the files a Dockerfile actually reads are packaged: the Dockerfile
itself and the sources of its `COPY` and `ADD` instructions, minus anything
excluded by `.dockerignore`. This keeps the context sent to a remote build
as small as possible.

```python
from image_builder import docker_context

archive = docker_context.package(Path("app"), "Dockerfile", {"VERSION": "1.2"})
for abs_path, name in archive.entries:
    print(f"Packaged {name}")
```
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import io
import json
import logging
import os
from pathlib import Path
import re
import shlex
import tarfile
from typing import BinaryIO

from .command import format_path
from .config import DockerArtifact
from .exceptions import InputException

__all__ = [
    "get_dependencies",
    "normalize_dockerfile_path",
    "package",
    "create_docker_tar_context",
    "BuildContextArchive",
]

_LOGGER = logging.getLogger(__name__)

DOCKERIGNORE = ".dockerignore"

_VAR_RE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")

DependencyResolver = Callable[[Path, str, dict[str, str | None] | None], list[str]]
"""Returns the workspace relative paths a Dockerfile build depends on."""


@dataclass
class BuildContextArchive:
    """A packaged build context."""

    entries: list[tuple[Path, str]] = field(default_factory=list)
    """Pairs of absolute path and path within the archive."""

    data: bytes = b""
    """The gzipped tar archive."""

    def stream(self) -> BinaryIO:
        """Return the archive as a readable stream."""
        return io.BytesIO(self.data)

    def members(self) -> list[tuple[str, bytes]]:
        """Return the path and content of each file in the archive."""
        result: list[tuple[str, bytes]] = []
        with tarfile.open(fileobj=self.stream(), mode="r:gz") as tar:
            for info in tar.getmembers():
                if not info.isfile():
                    continue
                if (extracted := tar.extractfile(info)) is None:
                    continue
                result.append((info.name, extracted.read()))
        return result


def _logical_lines(content: str) -> Iterable[str]:
    """Yield Dockerfile instructions with continuations joined."""
    current = ""
    for raw in content.splitlines():
        line = raw.strip()
        if not current and (not line or line.startswith("#")):
            continue
        if line.endswith("\\"):
            current += line[:-1] + " "
            continue
        current += line
        if current.strip():
            yield current.strip()
        current = ""
    if current.strip():
        yield current.strip()


def _substitute(value: str, env: dict[str, str]) -> str:
    return _VAR_RE.sub(lambda m: env.get(m.group(1) or m.group(2), ""), value)


def _split_args(args: str) -> list[str]:
    """Split instruction arguments in either JSON or shell form."""
    if args.startswith("["):
        try:
            parsed = json.loads(args)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(arg) for arg in parsed]
    return shlex.split(args)


def _copied_sources(
    dockerfile: str, build_args: dict[str, str | None] | None
) -> list[str]:
    """Return the sources of `COPY` and `ADD` with variables substituted."""
    args: dict[str, str] = {}
    for key, value in (build_args or {}).items():
        if value is None:
            value = os.environ.get(key)
        if value is not None:
            args[key] = value
    env: dict[str, str] = {}
    sources: list[str] = []
    for line in _logical_lines(dockerfile):
        instruction, _, rest = line.partition(" ")
        instruction = instruction.upper()
        rest = rest.strip()
        if instruction == "FROM":
            env = {}
        elif instruction == "ARG":
            name, sep, default = rest.partition("=")
            name = name.strip()
            if name in args:
                env[name] = args[name]
            elif sep:
                env[name] = _substitute(default.strip().strip('"'), env)
        elif instruction == "ENV":
            words = _split_args(rest)
            if words and "=" not in words[0]:
                env[words[0]] = _substitute(" ".join(words[1:]), env)
            else:
                for word in words:
                    key, _, value = word.partition("=")
                    env[key] = _substitute(value, env)
        elif instruction in ("COPY", "ADD"):
            words = _split_args(rest)
            flags = [word for word in words if word.startswith("--")]
            if any(flag.startswith("--from") for flag in flags):
                continue
            paths = [word for word in words if not word.startswith("--")]
            for src in paths[:-1]:
                if re.match(r"^[a-z]+://", src):
                    continue
                sources.append(_substitute(src, env))
    return sources


def _pattern_regex(pattern: str) -> re.Pattern[str]:
    """Translate a `.dockerignore` pattern into a regular expression.

    `*` and `?` match within a single path segment, while `**` matches any
    number of segments including none, so `**/*.go` matches `main.go`.
    """
    regex = ""
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        i += 1
        if ch == "*":
            if pattern[i : i + 1] != "*":
                regex += "[^/]*"
                continue
            i += 1
            if pattern[i : i + 1] == "/":
                i += 1
            regex += ".*" if i == len(pattern) else "(.*/)?"
        elif ch == "?":
            regex += "[^/]"
        elif ch == "[" and (end := pattern.find("]", i + 1)) != -1:
            chars = pattern[i:end].replace("\\", "\\\\")
            if chars.startswith("!"):
                chars = "^" + chars[1:]
            regex += f"[{chars}]"
            i = end + 1
        elif ch == "\\" and i < len(pattern):
            regex += re.escape(pattern[i])
            i += 1
        else:
            regex += re.escape(ch)
    return re.compile(f"^{regex}$")


def _read_dockerignore(workspace: Path) -> list[tuple[re.Pattern[str], bool]]:
    """Return the exclusion patterns and whether each one is negated."""
    path = workspace / DOCKERIGNORE
    if not path.exists():
        return []
    patterns: list[tuple[re.Pattern[str], bool]] = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        negate = line.startswith("!")
        pattern = os.path.normpath(line.lstrip("!").strip()).lstrip("/")
        patterns.append((_pattern_regex(pattern), negate))
    return patterns


def _is_excluded(rel_path: str, patterns: list[tuple[re.Pattern[str], bool]]) -> bool:
    """Return True if the path or one of its parents is excluded."""
    parts = rel_path.split("/")
    prefixes = ["/".join(parts[: i + 1]) for i in range(len(parts))]
    excluded = False
    for pattern, negate in patterns:
        if any(pattern.match(prefix) for prefix in prefixes):
            excluded = not negate
    return excluded


def _check_in_workspace(workspace: Path, path: Path, src: str) -> None:
    if not path.resolve().is_relative_to(workspace):
        raise InputException(
            f"File '{src}' is outside of workspace {format_path(workspace)}"
        )


def _expand(workspace: Path, src: str) -> list[Path]:
    """Return the files matched by a `COPY` source."""
    src = os.path.normpath(src).lstrip("/")
    if src == ".." or src.startswith("../"):
        raise InputException(
            f"File '{src}' is outside of workspace {format_path(workspace)}"
        )
    if src == ".":
        matches = [workspace]
    elif any(c in src for c in "*?["):
        matches = sorted(workspace.glob(src))
    else:
        matches = [workspace / src] if (workspace / src).exists() else []
    if not matches:
        raise InputException(
            f"File pattern '{src}' must match at least one file in {format_path(workspace)}"
        )
    files: list[Path] = []
    for match in matches:
        _check_in_workspace(workspace, match, src)
        if match.is_dir():
            for path in sorted(match.rglob("*")):
                if path.is_file():
                    _check_in_workspace(workspace, path, src)
                    files.append(path)
        else:
            files.append(match)
    return files


def get_dependencies(
    workspace: Path, dockerfile_path: str, build_args: dict[str, str | None] | None
) -> list[str]:
    """Return the sorted workspace relative paths the Dockerfile build reads."""
    workspace = workspace.resolve()
    dockerfile = normalize_dockerfile_path(workspace, dockerfile_path)
    if not dockerfile.is_relative_to(workspace):
        raise InputException(
            f"Dockerfile {dockerfile_path} is outside of workspace {format_path(workspace)}"
        )
    if not dockerfile.is_file():
        raise InputException(f"Dockerfile not found: {format_path(dockerfile)}")

    patterns = _read_dockerignore(workspace)
    paths: set[str] = {dockerfile.relative_to(workspace).as_posix()}
    for src in _copied_sources(dockerfile.read_text(), build_args):
        for file in _expand(workspace, src):
            rel_path = file.relative_to(workspace).as_posix()
            if not _is_excluded(rel_path, patterns):
                paths.add(rel_path)
    return sorted(paths)


def normalize_dockerfile_path(workspace: Path, dockerfile_path: str) -> Path:
    """Return the absolute path of a Dockerfile given relative to the workspace."""
    path = Path(dockerfile_path)
    if not path.is_absolute():
        path = workspace / path
    return path.resolve()


def package(
    workspace: Path,
    dockerfile_path: str,
    build_args: dict[str, str | None] | None = None,
    resolver: DependencyResolver = get_dependencies,
) -> BuildContextArchive:
    """Package the files the Dockerfile build depends on into an archive."""
    workspace = workspace.resolve()
    paths = resolver(workspace, dockerfile_path, build_args)
    archive = BuildContextArchive(entries=[(workspace / path, path) for path in paths])
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for abs_path, name in archive.entries:
            tar.add(str(abs_path), arcname=name, recursive=False)
    archive.data = buf.getvalue()
    _LOGGER.debug(
        "Packaged %d files (%d bytes) from %s",
        len(archive.entries),
        len(archive.data),
        format_path(workspace),
    )
    return archive


def create_docker_tar_context(
    out: BinaryIO,
    workspace: Path,
    artifact: DockerArtifact,
    resolver: DependencyResolver = get_dependencies,
) -> None:
    """Write the build context of the artifact to the stream."""
    archive = package(workspace, artifact.dockerfile_path, artifact.build_args, resolver)
    out.write(archive.data)
