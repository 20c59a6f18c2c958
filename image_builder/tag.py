"""Library for computing the fully qualified name of an image before it is built.

A tagger turns an image name into the reference the backend builds the image
as, so the image never needs to be re-tagged after the build:
```python
from image_builder.tag import EnvTemplateTagger

tagger = EnvTemplateTagger("{{.IMAGE_NAME}}:{{.VERSION}}")
fqn = tagger.generate_fully_qualified_image_name(Path("."), "gcr.io/example/app")
```
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
import datetime
import logging
import os
from pathlib import Path
import re

import git

from .config import TagPolicy
from .exceptions import InputException

__all__ = [
    "Tagger",
    "EnvTemplateTagger",
    "GitCommitTagger",
    "DateTimeTagger",
    "Sha256Tagger",
    "tagger_from_policy",
]

_LOGGER = logging.getLogger(__name__)

IMAGE_NAME = "IMAGE_NAME"
DEPRECATED_DIGEST = "_DEPRECATED_DIGEST_"
DEPRECATED_DIGEST_KEYS = ("DIGEST", "DIGEST_ALGO", "DIGEST_HEX")
DEFAULT_DATE_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class Tagger(ABC):
    """Computes the fully qualified reference of an image."""

    @abstractmethod
    def generate_fully_qualified_image_name(
        self, workspace: Path, image_name: str
    ) -> str:
        """Return the reference the image should be built as."""


class EnvTemplateTagger(Tagger):
    """Tagger that fills a template like `{{.IMAGE_NAME}}:{{.VERSION}}`.

    Values come from the environment, except `IMAGE_NAME` which is always the
    name of the image being built. The digest keys are no longer supported
    and resolve to an empty value.
    """

    def __init__(
        self,
        template: str,
        environ: Callable[[], Mapping[str, str]] = lambda: os.environ,
    ) -> None:
        """Initialize EnvTemplateTagger."""
        self._template = template
        self._environ = environ
        self._keys = _parse_template(template)

    def __str__(self) -> str:
        """Render as a debug string."""
        return f"envTemplate({self._template})"

    def generate_fully_qualified_image_name(
        self, workspace: Path, image_name: str
    ) -> str:
        """Return the template filled with environment values."""
        values: dict[str, str] = dict(self._environ())
        values[IMAGE_NAME] = image_name
        for key in DEPRECATED_DIGEST_KEYS:
            values[key] = DEPRECATED_DIGEST

        missing = [key for key in self._keys if key not in values]
        if missing:
            raise InputException(
                f"Tag template '{self._template}' references unset variables: "
                f"{', '.join(missing)}"
            )
        tag = _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], self._template)
        if DEPRECATED_DIGEST in tag:
            _LOGGER.warning(
                "Tag template '%s' uses a digest variable which is deprecated "
                "and resolves to an empty value",
                self._template,
            )
            tag = tag.replace(DEPRECATED_DIGEST, "").rstrip(":-")
        return tag


def _parse_template(template: str) -> list[str]:
    """Return the keys referenced by a template, or fail on a malformed one."""
    keys = _PLACEHOLDER_RE.findall(template)
    remainder = _PLACEHOLDER_RE.sub("", template)
    if "{{" in remainder or "}}" in remainder:
        raise InputException(f"Invalid tag template '{template}'")
    return keys


class Sha256Tagger(Tagger):
    """Tagger that uses `latest`, leaving the digest to identify the image."""

    def generate_fully_qualified_image_name(
        self, workspace: Path, image_name: str
    ) -> str:
        """Return the image name tagged latest."""
        return f"{image_name}:latest"


class GitCommitTagger(Tagger):
    """Tagger that uses the short commit of the repository holding the workspace."""

    def generate_fully_qualified_image_name(
        self, workspace: Path, image_name: str
    ) -> str:
        """Return the image name tagged with the commit."""
        try:
            repo = git.repo.Repo(str(workspace), search_parent_directories=True)
            commit = repo.head.commit.hexsha[:7]
            dirty = repo.is_dirty(untracked_files=True)
        except (git.GitError, ValueError) as err:
            raise InputException(
                f"Unable to tag with git commit, workspace {workspace} is not "
                f"a git repository with commits: {err}"
            ) from err
        if dirty:
            return f"{image_name}:{commit}-dirty"
        return f"{image_name}:{commit}"


class DateTimeTagger(Tagger):
    """Tagger that uses the time the tag was generated."""

    def __init__(
        self,
        format: str | None = None,
        now: Callable[[], datetime.datetime] = datetime.datetime.now,
    ) -> None:
        """Initialize DateTimeTagger."""
        self._format = format or DEFAULT_DATE_TIME_FORMAT
        self._now = now

    def generate_fully_qualified_image_name(
        self, workspace: Path, image_name: str
    ) -> str:
        """Return the image name tagged with the current time."""
        return f"{image_name}:{self._now().strftime(self._format)}"


def tagger_from_policy(policy: TagPolicy) -> Tagger:
    """Return the tagger selected by a tag policy."""
    if policy.env_template:
        return EnvTemplateTagger(policy.env_template.template)
    if policy.git_commit:
        return GitCommitTagger()
    if policy.date_time:
        return DateTimeTagger(policy.date_time.format)
    return Sha256Tagger()
