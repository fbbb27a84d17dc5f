"""
Skill directory metadata.

A skill directory holds a SKILL.md file starting with a YAML front matter
block delimited by ``---`` lines:

    ---
    name: code-review
    description: Reviews pull requests
    dependencies:
      - ghcr.io/acme/git-helpers:v1
    metadata:
      author: Jane Doe
      version: 1.2.0
    ---
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field

import yaml

from .errors import SchemaViolationError
from .oci import (
    ANNOTATION_AUTHOR,
    ANNOTATION_DEPENDENCIES,
    ANNOTATION_DESCRIPTION,
    ANNOTATION_VERSION,
)

logger = logging.getLogger(__name__)

SKILL_FILE_NAME = "SKILL.md"
MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024

NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")


@dataclass
class Skill:
    name: str = ""
    description: str = ""
    dependencies: list = field(default_factory=list)
    author: str = ""
    version: str = ""
    path: str = ""

    def validate(self) -> None:
        """
        Check metadata against the skill rules.

        Raises:
            SchemaViolationError: on the first rule that fails
        """
        if not self.name:
            raise SchemaViolationError("name is required")
        if len(self.name) > MAX_NAME_LENGTH:
            raise SchemaViolationError(f"name must be {MAX_NAME_LENGTH} characters or less")
        if not NAME_PATTERN.match(self.name):
            raise SchemaViolationError("name must contain only lowercase alphanumeric characters and hyphens")

        if not self.description:
            raise SchemaViolationError("description is required")
        if len(self.description) > MAX_DESCRIPTION_LENGTH:
            raise SchemaViolationError(f"description must be {MAX_DESCRIPTION_LENGTH} characters or less")

        if not all(isinstance(dep, str) and dep for dep in self.dependencies):
            raise SchemaViolationError("dependencies must be a list of reference strings")

    def annotations(self) -> dict:
        """Manifest annotations describing this skill."""
        annotations = {ANNOTATION_DESCRIPTION: self.description}
        if self.author:
            annotations[ANNOTATION_AUTHOR] = self.author
        if self.version:
            annotations[ANNOTATION_VERSION] = self.version
        if self.dependencies:
            annotations[ANNOTATION_DEPENDENCIES] = json.dumps(self.dependencies)
        return annotations


def parse_frontmatter(content: str) -> Skill:
    """Parse the front matter block at the start of a SKILL.md document."""
    content = content.replace("\r\n", "\n")
    if not content.startswith("---\n"):
        raise SchemaViolationError("missing frontmatter start delimiter '---'")

    end = content.find("\n---", 3)
    if end == -1:
        raise SchemaViolationError("missing frontmatter end delimiter '---'")

    try:
        data = yaml.safe_load(content[4:end]) or {}
    except yaml.YAMLError as exc:
        raise SchemaViolationError(f"invalid frontmatter YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise SchemaViolationError("frontmatter must be a mapping")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise SchemaViolationError("metadata must be a mapping")

    dependencies = data.get("dependencies") or []
    if not isinstance(dependencies, list):
        raise SchemaViolationError("dependencies must be a list")

    return Skill(
        name=str(data.get("name") or ""),
        description=str(data.get("description") or ""),
        dependencies=dependencies,
        author=str(metadata.get("author") or ""),
        version=str(metadata.get("version") or ""),
    )


def load_unverified(directory: str) -> Skill:
    """
    Read a skill without validating it.

    Used on install, where legacy or partially conformant artifacts are
    accepted as long as the front matter parses.
    """
    skill_path = os.path.join(directory, SKILL_FILE_NAME)
    if not os.path.exists(skill_path):
        raise SchemaViolationError(f"skill directory must contain a {SKILL_FILE_NAME} file")
    if os.path.isdir(skill_path):
        raise SchemaViolationError(f"{SKILL_FILE_NAME} must be a file, not a directory")

    try:
        with open(skill_path, encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise SchemaViolationError(f"failed to read {SKILL_FILE_NAME}: {exc}") from exc

    skill = parse_frontmatter(content)
    skill.path = directory
    return skill


def load(directory: str) -> Skill:
    """Read and validate a skill directory."""
    skill = load_unverified(directory)
    try:
        skill.validate()
    except SchemaViolationError as exc:
        raise SchemaViolationError(f"invalid skill at {directory}: {exc}") from exc
    return skill
