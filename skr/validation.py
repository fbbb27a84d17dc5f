"""
Input validation module for skr.

Provides digest helpers and validation/parsing for repository names, tags and
references of the form ``[host/]namespace/.../name[:tag|@digest]``.
"""

import hashlib
import logging
import re
from dataclasses import dataclass

from .config import config
from .errors import InvalidReferenceError

logger = logging.getLogger(__name__)

DIGEST_PATTERN = re.compile(r"^sha256:[a-f0-9]{64}$")
REPOSITORY_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")
TAG_PATTERN = re.compile(r"^[a-zA-Z0-9_][a-zA-Z0-9._-]*$")


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in OCI format.

    Args:
        data: Bytes to hash

    Returns:
        String in format "sha256:<64 hex chars>"

    Example:
        >>> compute_sha256(b"hello")
        'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    h = hashlib.sha256()
    h.update(data)
    return "sha256:" + h.hexdigest()


def is_digest(value: str) -> bool:
    return bool(DIGEST_PATTERN.match(value))


def validate_digest(digest: str) -> None:
    """
    Validate SHA256 digest format per OCI specification.

    Raises:
        InvalidReferenceError: if digest is not "sha256:<64 lowercase hex>"
    """
    if not is_digest(digest):
        logger.warning(f"Invalid digest format: {digest}")
        raise InvalidReferenceError(
            f"invalid digest {digest!r}: must be sha256:<64 hex characters>", code="DIGEST_INVALID"
        )


def validate_repository_name(name: str) -> None:
    """
    Validate a repository name (without tag or digest).

    Validation Rules:
        - Must be 1-{MAX_REPOSITORY_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots, hyphens, underscores and slashes
        - No empty path components
    """
    if not name or len(name) > config.MAX_REPOSITORY_LENGTH:
        raise InvalidReferenceError(
            f"invalid repository name: must be 1-{config.MAX_REPOSITORY_LENGTH} characters"
        )

    if not REPOSITORY_PATTERN.match(name) or "" in name.split("/"):
        logger.warning(f"Invalid repository name format: {name}")
        raise InvalidReferenceError(
            f"invalid repository name {name!r}: only alphanumeric, dots, hyphens, underscores, and slashes allowed"
        )


def validate_tag(tag: str) -> None:
    """
    Validate a tag.

    Validation Rules:
        - Must be 1-{MAX_TAG_LENGTH} characters (configurable)
        - Only alphanumeric characters, dots, hyphens and underscores,
          not starting with a dot or hyphen
    """
    if not tag or len(tag) > config.MAX_TAG_LENGTH:
        raise InvalidReferenceError(f"invalid tag: must be 1-{config.MAX_TAG_LENGTH} characters", code="TAG_INVALID")

    if not TAG_PATTERN.match(tag):
        logger.warning(f"Invalid tag format: {tag}")
        raise InvalidReferenceError(
            f"invalid tag {tag!r}: only alphanumeric, dots, hyphens, and underscores allowed", code="TAG_INVALID"
        )


@dataclass(frozen=True)
class Reference:
    """A parsed artifact reference."""

    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @property
    def name(self) -> str:
        """Repository including the registry host, if any."""
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository

    @property
    def identifier(self) -> str:
        """The digest if present, otherwise the tag."""
        return self.digest or self.tag

    def __str__(self) -> str:
        ref = self.name
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


def _looks_like_host(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(reference: str) -> Reference:
    """
    Parse a reference string into its components.

    Supported forms:
        - name
        - name:tag
        - name@sha256:<hex>
        - host[:port]/namespace/name[:tag|@digest]

    The first path component is treated as a registry host when it contains
    a dot or a colon, or is "localhost", and more components follow.

    Raises:
        InvalidReferenceError: if any component is malformed

    Examples:
        >>> parse_reference("ghcr.io/acme/lint:v1").registry
        'ghcr.io'
        >>> parse_reference("lint").tag
        ''
    """
    if not reference:
        raise InvalidReferenceError("empty reference")

    remainder, digest = reference, ""
    if "@" in reference:
        remainder, digest = reference.split("@", 1)
        validate_digest(digest)

    tag = ""
    slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > slash:
        remainder, tag = remainder[:colon], remainder[colon + 1:]
        validate_tag(tag)

    registry = ""
    parts = remainder.split("/", 1)
    if len(parts) == 2 and _looks_like_host(parts[0]):
        registry, remainder = parts

    validate_repository_name(remainder)
    return Reference(registry=registry, repository=remainder, tag=tag, digest=digest)
