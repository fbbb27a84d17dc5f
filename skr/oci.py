"""
OCI data model for skill artifacts.

Descriptors and manifests follow the OCI image-spec JSON schema; only the
pieces skr needs are modelled.
"""

import json
from dataclasses import dataclass, field

from .errors import ManifestDecodeError

MEDIA_TYPE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_SKILL_CONFIG = "application/vnd.agentskills.skill.config.v1+json"
MEDIA_TYPE_SKILL_LAYER = "application/vnd.agentskills.skill.layer.v1+tar+gzip"

ANNOTATION_DESCRIPTION = "com.skr.description"
ANNOTATION_AUTHOR = "com.skr.author"
ANNOTATION_VERSION = "com.skr.version"
ANNOTATION_DEPENDENCIES = "com.skr.dependencies"
ANNOTATION_SOURCE = "org.opencontainers.image.source"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"


@dataclass(frozen=True)
class Descriptor:
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    media_type: str
    digest: str
    size: int
    annotations: dict | None = field(default=None, compare=False, hash=False)

    def to_dict(self) -> dict:
        data = {"mediaType": self.media_type, "digest": self.digest, "size": self.size}
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Descriptor":
        try:
            return cls(
                media_type=str(data.get("mediaType", "")),
                digest=str(data["digest"]),
                size=int(data["size"]),
                annotations=data.get("annotations") or None,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ManifestDecodeError(f"invalid descriptor: {exc}") from exc

    def without_annotations(self) -> "Descriptor":
        return Descriptor(self.media_type, self.digest, self.size)


@dataclass
class Manifest:
    """An OCI image manifest referencing one config and ordered layers."""

    config: Descriptor
    layers: list = field(default_factory=list)
    annotations: dict = field(default_factory=dict)
    schema_version: int = 2
    media_type: str = MEDIA_TYPE_MANIFEST

    def to_dict(self) -> dict:
        data = {
            "schemaVersion": self.schema_version,
            "mediaType": self.media_type,
            "config": self.config.to_dict(),
            "layers": [layer.to_dict() for layer in self.layers],
        }
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        return data

    def to_bytes(self) -> bytes:
        # Stable encoding so the same manifest always hashes to the same digest
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Manifest":
        """
        Decode a manifest document.

        Raises:
            ManifestDecodeError: malformed JSON or missing config/layers
        """
        try:
            doc = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestDecodeError(f"invalid manifest JSON: {exc}") from exc

        if not isinstance(doc, dict) or "config" not in doc:
            raise ManifestDecodeError("manifest has no config descriptor")

        layers = doc.get("layers") or []
        annotations = doc.get("annotations") or {}
        if not isinstance(layers, list) or not isinstance(annotations, dict):
            raise ManifestDecodeError("manifest layers must be a list and annotations a map")

        media_type = doc.get("mediaType", MEDIA_TYPE_MANIFEST)
        if not isinstance(media_type, str):
            raise ManifestDecodeError(f"manifest mediaType must be a string, got {media_type!r}")
        try:
            schema_version = int(doc.get("schemaVersion", 2))
        except (TypeError, ValueError) as exc:
            raise ManifestDecodeError(f"invalid manifest schemaVersion: {exc}") from exc

        return cls(
            config=Descriptor.from_dict(doc["config"]),
            layers=[Descriptor.from_dict(layer) for layer in layers],
            annotations={str(k): str(v) for k, v in annotations.items()},
            schema_version=schema_version,
            media_type=media_type,
        )

    def dependencies(self) -> list:
        """Dependency references from the com.skr.dependencies annotation."""
        raw = self.annotations.get(ANNOTATION_DEPENDENCIES)
        if not raw:
            return []
        try:
            deps = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ManifestDecodeError(f"invalid {ANNOTATION_DEPENDENCIES} annotation: {exc}") from exc
        if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
            raise ManifestDecodeError(f"{ANNOTATION_DEPENDENCIES} must be a JSON list of strings")
        return deps

    def blobs(self) -> list:
        """Config and layer descriptors referenced by this manifest."""
        return [self.config, *self.layers]
