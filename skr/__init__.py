"""
skr - distribute skills through OCI registries.

Skills (self-contained capability bundles described by a SKILL.md file) are
packaged as single-layer OCI artifacts and stored in any OCI-compatible
registry or in a local OCI image layout.

Features:
    - Content-addressable local store with deduplicated blobs and tags
    - Mark-and-sweep garbage collection of unreachable blobs
    - Breadth-first dependency resolution via manifest annotations,
      pulling missing dependencies on demand
    - Installation with mutable-tag refresh and archive path-traversal checks
    - OCI Distribution read API served from the local store, or proxied
      to a remote registry

Store Layout:
    <root>/oci-layout
    <root>/index.json          tags as org.opencontainers.image.ref.name
    <root>/blobs/sha256/<hex>  layers, configs and manifests

See README.md for full documentation.
"""

__version__ = "0.1.0"

from .config import Config
from .errors import (
    ArchiveSafetyError,
    InvalidReferenceError,
    ManifestDecodeError,
    NotFoundError,
    SchemaViolationError,
    SkrError,
    StoreIOError,
)
from .validation import compute_sha256, parse_reference, validate_digest
from .oci import Descriptor, Manifest
from .store import Store
from .resolver import Resolver
from .installer import Installer, MutableTagPolicy

__all__ = [
    "Config",
    "SkrError",
    "NotFoundError",
    "InvalidReferenceError",
    "StoreIOError",
    "ManifestDecodeError",
    "ArchiveSafetyError",
    "SchemaViolationError",
    "compute_sha256",
    "parse_reference",
    "validate_digest",
    "Descriptor",
    "Manifest",
    "Store",
    "Resolver",
    "Installer",
    "MutableTagPolicy",
]
