"""
Local content-addressable artifact store.

Composes a BlobStore and an ArtifactIndex under one OCI image-layout root:

    <root>/
        oci-layout
        index.json
        blobs/sha256/<hex>

Data flows directory -> tarball -> blob -> manifest -> tag on build, and the
reverse on install. Tags are always written last, so a failed build never
leaves a new tag behind.
"""

import gzip
import io
import json
import logging
import os
import tarfile
from datetime import datetime, timezone

from .blobs import BlobStore
from .config import config
from .errors import ManifestDecodeError, NotFoundError, StoreIOError, check_cancelled
from .index import ArtifactIndex
from .oci import (
    MEDIA_TYPE_MANIFEST,
    MEDIA_TYPE_SKILL_CONFIG,
    MEDIA_TYPE_SKILL_LAYER,
    Descriptor,
    Manifest,
)
from .validation import compute_sha256, is_digest, parse_reference

logger = logging.getLogger(__name__)


def _normalize_tarinfo(info: tarfile.TarInfo) -> tarfile.TarInfo:
    """Strip ownership and timestamps so identical trees archive identically."""
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mode &= 0o777
    return info


def archive_directory(source_dir: str, cancel=None) -> bytes:
    """
    Package a directory tree as a deterministic gzip-compressed tarball.

    Entries are added in sorted order with relative paths; the source
    directory itself is not an entry.

    Raises:
        StoreIOError: the directory cannot be walked or read
    """
    if not os.path.isdir(source_dir):
        raise StoreIOError(f"source directory {source_dir} does not exist")

    def _raise(exc):
        raise exc

    buf = io.BytesIO()
    try:
        with gzip.GzipFile(filename="", mode="wb", fileobj=buf, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for current, dirs, files in os.walk(source_dir, onerror=_raise):
                    dirs.sort()
                    for name in sorted(dirs) + sorted(files):
                        check_cancelled(cancel)
                        path = os.path.join(current, name)
                        arcname = os.path.relpath(path, source_dir).replace(os.sep, "/")
                        tar.add(path, arcname=arcname, recursive=False, filter=_normalize_tarinfo)
    except OSError as exc:
        raise StoreIOError(f"failed to walk source directory {source_dir}: {exc}") from exc

    return buf.getvalue()


class Store:
    """
    OCI image-layout store for skill artifacts.

    Safe to share between request-handling threads: blob writes are
    atomic renames and tag updates are last-writer-wins.
    """

    def __init__(self, path: str = ""):
        self.path = path or config.STORE_PATH
        try:
            os.makedirs(self.path, exist_ok=True)
        except OSError as exc:
            raise StoreIOError(f"failed to create store directory {self.path}: {exc}") from exc
        self.blobs = BlobStore(self.path)
        self.index = ArtifactIndex(self.path)

    def __repr__(self):
        return f"Store(path={self.path!r})"

    # -------------------------------
    # Write path
    # -------------------------------

    def push_blob(self, descriptor: Descriptor, data, cancel=None) -> bool:
        """Push content unless a blob with the same digest already exists."""
        if self.blobs.exists(descriptor.digest):
            logger.debug(f"Skipping existing blob {descriptor.digest}")
            return False
        return self.blobs.put(descriptor.digest, data, cancel=cancel)

    def push_manifest(self, manifest: Manifest, cancel=None) -> Descriptor:
        manifest_bytes = manifest.to_bytes()
        desc = Descriptor(
            media_type=manifest.media_type,
            digest=compute_sha256(manifest_bytes),
            size=len(manifest_bytes),
        )
        self.push_blob(desc, manifest_bytes, cancel=cancel)
        return desc

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        parse_reference(reference)
        if not self.blobs.exists(descriptor.digest):
            raise NotFoundError(f"cannot tag missing manifest {descriptor.digest}", code="MANIFEST_UNKNOWN")
        self.index.tag(descriptor, reference)

    def untag(self, reference: str) -> None:
        self.index.remove(reference)

    def retag(self, source: str, target: str) -> Descriptor:
        """Tag ``target`` with the descriptor ``source`` resolves to."""
        desc = self.resolve(source)
        self.tag(desc, target)
        logger.info(f"Tagged {source} as {target}")
        return desc

    def build(self, source_dir: str, reference: str = "", annotations: dict | None = None, cancel=None) -> Descriptor:
        """
        Build a skill artifact from ``source_dir``.

        Pushes the layer archive, a config blob holding the creation time and
        a manifest carrying ``annotations``, then tags the manifest under
        ``reference`` when it is non-empty.

        Returns:
            The manifest descriptor

        Raises:
            InvalidReferenceError: malformed ``reference``
            StoreIOError: walk or write failure
        """
        if reference:
            parse_reference(reference)

        logger.info(f"Building artifact from {source_dir}")
        layer_bytes = archive_directory(source_dir, cancel=cancel)
        layer_desc = Descriptor(
            media_type=MEDIA_TYPE_SKILL_LAYER,
            digest=compute_sha256(layer_bytes),
            size=len(layer_bytes),
        )
        self.push_blob(layer_desc, layer_bytes, cancel=cancel)
        logger.debug(f"Layer: {layer_desc.digest}, size: {layer_desc.size} bytes")

        created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        config_bytes = json.dumps({"created": created}, separators=(",", ":")).encode("utf-8")
        config_desc = Descriptor(
            media_type=MEDIA_TYPE_SKILL_CONFIG,
            digest=compute_sha256(config_bytes),
            size=len(config_bytes),
        )
        self.push_blob(config_desc, config_bytes, cancel=cancel)

        manifest = Manifest(
            config=config_desc,
            layers=[layer_desc],
            annotations={str(k): str(v) for k, v in (annotations or {}).items()},
        )
        manifest_desc = self.push_manifest(manifest, cancel=cancel)

        check_cancelled(cancel)
        if reference:
            self.tag(manifest_desc, reference)

        logger.info(f"Built {reference or manifest_desc.digest} ({manifest_desc.digest})")
        return manifest_desc

    # -------------------------------
    # Read path
    # -------------------------------

    def resolve(self, reference: str) -> Descriptor:
        """
        Resolve a tag or digest reference to a manifest descriptor.

        Accepts ``sha256:<hex>``, ``name@sha256:<hex>`` and tag strings.

        Raises:
            NotFoundError: unknown reference
            InvalidReferenceError: malformed reference
        """
        digest = ""
        if is_digest(reference):
            digest = reference
        elif "@" in reference:
            digest = parse_reference(reference).digest

        if digest:
            return self._resolve_digest(digest)

        try:
            return self.index.get(reference)
        except NotFoundError:
            parse_reference(reference)
            raise

    def _resolve_digest(self, digest: str) -> Descriptor:
        if not self.blobs.exists(digest):
            raise NotFoundError(f"manifest {digest} not found", code="MANIFEST_UNKNOWN")

        known = self.index.find_digest(digest)
        if known is not None:
            return known

        media_type = MEDIA_TYPE_MANIFEST
        try:
            doc = json.loads(self.blobs.read(digest))
            if isinstance(doc, dict) and doc.get("mediaType"):
                media_type = doc["mediaType"]
        except ValueError:
            logger.debug(f"Blob {digest} is not a JSON document, assuming {media_type}")
        return Descriptor(media_type=media_type, digest=digest, size=self.blobs.size(digest))

    def fetch(self, descriptor: Descriptor):
        """Open the blob identified by ``descriptor.digest`` for reading."""
        return self.blobs.open(descriptor.digest)

    def fetch_bytes(self, descriptor: Descriptor) -> bytes:
        return self.blobs.read(descriptor.digest)

    def fetch_manifest(self, descriptor: Descriptor) -> Manifest:
        return Manifest.from_bytes(self.fetch_bytes(descriptor))

    def exists(self, descriptor: Descriptor) -> bool:
        return self.blobs.exists(descriptor.digest)

    def list(self) -> list:
        """All tag strings, in storage order."""
        return self.index.tags()

    def inspect(self, reference: str) -> dict:
        """Describe an artifact: descriptor, annotations and config."""
        desc = self.resolve(reference)
        manifest = self.fetch_manifest(desc)
        config_doc = {}
        try:
            config_doc = json.loads(self.fetch_bytes(manifest.config))
        except NotFoundError:
            logger.warning(f"Config blob {manifest.config.digest} missing for {reference}")
        except ValueError as exc:
            raise ManifestDecodeError(f"invalid config for {reference}: {exc}") from exc
        return {
            "reference": reference,
            "descriptor": desc.to_dict(),
            "annotations": dict(manifest.annotations),
            "config": manifest.config.to_dict(),
            "created": config_doc.get("created") if isinstance(config_doc, dict) else None,
            "layers": [layer.to_dict() for layer in manifest.layers],
        }

    # -------------------------------
    # Garbage collection
    # -------------------------------

    def prune(self, skip_unreadable: bool = False) -> tuple:
        """
        Delete every blob not reachable from a tag.

        Marks each tagged manifest and its config and layers, then sweeps the
        blob area. An unreadable tagged manifest aborts the prune unless
        ``skip_unreadable`` is set, in which case that tag is skipped with a
        warning. Its manifest digest stays marked either way.

        Returns:
            (deleted_count, deleted_bytes)
        """
        reachable = set()
        for reference in self.list():
            desc = self.index.get(reference)
            reachable.add(desc.digest)
            try:
                manifest = self.fetch_manifest(desc)
            except (NotFoundError, ManifestDecodeError) as exc:
                if not skip_unreadable:
                    raise StoreIOError(f"failed to traverse tag {reference}: {exc}") from exc
                logger.warning(f"Skipping unreadable tag {reference}: {exc}")
                continue
            for blob in manifest.blobs():
                reachable.add(blob.digest)

        deleted_count, deleted_size = 0, 0
        for digest, size in list(self.blobs.walk()):
            if digest in reachable:
                continue
            self.blobs.delete(digest)
            deleted_count += 1
            deleted_size += size
            logger.debug(f"Pruned blob {digest} ({size} bytes)")

        logger.info(f"Pruned {deleted_count} blobs, reclaimed {deleted_size} bytes")
        return deleted_count, deleted_size
