"""
Tag index for the local store.

Tags are kept in ``<root>/index.json`` as an OCI image index. Each entry is a
manifest descriptor whose ``org.opencontainers.image.ref.name`` annotation
holds the full tag string, e.g. ``ghcr.io/acme/lint:v1``.
"""

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading

from .errors import ManifestDecodeError, NotFoundError, StoreIOError
from .oci import ANNOTATION_REF_NAME, Descriptor

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
LOCK_FILE = ".index.lock"
LAYOUT_FILE = "oci-layout"
LAYOUT_VERSION = "1.0.0"


class ArtifactIndex:
    """Maps tag strings to manifest descriptors."""

    def __init__(self, root: str):
        self.root = root
        self.index_path = os.path.join(root, INDEX_FILE)
        self.lock_path = os.path.join(root, LOCK_FILE)
        self._lock = threading.Lock()
        self._ensure_layout()

    def _ensure_layout(self) -> None:
        layout_path = os.path.join(self.root, LAYOUT_FILE)
        if os.path.exists(layout_path):
            return
        try:
            self._write_json(layout_path, {"imageLayoutVersion": LAYOUT_VERSION})
        except OSError as exc:
            raise StoreIOError(f"failed to initialise OCI layout at {self.root}: {exc}") from exc

    def _write_json(self, path: str, doc: dict) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    @contextlib.contextmanager
    def _locked(self):
        """
        Serialise read-modify-write of index.json.

        The thread lock covers this instance; the flock on ``.index.lock``
        covers other Store instances and processes sharing the root.
        """
        with self._lock:
            try:
                f = open(self.lock_path, "a")
            except OSError as exc:
                raise StoreIOError(f"failed to open index lock {self.lock_path}: {exc}") from exc
            with f:
                fcntl.flock(f, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

    def _load(self) -> dict:
        """Load index entries keyed by tag string."""
        try:
            with open(self.index_path, encoding="utf-8") as f:
                doc = json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            raise ManifestDecodeError(f"corrupt tag index {self.index_path}: {exc}") from exc
        except OSError as exc:
            raise StoreIOError(f"failed to read tag index {self.index_path}: {exc}") from exc

        entries = {}
        for item in doc.get("manifests", []):
            desc = Descriptor.from_dict(item)
            ref_name = (desc.annotations or {}).get(ANNOTATION_REF_NAME)
            if ref_name:
                entries[ref_name] = desc.without_annotations()
        return entries

    def _save(self, entries: dict) -> None:
        manifests = []
        for ref_name in sorted(entries):
            item = entries[ref_name].to_dict()
            item["annotations"] = {ANNOTATION_REF_NAME: ref_name}
            manifests.append(item)
        doc = {"schemaVersion": 2, "manifests": manifests}
        try:
            self._write_json(self.index_path, doc)
        except OSError as exc:
            raise StoreIOError(f"failed to write tag index {self.index_path}: {exc}") from exc

    def tag(self, descriptor: Descriptor, reference: str) -> None:
        """Point ``reference`` at ``descriptor``, overwriting any previous mapping."""
        with self._locked():
            entries = self._load()
            previous = entries.get(reference)
            entries[reference] = descriptor.without_annotations()
            self._save(entries)
        if previous is not None and previous.digest != descriptor.digest:
            logger.info(f"Retagged {reference}: {previous.digest} -> {descriptor.digest}")
        else:
            logger.debug(f"Tagged {reference} -> {descriptor.digest}")

    def remove(self, reference: str) -> None:
        with self._locked():
            entries = self._load()
            if reference not in entries:
                raise NotFoundError(f"tag {reference} not found", code="MANIFEST_UNKNOWN")
            del entries[reference]
            self._save(entries)
        logger.info(f"Removed tag {reference}")

    def get(self, reference: str) -> Descriptor:
        try:
            return self._load()[reference]
        except KeyError:
            raise NotFoundError(f"reference {reference} not found", code="MANIFEST_UNKNOWN") from None

    def tags(self) -> list:
        return list(self._load())

    def find_digest(self, digest: str):
        """Return an index descriptor for ``digest`` or None."""
        for desc in self._load().values():
            if desc.digest == digest:
                return desc
        return None
