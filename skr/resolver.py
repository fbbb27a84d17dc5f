"""
Dependency resolution for skills.

Walks the graph encoded in each manifest's ``com.skr.dependencies``
annotation breadth-first, pulling missing references on demand.
"""

import logging
from collections import deque

from .errors import NotFoundError, ResolutionError, SkrError, check_cancelled

logger = logging.getLogger(__name__)


class Resolver:
    """
    Computes the ordered closure of a reference and its dependencies.

    Args:
        store: Store to resolve and fetch manifests from
        puller: Optional callable ``(reference, cancel)`` that fetches a
            reference into the store, raising on failure
    """

    def __init__(self, store, puller=None):
        self.store = store
        self.puller = puller

    def set_puller(self, puller) -> None:
        self.puller = puller

    def _resolve_local(self, reference: str, cancel=None):
        try:
            return self.store.resolve(reference)
        except NotFoundError as exc:
            if self.puller is None:
                raise ResolutionError(reference, str(exc)) from exc
            logger.info(f"Pulling missing dependency {reference}")

        try:
            self.puller(reference, cancel)
        except SkrError as exc:
            raise ResolutionError(reference, f"not found locally and pull failed: {exc}") from exc

        try:
            return self.store.resolve(reference)
        except SkrError as exc:
            raise ResolutionError(reference, f"still unresolved after pull: {exc}") from exc

    def resolve(self, root: str, cancel=None) -> list:
        """
        Resolve ``root`` and its transitive dependencies.

        Returns references root first, breadth-first by dependency level,
        siblings in each manifest's declared order. Each reference appears
        once; diamonds and cycles terminate through the visited set. A
        dependency pointing back at one of its own ancestors is logged as
        a probable cycle.

        Raises:
            ResolutionError: any reference could not be resolved, fetched
                or decoded. No partial result is returned.
        """
        queue = deque([root])
        visited = set()
        parents = {root: None}
        resolved = []

        while queue:
            check_cancelled(cancel)
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            resolved.append(current)

            desc = self._resolve_local(current, cancel)
            try:
                dependencies = self.store.fetch_manifest(desc).dependencies()
            except SkrError as exc:
                raise ResolutionError(current, f"failed to read manifest: {exc}") from exc

            for dep in dependencies:
                if dep in visited:
                    if self._is_ancestor(dep, current, parents):
                        logger.warning(f"Dependency cycle detected: {current} -> {dep}")
                    continue
                parents.setdefault(dep, current)
                queue.append(dep)

        logger.debug(f"Resolved {root}: {resolved}")
        return resolved

    @staticmethod
    def _is_ancestor(candidate: str, node: str, parents: dict) -> bool:
        while node is not None:
            if node == candidate:
                return True
            node = parents.get(node)
        return False
