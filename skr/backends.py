"""
Backends for the OCI Distribution read API.

The HTTP layer hands every /v2/ request to exactly one backend chosen at
startup: LocalBackend answers from a Store, ProxyBackend forwards the request
to a fixed upstream registry.
"""

import logging
from urllib.parse import urlparse

import requests
from flask import Response, jsonify, stream_with_context

from .errors import NotFoundError
from .store import Store
from .validation import is_digest, validate_digest, validate_repository_name, validate_tag

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def parse_route(path: str) -> tuple:
    """
    Match the path remainder after /v2/ against the read routes.

    Returns:
        (kind, name, argument) where kind is one of "version", "catalog",
        "tags", "blob", "manifest"

    Raises:
        NotFoundError: no route matches

    Examples:
        >>> parse_route("acme/lint/manifests/v1")
        ('manifest', 'acme/lint', 'v1')
    """
    if path == "":
        return "version", "", ""
    if path == "_catalog":
        return "catalog", "", ""
    if path.endswith("/tags/list"):
        return "tags", path[: -len("/tags/list")], ""

    idx = path.rfind("/blobs/")
    if idx > 0:
        return "blob", path[:idx], path[idx + len("/blobs/"):]

    idx = path.rfind("/manifests/")
    if idx > 0:
        return "manifest", path[:idx], path[idx + len("/manifests/"):]

    raise NotFoundError(f"no route for /v2/{path}", code="UNSUPPORTED")


def split_tag(tag_string: str) -> tuple:
    """Split a stored tag string on its last colon into (repository, tag)."""
    repository, sep, tag = tag_string.rpartition(":")
    if not sep or "/" in tag:
        return tag_string, ""
    return repository, tag


class Backend:
    """Answers one /v2/ request."""

    def handle(self, request, path: str) -> Response:
        raise NotImplementedError


class LocalBackend(Backend):
    """Serves the read API directly from a local Store."""

    def __init__(self, store: Store):
        self.store = store

    def __repr__(self):
        return f"LocalBackend({self.store!r})"

    def handle(self, request, path: str) -> Response:
        kind, name, argument = parse_route(path)
        if kind == "version":
            logger.debug("Registry v2 API root accessed")
            return Response(status=200)
        if kind == "catalog":
            return self.catalog()
        if kind == "tags":
            return self.tags_list(name)
        if kind == "blob":
            return self.blob(name, argument, head=request.method == "HEAD")
        return self.manifest(name, argument, head=request.method == "HEAD")

    def catalog(self) -> Response:
        """
        List repository names.

        Response Format:
            {"repositories": ["acme/lint", "code-review"]}
        """
        repositories = sorted({split_tag(t)[0] for t in self.store.list()})
        logger.info(f"Catalog requested: {len(repositories)} repositories")
        return jsonify({"repositories": repositories})

    def tags_list(self, name: str) -> Response:
        """
        List tags of one repository.

        Response Format:
            {"name": "acme/lint", "tags": ["latest", "v1"]}

        Raises:
            NotFoundError: no tag belongs to ``name``
        """
        found, tags = False, []
        for tag_string in self.store.list():
            repository, tag = split_tag(tag_string)
            if repository == name:
                found = True
                if tag:
                    tags.append(tag)
        if not found:
            raise NotFoundError(f"repository {name} not found", code="NAME_UNKNOWN")
        return jsonify({"name": name, "tags": sorted(tags)})

    def blob(self, name: str, digest: str, head: bool = False) -> Response:
        """Stream raw blob bytes for ``digest``. HEAD answers headers only."""
        validate_digest(digest)
        size = self.store.blobs.size(digest)
        body = None if head else stream_with_context(self.store.blobs.iter_chunks(digest, CHUNK_SIZE))
        resp = Response(body, mimetype="application/octet-stream")
        resp.headers["Content-Length"] = str(size)
        resp.headers["Docker-Content-Digest"] = digest
        logger.info(f"Blob sent: repository='{name}', digest='{digest}', size={size}")
        return resp

    def manifest(self, name: str, reference: str, head: bool = False) -> Response:
        """
        Stream a manifest resolved by tag or digest.

        Response Headers:
            Content-Type: media type from the resolved descriptor
            Docker-Content-Digest: manifest digest
            Content-Length: manifest size in bytes
        """
        validate_repository_name(name)
        if is_digest(reference) or reference.startswith("sha256:"):
            validate_digest(reference)
            desc = self.store.resolve(reference)
        else:
            validate_tag(reference)
            desc = self.store.resolve(f"{name}:{reference}")

        if not self.store.blobs.exists(desc.digest):
            raise NotFoundError(f"manifest {desc.digest} not found", code="MANIFEST_UNKNOWN")
        body = None if head else stream_with_context(self.store.blobs.iter_chunks(desc.digest, CHUNK_SIZE))
        resp = Response(body, content_type=desc.media_type)
        resp.headers["Docker-Content-Digest"] = desc.digest
        resp.headers["Content-Length"] = str(desc.size)
        logger.info(f"Manifest sent: repository='{name}', reference='{reference}', digest={desc.digest}")
        return resp


class ProxyBackend(Backend):
    """
    Forwards every request unmodified to one upstream registry.

    Only the Host header is rewritten. The upstream body is streamed back
    undecoded, minus hop-by-hop headers.
    """

    def __init__(self, upstream: str, session=None, timeout: float = 30):
        parsed = urlparse(upstream)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"invalid upstream URL: {upstream}")
        self.upstream = upstream.rstrip("/")
        self.host = parsed.netloc
        self.session = session or requests.Session()
        self.timeout = timeout

    def __repr__(self):
        return f"ProxyBackend({self.upstream!r})"

    def handle(self, request, path: str) -> Response:
        url = self.upstream + request.path
        if request.query_string:
            url += "?" + request.query_string.decode("latin-1")

        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() != "host"
        }
        headers["Host"] = self.host

        logger.debug(f"Proxying {request.method} {request.path} -> {url}")
        try:
            upstream = self.session.request(
                request.method,
                url,
                headers=headers,
                data=request.get_data(),
                stream=True,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error(f"Upstream request to {url} failed: {exc}")
            return Response(
                '{"errors":[{"code":"UNAVAILABLE","message":"upstream registry unavailable"}]}',
                status=502,
                content_type="application/json",
            )

        def generate():
            try:
                yield from upstream.raw.stream(CHUNK_SIZE, decode_content=False)
            finally:
                upstream.close()

        response_headers = [
            (k, v) for k, v in upstream.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS
        ]
        return Response(generate(), status=upstream.status_code, headers=response_headers)
