"""
Remote registry client.

Pulls artifacts from and pushes artifacts to an OCI Distribution registry
over HTTP using requests. Transient failures are retried with bounded
exponential backoff by the transport adapter; the store and resolver never
retry on their own.
"""

import logging
import re
from urllib.parse import urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from requests.auth import AuthBase
from urllib3.util.retry import Retry

from .auth import CredentialNotFound, default_provider
from .config import config
from .errors import (
    InvalidReferenceError,
    NotFoundError,
    RegistryError,
    check_cancelled,
)
from .oci import MEDIA_TYPE_MANIFEST, Descriptor, Manifest
from .validation import compute_sha256, parse_reference

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
MANIFEST_ACCEPT = ", ".join([
    MEDIA_TYPE_MANIFEST,
    "application/vnd.docker.distribution.manifest.v2+json",
])
RETRY_STATUS = (429, 500, 502, 503, 504)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryAuth(AuthBase):
    """
    Injects registry credentials into outgoing requests.

    Sends Basic or Bearer credentials from the provider for the request
    host. When the registry answers 401 with a Bearer challenge, a token is
    fetched from the challenge realm and the request is retried once.
    """

    def __init__(self, provider, token_session=None):
        self.provider = provider
        self.token_session = token_session or requests.Session()
        self._tokens = {}

    def _credential(self, host: str):
        try:
            return self.provider.get(host)
        except CredentialNotFound:
            return None

    def __call__(self, r):
        host = urlparse(r.url).netloc
        if host in self._tokens:
            r.headers["Authorization"] = f"Bearer {self._tokens[host]}"
        else:
            cred = self._credential(host)
            if cred is not None and cred.authorization_header():
                r.headers["Authorization"] = cred.authorization_header()
        r.register_hook("response", self.handle_401)
        return r

    def _fetch_token(self, host: str, params: dict) -> str:
        realm = params.pop("realm", "")
        if not realm:
            raise RegistryError(f"bearer challenge from {host} has no realm", status_code=401)
        cred = self._credential(host)
        auth = None
        if cred is not None and cred.username and cred.password:
            auth = (cred.username, cred.password)
        try:
            resp = self.token_session.get(realm, params=params, auth=auth, timeout=config.REGISTRY_TIMEOUT)
        except requests.RequestException as exc:
            raise RegistryError(f"token request to {realm} failed: {exc}") from exc
        if resp.status_code != 200:
            raise RegistryError(f"token request to {realm} failed: HTTP {resp.status_code}", resp.status_code)
        body = resp.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError(f"token response from {realm} has no token")
        return token

    def handle_401(self, r, **kwargs):
        if r.status_code != 401 or getattr(r.request, "skr_retried", False):
            return r

        challenge = r.headers.get("WWW-Authenticate", "")
        if not challenge.lower().startswith("bearer"):
            return r

        host = urlparse(r.url).netloc
        self._tokens[host] = self._fetch_token(host, dict(_CHALLENGE_PARAM.findall(challenge)))
        logger.debug(f"Obtained bearer token for {host}")

        # Drain the 401 so the connection can be reused
        r.content
        r.close()
        prep = r.request.copy()
        prep.headers["Authorization"] = f"Bearer {self._tokens[host]}"
        prep.skr_retried = True
        retry = r.connection.send(prep, **kwargs)
        retry.history.append(r)
        retry.request = prep
        return retry


def new_session(retries: int | None = None) -> requests.Session:
    """Session whose adapters retry transient failures with backoff."""
    retry = Retry(
        total=config.REGISTRY_RETRIES if retries is None else retries,
        backoff_factor=0.5,
        status_forcelist=RETRY_STATUS,
        allowed_methods=frozenset(["GET", "HEAD", "PUT"]),
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class RegistryClient:
    """
    Copies artifacts between a remote registry and a local Store.

    Args:
        credentials: Credential provider; defaults to default_provider()
        session: requests.Session to use; defaults to new_session()
        timeout: Per-request timeout in seconds
        retries: Retries for transient failures when no session is given
        plain_http_hosts: Hosts contacted over http instead of https
    """

    def __init__(self, credentials=None, session=None, timeout=None, retries=None, plain_http_hosts=None):
        self.session = session or new_session(retries)
        self.session.auth = RegistryAuth(credentials or default_provider())
        self.timeout = config.REGISTRY_TIMEOUT if timeout is None else timeout
        self.plain_http_hosts = set(config.REGISTRY_PLAIN_HTTP if plain_http_hosts is None else plain_http_hosts)

    def _base_url(self, ref) -> str:
        if not ref.registry:
            raise InvalidReferenceError(f"reference {ref} has no registry host")
        hostname = ref.registry.split(":", 1)[0]
        scheme = "http" if ref.registry in self.plain_http_hosts or hostname in self.plain_http_hosts else "https"
        return f"{scheme}://{ref.registry}/v2/{ref.repository}"

    def _request(self, method: str, url: str, what: str, code: str = "NOT_FOUND", **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        try:
            resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise RegistryError(f"{what} failed: {exc}") from exc
        if resp.status_code == 404:
            resp.close()
            raise NotFoundError(f"{what}: not found", code=code)
        if resp.status_code >= 400:
            resp.close()
            raise RegistryError(f"{what} failed: HTTP {resp.status_code}", status_code=resp.status_code)
        return resp

    # -------------------------------
    # Pull
    # -------------------------------

    def fetch_manifest(self, reference: str) -> tuple:
        """
        Fetch a manifest from the registry.

        Returns:
            (Descriptor, raw manifest bytes)
        """
        ref = parse_reference(reference)
        url = f"{self._base_url(ref)}/manifests/{ref.identifier or 'latest'}"
        resp = self._request("GET", url, f"fetch manifest {reference}", code="MANIFEST_UNKNOWN",
                             headers={"Accept": MANIFEST_ACCEPT})
        manifest_bytes = resp.content
        digest = compute_sha256(manifest_bytes)
        if ref.digest and ref.digest != digest:
            raise RegistryError(f"manifest digest mismatch for {reference}: got {digest}")
        media_type = resp.headers.get("Content-Type", "").split(";")[0].strip() or MEDIA_TYPE_MANIFEST
        return Descriptor(media_type=media_type, digest=digest, size=len(manifest_bytes)), manifest_bytes

    def pull(self, store, reference: str, cancel=None) -> Descriptor:
        """
        Copy ``reference`` from its registry into ``store``.

        Blobs are written first and the local tag last, so a failed or
        cancelled pull never leaves a tag pointing at missing content.
        """
        ref = parse_reference(reference)
        base = self._base_url(ref)
        logger.info(f"Pulling {reference}")

        desc, manifest_bytes = self.fetch_manifest(reference)
        manifest = Manifest.from_bytes(manifest_bytes)

        for blob in manifest.blobs():
            check_cancelled(cancel)
            if store.exists(blob):
                logger.debug(f"Blob {blob.digest} already present")
                continue
            resp = self._request("GET", f"{base}/blobs/{blob.digest}", f"fetch blob {blob.digest}",
                                 code="BLOB_UNKNOWN", stream=True)
            with resp:
                store.push_blob(blob, resp.iter_content(CHUNK_SIZE), cancel=cancel)

        check_cancelled(cancel)
        store.push_blob(desc, manifest_bytes, cancel=cancel)
        if not (ref.digest and not ref.tag):
            store.tag(desc, reference)
        logger.info(f"Pulled {reference} ({desc.digest})")
        return desc

    # -------------------------------
    # Push
    # -------------------------------

    def _blob_exists(self, base: str, digest: str) -> bool:
        try:
            self._request("HEAD", f"{base}/blobs/{digest}", f"check blob {digest}")
        except NotFoundError:
            return False
        return True

    def _upload_blob(self, base: str, blob: Descriptor, data: bytes) -> None:
        resp = self._request("POST", f"{base}/blobs/uploads/", f"start upload {blob.digest}")
        location = resp.headers.get("Location")
        if not location:
            raise RegistryError(f"registry did not return an upload location for {blob.digest}")
        upload_url = urljoin(base + "/", location)
        separator = "&" if "?" in upload_url else "?"
        self._request(
            "PUT",
            f"{upload_url}{separator}digest={blob.digest}",
            f"upload blob {blob.digest}",
            data=data,
            headers={"Content-Type": "application/octet-stream", "Content-Length": str(len(data))},
        )

    def push(self, store, reference: str, cancel=None) -> Descriptor:
        """Upload ``reference`` from ``store`` to its registry."""
        ref = parse_reference(reference)
        base = self._base_url(ref)
        desc = store.resolve(reference)
        manifest_bytes = store.fetch_bytes(desc)
        manifest = Manifest.from_bytes(manifest_bytes)
        logger.info(f"Pushing {reference}")

        for blob in manifest.blobs():
            check_cancelled(cancel)
            if self._blob_exists(base, blob.digest):
                logger.debug(f"Remote already has blob {blob.digest}")
                continue
            self._upload_blob(base, blob, store.fetch_bytes(blob))

        check_cancelled(cancel)
        self._request(
            "PUT",
            f"{base}/manifests/{ref.identifier or 'latest'}",
            f"push manifest {reference}",
            data=manifest_bytes,
            headers={"Content-Type": desc.media_type},
        )
        logger.info(f"Pushed {reference} ({desc.digest})")
        return desc


def pull(store, reference: str, cancel=None) -> Descriptor:
    return RegistryClient().pull(store, reference, cancel=cancel)


def push(store, reference: str, cancel=None) -> Descriptor:
    return RegistryClient().push(store, reference, cancel=cancel)
