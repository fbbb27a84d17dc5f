import json

import pytest
import requests

from skr.backends import LocalBackend, ProxyBackend, parse_route, split_tag
from skr.errors import NotFoundError
from skr.routes import API_VERSION, API_VERSION_HEADER, create_app, create_backend
from skr.validation import compute_sha256


@pytest.fixture()
def client(store):
    app = create_app(LocalBackend(store))
    app.config["TESTING"] = True
    return app.test_client()


def test_parse_route():
    assert parse_route("") == ("version", "", "")
    assert parse_route("_catalog") == ("catalog", "", "")
    assert parse_route("acme/lint/tags/list") == ("tags", "acme/lint", "")
    assert parse_route("acme/lint/blobs/sha256:abc") == ("blob", "acme/lint", "sha256:abc")
    assert parse_route("acme/lint/manifests/v1") == ("manifest", "acme/lint", "v1")
    with pytest.raises(NotFoundError):
        parse_route("acme/lint")


def test_split_tag():
    assert split_tag("localhost:5000/acme/lint:v1") == ("localhost:5000/acme/lint", "v1")
    assert split_tag("lint") == ("lint", "")
    assert split_tag("localhost:5000/lint") == ("localhost:5000/lint", "")


def test_version_check(client):
    resp = client.get("/v2/")
    assert resp.status_code == 200
    assert resp.headers[API_VERSION_HEADER] == API_VERSION


def test_every_response_carries_cors_and_version(client):
    resp = client.get("/v2/missing/tags/list")
    assert resp.status_code == 404
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers[API_VERSION_HEADER] == API_VERSION


def test_options_preflight(client):
    resp = client.open("/v2/code-review/manifests/v1", method="OPTIONS")
    assert resp.status_code == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "HEAD" in resp.headers["Access-Control-Allow-Methods"]
    assert "Authorization" in resp.headers["Access-Control-Allow-Headers"]


def test_empty_catalog(client):
    resp = client.get("/v2/_catalog")
    assert resp.status_code == 200
    assert resp.get_json() == {"repositories": []}


def test_catalog_lists_distinct_sorted_repositories(client, publish):
    publish("code-review:v1")
    publish("acme/lint:v1")
    publish("acme/lint:latest", name="lint")

    assert client.get("/v2/_catalog").get_json() == {"repositories": ["acme/lint", "code-review"]}


def test_tags_list(client, publish):
    publish("acme/lint:v1")
    publish("acme/lint:latest", name="lint")

    resp = client.get("/v2/acme/lint/tags/list")
    assert resp.status_code == 200
    assert resp.get_json() == {"name": "acme/lint", "tags": ["latest", "v1"]}


def test_tags_list_unknown_repository(client):
    resp = client.get("/v2/unknown/tags/list")
    assert resp.status_code == 404
    assert resp.get_json()["errors"][0]["code"] == "NAME_UNKNOWN"


def test_manifest_by_tag(client, store, publish):
    desc = publish("code-review:v1")

    resp = client.get("/v2/code-review/manifests/v1")

    assert resp.status_code == 200
    assert resp.headers["Content-Type"] == desc.media_type
    assert resp.headers["Docker-Content-Digest"] == desc.digest
    assert int(resp.headers["Content-Length"]) == desc.size
    assert compute_sha256(resp.data) == desc.digest
    assert json.loads(resp.data)["schemaVersion"] == 2


def test_manifest_by_digest(client, publish):
    desc = publish("code-review:v1")
    resp = client.get(f"/v2/code-review/manifests/{desc.digest}")
    assert resp.status_code == 200
    assert resp.headers["Docker-Content-Digest"] == desc.digest


def test_manifest_head_has_headers_without_body(client, publish):
    desc = publish("code-review:v1")
    resp = client.head("/v2/code-review/manifests/v1")
    assert resp.status_code == 200
    assert resp.headers["Docker-Content-Digest"] == desc.digest
    assert resp.data == b""


def test_manifest_unknown(client):
    resp = client.get("/v2/code-review/manifests/v9")
    assert resp.status_code == 404
    assert "errors" in resp.get_json()


def test_manifest_invalid_tag(client):
    resp = client.get("/v2/code-review/manifests/.bad")
    assert resp.status_code == 400


def test_blob(client, store, publish):
    desc = publish("code-review:v1")
    layer = store.fetch_manifest(desc).layers[0]

    resp = client.get(f"/v2/code-review/blobs/{layer.digest}")

    assert resp.status_code == 200
    assert resp.headers["Content-Type"] == "application/octet-stream"
    assert resp.headers["Docker-Content-Digest"] == layer.digest
    assert int(resp.headers["Content-Length"]) == layer.size
    assert compute_sha256(resp.data) == layer.digest


def test_blob_unknown(client):
    resp = client.get("/v2/code-review/blobs/sha256:" + "0" * 64)
    assert resp.status_code == 404
    assert resp.get_json()["errors"][0]["code"] == "BLOB_UNKNOWN"


def test_blob_invalid_digest(client):
    resp = client.get("/v2/code-review/blobs/sha256:xyz")
    assert resp.status_code == 400
    assert resp.get_json()["errors"][0]["code"] == "DIGEST_INVALID"


def test_unknown_route(client):
    resp = client.get("/v2/code-review")
    assert resp.status_code == 404


class FakeRaw:
    def __init__(self, chunks):
        self.chunks = chunks
        self.decode_content = None

    def stream(self, amt, decode_content=None):
        self.decode_content = decode_content
        yield from self.chunks


class FakeUpstreamResponse:
    def __init__(self, status_code, headers, chunks):
        self.status_code = status_code
        self.headers = headers
        self.raw = FakeRaw(chunks)
        self.closed = False

    def close(self):
        self.closed = True


class RecordingSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


def test_proxy_forwards_request(caplog):
    upstream = FakeUpstreamResponse(
        200,
        {"Content-Type": "application/json", "Docker-Content-Digest": "sha256:" + "1" * 64, "Connection": "close"},
        [b'{"repo', b'sitories":[]}'],
    )
    session = RecordingSession(upstream)
    app = create_app(ProxyBackend("https://registry.example.com:8443", session=session))

    resp = app.test_client().get("/v2/_catalog?n=10", headers={"Authorization": "Bearer abc"})

    assert resp.status_code == 200
    assert resp.data == b'{"repositories":[]}'
    assert resp.headers["Docker-Content-Digest"] == "sha256:" + "1" * 64
    assert "Connection" not in resp.headers
    assert upstream.raw.decode_content is False
    assert upstream.closed

    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert url == "https://registry.example.com:8443/v2/_catalog?n=10"
    assert kwargs["headers"]["Host"] == "registry.example.com:8443"
    assert kwargs["headers"]["Authorization"] == "Bearer abc"
    assert kwargs["stream"] is True


def test_proxy_passes_upstream_errors_through():
    upstream = FakeUpstreamResponse(401, {"WWW-Authenticate": 'Bearer realm="x"'}, [b""])
    app = create_app(ProxyBackend("https://registry.example.com", session=RecordingSession(upstream)))

    resp = app.test_client().get("/v2/")

    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == 'Bearer realm="x"'


def test_proxy_upstream_unreachable():
    session = RecordingSession(error=requests.ConnectionError("refused"))
    app = create_app(ProxyBackend("https://registry.example.com", session=session))

    resp = app.test_client().get("/v2/_catalog")

    assert resp.status_code == 502
    assert resp.get_json()["errors"][0]["code"] == "UNAVAILABLE"


def test_proxy_rejects_bad_upstream():
    with pytest.raises(ValueError):
        ProxyBackend("registry.example.com")


def test_create_backend_selects_mode(tmp_path):
    class Cfg:
        OCI_ENDPOINT = ""
        STORE_PATH = str(tmp_path / "store")
        REGISTRY_TIMEOUT = 5.0

    assert isinstance(create_backend(Cfg), LocalBackend)
    Cfg.OCI_ENDPOINT = "https://registry.example.com"
    assert isinstance(create_backend(Cfg), ProxyBackend)


def test_head_does_not_open_blob_files(client, store, publish, monkeypatch):
    desc = publish("code-review:v1")
    layer = store.fetch_manifest(desc).layers[0]

    def no_streaming(*args, **kwargs):
        raise AssertionError("HEAD must not stream the blob")

    monkeypatch.setattr(store.blobs, "iter_chunks", no_streaming)

    resp = client.head(f"/v2/code-review/blobs/{layer.digest}")
    assert resp.status_code == 200
    assert int(resp.headers["Content-Length"]) == layer.size
    assert resp.headers["Docker-Content-Digest"] == layer.digest

    resp = client.head("/v2/code-review/manifests/v1")
    assert resp.status_code == 200
    assert int(resp.headers["Content-Length"]) == desc.size
