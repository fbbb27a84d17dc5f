"""
Flask application and OCI registry endpoints.

Serves the read side of the OCI Distribution API under /v2/ from whichever
backend was selected at startup. Browser-hosted clients are supported with
permissive CORS headers on every response.
"""

import logging

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from .backends import Backend, LocalBackend, ProxyBackend
from .errors import InvalidReferenceError, NotFoundError
from .store import Store

logger = logging.getLogger(__name__)

API_VERSION_HEADER = "Docker-Distribution-API-Version"
API_VERSION = "registry/2.0"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Authorization, Content-Type, Accept",
}


def _error_response(status: int, code: str, message: str) -> Response:
    """OCI error envelope: {"errors": [{"code": ..., "message": ...}]}"""
    resp = jsonify({"errors": [{"code": code, "message": message}]})
    resp.status_code = status
    return resp


def create_backend(cfg) -> Backend:
    """Select proxy mode when an upstream endpoint is configured, local mode otherwise."""
    if cfg.OCI_ENDPOINT:
        logger.info(f"Mode: remote proxy to {cfg.OCI_ENDPOINT}")
        return ProxyBackend(cfg.OCI_ENDPOINT, timeout=cfg.REGISTRY_TIMEOUT)
    logger.info(f"Mode: local store at {cfg.STORE_PATH}")
    return LocalBackend(Store(cfg.STORE_PATH))


def create_app(backend: Backend) -> Flask:
    """
    Build the registry application around ``backend``.

    Endpoints:
        GET/HEAD /v2/                              - Version check
        GET/HEAD /v2/_catalog                      - Repository list
        GET/HEAD /v2/<name>/tags/list              - Tags of one repository
        GET/HEAD /v2/<name>/blobs/<digest>         - Raw blob
        GET/HEAD /v2/<name>/manifests/<reference>  - Manifest by tag or digest
        OPTIONS  /v2/...                           - CORS preflight

    In proxy mode every request is forwarded upstream instead.
    """
    app = Flask(__name__)
    app.config["BACKEND"] = backend

    @app.route("/v2/", defaults={"path": ""}, methods=["GET", "HEAD", "OPTIONS"])
    @app.route("/v2/<path:path>", methods=["GET", "HEAD", "OPTIONS"])
    def v2(path):
        if request.method == "OPTIONS":
            return Response(status=200)
        return backend.handle(request, path)

    @app.after_request
    def add_registry_headers(resp):
        for key, value in CORS_HEADERS.items():
            resp.headers[key] = value
        resp.headers.setdefault(API_VERSION_HEADER, API_VERSION)
        return resp

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc):
        logger.warning(f"Not found: {request.method} {request.path}: {exc}")
        return _error_response(404, exc.code, str(exc))

    @app.errorhandler(InvalidReferenceError)
    def handle_invalid_reference(exc):
        logger.warning(f"Bad request: {request.method} {request.path}: {exc}")
        return _error_response(400, exc.code, str(exc))

    @app.errorhandler(Exception)
    def handle_internal_error(exc):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception(f"Internal error serving {request.method} {request.path}")
        return _error_response(500, "UNKNOWN", "internal server error")

    return app
