"""
OCI registry front end for skr skill artifacts.

Serves the read side of the OCI Distribution API so that protocol-compatible
clients (oras, crane, browser UIs) can browse and fetch skills with no custom
backend.

Modes:
    1. Local (default): answers from the local OCI store at SKR_STORE_PATH
    2. Proxy: forwards every request to SKR_OCI_ENDPOINT, rewriting only
       the Host header

OCI Endpoints:
    - GET /v2/ - Version check
    - GET /v2/_catalog - Repository list
    - GET /v2/<name>/tags/list - Tag list
    - GET/HEAD /v2/<name>/manifests/<reference> - Get/check manifest
    - GET/HEAD /v2/<name>/blobs/<digest> - Get/check blob

Environment Variables:
    LOG_LEVEL, FLASK_HOST, FLASK_PORT, SKR_STORE_PATH, SKR_OCI_ENDPOINT

Example:
    $ LOG_LEVEL=DEBUG python app.py
    $ oras pull --plain-http localhost:8080/code-review:latest
"""

import logging

from skr.config import config
from skr.routes import create_app, create_backend

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    """Main entry point for the registry application."""
    debug_mode = logger.getEffectiveLevel() == logging.DEBUG
    logger.info(f"Starting skill registry service on {config.FLASK_HOST}:{config.FLASK_PORT}")
    logger.info(f"Configuration: {config}")
    logger.info(f"Log level: {logging.getLevelName(logger.getEffectiveLevel())}")
    if debug_mode:
        logger.info("Flask debug mode enabled")
    app = create_app(create_backend(config))
    app.run(host=config.FLASK_HOST, port=config.FLASK_PORT, debug=debug_mode)


if __name__ == "__main__":
    main()
