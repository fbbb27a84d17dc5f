"""
Registry credentials.

Providers share one capability, ``get(server) -> Credential``, and are tried
in order by ChainProvider; the first that answers wins. The default chain is
environment variables, then ``auth.json`` (written by ``skr login``), then
``authentication.yaml``.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass

import yaml

from .config import config
from .errors import SkrError

logger = logging.getLogger(__name__)

AUTH_FILE_NAME = "auth.json"
YAML_FILE_NAME = "authentication.yaml"


class CredentialNotFound(SkrError):
    """No credential available for a server."""


@dataclass
class Credential:
    username: str = ""
    password: str = ""
    token: str = ""

    def authorization_header(self) -> str:
        """Value for the Authorization header, or "" when incomplete."""
        if self.token:
            return f"Bearer {self.token}"
        if self.username and self.password:
            encoded = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
            return f"Basic {encoded}"
        return ""


class EnvProvider:
    """Credentials from SKR_REGISTRY_USERNAME / _PASSWORD / _TOKEN."""

    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ

    def get(self, server: str) -> Credential:
        cred = Credential(
            username=self.environ.get("SKR_REGISTRY_USERNAME", ""),
            password=self.environ.get("SKR_REGISTRY_PASSWORD", ""),
            token=self.environ.get("SKR_REGISTRY_TOKEN", ""),
        )
        if not cred.authorization_header():
            raise CredentialNotFound(f"no credentials for {server} in environment")
        return cred


class JSONFileProvider:
    """Credentials stored by ``login`` in a JSON map of server -> username/password."""

    def __init__(self, path: str = ""):
        self.path = path or os.path.join(config.CONFIG_DIR, AUTH_FILE_NAME)

    def load(self) -> dict:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise CredentialNotFound(f"failed to read {self.path}: {exc}") from exc
        return data if isinstance(data, dict) else {}

    def save(self, data: dict) -> None:
        os.makedirs(os.path.dirname(self.path), mode=0o700, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)

    def get(self, server: str) -> Credential:
        entry = self.load().get(server)
        if not isinstance(entry, dict):
            raise CredentialNotFound(f"no credentials for {server} in {self.path}")
        return Credential(username=entry.get("username", ""), password=entry.get("password", ""))


class YAMLFileProvider:
    """Credentials from a YAML map of server -> username/password/token. Token wins."""

    def __init__(self, path: str = ""):
        self.path = path or os.path.join(config.CONFIG_DIR, YAML_FILE_NAME)

    def get(self, server: str) -> Credential:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as exc:
            raise CredentialNotFound(f"{self.path} does not exist") from exc
        except (OSError, yaml.YAMLError) as exc:
            raise CredentialNotFound(f"failed to parse auth file {self.path}: {exc}") from exc

        entry = data.get(server) if isinstance(data, dict) else None
        if not isinstance(entry, dict):
            raise CredentialNotFound(f"no credentials found for {server} in {self.path}")

        if entry.get("token"):
            return Credential(token=str(entry["token"]))
        if entry.get("username") and entry.get("password"):
            return Credential(username=str(entry["username"]), password=str(entry["password"]))
        raise CredentialNotFound(f"incomplete credentials for {server}")


class ChainProvider:
    """Tries providers in order; the first success wins."""

    def __init__(self, providers):
        self.providers = list(providers)

    def get(self, server: str) -> Credential:
        last_error = CredentialNotFound(f"no credential providers configured for {server}")
        for provider in self.providers:
            try:
                return provider.get(server)
            except CredentialNotFound as exc:
                last_error = exc
        raise last_error


def default_provider() -> ChainProvider:
    return ChainProvider([EnvProvider(), JSONFileProvider(), YAMLFileProvider()])


def login(server: str, username: str, password: str, path: str = "") -> None:
    """Store credentials for ``server`` in the JSON credential file."""
    provider = JSONFileProvider(path)
    data = provider.load()
    data[server] = {"username": username, "password": password}
    provider.save(data)
    logger.info(f"Stored credentials for {server} in {provider.path}")


def logout(server: str, path: str = "") -> None:
    """Remove stored credentials for ``server``."""
    provider = JSONFileProvider(path)
    data = provider.load()
    if server not in data:
        raise CredentialNotFound(f"not logged in to {server}")
    del data[server]
    provider.save(data)
    logger.info(f"Removed credentials for {server}")
