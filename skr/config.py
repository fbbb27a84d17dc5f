"""
Configuration module for skr.

Loads all configuration from environment variables with sensible defaults.
"""

import os


def _xdg_dir(variable: str, fallback: str) -> str:
    base = os.getenv(variable) or os.path.join(os.path.expanduser("~"), fallback)
    return os.path.join(base, "skr")


class Config:
    """
    Configuration from environment variables.

    Loads all configuration values from environment variables with sensible defaults.
    All settings can be overridden by setting the corresponding environment variable.
    """

    def __init__(self):
        """
        Initialize configuration from environment variables.

        Environment Variables:
            LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
            FLASK_HOST: Server bind address. Default: 0.0.0.0
            FLASK_PORT: Server bind port. Default: 8080
            SKR_STORE_PATH: Local OCI layout root. Default: $XDG_DATA_HOME/skr/store
            SKR_OCI_ENDPOINT: Upstream registry to proxy. Default: empty (local mode)
            SKR_INSTALL_ROOT: Skill install directory. Default: ~/.config/agent/skills
            SKR_MUTABLE_TAGS: Comma-separated tag patterns refreshed on install. Default: latest
            SKR_CONFIG_DIR: Credential file directory. Default: $XDG_CONFIG_HOME/skr
            REGISTRY_TIMEOUT: Remote request timeout in seconds. Default: 30
            REGISTRY_RETRIES: Retries for transient remote failures. Default: 3
            REGISTRY_PLAIN_HTTP: Comma-separated hosts reached over http. Default: localhost,127.0.0.1
            MAX_REPOSITORY_LENGTH: Maximum repository name length. Default: 255
            MAX_TAG_LENGTH: Maximum tag length. Default: 128
        """
        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.FLASK_HOST = os.getenv("FLASK_HOST", "0.0.0.0")
        self.FLASK_PORT = int(os.getenv("FLASK_PORT", "8080"))
        self.OCI_ENDPOINT = os.getenv("SKR_OCI_ENDPOINT", "")

        # Local storage
        self.STORE_PATH = os.getenv("SKR_STORE_PATH") or os.path.join(
            _xdg_dir("XDG_DATA_HOME", os.path.join(".local", "share")), "store"
        )
        self.INSTALL_ROOT = os.getenv("SKR_INSTALL_ROOT") or os.path.join(
            os.path.expanduser("~"), ".config", "agent", "skills"
        )
        self.CONFIG_DIR = os.getenv("SKR_CONFIG_DIR") or _xdg_dir("XDG_CONFIG_HOME", ".config")
        self.MUTABLE_TAGS = [
            p.strip() for p in os.getenv("SKR_MUTABLE_TAGS", "latest").split(",") if p.strip()
        ]

        # Remote registry
        self.REGISTRY_TIMEOUT = float(os.getenv("REGISTRY_TIMEOUT", "30"))  # seconds
        self.REGISTRY_RETRIES = int(os.getenv("REGISTRY_RETRIES", "3"))
        self.REGISTRY_PLAIN_HTTP = [
            h.strip() for h in os.getenv("REGISTRY_PLAIN_HTTP", "localhost,127.0.0.1").split(",") if h.strip()
        ]

        # Validation limits
        self.MAX_REPOSITORY_LENGTH = int(os.getenv("MAX_REPOSITORY_LENGTH", "255"))
        self.MAX_TAG_LENGTH = int(os.getenv("MAX_TAG_LENGTH", "128"))

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"FLASK_HOST={self.FLASK_HOST}, "
            f"FLASK_PORT={self.FLASK_PORT}, "
            f"STORE_PATH={self.STORE_PATH}, "
            f"OCI_ENDPOINT={self.OCI_ENDPOINT or '-'}, "
            f"MUTABLE_TAGS={','.join(self.MUTABLE_TAGS)})"
        )


# Global config instance
config = Config()
