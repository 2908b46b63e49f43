"""Configuration classes and config file helpers for cloudferry.

This module provides:
- ServerConfig: connection settings for the storage service
- EncryptionConfig: algorithm identifier and shared secret for payload encryption
- JSON config file helpers (~/.cloudferry/config.json)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cloudferry.core.crypto import derive_key

DEFAULT_CHUNK_SIZE = 4096

ENV_PREFIX = "CLOUDFERRY_"


@dataclass
class ServerConfig:
    """Configuration for connecting to the storage service.

    Attributes:
        server_url: Base URL of the server (e.g., "https://files.example.com").
        token: Pre-obtained authentication token, sent as X-Auth.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        chunk_size: Bytes read/written per transfer loop iteration.
    """

    server_url: str
    token: str
    timeout: float = 30.0
    verify_ssl: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        """Normalize server URL and validate chunk size."""
        self.server_url = self.server_url.rstrip("/")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerConfig:
        """Create from a config file dictionary.

        Raises:
            KeyError: If server_url or token is missing.
        """
        return cls(
            server_url=data["server_url"],
            token=data["token"],
            timeout=float(data.get("timeout", 30.0)),
            verify_ssl=bool(data.get("verify_ssl", True)),
            chunk_size=int(data.get("chunk_size", DEFAULT_CHUNK_SIZE)),
        )

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Create from CLOUDFERRY_* environment variables.

        Raises:
            KeyError: If CLOUDFERRY_SERVER_URL or CLOUDFERRY_TOKEN is unset.
        """
        verify = os.environ.get(f"{ENV_PREFIX}VERIFY_SSL", "1")
        return cls(
            server_url=os.environ[f"{ENV_PREFIX}SERVER_URL"],
            token=os.environ[f"{ENV_PREFIX}TOKEN"],
            timeout=float(os.environ.get(f"{ENV_PREFIX}TIMEOUT", "30")),
            verify_ssl=verify.lower() not in ("0", "false", "no"),
        )


@dataclass
class EncryptionConfig:
    """Payload encryption settings.

    An empty algorithm disables encryption.

    Attributes:
        algorithm: Algorithm identifier (e.g., "AES-256/CBC/PKCS5Padding").
        secret: Shared secret bytes.
    """

    algorithm: str = ""
    secret: bytes = b""

    @property
    def enabled(self) -> bool:
        """Check if payloads are encrypted."""
        return bool(self.algorithm)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EncryptionConfig:
        """Create from the "encryption" section of the config file.

        The secret is either given as hex ("secret") or derived from a
        passphrase and a hex salt ("passphrase", "salt") with Argon2id.
        """
        algorithm = data.get("algorithm", "")
        if data.get("secret"):
            return cls(algorithm=algorithm, secret=bytes.fromhex(data["secret"]))
        if data.get("passphrase"):
            salt = bytes.fromhex(data["salt"])
            return cls(algorithm=algorithm, secret=derive_key(data["passphrase"], salt))
        return cls(algorithm=algorithm)


def get_config_dir() -> Path:
    """Get the configuration directory for cloudferry.

    Returns:
        Path to ~/.cloudferry.
    """
    return Path.home() / ".cloudferry"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from the config file.

    Returns an empty dict when the file does not exist.
    """
    config_file = path or get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any], path: Path | None = None) -> None:
    """Save configuration to the config file."""
    config_file = path or get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_server_config(path: Path | None = None) -> ServerConfig:
    """Load the server settings from the config file."""
    return ServerConfig.from_dict(load_config(path))


def load_encryption_config(path: Path | None = None) -> EncryptionConfig:
    """Load the encryption settings from the config file."""
    return EncryptionConfig.from_dict(load_config(path).get("encryption", {}))
