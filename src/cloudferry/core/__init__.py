"""Core module - Shared crypto, configuration and types."""

from cloudferry.core.config import (
    DEFAULT_CHUNK_SIZE,
    EncryptionConfig,
    ServerConfig,
    load_config,
    load_encryption_config,
    load_server_config,
    save_config,
)
from cloudferry.core.crypto import (
    CipherMode,
    CipherReader,
    CipherWriter,
    CryptoConfigError,
    StreamCipher,
    check_algorithm,
    derive_key,
    generate_salt,
    parse_algorithm,
    wrap_stream,
)
from cloudferry.core.log import setup_logging
from cloudferry.core.types import TransferDirection

__all__ = [
    # Config
    "DEFAULT_CHUNK_SIZE",
    "EncryptionConfig",
    "ServerConfig",
    "load_config",
    "load_encryption_config",
    "load_server_config",
    "save_config",
    # Crypto
    "CipherMode",
    "CipherReader",
    "CipherWriter",
    "CryptoConfigError",
    "StreamCipher",
    "check_algorithm",
    "derive_key",
    "generate_salt",
    "parse_algorithm",
    "wrap_stream",
    # Logging
    "setup_logging",
    # Types
    "TransferDirection",
]
