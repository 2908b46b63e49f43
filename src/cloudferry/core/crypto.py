"""Cryptographic functions for cloudferry.

This module provides:
- Key derivation from a passphrase using Argon2id
- Algorithm identifiers ("AES-256/CBC/PKCS5Padding") parsed into CipherSpec
- CipherReader / CipherWriter: stream wrappers that encrypt or decrypt on the fly
- check_algorithm(): validates a transfer's cipher configuration up front
- wrap_stream(): the transfer-facing adapter, a no-op when no algorithm is set

Encrypted streams are laid out as: IV (16 bytes) || cipher output.
The AES key is derived from the shared secret with HKDF-SHA256, bound to the
algorithm identifier.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import BinaryIO, Literal, overload

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from cloudferry.core.types import TransferDirection

# Argon2id parameters (OWASP recommendations for password hashing)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32  # 256 bits

SALT_SIZE = 16  # 128 bits
IV_SIZE = 16  # AES block size
BLOCK_BITS = 128

DEFAULT_KEY_SIZE = 256

_MODES = {
    "CBC": modes.CBC,
    "CTR": modes.CTR,
}

_PADDINGS = {
    "PKCS5PADDING": True,
    "PKCS7PADDING": True,
    "NOPADDING": False,
}

_KEY_SIZES = (128, 192, 256)


class CryptoConfigError(ValueError):
    """Unsupported algorithm, invalid key material or undecryptable stream."""


class CipherMode(Enum):
    """Whether a cipher stream encrypts or decrypts."""

    ENCRYPT = auto()
    DECRYPT = auto()


def generate_salt() -> bytes:
    """Generate a cryptographically secure random salt.

    Returns:
        16 bytes of random data for use as salt in key derivation.
    """
    return os.urandom(SALT_SIZE)


def derive_key(password: str, salt: bytes) -> bytes:
    """Derive a 256-bit shared secret from a passphrase using Argon2id.

    Args:
        password: The user's passphrase.
        salt: A 16-byte random salt (use generate_salt()).

    Returns:
        32 bytes suitable as the shared secret of a StreamCipher.
    """
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


@dataclass(frozen=True)
class CipherSpec:
    """A parsed algorithm identifier.

    Attributes:
        key_size: AES key size in bits (128, 192 or 256).
        mode: Block cipher mode name (CBC or CTR).
        padded: Whether PKCS#7 padding is applied.
    """

    key_size: int
    mode: str
    padded: bool

    @property
    def identifier(self) -> str:
        """Canonical form of the identifier."""
        pad = "PKCS5Padding" if self.padded else "NoPadding"
        return f"AES-{self.key_size}/{self.mode}/{pad}"

    def cipher(self, key: bytes, iv: bytes) -> Cipher:
        """Build the primitive cipher for a key and IV."""
        return Cipher(algorithms.AES(key), _MODES[self.mode](iv))


def parse_algorithm(identifier: str) -> CipherSpec:
    """Parse an algorithm identifier.

    Accepted forms are "AES", "AES-<bits>", "AES/<mode>/<padding>" and
    "AES-<bits>/<mode>/<padding>". A bare "AES" means AES-256/CBC/PKCS5Padding.

    Args:
        identifier: The identifier attached to a transfer item.

    Returns:
        The parsed CipherSpec.

    Raises:
        CryptoConfigError: If the identifier is not supported.
    """
    parts = [p.strip() for p in identifier.strip().split("/")]
    if len(parts) == 1:
        parts += ["CBC", "PKCS5Padding"]
    if len(parts) != 3:
        raise CryptoConfigError(f"Malformed algorithm identifier: {identifier!r}")

    name, _, bits = parts[0].upper().partition("-")
    if name != "AES":
        raise CryptoConfigError(f"Unsupported cipher: {parts[0]!r}")
    try:
        key_size = int(bits) if bits else DEFAULT_KEY_SIZE
    except ValueError:
        raise CryptoConfigError(f"Invalid key size in {identifier!r}") from None
    if key_size not in _KEY_SIZES:
        raise CryptoConfigError(f"Unsupported AES key size: {key_size}")

    mode = parts[1].upper()
    if mode not in _MODES:
        raise CryptoConfigError(f"Unsupported cipher mode: {parts[1]!r}")

    padded = _PADDINGS.get(parts[2].upper())
    if padded is None:
        raise CryptoConfigError(f"Unsupported padding: {parts[2]!r}")
    if mode == "CBC" and not padded:
        raise CryptoConfigError("CBC mode requires padding")

    return CipherSpec(key_size=key_size, mode=mode, padded=padded)


def derive_stream_key(secret: bytes, spec: CipherSpec) -> bytes:
    """Derive the AES key for a cipher spec from the shared secret.

    Args:
        secret: Shared secret bytes (e.g. from derive_key()).
        spec: The cipher the key is for.

    Returns:
        key_size / 8 bytes of key material.

    Raises:
        CryptoConfigError: If the secret is empty or not bytes.
    """
    if not isinstance(secret, (bytes, bytearray)) or not secret:
        raise CryptoConfigError("Shared secret must be non-empty bytes")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=spec.key_size // 8,
        salt=None,
        info=f"cloudferry/{spec.identifier}".encode(),
    )
    return hkdf.derive(bytes(secret))


class _CipherTransform:
    """Incremental encrypt/decrypt with the IV carried in the stream."""

    def __init__(self, spec: CipherSpec, key: bytes, mode: CipherMode) -> None:
        self._spec = spec
        self._key = key
        self._mode = mode
        self._context = None
        self._padding = None
        self._header = b""

        if mode is CipherMode.ENCRYPT:
            iv = os.urandom(IV_SIZE)
            self._context = spec.cipher(key, iv).encryptor()
            if spec.padded:
                self._padding = padding.PKCS7(BLOCK_BITS).padder()
            # Emitted ahead of the first ciphertext bytes
            self._header = iv

    def update(self, data: bytes) -> bytes:
        if self._mode is CipherMode.ENCRYPT:
            header, self._header = self._header, b""
            if self._padding is not None:
                data = self._padding.update(data)
            return header + self._context.update(data)

        if self._context is None:
            self._header += data
            if len(self._header) < IV_SIZE:
                return b""
            iv, data = self._header[:IV_SIZE], self._header[IV_SIZE:]
            self._header = b""
            self._context = self._spec.cipher(self._key, iv).decryptor()
            if self._spec.padded:
                self._padding = padding.PKCS7(BLOCK_BITS).unpadder()

        out = self._context.update(data)
        if self._padding is not None:
            out = self._padding.update(out)
        return out

    def finalize(self) -> bytes:
        if self._mode is CipherMode.ENCRYPT:
            header, self._header = self._header, b""
            tail = self._padding.finalize() if self._padding is not None else b""
            return header + self._context.update(tail) + self._context.finalize()

        if self._context is None:
            raise CryptoConfigError("Encrypted stream is too short to hold its IV")
        try:
            out = self._context.finalize()
            if self._padding is not None:
                out = self._padding.update(out) + self._padding.finalize()
        except ValueError as e:
            raise CryptoConfigError(
                "Cannot finalize decryption: wrong shared secret or corrupted stream"
            ) from e
        return out


class CipherWriter:
    """Write-side cipher stream.

    Bytes written are transformed and forwarded to the raw stream. close()
    emits the final block and flushes, but leaves the raw stream open.
    """

    def __init__(self, raw: BinaryIO, transform: _CipherTransform) -> None:
        self._raw = raw
        self._transform = transform
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def writable(self) -> bool:
        return True

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("I/O operation on closed cipher stream")
        out = self._transform.update(bytes(data))
        if out:
            self._raw.write(out)
        return len(data)

    def flush(self) -> None:
        if not self._closed:
            self._raw.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        tail = self._transform.finalize()
        if tail:
            self._raw.write(tail)
        self._raw.flush()

    def __enter__(self) -> CipherWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class CipherReader:
    """Read-side cipher stream.

    Reads from the raw stream and returns transformed bytes. A read(size)
    consumes up to size raw bytes and may return slightly more or fewer
    bytes (IV, block alignment); b"" means the stream is exhausted.

    Attributes:
        bytes_read: Number of raw bytes consumed so far.
    """

    def __init__(self, raw: BinaryIO, transform: _CipherTransform) -> None:
        self._raw = raw
        self._transform = transform
        self._finished = False
        self._closed = False
        self.bytes_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self._closed:
            raise ValueError("I/O operation on closed cipher stream")
        if self._finished:
            return b""

        output: list[bytes] = []
        while True:
            data = self._raw.read(size) if size > 0 else self._raw.read()
            if not data:
                output.append(self._transform.finalize())
                self._finished = True
                break
            self.bytes_read += len(data)
            chunk = self._transform.update(data)
            if chunk:
                output.append(chunk)
                if size > 0:
                    break
        return b"".join(output)

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> CipherReader:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class StreamCipher:
    """A symmetric cipher bound to an algorithm identifier and shared secret.

    Construction validates the whole configuration, so a bad identifier or
    secret fails before any stream is touched.

    Usage:
        cipher = StreamCipher("AES-256/CBC/PKCS5Padding", secret)
        with cipher.writer(out_file, CipherMode.DECRYPT) as sink:
            sink.write(encrypted)
    """

    def __init__(self, algorithm: str, secret: bytes) -> None:
        """Initialize the cipher.

        Args:
            algorithm: Algorithm identifier.
            secret: Shared secret bytes.

        Raises:
            CryptoConfigError: On unsupported algorithm or invalid secret.
        """
        self.spec = parse_algorithm(algorithm)
        self._key = derive_stream_key(secret, self.spec)

    @property
    def algorithm(self) -> str:
        """Canonical algorithm identifier."""
        return self.spec.identifier

    def reader(
        self, raw: BinaryIO, mode: CipherMode = CipherMode.ENCRYPT
    ) -> CipherReader:
        """Wrap a readable raw stream."""
        return CipherReader(raw, _CipherTransform(self.spec, self._key, mode))

    def writer(
        self, raw: BinaryIO, mode: CipherMode = CipherMode.DECRYPT
    ) -> CipherWriter:
        """Wrap a writable raw stream."""
        return CipherWriter(raw, _CipherTransform(self.spec, self._key, mode))


@overload
def wrap_stream(
    raw: BinaryIO,
    direction: Literal[TransferDirection.UPLOAD],
    algorithm: str | None,
    secret: bytes,
) -> BinaryIO | CipherReader: ...


@overload
def wrap_stream(
    raw: BinaryIO,
    direction: Literal[TransferDirection.DOWNLOAD],
    algorithm: str | None,
    secret: bytes,
) -> BinaryIO | CipherWriter: ...


@overload
def wrap_stream(
    raw: BinaryIO,
    direction: TransferDirection,
    algorithm: str | None,
    secret: bytes,
) -> BinaryIO | CipherReader | CipherWriter: ...


def wrap_stream(
    raw: BinaryIO,
    direction: TransferDirection,
    algorithm: str | None,
    secret: bytes,
) -> BinaryIO | CipherReader | CipherWriter:
    """Wrap a transfer's local stream with the optional cipher layer.

    Uploads read their source through an encrypting CipherReader, downloads
    write their sink through a decrypting CipherWriter. Without an algorithm
    the raw stream is returned unchanged.

    Args:
        raw: Local byte source (upload) or sink (download).
        direction: Transfer direction.
        algorithm: Algorithm identifier, empty or None for no encryption.
        secret: Shared secret bytes.

    Returns:
        The stream to read from / write to.

    Raises:
        CryptoConfigError: On unsupported algorithm or invalid secret.
    """
    if not algorithm:
        return raw
    cipher = StreamCipher(algorithm, secret)
    if direction == TransferDirection.UPLOAD:
        return cipher.reader(raw, CipherMode.ENCRYPT)
    return cipher.writer(raw, CipherMode.DECRYPT)


def check_algorithm(algorithm: str | None, secret: bytes) -> str:
    """Validate a transfer's cipher configuration without touching a stream.

    Args:
        algorithm: Algorithm identifier, empty or None for no encryption.
        secret: Shared secret bytes.

    Returns:
        The canonical identifier, or "" when no algorithm is set.

    Raises:
        CryptoConfigError: On unsupported algorithm or invalid secret.
    """
    if not algorithm:
        return ""
    return StreamCipher(algorithm, secret).algorithm
