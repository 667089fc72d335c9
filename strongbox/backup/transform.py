"""
Streaming seal/open transforms for backup artifacts.

Seal:  plaintext -> gzip (optional) -> AES-256-CBC (optional) -> artifact
Open:  artifact -> AES-256-CBC decrypt -> gunzip -> plaintext

Files are processed in fixed-size chunks, so memory use does not depend on
file size. When encryption is enabled the artifact starts with the random
16-byte IV, followed by the cipher output (PKCS7 padded).
"""

import os
import zlib
import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import TransformError, CorruptArtifactError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
IV_SIZE = 16
KEY_SIZE = 32  # AES-256
ARTIFACT_EXTENSION = '.bak'

# zlib window bits for gzip framing
_GZIP_WBITS = 16 + zlib.MAX_WBITS


def compute_file_hash(file_path: str, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Compute the SHA-256 of a file.

    Args:
        file_path: Path to the file
        chunk_size: Read size in bytes

    Returns:
        Hex-encoded digest
    """
    digest = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _read_chunks(f: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    for chunk in iter(lambda: f.read(chunk_size), b''):
        yield chunk


def _deflate(chunks: Iterable[bytes]) -> Iterator[bytes]:
    compressor = zlib.compressobj(6, zlib.DEFLATED, _GZIP_WBITS)
    for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data
    yield compressor.flush()


def _inflate(chunks: Iterable[bytes]) -> Iterator[bytes]:
    decompressor = zlib.decompressobj(_GZIP_WBITS)
    for chunk in chunks:
        data = decompressor.decompress(chunk)
        if data:
            yield data
    tail = decompressor.flush()
    if tail:
        yield tail
    if not decompressor.eof:
        raise TransformError("Compressed stream is truncated")


def _encrypt(chunks: Iterable[bytes], key: bytes, iv: bytes) -> Iterator[bytes]:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    for chunk in chunks:
        data = encryptor.update(padder.update(chunk))
        if data:
            yield data
    yield encryptor.update(padder.finalize()) + encryptor.finalize()


def _decrypt(chunks: Iterable[bytes], key: bytes, iv: bytes) -> Iterator[bytes]:
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    for chunk in chunks:
        data = unpadder.update(decryptor.update(chunk))
        if data:
            yield data
    yield unpadder.update(decryptor.finalize()) + unpadder.finalize()


def _check_key(key: Optional[bytes]):
    if key is None:
        raise TransformError("Encryption requested but no key is available")
    if len(key) != KEY_SIZE:
        raise TransformError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")


@contextmanager
def _atomic_output(dest_path: Path):
    """
    Open a temporary sibling of dest_path for writing.

    The destination is replaced only when the block exits cleanly; on any
    error the temporary file is removed and the destination is untouched.
    """
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = dest_path.with_name(f".{dest_path.name}.partial")

    try:
        with open(temp_path, 'wb') as out:
            yield out
        os.replace(temp_path, dest_path)
    except BaseException:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise


def _plaintext_stream(f: BinaryIO, key: Optional[bytes], compress: bool, encrypt: bool,
                      chunk_size: int) -> Iterator[bytes]:
    """Compose the open pipeline over an artifact file handle."""
    stream = None

    if encrypt:
        _check_key(key)
        iv = f.read(IV_SIZE)
        if len(iv) != IV_SIZE:
            raise CorruptArtifactError(
                f"Failed to read IV from encrypted artifact (got {len(iv)} of {IV_SIZE} bytes)"
            )
        stream = _decrypt(_read_chunks(f, chunk_size), key, iv)
    else:
        stream = _read_chunks(f, chunk_size)

    if compress:
        stream = _inflate(stream)

    return stream


def seal_file(source_path: str, dest_path: str, key: Optional[bytes] = None,
              compress: bool = True, encrypt: bool = True, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Compress and/or encrypt a file into a sealed artifact.

    Compression always happens before encryption.

    Args:
        source_path: Plaintext file
        dest_path: Artifact path (parent directories are created)
        key: 32-byte AES key, required when encrypt is True
        compress: Gzip the plaintext
        encrypt: Encrypt with AES-256-CBC under a fresh random IV
        chunk_size: Read size in bytes

    Returns:
        Size of the written artifact in bytes

    Raises:
        TransformError: If reading, compressing, encrypting or writing fails
    """
    if encrypt:
        _check_key(key)

    dest = Path(dest_path)

    try:
        with open(source_path, 'rb') as src, _atomic_output(dest) as out:
            stream = _read_chunks(src, chunk_size)

            if compress:
                stream = _deflate(stream)

            if encrypt:
                iv = os.urandom(IV_SIZE)
                out.write(iv)
                stream = _encrypt(stream, key, iv)

            for chunk in stream:
                out.write(chunk)

    except TransformError:
        raise
    except (OSError, ValueError, zlib.error) as e:
        raise TransformError(f"Failed to seal {source_path}: {e}") from e

    return dest.stat().st_size


def open_file(source_path: str, dest_path: str, key: Optional[bytes] = None,
              compress: bool = True, encrypt: bool = True, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Decrypt and/or decompress a sealed artifact back to plaintext.

    The options must match the ones the artifact was sealed with. The
    destination is written atomically: a failure never leaves a partial
    file behind and never clobbers an existing destination.

    Args:
        source_path: Sealed artifact
        dest_path: Plaintext output path (parent directories are created)
        key: 32-byte AES key, required when encrypt is True
        compress: Artifact is gzip compressed
        encrypt: Artifact is encrypted and starts with its IV
        chunk_size: Read size in bytes

    Returns:
        Number of plaintext bytes written

    Raises:
        CorruptArtifactError: If the IV is missing or short
        TransformError: If decryption, decompression or I/O fails
    """
    dest = Path(dest_path)
    written = 0

    try:
        with open(source_path, 'rb') as src, _atomic_output(dest) as out:
            for chunk in _plaintext_stream(src, key, compress, encrypt, chunk_size):
                out.write(chunk)
                written += len(chunk)

    except TransformError:
        raise
    except (OSError, ValueError, zlib.error) as e:
        # ValueError covers bad padding (wrong key) and truncated cipher blocks
        raise TransformError(f"Failed to open {source_path}: {e}") from e

    return written


def digest_sealed_file(source_path: str, key: Optional[bytes] = None, compress: bool = True,
                       encrypt: bool = True, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Compute the plaintext SHA-256 of a sealed artifact without writing it out.

    Returns:
        Hex-encoded digest of the recovered plaintext

    Raises:
        CorruptArtifactError: If the IV is missing or short
        TransformError: If decryption, decompression or I/O fails
    """
    digest = hashlib.sha256()

    try:
        with open(source_path, 'rb') as src:
            for chunk in _plaintext_stream(src, key, compress, encrypt, chunk_size):
                digest.update(chunk)

    except TransformError:
        raise
    except (OSError, ValueError, zlib.error) as e:
        raise TransformError(f"Failed to read {source_path}: {e}") from e

    return digest.hexdigest()
