"""
Backup File Codec

Turns a plain database snapshot into its stored form and back.

Stored form, depending on the record flags:
- plain copy
- gzip stream
- AES-256-GCM: salt (32) + nonce (12) + ciphertext, key from PBKDF2-SHA256
- gzip, then AES-256-GCM

Encoding and decoding are blocking and run in a worker thread.
"""

import asyncio
import gzip
import hashlib
import secrets
import shutil
from pathlib import Path
from typing import Optional

import aiofiles
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_BYTES = 32
NONCE_BYTES = 12
KDF_ITERATIONS = 600000
CHUNK_SIZE = 1024 * 1024  # 1MB

__all__ = [
    "InvalidTag",
    "derive_key",
    "calculate_checksum",
    "encode_snapshot",
    "decode_snapshot",
]


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """
    Derive encryption key from passphrase

    Args:
        passphrase: Configured backup passphrase
        salt: 32-byte salt

    Returns:
        32-byte encryption key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


async def calculate_checksum(file_path: Path) -> str:
    """Hex-encoded SHA-256 of a file"""
    sha256 = hashlib.sha256()

    async with aiofiles.open(file_path, "rb") as f:
        while True:
            chunk = await f.read(CHUNK_SIZE)
            if not chunk:
                break
            sha256.update(chunk)

    return sha256.hexdigest()


def _encode(source: Path, dest: Path, compress: bool, passphrase: Optional[str]) -> None:
    if passphrase is None:
        if compress:
            with open(source, "rb") as f_in, gzip.open(dest, "wb", compresslevel=6) as f_out:
                shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
        else:
            shutil.copyfile(source, dest)
        return

    plaintext = source.read_bytes()
    if compress:
        plaintext = gzip.compress(plaintext, compresslevel=6)

    salt = secrets.token_bytes(SALT_BYTES)
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(derive_key(passphrase, salt)).encrypt(nonce, plaintext, None)

    with open(dest, "wb") as f:
        f.write(salt)
        f.write(nonce)
        f.write(ciphertext)


def _decode(source: Path, dest: Path, compressed: bool, passphrase: Optional[str]) -> None:
    if passphrase is None:
        if compressed:
            with gzip.open(source, "rb") as f_in, open(dest, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
        else:
            shutil.copyfile(source, dest)
        return

    with open(source, "rb") as f:
        salt = f.read(SALT_BYTES)
        nonce = f.read(NONCE_BYTES)
        ciphertext = f.read()

    # Raises InvalidTag on a wrong passphrase or tampered file
    plaintext = AESGCM(derive_key(passphrase, salt)).decrypt(nonce, ciphertext, None)
    if compressed:
        plaintext = gzip.decompress(plaintext)
    dest.write_bytes(plaintext)


async def encode_snapshot(
    source: Path,
    dest: Path,
    compress: bool,
    passphrase: Optional[str] = None,
) -> None:
    """Write the stored form of source to dest (encrypted when passphrase is set)"""
    await asyncio.to_thread(_encode, source, dest, compress, passphrase)


async def decode_snapshot(
    source: Path,
    dest: Path,
    compressed: bool,
    passphrase: Optional[str] = None,
) -> None:
    """Recover the plain snapshot from a stored backup file"""
    await asyncio.to_thread(_decode, source, dest, compressed, passphrase)
