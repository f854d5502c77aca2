"""Page-level primitives for encrypted SQLite database files."""

from __future__ import annotations

import hmac
import os
import struct
from dataclasses import dataclass
from typing import Callable

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_SIZE = 32
SALT_SIZE = 16
AES_BLOCK_SIZE = 16
IV_SIZE = 16
SQLITE_HEADER = b"SQLite format 3\x00"

DeriveKeys = Callable[[bytes, bytes], "tuple[bytes, bytes]"]


class CryptoError(Exception):
    """Base error for database decryption."""


class AlreadyDecryptedError(CryptoError):
    """The database file already starts with a plain SQLite header."""

    def __init__(self) -> None:
        super().__init__("database file is already decrypted")


class HashVerificationError(CryptoError):
    """A page's stored HMAC does not match its contents."""

    def __init__(self) -> None:
        super().__init__("decrypt: hash verification failed")


class IncorrectKeyError(CryptoError):
    """The key does not open the database."""

    def __init__(self) -> None:
        super().__init__("decrypt: incorrect key")


class DecryptCanceledError(CryptoError):
    """Decryption was cancelled before it finished."""

    def __init__(self) -> None:
        super().__init__("decrypt: operation canceled")


@dataclass(frozen=True)
class DBFile:
    """Basic facts about an encrypted database file."""

    path: str
    salt: bytes
    total_pages: int
    first_page: bytes


def open_db_file(db_path: str | os.PathLike[str], page_size: int) -> DBFile:
    """Read the first page and page count of an encrypted database."""
    path = os.fspath(db_path)
    try:
        with open(path, "rb") as fp:
            file_size = os.fstat(fp.fileno()).st_size
            buffer = fp.read(page_size)
    except OSError as exc:
        raise CryptoError(f"open file {path} failed: {exc}") from exc

    total_pages, remainder = divmod(file_size, page_size)
    if remainder:
        total_pages += 1

    if len(buffer) != page_size:
        raise CryptoError(
            f"read file {path} failed: read {len(buffer)} bytes, expected {page_size}"
        )

    marker = SQLITE_HEADER[:-1]
    if buffer[: len(marker)] == marker:
        raise AlreadyDecryptedError()

    return DBFile(
        path=path,
        salt=buffer[:SALT_SIZE],
        total_pages=total_pages,
        first_page=buffer,
    )


def xor_bytes(data: bytes, value: int) -> bytes:
    """Return every byte of ``data`` XOR-ed with ``value``."""
    return bytes(b ^ value for b in data)


def _page_mac(mac_key: bytes, data: bytes, page_no: int, hash_name: str) -> bytes:
    mac = hmac.new(mac_key, data, hash_name)
    mac.update(struct.pack("<I", page_no & 0xFFFFFFFF))
    return mac.digest()


def validate_key(
    page1: bytes,
    key: bytes,
    salt: bytes,
    hash_name: str,
    hmac_size: int,
    reserve: int,
    page_size: int,
    derive_keys: DeriveKeys,
) -> bool:
    """Check a raw key against the HMAC stored in the first page."""
    if len(key) != KEY_SIZE:
        return False
    _, mac_key = derive_keys(key, salt)
    data_end = page_size - reserve + IV_SIZE
    calculated = _page_mac(mac_key, page1[SALT_SIZE:data_end], 1, hash_name)
    stored = page1[data_end : data_end + hmac_size]
    return hmac.compare_digest(calculated, stored)


def decrypt_page(
    page: bytes,
    enc_key: bytes,
    mac_key: bytes,
    page_num: int,
    hash_name: str,
    hmac_size: int,
    reserve: int,
    page_size: int,
) -> bytes:
    """Verify and decrypt one page; page 0 loses its leading salt."""
    offset = SALT_SIZE if page_num == 0 else 0
    data_end = page_size - reserve

    calculated = _page_mac(
        mac_key, page[offset : data_end + IV_SIZE], page_num + 1, hash_name
    )
    stored = page[data_end + IV_SIZE : data_end + IV_SIZE + hmac_size]
    if not hmac.compare_digest(calculated, stored):
        raise HashVerificationError()

    iv = page[data_end : data_end + IV_SIZE]
    try:
        cipher = Cipher(algorithms.AES(enc_key), modes.CBC(iv))
    except ValueError as exc:
        raise CryptoError(f"decrypt: create cipher failed: {exc}") from exc
    decryptor = cipher.decryptor()
    plain = decryptor.update(page[offset:data_end]) + decryptor.finalize()
    return plain + page[data_end:page_size]