"""Decryptors for the supported platform and version combinations."""

from __future__ import annotations

import hashlib
import os
import threading
from dataclasses import dataclass
from typing import BinaryIO

from .pagecrypt import (
    AES_BLOCK_SIZE,
    IV_SIZE,
    KEY_SIZE,
    SALT_SIZE,
    SQLITE_HEADER,
    CryptoError,
    DecryptCanceledError,
    IncorrectKeyError,
    decrypt_page,
    open_db_file,
    validate_key,
    xor_bytes,
)

_MAC_SALT_MASK = 0x3A


class UnsupportedPlatformError(ValueError):
    """No decryptor exists for the given platform and version."""

    def __init__(self, platform: str, version: int) -> None:
        super().__init__(f"unsupported platform: {platform} v{version}")
        self.platform = platform
        self.version = version


@dataclass(frozen=True)
class Decryptor:
    """Decrypts SQLCipher-style databases for one platform/version.

    ``iter_count`` of ``None`` means the raw key is used directly as the
    encryption key, without PBKDF2 derivation.
    """

    version: str
    hash_name: str
    hmac_size: int
    page_size: int
    iter_count: int | None = None

    @property
    def reserve(self) -> int:
        reserve = IV_SIZE + self.hmac_size
        if reserve % AES_BLOCK_SIZE:
            reserve = (reserve // AES_BLOCK_SIZE + 1) * AES_BLOCK_SIZE
        return reserve

    def derive_keys(self, key: bytes, salt: bytes) -> tuple[bytes, bytes]:
        """Return the encryption key and the MAC key."""
        if self.iter_count is None:
            enc_key = bytes(key)
        else:
            enc_key = hashlib.pbkdf2_hmac(
                self.hash_name, key, salt, self.iter_count, KEY_SIZE
            )
        mac_salt = xor_bytes(salt, _MAC_SALT_MASK)
        mac_key = hashlib.pbkdf2_hmac(self.hash_name, enc_key, mac_salt, 2, KEY_SIZE)
        return enc_key, mac_key

    def validate(self, page1: bytes, key: bytes) -> bool:
        """Tell whether ``key`` opens a database whose first page is ``page1``."""
        if len(page1) < self.page_size or len(key) != KEY_SIZE:
            return False
        return validate_key(
            page1,
            key,
            page1[:SALT_SIZE],
            self.hash_name,
            self.hmac_size,
            self.reserve,
            self.page_size,
            self.derive_keys,
        )

    def decrypt(
        self,
        db_file: str | os.PathLike[str],
        hex_key: str,
        output: BinaryIO,
        cancel: threading.Event | None = None,
    ) -> None:
        """Decrypt ``db_file`` with ``hex_key`` and write a plain SQLite file."""
        try:
            key = bytes.fromhex(hex_key)
        except ValueError as exc:
            raise CryptoError(f"decode key failed: {exc}") from exc

        info = open_db_file(db_file, self.page_size)
        if not self.validate(info.first_page, key):
            raise IncorrectKeyError()

        enc_key, mac_key = self.derive_keys(key, info.salt)
        zero_page = bytes(self.page_size)

        try:
            source = open(info.path, "rb")
        except OSError as exc:
            raise CryptoError(f"open file {info.path} failed: {exc}") from exc

        with source:
            _write(output, SQLITE_HEADER)
            for page_num in range(info.total_pages):
                if cancel is not None and cancel.is_set():
                    raise DecryptCanceledError()

                page = source.read(self.page_size)
                if len(page) < self.page_size:
                    if page:
                        break
                    raise CryptoError(f"read file {info.path} failed: unexpected EOF")

                if page == zero_page:
                    _write(output, page)
                    continue

                _write(
                    output,
                    decrypt_page(
                        page,
                        enc_key,
                        mac_key,
                        page_num,
                        self.hash_name,
                        self.hmac_size,
                        self.reserve,
                        self.page_size,
                    ),
                )


def _write(output: BinaryIO, data: bytes) -> None:
    try:
        output.write(data)
    except OSError as exc:
        raise CryptoError(f"write output failed: {exc}") from exc


_DECRYPTORS = {
    ("windows", 3): Decryptor(
        version="Windows v3",
        hash_name="sha1",
        hmac_size=20,
        page_size=4096,
        iter_count=64000,
    ),
    ("windows", 4): Decryptor(
        version="Windows v4",
        hash_name="sha512",
        hmac_size=64,
        page_size=4096,
        iter_count=256000,
    ),
    ("darwin", 3): Decryptor(
        version="macOS v3",
        hash_name="sha1",
        hmac_size=20,
        page_size=1024,
        iter_count=None,
    ),
    ("darwin", 4): Decryptor(
        version="macOS v4",
        hash_name="sha512",
        hmac_size=64,
        page_size=4096,
        iter_count=256000,
    ),
}


def new_decryptor(platform: str, version: int) -> Decryptor:
    """Return the decryptor for ``platform`` and major ``version``."""
    try:
        return _DECRYPTORS[(platform, version)]
    except KeyError:
        raise UnsupportedPlatformError(platform, version) from None