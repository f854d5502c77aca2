import hmac
import os
import struct

import pytest

from wxchatlog.decryptor import UnsupportedPlatformError, new_decryptor
from wxchatlog.pagecrypt import (
    SALT_SIZE,
    SQLITE_HEADER,
    AlreadyDecryptedError,
    CryptoError,
)
from wxchatlog.validator import get_simple_db_file, new_validator

KEY = bytes(range(32))


def _write_darwin_v3_db(data_dir, key):
    d = new_decryptor("darwin", 3)
    salt = bytes(range(1, 17))
    body = bytes((i * 7 + 3) % 256 for i in range(d.page_size - d.reserve - SALT_SIZE))
    iv = b"\x11" * 16
    covered = salt + body + iv
    _, mac_key = d.derive_keys(key, salt)
    mac = hmac.new(mac_key, covered[SALT_SIZE:] + struct.pack("<I", 1), "sha1").digest()
    page = covered + mac
    page += bytes(d.page_size - len(page))
    path = os.path.join(data_dir, "Message")
    os.makedirs(path, exist_ok=True)
    with open(os.path.join(path, "msg_0.db"), "wb") as fp:
        fp.write(page)


def _write_v4_placeholder(data_dir, content=b"\x42" * 4096):
    path = os.path.join(data_dir, "db_storage", "message")
    os.makedirs(path, exist_ok=True)
    with open(os.path.join(path, "message_0.db"), "wb") as fp:
        fp.write(content)


@pytest.mark.parametrize(
    "platform,version,expected",
    [
        ("windows", 3, "Msg\\Misc.db"),
        ("windows", 4, "db_storage\\message\\message_0.db"),
        ("darwin", 3, "Message/msg_0.db"),
        ("darwin", 4, "db_storage/message/message_0.db"),
        ("linux", 4, ""),
        ("darwin", 5, ""),
    ],
)
def test_get_simple_db_file(platform, version, expected):
    assert get_simple_db_file(platform, version) == expected


def test_validate_accepts_right_key(tmp_path):
    _write_darwin_v3_db(tmp_path, KEY)
    validator = new_validator("darwin", 3, tmp_path)
    assert validator.validate(KEY) is True
    assert validator.db_path == os.path.join(str(tmp_path), "Message/msg_0.db")


def test_validate_rejects_wrong_key(tmp_path):
    _write_darwin_v3_db(tmp_path, KEY)
    validator = new_validator("darwin", 3, tmp_path)
    assert validator.validate(bytes(reversed(KEY))) is False
    assert validator.validate(KEY[:16]) is False


def test_validate_accepts_memoryview(tmp_path):
    _write_darwin_v3_db(tmp_path, KEY)
    validator = new_validator("darwin", 3, tmp_path)
    assert validator.validate(memoryview(b"xx" + KEY)[2:]) is True


def test_img_key_validator_dropped_for_v3(tmp_path):
    _write_darwin_v3_db(tmp_path, KEY)
    validator = new_validator("darwin", 3, tmp_path, lambda k: True)
    assert validator.img_key_validator is None
    assert validator.validate_img_key(b"a" * 16) is False


def test_img_key_validator_used_for_v4(tmp_path):
    _write_v4_placeholder(tmp_path)
    wanted = b"b" * 16
    validator = new_validator("darwin", 4, tmp_path, lambda k: k == wanted)
    assert validator.validate_img_key(wanted) is True
    assert validator.validate_img_key(b"c" * 16) is False


def test_v4_without_img_key_validator(tmp_path):
    _write_v4_placeholder(tmp_path)
    validator = new_validator("darwin", 4, tmp_path)
    assert validator.validate_img_key(b"b" * 16) is False


def test_unsupported_platform(tmp_path):
    with pytest.raises(UnsupportedPlatformError):
        new_validator("linux", 3, tmp_path)


def test_missing_file(tmp_path):
    with pytest.raises(CryptoError):
        new_validator("darwin", 3, tmp_path)


def test_already_decrypted(tmp_path):
    _write_v4_placeholder(tmp_path, SQLITE_HEADER + bytes(4096 - len(SQLITE_HEADER)))
    with pytest.raises(AlreadyDecryptedError):
        new_validator("darwin", 4, tmp_path)