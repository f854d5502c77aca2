import hmac
import io
import struct
import threading

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from wxchatlog.decryptor import Decryptor, UnsupportedPlatformError, new_decryptor
from wxchatlog.pagecrypt import (
    SALT_SIZE,
    SQLITE_HEADER,
    AlreadyDecryptedError,
    CryptoError,
    DecryptCanceledError,
    IncorrectKeyError,
)

SALT = bytes(range(100, 116))
RAW_KEY = bytes(range(32))


def _encrypt(dec, raw_key, plain_pages):
    enc_key, mac_key = dec.derive_keys(raw_key, SALT)
    end = dec.page_size - dec.reserve
    out = bytearray()
    for num, plain in enumerate(plain_pages):
        if plain is None:
            out += bytes(dec.page_size)
            continue
        offset = SALT_SIZE if num == 0 else 0
        iv = bytes([num + 1]) * 16
        enc = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
        ct = enc.update(plain[offset:end]) + enc.finalize()
        mac = hmac.new(mac_key, ct + iv, dec.hash_name)
        mac.update(struct.pack("<I", num + 1))
        page = (SALT if num == 0 else b"") + ct + iv + mac.digest()
        out += page + bytes(dec.page_size - len(page))
    return bytes(out)


def _plain(dec, seed):
    return bytes((i * seed + 3) % 256 for i in range(dec.page_size))


def _check_output(dec, out, plains):
    ps = dec.page_size
    end = ps - dec.reserve
    assert out[:16] == SQLITE_HEADER
    assert len(out) == ps * len(plains)
    for num, plain in enumerate(plains):
        chunk = out[num * ps : (num + 1) * ps]
        if plain is None:
            assert chunk == bytes(ps)
        elif num == 0:
            assert chunk[SALT_SIZE:end] == plain[SALT_SIZE:end]
        else:
            assert chunk[:end] == plain[:end]


def test_factory_parameters():
    win3 = new_decryptor("windows", 3)
    assert (win3.version, win3.page_size, win3.iter_count) == ("Windows v3", 4096, 64000)
    assert win3.reserve == 48
    mac3 = new_decryptor("darwin", 3)
    assert (mac3.version, mac3.page_size, mac3.iter_count) == ("macOS v3", 1024, None)
    win4 = new_decryptor("windows", 4)
    assert (win4.version, win4.hmac_size, win4.iter_count) == ("Windows v4", 64, 256000)
    assert win4.reserve == 80
    assert new_decryptor("darwin", 4).version == "macOS v4"


@pytest.mark.parametrize("platform,version", [("linux", 3), ("windows", 5), ("darwin", 2)])
def test_factory_unsupported(platform, version):
    with pytest.raises(UnsupportedPlatformError):
        new_decryptor(platform, version)


def test_darwin_v3_uses_raw_key_for_encryption():
    enc_key, mac_key = new_decryptor("darwin", 3).derive_keys(RAW_KEY, SALT)
    assert enc_key == RAW_KEY
    assert len(mac_key) == 32


def test_windows_v3_derives_encryption_key():
    enc_key, mac_key = new_decryptor("windows", 3).derive_keys(RAW_KEY, SALT)
    assert len(enc_key) == 32
    assert enc_key != RAW_KEY
    assert mac_key != enc_key


def test_validate():
    dec = new_decryptor("darwin", 3)
    data = _encrypt(dec, RAW_KEY, [_plain(dec, 5)])
    page1 = data[: dec.page_size]
    assert dec.validate(page1, RAW_KEY)
    assert not dec.validate(page1, bytes(32))
    assert not dec.validate(page1[:100], RAW_KEY)
    assert not dec.validate(page1, RAW_KEY[:31])


@pytest.mark.parametrize("platform,version", [("darwin", 3), ("windows", 3)])
def test_decrypt_round_trip(tmp_path, platform, version):
    dec = new_decryptor(platform, version)
    plains = [_plain(dec, 5), _plain(dec, 11), None, _plain(dec, 13)]
    path = tmp_path / "enc.db"
    path.write_bytes(_encrypt(dec, RAW_KEY, plains))
    out = io.BytesIO()
    dec.decrypt(path, RAW_KEY.hex(), out)
    _check_output(dec, out.getvalue(), plains)


def test_decrypt_round_trip_v4(tmp_path):
    dec = new_decryptor("darwin", 4)
    plains = [_plain(dec, 5), _plain(dec, 9)]
    path = tmp_path / "enc.db"
    path.write_bytes(_encrypt(dec, RAW_KEY, plains))
    out = io.BytesIO()
    dec.decrypt(path, RAW_KEY.hex(), out)
    _check_output(dec, out.getvalue(), plains)


def test_decrypt_ignores_trailing_partial_page(tmp_path):
    dec = new_decryptor("darwin", 3)
    plains = [_plain(dec, 5), _plain(dec, 7)]
    path = tmp_path / "enc.db"
    path.write_bytes(_encrypt(dec, RAW_KEY, plains) + b"\x05" * 100)
    out = io.BytesIO()
    dec.decrypt(path, RAW_KEY.hex(), out)
    _check_output(dec, out.getvalue(), plains)


def test_decrypt_wrong_key(tmp_path):
    dec = new_decryptor("darwin", 3)
    path = tmp_path / "enc.db"
    path.write_bytes(_encrypt(dec, RAW_KEY, [_plain(dec, 5)]))
    with pytest.raises(IncorrectKeyError):
        dec.decrypt(path, bytes(32).hex(), io.BytesIO())


def test_decrypt_bad_hex(tmp_path):
    dec = new_decryptor("darwin", 3)
    path = tmp_path / "enc.db"
    path.write_bytes(_encrypt(dec, RAW_KEY, [_plain(dec, 5)]))
    with pytest.raises(CryptoError):
        dec.decrypt(path, "zz", io.BytesIO())


def test_decrypt_already_plain(tmp_path):
    dec = new_decryptor("darwin", 3)
    path = tmp_path / "plain.db"
    path.write_bytes(SQLITE_HEADER + bytes(dec.page_size))
    with pytest.raises(AlreadyDecryptedError):
        dec.decrypt(path, RAW_KEY.hex(), io.BytesIO())


def test_decrypt_cancelled(tmp_path):
    dec = new_decryptor("darwin", 3)
    path = tmp_path / "enc.db"
    path.write_bytes(_encrypt(dec, RAW_KEY, [_plain(dec, 5), _plain(dec, 7)]))
    cancel = threading.Event()
    cancel.set()
    out = io.BytesIO()
    with pytest.raises(DecryptCanceledError):
        dec.decrypt(path, RAW_KEY.hex(), out, cancel)
    assert out.getvalue() == SQLITE_HEADER


def test_custom_decryptor_reserve_rounds_to_block():
    dec = Decryptor(version="custom", hash_name="sha256", hmac_size=32, page_size=4096)
    assert dec.reserve % 16 == 0
    assert dec.reserve >= 16 + 32