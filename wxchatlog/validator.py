"""Key validation against a known database file of an account."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional

from .decryptor import Decryptor, new_decryptor
from .pagecrypt import DBFile, open_db_file

ImgKeyValidator = Callable[[bytes], bool]

_SIMPLE_DB_FILES = {
    ("windows", 3): "Msg\\Misc.db",
    ("windows", 4): "db_storage\\message\\message_0.db",
    ("darwin", 3): "Message/msg_0.db",
    ("darwin", 4): "db_storage/message/message_0.db",
}


def get_simple_db_file(platform: str, version: int) -> str:
    """Return the data-dir relative path of the file used to check keys."""
    return _SIMPLE_DB_FILES.get((platform, version), "")


@dataclass
class Validator:
    """Checks candidate data keys and image keys for one account."""

    platform: str
    version: int
    db_path: str
    decryptor: Decryptor
    db_file: DBFile
    img_key_validator: Optional[ImgKeyValidator] = None

    def validate(self, key: bytes) -> bool:
        """Tell whether ``key`` opens the account's reference database."""
        return self.decryptor.validate(self.db_file.first_page, bytes(key))

    def validate_img_key(self, key: bytes) -> bool:
        """Tell whether ``key`` is the account's image key."""
        if self.img_key_validator is None:
            return False
        return bool(self.img_key_validator(bytes(key)))


def new_validator(
    platform: str,
    version: int,
    data_dir: str | os.PathLike[str],
    img_key_validator: Optional[ImgKeyValidator] = None,
) -> Validator:
    """Build a validator for the account whose data lives in ``data_dir``.

    ``img_key_validator`` is a callable checking a candidate image key; it
    is kept only for version 4 accounts, which have image keys.
    """
    db_path = os.path.join(os.fspath(data_dir), get_simple_db_file(platform, version))
    decryptor = new_decryptor(platform, version)
    db_file = open_db_file(db_path, decryptor.page_size)
    return Validator(
        platform=platform,
        version=version,
        db_path=db_path,
        decryptor=decryptor,
        db_file=db_file,
        img_key_validator=img_key_validator if version == 4 else None,
    )