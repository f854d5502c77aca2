# wxchatlog

A library for working with the local chat history of the WeChat desktop
client on macOS and Windows (client generations 3 and 4):

- decrypt the client's encrypted SQLite databases page by page;
- check candidate keys against an account's message database;
- parse macOS `vmmap` output and read a process's heap regions through
  `lldb`;
- look up contacts, chat rooms, sessions, messages and media through a cached
  repository with name, alias, remark and nickname search.

## Decrypting a database

`wxchatlog.decryptor.new_decryptor(platform, version)` returns the
`Decryptor` for `"windows"` or `"darwin"` and version 3 or 4; any other pair
raises `UnsupportedPlatformError`.

```python
from wxchatlog.decryptor import new_decryptor


def decrypt(src: str, dst: str, hex_key: str) -> None:
    decryptor = new_decryptor("darwin", 4)
    with open(dst, "wb") as output:
        decryptor.decrypt(src, hex_key, output)
```

`Decryptor.decrypt(db_file, hex_key, output, cancel=None)` writes a plain
SQLite file to `output`. Passing a `threading.Event` as `cancel` and setting
it stops the work with `DecryptCanceledError`. A key that does not open the
file raises `IncorrectKeyError`; a file that already starts with a plain
SQLite header raises `AlreadyDecryptedError`.

`Decryptor.validate(page1, key)` tells whether a raw 32-byte key opens a
database whose first page is `page1`, and `Decryptor.derive_keys(key, salt)`
returns the encryption and MAC keys.

## Page format

`wxchatlog.pagecrypt` holds the page-level pieces:

- `open_db_file(db_path, page_size)` returns a `DBFile` with the path, salt,
  page count and first page;
- `validate_key(...)` checks a key against the HMAC in the first page;
- `decrypt_page(...)` verifies and decrypts one page, raising
  `HashVerificationError` when its HMAC does not match;
- `xor_bytes(data, value)` XORs every byte with a value.

All of its errors derive from `CryptoError`.

## Validating keys

`wxchatlog.validator.new_validator(platform, version, data_dir,
img_key_validator=None)` opens the account's reference message database
(`get_simple_db_file(platform, version)` gives its path inside the data
directory) and returns a `Validator`. `Validator.validate(key)` checks a data
key; `Validator.validate_img_key(key)` calls the supplied image-key callable
and is only active for version 4 accounts.

## Memory on macOS

`wxchatlog.vmmap` parses `vmmap -wide` output:

- `load_vmmap(output)` returns the writable regions as `MemRegion` values;
- `get_vmmap(pid)` runs `vmmap` and parses it;
- `parse_size("128.0M")` converts sizes to bytes;
- `mem_regions_filter(regions, version=None)` keeps the non-empty
  `MALLOC_NANO` regions, or `MALLOC_SMALL` on Darwin 25;
- `is_sip_disabled()` and `sip_disabled_from_output(output)` interpret
  `csrutil status`.

`wxchatlog.glance.Glance(pid)` reads those regions through `lldb`:
`read()` returns the first region, and `iter_memory(cancel=None)` yields
every region in overlapping chunks produced by `split_region(memory)`.
Reading another process's memory needs System Integrity Protection to be
disabled.

## Repository

`wxchatlog.repository.Repository(ds)` wraps a data source object providing
`get_contacts`, `get_chat_rooms`, `get_sessions`, `get_messages`,
`get_media`, `set_callback` and `close`. It caches contacts and chat rooms
and offers:

- `get_contact(key)` / `get_contacts(key, limit, offset)`, matching user
  name, alias, remark and nickname, exactly first and then by substring;
  `ContactNotFoundError` when nothing matches;
- `get_chat_room(key)` / `get_chat_rooms(key, limit, offset)`, with
  `ChatRoomNotFoundError`;
- `get_messages(start, end, talker, sender, keyword, limit, offset)`, which
  resolves names to user ids and fills in display names;
- `enrich_messages(messages)`, `get_sessions(...)`, `get_media(...)` and
  `close()`.

`contact_callback(event)` and `chatroom_callback(event)` rebuild the caches
when a `FileEvent` with the `CREATE` operation arrives.

## What this package does not do

It does not find running WeChat processes, does not search client memory
for keys on its own, and has no account manager or command-line program.
Keys must be obtained by the caller, and the repository needs a data source
supplied by the caller; no database-backed data source is included.