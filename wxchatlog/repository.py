"""In-memory lookup layer over a chat data source.

The data source is duck-typed.  It provides ``get_contacts``,
``get_chat_rooms``, ``get_sessions`` (each taking ``key, limit, offset``),
``get_messages(start, end, talker, sender, keyword, limit, offset)``,
``get_media(media_type, key)``, ``set_callback(group, callback)`` and
``close()``.

Contacts carry ``user_name``, ``alias``, ``remark``, ``nick_name``,
``is_friend`` and ``display_name()``.  Chat rooms carry ``name``,
``remark``, ``nick_name``, ``users`` (items with ``user_name``),
``user2_display_name`` and ``display_name()``.  Messages carry ``talker``,
``sender``, ``is_chat_room``, ``is_self``, ``talker_name`` and
``sender_name``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

CHATROOM_SUFFIX = "@chatroom"


@dataclass(frozen=True)
class FileEvent:
    """A change to a watched database file."""

    CREATE = 1
    WRITE = 2
    REMOVE = 4
    RENAME = 8
    CHMOD = 16

    name: str
    op: int

    def has(self, op: int) -> bool:
        """Tell whether this event includes the operation ``op``."""
        return bool(self.op & op)


class ContactNotFoundError(LookupError):
    """No contact matches the key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"contact not found: {key}")
        self.key = key


class ChatRoomNotFoundError(LookupError):
    """No chat room matches the key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"chat room not found: {key}")
        self.key = key


@dataclass
class _PlaceholderChatRoom:
    """Chat room known only from the contact list."""

    name: str
    remark: str = ""
    nick_name: str = ""
    users: list = field(default_factory=list)
    user2_display_name: dict = field(default_factory=dict)

    def display_name(self) -> str:
        return self.remark or self.nick_name or self.name


class _Lookup:
    """Maps a secondary name to the items carrying it."""

    def __init__(self) -> None:
        self.by_key: dict[str, list] = {}
        self.sorted_keys: list[str] = []

    def add(self, key: str, item: Any) -> None:
        if key:
            self.by_key.setdefault(key, []).append(item)

    def freeze(self) -> "_Lookup":
        self.sorted_keys = sorted(self.by_key)
        return self


def _split_list(value: str, sep: str = ",") -> list[str]:
    return [part.strip() for part in value.split(sep) if part.strip()]


def _page(items: list, limit: int, offset: int) -> list:
    if limit <= 0:
        return list(items)
    if offset >= len(items):
        return []
    return items[offset : offset + limit]


def _find_one(primary: dict, lookups: Iterable[_Lookup], key: str) -> Any:
    lookups = tuple(lookups)
    if key in primary:
        return primary[key]
    for lookup in lookups:
        if key in lookup.by_key:
            return lookup.by_key[key][0]
    for lookup in lookups:
        for name in lookup.sorted_keys:
            if key in name:
                return lookup.by_key[name][0]
    return None


def _find_all(
    primary: dict,
    lookups: Iterable[_Lookup],
    key: str,
    name_of: Callable[[Any], str],
) -> list:
    lookups = tuple(lookups)
    found: dict[str, Any] = {}

    def add(items: Iterable[Any]) -> None:
        for item in items:
            found.setdefault(name_of(item), item)

    if key in primary:
        add([primary[key]])
    for lookup in lookups:
        add(lookup.by_key.get(key, ()))
    for lookup in lookups:
        for name in lookup.sorted_keys:
            if key in name:
                add(lookup.by_key[name])
    return list(found.values())


class Repository:
    """Caches contacts and chat rooms and resolves names for queries."""

    def __init__(self, ds: Any, chat_room_factory: Optional[Callable[..., Any]] = None):
        self._ds = ds
        self._chat_room_factory = chat_room_factory or _PlaceholderChatRoom

        self._contact_cache: dict[str, Any] = {}
        self._alias_to_contact = _Lookup()
        self._remark_to_contact = _Lookup()
        self._nick_name_to_contact = _Lookup()
        self._chat_room_user_to_info: dict[str, Any] = {}
        self._chat_room_in_contact: dict[str, Any] = {}
        self._contact_list: list[str] = []

        self._chat_room_cache: dict[str, Any] = {}
        self._remark_to_chat_room = _Lookup()
        self._nick_name_to_chat_room = _Lookup()
        self._chat_room_list: list[str] = []

        self._init_contact_cache()
        self._init_chat_room_cache()

        ds.set_callback("contact", self.contact_callback)
        ds.set_callback("chatroom", self.chatroom_callback)

    # -- cache building -------------------------------------------------

    def _init_contact_cache(self) -> None:
        try:
            contacts = list(self._ds.get_contacts("", 0, 0) or [])
        except Exception:  # the cache stays usable without contacts
            logger.exception("failed to load contacts")
            contacts = []

        cache: dict[str, Any] = {}
        alias, remark, nick = _Lookup(), _Lookup(), _Lookup()
        room_users: dict[str, Any] = {}
        rooms_in_contact: dict[str, Any] = {}
        names: list[str] = []

        for contact in contacts:
            cache[contact.user_name] = contact
            names.append(contact.user_name)
            alias.add(contact.alias, contact)
            remark.add(contact.remark, contact)
            nick.add(contact.nick_name, contact)
            if not contact.is_friend:
                room_users[contact.user_name] = contact
            if contact.user_name.endswith(CHATROOM_SUFFIX):
                rooms_in_contact[contact.user_name] = contact

        self._contact_cache = cache
        self._alias_to_contact = alias.freeze()
        self._remark_to_contact = remark.freeze()
        self._nick_name_to_contact = nick.freeze()
        self._chat_room_user_to_info = room_users
        self._chat_room_in_contact = rooms_in_contact
        self._contact_list = sorted(names)

    def _init_chat_room_cache(self) -> None:
        try:
            chat_rooms = list(self._ds.get_chat_rooms("", 0, 0) or [])
        except Exception:  # the cache stays usable without chat rooms
            logger.exception("failed to load chat rooms")
            chat_rooms = []

        cache: dict[str, Any] = {}
        remark, nick = _Lookup(), _Lookup()
        names: list[str] = []

        def register(room: Any) -> None:
            cache[room.name] = room
            names.append(room.name)
            remark.add(room.remark, room)
            nick.add(room.nick_name, room)

        for room in chat_rooms:
            contact = self._contact_cache.get(room.name)
            if contact is not None:
                room.remark = contact.remark
                room.nick_name = contact.nick_name
            register(room)

        for user_name, contact in self._chat_room_in_contact.items():
            if user_name not in cache:
                register(
                    self._chat_room_factory(
                        name=user_name,
                        remark=contact.remark,
                        nick_name=contact.nick_name,
                    )
                )

        self._chat_room_cache = cache
        self._remark_to_chat_room = remark.freeze()
        self._nick_name_to_chat_room = nick.freeze()
        self._chat_room_list = sorted(names)

    # -- contacts -------------------------------------------------------

    def _contact_lookups(self) -> tuple[_Lookup, ...]:
        return (self._alias_to_contact, self._remark_to_contact, self._nick_name_to_contact)

    def _find_contact(self, key: str) -> Any:
        return _find_one(self._contact_cache, self._contact_lookups(), key)

    def _full_contact(self, user_name: str) -> Any:
        contact = self._contact_cache.get(user_name)
        if contact is not None:
            return contact
        return self._chat_room_user_to_info.get(user_name)

    def get_contact(self, key: str) -> Any:
        """Return the best contact match for ``key``."""
        contact = self._find_contact(key)
        if contact is None:
            raise ContactNotFoundError(key)
        return contact

    def get_contacts(self, key: str = "", limit: int = 0, offset: int = 0) -> list:
        """Return contacts matching ``key``, or all of them sorted by user name."""
        if key:
            found = _find_all(
                self._contact_cache,
                self._contact_lookups(),
                key,
                lambda c: c.user_name,
            )
            return _page(found, limit, offset)
        names = _page(self._contact_list, limit, offset)
        return [self._contact_cache[name] for name in names]

    # -- chat rooms -----------------------------------------------------

    def _chat_room_lookups(self) -> tuple[_Lookup, ...]:
        return (self._remark_to_chat_room, self._nick_name_to_chat_room)

    def _find_chat_room(self, key: str) -> Any:
        return _find_one(self._chat_room_cache, self._chat_room_lookups(), key)

    def get_chat_room(self, key: str) -> Any:
        """Return the best chat room match for ``key``."""
        room = self._find_chat_room(key)
        if room is None:
            raise ChatRoomNotFoundError(key)
        return room

    def get_chat_rooms(self, key: str = "", limit: int = 0, offset: int = 0) -> list:
        """Return chat rooms matching ``key``, or all of them sorted by name."""
        if key:
            found = _find_all(
                self._chat_room_cache,
                self._chat_room_lookups(),
                key,
                lambda r: r.name,
            )
            return _page(found, limit, offset)
        names = _page(self._chat_room_list, limit, offset)
        return [self._chat_room_cache[name] for name in names]

    # -- messages -------------------------------------------------------

    def get_messages(
        self,
        start: Any,
        end: Any,
        talker: str,
        sender: str = "",
        keyword: str = "",
        limit: int = 0,
        offset: int = 0,
    ) -> list:
        """Query messages, resolving names to ids and filling display names."""
        talker, sender = self._parse_talker_and_sender(talker, sender)
        messages = self._ds.get_messages(start, end, talker, sender, keyword, limit, offset)
        self.enrich_messages(messages)
        return messages

    def enrich_messages(self, messages: Iterable[Any]) -> None:
        """Fill talker and sender display names in place."""
        for msg in messages:
            self._enrich_message(msg)

    def _enrich_message(self, msg: Any) -> None:
        if msg.is_chat_room:
            room = self._chat_room_cache.get(msg.talker)
            if room is not None:
                msg.talker_name = room.display_name()
                display = room.user2_display_name.get(msg.sender)
                if display is not None:
                    msg.sender_name = display

        if not msg.sender_name and not msg.is_self:
            contact = self._full_contact(msg.sender)
            if contact is not None:
                msg.sender_name = contact.display_name()

    def _parse_talker_and_sender(self, talker: str, sender: str) -> tuple[str, str]:
        display_to_user: dict[str, str] = {}
        users: dict[str, bool] = {}

        talkers = _split_list(talker)
        if talkers:
            resolved = []
            for item in talkers:
                contact = self._find_contact(item)
                if contact is not None:
                    resolved.append(contact.user_name)
                    continue
                # the whole talker argument is looked up here, as a room key
                room = self._find_chat_room(talker)
                resolved.append(room.name if room is not None else item)

            for name in resolved:
                room = self._find_chat_room(name)
                if room is None:
                    continue
                for user, display in room.user2_display_name.items():
                    display_to_user[display] = user
                for member in room.users:
                    users[member.user_name] = True
            talker = ",".join(resolved)

        senders = _split_list(sender)
        if senders:
            resolved = []
            for item in senders:
                if item in display_to_user:
                    resolved.append(display_to_user[item])
                    continue
                match = item
                for user in users:
                    contact = self._full_contact(user)
                    if contact is not None and contact.display_name() == item:
                        match = user
                        break
                resolved.append(match)
            sender = ",".join(resolved)

        return talker, sender

    # -- pass-through ---------------------------------------------------

    def get_media(self, media_type: str, key: str) -> Any:
        """Return a media record from the data source."""
        return self._ds.get_media(media_type, key)

    def get_sessions(self, key: str = "", limit: int = 0, offset: int = 0) -> list:
        """Return recent sessions from the data source."""
        return self._ds.get_sessions(key, limit, offset)

    # -- file watching --------------------------------------------------

    def contact_callback(self, event: FileEvent) -> None:
        """Rebuild the contact cache when a contact database is created."""
        if event.has(FileEvent.CREATE):
            self._init_contact_cache()

    def chatroom_callback(self, event: FileEvent) -> None:
        """Rebuild the chat room cache when a chat room database is created."""
        if event.has(FileEvent.CREATE):
            self._init_chat_room_cache()

    def close(self) -> None:
        """Close the underlying data source."""
        self._ds.close()