"""
Cached device state - the local device description and known contacts.

The read loop is the only writer: it calls apply() for every decoded event
immediately before dispatching that event, with no suspension point in
between. Readers never see a half-applied update because the contact map
is replaced as a whole rather than mutated in place, and all records are
frozen dataclasses.

Contacts are only ever added or refreshed here. Removing a contact on the
device (CMD_REMOVE_CONTACT) does not prune the cache; the next full
contact listing is the authority.
"""

from __future__ import annotations

import logging
from typing import Iterator

from meshcore_client.core.events import ContactEvent, Event, NewContactAdvertEvent, SelfInfoEvent
from meshcore_client.core.models import PUBLIC_KEY_PREFIX_LEN, Contact, PublicKey, SelfInfo

logger = logging.getLogger(__name__)


class DeviceState:
    """
    Read-mostly cache of what has been observed on the wire.

    Contacts are indexed by public key and can also be looked up by
    their 6-byte key prefix (how messages address senders) or name.
    """

    def __init__(self) -> None:
        self._self_info: SelfInfo | None = None
        self._contacts: dict[PublicKey, Contact] = {}

    def apply(self, event: Event) -> None:
        """
        Update the cache from an event, if the event carries cached data.

        Only the read loop calls this.
        """
        if isinstance(event, SelfInfoEvent) and event.info is not None:
            self._self_info = event.info
            logger.debug("Self info updated: %s", event.info.name or event.info.public_key)
        elif isinstance(event, (ContactEvent, NewContactAdvertEvent)) and event.contact is not None:
            self._store_contact(event.contact)

    def _store_contact(self, contact: Contact) -> None:
        contacts = dict(self._contacts)
        is_new = contact.public_key not in contacts
        contacts[contact.public_key] = contact
        self._contacts = contacts
        if is_new:
            logger.debug("Contact added: %s (%s)", contact.name or "unnamed", contact.public_key)

    @property
    def self_info(self) -> SelfInfo | None:
        """The local device description, or None before the init handshake."""
        return self._self_info

    def contacts(self) -> dict[PublicKey, Contact]:
        """Snapshot of all known contacts (copy, safe to keep)."""
        return dict(self._contacts)

    def get_contact(self, public_key: PublicKey) -> Contact | None:
        return self._contacts.get(public_key)

    def get_by_prefix(self, prefix: bytes) -> Contact | None:
        """
        Look up a contact by public key prefix.

        Args:
            prefix: Leading key bytes, usually the 6-byte sender prefix of
                a received message.

        Returns:
            The first matching contact, or None if not found.
        """
        prefix = bytes(prefix[:PUBLIC_KEY_PREFIX_LEN])
        if not prefix:
            return None
        for key, contact in self._contacts.items():
            if key.raw.startswith(prefix):
                return contact
        return None

    def get_by_name(self, name: str) -> Contact | None:
        """Look up a contact by name (case-insensitive)."""
        name_lower = name.lower()
        for contact in self._contacts.values():
            if contact.name.lower() == name_lower:
                return contact
        return None

    def clear(self) -> None:
        """Forget everything, e.g. before a reconnect."""
        self._self_info = None
        self._contacts = {}

    def __len__(self) -> int:
        """Return the number of known contacts."""
        return len(self._contacts)

    def __contains__(self, public_key: PublicKey) -> bool:
        return public_key in self._contacts

    def __iter__(self) -> Iterator[Contact]:
        return iter(list(self._contacts.values()))

    def __bool__(self) -> bool:
        """A state instance is always truthy, even when empty."""
        return True
