"""Domain models for the marketplace inbox."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

import ulid

from .exceptions import InvalidConversationKey, InvalidPatch, MalformedMessage

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

_KEY_PREFIX = "dm"

ATTACHMENT_PREVIEW = "[attachment]"
DEFAULT_USER_NAME = "User"


def is_valid_identifier(value: object) -> bool:
	return isinstance(value, str) and bool(_UUID_RE.match(value))


@dataclass(frozen=True, slots=True)
class ConversationKey:
	"""Canonical representation of a 1:1 marketplace conversation."""

	user_a: str
	user_b: str

	@classmethod
	def from_participants(cls, user_one: str, user_two: str) -> "ConversationKey":
		if not is_valid_identifier(user_one) or not is_valid_identifier(user_two):
			raise InvalidConversationKey("invalid_participant")
		one, two = user_one.lower(), user_two.lower()
		if one == two:
			raise InvalidConversationKey("self_conversation")
		ordered = tuple(sorted((one, two)))
		return cls(user_a=ordered[0], user_b=ordered[1])

	@classmethod
	def decode(cls, value: str) -> "ConversationKey":
		parts = value.split(":") if isinstance(value, str) else []
		if len(parts) != 3 or parts[0] != _KEY_PREFIX:
			raise InvalidConversationKey("malformed_key")
		key = cls.from_participants(parts[1], parts[2])
		if key.conversation_id != value.lower():
			raise InvalidConversationKey("non_canonical_key")
		return key

	@property
	def conversation_id(self) -> str:
		return f"{_KEY_PREFIX}:{self.user_a}:{self.user_b}"

	def participants(self) -> Tuple[str, str]:
		return (self.user_a, self.user_b)

	def includes(self, user_id: str) -> bool:
		return user_id.lower() in (self.user_a, self.user_b)

	def counterparty(self, viewer_id: str) -> str:
		viewer = viewer_id.lower()
		if viewer == self.user_a:
			return self.user_b
		if viewer == self.user_b:
			return self.user_a
		raise InvalidConversationKey("viewer_not_participant")


def conversation_key_or_none(user_one: str, user_two: str) -> Optional[ConversationKey]:
	"""Return the canonical key, or None when either identifier is unusable."""
	try:
		return ConversationKey.from_participants(user_one, user_two)
	except InvalidConversationKey:
		return None


@dataclass(frozen=True, slots=True)
class ProfileSnapshot:
	username: Optional[str] = None
	avatar_url: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ItemSnapshot:
	id: str
	title: Optional[str] = None
	image: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Message:
	id: str
	sender_id: str
	receiver_id: str
	content: str
	created_at: datetime
	item_id: Optional[str] = None
	offer_item_id: Optional[str] = None
	attachment_url: Optional[str] = None
	read: bool = False
	archived: bool = False
	deleted: bool = False
	silenced: bool = False
	sender: Optional[ProfileSnapshot] = None
	receiver: Optional[ProfileSnapshot] = None
	item: Optional[ItemSnapshot] = None
	offer_item: Optional[ItemSnapshot] = None

	@classmethod
	def compose(
		cls,
		sender_id: str,
		receiver_id: str,
		content: str,
		*,
		item_id: Optional[str] = None,
		offer_item_id: Optional[str] = None,
		attachment_url: Optional[str] = None,
		created_at: Optional[datetime] = None,
	) -> "Message":
		"""Build a new outgoing message with a time-ordered UUID id and a UTC timestamp."""
		if not (content and content.strip()) and not attachment_url:
			raise MalformedMessage("empty_message")
		ConversationKey.from_participants(sender_id, receiver_id)
		return cls(
			id=str(ulid.new().uuid),
			sender_id=sender_id,
			receiver_id=receiver_id,
			content=(content or "").strip(),
			created_at=created_at or datetime.now(timezone.utc),
			item_id=item_id,
			offer_item_id=offer_item_id,
			attachment_url=attachment_url,
		)

	@property
	def is_offer(self) -> bool:
		return self.offer_item_id is not None

	@property
	def preview(self) -> str:
		if self.content:
			return self.content
		return ATTACHMENT_PREVIEW if self.attachment_url else ""

	@property
	def recency(self) -> Tuple[datetime, str]:
		# Equal timestamps resolve by id so folds never depend on input order.
		return (self.created_at, self.id)

	def is_participant(self, user_id: str) -> bool:
		return user_id.lower() in (self.sender_id.lower(), self.receiver_id.lower())

	def profile_of(self, user_id: str) -> Optional[ProfileSnapshot]:
		if self.sender_id.lower() == user_id.lower():
			return self.sender
		return self.receiver


@dataclass(frozen=True, slots=True)
class Conversation:
	id: str
	other_user_id: str
	other_user_name: str
	other_user_avatar: Optional[str]
	last_message: str
	last_message_time: datetime
	last_message_id: str
	recent_item_id: Optional[str] = None
	recent_item_title: Optional[str] = None
	recent_item_image: Optional[str] = None
	has_offer: bool = False
	offer_item_title: Optional[str] = None
	offer_item_image: Optional[str] = None
	unread_count: int = 0
	unread_offer_count: int = 0
	archived: bool = False
	deleted: bool = False
	silenced: bool = False


class ConversationFilter(str, Enum):
	ALL = "all"
	UNREAD = "unread"
	OFFERS = "offers"
	ARCHIVED = "archived"
	DELETED = "deleted"


_PATCH_FIELDS = ("read", "archived", "deleted", "silenced")


@dataclass(frozen=True, slots=True)
class MessagePatch:
	read: Optional[bool] = None
	archived: Optional[bool] = None
	deleted: Optional[bool] = None
	silenced: Optional[bool] = None

	def __post_init__(self) -> None:
		if not self.changes():
			raise InvalidPatch()

	def changes(self) -> dict[str, bool]:
		return {name: getattr(self, name) for name in _PATCH_FIELDS if getattr(self, name) is not None}


@dataclass(frozen=True, slots=True)
class PairPredicate:
	"""Selects messages exchanged between two users, in both directions by default."""

	user_a: str
	user_b: str
	receiver_id: Optional[str] = None
	unread_only: bool = False

	@classmethod
	def between(cls, key: ConversationKey) -> "PairPredicate":
		return cls(user_a=key.user_a, user_b=key.user_b)

	@classmethod
	def received_by(cls, key: ConversationKey, viewer_id: str) -> "PairPredicate":
		return cls(user_a=key.user_a, user_b=key.user_b, receiver_id=viewer_id.lower(), unread_only=True)

	def matches(self, message: Message) -> bool:
		pair = {self.user_a, self.user_b}
		if {message.sender_id.lower(), message.receiver_id.lower()} != pair:
			return False
		if self.receiver_id is not None and message.receiver_id.lower() != self.receiver_id:
			return False
		if self.unread_only and message.read:
			return False
		return True


@dataclass(frozen=True, slots=True)
class UnreadTotals:
	messages: int = 0
	offers: int = 0
