"""Fold a user's message log into per-counterparty conversation summaries.

`aggregate` is a pure function of its input: no module state is read or
written, the input order never matters, and running it twice over the same
messages yields equal summaries in the same order.

Within one pass each conversation tracks three independent "most recent"
pointers, all compared on ``(created_at, id)``:

* the newest message overall (preview, time, profile, overlay flags),
* the newest message carrying an ``item_id`` (item context),
* the newest message carrying an ``offer_item_id`` (offer context).

Unread counters are accumulated in parallel maps and merged last.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from marketchat.obs import metrics as obs_metrics

from .exceptions import InvalidConversationKey
from .models import (
	DEFAULT_USER_NAME,
	Conversation,
	ConversationKey,
	Message,
	ProfileSnapshot,
	conversation_key_or_none,
	is_valid_identifier,
)
from .schemas import parse_messages

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Summary:
	key: ConversationKey
	other_user_id: str
	last: Message
	profile: Optional[ProfileSnapshot] = None
	profile_source: Optional[Message] = None
	recent_item: Optional[Message] = None
	recent_offer: Optional[Message] = None
	has_offer: bool = False

	def fold(self, message: Message) -> None:
		if message.recency > self.last.recency:
			self.last = message
		profile = message.profile_of(self.other_user_id)
		if profile is not None and (self.profile_source is None or message.recency > self.profile_source.recency):
			self.profile = profile
			self.profile_source = message
		if message.item_id is not None and (
			self.recent_item is None or message.recency > self.recent_item.recency
		):
			self.recent_item = message
		if message.is_offer:
			self.has_offer = True
			if self.recent_offer is None or message.recency > self.recent_offer.recency:
				self.recent_offer = message

	def freeze(self, unread_count: int, unread_offer_count: int) -> Conversation:
		last = self.last
		item = self.recent_item.item if self.recent_item is not None else None
		offer_item = self.recent_offer.offer_item if self.recent_offer is not None else None
		profile = self.profile or ProfileSnapshot()
		return Conversation(
			id=self.key.conversation_id,
			other_user_id=self.other_user_id,
			other_user_name=profile.username or DEFAULT_USER_NAME,
			other_user_avatar=profile.avatar_url,
			last_message=last.preview,
			last_message_time=last.created_at,
			last_message_id=last.id,
			recent_item_id=self.recent_item.item_id if self.recent_item is not None else None,
			recent_item_title=item.title if item is not None else None,
			recent_item_image=item.image if item is not None else None,
			has_offer=self.has_offer,
			offer_item_title=offer_item.title if offer_item is not None else None,
			offer_item_image=offer_item.image if offer_item is not None else None,
			unread_count=max(0, unread_count),
			unread_offer_count=max(0, unread_offer_count),
			archived=last.archived,
			deleted=last.deleted,
			silenced=last.silenced,
		)


def _drop(message: Any, reason: str) -> None:
	obs_metrics.inc_dropped(reason)
	logger.warning(
		"dropping message from aggregation",
		extra={"message_id": getattr(message, "id", None), "reason": reason},
	)


def _dedupe(messages: Iterable[Message]) -> list[Message]:
	# A message seen twice (poll + push overlap) counts once; the later copy carries the newer flags.
	unique: dict[Any, Message] = {}
	for message in messages:
		try:
			unique[getattr(message, "id", id(message))] = message
		except TypeError:
			_drop(message, "invalid_id")
	return list(unique.values())


def aggregate(messages: Iterable[Message], viewer_id: str) -> list[Conversation]:
	"""Return one summary per counterparty, newest conversation first."""
	if not is_valid_identifier(viewer_id):
		raise InvalidConversationKey("invalid_viewer")
	viewer = viewer_id.lower()
	summaries: dict[str, _Summary] = {}
	unread: dict[str, int] = {}
	unread_offers: dict[str, int] = {}

	for message in _dedupe(messages):
		try:
			if not isinstance(message, Message):
				_drop(message, "not_a_message")
				continue
			if getattr(message.created_at, "tzinfo", None) is None:
				_drop(message, "naive_timestamp")
				continue
			key = conversation_key_or_none(message.sender_id, message.receiver_id)
			if key is None:
				_drop(message, "invalid_participant")
				continue
			if not key.includes(viewer):
				_drop(message, "foreign_message")
				continue
			conversation_id = key.conversation_id
			summary = summaries.get(conversation_id)
			if summary is None:
				summary = _Summary(key=key, other_user_id=key.counterparty(viewer), last=message)
				summaries[conversation_id] = summary
			summary.fold(message)
			if message.receiver_id.lower() == viewer and not message.read:
				unread[conversation_id] = unread.get(conversation_id, 0) + 1
				if message.is_offer:
					unread_offers[conversation_id] = unread_offers.get(conversation_id, 0) + 1
		except (AttributeError, TypeError, ValueError):
			# wrongly typed fields on an otherwise valid message
			logger.warning(
				"message fold failed",
				extra={"message_id": getattr(message, "id", None)},
				exc_info=True,
			)
			obs_metrics.inc_dropped("fold_error")

	conversations = [
		summary.freeze(unread.get(conversation_id, 0), unread_offers.get(conversation_id, 0))
		for conversation_id, summary in summaries.items()
	]
	conversations.sort(key=lambda conversation: conversation.id)
	conversations.sort(key=lambda conversation: conversation.last_message_time, reverse=True)
	return conversations


def aggregate_rows(rows: Iterable[Mapping[str, Any]], viewer_id: str) -> list[Conversation]:
	"""Validate raw store rows, then aggregate the ones that parse."""
	return aggregate(parse_messages(rows), viewer_id)
