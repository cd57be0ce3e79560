"""Overlay flags and list filters applied on top of aggregated conversations."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Sequence

from .models import Conversation, ConversationFilter, UnreadTotals

_OVERLAY_FIELDS = frozenset({"archived", "deleted", "silenced", "unread_count", "unread_offer_count"})


def coerce_filter(value: ConversationFilter | str | None) -> ConversationFilter:
	if value is None:
		return ConversationFilter.ALL
	if isinstance(value, ConversationFilter):
		return value
	return ConversationFilter(str(value).lower())


def matches_filter(conversation: Conversation, view: ConversationFilter) -> bool:
	"""Visibility of one conversation under a list filter.

	Deleted conversations only show in the deleted view; archived ones only in
	the archived view. Silencing never hides anything.
	"""
	if conversation.deleted:
		return view is ConversationFilter.DELETED
	if view is ConversationFilter.DELETED:
		return False
	if view is ConversationFilter.ARCHIVED:
		return conversation.archived
	if conversation.archived:
		return False
	if view is ConversationFilter.UNREAD:
		return conversation.unread_count > 0
	if view is ConversationFilter.OFFERS:
		return conversation.has_offer
	return True


def apply_filter(
	conversations: Iterable[Conversation],
	view: ConversationFilter | str | None = None,
) -> list[Conversation]:
	selected = coerce_filter(view)
	return [conversation for conversation in conversations if matches_filter(conversation, selected)]


def apply_overlay(
	conversations: Sequence[Conversation],
	conversation_id: str,
	**changes: object,
) -> list[Conversation]:
	"""Return a new list with one conversation's overlay fields replaced."""
	unknown = set(changes) - _OVERLAY_FIELDS
	if unknown:
		raise ValueError(f"not an overlay field: {sorted(unknown)}")
	return [
		replace(conversation, **changes) if conversation.id == conversation_id else conversation
		for conversation in conversations
	]


def should_notify(conversation: Conversation) -> bool:
	return not (conversation.silenced or conversation.deleted)


def unread_totals(conversations: Iterable[Conversation], *, include_hidden: bool) -> UnreadTotals:
	"""Sum unread counters.

	``include_hidden=True`` is the notification-badge total and counts archived
	and deleted conversations too; ``False`` matches what the conversation list
	shows.
	"""
	messages = 0
	offers = 0
	for conversation in conversations:
		if not include_hidden and (conversation.archived or conversation.deleted):
			continue
		messages += conversation.unread_count
		offers += conversation.unread_offer_count
	return UnreadTotals(messages=messages, offers=offers)
