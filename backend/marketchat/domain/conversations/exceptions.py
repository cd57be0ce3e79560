"""Domain-level exceptions for conversation derivation and sync."""

from __future__ import annotations


class ConversationError(Exception):
	"""Base class for inbox engine errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class InvalidConversationKey(ConversationError):
	reason = "invalid_key"


class MalformedMessage(ConversationError):
	reason = "malformed_message"


class InvalidPatch(ConversationError):
	reason = "empty_patch"


class StoreUnavailable(ConversationError):
	"""Raised when the message store cannot be read; the snapshot is kept."""

	reason = "store_unavailable"


class AggregationFailed(ConversationError):
	"""Raised when a fetched batch cannot be folded; the snapshot is kept."""

	reason = "aggregation_failed"


class MutationFailed(ConversationError):
	"""Raised when a bulk overlay update is rejected by the store."""

	reason = "mutation_failed"

	def __init__(self, operation: str, conversation_id: str, reason: str | None = None) -> None:
		super().__init__(reason)
		self.operation = operation
		self.conversation_id = conversation_id
