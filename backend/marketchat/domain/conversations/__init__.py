"""Conversation derivation and sync exports."""

from .aggregator import aggregate, aggregate_rows
from .models import Conversation, ConversationFilter, ConversationKey, Message
from .overlay import apply_filter, matches_filter, unread_totals
from .sync import SyncController, SyncState

__all__ = [
	"Conversation",
	"ConversationFilter",
	"ConversationKey",
	"Message",
	"SyncController",
	"SyncState",
	"aggregate",
	"aggregate_rows",
	"apply_filter",
	"matches_filter",
	"unread_totals",
]
