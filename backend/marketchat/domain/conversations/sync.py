"""Sync controller: owns the conversation snapshot for one viewing user.

Every trigger (activation, change-feed event, poll tick, local mutation)
re-fetches the viewer's messages and re-aggregates. At most one pass runs at a
time; triggers that arrive meanwhile collapse into a single follow-up pass.

Local mutations are applied optimistically as overlays on top of the last
aggregated result. An overlay stays in force until a pass that started after
the store accepted the mutation has committed, so a fetch that raced the bulk
update never flickers the old flags back. A rejected mutation drops its
overlay, which restores the previous state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from marketchat.obs import logging as obs_logging
from marketchat.obs import metrics as obs_metrics
from marketchat.settings import settings

from .aggregator import aggregate
from .exceptions import (
	AggregationFailed,
	ConversationError,
	InvalidConversationKey,
	MutationFailed,
	StoreUnavailable,
)
from .feed import ChangeFeed, FeedSubscription
from .models import (
	Conversation,
	ConversationFilter,
	ConversationKey,
	MessagePatch,
	PairPredicate,
	UnreadTotals,
	is_valid_identifier,
)
from .overlay import apply_filter, apply_overlay, coerce_filter, unread_totals
from .store import MessageStore

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[List[Conversation]], object]
ErrorListener = Callable[[ConversationError], object]


class SyncState(str, Enum):
	IDLE = "idle"
	LOADING = "loading"
	READY = "ready"


@dataclass(eq=False)
class _Overlay:
	conversation_id: str
	changes: Dict[str, object] = field(default_factory=dict)
	settled_after: Optional[int] = None


class SyncController:
	def __init__(
		self,
		store: MessageStore,
		viewer_id: str,
		*,
		feed: Optional[ChangeFeed] = None,
		poll_interval: Optional[float] = None,
		initial_filter: ConversationFilter | str = ConversationFilter.ALL,
	) -> None:
		if not is_valid_identifier(viewer_id):
			raise InvalidConversationKey("invalid_viewer")
		self._store = store
		self._viewer_id = viewer_id.lower()
		self._feed = feed
		self._poll_interval = settings.inbox_poll_interval_seconds if poll_interval is None else float(poll_interval)
		self._filter = coerce_filter(initial_filter)
		self._base: Tuple[Conversation, ...] = ()
		self._snapshot: Tuple[Conversation, ...] = ()
		self._overlays: List[_Overlay] = []
		self._state = SyncState.IDLE
		self._error: Optional[ConversationError] = None
		self._runner: Optional[asyncio.Task] = None
		self._pending = False
		self._passes_started = 0
		self._passes_completed = 0
		self._subscription: Optional[FeedSubscription] = None
		self._poll_task: Optional[asyncio.Task] = None
		self._listeners: List[SnapshotListener] = []
		self._error_listeners: List[ErrorListener] = []
		self._started = False

	@property
	def viewer_id(self) -> str:
		return self._viewer_id

	@property
	def state(self) -> SyncState:
		return self._state

	@property
	def loading(self) -> bool:
		return self._state is SyncState.LOADING

	@property
	def error(self) -> Optional[ConversationError]:
		return self._error

	@property
	def filter(self) -> ConversationFilter:
		return self._filter

	@property
	def passes_completed(self) -> int:
		return self._passes_completed

	@property
	def snapshot(self) -> Tuple[Conversation, ...]:
		"""Every conversation, unfiltered, newest first."""
		return self._snapshot

	@property
	def conversations(self) -> List[Conversation]:
		return self.get_conversations()

	# lifecycle

	async def start(self) -> None:
		if self._started:
			return
		self._started = True
		if self._feed is not None:
			try:
				self._subscription = await self._feed.subscribe(self._viewer_id, self._on_feed_event)
			except Exception:
				logger.warning("change feed unavailable, relying on poll", exc_info=True)
		if self._poll_interval > 0:
			self._poll_task = asyncio.create_task(self._poll_loop(), name=f"inbox-poll:{self._viewer_id}")
		self.trigger("mount")

	async def stop(self) -> None:
		self._started = False
		subscription, self._subscription = self._subscription, None
		if subscription is not None:
			try:
				await subscription.close()
			except Exception:
				logger.debug("change feed close failed", exc_info=True)
		for task in (self._poll_task, self._runner):
			if task is not None and not task.done():
				task.cancel()
				with suppress(asyncio.CancelledError):
					await task
		self._poll_task = None
		self._runner = None
		self._pending = False
		if self._state is SyncState.LOADING:
			self._state = SyncState.READY if self._passes_completed else SyncState.IDLE

	async def wait_idle(self) -> None:
		"""Wait until no pass is running or scheduled."""
		while self._runner is not None and not self._runner.done():
			await asyncio.shield(self._runner)

	# triggers

	def trigger(self, source: str = "manual") -> None:
		if not self._started:
			# stopped controllers own no tasks
			return
		obs_metrics.inc_trigger(source)
		if self._runner is not None and not self._runner.done():
			if self._pending:
				obs_metrics.inc_coalesced()
			self._pending = True
			return
		self._runner = asyncio.create_task(self._run(source), name=f"inbox-sync:{self._viewer_id}")

	def refresh(self) -> None:
		self.trigger("refresh")

	def _on_feed_event(self) -> None:
		self.trigger("feed")

	async def _poll_loop(self) -> None:
		while True:
			await asyncio.sleep(self._poll_interval)
			self.trigger("poll")

	async def _run(self, source: str) -> None:
		while True:
			self._pending = False
			await self._run_once(source)
			if not self._pending:
				return
			source = "coalesced"

	async def _run_once(self, source: str) -> None:
		tokens = obs_logging.bind_context(viewer_id=self._viewer_id, sync_source=source)
		self._passes_started += 1
		pass_seq = self._passes_started
		self._state = SyncState.LOADING
		started = time.perf_counter()
		try:
			try:
				messages = await self._store.fetch_messages_for_user(self._viewer_id)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				logger.warning("message fetch failed, keeping previous snapshot", exc_info=True)
				obs_metrics.record_pass("fetch_failed", duration_seconds=time.perf_counter() - started)
				self._surface(exc if isinstance(exc, StoreUnavailable) else StoreUnavailable("fetch_failed"))
				return
			try:
				conversations = aggregate(messages, self._viewer_id)
			except Exception:
				logger.exception("aggregation failed, keeping previous snapshot")
				obs_metrics.record_pass("aggregate_failed", duration_seconds=time.perf_counter() - started)
				self._surface(AggregationFailed())
				return
			self._passes_completed += 1
			self._overlays = [
				overlay
				for overlay in self._overlays
				if overlay.settled_after is None or pass_seq <= overlay.settled_after
			]
			if isinstance(self._error, (StoreUnavailable, AggregationFailed)):
				self._error = None
			self._base = tuple(conversations)
			self._publish()
			obs_metrics.record_pass("ok", duration_seconds=time.perf_counter() - started)
			logger.debug("inbox pass committed", extra={"conversations": len(conversations), "pass": pass_seq})
		finally:
			self._state = SyncState.READY
			obs_logging.reset_context(tokens)

	# snapshot

	def get_conversations(self, view: ConversationFilter | str | None = None) -> List[Conversation]:
		"""Filtered view of the last committed snapshot. Never waits on a pass."""
		return apply_filter(self._snapshot, self._filter if view is None else view)

	def set_filter(self, view: ConversationFilter | str) -> None:
		self._filter = coerce_filter(view)
		self._notify()

	def unread_totals(self, *, include_hidden: bool = True) -> UnreadTotals:
		return unread_totals(self._snapshot, include_hidden=include_hidden)

	def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			with suppress(ValueError):
				self._listeners.remove(listener)

		return _unsubscribe

	def add_error_listener(self, listener: ErrorListener) -> Callable[[], None]:
		self._error_listeners.append(listener)

		def _unsubscribe() -> None:
			with suppress(ValueError):
				self._error_listeners.remove(listener)

		return _unsubscribe

	def _publish(self) -> None:
		snapshot = list(self._base)
		for overlay in self._overlays:
			snapshot = apply_overlay(snapshot, overlay.conversation_id, **overlay.changes)
		self._snapshot = tuple(snapshot)
		self._notify()

	def _notify(self) -> None:
		view = self.get_conversations()
		for listener in list(self._listeners):
			try:
				listener(view)
			except Exception:
				logger.exception("inbox listener failed")

	def _surface(self, error: ConversationError) -> None:
		self._error = error
		for listener in list(self._error_listeners):
			try:
				listener(error)
			except Exception:
				logger.exception("inbox error listener failed")

	# mutations

	async def archive(self, conversation_id: str, archived: bool = True) -> bool:
		applied = await self._mutate(
			"archive" if archived else "unarchive",
			conversation_id,
			{"archived": archived},
			MessagePatch(archived=archived),
		)
		if applied and not archived and self._filter is ConversationFilter.ARCHIVED:
			self.set_filter(ConversationFilter.ALL)
		return applied

	async def silence(self, conversation_id: str, silenced: bool = True) -> bool:
		return await self._mutate(
			"silence" if silenced else "unsilence",
			conversation_id,
			{"silenced": silenced},
			MessagePatch(silenced=silenced),
		)

	async def delete(self, conversation_id: str) -> bool:
		return await self._mutate("delete", conversation_id, {"deleted": True}, MessagePatch(deleted=True))

	async def retrieve(self, conversation_id: str) -> bool:
		return await self._mutate("retrieve", conversation_id, {"deleted": False}, MessagePatch(deleted=False))

	async def mark_read(self, conversation_id: str) -> bool:
		"""Mark messages received from the counterparty as read; the viewer's own messages are untouched."""
		return await self._mutate(
			"mark_read",
			conversation_id,
			{"unread_count": 0, "unread_offer_count": 0},
			MessagePatch(read=True),
			receiver_only=True,
		)

	def _resolve(self, conversation_id: str) -> ConversationKey:
		key = ConversationKey.decode(conversation_id)
		if not key.includes(self._viewer_id):
			raise InvalidConversationKey("viewer_not_participant")
		return key

	async def _mutate(
		self,
		operation: str,
		conversation_id: str,
		changes: Dict[str, object],
		patch: MessagePatch,
		*,
		receiver_only: bool = False,
	) -> bool:
		try:
			key = self._resolve(conversation_id)
		except InvalidConversationKey as exc:
			obs_metrics.inc_mutation(operation, "invalid")
			logger.warning("rejecting inbox mutation", extra={"operation": operation, "reason": exc.reason})
			self._surface(exc)
			return False
		tokens = obs_logging.bind_context(viewer_id=self._viewer_id, conversation_id=key.conversation_id)
		try:
			predicate = (
				PairPredicate.received_by(key, self._viewer_id) if receiver_only else PairPredicate.between(key)
			)
			overlay = _Overlay(conversation_id=key.conversation_id, changes=changes)
			self._overlays.append(overlay)
			self._publish()
			try:
				updated = await self._store.bulk_update_messages(predicate, patch)
			except asyncio.CancelledError:
				self._drop_overlay(overlay)
				raise
			except Exception:
				logger.warning("inbox mutation rejected, rolling back", extra={"operation": operation}, exc_info=True)
				self._drop_overlay(overlay)
				obs_metrics.inc_mutation(operation, "rolled_back")
				self._surface(MutationFailed(operation, key.conversation_id))
				return False
			overlay.settled_after = self._passes_started
			if isinstance(self._error, (MutationFailed, InvalidConversationKey)):
				self._error = None
			obs_metrics.inc_mutation(operation, "ok")
			logger.info("inbox mutation applied", extra={"operation": operation, "updated": updated})
			self.trigger("mutation")
			return True
		finally:
			obs_logging.reset_context(tokens)

	def _drop_overlay(self, overlay: _Overlay) -> None:
		with suppress(ValueError):
			self._overlays.remove(overlay)
		self._publish()
