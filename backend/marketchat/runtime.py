"""Process wiring for the inbox engine: backend selection and per-viewer controllers."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from marketchat import obs
from marketchat.domain.conversations.feed import ChangeFeed, InMemoryChangeFeed, RedisChangeFeed
from marketchat.domain.conversations.models import ConversationFilter
from marketchat.domain.conversations.store import InMemoryMessageStore, MessageStore, PostgresMessageStore
from marketchat.domain.conversations.sync import SyncController
from marketchat.infra import postgres
from marketchat.obs import logging as obs_logging
from marketchat.settings import settings

logger = obs_logging.get_logger(__name__)


class InboxRuntime:
	"""Hands out one started controller per viewer over a shared store and feed."""

	def __init__(self, store: MessageStore, feed: Optional[ChangeFeed] = None) -> None:
		self.store = store
		self.feed = feed
		self._controllers: Dict[str, SyncController] = {}
		self._lock = asyncio.Lock()

	async def open(
		self,
		viewer_id: str,
		*,
		initial_filter: ConversationFilter | str = ConversationFilter.ALL,
	) -> SyncController:
		async with self._lock:
			controller = self._controllers.get(viewer_id.lower())
			if controller is not None:
				return controller
			controller = SyncController(self.store, viewer_id, feed=self.feed, initial_filter=initial_filter)
			await controller.start()
			self._controllers[controller.viewer_id] = controller
		logger.info("inbox opened", extra={"open_inboxes": len(self._controllers)})
		return controller

	async def close(self, viewer_id: str) -> None:
		async with self._lock:
			controller = self._controllers.pop(viewer_id.lower(), None)
		if controller is not None:
			await controller.stop()

	def open_viewers(self) -> list[str]:
		return sorted(self._controllers)

	async def shutdown(self) -> None:
		async with self._lock:
			controllers = list(self._controllers.values())
			self._controllers.clear()
		await asyncio.gather(*(controller.stop() for controller in controllers), return_exceptions=True)


@asynccontextmanager
async def inbox_runtime(backend: Optional[str] = None) -> AsyncIterator[InboxRuntime]:
	"""Start the engine on the configured backend and tear it down on exit."""
	obs.init()
	backend = (backend or settings.inbox_backend).lower()
	if backend == "memory":
		feed: ChangeFeed = InMemoryChangeFeed()
		store: MessageStore = InMemoryMessageStore(feed=feed)
	elif backend == "postgres":
		pool = await postgres.init_pool()
		feed = RedisChangeFeed()
		store = PostgresMessageStore(pool, feed=feed)
	else:
		raise ValueError(f"unknown inbox backend: {backend}")
	runtime = InboxRuntime(store, feed)
	logger.info("inbox runtime started", extra={"backend": backend, "service": settings.service_name})
	try:
		yield runtime
	finally:
		await runtime.shutdown()
		if backend == "postgres":
			await postgres.close_pool()
