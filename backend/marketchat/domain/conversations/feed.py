"""Change-feed adapters: best-effort "something changed for this user" signals."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from typing import Any, Callable, Dict, List, Optional, Protocol

from redis.exceptions import RedisError

from marketchat.infra.redis import redis_client
from marketchat.obs import metrics as obs_metrics
from marketchat.settings import settings

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], Any]


class FeedSubscription(Protocol):
	async def close(self) -> None:
		...


class ChangeFeed(Protocol):
	async def subscribe(self, user_id: str, on_change: ChangeCallback) -> FeedSubscription:
		...

	async def publish(self, user_id: str) -> int:
		...


async def _dispatch(on_change: ChangeCallback) -> None:
	result = on_change()
	if inspect.isawaitable(result):
		await result


class _InMemorySubscription:
	def __init__(self, feed: "InMemoryChangeFeed", user_id: str, on_change: ChangeCallback) -> None:
		self._feed = feed
		self.user_id = user_id
		self.on_change = on_change
		self.closed = False

	async def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		self._feed._detach(self)


class InMemoryChangeFeed:
	"""Process-local feed used by the in-memory store and tests."""

	def __init__(self) -> None:
		self._subscribers: Dict[str, List[_InMemorySubscription]] = {}

	async def subscribe(self, user_id: str, on_change: ChangeCallback) -> _InMemorySubscription:
		subscription = _InMemorySubscription(self, user_id.lower(), on_change)
		self._subscribers.setdefault(subscription.user_id, []).append(subscription)
		return subscription

	async def publish(self, user_id: str) -> int:
		subscribers = list(self._subscribers.get(user_id.lower(), ()))
		for subscription in subscribers:
			obs_metrics.inc_feed_event("memory")
			await _dispatch(subscription.on_change)
		return len(subscribers)

	def subscriber_count(self, user_id: str) -> int:
		return len(self._subscribers.get(user_id.lower(), ()))

	def _detach(self, subscription: _InMemorySubscription) -> None:
		subscribers = self._subscribers.get(subscription.user_id)
		if not subscribers:
			return
		with suppress(ValueError):
			subscribers.remove(subscription)
		if not subscribers:
			self._subscribers.pop(subscription.user_id, None)


class RedisFeedSubscription:
	"""Listener task on one pub/sub channel that reconnects with backoff."""

	def __init__(self, client, channel: str, on_change: ChangeCallback) -> None:
		self._client = client
		self.channel = channel
		self._on_change = on_change
		self._task: Optional[asyncio.Task] = None
		self._pubsub = None
		self._closed = False

	async def start(self) -> None:
		try:
			await self._connect()
		except (RedisError, OSError):
			logger.warning("change feed subscribe failed; listener will retry", extra={"channel": self.channel}, exc_info=True)
			await self._release()
		self._task = asyncio.create_task(self._listen(), name=f"inbox-feed:{self.channel}")

	async def close(self) -> None:
		self._closed = True
		task = self._task
		if task is not None:
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task
		await self._release()

	async def _connect(self) -> None:
		pubsub = self._client.pubsub()
		self._pubsub = pubsub
		await pubsub.subscribe(self.channel)

	async def _release(self) -> None:
		pubsub, self._pubsub = self._pubsub, None
		if pubsub is None:
			return
		with suppress(RedisError, OSError):
			await pubsub.unsubscribe(self.channel)
		with suppress(RedisError, OSError):
			await pubsub.aclose()

	async def _listen(self) -> None:
		initial = max(0.05, float(settings.inbox_feed_reconnect_seconds))
		ceiling = max(initial, float(settings.inbox_feed_max_backoff_seconds))
		backoff = initial
		while not self._closed:
			try:
				if self._pubsub is None:
					obs_metrics.inc_feed_reconnect("redis")
					await self._connect()
				backoff = initial
				while not self._closed:
					message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
					if message is None:
						continue
					obs_metrics.inc_feed_event("redis")
					await _dispatch(self._on_change)
			except asyncio.CancelledError:
				raise
			except (RedisError, OSError):
				# Disconnects are tolerated; the poll keeps the inbox eventually consistent.
				logger.warning("change feed disconnected", extra={"channel": self.channel, "retry_in": backoff})
				await self._release()
				await asyncio.sleep(backoff)
				backoff = min(backoff * 2, ceiling)


class RedisChangeFeed:
	"""Redis pub/sub feed on ``<prefix>:<user_id>`` channels."""

	def __init__(self, client=None, *, prefix: Optional[str] = None) -> None:
		self._client = client if client is not None else redis_client
		self._prefix = prefix or settings.inbox_feed_channel_prefix

	def channel_for(self, user_id: str) -> str:
		return f"{self._prefix}:{user_id.lower()}"

	async def subscribe(self, user_id: str, on_change: ChangeCallback) -> RedisFeedSubscription:
		subscription = RedisFeedSubscription(self._client, self.channel_for(user_id), on_change)
		await subscription.start()
		return subscription

	async def publish(self, user_id: str) -> int:
		# Payload is informational only; subscribers always re-fetch.
		return int(await self._client.publish(self.channel_for(user_id), "changed"))
