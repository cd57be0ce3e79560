"""Message store contract and its in-memory and Postgres implementations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Protocol

import asyncpg

from marketchat.infra.postgres import get_pool

from .exceptions import StoreUnavailable
from .feed import ChangeFeed
from .models import ConversationKey, Message, MessagePatch, PairPredicate
from .schemas import parse_messages

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
	async def fetch_messages_for_user(self, user_id: str) -> List[Message]:
		...

	async def insert_message(self, message: Message) -> Message:
		...

	async def bulk_update_messages(self, predicate: PairPredicate, patch: MessagePatch) -> int:
		...


async def _notify_participants(feed: Optional[ChangeFeed], user_ids: Iterable[str]) -> None:
	if feed is None:
		return
	for user_id in sorted(set(user_ids)):
		await feed.publish(user_id)


class InMemoryMessageStore:
	"""Append-only message log kept in process memory."""

	def __init__(self, messages: Iterable[Message] = (), *, feed: Optional[ChangeFeed] = None) -> None:
		self._lock = asyncio.Lock()
		self._messages: Dict[str, Message] = {message.id: message for message in messages}
		self._feed = feed

	async def fetch_messages_for_user(self, user_id: str) -> List[Message]:
		async with self._lock:
			visible = [message for message in self._messages.values() if message.is_participant(user_id)]
		visible.sort(key=lambda message: message.recency, reverse=True)
		return visible

	async def insert_message(self, message: Message) -> Message:
		key = ConversationKey.from_participants(message.sender_id, message.receiver_id)
		async with self._lock:
			existing = self._messages.get(message.id)
			if existing is not None:
				return existing
			self._messages[message.id] = message
		await _notify_participants(self._feed, key.participants())
		return message

	async def bulk_update_messages(self, predicate: PairPredicate, patch: MessagePatch) -> int:
		changes = patch.changes()
		updated = 0
		async with self._lock:
			for message_id, message in list(self._messages.items()):
				if not predicate.matches(message):
					continue
				patched = replace(message, **changes)
				if patched != message:
					self._messages[message_id] = patched
					updated += 1
		if updated:
			await _notify_participants(self._feed, (predicate.user_a, predicate.user_b))
		return updated

	async def get_message(self, message_id: str) -> Optional[Message]:
		async with self._lock:
			return self._messages.get(message_id)


_FETCH_SQL = """
SELECT
	m.id::text AS id,
	m.sender_id::text AS sender_id,
	m.receiver_id::text AS receiver_id,
	m.content,
	m.created_at,
	m.item_id::text AS item_id,
	m.offer_item_id::text AS offer_item_id,
	m.image_url,
	m.read,
	m.archived,
	m.deleted,
	m.silenced,
	s.username AS sender_username,
	s.avatar_url AS sender_avatar_url,
	r.username AS receiver_username,
	r.avatar_url AS receiver_avatar_url,
	i.title AS item_title,
	i.images AS item_images,
	o.title AS offer_item_title,
	o.images AS offer_item_images
FROM messages m
LEFT JOIN users s ON s.id = m.sender_id
LEFT JOIN users r ON r.id = m.receiver_id
LEFT JOIN items i ON i.id = m.item_id
LEFT JOIN items o ON o.id = m.offer_item_id
WHERE m.sender_id::text = $1 OR m.receiver_id::text = $1
ORDER BY m.created_at DESC
"""

_INSERT_SQL = """
INSERT INTO messages (id, sender_id, receiver_id, content, created_at, item_id, offer_item_id, image_url, read)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
ON CONFLICT (id) DO NOTHING
"""


def _row_to_record(row: Any) -> Dict[str, Any]:
	"""Nest the flat join columns into the shape the boundary schema expects."""
	record: Dict[str, Any] = {
		"id": row["id"],
		"sender_id": row["sender_id"],
		"receiver_id": row["receiver_id"],
		"content": row["content"],
		"created_at": row["created_at"],
		"item_id": row["item_id"],
		"offer_item_id": row["offer_item_id"],
		"image_url": row["image_url"],
		"read": row["read"],
		"archived": row["archived"],
		"deleted": row["deleted"],
		"silenced": row["silenced"],
		"sender": {"username": row["sender_username"], "avatar_url": row["sender_avatar_url"]},
		"receiver": {"username": row["receiver_username"], "avatar_url": row["receiver_avatar_url"]},
	}
	if row["item_id"] is not None:
		record["items"] = {"id": row["item_id"], "title": row["item_title"], "images": row["item_images"]}
	if row["offer_item_id"] is not None:
		record["offer_item"] = {
			"id": row["offer_item_id"],
			"title": row["offer_item_title"],
			"images": row["offer_item_images"],
		}
	return record


def build_update_query(predicate: PairPredicate, patch: MessagePatch) -> tuple[str, list[object]]:
	changes = patch.changes()
	params: List[object] = [predicate.user_a, predicate.user_b]
	assignments = []
	for column, value in changes.items():
		params.append(value)
		assignments.append(f"{column} = ${len(params)}")
	where = [
		"((sender_id::text = $1 AND receiver_id::text = $2) OR (sender_id::text = $2 AND receiver_id::text = $1))"
	]
	if predicate.receiver_id is not None:
		params.append(predicate.receiver_id)
		where.append(f"receiver_id::text = ${len(params)}")
	if predicate.unread_only:
		where.append("read = false")
	query = f"UPDATE messages SET {', '.join(assignments)} WHERE {' AND '.join(where)}"
	return query, params


def _affected_rows(status: str) -> int:
	# asyncpg returns the command tag, e.g. "UPDATE 3"
	try:
		return int(status.rsplit(" ", 1)[-1])
	except (AttributeError, ValueError):
		return 0


class PostgresMessageStore:
	"""Store backed by asyncpg, joining profile and item snapshots in one query."""

	def __init__(self, pool: Optional[asyncpg.pool.Pool] = None, *, feed: Optional[ChangeFeed] = None) -> None:
		self._pool = pool
		self._feed = feed

	async def _acquire_pool(self) -> asyncpg.pool.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	async def fetch_messages_for_user(self, user_id: str) -> List[Message]:
		try:
			pool = await self._acquire_pool()
			async with pool.acquire() as conn:
				rows = await conn.fetch(_FETCH_SQL, user_id.lower())
		except (asyncpg.PostgresError, OSError) as exc:
			raise StoreUnavailable("fetch_failed") from exc
		return parse_messages(_row_to_record(row) for row in rows)

	async def insert_message(self, message: Message) -> Message:
		key = ConversationKey.from_participants(message.sender_id, message.receiver_id)
		try:
			pool = await self._acquire_pool()
			async with pool.acquire() as conn:
				await conn.execute(
					_INSERT_SQL,
					message.id,
					message.sender_id,
					message.receiver_id,
					message.content,
					message.created_at,
					message.item_id,
					message.offer_item_id,
					message.attachment_url,
					message.read,
				)
		except (asyncpg.PostgresError, OSError) as exc:
			raise StoreUnavailable("insert_failed") from exc
		await _notify_participants(self._feed, key.participants())
		return message

	async def bulk_update_messages(self, predicate: PairPredicate, patch: MessagePatch) -> int:
		query, params = build_update_query(predicate, patch)
		try:
			pool = await self._acquire_pool()
			async with pool.acquire() as conn:
				status = await conn.execute(query, *params)
		except (asyncpg.PostgresError, OSError) as exc:
			raise StoreUnavailable("update_failed") from exc
		updated = _affected_rows(status)
		if updated:
			await _notify_participants(self._feed, (predicate.user_a, predicate.user_b))
		return updated
