"""Pydantic schemas validating message rows at the store boundary."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from marketchat.obs import metrics as obs_metrics

from .exceptions import MalformedMessage
from .models import ItemSnapshot, Message, ProfileSnapshot

logger = logging.getLogger(__name__)


class ProfileRecord(BaseModel):
	model_config = ConfigDict(extra="ignore")

	username: Optional[str] = None
	avatar_url: Optional[str] = None

	def to_snapshot(self) -> ProfileSnapshot:
		return ProfileSnapshot(username=self.username, avatar_url=self.avatar_url)


class ItemRecord(BaseModel):
	model_config = ConfigDict(extra="ignore")

	id: str
	title: Optional[str] = None
	images: List[str] = Field(default_factory=list)

	@field_validator("images", mode="before")
	@classmethod
	def _null_images(cls, value: Any) -> Any:
		return value or []

	def to_snapshot(self) -> ItemSnapshot:
		return ItemSnapshot(id=self.id, title=self.title, image=self.images[0] if self.images else None)


class MessageRecord(BaseModel):
	"""One row of the message log as returned by the store, with embedded snapshots."""

	model_config = ConfigDict(extra="ignore", populate_by_name=True)

	id: str = Field(..., min_length=1)
	sender_id: str = Field(..., min_length=1)
	receiver_id: str = Field(..., min_length=1)
	content: Optional[str] = None
	created_at: datetime
	item_id: Optional[str] = None
	offer_item_id: Optional[str] = None
	attachment_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("attachment_url", "image_url"))
	read: bool = False
	archived: bool = False
	deleted: bool = False
	silenced: bool = False
	sender: Optional[ProfileRecord] = None
	receiver: Optional[ProfileRecord] = None
	item: Optional[ItemRecord] = Field(default=None, validation_alias=AliasChoices("item", "items"))
	offer_item: Optional[ItemRecord] = None

	@field_validator("read", "archived", "deleted", "silenced", mode="before")
	@classmethod
	def _null_flags(cls, value: Any) -> Any:
		return False if value is None else value

	@field_validator("created_at")
	@classmethod
	def _aware(cls, value: datetime) -> datetime:
		if value.tzinfo is None:
			return value.replace(tzinfo=timezone.utc)
		return value

	@model_validator(mode="after")
	def _content_or_attachment(self) -> "MessageRecord":
		if not (self.content and self.content.strip()) and not self.attachment_url:
			raise ValueError("content is required unless the message carries an attachment")
		return self

	def to_model(self) -> Message:
		return Message(
			id=self.id,
			sender_id=self.sender_id,
			receiver_id=self.receiver_id,
			content=self.content or "",
			created_at=self.created_at,
			item_id=self.item_id,
			offer_item_id=self.offer_item_id,
			attachment_url=self.attachment_url,
			read=self.read,
			archived=self.archived,
			deleted=self.deleted,
			silenced=self.silenced,
			sender=self.sender.to_snapshot() if self.sender else None,
			receiver=self.receiver.to_snapshot() if self.receiver else None,
			item=self.item.to_snapshot() if self.item else None,
			offer_item=self.offer_item.to_snapshot() if self.offer_item else None,
		)


def parse_message(row: Mapping[str, Any]) -> Message:
	try:
		return MessageRecord.model_validate(dict(row)).to_model()
	except ValidationError as exc:
		raise MalformedMessage(f"malformed_message:{exc.error_count()}") from exc


def parse_messages(rows: Iterable[Mapping[str, Any]]) -> list[Message]:
	"""Validate rows, dropping the ones that fail instead of failing the batch."""
	messages: list[Message] = []
	for row in rows:
		try:
			messages.append(parse_message(row))
		except MalformedMessage as exc:
			obs_metrics.inc_dropped("malformed_row")
			logger.warning("dropping malformed message row", extra={"message_id": row.get("id"), "reason": exc.reason})
	return messages
