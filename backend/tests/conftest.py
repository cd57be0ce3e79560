import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from marketchat.infra.redis import redis_client, set_redis_client
from marketchat.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep background timers out of the way unless a test opts in."""
	original_poll = settings.inbox_poll_interval_seconds
	original_reconnect = settings.inbox_feed_reconnect_seconds
	settings.inbox_poll_interval_seconds = 0
	settings.inbox_feed_reconnect_seconds = 0.05
	try:
		yield
	finally:
		settings.inbox_poll_interval_seconds = original_poll
		settings.inbox_feed_reconnect_seconds = original_reconnect
