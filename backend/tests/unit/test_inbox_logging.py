import json
import logging

from marketchat.obs.logging import JSONLogFormatter, bind_context, reset_context


def _record(**extra):
    record = logging.LogRecord("marketchat.test", logging.WARNING, __file__, 1, "inbox pass", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_bound_context():
    tokens = bind_context(viewer_id="viewer-1", sync_source="poll")
    try:
        payload = json.loads(JSONLogFormatter().format(_record(conversations=3)))
    finally:
        reset_context(tokens)

    assert payload["msg"] == "inbox pass"
    assert payload["level"] == "warning"
    assert payload["viewer_id"] == "viewer-1"
    assert payload["sync_source"] == "poll"
    assert payload["conversations"] == 3
    assert "conversation_id" not in payload


def test_message_content_is_redacted():
    payload = json.loads(JSONLogFormatter().format(_record(content="my phone number", sender_avatar_url="x")))

    assert payload["content"] == "[redacted]"
    assert payload["sender_avatar_url"] == "[redacted]"


def test_context_is_reset():
    tokens = bind_context(conversation_id="dm:a:b")
    reset_context(tokens)

    payload = json.loads(JSONLogFormatter().format(_record()))

    assert "conversation_id" not in payload
