"""
Tests for change events and webhook delivery.

HTTP is mocked; nothing here touches the network.
"""

import json
from unittest.mock import MagicMock

import pytest
import requests

from taskboard import events
from taskboard.events import ANY, ChangeEmitter
from taskboard.webhooks import Webhook, WebhookDispatcher


def ok_response(status=200):
    r = MagicMock()
    r.ok = 200 <= status < 300
    r.status_code = status
    return r


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ChangeEmitter
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestChangeEmitter:

    def test_event_shape(self):
        emitter = ChangeEmitter()
        received = []
        emitter.subscribe(events.CARD_MOVED, received.append)
        emitter.emit(events.CARD_MOVED, "b1", cardId="c1")
        assert len(received) == 1
        event = received[0]
        assert event["event"] == "card.moved"
        assert event["boardId"] == "b1"
        assert event["data"] == {"cardId": "c1"}
        assert event["timestamp"].endswith("Z")

    def test_any_receives_everything(self):
        emitter = ChangeEmitter()
        received = []
        emitter.subscribe(ANY, received.append)
        emitter.emit(events.BOARD_CREATED, "b1")
        emitter.emit(events.CARD_DELETED, "b1")
        assert [e["event"] for e in received] == ["board.created", "card.deleted"]

    def test_failing_subscriber_does_not_stop_others(self, caplog):
        emitter = ChangeEmitter()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        emitter.subscribe(events.CARD_CREATED, broken)
        emitter.subscribe(events.CARD_CREATED, received.append)
        emitter.emit(events.CARD_CREATED, "b1")
        assert len(received) == 1
        assert "boom" in caplog.text

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            ChangeEmitter().subscribe("card.exploded", print)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# WebhookDispatcher
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestWebhook:

    def test_from_dict_defaults_to_all_events(self):
        hook = Webhook.from_dict({"url": "http://x"})
        assert hook.wants("card.moved")

    def test_filtered_events(self):
        hook = Webhook.from_dict({"url": "http://x", "events": ["card.created"]})
        assert hook.wants("card.created")
        assert not hook.wants("card.deleted")

    def test_unknown_events_rejected(self):
        with pytest.raises(ValueError):
            Webhook.from_dict({"url": "http://x", "events": ["nope"]})


class TestDispatcher:

    def make(self, *hooks):
        session = MagicMock()
        session.post.return_value = ok_response()
        dispatcher = WebhookDispatcher(list(hooks), session=session)
        emitter = ChangeEmitter()
        dispatcher.attach(emitter)
        return dispatcher, emitter, session

    def test_posts_json_to_subscribed_hooks(self):
        dispatcher, emitter, session = self.make(
            Webhook("http://a", events=["card.created"]),
            Webhook("http://b", events=["card.deleted"]),
        )
        emitter.emit(events.CARD_CREATED, "b1", cardId="c1")
        dispatcher.drain()
        assert session.post.call_count == 1
        args, kwargs = session.post.call_args
        assert args[0] == "http://a"
        body = json.loads(kwargs["data"].decode("utf-8"))
        assert body["event"] == "card.created"
        assert body["data"]["cardId"] == "c1"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        dispatcher.close()

    def test_secret_header(self):
        dispatcher, emitter, session = self.make(Webhook("http://a", secret="s3"))
        emitter.emit(events.BOARD_UPDATED, "b1")
        dispatcher.drain()
        assert session.post.call_args[1]["headers"]["X-Webhook-Secret"] == "s3"
        dispatcher.close()

    def test_failure_is_queued_then_retried(self):
        dispatcher, emitter, session = self.make(Webhook("http://a"))
        session.post.side_effect = [requests.ConnectionError("down"), ok_response(), ok_response()]
        emitter.emit(events.CARD_CREATED, "b1", cardId="first")
        dispatcher.drain()
        assert dispatcher.pending_retries == 1

        emitter.emit(events.CARD_CREATED, "b1", cardId="second")
        dispatcher.drain()
        assert dispatcher.pending_retries == 0
        sent = [json.loads(c[1]["data"])["data"]["cardId"] for c in session.post.call_args_list]
        assert sent == ["first", "second", "first"]
        dispatcher.close()

    def test_http_error_status_counts_as_failure(self, caplog):
        dispatcher, emitter, session = self.make(Webhook("http://a"))
        session.post.return_value = ok_response(500)
        emitter.emit(events.CARD_CREATED, "b1")
        dispatcher.drain()
        assert dispatcher.pending_retries == 1
        assert "HTTP 500" in caplog.text
        dispatcher.close()
