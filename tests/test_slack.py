"""Tests for the Slack sink."""

from unittest.mock import MagicMock, patch

import pytest

from request_dispatch.core import notify
from request_dispatch.db.models import Notification
from request_dispatch.integrations import slack as slack_mod


def _client():
    client = MagicMock()
    client.chat_postMessage.return_value = {"channel": "C123", "ts": "1700000000.000100"}
    return client


class TestSendMessage:
    def test_requires_token(self):
        with pytest.raises(slack_mod.SlackError):
            slack_mod.send_message(None, "#ops", "hello")

    def test_no_client_without_token(self):
        assert slack_mod.get_client(None) is None
        assert slack_mod.get_client("") is None

    @patch("slack_sdk.WebClient")
    def test_builds_client_from_token(self, mock_client_cls):
        mock_client_cls.return_value = _client()
        msg = slack_mod.send_message("xoxb-test", "#ops", "hello")
        mock_client_cls.assert_called_once_with(token="xoxb-test")
        assert msg.ts == "1700000000.000100"
        assert msg.channel == "C123"


class TestFormatting:
    def test_includes_refs(self):
        n = Notification(
            "eng-a", notify.ENGINEER_ASSIGNED, "You've been assigned a project",
            "'Mobile App' by Acme", request_id="mobile-app", task_id="build-it",
        )
        [block] = slack_mod.format_notification(n)
        text = block["text"]["text"]
        assert text.startswith(":hammer_and_wrench: *You've been assigned a project*")
        assert "Request: `mobile-app`" in text
        assert "Task: `build-it`" in text
        assert "For: eng-a" in text

    def test_unknown_type(self):
        [block] = slack_mod.format_notification(Notification("pm-a", "OTHER", "x"))
        assert block["text"]["text"].startswith(":grey_question:")


class TestSlackSink:
    def test_posts_to_channel(self):
        client = _client()
        sink = slack_mod.SlackSink("xoxb-test", "#ops", client=client)
        sink.deliver(Notification("pm-a", notify.PM_ASSIGNED, "New project assigned", "'X' from Acme"))

        kwargs = client.chat_postMessage.call_args.kwargs
        assert kwargs["channel"] == "#ops"
        assert kwargs["text"] == "New project assigned: 'X' from Acme"
        assert kwargs["blocks"][0]["type"] == "section"

    def test_failure_isolated_by_bus(self):
        client = _client()
        client.chat_postMessage.side_effect = RuntimeError("rate limited")
        sink = slack_mod.SlackSink("xoxb-test", "#ops", client=client)
        bus = notify.EventBus([sink], background=False)
        bus.publish([Notification("pm-a", notify.PM_ASSIGNED, "x")])
        client.chat_postMessage.assert_called_once()
