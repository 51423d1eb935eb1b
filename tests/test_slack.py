"""Tests for the Slack notification sink."""

import logging
from unittest.mock import MagicMock, patch

import pytest

from plan_orchestrator.integrations.slack import (
    LogNotifier,
    SlackError,
    SlackNotifier,
    format_notification,
    get_client,
    send_message,
)


class TestClient:
    def test_no_token(self):
        assert get_client(None) is None
        assert get_client("") is None

    def test_send_without_token_raises(self):
        with pytest.raises(SlackError, match="not configured"):
            send_message(None, "#general", "hello")

    @patch("plan_orchestrator.integrations.slack.get_client")
    def test_send_message(self, mock_get_client):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C123", "ts": "1700000000.000100"}
        mock_get_client.return_value = client

        msg = send_message("xoxb-test", "#general", "hello")

        client.chat_postMessage.assert_called_once_with(
            channel="#general", text="hello", blocks=None
        )
        assert msg.channel == "C123"
        assert msg.ts == "1700000000.000100"


class TestFormatting:
    def test_success_block(self):
        blocks = format_notification("Project completed", "All 4 tasks done", type="success")
        assert blocks[0]["text"]["text"] == ":white_check_mark: *Project completed*\nAll 4 tasks done"

    def test_high_priority_and_unknown_type(self):
        text = format_notification("Odd", "msg", type="mystery", priority="high")[0]["text"]["text"]
        assert text.startswith(":grey_question: *Odd* :rotating_light:")


class TestNotifiers:
    @patch("plan_orchestrator.integrations.slack.send_message")
    def test_slack_notifier_posts(self, mock_send):
        SlackNotifier("xoxb-test", "#ops").notify("Milestone reached: Alpha", "2 tasks", type="success")

        args, kwargs = mock_send.call_args
        assert args == ("xoxb-test", "#ops", "Milestone reached: Alpha: 2 tasks")
        assert ":white_check_mark:" in kwargs["blocks"][0]["text"]["text"]

    @patch("plan_orchestrator.integrations.slack.send_message")
    def test_slack_notifier_wraps_errors(self, mock_send):
        mock_send.side_effect = RuntimeError("channel_not_found")
        with pytest.raises(SlackError, match="#ops"):
            SlackNotifier("xoxb-test", "#ops").notify("T", "M")

    def test_log_notifier(self, caplog):
        with caplog.at_level(logging.INFO, logger="plan_orchestrator.integrations.slack"):
            LogNotifier().notify("Project completed", "Essay", type="success")
        assert "Project completed: Essay" in caplog.text
