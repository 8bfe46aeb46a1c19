"""Tests for Gmail API error classification, read retry and the client calls."""

from __future__ import annotations

import base64
import json
import socket
from datetime import datetime, timezone
from email.message import EmailMessage
from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError
from httplib2 import Response

from mailrelay.gmail.client import GmailClient
from mailrelay.gmail.retry import _is_retryable, execute_with_retry, is_rate_limit_error


def _http_error(status: int, reason: str | None = None, message: str = "error") -> HttpError:
    body: dict = {"error": {"code": status, "message": message}}
    if reason:
        body["error"]["errors"] = [{"reason": reason, "message": message}]
    return HttpError(Response({"status": status}), json.dumps(body).encode())


class TestIsRetryable:
    def test_network_errors(self):
        assert _is_retryable(socket.gaierror("DNS resolution failed"))
        assert _is_retryable(ConnectionResetError("Connection reset by peer"))
        assert _is_retryable(TimeoutError("timed out"))

    def test_server_errors(self):
        assert _is_retryable(_http_error(503))
        assert _is_retryable(_http_error(429))

    def test_client_errors_not_retryable(self):
        assert not _is_retryable(_http_error(404))
        assert not _is_retryable(_http_error(400))

    def test_chained_socket_error(self):
        cause = socket.gaierror("DNS failed")
        exc = Exception("wrapper")
        exc.__cause__ = cause
        assert _is_retryable(exc)


class TestIsRateLimitError:
    def test_http_429(self):
        assert is_rate_limit_error(_http_error(429))

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"])
    def test_http_403_with_rate_reason(self, reason):
        assert is_rate_limit_error(_http_error(403, reason, message="Slow down"))

    def test_http_403_forbidden_is_not(self):
        assert not is_rate_limit_error(_http_error(403, "forbidden", message="Forbidden"))

    def test_http_400_is_not(self):
        assert not is_rate_limit_error(_http_error(400, "invalidArgument", message="Invalid To header"))

    def test_message_mentions_quota(self):
        assert is_rate_limit_error(RuntimeError("Daily sending quota exceeded"))
        assert is_rate_limit_error(RuntimeError("421 rate limit, try later"))

    def test_plain_error_is_not(self):
        assert not is_rate_limit_error(ValueError("bad address"))


class TestExecuteWithRetry:
    @patch("mailrelay.gmail.retry.time.sleep")
    def test_succeeds_first_try(self, mock_sleep):
        request = MagicMock()
        request.execute.return_value = {"id": "123"}

        assert execute_with_retry(request, operation="test") == {"id": "123"}
        mock_sleep.assert_not_called()

    @patch("mailrelay.gmail.retry.time.sleep")
    def test_exponential_backoff_delays(self, mock_sleep):
        request = MagicMock()
        request.execute.side_effect = [
            socket.gaierror("fail 1"),
            _http_error(503),
            ConnectionError("fail 3"),
            {"ok": True},
        ]

        result = execute_with_retry(request, max_retries=3, base_delay=1.0, operation="test")

        assert result == {"ok": True}
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 4.0]

    @patch("mailrelay.gmail.retry.time.sleep")
    def test_gives_up_after_max_retries(self, mock_sleep):
        request = MagicMock()
        request.execute.side_effect = socket.gaierror("DNS resolution failed")

        with pytest.raises(socket.gaierror):
            execute_with_retry(request, max_retries=2, base_delay=0.1, operation="test")

        assert request.execute.call_count == 3

    @patch("mailrelay.gmail.retry.time.sleep")
    def test_does_not_retry_client_error(self, mock_sleep):
        request = MagicMock()
        request.execute.side_effect = _http_error(404)

        with pytest.raises(HttpError):
            execute_with_retry(request, operation="test")

        request.execute.assert_called_once()
        mock_sleep.assert_not_called()


def _raw(subject: str) -> str:
    msg = EmailMessage()
    msg["From"] = "alice@example.com"
    msg["To"] = "relay@example.com"
    msg["Subject"] = subject
    msg.set_content("hello")
    return base64.urlsafe_b64encode(msg.as_bytes()).decode()


class TestGmailClient:
    def _client(self):
        service = MagicMock()
        return GmailClient(service, "relay@example.com"), service.users.return_value.messages.return_value

    def test_list_since_paginates_oldest_first(self):
        client, messages = self._client()
        messages.list.return_value.execute.side_effect = [
            {"messages": [{"id": "m4"}, {"id": "m3"}], "nextPageToken": "p2"},
            {"messages": [{"id": "m2"}, {"id": "m1"}]},
        ]
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)

        ids = client.list_message_ids_since(since, page_size=2)

        assert ids == ["m1", "m2", "m3", "m4"]
        first_call = messages.list.call_args_list[0].kwargs
        assert first_call["q"] == f"after:{int(since.timestamp())}"
        assert first_call["maxResults"] == 2
        assert messages.list.call_args_list[1].kwargs["pageToken"] == "p2"

    def test_list_error_propagates(self):
        client, messages = self._client()
        messages.list.return_value.execute.side_effect = _http_error(401)

        with pytest.raises(HttpError):
            client.list_message_ids_since(datetime.now(timezone.utc))

    def test_get_message_decodes_raw(self):
        client, messages = self._client()
        messages.get.return_value.execute.return_value = {"id": "m1", "raw": _raw("urgent - Bob")}

        msg = client.get_message("m1")

        assert msg.id == "m1"
        assert msg.subject == "urgent - Bob"
        assert messages.get.call_args.kwargs["format"] == "raw"

    def test_get_message_failure_returns_none(self):
        client, messages = self._client()
        messages.get.return_value.execute.side_effect = _http_error(404)

        assert client.get_message("gone") is None

    def test_send_encodes_raw_once(self):
        client, messages = self._client()
        messages.send.return_value.execute.return_value = {"id": "sent-1"}
        outgoing = EmailMessage()
        outgoing["To"] = "t@example.com"
        outgoing.set_content("hi")

        assert client.send(outgoing) == "sent-1"
        body = messages.send.call_args.kwargs["body"]
        assert base64.urlsafe_b64decode(body["raw"]) == outgoing.as_bytes()
        messages.send.return_value.execute.assert_called_once()
