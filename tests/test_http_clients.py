"""Tests for the REST clients: retry policy, Evolution, Google Calendar, transcription."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import httpx
import pytest

from sdr_agent.services.calendar_client import CalendarAPIError, GoogleCalendarClient
from sdr_agent.services.http import INITIAL_BACKOFF_SECONDS, MAX_RETRIES
from sdr_agent.services.transcription import TranscriptionClient
from sdr_agent.services.whatsapp_client import WhatsAppAPIError, WhatsAppClient

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    mock.content = json.dumps(data).encode() if data is not None else b""
    return mock


def _calendar() -> GoogleCalendarClient:
    credentials = MagicMock()
    credentials.valid = True
    credentials.token = "ya29.test"
    return GoogleCalendarClient(base_url="https://calendar.test", credentials=credentials)


START = datetime(2026, 1, 13, 13, 0, tzinfo=UTC)
END = datetime(2026, 1, 13, 14, 0, tzinfo=UTC)


# ── Tests: retry policy ──────────────────────────────────────────────


@patch("sdr_agent.services.http.time.sleep")
class TestRetries:
    def test_retries_on_5xx_then_succeeds(self, mock_sleep):
        client = WhatsAppClient()
        responses = [_mock_response({"error": "boom"}, 502), _mock_response({"key": {}})]

        with patch.object(client._client, "request", side_effect=responses) as mock_req:
            client.send_text("chat1", "5511999990000", "Oi")

        assert mock_req.call_count == 2
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    def test_retries_on_timeout_until_exhausted(self, mock_sleep):
        client = WhatsAppClient()
        with patch.object(
            client._client, "request", side_effect=httpx.ConnectTimeout("slow"),
        ) as mock_req, pytest.raises(WhatsAppAPIError):
            client.send_text("chat1", "5511999990000", "Oi")

        assert mock_req.call_count == MAX_RETRIES
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_4xx_is_not_retried(self, mock_sleep):
        client = WhatsAppClient()
        with patch.object(
            client._client, "request", return_value=_mock_response({"error": "bad"}, 400),
        ) as mock_req, pytest.raises(WhatsAppAPIError) as excinfo:
            client.send_text("chat1", "5511999990000", "Oi")

        assert excinfo.value.status_code == 400
        assert mock_req.call_count == 1
        mock_sleep.assert_not_called()

    def test_exhausted_5xx_keeps_status_code(self, mock_sleep):
        client = WhatsAppClient()
        with patch.object(
            client._client, "request", return_value=_mock_response({}, 503),
        ), pytest.raises(WhatsAppAPIError) as excinfo:
            client.send_text("chat1", "5511999990000", "Oi")
        assert excinfo.value.status_code == 503


# ── Tests: Evolution API ─────────────────────────────────────────────


class TestWhatsAppClient:
    def test_send_text_formats_number_and_uses_instance(self):
        client = WhatsAppClient()
        with patch.object(client._client, "request", return_value=_mock_response({})) as mock_req:
            client.send_text("chat2", "(11) 99999-0000", "Olá")

        method, path = mock_req.call_args.args
        assert (method, path) == ("POST", "/message/sendText/chat2")
        assert mock_req.call_args.kwargs["json"] == {"number": "5511999990000", "text": "Olá"}

    def test_group_ids_are_untouched(self):
        client = WhatsAppClient()
        with patch.object(client._client, "request", return_value=_mock_response({})) as mock_req:
            client.send_text("chat1", "120363000@g.us", "Aviso")
        assert mock_req.call_args.kwargs["json"]["number"] == "120363000@g.us"

    def test_media_download_failure_returns_none(self):
        client = WhatsAppClient()
        with patch.object(client._client, "request", return_value=_mock_response({}, 404)):
            assert client.get_media_base64("chat1", "MSG1") is None

    def test_find_messages_unwraps_records(self):
        client = WhatsAppClient()
        wrapped = {"messages": {"records": [{"key": {"id": "A"}}]}}
        with patch.object(client._client, "request", return_value=_mock_response(wrapped)):
            assert client.find_messages("chat1", "5511@s.whatsapp.net") == [{"key": {"id": "A"}}]

    def test_connection_state(self):
        client = WhatsAppClient()
        body = {"instance": {"instanceName": "chat1", "state": "open"}}
        with patch.object(client._client, "request", return_value=_mock_response(body)):
            assert client.connection_state("chat1") == "open"


# ── Tests: Google Calendar ───────────────────────────────────────────


class TestGoogleCalendarClient:
    def test_free_busy_parses_intervals(self):
        client = _calendar()
        body = {
            "calendars": {
                "cal-ana": {"busy": [{"start": "2026-01-13T13:00:00Z", "end": "2026-01-13T13:30:00Z"}]},
                "cal-bruno": {"busy": []},
            }
        }
        with patch.object(client._client, "request", return_value=_mock_response(body)) as mock_req:
            result = client.free_busy(["cal-ana", "cal-bruno"], START, END)

        assert result["cal-bruno"] == []
        assert result["cal-ana"][0].start == START
        assert mock_req.call_args.kwargs["headers"] == {"Authorization": "Bearer ya29.test"}

    def test_calendar_with_errors_counts_as_busy(self):
        client = _calendar()
        body = {"calendars": {"cal-ana": {"errors": [{"reason": "notFound"}]}}}
        with patch.object(client._client, "request", return_value=_mock_response(body)):
            result = client.free_busy(["cal-ana"], START, END)
        assert result["cal-ana"][0].start == START
        assert result["cal-ana"][0].end == END

    def test_create_event_returns_meet_link(self):
        client = _calendar()
        body = {
            "id": "evt123",
            "conferenceData": {
                "entryPoints": [
                    {"entryPointType": "phone", "uri": "tel:+55"},
                    {"entryPointType": "video", "uri": "https://meet.google.com/abc"},
                ]
            },
        }
        with patch.object(client._client, "request", return_value=_mock_response(body)) as mock_req:
            created = client.create_event("cal-ana@group", "Demo", "desc", START, END)

        assert created.event_id == "evt123"
        assert created.join_link == "https://meet.google.com/abc"
        assert mock_req.call_args.args[1] == "/calendars/cal-ana%40group/events"
        assert mock_req.call_args.kwargs["params"] == {"conferenceDataVersion": 1}

    @patch("sdr_agent.services.http.time.sleep")
    def test_retried_insert_reuses_the_event_id(self, mock_sleep):
        client = _calendar()
        side_effects = [httpx.ReadTimeout("slow"), _mock_response({"id": "evt2"})]
        with patch.object(client._client, "request", side_effect=side_effects) as mock_req:
            client.create_event("cal-ana", "Demo", "desc", START, END)

        ids = [c.kwargs["json"]["id"] for c in mock_req.call_args_list]
        assert len(ids) == 2
        assert ids[0] == ids[1]
        assert set(ids[0]) <= set("0123456789abcdefghijklmnopqrstuv")

    @patch("sdr_agent.services.http.time.sleep")
    def test_conflict_after_lost_response_returns_stored_event(self, mock_sleep):
        client = _calendar()
        stored = {
            "id": "already-there",
            "conferenceData": {
                "entryPoints": [{"entryPointType": "video", "uri": "https://meet.google.com/xyz"}]
            },
        }
        side_effects = [
            httpx.ReadTimeout("slow"),
            _mock_response({"error": "duplicate"}, 409),
            _mock_response(stored),
        ]
        with patch.object(client._client, "request", side_effect=side_effects) as mock_req:
            created = client.create_event("cal-ana", "Demo", "desc", START, END)

        assert created.event_id == "already-there"
        assert created.join_link == "https://meet.google.com/xyz"
        sent_id = mock_req.call_args_list[0].kwargs["json"]["id"]
        get_call = mock_req.call_args_list[2]
        assert get_call.args == ("GET", f"/calendars/cal-ana/events/{sent_id}")

    def test_create_event_without_id_raises(self):
        client = _calendar()
        with patch.object(client._client, "request", return_value=_mock_response({})), \
                pytest.raises(CalendarAPIError):
            client.create_event("cal-ana", "Demo", "desc", START, END)

    def test_delete_of_missing_event_is_success(self):
        client = _calendar()
        with patch.object(client._client, "request", return_value=_mock_response({}, 410)):
            client.delete_event("cal-ana", "evt123")

    def test_delete_permission_error_propagates(self):
        client = _calendar()
        with patch.object(client._client, "request", return_value=_mock_response({}, 403)), \
                pytest.raises(CalendarAPIError):
            client.delete_event("cal-ana", "evt123")

    def test_expired_credentials_are_refreshed(self):
        client = _calendar()
        client._credentials.valid = False
        with patch.object(client._client, "request", return_value=_mock_response({"calendars": {}})):
            client.free_busy(["cal-ana"], START, END)
        client._credentials.refresh.assert_called_once()


# ── Tests: transcription ─────────────────────────────────────────────


class TestTranscriptionClient:
    def test_base64_is_decoded_and_uploaded(self):
        client = TranscriptionClient(api_key="sk-test", base_url="https://openai.test/v1")
        audio = base64.b64encode(b"OggS-bytes").decode()

        with patch.object(
            client._client, "request", return_value=_mock_response({"text": " quero agendar "}),
        ) as mock_req:
            text = client.transcribe(f"data:audio/ogg;base64,{audio}", "audio/ogg")

        assert text == "quero agendar"
        kwargs = mock_req.call_args.kwargs
        assert kwargs["files"]["file"] == ("audio.ogg", b"OggS-bytes", "audio/ogg")
        assert kwargs["data"]["language"] == "pt"
        assert kwargs["headers"] == {"Authorization": "Bearer sk-test"}

    def test_disabled_without_key(self):
        client = TranscriptionClient(api_key="")
        with patch.object(client._client, "request") as mock_req:
            assert client.transcribe(b"audio") is None
        mock_req.assert_not_called()

    def test_invalid_base64(self):
        client = TranscriptionClient(api_key="sk-test")
        assert client.transcribe("###not-base64###") is None

    def test_api_failure_returns_none(self):
        client = TranscriptionClient(api_key="sk-test")
        with patch.object(client._client, "request", return_value=_mock_response({}, 401)):
            assert client.transcribe(b"audio") is None

    def test_empty_transcript_returns_none(self):
        client = TranscriptionClient(api_key="sk-test")
        with patch.object(client._client, "request", return_value=_mock_response({"text": "  "})):
            assert client.transcribe(b"audio") is None
