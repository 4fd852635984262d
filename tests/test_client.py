"""
Tests for the transcription client and response parsing.

requests.post is mocked; nothing leaves the machine.
"""

import json
from unittest.mock import Mock, patch

import numpy as np
import pytest
import requests


def pcm(seconds=1.0):
    return np.zeros(int(16000 * seconds), dtype="<i2").tobytes()


def ok_response(body):
    return Mock(ok=True, status_code=200, text=body if isinstance(body, str) else json.dumps(body))


class TestNormalizeLanguage:
    """Tests for language normalization."""

    @pytest.mark.parametrize("language,expected", [
        ("en-US", "en"),
        ("de_DE", "de"),
        ("FR", "fr"),
        ("auto", "en"),
        ("AUTO", "en"),
        ("", "en"),
    ])
    def test_normalize(self, language, expected):
        from dictaflow.client import normalize_language

        assert normalize_language(language) == expected

    def test_custom_default(self):
        from dictaflow.client import normalize_language

        assert normalize_language("auto", default="es") == "es"


class TestParseTranscription:
    """Tests for parse_transcription."""

    def test_plain_text_field(self):
        from dictaflow.client import parse_transcription

        response = parse_transcription('{"text": "  hello world "}')
        assert response.text == "hello world"
        assert response.words == []

    def test_segments_are_joined(self):
        from dictaflow.client import parse_transcription

        body = {"segments": [{"text": " hello"}, {"text": ""}, {"text": "world "}]}
        assert parse_transcription(json.dumps(body)).text == "hello world"

    def test_words_inside_segments(self):
        """verbose_json from whisper.cpp carries words per segment."""
        from dictaflow.client import parse_transcription

        body = {
            "text": "hello world",
            "segments": [
                {"text": "hello world", "words": [
                    {"word": "hello", "start": 0.0, "end": 0.4},
                    {"word": "world", "start": 0.5, "end": 0.9},
                ]},
            ],
        }
        response = parse_transcription(json.dumps(body))

        assert [w.text for w in response.words] == ["hello", "world"]
        assert response.words[1].start_time == 0.5
        assert response.words[1].end_time == 0.9

    def test_top_level_words(self):
        """The OpenAI verbose form puts words at the top level."""
        from dictaflow.client import parse_transcription

        body = {"text": "hi", "words": [{"word": "hi", "start": "0.1", "end": 0.3}]}
        response = parse_transcription(json.dumps(body))

        assert len(response.words) == 1
        assert response.words[0].start_time == pytest.approx(0.1)

    def test_malformed_words_are_skipped(self):
        from dictaflow.client import parse_transcription

        body = {"text": "a b", "words": [
            {"word": "a", "start": 0.0},
            {"text": "b", "start": 0.2, "end": 0.4},
            {"word": "c", "start": "x", "end": 0.5},
            "junk",
        ]}
        response = parse_transcription(json.dumps(body))

        assert [w.text for w in response.words] == ["b"]

    def test_non_json_falls_back_to_raw_text(self):
        from dictaflow.client import parse_transcription

        assert parse_transcription("  just text \n").text == "just text"

    def test_unexpected_json_shape_falls_back_to_raw_text(self):
        from dictaflow.client import parse_transcription

        assert parse_transcription('["a", "b"]').text == '["a", "b"]'

    def test_empty_body(self):
        from dictaflow.client import parse_transcription

        assert parse_transcription("").text == ""


class TestTranscriptionClient:
    """Tests for TranscriptionClient.transcribe."""

    def test_sends_multipart_request(self):
        from dictaflow.client import TranscriptionClient

        client = TranscriptionClient("http://127.0.0.1:8178/inference", timeout=30.0)

        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.return_value = ok_response({"text": "hello"})
            response = client.transcribe(pcm(), "en-US")

        assert response.text == "hello"
        args, kwargs = mock_post.call_args
        assert args[0] == "http://127.0.0.1:8178/inference"
        name, wav, content_type = kwargs["files"]["file"]
        assert name == "audio.wav"
        assert wav[:4] == b"RIFF"
        assert content_type == "audio/wav"
        assert kwargs["data"] == {"language": "en", "response_format": "json"}
        assert kwargs["headers"] == {}
        assert kwargs["timeout"] == 30.0

    def test_api_key_and_model(self):
        from dictaflow.client import TranscriptionClient

        client = TranscriptionClient(
            "https://api.example.com/v1/audio/transcriptions",
            api_key="sk-test",
            model="whisper-1",
            word_granularity_field=True,
        )

        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.return_value = ok_response({"text": "hi", "words": []})
            client.transcribe(pcm(), "de-DE", response_format="verbose_json")

        kwargs = mock_post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert kwargs["data"]["model"] == "whisper-1"
        assert kwargs["data"]["language"] == "de"
        assert kwargs["data"]["response_format"] == "verbose_json"
        assert kwargs["data"]["timestamp_granularities[]"] == "word"

    def test_granularity_only_for_verbose(self):
        from dictaflow.client import TranscriptionClient

        client = TranscriptionClient("http://x/inference", word_granularity_field=True)
        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.return_value = ok_response({"text": "hi"})
            client.transcribe(pcm(), "en")

        assert "timestamp_granularities[]" not in mock_post.call_args.kwargs["data"]

    def test_transport_failure_invalidates_supervisor(self):
        """A connection error marks the server unverified and is not retried."""
        from dictaflow.client import TranscriptionClient
        from dictaflow.errors import TransportError

        supervisor = Mock()
        client = TranscriptionClient("http://127.0.0.1:8178/inference", supervisor=supervisor)

        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.side_effect = requests.ConnectionError("refused")
            with pytest.raises(TransportError):
                client.transcribe(pcm(), "en")

        assert mock_post.call_count == 1
        supervisor.invalidate.assert_called_once()

    def test_timeout_is_a_transport_failure(self):
        from dictaflow.client import TranscriptionClient
        from dictaflow.errors import TransportError

        client = TranscriptionClient("http://x/inference")
        with patch("dictaflow.client.requests.post", side_effect=requests.Timeout("slow")):
            with pytest.raises(TransportError):
                client.transcribe(pcm(), "en")

    def test_broken_response_stream_is_a_transport_failure(self):
        """Any requests failure, not only connect errors, invalidates the server."""
        from dictaflow.client import TranscriptionClient
        from dictaflow.errors import TransportError

        supervisor = Mock()
        client = TranscriptionClient("http://127.0.0.1:8178/inference", supervisor=supervisor)

        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.side_effect = requests.exceptions.ChunkedEncodingError("connection reset")
            with pytest.raises(TransportError):
                client.transcribe(pcm(), "en")

        supervisor.invalidate.assert_called_once()

    def test_error_status_raises(self):
        from dictaflow.client import TranscriptionClient
        from dictaflow.errors import TranscriptionError

        supervisor = Mock()
        client = TranscriptionClient("http://x/inference", supervisor=supervisor)

        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.return_value = Mock(ok=False, status_code=500, text="internal error")
            with pytest.raises(TranscriptionError) as exc_info:
                client.transcribe(pcm(), "en")

        assert exc_info.value.status_code == 500
        supervisor.invalidate.assert_not_called()

    def test_unparsable_success_returns_raw_text(self):
        from dictaflow.client import TranscriptionClient

        client = TranscriptionClient("http://x/inference")
        with patch("dictaflow.client.requests.post") as mock_post:
            mock_post.return_value = ok_response("hello there")
            response = client.transcribe(pcm(), "en")

        assert response.text == "hello there"
