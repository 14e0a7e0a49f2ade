"""
Tests for the Deepgram recognizer adapter.
"""

import asyncio
import json
from typing import List
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from src.relay.errors import RecognizerError
from src.relay.stt import DeepgramRecognizer


class ScriptedSocket:
    """Replays canned Deepgram messages, then ends the stream."""

    def __init__(self, messages: List[str], hold_open: bool = False):
        self.messages = messages
        self.hold_open = hold_open
        self.sent: List = []
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        if self.hold_open:
            await asyncio.Event().wait()

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True


def results(transcript, is_final):
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.93}]},
    })


def test_url_requests_carrier_rate_linear16(relay_config):
    recognizer = DeepgramRecognizer("session-1", relay_config)

    query = parse_qs(urlparse(recognizer.build_url()).query)

    assert query["encoding"] == ["linear16"]
    assert query["sample_rate"] == ["8000"]
    assert query["interim_results"] == ["true"]
    assert query["endpointing"] == ["300"]
    assert query["model"] == ["nova-2"]


@pytest.mark.asyncio
async def test_results_are_reported_and_close_is_signalled(relay_config):
    socket = ScriptedSocket([
        results("book a", False),
        "not json",
        results("", False),
        json.dumps({"type": "Metadata"}),
        results("Book a table.", True),
    ])
    transcripts, closed = [], asyncio.Event()

    async def on_transcript(event):
        transcripts.append((event.text, event.is_final))

    async def on_closed():
        closed.set()

    recognizer = DeepgramRecognizer("session-1", relay_config)
    with patch("src.relay.stt.websockets.connect", AsyncMock(return_value=socket)) as connect:
        await recognizer.start(on_transcript, on_closed)
        await asyncio.wait_for(closed.wait(), timeout=1.0)

    assert transcripts == [("book a", False), ("Book a table.", True)]
    assert connect.await_args.kwargs["additional_headers"] == {"Authorization": "Token test_deepgram_key"}
    assert not recognizer.is_connected


@pytest.mark.asyncio
async def test_stop_does_not_signal_close(relay_config):
    socket = ScriptedSocket([], hold_open=True)
    on_closed = AsyncMock()
    recognizer = DeepgramRecognizer("session-1", relay_config)

    with patch("src.relay.stt.websockets.connect", AsyncMock(return_value=socket)):
        await recognizer.start(AsyncMock(), on_closed)
        await recognizer.stop()

    assert socket.closed
    assert json.loads(socket.sent[0]) == {"type": "CloseStream"}
    on_closed.assert_not_awaited()


@pytest.mark.asyncio
async def test_connection_failure_raises_recognizer_error(relay_config):
    recognizer = DeepgramRecognizer("session-1", relay_config)

    with patch("src.relay.stt.websockets.connect", AsyncMock(side_effect=OSError("refused"))):
        with pytest.raises(RecognizerError) as exc_info:
            await recognizer.start(AsyncMock())

    assert exc_info.value.category == "recognizer.OSError"


@pytest.mark.asyncio
async def test_send_audio_requires_connection(relay_config):
    recognizer = DeepgramRecognizer("session-1", relay_config)

    await recognizer.send_audio(b"")  # nothing to send is never an error
    with pytest.raises(RecognizerError):
        await recognizer.send_audio(b"\x00\x00" * 160)
