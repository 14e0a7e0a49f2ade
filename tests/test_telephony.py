"""
Tests for TwiML generation and outbound call placement.
"""

import dataclasses
import xml.etree.ElementTree as ET
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioException

from src.relay.config import ConfigError
from src.relay.models import CallDirection
from src.relay.telephony import build_stream_twiml, place_outbound_call


def mock_twilio_client(call_sid="CA0001"):
    client = MagicMock()
    client.calls.create.return_value = SimpleNamespace(sid=call_sid)
    return client


def test_twiml_streams_to_websocket_with_direction():
    root = ET.fromstring(build_stream_twiml("wss://relay.example.com/ws", CallDirection.OUTBOUND))

    stream = root.find("./Connect/Stream")
    assert stream.get("url") == "wss://relay.example.com/ws"
    parameter = stream.find("Parameter")
    assert (parameter.get("name"), parameter.get("value")) == ("direction", "outbound")


def test_twiml_escapes_url():
    twiml = build_stream_twiml('wss://host/ws?a=1&b="2"')

    assert ET.fromstring(twiml).find("./Connect/Stream").get("url") == 'wss://host/ws?a=1&b="2"'


@pytest.mark.asyncio
async def test_outbound_call_streams_back_as_outbound(relay_config):
    client = mock_twilio_client("CA42")

    call_sid = await place_outbound_call("+15557654321", relay_config, client=client)

    assert call_sid == "CA42"
    kwargs = client.calls.create.call_args.kwargs
    assert kwargs["to"] == "+15557654321"
    assert kwargs["from_"] == "+15550001111"
    assert 'value="outbound"' in kwargs["twiml"]
    assert "wss://test.ngrok.io/ws" in kwargs["twiml"]


@pytest.mark.asyncio
async def test_outbound_call_requires_from_number(relay_config):
    config = dataclasses.replace(relay_config, twilio_from_number="")

    with pytest.raises(ConfigError, match="TWILIO_FROM_NUMBER"):
        await place_outbound_call("+15557654321", config, client=mock_twilio_client())


@pytest.mark.asyncio
async def test_outbound_call_requires_credentials_without_client(relay_config):
    config = dataclasses.replace(relay_config, twilio_auth_token="")

    with pytest.raises(ConfigError, match="TWILIO_AUTH_TOKEN"):
        await place_outbound_call("+15557654321", config)


@pytest.mark.asyncio
async def test_carrier_rejection_propagates(relay_config):
    client = mock_twilio_client()
    client.calls.create.side_effect = TwilioException("Invalid 'To' number")

    with pytest.raises(TwilioException):
        await place_outbound_call("+1", relay_config, client=client)
