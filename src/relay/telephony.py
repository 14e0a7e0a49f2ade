"""
Twilio call control helpers.

- TwiML that connects a call to the media stream endpoint
- Outbound call placement through the Twilio REST API
"""

import asyncio
from typing import Any, Optional
from xml.sax.saxutils import quoteattr

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from src.relay.config import Config, ConfigError, get_config
from src.relay.models import CallDirection

logger = structlog.get_logger(__name__)


def build_stream_twiml(ws_url: str, direction: CallDirection = CallDirection.INBOUND) -> str:
    """TwiML connecting the call audio to `ws_url`, tagged with the call direction."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(ws_url)}>
            <Parameter name="direction" value="{direction.value}" />
        </Stream>
    </Connect>
</Response>"""


def _create_call(client: Any, to: str, from_: str, twiml: str) -> str:
    call = client.calls.create(to=to, from_=from_, twiml=twiml)
    return call.sid


async def place_outbound_call(
    to: str,
    config: Optional[Config] = None,
    client: Optional[Any] = None,
) -> str:
    """
    Dial `to` and stream the call back to this server as an outbound session.

    Returns:
        The Twilio call SID

    Raises:
        ConfigError: If Twilio credentials or the caller number are missing
        TwilioException: If the REST request fails
    """
    config = config or get_config()
    required = [("TWILIO_FROM_NUMBER", config.twilio_from_number)]
    if client is None:
        required += [
            ("TWILIO_ACCOUNT_SID", config.twilio_account_sid),
            ("TWILIO_AUTH_TOKEN", config.twilio_auth_token),
        ]
    missing = [name for name, value in required if not value]
    if missing:
        raise ConfigError(f"Missing configuration for outbound calls: {', '.join(missing)}")

    if client is None:
        client = TwilioClient(config.twilio_account_sid, config.twilio_auth_token)
    twiml = build_stream_twiml(config.ws_url, CallDirection.OUTBOUND)

    try:
        # The REST client is synchronous.
        call_sid = await asyncio.to_thread(_create_call, client, to, config.twilio_from_number, twiml)
    except TwilioException as e:
        logger.error("Outbound call failed", to=to, error=str(e))
        raise

    logger.info("Outbound call placed", to=to, call_sid=call_sid)
    return call_sid
