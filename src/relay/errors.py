"""
Error taxonomy for the voice relay.

Adapter errors are recoverable per turn and count toward a session's failure
budget. Carrier errors only ever affect their own session.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""
    pass


class CarrierClosed(RelayError):
    """The carrier WebSocket went away."""
    pass


class AdapterError(RelayError):
    """An external speech or language service failed."""

    adapter = "adapter"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def category(self) -> str:
        return f"{self.adapter}.{type(self.cause).__name__}" if self.cause else f"{self.adapter}.error"


class RecognizerError(AdapterError):
    adapter = "recognizer"


class LanguageModelError(AdapterError):
    adapter = "llm"


class SynthesisError(AdapterError):
    adapter = "synthesizer"


class UpstreamError(AdapterError):
    """The realtime model connection failed or reported an error."""

    adapter = "realtime"
