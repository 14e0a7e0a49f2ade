from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from src.relay.tts_types import SynthesizedAudio


class SpeechSynthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> SynthesizedAudio:
        """
        Render `text` to audio.

        Raises:
            SynthesisError: If the provider fails
        """
        raise NotImplementedError

    async def close(self) -> None:
        return None
