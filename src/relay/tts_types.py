from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SynthesizedAudio:
    """
    Audio for one sentence chunk, as the synthesizer produced it.

    `container` is "wav" (RIFF header included) or "raw" (bare PCM16 LE mono).
    Conversion to carrier mu-law is the codec layer's job.
    """

    audio: bytes
    sample_rate: int
    container: str = "wav"

    @property
    def is_empty(self) -> bool:
        return not self.audio
