"""
Audio Codec Layer.

The carrier speaks G.711 mu-law at 8kHz in 20ms frames of 160 bytes. Recognizers
want linear PCM16, synthesizers produce WAV or raw PCM16 at their own rate
(typically 24kHz). Everything here is stateless and numpy-vectorized.

Resampling:
- Integer-ratio downsampling is strided decimation (every k-th sample, no
  anti-alias filter): N input samples give floor(N/k) output samples.
- Upsampling and non-integer ratios use linear interpolation.
"""

import io
import wave
from typing import Generator, List, Tuple

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

CARRIER_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
CARRIER_FRAME_SIZE = int(CARRIER_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
WAV_HEADER_SIZE = 44
ULAW_SILENCE = 0xFF

_BIAS = 0x84
_CLIP = 32635


def _build_decode_table() -> np.ndarray:
    codes = (~np.arange(256, dtype=np.int32)) & 0xFF
    sign = codes & 0x80
    exponent = (codes >> 4) & 0x07
    mantissa = codes & 0x0F
    magnitude = (((mantissa << 3) + _BIAS) << exponent) - _BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


def _build_encode_table() -> np.ndarray:
    # Indexed by int16 sample reinterpreted as uint16.
    samples = np.arange(65536, dtype=np.int32)
    samples = np.where(samples >= 32768, samples - 65536, samples)
    sign = np.where(samples < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(samples), _CLIP) + _BIAS
    exponent = np.floor(np.log2(magnitude)).astype(np.int32) - 7
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return ((~(sign | (exponent << 4) | mantissa)) & 0xFF).astype(np.uint8)


_DECODE_TABLE = _build_decode_table()
_ENCODE_TABLE = _build_encode_table()


def ulaw_to_pcm16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law audio to linear PCM 16-bit little-endian.

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        Linear PCM 16-bit bytes (two bytes per input byte)
    """
    if not ulaw_bytes:
        return b""

    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return _DECODE_TABLE[codes].astype("<i2").tobytes()


def pcm16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit little-endian to mu-law.

    A trailing odd byte is ignored.
    """
    if len(pcm_bytes) < 2:
        return b""

    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2")
    return _ENCODE_TABLE[samples.view(np.uint16)].tobytes()


def resample_pcm16(pcm_bytes: bytes, from_rate: int, to_rate: int) -> bytes:
    """Resample mono PCM16 from `from_rate` to `to_rate`."""
    if not pcm_bytes or from_rate == to_rate:
        return pcm_bytes
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError(f"Invalid sample rates: {from_rate} -> {to_rate}")

    usable = len(pcm_bytes) - (len(pcm_bytes) % 2)
    samples = np.frombuffer(pcm_bytes[:usable], dtype="<i2")

    if from_rate > to_rate and from_rate % to_rate == 0:
        factor = from_rate // to_rate
        count = len(samples) // factor
        return samples[: count * factor : factor].astype("<i2").tobytes()

    out_len = int(len(samples) * to_rate / from_rate)
    if out_len == 0:
        return b""
    positions = np.arange(out_len, dtype=np.float64) * (from_rate / to_rate)
    resampled = np.interp(positions, np.arange(len(samples)), samples.astype(np.float64))
    return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


def wav_to_pcm16(wav_bytes: bytes) -> Tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    Buffers no longer than the 44-byte RIFF header carry no audio and yield
    empty PCM. Stereo input is downmixed to mono.

    Raises:
        ValueError: If the WAV is malformed or not 16-bit
    """
    if len(wav_bytes) <= WAV_HEADER_SIZE:
        return CARRIER_SAMPLE_RATE, b""

    try:
        with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
            channels = wf.getnchannels()
            sample_width = wf.getsampwidth()
            sample_rate = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Invalid WAV: {e}")

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        stereo = np.frombuffer(frames, dtype="<i2").reshape(-1, 2).astype(np.int32)
        mono = ((stereo[:, 0] + stereo[:, 1]) // 2).astype("<i2")
        return int(sample_rate), mono.tobytes()

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def synthesized_to_carrier(audio: bytes, sample_rate: int, container: str = "wav") -> bytes:
    """
    Convert synthesizer output into carrier-rate mu-law.

    Returns empty bytes when the synthesizer produced nothing audible.
    """
    if container == "wav":
        sample_rate, pcm = wav_to_pcm16(audio)
    else:
        pcm = audio

    if not pcm:
        return b""

    pcm_8k = resample_pcm16(pcm, sample_rate, CARRIER_SAMPLE_RATE)
    return pcm16_to_ulaw(pcm_8k)


def chunk_audio(audio_bytes: bytes, chunk_size: int = CARRIER_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For the carrier, we want 20ms frames = 160 bytes of mu-law at 8kHz. The
    last frame is padded with mu-law silence.
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if len(chunk) < chunk_size:
            chunk = chunk + bytes([ULAW_SILENCE]) * (chunk_size - len(chunk))
        yield chunk


def chunk_audio_list(audio_bytes: bytes, chunk_size: int = CARRIER_FRAME_SIZE) -> List[bytes]:
    return list(chunk_audio(audio_bytes, chunk_size))


class AudioCodec:
    """
    Carrier-side codec injected into both pipeline orchestrators.

    Wraps the module functions so tests can substitute a recording double.
    """

    carrier_sample_rate = CARRIER_SAMPLE_RATE
    frame_size = CARRIER_FRAME_SIZE

    def decode(self, frame: bytes) -> bytes:
        """mu-law carrier frame -> PCM16 at the carrier rate."""
        return ulaw_to_pcm16(frame)

    def encode(self, pcm: bytes) -> bytes:
        """PCM16 at the carrier rate -> mu-law."""
        return pcm16_to_ulaw(pcm)

    def resample(self, pcm: bytes, from_rate: int, to_rate: int) -> bytes:
        return resample_pcm16(pcm, from_rate, to_rate)

    def to_carrier(self, audio: bytes, sample_rate: int, container: str = "wav") -> bytes:
        return synthesized_to_carrier(audio, sample_rate, container)

    def frames(self, ulaw: bytes) -> List[bytes]:
        return chunk_audio_list(ulaw, self.frame_size)
