"""
Tests for the audio codec layer.
"""

import io
import wave

import numpy as np
import pytest

from src.relay.audio import (
    CARRIER_FRAME_SIZE,
    AudioCodec,
    chunk_audio,
    chunk_audio_list,
    pcm16_to_ulaw,
    resample_pcm16,
    synthesized_to_carrier,
    ulaw_to_pcm16,
    wav_to_pcm16,
)


def _pcm(samples) -> bytes:
    return np.asarray(samples, dtype="<i2").tobytes()


def _samples(pcm: bytes) -> np.ndarray:
    return np.frombuffer(pcm, dtype="<i2")


def _wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


class TestUlawConversion:
    """Tests for mu-law conversion."""

    def test_empty(self):
        assert ulaw_to_pcm16(b"") == b""
        assert pcm16_to_ulaw(b"") == b""

    def test_silence_decodes_to_zero(self):
        result = ulaw_to_pcm16(b"\xff" * 100)

        # Output should be 2x length (16-bit = 2 bytes per sample)
        assert len(result) == 200
        assert np.abs(_samples(result)).max() == 0

    def test_zero_encodes_to_silence(self):
        assert pcm16_to_ulaw(b"\x00\x00" * 10) == b"\xff" * 10

    def test_odd_trailing_byte_is_ignored(self):
        assert len(pcm16_to_ulaw(b"\x00\x00\x00")) == 1

    def test_roundtrip_within_quantization_bound(self):
        x = np.linspace(-32768, 32767, 4001).astype(np.int16)
        decoded = _samples(ulaw_to_pcm16(pcm16_to_ulaw(x.tobytes()))).astype(np.int32)

        err = np.abs(decoded - x.astype(np.int32))
        bound = np.abs(x.astype(np.int32)) / 16 + 8
        assert np.all(err <= bound)

    def test_every_code_survives_decode_then_encode(self):
        codes = bytes(range(256))
        reencoded = pcm16_to_ulaw(ulaw_to_pcm16(codes))

        # 0x7F and 0xFF both mean zero; everything else maps back to itself.
        for code, back in zip(codes, reencoded):
            if code == 0x7F:
                assert back == 0xFF
            else:
                assert back == code

    def test_sign_is_preserved(self):
        decoded = _samples(ulaw_to_pcm16(pcm16_to_ulaw(_pcm([1000, -1000]))))
        assert decoded[0] > 0
        assert decoded[1] < 0


class TestResampling:
    """Tests for sample rate conversion."""

    def test_24k_to_8k_takes_every_third_sample(self):
        samples = np.arange(1000, dtype=np.int16)
        out = _samples(resample_pcm16(samples.tobytes(), 24000, 8000))

        assert len(out) == 1000 // 3
        assert np.array_equal(out, samples[:999:3])

    @pytest.mark.parametrize("n", [0, 1, 2, 3, 301])
    def test_decimated_length_is_floor(self, n):
        out = resample_pcm16(np.ones(n, dtype=np.int16).tobytes(), 24000, 8000)
        assert len(out) // 2 == n // 3

    def test_16k_to_8k(self):
        samples = np.array([10, 20, 30, 40], dtype=np.int16)
        assert list(_samples(resample_pcm16(samples.tobytes(), 16000, 8000))) == [10, 30]

    def test_same_rate_is_identity(self):
        pcm = _pcm([1, 2, 3])
        assert resample_pcm16(pcm, 8000, 8000) is pcm

    def test_upsample_interpolates(self):
        out = _samples(resample_pcm16(_pcm([0, 100, 200]), 8000, 16000))

        assert len(out) == 6
        assert list(out[:5]) == [0, 50, 100, 150, 200]

    def test_non_integer_ratio(self):
        out = resample_pcm16(np.zeros(441, dtype=np.int16).tobytes(), 22050, 8000)
        assert len(out) // 2 == int(441 * 8000 / 22050)

    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            resample_pcm16(_pcm([1, 2]), 0, 8000)


class TestWav:
    """Tests for WAV container handling."""

    def test_header_only_is_empty(self):
        wav = _wav(b"", 24000)
        assert len(wav) == 44
        assert wav_to_pcm16(wav) == (8000, b"")

    def test_reads_mono(self):
        pcm = _pcm([1, -2, 3, -4])
        rate, out = wav_to_pcm16(_wav(pcm, 24000))

        assert rate == 24000
        assert out == pcm

    def test_downmixes_stereo(self):
        rate, out = wav_to_pcm16(_wav(_pcm([100, 300, -100, -300]), 8000, channels=2))
        assert rate == 8000
        assert list(_samples(out)) == [200, -200]

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            wav_to_pcm16(b"NOTAWAVE" * 10)


class TestSynthesizedToCarrier:
    def test_wav_24k_to_ulaw_8k(self):
        pcm = np.zeros(2400, dtype=np.int16).tobytes()  # 100ms at 24kHz
        ulaw = synthesized_to_carrier(_wav(pcm, 24000), 24000, "wav")

        assert len(ulaw) == 800
        assert set(ulaw) == {0xFF}

    def test_raw_pcm_uses_given_rate(self):
        ulaw = synthesized_to_carrier(np.zeros(480, dtype=np.int16).tobytes(), 24000, "raw")
        assert len(ulaw) == 160

    def test_short_wav_is_empty(self):
        assert synthesized_to_carrier(b"RIFF" + b"\x00" * 40, 24000, "wav") == b""


class TestChunking:
    """Tests for audio chunking."""

    def test_exact_frames(self):
        chunks = chunk_audio_list(b"\x00" * 320)
        assert len(chunks) == 2
        assert all(len(c) == CARRIER_FRAME_SIZE for c in chunks)

    def test_last_frame_padded_with_silence(self):
        chunks = list(chunk_audio(b"\x00" * 200))

        assert len(chunks) == 2
        assert chunks[1] == b"\x00" * 40 + b"\xff" * 120

    def test_empty(self):
        assert chunk_audio_list(b"") == []


class TestAudioCodec:
    def test_codec_bundles_carrier_conversions(self):
        codec = AudioCodec()

        assert codec.carrier_sample_rate == 8000
        assert codec.decode(b"\xff" * 160) == b"\x00" * 320
        assert codec.encode(b"\x00" * 320) == b"\xff" * 160
        assert len(codec.frames(b"\xff" * 400)) == 3

    def test_to_carrier_drops_empty_synthesis(self):
        assert AudioCodec().to_carrier(b"", 24000, "raw") == b""
