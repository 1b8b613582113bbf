from __future__ import annotations

import math
import struct
from dataclasses import dataclass

from podcast.errors import AudioFormatError

FORMAT_CONTENT_TYPES = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
}

_MIME_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
}

_WAV_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavHeader:
    audio_format: int
    channels: int
    sample_rate: int
    bits_per_sample: int
    data_start: int
    data_size: int

    def same_format(self, other: "WavHeader") -> bool:
        return (
            self.audio_format == other.audio_format
            and self.channels == other.channels
            and self.sample_rate == other.sample_rate
            and self.bits_per_sample == other.bits_per_sample
        )


def mime_to_format(mime_type: str | None) -> str | None:
    value = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_FORMATS.get(value)


def parse_wav_header(data: bytes) -> WavHeader:
    if len(data) < 12 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        raise AudioFormatError("Invalid WAV header: missing RIFF/WAVE chunk")

    fmt: tuple[int, int, int, int] | None = None
    offset = 12
    while offset + 8 <= len(data):
        chunk_id = data[offset : offset + 4]
        (chunk_size,) = struct.unpack_from("<I", data, offset + 4)
        body = offset + 8
        if chunk_id == b"fmt ":
            if body + 16 > len(data):
                raise AudioFormatError("Invalid WAV header: truncated fmt chunk")
            audio_format, channels, sample_rate = struct.unpack_from("<HHI", data, body)
            (bits_per_sample,) = struct.unpack_from("<H", data, body + 14)
            fmt = (audio_format, channels, sample_rate, bits_per_sample)
        elif chunk_id == b"data":
            if fmt is None:
                raise AudioFormatError("Invalid WAV header: missing fmt chunk")
            # Streaming writers may leave the size field at 0 or 0xFFFFFFFF.
            available = len(data) - body
            size = chunk_size if 0 < chunk_size <= available else available
            return WavHeader(*fmt, data_start=body, data_size=size)
        offset = body + chunk_size + (chunk_size & 1)

    if fmt is None:
        raise AudioFormatError("Invalid WAV header: missing fmt chunk")
    raise AudioFormatError("Invalid WAV header: missing data chunk")


def build_wav(
    audio_format: int,
    channels: int,
    sample_rate: int,
    bits_per_sample: int,
    payload: bytes,
) -> bytes:
    block_align = channels * bits_per_sample // 8
    header = _WAV_HEADER.pack(
        b"RIFF",
        36 + len(payload),
        b"WAVE",
        b"fmt ",
        16,
        audio_format,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        len(payload),
    )
    return header + payload


def build_silent_wav(duration_sec: float, sample_rate: int = 16000) -> bytes:
    samples = max(1, int(math.floor(duration_sec * sample_rate)))
    return build_wav(1, 1, sample_rate, 16, bytes(samples * 2))


def concat_wav_buffers(buffers: list[bytes]) -> bytes:
    if not buffers:
        raise AudioFormatError("No audio to concatenate")
    first = parse_wav_header(buffers[0])
    payloads: list[bytes] = []
    for index, buffer in enumerate(buffers):
        header = parse_wav_header(buffer)
        if not header.same_format(first):
            raise AudioFormatError(
                "WAV format mismatch between sections: "
                f"section {index + 1} is {header.sample_rate}Hz/{header.channels}ch/"
                f"{header.bits_per_sample}bit, expected {first.sample_rate}Hz/"
                f"{first.channels}ch/{first.bits_per_sample}bit"
            )
        payloads.append(buffer[header.data_start : header.data_start + header.data_size])
    return build_wav(
        first.audio_format,
        first.channels,
        first.sample_rate,
        first.bits_per_sample,
        b"".join(payloads),
    )


def _synchsafe(raw: bytes) -> int:
    value = 0
    for byte in raw:
        value = (value << 7) | (byte & 0x7F)
    return value


def strip_id3v2(data: bytes) -> bytes:
    if len(data) < 10 or data[:3] != b"ID3":
        return data
    size = 10 + _synchsafe(data[6:10])
    if data[5] & 0x10:
        size += 10  # footer present
    return data[size:]


def concat_mp3_buffers(buffers: list[bytes]) -> bytes:
    if not buffers:
        raise AudioFormatError("No audio to concatenate")
    return b"".join([buffers[0], *(strip_id3v2(b) for b in buffers[1:])])


def concat_audio_buffers(buffers: list[bytes], audio_format: str) -> bytes:
    if not buffers:
        raise AudioFormatError("No audio to concatenate")
    if audio_format == "wav":
        return concat_wav_buffers(buffers)
    if audio_format == "mp3":
        return concat_mp3_buffers(buffers)
    raise AudioFormatError(f"Unsupported audio format: {audio_format}")
