from __future__ import annotations

import pytest

from podcast.audio_mix import (
    build_silent_wav,
    build_wav,
    concat_audio_buffers,
    mime_to_format,
    parse_wav_header,
    strip_id3v2,
)
from podcast.errors import AudioFormatError


def _id3(payload: bytes, *, footer: bool = False) -> bytes:
    size = len(payload)
    synchsafe = bytes([(size >> 21) & 0x7F, (size >> 14) & 0x7F, (size >> 7) & 0x7F, size & 0x7F])
    flags = 0x10 if footer else 0x00
    tag = b"ID3" + bytes([4, 0, flags]) + synchsafe + payload
    if footer:
        tag += b"3DI" + bytes([4, 0, flags]) + synchsafe
    return tag


def test_concat_wav_sums_payloads_and_keeps_first_format() -> None:
    a = build_silent_wav(1)
    b = build_silent_wav(2)

    merged = concat_audio_buffers([a, b], "wav")
    header = parse_wav_header(merged)

    assert header.data_size == parse_wav_header(a).data_size + parse_wav_header(b).data_size
    assert (header.sample_rate, header.channels, header.bits_per_sample) == (16000, 1, 16)
    assert len(merged) == 44 + header.data_size
    assert int.from_bytes(merged[4:8], "little") == len(merged) - 8


def test_concat_wav_rejects_sample_rate_mismatch() -> None:
    with pytest.raises(AudioFormatError, match="format mismatch"):
        concat_audio_buffers([build_silent_wav(1), build_silent_wav(1, sample_rate=22050)], "wav")


def test_concat_wav_rejects_channel_mismatch() -> None:
    mono = build_wav(1, 1, 16000, 16, bytes(320))
    stereo = build_wav(1, 2, 16000, 16, bytes(640))
    with pytest.raises(AudioFormatError, match="format mismatch"):
        concat_audio_buffers([mono, stereo], "wav")


def test_parse_wav_skips_extra_chunks() -> None:
    plain = build_wav(1, 1, 8000, 16, b"\x01\x02\x03\x04")
    # LIST chunk with an odd size gets one pad byte
    extra = b"LIST" + (3).to_bytes(4, "little") + b"abc\x00"
    with_list = plain[:12] + plain[12:36] + extra + plain[36:]

    header = parse_wav_header(with_list)

    assert header.sample_rate == 8000
    assert with_list[header.data_start : header.data_start + header.data_size] == b"\x01\x02\x03\x04"


@pytest.mark.parametrize(
    ("data", "message"),
    [
        (b"not a wav file", "RIFF/WAVE"),
        (b"RIFF" + (4).to_bytes(4, "little") + b"WAVE", "fmt"),
        (build_wav(1, 1, 8000, 16, b"")[:36], "data"),
    ],
)
def test_parse_wav_names_the_missing_chunk(data: bytes, message: str) -> None:
    with pytest.raises(AudioFormatError, match=message):
        parse_wav_header(data)


def test_concat_mp3_strips_tags_after_the_first() -> None:
    first = _id3(b"meta1") + b"\xff\xfbAAAA"
    second = _id3(b"meta-two") + b"\xff\xfbBBBB"
    third = _id3(b"x", footer=True) + b"\xff\xfbCCCC"

    merged = concat_audio_buffers([first, second, third], "mp3")

    assert merged == first + b"\xff\xfbBBBB" + b"\xff\xfbCCCC"


def test_strip_id3v2_leaves_untagged_data() -> None:
    assert strip_id3v2(b"\xff\xfbDATA") == b"\xff\xfbDATA"


def test_concat_errors() -> None:
    with pytest.raises(AudioFormatError, match="No audio to concatenate"):
        concat_audio_buffers([], "wav")
    with pytest.raises(AudioFormatError, match="Unsupported audio format: ogg"):
        concat_audio_buffers([b"x"], "ogg")


def test_mime_to_format() -> None:
    assert mime_to_format("audio/wav") == "wav"
    assert mime_to_format("audio/mpeg; charset=binary") == "mp3"
    assert mime_to_format("audio/ogg") is None
    assert mime_to_format(None) is None
