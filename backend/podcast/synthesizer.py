from __future__ import annotations

import hashlib
import io
import os
import re
import threading
import unicodedata
from collections import OrderedDict
from typing import Any, Callable

import numpy as np
import soundfile as sf

from podcast.errors import ProviderCallError, ProviderUnavailableError

KOKORO = None
MISAKI_JA_G2P: Callable[[str], str] | None = None
_INIT_LOCK = threading.Lock()
_CACHE_LOCK = threading.Lock()
_CACHE: OrderedDict[str, tuple[np.ndarray, int]] = OrderedDict()

# language tag -> (kokoro lang code, default voice)
KOKORO_LANGUAGES: dict[str, tuple[str, str]] = {
    "en": ("en-us", "af_heart"),
    "es": ("es", "ef_dora"),
    "fr": ("fr-fr", "ff_siwis"),
    "it": ("it", "if_sara"),
    "pt": ("pt-br", "pf_dora"),
    "hi": ("hi", "hf_alpha"),
    "ja": ("ja", "jf_alpha"),
    "zh": ("cmn", "zf_xiaobei"),
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _data_dir() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "kokoro-data")


def _extract_phonemes(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, tuple):
        for item in value:
            found = _extract_phonemes(item)
            if found:
                return found
        return ""
    if isinstance(value, dict):
        for key in ("phonemes", "ipa"):
            maybe = value.get(key)
            if isinstance(maybe, str) and maybe.strip():
                return maybe.strip()
        return ""
    for attr in ("phonemes", "ipa"):
        maybe = getattr(value, attr, None)
        if isinstance(maybe, str) and maybe.strip():
            return maybe.strip()
    return ""


def _init_misaki_ja_g2p() -> Callable[[str], str] | None:
    try:
        from misaki import ja as misaki_ja  # type: ignore
    except ImportError as e:
        print(f"[synthesizer] misaki_ja_unavailable error={e}")
        return None

    if hasattr(misaki_ja, "JAG2P"):
        engine = misaki_ja.JAG2P()
        return lambda text: _extract_phonemes(engine(text))
    if hasattr(misaki_ja, "G2P"):
        engine = misaki_ja.G2P()
        return lambda text: _extract_phonemes(engine(text))
    print("[synthesizer] misaki.ja has no supported G2P entrypoint")
    return None


def init_kokoro() -> None:
    """Load the Kokoro ONNX model once per process.

    Raises ProviderUnavailableError when the library or model files are missing.
    """
    global KOKORO, MISAKI_JA_G2P
    with _INIT_LOCK:
        if KOKORO is not None:
            return
        try:
            from kokoro_onnx import Kokoro
        except ImportError as e:
            raise ProviderUnavailableError(
                "kokoro-onnx is not installed. Install with: pip install '.[kokoro]'",
                provider="kokoro",
            ) from e

        model_path = os.path.join(_data_dir(), "kokoro-v1.0.onnx")
        voices_path = os.path.join(_data_dir(), "voices-v1.0.bin")
        if not os.path.exists(model_path) or not os.path.exists(voices_path):
            raise ProviderUnavailableError(
                f"Kokoro model files not found in {_data_dir()}. Run 'python setup_kokoro.py' first.",
                provider="kokoro",
            )
        print(f"[synthesizer] loading kokoro model={model_path}")
        KOKORO = Kokoro(model_path, voices_path)
        MISAKI_JA_G2P = _init_misaki_ja_g2p()
        print("[synthesizer] kokoro ready")


def resolve_voice(language: str, voice: str | None) -> tuple[str, str]:
    lang_code, default_voice = KOKORO_LANGUAGES.get(language, KOKORO_LANGUAGES["en"])
    return lang_code, (voice or "").strip() or default_voice


def _normalize_text(text: str) -> str:
    normalized = unicodedata.normalize("NFKC", text or "")
    normalized = re.sub(r"[\U00010000-\U0010ffff]", "", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def _cache_key(voice: str, speed: float, lang: str, text: str) -> str:
    raw = f"{voice}|{speed:.3f}|{lang}|{text}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _cache_get(key: str) -> tuple[np.ndarray, int] | None:
    with _CACHE_LOCK:
        cached = _CACHE.get(key)
        if cached is None:
            return None
        _CACHE.move_to_end(key)
        return cached


def _cache_put(key: str, samples: np.ndarray, sr: int) -> None:
    limit = max(1, _env_int("TTS_CACHE_SIZE", 64))
    with _CACHE_LOCK:
        _CACHE[key] = (samples, sr)
        _CACHE.move_to_end(key)
        while len(_CACHE) > limit:
            _CACHE.popitem(last=False)


def _create_samples(text: str, *, voice: str, speed: float, lang: str) -> tuple[np.ndarray, int]:
    assert KOKORO is not None
    if lang == "ja" and MISAKI_JA_G2P is not None:
        phonemes = MISAKI_JA_G2P(text)
        if not phonemes:
            raise ProviderCallError("misaki returned empty phonemes", provider="kokoro")
        samples, sample_rate = KOKORO.create(phonemes, voice=voice, speed=speed, lang=lang, is_phonemes=True)
    else:
        samples, sample_rate = KOKORO.create(text, voice=voice, speed=speed, lang=lang)
    return np.asarray(samples, dtype=np.float32), int(sample_rate)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def synthesize_wav(
    text: str,
    *,
    language: str,
    voice: str | None = None,
    speed: float | None = None,
) -> tuple[bytes, float]:
    """Speak ``text`` and return (16-bit WAV bytes, duration in seconds)."""
    init_kokoro()
    normalized = _normalize_text(text)
    if not normalized:
        raise ProviderCallError("Kokoro text is empty.", provider="kokoro")
    lang, use_voice = resolve_voice(language, voice)
    use_speed = max(0.5, min(2.0, float(speed))) if speed else 1.0

    cache_enabled = _env_bool("TTS_CACHE_ENABLED", True)
    key = _cache_key(use_voice, use_speed, lang, normalized)
    cached = _cache_get(key) if cache_enabled else None
    if cached is not None:
        samples, sr = cached
    else:
        try:
            samples, sr = _create_samples(normalized, voice=use_voice, speed=use_speed, lang=lang)
        except ProviderCallError:
            raise
        except Exception as e:
            raise ProviderCallError(f"Kokoro synthesis failed: {e}", provider="kokoro") from e
        if cache_enabled:
            _cache_put(key, samples, sr)
    print(f"[synthesizer] voice={use_voice} lang={lang} seconds={round(len(samples) / sr, 3)} cached={cached is not None}")
    return encode_wav(samples, sr), float(len(samples)) / float(sr)
