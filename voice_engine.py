"""
Reelsmith — Voice Engine

Turns scene voiceovers into narration audio.

Providers:
1. Replicate Chatterbox Turbo — default voices (male/female speakers)
2. ElevenLabs — custom (cloned) voices

Optional step: enhance_voiceover() asks Gemini Flash to add the few
paralinguistic tags Chatterbox understands ([sigh], [chuckle], ...).
"""
import re
import logging

import config
import replicate_client
from errors import ProviderError

log = logging.getLogger(__name__)

# =============================================================================
# CONFIG
# =============================================================================

ELEVENLABS_MODEL = "eleven_multilingual_v2"
ELEVENLABS_OUTPUT_FORMAT = "mp3_44100_128"

CHATTERBOX_SPEAKERS = {"male": "Aaron", "female": "Marisol"}
CHATTERBOX_EXAGGERATION = 0.4
CHATTERBOX_CFG_WEIGHT = 0.5

ALLOWED_PARALINGUISTIC_TAGS = [
    "clear throat", "sigh", "sush", "cough", "groan", "sniff", "gasp", "chuckle", "laugh",
]

# MP3 128kbps ≈ 16KB/s
BYTES_PER_SECOND = 16000

# =============================================================================
# TEXT CLEANUP
# =============================================================================

_LABEL_RE = re.compile(
    r"^\s*(?:hook|scene\s*\d+|narrator|body|solution|conflict|choice|formula)\s*[:\-–—]\s*",
    re.IGNORECASE,
)
_LEADING_TAG_RE = re.compile(r"^\s*\[[^\]]+\]\s*")
_TAG_RE = re.compile(r"\[([^\]]+)\]")


def sanitize_voiceover(text):
    """Strip script labels, stage directions and markdown from a voiceover.

    Bracketed tags are kept only when they are paralinguistic tags the TTS
    model can voice.
    """
    raw = text if isinstance(text, str) else ""
    lines = [l.strip() for l in re.split(r"\r?\n", raw)]
    lines = [_LEADING_TAG_RE.sub("", _LABEL_RE.sub("", l)) for l in lines if l]
    out = " ".join(lines)

    def keep_allowed(match):
        if match.group(1).lower().strip() in ALLOWED_PARALINGUISTIC_TAGS:
            return match.group(0)
        return " "

    out = _TAG_RE.sub(keep_allowed, out)
    out = re.sub(r"[*_~`]+", "", out)
    return re.sub(r"\s{2,}", " ", out).strip()


def estimate_duration(num_bytes):
    """Whole seconds of audio, never less than one."""
    return max(1, int(num_bytes / BYTES_PER_SECOND + 0.5))


# =============================================================================
# ENHANCE VOICEOVER — Gemini injects paralinguistic tags
# =============================================================================

ENHANCE_PROMPT = """You are preparing narration for an expressive text-to-speech model.

Add at most two paralinguistic tags to the narration where they feel natural.
Allowed tags (square brackets, lowercase): {tags}

RULES
1. DO NOT alter, add, or remove any words from the original narration
2. Only insert tags from the allowed list
3. If no tag fits, return the text unchanged

## TONE: {tone}

## INPUT TEXT:
{text}

## OUTPUT:
Return ONLY the narration. No explanations, no quotes, no markdown.
"""


def enhance_voiceover(text, tone="neutral"):
    """
    Ask Gemini Flash to add paralinguistic tags to a voiceover.

    Falls back to the original text on any model failure.
    """
    import script_engine

    prompt = ENHANCE_PROMPT.format(
        tags=", ".join(f"[{t}]" for t in ALLOWED_PARALINGUISTIC_TAGS),
        tone=tone,
        text=text,
    )
    try:
        enhanced = script_engine.generate_text(
            prompt, temperature=0.4, max_tokens=2000, model=script_engine.GEMINI_MODEL_FLASH
        ).strip()
    except Exception as e:
        log.warning("[Voice Engine] Enhancement failed, using original text: %s", e)
        return text

    if enhanced.startswith("```"):
        lines = enhanced.split("\n")
        enhanced = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    if enhanced.startswith('"') and enhanced.endswith('"'):
        enhanced = enhanced[1:-1]

    # Keep the original if the model rewrote words
    if _TAG_RE.sub("", enhanced).split() != _TAG_RE.sub("", text).split():
        return text
    return sanitize_voiceover(enhanced) or text


# =============================================================================
# CHATTERBOX (Replicate)
# =============================================================================

def _speaker(voice_gender):
    return CHATTERBOX_SPEAKERS.get((voice_gender or "").lower(), CHATTERBOX_SPEAKERS["female"])


def _chatterbox_input(text, voice_gender):
    return {
        "text": text,
        "speaker": _speaker(voice_gender),
        "exaggeration": CHATTERBOX_EXAGGERATION,
        "cfg_weight": CHATTERBOX_CFG_WEIGHT,
    }


def generate_chatterbox(text, voice_gender="female"):
    """Synchronous TTS. Returns MP3/WAV bytes."""
    return replicate_client.run(replicate_client.CHATTERBOX_MODEL, _chatterbox_input(text, voice_gender))


def start_chatterbox(text, voice_gender="female"):
    """Start an async TTS prediction and return its id."""
    prediction = replicate_client.create_prediction(
        replicate_client.CHATTERBOX_MODEL, _chatterbox_input(text, voice_gender)
    )
    return prediction["id"]


def poll_chatterbox(prediction_id):
    """Check an async TTS prediction.

    Returns:
        (status, audio_bytes) — status is "processing" or "complete";
        bytes are only present once complete
    """
    prediction = replicate_client.get_prediction(prediction_id)
    status = prediction.get("status")
    if status == "succeeded":
        return "complete", replicate_client.download_bytes(replicate_client.output_url(prediction))
    if status in ("failed", "canceled"):
        raise ProviderError(f"TTS prediction {status}: {prediction.get('error') or 'Unknown error'}")
    return "processing", None


# =============================================================================
# ELEVENLABS (custom voices)
# =============================================================================

def generate_elevenlabs(text, voice_id):
    """
    Generate narration with an ElevenLabs (cloned) voice.

    Args:
        text: Sanitised narration
        voice_id: ElevenLabs voice ID

    Returns:
        MP3 bytes
    """
    from elevenlabs.client import ElevenLabs
    from elevenlabs.types import VoiceSettings

    api_key = config.require(config.ELEVENLABS_API_KEY, "ELEVENLABS_API_KEY")
    client = ElevenLabs(api_key=api_key)

    audio_iterator = client.text_to_speech.convert(
        text=text,
        voice_id=voice_id,
        model_id=ELEVENLABS_MODEL,
        output_format=ELEVENLABS_OUTPUT_FORMAT,
        voice_settings=VoiceSettings(stability=0.5, similarity_boost=0.75),
    )

    audio_bytes = b""
    for chunk in audio_iterator:
        audio_bytes += chunk
    return audio_bytes


# =============================================================================
# ENTRY POINT
# =============================================================================

def voice_gender(voice_name):
    """Default voices are addressed by gender name; anything else means female."""
    return "male" if (voice_name or "").lower() == "male" else "female"


def is_custom_voice(voice_type, voice_id):
    return voice_type == "custom" and bool(voice_id)


def generate_scene_audio(voiceover, voice_type=None, voice_id=None, voice_name=None, expressive=False):
    """
    Generate audio for one scene, routing to the right provider.

    Returns:
        Dict with bytes, duration, provider — or None when there is nothing to say
    """
    text = sanitize_voiceover(voiceover)
    if len(text) < 2:
        return None

    if expressive:
        text = enhance_voiceover(text)

    if is_custom_voice(voice_type, voice_id):
        audio = generate_elevenlabs(text, voice_id)
        provider = "ElevenLabs"
    else:
        audio = generate_chatterbox(text, voice_gender(voice_name))
        provider = "Replicate Chatterbox"

    return {
        "bytes": audio,
        "duration": estimate_duration(len(audio)),
        "provider": provider,
    }
