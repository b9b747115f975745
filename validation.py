"""
Reelsmith — Input validation
Length limits, enum checks, and the style/format tables shared by every phase endpoint.
"""
from errors import ValidationError
from generation_types import PROJECT_TYPES

INPUT_LIMITS = {
    "content": 250000,
    "dataSource": 250000,
    "extractionPrompt": 2000,
    "style": 50,
    "customStyle": 2000,
    "format": 20,
    "brandMark": 500,
    "brandName": 200,
    "voiceId": 200,
    "voiceName": 200,
    "presenterFocus": 2000,
    "characterDescription": 2000,
    "inspirationStyle": 200,
    "storyTone": 50,
    "storyGenre": 50,
    "voiceInclination": 200,
    "voiceover": 5000,
    "imageModification": 2000,
    "imagePrompt": 5000,
    "script": 10000,
}

ALLOWED_FORMATS = ("landscape", "portrait", "square")
ALLOWED_LENGTHS = ("short", "brief", "presentation")
ALLOWED_STYLES = (
    "minimalist", "doodle", "stick", "realistic", "storybook",
    "caricature", "sketch", "crayon", "anime", "cinematic", "custom",
)
ALLOWED_VOICE_TYPES = ("standard", "custom")

STYLE_DESCRIPTIONS = {
    "minimalist": "Clean, modern minimalist design with simple shapes, flat colors, and ample white space. Professional corporate aesthetic.",
    "doodle": "Hand-drawn doodle style with sketchy lines, playful icons, and a casual, approachable feel.",
    "stick": "Simple stick figure illustrations with basic shapes, clean lines, and easy-to-understand visual metaphors.",
    "realistic": "Photorealistic 3D renders with professional lighting, detailed textures, and polished corporate look.",
    "storybook": "Warm, illustrated storybook aesthetic with soft colors, gentle gradients, and charming character designs.",
    "caricature": "Exaggerated caricature style with bold expressions, dynamic poses, and humorous visual elements.",
    "sketch": "Pencil sketch aesthetic with cross-hatching, artistic shading, and an elegant hand-drawn quality.",
    "crayon": "Colorful crayon-drawn style with textured strokes, vibrant colors, and a playful, childlike charm.",
    "anime": "Japanese anime illustration with clean line art, cel shading, and expressive characters.",
    "cinematic": "Photoreal film still with anamorphic framing, dramatic lighting, and shallow depth of field.",
    "custom": "",
}

FORMAT_SPECS = {
    "portrait": {"aspectRatio": "9:16", "description": "VERTICAL 9:16 portrait orientation - tall and narrow like a phone screen"},
    "square": {"aspectRatio": "1:1", "description": "SQUARE 1:1 orientation - equal width and height"},
    "landscape": {"aspectRatio": "16:9", "description": "HORIZONTAL 16:9 landscape orientation - wide like a TV screen"},
}


def validate_string(value, field, max_length=None):
    """Trimmed string or None. Raises ValidationError on wrong type or length."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    max_length = max_length or INPUT_LIMITS.get(field)
    trimmed = value.strip()
    if max_length and len(trimmed) > max_length:
        raise ValidationError(f"{field} exceeds maximum length of {max_length}")
    return trimmed or None


def validate_enum(value, field, allowed):
    """Lower-cased member of allowed or None."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    lower = value.lower().strip()
    if lower not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(allowed)}")
    return lower


def validate_index(value, field, upper):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0 or value >= upper:
        raise ValidationError(f"{field} out of range (0-{upper - 1})")
    return value


def validate_start_index(value, field):
    """Chunk start index; missing means 0."""
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0:
        raise ValidationError(f"{field} must not be negative")
    return value


def style_description(style, custom_style=None):
    if style == "custom":
        return custom_style or STYLE_DESCRIPTIONS["minimalist"]
    return STYLE_DESCRIPTIONS.get(style) or STYLE_DESCRIPTIONS["minimalist"]


def format_spec(fmt):
    return FORMAT_SPECS.get(fmt) or FORMAT_SPECS["landscape"]


def validate_generation_request(body):
    """Validate the script-phase request shared by the standard and cinematic endpoints.

    Returns:
        Cleaned params dict with defaults applied
    """
    content = validate_string(body.get("content"), "content")
    if not content or len(content) < 3:
        raise ValidationError("Content must be at least 3 characters")

    params = {
        "content": content,
        "format": validate_enum(body.get("format"), "format", ALLOWED_FORMATS) or "landscape",
        "length": validate_enum(body.get("length"), "length", ALLOWED_LENGTHS) or "short",
        "style": validate_enum(body.get("style"), "style", ALLOWED_STYLES) or "minimalist",
        "voiceType": validate_enum(body.get("voiceType"), "voiceType", ALLOWED_VOICE_TYPES),
        "projectType": validate_enum(body.get("projectType"), "projectType", PROJECT_TYPES) or "doc2video",
        "disableExpressions": bool(body.get("disableExpressions")),
        "characterConsistencyEnabled": bool(body.get("characterConsistencyEnabled")),
        "skipAudio": bool(body.get("skipAudio")),
    }
    for field in ("customStyle", "brandMark", "brandName", "voiceId", "voiceName", "presenterFocus",
                  "characterDescription", "inspirationStyle", "storyTone", "storyGenre", "voiceInclination"):
        params[field] = validate_string(body.get(field), field)

    if params["style"] == "custom" and not params["customStyle"]:
        raise ValidationError("customStyle is required when style is custom")
    return params
