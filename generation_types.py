"""
Reelsmith — Generation state model
Steps, scene counts and the helpers that rebuild pipeline state from stored records.
"""

STEPS = ("idle", "analysis", "scripting", "visuals", "rendering", "complete", "error")

PROJECT_TYPES = ("doc2video", "storytelling", "smartflow", "cinematic")

SCENE_COUNTS = {
    "short": 6,
    "brief": 12,
    "presentation": 24,
}
DEFAULT_SCENE_COUNT = 6

DEFAULT_ENDPOINT = "generate-video"
CINEMATIC_ENDPOINT = "generate-cinematic"
SMARTFLOW_ENDPOINT = "generate-smartflow"

DEFAULT_SCENE_DURATION = 8


def initial_state():
    return {
        "step": "idle",
        "progress": 0,
        "sceneCount": DEFAULT_SCENE_COUNT,
        "currentScene": 0,
        "totalImages": DEFAULT_SCENE_COUNT,
        "completedImages": 0,
        "isGenerating": False,
    }


def expected_scene_count(length):
    return SCENE_COUNTS.get(length, DEFAULT_SCENE_COUNT)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _pick(raw, *keys):
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def normalize_scenes(raw):
    """Coerce a stored scenes array into camelCase scene dicts.

    Returns None when raw is not a list. Accepts snake_case fallbacks
    (narration, visual_prompt, image_url, audio_url, video_url).
    """
    if not isinstance(raw, list):
        return None

    scenes = []
    for idx, s in enumerate(raw):
        s = s if isinstance(s, dict) else {}
        number = s.get("number")
        duration = s.get("duration")
        scene = {
            "number": number if isinstance(number, int) else idx + 1,
            "voiceover": _pick(s, "voiceover", "narration") or "",
            "visualPrompt": _pick(s, "visualPrompt", "visual_prompt") or "",
            "subVisuals": s.get("subVisuals") if isinstance(s.get("subVisuals"), list) else None,
            "duration": duration if _is_number(duration) else DEFAULT_SCENE_DURATION,
            "narrativeBeat": s.get("narrativeBeat"),
            "imageUrl": _pick(s, "imageUrl", "image_url"),
            "imageUrls": s.get("imageUrls") if isinstance(s.get("imageUrls"), list) else None,
            "audioUrl": _pick(s, "audioUrl", "audio_url"),
            "videoUrl": _pick(s, "videoUrl", "video_url"),
            "title": s.get("title"),
            "subtitle": s.get("subtitle"),
        }
        # In-flight provider bookkeeping survives normalisation
        for key in ("audioPredictionId", "videoRequestId", "keyInsights"):
            if s.get(key) is not None:
                scene[key] = s[key]
        scenes.append(scene)
    return scenes


def extract_meta(scenes):
    """Read the progress metadata the phase service stores on the first scene."""
    if not isinstance(scenes, list) or not scenes:
        return {"totalImages": 0, "completedImages": 0}

    first = scenes[0] if isinstance(scenes[0], dict) else {}
    meta = first.get("_meta")
    if isinstance(meta, dict) and _is_number(meta.get("totalImages")):
        completed = meta.get("completedImages")
        return {
            "totalImages": meta["totalImages"],
            "completedImages": completed if _is_number(completed) else 0,
            "statusMessage": meta.get("statusMessage"),
            "costTracking": meta.get("costTracking"),
            "phaseTimings": meta.get("phaseTimings"),
            "totalTimeMs": meta.get("totalTimeMs"),
        }
    return {"totalImages": len(scenes), "completedImages": 0}


def infer_step_from_db(status, progress):
    if status == "complete":
        return "complete"
    if status == "error":
        return "error"
    progress = progress or 0
    if progress < 10:
        return "analysis"
    if progress < 40:
        return "scripting"
    return "visuals"


def infer_current_scene_from_db(progress, scene_count):
    if scene_count <= 0 or (progress or 0) < 40:
        return 0
    ratio = min(1.0, max(0.0, (progress - 40) / 50))
    return max(1, min(scene_count, int(ratio * scene_count + 0.5)))


def count_media(scenes):
    """Number of scenes carrying audio, image and video."""
    scenes = scenes or []
    return (
        sum(1 for s in scenes if s.get("audioUrl")),
        sum(1 for s in scenes if s.get("imageUrl")),
        sum(1 for s in scenes if s.get("videoUrl")),
    )
