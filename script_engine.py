"""
Reelsmith — Script Engine
Uses Google Gemini to write scene scripts and infographic analyses.
Uses Gemini image models for reference-guided image edits.
"""
import os
import json
import logging

# Google GenAI SDK
from google import genai
from google.genai import types

import config
from validation import style_description, format_spec

log = logging.getLogger(__name__)

# Models
GEMINI_MODEL = "gemini-2.5-pro"
GEMINI_MODEL_FLASH = "gemini-2.5-flash"
IMAGE_MODEL = "gemini-2.5-flash-image"

SUB_VISUALS_PER_SCENE = 2

_client = None


def init_client():
    """Initialize the Google GenAI client."""
    global _client
    if _client is None:
        api_key = config.require(config.GEMINI_API_KEY, "GEMINI_API_KEY or GOOGLE_API_KEY")
        _client = genai.Client(api_key=api_key)
    return _client


def _count_tokens(response, usage):
    if usage is None:
        return
    meta = getattr(response, "usage_metadata", None)
    total = getattr(meta, "total_token_count", None) if meta else None
    usage["tokens"] = usage.get("tokens", 0) + (total or 0)


def generate_text(prompt, temperature=0.7, max_tokens=8000, model=None, usage=None):
    """Generate text content with Gemini."""
    client = init_client()

    response = client.models.generate_content(
        model=model or GEMINI_MODEL,
        contents=prompt,
        config=types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
    )
    _count_tokens(response, usage)
    return response.text


def _repair_truncated_json(text):
    """Attempt to repair truncated JSON by closing open strings, arrays, and objects."""
    if not text or not text.strip():
        return None

    text = text.strip()
    in_string = False
    escape_next = False
    stack = []

    for ch in text:
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if not in_string:
            if ch in ("{", "["):
                stack.append(ch)
            elif ch in ("}", "]") and stack and stack[-1] == ("{" if ch == "}" else "["):
                stack.pop()

    closers = "".join("}" if b == "{" else "]" for b in reversed(stack))
    candidate = text + ('"' if in_string else "") + closers
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    # Drop the partial tail after the last complete value and close again
    for end_pattern in ('"}', '"]', "},", "],"):
        last_idx = text.rfind(end_pattern)
        if last_idx <= 0:
            continue
        truncated = text[:last_idx + len(end_pattern)].rstrip(",")
        depth = []
        in_str = esc = False
        for ch in truncated:
            if esc:
                esc = False
                continue
            if ch == "\\" and in_str:
                esc = True
                continue
            if ch == '"':
                in_str = not in_str
                continue
            if not in_str:
                if ch in ("{", "["):
                    depth.append(ch)
                elif ch in ("}", "]") and depth:
                    depth.pop()
        truncated += "".join("}" if b == "{" else "]" for b in reversed(depth))
        try:
            return json.loads(truncated)
        except json.JSONDecodeError:
            continue
    return None


def _strip_fences(text):
    text = text.strip()
    if text.startswith("```"):
        lines = [l for l in text.split("\n") if not l.strip().startswith("```")]
        text = "\n".join(lines).strip()
    return text


def parse_json(text):
    """Parse model JSON output, repairing truncation when possible."""
    text = _strip_fences(text)
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        log.warning("[generate_json] JSON parse failed: %s. Attempting repair...", e)
        repaired = _repair_truncated_json(text)
        if repaired is not None:
            log.info("[generate_json] JSON repair successful! Salvaged %d chars", len(str(repaired)))
            return repaired
        raise


def generate_json(prompt, temperature=0.3, max_tokens=16000, model=None, usage=None):
    """Generate JSON content with Gemini, forced JSON output."""
    client = init_client()

    response = client.models.generate_content(
        model=model or GEMINI_MODEL,
        contents=prompt,
        config=types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            response_mime_type="application/json",
        )
    )
    _count_tokens(response, usage)

    text = response.text
    if text is None:
        block_reason = "unknown"
        candidates = getattr(response, "candidates", None)
        if candidates:
            block_reason = f"finish_reason={getattr(candidates[0], 'finish_reason', '?')}"
        elif getattr(response, "prompt_feedback", None):
            block_reason = f"prompt_feedback={response.prompt_feedback}"
        log.error("[generate_json] Empty response. Block reason: %s (prompt %d chars)", block_reason, len(prompt))
        raise ValueError(f"Gemini returned empty response. Reason: {block_reason}")

    return parse_json(text)


# =============================================================================
# SCENE SCRIPTS
# =============================================================================

LENGTH_TARGETS = {
    "short": "under 2 minutes",
    "brief": "2-5 minutes",
    "presentation": "5-10 minutes",
}

SCRIPT_PROMPT = """You are a video script writer. Create a compelling {kind} from the following content.

CONTENT:
{content}

REQUIREMENTS:
- Video format: {format_description}
- Target length: {length_target}
- Visual style: {style}
- Create exactly {scene_count} scenes
{extras}
For each scene, provide:
1. number
2. voiceover — what will be spoken (natural, engaging, roughly 150 words per minute)
3. visualPrompt — detailed image prompt in the visual style above
{sub_visuals_rule}4. duration — seconds, based on voiceover length
5. narrativeBeat — one or two words (hook, setup, conflict, insight, resolution, call to action)

IMPORTANT: Return ONLY valid JSON with this exact structure:
{{
  "title": "Video Title",
  "scenes": [
    {{
      "number": 1,
      "voiceover": "Text to be spoken...",
      "visualPrompt": "Detailed image generation prompt...",{sub_visuals_example}
      "duration": 15,
      "narrativeBeat": "hook"
    }}
  ]
}}"""

CINEMATIC_PROMPT = """You are a cinematic video script writer. Create a compelling script for a short film.
Generate exactly {scene_count} scenes that are 5-10 seconds each.

Each scene has:
1. voiceover — the narration that will be spoken
2. visualPrompt — detailed visual description for AI video generation (camera angle, lighting, mood, motion)
3. duration — seconds (5-10)

The style is: {style}
The tone is: {tone}
The genre is: {genre}
{extras}
IDEA:
{content}

Respond with JSON only:
{{
  "title": "Video Title",
  "scenes": [
    {{"number": 1, "voiceover": "...", "visualPrompt": "...", "duration": 8}}
  ]
}}"""


def _extras(params):
    lines = []
    if params.get("presenterFocus"):
        lines.append(f"- Presenter focus: {params['presenterFocus']}")
    if params.get("characterDescription"):
        lines.append(f"- Main character appearance (keep identical in every scene): {params['characterDescription']}")
    if params.get("inspirationStyle"):
        lines.append(f"- Writing inspiration: {params['inspirationStyle']}")
    if params.get("storyTone"):
        lines.append(f"- Tone: {params['storyTone']}")
    if params.get("storyGenre"):
        lines.append(f"- Genre: {params['storyGenre']}")
    if params.get("voiceInclination"):
        lines.append(f"- Narrator inclination: {params['voiceInclination']}")
    if params.get("brandName"):
        lines.append(f"- Brand/Character name to include: {params['brandName']}")
    if params.get("disableExpressions"):
        lines.append("- Keep characters neutral; no exaggerated facial expressions")
    return "\n".join(lines) + ("\n" if lines else "")


def _clean_scenes(raw_scenes, scene_count, with_sub_visuals):
    scenes = []
    for i, s in enumerate((raw_scenes or [])[:scene_count]):
        if not isinstance(s, dict):
            continue
        scene = {
            "number": i + 1,
            "voiceover": (s.get("voiceover") or s.get("narration") or "").strip(),
            "visualPrompt": (s.get("visualPrompt") or s.get("visual_prompt") or "").strip(),
            "duration": s.get("duration") if isinstance(s.get("duration"), (int, float)) else 8,
            "narrativeBeat": s.get("narrativeBeat"),
        }
        if with_sub_visuals:
            subs = [v for v in (s.get("subVisuals") or []) if isinstance(v, str) and v.strip()]
            scene["subVisuals"] = subs[:SUB_VISUALS_PER_SCENE]
        scenes.append(scene)
    return scenes


def generate_script(params, scene_count, usage=None):
    """
    Write a standard (doc2video / storytelling) script.

    Args:
        params: Validated generation params
        scene_count: Exact number of scenes to produce
        usage: Optional dict accumulating token counts

    Returns:
        Dict with title and scenes (each with a primary visualPrompt and subVisuals)
    """
    kind = "narrative story video" if params.get("projectType") == "storytelling" else "explainer video"
    prompt = SCRIPT_PROMPT.format(
        kind=kind,
        content=params["content"],
        format_description=format_spec(params["format"])["description"],
        length_target=LENGTH_TARGETS.get(params["length"], LENGTH_TARGETS["short"]),
        style=style_description(params["style"], params.get("customStyle")),
        scene_count=scene_count,
        extras=_extras(params),
        sub_visuals_rule=f"   subVisuals — {SUB_VISUALS_PER_SCENE} more image prompts showing other moments of the same scene\n",
        sub_visuals_example='\n      "subVisuals": ["Second moment...", "Third moment..."],',
    )
    script = generate_json(prompt, temperature=0.7, usage=usage)
    scenes = _clean_scenes(script.get("scenes"), scene_count, with_sub_visuals=True)
    if not scenes:
        raise ValueError("Script contained no scenes")
    log.info("[Script] %s (%d scenes)", script.get("title"), len(scenes))
    return {"title": script.get("title") or "Untitled", "scenes": scenes}


def generate_cinematic_script(params, scene_count, usage=None):
    """Write a cinematic script: one clip per scene, no sub-visuals."""
    prompt = CINEMATIC_PROMPT.format(
        scene_count=scene_count,
        style=style_description(params["style"], params.get("customStyle")),
        tone=params.get("storyTone") or "casual",
        genre=params.get("storyGenre") or "documentary",
        extras=_extras(params),
        content=params["content"],
    )
    script = generate_json(prompt, temperature=0.8, usage=usage)
    scenes = _clean_scenes(script.get("scenes"), scene_count, with_sub_visuals=False)
    if not scenes:
        raise ValueError("Invalid script format from AI")
    return {"title": script.get("title") or "Untitled", "scenes": scenes}


# =============================================================================
# PROMPT BUILDERS
# =============================================================================

def build_image_prompt(visual_prompt, style_desc, character_description=None, modification=None):
    prompt = f"{visual_prompt}. Style: {style_desc}. High quality, professional, cinematic."
    if character_description:
        prompt += f" Main character: {character_description}."
    if modification:
        prompt += f" Modification: {modification}."
    return prompt


def build_video_prompt(scene, style_desc):
    return (
        f"{scene.get('visualPrompt', '')}. Cinematic quality, {style_desc} style, "
        f"{scene.get('duration', 8)} seconds. Subtle natural motion, steady camera."
    )


# =============================================================================
# SMART FLOW (infographics)
# =============================================================================

ANALYSIS_PROMPT = """You are an expert data analyst and infographic designer. Analyze the following data and create content for a single, stunning infographic image.

USER'S DATA SOURCE:
{data_source}

USER'S EXTRACTION REQUEST:
{extraction_prompt}

Your task:
1. Extract the key insights, statistics, or information the user requested
2. Structure this information for a visually compelling infographic
3. Create a detailed image generation prompt for the infographic
4. Write an engaging narration script explaining the infographic (approximately 500-800 words)

The infographic should be:
- Format: {format_description}
- Style: {style}
{brand_line}
Respond with a JSON object containing:
{{
  "title": "Infographic title",
  "keyInsights": ["insight 1", "insight 2"],
  "imagePrompt": "Detailed prompt describing layout, visual elements, icons, colors, and composition...",
  "narrationScript": "Script for voice narration..."
}}"""


def analyze_for_infographic(data_source, extraction_prompt, style_desc, fmt, brand_mark=None, usage=None):
    prompt = ANALYSIS_PROMPT.format(
        data_source=data_source,
        extraction_prompt=extraction_prompt,
        format_description=format_spec(fmt)["description"],
        style=style_desc,
        brand_line=f'- Include brand mark: "{brand_mark}" in bottom center\n' if brand_mark else "",
    )
    analysis = generate_json(prompt, temperature=0.4, model=GEMINI_MODEL_FLASH, usage=usage)
    if not isinstance(analysis, dict) or not analysis.get("imagePrompt"):
        raise ValueError("Failed to parse AI analysis")
    analysis.setdefault("title", "Smart Flow")
    analysis.setdefault("keyInsights", [])
    return analysis


def build_infographic_prompt(fmt, style_desc, brand_mark=None, analysis=None, modification=None):
    lines = [
        "Create a professional infographic visualization.",
        format_spec(fmt)["description"],
        f"STYLE: {style_desc}",
        "",
    ]
    if analysis:
        lines.append("CONTENT TO VISUALIZE:")
        lines.append(f"Title: {analysis.get('title', '')}")
        lines.append("Key Information:")
        for idx, insight in enumerate(analysis.get("keyInsights") or []):
            lines.append(f"{idx + 1}. {insight}")
        lines.append("")
        lines.append("DESIGN REQUIREMENTS:")
        lines.append(analysis.get("imagePrompt", ""))
    if modification:
        lines.append("USER'S MODIFICATION REQUEST:")
        lines.append(modification)
    if brand_mark:
        lines.append(f'Include subtle brand watermark: "{brand_mark}" in the bottom center.')
    lines.append("Create a stunning, professional infographic with clear visual hierarchy, readable text, "
                 "icons, charts, and balanced composition.")
    return "\n".join(lines)


# =============================================================================
# IMAGE EDITS (reference-guided)
# =============================================================================

def edit_image_with_ref(prompt, ref_image_path, output_path, aspect_ratio="16:9"):
    """
    Edit an existing image with Gemini, keeping its composition and subjects.

    Args:
        prompt: Edit instruction
        ref_image_path: Current image on disk
        output_path: Where to save the edited image
        aspect_ratio: "16:9", "9:16" or "1:1"

    Returns:
        Path to the saved image
    """
    from PIL import Image as PILImage

    client = init_client()
    ref_img = PILImage.open(ref_image_path)

    response = client.models.generate_content(
        model=IMAGE_MODEL,
        contents=[ref_img, prompt],
        config=types.GenerateContentConfig(
            response_modalities=["Image"],
            image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
        ),
    )

    if response.candidates and response.candidates[0].content and response.candidates[0].content.parts:
        for part in response.candidates[0].content.parts:
            if part.inline_data is not None:
                os.makedirs(os.path.dirname(output_path), exist_ok=True)
                part.as_image().save(output_path)
                return output_path

    raise ValueError("No image generated — response contained no image parts")
