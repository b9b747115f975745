"""
Reelsmith — Smart Flow endpoint (generate-smartflow)
One request turns a data dump into an infographic plus optional narration.
"""
import time
import logging

import image_engine
import script_engine
import voice_engine
from errors import ValidationError
from phase_common import now_ms, empty_costs, add_costs, public_scenes
from validation import (
    validate_string, validate_enum, style_description,
    ALLOWED_FORMATS, ALLOWED_STYLES,
)

log = logging.getLogger(__name__)

DEFAULT_FORMAT = "square"
NARRATION_FILE = "narration.mp3"
INFOGRAPHIC_FILE = "infographic.png"


def _style_params(body):
    style = validate_enum(body.get("style"), "style", ALLOWED_STYLES) or "minimalist"
    custom_style = validate_string(body.get("customStyle"), "customStyle")
    return {
        "style": style,
        "customStyle": custom_style,
        "format": validate_enum(body.get("format"), "format", ALLOWED_FORMATS) or DEFAULT_FORMAT,
        "brandMark": validate_string(body.get("brandMark"), "brandMark"),
        "styleDescription": style_description(style, custom_style),
    }


def _progress(store, generation_id, value, **fields):
    store.update_generation(generation_id, progress=value, **fields)
    log.info("[SMARTFLOW] %s progress %d%%", generation_id, value)


# =============================================================================
# GENERATE
# =============================================================================

def handle_generate(body, store):
    started = now_ms()
    data_source = validate_string(body.get("dataSource"), "dataSource")
    extraction_prompt = validate_string(body.get("extractionPrompt"), "extractionPrompt")
    sp = _style_params(body)
    enable_voice = bool(body.get("enableVoice"))
    voice_type = body.get("voiceType") or "standard"
    voice_id = validate_string(body.get("voiceId"), "voiceId")
    voice_name = validate_string(body.get("voiceName"), "voiceName")
    gender = body.get("voiceGender") or voice_engine.voice_gender(voice_name)

    if not data_source or len(data_source) < 10:
        raise ValidationError("Data source must be at least 10 characters")
    if not extraction_prompt or len(extraction_prompt) < 5:
        raise ValidationError("Extraction prompt must be at least 5 characters")

    log.info("[SMARTFLOW] Request validated: style=%s format=%s voice=%s data=%d chars",
             sp["style"], sp["format"], enable_voice, len(data_source))

    default_title = f"Smart Flow - {time.strftime('%Y-%m-%d')}"
    project = store.create_project(
        title=default_title,
        content=data_source[:1000],
        description=extraction_prompt,
        project_type="smartflow",
        format=sp["format"],
        style=sp["customStyle"] if sp["style"] == "custom" else sp["style"],
        length="short",
        brand_mark=sp["brandMark"],
        voice_type=voice_type,
        voice_id=voice_id,
        voice_name=voice_name,
    )
    generation = store.create_generation(
        project["id"],
        progress=10,
        project_type="smartflow",
        params={**sp, "voiceType": voice_type, "voiceId": voice_id, "voiceName": voice_name,
                "voiceGender": gender, "enableVoice": enable_voice},
        started_ms=started,
        cost_tracking=empty_costs(),
    )
    gen_id = generation["id"]

    # Step 1: analysis
    usage = {}
    analysis = script_engine.analyze_for_infographic(
        data_source, extraction_prompt, sp["styleDescription"], sp["format"], sp["brandMark"], usage=usage)
    _progress(store, gen_id, 30, script=analysis.get("narrationScript"))

    # Step 2: infographic
    prompt = script_engine.build_infographic_prompt(
        sp["format"], sp["styleDescription"], sp["brandMark"], analysis=analysis)
    image_url = store.save_media(gen_id, INFOGRAPHIC_FILE, image_engine.generate_infographic(prompt, sp["format"]))
    _progress(store, gen_id, 60)

    # Step 3: narration, best effort
    audio_url = None
    duration = 0
    narration = analysis.get("narrationScript")
    if enable_voice and narration:
        try:
            audio = voice_engine.generate_scene_audio(narration, voice_type, voice_id, voice_name)
            if audio:
                audio_url = store.save_media(gen_id, NARRATION_FILE, audio["bytes"])
                duration = audio["duration"]
        except Exception as e:
            log.error("[SMARTFLOW] Audio generation error: %s", e)
    _progress(store, gen_id, 90)

    # Step 4: finalize
    scenes = [{
        "number": 1,
        "voiceover": narration or analysis["title"],
        "visualPrompt": analysis.get("imagePrompt", ""),
        "imageUrl": image_url,
        "imageUrls": [image_url],
        "audioUrl": audio_url,
        "duration": duration or 10,
        "title": analysis["title"],
        "keyInsights": analysis.get("keyInsights") or [],
    }]

    def mutate(g):
        add_costs(g, scriptTokens=usage.get("tokens", 0), imagesGenerated=1, audioSeconds=duration)
        g.update(
            status="complete",
            progress=100,
            completed_at=time.strftime("%Y-%m-%dT%H:%M:%S"),
            scenes=scenes,
            script=narration,
            audio_url=audio_url,
            total_time_ms=now_ms() - started,
        )

    gen = store.modify_generation(gen_id, mutate)
    store.update_project(project["id"], title=analysis["title"] or default_title,
                         status="complete", thumbnail_url=image_url)
    log.info("[SMARTFLOW] Generation complete!")
    return {
        "success": True,
        "projectId": project["id"],
        "generationId": gen_id,
        "title": analysis["title"],
        "imageUrl": image_url,
        "audioUrl": audio_url,
        "script": narration,
        "keyInsights": analysis.get("keyInsights") or [],
        "scenes": public_scenes(gen["scenes"]),
        "costTracking": gen["cost_tracking"],
        "totalTimeMs": gen["total_time_ms"],
    }


# =============================================================================
# REGENERATION
# =============================================================================

def handle_regenerate_image(body, store):
    generation_id = body.get("generationId")
    modification = validate_string(body.get("imagePrompt"), "imagePrompt")
    if not generation_id or not modification:
        raise ValidationError("Missing generationId or imagePrompt")

    gen = store.get_generation(generation_id)
    sp = _style_params(body)
    log.info("[SMARTFLOW] Regenerating image for generation: %s", generation_id)

    prompt = script_engine.build_infographic_prompt(
        sp["format"], sp["styleDescription"], sp["brandMark"], modification=modification)
    image_url = store.save_media(generation_id, INFOGRAPHIC_FILE, image_engine.generate_infographic(prompt, sp["format"]))

    def mutate(g):
        for scene in g.get("scenes") or []:
            scene.update(imageUrl=image_url, imageUrls=[image_url])
        add_costs(g, imagesGenerated=1)

    store.modify_generation(gen["id"], mutate)
    return {"success": True, "imageUrl": image_url}


def handle_regenerate_audio(body, store):
    generation_id = body.get("generationId")
    script = validate_string(body.get("script"), "script")
    if not generation_id or not script:
        raise ValidationError("Missing generationId or script")

    gen = store.get_generation(generation_id)
    gender = body.get("voiceGender") or "female"
    log.info("[SMARTFLOW] Regenerating audio for generation: %s", generation_id)

    audio_bytes = voice_engine.generate_chatterbox(voice_engine.sanitize_voiceover(script), gender)
    audio_url = store.save_media(generation_id, NARRATION_FILE, audio_bytes)
    duration = voice_engine.estimate_duration(len(audio_bytes))

    def mutate(g):
        for scene in g.get("scenes") or []:
            scene.update(voiceover=script, audioUrl=audio_url, duration=duration)
        g.update(script=script, audio_url=audio_url)
        add_costs(g, audioSeconds=duration)

    store.modify_generation(gen["id"], mutate)
    return {"success": True, "audioUrl": audio_url, "duration": duration}


PHASES = {
    "generate": handle_generate,
    "regenerate-image": handle_regenerate_image,
    "regenerate-audio": handle_regenerate_audio,
}
