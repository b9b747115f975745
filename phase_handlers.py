"""
Reelsmith — Standard phase endpoint (generate-video)

Phases:
    script            → Gemini script, project + generation records
    audio             → TTS for up to AUDIO_CHUNK scenes per call
    images            → up to IMAGE_CHUNK image slots per call (primary + sub-visuals)
    finalize          → mark complete, timings and costs
    regenerate-audio  → new voiceover for one scene
    regenerate-image  → redo one image slot with an optional modification
"""
import time
import logging

import image_engine
import script_engine
import voice_engine
from errors import ValidationError
from generation_types import expected_scene_count
from phase_common import (
    now_ms, empty_costs, add_costs, add_phase_time, write_meta,
    load_generation, scene_index, public_scene, public_scenes,
)
from validation import validate_generation_request, validate_string, validate_start_index, style_description

log = logging.getLogger(__name__)

AUDIO_CHUNK = 3
IMAGE_CHUNK = 4

AUDIO_PROGRESS = (15, 40)
IMAGE_PROGRESS = (45, 90)


def _span(bounds, done, total):
    low, high = bounds
    if total <= 0:
        return high
    return low + int(done / total * (high - low))


# =============================================================================
# IMAGE SLOTS
# =============================================================================

def image_slots(scenes):
    """Flatten scenes into (scene_index, slot_index, prompt) in generation order."""
    slots = []
    for i, scene in enumerate(scenes):
        slots.append((i, 0, scene.get("visualPrompt", "")))
        for j, sub in enumerate(scene.get("subVisuals") or []):
            slots.append((i, j + 1, sub))
    return slots


def _images_generated(scenes):
    return sum(1 for s in scenes for url in (s.get("imageUrls") or []) if url)


# =============================================================================
# SCRIPT
# =============================================================================

def handle_script(body, store):
    started = now_ms()
    params = validate_generation_request(body)
    scene_count = expected_scene_count(params["length"])

    usage = {}
    script = script_engine.generate_script(params, scene_count, usage=usage)

    scenes = script["scenes"]
    for scene in scenes:
        scene["imageUrls"] = [None] * (1 + len(scene.get("subVisuals") or []))
    total_images = sum(len(s["imageUrls"]) for s in scenes)

    project = store.create_project(
        title=script["title"],
        content=params["content"][:1000],
        format=params["format"],
        length=params["length"],
        style=params["customStyle"] if params["style"] == "custom" else params["style"],
        project_type=params["projectType"],
        voice_type=params["voiceType"],
        voice_id=params["voiceId"],
        voice_name=params["voiceName"],
        brand_mark=params["brandMark"],
    )
    gen = {"cost_tracking": empty_costs(), "phase_timings": {}}
    add_costs(gen, scriptTokens=usage.get("tokens", 0))
    phase_time = now_ms() - started
    add_phase_time(gen, "script", phase_time)

    generation = store.create_generation(
        project["id"],
        progress=10,
        scenes=scenes,
        params=params,
        project_type=params["projectType"],
        total_images=total_images,
        started_ms=started,
        cost_tracking=gen["cost_tracking"],
        phase_timings=gen["phase_timings"],
    )
    store.modify_generation(generation["id"], lambda g: write_meta(
        g, totalImages=total_images, completedImages=0, statusMessage="Script complete"))

    log.info("[Phase:script] %s → %d scenes, %d images", generation["id"], len(scenes), total_images)
    return {
        "success": True,
        "projectId": project["id"],
        "generationId": generation["id"],
        "title": script["title"],
        "sceneCount": len(scenes),
        "totalImages": total_images,
        "costTracking": gen["cost_tracking"],
        "phaseTime": phase_time,
    }


# =============================================================================
# AUDIO (chunked)
# =============================================================================

def handle_audio(body, store):
    started = now_ms()
    gen = load_generation(store, body)
    params = gen.get("params") or {}
    scenes = gen["scenes"]
    start = validate_start_index(body.get("audioStartIndex"), "audioStartIndex")
    end = min(start + AUDIO_CHUNK, len(scenes))

    results = {}
    for i in range(start, end):
        if scenes[i].get("audioUrl") or params.get("skipAudio"):
            continue
        try:
            audio = voice_engine.generate_scene_audio(
                scenes[i].get("voiceover"),
                voice_type=params.get("voiceType"),
                voice_id=params.get("voiceId"),
                voice_name=params.get("voiceName"),
                expressive=not params.get("disableExpressions"),
            )
        except Exception as e:
            log.warning("[Phase:audio] Scene %d failed: %s", i + 1, e)
            results[i] = {"audioError": str(e)}
            continue
        if audio is None:
            results[i] = {"audioError": "No voiceover text"}
            continue
        url = store.save_media(gen["id"], f"audio_{i + 1}.mp3", audio["bytes"])
        results[i] = {"audioUrl": url, "duration": audio["duration"], "audioError": None}

    elapsed = now_ms() - started
    has_more = end < len(scenes)

    def mutate(g):
        for i, fields in results.items():
            g["scenes"][i].update(fields)
        added = sum(fields.get("duration", 0) for fields in results.values() if fields.get("audioUrl"))
        add_costs(g, audioSeconds=added)
        add_phase_time(g, "audio", elapsed)
        done = sum(1 for s in g["scenes"] if s.get("audioUrl"))
        g["progress"] = _span(AUDIO_PROGRESS, end, len(g["scenes"]))
        write_meta(g, statusMessage=f"Generating voiceover... ({done}/{len(g['scenes'])})")

    gen = store.modify_generation(gen["id"], mutate)
    audio_scenes = [s for s in gen["scenes"] if s.get("audioUrl")]
    return {
        "success": True,
        "hasMore": has_more,
        "nextStartIndex": end if has_more else None,
        "audioGenerated": len(audio_scenes),
        "audioSeconds": float(sum(s.get("duration", 0) for s in audio_scenes)),
        "progress": gen["progress"],
        "costTracking": gen["cost_tracking"],
        "phaseTime": elapsed,
    }


# =============================================================================
# IMAGES (chunked)
# =============================================================================

def _render_slot(store, gen, scene_idx, slot_idx, prompt, modification=None):
    params = gen.get("params") or {}
    full_prompt = script_engine.build_image_prompt(
        prompt,
        style_description(params.get("style"), params.get("customStyle")),
        params.get("characterDescription") if params.get("characterConsistencyEnabled") else None,
        modification,
    )
    data = image_engine.generate_scene_image(full_prompt, params.get("format", "landscape"))
    return store.save_media(gen["id"], f"image_{scene_idx + 1}_{slot_idx}.png", data)


def _apply_slot(g, scene_idx, slot_idx, url):
    scene = g["scenes"][scene_idx]
    urls = scene.get("imageUrls") or [None] * (1 + len(scene.get("subVisuals") or []))
    while len(urls) <= slot_idx:
        urls.append(None)
    urls[slot_idx] = url
    scene["imageUrls"] = urls
    if slot_idx == 0 or not scene.get("imageUrl"):
        scene["imageUrl"] = urls[0] or url


def handle_images(body, store):
    started = now_ms()
    gen = load_generation(store, body)
    slots = image_slots(gen["scenes"])
    total = len(slots)
    start = validate_start_index(body.get("imageStartIndex"), "imageStartIndex")
    end = min(start + IMAGE_CHUNK, total)

    rendered = []
    for scene_idx, slot_idx, prompt in slots[start:end]:
        existing = gen["scenes"][scene_idx].get("imageUrls") or []
        if slot_idx < len(existing) and existing[slot_idx]:
            continue
        if not prompt:
            continue
        try:
            url = _render_slot(store, gen, scene_idx, slot_idx, prompt)
        except Exception as e:
            log.warning("[Phase:images] Scene %d image %d failed: %s", scene_idx + 1, slot_idx + 1, e)
            continue
        rendered.append((scene_idx, slot_idx, url))

    elapsed = now_ms() - started
    has_more = end < total

    def mutate(g):
        for scene_idx, slot_idx, url in rendered:
            _apply_slot(g, scene_idx, slot_idx, url)
        add_costs(g, imagesGenerated=len(rendered))
        add_phase_time(g, "images", elapsed)
        generated = _images_generated(g["scenes"])
        g["progress"] = max(g.get("progress", 0), _span(IMAGE_PROGRESS, generated, total))
        write_meta(g, totalImages=total, completedImages=generated,
                   statusMessage=f"Images {generated}/{total}...")

    gen = store.modify_generation(gen["id"], mutate)
    return {
        "success": True,
        "hasMore": has_more,
        "nextStartIndex": end if has_more else None,
        "imagesGenerated": _images_generated(gen["scenes"]),
        "totalImages": total,
        "progress": gen["progress"],
        "costTracking": gen["cost_tracking"],
        "phaseTime": elapsed,
    }


# =============================================================================
# FINALIZE
# =============================================================================

def handle_finalize(body, store):
    started = now_ms()
    gen = load_generation(store, body)
    first_image = next((s.get("imageUrl") for s in gen["scenes"] if s.get("imageUrl")), None)

    def mutate(g):
        add_phase_time(g, "finalize", now_ms() - started)
        g["status"] = "complete"
        g["progress"] = 100
        g["completed_at"] = time.strftime("%Y-%m-%dT%H:%M:%S")
        g["total_time_ms"] = now_ms() - (g.get("started_ms") or started)
        write_meta(g, statusMessage="Generation complete!", totalTimeMs=g["total_time_ms"],
                   completedImages=_images_generated(g["scenes"]))

    gen = store.modify_generation(gen["id"], mutate)
    project = store.update_project(gen["project_id"], status="complete", thumbnail_url=first_image)
    return {
        "success": True,
        "title": project.get("title"),
        "scenes": public_scenes(gen["scenes"]),
        "costTracking": gen["cost_tracking"],
        "phaseTimings": gen["phase_timings"],
        "totalTimeMs": gen["total_time_ms"],
    }


# =============================================================================
# REGENERATION
# =============================================================================

def handle_regenerate_audio(body, store):
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    params = gen.get("params") or {}
    voiceover = validate_string(body.get("newVoiceover"), "voiceover") or gen["scenes"][idx].get("voiceover")
    if not voiceover:
        raise ValidationError("Missing newVoiceover")

    audio = voice_engine.generate_scene_audio(
        voiceover,
        voice_type=params.get("voiceType"),
        voice_id=params.get("voiceId"),
        voice_name=params.get("voiceName"),
    )
    if audio is None:
        raise ValidationError("Voiceover has no speakable text")

    url = store.save_media(gen["id"], f"audio_{idx + 1}.mp3", audio["bytes"])

    def mutate(g):
        g["scenes"][idx].update(voiceover=voiceover, audioUrl=url, duration=audio["duration"], audioError=None)
        add_costs(g, audioSeconds=audio["duration"])

    gen = store.modify_generation(gen["id"], mutate)
    return {
        "success": True,
        "audioUrl": url,
        "duration": audio["duration"],
        "scene": public_scene(gen["scenes"][idx]),
    }


def handle_regenerate_image(body, store):
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    scene = gen["scenes"][idx]
    prompts = [scene.get("visualPrompt", "")] + list(scene.get("subVisuals") or [])
    image_index = body.get("imageIndex")
    image_index = 0 if image_index is None else image_index
    if isinstance(image_index, bool) or not isinstance(image_index, int) or not 0 <= image_index < len(prompts):
        raise ValidationError(f"imageIndex out of range (0-{len(prompts) - 1})")
    modification = validate_string(body.get("imageModification"), "imageModification")

    url = _render_slot(store, gen, idx, image_index, prompts[image_index], modification)

    def mutate(g):
        _apply_slot(g, idx, image_index, url)
        add_costs(g, imagesGenerated=1)

    gen = store.modify_generation(gen["id"], mutate)
    scene = gen["scenes"][idx]
    return {
        "success": True,
        "imageUrl": url,
        "imageUrls": scene.get("imageUrls"),
        "scene": public_scene(scene),
    }


PHASES = {
    "script": handle_script,
    "audio": handle_audio,
    "images": handle_images,
    "finalize": handle_finalize,
    "regenerate-audio": handle_regenerate_audio,
    "regenerate-image": handle_regenerate_image,
}
