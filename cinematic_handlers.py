"""
Reelsmith — Cinematic phase endpoint (generate-cinematic)

Every per-scene phase answers immediately. Long work (TTS predictions, video
clips) reports status "processing" until the caller polls it to "complete".

Phases:
    script       → Gemini cinematic script, records
    audio        → async Chatterbox prediction per scene (ElevenLabs is synchronous)
    images       → Flux start frame per scene
    video        → Kling clip per scene via the fal.ai queue (regenerate=True starts over)
    video-batch  → poll every in-flight clip once
    finalize     → stitch clips with moviepy, fall back to the first clip
    image-edit   → edit a start frame with an instruction
    image-regen  → fresh start frame from the visual prompt
"""
import time
import logging

import image_engine
import script_engine
import video_engine
import voice_engine
from errors import ProviderError, ValidationError
from generation_types import expected_scene_count
from phase_common import (
    now_ms, empty_costs, add_costs, add_phase_time, write_meta,
    load_generation, scene_index, public_scene, public_scenes,
)
from validation import validate_generation_request, validate_string, style_description, format_spec

log = logging.getLogger(__name__)

AUDIO_PROGRESS = (10, 35)
IMAGE_PROGRESS = (35, 60)
VIDEO_PROGRESS = (60, 95)


def _span(bounds, done, total):
    low, high = bounds
    return high if total <= 0 else low + int(done / total * (high - low))


def _style(gen):
    params = gen.get("params") or {}
    return style_description(params.get("style"), params.get("customStyle"))


def _scene_response(gen, idx, status, **extra):
    response = {"success": True, "status": status, "scene": public_scene(gen["scenes"][idx])}
    response.update(extra)
    return response


# =============================================================================
# SCRIPT
# =============================================================================

def handle_script(body, store):
    started = now_ms()
    params = validate_generation_request(body)
    params["projectType"] = "cinematic"
    scene_count = expected_scene_count(params["length"])

    usage = {}
    script = script_engine.generate_cinematic_script(params, scene_count, usage=usage)

    project = store.create_project(
        title=script["title"],
        content=params["content"][:1000],
        format=params["format"],
        length=params["length"],
        style=params["customStyle"] if params["style"] == "custom" else params["style"],
        project_type="cinematic",
        voice_type=params["voiceType"],
        voice_id=params["voiceId"],
        voice_name=params["voiceName"],
    )
    gen = {"cost_tracking": empty_costs(), "phase_timings": {}}
    add_costs(gen, scriptTokens=usage.get("tokens", 0))
    phase_time = now_ms() - started
    add_phase_time(gen, "script", phase_time)

    generation = store.create_generation(
        project["id"],
        progress=10,
        scenes=script["scenes"],
        params=params,
        project_type="cinematic",
        total_images=len(script["scenes"]),
        started_ms=started,
        cost_tracking=gen["cost_tracking"],
        phase_timings=gen["phase_timings"],
    )
    return {
        "success": True,
        "projectId": project["id"],
        "generationId": generation["id"],
        "title": script["title"],
        "sceneCount": len(script["scenes"]),
        "totalImages": len(script["scenes"]),
        "costTracking": gen["cost_tracking"],
        "phaseTime": phase_time,
    }


# =============================================================================
# AUDIO (async per scene)
# =============================================================================

def _store_audio(store, gen, idx, audio_bytes, elapsed):
    url = store.save_media(gen["id"], f"audio_{idx + 1}.mp3", audio_bytes)
    duration = voice_engine.estimate_duration(len(audio_bytes))

    def mutate(g):
        g["scenes"][idx].update(audioUrl=url, audioPredictionId=None, audioDuration=duration)
        add_costs(g, audioSeconds=duration)
        add_phase_time(g, "audio", elapsed)
        done = sum(1 for s in g["scenes"] if s.get("audioUrl"))
        g["progress"] = max(g.get("progress", 0), _span(AUDIO_PROGRESS, done, len(g["scenes"])))

    return store.modify_generation(gen["id"], mutate)


def handle_audio(body, store):
    started = now_ms()
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    scene = gen["scenes"][idx]
    params = gen.get("params") or {}

    if scene.get("audioUrl"):
        return _scene_response(gen, idx, "complete")

    text = voice_engine.sanitize_voiceover(scene.get("voiceover"))
    if len(text) < 2:
        gen = store.modify_generation(gen["id"], lambda g: g["scenes"][idx].update(audioError="No voiceover text"))
        return _scene_response(gen, idx, "complete")

    if voice_engine.is_custom_voice(params.get("voiceType"), params.get("voiceId")):
        audio_bytes = voice_engine.generate_elevenlabs(text, params["voiceId"])
        gen = _store_audio(store, gen, idx, audio_bytes, now_ms() - started)
        return _scene_response(gen, idx, "complete")

    prediction_id = scene.get("audioPredictionId")
    if not prediction_id:
        prediction_id = voice_engine.start_chatterbox(text, voice_engine.voice_gender(params.get("voiceName")))
        gen = store.modify_generation(gen["id"], lambda g: g["scenes"][idx].update(audioPredictionId=prediction_id))
        log.info("[Cinematic:audio] Scene %d prediction %s started", idx + 1, prediction_id)
        return _scene_response(gen, idx, "processing")

    try:
        status, audio_bytes = voice_engine.poll_chatterbox(prediction_id)
    except ProviderError:
        # Drop the dead prediction so the next call starts a fresh one
        store.modify_generation(gen["id"], lambda g: g["scenes"][idx].update(audioPredictionId=None))
        raise

    if status != "complete":
        return _scene_response(gen, idx, "processing")

    gen = _store_audio(store, gen, idx, audio_bytes, now_ms() - started)
    return _scene_response(gen, idx, "complete")


# =============================================================================
# IMAGES (per scene)
# =============================================================================

def _render_frame(store, gen, idx, modification=None):
    params = gen.get("params") or {}
    prompt = script_engine.build_image_prompt(
        gen["scenes"][idx].get("visualPrompt", ""),
        _style(gen),
        params.get("characterDescription") if params.get("characterConsistencyEnabled") else None,
        modification,
    )
    data = image_engine.generate_scene_image(prompt, params.get("format", "landscape"))
    return store.save_media(gen["id"], f"frame_{idx + 1}.png", data)


def _store_frame(store, gen, idx, url, elapsed=0, invalidate_video=False):
    def mutate(g):
        scene = g["scenes"][idx]
        scene.update(imageUrl=url, imageUrls=[url])
        if invalidate_video:
            scene.update(videoRequestId=None)
        add_costs(g, imagesGenerated=1)
        add_phase_time(g, "images", elapsed)
        done = sum(1 for s in g["scenes"] if s.get("imageUrl"))
        g["progress"] = max(g.get("progress", 0), _span(IMAGE_PROGRESS, done, len(g["scenes"])))

    return store.modify_generation(gen["id"], mutate)


def handle_images(body, store):
    started = now_ms()
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    if gen["scenes"][idx].get("imageUrl") and not body.get("regenerate"):
        return _scene_response(gen, idx, "complete")

    url = _render_frame(store, gen, idx)
    gen = _store_frame(store, gen, idx, url, now_ms() - started)
    return _scene_response(gen, idx, "complete", imageUrl=url)


def handle_image_regen(body, store):
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    url = _render_frame(store, gen, idx)
    gen = _store_frame(store, gen, idx, url, invalidate_video=True)
    return _scene_response(gen, idx, "complete", imageUrl=url)


def handle_image_edit(body, store):
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    modification = validate_string(body.get("imageModification"), "imageModification")
    if not modification:
        raise ValidationError("Missing imageModification")

    current = store.path_from_url(gen["scenes"][idx].get("imageUrl"))
    if current:
        aspect_ratio = format_spec((gen.get("params") or {}).get("format"))["aspectRatio"]
        target = store.media_path(gen["id"], f"frame_{idx + 1}_edit.png")
        script_engine.edit_image_with_ref(
            f"Edit this image: {modification}. Keep the composition, characters and style.",
            str(current), str(target), aspect_ratio,
        )
        with open(target, "rb") as f:
            url = store.save_media(gen["id"], f"frame_{idx + 1}.png", f.read())
    else:
        url = _render_frame(store, gen, idx, modification)

    gen = _store_frame(store, gen, idx, url, invalidate_video=True)
    return _scene_response(gen, idx, "complete", imageUrl=url)


# =============================================================================
# VIDEO (queue per scene)
# =============================================================================

def _submit_clip(store, gen, idx):
    scene = gen["scenes"][idx]
    local = store.path_from_url(scene.get("imageUrl"))
    image_url = video_engine.upload_image(local) if local else scene["imageUrl"]
    request_id = video_engine.submit_clip(
        image_url,
        script_engine.build_video_prompt(scene, _style(gen)),
        duration=scene.get("audioDuration") or scene.get("duration") or 5,
    )
    return store.modify_generation(
        gen["id"], lambda g: g["scenes"][idx].update(videoRequestId=request_id, videoError=None))


def _poll_clip(store, gen, idx):
    """Check one in-flight clip. Returns (status, gen)."""
    scene = gen["scenes"][idx]
    try:
        status, remote_url = video_engine.check_clip(scene["videoRequestId"])
    except ProviderError as e:
        if e.rate_limited:
            raise
        log.warning("[Cinematic:video] Scene %d clip failed: %s", idx + 1, e)
        gen = store.modify_generation(
            gen["id"], lambda g: g["scenes"][idx].update(videoRequestId=None, videoError=str(e)))
        return "failed", gen

    if status != "complete":
        return "processing", gen

    local_path = store.media_path(gen["id"], f"clip_{idx + 1}.mp4")
    video_engine.download(remote_url, local_path)
    url = f"{store.media_url(gen['id'], local_path.name)}?v={int(time.time() * 1000)}"
    seconds = float(video_engine.clip_duration(scene.get("audioDuration") or scene.get("duration")))

    def mutate(g):
        g["scenes"][idx].update(videoUrl=url, videoRequestId=None, videoError=None)
        add_costs(g, videoSeconds=seconds)
        done = sum(1 for s in g["scenes"] if s.get("videoUrl"))
        g["progress"] = max(g.get("progress", 0), _span(VIDEO_PROGRESS, done, len(g["scenes"])))

    return "complete", store.modify_generation(gen["id"], mutate)


def handle_video(body, store):
    gen = load_generation(store, body)
    idx = scene_index(body, gen)
    scene = gen["scenes"][idx]
    regenerate = bool(body.get("regenerate"))

    if not scene.get("imageUrl"):
        raise ValidationError(f"Scene {idx + 1} has no image to animate")

    if scene.get("videoUrl") and not regenerate:
        return _scene_response(gen, idx, "complete")

    if not scene.get("videoRequestId"):
        gen = _submit_clip(store, gen, idx)
        return _scene_response(gen, idx, "processing")

    status, gen = _poll_clip(store, gen, idx)
    if status == "failed":
        # Next call resubmits
        return _scene_response(gen, idx, "processing")
    return _scene_response(gen, idx, status)


def handle_video_batch(body, store):
    gen = load_generation(store, body)
    in_flight = [i for i, s in enumerate(gen["scenes"])
                 if s.get("videoRequestId") and not s.get("videoUrl") and s.get("imageUrl")]

    completed = 0
    rate_limit_hit = False
    for idx in in_flight:
        try:
            status, gen = _poll_clip(store, gen, idx)
        except ProviderError as e:
            log.warning("[Cinematic:video-batch] Rate limited at scene %d: %s", idx + 1, e)
            rate_limit_hit = True
            break
        if status == "complete":
            completed += 1

    gen = store.get_generation(gen["id"])
    still_missing = sum(1 for s in gen["scenes"]
                        if s.get("videoRequestId") and not s.get("videoUrl") and s.get("imageUrl"))
    log.info("[Cinematic:video-batch] %d completed this round, %d still missing", completed, still_missing)
    return {
        "success": True,
        "status": "all_complete" if still_missing == 0 else "processing",
        "completedThisRound": completed,
        "stillMissing": still_missing,
        "rateLimitHit": rate_limit_hit,
        "scenes": public_scenes(gen["scenes"]),
    }


# =============================================================================
# FINALIZE
# =============================================================================

def _local_clip(store, gen, idx, url):
    path = store.path_from_url(url)
    if path:
        return path
    return video_engine.download(url, store.media_path(gen["id"], f"clip_{idx + 1}.mp4"))


def handle_finalize(body, store):
    started = now_ms()
    gen = load_generation(store, body)
    clips = [(i, s["videoUrl"]) for i, s in enumerate(gen["scenes"]) if s.get("videoUrl")]

    final_url = None
    if len(clips) == 1:
        final_url = clips[0][1]
    elif clips:
        try:
            paths = [_local_clip(store, gen, i, url) for i, url in clips]
            output = store.media_path(gen["id"], "final.mp4")
            video_engine.stitch_clips(paths, output)
            final_url = f"{store.media_url(gen['id'], 'final.mp4')}?v={int(time.time() * 1000)}"
        except Exception as e:
            log.error("[Cinematic:finalize] Stitching failed, using first clip: %s", e)
            final_url = clips[0][1]

    def mutate(g):
        add_phase_time(g, "finalize", now_ms() - started)
        g.update(
            status="complete",
            progress=100,
            video_url=final_url,
            completed_at=time.strftime("%Y-%m-%dT%H:%M:%S"),
            total_time_ms=now_ms() - (g.get("started_ms") or started),
        )
        write_meta(g, statusMessage="Cinematic video generated!", totalTimeMs=g["total_time_ms"],
                   totalImages=len(g["scenes"]), completedImages=sum(1 for s in g["scenes"] if s.get("imageUrl")))

    gen = store.modify_generation(gen["id"], mutate)
    project = store.update_project(gen["project_id"], status="complete",
                                   thumbnail_url=next((s.get("imageUrl") for s in gen["scenes"]), None))
    return {
        "success": True,
        "title": project.get("title"),
        "scenes": public_scenes(gen["scenes"]),
        "finalVideoUrl": final_url,
        "costTracking": gen["cost_tracking"],
        "phaseTimings": gen["phase_timings"],
        "totalTimeMs": gen["total_time_ms"],
    }


PHASES = {
    "script": handle_script,
    "audio": handle_audio,
    "images": handle_images,
    "video": handle_video,
    "video-batch": handle_video_batch,
    "finalize": handle_finalize,
    "image-edit": handle_image_edit,
    "image-regen": handle_image_regen,
}
