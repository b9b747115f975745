"""
Reelsmith — Standard pipeline (doc2video, storytelling, smartflow with phases)
script → audio (chunked) → images (chunked, fault tolerant) → finalize
"""
import logging

from errors import PhaseError
from generation_types import normalize_scenes

log = logging.getLogger(__name__)

LOG = "[Pipeline:Standard]"

SCRIPT_TIMEOUT = 180
AUDIO_TIMEOUT = 300
IMAGES_TIMEOUT = 480

IMAGE_CHUNK = 4
IMAGES_PER_SCENE = 3
IMAGE_RETRY_ROUNDS = 2

SCRIPT_FIELDS = (
    "content", "format", "length", "style", "customStyle", "customStyleImage", "brandMark",
    "presenterFocus", "characterDescription", "disableExpressions", "characterConsistencyEnabled",
    "voiceType", "voiceId", "voiceName", "projectType", "inspirationStyle", "storyTone",
    "storyGenre", "voiceInclination", "brandName",
)


def _failed(result, fallback):
    return PhaseError((result or {}).get("error") or fallback)


def _next_index(result, current, phase):
    """Start index of the next chunk. A chunk that reports more work must move forward."""
    next_index = result.get("nextStartIndex")
    if isinstance(next_index, bool) or not isinstance(next_index, int) or next_index <= current:
        raise PhaseError(f"{phase} phase did not advance past index {current} (nextStartIndex={next_index})")
    return next_index


def run_standard_pipeline(params, ctx, expected_scene_count):
    """
    Run a standard generation to completion.

    Args:
        params: Generation params (content, format, length, style, ...)
        ctx: PipelineContext (set_state, call_phase, notify, sleep, load_scenes)
        expected_scene_count: Scene count implied by the requested length
    """
    log.info("%s Starting standard pipeline (type=%s, format=%s, length=%s)",
             LOG, params.get("projectType"), params.get("format"), params.get("length"))

    # =========================================================================
    # PHASE 1: SCRIPT
    # =========================================================================
    ctx.set_state({"step": "scripting", "progress": 5, "statusMessage": "Generating script with AI..."})

    smartflow_no_voice = params.get("projectType") == "smartflow" and not params.get("voiceType")

    body = {"phase": "script", **{k: params.get(k) for k in SCRIPT_FIELDS}, "skipAudio": smartflow_no_voice}
    script = ctx.call_phase(body, SCRIPT_TIMEOUT)
    if not script.get("success"):
        raise _failed(script, "Script generation failed")

    project_id = script["projectId"]
    generation_id = script["generationId"]
    scene_count = script.get("sceneCount") or expected_scene_count
    log.info("%s Script complete (project=%s, generation=%s, scenes=%s, images=%s)",
             LOG, project_id, generation_id, scene_count, script.get("totalImages"))

    ctx.set_state({
        "step": "scripting",
        "progress": 10,
        "projectId": project_id,
        "generationId": generation_id,
        "title": script.get("title"),
        "sceneCount": scene_count,
        "totalImages": script.get("totalImages"),
        "statusMessage": "Script complete. Starting images..." if smartflow_no_voice
        else "Script complete. Starting audio...",
        "costTracking": script.get("costTracking"),
        "phaseTimings": {"script": script.get("phaseTime")},
    })
    ids = {"generationId": generation_id, "projectId": project_id}

    # =========================================================================
    # PHASE 2: AUDIO (chunked)
    # =========================================================================
    if not smartflow_no_voice:
        ctx.set_state({"step": "visuals", "progress": 15, "statusMessage": "Generating voiceover audio..."})
        audio_start = 0
        while True:
            audio = ctx.call_phase({"phase": "audio", **ids, "audioStartIndex": audio_start}, AUDIO_TIMEOUT)
            if not audio.get("success"):
                raise _failed(audio, "Audio generation failed")
            log.info("%s Audio chunk complete (generated=%s, hasMore=%s)",
                     LOG, audio.get("audioGenerated"), audio.get("hasMore"))

            def apply_audio(prev, audio=audio):
                if audio.get("hasMore"):
                    message = f"Generating voiceover... ({audio.get('audioGenerated') or 0}/{prev['sceneCount']})"
                else:
                    message = f"Audio complete ({float(audio.get('audioSeconds') or 0):.1f}s). Starting images..."
                progress = audio.get("progress")
                return {
                    "progress": progress if isinstance(progress, (int, float)) else prev["progress"],
                    "statusMessage": message,
                    "costTracking": audio.get("costTracking"),
                    "phaseTimings": {**(prev.get("phaseTimings") or {}), "audio": audio.get("phaseTime")},
                }

            ctx.set_state(apply_audio)
            if not audio.get("hasMore"):
                break
            audio_start = _next_index(audio, audio_start, "Audio")
        log.info("%s Audio phase complete", LOG)

    # =========================================================================
    # PHASE 3: IMAGES (chunked, fault tolerant)
    # =========================================================================
    ctx.set_state({"progress": 45, "statusMessage": "Generating images..."})
    images = _run_image_chunks(ctx, ids, expected_scene_count)

    for round_no in range(1, IMAGE_RETRY_ROUNDS + 1):
        scenes = ctx.load_scenes(generation_id)
        missing = sum(1 for s in scenes if not s.get("imageUrl"))
        if missing == 0:
            break
        log.info("%s Image retry round %d: %d scenes missing", LOG, round_no, missing)
        ctx.set_state({"statusMessage": f"Retrying {missing} missing images (round {round_no})..."})
        _retry_image_chunks(ctx, ids)

    scenes = ctx.load_scenes(generation_id)
    final_generated = sum(1 for s in scenes if s.get("imageUrl"))
    final_total = images.get("totalImages") or len(scenes) * IMAGES_PER_SCENE
    log.info("%s Images phase complete (%d/%d)", LOG, final_generated, final_total)

    ctx.set_state(lambda prev: {
        "progress": 90,
        "completedImages": final_generated,
        "totalImages": final_total,
        "statusMessage": f"Images complete ({final_generated}/{final_total}). Finalizing...",
        "costTracking": images.get("costTracking") or prev.get("costTracking"),
    })

    # =========================================================================
    # PHASE 4: FINALIZE
    # =========================================================================
    final = ctx.call_phase({"phase": "finalize", **ids})
    if not final.get("success"):
        raise _failed(final, "Finalization failed")

    final_scenes = normalize_scenes(final.get("scenes")) or []
    count = len(final_scenes) or scene_count
    log.info("%s Standard pipeline complete (%d scenes, title=%s)", LOG, len(final_scenes), final.get("title"))

    ctx.set_state({
        "step": "complete",
        "progress": 100,
        "sceneCount": count,
        "currentScene": count,
        "totalImages": images.get("totalImages") or final_total,
        "completedImages": images.get("imagesGenerated") or final_generated,
        "isGenerating": False,
        "projectId": project_id,
        "generationId": generation_id,
        "title": final.get("title"),
        "scenes": final_scenes,
        "format": params.get("format"),
        "statusMessage": "Generation complete!",
        "costTracking": final.get("costTracking"),
        "phaseTimings": final.get("phaseTimings"),
        "totalTimeMs": final.get("totalTimeMs"),
    })
    ctx.notify("Video Generated!", f'"{final.get("title")}" is ready with {len(final_scenes)} scenes.')


def _run_image_chunks(ctx, ids, expected_scene_count):
    """Walk the image slots in chunks; a failed chunk is skipped, not fatal.

    Returns:
        The last successful images response (or {})
    """
    index = 0
    last = {}
    while True:
        try:
            result = ctx.call_phase({"phase": "images", **ids, "imageStartIndex": index}, IMAGES_TIMEOUT)
        except PhaseError as e:
            log.warning("%s Image chunk at index %d error: %s", LOG, index, e)
            index += IMAGE_CHUNK
            if index < expected_scene_count * IMAGES_PER_SCENE:
                continue
            return last

        if not result.get("success"):
            log.warning("%s Image chunk at index %d failed: %s", LOG, index, result.get("error"))
            index += IMAGE_CHUNK
            if index < (result.get("totalImages") or expected_scene_count * IMAGES_PER_SCENE):
                continue
            return last

        last = result

        def apply_images(prev, result=result):
            total = result.get("totalImages") or prev.get("totalImages")
            return {
                "progress": result.get("progress") or prev["progress"],
                "completedImages": result.get("imagesGenerated") or prev.get("completedImages"),
                "totalImages": total,
                "statusMessage": f"Images {result.get('imagesGenerated') or 0}/{total}...",
                "costTracking": result.get("costTracking") or prev.get("costTracking"),
                "phaseTimings": {
                    **(prev.get("phaseTimings") or {}),
                    "images": ((prev.get("phaseTimings") or {}).get("images") or 0) + (result.get("phaseTime") or 0),
                },
            }

        ctx.set_state(apply_images)
        if not result.get("hasMore"):
            return last
        index = _next_index(result, index, "Images")


def _retry_image_chunks(ctx, ids):
    index = 0
    while True:
        try:
            result = ctx.call_phase({"phase": "images", **ids, "imageStartIndex": index}, IMAGES_TIMEOUT)
        except PhaseError:
            return
        if not result.get("hasMore"):
            return
        index = _next_index(result, index, "Images")
