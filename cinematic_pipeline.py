"""
Reelsmith — Cinematic pipeline
script → audio (per scene, polled) → images (per scene) → video (queue + batch polling) → finalize

Also resumes interrupted cinematic generations from the first phase with missing media.
"""
import logging

import config
from errors import PhaseError, GenerationCancelled
from generation_types import CINEMATIC_ENDPOINT, normalize_scenes

log = logging.getLogger(__name__)

LOG = "[Pipeline:Cinematic]"

SCRIPT_TIMEOUT = 180
AUDIO_TIMEOUT = 300
MEDIA_TIMEOUT = 480
FINALIZE_TIMEOUT = 120

MAX_BATCH_ROUNDS = 60
IMAGE_RETRY_ROUNDS = 2

RESUME_PHASES = ("audio", "images", "video", "finalize")
RESUME_PROGRESS = {"audio": 10, "images": 35, "video": 60, "finalize": 96}
RESUME_LABELS = {
    "audio": "Resuming audio...",
    "images": "Resuming images...",
    "video": "Resuming video clips...",
    "finalize": "Finalizing...",
}

SCRIPT_FIELDS = (
    "content", "format", "length", "style", "customStyle", "brandMark", "presenterFocus",
    "characterDescription", "disableExpressions", "characterConsistencyEnabled",
    "voiceType", "voiceId", "voiceName",
)


def _call(ctx, body, timeout):
    return ctx.call_phase(body, timeout, CINEMATIC_ENDPOINT)


def _span(base, width, done, total):
    return base + int(done / total * width) if total else base + width


# =============================================================================
# MAIN PIPELINE
# =============================================================================

def run_cinematic_pipeline(params, ctx):
    log.info("%s Starting cinematic pipeline (format=%s, length=%s, style=%s)",
             LOG, params.get("format"), params.get("length"), params.get("style"))

    ctx.set_state({"step": "scripting", "progress": 5, "statusMessage": "Generating cinematic script..."})
    script = _call(ctx, {"phase": "script", **{k: params.get(k) for k in SCRIPT_FIELDS}}, SCRIPT_TIMEOUT)
    if not script.get("success"):
        raise PhaseError(script.get("error") or "Script generation failed")

    ids = {"projectId": script["projectId"], "generationId": script["generationId"]}
    scene_count = script["sceneCount"]
    log.info("%s Script phase complete (%s, %d scenes, %s)", LOG, ids["generationId"], scene_count, script.get("title"))

    ctx.set_state({
        "step": "visuals",
        "progress": 10,
        **ids,
        "title": script.get("title"),
        "sceneCount": scene_count,
        "statusMessage": "Script complete. Generating audio...",
    })

    run_audio(ctx, ids, scene_count)
    run_images(ctx, ids, scene_count)
    run_video(ctx, ids, scene_count)
    finalize(ctx, ids, scene_count, params.get("format"))

    ctx.notify("Cinematic Video Generated!", f'"{script.get("title")}" is ready.')


# =============================================================================
# SUB-PHASES
# =============================================================================

def run_audio(ctx, ids, scene_count, done=(), label="Generating audio"):
    """Generate narration per scene, polling each until complete. Failures are fatal."""
    log.info("%s Starting audio phase (%d scenes)", LOG, scene_count)
    for i in range(scene_count):
        if i in done:
            log.info("%s Skipping audio scene %d (done)", LOG, i + 1)
            continue
        ctx.set_state({
            "statusMessage": f"{label} ({i + 1}/{scene_count})...",
            "progress": 10 + int((i + 0.25) / scene_count * 25),
        })
        polls = 0
        while True:
            polls += 1
            result = _call(ctx, {"phase": "audio", **ids, "sceneIndex": i}, AUDIO_TIMEOUT)
            if not result.get("success"):
                raise PhaseError(result.get("error") or "Audio generation failed")
            if result.get("status") == "complete":
                log.info("%s Audio scene %d/%d complete after %d poll(s)", LOG, i + 1, scene_count, polls)
                break
            ctx.sleep(config.AUDIO_POLL_INTERVAL)
        ctx.set_state({"progress": 10 + int((i + 1) / scene_count * 25)})
    log.info("%s Audio phase complete", LOG)


def run_images(ctx, ids, scene_count, done=(), intro="Audio complete. Creating scene images..."):
    """One start frame per scene. Failures are logged and retried afterwards."""
    log.info("%s Starting images phase (%d scenes)", LOG, scene_count)
    ctx.set_state({"progress": 35, "statusMessage": intro})

    for i in range(scene_count):
        if i in done:
            log.info("%s Skipping image scene %d (done)", LOG, i + 1)
            continue
        ctx.set_state({
            "statusMessage": f"Creating images ({i + 1}/{scene_count})...",
            "progress": 35 + int((i + 0.25) / scene_count * 25),
        })
        try:
            result = _call(ctx, {"phase": "images", **ids, "sceneIndex": i}, MEDIA_TIMEOUT)
            if not result.get("success"):
                log.warning("%s Image scene %d failed: %s", LOG, i + 1, result.get("error"))
        except PhaseError as e:
            log.warning("%s Image scene %d error: %s", LOG, i + 1, e)
        ctx.set_state({"progress": 35 + int((i + 1) / scene_count * 25)})

    retry_missing_images(ctx, ids)
    log.info("%s Images phase complete", LOG)


def retry_missing_images(ctx, ids, rounds=IMAGE_RETRY_ROUNDS):
    for round_no in range(1, rounds + 1):
        scenes = ctx.load_scenes(ids["generationId"])
        missing = [i for i, s in enumerate(scenes) if not s.get("imageUrl")]
        if not missing:
            break
        log.info("%s Image retry round %d: %d scenes missing", LOG, round_no, len(missing))
        ctx.set_state({"statusMessage": f"Retrying {len(missing)} missing images (round {round_no})..."})
        for idx in missing:
            try:
                _call(ctx, {"phase": "images", **ids, "sceneIndex": idx}, MEDIA_TIMEOUT)
            except PhaseError as e:
                log.warning("%s Image retry for scene %d failed: %s", LOG, idx + 1, e)


def _kick_off_videos(ctx, ids, scene_count):
    for i in range(scene_count):
        scenes = ctx.load_scenes(ids["generationId"])
        scene = scenes[i] if i < len(scenes) else {}
        if scene.get("videoUrl") or scene.get("videoRequestId"):
            continue
        if not scene.get("imageUrl"):
            log.warning("%s Video scene %d has no image, skipping", LOG, i + 1)
            continue
        ctx.set_state({"statusMessage": f"Starting video for scene {i + 1}/{scene_count}..."})
        try:
            result = _call(ctx, {"phase": "video", **ids, "sceneIndex": i}, MEDIA_TIMEOUT)
            if not result.get("success"):
                log.warning("%s Video scene %d kickoff failed: %s", LOG, i + 1, result.get("error"))
        except PhaseError as e:
            log.warning("%s Video scene %d kickoff failed: %s", LOG, i + 1, e)


def run_video(ctx, ids, scene_count, intro="Images complete. Generating video clips..."):
    """Queue a clip for every scene, then poll them all in batch rounds."""
    log.info("%s Starting video phase (%d scenes)", LOG, scene_count)
    ctx.set_state({"progress": 60, "statusMessage": intro})

    _kick_off_videos(ctx, ids, scene_count)

    for round_no in range(MAX_BATCH_ROUNDS):
        scenes = ctx.load_scenes(ids["generationId"])
        completed = sum(1 for s in scenes if s.get("videoUrl"))
        missing = sum(1 for s in scenes if s.get("videoRequestId") and not s.get("videoUrl") and s.get("imageUrl"))

        ctx.set_state({
            "statusMessage": f"Generating clips ({completed}/{scene_count})...",
            "progress": _span(60, 35, completed, scene_count),
        })
        if missing == 0:
            log.info("%s All %d videos complete after %d batch rounds", LOG, completed, round_no)
            break

        log.info("%s Batch poll round %d: %d scenes still missing, %d complete", LOG, round_no + 1, missing, completed)
        try:
            batch = _call(ctx, {"phase": "video-batch", **ids}, MEDIA_TIMEOUT)
        except PhaseError as e:
            batch = {"success": False, "error": str(e)}

        if not batch.get("success"):
            log.warning("%s Batch poll failed: %s", LOG, batch.get("error"))
            ctx.sleep(config.BATCH_FAILURE_WAIT)
            continue

        if batch.get("status") == "all_complete":
            final_completed = sum(1 for s in normalize_scenes(batch.get("scenes")) or [] if s.get("videoUrl"))
            log.info("%s All videos complete via batch poll", LOG)
            ctx.set_state({
                "statusMessage": f"Generating clips ({final_completed}/{scene_count})...",
                "progress": _span(60, 35, final_completed, scene_count),
            })
            break

        wait = config.BATCH_RATE_LIMIT_WAIT if batch.get("rateLimitHit") else config.BATCH_WAIT
        log.info("%s Batch round %d done: %s completed, %s remaining. Waiting %gs",
                 LOG, round_no + 1, batch.get("completedThisRound"), batch.get("stillMissing"), wait)
        ctx.sleep(wait)

    scenes = ctx.load_scenes(ids["generationId"])
    still_missing = sum(1 for s in scenes if not s.get("videoUrl") and s.get("imageUrl"))
    if still_missing:
        log.warning("%s %d scenes still missing video, proceeding to finalize", LOG, still_missing)
    log.info("%s Video phase complete", LOG)


def finalize(ctx, ids, scene_count, fmt):
    log.info("%s Starting finalize phase", LOG)
    ctx.set_state({"step": "rendering", "progress": 96, "statusMessage": "Finalizing cinematic..."})

    final = _call(ctx, {"phase": "finalize", **ids}, FINALIZE_TIMEOUT)
    if not final.get("success"):
        raise PhaseError(final.get("error") or "Finalization failed")

    final_scenes = normalize_scenes(final.get("scenes")) or []
    count = len(final_scenes) or scene_count
    log.info("%s Cinematic pipeline complete (%d scenes, %s)", LOG, len(final_scenes), final.get("title"))

    ctx.set_state({
        "step": "complete",
        "progress": 100,
        "sceneCount": count,
        "currentScene": count,
        "totalImages": count,
        "completedImages": count,
        "isGenerating": False,
        **ids,
        "title": final.get("title"),
        "scenes": final_scenes,
        "format": fmt,
        "finalVideoUrl": final.get("finalVideoUrl"),
        "statusMessage": "Cinematic video generated!",
        "projectType": "cinematic",
    })


# =============================================================================
# RESUME
# =============================================================================

def resume_cinematic_pipeline(project, generation_id, scenes, resume_from, ctx):
    """
    Resume an interrupted cinematic generation.

    Args:
        project: Project record (id, title, format)
        generation_id: Generation to resume
        scenes: Normalised scenes as currently stored
        resume_from: "audio" | "images" | "video" | "finalize"
        ctx: PipelineContext
    """
    if resume_from not in RESUME_PHASES:
        raise ValueError(f"Cannot resume from {resume_from!r}")

    ids = {"projectId": project["id"], "generationId": generation_id}
    scene_count = len(scenes)
    log.info('%s Resuming cinematic from "%s" (%s, %d scenes)', LOG, resume_from, generation_id, scene_count)

    ctx.set_state({
        "step": "visuals",
        "isGenerating": True,
        **ids,
        "title": project.get("title"),
        "sceneCount": scene_count,
        "scenes": scenes,
        "format": project.get("format"),
        "statusMessage": RESUME_LABELS[resume_from],
        "progress": RESUME_PROGRESS[resume_from],
        "projectType": "cinematic",
        "error": None,
    })

    stage = RESUME_PHASES.index(resume_from)
    try:
        if stage <= 0:
            have_audio = {i for i, s in enumerate(scenes) if s.get("audioUrl")}
            run_audio(ctx, ids, scene_count, done=have_audio, label="Resuming audio")
        if stage <= 1:
            have_image = {i for i, s in enumerate(scenes) if s.get("imageUrl")}
            run_images(ctx, ids, scene_count, done=have_image, intro="Resuming images...")
        if stage <= 2:
            run_video(ctx, ids, scene_count, intro="Resuming video clips...")

        finalize(ctx, ids, scene_count, project.get("format"))
        ctx.notify("Generation Resumed!", f'"{project.get("title")}" is ready.')
    except GenerationCancelled:
        raise
    except Exception as e:
        message = str(e) or "Resume failed"
        log.error("%s Resume failed: %s", LOG, message)
        ctx.set_state({"step": "error", "isGenerating": False, "error": message, "statusMessage": message})
        ctx.notify("Resume Failed", message, variant="destructive")
