"""
Reelsmith — Flask Application
Phase endpoints for the generation service plus the workspace API that runs
pipelines in background threads and streams their progress over SSE.
"""
import io
import json
import math
import time
import zipfile
import logging
import threading

from flask import Flask, request, jsonify, Response, send_from_directory, send_file

import config
import phase_client
import phase_router
from errors import ReelsmithError, ValidationError, NotFoundError
from generation_pipeline import GenerationPipeline
from plan_limits import get_credits_required, validate_generation_access
from scene_playback import PlaybackError
from store import Store, MEDIA_ROUTE

config.configure_logging()
log = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = config.SECRET_KEY

store = Store()

# Workspace pipelines and their SSE progress streams (per workspace)
_workspaces = {}
_workspaces_lock = threading.Lock()
_progress_streams = {}

TERMINAL_STEPS = ("complete", "error")


# =============================================================================
# HELPERS
# =============================================================================

def stream_listener_factory(workspace_id):
    """Create a pipeline listener that pushes events to the SSE stream."""
    def listener(kind, payload):
        _progress_streams.setdefault(workspace_id, []).append({
            "type": kind,
            "data": payload,
            "timestamp": time.time(),
        })
    return listener


def get_workspace(workspace_id):
    """Get or create the pipeline bound to a workspace."""
    with _workspaces_lock:
        pipeline = _workspaces.get(workspace_id)
        if pipeline is None:
            pipeline = GenerationPipeline(phase_client.default_client(store), store, workspace_id=workspace_id)
            pipeline.subscribe(stream_listener_factory(workspace_id))
            _workspaces[workspace_id] = pipeline
        return pipeline


def workspace_payload(pipeline):
    return {"state": pipeline.state, "stall": pipeline.stall_status()}


def run_in_background(target):
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def credits_balance(data):
    """creditsBalance from a request body as a number (missing = 0)."""
    value = data.get("creditsBalance")
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValidationError("creditsBalance must be a number")
    try:
        balance = float(value)
    except (TypeError, ValueError):
        raise ValidationError("creditsBalance must be a number")
    if not math.isfinite(balance):
        raise ValidationError("creditsBalance must be a number")
    return int(balance) if balance.is_integer() else balance


@app.errorhandler(ReelsmithError)
def handle_reelsmith_error(e):
    return jsonify({"error": str(e)}), e.status or 500


# =============================================================================
# ROUTES — Service
# =============================================================================

@app.route("/")
def index():
    return jsonify({
        "service": "reelsmith",
        "endpoints": sorted(phase_router.ENDPOINTS),
        "workspaces": len(_workspaces),
    })


@app.route(f"{MEDIA_ROUTE}/<generation_id>/<filename>")
def serve_media(generation_id, filename):
    """Serve a stored media file (audio, image, clip)."""
    return send_from_directory(store.media_dir / generation_id, filename)


# =============================================================================
# ROUTES — Phase endpoints
# =============================================================================

@app.route("/functions/<endpoint>", methods=["POST"])
def call_phase(endpoint):
    """Run one phase of generate-video / generate-cinematic / generate-smartflow."""
    body = request.get_json(silent=True) or {}
    status, payload = phase_router.dispatch(endpoint, body, store)
    return jsonify(payload), status


# =============================================================================
# ROUTES — Projects
# =============================================================================

@app.route("/api/projects")
def list_projects():
    return jsonify(store.list_projects())


@app.route("/api/project/<project_id>")
def get_project(project_id):
    project = store.get_project(project_id)
    generation = store.latest_generation(project_id)
    return jsonify({"project": project, "generation": generation})


@app.route("/api/project/<project_id>", methods=["DELETE"])
def delete_project(project_id):
    """Delete a project, its generations and their media."""
    store.delete_project(project_id)
    return jsonify({"status": "deleted"})


@app.route("/api/credits/estimate", methods=["POST"])
def estimate_credits():
    """Credits a generation costs, and whether the caller's plan allows it."""
    data = request.get_json(silent=True) or {}
    project_type = data.get("projectType") or "doc2video"
    length = data.get("length") or "short"
    result = {"creditsRequired": get_credits_required(project_type, length)}
    if data.get("plan"):
        result.update(validate_generation_access(
            data["plan"],
            credits_balance(data),
            project_type,
            length,
            data.get("format") or "landscape",
            has_brand_mark=bool(data.get("brandMark")),
            has_custom_style=data.get("style") == "custom",
            subscription_status=data.get("subscriptionStatus"),
        ))
    return jsonify(result)


# =============================================================================
# ROUTES — Workspace generation
# =============================================================================

@app.route("/api/workspace/<workspace_id>/generate", methods=["POST"])
def api_generate(workspace_id):
    """Start a generation. Plan gating applies when the request names a plan."""
    params = request.get_json(silent=True) or {}
    if not params.get("content") and not params.get("dataSource"):
        return jsonify({"error": "Missing content"}), 400

    if params.get("plan"):
        access = validate_generation_access(
            params["plan"],
            credits_balance(params),
            params.get("projectType") or "doc2video",
            params.get("length") or "short",
            params.get("format") or "landscape",
            has_brand_mark=bool(params.get("brandMark")),
            has_custom_style=params.get("style") == "custom",
            subscription_status=params.get("subscriptionStatus"),
        )
        if not access["canGenerate"]:
            return jsonify(access), 403

    pipeline = get_workspace(workspace_id)

    # Init SSE stream
    _progress_streams[workspace_id] = []
    pipeline.start_generation(params)
    return jsonify({"status": "generating", "message": "Generation started"})


@app.route("/api/workspace/<workspace_id>")
def api_workspace_state(workspace_id):
    return jsonify(workspace_payload(get_workspace(workspace_id)))


@app.route("/api/workspace/<workspace_id>/reset", methods=["POST"])
def api_reset(workspace_id):
    pipeline = get_workspace(workspace_id)
    pipeline.reset()
    return jsonify(workspace_payload(pipeline))


@app.route("/api/workspace/<workspace_id>/load/<project_id>", methods=["POST"])
def api_load_project(workspace_id, project_id):
    pipeline = get_workspace(workspace_id)
    pipeline.load_project(project_id)
    payload = workspace_payload(pipeline)
    scenes = payload["state"].get("scenes") or []
    payload["resumeFrom"] = (
        pipeline.resume_point(scenes)
        if payload["state"].get("projectType") == "cinematic" and payload["state"].get("step") != "complete"
        else None
    )
    return jsonify(payload)


@app.route("/api/workspace/<workspace_id>/resume", methods=["POST"])
def api_resume(workspace_id):
    pipeline = get_workspace(workspace_id)
    _progress_streams[workspace_id] = []
    resume_from = pipeline.resume()
    return jsonify({"status": "generating", "resumeFrom": resume_from})


@app.route("/api/workspace/<workspace_id>/cancel-restart", methods=["POST"])
def api_cancel_restart(workspace_id):
    """Manual escape hatch for a stalled generation."""
    pipeline = get_workspace(workspace_id)

    def reset_stream():
        # The restarted run starts on a fresh stream, after the cancel event
        _progress_streams[workspace_id] = []

    pipeline.cancel_and_restart(before_restart=reset_stream)
    return jsonify({"status": "generating", "message": "Generation restarted"})


# =============================================================================
# ROUTES — Scene regeneration
# =============================================================================

@app.route("/api/workspace/<workspace_id>/scene/<int:scene_index>/regenerate", methods=["POST"])
def api_regenerate_scene(workspace_id, scene_index):
    """
    Regenerate part of one scene.

    Body:
        type: audio | image | video | image-edit
        voiceover: new narration (audio)
        imageModification: instruction (image, image-edit)
        imageIndex: image slot for standard projects (image)
        wait: run inline and return the updated scene
    """
    data = request.get_json(silent=True) or {}
    pipeline = get_workspace(workspace_id)
    regen = pipeline.regenerator()
    scenes = pipeline.state.get("scenes") or []
    if not 0 <= scene_index < len(scenes):
        raise NotFoundError(f"Scene {scene_index} not found")

    kind = data.get("type")
    cinematic = pipeline.state.get("projectType") == "cinematic"
    if kind == "audio":
        voiceover = data.get("voiceover") or scenes[scene_index].get("voiceover")
        work = lambda: regen.regenerate_audio(scene_index, voiceover)
    elif kind == "image" and cinematic:
        work = lambda: regen.regenerate_image(scene_index)
    elif kind == "image":
        work = lambda: regen.regenerate_image(scene_index, data.get("imageModification"), data.get("imageIndex"))
    elif kind == "video" and cinematic:
        work = lambda: regen.regenerate_video(scene_index)
    elif kind == "image-edit" and cinematic:
        if not data.get("imageModification"):
            raise ValidationError("Missing imageModification")
        work = lambda: regen.apply_image_edit(scene_index, data["imageModification"])
    else:
        raise ValidationError(f"Unsupported regeneration type: {kind}")

    if regen.is_regenerating:
        return jsonify({"error": "A regeneration is already running"}), 409

    if data.get("wait"):
        scene = work()
        if scene is None:
            return jsonify({"error": "Regeneration failed", "notifications": pipeline.notifications[-1:]}), 502
        return jsonify({"status": "complete", "scene": scene})

    run_in_background(work)
    return jsonify({"status": "regenerating", "sceneIndex": scene_index, "type": kind})


# =============================================================================
# ROUTES — Playback
# =============================================================================

@app.route("/api/workspace/<workspace_id>/playback")
def api_playback_state(workspace_id):
    return jsonify(get_workspace(workspace_id).playback().snapshot())


@app.route("/api/workspace/<workspace_id>/playback/<action>", methods=["POST"])
def api_playback(workspace_id, action):
    data = request.get_json(silent=True) or {}
    player = get_workspace(workspace_id).playback()
    try:
        if action == "play":
            result = player.start_play_all(int(data.get("sceneIndex", player.current)))
        elif action == "pause":
            result = player.pause()
        elif action == "resume":
            result = player.resume()
        elif action == "stop":
            result = player.stop()
        elif action == "next":
            result = player.next_scene()
        elif action == "prev":
            result = player.prev_scene()
        elif action == "mute":
            result = player.toggle_mute()
        elif action == "ended":
            result = player.on_clip_ended(data.get("sceneIndex"))
        elif action == "time":
            player.on_time_update(data.get("currentTime"), data.get("duration"))
            result = player.snapshot()
        elif action == "save-edit":
            scene = player.save_edit(data.get("voiceover", ""), data.get("visualPrompt", ""))
            result = {**player.snapshot(), "scene": scene}
        else:
            return jsonify({"error": f"Unknown playback action: {action}"}), 400
    except PlaybackError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(result)


@app.route("/api/workspace/<workspace_id>/clips_zip")
def serve_clips_zip(workspace_id):
    """Download every stored scene clip as a ZIP."""
    pipeline = get_workspace(workspace_id)
    clips = pipeline.playback().clips_manifest()

    files = []
    for clip in clips:
        path = store.path_from_url(clip["videoUrl"])
        if path:
            files.append((f"scene_{clip['number']:02d}.mp4", path))
    if not files:
        return jsonify({"error": "No clips"}), 404

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, path in files:
            zf.write(path, name)
    buf.seek(0)

    title = (pipeline.state.get("title") or workspace_id).replace(" ", "_")
    return send_file(buf, mimetype="application/zip",
                     as_attachment=True,
                     download_name=f"{title}_clips.zip")


# =============================================================================
# ROUTES — SSE Progress Stream
# =============================================================================

@app.route("/api/workspace/<workspace_id>/progress")
def progress_stream(workspace_id):
    """SSE endpoint for real-time pipeline state and notifications."""
    get_workspace(workspace_id)
    # Only initialize if no stream exists yet (don't clear mid-generation!)
    if workspace_id not in _progress_streams:
        _progress_streams[workspace_id] = []

    def generate():
        last_index = 0
        heartbeat = 0

        while True:
            messages = _progress_streams.get(workspace_id, [])
            if last_index > len(messages):
                # Stream was reset by a new run
                last_index = 0

            if last_index < len(messages):
                for msg in messages[last_index:]:
                    yield f"data: {json.dumps(msg)}\n\n"
                    data = msg.get("data") or {}
                    if msg.get("type") == "state" and data.get("step") in TERMINAL_STEPS \
                            and not data.get("isGenerating"):
                        return
                last_index = len(messages)

            # Heartbeat every 15 seconds
            heartbeat += 1
            if heartbeat % 30 == 0:
                yield ": heartbeat\n\n"

            time.sleep(0.5)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no"
        }
    )


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=config.PORT, debug=False, threaded=True)
