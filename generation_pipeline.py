"""
Reelsmith — Generation pipeline (workspace state machine)

One GenerationPipeline per workspace. It owns the observable state dict, runs the
standard / cinematic / smart flow runners in a background thread, watches the
stored record for out-of-band completion, and supports cancel & restart and
resuming interrupted cinematic runs.

State listeners receive ("state", snapshot) and ("notification", {...}) events;
the Flask app fans them out over SSE.
"""
import copy
import time
import logging
import threading

import config
from cinematic_pipeline import run_cinematic_pipeline, resume_cinematic_pipeline
from error_messages import get_user_friendly_error_message
from errors import GenerationCancelled, PhaseError, ValidationError, NotFoundError
from generation_types import (
    SMARTFLOW_ENDPOINT, STEPS, initial_state, expected_scene_count, normalize_scenes,
    extract_meta, infer_step_from_db, infer_current_scene_from_db,
)
from scene_playback import ScenePlayback
from scene_regeneration import StandardRegenerator, CinematicRegenerator
from stall_monitor import StallMonitor
from standard_pipeline import run_standard_pipeline

log = logging.getLogger(__name__)

LOG = "[Pipeline]"

SMARTFLOW_TIMEOUT = 300
CANCEL_JOIN_SECONDS = 5
CANCELLED_MESSAGE = "Cancelled by user"
INTERRUPTED_MESSAGE = "Generation was interrupted. Please try again."


class PipelineContext:
    """What a runner may touch: state, phase calls, notifications, sleeps, stored scenes.

    Every entry point checks the run's cancel event, so a cancelled run can never
    write into the state of the run that replaced it.
    """

    def __init__(self, pipeline, cancel_event):
        self.pipeline = pipeline
        self.cancel_event = cancel_event

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise GenerationCancelled(CANCELLED_MESSAGE)

    def set_state(self, patch):
        self.check_cancelled()
        self.pipeline.set_state(patch)

    def call_phase(self, body, timeout=None, endpoint=None):
        self.check_cancelled()
        kwargs = {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        if endpoint is not None:
            kwargs["endpoint"] = endpoint
        result = self.pipeline.phase_client.call_phase(body, **kwargs)
        self.check_cancelled()
        return result

    def notify(self, title, description, variant="default"):
        self.check_cancelled()
        self.pipeline.notify(title, description, variant)

    def sleep(self, seconds):
        if self.pipeline._sleep is not None:
            self.pipeline._sleep(seconds)
        else:
            self.cancel_event.wait(seconds)
        self.check_cancelled()

    def load_scenes(self, generation_id):
        self.check_cancelled()
        generation = self.pipeline.store.get_generation(generation_id)
        return normalize_scenes(generation.get("scenes")) or []


class GenerationPipeline:
    def __init__(self, phase_client, store, notify=None, sleep=None, monitor=None, workspace_id=None):
        """
        Args:
            phase_client: PhaseClient used for every phase call
            store: Store holding projects, generations and media
            notify: Optional callback(title, description, variant)
            sleep: Optional sleep override for poll waits (tests); default waits on the cancel event
            monitor: Optional StallMonitor
            workspace_id: Label for logs
        """
        self.phase_client = phase_client
        self.store = store
        self.workspace_id = workspace_id
        self.monitor = monitor if monitor is not None else StallMonitor()
        self._notify_cb = notify
        self._sleep = sleep
        self._lock = threading.RLock()
        self._state = initial_state()
        self._listeners = []
        self._thread = None
        self._cancel = threading.Event()
        self._watcher = None
        self._watcher_stop = threading.Event()
        self._last_params = None
        self._playback = None
        self._regenerator = None
        self.notifications = []

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self):
        with self._lock:
            return copy.deepcopy(self._state)

    def set_state(self, patch, replace=False):
        """Merge a patch (or the result of patch(prev)) into the state and publish it."""
        with self._lock:
            if callable(patch):
                patch = patch(copy.deepcopy(self._state))
            if "step" in patch and patch["step"] not in STEPS:
                raise ValueError(f"Unknown generation step: {patch['step']}")
            if replace:
                self._state = dict(patch)
            else:
                self._state.update(patch)
            snapshot = copy.deepcopy(self._state)
        self.monitor.observe(snapshot)
        if self._playback is not None and "scenes" in patch:
            self._playback.set_scenes(snapshot.get("scenes"))
        self._publish("state", snapshot)
        return snapshot

    def subscribe(self, listener):
        """Register listener(kind, payload). Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, kind, payload):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(kind, payload)
            except Exception as e:
                log.warning("%s Listener failed: %s", LOG, e)

    def notify(self, title, description, variant="default"):
        note = {"title": title, "description": description, "variant": variant,
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S")}
        with self._lock:
            self.notifications.append(note)
            del self.notifications[:-50]
        log.info("%s %s: %s", LOG, title, description)
        if self._notify_cb is not None:
            self._notify_cb(title, description, variant)
        self._publish("notification", note)

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def stall_status(self):
        return self.monitor.status()

    # =========================================================================
    # START / RESET
    # =========================================================================

    def start_generation(self, params, background=True):
        """
        Start a generation for the given params.

        Raises:
            ValidationError when a generation is already running in this workspace
        """
        if self.is_running:
            raise ValidationError("A generation is already running in this workspace")

        params = dict(params)
        scene_count = expected_scene_count(params.get("length"))
        self._last_params = params
        self._playback = None
        self.set_state({
            **initial_state(),
            "step": "analysis",
            "sceneCount": scene_count,
            "totalImages": scene_count,
            "isGenerating": True,
            "projectType": params.get("projectType"),
            "format": params.get("format"),
            "statusMessage": "Analyzing content...",
        }, replace=True)

        cancel = threading.Event()
        self._cancel = cancel
        return self._launch(lambda ctx: self._dispatch(params, ctx, scene_count), cancel, background)

    def _launch(self, target, cancel, background):
        ctx = PipelineContext(self, cancel)

        def run():
            try:
                target(ctx)
            except GenerationCancelled:
                log.info("%s Run cancelled (%s)", LOG, self.workspace_id)
            except Exception as e:
                self._fail(e, cancel)

        if not background:
            run()
            return None
        self._thread = threading.Thread(target=run, daemon=True)
        self._thread.start()
        self.start_watcher()
        return self._thread

    def _dispatch(self, params, ctx, scene_count):
        project_type = params.get("projectType")
        log.info("%s Dispatching %s generation (%s)", LOG, project_type or "doc2video", self.workspace_id)
        if project_type == "cinematic":
            run_cinematic_pipeline(params, ctx)
        elif project_type == "smartflow" and params.get("extractionPrompt"):
            self._run_smartflow(params, ctx)
        else:
            run_standard_pipeline(params, ctx, scene_count)

    def _run_smartflow(self, params, ctx):
        ctx.set_state({"step": "analysis", "progress": 10, "statusMessage": "Analyzing data..."})
        body = {
            "phase": "generate",
            "dataSource": params.get("dataSource") or params.get("content"),
            "extractionPrompt": params.get("extractionPrompt"),
            "style": params.get("style"),
            "customStyle": params.get("customStyle"),
            "format": params.get("format"),
            "brandMark": params.get("brandMark"),
            "enableVoice": bool(params.get("enableVoice")),
            "voiceType": params.get("voiceType"),
            "voiceId": params.get("voiceId"),
            "voiceName": params.get("voiceName"),
            "voiceGender": params.get("voiceGender"),
        }
        result = ctx.call_phase(body, SMARTFLOW_TIMEOUT, SMARTFLOW_ENDPOINT)
        if not result.get("success"):
            raise PhaseError(result.get("error") or "Generation failed")

        scenes = normalize_scenes(result.get("scenes")) or []
        ctx.set_state({
            "step": "complete",
            "progress": 100,
            "sceneCount": len(scenes),
            "currentScene": len(scenes),
            "totalImages": 1,
            "completedImages": 1,
            "isGenerating": False,
            "projectId": result.get("projectId"),
            "generationId": result.get("generationId"),
            "title": result.get("title"),
            "scenes": scenes,
            "statusMessage": "Infographic created!",
            "costTracking": result.get("costTracking"),
            "totalTimeMs": result.get("totalTimeMs"),
        })
        ctx.notify("Infographic created!", result.get("title") or "")

    def _fail(self, error, cancel):
        if cancel.is_set():
            return
        message = str(error) or "Generation failed"
        log.error("%s Generation failed (%s): %s", LOG, self.workspace_id, message)
        self.set_state({"step": "error", "isGenerating": False, "error": message, "statusMessage": message})
        self.notify("Generation Failed", get_user_friendly_error_message(message), "destructive")

    def reset(self):
        self._cancel.set()
        self.stop_watcher()
        self.monitor.reset()
        self._playback = None
        self._regenerator = None
        self.set_state(initial_state(), replace=True)

    # =========================================================================
    # LOAD / RESUME
    # =========================================================================

    def load_project(self, project_id):
        """Rebuild state from the latest generation of a project. Returns the project."""
        self._playback = None
        project = self.store.get_project(project_id)
        generation = self.store.latest_generation(project_id)
        if generation is None:
            self.set_state({**initial_state(), "projectId": project_id, "title": project.get("title"),
                            "format": project.get("format"), "projectType": project.get("project_type")},
                           replace=True)
            return project

        if generation.get("status") == "generating" and not self.is_running and self._is_stale(generation):
            log.warning("%s Generation %s is stale, marking interrupted", LOG, generation["id"])
            generation = self.store.update_generation(generation["id"], status="error",
                                                      error_message=INTERRUPTED_MESSAGE)

        raw_scenes = generation.get("scenes") or []
        scenes = normalize_scenes(raw_scenes) or []
        meta = extract_meta(raw_scenes)
        status = generation.get("status")
        progress = generation.get("progress") or 0
        step = infer_step_from_db(status, progress)
        scene_count = len(scenes) or expected_scene_count(project.get("length"))

        self.set_state({
            "step": step,
            "progress": 100 if status == "complete" else progress,
            "sceneCount": scene_count,
            "currentScene": scene_count if status == "complete" else infer_current_scene_from_db(progress, scene_count),
            "totalImages": meta["totalImages"] or scene_count,
            "completedImages": meta["completedImages"],
            "isGenerating": status == "generating" and self.is_running,
            "projectId": project_id,
            "generationId": generation["id"],
            "title": project.get("title"),
            "scenes": scenes,
            "format": project.get("format"),
            "finalVideoUrl": generation.get("video_url"),
            "error": generation.get("error_message") if status == "error" else None,
            "statusMessage": meta.get("statusMessage") or (
                get_user_friendly_error_message(generation.get("error_message")) if status == "error" else None),
            "costTracking": meta.get("costTracking") or generation.get("cost_tracking"),
            "phaseTimings": meta.get("phaseTimings") or generation.get("phase_timings"),
            "totalTimeMs": meta.get("totalTimeMs") or generation.get("total_time_ms"),
            "projectType": project.get("project_type"),
        }, replace=True)
        return project

    @staticmethod
    def _is_stale(generation):
        return time.time() - (generation.get("updated_ts") or 0) > config.STALE_GENERATION_SECONDS

    @staticmethod
    def resume_point(scenes):
        """First cinematic phase with missing media, or None when there is nothing to resume."""
        if not scenes:
            return None
        if any(not s.get("audioUrl") for s in scenes):
            return "audio"
        if any(not s.get("imageUrl") for s in scenes):
            return "images"
        if any(not s.get("videoUrl") for s in scenes):
            return "video"
        return "finalize"

    def resume(self, background=True):
        """Resume the loaded cinematic generation from its first incomplete phase."""
        if self.is_running:
            raise ValidationError("A generation is already running in this workspace")
        state = self.state
        project_id, generation_id = state.get("projectId"), state.get("generationId")
        if not project_id or not generation_id:
            raise ValidationError("No generation loaded to resume")

        project = self.store.get_project(project_id)
        if project.get("project_type") != "cinematic":
            raise ValidationError("Only cinematic generations can be resumed")
        generation = self.store.get_generation(generation_id)
        scenes = normalize_scenes(generation.get("scenes")) or []
        resume_from = self.resume_point(scenes)
        if resume_from is None:
            raise ValidationError("Generation has no scenes to resume")

        self.store.update_generation(generation_id, status="generating", error_message=None)
        cancel = threading.Event()
        self._cancel = cancel
        log.info("%s Resuming %s from %s", LOG, generation_id, resume_from)
        self._launch(lambda ctx: resume_cinematic_pipeline(project, generation_id, scenes, resume_from, ctx),
                     cancel, background)
        return resume_from

    # =========================================================================
    # AUTO-RECOVERY
    # =========================================================================

    def check_generation_status(self):
        """Reconcile state with the stored record while a generation is in flight."""
        state = self.state
        if not state.get("isGenerating") or not state.get("projectId"):
            return None
        try:
            generation = self.store.latest_generation(state["projectId"])
        except NotFoundError:
            return None
        if generation is None:
            return None

        status = generation.get("status")
        if status == "complete":
            log.info("%s Recovered completed generation %s", LOG, generation["id"])
            self.load_project(state["projectId"])
        elif status == "error":
            message = generation.get("error_message") or "Generation failed"
            log.info("%s Recovered failed generation %s: %s", LOG, generation["id"], message)
            self.set_state({"step": "error", "isGenerating": False, "error": message,
                            "statusMessage": get_user_friendly_error_message(message)})
        return status

    def start_watcher(self, interval=None):
        if self._watcher is not None and self._watcher.is_alive():
            return
        interval = config.RECOVERY_CHECK_INTERVAL if interval is None else interval
        stop = threading.Event()
        self._watcher_stop = stop

        def watch():
            while not stop.wait(interval):
                try:
                    self.check_generation_status()
                except Exception as e:
                    log.warning("%s Status check failed: %s", LOG, e)
                if not self.state.get("isGenerating"):
                    break

        self._watcher = threading.Thread(target=watch, daemon=True)
        self._watcher.start()

    def stop_watcher(self):
        self._watcher_stop.set()

    # =========================================================================
    # CANCEL & RESTART
    # =========================================================================

    def cancel(self):
        """Cancel the running thread cooperatively and mark its generation failed."""
        self._cancel.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(CANCEL_JOIN_SECONDS)

        generation_id = self.state.get("generationId")
        if generation_id:
            try:
                self.store.update_generation(generation_id, status="error", error_message=CANCELLED_MESSAGE)
            except NotFoundError:
                pass
        self.set_state({"step": "error", "isGenerating": False, "error": CANCELLED_MESSAGE,
                        "statusMessage": CANCELLED_MESSAGE})
        self.monitor.reset()

    def cancel_and_restart(self, background=True, before_restart=None):
        """
        Cancel the current run and start again with the last params.

        Args:
            background: Run the new generation in a thread
            before_restart: Optional callback run after the cancel is published
                and before the new run emits its first state
        """
        if self._last_params is None:
            raise ValidationError("Nothing to restart")
        log.info("%s Cancel & restart (%s)", LOG, self.workspace_id)
        self.cancel()
        self._thread = None
        if before_restart is not None:
            before_restart()
        return self.start_generation(self._last_params, background=background)

    # =========================================================================
    # REGENERATION / PLAYBACK
    # =========================================================================

    def playback(self):
        if self._playback is None:
            state = self.state
            self._playback = ScenePlayback(state.get("scenes"), self.store, state.get("generationId"), self.notify)
        return self._playback

    def regenerator(self):
        """Scene regenerator bound to the loaded generation. One regeneration runs at a time."""
        state = self.state
        regen = self._regenerator
        if regen is not None and regen.generation_id == state.get("generationId"):
            if not regen.is_regenerating:
                regen.scenes = [dict(s) for s in state.get("scenes") or []]
            return regen

        args = (self.phase_client, state.get("generationId"), state.get("projectId"), state.get("scenes"),
                lambda scenes: self.set_state({"scenes": scenes}), self.notify)
        if state.get("projectType") == "cinematic":
            regen = CinematicRegenerator(*args, sleep=self._sleep or time.sleep, store=self.store,
                                         on_stop_playback=lambda: self.playback().stop())
        else:
            regen = StandardRegenerator(*args, sleep=self._sleep or time.sleep)
        self._regenerator = regen
        return regen
