"""
Reelsmith — Cinematic playback
Server-side model of the "play all" player: which scene is on screen, whether it
is playing, and how far into the clip it is. Clients report media events
(clip ended, time update) and render from snapshot().
"""
import logging
import threading

log = logging.getLogger(__name__)

NO_CLIP = "This scene has no clip to play."


class PlaybackError(Exception):
    pass


class ScenePlayback:
    def __init__(self, scenes, store=None, generation_id=None, notify=None):
        self.scenes = [dict(s) for s in scenes or []]
        self.store = store
        self.generation_id = generation_id
        self.notify = notify if notify is not None else (lambda title, description, variant="default": None)
        self._lock = threading.RLock()
        self.current = 0
        self.playing = False
        self.muted = False
        self.progress = 0.0

    def set_scenes(self, scenes):
        with self._lock:
            self.scenes = [dict(s) for s in scenes or []]
            if self.current >= len(self.scenes):
                self.current = max(0, len(self.scenes) - 1)

    @property
    def current_scene(self):
        return self.scenes[self.current] if 0 <= self.current < len(self.scenes) else None

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def start_play_all(self, start_index):
        with self._lock:
            scene = self.scenes[start_index] if 0 <= start_index < len(self.scenes) else None
            if not scene or not scene.get("videoUrl"):
                self.notify("No video", NO_CLIP, "destructive")
                raise PlaybackError(NO_CLIP)
            self.progress = 0.0
            self.current = start_index
            self.playing = True
            return self.snapshot()

    def pause(self):
        with self._lock:
            self.playing = False
            return self.snapshot()

    def resume(self):
        with self._lock:
            if (self.current_scene or {}).get("videoUrl"):
                self.playing = True
            return self.snapshot()

    def stop(self):
        with self._lock:
            self.playing = False
            self.progress = 0.0
            return self.snapshot()

    def next_scene(self):
        with self._lock:
            if self.current < len(self.scenes) - 1:
                self.current += 1
                self.progress = 0.0
            return self.snapshot()

    def prev_scene(self):
        with self._lock:
            if self.current > 0:
                self.current -= 1
                self.progress = 0.0
            return self.snapshot()

    def toggle_mute(self):
        with self._lock:
            self.muted = not self.muted
            return self.snapshot()

    # =========================================================================
    # MEDIA EVENTS
    # =========================================================================

    def on_clip_ended(self, scene_index=None):
        """Video and narration both report "ended"; only the first one for the scene on screen advances."""
        with self._lock:
            ended = self.current if scene_index is None else scene_index
            if not self.playing or ended != self.current:
                return self.snapshot()

            if self.current + 1 >= len(self.scenes):
                return self.stop()
            self.progress = 0.0
            self.current += 1
            return self.snapshot()

    def on_time_update(self, current_time, duration=None):
        with self._lock:
            if not self.playing:
                return self.progress
            if not duration or duration <= 0:
                duration = (self.current_scene or {}).get("duration") or 1
            self.progress = min(1.0, (current_time or 0) / duration)
            return self.progress

    # =========================================================================
    # EDITS / EXPORT
    # =========================================================================

    def save_edit(self, voiceover, visual_prompt):
        """Persist edited text for the scene on screen."""
        with self._lock:
            scene = self.current_scene
            if scene is None:
                raise PlaybackError("No scene selected")
            scene.update(voiceover=voiceover, visualPrompt=visual_prompt)
            if self.store and self.generation_id:
                self.store.update_scene(self.generation_id, self.current,
                                        voiceover=voiceover, visualPrompt=visual_prompt)
            log.info("[Playback] Saved edit for scene %d", self.current + 1)
            return dict(scene)

    def clips_manifest(self):
        """Playable clips in scene order, for zip export."""
        return [
            {"number": s.get("number", i + 1), "index": i, "videoUrl": s["videoUrl"], "audioUrl": s.get("audioUrl")}
            for i, s in enumerate(self.scenes) if s.get("videoUrl")
        ]

    def snapshot(self):
        with self._lock:
            scene = self.current_scene or {}
            return {
                "currentSceneIndex": self.current,
                "isPlayingAll": self.playing,
                "isMuted": self.muted,
                "sceneProgress": self.progress,
                "videoUrl": scene.get("videoUrl"),
                "audioUrl": scene.get("audioUrl"),
                "sceneCount": len(self.scenes),
            }
