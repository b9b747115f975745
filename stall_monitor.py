"""
Reelsmith — Stall monitor
Fingerprints the observable generation state; when the fingerprint stops changing
for longer than the threshold the run is flagged as stalled so the user can
cancel and restart it.
"""
import time
import json
import hashlib
import threading

import config
from generation_types import count_media


def state_signature(state):
    """SHA-1 over the fields that move while a generation makes progress."""
    audio, images, videos = count_media(state.get("scenes"))
    payload = json.dumps([
        state.get("step"),
        state.get("progress"),
        state.get("currentScene"),
        state.get("completedImages"),
        state.get("statusMessage"),
        audio,
        images,
        videos,
    ])
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def is_video_phase(state):
    message = (state.get("statusMessage") or "").lower()
    return state.get("step") == "rendering" or "clip" in message or "video" in message


class StallMonitor:
    def __init__(self, threshold=None, video_threshold=None, clock=time.monotonic):
        self.threshold = config.STALL_THRESHOLD if threshold is None else threshold
        self.video_threshold = config.STALL_THRESHOLD_VIDEO if video_threshold is None else video_threshold
        self.clock = clock
        self._lock = threading.Lock()
        self._signature = None
        self._since = clock()
        self._generating = False
        self._video = False

    def observe(self, state):
        """Feed a state snapshot. Resets the timer whenever the signature changes."""
        signature = state_signature(state)
        with self._lock:
            self._generating = bool(state.get("isGenerating"))
            self._video = is_video_phase(state)
            if not self._generating or signature != self._signature:
                self._signature = signature
                self._since = self.clock()

    def reset(self):
        with self._lock:
            self._signature = None
            self._since = self.clock()
            self._generating = False

    def status(self):
        with self._lock:
            threshold = self.video_threshold if self._video else self.threshold
            idle = self.clock() - self._since if self._generating else 0.0
            return {
                "stalled": self._generating and idle > threshold,
                "idleSeconds": round(idle, 1),
                "thresholdSeconds": threshold,
            }
