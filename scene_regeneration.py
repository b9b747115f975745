"""
Reelsmith — Scene regeneration
Redo the audio, image or clip of one scene of a finished generation.

StandardRegenerator drives generate-video's regenerate-* phases.
CinematicRegenerator drives generate-cinematic and polls until the scene reports
complete.
"""
import time
import logging
import threading

import config
from errors import PhaseError
from generation_types import DEFAULT_ENDPOINT, CINEMATIC_ENDPOINT

log = logging.getLogger(__name__)

MAX_POLLS = 90
IMAGES_PER_SCENE = 3

TIMED_OUT = "Generation timed out after maximum retries. Please try again."


class _Regenerator:
    endpoint = DEFAULT_ENDPOINT

    def __init__(self, phase_client, generation_id, project_id, scenes, on_scenes_update,
                 notify=None, sleep=time.sleep):
        self.phase_client = phase_client
        self.generation_id = generation_id
        self.project_id = project_id
        self.scenes = [dict(s) for s in scenes or []]
        self.on_scenes_update = on_scenes_update
        self.notify = notify if notify is not None else (lambda title, description, variant="default": None)
        self.sleep = sleep
        self._busy = threading.Lock()
        self.active = None

    @property
    def is_regenerating(self):
        return self.active is not None

    def _begin(self, idx, kind):
        if not (self.generation_id and self.project_id and self.scenes):
            self.notify("Error", "Missing generation context", "destructive")
            return False
        if not self._busy.acquire(blocking=False):
            self.notify("Error", "A regeneration is already running.", "destructive")
            return False
        self.active = {"sceneIndex": idx, "type": kind}
        return True

    def _end(self):
        self.active = None
        self._busy.release()

    def _call(self, phase, idx, **extra):
        body = {
            "phase": phase,
            "generationId": self.generation_id,
            "projectId": self.project_id,
            "sceneIndex": idx,
            **extra,
        }
        result = self.phase_client.call_phase(body, endpoint=self.endpoint)
        if not result.get("success"):
            raise PhaseError(result.get("error") or "Operation failed")
        return result

    def _merge_scene(self, idx, fields):
        self.scenes[idx] = {**self.scenes[idx], **{k: v for k, v in (fields or {}).items() if k != "_meta"}}
        self.on_scenes_update([dict(s) for s in self.scenes])
        return self.scenes[idx]


class StandardRegenerator(_Regenerator):

    def regenerate_audio(self, idx, new_voiceover):
        if not self._begin(idx, "audio"):
            return None
        try:
            result = self._call("regenerate-audio", idx, newVoiceover=new_voiceover)
            scene = self._merge_scene(idx, {
                "voiceover": new_voiceover,
                "audioUrl": result.get("audioUrl"),
                "duration": result.get("duration") or self.scenes[idx].get("duration"),
            })
            self.notify("Audio Regenerated", f"Scene {idx + 1} audio has been updated.")
            return scene
        except Exception as e:
            log.error("[SceneRegen] Audio regeneration error: %s", e)
            self.notify("Regeneration Failed", str(e) or "Failed to regenerate audio", "destructive")
            return None
        finally:
            self._end()

    def regenerate_image(self, idx, image_modification, image_index=None):
        """
        Redo one image slot. A scene with no images at all gets every slot
        (primary + sub-visuals) regenerated.
        """
        if not self._begin(idx, "image"):
            return None
        try:
            scene = self.scenes[idx]
            has_no_images = not scene.get("imageUrl") and not any(scene.get("imageUrls") or [])
            indices = list(range(IMAGES_PER_SCENE)) if has_no_images else [image_index or 0]
            log.info("[SceneRegen] Scene %d: generating image(s) %s", idx + 1, indices)

            urls = list(scene.get("imageUrls") or [])
            for slot in indices:
                try:
                    result = self._call("regenerate-image", idx, imageModification=image_modification, imageIndex=slot)
                except PhaseError as e:
                    log.warning("[SceneRegen] Image %d failed: %s", slot, e)
                    continue
                while len(urls) <= slot:
                    urls.append("")
                urls[slot] = result.get("imageUrl")

            valid = [u for u in urls if u]
            scene = self._merge_scene(idx, {
                "imageUrl": valid[0] if valid else scene.get("imageUrl"),
                "imageUrls": valid or scene.get("imageUrls"),
            })
            if len(indices) > 1:
                description = f"Scene {idx + 1}: {len(valid)} of {len(indices)} images generated."
            elif image_index is not None:
                description = f"Scene {idx + 1} image {image_index + 1} has been updated."
            else:
                description = f"Scene {idx + 1} has been updated."
            self.notify("Image Regenerated", description)
            return scene
        except Exception as e:
            log.error("[SceneRegen] Image regeneration error: %s", e)
            self.notify("Regeneration Failed", str(e) or "Failed to regenerate image", "destructive")
            return None
        finally:
            self._end()


class CinematicRegenerator(_Regenerator):
    endpoint = CINEMATIC_ENDPOINT

    def __init__(self, phase_client, generation_id, project_id, scenes, on_scenes_update,
                 notify=None, sleep=time.sleep, store=None, on_stop_playback=None):
        super().__init__(phase_client, generation_id, project_id, scenes, on_scenes_update, notify, sleep)
        self.store = store
        self.on_stop_playback = on_stop_playback if on_stop_playback is not None else (lambda: None)

    def _poll_until_complete(self, idx, kind):
        for _ in range(MAX_POLLS):
            extra = {"regenerate": True} if kind == "video" else {}
            result = self._call(kind, idx, **extra)
            self._merge_scene(idx, result.get("scene"))
            if result.get("status") == "complete":
                return self.scenes[idx]
            self.sleep(config.AUDIO_POLL_INTERVAL if kind == "audio" else config.VIDEO_POLL_INTERVAL)
        raise PhaseError(TIMED_OUT)

    def _run(self, idx, kind, work, success, failure_title, failure_default):
        if not self._begin(idx, kind):
            return None
        self.on_stop_playback()
        try:
            scene = work()
            self.notify(*success)
            return scene
        except Exception as e:
            log.error("[CinematicRegen] %s error: %s", failure_title, e)
            self.notify(failure_title, str(e) or failure_default, "destructive")
            return None
        finally:
            self._end()

    def regenerate_audio(self, idx, new_voiceover):
        def work():
            self._merge_scene(idx, {"voiceover": new_voiceover})
            # Persist the new text and drop the old take so the audio phase renders again
            self.store.update_scene(self.generation_id, idx, voiceover=new_voiceover,
                                    audioUrl=None, audioPredictionId=None)
            return self._poll_until_complete(idx, "audio")

        return self._run(idx, "audio", work,
                         ("Audio Regenerated", f"Scene {idx + 1} audio has been updated."),
                         "Regeneration Failed", "Failed to regenerate audio")

    def regenerate_video(self, idx):
        return self._run(idx, "video", lambda: self._poll_until_complete(idx, "video"),
                         ("Video Regenerated", f"Scene {idx + 1} video has been updated."),
                         "Regeneration Failed", "Failed to regenerate video")

    def apply_image_edit(self, idx, image_modification):
        def work():
            result = self._call("image-edit", idx, imageModification=image_modification)
            self._merge_scene(idx, result.get("scene"))
            return self._poll_until_complete(idx, "video")

        return self._run(idx, "image", work,
                         ("Image Edited", f"Scene {idx + 1} image edited and video regenerated."),
                         "Image Edit Failed", "Failed to edit image")

    def regenerate_image(self, idx):
        def work():
            result = self._call("image-regen", idx)
            self._merge_scene(idx, result.get("scene"))
            return self._poll_until_complete(idx, "video")

        return self._run(idx, "image", work,
                         ("Image Regenerated", f"Scene {idx + 1} image and video regenerated."),
                         "Image Regeneration Failed", "Failed to regenerate image")
