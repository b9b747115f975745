"""generate-cinematic phases against a real store with fake providers."""

import pytest

import phase_router
import video_engine
import voice_engine
from errors import ProviderError


def call(store, phase, **body):
    return phase_router.dispatch("generate-cinematic", {"phase": phase, **body}, store)


@pytest.fixture
def generation(store, fake_engines):
    status, script = call(store, "script", content="A harbor at night", format="portrait", style="cinematic")
    assert status == 200
    return {"projectId": script["projectId"], "generationId": script["generationId"]}


def scene(store, ids, idx):
    return store.get_generation(ids["generationId"])["scenes"][idx]


def test_script_creates_cinematic_records(store, generation):
    project = store.get_project(generation["projectId"])
    assert project["project_type"] == "cinematic"
    gen = store.get_generation(generation["generationId"])
    assert gen["total_images"] == 2
    assert len(gen["scenes"]) == 2


def test_audio_starts_prediction_then_completes(store, generation):
    status, first = call(store, "audio", sceneIndex=0, **generation)
    assert status == 200
    assert first["status"] == "processing"
    assert first["scene"]["audioPredictionId"].startswith("pred-")

    _, second = call(store, "audio", sceneIndex=0, **generation)
    assert second["status"] == "complete"
    stored = scene(store, generation, 0)
    assert "audio_1.mp3" in stored["audioUrl"]
    assert stored["audioPredictionId"] is None
    assert stored["audioDuration"] == 2

    _, third = call(store, "audio", sceneIndex=0, **generation)
    assert third["status"] == "complete"


def test_failed_prediction_is_cleared(store, generation, monkeypatch):
    call(store, "audio", sceneIndex=1, **generation)

    def failed(prediction_id):
        raise ProviderError("TTS prediction failed: boom")

    monkeypatch.setattr(voice_engine, "poll_chatterbox", failed)
    status, payload = call(store, "audio", sceneIndex=1, **generation)
    assert status == 502
    assert payload == {"success": False, "error": "TTS prediction failed: boom"}
    assert scene(store, generation, 1)["audioPredictionId"] is None


def test_scene_index_is_validated(store, generation):
    status, payload = call(store, "audio", sceneIndex=7, **generation)
    assert status == 400
    assert payload["error"] == "sceneIndex out of range (0-1)"


def test_video_requires_an_image(store, generation):
    status, payload = call(store, "video", sceneIndex=0, **generation)
    assert status == 400
    assert payload["error"] == "Scene 1 has no image to animate"


def test_video_submit_then_poll(store, generation, fake_engines):
    call(store, "images", sceneIndex=0, **generation)
    _, submitted = call(store, "video", sceneIndex=0, **generation)
    assert submitted["status"] == "processing"
    assert submitted["scene"]["videoRequestId"] == "req-1"
    assert fake_engines["clips"] == ["https://fal.test/frame_1.png"]

    _, polled = call(store, "video", sceneIndex=0, **generation)
    assert polled["status"] == "complete"
    assert "clip_1.mp4" in polled["scene"]["videoUrl"]
    assert store.get_generation(generation["generationId"])["cost_tracking"]["videoSeconds"] > 0


def test_rate_limited_poll_surfaces_429(store, generation, monkeypatch):
    call(store, "images", sceneIndex=0, **generation)
    call(store, "video", sceneIndex=0, **generation)

    def limited(request_id):
        raise ProviderError("fal.ai status failed: 429", rate_limited=True)

    monkeypatch.setattr(video_engine, "check_clip", limited)
    status, _ = call(store, "video", sceneIndex=0, **generation)
    assert status == 429
    assert scene(store, generation, 0)["videoRequestId"] == "req-1"


def test_failed_clip_is_resubmitted(store, generation, monkeypatch, fake_engines):
    call(store, "images", sceneIndex=0, **generation)
    call(store, "video", sceneIndex=0, **generation)

    def failed(request_id):
        raise ProviderError("fal.ai status failed: 500")

    monkeypatch.setattr(video_engine, "check_clip", failed)
    _, payload = call(store, "video", sceneIndex=0, **generation)
    assert payload["status"] == "processing"
    assert scene(store, generation, 0)["videoRequestId"] is None
    assert "500" in scene(store, generation, 0)["videoError"]

    monkeypatch.setattr(video_engine, "check_clip", lambda request_id: ("processing", None))
    _, again = call(store, "video", sceneIndex=0, **generation)
    assert again["scene"]["videoRequestId"] == "req-2"


def test_video_batch_and_finalize(store, generation):
    for idx in (0, 1):
        call(store, "images", sceneIndex=idx, **generation)
        call(store, "video", sceneIndex=idx, **generation)

    _, batch = call(store, "video-batch", **generation)
    assert batch["status"] == "all_complete"
    assert batch["completedThisRound"] == 2
    assert batch["stillMissing"] == 0
    assert batch["rateLimitHit"] is False

    _, final = call(store, "finalize", **generation)
    assert final["success"] is True
    assert "final.mp4" in final["finalVideoUrl"]
    gen = store.get_generation(generation["generationId"])
    assert gen["status"] == "complete"
    assert gen["video_url"] == final["finalVideoUrl"]


def test_finalize_falls_back_to_first_clip(store, generation, monkeypatch):
    for idx in (0, 1):
        call(store, "images", sceneIndex=idx, **generation)
        call(store, "video", sceneIndex=idx, **generation)
    call(store, "video-batch", **generation)

    def broken(paths, output):
        raise RuntimeError("ffmpeg missing")

    monkeypatch.setattr(video_engine, "stitch_clips", broken)
    _, final = call(store, "finalize", **generation)
    assert final["finalVideoUrl"] == scene(store, generation, 0)["videoUrl"]


def test_image_regen_invalidates_pending_clip(store, generation):
    call(store, "images", sceneIndex=0, **generation)
    call(store, "video", sceneIndex=0, **generation)
    assert scene(store, generation, 0)["videoRequestId"]

    _, payload = call(store, "image-regen", sceneIndex=0, **generation)
    assert payload["status"] == "complete"
    assert payload["scene"]["videoRequestId"] is None


def test_image_edit_without_local_frame_uses_prompt(store, generation, fake_engines):
    _, payload = call(store, "image-edit", sceneIndex=1, imageModification="make it snow", **generation)
    assert payload["status"] == "complete"
    assert "Modification: make it snow" in fake_engines["images"][-1]

    status, missing = call(store, "image-edit", sceneIndex=1, **generation)
    assert status == 400
    assert missing["error"] == "Missing imageModification"
