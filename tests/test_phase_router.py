"""Endpoint/phase routing and error-to-status mapping."""

import pytest

import phase_handlers
import phase_router
from errors import ProviderError


def test_unknown_endpoint_is_404(store):
    status, payload = phase_router.dispatch("generate-podcast", {"phase": "script"}, store)
    assert status == 404
    assert payload == {"success": False, "error": "Unknown endpoint: generate-podcast"}


def test_invalid_phase_is_400(store):
    status, payload = phase_router.dispatch("generate-video", {"phase": "render"}, store)
    assert status == 400
    assert payload["error"] == "Invalid phase: render"


def test_missing_generation_is_404(store):
    status, payload = phase_router.dispatch("generate-video", {"phase": "audio", "generationId": "nope"}, store)
    assert status == 404
    assert "nope" in payload["error"]


@pytest.mark.parametrize("error, expected", [
    (ProviderError("busy", rate_limited=True), 429),
    (ProviderError("upstream broke"), 502),
    (KeyError("scenes"), 500),
])
def test_errors_map_to_status(store, monkeypatch, error, expected):
    def boom(body, store):
        raise error

    monkeypatch.setitem(phase_handlers.PHASES, "finalize", boom)
    status, payload = phase_router.dispatch("generate-video", {"phase": "finalize"}, store)
    assert status == expected
    assert payload["success"] is False
    assert payload["error"]


def test_standard_regenerate_phases(store, fake_engines):
    _, script = phase_router.dispatch("generate-video", {
        "phase": "script", "content": "Tides and the moon", "length": "short"}, store)
    ids = {"generationId": script["generationId"], "projectId": script["projectId"]}

    status, image = phase_router.dispatch("generate-video", {
        "phase": "regenerate-image", **ids, "sceneIndex": 1, "imageIndex": 2,
        "imageModification": "brighter"}, store)
    assert status == 200
    assert "image_2_2.png" in image["imageUrl"]
    assert image["imageUrls"][2] == image["imageUrl"]
    assert "Modification: brighter" in fake_engines["images"][-1]

    status, audio = phase_router.dispatch("generate-video", {
        "phase": "regenerate-audio", **ids, "sceneIndex": 0, "newVoiceover": "A new line."}, store)
    assert status == 200
    assert audio["scene"]["voiceover"] == "A new line."
    assert audio["duration"] == 4

    status, bad = phase_router.dispatch("generate-video", {
        "phase": "regenerate-image", **ids, "sceneIndex": 0, "imageIndex": 5}, store)
    assert status == 400
    assert bad["error"] == "imageIndex out of range (0-2)"


def test_generation_must_belong_to_project(store, fake_engines):
    _, script = phase_router.dispatch("generate-video", {"phase": "script", "content": "Tides"}, store)
    status, payload = phase_router.dispatch("generate-video", {
        "phase": "finalize", "generationId": script["generationId"], "projectId": "other"}, store)
    assert status == 404
