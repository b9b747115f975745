"""Flask routes: phase endpoints, workspace API, projects, media and downloads."""

import io
import time
import zipfile

import pytest

import app as app_module


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setattr(app_module, "store", store)
    monkeypatch.setattr(app_module, "_workspaces", {})
    monkeypatch.setattr(app_module, "_progress_streams", {})
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()


def wait_until_idle(client, workspace, timeout=10):
    deadline = time.time() + timeout
    while time.time() < deadline:
        state = client.get(f"/api/workspace/{workspace}").get_json()["state"]
        if not state["isGenerating"]:
            return state
        time.sleep(0.05)
    raise AssertionError("generation did not finish")


def finished_cinematic(store):
    project = store.create_project(title="Night Harbor", project_type="cinematic", format="landscape")
    gen = store.create_generation(project["id"], status="complete", progress=100, scenes=[])
    clips = [store.save_media(gen["id"], f"clip_{i}.mp4", b"mp4-%d" % i) for i in (1, 2)]
    store.update_generation(gen["id"], scenes=[
        {"number": i + 1, "voiceover": f"Shot {i + 1}", "imageUrl": "i", "audioUrl": "a", "videoUrl": url}
        for i, url in enumerate(clips)
    ])
    return project, gen


def test_index_lists_endpoints(client):
    payload = client.get("/").get_json()
    assert payload["endpoints"] == ["generate-cinematic", "generate-smartflow", "generate-video"]


def test_phase_endpoint_returns_status_and_payload(client):
    response = client.post("/functions/generate-video", json={"phase": "warp"})
    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": "Invalid phase: warp"}

    assert client.post("/functions/generate-movie", json={}).status_code == 404


def test_phase_endpoint_runs_script(client, fake_engines, store):
    response = client.post("/functions/generate-video", json={"phase": "script", "content": "Tides and the moon"})
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["sceneCount"] == 2
    assert store.get_generation(payload["generationId"])["total_images"] == 6


def test_generate_runs_in_background(client, fake_engines):
    response = client.post("/api/workspace/ws1/generate", json={"content": "The moon makes tides.", "length": "short"})
    assert response.get_json()["status"] == "generating"

    state = wait_until_idle(client, "ws1")
    assert state["step"] == "complete"
    assert state["title"] == "How Tides Work"

    projects = client.get("/api/projects").get_json()
    assert [p["title"] for p in projects] == ["How Tides Work"]


def test_generate_requires_content(client):
    response = client.post("/api/workspace/ws1/generate", json={})
    assert response.status_code == 400


def test_generate_is_plan_gated(client):
    response = client.post("/api/workspace/ws1/generate", json={
        "content": "A cinematic idea", "projectType": "cinematic", "plan": "starter", "creditsBalance": 5})
    assert response.status_code == 403
    body = response.get_json()
    assert body["canGenerate"] is False
    assert body["error"].startswith("Insufficient credits. You need 12 credit(s)")


def test_credit_estimate(client):
    body = client.post("/api/credits/estimate", json={"projectType": "doc2video", "length": "brief"}).get_json()
    assert body == {"creditsRequired": 2}

    body = client.post("/api/credits/estimate", json={
        "projectType": "doc2video", "length": "brief", "plan": "free", "creditsBalance": 5}).get_json()
    assert body["creditsRequired"] == 2
    assert body["requiredPlan"] == "starter"


def test_load_project_reports_resume_point(client, store):
    project = store.create_project(title="Harbor", project_type="cinematic")
    store.create_generation(project["id"], status="error", error_message="Generation was interrupted.",
                            scenes=[{"voiceover": "a", "audioUrl": "a"}])

    body = client.post(f"/api/workspace/ws2/load/{project['id']}").get_json()
    assert body["state"]["step"] == "error"
    assert body["resumeFrom"] == "images"


def test_unknown_project_is_404(client):
    response = client.post("/api/workspace/ws2/load/nope")
    assert response.status_code == 404
    assert response.get_json()["error"] == "Project not found: nope"


def test_resume_without_loaded_generation_is_400(client):
    response = client.post("/api/workspace/ws3/resume")
    assert response.status_code == 400


def test_cancel_restart_without_previous_run_is_400(client):
    response = client.post("/api/workspace/ws3/cancel-restart")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Nothing to restart"


def test_playback_actions(client, store):
    project, _ = finished_cinematic(store)
    client.post(f"/api/workspace/ws4/load/{project['id']}")

    body = client.post("/api/workspace/ws4/playback/play", json={"sceneIndex": 0}).get_json()
    assert body["isPlayingAll"] is True
    body = client.post("/api/workspace/ws4/playback/ended", json={"sceneIndex": 0}).get_json()
    assert body["currentSceneIndex"] == 1
    body = client.post("/api/workspace/ws4/playback/time", json={"currentTime": 4, "duration": 8}).get_json()
    assert body["sceneProgress"] == 0.5
    assert client.get("/api/workspace/ws4/playback").get_json()["sceneCount"] == 2
    assert client.post("/api/workspace/ws4/playback/rewind").status_code == 400


def test_save_edit_persists(client, store):
    project, gen = finished_cinematic(store)
    client.post(f"/api/workspace/ws5/load/{project['id']}")
    body = client.post("/api/workspace/ws5/playback/save-edit",
                       json={"voiceover": "Edited line", "visualPrompt": "Wide shot"}).get_json()
    assert body["scene"]["voiceover"] == "Edited line"
    assert store.get_generation(gen["id"])["scenes"][0]["visualPrompt"] == "Wide shot"


def test_clips_zip(client, store):
    project, _ = finished_cinematic(store)
    client.post(f"/api/workspace/ws6/load/{project['id']}")

    response = client.get("/api/workspace/ws6/clips_zip")
    assert response.status_code == 200
    assert response.mimetype == "application/zip"
    names = zipfile.ZipFile(io.BytesIO(response.data)).namelist()
    assert names == ["scene_01.mp4", "scene_02.mp4"]


def test_clips_zip_without_clips_is_404(client):
    assert client.get("/api/workspace/empty/clips_zip").status_code == 404


def test_media_is_served(client, store):
    url = store.save_media("gen-9", "audio_1.mp3", b"ID3data")
    response = client.get(url)
    assert response.status_code == 200
    assert response.data == b"ID3data"


def test_regenerate_scene_inline(client, store, fake_engines):
    script = client.post("/functions/generate-video", json={"phase": "script", "content": "Tides and the moon"}).get_json()
    client.post(f"/api/workspace/ws7/load/{script['projectId']}")

    response = client.post("/api/workspace/ws7/scene/0/regenerate",
                           json={"type": "audio", "voiceover": "A brand new line.", "wait": True})
    assert response.status_code == 200
    assert response.get_json()["scene"]["voiceover"] == "A brand new line."

    assert client.post("/api/workspace/ws7/scene/9/regenerate", json={"type": "audio"}).status_code == 404
    assert client.post("/api/workspace/ws7/scene/0/regenerate", json={"type": "video"}).status_code == 400


def test_delete_project(client, store):
    project = store.create_project(title="Temp")
    assert client.delete(f"/api/project/{project['id']}").get_json() == {"status": "deleted"}
    assert client.get(f"/api/project/{project['id']}").status_code == 404


def test_progress_stream_replays_until_terminal_state(client):
    app_module.get_workspace("ws8")
    app_module._progress_streams["ws8"] = [
        {"type": "notification", "data": {"title": "Hi"}, "timestamp": 1},
        {"type": "state", "data": {"step": "complete", "isGenerating": False}, "timestamp": 2},
    ]
    response = client.get("/api/workspace/ws8/progress")
    assert response.mimetype == "text/event-stream"
    assert response.headers["Cache-Control"] == "no-cache"
    body = response.get_data(as_text=True)
    assert body.count("data: ") == 2
    assert '"step": "complete"' in body


def test_progress_stream_after_cancel_restart_follows_new_run(client, fake_engines):
    client.post("/api/workspace/ws9/generate", json={"content": "The moon makes tides.", "length": "short"})
    wait_until_idle(client, "ws9")

    assert client.post("/api/workspace/ws9/cancel-restart").status_code == 200
    state = wait_until_idle(client, "ws9")
    assert state["step"] == "complete"

    events = app_module._progress_streams["ws9"]
    assert events[0]["data"]["step"] == "analysis"
    body = client.get("/api/workspace/ws9/progress").get_data(as_text=True)
    assert "Cancelled by user" not in body
    assert '"step": "complete"' in body


@pytest.mark.parametrize("balance", ["lots", True, "nan"])
def test_bad_credits_balance_is_400(client, balance):
    response = client.post("/api/workspace/ws1/generate", json={
        "content": "A cinematic idea", "projectType": "cinematic", "plan": "creator", "creditsBalance": balance})
    assert response.status_code == 400
    assert response.get_json()["error"] == "creditsBalance must be a number"

    response = client.post("/api/credits/estimate", json={"plan": "creator", "creditsBalance": balance})
    assert response.status_code == 400


def test_numeric_string_credits_balance_is_accepted(client):
    body = client.post("/api/credits/estimate", json={
        "projectType": "cinematic", "plan": "creator", "creditsBalance": "20"}).get_json()
    assert body["canGenerate"] is True
