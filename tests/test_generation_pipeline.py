"""Workspace state machine: dispatch, load, resume, recovery, cancel & restart."""

import threading
import time

import pytest

import generation_pipeline
from errors import ValidationError
from generation_pipeline import CANCELLED_MESSAGE, INTERRUPTED_MESSAGE, GenerationPipeline


def make(store, client):
    return GenerationPipeline(client, store, sleep=lambda s: None, workspace_id="ws")


def test_subscribers_receive_state_and_notifications(store, scripted_client):
    pipeline = make(store, scripted_client(lambda b, e: {}))
    events = []
    unsubscribe = pipeline.subscribe(lambda kind, payload: events.append(kind))

    pipeline.set_state({"progress": 5})
    pipeline.notify("Hello", "World")
    unsubscribe()
    pipeline.set_state({"progress": 6})

    assert events == ["state", "notification"]
    assert pipeline.notifications[-1]["title"] == "Hello"


def test_state_is_a_copy(store, scripted_client):
    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.state["progress"] = 99
    assert pipeline.state["progress"] == 0


def test_smartflow_with_extraction_prompt_is_single_shot(store, scripted_client):
    def respond(body, endpoint):
        assert endpoint == "generate-smartflow"
        assert body["phase"] == "generate"
        return {"success": True, "projectId": "p1", "generationId": "g1", "title": "Revenue",
                "scenes": [{"voiceover": "v", "imageUrl": "i"}]}

    client = scripted_client(respond)
    pipeline = make(store, client)
    pipeline.start_generation({"projectType": "smartflow", "content": "data data data",
                               "extractionPrompt": "Show trends"}, background=False)

    state = pipeline.state
    assert state["step"] == "complete"
    assert state["title"] == "Revenue"
    assert state["completedImages"] == 1
    assert len(client.calls) == 1
    assert pipeline.notifications[-1]["title"] == "Infographic created!"


def test_cinematic_params_use_cinematic_runner(store, scripted_client, monkeypatch):
    seen = []
    monkeypatch.setattr(generation_pipeline, "run_cinematic_pipeline", lambda params, ctx: seen.append(params))
    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.start_generation({"projectType": "cinematic", "content": "x"}, background=False)
    assert seen and seen[0]["projectType"] == "cinematic"


def test_failure_uses_friendly_message(store, scripted_client):
    from errors import PhaseError

    def respond(body, endpoint):
        raise PhaseError("Rate limit exceeded. Please wait and try again.", 429)

    pipeline = make(store, scripted_client(respond))
    pipeline.start_generation({"content": "hello world"}, background=False)
    state = pipeline.state
    assert state["step"] == "error"
    assert pipeline.notifications[-1]["description"] == "Too many requests. Please wait a moment and try again."


def test_cancel_blocks_stale_writes_and_restart_runs_again(store, scripted_client):
    gate = threading.Event()
    calls = {"n": 0}

    def respond(body, endpoint):
        calls["n"] += 1
        if calls["n"] == 1:
            gate.wait(5)
            return {"success": True, "projectId": "p-old", "generationId": "g-old", "sceneCount": 1}
        return {"success": False, "error": "Script generation failed"}

    pipeline = make(store, scripted_client(respond))
    pipeline.start_generation({"content": "first run"})
    while calls["n"] == 0:
        time.sleep(0.01)

    # release the first run only after it has been cancelled
    threading.Timer(0.1, gate.set).start()
    pipeline.cancel_and_restart(background=False)

    state = pipeline.state
    assert state.get("projectId") != "p-old"
    assert state["step"] == "error"
    assert state["error"] == "Script generation failed"


def test_start_while_running_is_rejected(store, scripted_client):
    gate = threading.Event()
    pipeline = make(store, scripted_client(lambda b, e: gate.wait(5) and {"success": False}))
    pipeline.start_generation({"content": "x"})
    try:
        with pytest.raises(ValidationError):
            pipeline.start_generation({"content": "y"})
    finally:
        gate.set()
        pipeline._thread.join(5)


def test_cancel_marks_generation(store, scripted_client):
    pipeline = make(store, scripted_client(lambda b, e: {}))
    project = store.create_project()
    gen = store.create_generation(project["id"])
    pipeline.set_state({"generationId": gen["id"], "isGenerating": True})

    pipeline.cancel()
    assert store.get_generation(gen["id"])["error_message"] == CANCELLED_MESSAGE
    assert pipeline.state["step"] == "error"


def test_load_project_rebuilds_state_from_meta(store, scripted_client):
    project = store.create_project(title="Tides", project_type="doc2video", format="portrait", length="short")
    store.create_generation(project["id"], status="generating", progress=65, scenes=[
        {"voiceover": "a", "_meta": {"totalImages": 18, "completedImages": 9, "statusMessage": "Images 9/18..."}},
        {"voiceover": "b"}, {"voiceover": "c"}, {"voiceover": "d"}, {"voiceover": "e"}, {"voiceover": "f"},
    ])

    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.load_project(project["id"])
    state = pipeline.state
    assert state["step"] == "visuals"
    assert state["totalImages"] == 18
    assert state["completedImages"] == 9
    assert state["currentScene"] == 3
    assert state["statusMessage"] == "Images 9/18..."
    assert state["isGenerating"] is False
    assert "_meta" not in state["scenes"][0]


def test_stale_generating_record_is_marked_interrupted(store, scripted_client, monkeypatch):
    # every record counts as stale
    monkeypatch.setattr(generation_pipeline.config, "STALE_GENERATION_SECONDS", -1)
    project = store.create_project(title="Old run")
    gen = store.create_generation(project["id"], status="generating", progress=50, scenes=[{"voiceover": "a"}])

    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.load_project(project["id"])

    assert store.get_generation(gen["id"])["status"] == "error"
    assert pipeline.state["step"] == "error"
    assert pipeline.state["error"] == INTERRUPTED_MESSAGE


@pytest.mark.parametrize("scenes, expected", [
    ([], None),
    ([{"audioUrl": "a", "imageUrl": None}], "images"),
    ([{"audioUrl": None, "imageUrl": "i"}], "audio"),
    ([{"audioUrl": "a", "imageUrl": "i"}], "video"),
    ([{"audioUrl": "a", "imageUrl": "i", "videoUrl": "v"}], "finalize"),
])
def test_resume_point(scenes, expected):
    assert GenerationPipeline.resume_point(scenes) == expected


def test_resume_runs_cinematic_from_first_gap(store, scripted_client, monkeypatch):
    seen = []
    monkeypatch.setattr(generation_pipeline, "resume_cinematic_pipeline",
                        lambda project, gid, scenes, resume_from, ctx: seen.append(resume_from))
    project = store.create_project(title="Harbor", project_type="cinematic")
    store.create_generation(project["id"], status="error", scenes=[
        {"voiceover": "a", "audioUrl": "a", "imageUrl": "i"}])

    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.load_project(project["id"])
    assert pipeline.resume(background=False) == "video"
    assert seen == ["video"]
    assert store.latest_generation(project["id"])["status"] == "generating"


def test_resume_is_cinematic_only(store, scripted_client):
    project = store.create_project(project_type="doc2video")
    store.create_generation(project["id"], scenes=[{"voiceover": "a"}])
    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.load_project(project["id"])
    with pytest.raises(ValidationError, match="Only cinematic"):
        pipeline.resume(background=False)


def test_status_check_recovers_completed_generation(store, scripted_client):
    project = store.create_project(title="Tides")
    gen = store.create_generation(project["id"], scenes=[{"voiceover": "a", "imageUrl": "i"}])
    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.set_state({"isGenerating": True, "projectId": project["id"], "generationId": gen["id"]})

    assert pipeline.check_generation_status() == "generating"
    store.update_generation(gen["id"], status="complete", progress=100)
    assert pipeline.check_generation_status() == "complete"
    assert pipeline.state["step"] == "complete"


def test_status_check_surfaces_errors(store, scripted_client):
    project = store.create_project()
    gen = store.create_generation(project["id"], status="error", error_message="Request timed out")
    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.set_state({"isGenerating": True, "projectId": project["id"], "generationId": gen["id"]})

    assert pipeline.check_generation_status() == "error"
    assert pipeline.state["statusMessage"] == "The request took too long. Please try again."


def test_regenerator_matches_project_type(store, scripted_client):
    from scene_regeneration import CinematicRegenerator, StandardRegenerator

    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.set_state({"generationId": "g1", "projectId": "p1", "scenes": [{}], "projectType": "doc2video"})
    assert isinstance(pipeline.regenerator(), StandardRegenerator)
    assert pipeline.regenerator() is pipeline.regenerator()

    pipeline.set_state({"generationId": "g2", "projectType": "cinematic"})
    assert isinstance(pipeline.regenerator(), CinematicRegenerator)


def test_playback_follows_scene_updates(store, scripted_client):
    pipeline = make(store, scripted_client(lambda b, e: {}))
    pipeline.set_state({"scenes": [{"videoUrl": "v1"}]})
    player = pipeline.playback()
    pipeline.set_state({"scenes": [{"videoUrl": "v1"}, {"videoUrl": "v2"}]})
    assert player.snapshot()["sceneCount"] == 2


def test_unknown_step_is_rejected(store, scripted_client):
    pipeline = make(store, scripted_client(lambda b, e: {}))
    with pytest.raises(ValueError, match="Unknown generation step: rendering-clips"):
        pipeline.set_state({"step": "rendering-clips"})
    assert pipeline.state["step"] == "idle"


def test_restart_hook_runs_between_cancel_and_new_run(store, scripted_client):
    pipeline = make(store, scripted_client(lambda b, e: {"success": False, "error": "Script generation failed"}))
    pipeline.start_generation({"content": "first run"}, background=False)

    steps = []
    pipeline.subscribe(lambda kind, payload: kind == "state" and steps.append(payload["step"]))
    pipeline.cancel_and_restart(background=False, before_restart=lambda: steps.append("restart"))

    assert steps[0] == "error"
    assert steps[1] == "restart"
    assert steps[2] == "analysis"
