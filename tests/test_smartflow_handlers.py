"""generate-smartflow: one-shot infographic plus narration."""

import voice_engine
import phase_router

DATA = "Q1 revenue 1.2M, Q2 revenue 1.34M, churn 3% to 2.1%"


def call(store, body):
    return phase_router.dispatch("generate-smartflow", body, store)


def test_generate_defaults_to_generate_phase(store, fake_engines):
    status, result = call(store, {"dataSource": DATA, "extractionPrompt": "Show revenue growth",
                                  "enableVoice": True})
    assert status == 200
    assert result["success"] is True
    assert result["title"] == "Quarterly Revenue"
    assert "infographic.png" in result["imageUrl"]
    assert "narration.mp3" in result["audioUrl"]
    assert result["keyInsights"] == ["Revenue up 12%", "Churn down"]

    (scene,) = result["scenes"]
    assert scene["number"] == 1
    assert scene["voiceover"] == "Revenue grew twelve percent this quarter."
    assert scene["duration"] == 4

    gen = store.get_generation(result["generationId"])
    assert gen["status"] == "complete"
    assert gen["progress"] == 100
    project = store.get_project(result["projectId"])
    assert project["project_type"] == "smartflow"
    assert project["format"] == "square"
    assert project["title"] == "Quarterly Revenue"


def test_narration_failure_is_not_fatal(store, fake_engines, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("tts down")

    monkeypatch.setattr(voice_engine, "generate_scene_audio", broken)
    status, result = call(store, {"dataSource": DATA, "extractionPrompt": "Show revenue growth",
                                  "enableVoice": True})
    assert status == 200
    assert result["audioUrl"] is None
    assert result["scenes"][0]["duration"] == 10


def test_voice_disabled_skips_narration(store, fake_engines):
    _, result = call(store, {"dataSource": DATA, "extractionPrompt": "Show revenue growth"})
    assert result["audioUrl"] is None
    assert fake_engines["audio"] == []


def test_input_validation(store, fake_engines):
    status, result = call(store, {"dataSource": "short", "extractionPrompt": "Show revenue"})
    assert status == 400
    assert result["error"] == "Data source must be at least 10 characters"

    status, result = call(store, {"dataSource": DATA, "extractionPrompt": "rev"})
    assert result["error"] == "Extraction prompt must be at least 5 characters"

    status, result = call(store, {"dataSource": DATA, "extractionPrompt": "Show revenue", "format": "tall"})
    assert status == 400
    assert result["error"].startswith("format must be one of")


def test_regenerate_image_and_audio(store, fake_engines):
    _, result = call(store, {"dataSource": DATA, "extractionPrompt": "Show revenue growth"})
    gen_id = result["generationId"]

    status, image = call(store, {"phase": "regenerate-image", "generationId": gen_id,
                                 "imagePrompt": "Use a pie chart"})
    assert status == 200
    assert "Use a pie chart" in fake_engines["infographics"][-1]
    assert store.get_generation(gen_id)["scenes"][0]["imageUrl"] == image["imageUrl"]

    status, audio = call(store, {"phase": "regenerate-audio", "generationId": gen_id,
                                 "script": "Revenue climbed steadily.", "voiceGender": "male"})
    assert status == 200
    assert audio["duration"] == 3
    stored = store.get_generation(gen_id)
    assert stored["script"] == "Revenue climbed steadily."
    assert stored["scenes"][0]["audioUrl"] == audio["audioUrl"]


def test_regeneration_requires_inputs(store):
    status, result = call(store, {"phase": "regenerate-image", "generationId": "g"})
    assert status == 400
    assert result["error"] == "Missing generationId or imagePrompt"

    status, result = call(store, {"phase": "regenerate-audio", "script": "hello"})
    assert result["error"] == "Missing generationId or script"
