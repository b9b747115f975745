"""Provider-free helpers of the script, voice and video engines."""

import json

import pytest

import script_engine
import video_engine
import voice_engine


def test_sanitize_voiceover_strips_labels_and_directions():
    raw = "Scene 1: [whispering] The tide *rises* [laugh] at night.\nNarrator - And falls."
    assert voice_engine.sanitize_voiceover(raw) == "The tide rises [laugh] at night. And falls."


def test_sanitize_voiceover_handles_non_strings():
    assert voice_engine.sanitize_voiceover(None) == ""


def test_estimate_duration_is_at_least_one_second():
    assert voice_engine.estimate_duration(0) == 1
    assert voice_engine.estimate_duration(48000) == 3


def test_voice_routing_helpers():
    assert voice_engine.voice_gender("Male") == "male"
    assert voice_engine.voice_gender("Rachel") == "female"
    assert voice_engine.is_custom_voice("custom", "abc")
    assert not voice_engine.is_custom_voice("custom", None)
    assert not voice_engine.is_custom_voice("standard", "abc")


def test_generate_scene_audio_skips_empty_text():
    assert voice_engine.generate_scene_audio("[pause]") is None


def test_generate_scene_audio_routes_custom_voices(monkeypatch):
    monkeypatch.setattr(voice_engine, "generate_elevenlabs", lambda text, voice_id: b"\0" * 32000)
    audio = voice_engine.generate_scene_audio("Hello there", voice_type="custom", voice_id="v1")
    assert audio["provider"] == "ElevenLabs"
    assert audio["duration"] == 2


def test_parse_json_strips_fences():
    assert script_engine.parse_json('```json\n{"title": "x"}\n```') == {"title": "x"}


def test_parse_json_repairs_truncation():
    truncated = '{"title": "Tides", "scenes": [{"voiceover": "one"}, {"voiceover": "tw'
    repaired = script_engine.parse_json(truncated)
    assert repaired["title"] == "Tides"
    assert repaired["scenes"][0] == {"voiceover": "one"}


def test_parse_json_raises_when_unrepairable():
    with pytest.raises(json.JSONDecodeError):
        script_engine.parse_json("not json at all")


def test_build_image_prompt_appends_character_and_modification():
    prompt = script_engine.build_image_prompt("A lighthouse", "Doodle", "a red-haired keeper", "add fog")
    assert prompt.startswith("A lighthouse. Style: Doodle.")
    assert "Main character: a red-haired keeper." in prompt
    assert prompt.endswith("Modification: add fog.")


def test_clip_duration_is_clamped():
    assert video_engine.clip_duration(1) == "3"
    assert video_engine.clip_duration(7.6) == "8"
    assert video_engine.clip_duration(40) == "15"
    assert video_engine.clip_duration(None) == "5"
