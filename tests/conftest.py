import os
import tempfile

# Point the module-level store at a scratch dir before anything imports config
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="reelsmith-tests-"))
os.environ.setdefault("PHASE_BASE_URL", "")

import pytest

from generation_types import initial_state
from store import Store


class ScriptedPhaseClient:
    """Answers call_phase with responder(body, endpoint) and records every call."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def call_phase(self, body, timeout=120, endpoint="generate-video"):
        self.calls.append((endpoint, dict(body)))
        return self.responder(dict(body), endpoint)

    def phases(self):
        return [body.get("phase") for _, body in self.calls]


class FakeContext:
    """PipelineContext stand-in: plain state dict, recorded sleeps and notifications."""

    def __init__(self, client, scenes=None):
        self.client = client
        self.state = initial_state()
        self.scenes = scenes if scenes is not None else []
        self.notifications = []
        self.sleeps = []

    def set_state(self, patch):
        if callable(patch):
            patch = patch(dict(self.state))
        self.state.update(patch)

    def call_phase(self, body, timeout=None, endpoint=None):
        return self.client.call_phase(body, timeout, endpoint)

    def notify(self, title, description, variant="default"):
        self.notifications.append((title, description, variant))

    def sleep(self, seconds):
        self.sleeps.append(seconds)

    def load_scenes(self, generation_id):
        return [dict(s) for s in self.scenes]


@pytest.fixture
def store(tmp_path):
    return Store(root=tmp_path / "data", media_base_url="")


@pytest.fixture
def scripted_client():
    return ScriptedPhaseClient


@pytest.fixture
def fake_context():
    return FakeContext


@pytest.fixture
def fake_engines(monkeypatch):
    """Replace every provider call with deterministic local fakes."""
    import image_engine
    import script_engine
    import video_engine
    import voice_engine

    calls = {"images": [], "audio": [], "clips": [], "infographics": []}

    def generate_script(params, scene_count, usage=None):
        if usage is not None:
            usage["tokens"] = 1200
        return {
            "title": "How Tides Work",
            "scenes": [
                {"number": i + 1, "voiceover": f"Scene {i + 1} narration about the moon.",
                 "visualPrompt": f"Scene {i + 1} primary", "duration": 8,
                 "subVisuals": [f"Scene {i + 1} second", f"Scene {i + 1} third"]}
                for i in range(2)
            ],
        }

    def generate_cinematic_script(params, scene_count, usage=None):
        return {
            "title": "Night Harbor",
            "scenes": [
                {"number": i + 1, "voiceover": f"Shot {i + 1} narration.",
                 "visualPrompt": f"Shot {i + 1} frame", "duration": 6}
                for i in range(2)
            ],
        }

    def generate_scene_audio(voiceover, voice_type=None, voice_id=None, voice_name=None, expressive=False):
        calls["audio"].append(voiceover)
        return {"bytes": b"ID3" + b"\0" * 64000, "duration": 4, "provider": "fake"}

    def generate_scene_image(prompt, fmt="landscape"):
        calls["images"].append(prompt)
        return b"\x89PNG fake"

    def generate_infographic(prompt, fmt="square"):
        calls["infographics"].append(prompt)
        return b"\x89PNG infographic"

    def analyze_for_infographic(data_source, extraction_prompt, style_desc, fmt, brand_mark=None, usage=None):
        return {
            "title": "Quarterly Revenue",
            "narrationScript": "Revenue grew twelve percent this quarter.",
            "imagePrompt": "Bar chart of revenue",
            "keyInsights": ["Revenue up 12%", "Churn down"],
        }

    monkeypatch.setattr(script_engine, "generate_script", generate_script)
    monkeypatch.setattr(script_engine, "generate_cinematic_script", generate_cinematic_script)
    monkeypatch.setattr(script_engine, "analyze_for_infographic", analyze_for_infographic)
    monkeypatch.setattr(script_engine, "build_video_prompt", lambda scene, style: scene.get("visualPrompt"))
    monkeypatch.setattr(voice_engine, "generate_scene_audio", generate_scene_audio)
    monkeypatch.setattr(voice_engine, "start_chatterbox", lambda text, gender="female": f"pred-{len(text)}")
    monkeypatch.setattr(voice_engine, "poll_chatterbox", lambda prediction_id: ("complete", b"\0" * 32000))
    monkeypatch.setattr(voice_engine, "generate_chatterbox", lambda text, gender="female": b"\0" * 48000)
    monkeypatch.setattr(image_engine, "generate_scene_image", generate_scene_image)
    monkeypatch.setattr(image_engine, "generate_infographic", generate_infographic)

    def submit_clip(image_url, prompt, duration=5, generate_audio=False):
        calls["clips"].append(image_url)
        return f"req-{len(calls['clips'])}"

    def download(url, save_path):
        os.makedirs(os.path.dirname(str(save_path)), exist_ok=True)
        with open(save_path, "wb") as f:
            f.write(b"mp4")
        return str(save_path)

    monkeypatch.setattr(video_engine, "upload_image", lambda path: f"https://fal.test/{os.path.basename(str(path))}")
    monkeypatch.setattr(video_engine, "submit_clip", submit_clip)
    monkeypatch.setattr(video_engine, "check_clip", lambda request_id: ("complete", f"https://fal.test/{request_id}.mp4"))
    monkeypatch.setattr(video_engine, "download", download)
    monkeypatch.setattr(video_engine, "stitch_clips", download_stitch)
    return calls


def download_stitch(clip_paths, output_path):
    with open(output_path, "wb") as f:
        for path in clip_paths:
            with open(path, "rb") as clip:
                f.write(clip.read())
    return str(output_path)
