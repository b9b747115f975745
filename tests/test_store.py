"""JSON record store and media paths."""

import pytest

from errors import NotFoundError


def test_project_round_trip(store):
    project = store.create_project(title="Tides", project_type="doc2video")
    assert store.get_project(project["id"])["title"] == "Tides"

    store.update_project(project["id"], status="complete")
    assert store.get_project(project["id"])["status"] == "complete"
    assert [p["id"] for p in store.list_projects()] == [project["id"]]


def test_missing_records_raise_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_project("missing")
    with pytest.raises(NotFoundError):
        store.get_generation("missing")


def test_update_scene_checks_bounds(store):
    project = store.create_project()
    gen = store.create_generation(project["id"], scenes=[{"voiceover": "a"}])
    assert store.update_scene(gen["id"], 0, voiceover="b")["voiceover"] == "b"
    with pytest.raises(NotFoundError):
        store.update_scene(gen["id"], 3, voiceover="c")


def test_latest_generation(store):
    project = store.create_project()
    assert store.latest_generation(project["id"]) is None
    store.create_generation(project["id"], started_at="2026-01-01T00:00:00")
    newer = store.create_generation(project["id"], started_at="2026-02-01T00:00:00")
    assert store.latest_generation(project["id"])["id"] == newer["id"]


def test_media_urls_map_back_to_files(store):
    url = store.save_media("gen-1", "audio_1.mp3", b"ID3")
    assert url.startswith("/media/gen-1/audio_1.mp3?v=")
    path = store.path_from_url(url)
    assert path.read_bytes() == b"ID3"
    assert store.path_from_url("https://cdn.example.com/other.mp3") is None
    assert store.path_from_url("/media/gen-1/missing.mp3") is None
    assert store.path_from_url(None) is None


def test_delete_project_removes_generations_and_media(store):
    project = store.create_project()
    gen = store.create_generation(project["id"])
    store.save_media(gen["id"], "frame_1.png", b"png")

    store.delete_project(project["id"])
    with pytest.raises(NotFoundError):
        store.get_project(project["id"])
    with pytest.raises(NotFoundError):
        store.get_generation(gen["id"])
    assert not (store.media_dir / gen["id"]).exists()
