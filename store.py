"""
Reelsmith — Local Store
JSON records for projects and generations plus the media files they reference.

Layout under the data dir:
    projects/<project_id>/metadata.json
    generations/<generation_id>.json
    media/<generation_id>/<filename>
"""
import os
import json
import time
import uuid
import shutil
import logging
import threading
from pathlib import Path

import config
from errors import NotFoundError

log = logging.getLogger(__name__)

MEDIA_ROUTE = "/media"


def _now():
    return time.strftime("%Y-%m-%dT%H:%M:%S")


class Store:
    """Thread-safe JSON file store. One instance is shared by every worker thread."""

    def __init__(self, root=None, media_base_url=None):
        self.root = Path(root or config.DATA_DIR)
        self.media_base_url = config.MEDIA_BASE_URL if media_base_url is None else media_base_url
        self.projects_dir = self.root / "projects"
        self.generations_dir = self.root / "generations"
        self.media_dir = self.root / "media"
        for d in (self.projects_dir, self.generations_dir, self.media_dir):
            d.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # =========================================================================
    # FILE HELPERS
    # =========================================================================

    def _read(self, path):
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def _write(self, path, data):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)

    def _project_path(self, project_id):
        return self.projects_dir / project_id / "metadata.json"

    def _generation_path(self, generation_id):
        return self.generations_dir / f"{generation_id}.json"

    # =========================================================================
    # PROJECTS
    # =========================================================================

    def create_project(self, **fields):
        project = {
            "id": str(uuid.uuid4()),
            "title": "Untitled",
            "status": "generating",
            "created_at": _now(),
        }
        project.update(fields)
        with self._lock:
            self._write(self._project_path(project["id"]), project)
        return project

    def get_project(self, project_id):
        project = self._read(self._project_path(project_id))
        if not project:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    def update_project(self, project_id, **fields):
        with self._lock:
            project = self.get_project(project_id)
            project.update(fields)
            project["updated_at"] = _now()
            self._write(self._project_path(project_id), project)
        return project

    def list_projects(self):
        projects = []
        for d in sorted(self.projects_dir.iterdir(), reverse=True):
            meta = self._read(d / "metadata.json") if d.is_dir() else None
            if meta:
                projects.append(meta)
        projects.sort(key=lambda p: p.get("created_at", ""), reverse=True)
        return projects

    def delete_project(self, project_id):
        """Remove a project, its generations and their media."""
        with self._lock:
            self.get_project(project_id)
            for gen in self.generations_for(project_id):
                self._generation_path(gen["id"]).unlink(missing_ok=True)
                shutil.rmtree(self.media_dir / gen["id"], ignore_errors=True)
            shutil.rmtree(self.projects_dir / project_id, ignore_errors=True)
        log.info("[Store] Deleted project %s", project_id)

    # =========================================================================
    # GENERATIONS
    # =========================================================================

    def create_generation(self, project_id, **fields):
        generation = {
            "id": str(uuid.uuid4()),
            "project_id": project_id,
            "status": "generating",
            "progress": 0,
            "scenes": [],
            "error_message": None,
            "video_url": None,
            "started_at": _now(),
            "completed_at": None,
            "updated_ts": time.time(),
        }
        generation.update(fields)
        with self._lock:
            self._write(self._generation_path(generation["id"]), generation)
        return generation

    def get_generation(self, generation_id):
        generation = self._read(self._generation_path(generation_id))
        if not generation:
            raise NotFoundError(f"Generation not found: {generation_id}")
        return generation

    def update_generation(self, generation_id, **fields):
        return self.modify_generation(generation_id, lambda gen: gen.update(fields))

    def modify_generation(self, generation_id, mutate):
        """Read-modify-write a generation record under the store lock.

        Args:
            generation_id: Generation to modify
            mutate: Callable receiving the record dict and editing it in place

        Returns:
            The saved record
        """
        with self._lock:
            generation = self.get_generation(generation_id)
            mutate(generation)
            generation["updated_ts"] = time.time()
            self._write(self._generation_path(generation_id), generation)
        return generation

    def update_scene(self, generation_id, index, **fields):
        def mutate(gen):
            scenes = gen.get("scenes") or []
            if index < 0 or index >= len(scenes):
                raise NotFoundError(f"Scene {index} not found in generation {generation_id}")
            scenes[index].update(fields)

        return self.modify_generation(generation_id, mutate)["scenes"][index]

    def generations_for(self, project_id):
        gens = []
        for path in self.generations_dir.glob("*.json"):
            gen = self._read(path)
            if gen and gen.get("project_id") == project_id:
                gens.append(gen)
        gens.sort(key=lambda g: (g.get("started_at", ""), g.get("updated_ts", 0)))
        return gens

    def latest_generation(self, project_id):
        gens = self.generations_for(project_id)
        return gens[-1] if gens else None

    # =========================================================================
    # MEDIA
    # =========================================================================

    def media_path(self, generation_id, filename):
        return self.media_dir / generation_id / filename

    def media_url(self, generation_id, filename):
        return f"{self.media_base_url}{MEDIA_ROUTE}/{generation_id}/{filename}"

    def save_media(self, generation_id, filename, data):
        """Write media bytes and return the public URL (cache-busted for overwrites)."""
        path = self.media_path(generation_id, filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        return f"{self.media_url(generation_id, filename)}?v={int(time.time() * 1000)}"

    def path_from_url(self, url):
        """Map a media URL produced by save_media back to its local file, if it is ours."""
        if not url:
            return None
        marker = f"{MEDIA_ROUTE}/"
        idx = url.find(marker)
        if idx < 0:
            return None
        rel = url[idx + len(marker):].split("?", 1)[0]
        parts = rel.split("/")
        if len(parts) != 2:
            return None
        path = self.media_path(parts[0], parts[1])
        return path if path.exists() else None
