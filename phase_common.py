"""
Reelsmith — Shared phase helpers
Timing, cost tracking and the `_meta` block the phase endpoints keep on scene 1.
"""
import time

import config
from errors import ValidationError, NotFoundError
from validation import validate_index


def now_ms():
    return int(time.time() * 1000)


def empty_costs():
    return {"scriptTokens": 0, "audioSeconds": 0, "imagesGenerated": 0, "videoSeconds": 0, "estimatedCostUsd": 0.0}


def estimate_cost(costs):
    total = (
        costs.get("scriptTokens", 0) / 1000 * config.COST_PER_1K_SCRIPT_TOKENS
        + costs.get("audioSeconds", 0) * config.COST_PER_AUDIO_SECOND
        + costs.get("imagesGenerated", 0) * config.COST_PER_IMAGE
        + costs.get("videoSeconds", 0) * config.COST_PER_VIDEO_SECOND
    )
    return round(total, 4)


def add_costs(gen, **deltas):
    """Accumulate cost counters on a generation record (mutates) and return them."""
    costs = gen.setdefault("cost_tracking", empty_costs())
    for key, value in deltas.items():
        costs[key] = costs.get(key, 0) + value
    costs["estimatedCostUsd"] = estimate_cost(costs)
    return costs


def add_phase_time(gen, phase, elapsed_ms):
    timings = gen.setdefault("phase_timings", {})
    timings[phase] = timings.get(phase, 0) + elapsed_ms
    return timings


def write_meta(gen, **fields):
    """Keep progress metadata on the first scene so a reload can rebuild state."""
    scenes = gen.get("scenes") or []
    if not scenes:
        return
    meta = scenes[0].setdefault("_meta", {})
    meta.update(fields)
    meta["costTracking"] = gen.get("cost_tracking")
    meta["phaseTimings"] = gen.get("phase_timings")


def load_generation(store, body):
    generation_id = body.get("generationId")
    if not generation_id:
        raise ValidationError("Missing generationId")
    gen = store.get_generation(generation_id)
    project_id = body.get("projectId")
    if project_id and gen.get("project_id") != project_id:
        raise NotFoundError(f"Generation {generation_id} does not belong to project {project_id}")
    return gen


def scene_index(body, gen):
    return validate_index(body.get("sceneIndex"), "sceneIndex", len(gen.get("scenes") or []))


def public_scene(scene):
    return {k: v for k, v in scene.items() if k != "_meta"}


def public_scenes(scenes):
    return [public_scene(s) for s in scenes or []]

