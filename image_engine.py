"""
Reelsmith — Image Engine
Scene images via Replicate Flux, infographics via Replicate nano-banana.
"""
import logging

import replicate_client
from validation import format_spec

log = logging.getLogger(__name__)


def generate_scene_image(prompt, fmt="landscape"):
    """Generate one scene image. Returns PNG/WEBP bytes."""
    aspect_ratio = format_spec(fmt)["aspectRatio"]
    log.info("[Images] Flux %s: %s", aspect_ratio, prompt[:80])
    return replicate_client.run(
        replicate_client.FLUX_MODEL,
        {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "output_format": "png",
            "safety_tolerance": 2,
        },
    )


def generate_infographic(prompt, fmt="square"):
    """Generate an infographic image (text-heavy layouts render better on nano-banana)."""
    aspect_ratio = format_spec(fmt)["aspectRatio"]
    log.info("[SMARTFLOW-IMG] Generating image with nano-banana, aspect_ratio: %s", aspect_ratio)
    return replicate_client.run(
        replicate_client.NANO_BANANA_MODEL,
        {
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "output_format": "png",
        },
    )
