"""
Reelsmith — Video Engine
Kling image-to-video through the fal.ai queue, clip downloads, and final stitching.

Queue lifecycle: submit → status → result. The pipeline polls; nothing here blocks
waiting for a clip.
"""
import os
import logging
from pathlib import Path

import httpx
import fal_client

import config
from errors import ProviderError

log = logging.getLogger(__name__)

KLING_I2V_ENDPOINT = "fal-ai/kling-video/o3/standard/image-to-video"

MIN_CLIP_SECONDS = 3
MAX_CLIP_SECONDS = 15


def _ensure_key():
    # fal_client reads FAL_KEY from the environment
    os.environ.setdefault("FAL_KEY", config.require(config.FAL_KEY, "FAL_KEY"))


def _rate_limited(exc):
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) == 429


def upload_image(image_path):
    """
    Upload a local image to fal.ai storage for use in API calls.

    Returns:
        URL of the uploaded image on fal storage
    """
    image_path = str(image_path)
    if not os.path.exists(image_path):
        raise FileNotFoundError(f"Image not found: {image_path}")
    _ensure_key()
    return fal_client.upload_file(image_path)


def clip_duration(seconds):
    return str(int(max(MIN_CLIP_SECONDS, min(MAX_CLIP_SECONDS, round(seconds or 5)))))


def submit_clip(image_url, prompt, duration=5, generate_audio=False):
    """
    Queue an image-to-video request.

    Args:
        image_url: Public URL (or fal storage URL) of the start frame
        prompt: Motion + camera prompt
        duration: Clip seconds (clamped to 3-15)
        generate_audio: Ask Kling for ambient audio

    Returns:
        fal request_id
    """
    _ensure_key()
    try:
        handle = fal_client.submit(
            KLING_I2V_ENDPOINT,
            arguments={
                "image_url": image_url,
                "prompt": prompt,
                "duration": clip_duration(duration),
                "generate_audio": generate_audio,
            },
        )
    except httpx.HTTPStatusError as e:
        raise ProviderError(f"fal.ai submit failed: {e}", rate_limited=_rate_limited(e)) from e
    log.info("[Video] Submitted clip %s", handle.request_id)
    return handle.request_id


def check_clip(request_id):
    """
    Check a queued clip.

    Returns:
        (status, video_url) — status is "processing" or "complete";
        video_url is only set once complete
    """
    _ensure_key()
    try:
        status = fal_client.status(KLING_I2V_ENDPOINT, request_id, with_logs=False)
        if not isinstance(status, fal_client.Completed):
            return "processing", None
        result = fal_client.result(KLING_I2V_ENDPOINT, request_id)
    except httpx.HTTPStatusError as e:
        raise ProviderError(f"fal.ai status failed: {e}", rate_limited=_rate_limited(e)) from e

    video_url = (result.get("video") or {}).get("url")
    if not video_url:
        raise ProviderError(f"No video URL in result for {request_id}")
    return "complete", video_url


def download(url, save_path):
    """Stream a remote file to disk."""
    path = Path(save_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with httpx.stream("GET", url, timeout=120, follow_redirects=True) as response:
        response.raise_for_status()
        with open(path, "wb") as f:
            for chunk in response.iter_bytes(chunk_size=8192):
                f.write(chunk)
    return str(path)


def stitch_clips(clip_paths, output_path):
    """Concatenate local clips into one MP4."""
    from moviepy import VideoFileClip, concatenate_videoclips

    clips = [VideoFileClip(str(p)) for p in clip_paths]
    try:
        final = concatenate_videoclips(clips, method="compose")
        final.write_videofile(str(output_path), codec="libx264", audio_codec="aac", logger=None)
    finally:
        for clip in clips:
            clip.close()
    return str(output_path)
