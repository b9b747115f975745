"""
replicate_client.py — Replicate predictions over the REST API.

Used for image generation (Flux / nano-banana) and Chatterbox TTS.
Prediction lifecycle: create → poll → fetch output.
"""
import time
import logging

import requests

import config
from errors import ProviderError

log = logging.getLogger(__name__)

REPLICATE_BASE_URL = "https://api.replicate.com/v1"

FLUX_MODEL = "black-forest-labs/flux-1.1-pro"
NANO_BANANA_MODEL = "google/nano-banana"
CHATTERBOX_MODEL = "resemble-ai/chatterbox-turbo"

MAX_RATE_LIMIT_RETRIES = 12
DEFAULT_RETRY_AFTER = 11
POLL_ATTEMPTS = 60
POLL_INTERVAL = 1

FINISHED = ("succeeded", "failed", "canceled")


def _headers(wait=False):
    token = config.require(config.REPLICATE_API_TOKEN, "REPLICATE_API_TOKEN")
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    if wait:
        headers["Prefer"] = "wait"
    return headers


def _retry_after_seconds(response):
    """Seconds to back off after a 429, honouring retry_after in the body."""
    try:
        body = response.json()
    except ValueError:
        return DEFAULT_RETRY_AFTER
    retry_after = body.get("retry_after")
    if retry_after is None and isinstance(body.get("detail"), dict):
        retry_after = body["detail"].get("retry_after")
    if isinstance(retry_after, (int, float)):
        return max(1, retry_after) + 0.25
    return DEFAULT_RETRY_AFTER


def create_prediction(model, model_input, wait=False, max_retries=MAX_RATE_LIMIT_RETRIES):
    """
    Create a prediction for an official model.

    Args:
        model: "owner/name" model slug
        model_input: Input dict for the model
        wait: Send Prefer: wait so short predictions return finished
        max_retries: How many 429 responses to sit out before giving up

    Returns:
        Prediction dict ('id', 'status', 'output', ...)
    """
    url = f"{REPLICATE_BASE_URL}/models/{model}/predictions"

    for attempt in range(max_retries + 1):
        response = requests.post(url, headers=_headers(wait), json={"input": model_input}, timeout=90)

        if response.status_code == 429:
            delay = _retry_after_seconds(response)
            log.warning("[Replicate] Rate-limited (429) on %s. Waiting %.1fs (retry %d/%d)",
                        model, delay, attempt + 1, max_retries)
            if attempt < max_retries:
                time.sleep(delay)
            continue

        if response.status_code not in (200, 201, 202):
            raise ProviderError(f"Replicate create failed ({response.status_code}): {response.text[:300]}")

        return response.json()

    raise ProviderError("Replicate rate limit retries exceeded", rate_limited=True)


def get_prediction(prediction_id):
    """Fetch the current state of a prediction."""
    response = requests.get(
        f"{REPLICATE_BASE_URL}/predictions/{prediction_id}",
        headers=_headers(),
        timeout=30,
    )
    if response.status_code == 429:
        raise ProviderError("Replicate rate limited while polling", rate_limited=True)
    if response.status_code != 200:
        raise ProviderError(f"Replicate poll failed ({response.status_code}): {response.text[:300]}")
    return response.json()


def wait_for_prediction(prediction, attempts=POLL_ATTEMPTS, poll_interval=POLL_INTERVAL):
    """Poll until the prediction finishes or the attempts run out."""
    tries = 0
    while prediction.get("status") not in FINISHED:
        if tries >= attempts:
            raise ProviderError(
                f"Prediction {prediction.get('id')} timed out after {attempts} polls "
                f"(status: {prediction.get('status')})"
            )
        time.sleep(poll_interval)
        tries += 1
        prediction = get_prediction(prediction["id"])

    if prediction["status"] != "succeeded":
        raise ProviderError(f"Prediction {prediction['status']}: {prediction.get('error') or 'Unknown error'}")
    return prediction


def output_url(prediction):
    """Models return either a single URL or a list of URLs."""
    output = prediction.get("output")
    if isinstance(output, list):
        output = output[0] if output else None
    if isinstance(output, dict):
        output = output.get("url") or output.get("audio")
    if not output:
        raise ProviderError(f"No output in prediction {prediction.get('id')}")
    return output


def download_bytes(url):
    """Download a finished output file."""
    response = requests.get(url, timeout=120)
    if response.status_code != 200:
        raise ProviderError(f"Failed to fetch output ({response.status_code}) from {url[:80]}")
    return response.content


def run(model, model_input):
    """Create → wait → download. Returns the output file bytes."""
    prediction = create_prediction(model, model_input, wait=True)
    prediction = wait_for_prediction(prediction)
    return download_bytes(output_url(prediction))
