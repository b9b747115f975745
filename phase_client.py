"""
Reelsmith — Phase client
Calls the phase endpoints with timeouts, retries for transient failures, and the
user-facing messages for rate limits, credits and expired sessions.

Two transports share one status-code contract:
    HttpTransport      POST {base_url}/functions/{endpoint} with requests
    InProcessTransport phase_router.dispatch against a local Store
"""
import time
import random
import logging

import requests

import config
import phase_router
from errors import PhaseError
from generation_types import DEFAULT_ENDPOINT

log = logging.getLogger(__name__)

LOG = "[Pipeline:Network]"

MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT = 120


class TransientError(Exception):
    """Connection-level failure worth retrying (the request never got an answer)."""


class PhaseTimeout(Exception):
    pass


class HttpTransport:
    def __init__(self, base_url=None, auth_token=None, session=None):
        self.base_url = (base_url or config.PHASE_BASE_URL).rstrip("/")
        self.auth_token = auth_token if auth_token is not None else config.PHASE_AUTH_TOKEN
        self.session = session or requests.Session()

    def post(self, endpoint, body, timeout):
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        try:
            response = self.session.post(
                f"{self.base_url}/functions/{endpoint}", json=body, headers=headers, timeout=timeout)
        except requests.Timeout as e:
            raise PhaseTimeout(str(e)) from e
        except requests.ConnectionError as e:
            raise TransientError(str(e)) from e
        try:
            payload = response.json()
        except ValueError:
            payload = None
        return response.status_code, payload


class InProcessTransport:
    """Dispatch straight to the local phase handlers (no HTTP hop)."""

    def __init__(self, store):
        self.store = store

    def post(self, endpoint, body, timeout):
        return phase_router.dispatch(endpoint, dict(body), self.store)


class PhaseClient:
    def __init__(self, transport, sleep=time.sleep):
        self.transport = transport
        self.sleep = sleep

    def call_phase(self, body, timeout=DEFAULT_TIMEOUT, endpoint=DEFAULT_ENDPOINT):
        """
        Call a phase endpoint, retrying up to 3 times for transient network
        failures and 503s.

        Returns:
            Parsed JSON response of a 2xx call

        Raises:
            PhaseError with the user-facing message
        """
        phase = body.get("phase") or "unknown"

        for attempt in range(1, MAX_ATTEMPTS + 1):
            log.info(LOG + ' Phase "%s" attempt %d/%d (endpoint=%s, timeout=%ss, keys=%s)',
                     phase, attempt, MAX_ATTEMPTS, endpoint, timeout, sorted(body))
            try:
                status, payload = self.transport.post(endpoint, body, timeout)
            except PhaseTimeout:
                log.error(LOG + ' Phase "%s" timed out after %ss', phase, timeout)
                raise PhaseError(f"Request timed out after {timeout:g}s. Please try again.")
            except TransientError as e:
                if attempt < MAX_ATTEMPTS:
                    delay = 0.75 * attempt + random.randint(0, 249) / 1000
                    log.warning(LOG + ' Phase "%s" transient failure, retrying in %.0fms...', phase, delay * 1000)
                    self.sleep(delay)
                    continue
                log.error(LOG + ' Phase "%s" failed after %d attempt(s): %s', phase, attempt, e)
                raise PhaseError(str(e)) from e

            if not 200 <= status < 300:
                message = (payload or {}).get("error") if isinstance(payload, dict) else None
                message = message or "Phase failed"
                log.error(LOG + ' Phase "%s" HTTP %d: %s', phase, status, message)

                if status == 429:
                    raise PhaseError("Rate limit exceeded. Please wait and try again.", status)
                if status == 402:
                    raise PhaseError("AI credits exhausted. Please add credits.", status)
                if status == 401:
                    raise PhaseError("Session expired. Please refresh the page and try again.", status)
                if status == 503 and attempt < MAX_ATTEMPTS:
                    delay = 0.8 * attempt
                    log.warning(LOG + ' Phase "%s" got 503, retrying in %.0fms...', phase, delay * 1000)
                    self.sleep(delay)
                    continue
                raise PhaseError(message, status)

            payload = payload or {}
            log.info(LOG + ' Phase "%s" completed (success=%s, hasMore=%s)',
                     phase, payload.get("success"), payload.get("hasMore"))
            return payload

        log.error(LOG + ' Phase "%s" exhausted all %d attempts', phase, MAX_ATTEMPTS)
        raise PhaseError("Phase call failed after retries")


def default_client(store):
    """HTTP when PHASE_BASE_URL is configured, in-process otherwise."""
    if config.PHASE_BASE_URL:
        return PhaseClient(HttpTransport())
    return PhaseClient(InProcessTransport(store))
