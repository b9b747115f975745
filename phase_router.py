"""
Reelsmith — Phase router
Maps endpoint + phase name to a handler and turns exceptions into (status, payload).
"""
import logging

import cinematic_handlers
import phase_handlers
import smartflow_handlers
from errors import ReelsmithError, ProviderError, ValidationError, NotFoundError
from generation_types import DEFAULT_ENDPOINT, CINEMATIC_ENDPOINT, SMARTFLOW_ENDPOINT

log = logging.getLogger(__name__)

ENDPOINTS = {
    DEFAULT_ENDPOINT: phase_handlers.PHASES,
    CINEMATIC_ENDPOINT: cinematic_handlers.PHASES,
    SMARTFLOW_ENDPOINT: smartflow_handlers.PHASES,
}

DEFAULT_PHASES = {
    SMARTFLOW_ENDPOINT: "generate",
}


def dispatch(endpoint, body, store):
    """
    Run one phase call.

    Returns:
        (http_status, payload) — payload always has "success" on 200,
        and "success": False plus "error" otherwise
    """
    body = body or {}
    phase = body.get("phase") or DEFAULT_PHASES.get(endpoint)
    try:
        phases = ENDPOINTS.get(endpoint)
        if phases is None:
            raise NotFoundError(f"Unknown endpoint: {endpoint}")
        handler = phases.get(phase)
        if handler is None:
            raise ValidationError(f"Invalid phase: {phase}")
        return 200, handler(body, store)
    except ProviderError as e:
        log.error("[%s:%s] Provider error: %s", endpoint, phase, e)
        return (429 if e.rate_limited else e.status), {"success": False, "error": str(e)}
    except ReelsmithError as e:
        log.warning("[%s:%s] %s: %s", endpoint, phase, type(e).__name__, e)
        return e.status or 500, {"success": False, "error": str(e)}
    except Exception as e:
        log.exception("[%s:%s] Unexpected error", endpoint, phase)
        return 500, {"success": False, "error": str(e) or "Unknown error"}
