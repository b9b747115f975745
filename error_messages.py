"""
Reelsmith — User-facing error messages
Turns technical failures into the short strings shown in the workspace feed.
"""
import logging

log = logging.getLogger(__name__)

GENERIC = "Something went wrong. Please try again."

# (needles, message), first match wins
OPERATIONAL_RULES = [
    (("failed to fetch", "network", "connection"),
     "Connection interrupted. Please check your internet and try again."),
    (("timeout", "timed out"),
     "The request took too long. Please try again."),
    (("session expired", "not signed in", "401"),
     "Your session has expired. Please refresh the page and sign in again."),
    (("rate limit", "429", "too many"),
     "Too many requests. Please wait a moment and try again."),
    (("credits", "402"),
     "Insufficient credits. Please add more credits to continue."),
    (("interrupted",),
     "This generation was interrupted. Please try again."),
    (("high demand", "unavailable", "e003"),
     "The service is experiencing high demand. Please try again in a moment."),
    (("500", "server error", "internal"),
     "A server error occurred. Please try again in a moment."),
]


def get_user_friendly_error_message(error):
    """
    Map a raw error (exception or string) to a user-facing message.

    Short, non-technical messages pass through unchanged.
    """
    if error is None or error == "":
        log.warning("[ErrorMessages] Called with empty input")
        return GENERIC

    text = str(error)
    lower = text.lower()
    for needles, message in OPERATIONAL_RULES:
        if any(n in lower for n in needles):
            return message

    if "error" not in lower and len(text) < 100 and "_" not in text and "{" not in text:
        return text

    log.warning("[ErrorMessages] Fell through to generic fallback: %s", text)
    return GENERIC
