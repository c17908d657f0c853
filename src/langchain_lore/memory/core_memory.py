"""
Core memory detection.

The summarization prompt asks the model to wrap a summary in
``<CORE_MEMORY>`` tags when the turn is a pivotal narrative moment. These
helpers recognize and remove that wrapper.
"""

import re

_OPEN_TAG = re.compile(r"<CORE_MEMORY\b[^>]*>", re.IGNORECASE)
_CLOSE_TAG = re.compile(r"</CORE_MEMORY>", re.IGNORECASE)

CORE_MEMORY_INSTRUCTIONS = """CORE MEMORY DETECTION:
If this exchange is a truly significant narrative moment (major character development, important plot reveals, relationship changes, dramatic events, or story-defining moments), mark it as a CORE MEMORY by wrapping your entire summary in <CORE_MEMORY> tags.

Examples of core memories:
- Character deaths or major injuries
- Romantic confessions or breakups
- Major plot revelations or secrets revealed
- Character growth moments or realizations
- Significant world-changing events
- Important promises or vows made

Only mark as CORE_MEMORY if the moment is genuinely pivotal to the story."""


def is_core_memory(raw: str) -> bool:
    """True if the text carries an opening or closing core memory tag."""
    if not raw:
        return False
    return bool(_OPEN_TAG.search(raw) or _CLOSE_TAG.search(raw))


def strip_marker(raw: str) -> str:
    """Remove core memory tags, keeping their content."""
    if not raw:
        return ""
    return _CLOSE_TAG.sub("", _OPEN_TAG.sub("", raw)).strip()
