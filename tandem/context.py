"""When to compact the conversation, and how."""

import logging
import re
from pathlib import Path

from .conversation import USER, Turn
from .errors import EmptySummaryError

logger = logging.getLogger(__name__)

SUMMARY_THRESHOLD = 0.8
SUMMARY_TEMPERATURE = 0.2
PRESERVED_TURNS = 2
SUMMARY_NUDGE = (
    "Please summarize our conversation so far following the instructions "
    "in the system prompt."
)
DEFAULT_SUMMARY_PROMPT_FILE = Path(__file__).parent / "summary_prompt.txt"

_TAG_RE = re.compile(r"<summary>(.*?)</summary>", re.DOTALL)
_BANNER_RE = re.compile(r"CONVERSATION SUMMARY:(.*?)END OF SUMMARY", re.DOTALL)


def should_summarize(session) -> bool:
    """True once window input usage is strictly above 80% of the window."""
    if session.context_window <= 0:
        return False
    return session.input_tokens > int(session.context_window * SUMMARY_THRESHOLD)


def extract_summary(raw: str) -> str:
    """Pull the summary out of the model's reply.

    Recognizes ``<summary>...</summary>`` and
    ``CONVERSATION SUMMARY: ... END OF SUMMARY``; anything else is used as is,
    trimmed.
    """
    for pattern in (_TAG_RE, _BANNER_RE):
        m = pattern.search(raw)
        if m:
            return m.group(1).strip()
    return raw.strip()


def load_summary_prompt() -> str:
    return DEFAULT_SUMMARY_PROMPT_FILE.read_text(encoding="utf-8")


def summarize(provider) -> bool:
    """Replace the conversation body with a model-written summary.

    Keeps the system turn and the last two turns verbatim, then zeroes the
    session's window counters. Returns False without touching anything when
    there is nothing to compact. Raises EmptySummaryError when the model
    returns no usable text, and lets provider errors propagate.
    """
    conv = provider.conversation
    if len(conv) <= PRESERVED_TURNS:
        return False

    preserved = conv.preserved_tail(PRESERVED_TURNS)
    # Everything is sent, the preserved tail included, so the summary can
    # refer to it.
    turns = conv.body + [Turn(USER, SUMMARY_NUDGE)]
    system = provider.summary_prompt or load_summary_prompt()

    before = len(conv)
    raw = provider.complete(turns, system=system, temperature=SUMMARY_TEMPERATURE)
    summary = extract_summary(raw or "")
    if not summary:
        raise EmptySummaryError("summarization returned an empty summary")

    conv.replace_body(summary, preserved)
    provider.session.reset_window()
    logger.info(
        "Summarized conversation: %d turns -> %d turns (%d chars of summary)",
        before,
        len(conv),
        len(summary),
    )
    return True
