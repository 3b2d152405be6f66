"""Reasoning filter: removes hidden "thinking" output from a model stream.

Some upstream models wrap their chain of thought in ``<think>...</think>``
and occasionally open a visible reply with planning chatter ("Let me...",
"First, ..."). The filter runs in two passes over every delta:

1. Delimiter pass: a small state machine (buffer + inside-block flag)
   that drops everything between the markers. A marker split across two
   deltas is recognized because any buffer suffix that could still grow
   into the marker being searched for is held back until the next delta.
2. Line pass: a swappable LineScrubber decides whether a line of the
   visible text is reasoning lead-in. Providers stream word-sized deltas,
   so the start of a line is held back while the scrubber is undecided
   (returns None) and released once it decides, the line ends, or
   MAX_LINE_HOLD characters have accumulated. This pass is best-effort
   polish; the delimiter pass alone guarantees no hidden span reaches the
   client.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

log = structlog.get_logger(__name__)

OPEN_MARKER = "<think>"
CLOSE_MARKER = "</think>"

# Longest line start held back waiting for a scrubber verdict
MAX_LINE_HOLD = 64

# A scrubber receives the text of one line seen so far (including its
# trailing newline once it has arrived), starting at a line boundary.
# True drops the line, False keeps it, None asks for more text.
LineScrubber = Callable[[str], "bool | None"]

_LEAD_INS = (
    "let me",
    "let's",
    "lets ",
    "i need",
    "i should",
    "i will",
    "i am going to",
    "i think",
    "thinking",
    "step by step",
    "first,",
    "second,",
    "third,",
    "next,",
    "here's my plan",
    "i'll start by",
    "i will start by",
    "we should",
    "we need to",
)
_PREAMBLE = "okay"


def lead_in_scrubber(line: str) -> bool | None:
    """Default LineScrubber: drop lines that read like planning chatter."""
    complete = line.endswith(("\n", "\r"))
    text = line.lstrip().lower()
    if text.startswith(_PREAMBLE):
        text = text[len(_PREAMBLE):].lstrip(",").lstrip()
    elif not complete and _PREAMBLE.startswith(text):
        return None

    if text.startswith(_LEAD_INS):
        return True
    if not complete and any(phrase.startswith(text) for phrase in _LEAD_INS):
        return None
    return False


def _partial_marker_length(buffer: str, marker: str) -> int:
    """Length of the longest buffer suffix that is a proper prefix of marker."""
    for size in range(min(len(buffer), len(marker) - 1), 0, -1):
        if buffer.endswith(marker[:size]):
            return size
    return 0


class ReasoningFilter:
    """Stateful per-stream scrubber.

    Usage:
        reasoning = ReasoningFilter()
        for delta in deltas:
            visible = reasoning.feed(delta)
        visible_tail = reasoning.flush()

    One instance serves exactly one stream.
    """

    def __init__(self, scrubber: LineScrubber | None = lead_in_scrubber) -> None:
        self._scrubber = scrubber
        self._buffer = ""
        self._inside = False
        # Verdict for the current line; None until the scrubber has decided
        self._drop_line: bool | None = None
        self._line_head = ""
        self._hidden_chars = 0

    @property
    def inside_hidden_block(self) -> bool:
        return self._inside

    @property
    def hidden_chars(self) -> int:
        """Number of characters discarded by the delimiter pass so far."""
        return self._hidden_chars

    def feed(self, delta: str) -> str:
        """Consume one delta and return the text that is now safe to show."""
        self._buffer += delta
        emitted: list[str] = []

        while self._buffer:
            if self._inside:
                end = self._buffer.find(CLOSE_MARKER)
                if end == -1:
                    # Keep only what could be the start of the closing marker
                    keep = _partial_marker_length(self._buffer, CLOSE_MARKER)
                    self._hidden_chars += len(self._buffer) - keep
                    self._buffer = self._buffer[len(self._buffer) - keep:]
                    break
                self._hidden_chars += end
                self._buffer = self._buffer[end + len(CLOSE_MARKER):]
                self._inside = False
            else:
                start = self._buffer.find(OPEN_MARKER)
                if start == -1:
                    keep = _partial_marker_length(self._buffer, OPEN_MARKER)
                    emitted.append(self._buffer[: len(self._buffer) - keep])
                    self._buffer = self._buffer[len(self._buffer) - keep:]
                    break
                emitted.append(self._buffer[:start])
                self._buffer = self._buffer[start + len(OPEN_MARKER):]
                self._inside = True

        return self._scrub("".join(emitted))

    def flush(self) -> str:
        """Release held-back text at end of stream.

        A held-back fragment is shown only if it was outside a hidden block;
        an unterminated hidden block is dropped entirely. A line start still
        waiting for a scrubber verdict is decided now.
        """
        tail, self._buffer = self._buffer, ""
        if self._inside:
            self._hidden_chars += len(tail)
            if self._hidden_chars:
                log.debug("reasoning_filter.unterminated_block", hidden_chars=self._hidden_chars)
            tail = ""
        return self._scrub(tail, final=True)

    def _scrub(self, text: str, *, final: bool = False) -> str:
        if self._scrubber is None:
            return text
        text, self._line_head = self._line_head + text, ""
        if not text:
            return ""

        kept: list[str] = []
        for line in text.splitlines(keepends=True):
            ends_line = line.endswith(("\n", "\r"))
            if self._drop_line is None:
                verdict = self._scrubber(line)
                if verdict is None and not ends_line and not final and len(line) < MAX_LINE_HOLD:
                    # Only the last piece can lack a line ending
                    self._line_head = line
                    break
                self._drop_line = bool(verdict)
            if not self._drop_line:
                kept.append(line)
            if ends_line:
                self._drop_line = None

        return "".join(kept)


def strip_reasoning(text: str, scrubber: LineScrubber | None = lead_in_scrubber) -> str:
    """Scrub a complete (non-streamed) reply in one call."""
    reasoning = ReasoningFilter(scrubber)
    return reasoning.feed(text) + reasoning.flush()
