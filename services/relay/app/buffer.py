"""
Bounded line buffer for upstream bytes.

ChunkBuffer accumulates decoded text and hands out complete lines. Appends
are O(1) (fragments are kept in a list and only joined when lines are
resolved). Two ceilings bound memory:

- soft ceiling: once pending text grows past it, complete lines are split
  off immediately into the ready queue instead of waiting for the next
  drain, so the pending region shrinks back to the trailing partial line.
- hard ceiling: if the pending text holds no newline at all and grows past
  it, only the trailing soft-ceiling window is kept. The discarded prefix
  is counted and logged.
"""

import codecs
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BufferPolicy:
    soft_ceiling: int
    hard_ceiling: int

    def __post_init__(self):
        if self.soft_ceiling <= 0:
            raise ValueError("soft_ceiling must be positive")
        if self.hard_ceiling < self.soft_ceiling:
            raise ValueError("hard_ceiling must be >= soft_ceiling")


DEFAULT_POLICY = BufferPolicy(soft_ceiling=1024 * 1024, hard_ceiling=2 * 1024 * 1024)


@dataclass
class BufferStats:
    appended_chars: int = 0
    lines_resolved: int = 0
    forced_drains: int = 0
    truncations: int = 0
    discarded_chars: int = 0


class ChunkBuffer:
    def __init__(self, policy: Optional[BufferPolicy] = None, encoding: str = "utf-8"):
        self.policy = policy or DEFAULT_POLICY
        self.stats = BufferStats()
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._parts: List[str] = []
        self._pending_size = 0
        self._pending_has_newline = False
        self._ready: Deque[str] = deque()

    @property
    def pending_size(self) -> int:
        """Characters not yet resolved into complete lines."""
        return self._pending_size

    @property
    def buffered_size(self) -> int:
        """Pending characters plus resolved lines not yet drained."""
        return self._pending_size + sum(len(line) for line in self._ready)

    def append(self, data) -> str:
        """
        Append raw bytes (decoded incrementally) or already-decoded text.
        Returns the text that was added, which may be empty while a
        multi-byte character is still incomplete.
        """
        if isinstance(data, (bytes, bytearray, memoryview)):
            text = self._decoder.decode(bytes(data))
        else:
            text = data
        if not text:
            return ""

        self._parts.append(text)
        self._pending_size += len(text)
        self.stats.appended_chars += len(text)
        if "\n" in text:
            self._pending_has_newline = True

        if self._pending_size > self.policy.soft_ceiling:
            if self._pending_has_newline:
                self.stats.forced_drains += 1
                logger.info(
                    f"Buffer over soft ceiling ({self._pending_size} > {self.policy.soft_ceiling} chars), "
                    f"draining complete lines early"
                )
                self._resolve_lines()
            if self._pending_size > self.policy.hard_ceiling:
                self._truncate()
        return text

    def drain_complete_lines(self) -> List[str]:
        """Return every complete line (without its terminator) in arrival order."""
        if self._pending_has_newline:
            self._resolve_lines()
        lines = list(self._ready)
        self._ready.clear()
        return lines

    def flush_remainder(self) -> str:
        """
        Return the trailing partial line at end of stream and reset.

        Complete lines still queued must be drained first; they are not
        folded into the remainder.
        """
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._parts.append(tail)
            self._pending_size += len(tail)
            self.stats.appended_chars += len(tail)
        remainder = "".join(self._parts)
        self._parts = []
        self._pending_size = 0
        self._pending_has_newline = False
        if remainder.endswith("\r"):
            remainder = remainder[:-1]
        return remainder

    def _resolve_lines(self) -> None:
        text = "".join(self._parts)
        head, sep, partial = text.rpartition("\n")
        if not sep:
            self._parts = [text] if text else []
            self._pending_has_newline = False
            return
        for line in head.split("\n"):
            if line.endswith("\r"):
                line = line[:-1]
            self._ready.append(line)
            self.stats.lines_resolved += 1
        self._parts = [partial] if partial else []
        self._pending_size = len(partial)
        self._pending_has_newline = False

    def _truncate(self) -> None:
        text = "".join(self._parts)
        keep = self.policy.soft_ceiling
        discarded = len(text) - keep
        self._parts = [text[-keep:]]
        self._pending_size = keep
        self.stats.truncations += 1
        self.stats.discarded_chars += discarded
        logger.warning(
            f"Buffer exceeded hard ceiling ({len(text)} > {self.policy.hard_ceiling} chars) with no line break; "
            f"discarded {discarded} oldest chars, kept trailing {keep}"
        )
