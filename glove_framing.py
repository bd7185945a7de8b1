import codecs
import logging
logger = logging.getLogger(__name__)


class LineFramer:
    """
    Splits a chunked byte/text stream into newline-terminated messages.

    Chunks are appended to a pending tail; every complete line (terminated by
    "\\n", with an optional preceding "\\r") is stripped and returned, blank
    lines are dropped as keep-alive noise, and whatever follows the last
    terminator stays pending until more data arrives. A tail that never sees
    its terminator is never emitted.

    There is no upper bound on the pending tail: a device that streams
    without ever sending "\\n" grows it without limit. This is an accepted
    risk of the line protocol, not something the framer guards against.
    """

    def __init__(self, encoding="utf-8"):
        self._encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self):
        return self._pending

    def feed(self, chunk):
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        if not chunk:
            return []
        self._pending += chunk
        if "\n" not in chunk:
            return []
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        out = []
        for part in parts:
            line = part.strip()
            if line:
                out.append(line)
        return out

    def reset(self):
        # Drops the unterminated tail (and any half-decoded character)
        if self._pending:
            logger.debug("LineFramer.reset: dropping %d pending chars", len(self._pending))
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
