"""
Sentence chunking for streamed LLM output.

Tokens are appended to a buffer; whenever the buffer contains sentence-ending
punctuation followed by whitespace, everything up to and including the
punctuation is emitted as one chunk. Whatever is left when the stream ends is
flushed as the final chunk.

"$42.00." is never split because the inner period is not followed by
whitespace.
"""

import re
from typing import List, Optional

SENTENCE_BOUNDARY = re.compile(r"([.!?]+)\s+")


class SentenceChunker:
    """Incremental sentence splitter. One instance per assistant turn."""

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def push(self, token: str) -> List[str]:
        """Append a token and return any sentences it completed, in order."""
        if not token:
            return []

        self._buffer += token
        chunks: List[str] = []

        while True:
            match = SENTENCE_BOUNDARY.search(self._buffer)
            if not match:
                break
            sentence = self._buffer[:match.end(1)].strip()
            self._buffer = self._buffer[match.end():]
            if sentence:
                chunks.append(sentence)

        return chunks

    def finish(self) -> Optional[str]:
        """Flush the remainder at end of stream, if any."""
        remainder = self._buffer.strip()
        self._buffer = ""
        return remainder or None

    def reset(self) -> None:
        self._buffer = ""
