"""
Server-Sent-Events codec and client-side stream reassembly.

Wire format (both upstream pass-through and synthesized replies):

    data: {"choices":[{"delta":{"content":"<token(s)>"}}]}\\n\\n
    ...
    data: [DONE]\\n\\n
"""
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from cloud_protocol.models import AssembledMessage, ChatTurn, Role, StreamState

logger = logging.getLogger(__name__)


DATA_PREFIX = b"data: "
DONE_SENTINEL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"

EMPTY_RESPONSE_MESSAGE = "I apologize, but I couldn't generate a response. Please try again."
TRANSPORT_ERROR_MESSAGE = "Sorry, I encountered an error. Please try again."


# ── Encoding ──────────────────────────────────────────────────────────

def encode_frame(payload: Dict[str, Any]) -> bytes:
    return b"data: " + json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n\n"


def encode_delta(text: str) -> bytes:
    return encode_frame({"choices": [{"delta": {"content": text}}]})


def single_shot_stream(text: str) -> bytes:
    """A complete one-frame stream: the whole text as one delta, then DONE."""
    return encode_delta(text) + DONE_FRAME


def delta_content(frame: Any) -> Optional[str]:
    """choices[0].delta.content of a parsed frame, if present and a string."""
    if not isinstance(frame, dict):
        return None
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


# ── Reassembly ────────────────────────────────────────────────────────

class StreamReassembler:
    """
    Fold an SSE byte stream into one growing assistant message.

    Bytes are appended to a buffer and a cursor advances only past lines that
    have been fully consumed. A `data:` line whose JSON does not parse yet is
    kept under the cursor and retried when more bytes arrive; once another
    complete line has landed behind it (or the stream finishes) it can no
    longer grow, and it is dropped.

    States: IDLE → BUFFERING → DONE | ERRORED.
    """

    def __init__(self, on_update: Optional[Callable[[str], None]] = None):
        self.on_update = on_update
        self.state = StreamState.IDLE
        self._buffer = bytearray()
        self._cursor = 0
        self._pending_retry = False
        self._parts: List[str] = []
        self.frames_dropped = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def waiting_for_more(self) -> bool:
        """A partial `data:` line is held back until more bytes arrive."""
        return self._pending_retry

    @property
    def is_terminal(self) -> bool:
        return self.state in (StreamState.DONE, StreamState.ERRORED)

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one network chunk; returns the deltas it contributed."""
        if self.is_terminal:
            return []
        if self.state == StreamState.IDLE:
            self.state = StreamState.BUFFERING
        self._buffer.extend(chunk)
        deltas = self._drain()
        self._compact()
        return deltas

    def finish(self) -> AssembledMessage:
        """End of stream: flush a trailing unterminated line and settle."""
        if self.state == StreamState.ERRORED:
            return self.result()
        if self.state == StreamState.BUFFERING and self._cursor < len(self._buffer):
            if not self._buffer.endswith(b"\n"):
                self._buffer.extend(b"\n")
            self._drain(final=True)
        self.state = StreamState.DONE
        self._buffer.clear()
        self._cursor = 0
        return self.result()

    def fail(self, error: Optional[BaseException] = None) -> AssembledMessage:
        """Unrecoverable transport failure: partial text is discarded."""
        if error is not None:
            logger.error(f"[SSE] stream failed after {len(self.text)} chars: {error}")
        self.state = StreamState.ERRORED
        self._parts = []
        self._buffer.clear()
        self._cursor = 0
        return self.result()

    def result(self) -> AssembledMessage:
        if self.state == StreamState.ERRORED:
            return AssembledMessage(
                content=TRANSPORT_ERROR_MESSAGE,
                state=StreamState.ERRORED,
                substituted=True,
            )
        text = self.text
        if self.state == StreamState.DONE and not text:
            return AssembledMessage(
                content=EMPTY_RESPONSE_MESSAGE,
                state=StreamState.DONE,
                substituted=True,
            )
        return AssembledMessage(content=text, state=self.state)

    # ── internals ─────────────────────────────────────────────────────

    def _next_line(self) -> Optional[bytes]:
        newline = self._buffer.find(b"\n", self._cursor)
        if newline == -1:
            return None
        line = bytes(self._buffer[self._cursor:newline])
        if line.endswith(b"\r"):
            line = line[:-1]
        return line

    def _advance_line(self) -> None:
        self._cursor = self._buffer.find(b"\n", self._cursor) + 1

    def _has_line_after_cursor(self) -> bool:
        first = self._buffer.find(b"\n", self._cursor)
        return first != -1 and self._buffer.find(b"\n", first + 1) != -1

    def _drop_pending(self) -> None:
        line = self._next_line()
        logger.warning(f"[SSE] dropping malformed frame: {line[:80]!r}")
        self.frames_dropped += 1
        self._pending_retry = False
        self._advance_line()

    def _drain(self, final: bool = False) -> List[str]:
        deltas: List[str] = []
        while True:
            line = self._next_line()
            if line is None:
                break
            if not line.strip() or line.startswith(b":"):
                self._advance_line()
                continue
            if not line.startswith(DATA_PREFIX):
                self._advance_line()
                continue

            payload = line[len(DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL.encode():
                self._advance_line()
                self.state = StreamState.DONE
                break

            try:
                frame = json.loads(payload.decode("utf-8"))
            except ValueError:
                if final or self._has_line_after_cursor():
                    self._drop_pending()
                    continue
                # Wait for more bytes before giving up on this line
                self._pending_retry = True
                break

            self._pending_retry = False
            self._advance_line()
            content = delta_content(frame)
            if content:
                self._parts.append(content)
                deltas.append(content)
                if self.on_update is not None:
                    self.on_update(self.text)
        return deltas

    def _compact(self) -> None:
        if self._cursor:
            del self._buffer[:self._cursor]
            self._cursor = 0


def reassemble(chunks: Iterable[bytes], on_update: Optional[Callable[[str], None]] = None) -> AssembledMessage:
    reassembler = StreamReassembler(on_update=on_update)
    for chunk in chunks:
        reassembler.feed(chunk)
        if reassembler.is_terminal:
            break
    return reassembler.finish()


def upsert_assistant_turn(turns: List[ChatTurn], content: str) -> List[ChatTurn]:
    """Replace the assistant turn being built, or start a new one."""
    if turns and turns[-1].role == Role.ASSISTANT:
        turns[-1] = ChatTurn(role=Role.ASSISTANT, content=content)
    else:
        turns.append(ChatTurn(role=Role.ASSISTANT, content=content))
    return turns
