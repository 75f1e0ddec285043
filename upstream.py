# upstream.py
"""
OpenRouter chat-completions client.

Two modes:
  - buffered: one round trip, text pulled from ``choices[0].message.content``.
  - streaming: the response body is a byte stream of ``data:`` frames ending in
    ``data: [DONE]``. ``StreamDecoder`` turns those bytes into gateway events and
    ``relay_stream`` pushes them into a queue for the HTTP response to drain.

Either way exactly one history record is written when the turn ends.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import orjson

from appconfig import OPENROUTER_URL, PROVIDER
from errors import UpstreamHTTPError, UpstreamTransportError
from memstore import MemoryStore
from schemas import ChatRequest, ImageData, Message

logger = logging.getLogger(__name__)

REFERER = "http://localhost"
APP_TITLE = "HaloDesk"

Persist = Callable[[str], Awaitable[None]]


def dig(obj: Any, *path: Any) -> Any:
    """Walk dict keys / list indexes; None as soon as a step is missing."""
    cur = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(cur, list) or not -len(cur) <= step < len(cur):
                return None
            cur = cur[step]
        else:
            if not isinstance(cur, dict) or step not in cur:
                return None
            cur = cur[step]
    return cur


def _image_content(text: str, image: ImageData) -> List[Dict[str, Any]]:
    url = f"data:{image.mime};base64,{image.base64}"
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": url}},
    ]


def to_wire_messages(messages: List[Message], image: Optional[ImageData] = None) -> List[Dict[str, Any]]:
    """Messages in OpenRouter form; the image rides on the last user turn only."""
    out: List[Dict[str, Any]] = [{"role": m.role, "content": m.content} for m in messages]
    if image is None:
        return out
    for i in range(len(out) - 1, -1, -1):
        if out[i]["role"] == "user":
            out[i]["content"] = _image_content(messages[i].content, image)
            return out
    out.append({"role": "user", "content": _image_content("", image)})
    return out


def _headers(key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {key}",
        "HTTP-Referer": REFERER,
        "X-Title": APP_TITLE,
    }


def _payload(req: ChatRequest, model: str, stream: bool) -> Dict[str, Any]:
    return {
        "model": model,
        "messages": to_wire_messages(req.messages, req.image),
        "stream": stream,
    }


# -------- Stream decoding --------

@dataclass
class SseEvent:
    event: str
    data: Dict[str, Any]

    def encode(self) -> bytes:
        return b"event: " + self.event.encode() + b"\ndata: " + orjson.dumps(self.data) + b"\n\n"


@dataclass
class StreamDecoder:
    """
    State for one upstream stream. ``feed`` takes raw bytes in whatever pieces
    the network delivers and returns the delta events completed so far.
    """

    model_id: str
    provider: str = PROVIDER
    buffer: bytes = b""
    text: str = ""
    finish_reason: str = "stop"
    finished: bool = False

    def meta_event(self) -> SseEvent:
        return SseEvent("meta", {"model": self.model_id, "provider": self.provider})

    def done_event(self, error: Optional[str] = None) -> SseEvent:
        if error is not None:
            return SseEvent("done", {"finish_reason": "error", "error": error})
        return SseEvent("done", {"finish_reason": self.finish_reason})

    def feed(self, chunk: bytes) -> List[SseEvent]:
        if self.finished:
            return []
        self.buffer = (self.buffer + chunk).replace(b"\r\n", b"\n")
        events: List[SseEvent] = []
        while not self.finished:
            idx = self.buffer.find(b"\n\n")
            if idx == -1:
                break
            frame = self.buffer[:idx]
            self.buffer = self.buffer[idx + 2:]
            events.extend(self._decode_frame(frame))
        return events

    def _decode_frame(self, frame: bytes) -> List[SseEvent]:
        events: List[SseEvent] = []
        for line in frame.decode("utf-8", "replace").split("\n"):
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if data == "[DONE]":
                self.finished = True
                self.buffer = b""
                break
            try:
                obj = orjson.loads(data)
            except orjson.JSONDecodeError:
                logger.debug("Skipping malformed upstream frame: %.120r", data)
                continue
            reason = dig(obj, "choices", 0, "finish_reason")
            if isinstance(reason, str) and reason:
                self.finish_reason = reason
            delta = dig(obj, "choices", 0, "delta", "content")
            if isinstance(delta, str) and delta:
                self.text += delta
                events.append(SseEvent("delta", {"text": delta}))
        return events


# -------- Upstream calls --------

def history_persister(store: MemoryStore, req: ChatRequest, model_id: str) -> Persist:
    """Callback that writes the turn to history; storage failures are logged, not raised."""
    messages = [m.model_dump() for m in req.messages]

    async def _persist(text: str) -> None:
        try:
            await store.store_history_from_turn(messages, text, model_id, PROVIDER)
        except Exception:
            logger.exception("Failed to store history for model %s", model_id)

    return _persist


async def open_stream(client: httpx.AsyncClient, req: ChatRequest, model: str, key: str) -> httpx.Response:
    """Send the streaming request; return the open response once the status is known good."""
    request = client.build_request(
        "POST",
        OPENROUTER_URL,
        headers=_headers(key),
        json=_payload(req, model, stream=True),
        timeout=None,
    )
    try:
        resp = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        raise UpstreamTransportError(str(e) or type(e).__name__) from e
    if not resp.is_success:
        try:
            raw = await resp.aread()
        except httpx.HTTPError:
            raw = b""
        finally:
            await resp.aclose()
        text = raw.decode("utf-8", "replace").strip() or "OpenRouter request failed."
        logger.warning("OpenRouter stream rejected: HTTP %d", resp.status_code)
        raise UpstreamHTTPError(resp.status_code, text)
    return resp


async def relay_stream(
    resp: httpx.Response,
    decoder: StreamDecoder,
    persist: Persist,
    queue: "asyncio.Queue[Optional[SseEvent]]",
) -> None:
    """
    Pump upstream bytes through the decoder into ``queue``.
    Order on the queue: meta, deltas, one done, then None. History is written
    right before done, whether the stream hit [DONE], ran out, or broke.
    """
    await queue.put(decoder.meta_event())
    error: Optional[str] = None
    try:
        async for chunk in resp.aiter_bytes():
            if not chunk:
                continue
            for evt in decoder.feed(chunk):
                await queue.put(evt)
            if decoder.finished:
                break
    except Exception as e:
        error = str(e) or type(e).__name__
        logger.warning("OpenRouter stream broke after %d chars: %s", len(decoder.text), error)
    finally:
        await resp.aclose()

    await persist(decoder.text)
    await queue.put(decoder.done_event(error))
    await queue.put(None)


async def complete(
    client: httpx.AsyncClient,
    store: MemoryStore,
    req: ChatRequest,
    model_id: str,
    model: str,
    key: str,
) -> Dict[str, Any]:
    """Buffered completion; the history write happens before returning."""
    try:
        resp = await client.post(
            OPENROUTER_URL,
            headers=_headers(key),
            json=_payload(req, model, stream=False),
            timeout=None,
        )
    except httpx.HTTPError as e:
        raise UpstreamTransportError(str(e) or type(e).__name__) from e
    if not resp.is_success:
        logger.warning("OpenRouter completion rejected: HTTP %d", resp.status_code)
        raise UpstreamHTTPError(resp.status_code, resp.text.strip() or "OpenRouter request failed.")
    try:
        body = orjson.loads(resp.content)
    except orjson.JSONDecodeError as e:
        raise UpstreamTransportError(f"Invalid JSON from OpenRouter: {e}") from e

    content = dig(body, "choices", 0, "message", "content")
    text = content if isinstance(content, str) else ""

    await store.store_history_from_turn([m.model_dump() for m in req.messages], text, model_id, PROVIDER)
    return {"text": text, "model": model_id, "provider": PROVIDER}
