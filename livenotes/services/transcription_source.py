"""Live transcription source.

The source is a lazy, possibly endless stream of raw chunk payloads read
over server-sent events. A dropped connection raises ``SourceDisconnected``;
the caller treats that as a pause in ingestion, not the end of the meeting.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional, Protocol

import httpx

from livenotes.services.errors import SourceDisconnected
from livenotes.services.models import TranscriptionChunk, parse_timestamp, utcnow

_logger = logging.getLogger("livenotes.transcription")


class TranscriptionSource(Protocol):
    def __aiter__(self) -> AsyncIterator[dict]:
        ...


def _speaker_label(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        for key in ("id", "name"):
            if value.get(key) not in (None, ""):
                return str(value[key])
        return None
    return str(value)


def normalize_chunk(payload: dict, next_id: int) -> TranscriptionChunk:
    """Build a chunk from a source payload.

    Accepts the shapes the transcription service emits (flat or wrapped in
    ``content``). ``next_id`` is used when the payload carries no id; a
    missing or unparseable timestamp becomes the current time.
    """
    content = payload.get("content") if isinstance(payload.get("content"), dict) else payload

    raw_id = content.get("id", payload.get("id"))
    try:
        chunk_id = int(raw_id) if raw_id is not None else next_id
    except (TypeError, ValueError):
        chunk_id = next_id

    try:
        timestamp = parse_timestamp(content.get("timestamp"))
    except ValueError:
        timestamp = utcnow()

    text = content.get("transcription")
    if text is None:
        text = content.get("text", "")

    device = content.get("deviceName") or content.get("device_name") or content.get("device")
    device_type = str(content.get("deviceType") or content.get("device_type") or "").lower()
    is_input = content.get("isInput", content.get("is_input"))
    if is_input is None:
        is_input = device_type == "input"

    return TranscriptionChunk(
        id=chunk_id,
        timestamp=timestamp,
        text=str(text or "").strip(),
        speaker=_speaker_label(content.get("speaker")),
        device_name=str(device) if device else None,
        is_input=bool(is_input),
    )


def parse_sse_line(line: str) -> Optional[dict]:
    """Return the JSON object carried by one ``data:`` line, if any."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data in ("[DONE]", "keep-alive", "ping"):
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        _logger.debug("Skipping non-JSON SSE data: %s", data[:200])
        return None
    return parsed if isinstance(parsed, dict) else None


class SSETranscriptionSource:
    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._url = url
        self._client = client
        self._timeout = timeout

    async def __aiter__(self) -> AsyncIterator[dict]:
        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            async with client.stream("GET", self._url) as response:
                if response.status_code != 200:
                    raise SourceDisconnected(
                        f"Transcription stream returned {response.status_code}"
                    )
                _logger.info("Transcription stream connected: %s", self._url)
                async for line in response.aiter_lines():
                    payload = parse_sse_line(line)
                    if payload is not None:
                        yield payload
        except httpx.HTTPError as exc:
            raise SourceDisconnected(f"Transcription stream failed: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()
