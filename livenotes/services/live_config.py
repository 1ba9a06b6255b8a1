"""Live meeting settings read from ``config.json``.

The file is read on every call so edits take effect without a restart.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from livenotes.services.merge_policy import DEFAULT_SEGMENT_GAP_SECONDS

DEFAULT_TRANSCRIPTION_URL = "http://localhost:3030/sse/transcriptions"

_logger = logging.getLogger("livenotes.config")


@dataclass
class LiveMeetingSettings:
    segment_gap_seconds: float = DEFAULT_SEGMENT_GAP_SECONDS
    context_chunks: int = 3
    transcription_url: str = DEFAULT_TRANSCRIPTION_URL


def read_config(config_path: str | None) -> dict:
    """Read config from file, returning empty dict if missing or unreadable."""
    if not config_path or not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        _logger.warning("Failed to read config: %s error=%s", config_path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def load_live_settings(config_path: str | None) -> LiveMeetingSettings:
    settings = LiveMeetingSettings()
    section = read_config(config_path).get("live_meeting", {})
    if not isinstance(section, dict):
        return settings

    gap = section.get("segment_gap_seconds")
    if gap is not None:
        try:
            value = float(gap)
            if value <= 0:
                raise ValueError("must be positive")
            settings.segment_gap_seconds = value
        except (TypeError, ValueError) as exc:
            _logger.warning("Invalid segment_gap_seconds=%r (%s); using %s", gap, exc, settings.segment_gap_seconds)

    context_chunks = section.get("context_chunks")
    if context_chunks is not None:
        try:
            settings.context_chunks = max(0, int(context_chunks))
        except (TypeError, ValueError):
            _logger.warning("Invalid context_chunks=%r; using %s", context_chunks, settings.context_chunks)

    url = section.get("transcription_url")
    if isinstance(url, str) and url.strip():
        settings.transcription_url = url.strip()
    return settings
