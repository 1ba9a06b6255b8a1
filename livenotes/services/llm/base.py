from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod


class LLMProviderError(RuntimeError):
    pass


class LLMProvider(ABC):
    @abstractmethod
    def improve_chunk(self, text: str, context: str, title: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def improve_note(self, note: str, chunk_line: str, title: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def analyze(self, transcript: str, notes: str = "") -> dict:
        raise NotImplementedError

    @abstractmethod
    def summarize(self, transcript: str, instructions: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def generate_title(self, transcript: str) -> str:
        raise NotImplementedError


class BaseLLMProvider(LLMProvider):
    """Base implementation with shared prompts, JSON parsing, and response handling.

    Subclasses only need to implement _call_api() for their specific API client.
    """

    PROMPTS = {
        "improve_chunk_system": (
            "You clean up live meeting transcription. Fix obvious transcription "
            "errors and punctuation, keep the speaker's meaning and wording where "
            "possible. Return only the corrected text."
        ),
        "improve_chunk": (
            "Meeting title: {title}\n\n"
            "Preceding transcript:\n{context}\n\n"
            "Text to correct:\n{text}"
        ),
        "improve_note_system": (
            "you are me, improving my meeting notes. "
            "return a single, concise sentence in lowercase. "
            "use the transcription chunk for accuracy. "
            "focus on the key point or action item. "
            "preserve any markdown formatting. "
            "be brief and direct."
        ),
        "improve_note": (
            "improve this note considering the context:\n\n"
            "meeting title: {title}\n\n"
            "transcription context:\n{chunk_line}\n\n"
            "note to improve:\n{note}"
        ),
        "analyze": (
            "Analyze the meeting below. Return JSON with keys facts, events, flow, "
            "decisions and summary; each value is an array of short strings.\n\n"
            "Notes:\n{notes}\n\n"
            "Transcript:\n{transcript}"
        ),
        "analyze_system": (
            "You are a JSON-only assistant. Return only a valid JSON object, no markdown formatting."
        ),
        "summarize": "{instructions}\n\nTranscript:\n{transcript}",
        "summarize_default": "please provide a concise summary of the following meeting transcript",
        "generate_title": (
            "Create a concise meeting title (max 8 words).\n"
            "Return plain text only, no quotes.\n\n"
            "Transcript:\n{transcript}"
        ),
    }

    def __init__(self, logger_name: str = "livenotes.llm") -> None:
        self._logger = logging.getLogger(logger_name)

    @abstractmethod
    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> str:
        """Make an API call and return the raw response text.

        Args:
            prompt: The user prompt to send
            temperature: Sampling temperature (0.0-1.0)
            timeout: Request timeout in seconds
            system_prompt: Optional system prompt
            json_mode: Request JSON-formatted response if supported
            max_tokens: Optional cap on generated tokens

        Returns:
            The response text content
        """
        raise NotImplementedError

    @staticmethod
    def _strip_markdown_code_blocks(text: str) -> str:
        """Remove markdown code block wrappers from text."""
        text = text.strip()
        if not text.startswith("```"):
            return text
        lines = [line for line in text.split("\n") if not line.startswith("```")]
        return "\n".join(lines).strip()

    @staticmethod
    def _require_text(content: str, what: str) -> str:
        text = (content or "").strip()
        if not text:
            raise LLMProviderError(f"Empty response for {what}")
        return text

    def improve_chunk(self, text: str, context: str, title: str | None = None) -> str:
        prompt = self.PROMPTS["improve_chunk"].format(
            title=title or "unknown",
            context=context or "(none)",
            text=text,
        )
        content = self._call_api(
            prompt,
            temperature=0.1,
            timeout=60,
            system_prompt=self.PROMPTS["improve_chunk_system"],
        )
        return self._require_text(content, "chunk improvement")

    def improve_note(self, note: str, chunk_line: str, title: str | None = None) -> str:
        prompt = self.PROMPTS["improve_note"].format(
            title=title or "unknown",
            chunk_line=chunk_line or "(none)",
            note=note,
        )
        content = self._call_api(
            prompt,
            temperature=0.3,
            timeout=60,
            system_prompt=self.PROMPTS["improve_note_system"],
            max_tokens=max(16, len(note) * 2),
        )
        return self._require_text(content, "note improvement")

    def analyze(self, transcript: str, notes: str = "") -> dict:
        prompt = self.PROMPTS["analyze"].format(transcript=transcript, notes=notes or "(none)")
        content = self._call_api(
            prompt,
            temperature=0.2,
            timeout=120,
            system_prompt=self.PROMPTS["analyze_system"],
            json_mode=True,
        )
        text = self._strip_markdown_code_blocks(content)
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            self._logger.warning("Non-JSON analysis response: %s", text[:500])
            raise LLMProviderError(f"Non-JSON for analysis: {text[:200]}") from exc
        if not isinstance(parsed, dict):
            raise LLMProviderError(f"Expected JSON object for analysis, got {type(parsed).__name__}")
        return parsed

    def summarize(self, transcript: str, instructions: str | None = None) -> str:
        prompt = self.PROMPTS["summarize"].format(
            instructions=instructions or self.PROMPTS["summarize_default"],
            transcript=transcript,
        )
        content = self._call_api(prompt, temperature=0.2, timeout=120)
        return self._require_text(content, "summary")

    def generate_title(self, transcript: str) -> str:
        prompt = self.PROMPTS["generate_title"].format(transcript=transcript)
        content = self._call_api(prompt, temperature=0.2, timeout=60)
        return self._require_text(content, "title").strip('"')
