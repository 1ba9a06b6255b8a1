from __future__ import annotations

import asyncio
import logging
from typing import Optional

from livenotes.services.live_config import read_config
from livenotes.services.llm import (
    LLMProvider,
    LLMProviderError,
    OllamaProvider,
    OpenAIProvider,
)
from livenotes.services.models import MeetingAnalysis


class AssistantService:
    """AI improvement and analysis using the user's selected model.

    Reads model selection from config.json on every call:
    - models.selected_model: format "provider:model_id" (e.g., "openai:gpt-4o")
    - providers.<provider>: contains api_key and base_url for each provider

    Provider calls block, so they run in a worker thread and never stall the
    event loop.
    """

    def __init__(self, config_path: Optional[str], provider: Optional[LLMProvider] = None) -> None:
        self._config_path = config_path
        self._provider = provider
        self._logger = logging.getLogger("livenotes.assistant")

    def _get_selected_model(self) -> tuple[str, str]:
        """Get the user's selected model from config.

        Returns:
            Tuple of (provider_name, model_id)

        Raises:
            LLMProviderError if no model is selected
        """
        config = read_config(self._config_path)
        selected = config.get("models", {}).get("selected_model", "")
        if not selected:
            raise LLMProviderError("No AI model selected. Set models.selected_model in config.json.")
        if ":" not in selected:
            raise LLMProviderError(
                f"Invalid model format '{selected}'. Expected 'provider:model_id'."
            )
        provider, model_id = selected.split(":", 1)
        return provider.lower(), model_id

    def _get_provider_config(self, provider_name: str) -> dict:
        providers = read_config(self._config_path).get("providers", {})
        return providers.get(provider_name, {}) or {}

    def _get_provider(self) -> LLMProvider:
        if self._provider is not None:
            return self._provider

        provider_name, model_id = self._get_selected_model()
        provider_config = self._get_provider_config(provider_name)
        api_key = provider_config.get("api_key", "")
        base_url = provider_config.get("base_url", "")

        if provider_name == "ollama":
            return OllamaProvider(base_url=base_url, model=model_id)

        if provider_name == "openai":
            if not api_key:
                raise LLMProviderError("Missing OpenAI API key. Set providers.openai.api_key in config.json.")
            return OpenAIProvider(api_key=api_key, model=model_id, base_url=base_url or None)

        if provider_name == "lmstudio":
            return OpenAIProvider(
                api_key=api_key or "lmstudio",
                model=model_id,
                base_url=base_url or "http://127.0.0.1:1234",
            )

        raise LLMProviderError(f"Unknown provider: {provider_name}")

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except LLMProviderError:
            raise
        except Exception as exc:
            # Anything else from a provider is still a provider failure to callers.
            raise LLMProviderError(f"{type(exc).__name__}: {exc}") from exc

    async def improve_chunk(self, text: str, context: str, title: Optional[str] = None) -> str:
        if not text.strip():
            raise LLMProviderError("Chunk text is empty")
        provider = self._get_provider()
        self._logger.info("Chunk improvement using provider=%s", provider.__class__.__name__)
        return await self._run(provider.improve_chunk, text, context, title)

    async def improve_note(self, note: str, chunk_line: str, title: Optional[str] = None) -> str:
        if not note.strip():
            raise LLMProviderError("Note text is empty")
        provider = self._get_provider()
        self._logger.info("Note improvement using provider=%s", provider.__class__.__name__)
        return await self._run(provider.improve_note, note, chunk_line, title)

    async def analyze(self, transcript: str, notes: str = "") -> MeetingAnalysis:
        if not transcript.strip() and not notes.strip():
            raise LLMProviderError("Transcript is empty")
        provider = self._get_provider()
        self._logger.info("Analysis using provider=%s", provider.__class__.__name__)
        parsed = await self._run(provider.analyze, transcript, notes)
        try:
            return MeetingAnalysis.from_dict(parsed)
        except ValueError as exc:
            raise LLMProviderError(f"Malformed analysis: {exc}") from exc

    async def summarize(self, transcript: str, instructions: Optional[str] = None) -> str:
        if not transcript.strip():
            raise LLMProviderError("Transcript is empty")
        provider = self._get_provider()
        self._logger.info("Summary using provider=%s", provider.__class__.__name__)
        return await self._run(provider.summarize, transcript, instructions)

    async def generate_title(self, transcript: str) -> str:
        if not transcript.strip():
            raise LLMProviderError("Transcript is empty")
        provider = self._get_provider()
        self._logger.info("Title generation using provider=%s", provider.__class__.__name__)
        return await self._run(provider.generate_title, transcript)
