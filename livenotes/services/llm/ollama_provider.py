from __future__ import annotations

import requests

from livenotes.services.llm.base import BaseLLMProvider, LLMProviderError

DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"


class OllamaProvider(BaseLLMProvider):
    """LLM provider for local Ollama models."""

    def __init__(self, base_url: str, model: str) -> None:
        super().__init__(logger_name="livenotes.llm.ollama")
        self._base_url = (base_url or DEFAULT_OLLAMA_URL).rstrip("/")
        self._model = model

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> str:
        """Make a call to the Ollama API and return the response text."""
        full_prompt = prompt
        if system_prompt:
            full_prompt = f"{system_prompt}\n\n{prompt}"

        options: dict = {"temperature": temperature}
        if max_tokens:
            options["num_predict"] = max_tokens
        request_body = {
            "model": self._model,
            "prompt": full_prompt,
            "stream": False,
            "options": options,
        }
        if json_mode:
            request_body["format"] = "json"

        try:
            response = requests.post(
                f"{self._base_url}/api/generate",
                json=request_body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError("Failed to reach Ollama") from exc

        if response.status_code != 200:
            raise LLMProviderError(f"Ollama error: {response.status_code}")

        data = response.json()
        return str(data.get("response", "") or "").strip()
