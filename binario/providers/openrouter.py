from __future__ import annotations

from typing import Any

from binario.providers.openai_compatible import OpenAICompatibleAdapter

DEFAULT_APP_TITLE = "Binario App"


class OpenRouterAdapter(OpenAICompatibleAdapter):
    """OpenRouter speaks the OpenAI format plus attribution headers."""

    name = "openrouter"

    def headers(self) -> dict[str, str]:
        headers = {"X-Title": DEFAULT_APP_TITLE}
        headers.update(super().headers())
        return headers

    def default_sampling(self) -> dict[str, Any]:
        return {"max_tokens": 1024, "temperature": 0.7}
