from __future__ import annotations

from binario.providers.openai_compatible import OpenAICompatibleAdapter


class LovableAdapter(OpenAICompatibleAdapter):
    """Lovable AI gateway: OpenAI-compatible, with 429/402 surfaced as rate-limit and credit errors."""

    name = "lovable"
    include_stream_usage = False
