from __future__ import annotations

import logging
import os
from typing import Any

from docjob.config.load_config import env_bool


logger = logging.getLogger(__name__)


class LLMConfigError(RuntimeError):
    pass


class OpenAICompatibleTextTransform:
    """Text transform backed by any OpenAI-compatible chat completions endpoint.

    Kept small:
    - providers/models are swapped through OpenAI-compatible gateways (env vars)
    - one request per fragment; retries are the caller's business
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.2,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.temperature = float(temperature)
        self.timeout_s = timeout_s
        # Only sent when explicitly enabled; other providers may reject the field.
        self.enable_thinking = env_bool("DOCJOB_LLM_ENABLE_THINKING", False)

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        try:
            from openai import AsyncOpenAI  # type: ignore
        except Exception as e:
            raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e

        self._client = AsyncOpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    async def __call__(self, text: str, instructions: str) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": instructions},
                {"role": "user", "content": text},
            ],
            "temperature": self.temperature,
        }
        if self.enable_thinking:
            payload["extra_body"] = {"enable_thinking": True}

        resp = await self._client.chat.completions.create(**payload)
        content = resp.choices[0].message.content or ""
        if not content.strip():
            raise RuntimeError("Text transform returned an empty completion.")
        logger.debug("transform call: model=%s in_chars=%d out_chars=%d", self.model, len(text), len(content))
        return content
