"""Thin async LLM client wrapping litellm."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import litellm
import openai

from ..config import LLMConfig

litellm.suppress_debug_info = True


class LLMError(Exception):
    """Completion failed or returned nothing usable."""


class LLMAuthError(LLMError):
    """Provider rejected our credentials; callers back off process-wide."""


class CompletionModel(Protocol):
    async def complete(self, messages: list[dict[str, Any]], *, temperature: float) -> str: ...


def json_messages(system: str, prompt: str) -> list[dict[str, Any]]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]


class LLMClient:
    def __init__(self, config: LLMConfig, *, api_key: str | None = None) -> None:
        self.config = config
        self.api_key = api_key

    async def complete(self, messages: list[dict[str, Any]], *, temperature: float) -> str:
        call_kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": temperature,
            "timeout": self.config.timeout_seconds,
            "num_retries": self.config.num_retries,
        }
        if self.config.api_base:
            call_kwargs["api_base"] = self.config.api_base
        if self.api_key:
            call_kwargs["api_key"] = self.api_key

        try:
            response = await asyncio.wait_for(
                litellm.acompletion(**call_kwargs),
                timeout=self.config.timeout_seconds * (self.config.num_retries + 1) + 5,
            )
        except litellm.AuthenticationError as exc:
            raise LLMAuthError(str(exc)[:260]) from exc
        except asyncio.TimeoutError as exc:
            raise LLMError(f"{self.config.model} timed out") from exc
        except openai.APIError as exc:
            # Common base of the litellm provider errors.
            raise LLMError(str(exc)[:260]) from exc

        content = response.choices[0].message.content or ""
        if not content.strip():
            raise LLMError(f"{self.config.model} returned empty content")
        return content.strip()
