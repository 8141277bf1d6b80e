"""
Chat-completion clients for Stage A and Stage B.
OpenAI and Groq share the same chat.completions request shape.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from groq import Groq
from openai import OpenAI

from utils.config import PipelineConfig
from utils.exceptions import NetworkError
from utils.metrics import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    text: str
    model: str
    input_tokens: int
    output_tokens: int
    finish_reason: Optional[str] = None


class ChatClient:
    """Thin wrapper around an SDK client exposing chat.completions.create."""

    provider = "openai"

    def __init__(self, client, model: str):
        self.client = client
        self.model = model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.1,
        max_tokens: int = 4096,
        json_mode: bool = True,
        model: Optional[str] = None,
    ) -> LLMResponse:
        """
        Run one chat completion.

        Raises:
            NetworkError: for any SDK/transport failure, carrying HTTP status
                and Retry-After when the server provided them.
        """
        params = {
            "model": model or self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            params["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**params)
        except Exception as e:
            raise self._to_network_error(e) from e

        choice = response.choices[0]
        text = choice.message.content or ""
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", None) or estimate_tokens(system_prompt + user_prompt)
        output_tokens = getattr(usage, "completion_tokens", None) or estimate_tokens(text)

        if choice.finish_reason == "length":
            logger.warning(f"{self.provider} response truncated at max_tokens={max_tokens}")

        return LLMResponse(
            text=text,
            model=params["model"],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            finish_reason=choice.finish_reason,
        )

    def _to_network_error(self, e: Exception) -> NetworkError:
        status = getattr(e, "status_code", None)
        retry_after = None
        headers = getattr(getattr(e, "response", None), "headers", None)
        if headers is not None:
            value = headers.get("retry-after")
            if value:
                try:
                    retry_after = float(value)
                except ValueError:
                    retry_after = None
        return NetworkError(
            f"{self.provider} chat completion failed: {e}",
            provider=self.provider,
            http_status=status,
            retry_after=retry_after,
        )


class OpenAIChatClient(ChatClient):
    provider = "openai"

    def __init__(self, api_key: str, model: str):
        super().__init__(OpenAI(api_key=api_key), model)


class GroqChatClient(ChatClient):
    provider = "groq"

    def __init__(self, api_key: str, model: str):
        super().__init__(Groq(api_key=api_key), model)


def get_llm_client(config: PipelineConfig) -> ChatClient:
    """Select the chat backend once, from configuration."""
    if config.llm_provider == "groq":
        return GroqChatClient(config.require("groq_api_key", "GROQ_API_KEY"), config.llm_model)
    return OpenAIChatClient(config.require("openai_api_key", "OPENAI_API_KEY"), config.llm_model)
