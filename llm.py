# llm.py
import logging
from typing import Dict, List, Optional, Sequence

from anthropic import AsyncAnthropic, APIConnectionError, APIError

from components import LanguageBackend
from config import Settings
from errors import BackendResponseError, TransportError
from supabase_client import SupabaseClient, extract_field

logger = logging.getLogger("LLM")


class ProxyLLM(LanguageBackend):
    """Language generation through the ``llm-proxy`` edge function."""

    def __init__(self, client: SupabaseClient, model: str = "",
                 response_keys: Sequence[str] = ("responseText",)):
        self.client = client
        self.model = model
        self.response_keys = tuple(response_keys)

    async def generate(self, prompt: str) -> str:
        body = {"prompt": prompt}
        if self.model:
            body["model"] = self.model
        logger.info("Sending prompt to llm-proxy (%d chars)", len(prompt))
        data = await self.client.invoke("llm-proxy", body, label="LLM Proxy")
        text = extract_field(data, self.response_keys)
        if not text:
            raise BackendResponseError(
                "Did not receive standardized LLM response from proxy. "
                f"Accepted keys: {', '.join(self.response_keys)}."
            )
        return text


class AnthropicLLM(LanguageBackend):
    def __init__(self, api_key: str, model: str = "claude-sonnet-4-20250514",
                 client: Optional[AsyncAnthropic] = None):
        """
        :param api_key: Anthropic API key
        :param model: Anthropic model name
        """
        self.model = model
        self.client = client or AsyncAnthropic(api_key=api_key)

        # message history, kept to the last 10 exchanges
        self.message_history: List[Dict[str, str]] = []
        self.system_prompt = "You are a helpful AI assistant in a voice conversation. Keep your responses natural and conversational, as if speaking aloud. Avoid using markdown formatting or complex punctuation."

        logger.info("Initialized with model: %s", model)

    async def generate(self, prompt: str) -> str:
        messages = self.message_history + [{"role": "user", "content": prompt}]
        logger.info("Sending to Anthropic: '%s'", prompt[:80])

        assistant_response = ""
        try:
            async with self.client.messages.stream(
                model=self.model,
                max_tokens=1024,
                system=self.system_prompt,
                messages=messages
            ) as stream:
                async for text in stream.text_stream:
                    assistant_response += text
        except APIConnectionError as e:
            raise TransportError(f"LLM connection error: {e}") from e
        except APIError as e:
            raise BackendResponseError(f"LLM API error: {e}") from e

        assistant_response = assistant_response.strip()
        if not assistant_response:
            raise BackendResponseError("Anthropic returned an empty response.")

        self.message_history = (messages + [{"role": "assistant", "content": assistant_response}])[-20:]
        logger.info("Assistant response completed: '%s...'", assistant_response[:100])
        return assistant_response

    def clear_history(self):
        self.message_history.clear()

    async def close(self):
        await self.client.close()


def build_language_backend(settings: Settings, supabase: Optional[SupabaseClient]) -> LanguageBackend:
    if settings.llm_provider == "anthropic":
        return AnthropicLLM(settings.anthropic_api_key, model=settings.llm_model or "claude-sonnet-4-20250514")
    return ProxyLLM(supabase, model=settings.llm_model, response_keys=settings.llm_response_keys)
