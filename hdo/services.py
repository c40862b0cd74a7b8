"""Service collaborators used by nodes: text generation and image generation.

Nodes only see the ``TextService`` / ``ImageService`` protocols through
``NodeContext``; tests substitute scripted fakes.
"""

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_google_genai import ChatGoogleGenerativeAI

from hdo.utils.parsing import ainvoke_with_retry

logger = logging.getLogger(__name__)


@dataclass
class ChatResponse:
    content: str


@dataclass
class ImageResponse:
    url: str


class TextService(Protocol):
    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        project_id: str,
        model: str | None = None,
    ) -> ChatResponse: ...


class ImageService(Protocol):
    async def generate_image(self, prompt: str) -> ImageResponse: ...


def _content_text(content) -> str:
    """Flatten LangChain message content (str or list of parts) into text."""
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LangChainTextService:
    """Text service backed by LangChain chat models.

    Model names starting with ``gemini`` go to Google GenAI, everything else
    to Anthropic. API keys come from the environment (.env).
    """

    def __init__(self, default_model: str, max_retries: int = 3):
        self.default_model = default_model
        self.max_retries = max_retries

    def _build_llm(self, model: str, temperature: float, max_tokens: int):
        if model.startswith("gemini"):
            return ChatGoogleGenerativeAI(
                model=model, temperature=temperature, max_output_tokens=max_tokens
            )
        return ChatAnthropic(model=model, temperature=temperature, max_tokens=max_tokens)

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        project_id: str,
        model: str | None = None,
    ) -> ChatResponse:
        model_name = model or self.default_model
        llm = self._build_llm(model_name, temperature, max_tokens)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        logger.debug("[Services] chat model=%s project=%s", model_name, project_id)
        response = await ainvoke_with_retry(llm, messages, max_retries=self.max_retries)
        return ChatResponse(content=_content_text(response.content))


@dataclass
class HttpImageService:
    """Image service that posts prompts to an HTTP endpoint returning ``{"imageUrl": ...}``."""

    endpoint: str
    timeout_s: float = 60.0
    headers: dict = field(default_factory=dict)

    async def generate_image(self, prompt: str) -> ImageResponse:
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            response = await client.post(self.endpoint, json={"prompt": prompt}, headers=self.headers)
            response.raise_for_status()
            data = response.json()
        url = data.get("imageUrl")
        if not url:
            raise ValueError("Image service response missing 'imageUrl'")
        return ImageResponse(url=url)


def build_services(config: dict) -> tuple[LangChainTextService, HttpImageService | None]:
    """Construct the default text and image services from config.

    The image service is None when no ``image_endpoint`` is configured.
    """
    text = LangChainTextService(
        default_model=config["generator_model"],
        max_retries=config.get("llm_max_retries", 3),
    )
    image = None
    if config.get("image_endpoint"):
        image = HttpImageService(
            endpoint=config["image_endpoint"],
            timeout_s=config.get("image_timeout_s", 60),
        )
    return text, image
