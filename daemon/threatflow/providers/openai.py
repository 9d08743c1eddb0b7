# threatflow/providers/openai.py
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from openai import APIError, APIStatusError, AsyncOpenAI

from threatflow.errors import UpstreamError
from threatflow.events import EventSink
from threatflow.models import AnalysisRequest, ProviderConfig, VisionRequest, VisionResult
from threatflow.prompt import PromptManager
from threatflow.providers import register
from threatflow.providers.base import TEMPERATURE, Provider

import structlog
logger = structlog.get_logger(__name__)

STREAM_MAX_TOKENS = 16384
VISION_MAX_TOKENS = 4000

# models that accept image_url parts; anything else is swapped for the fallback
VISION_MODELS = ["gpt-4o", "gpt-4o-2024-11-20", "gpt-4-turbo", "gpt-4-turbo-2024-04-09"]
VISION_FALLBACK_MODEL = "gpt-4o"


class OpenAIProvider(Provider):
    id = "openai"
    display_name = "OpenAI"
    SUPPORTED_MODELS = [
        # GPT-4o series (multimodal flagship)
        "gpt-4o",
        "gpt-4o-2024-11-20",
        "gpt-4o-mini",
        # o1 reasoning models
        "o1",
        "o1-preview",
        "o1-mini",
        # GPT-4 series
        "gpt-4-turbo",
        "gpt-4-turbo-2024-04-09",
        "gpt-4",
        "gpt-4-0125-preview",
    ]
    DEFAULT_MODEL = "gpt-4o"

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        super().__init__(config)
        self.prompt = PromptManager()
        self._client = client

    # --- util -----------------------------------------------------------
    @asynccontextmanager
    async def _session(self):
        """One SDK client per exchange, closed when the exchange ends.

        A client passed to the constructor belongs to the caller and is
        left open.
        """
        if self._client is not None:
            yield self._client
            return
        kwargs = {"api_key": self.config.api_key}
        if self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        async with AsyncOpenAI(**kwargs) as client:
            yield client

    def _upstream_error(self, e: APIError) -> UpstreamError:
        status_code = getattr(e, "status_code", None)
        logger.error(
            "OpenAI API error encountered",
            status_code=status_code,
            detail=e.message,
            response=e.response.text if isinstance(e, APIStatusError) and e.response is not None else "N/A",
            model=self.model,
        )
        return UpstreamError(f"OpenAI API error: {e.message}", status_code=status_code)

    def get_vision_model(self) -> str:
        return self.model if self.model in VISION_MODELS else VISION_FALLBACK_MODEL

    # --- required interface --------------------------------------------
    def format_prompt(self, text: str, vision_analysis: Optional[str] = None,
                      system: Optional[str] = None) -> list[dict]:
        return [
            {"role": "system", "content": self.prompt.get_system_prompt(system)},
            {"role": "user", "content": self.prompt.make_attack_flow_prompt(text, vision_analysis)},
        ]

    async def stream(self, request: AnalysisRequest, sink: EventSink) -> None:
        messages = self.format_prompt(request.text, request.vision_analysis, request.system)
        await self.relay(sink, self._text_chunks(messages))

    async def _text_chunks(self, messages: list[dict]) -> AsyncIterator[str]:
        async with self._session() as client:
            try:
                stream = await client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=TEMPERATURE,
                    max_tokens=STREAM_MAX_TOKENS,
                    stream=True,
                )
            except APIError as e:
                raise self._upstream_error(e) from e

            try:
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    if choice.delta is not None and choice.delta.content:
                        yield choice.delta.content
                    if choice.finish_reason == "stop":
                        break
            except APIError as e:
                raise self._upstream_error(e) from e
            finally:
                await stream.close()

    async def analyze_vision(self, request: VisionRequest) -> VisionResult:
        self.validate_images(request)
        vision_prompt = request.prompt or self.prompt.make_vision_prompt(
            request.article_text, len(request.images)
        )
        content = [{"type": "text", "text": vision_prompt}]
        for image in request.images:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{image.media_type};base64,{image.base64_data}"},
            })

        vision_model = self.get_vision_model()
        if vision_model != self.model:
            logger.info("Routing vision analysis to a vision-capable model", configured=self.model, used=vision_model)
        try:
            async with self._session() as client:
                response = await client.chat.completions.create(
                    model=vision_model,
                    messages=[{"role": "user", "content": content}],
                    max_tokens=VISION_MAX_TOKENS,
                    temperature=TEMPERATURE,
                )
        except APIError as e:
            raise self._upstream_error(e) from e

        analysis_text = ""
        if response.choices:
            analysis_text = response.choices[0].message.content or ""
        usage = response.usage
        tokens = (usage.prompt_tokens or 0) + (usage.completion_tokens or 0) if usage else None
        return VisionResult(analysis_text=analysis_text, tokens_used=tokens)


# register on import
register(OpenAIProvider, aliases=("gpt",))
