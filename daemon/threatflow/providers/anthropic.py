# threatflow/providers/anthropic.py
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from anthropic import APIError, APIStatusError, AsyncAnthropic

from threatflow.errors import UpstreamError
from threatflow.events import EventSink
from threatflow.models import AnalysisRequest, ProviderConfig, VisionRequest, VisionResult
from threatflow.prompt import PromptManager
from threatflow.providers import register
from threatflow.providers.base import TEMPERATURE, Provider

import structlog
logger = structlog.get_logger(__name__)

STREAM_MAX_TOKENS = 16000
VISION_MAX_TOKENS = 4000


class AnthropicProvider(Provider):
    id = "anthropic"
    display_name = "Anthropic"
    SUPPORTED_MODELS = [
        "claude-sonnet-4-5-20250929",
        "claude-3-5-sonnet-20241022",
        "claude-opus-4-20250514",
        "claude-3-opus-20240229",
    ]
    DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

    def __init__(self, config: ProviderConfig, client: Optional[AsyncAnthropic] = None):
        super().__init__(config)
        # Claude's graph schema titles nodes with data.label
        self.prompt = PromptManager(label_field="label")
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
        async with AsyncAnthropic(**kwargs) as client:
            yield client

    def _upstream_error(self, e: APIStatusError) -> UpstreamError:
        body = e.response.text if e.response is not None else e.message
        logger.error(
            "Anthropic API error encountered",
            status_code=e.status_code,
            response=body,
            model=self.model,
        )
        return UpstreamError(f"Claude API error: {body}", status_code=e.status_code)

    # --- required interface --------------------------------------------
    def format_prompt(self, text: str, vision_analysis: Optional[str] = None,
                      system: Optional[str] = None) -> dict:
        """Messages API keeps the persona out of the message list."""
        return {
            "system": self.prompt.get_system_prompt(system),
            "messages": [
                {"role": "user", "content": self.prompt.make_attack_flow_prompt(text, vision_analysis)}
            ],
        }

    async def stream(self, request: AnalysisRequest, sink: EventSink) -> None:
        prompt = self.format_prompt(request.text, request.vision_analysis, request.system)
        await self.relay(sink, self._text_chunks(prompt))

    async def _text_chunks(self, prompt: dict) -> AsyncIterator[str]:
        try:
            async with self._session() as client:
                async with client.messages.stream(
                    model=self.model,
                    max_tokens=STREAM_MAX_TOKENS,
                    temperature=TEMPERATURE,
                    **prompt,
                ) as stream:
                    async for text_chunk in stream.text_stream:
                        yield text_chunk
        except APIStatusError as e:
            raise self._upstream_error(e) from e
        except APIError as e:
            raise UpstreamError(f"Claude API error: {e.message}") from e

    async def analyze_vision(self, request: VisionRequest) -> VisionResult:
        self.validate_images(request)
        vision_prompt = request.prompt or self.prompt.make_vision_prompt(
            request.article_text, len(request.images)
        )
        content = [{"type": "text", "text": vision_prompt}]
        for image in request.images:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.media_type,
                    "data": image.base64_data,
                },
            })

        try:
            async with self._session() as client:
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=VISION_MAX_TOKENS,
                    temperature=TEMPERATURE,
                    messages=[{"role": "user", "content": content}],
                )
        except APIStatusError as e:
            raise self._upstream_error(e) from e
        except APIError as e:
            raise UpstreamError(f"Claude API error: {e.message}") from e

        analysis_text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = response.usage
        tokens = (usage.input_tokens or 0) + (usage.output_tokens or 0) if usage else None
        logger.info("Vision analysis complete", model=self.model, images=len(request.images), tokens=tokens)
        return VisionResult(analysis_text=analysis_text, tokens_used=tokens)


# register on import
register(AnthropicProvider, aliases=("claude",))
