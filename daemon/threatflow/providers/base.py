"""Capability contract shared by every analysis backend."""
import asyncio
from abc import ABC
from contextlib import aclosing
from typing import Any, AsyncIterator, List, Optional

import structlog

from threatflow.errors import CapabilityNotImplemented, InvalidInput
from threatflow.events import ContentDelta, DoneEvent, ErrorEvent, EventSink
from threatflow.models import AnalysisRequest, ProviderConfig, VisionRequest, VisionResult

logger = structlog.get_logger(__name__)

TEMPERATURE = 0.1


class Provider(ABC):
    """One upstream LLM backend.

    Subclasses override the capabilities they support; anything left as the
    base stub raises :class:`CapabilityNotImplemented` naming the backend the
    first time it is used.
    """
    id: str = "unknown"
    display_name: str = "unknown"
    SUPPORTED_MODELS: List[str] = []
    DEFAULT_MODEL: str = ""

    def __init__(self, config: ProviderConfig):
        self.config = config

    # --- required interface --------------------------------------------
    async def stream(self, request: AnalysisRequest, sink: EventSink) -> None:
        raise CapabilityNotImplemented("stream", self.get_name())

    async def analyze_vision(self, request: VisionRequest) -> VisionResult:
        raise CapabilityNotImplemented("analyze_vision", self.get_name())

    def format_prompt(self, text: str, vision_analysis: Optional[str] = None,
                      system: Optional[str] = None) -> Any:
        raise CapabilityNotImplemented("format_prompt", self.get_name())

    def is_configured(self) -> bool:
        return bool(self.config.api_key) and bool(self.config.model)

    def get_name(self) -> str:
        return self.display_name

    @property
    def model(self) -> str:
        return self.config.model

    # --- shared helpers -------------------------------------------------
    @staticmethod
    def validate_images(request: VisionRequest) -> None:
        if not request.images:
            raise InvalidInput("Missing or invalid images array")
        for index, image in enumerate(request.images):
            if not image.base64_data or not image.media_type:
                raise InvalidInput(f"Image {index} is missing base64Data or mediaType")

    async def relay(self, sink: EventSink, deltas: AsyncIterator[str]) -> None:
        """Drain ``deltas`` into ``sink`` and close with one terminal sequence.

        Any failure while iterating, including one raised before the first
        delta, ends the stream as ``error`` then ``done``; it is logged here
        and not re-raised.
        """
        try:
            async with aclosing(deltas):
                async for text in deltas:
                    if text:
                        await sink.send(ContentDelta(text=text))
        except asyncio.CancelledError:
            logger.info("Stream cancelled", provider=self.id, model=self.model)
            raise
        except Exception as e:
            logger.error(
                "Stream failed",
                provider=self.id,
                model=self.model,
                error=str(e),
                exc_info=True,
            )
            await sink.send(ErrorEvent(message=str(e) or type(e).__name__))
        await sink.send(DoneEvent())

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r}, configured={self.is_configured()})"
