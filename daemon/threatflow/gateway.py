import asyncio
from contextlib import aclosing
from typing import AsyncIterator, Optional

import structlog

from threatflow import providers
from threatflow.config import Settings, get_config
from threatflow.errors import InvalidInput, ThreatFlowError, Unconfigured
from threatflow.events import (
    DoneEvent, ErrorEvent, EventSink, ProgressEvent, StreamEvent, encode_sse, is_terminal,
)
from threatflow.models import (
    AnalysisRequest, Confidence, ImageInput, VisionRequest, VisionResult,
)
from threatflow.providers.base import Provider

logger = structlog.get_logger(__name__)


class QueueSink:
    """Bounded hand-off between a provider task and the relay loop.

    A full queue suspends the provider, so a slow caller slows the upstream
    read instead of growing memory.
    """
    def __init__(self, maxsize: int):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def send(self, event: StreamEvent) -> None:
        await self._queue.put(event)

    async def get(self, timeout: Optional[float] = None) -> StreamEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)


class TerminalGuard:
    """Forwards events until the first ``done``; everything after it is dropped."""
    def __init__(self, sink: EventSink, provider_id: str):
        self._sink = sink
        self._provider_id = provider_id
        self.done = False

    async def send(self, event: StreamEvent) -> None:
        if self.done:
            logger.warning("Dropping event after done", provider=self._provider_id, kind=event.kind)
            return
        self.done = is_terminal(event)
        await self._sink.send(event)


class StreamGateway:
    """Resolves a provider and relays its stream as canonical events."""
    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_config()

    # ---------- resolution ----------------------------------------------
    def resolve(self, provider_id: Optional[str] = None, model: Optional[str] = None) -> Provider:
        """Build a configured provider, failing before any connection is made."""
        env = self.settings.env
        if not provider_id:
            provider_id = providers.resolve_default(env)
            if provider_id is None:
                raise Unconfigured("No AI provider is configured")
        config = providers.config_for(provider_id, env)
        if model:
            update = {"model": model}
            if config.text_model is not None or config.vision_model is not None:
                update["text_model"] = model
            config = config.model_copy(update=update)
        provider = providers.create(provider_id, config)
        if not provider.is_configured():
            raise Unconfigured(f"{provider.get_name()} provider is not configured")
        logger.info("Provider resolved", provider=provider.id, model=provider.model)
        return provider

    # ---------- relay ----------------------------------------------------
    async def events(self, provider: Provider, request: AnalysisRequest,
                     images: Optional[list[ImageInput]] = None) -> AsyncIterator[StreamEvent]:
        """Yield canonical events for one request, ending with exactly one ``done``.

        Closing this generator early (the caller went away) cancels the
        provider task, which releases its upstream connection.
        """
        if images and not request.vision_analysis:
            yield ProgressEvent(stage="vision", message=f"Analyzing {len(images)} image(s)")
            try:
                result = await self.analyze_vision(
                    provider, VisionRequest(images=images, article_text=request.text)
                )
            except ThreatFlowError as e:
                logger.warning("Vision analysis failed, continuing with text only",
                               provider=provider.id, error=str(e))
                yield ProgressEvent(stage="vision", message=f"Image analysis skipped: {e}")
            except Exception as e:
                logger.error("Vision analysis raised, continuing with text only",
                             provider=provider.id, error=repr(e), exc_info=True)
                yield ProgressEvent(stage="vision", message=f"Image analysis skipped: {str(e) or type(e).__name__}")
            else:
                if result.confidence == Confidence.LOW:
                    yield ProgressEvent(stage="vision", message=result.analysis_text)
                else:
                    request = request.model_copy(update={"vision_analysis": result.analysis_text})
            yield ProgressEvent(stage="analysis", message=f"Analyzing article with {provider.get_name()}")

        sink = QueueSink(self.settings.sink_size)
        task = asyncio.create_task(self._drive(provider, request, sink))
        timeout = self.settings.stream_idle_timeout
        finished = False
        try:
            while True:
                try:
                    event = await sink.get(timeout)
                except asyncio.TimeoutError:
                    logger.warning("Stream idle timeout", provider=provider.id, timeout=timeout)
                    yield ErrorEvent(message=f"No data from {provider.get_name()} for {timeout:g}s")
                    yield DoneEvent()
                    return
                finished = is_terminal(event)
                yield event
                if finished:
                    return
        finally:
            if not task.done():
                if not finished:
                    logger.info("Relay closed before upstream finished", provider=provider.id)
                task.cancel()
            await asyncio.wait({task})

    async def _drive(self, provider: Provider, request: AnalysisRequest, sink: EventSink) -> None:
        """Run the provider and guarantee the sink sees one terminal sequence."""
        guard = TerminalGuard(sink, provider.id)
        try:
            await provider.stream(request, guard)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Provider stream raised", provider=provider.id, error=str(e), exc_info=True)
            if not guard.done:
                await guard.send(ErrorEvent(message=str(e) or type(e).__name__))
        if not guard.done:
            logger.warning("Provider stream ended without done", provider=provider.id)
            await guard.send(DoneEvent())

    async def sse(self, provider: Provider, request: AnalysisRequest,
                  images: Optional[list[ImageInput]] = None) -> AsyncIterator[str]:
        async with aclosing(self.events(provider, request, images)) as events:
            async for event in events:
                yield encode_sse(event)

    # ---------- vision ---------------------------------------------------
    async def analyze_vision(self, provider: Provider, request: VisionRequest) -> VisionResult:
        if not request.images:
            raise InvalidInput("Missing or invalid images array")
        return await provider.analyze_vision(request)
