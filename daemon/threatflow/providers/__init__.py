"""Provider registry.

Maps a provider id (or alias) to the class that builds it, and turns an
environment snapshot into the :class:`ProviderConfig` each class needs.
Provider modules call :func:`register` when imported; the order they are
imported in below is the order :func:`list_available` reports, which the UI
treats as preference order.
"""
from typing import Iterable, Mapping, Optional, Type

from threatflow.errors import UnknownProvider
from threatflow.models import ProviderConfig, ProviderDescriptor

import structlog
logger = structlog.get_logger(__name__)

DEFAULT_PROVIDER_ENV = "DEFAULT_AI_PROVIDER"

_registry: dict = {}          # id -> provider class
_aliases: dict[str, str] = {}  # lower-cased id or alias -> id

# backends whose environment names separate text and vision models
_SPLIT_MODEL_ENV = {"ollama"}


def register(factory: Type, aliases: Iterable[str] = ()) -> Type:
    _registry[factory.id] = factory
    for name in (factory.id, *aliases):
        _aliases[name.lower()] = factory.id
    return factory

def supported() -> list[str]:
    return list(_aliases)

def normalize(provider_id: str) -> str:
    key = (provider_id or "").strip().lower()
    if key not in _aliases:
        raise UnknownProvider(provider_id, supported())
    return _aliases[key]

def get(provider_id: str) -> Type:
    return _registry[normalize(provider_id)]

def create(provider_id: str, config: ProviderConfig):
    return get(provider_id)(config)


def _current_env() -> Mapping[str, str]:
    from threatflow.config import get_config
    return get_config().env

def _read(env: Mapping[str, str], key: str) -> Optional[str]:
    value = (env.get(key) or "").strip()
    return value or None


def config_for(provider_id: str, env: Optional[Mapping[str, str]] = None) -> ProviderConfig:
    """Build a backend's config from ``env`` (the loaded settings by default)."""
    pid = normalize(provider_id)
    env = _current_env() if env is None else env
    prefix = pid.upper()
    text_model = vision_model = None
    if pid in _SPLIT_MODEL_ENV:
        text_model = _read(env, f"{prefix}_TEXT_MODEL")
        vision_model = _read(env, f"{prefix}_VISION_MODEL")
    model = (
        _read(env, f"{prefix}_MODEL")
        or text_model
        or vision_model
        or _registry[pid].DEFAULT_MODEL
    )
    return ProviderConfig(
        provider_name=pid,
        api_key=_read(env, f"{prefix}_API_KEY"),
        model=model,
        base_url=_read(env, f"{prefix}_BASE_URL"),
        text_model=text_model,
        vision_model=vision_model,
    )


def describe(provider) -> ProviderDescriptor:
    models = list(provider.SUPPORTED_MODELS)
    for configured_model in (provider.config.text_model, provider.config.vision_model, provider.model):
        if configured_model and configured_model not in models:
            models.insert(0, configured_model)
    return ProviderDescriptor(
        id=provider.id,
        name=provider.display_name,
        display_name=provider.get_name(),
        models=models,
        default_model=provider.model,
        configured=provider.is_configured(),
    )


def list_available(env: Optional[Mapping[str, str]] = None) -> list[ProviderDescriptor]:
    env = _current_env() if env is None else env
    available = []
    for pid, factory in _registry.items():
        provider = factory(config_for(pid, env))
        if provider.is_configured():
            available.append(describe(provider))
    return available


def resolve_default(env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    env = _current_env() if env is None else env
    available = [d.id for d in list_available(env)]
    override = _read(env, DEFAULT_PROVIDER_ENV)
    if override:
        try:
            pid = normalize(override)
        except UnknownProvider:
            logger.warning("Ignoring unknown default provider", value=override, supported=supported())
        else:
            if pid in available:
                return pid
            logger.warning("Default provider is not configured, falling back", provider=pid)
    return available[0] if available else None


# Import all provider modules to ensure they register themselves.
# These imports are for their side-effects (calling register()).
from . import anthropic  # noqa: F401, E402
from . import openai  # noqa: F401, E402
from . import ollama  # noqa: F401, E402
