# resolver.py
from typing import NamedTuple

from appconfig import PROVIDER, AppConfig
from errors import ConfigIncomplete, ProviderUnsupported
from schemas import ChatRequest

PREFIX = PROVIDER + ":"


class ResolvedModel(NamedTuple):
    provider: str
    model: str


def resolve_model(req: ChatRequest, config: AppConfig) -> str:
    """Pick the model id for a request: override, then vision default (image), then text default."""
    override = (req.model_override or "").strip()
    if override:
        return override

    if req.image is not None:
        if not config.vision_default_model.strip():
            raise ConfigIncomplete("Vision default model not set.")
        return config.vision_default_model

    if not config.text_default_model.strip():
        raise ConfigIncomplete("Text default model not set.")
    return config.text_default_model


def split_provider(model_id: str) -> ResolvedModel:
    # Colons after the prefix belong to the model name (e.g. ":free").
    if model_id.startswith(PREFIX):
        return ResolvedModel(PROVIDER, model_id[len(PREFIX):])
    return ResolvedModel(PROVIDER, model_id)


def check_provider(resolved: ResolvedModel) -> None:
    # split_provider always yields PROVIDER, so this never fires today.
    if resolved.provider != PROVIDER:
        raise ProviderUnsupported("Only openrouter is supported in MVP.")
