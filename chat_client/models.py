"""Static catalog of the chat and title models the client can route to."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional

from .errors import ConfigurationError


USAGES = ("chat", "title")


@dataclass(frozen=True)
class ModelConfig:
    id: str
    display_name: str
    provider_name: str
    provider_model_id: str
    supported_usages: FrozenSet[str] = field(default_factory=lambda: frozenset(USAGES))
    default_for: FrozenSet[str] = field(default_factory=frozenset)

    def supports(self, usage: str) -> bool:
        return usage in self.supported_usages


def _model(
    model_id: str,
    name: str,
    provider: str,
    sdk_id: str,
    default_for: Iterable[str] = (),
) -> ModelConfig:
    return ModelConfig(
        id=model_id,
        display_name=name,
        provider_name=provider,
        provider_model_id=sdk_id,
        supported_usages=frozenset(USAGES),
        default_for=frozenset(default_for),
    )


DEFAULT_MODELS: List[ModelConfig] = [
    _model("google/gemini-1.5-flash", "Gemini 1.5 Flash (Google)", "google", "gemini-1.5-flash-latest", ["chat"]),
    _model("google/gemini-1.5-pro", "Gemini 1.5 Pro (Google)", "google", "gemini-1.5-pro-latest"),
    _model("google/gemini-2.0-flash", "Gemini 2.0 Flash (Google)", "google", "gemini-2.0-flash"),
    _model(
        "google/gemini-2.5-flash-preview",
        "Gemini 2.5 Flash Preview (Google)",
        "google",
        "gemini-2.5-flash-preview-04-17",
    ),
    _model(
        "google/gemini-2.5-pro-preview",
        "Gemini 2.5 Pro Preview (Google)",
        "google",
        "gemini-2.5-pro-preview-05-06",
    ),
    _model(
        "openrouter/deepseek-prover-v2",
        "DeepSeek Prover V2 (OpenRouter)",
        "openrouter",
        "deepseek/deepseek-prover-v2:free",
        ["title"],
    ),
    _model(
        "openrouter/llama-4-maverick",
        "Llama 4 Maverick (OpenRouter)",
        "openrouter",
        "meta-llama/llama-4-maverick:free",
    ),
    _model("openrouter/qwen3-30b-a3b", "Qwen3 30B A3B (OpenRouter)", "openrouter", "qwen/qwen3-30b-a3b:free"),
    _model(
        "openrouter/deepseek-v3-base",
        "DeepSeek V3 Base (OpenRouter)",
        "openrouter",
        "deepseek/deepseek-v3-base:free",
    ),
    _model(
        "openrouter/llama-3.3-70b-instruct",
        "Llama 3.3 70B Instruct (OpenRouter)",
        "openrouter",
        "meta-llama/llama-3.3-70b-instruct:free",
    ),
]


class ModelCatalog:
    """Lookup over the configured models.

    Construction fails unless every usage kind has a default, and ``get`` never
    returns ``None``: an unknown id is a ``ConfigurationError``.
    """

    def __init__(self, models: Optional[Iterable[ModelConfig]] = None) -> None:
        self._models: Dict[str, ModelConfig] = {}
        for model in models if models is not None else DEFAULT_MODELS:
            if model.id in self._models:
                raise ConfigurationError(f"Duplicate model id '{model.id}'")
            self._models[model.id] = model

        for usage in USAGES:
            if not any(usage in m.default_for and m.supports(usage) for m in self._models.values()):
                raise ConfigurationError(f"No default model configured for usage '{usage}'")

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self) -> Iterator[ModelConfig]:
        return iter(self._models.values())

    def get(self, model_id: Optional[str]) -> ModelConfig:
        model = self._models.get(model_id) if model_id else None
        if model is None:
            raise ConfigurationError(f"Invalid model selected: '{model_id}'")
        return model

    def default_for(self, usage: str) -> ModelConfig:
        for model in self._models.values():
            if usage in model.default_for and model.supports(usage):
                return model
        raise ConfigurationError(f"No default model configured for usage '{usage}'")

    def for_usage(self, usage: str) -> List[ModelConfig]:
        return [m for m in self._models.values() if m.supports(usage)]

    def require_usage(self, model_id: Optional[str], usage: str) -> ModelConfig:
        model = self.get(model_id)
        if not model.supports(usage):
            raise ConfigurationError(f"Model '{model.id}' does not support usage '{usage}'")
        return model
