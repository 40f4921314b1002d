from __future__ import annotations

from dataclasses import dataclass, field


def split_model_ref(model: str) -> tuple[str | None, str]:
    normalized = model.strip()
    if not normalized:
        return None, ""
    if "/" not in normalized:
        return None, normalized
    provider, model_id = normalized.split("/", 1)
    provider = provider.strip()
    model_id = model_id.strip()
    if not provider or not model_id:
        return None, normalized
    return provider, model_id


@dataclass(frozen=True, slots=True)
class ModelIdMap:
    """Bidirectional mapping between unified ids and provider-native names.

    Lookups never fail: a model missing from the table has its own
    namespace prefix stripped (``to_provider``) or is returned unchanged.
    """

    namespace: str | None
    unified_to_native: dict[str, str] = field(default_factory=dict)

    @property
    def native_to_unified(self) -> dict[str, str]:
        return {native: unified for unified, native in self.unified_to_native.items()}

    def to_provider(self, model: str) -> str:
        normalized = model.strip()
        mapped = self.unified_to_native.get(normalized)
        if mapped:
            return mapped
        provider, model_id = split_model_ref(normalized)
        if provider and self.namespace and provider.lower() == self.namespace:
            return model_id
        return normalized

    def to_unified(self, model: str) -> str:
        normalized = model.strip()
        return self.native_to_unified.get(normalized, normalized)

    def knows(self, model: str) -> bool:
        normalized = model.strip()
        return (
            normalized in self.unified_to_native
            or normalized in self.unified_to_native.values()
        )


OPENAI_MODELS = ModelIdMap(namespace=None)

ANTHROPIC_MODELS = ModelIdMap(
    namespace="anthropic",
    unified_to_native={
        "anthropic/claude-3-opus-20240229": "claude-3-opus-20240229",
        "anthropic/claude-3-sonnet-20240229": "claude-3-sonnet-20240229",
        "anthropic/claude-3-haiku-20240307": "claude-3-haiku-20240307",
        "anthropic/claude-2.1": "claude-2.1",
        "anthropic/claude-2.0": "claude-2.0",
        "anthropic/claude-instant-1.2": "claude-instant-1.2",
    },
)

GEMINI_MODELS = ModelIdMap(
    namespace="google",
    unified_to_native={
        "google/gemini-pro": "gemini-pro",
        "google/gemini-pro-vision": "gemini-pro-vision",
        "google/gemini-1.5-pro": "gemini-1.5-pro",
        "google/gemini-1.5-flash": "gemini-1.5-flash",
    },
)

VERTEX_MODELS = ModelIdMap(
    namespace="google-vertex",
    unified_to_native={
        "google-vertex/text-bison": "text-bison",
        "google-vertex/gemini-pro": "gemini-pro",
        "google-vertex/gemini-pro-vision": "gemini-pro-vision",
        "google-vertex/gemini-ultra": "gemini-ultra",
        "google-vertex/gemini-1.5-pro": "gemini-1.5-pro",
        "google-vertex/gemini-1.5-flash": "gemini-1.5-flash",
    },
)
