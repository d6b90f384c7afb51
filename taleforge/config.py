"""App settings and the per-turn configuration snapshot.

Settings is the mutable, persisted form: LLM connections, named generation
presets, the service → preset mapping, and feature options. The pipeline
never reads it directly. At turn start Settings.snapshot() resolves every
service once into a frozen ServiceConfig and returns a frozen PipelineConfig
that travels inside the PipelineContext.

Service resolution: services[name] names a preset, the preset names a
connection. A missing link at any step leaves the service unconfigured (None).
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ProviderFormat = Literal["koboldcpp", "openai"]
ReasoningEffort = Literal["none", "low", "medium", "high"]
ServiceName = Literal[
    "narrative",
    "classification",
    "entry_retrieval",
    "translation",
    "image_analysis",
    "suggestions",
]

SERVICE_NAMES: tuple[ServiceName, ...] = (
    "narrative",
    "classification",
    "entry_retrieval",
    "translation",
    "image_analysis",
    "suggestions",
)


class UnconfiguredCapabilityError(ValueError):
    """Raised before any external call when an enabled phase has no model."""

    def __init__(self, service: str) -> None:
        super().__init__(
            f"No model is assigned to the {service!r} service. "
            "Assign a generation preset to it in settings."
        )
        self.service = service


# ---------------------------------------------------------------------------
# Persisted settings
# ---------------------------------------------------------------------------

class Connection(BaseModel):
    name: str
    provider_url: str
    api_key: str = ""
    provider_format: ProviderFormat = "openai"


class GenerationPreset(BaseModel):
    name: str
    connection: str
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    reasoning_effort: ReasoningEffort | None = None
    timeout: float = 120.0


class RetrievalConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier1_threshold: float = 0.0
    tier2_threshold: float = 0.35
    tier2_boost: float = 0.2
    tier3_boost: float = 0.1
    decay_factor: float = 0.9
    sticky_threshold: float = 0.3
    activation_epsilon: float = 0.05
    max_tier2: int = 10  # 0 = unlimited
    max_tier3: int = 0
    max_tier3_candidates: int = 60
    llm_selection_enabled: bool = True
    tier3_candidate_threshold: int = 0  # rerank only when candidates exceed this
    rerank_timeout: float = 15.0
    recent_entries_count: int = 5


class ContextConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_chars: int = 6000
    max_entries: int = 0  # 0 = unlimited
    max_words_per_entry: int = 0
    chapter_recall_enabled: bool = True
    max_recalled_chapters: int = 2


class TranslationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    target_language: str = "en"
    translate_narration: bool = True
    translate_suggestions: bool = True

    @property
    def translates_narration(self) -> bool:
        return self.enabled and self.translate_narration and self.target_language != "en"

    @property
    def translates_suggestions(self) -> bool:
        return self.enabled and self.translate_suggestions and self.target_language != "en"


class ImageSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["none", "inline", "agentic"] = "none"
    max_scenes: int = 3
    size: str = "1024x1024"
    style: str = ""
    model: str = ""
    timeout: float = 180.0


class StoryOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["adventure", "creative-writing"] = "adventure"
    pov: Literal["first", "second", "third"] = "second"
    tense: Literal["past", "present"] = "present"
    protagonist_name: str = ""
    genre: str = ""
    tone: str = ""
    disable_suggestions: bool = False


class Settings(BaseModel):
    """Mutable app settings, persisted by the store as settings.json."""

    connections: list[Connection] = Field(default_factory=list)
    presets: list[GenerationPreset] = Field(default_factory=list)
    services: dict[str, str] = Field(default_factory=dict)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    translation: TranslationSettings = Field(default_factory=TranslationSettings)
    images: ImageSettings = Field(default_factory=ImageSettings)
    story: StoryOptions = Field(default_factory=StoryOptions)

    def resolve_service(self, name: str) -> ServiceConfig | None:
        """Resolve a logical service to its connection + preset, or None."""
        preset_name = self.services.get(name, "")
        if not preset_name:
            return None
        preset = next((p for p in self.presets if p.name == preset_name), None)
        if preset is None:
            logger.warning("Service %s names unknown preset %r", name, preset_name)
            return None
        conn = next((c for c in self.connections if c.name == preset.connection), None)
        if conn is None:
            logger.warning("Preset %r names unknown connection %r", preset.name, preset.connection)
            return None
        return ServiceConfig(
            provider_url=conn.provider_url,
            api_key=conn.api_key,
            provider_format=conn.provider_format,
            model=preset.model,
            temperature=preset.temperature,
            max_tokens=preset.max_tokens,
            reasoning_effort=preset.reasoning_effort,
            timeout=preset.timeout,
        )

    def snapshot(self) -> PipelineConfig:
        """Capture an immutable configuration for one pipeline run."""
        return PipelineConfig(
            narrative=self.resolve_service("narrative"),
            classification=self.resolve_service("classification"),
            entry_retrieval=self.resolve_service("entry_retrieval"),
            translation=self.resolve_service("translation"),
            image_analysis=self.resolve_service("image_analysis"),
            suggestions=self.resolve_service("suggestions"),
            retrieval=self.retrieval,
            context=self.context,
            translation_settings=self.translation,
            images=self.images,
            story=self.story,
        )

    def merged(self, fields: dict) -> Settings:
        """Return a copy with fields merged in; nested option groups merge key-by-key."""
        data = self.model_dump()
        for key, value in fields.items():
            if isinstance(data.get(key), dict) and isinstance(value, dict):
                data[key].update(value)
            else:
                data[key] = value
        return Settings.model_validate(data)


# ---------------------------------------------------------------------------
# Frozen snapshot
# ---------------------------------------------------------------------------

class ServiceConfig(BaseModel):
    """Everything one capability call needs: where to send it and how."""

    model_config = ConfigDict(frozen=True)

    provider_url: str
    api_key: str = ""
    provider_format: ProviderFormat = "openai"
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 1024
    reasoning_effort: ReasoningEffort | None = None
    timeout: float = 120.0


class PipelineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    narrative: ServiceConfig | None = None
    classification: ServiceConfig | None = None
    entry_retrieval: ServiceConfig | None = None
    translation: ServiceConfig | None = None
    image_analysis: ServiceConfig | None = None
    suggestions: ServiceConfig | None = None
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    translation_settings: TranslationSettings = Field(default_factory=TranslationSettings)
    images: ImageSettings = Field(default_factory=ImageSettings)
    story: StoryOptions = Field(default_factory=StoryOptions)

    @property
    def tier3_enabled(self) -> bool:
        return self.retrieval.llm_selection_enabled and self.entry_retrieval is not None

    @property
    def translation_enabled(self) -> bool:
        return self.translation_settings.translates_narration

    @property
    def image_enabled(self) -> bool:
        return self.images.mode == "agentic"

    @property
    def suggestions_enabled(self) -> bool:
        return not self.story.disable_suggestions

    def require_capabilities(self) -> None:
        """Raise UnconfiguredCapabilityError for any enabled, unassigned service.

        Tier-3 reranking is optional: with no entry_retrieval service the
        engine simply runs without it.
        """
        required: list[tuple[str, bool]] = [
            ("narrative", True),
            ("classification", True),
            ("translation", self.translation_enabled),
            ("image_analysis", self.image_enabled),
            ("suggestions", self.suggestions_enabled),
        ]
        for name, enabled in required:
            if enabled and getattr(self, name) is None:
                raise UnconfiguredCapabilityError(name)
