"""Layered configuration loader for Palimpsest."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import TranslationProviderConfigurationError
from .providers import DEFAULT_MODEL, KNOWN_PROVIDERS, normalise_provider_name
from .structures import EngineConfig, GlossaryEntry, ProviderConfig

APP_NAME = "palimpsest"
YAML_ONLY_KEYS = frozenset({"GLOSSARY"})


class GlossaryItem(BaseModel):
    source: str
    target: str
    case_sensitive: bool = False


class PalimpsestConfig(BaseModel):
    """Schema describing all supported configuration options."""

    model_config = ConfigDict(extra="ignore")

    LLM_PROVIDER: Literal["openai", "azure_openai", "ollama", "openrouter", "echo"] = Field(
        default="openai",
        description="Large language model provider selection.",
    )
    OPENAI_API_KEY: str | None = Field(default=None, repr=False)
    OPENAI_BASE_URL: str | None = Field(default=None)
    AZURE_OPENAI_API_KEY: str | None = Field(default=None, repr=False)
    AZURE_OPENAI_ENDPOINT: str | None = Field(default=None)
    AZURE_OPENAI_API_VERSION: str | None = Field(default=None)
    AZURE_OPENAI_DEPLOYMENT_NAME: str | None = Field(default=None)
    OPENROUTER_API_KEY: str | None = Field(default=None, repr=False)
    PALIMPSEST_MODEL: str | None = Field(default=None)
    PALIMPSEST_TARGET_LANGUAGE: str = Field(default="zh-CN")
    PALIMPSEST_MAX_CONCURRENCY: int = Field(default=3, ge=1, le=10)
    PALIMPSEST_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    PALIMPSEST_MAX_TOKENS: int = Field(default=100_000, ge=1)
    PALIMPSEST_PROVIDER_DEBUG: bool = Field(default=False)
    PALIMPSEST_LOG_LEVEL: str | None = Field(default=None)
    GLOSSARY: List[GlossaryItem] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalise_provider(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw_value = data.get("LLM_PROVIDER")
            if isinstance(raw_value, str):
                normalized = normalise_provider_name(raw_value)
                if normalized not in KNOWN_PROVIDERS:
                    normalized = "openai"
                data["LLM_PROVIDER"] = normalized
        return data


@dataclass(frozen=True)
class ConfigInstance:
    """Validated settings plus the source each key came from."""

    settings: PalimpsestConfig
    provenance: Mapping[str, str] = field(default_factory=dict)

    def model(self) -> PalimpsestConfig:
        return self.settings

    def source_of(self, key: str) -> Optional[str]:
        return self.provenance.get(key)


@lru_cache(maxsize=None)
def _load_config_instance(app_dir: Path | None = None) -> ConfigInstance:
    """Load configuration layers once and cache the immutable instance."""

    base_dir = app_dir or Path.cwd()
    provenance: Dict[str, str] = {}
    combined = _load_discovered_yaml(app_dir=base_dir, provenance=provenance)
    _merge_env_sources(combined, provenance=provenance, app_dir=base_dir)

    try:
        model = PalimpsestConfig.model_validate(combined)
    except ValidationError as exc:
        issues = _format_validation_errors(exc.errors(), provenance)
        raise TranslationProviderConfigurationError(issues) from exc
    return ConfigInstance(settings=model, provenance=dict(provenance))


def discover_file_paths(app_dir: Path) -> List[Path]:
    """Return existing YAML files, lowest precedence first."""

    home = Path.home()
    candidates = [
        home / ".config" / APP_NAME / "config.yaml",
        home / f".{APP_NAME}.yaml",
        app_dir / "config.yaml",
        app_dir / f"{APP_NAME}.yaml",
    ]
    seen: set[Path] = set()
    found: List[Path] = []
    for candidate in candidates:
        resolved = candidate.expanduser().resolve()
        if resolved in seen or not resolved.is_file():
            continue
        seen.add(resolved)
        found.append(resolved)
    return found


def _load_discovered_yaml(
    *,
    app_dir: Path,
    provenance: Dict[str, str],
) -> Dict[str, Any]:
    """Load YAML configuration files in precedence order."""

    result: Dict[str, Any] = {}
    for path in discover_file_paths(app_dir):
        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise TranslationProviderConfigurationError(
                f"Configuration files could not be read: {path}: {exc}"
            ) from exc
        if parsed is None:
            continue
        if not isinstance(parsed, Mapping):
            raise TranslationProviderConfigurationError(
                f"Invalid configuration file {path}: expected a mapping at the root."
            )
        for key, value in parsed.items():
            result[str(key)] = value
            provenance[str(key)] = f"file:{path}"
    return result


def _merge_env_sources(
    target: Dict[str, Any],
    *,
    provenance: Dict[str, str],
    app_dir: Path,
) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(PalimpsestConfig.model_fields.keys()) - YAML_ONLY_KEYS

    def merge_values(values: Mapping[str, Optional[str]], *, source_prefix: str) -> None:
        for key, value in sorted(values.items()):
            if value is None or key not in allowed:
                continue
            target[key] = value
            provenance[key] = f"env:{source_prefix}:{key}"

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path), source_prefix=".env")

    merge_values(
        {k: v for k, v in os.environ.items() if isinstance(v, str)},
        source_prefix="process",
    )


def _validate_provider_settings(settings: PalimpsestConfig, provider: str) -> None:
    errors: list[str] = []

    if provider == "openai":
        if not settings.OPENAI_API_KEY:
            errors.append("OPENAI_API_KEY is required when LLM_PROVIDER is 'openai'.")
    elif provider == "openrouter":
        if not settings.OPENROUTER_API_KEY:
            errors.append(
                "OPENROUTER_API_KEY is required when LLM_PROVIDER is 'openrouter'."
            )
    elif provider == "azure_openai":
        missing = [
            name
            for name, value in {
                "AZURE_OPENAI_API_KEY": settings.AZURE_OPENAI_API_KEY,
                "AZURE_OPENAI_ENDPOINT": settings.AZURE_OPENAI_ENDPOINT,
                "AZURE_OPENAI_API_VERSION": settings.AZURE_OPENAI_API_VERSION,
                "AZURE_OPENAI_DEPLOYMENT_NAME": settings.AZURE_OPENAI_DEPLOYMENT_NAME,
            }.items()
            if not value
        ]
        if missing:
            errors.append(
                "The following Azure OpenAI settings must be provided when "
                f"LLM_PROVIDER is 'azure_openai': {', '.join(missing)}."
            )
    elif provider not in KNOWN_PROVIDERS:
        errors.append(f"Unknown translation provider '{provider}'.")

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise TranslationProviderConfigurationError(
            "Configuration validation errors detected:\n" + bullet_list
        )


def _format_validation_errors(
    entries: Sequence[Mapping[str, Any]],
    provenance: Mapping[str, str],
) -> str:
    details: list[str] = []
    for entry in entries:
        path = entry.get("loc") or ()
        location = ".".join(str(part) for part in path if part not in {None, ""})
        message = str(entry.get("msg") or "Invalid value")
        source = provenance.get(str(path[0])) if path else None
        origin = f" (source: {source})" if source else ""
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}{origin}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


def get_config(app_dir: Path | None = None) -> ConfigInstance:
    """Return the immutable configuration instance."""

    return _load_config_instance(app_dir=app_dir)


def get_settings(app_dir: Path | None = None) -> PalimpsestConfig:
    """Return the validated schema model for typed access."""

    return get_config(app_dir=app_dir).model()


def reset_config_cache() -> None:
    _load_config_instance.cache_clear()


def to_engine_config(
    settings: PalimpsestConfig,
    *,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    target_language: Optional[str] = None,
    max_concurrency: Optional[int] = None,
    debug: Optional[bool] = None,
) -> EngineConfig:
    """Build the per-operation engine configuration, applying overrides."""

    provider_name = normalise_provider_name(provider or settings.LLM_PROVIDER)
    _validate_provider_settings(settings, provider_name)

    chosen_model = model or settings.PALIMPSEST_MODEL
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    api_version: Optional[str] = None

    if provider_name == "openai":
        api_key = settings.OPENAI_API_KEY
        base_url = settings.OPENAI_BASE_URL
    elif provider_name == "azure_openai":
        api_key = settings.AZURE_OPENAI_API_KEY
        base_url = settings.AZURE_OPENAI_ENDPOINT
        api_version = settings.AZURE_OPENAI_API_VERSION
        chosen_model = model or settings.AZURE_OPENAI_DEPLOYMENT_NAME
    elif provider_name == "openrouter":
        api_key = settings.OPENROUTER_API_KEY
    elif provider_name == "ollama":
        base_url = settings.OPENAI_BASE_URL

    provider_config = ProviderConfig(
        provider=provider_name,
        model=chosen_model or (DEFAULT_MODEL if provider_name != "echo" else None),
        api_key=api_key,
        base_url=base_url,
        api_version=api_version,
        debug=settings.PALIMPSEST_PROVIDER_DEBUG if debug is None else debug,
    )

    try:
        return EngineConfig(
            provider=provider_config,
            target_language=target_language or settings.PALIMPSEST_TARGET_LANGUAGE,
            max_concurrency=(
                max_concurrency if max_concurrency is not None
                else settings.PALIMPSEST_MAX_CONCURRENCY
            ),
            max_attempts=settings.PALIMPSEST_MAX_ATTEMPTS,
            max_document_tokens=settings.PALIMPSEST_MAX_TOKENS,
            glossary=[
                GlossaryEntry(
                    source=item.source,
                    target=item.target,
                    case_sensitive=item.case_sensitive,
                )
                for item in settings.GLOSSARY
            ],
        )
    except ValueError as exc:
        raise TranslationProviderConfigurationError(str(exc)) from exc
