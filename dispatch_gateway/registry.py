from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from dispatch_gateway.settings import Settings

BUILTIN_PROVIDERS_PATH = Path(__file__).resolve().parent / "data" / "providers.yaml"
DEFAULT_RETRYABLE_METHODS = ("GET", "HEAD", "OPTIONS")

# Keys used by older override documents.
_LEGACY_FIELD_KEYS = {
    "timeout": "timeout_ms",
    "maxResponseSize": "max_response_size_bytes",
}

logger = logging.getLogger("uvicorn.error")


class ProviderOverridesError(ValueError):
    pass


class ProviderProfile(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    alias: str
    host: str
    base_path: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    max_retries: int = Field(default=1, ge=0)
    retryable_methods: tuple[str, ...] = DEFAULT_RETRYABLE_METHODS
    max_response_size_bytes: int | None = None
    default_headers: dict[str, str] = Field(default_factory=dict)
    supports_streaming: bool = True
    allow_fallback: bool = True

    @field_validator("host")
    @classmethod
    def _strip_host(cls, value: str) -> str:
        normalized = value.strip().strip("/")
        if not normalized:
            raise ValueError("host must not be empty")
        return normalized

    @field_validator("retryable_methods", mode="before")
    @classmethod
    def _normalize_methods(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(
                str(item).strip().upper() for item in value if str(item).strip()
            )
        return value

    def response_size_limit(self, default_bytes: int) -> int:
        if self.max_response_size_bytes is None:
            return default_bytes
        return self.max_response_size_bytes


class ProviderRegistry:
    def __init__(self, profiles: Mapping[str, ProviderProfile]) -> None:
        self._profiles = MappingProxyType(dict(profiles))

    def lookup(self, alias: str) -> ProviderProfile | None:
        return self._profiles.get(alias)

    def aliases(self) -> list[str]:
        return list(self._profiles.keys())

    def __contains__(self, alias: object) -> bool:
        return alias in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)


def _field_key_map() -> dict[str, str]:
    mapping: dict[str, str] = dict(_LEGACY_FIELD_KEYS)
    for name, field in ProviderProfile.model_fields.items():
        mapping[name] = name
        if field.alias:
            mapping[field.alias] = name
    return mapping


def _normalize_entry_keys(entry: Mapping[str, Any]) -> dict[str, Any]:
    key_map = _field_key_map()
    return {key_map.get(str(key), str(key)): value for key, value in entry.items()}


def load_builtin_profiles(
    path: str | Path = BUILTIN_PROVIDERS_PATH,
) -> dict[str, ProviderProfile]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{resolved}'.")
    return {
        alias: ProviderProfile.model_validate(
            {**_normalize_entry_keys(entry or {}), "alias": alias}
        )
        for alias, entry in payload.items()
    }


def merge_provider_overrides(
    base: Mapping[str, ProviderProfile],
    overrides: Any,
) -> dict[str, ProviderProfile]:
    if not isinstance(overrides, dict):
        raise ProviderOverridesError(
            "Provider overrides must be a mapping of alias to profile."
        )

    merged = dict(base)
    for alias, entry in overrides.items():
        if not isinstance(entry, dict):
            continue
        alias = str(alias)
        existing = base.get(alias)
        fields = existing.model_dump() if existing is not None else {}
        fields.update(_normalize_entry_keys(entry))
        fields["alias"] = alias
        try:
            merged[alias] = ProviderProfile.model_validate(fields)
        except ValidationError as exc:
            raise ProviderOverridesError(
                f"Invalid override for provider '{alias}': {exc}"
            ) from exc
    return merged


def _parse_yaml_overrides(path: str) -> Any:
    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _apply_override_document(
    profiles: dict[str, ProviderProfile],
    *,
    source: str,
    loader: Callable[[], Any],
) -> dict[str, ProviderProfile]:
    try:
        return merge_provider_overrides(profiles, loader())
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error(
            "provider_overrides_invalid source=%s error=%s",
            source,
            exc,
        )
        return profiles


def load_provider_registry(settings: Settings) -> ProviderRegistry:
    profiles = load_builtin_profiles()
    if settings.provider_overrides_path:
        overrides_path = settings.provider_overrides_path
        profiles = _apply_override_document(
            profiles,
            source=overrides_path,
            loader=lambda: _parse_yaml_overrides(overrides_path),
        )
    if settings.provider_overrides:
        raw_overrides = settings.provider_overrides
        profiles = _apply_override_document(
            profiles,
            source="PROVIDER_OVERRIDES",
            loader=lambda: json.loads(raw_overrides),
        )
    return ProviderRegistry(profiles)
