from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Mapping, Optional

from .errors import ConfigurationError

ENV_PREFIX = "EXAM_EXTRACTION_"

BandCheck = Literal["off", "warn", "error"]
DuplicatePolicy = Literal["append", "reject"]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def clean_api_key(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and wrapping quotes that often sneak into .env files."""
    if value is None:
        return None
    cleaned = value.strip().strip("'\"").strip()
    return cleaned or None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved from the environment."""

    api_key: Optional[str] = None
    model_name: str = "gpt-4o"
    structured_output: bool = True
    render_scale: float = 2.0
    jpeg_quality: int = 85
    document_timeout: Optional[float] = None
    max_attempts: int = 3
    band_check: BandCheck = "warn"
    duplicate_policy: DuplicatePolicy = "append"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        defaults = cls()
        timeout = get("DOCUMENT_TIMEOUT")
        return cls(
            api_key=clean_api_key(env.get("OPENAI_API_KEY")),
            model_name=get("MODEL") or defaults.model_name,
            structured_output=_parse_bool("STRUCTURED_OUTPUT", get("STRUCTURED_OUTPUT"), defaults.structured_output),
            render_scale=_parse_number("RENDER_SCALE", get("RENDER_SCALE"), float, defaults.render_scale),
            jpeg_quality=_parse_number("JPEG_QUALITY", get("JPEG_QUALITY"), int, defaults.jpeg_quality),
            document_timeout=_parse_number("DOCUMENT_TIMEOUT", timeout, float, None) if timeout else None,
            max_attempts=_parse_number("MAX_ATTEMPTS", get("MAX_ATTEMPTS"), int, defaults.max_attempts),
            band_check=_parse_choice("BAND_CHECK", get("BAND_CHECK"), ("off", "warn", "error"), defaults.band_check),
            duplicate_policy=_parse_choice(
                "DUPLICATES", get("DUPLICATES"), ("append", "reject"), defaults.duplicate_policy
            ),
        )

    def __post_init__(self) -> None:
        if self.render_scale <= 0:
            raise ConfigurationError("render_scale must be positive")
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigurationError("jpeg_quality must be between 1 and 100")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.document_timeout is not None and self.document_timeout <= 0:
            raise ConfigurationError("document_timeout must be positive")

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError(
                "API key configuration error: set OPENAI_API_KEY in the environment or .env file."
            )
        return self.api_key

    def __repr__(self) -> str:
        masked = "***" if self.api_key else None
        return (
            f"Settings(api_key={masked!r}, model_name={self.model_name!r}, "
            f"structured_output={self.structured_output}, document_timeout={self.document_timeout})"
        )


def _parse_bool(name: str, value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {value!r}")


def _parse_number(name: str, value: Optional[str], cast, default):
    if value is None:
        return default
    try:
        return cast(value)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from exc


def _parse_choice(name: str, value: Optional[str], choices: tuple[str, ...], default: str):
    if value is None:
        return default
    lowered = value.lower()
    if lowered not in choices:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be one of {', '.join(choices)}, got {value!r}")
    return lowered
