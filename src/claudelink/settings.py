from __future__ import annotations

from typing import Annotated

from pydantic import AliasChoices, Field, StringConstraints, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class ClaudeLinkSettings(BaseSettings):
    """Process-wide defaults read from the environment."""

    model_config = SettingsConfigDict(
        extra="ignore",
        env_prefix="CLAUDELINK__",
        str_strip_whitespace=True,
        populate_by_name=True,
    )

    cli_path: NonEmptyStr | None = Field(
        default=None,
        validation_alias=AliasChoices("CLAUDELINK__CLI_PATH", "CLAUDE_BINARY", "cli_path"),
    )
    control_timeout: float = Field(default=60.0, gt=0)
    init_timeout: float = Field(default=60.0, gt=0)
    close_grace_period: float = Field(default=5.0, ge=0)
    trace_pipeline: bool = False


def load_settings() -> ClaudeLinkSettings:
    try:
        return ClaudeLinkSettings()
    except ValidationError as exc:
        raise ConfigError(f"Invalid CLAUDELINK__ environment settings: {exc}") from exc
