"""Runtime configuration read from environment variables."""

import logging
from typing import Dict

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .mode import ModeCredentials, ModeName, parse_mode_name

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./payments_mirror.db"


class Settings(BaseSettings):
    """Application configuration read from environment variables.

    Each mode has its own Stripe keys. ``STRIPE_PUBLIC_KEY_*`` is accepted
    for the publishable key and ``STRIPE_WEBHOOK_SECRET`` is used for a mode
    without its own webhook secret. Empty variables count as unset.
    """

    # Test mode keys
    stripe_secret_key_test: str = ""
    stripe_publishable_key_test: str = Field(
        default="",
        validation_alias=AliasChoices("stripe_publishable_key_test", "stripe_public_key_test"),
    )
    stripe_webhook_secret_test: str = Field(
        default="",
        validation_alias=AliasChoices("stripe_webhook_secret_test", "stripe_webhook_secret"),
    )

    # Live mode keys
    stripe_secret_key_live: str = ""
    stripe_publishable_key_live: str = Field(
        default="",
        validation_alias=AliasChoices("stripe_publishable_key_live", "stripe_public_key_live"),
    )
    stripe_webhook_secret_live: str = Field(
        default="",
        validation_alias=AliasChoices("stripe_webhook_secret_live", "stripe_webhook_secret"),
    )

    # Runtime
    default_mode: ModeName = Field(
        default=ModeName.TEST,
        validation_alias=AliasChoices("payments_default_mode", "default_mode"),
        description="Mode active at startup",
    )
    provider: str = Field(
        default="stripe",
        validation_alias=AliasChoices("payments_provider", "provider"),
        description="Gateway implementation: stripe or simulator",
    )
    database_url: str = DEFAULT_DATABASE_URL
    provider_timeout: float = Field(
        default=30.0,
        gt=0,
        validation_alias=AliasChoices("provider_timeout_seconds", "provider_timeout"),
        description="Seconds before a provider call is abandoned",
    )
    sync_page_size: int = Field(default=100, ge=1, le=100)
    rate_limit: str = "60/minute"
    rate_limit_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_ignore_empty=True,
        extra="ignore",
    )

    @field_validator("default_mode", mode="before")
    @classmethod
    def _parse_mode(cls, value):
        return parse_mode_name(value)

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _warn_missing_keys(self) -> "Settings":
        for mode, creds in self.credentials_by_mode().items():
            if not creds.secret_key:
                logger.warning(f"No secret key configured for {mode.value} mode")
        return self

    @property
    def test_credentials(self) -> ModeCredentials:
        return ModeCredentials(
            secret_key=self.stripe_secret_key_test,
            publishable_key=self.stripe_publishable_key_test,
            webhook_secret=self.stripe_webhook_secret_test,
        )

    @property
    def live_credentials(self) -> ModeCredentials:
        return ModeCredentials(
            secret_key=self.stripe_secret_key_live,
            publishable_key=self.stripe_publishable_key_live,
            webhook_secret=self.stripe_webhook_secret_live,
        )

    def credentials_by_mode(self) -> Dict[ModeName, ModeCredentials]:
        return {
            ModeName.TEST: self.test_credentials,
            ModeName.LIVE: self.live_credentials,
        }
