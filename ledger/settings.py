import json
from functools import lru_cache
from typing import Annotated, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: Literal["development", "staging", "production", "test"] = "development"
    service_name: str = "offerwall-ledger"
    version: str = "1.0.0"
    log_level: str = "INFO"
    log_json: bool = False

    # Bearer token for the completion-creation surface
    admin_api_key: str = ""

    # Ad rewards
    max_ads_per_day: int = 10
    base_ad_reward_points: int = 5
    ad_cooldown_seconds: int = 30
    timezone: str = "UTC"
    happy_hour_enabled: bool = True
    weekend_bonus_enabled: bool = False

    # Postback security
    allow_unsigned_callbacks: bool = False
    auto_create_providers: Annotated[list[str], NoDecode] = Field(default_factory=list)
    kiwiwall_secret_key: Optional[str] = None
    cpx_secure_hash: Optional[str] = None
    timewall_secret_key: Optional[str] = None
    provider_secrets: dict[str, str] = Field(default_factory=dict)

    @field_validator("auto_create_providers", mode="before")
    @classmethod
    def _parse_provider_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                value = json.loads(value)
            else:
                return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    def secret_for(self, provider: str) -> Optional[str]:
        named = {
            "kiwiwall": self.kiwiwall_secret_key,
            "cpx": self.cpx_secure_hash,
            "timewall": self.timewall_secret_key,
        }.get(provider.lower())
        if named:
            return named
        for key, secret in self.provider_secrets.items():
            if key.lower() == provider.lower() and secret:
                return secret
        return None

    def auto_creates(self, provider: str) -> bool:
        return provider.lower() in {p.lower() for p in self.auto_create_providers}


@lru_cache
def get_settings() -> Settings:
    return Settings()
