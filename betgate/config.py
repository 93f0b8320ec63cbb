from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Set

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(slots=True)
class SeedAccount:
    username: str
    email: str
    external_user_id: str
    secret_key: str


class Settings(BaseSettings):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./betgate.db",
        validation_alias="DATABASE_URL",
    )

    external_api_url: str = Field(
        default="https://bets.tgapps.cloud/api",
        validation_alias="EXTERNAL_API_URL",
    )
    external_api_max_retries: int = Field(default=3, validation_alias="EXTERNAL_API_MAX_RETRIES")
    external_api_retry_delay_ms: int = Field(default=1000, validation_alias="EXTERNAL_API_RETRY_DELAY_MS")
    external_api_timeout_ms: int = Field(default=30_000, validation_alias="EXTERNAL_API_TIMEOUT_MS")
    external_api_timeout_health_ms: int = Field(default=2000, validation_alias="EXTERNAL_API_TIMEOUT_HEALTH_MS")
    external_api_timeout_balance_ms: int = Field(default=3000, validation_alias="EXTERNAL_API_TIMEOUT_BALANCE_MS")
    external_api_timeout_auth_ms: int = Field(default=5000, validation_alias="EXTERNAL_API_TIMEOUT_AUTH_MS")
    external_api_timeout_bet_ms: int = Field(default=10_000, validation_alias="EXTERNAL_API_TIMEOUT_BET_MS")
    external_api_timeout_win_ms: int = Field(default=10_000, validation_alias="EXTERNAL_API_TIMEOUT_WIN_MS")
    external_api_audit: bool = Field(default=True, validation_alias="EXTERNAL_API_AUDIT")

    encryption_key: str = Field(validation_alias="ENCRYPTION_KEY")
    encryption_iv: str = Field(validation_alias="ENCRYPTION_IV")

    jwt_secret: str = Field(validation_alias="JWT_SECRET")
    jwt_expires_minutes: int = Field(default=24 * 60, validation_alias="JWT_EXPIRES_MINUTES")
    admin_usernames_raw: str = Field(default="admin", validation_alias="ADMIN_USERNAMES")

    bet_fallback_policy: str = Field(default="strict", validation_alias="BET_FALLBACK_POLICY")
    default_upstream_stake: int = Field(default=1000, validation_alias="DEFAULT_UPSTREAM_STAKE")
    initial_local_balance: int = Field(default=1000, validation_alias="INITIAL_LOCAL_BALANCE")

    idempotency_lock_timeout_sec: float = Field(default=5.0, validation_alias="IDEMPOTENCY_LOCK_TIMEOUT_SEC")
    idempotency_ttl_hours: int = Field(default=24, validation_alias="IDEMPOTENCY_TTL_HOURS")
    pending_bets_poll_interval_sec: int = Field(default=60, validation_alias="PENDING_BETS_POLL_INTERVAL_SEC")

    seed_on_startup: bool = Field(default=True, validation_alias="SEED_ON_STARTUP")
    test_user_1_id: str = Field(default="", validation_alias="TEST_USER_1_ID")
    test_user_1_secret: str = Field(default="", validation_alias="TEST_USER_1_SECRET")
    test_user_2_id: str = Field(default="", validation_alias="TEST_USER_2_ID")
    test_user_2_secret: str = Field(default="", validation_alias="TEST_USER_2_SECRET")
    test_user_3_id: str = Field(default="", validation_alias="TEST_USER_3_ID")
    test_user_3_secret: str = Field(default="", validation_alias="TEST_USER_3_SECRET")
    admin_user_id: str = Field(default="", validation_alias="ADMIN_USER_ID")
    admin_user_secret: str = Field(default="", validation_alias="ADMIN_USER_SECRET")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        extra="ignore",
    )

    @property
    def admin_usernames(self) -> Set[str]:
        result: Set[str] = set()
        for part in self.admin_usernames_raw.split(","):
            clean = part.strip().lower()
            if clean:
                result.add(clean)
        return result

    @property
    def operation_timeouts(self) -> dict[str, float]:
        return {
            "health": self.external_api_timeout_health_ms / 1000,
            "balance": self.external_api_timeout_balance_ms / 1000,
            "auth": self.external_api_timeout_auth_ms / 1000,
            "bet": self.external_api_timeout_bet_ms / 1000,
            "win": self.external_api_timeout_win_ms / 1000,
        }

    @property
    def seed_accounts(self) -> list[SeedAccount]:
        pairs = [
            ("user1", self.test_user_1_id, self.test_user_1_secret),
            ("user2", self.test_user_2_id, self.test_user_2_secret),
            ("user3", self.test_user_3_id, self.test_user_3_secret),
            ("admin", self.admin_user_id, self.admin_user_secret),
        ]
        accounts: list[SeedAccount] = []
        for username, external_id, secret in pairs:
            if not external_id.strip() or not secret.strip():
                continue
            accounts.append(
                SeedAccount(
                    username=username,
                    email=f"{username}@example.com",
                    external_user_id=external_id.strip(),
                    secret_key=secret.strip(),
                )
            )
        return accounts


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
