# wallet_service/core/config.py

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Настройки базы данных
    DATABASE_USER: str
    DATABASE_PASSWORD: str
    DATABASE_HOST: str
    DATABASE_PORT: int
    DATABASE_NAME: str
    # Если задан, используется вместо DATABASE_* (например, sqlite для локального запуска)
    DATABASE_URL_OVERRIDE: str | None = None
    # Таймаут одного SQL-запроса. Зависший запрос превращается в StorageFailure, а не в вечное ожидание
    DATABASE_STATEMENT_TIMEOUT_MS: int = 5000

    REDIS_HOST: str
    REDIS_PORT: int

    # Настройки JWT токенов (токены выпускает основной сервис маркетплейса)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7 # 7 дней

    ADMIN_USER_IDS_STR: str = Field(default="", alias="ADMIN_USER_IDS")
    INTERNAL_WEBHOOK_SECRET: str

    @property
    def ADMIN_USER_IDS(self) -> List[int]:
        return [int(admin_id.strip()) for admin_id in self.ADMIN_USER_IDS_STR.split(',') if admin_id.strip()]

    # Значения по умолчанию для строки wallet_settings, если админ её еще не создал
    WALLET_DEFAULT_FIRST_PURCHASE_COINS: int = 500
    WALLET_DEFAULT_EXPIRY_DAYS: int = 90
    WALLET_DEFAULT_CONVERSION_RATE: str = "1.00"
    WALLET_DEFAULT_MAX_USAGE_PERCENTAGE: int = 0
    WALLET_DEFAULT_MIN_CART_VALUE: str = "0.00"
    WALLET_DEFAULT_MAX_REDEEMABLE_COINS: int = 0
    WALLET_SETTINGS_CACHE_TTL_SECONDS: int = 3600

    # За сколько дней предупреждать о сгорании монет
    NOTIFY_DAYS_BEFORE_EXPIRATION_STR: str = Field(default="7,3,1", alias="NOTIFY_DAYS_BEFORE_EXPIRATION")

    @property
    def NOTIFY_DAYS_BEFORE_EXPIRATION(self) -> List[int]:
        return [int(days.strip()) for days in self.NOTIFY_DAYS_BEFORE_EXPIRATION_STR.split(',') if days.strip()]

    DELETE_READ_NOTIFICATIONS_AFTER_DAYS: int = 30
    DELETE_ANY_NOTIFICATION_AFTER_DAYS: int = 90

    # Realtime-канал
    CHANNEL_HEARTBEAT_TIMEOUT_SECONDS: float = 50.0
    CHANNEL_STALE_SWEEP_INTERVAL_SECONDS: int = 50

    RATE_LIMIT_ENABLED: bool = True
    REDEEM_RATE_LIMIT: str = "10/minute"

    SCHEDULER_TIMEZONE: str = "Asia/Kolkata"

    CORS_ORIGINS_STR: str = Field(default="http://localhost:3000,http://localhost:5173", alias="CORS_ORIGINS")

    @property
    def CORS_ORIGINS(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS_STR.split(',') if origin.strip()]

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql+psycopg2://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"

    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True)

settings = Settings()
