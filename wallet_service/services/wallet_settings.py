# wallet_service/services/wallet_settings.py

import logging
from decimal import Decimal

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from wallet_service.core.config import settings as app_settings # Псевдоним, чтобы не путать с настройками кошелька
from wallet_service.crud import wallet as crud_wallet
from wallet_service.models.wallet import WalletSettings as WalletSettingsRow
from wallet_service.schemas.wallet import WalletSettings, WalletSettingsUpdate

logger = logging.getLogger(__name__)

CACHE_KEY = "wallet_settings"


def _default_values() -> dict:
    return {
        "is_active": True,
        "first_purchase_coins": app_settings.WALLET_DEFAULT_FIRST_PURCHASE_COINS,
        "expiry_days": app_settings.WALLET_DEFAULT_EXPIRY_DAYS,
        "conversion_rate": Decimal(app_settings.WALLET_DEFAULT_CONVERSION_RATE),
        "max_usage_percentage": app_settings.WALLET_DEFAULT_MAX_USAGE_PERCENTAGE,
        "min_cart_value": Decimal(app_settings.WALLET_DEFAULT_MIN_CART_VALUE),
        "max_redeemable_coins": app_settings.WALLET_DEFAULT_MAX_REDEEMABLE_COINS,
        "applicable_categories": "",
    }


def get_settings(db: Session) -> WalletSettingsRow:
    """
    Возвращает единственную строку настроек кошелька.
    Если админ её еще не создавал, создает строку со значениями по умолчанию из конфига.
    """
    row = crud_wallet.get_settings_row(db)
    if row is None:
        logger.info("Wallet settings row not found. Creating defaults.")
        row = crud_wallet.create_settings_row(db, **_default_values())
    return row


def update_settings(db: Session, settings_data: WalletSettingsUpdate) -> WalletSettingsRow:
    row = get_settings(db)
    values = settings_data.model_dump(exclude_unset=True)
    if "applicable_categories" in values:
        categories = values["applicable_categories"] or []
        values["applicable_categories"] = ",".join(c.strip() for c in categories if c and c.strip())
    if not values:
        return row
    row = crud_wallet.update_settings_row(db, row, values)
    logger.info(f"Wallet settings updated: {sorted(values)}")
    return row


async def get_cached_settings(db: Session, redis: Redis) -> WalletSettings:
    """
    Публичное чтение настроек с кешированием в Redis.
    Списание монет кеш не использует: оно всегда читает строку из базы.
    """
    try:
        cached = await redis.get(CACHE_KEY)
        if cached:
            return WalletSettings.model_validate_json(cached)
    except RedisError as e:
        logger.warning(f"Failed to read wallet settings from cache: {e}. Falling back to DB.")
    except ValueError as e:
        logger.warning(f"Failed to validate cached wallet settings: {e}. Fetching fresh settings.")

    settings_data = WalletSettings.model_validate(get_settings(db))
    try:
        await redis.set(CACHE_KEY, settings_data.model_dump_json(), ex=app_settings.WALLET_SETTINGS_CACHE_TTL_SECONDS)
    except RedisError as e:
        logger.warning(f"Failed to store wallet settings in cache: {e}")
    return settings_data


async def invalidate_cache(redis: Redis) -> None:
    try:
        await redis.delete(CACHE_KEY)
    except RedisError as e:
        logger.warning(f"Failed to invalidate wallet settings cache: {e}")
