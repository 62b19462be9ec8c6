# wallet_service/core/exceptions.py

from fastapi import status


class WalletError(Exception):
    """
    Базовая ошибка кошелька.
    Каждый подкласс несет свой HTTP-статус и стабильный код, чтобы фронтенд
    мог показать конкретное сообщение, а не "что-то пошло не так".
    """
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "WALLET_ERROR"
    default_message: str = "Wallet operation failed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidAmount(WalletError):
    code = "INVALID_AMOUNT"
    default_message = "Amount must be a positive whole number of coins."


class WalletDisabled(WalletError):
    code = "WALLET_DISABLED"
    default_message = "Wallet system is currently disabled."


class InsufficientBalance(WalletError):
    code = "INSUFFICIENT_BALANCE"
    default_message = "Insufficient balance."


class BelowMinimumCartValue(WalletError):
    code = "BELOW_MINIMUM_CART_VALUE"
    default_message = "Order value is below the minimum required to use coins."


class ExceedsMaxUsage(WalletError):
    code = "EXCEEDS_MAX_USAGE"
    default_message = "Requested coins exceed the allowed share of the order value."


class CategoryNotEligible(WalletError):
    code = "CATEGORY_NOT_ELIGIBLE"
    default_message = "Coins cannot be used for this product category."


class NotFound(WalletError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Requested record was not found."


class StorageFailure(WalletError):
    """Непрозрачная ошибка хранилища. Вызывающая сторона может повторить запрос."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORAGE_FAILURE"
    default_message = "Wallet storage is temporarily unavailable. Please retry."


# Ошибки, которые пользователь может исправить сам. Повтор того же запроса их не лечит.
USER_CORRECTABLE_ERRORS = (
    InvalidAmount,
    WalletDisabled,
    InsufficientBalance,
    BelowMinimumCartValue,
    ExceedsMaxUsage,
    CategoryNotEligible,
)
