# wallet_service/channel/backoff.py


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """
    Задержка перед попыткой переподключения номер attempt (с нуля): base * 2**attempt, не больше cap.
    """
    if attempt < 0:
        attempt = 0
    # Ограничиваем степень, чтобы 2**attempt не рос бесконечно при долгом простое сервера
    exponent = min(attempt, 32)
    return min(base * (2 ** exponent), cap)


class ReconnectPolicy:
    """Счетчик неудачных попыток. Сбрасывается при каждом успешном подключении."""

    def __init__(self, base: float = 1.0, cap: float = 30.0):
        self.base = base
        self.cap = cap
        self.attempt = 0

    def next_delay(self) -> float:
        delay = reconnect_delay(self.attempt, self.base, self.cap)
        self.attempt += 1
        return delay

    def reset(self) -> None:
        self.attempt = 0
