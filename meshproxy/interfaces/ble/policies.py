"""Retry policy for proxy connection attempts."""

from meshproxy.interfaces.ble.constants import BLEConfig


class RetryBudget:
    """
    Fixed-backoff retry budget for one connection sequence.

    A sequence begins at attempt 0 with an explicit connect() and allows at most
    ``max_attempts`` attempts in total, separated by a constant ``backoff`` delay.
    Reaching READY, or starting a new sequence, resets the budget.
    """

    def __init__(
        self,
        max_attempts: int = BLEConfig.RETRY_MAX_ATTEMPTS,
        backoff: float = BLEConfig.RETRY_BACKOFF,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if backoff < 0:
            raise ValueError(f"backoff must be >= 0, got {backoff}")
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._attempts = 0

    @property
    def attempts(self) -> int:
        """Number of attempts made in the current sequence."""
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._attempts >= self.max_attempts

    def reset(self) -> None:
        """Reset internal state to begin a fresh sequence."""
        self._attempts = 0

    def record_attempt(self) -> int:
        """Count one more attempt and return its 1-based number."""
        self._attempts += 1
        return self._attempts

    def should_retry(self) -> bool:
        """Determine whether another attempt fits in the budget."""
        return not self.exhausted

    def get_delay(self) -> float:
        return self.backoff


__all__ = ["RetryBudget"]
