"""Bounded exponential backoff shared by the store adapter and dispatcher."""
import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry policy with exponential growth, a delay cap and full jitter.

    Attributes:
        max_attempts: Total number of attempts, including the first one
        base_delay: Delay ceiling in seconds before the second attempt
        max_delay: Upper bound for any single delay in seconds
        jitter: When True the delay is drawn uniformly from [0, ceiling]
    """
    max_attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 5.0
    jitter: bool = True

    def delay(self, attempt: int, rng: random.Random = None) -> float:
        """
        Delay to wait after a failed attempt.

        Args:
            attempt: Zero-based index of the attempt that just failed
            rng: Optional random source (for deterministic tests)

        Returns:
            Delay in seconds
        """
        ceiling = min(self.max_delay, self.base_delay * (2 ** attempt))
        if not self.jitter:
            return ceiling
        return (rng or random).uniform(0, ceiling)


STORE_BACKOFF = BackoffPolicy(max_attempts=5, base_delay=0.2, max_delay=5.0)
DELIVERY_BACKOFF = BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=5.0)
