import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff for optimistic-concurrency retries in DocumentBlob.modify.

    delay = min(2 ** attempts_used * delay_factor * jitter, max_delay)
    with jitter drawn uniformly from [1 - randomization_factor, 1 + randomization_factor].
    Times are in seconds.
    """

    retries: int = 10
    delay_factor: float = 0.1
    randomization_factor: float = 0.25
    max_delay: float = 30.0
    uniform: Callable[[float, float], float] = field(
        default=random.uniform, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.retries < 1:
            raise ValueError("retries must be at least 1")
        if self.delay_factor < 0:
            raise ValueError("delay_factor must not be negative")
        if not 0 <= self.randomization_factor <= 1:
            raise ValueError("randomization_factor must be within [0, 1]")
        if self.max_delay < 0:
            raise ValueError("max_delay must not be negative")

    def compute_delay(self, attempts_used: int) -> float:
        jitter = self.uniform(
            1 - self.randomization_factor, 1 + self.randomization_factor
        )
        return min(2**attempts_used * self.delay_factor * jitter, self.max_delay)
