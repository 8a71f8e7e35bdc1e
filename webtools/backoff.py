"""Exponential backoff with jitter between acquisition attempts."""
import random

BASE_DELAY_MS = 1000
MAX_JITTER_MS = 1000


def backoff_delay_ms(attempt: int, rng: random.Random = None) -> float:
    """Delay before the retry that follows 0-based ``attempt``: 2^n * 1000 + jitter in [0, 1000)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    rng = rng or random
    base = (2 ** attempt) * BASE_DELAY_MS
    jitter = rng.random() * MAX_JITTER_MS
    # random() is < 1.0, but guard against float rounding at large bases
    return min(base + jitter, base + MAX_JITTER_MS - 1e-6)
