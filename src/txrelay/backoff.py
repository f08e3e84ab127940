"""Retry delay schedule."""

import random

from txrelay.models import BackoffConfig


def delay(attempt_number: int, config: BackoffConfig, rng: random.Random | None = None) -> float:
    """Seconds to wait after a failed attempt ``attempt_number`` (1-based).

    ``min(base_delay * multiplier ** (attempt_number - 1), max_delay)``, optionally
    jittered by +/- ``config.jitter`` and clamped to ``[0, max_delay]``.
    Pass a seeded ``rng`` for reproducible jitter.
    """
    if attempt_number < 1:
        raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")

    try:
        computed = min(config.base_delay * config.multiplier ** (attempt_number - 1), config.max_delay)
    except OverflowError:
        computed = config.max_delay

    if not config.jitter:
        return computed

    r = rng or random
    jittered = r.uniform(computed * (1 - config.jitter), computed * (1 + config.jitter))
    return min(max(jittered, 0.0), config.max_delay)
