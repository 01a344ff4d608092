def backoff_delay(interval: float, failures: int, backoff_max: float) -> float:
    """
    Sleep before the next cycle: the plain interval after a success,
    interval * 2^(failures-1) capped at backoff_max after failures.
    backoff_max <= 0 disables backoff.
    """
    if failures <= 0 or backoff_max <= 0:
        return interval
    delay = interval * (2 ** min(failures - 1, 16))
    return max(interval, min(delay, backoff_max))
