"""Retry delay policy."""


def backoff_delay_ms(attempt: int, retry_delay_ms: int) -> int:
    """Delay to wait before the given attempt (1-indexed).

    Attempt 1 runs immediately; each later attempt waits one more unit of
    ``retry_delay_ms`` than the previous one. The delay is not capped.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if retry_delay_ms < 0:
        raise ValueError(f"retry_delay_ms must be >= 0, got {retry_delay_ms}")
    return retry_delay_ms * (attempt - 1)
