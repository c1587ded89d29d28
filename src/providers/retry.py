from typing import Optional

# Worth another attempt before the stream opens; everything else is final
RETRYABLE_STATUS_CODES = (429, 502, 503, 504)

MAX_RETRY_AFTER_SECONDS = 10.0


def is_retryable(status_code: Optional[int]) -> bool:
    """Transport failures (no status) and throttling/gateway errors are retried."""
    if status_code is None:
        return True
    return status_code in RETRYABLE_STATUS_CODES


def calculate_backoff(attempt: int, retry_after_header: Optional[str] = None) -> float:
    """Compute backoff seconds for a retry attempt.

    If Retry-After header is provided, prefer it (capped); otherwise exponential backoff 1s, 2s.
    """
    if retry_after_header:
        try:
            return min(MAX_RETRY_AFTER_SECONDS, max(0.0, float(retry_after_header)))
        except ValueError:
            # HTTP-date form is not worth parsing here
            pass
    # attempt is 1-based
    return float(min(2, max(1, 2 ** (attempt - 1))))
