import logging
import time

logger = logging.getLogger(__name__)


def call_with_retry(func, *args, attempts=3, backoff=0.5, should_retry=lambda exc: False, sleep=time.sleep, **kwargs):
    """Call ``func`` and retry it with exponential backoff.

    ``should_retry`` decides whether a raised exception is transient. Anything
    else, and the last transient failure, propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            attempt += 1
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.info(
                "Retrying %s after %s (attempt %d/%d, sleeping %.2fs)",
                getattr(func, "__name__", func), exc, attempt + 1, attempts, delay,
            )
            sleep(delay)
