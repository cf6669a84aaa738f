from functools import wraps

from .retry import with_retry


def retry_on_transient(**retry_options):
    """Retries the decorated coroutine on transient failures (see core.retry.with_retry)."""

    def decorator(func):
        func.__retry_options__ = retry_options

        @wraps(func)
        async def wrapper(*args, **kwargs):
            options = dict(retry_options)
            options.setdefault("operation_name", func.__qualname__)
            return await with_retry(lambda: func(*args, **kwargs), **options)
        return wrapper
    return decorator
