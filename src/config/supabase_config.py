import logging
import time

from supabase import Client, create_client
from supabase.client import ClientOptions

from src.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client authenticated with the service role key.

    The service role bypasses row-level security, which is required because this
    service is the sole writer of child_subscriptions, payment_history and
    processed_webhook_events.
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    # Check if error is stale (>60s old), retry if so
    if _last_error is not None:
        time_since_error = time.time() - _last_error_time
        if time_since_error < ERROR_CACHE_TTL:
            retry_in = int(ERROR_CACHE_TTL - time_since_error)
            logger.debug(
                f"Supabase client unavailable (retry in {retry_in}s). Last error: {_last_error}"
            )
            raise RuntimeError(
                f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
            ) from _last_error

        logger.info("Error cache expired, retrying Supabase initialization...")
        _last_error = None
        _last_error_time = 0

    try:
        Config.validate()

        if not Config.SUPABASE_URL.startswith(("http://", "https://")):
            raise RuntimeError(
                f"SUPABASE_URL must start with 'http://' or 'https://'. "
                f"Current value: '{Config.SUPABASE_URL}'"
            )

        masked_url = (
            Config.SUPABASE_URL[:30] + "..." if len(Config.SUPABASE_URL) > 30 else Config.SUPABASE_URL
        )
        logger.info(f"Initializing Supabase client with URL: {masked_url}")

        _supabase_client = create_client(
            supabase_url=Config.SUPABASE_URL,
            supabase_key=Config.SUPABASE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=30,
                schema="public",
                headers={"X-Client-Info": "billing-sync/1.0"},
            ),
        )
        return _supabase_client

    except Exception as e:
        _last_error = e
        _last_error_time = time.time()
        logger.error(
            f"Failed to initialize Supabase client: {type(e).__name__}: {e}", exc_info=True
        )
        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh connection pool.

    Returns:
        bool: True if a cached client was discarded, False if none was cached
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is None:
        return False

    try:
        session = getattr(getattr(_supabase_client, "postgrest", None), "session", None)
        if session is not None and hasattr(session, "close"):
            session.close()
    except Exception as close_error:
        logger.debug(f"Error closing httpx client during reset: {close_error}")

    _supabase_client = None
    _last_error = None
    _last_error_time = 0
    logger.info("Supabase client reset - next request will create fresh connection")
    return True


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    These errors typically occur on stale keepalive connections or after a
    server-side connection reset.
    """
    error_str = str(error).lower()

    if "protocolerror" in type(error).__name__.lower():
        return True

    http2_error_indicators = (
        "connectionterminated",
        "streamidtoolowerror",
        "connectionstate.closed",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
    )
    return any(indicator in error_str for indicator in http2_error_indicators)


def execute_with_retry(
    operation,
    max_retries: int = 2,
    retry_delay: float = 0.1,
    operation_name: str = "database operation",
):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: Callable receiving the Supabase client as its only argument.
        max_retries: Maximum number of retry attempts (default: 2)
        retry_delay: Seconds to wait before retrying on a fresh client
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Raises:
        Exception: The last error when retries are exhausted, or any non-protocol
            error immediately.

    Example:
        def fetch_plan(client):
            return client.table("subscription_plans").select("id").execute()

        result = execute_with_retry(fetch_plan, operation_name="fetch_plan")
    """
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            last_error = e

            if not is_http2_protocol_error(e):
                raise

            if attempt >= max_retries:
                logger.error(
                    f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
                )
                raise

            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
            )
            reset_supabase_client()
            time.sleep(retry_delay)

    raise last_error if last_error else RuntimeError(f"{operation_name} failed with no error captured")
