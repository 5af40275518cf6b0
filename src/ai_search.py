"""
Grounded AI search fallback for OE numbers missing from the reference workbook.

Gemini is asked (with Google Search grounding) for the part type, the vehicle
compatibility and a comma-separated list of cross-reference OE numbers, and
must answer with a fixed JSON schema.

Rate limits:
    - Calls are wrapped in call_with_retry(): only quota errors (HTTP 429) are
      retried, with exponential backoff plus a little random jitter
    - Any other error is raised immediately; the caller turns it into a
      per-row failure marker
"""

import asyncio
import json
import logging
import os
import weakref
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from google import genai
from google.genai import types
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
MODEL = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")

DEFAULT_MAX_RETRIES = 3        # Attempts in total, not re-tries after the first
DEFAULT_INITIAL_DELAY = 2.0    # Seconds; doubled after every failed attempt
DEFAULT_JITTER = 0.5           # Upper bound (seconds) of random extra wait
RATE_LIMIT_CODE = 429

PROMPT_TEMPLATE = """Search Google for automotive part information for OE: "{oe}".
Return structured JSON:
1. productName: Brief part type (e.g. Starter).
2. model: Concise vehicle compatibility.
3. generalOE: List all cross-reference OE numbers found, comma separated."""

RESPONSE_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        'productName': types.Schema(type=types.Type.STRING),
        'model': types.Schema(type=types.Type.STRING),
        'generalOE': types.Schema(type=types.Type.STRING),
    },
    required=['productName', 'model', 'generalOE'],
)


class EmptyAIResponseError(RuntimeError):
    """The model returned no usable payload."""


@dataclass(frozen=True)
class AIPartInfo:
    product_name: str
    vehicle_model: str
    general_oe: str


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

def is_rate_limit_error(error: BaseException) -> bool:
    """True when the error signals a quota / rate-limit condition (HTTP 429)."""
    for attr in ('code', 'status_code'):
        if getattr(error, attr, None) == RATE_LIMIT_CODE:
            return True
    return str(RATE_LIMIT_CODE) in str(error) or str(RATE_LIMIT_CODE) in repr(error)


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args,
    on_retry: Optional[Callable[[str], None]] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    jitter: float = DEFAULT_JITTER,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await fn(*args), retrying rate-limit failures with exponential backoff.

    Args:
        fn: coroutine function to call, as fn(*args)
        on_retry: optional progress callback, told about each retry
        max_retries: total number of attempts
        initial_delay: wait after the first failure; attempt i waits
            initial_delay * 2**i (+ up to `jitter` seconds)
        jitter: upper bound of the uniform random extra wait (0 disables)
        sleep: awaitable sleep, replaceable in tests

    Returns the first successful result. Non rate-limit errors are raised
    after one call; after max_retries rate-limit failures the last one is raised.
    """
    def _before_sleep(retry_state: RetryCallState) -> None:
        message = f"API busy, retrying ({retry_state.attempt_number}/{max_retries})..."
        logger.warning(f"{message} last error: {retry_state.outcome.exception()}")
        if on_retry is not None:
            try:
                on_retry(message)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    wait = wait_exponential(multiplier=initial_delay)
    if jitter > 0:
        wait = wait + wait_random(0, jitter)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries),
        wait=wait,
        retry=retry_if_exception(is_rate_limit_error),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async def _attempt() -> T:
        return await fn(*args)

    return await retrying(_attempt)


# ---------------------------------------------------------------------------
# Gemini client
# ---------------------------------------------------------------------------

# One client per event loop: the async transport is bound to the loop it was
# first used on, and every asyncio.run() (each Streamlit rerun) starts a new one.
_clients: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, genai.Client]" = weakref.WeakKeyDictionary()


def _get_client() -> genai.Client:
    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is None:
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")
        client = genai.Client(api_key=api_key)
        _clients[loop] = client
    return client


def parse_part_info(payload: Optional[str]) -> AIPartInfo:
    """Map the model's JSON answer onto AIPartInfo."""
    if not payload or not payload.strip():
        raise EmptyAIResponseError("Empty AI response")
    data = json.loads(payload)
    return AIPartInfo(
        product_name=str(data['productName']),
        vehicle_model=str(data['model']),
        general_oe=str(data['generalOE']),
    )


async def search_part_info(oe: str) -> AIPartInfo:
    """One grounded search request for a single OE number (no retry)."""
    response = await _get_client().aio.models.generate_content(
        model=MODEL,
        contents=PROMPT_TEMPLATE.format(oe=oe),
        config=types.GenerateContentConfig(
            tools=[types.Tool(google_search=types.GoogleSearch())],
            response_mime_type="application/json",
            response_schema=RESPONSE_SCHEMA,
        ),
    )
    return parse_part_info(response.text)


async def fetch_part_info(
    oe: str,
    on_progress: Optional[Callable[[str], None]] = None,
) -> AIPartInfo:
    """Grounded search for `oe` with the default retry policy."""
    return await call_with_retry(
        search_part_info, oe,
        on_retry=on_progress,
        max_retries=DEFAULT_MAX_RETRIES,
        initial_delay=DEFAULT_INITIAL_DELAY,
        jitter=DEFAULT_JITTER,
    )
