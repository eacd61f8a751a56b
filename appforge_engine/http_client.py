import time
from typing import Any, Dict, Optional, Type

import httpx

from .clock import Clock
from .errors import PipelineError, RateLimitError, RepositoryError
from .logger_setup import logger
from .rate_limit import RateLimitBudget, RetryPolicy, is_rate_limited

USER_AGENT = "appforge/1.0"


def build_async_client(base_url: str, timeout_seconds: float = 30.0,
                       extra_headers: Optional[Dict[str, str]] = None,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Creates an httpx.AsyncClient with the shared timeout and headers for one external service."""
    headers = {"User-Agent": USER_AGENT}
    if extra_headers:
        headers.update(extra_headers)
    timeout = httpx.Timeout(connect=10.0, read=timeout_seconds, write=timeout_seconds, pool=5.0)
    return httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers, transport=transport)


def _make_error(error_class: Type[PipelineError], message: str, transient: bool, kind: Optional[str] = None) -> PipelineError:
    if issubclass(error_class, RepositoryError) and kind:
        return error_class(message, transient=transient, kind=kind)
    return error_class(message, transient=transient)


def response_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)[:200]


class ServiceClient:
    """Shared request path for the external services.

    Every call goes through `_request`, which logs it, refreshes the rate-limit
    budget, backs off on rate-limit responses within the retry policy, and
    turns transport failures into `error_class`. HTTP status handling beyond
    rate limits is left to the caller.
    """

    service_name = "service"
    error_class: Type[PipelineError] = PipelineError

    def __init__(self, client: httpx.AsyncClient, budget: Optional[RateLimitBudget] = None,
                 retry_policy: Optional[RetryPolicy] = None, clock: Optional[Clock] = None):
        self._client = client
        self.budget = budget or RateLimitBudget(self.service_name)
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or Clock()
        self.call_count = 0

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def _request(self, method: str, path: str, op: str, *,
                       json_body: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None,
                       error_class: Optional[Type[PipelineError]] = None,
                       retry_rate_limit: bool = True) -> httpx.Response:
        error_class = error_class or self.error_class
        max_retries = self.retry_policy.max_retries if retry_rate_limit else 0

        attempt = 0
        while True:
            if self.budget.exhausted:
                logger.debug(f"{self.service_name} budget exhausted before {op}, reset at {self.budget.reset_at}")

            started = time.perf_counter()
            self.call_count += 1
            try:
                response = await self._client.request(method, path, json=json_body, params=params)
            except httpx.TimeoutException as e:
                logger.warning(f"{self.service_name} {op} timed out: {e}")
                raise _make_error(error_class, f"{self.service_name} {op} timed out", True, "transport")
            except httpx.TransportError as e:
                logger.warning(f"{self.service_name} {op} transport error: {e}")
                raise _make_error(error_class, f"{self.service_name} {op} failed: {e}", True, "transport")
            duration_ms = round((time.perf_counter() - started) * 1000, 2)

            self.budget.update_from_headers(response.headers)
            logger.debug(f"{self.service_name} {method} {path} ({op}) -> {response.status_code} in {duration_ms}ms, "
                         f"remaining={self.budget.remaining}")

            if not is_rate_limited(response):
                return response

            if attempt >= max_retries:
                logger.error(f"{self.service_name} rate limit persists for {op} after {attempt} retries")
                raise RateLimitError(
                    f"{self.service_name} rate limit exceeded during {op} (reset at {self.budget.reset_at})",
                    service=self.service_name,
                    reset_at=self.budget.reset_at,
                )

            delay = self.retry_policy.backoff_delay(attempt, response, self.budget, self.clock.now())
            attempt += 1
            logger.warning(f"{self.service_name} rate limited during {op}, retry {attempt}/{max_retries} in {delay:.1f}s")
            await self.clock.sleep(delay)

    def _json(self, response: httpx.Response, op: str, error_class: Optional[Type[PipelineError]] = None) -> Any:
        error_class = error_class or self.error_class
        try:
            return response.json()
        except ValueError:
            raise _make_error(error_class, f"{self.service_name} {op} returned a malformed response", True, "transport")

    def _status_error(self, response: httpx.Response, op: str,
                      error_class: Optional[Type[PipelineError]] = None) -> PipelineError:
        error_class = error_class or self.error_class
        status = response.status_code
        detail = response_message(response)
        if status in (401, 403):
            return _make_error(error_class,
                               f"{self.service_name} rejected the credentials during {op} ({status}): {detail}",
                               False, "auth")
        transient = status >= 500 or status == 408
        return _make_error(error_class, f"{self.service_name} {op} failed: {status} {detail}", transient, "http")
