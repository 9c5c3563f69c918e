"""API clients for the customer source (API1) and destination (API2)."""

import asyncio
from typing import Awaitable, Callable

import requests
from loguru import logger

from models import DestinationCustomer, SourceCustomer, SyncConfig

PAGE_SIZE = 10
DEFAULT_RETRY_AFTER = 1


class ApiError(Exception):
    """User-friendly API error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(ApiError):
    """Fetching changed customers from API1 failed; nothing was returned."""


class RequestError(ApiError):
    """A single API2 call failed."""


class RetryBudgetExhausted(RequestError):
    """API2 kept rate limiting past the configured retry ceilings."""


def _handle_api_error(response: requests.Response, service: str) -> str:
    """Convert HTTP errors to user-friendly messages."""
    status = response.status_code

    messages = {
        400: f"{service}: Bad request. The payload was rejected.",
        401: f"{service}: Authentication failed. Check your API key!",
        403: f"{service}: Access denied. Check your permissions or API key!",
        404: f"{service}: Resource not found. Check the endpoint URL!",
        429: f"{service}: Too many requests.",
        500: f"{service}: Server error. The service may be temporarily unavailable.",
        502: f"{service}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{service}: Service unavailable. Try again later.",
    }

    return messages.get(status, f"{service}: HTTP {status} - {response.reason}")


def is_last_page(page: list, page_size: int = PAGE_SIZE) -> bool:
    """A page shorter than page_size ends pagination.

    API1 is assumed never to return a short page in the middle of a result
    set; if it does, the remaining pages are not fetched.
    """
    return len(page) < page_size


def backoff_delay(retry_after: int) -> int:
    """Seconds to wait after a 429: exponential in the server's hint."""
    return 2**retry_after


class SourceClient:
    """Client for the customer source API (API1)."""

    def __init__(
        self,
        config: dict,
        *,
        session: requests.Session | None = None,
        timeout_s: float = 30.0,
        page_size: int = PAGE_SIZE,
        log=logger,
    ):
        self.endpoint = config["source"]["endpoint"]
        self.api_key = config["source"]["api_key"]
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.page_size = page_size
        self.log = log

    def fetch_page(self, offset: int, watermark: str | None) -> list[dict]:
        """Fetch one page of customers updated at or after the watermark."""
        try:
            r = self.session.get(
                self.endpoint,
                headers={"Authorization": self.api_key},
                params={"offset": offset, "updatedAt": watermark},
                timeout=self.timeout_s,
            )
        except requests.exceptions.ConnectionError:
            raise ExtractionError(f"API1: Cannot connect to {self.endpoint}. Check your network!")
        except requests.exceptions.Timeout:
            raise ExtractionError("API1: Connection timed out. The server may be slow.")
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"API1: Request failed: {e}")

        if not r.ok:
            raise ExtractionError(_handle_api_error(r, "API1"), r.status_code)

        try:
            data = r.json()
        except ValueError:
            raise ExtractionError(f"API1: Response at offset {offset} is not JSON", r.status_code)
        if not isinstance(data, list):
            raise ExtractionError(f"API1: Expected a list at offset {offset}, got {type(data).__name__}")
        for item in data:
            if not isinstance(item, dict):
                raise ExtractionError(
                    f"API1: Expected customer objects at offset {offset}, got {type(item).__name__}"
                )
        return data

    def fetch_changed(self, watermark: str | None) -> list[SourceCustomer]:
        """Fetch all customers changed since the watermark (all if None)."""
        customers = []
        offset = 0

        while True:
            page = self.fetch_page(offset, watermark)
            customers.extend(SourceCustomer.from_api(item) for item in page)

            if is_last_page(page, self.page_size):
                break
            offset += self.page_size

        self.log.info(f"Fetched {len(customers)} customers from API1")
        return customers


class DestinationClient:
    """Client for the customer destination API (API2).

    Each call runs the blocking HTTP request in a worker thread so calls from
    one group overlap. A 429 is retried after 2**retry-after seconds, up to
    ``max_retries`` retries and ``max_backoff_s`` seconds of total waiting.
    """

    def __init__(
        self,
        config: dict,
        *,
        session: requests.Session | None = None,
        sync_config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log=logger,
    ):
        sync_config = sync_config or SyncConfig()
        self.endpoint = config["destination"]["endpoint"].rstrip("/")
        self.api_key = config["destination"]["api_key"]
        self.session = session or requests.Session()
        self.timeout_s = sync_config.timeout_s
        self.max_retries = sync_config.max_retries
        self.max_backoff_s = sync_config.max_backoff_s
        self.sleep = sleep
        self.log = log

    async def find_by_name(self, name: str) -> list[DestinationCustomer]:
        """Look up customers by name; an empty list means none exists yet."""
        data = await self._request("GET", self.endpoint, params={"name": name})
        if not isinstance(data, list):
            raise RequestError(f"API2: Expected a list for name={name!r}, got {type(data).__name__}")
        if not all(isinstance(item, dict) for item in data):
            raise RequestError(f"API2: Expected customer objects for name={name!r}")
        self.log.debug(f"Read customer: {name} ({len(data)} match(es))")
        return [DestinationCustomer.from_api(item) for item in data]

    async def create(self, customer: DestinationCustomer) -> DestinationCustomer:
        payload = customer.to_payload()
        payload.pop("id", None)
        data = await self._request("POST", self.endpoint, json=payload)
        self.log.info(f"Created customer: {customer.name}")
        return DestinationCustomer.from_api(data)

    async def update(self, customer: DestinationCustomer) -> DestinationCustomer:
        if customer.id is None:
            raise ValueError(f"Cannot update customer {customer.name!r} without an id")
        data = await self._request(
            "PUT", f"{self.endpoint}/{customer.id}", json=customer.to_payload()
        )
        self.log.info(f"Updated customer: {customer.name}")
        return DestinationCustomer.from_api(data)

    async def delete(self, customer: DestinationCustomer) -> DestinationCustomer:
        """Delete a customer. Not used by the sync itself."""
        if customer.id is None:
            raise ValueError(f"Cannot delete customer {customer.name!r} without an id")
        data = await self._request("DELETE", f"{self.endpoint}/{customer.id}")
        self.log.info(f"Deleted customer: {customer.name}")
        return DestinationCustomer.from_api(data)

    async def _request(self, method: str, url: str, **kwargs):
        headers = {
            "Authorization": self.api_key,
            "Content-Type": "application/json; charset=utf-8",
        }
        retries = 0
        waited = 0.0

        while True:
            try:
                r = await asyncio.to_thread(
                    self.session.request,
                    method,
                    url,
                    headers=headers,
                    timeout=self.timeout_s,
                    **kwargs,
                )
            except requests.exceptions.ConnectionError:
                raise RequestError(f"API2: Cannot connect to {self.endpoint}. Check your network!")
            except requests.exceptions.Timeout:
                raise RequestError(f"API2: {method} {url} timed out.")
            except requests.exceptions.RequestException as e:
                raise RequestError(f"API2: {method} {url} failed: {e}")

            if r.status_code == 429:
                delay = backoff_delay(self._retry_after(r))
                # int vs float comparison, a huge hint must not overflow
                if retries >= self.max_retries or delay > self.max_backoff_s - waited:
                    raise RetryBudgetExhausted(
                        f"API2: Still rate limited after {retries} retries "
                        f"({waited:.0f}s waited) for {method} {url}",
                        429,
                    )
                self.log.warning(f"Rate limit exceeded. Waiting for {delay:.0f} seconds...")
                await self.sleep(delay)
                retries += 1
                waited += delay
                continue

            if not r.ok:
                message = _handle_api_error(r, "API2")
                self.log.error(f"Request failed: {method} {url}: {message}")
                raise RequestError(message, r.status_code)

            try:
                return r.json()
            except ValueError:
                raise RequestError(f"API2: {method} {url} returned a non-JSON body", r.status_code)

    def _retry_after(self, response: requests.Response) -> int:
        raw = response.headers.get("retry-after")
        try:
            return max(0, int(raw))
        except (TypeError, ValueError):
            self.log.warning(
                f"429 without a usable retry-after header ({raw!r}); assuming {DEFAULT_RETRY_AFTER}s"
            )
            return DEFAULT_RETRY_AFTER
