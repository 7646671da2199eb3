from typing import Any, Callable, Iterable, Optional

import aiohttp
from loguru import logger

from evo_dispatch.api import OperationSpec, dispatch_batch, poll_until
from evo_dispatch.config import ClientSettings
from evo_dispatch.errors import StateFetchError
from evo_dispatch.models import (
    DispatchReport,
    OperationContext,
    OperationOutcome,
    PollContext,
    PollOutcome,
    RemoteOperation,
    RetryPolicy,
    StateFetch,
    StateSnapshot,
)
from evo_dispatch.poller import StopCallback
from evo_dispatch.rate_limit import RateLimitGate
from evo_dispatch.retry import Clock, Sleep

CONNECTED_STATE = "open"
SENSITIVE_FIELDS = {"apikey", "api_key", "token", "password", "secret", "authorization"}


def sanitize_for_log(data: Any) -> Any:
    """Redact secrets from a request or response body before logging it"""
    if isinstance(data, dict):
        return {
            key: "***REDACTED***"
            if isinstance(value, str) and str(key).lower() in SENSITIVE_FIELDS
            else sanitize_for_log(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [sanitize_for_log(item) for item in data]
    return data


def _retry_after(headers: Any) -> Optional[float]:
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _error_message(body: Any, reason: Optional[str]) -> str:
    if isinstance(body, dict):
        nested = body.get("response")
        detail = nested.get("message") if isinstance(nested, dict) else None
        for value in (detail, body.get("message"), body.get("error")):
            if isinstance(value, list) and value:
                return ", ".join(str(item) for item in value)
            if value:
                return str(value)
    if isinstance(body, str) and body:
        return body[:200]
    return reason or "HTTP error"


class EvolutionClient:
    """aiohttp adapter that turns Evolution API endpoints into dispatchable operations"""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Optional[Sleep] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or ClientSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self.sleep = sleep
        self.clock = clock
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "EvolutionClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(
                    total=self.settings.timeout, connect=self.settings.connect_timeout
                ),
            )
            self._owns_session = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _default_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.settings.user_agent,
        }
        if self.settings.api_key:
            headers["apikey"] = self.settings.api_key
        return headers

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("EvolutionClient must be used as an async context manager")
        return self._session

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        try:
            return await response.json(content_type=None)
        except ValueError:
            return await response.text()

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> OperationOutcome:
        """Perform one HTTP call and describe it as an OperationOutcome.

        HTTP error statuses come back as failed outcomes. Transport errors
        (connection refused, timeouts) are raised for the caller to classify.
        """
        session = self._require_session()
        url = f"{self.base_url}/{path.lstrip('/')}"
        if self.settings.debug:
            self.logger.debug(
                f"Evolution API request: {method} {url} {sanitize_for_log(json or {})}"
            )

        async with session.request(
            method,
            url,
            json=json,
            params=params,
            headers=self._default_headers(),
            ssl=self.settings.verify_ssl,
        ) as response:
            body = await self._read_body(response)
            ok = 200 <= response.status < 300
            outcome = OperationOutcome(
                ok=ok,
                status_code=response.status,
                message="" if ok else _error_message(body, response.reason),
                payload=body,
                retry_after=None if ok else _retry_after(response.headers),
            )

        if not ok:
            self.logger.error(f"HTTP error {outcome.status_code} at {url}: {outcome.message}")
        elif self.settings.debug:
            self.logger.debug(
                f"Evolution API response {outcome.status_code}: {sanitize_for_log(body)}"
            )
        return outcome

    def operation(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> RemoteOperation:
        async def invoke(context: OperationContext) -> OperationOutcome:
            return await self.request(method, path, json=json, params=params)

        return invoke

    def send_text(self, instance: str, number: str, text: str) -> RemoteOperation:
        return self.operation(
            "POST", f"message/sendText/{instance}", json={"number": number, "text": text}
        )

    def connection_state(self, instance: str) -> StateFetch:
        """StateFetch reading the connection state of an instance"""

        async def fetch(context: PollContext) -> StateSnapshot:
            outcome = await self.request("GET", f"instance/connectionState/{instance}")
            if not outcome.ok:
                raise StateFetchError(outcome.message, status_code=outcome.status_code)
            payload = outcome.payload if isinstance(outcome.payload, dict) else {}
            state = (payload.get("instance") or {}).get("state", "unknown")
            return StateSnapshot(state=state, raw=outcome.payload)

        return fetch

    async def dispatch(
        self,
        operations: Iterable[OperationSpec],
        policy: Optional[RetryPolicy] = None,
        inter_item_delay: float = 1.0,
        gate: Optional[RateLimitGate] = None,
        **kwargs: Any,
    ) -> DispatchReport:
        return await dispatch_batch(
            operations,
            policy=policy,
            inter_item_delay=inter_item_delay,
            gate=gate,
            sleep=self.sleep,
            clock=self.clock,
            **kwargs,
        )

    async def monitor_connection(
        self,
        instance: str,
        stop_callback: Optional[StopCallback] = None,
        max_attempts: int = 30,
        interval_delay: float = 2.0,
        on_state_change: Optional[Callable[..., Any]] = None,
    ) -> PollOutcome:
        """Poll the instance until it is connected, the callback stops it, or attempts run out"""
        return await poll_until(
            self.connection_state(instance),
            lambda state: state == CONNECTED_STATE,
            interval_delay=interval_delay,
            max_attempts=max_attempts,
            stop_callback=stop_callback,
            on_state_change=on_state_change,
            sleep=self.sleep,
            clock=self.clock,
        )

    async def wait_for_connection(
        self, instance: str, timeout: float = 60.0, interval_delay: float = 2.0
    ) -> PollOutcome:
        return await poll_until(
            self.connection_state(instance),
            lambda state: state == CONNECTED_STATE,
            interval_delay=interval_delay,
            timeout=timeout,
            sleep=self.sleep,
            clock=self.clock,
        )
