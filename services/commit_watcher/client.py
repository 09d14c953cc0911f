"""
HTTP client for the remote collection service.

Both logical operations (session lookup and stats push) go through one
retrying transport. Transient network failures and 5xx responses are retried
with exponential backoff and jitter; 4xx responses fail immediately. Every
exchange advances an immutable ``ConnectionHealth`` value through the pure
transition functions below.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.errors import ClientError, DeliveryError, ServerError, TransientNetworkError
from shared.models import (
    ActiveSession,
    ConnectionHealth,
    ConnectionState,
    DeliveryResult,
    PushStatsPayload,
    RetryPolicy,
)

SESSION_PATH = "/api/sessions/current"
PUSH_STATS_PATH = "/api/git/push-stats"
HEALTH_PATH = "/health"

DEFAULT_FAILURE_THRESHOLD = 3


def record_success(health: ConnectionHealth, now: Optional[datetime] = None) -> ConnectionHealth:
    """The service answered; reset the failure streak."""
    return ConnectionHealth(
        state=ConnectionState.CONNECTED,
        consecutive_failures=0,
        last_success=now or datetime.now(timezone.utc),
    )


def record_failure(
    health: ConnectionHealth, threshold: int = DEFAULT_FAILURE_THRESHOLD
) -> ConnectionHealth:
    """Count a retryable failure; at ``threshold`` the connection is disconnected."""
    failures = health.consecutive_failures + 1
    state = ConnectionState.DISCONNECTED if failures >= threshold else health.state
    return health.model_copy(update={"state": state, "consecutive_failures": failures})


def mark_connecting(health: ConnectionHealth) -> ConnectionHealth:
    """A backoff delay is pending. A disconnected link stays disconnected."""
    if health.state == ConnectionState.DISCONNECTED:
        return health
    return health.model_copy(update={"state": ConnectionState.CONNECTING})


def compute_backoff_delay(attempt: int, policy: RetryPolicy, jitter: float = 0.0) -> float:
    """Delay in milliseconds before retry number ``attempt`` (1-based).

    ``jitter`` is a random draw in ``[0, 1)`` scaled by the policy's jitter
    ratio; pass ``0.0`` for the deterministic delay.
    """
    if attempt < 1:
        return 0.0
    delay = policy.base_delay_ms * (policy.backoff_multiplier ** (attempt - 1))
    delay *= 1 + jitter * policy.jitter_ratio
    return min(delay, policy.max_delay_ms)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body.get("message") or body)
    return str(body)


class DeliveryClient:
    """Client for session lookup, stats push and health probing."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: float = 30.0,
        health_check_timeout: float = 5.0,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.retry_policy = retry_policy or RetryPolicy()
        self.health_check_timeout = health_check_timeout
        self.failure_threshold = failure_threshold
        self.health = ConnectionHealth()
        self.logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._rng = rng
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=request_timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def get_health(self) -> ConnectionHealth:
        return self.health

    @property
    def state(self) -> ConnectionState:
        return self.health.state

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Issue one request and classify the outcome.

        Returns the response for 2xx/3xx; raises a ``DeliveryError`` subclass
        otherwise.
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Network error calling {path}: {e}") from e

        if response.status_code >= 500:
            raise ServerError(
                f"HTTP {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise ClientError(
                f"HTTP {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return response

    async def _request_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send with retries for retryable failures.

        Raises the last ``DeliveryError`` once retries are exhausted, or a
        ``ClientError`` immediately.
        """
        policy = self.retry_policy
        attempt = 0

        while True:
            try:
                response = await self._send(method, path, **kwargs)
            except DeliveryError as e:
                if not e.is_retryable:
                    # The service answered, so the link itself is fine
                    self.health = record_success(self.health)
                    raise

                previous = self.health.state
                self.health = record_failure(self.health, self.failure_threshold)
                if (
                    previous != ConnectionState.DISCONNECTED
                    and self.health.state == ConnectionState.DISCONNECTED
                ):
                    self.logger.warning(
                        f"Collection service unreachable after "
                        f"{self.health.consecutive_failures} consecutive failures"
                    )

                if attempt >= policy.max_retries:
                    self.logger.error(
                        f"{method} {path} failed after {attempt + 1} attempt(s): {e}"
                    )
                    raise

                attempt += 1
                delay = compute_backoff_delay(attempt, policy, self._rng())
                self.logger.debug(
                    f"{method} {path} failed ({e}); retry {attempt}/{policy.max_retries} "
                    f"in {delay:.0f}ms"
                )
                self.health = mark_connecting(self.health)
                await self._sleep(delay / 1000.0)
                continue

            self.health = record_success(self.health)
            return response

    async def get_active_session(
        self, project_hint: Optional[str] = None
    ) -> Optional[ActiveSession]:
        """Get the currently active session, or ``None`` if there is none."""
        params = {"project": project_hint} if project_hint else None

        try:
            response = await self._request_with_retry("GET", SESSION_PATH, params=params)
        except ClientError as e:
            if e.status_code == 404:
                self.logger.debug("No active session found")
            else:
                self.logger.warning(f"Session lookup rejected: {e}")
            return None
        except DeliveryError as e:
            self.logger.error(f"Failed to get active session: {e}")
            return None

        try:
            body = response.json()
        except ValueError:
            self.logger.warning("Session lookup returned a non-JSON body")
            return None

        if not isinstance(body, dict) or not body.get("success"):
            return None

        session = (body.get("data") or {}).get("session")
        if not session or not session.get("id"):
            return None

        return ActiveSession(
            session_id=str(session["id"]),
            project_id=session.get("project_id"),
            project_name=session.get("project_name"),
        )

    async def push_stats_detailed(self, payload: PushStatsPayload) -> DeliveryResult:
        """Push commit stats and report the outcome with its failure reason."""
        commit_count = len(payload.commits)
        self.logger.debug(f"Pushing {commit_count} commit(s) for {payload.project_name}")

        try:
            response = await self._request_with_retry(
                "POST", PUSH_STATS_PATH, json=payload.to_request_body()
            )
        except DeliveryError as e:
            self.logger.error(f"Failed to push stats: {e}")
            return DeliveryResult(success=False, status_code=e.status_code, error=str(e))

        try:
            body = response.json()
        except ValueError:
            return DeliveryResult(
                success=False,
                status_code=response.status_code,
                error="Push response was not JSON",
            )

        if not isinstance(body, dict) or not body.get("success"):
            error = isinstance(body, dict) and body.get("error") or "Push returned success=false"
            self.logger.warning(f"Push rejected by service: {error}")
            return DeliveryResult(success=False, status_code=response.status_code, error=error)

        data = body.get("data") or {}
        self.logger.info(
            f"Pushed {commit_count} commit(s): {data.get('commits_created', 0)} new, "
            f"{data.get('commits_skipped', 0)} skipped"
        )
        return DeliveryResult(success=True, status_code=response.status_code, data=data)

    async def push_stats(self, payload: PushStatsPayload) -> bool:
        """Push commit stats; true only when the service acknowledges success."""
        result = await self.push_stats_detailed(payload)
        return result.success

    async def health_check(self) -> bool:
        """Probe service liveness once, without retries."""
        try:
            response = await self._client.get(HEALTH_PATH, timeout=self.health_check_timeout)
        except httpx.HTTPError as e:
            self.health = record_failure(self.health, self.failure_threshold)
            self.logger.debug(f"Health check failed: {e}")
            return False

        if response.is_success:
            self.health = record_success(self.health)
            return True

        self.health = record_failure(self.health, self.failure_threshold)
        self.logger.debug(f"Health check returned HTTP {response.status_code}")
        return False
