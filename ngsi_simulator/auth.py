"""Authorization token lifecycle: request, retry, renewal before expiry."""
from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .errors import TokenNotAvailable, TransportError
from .events import EventNotifier, SimulationEvent
from .model import RetryPolicy, SimulationConfig
from .transport import HttpRequest, HttpResponse, HttpTransport

LOGGER = logging.getLogger("ngsi_simulator.auth")

TOKEN_HEADER = "X-Subject-Token"

# Shortest wait between two token requests when the token lifetime is shorter than the margin.
MIN_RENEWAL_WAIT = 1.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_expiry(value: Any) -> datetime:
    if not isinstance(value, str) or not value:
        raise ValueError(f"invalid expiration date {value!r}")
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class TokenManager:
    """Keeps ``config.authentication.token`` fresh for the whole run.

    ``on_first_token`` runs once, after the first successful request;
    ``on_failure`` runs when a request (initial or renewal) exhausts its retries.
    """

    def __init__(
        self,
        config: SimulationConfig,
        http: HttpTransport,
        notifier: EventNotifier,
        *,
        renewal_margin: float = 60.0,
        on_first_token: Optional[Callable[[], None]] = None,
        on_failure: Optional[Callable[[TokenNotAvailable], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if config.authentication is None:
            raise ValueError("authentication is not configured")
        self.config = config
        self.auth = config.authentication
        self.http = http
        self.notifier = notifier
        self.renewal_margin = renewal_margin
        self.on_first_token = on_first_token
        self.on_failure = on_failure
        self.clock = clock
        self.expires_at: Optional[datetime] = None
        self.renewals = 0
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def retry(self) -> RetryPolicy:
        return self.auth.retry or RetryPolicy(times=1)

    def token_request(self) -> HttpRequest:
        domain = self.config.domain
        service = domain.service if domain else None
        subservice = domain.subservice if domain else None
        body = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "domain": {"name": service},
                            "name": self.auth.user,
                            "password": self.auth.password,
                        }
                    },
                },
                "scope": {"project": {"domain": {"name": service}, "name": subservice}},
            }
        }
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        return HttpRequest("POST", f"{self.auth.url}/v3/auth/tokens", headers, body)

    async def request_token(self) -> datetime:
        """One attempt. Stores the token and returns its expiry."""
        request = self.token_request()
        self.notifier.emit(SimulationEvent.TOKEN_REQUEST, {"request": _redacted(request)})
        try:
            response = await self.http.send(request)
        except TransportError as exc:
            raise TokenNotAvailable(f"Authorization token could not be generated due to error ({exc})") from exc
        if not response.ok:
            raise TokenNotAvailable(_describe_failure(response))
        token = response.header(TOKEN_HEADER)
        try:
            expires_at = parse_expiry(response.body["token"]["expires_at"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenNotAvailable(f"Authorization token response without a valid expiration date ({exc})") from exc
        if not token:
            raise TokenNotAvailable(f"Authorization token response without the '{TOKEN_HEADER}' header")
        self.auth.token = token
        self.expires_at = expires_at
        return expires_at

    async def obtain(self) -> datetime:
        """``request_token`` wrapped in the configured retry policy."""
        delays = self.retry.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.request_token()
            except TokenNotAvailable as exc:
                if attempt > len(delays):
                    raise
                pause = delays[attempt - 1]
                LOGGER.warning("Token attempt %d failed (%s); retrying in %.2fs", attempt, exc, pause)
                await asyncio.sleep(pause)

    def start(self) -> "asyncio.Task[None]":
        self._task = asyncio.ensure_future(self._run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        first = True
        while True:
            try:
                expires_at = await self.obtain()
            except TokenNotAvailable as exc:
                LOGGER.error("%s", exc)
                if self.on_failure is not None:
                    self.on_failure(exc)
                return
            scheduled_at = expires_at - timedelta(seconds=self.renewal_margin)
            self.notifier.emit(SimulationEvent.TOKEN_RESPONSE, {"expires_at": expires_at})
            self.notifier.emit(SimulationEvent.TOKEN_REQUEST_SCHEDULED, {"scheduled_at": scheduled_at})
            LOGGER.info("Token valid until %s; renewal scheduled at %s", expires_at.isoformat(), scheduled_at.isoformat())
            if first:
                first = False
                if self.on_first_token is not None:
                    self.on_first_token()
            else:
                self.renewals += 1
            wait = (scheduled_at - self.clock()).total_seconds()
            await asyncio.sleep(max(wait, MIN_RENEWAL_WAIT))


def _redacted(request: HttpRequest) -> Dict[str, Any]:
    described = copy.deepcopy(request.to_dict())
    described["body"]["auth"]["identity"]["password"]["user"]["password"] = "***"
    return described


def _describe_failure(response: HttpResponse) -> str:
    error = response.body.get("error") if isinstance(response.body, dict) else None
    error = error if isinstance(error, dict) else {}
    return (
        f"Authorization token could not be generated due to error (status: {response.status}, "
        f"code: {error.get('code')}, title: {error.get('title')}, message: {error.get('message')})"
    )


__all__ = ["TokenManager", "parse_expiry", "TOKEN_HEADER"]
