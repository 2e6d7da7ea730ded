"""Client for remote honest brokers (security token service + lookup API).

Authentication: ``POST {scheme}://{sts_host}{token_path}`` with the configured
credential fields (JSON or form encoded). The STS may answer with a JSON object
holding the token and its lifetime, or with the raw token as the body.

Lookup: ``POST`` (JSON/form) or ``GET`` (query string) to
``{scheme}://{api_host}{lookup_path}`` with ``Authorization: Bearer <token>``.
The response is either an object or a list of objects carrying the surrogate
under ``id_out_field``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from urllib.error import HTTPError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import HttpMethod, RemoteConnection, RequestEncoding
from .deadline import Deadline
from .errors import AuthError, LookupTimeoutError, RemoteLookupError


logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60


class TokenState(str, Enum):
    NO_TOKEN = "no_token"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AuthToken:
    value: str
    expires_at: float


def _error_body(exc: HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace").strip() if exc.fp else ""
    except OSError:
        return ""


def _encode(payload: dict[str, str], encoding: RequestEncoding) -> tuple[bytes, str]:
    if encoding == RequestEncoding.FORM:
        return urlencode(payload).encode("utf-8"), "application/x-www-form-urlencoded"
    return json.dumps(payload).encode("utf-8"), "application/json"


class RemoteBrokerClient:
    """Per-broker STS session and lookup client.

    Token state is guarded by its own lock, independent of the registry's
    lookup-key locks. Tokens live in memory only.
    """

    def __init__(
        self,
        broker_name: str,
        connection: RemoteConnection,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.broker_name = broker_name
        self.connection = connection
        self._clock = clock
        self._sleep = sleep
        self._token: Optional[AuthToken] = None
        self._state = TokenState.NO_TOKEN
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------ tokens

    @property
    def state(self) -> TokenState:
        if self._state == TokenState.AUTHENTICATED and self._token is not None:
            if self._clock() >= self._token.expires_at:
                return TokenState.EXPIRED
        return self._state

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._state = TokenState.NO_TOKEN

    def _expire(self, token: str) -> None:
        with self._token_lock:
            if self._token is not None and self._token.value == token:
                self._state = TokenState.EXPIRED

    def authenticate(self, deadline: Optional[Deadline] = None) -> str:
        """Return a valid bearer token, contacting the STS when none is held or it expired."""

        deadline = deadline or Deadline.never()
        remaining = deadline.remaining()
        acquired = self._token_lock.acquire(timeout=-1 if remaining is None else remaining)
        if not acquired:
            raise LookupTimeoutError(f"Timed out waiting for the token of broker '{self.broker_name}'")
        try:
            if self.state == TokenState.AUTHENTICATED and self._token is not None:
                return self._token.value
            self._state = TokenState.AUTHENTICATING
            try:
                self._token = self._request_token(deadline)
            except Exception:
                self._token = None
                self._state = TokenState.NO_TOKEN
                raise
            self._state = TokenState.AUTHENTICATED
            return self._token.value
        finally:
            self._token_lock.release()

    def _request_token(self, deadline: Deadline) -> AuthToken:
        connection = self.connection
        url = connection.url(connection.sts_host, connection.token_path)
        payload = {field: connection.credential(attribute) for field, attribute in connection.auth_fields.items()}
        data, content_type = _encode(payload, connection.auth_encoding)
        request = Request(url, data=data, headers={"Content-Type": content_type}, method="POST")

        logger.info("Authenticating broker %s against %s", self.broker_name, url)
        try:
            body = self._send(request, deadline, "STS authentication")
        except HTTPError as exc:
            detail = _error_body(exc)
            logger.error("STS authentication for broker %s failed: HTTP %d", self.broker_name, exc.code)
            raise AuthError(
                f"STS authentication failed: HTTP {exc.code}" + (f": {detail}" if detail else ""),
                status_code=exc.code,
            ) from exc
        return self._parse_token(body)

    def _parse_token(self, body: str) -> AuthToken:
        connection = self.connection
        token: Any = body
        lifetime: float = connection.token_ttl_seconds
        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            token = parsed.get(connection.token_field)
            expires_in = parsed.get(connection.expires_in_field)
            if isinstance(expires_in, (int, float)) and expires_in > 0:
                lifetime = float(expires_in)
        elif isinstance(parsed, str):
            token = parsed

        if not isinstance(token, str) or not token.strip():
            raise AuthError("STS response did not contain a token")
        if lifetime > 2 * TOKEN_REFRESH_MARGIN_SECONDS:
            lifetime -= TOKEN_REFRESH_MARGIN_SECONDS
        return AuthToken(value=token.strip(), expires_at=self._clock() + lifetime)

    # ------------------------------------------------------------------ transport

    def _send(self, request: Request, deadline: Deadline, operation: str) -> str:
        """Send ``request`` retrying transient failures with bounded exponential backoff.

        HTTP 4xx responses are raised as ``HTTPError`` for the caller to classify.
        """

        connection = self.connection
        attempt = 0
        while True:
            timeout = deadline.bound(connection.timeout_seconds)
            if timeout is not None and timeout <= 0:
                raise LookupTimeoutError(f"Deadline exceeded before {operation} for broker '{self.broker_name}'")
            started = time.monotonic()
            status: Optional[int] = None
            try:
                with urlopen(request, timeout=timeout) as response:
                    body = response.read().decode("utf-8")
                logger.debug(
                    "%s for broker %s took %.0f ms", operation, self.broker_name, (time.monotonic() - started) * 1000
                )
                return body
            except HTTPError as exc:
                if exc.code < 500:
                    raise
                status = exc.code
                failure = f"HTTP {exc.code}"
            except OSError as exc:
                failure = str(getattr(exc, "reason", exc))

            attempt += 1
            logger.warning(
                "%s for broker %s failed (attempt %d, %.0f ms): %s",
                operation,
                self.broker_name,
                attempt,
                (time.monotonic() - started) * 1000,
                failure,
            )
            if deadline.expired:
                raise LookupTimeoutError(f"Deadline exceeded during {operation} for broker '{self.broker_name}'")
            if attempt > connection.max_retries:
                logger.error("%s for broker %s gave up after %d attempt(s)", operation, self.broker_name, attempt)
                raise RemoteLookupError(f"{operation} failed after {attempt} attempt(s): {failure}", status_code=status)
            delay = min(connection.max_backoff_seconds, connection.backoff_seconds * (2 ** (attempt - 1)))
            remaining = deadline.remaining()
            if remaining is not None and remaining <= delay:
                raise LookupTimeoutError(f"Deadline exceeded during {operation} for broker '{self.broker_name}'")
            self._sleep(delay)

    def _lookup_request(self, params: dict[str, str], token: str) -> Request:
        connection = self.connection
        url = connection.url(connection.api_host, connection.lookup_path)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if connection.lookup_method == HttpMethod.GET:
            return Request(f"{url}?{urlencode(params)}", headers=headers, method="GET")
        data, content_type = _encode(params, connection.lookup_encoding)
        headers["Content-Type"] = content_type
        return Request(url, data=data, headers=headers, method="POST")

    def _authorized(self, build: Callable[[str], Request], deadline: Deadline, operation: str) -> Optional[str]:
        """Run an authenticated call, re-authenticating once on 401. ``None`` on 404."""

        for attempt in (1, 2):
            token = self.authenticate(deadline)
            try:
                return self._send(build(token), deadline, operation)
            except HTTPError as exc:
                if exc.code == 401:
                    self._expire(token)
                    if attempt == 1:
                        logger.info("Token for broker %s was rejected; re-authenticating", self.broker_name)
                        continue
                    logger.error("%s for broker %s rejected a fresh token", operation, self.broker_name)
                    raise AuthError(f"{operation} rejected the bearer token", status_code=401) from exc
                if exc.code == 404:
                    return None
                detail = _error_body(exc)
                logger.error("%s for broker %s failed: HTTP %d", operation, self.broker_name, exc.code)
                raise RemoteLookupError(
                    f"{operation} failed: HTTP {exc.code}" + (f": {detail}" if detail else ""),
                    status_code=exc.code,
                ) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------ lookups

    def lookup(self, id_in: str, id_type: str, *, deadline: Optional[Deadline] = None) -> str:
        connection = self.connection
        params = {connection.id_in_field: id_in, connection.id_type_field: id_type}
        body = self._authorized(lambda token: self._lookup_request(params, token), deadline or Deadline.never(), "Remote lookup")
        if body is None:
            raise RemoteLookupError("Remote lookup returned HTTP 404", status_code=404)
        value = self._extract(body, connection.id_out_field)
        if value is None:
            raise RemoteLookupError(f"Remote lookup response has no '{connection.id_out_field}' value")
        return value

    def reverse_lookup(
        self, id_out: str, id_type: Optional[str] = None, *, deadline: Optional[Deadline] = None
    ) -> Optional[str]:
        connection = self.connection
        params = {connection.id_out_field: id_out}
        if id_type:
            params[connection.id_type_field] = id_type
        url = connection.url(connection.api_host, connection.lookup_path)

        def build(token: str) -> Request:
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            return Request(f"{url}?{urlencode(params)}", headers=headers, method="GET")

        body = self._authorized(build, deadline or Deadline.never(), "Remote reverse lookup")
        if body is None:
            return None
        return self._extract(body, connection.id_in_field)

    def test_connection(self, *, deadline: Optional[Deadline] = None) -> None:
        """Force a fresh STS authentication."""

        self.invalidate_token()
        self.authenticate(deadline)

    @staticmethod
    def _extract(body: str, field: str) -> Optional[str]:
        text = body.strip()
        if not text:
            return None
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise RemoteLookupError("Remote lookup response is not valid JSON") from exc
        if isinstance(parsed, list):
            parsed = parsed[0] if parsed else None
        if isinstance(parsed, str):
            return parsed.strip() or None
        if not isinstance(parsed, dict):
            return None
        value = parsed.get(field)
        if value is None and parsed.get("error"):
            raise RemoteLookupError(f"Remote lookup error: {parsed['error']}")
        if value is None:
            return None
        value = str(value).strip()
        return value or None
