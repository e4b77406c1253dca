"""HTTP client for the control-plane API.

Reads unwrap the ``{success, data}`` envelope and walk pagination. Every
mutating call appends a RemediationAction to the client's audit log, success
or failure, so the caller can flush it into the journal after the run.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..clock import isoformat, utcnow
from ..errors import AuthError, FetchError, RemediationError
from ..state.models import RemediationAction

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
PROBE_TIMEOUT = 5.0
PAGE_SIZE = 100
MAX_ENTITIES = 500
RATE_LIMIT_SECONDS = 0.1


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "success" in payload and "data" in payload:
        return payload["data"]
    return payload


def _error_text(response: httpx.Response) -> str:
    return response.text[:200]


async def login(
    base_url: str,
    email: str,
    password: str,
    api_prefix: str = "/api/v1",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Exchange credentials for a bearer token.

    Raises:
        AuthError: credentials missing or rejected, or no token in the reply
        FetchError: control plane unreachable
    """
    if not email or not password:
        raise AuthError("No credentials configured (OPS_EMAIL/OPS_PASSWORD)")

    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=DEFAULT_TIMEOUT, transport=transport) as client:
            response = await client.post(
                f"{api_prefix}/auth/login",
                json={"email": email, "password": password},
            )
    except httpx.HTTPError as e:
        raise FetchError(f"Login request failed: {e}") from e

    if response.status_code in (400, 401, 403):
        raise AuthError(f"Login rejected ({response.status_code}): {_error_text(response)}")
    if not response.is_success:
        raise FetchError(f"Login failed ({response.status_code})", status=response.status_code)

    try:
        data = _unwrap(response.json())
    except ValueError as e:
        raise AuthError("Login response is not JSON") from e

    token = None
    if isinstance(data, dict):
        token = data.get("accessToken") or data.get("access_token") or data.get("token")
    if not token:
        raise AuthError("Login response has no token")
    return str(token)


@dataclass
class EndpointStatus:
    """Result of probing a health endpoint."""
    ok: bool
    status: Optional[int] = None
    error: Optional[str] = None

    @property
    def detail(self) -> str:
        return self.error or f"HTTP {self.status}"


async def check_endpoint(
    url: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EndpointStatus:
    """GET ``url``; 2xx and 3xx count as healthy. Never raises."""
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.get(url, headers={"Accept": "application/json"})
    except httpx.HTTPError as e:
        return EndpointStatus(ok=False, error=str(e) or e.__class__.__name__)
    return EndpointStatus(ok=200 <= response.status_code < 400, status=response.status_code)


class OpsApiClient:
    """Authenticated control-plane client scoped to one agent run."""

    def __init__(
        self,
        base_url: str,
        token: str,
        agent: str,
        api_prefix: str = "/api/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limit: float = RATE_LIMIT_SECONDS,
    ):
        self.base_url = base_url
        self.agent = agent
        self.api_prefix = api_prefix
        self.rate_limit = rate_limit
        self._audit_log: List[RemediationAction] = []
        self._last_request = 0.0
        self._rate_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            },
        )

    async def __aenter__(self) -> "OpsApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def audit_log(self) -> List[RemediationAction]:
        """All remediation actions recorded by this client."""
        return list(self._audit_log)

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    async def _throttle(self) -> None:
        if self.rate_limit <= 0:
            return
        async with self._rate_lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.rate_limit:
                await asyncio.sleep(self.rate_limit - elapsed)
            self._last_request = time.monotonic()

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET one resource.

        Raises:
            FetchError: transport failure, non-2xx, or non-JSON body
        """
        await self._throttle()
        try:
            response = await self._client.get(self._url(path), params=params)
        except httpx.HTTPError as e:
            raise FetchError(f"GET {path} failed: {e}") from e

        if not response.is_success:
            raise FetchError(
                f"API {response.status_code}: {response.reason_phrase} - {path}",
                status=response.status_code,
            )
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise FetchError(f"GET {path} returned invalid JSON", status=response.status_code) from e

    async def get_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Walk pages until a short page or MAX_ENTITIES.

        Accepts a bare list, ``{items: [...]}`` or ``{data: [...]}`` per page.
        """
        items: List[Any] = []
        page = 1
        while len(items) < MAX_ENTITIES:
            data = await self.get(path, {**(params or {}), "page": page, "limit": PAGE_SIZE})
            if isinstance(data, list):
                batch = data
            elif isinstance(data, dict) and isinstance(data.get("items"), list):
                batch = data["items"]
            elif isinstance(data, dict) and isinstance(data.get("data"), list):
                batch = data["data"]
            else:
                logger.debug(f"Unrecognized page shape for {path}, stopping")
                break
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
            page += 1
        return items[:MAX_ENTITIES]

    async def patch(
        self,
        path: str,
        body: Dict[str, Any],
        target: str = "unknown",
        target_id: str = "unknown",
        action: Optional[str] = None,
        before: Any = None,
    ) -> Any:
        """PATCH a resource and audit it."""
        return await self._mutate("PATCH", path, body, target, target_id, action, before)

    async def post(
        self,
        path: str,
        body: Dict[str, Any],
        target: str = "unknown",
        target_id: str = "unknown",
        action: Optional[str] = None,
        before: Any = None,
    ) -> Any:
        """POST to a resource collection and audit it."""
        return await self._mutate("POST", path, body, target, target_id, action, before)

    async def _mutate(
        self,
        method: str,
        path: str,
        body: Dict[str, Any],
        target: str,
        target_id: str,
        action: Optional[str],
        before: Any,
    ) -> Any:
        await self._throttle()
        timestamp = isoformat(utcnow())
        after = None
        error = None
        success = False
        try:
            try:
                response = await self._client.request(method, self._url(path), json=body)
            except httpx.HTTPError as e:
                error = f"{method} {path} failed: {e}"
                raise RemediationError(error) from e

            if not response.is_success:
                error = f"API {response.status_code}: {response.reason_phrase} - {path}: {_error_text(response)}"
                raise RemediationError(error, status=response.status_code)

            try:
                after = _unwrap(response.json())
            except ValueError:
                after = None
            success = True
            return after
        finally:
            self._audit_log.append(RemediationAction(
                agent=self.agent,
                timestamp=timestamp,
                action=action or f"{method} {path}",
                target=target,
                target_id=target_id,
                method=method,
                endpoint=self._url(path),
                before=before,
                after=after,
                success=success,
                error=error if not success else None,
            ))
