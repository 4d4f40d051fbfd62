from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from app.core.config import settings
from app.services.errors import (
    NetworkError,
    RemoteClientError,
    RemoteError,
    RemoteRateLimited,
    RemoteServerError,
)
from app.services.retry import parse_retry_after


HttpMethod = Literal["POST", "PUT", "DELETE"]


@dataclass(frozen=True)
class CourierCredentials:
    api_key: str
    base_url: str


def get_api_key_and_base_url(environment: str | None = None) -> CourierCredentials:
    env = (environment or settings.courier_environment or "production").lower()
    if env == "sandbox":
        return CourierCredentials(
            api_key=settings.courier_api_key_sandbox.get_secret_value(),
            base_url=settings.courier_base_url_sandbox,
        )
    return CourierCredentials(
        api_key=settings.courier_api_key_production.get_secret_value(),
        base_url=settings.courier_base_url_production,
    )


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any]

    error_message: str | None = None
    response_headers: dict[str, str] | None = None
    url: str | None = None

    @property
    def retry_after(self) -> str | None:
        return (self.response_headers or {}).get("retry-after") or None

    def body_text(self) -> str:
        if "raw" in self.detail:
            return str(self.detail["raw"])
        return json.dumps(self.detail, default=str)


def remote_error_for(result: HttpResult) -> RemoteError | None:
    """Map a failed HttpResult onto the remote error taxonomy (None when ok)."""
    if result.ok:
        return None
    if result.status_code is None:
        return NetworkError(result.error_message or "request failed")

    code = result.status_code
    body = result.body_text()
    if code == 429:
        return RemoteRateLimited(
            "429 Too Many Requests",
            status_code=code,
            body=body,
            retry_after_seconds=parse_retry_after(result.retry_after),
        )
    if 400 <= code < 500:
        return RemoteClientError(f"HTTP {code}: {body}", status_code=code, body=body)
    return RemoteServerError(f"HTTP {code}: {body}", status_code=code, body=body)


def _is_json_response(resp: httpx.Response) -> bool:
    ct = (resp.headers.get("content-type") or "").lower()
    return "application/json" in ct or ct.endswith("+json")


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


class CourierClient:
    """
    Courier task API (POST/PUT/DELETE /tasks).

    - Uses one AsyncClient instance (connection pooling).
    - Does NOT retry; the export queue schedules retries per entry.
    - Returns a structured result; remote_error_for classifies failures.
    """

    def __init__(
        self,
        *,
        credentials: CourierCredentials,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = credentials.base_url
        self._timeout = httpx.Timeout(timeout_seconds)
        self._max_body = max_response_body_chars
        self._default_headers = {
            "Content-Type": "application/json",
            "Authorization": f"ApiKey {credentials.api_key}",
        }
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=transport)

    @classmethod
    def from_settings(cls, *, transport: httpx.AsyncBaseTransport | None = None) -> "CourierClient":
        return cls(
            credentials=get_api_key_and_base_url(),
            timeout_seconds=settings.courier_timeout_seconds,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CourierClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def task_url(self, uid: str | None = None) -> str:
        return f"{self._base_url}?uid={uid}" if uid else self._base_url

    async def request_json(
        self,
        *,
        method: HttpMethod,
        url: str,
        json_body: dict[str, Any] | None = None,
    ) -> HttpResult:
        try:
            resp = await self._client.request(
                method=method,
                url=url,
                headers=self._default_headers,
                json=json_body,
            )
        except httpx.TimeoutException as e:
            return HttpResult(
                ok=False,
                status_code=None,
                detail={"error": "timeout"},
                error_message=str(e) or "timeout",
                url=url,
            )
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            return HttpResult(
                ok=False,
                status_code=None,
                detail={"error": "request_error"},
                error_message=str(e) or type(e).__name__,
                url=url,
            )

        # Parse response
        detail: dict[str, Any]
        if _is_json_response(resp):
            try:
                parsed = resp.json()
                detail = parsed if isinstance(parsed, dict) else {"data": parsed}
            except ValueError:
                detail = {"raw": _cap_text(resp.text, max_chars=self._max_body)}
        elif resp.content:
            detail = {"raw": _cap_text(resp.text, max_chars=self._max_body)}
        else:
            detail = {}

        ok = 200 <= resp.status_code < 300
        return HttpResult(
            ok=ok,
            status_code=resp.status_code,
            detail=detail,
            error_message=None if ok else f"HTTP {resp.status_code}",
            response_headers={"retry-after": resp.headers.get("retry-after", "")},
            url=url,
        )

    # task helpers
    async def create_task(self, payload: dict[str, Any]) -> HttpResult:
        return await self.request_json(method="POST", url=self._base_url, json_body=payload)

    async def update_task(self, uid: str, payload: dict[str, Any]) -> HttpResult:
        return await self.request_json(method="PUT", url=self.task_url(uid), json_body=payload)

    async def delete_task(self, uid: str) -> HttpResult:
        return await self.request_json(method="DELETE", url=self.task_url(uid))
