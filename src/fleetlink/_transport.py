"""HTTP transport shared by provider adapters."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from fleetlink._constants import USER_AGENT
from fleetlink._redact import redact_for_log
from fleetlink.exceptions import ProviderTransportError

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    """Decoded provider response; status mapping is left to the adapter."""

    status: int
    body: Any
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    """Structural transport interface used by provider adapters.

    Tests pass small fakes implementing ``request``; production uses
    :class:`HttpTransport`.
    """

    async def request(
        self,
        method: str,
        url: str,
        *,
        provider_id: str,
        headers: Mapping[str, str] | None = None,
        json_body: Any = None,
        form: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> HttpResponse: ...


class HttpTransport:
    """aiohttp-backed JSON transport."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 20.0,
        trace: bool = False,
    ) -> None:
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._trace = trace

    async def request(
        self,
        method: str,
        url: str,
        *,
        provider_id: str,
        headers: Mapping[str, str] | None = None,
        json_body: Any = None,
        form: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        merged_headers: dict[str, str] = {"accept": "application/json", "user-agent": USER_AGENT}
        if headers:
            merged_headers.update(headers)

        if self._trace:
            _logger.debug(
                "%s %s %s headers=%s params=%s body=%s",
                provider_id,
                method,
                redact_for_log(url),
                redact_for_log(merged_headers),
                redact_for_log(params),
                redact_for_log(json_body if json_body is not None else form),
            )

        try:
            async with self._http.request(
                method,
                url,
                headers=merged_headers,
                json=json_body,
                data=dict(form) if form is not None else None,
                params=params,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                status = resp.status
                resp_headers = {k.lower(): v for k, v in resp.headers.items()}
        except TimeoutError as exc:
            raise ProviderTransportError(
                f"{method} {url} timed out",
                provider_id=provider_id,
                code="TIMEOUT",
            ) from exc
        except aiohttp.ClientError as exc:
            raise ProviderTransportError(
                f"{method} {url} failed: {exc}",
                provider_id=provider_id,
            ) from exc

        body: Any = None
        if text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ProviderTransportError(
                    f"Invalid JSON from {url} (HTTP {status}): {text[:200]}",
                    provider_id=provider_id,
                    status_code=status,
                ) from exc

        if self._trace:
            _logger.debug("%s %s -> HTTP %d %s", provider_id, redact_for_log(url), status, redact_for_log(body))

        return HttpResponse(status=status, body=body, headers=resp_headers)
