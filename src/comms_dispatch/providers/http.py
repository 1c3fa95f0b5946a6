"""HTTP provider: posts channel payloads to a delivery gateway.

Expected gateway contract (JSON):

    POST <channel path>            {payload}
      -> 2xx {"message_id": str, "cost"?: number}
    POST <channel path>/multicast  {"messages": [payload, ...]}
      -> 2xx {"results": [{"success": bool, "message_id"?: str, "error"?: str}],
              "success_count": int, "failure_count": int}

5xx and 429 are transient (retried); other 4xx are permanent rejections.
"""

from collections.abc import Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from comms_shared.errors import TransientProviderError
from comms_shared.schemas import NotificationRequest

from comms_dispatch.config import ChannelSettings, HttpProviderConfig
from comms_dispatch.providers.base import (
    BaseChannelProvider,
    ChannelProfile,
    ProviderResult,
)


def create_http_client(config: HttpProviderConfig, timeout_seconds: float) -> httpx.AsyncClient:
    """Shared AsyncClient for all channels (one connection pool)."""
    headers = {"Accept": "application/json"}
    if config.api_token:
        headers["Authorization"] = f"Bearer {config.api_token}"
    return httpx.AsyncClient(
        base_url=config.base_url, headers=headers, timeout=timeout_seconds
    )


class HttpProvider(BaseChannelProvider):
    """Provider backed by a real HTTP gateway."""

    def __init__(
        self,
        profile: ChannelProfile,
        settings: ChannelSettings,
        *,
        client: httpx.AsyncClient,
        path: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(profile, settings, **kwargs)
        self._client = client
        self._path = path

    async def _transmit(
        self, request: NotificationRequest, payload: dict[str, Any]
    ) -> ProviderResult:
        response = await self._client.post(self._path, json=payload)
        body = self._check(response)
        if body is None:
            return ProviderResult.failure(
                f"provider rejected request ({response.status_code})",
                raw_response=self._safe_json(response),
                retryable=False,
            )
        return ProviderResult(
            success=True,
            provider_message_id=str(body.get("message_id") or body.get("id") or ""),
            cost=self._cost(body, request),
            raw_response=body,
        )

    async def _transmit_multicast(
        self,
        requests: Sequence[NotificationRequest],
        payloads: Sequence[dict[str, Any]],
    ) -> list[ProviderResult]:
        response = await self._client.post(
            f"{self._path}/multicast", json={"messages": list(payloads)}
        )
        body = self._check(response)
        if body is None:
            reason = f"provider rejected request ({response.status_code})"
            return [
                ProviderResult.failure(reason, retryable=False) for _ in requests
            ]

        entries = body.get("results", [])
        successes = sum(1 for e in entries if e.get("success"))
        if (
            len(entries) != len(requests)
            or body.get("success_count", successes) != successes
            or body.get("failure_count", len(entries) - successes)
            != len(entries) - successes
        ):
            raise TransientProviderError("inconsistent multicast response")

        results: list[ProviderResult] = []
        for request, entry in zip(requests, entries):
            if entry.get("success"):
                results.append(
                    ProviderResult(
                        success=True,
                        provider_message_id=str(entry.get("message_id") or ""),
                        cost=self._cost(entry, request),
                        raw_response=entry,
                    )
                )
            else:
                results.append(
                    ProviderResult.failure(
                        str(entry.get("error") or "recipient rejected"),
                        raw_response=entry,
                    )
                )
        return results

    @staticmethod
    def _check(response: httpx.Response) -> dict[str, Any] | None:
        """Return the JSON body on 2xx, None on permanent 4xx, raise on transient."""
        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientProviderError(f"provider returned {status}")
        if status >= 400:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientProviderError("malformed provider response") from exc
        if not isinstance(body, dict):
            raise TransientProviderError("malformed provider response")
        return body

    @staticmethod
    def _safe_json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"text": response.text}
        return body if isinstance(body, dict) else {"body": body}

    def _cost(self, body: dict[str, Any], request: NotificationRequest) -> Decimal:
        raw = body.get("cost")
        if raw is not None:
            try:
                return Decimal(str(raw))
            except InvalidOperation:
                self._log.warning("Unparseable provider cost", extra={"cost": raw})
        return self.estimate_cost(request)
