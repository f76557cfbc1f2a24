"""Stripe REST API client (read lookups + checkout session creation).

The reconciler uses the read calls to expand payloads that do not inline
what it needs: a subscription's price items, a customer's email, a checkout
session's line items.  Every failure surfaces as UpstreamLookupError after
the retry budget is spent.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from billing_sync.errors import UpstreamLookupError
from billing_sync.retry import retry_with_backoff

logger = logging.getLogger(__name__)


def encode_form(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Flatten nested params into Stripe's bracketed form encoding.

    ``{"metadata": {"uid": "u1"}, "line_items": [{"price": "p"}]}`` ->
    ``[("metadata[uid]", "u1"), ("line_items[0][price]", "p")]``
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, f"{name}[{i}]"))
                else:
                    pairs.append((f"{name}[{i}]", _form_value(item)))
        else:
            pairs.append((name, _form_value(value)))
    return pairs


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeClient:
    """Thin synchronous client over the Stripe REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 10.0,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )
        self._send = retry_with_backoff(max_retries=max_retries, sleep=sleep)(self._send_once)

    def close(self) -> None:
        self._client.close()

    def _send_once(
        self,
        method: str,
        path: str,
        params: list[tuple[str, str]] | None = None,
        data: list[tuple[str, str]] | None = None,
    ) -> dict[str, Any]:
        if data is not None:
            response = self._client.request(
                method,
                path,
                params=params,
                content=urlencode(data),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        else:
            response = self._client.request(method, path, params=params)
        response.raise_for_status()
        return response.json()

    def _request(
        self,
        method: str,
        path: str,
        resource: str,
        params: list[tuple[str, str]] | None = None,
        data: list[tuple[str, str]] | None = None,
    ) -> dict[str, Any]:
        try:
            body = self._send(method, path, params=params, data=data)
        except httpx.HTTPStatusError as e:
            raise UpstreamLookupError(
                f"{method} {path} returned {e.response.status_code}",
                resource=resource,
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamLookupError(f"{method} {path} failed: {e}", resource=resource) from e
        if not isinstance(body, dict):
            raise UpstreamLookupError(f"{method} {path} returned a non-object body", resource=resource)
        return body

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Full subscription with price objects on its items."""
        return self._request(
            "GET",
            f"/v1/subscriptions/{subscription_id}",
            "subscription",
            params=[("expand[]", "items.data.price")],
        )

    def get_customer(self, customer_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/customers/{customer_id}", "customer")

    def expand_checkout_line_items(self, session_id: str) -> list[dict[str, Any]]:
        """Line items of a checkout session, each with its price object."""
        body = self._request(
            "GET",
            f"/v1/checkout/sessions/{session_id}/line_items",
            "checkout_line_items",
            params=[("limit", "10")],
        )
        items = body.get("data")
        return items if isinstance(items, list) else []

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST", "/v1/checkout/sessions", "checkout_session", data=encode_form(params)
        )
