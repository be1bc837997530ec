"""Round-robin selection of webhook delivery endpoints."""

from __future__ import annotations

import re
import threading
from typing import Iterable, Sequence

from .models import DeliveryEndpoint

_WEBHOOK_URL_RE = re.compile(r"/webhooks/(?P<id>\d+)/(?P<token>[A-Za-z0-9_\-\.]+)")


class EndpointRotator:
    """Hand out endpoints in order, wrapping after the last one.

    The cursor is shared by every guild and message and only moves once a
    send through the current endpoint succeeded.
    """

    def __init__(self, endpoints: Iterable[DeliveryEndpoint]):
        self._endpoints: tuple[DeliveryEndpoint, ...] = tuple(endpoints)
        if not self._endpoints:
            raise ValueError("At least one delivery endpoint is required")
        self._cursor = 0
        self._lock = threading.Lock()

    @property
    def endpoints(self) -> Sequence[DeliveryEndpoint]:
        return self._endpoints

    @property
    def cursor(self) -> int:
        return self._cursor

    def current(self) -> DeliveryEndpoint:
        with self._lock:
            return self._endpoints[self._cursor]

    def advance(self) -> None:
        with self._lock:
            self._cursor = (self._cursor + 1) % len(self._endpoints)

    def __len__(self) -> int:
        return len(self._endpoints)


def parse_endpoint(value: str) -> DeliveryEndpoint:
    """Parse ``ID:TOKEN`` or a full webhook URL into an endpoint."""

    text = value.strip()
    if not text:
        raise ValueError("Empty webhook credential")
    match = _WEBHOOK_URL_RE.search(text)
    if match:
        return DeliveryEndpoint(id=match.group("id"), token=match.group("token"))
    endpoint_id, sep, token = text.partition(":")
    endpoint_id = endpoint_id.strip()
    token = token.strip()
    if not sep or not endpoint_id.isdigit() or not token:
        raise ValueError(f"Invalid webhook credential: expected ID:TOKEN, got {text[:24]!r}")
    return DeliveryEndpoint(id=endpoint_id, token=token)


def parse_endpoints(values: Iterable[str]) -> list[DeliveryEndpoint]:
    """Parse credentials, splitting comma separated entries and skipping blanks."""

    endpoints: list[DeliveryEndpoint] = []
    seen: set[str] = set()
    for raw in values:
        for chunk in (raw or "").split(","):
            if not chunk.strip():
                continue
            endpoint = parse_endpoint(chunk)
            if endpoint.id in seen:
                continue
            seen.add(endpoint.id)
            endpoints.append(endpoint)
    return endpoints
