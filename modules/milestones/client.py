"""Milestone API client.

The update manager only depends on :class:`MilestoneApiClient`; the httpx
implementation below talks to the PipeTrak REST API. Every method returns
``{"data": <decoded JSON body>}`` and raises :class:`NetworkFailure` on
transport errors and non-2xx responses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from modules.milestones.errors import NetworkFailure

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)


class MilestoneApiClient(ABC):
    """Abstract network client used by the update manager."""

    @abstractmethod
    async def get(self, path: str) -> dict[str, Any]:
        """Fetch a resource."""

    @abstractmethod
    async def patch(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """Partially update a resource, e.g. ``/milestones/{id}``."""

    @abstractmethod
    async def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        """Submit a batch, e.g. ``/milestones/bulk-update`` or ``/milestones/sync``."""


class HttpMilestoneClient(MilestoneApiClient):
    """Async httpx client for the PipeTrak milestone API."""

    def __init__(self, base_url: str, token: str = "", timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"

    async def get(self, path: str) -> dict[str, Any]:
        return await self._request("GET", path)

    async def patch(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", path, body)

    async def post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", path, body)

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, url, json=body, headers=self._headers)
                resp.raise_for_status()
                return {"data": resp.json()}
        except httpx.HTTPStatusError as e:
            logger.error(
                "milestone_api_http_error",
                method=method,
                path=path,
                status=e.response.status_code,
                body=e.response.text,
            )
            raise NetworkFailure(
                f"Milestone API error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            logger.error("milestone_api_request_error", method=method, path=path, error=str(e))
            raise NetworkFailure(f"Failed to connect to milestone API: {e}") from e
        except ValueError as e:
            # Body was not JSON
            logger.error("milestone_api_decode_error", method=method, path=path, error=str(e))
            raise NetworkFailure(f"Invalid response from milestone API: {e}", permanent=True) from e


async def send(call: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    """Await a client call, treating any unexpected exception as a transport failure."""
    try:
        return await call
    except NetworkFailure:
        raise
    except Exception as e:
        raise NetworkFailure(str(e) or type(e).__name__) from e


def parse_data(response: dict[str, Any], model: type[ModelT]) -> ModelT:
    """Validate the ``data`` member of a client response into ``model``."""
    try:
        return model.model_validate(response["data"])
    except (KeyError, TypeError, ValidationError) as e:
        raise NetworkFailure(f"Unexpected {model.__name__} response: {e}", permanent=True) from e
