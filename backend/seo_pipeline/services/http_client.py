from typing import Any, Optional

import httpx

from ..errors import ExternalServiceError, RateLimitError


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("message") or body.get("error")
        if detail:
            return f"HTTP {response.status_code}: {detail}"
    return f"HTTP {response.status_code}"


async def post_json(client: httpx.AsyncClient, path: str, payload: dict, service: str) -> Any:
    """
    POSTs ``payload`` and returns the decoded JSON body.

    Transport and HTTP failures are raised as service errors whose message
    keeps the markers the retry classifier looks for ("timeout", status code).
    """
    try:
        response = await client.post(path, json=payload)
    except httpx.TimeoutException as e:
        raise ExternalServiceError(service, f"request timeout ({e.__class__.__name__})") from e
    except httpx.RequestError as e:
        raise ExternalServiceError(service, str(e) or e.__class__.__name__) from e

    if response.status_code == 429:
        raise RateLimitError(service, _retry_after(response))
    if response.is_error:
        raise ExternalServiceError(service, _error_message(response))

    try:
        return response.json()
    except ValueError as e:
        raise ExternalServiceError(service, "invalid JSON response") from e


async def get_text(client: httpx.AsyncClient, url: str, service: str) -> str:
    try:
        response = await client.get(url)
    except httpx.TimeoutException as e:
        raise ExternalServiceError(service, f"request timeout ({e.__class__.__name__})") from e
    except httpx.RequestError as e:
        raise ExternalServiceError(service, str(e) or e.__class__.__name__) from e

    if response.status_code == 429:
        raise RateLimitError(service, _retry_after(response))
    if response.is_error:
        raise ExternalServiceError(service, _error_message(response))
    return response.text
