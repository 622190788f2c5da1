"""
Webhook client
Performs webhook-block HTTP calls and maps responses into flow variables
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Any, Dict
import httpx

from ..core.config import settings
from ..flow.result import WebhookRequest
from ..flow.template import lookup_variable

logger = logging.getLogger(__name__)


@dataclass
class WebhookResponse:
    """Result of a webhook call; never raised, failures are data"""
    success: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None
    variable_updates: Dict[str, Any] = field(default_factory=dict)


def map_response(
    data: Any,
    response_mapping: Dict[str, str],
    status_code: Optional[int] = None,
    status_variable: Optional[str] = None
) -> Dict[str, Any]:
    """
    Pick values out of a JSON response.

    Args:
        data: Decoded JSON body
        response_mapping: variable name -> dot path in the body
        status_code: HTTP status of the call
        status_variable: Variable that receives the status code

    Returns:
        Variable updates (paths that do not resolve are skipped)
    """
    updates: Dict[str, Any] = {}

    if isinstance(data, dict):
        for variable, path in response_mapping.items():
            value = lookup_variable(data, path)
            if value is None:
                logger.debug(f"Webhook response has no value at '{path}'")
                continue
            updates[variable] = value

    if status_variable and status_code is not None:
        updates[status_variable] = status_code

    return updates


class WebhookClient:
    """Service for webhook-block calls"""

    def __init__(
        self,
        timeout: Optional[float] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.timeout = settings.WEBHOOK_TIMEOUT_SECONDS if timeout is None else timeout
        self.http_transport = http_transport

    async def call(self, request: WebhookRequest) -> WebhookResponse:
        """
        Execute a webhook call.

        Transport errors, malformed URLs and HTTP statuses >= 400 give an unsuccessful
        response; the status variable is still filled when a status exists.
        """
        method = (request.method or "POST").upper()
        timeout = request.timeout_seconds or self.timeout
        send_body = method not in ("GET", "DELETE") and request.body is not None

        try:
            async with httpx.AsyncClient(transport=self.http_transport) as client:
                response = await client.request(
                    method,
                    request.url,
                    headers=request.headers or None,
                    json=request.body if send_body else None,
                    timeout=timeout
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Webhook {method} {request.url} failed: {e}")
            return WebhookResponse(success=False, error=str(e))

        logger.info(f"Webhook {method} {request.url} - Status: {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = response.text[:1000]

        updates = map_response(
            data if response.status_code < 400 else None,
            request.response_mapping,
            response.status_code,
            request.status_variable,
        )

        if response.status_code >= 400:
            return WebhookResponse(
                success=False,
                status_code=response.status_code,
                data=data,
                error=f"HTTP {response.status_code}",
                variable_updates=updates,
            )

        return WebhookResponse(
            success=True,
            status_code=response.status_code,
            data=data,
            variable_updates=updates,
        )
