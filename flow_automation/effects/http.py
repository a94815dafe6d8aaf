"""
action.api_call - outbound HTTP request
"""
import logging
from typing import Any, Dict, Optional

import httpx

from flow_automation.effects.base import EffectContext, EffectExecutor, EffectResult
from flow_automation.flow_engine.nodes import ActionConfig

logger = logging.getLogger(__name__)

ALLOWED_METHODS = {'GET', 'POST', 'PUT', 'PATCH', 'DELETE'}


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ApiCallExecutor(EffectExecutor):
    """
    Calls an HTTP endpoint with httpx.

    Parameters: url (required), method (default POST), headers, query, body.
    5xx/429 responses and transport errors are retryable; other 4xx are not.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            client: Shared client (tests pass one built on httpx.MockTransport);
                a short-lived client is created per call otherwise
        """
        self.client = client

    async def execute(self, config: ActionConfig, input_data: Dict[str, Any], ctx: EffectContext) -> EffectResult:
        params = config.parameters
        url = params.get('url')
        if not url:
            return EffectResult.failed('url is required', retryable=False)

        method = str(params.get('method') or 'POST').upper()
        if method not in ALLOWED_METHODS:
            return EffectResult.failed(f"Unsupported HTTP method: {method}", retryable=False)

        headers = params.get('headers') or {'Content-Type': 'application/json'}
        body = params.get('body')
        query = params.get('query') or None

        ctx.write_log('info', f"{method} {url}")

        try:
            if self.client is not None:
                response = await self._send(self.client, method, url, headers, query, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._send(client, method, url, headers, query, body)

            response.raise_for_status()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            return EffectResult.failed(
                f"API error: {status} - {e.response.text[:500]}",
                retryable=_is_retryable_status(status),
            )
        except httpx.RequestError as e:
            return EffectResult.failed(f"Request to {url} failed: {e}", retryable=True)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        return EffectResult.ok({
            'status': response.status_code,
            'response': payload,
        })

    async def _send(self, client: httpx.AsyncClient, method, url, headers, query, body) -> httpx.Response:
        if method in ('GET', 'DELETE') or body is None:
            return await client.request(method, url, headers=headers, params=query)
        if isinstance(body, (dict, list)):
            return await client.request(method, url, headers=headers, params=query, json=body)
        return await client.request(method, url, headers=headers, params=query, content=str(body))
