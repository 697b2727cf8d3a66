"""
Centralized HTTP client for upstream AI providers.

One ``httpx.AsyncClient`` is shared by every request so connections are
pooled; nothing else is shared between requests.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from datamocker.config import PROVIDER_TIMEOUT_SECONDS
from datamocker.errors import ProviderError
from datamocker.providers import redact_url

# Setup logging
logger = logging.getLogger(__name__)

# Upstream error bodies are kept for diagnostics but trimmed
MAX_ERROR_BODY = 2000


class ProviderClient:
    """Sends prepared provider requests. No retries at this layer."""

    def __init__(self, timeout: float = PROVIDER_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self._client

    async def dispatch(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> str:
        """POST a JSON body and return the raw response text."""
        safe_url = redact_url(url)
        logger.info(f"Dispatching generation request to {safe_url}")
        try:
            response = await self._get_client().post(url, headers=headers, json=body)
        except httpx.TimeoutException as e:
            logger.error(f"Provider request to {safe_url} timed out after {self.timeout}s")
            raise ProviderError(f"AI provider timed out after {self.timeout:g} seconds") from e
        except httpx.HTTPError as e:
            logger.error(f"Provider request to {safe_url} failed: {type(e).__name__}: {e}")
            raise ProviderError(f"AI provider request failed: {e}") from e
        except (httpx.InvalidURL, ValueError) as e:
            # Bad endpoint or a header httpx cannot encode
            logger.error(f"Provider request to {safe_url} could not be sent: {type(e).__name__}: {e}")
            raise ProviderError(f"AI provider request could not be sent: {e}") from e

        if not response.is_success:
            text = response.text[:MAX_ERROR_BODY]
            logger.error(f"Provider {safe_url} returned {response.status_code}: {text}")
            raise ProviderError(
                f"AI API request failed: {response.status_code} {response.reason_phrase}\n{text}",
                upstream_status=response.status_code,
                upstream_body=text,
            )

        logger.info(f"Provider {safe_url} responded {response.status_code} ({len(response.content)} bytes)")
        return response.text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Create provider client (singleton to be imported by other modules)
provider_client = ProviderClient()
