"""
Streaming token exchange.

Trades the caller's session token for a short-lived streaming token and the
gateway URL it is valid for. No retries here; retry policy belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from quotestream.feed.config import ApiConfig
from quotestream.feed.errors import NotEntitledError, TokenExchangeError
from quotestream.feed.types import StreamingCredential

logger = logging.getLogger(__name__)

QUOTE_TOKEN_PATH = "/api-quote-tokens"
NOT_ENTITLED_CODE = "quote_streamer.customer_not_found_error"


class _QuoteTokenData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    token: str
    dxlink_url: str = Field(alias="dxlink-url")
    level: Optional[str] = None


class _QuoteTokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: _QuoteTokenData


class StreamingTokenClient:
    """
    Fetches streaming credentials over HTTP.

    Usage:
        async with aiohttp.ClientSession() as http:
            tokens = StreamingTokenClient(http, ApiConfig(), session_token)
            credential = await tokens.fetch()
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: ApiConfig,
        session_token: str,
        name: str = "tokens",
    ) -> None:
        self._session = session
        self._config = config
        self._session_token = session_token
        self._name = name

    async def fetch(self) -> StreamingCredential:
        """
        Request a streaming token.

        Raises:
            NotEntitledError: The account is not entitled to streaming quotes
            TokenExchangeError: Any other HTTP, network or payload failure
        """
        url = self._config.url(QUOTE_TOKEN_PATH)
        timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)

        try:
            async with self._session.get(
                url,
                headers=self._config.auth_headers(self._session_token),
                timeout=timeout,
            ) as response:
                status = response.status
                if status == 403:
                    code = await self._error_code(response)
                    if code == NOT_ENTITLED_CODE:
                        logger.warning(f"[{self._name}] Account not entitled to streaming quotes")
                        raise NotEntitledError(error_code=code, component="StreamingTokenClient")

                if not 200 <= status < 300:
                    raise TokenExchangeError(
                        f"Failed to get streaming token: {status}",
                        status=status,
                        component="StreamingTokenClient",
                    )

                payload = await response.json(content_type=None)

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TokenExchangeError(
                f"Streaming token request failed: {e!r}",
                component="StreamingTokenClient",
            ) from e

        try:
            parsed = _QuoteTokenResponse.model_validate(payload)
        except ValidationError as e:
            raise TokenExchangeError(
                "Malformed streaming token response",
                status=status,
                component="StreamingTokenClient",
                details={"errors": e.error_count()},
            ) from e

        credential = StreamingCredential(
            token=parsed.data.token,
            gateway_url=parsed.data.dxlink_url,
            level=parsed.data.level,
        )
        logger.info(
            f"[{self._name}] Streaming token acquired "
            f"(gateway={credential.gateway_url}, level={credential.level})"
        )
        return credential

    async def _error_code(self, response: Any) -> Optional[str]:
        """Best-effort extraction of error.code from an error body."""
        try:
            body = await response.json(content_type=None)
        except (ValueError, aiohttp.ContentTypeError):
            return None
        if not isinstance(body, dict):
            return None
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            return code if isinstance(code, str) else None
        return None
