"""
HTTP client for the OAuth2 token endpoint.

This module provides the aiohttp implementation of the token endpoint client
used by the Refresh Gate. Each call opens and closes its own session, so the
connection is released on every exit path, including errors.
"""

import asyncio
import logging
from typing import Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from refresh_gate import __version__
from refresh_gate.shared.exceptions import NetworkError, ParseError, ErrorCode
from refresh_gate.shared.interfaces import ITokenEndpointClient
from refresh_gate.shared.models import TokenEndpointResponse

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'


class AiohttpTokenEndpointClient(ITokenEndpointClient):
    """
    Token endpoint client backed by aiohttp.

    Does not retry and enforces no timeout beyond the session's
    ``ClientTimeout``.
    """

    def __init__(self, timeout: float = 30.0, user_agent: Optional[str] = None):
        self.timeout = ClientTimeout(total=timeout)
        self.user_agent = user_agent or f'RefreshGate/{__version__}'

    async def post_form(self, url: str, body: str) -> TokenEndpointResponse:
        """
        POST a form-encoded body to the token endpoint.

        Args:
            url: Token endpoint URL
            body: Already encoded form body

        Returns:
            Status, reason phrase and body text of the response

        Raises:
            NetworkError: On connection, IO or timeout failure
            ParseError: If the body cannot be decoded with its charset
        """
        logger.debug(f"Making POST request to {url}")

        try:
            async with ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': self.user_agent}
            ) as session:
                async with session.post(
                    url,
                    data=body.encode('utf-8'),
                    headers={'Content-Type': FORM_CONTENT_TYPE}
                ) as response:
                    try:
                        text = await response.text()
                    except UnicodeDecodeError as e:
                        if response.status < 400:
                            logger.warning(f"Undecodable response body from token endpoint {url}: {e}")
                            raise ParseError(
                                "Error while processing the response message",
                                context={'url': url, 'status': response.status},
                                cause=e,
                            )
                        # error statuses keep their own kind, the body is informational
                        text = await response.text(errors='replace')

                    logger.debug(f"Token endpoint answered {response.status} {response.reason}")
                    return TokenEndpointResponse(
                        status=response.status,
                        reason=response.reason,
                        body=text,
                    )

        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out calling token endpoint {url}")
            raise NetworkError(
                f"Timed out executing POST request to refresh the access token: {url}",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                context={'url': url},
                cause=e,
            )
        except (ClientError, OSError) as e:
            logger.warning(f"Network error calling token endpoint {url}: {e}")
            raise NetworkError(
                "Error while executing POST request to refresh the access token",
                context={'url': url},
                cause=e,
            )
