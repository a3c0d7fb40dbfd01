"""
Message-context connector for the Refresh Gate.

Maps the ``uri.var.*`` properties of a mediation message context onto the
token gate. Set ``uri.var.hostName`` (or ``uri.var.tokenEndpointUrl``),
``uri.var.refreshToken`` and ``uri.var.accessTokenRegistryPath``; client id
and secret are optional. To send a different body set
``uri.var.customRefreshUrl``. After a successful call ``uri.var.accessToken``
and, when the endpoint returned one, ``uri.var.apiUrl`` are set for the
calls that follow.
"""

import logging
from typing import Any, MutableMapping, Optional

from refresh_gate.auth.token_gate import TokenRefreshGate
from refresh_gate.shared.models import RefreshParameters, TokenRecord

logger = logging.getLogger(__name__)

PROPERTY_PREFIX = "uri.var."

ACCESS_TOKEN_REGISTRY_PATH = PROPERTY_PREFIX + "accessTokenRegistryPath"
HOST_NAME = PROPERTY_PREFIX + "hostName"
TOKEN_ENDPOINT_URL = PROPERTY_PREFIX + "tokenEndpointUrl"
CLIENT_ID = PROPERTY_PREFIX + "clientId"
CLIENT_SECRET = PROPERTY_PREFIX + "clientSecret"
REFRESH_TOKEN = PROPERTY_PREFIX + "refreshToken"
CUSTOM_REFRESH_URL = PROPERTY_PREFIX + "customRefreshUrl"
ACCESS_TOKEN = PROPERTY_PREFIX + "accessToken"
API_URL = PROPERTY_PREFIX + "apiUrl"

# Transport headers dropped around the refresh call
PRE_REFRESH_REMOVED = ("Accept-Encoding",)
POST_REFRESH_REMOVED = ("Cache-Control", "Pragma")

MessageContext = MutableMapping[str, Any]


def _text(context: MessageContext, name: str) -> Optional[str]:
    value = context.get(name)
    if value is None:
        return None
    value = str(value)
    return value or None


def parameters_from_context(context: MessageContext) -> RefreshParameters:
    """Collect refresh call inputs from ``uri.var.*`` properties."""
    return RefreshParameters(
        host=_text(context, HOST_NAME),
        refresh_token=_text(context, REFRESH_TOKEN),
        client_id=_text(context, CLIENT_ID),
        client_secret=_text(context, CLIENT_SECRET),
        custom_url=_text(context, CUSTOM_REFRESH_URL),
        token_endpoint_url=_text(context, TOKEN_ENDPOINT_URL),
    )


class RefreshAccessTokenConnector:
    """Connector entry point invoked once per message."""

    def __init__(self, gate: TokenRefreshGate):
        self.gate = gate

    def reuse_saved_access_token(self, context: MessageContext) -> bool:
        """
        Copy a saved token into the context.

        Returns:
            True if a refresh is still needed, False if a saved token was set
        """
        saved = self.gate.try_reuse(_text(context, ACCESS_TOKEN_REGISTRY_PATH))
        if saved is None:
            return True

        context[ACCESS_TOKEN] = saved.token
        return False

    async def connect(self, context: MessageContext) -> TokenRecord:
        """
        Reuse the saved token or refresh it, then publish it in the context.

        Raises:
            ConfigurationError: When ``uri.var.accessTokenRegistryPath`` is missing
            RefreshGateError: Any refresh failure, unchanged
        """
        storage_key = _text(context, ACCESS_TOKEN_REGISTRY_PATH)

        for header in PRE_REFRESH_REMOVED:
            context.pop(header, None)

        logger.debug("Start : Refresh Access Token connector")
        try:
            record = await self.gate.get_token(parameters_from_context(context), storage_key)
        finally:
            for header in POST_REFRESH_REMOVED:
                context.pop(header, None)

        context[ACCESS_TOKEN] = record.token
        if record.api_base_url:
            context[API_URL] = record.api_base_url

        logger.debug("End : Refresh Access Token connector")
        return record
