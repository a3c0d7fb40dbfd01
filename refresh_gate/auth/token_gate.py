"""
Token Refresh Cache Gate.

This module decides whether a saved access token can be reused and, when it
cannot, performs an OAuth2 refresh-token call against the token endpoint and
saves the new token to the token store.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional, Callable, Tuple
from urllib.parse import urlencode

from jose import jwt, JWTError

from refresh_gate.shared.exceptions import (
    RefreshGateError, ConfigurationError, NetworkError, HttpStatusError,
    EmptyResponseError, ParseError, ErrorCode, handle_exception
)
from refresh_gate.shared.interfaces import ITokenStore, ITokenEndpointClient
from refresh_gate.shared.logging_config import AuditLogger, OperationLogger, log_structured_error
from refresh_gate.shared.models import (
    RefreshParameters, TokenRecord, TEXT_PLAIN, TIMESTAMP_METADATA_KEY
)

logger = logging.getLogger(__name__)


def _current_millis() -> str:
    return str(int(time.time() * 1000))


class TokenRefreshGate:
    """
    Reuses or refreshes OAuth2 access tokens.

    The token store and the token endpoint client are injected. Reuse only
    checks that a token is present under the key; expiry is never consulted.
    Concurrent refreshes for the same key are not coordinated, the last write
    wins.
    """

    def __init__(
        self,
        token_store: ITokenStore,
        http_client: ITokenEndpointClient,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], str] = _current_millis
    ):
        self.token_store = token_store
        self.http_client = http_client
        self.audit_logger = audit_logger or AuditLogger()
        self.operation_logger = OperationLogger()
        self._clock = clock

    @staticmethod
    def _require_storage_key(storage_key: Optional[str]) -> str:
        if not storage_key:
            raise ConfigurationError(
                "Access token registry path not provided for access token storage and reuse.",
                config_key="storage_key",
            )
        return storage_key

    def try_reuse(self, storage_key: str) -> Optional[TokenRecord]:
        """
        Look up a saved token.

        Args:
            storage_key: Key the token was saved under

        Returns:
            The saved token, or None when nothing is stored under the key
        """
        storage_key = self._require_storage_key(storage_key)

        entry = self.token_store.get(storage_key)
        if entry is None or not entry.value:
            logger.debug(f"No saved access token under {storage_key}")
            return None

        self.audit_logger.log_token_reuse(storage_key)
        return TokenRecord(
            token=entry.value,
            timestamp=entry.metadata.get(TIMESTAMP_METADATA_KEY),
            expires_at=self._parse_token_expiration(entry.value),
        )

    @staticmethod
    def build_refresh_body(params: RefreshParameters) -> str:
        """
        Build the form body of the refresh call.

        A custom URL replaces the whole body verbatim. Otherwise the body is
        ``grant_type=refresh_token[&client_id=..][&client_secret=..]&refresh_token=..&format=json``.
        """
        if params.custom_url:
            return params.custom_url

        if not params.refresh_token:
            raise ConfigurationError(
                "Refresh token not provided for the refresh access token call",
                config_key="refresh_token",
            )

        fields = [('grant_type', 'refresh_token')]
        if params.client_id:
            fields.append(('client_id', params.client_id))
        if params.client_secret:
            fields.append(('client_secret', params.client_secret))
        fields.append(('refresh_token', params.refresh_token))
        fields.append(('format', 'json'))
        return urlencode(fields)

    async def refresh(self, params: RefreshParameters, storage_key: str) -> TokenRecord:
        """
        Call the token endpoint and save the new access token.

        Args:
            params: Refresh call inputs
            storage_key: Key the new token is saved under

        Returns:
            The new token record

        Raises:
            ConfigurationError: Missing storage key, endpoint or refresh token
            NetworkError: IO failure during the request or a 5xx answer
            HttpStatusError: The endpoint answered with a 4xx status
            EmptyResponseError: The endpoint answered without a message
            ParseError: The body is not JSON or lacks ``access_token``
            StorageError: The token could not be saved
        """
        storage_key = self._require_storage_key(storage_key)
        token_endpoint = params.resolve_token_endpoint()
        if not token_endpoint:
            raise ConfigurationError(
                "Token endpoint URL or host name not provided for the refresh access token call",
                config_key="token_endpoint_url",
            )

        body = self.build_refresh_body(params)

        operation_id = str(uuid.uuid4())
        started = time.monotonic()
        self.operation_logger.log_operation_start(
            "refresh_access_token", operation_id,
            context={'storage_key': storage_key, 'token_endpoint': token_endpoint}
        )

        try:
            response = await self.http_client.post_form(token_endpoint, body)

            if response.is_client_error:
                raise HttpStatusError(response.status, response.reason)
            if response.is_server_error:
                raise NetworkError(
                    "Error while executing POST request to refresh the access token",
                    error_code=ErrorCode.NETWORK_SERVER_ERROR,
                    context={'url': token_endpoint, 'status': response.status, 'reason': response.reason},
                )
            if response.reason is None or not response.body.strip():
                raise EmptyResponseError(context={'status': response.status})

            access_token, instance_url, expires_at = self._parse_response(response.body)

            timestamp = self._clock()
            self.token_store.put(
                storage_key,
                access_token,
                media_type=TEXT_PLAIN,
                metadata={TIMESTAMP_METADATA_KEY: timestamp},
            )

        except RefreshGateError as e:
            self._log_refresh_failure(e, storage_key, token_endpoint, operation_id, started)
            raise
        except Exception as e:
            error = handle_exception(e, context={'storage_key': storage_key, 'token_endpoint': token_endpoint})
            self._log_refresh_failure(error, storage_key, token_endpoint, operation_id, started)
            raise error from e

        self.audit_logger.log_token_refresh(storage_key, token_endpoint, success=True)
        self.operation_logger.log_operation_complete(operation_id, True, time.monotonic() - started)
        logger.info(f"Access token refreshed and saved under {storage_key}")

        return TokenRecord(
            token=access_token,
            timestamp=timestamp,
            api_base_url=instance_url,
            expires_at=expires_at,
        )

    async def get_token(self, params: RefreshParameters, storage_key: str) -> TokenRecord:
        """Return the saved token under the key, refreshing when none is saved."""
        saved = self.try_reuse(storage_key)
        if saved is not None:
            return saved
        return await self.refresh(params, storage_key)

    def invalidate(self, storage_key: str) -> bool:
        """
        Drop the saved token, for example after a downstream 401.

        Returns:
            True if a token was removed
        """
        storage_key = self._require_storage_key(storage_key)
        removed = self.token_store.delete(storage_key)
        self.audit_logger.log_token_invalidation(storage_key, removed)
        return removed

    def _log_refresh_failure(
        self,
        error: RefreshGateError,
        storage_key: str,
        token_endpoint: str,
        operation_id: str,
        started: float
    ) -> None:
        log_structured_error(logger, error, storage_key=storage_key)
        self.audit_logger.log_token_refresh(
            storage_key, token_endpoint, success=False, failure_reason=error.error_code.value
        )
        self.operation_logger.log_operation_complete(
            operation_id, False, time.monotonic() - started, error.message
        )

    def _parse_response(self, body: str) -> Tuple[str, Optional[str], Optional[datetime]]:
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ParseError("Error while processing the response message", cause=e)

        if not isinstance(payload, dict):
            raise ParseError("Refresh response is not a JSON object")

        access_token = payload.get('access_token')
        if not isinstance(access_token, str) or not access_token:
            raise ParseError(
                "Refresh response does not contain an access_token",
                error_code=ErrorCode.PARSE_MISSING_FIELD,
                field_name='access_token',
            )

        instance_url = payload.get('instance_url')
        if instance_url is not None:
            instance_url = str(instance_url)

        expires_at = None
        expires_in = payload.get('expires_in')
        if expires_in is not None:
            try:
                expires_at = datetime.now() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError, OverflowError):
                logger.warning(f"Ignoring non-numeric expires_in: {expires_in!r}")
        if expires_at is None:
            expires_at = self._parse_token_expiration(access_token)

        return access_token, instance_url, expires_at

    def _parse_token_expiration(self, token: str) -> Optional[datetime]:
        """
        Read the ``exp`` claim when the token is a JWT.

        Informational only, the gate never rejects a token on expiry.
        """
        if token.count('.') != 2:
            return None

        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError as e:
            logger.debug(f"Access token is not a readable JWT: {e}")
            return None

        exp = claims.get('exp')
        if not isinstance(exp, (int, float)):
            return None

        try:
            return datetime.fromtimestamp(exp)
        except (OverflowError, ValueError, OSError):
            logger.warning(f"Ignoring out-of-range exp claim: {exp!r}")
            return None
