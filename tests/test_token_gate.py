"""
Tests for the token refresh cache gate.

This module tests reuse of saved tokens, refresh body construction, the
refresh call error kinds and what is written to the token store.
"""

import json
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

from jose import jwt

from refresh_gate.auth.token_gate import TokenRefreshGate
from refresh_gate.auth.token_storage import InMemoryTokenStore
from refresh_gate.shared.exceptions import (
    RefreshGateError, ConfigurationError, NetworkError, HttpStatusError,
    EmptyResponseError, ParseError, StorageError, ErrorCode
)
from refresh_gate.shared.models import RefreshParameters, TokenEndpointResponse

STORAGE_KEY = "conf:/repository/connectors/salesforce/accessToken"


def _ok(payload, status=200, reason="OK"):
    return TokenEndpointResponse(status=status, reason=reason, body=json.dumps(payload))


@pytest.fixture
def store():
    return InMemoryTokenStore()


@pytest.fixture
def http_client():
    client = AsyncMock()
    client.post_form.return_value = _ok({
        'access_token': 'new-access-token',
        'instance_url': 'https://na1.example.com',
    })
    return client


@pytest.fixture
def gate(store, http_client):
    return TokenRefreshGate(store, http_client, audit_logger=Mock(), clock=lambda: "1700000000000")


@pytest.fixture
def params():
    return RefreshParameters(
        host="https://login.example.com",
        client_id="c1",
        client_secret="s1",
        refresh_token="r1",
    )


class TestRefreshBody:
    """Test construction of the refresh call body."""

    def test_full_body(self, params):
        body = TokenRefreshGate.build_refresh_body(params)
        assert body == "grant_type=refresh_token&client_id=c1&client_secret=s1&refresh_token=r1&format=json"

    def test_optional_client_credentials_omitted(self):
        body = TokenRefreshGate.build_refresh_body(RefreshParameters(refresh_token="r1"))
        assert body == "grant_type=refresh_token&refresh_token=r1&format=json"

    def test_client_id_without_secret(self):
        body = TokenRefreshGate.build_refresh_body(RefreshParameters(client_id="c1", refresh_token="r1"))
        assert body == "grant_type=refresh_token&client_id=c1&refresh_token=r1&format=json"

    def test_custom_url_used_verbatim(self, params):
        custom = "grant_type=refresh_token&refresh_token=x y&extra=1"
        body = TokenRefreshGate.build_refresh_body(
            RefreshParameters(refresh_token="ignored", client_id="c1", custom_url=custom)
        )
        assert body == custom

    def test_reserved_characters_are_form_encoded(self):
        body = TokenRefreshGate.build_refresh_body(RefreshParameters(refresh_token="a&b=c"))
        assert "refresh_token=a%26b%3Dc" in body

    def test_missing_refresh_token(self):
        with pytest.raises(ConfigurationError) as exc_info:
            TokenRefreshGate.build_refresh_body(RefreshParameters(client_id="c1"))
        assert exc_info.value.context['config_key'] == 'refresh_token'


class TestReuse:
    """Test reuse of saved tokens."""

    def test_returns_saved_token_without_network_call(self, gate, store, http_client):
        store.put(STORAGE_KEY, "saved-token", metadata={'timestamp': '1600000000000'})

        record = gate.try_reuse(STORAGE_KEY)

        assert record.token == "saved-token"
        assert record.timestamp == '1600000000000'
        http_client.post_form.assert_not_called()

    def test_absent_key_returns_none(self, gate):
        assert gate.try_reuse(STORAGE_KEY) is None

    def test_expired_jwt_is_still_reused(self, gate, store):
        expired = jwt.encode(
            {'exp': int((datetime.now() - timedelta(hours=1)).timestamp())},
            'secret', algorithm='HS256'
        )
        store.put(STORAGE_KEY, expired)

        record = gate.try_reuse(STORAGE_KEY)

        assert record.token == expired
        assert record.expires_at < datetime.now()

    def test_out_of_range_jwt_exp_is_still_reused(self, gate, store):
        token = jwt.encode({'exp': 10 ** 13}, 'secret', algorithm='HS256')
        store.put(STORAGE_KEY, token)

        record = gate.try_reuse(STORAGE_KEY)

        assert record.token == token
        assert record.expires_at is None

    def test_missing_storage_key(self, gate):
        with pytest.raises(ConfigurationError, match="registry path not provided"):
            gate.try_reuse("")

    @pytest.mark.asyncio
    async def test_get_token_prefers_saved_token(self, gate, store, http_client, params):
        store.put(STORAGE_KEY, "saved-token")

        record = await gate.get_token(params, STORAGE_KEY)

        assert record.token == "saved-token"
        http_client.post_form.assert_not_called()


class TestRefresh:
    """Test the refresh call and token persistence."""

    @pytest.mark.asyncio
    async def test_successful_refresh_stores_token(self, gate, store, http_client, params):
        record = await gate.refresh(params, STORAGE_KEY)

        assert record.token == "new-access-token"
        assert record.api_base_url == "https://na1.example.com"
        assert record.timestamp == "1700000000000"

        entry = store.get(STORAGE_KEY)
        assert entry.value == "new-access-token"
        assert entry.media_type == "text/plain"
        assert entry.metadata == {'timestamp': '1700000000000'}

        http_client.post_form.assert_awaited_once_with(
            "https://login.example.com/services/oauth2/token",
            "grant_type=refresh_token&client_id=c1&client_secret=s1&refresh_token=r1&format=json",
        )

    @pytest.mark.asyncio
    async def test_get_token_refreshes_when_nothing_saved(self, gate, store, params):
        record = await gate.get_token(params, STORAGE_KEY)

        assert record.token == "new-access-token"
        assert store.get(STORAGE_KEY).value == "new-access-token"

    @pytest.mark.asyncio
    async def test_explicit_token_endpoint_wins_over_host(self, gate, http_client):
        params = RefreshParameters(
            host="https://ignored.example.com",
            token_endpoint_url="https://idp.example.com/oauth/token",
            refresh_token="r1",
        )

        await gate.refresh(params, STORAGE_KEY)

        assert http_client.post_form.await_args.args[0] == "https://idp.example.com/oauth/token"

    @pytest.mark.asyncio
    async def test_custom_url_is_posted_verbatim(self, gate, http_client):
        params = RefreshParameters(host="https://login.example.com", custom_url="custom=body")

        await gate.refresh(params, STORAGE_KEY)

        assert http_client.post_form.await_args.args[1] == "custom=body"

    @pytest.mark.asyncio
    async def test_instance_url_is_optional(self, gate, http_client, params):
        http_client.post_form.return_value = _ok({'access_token': 'tok'})

        record = await gate.refresh(params, STORAGE_KEY)

        assert record.token == 'tok'
        assert record.api_base_url is None

    @pytest.mark.asyncio
    async def test_expires_in_sets_informational_expiry(self, gate, http_client, params):
        http_client.post_form.return_value = _ok({'access_token': 'tok', 'expires_in': 3600})

        record = await gate.refresh(params, STORAGE_KEY)

        assert record.expires_at > datetime.now() + timedelta(minutes=59)

    @pytest.mark.asyncio
    async def test_missing_access_token_is_parse_error(self, gate, store, http_client, params):
        http_client.post_form.return_value = _ok({'instance_url': 'https://na1.example.com'})

        with pytest.raises(ParseError) as exc_info:
            await gate.refresh(params, STORAGE_KEY)

        assert exc_info.value.error_code == ErrorCode.PARSE_MISSING_FIELD
        assert store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_malformed_json_is_parse_error(self, gate, store, http_client, params):
        http_client.post_form.return_value = TokenEndpointResponse(200, "OK", "<html>not json</html>")

        with pytest.raises(ParseError) as exc_info:
            await gate.refresh(params, STORAGE_KEY)

        assert exc_info.value.error_code == ErrorCode.PARSE_INVALID_JSON
        assert store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_non_object_json_is_parse_error(self, gate, http_client, params):
        http_client.post_form.return_value = TokenEndpointResponse(200, "OK", '["access_token"]')

        with pytest.raises(ParseError):
            await gate.refresh(params, STORAGE_KEY)

    @pytest.mark.asyncio
    async def test_404_is_http_status_error(self, gate, store, http_client, params):
        http_client.post_form.return_value = TokenEndpointResponse(404, "Not Found", "")

        with pytest.raises(HttpStatusError) as exc_info:
            await gate.refresh(params, STORAGE_KEY)

        error = exc_info.value
        assert error.status == 404
        assert "404" in str(error)
        assert "Not Found" in str(error)
        assert store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_400_with_json_body_is_still_rejected(self, gate, http_client, params):
        http_client.post_form.return_value = _ok(
            {'error': 'invalid_grant', 'access_token': 'should-not-be-used'},
            status=400, reason="Bad Request"
        )

        with pytest.raises(HttpStatusError, match="HTTP Status code 400. Bad Request"):
            await gate.refresh(params, STORAGE_KEY)

    @pytest.mark.asyncio
    async def test_5xx_is_network_error(self, gate, store, http_client, params):
        http_client.post_form.return_value = _ok(
            {'access_token': 'should-not-be-used'}, status=503, reason="Service Unavailable"
        )

        with pytest.raises(NetworkError) as exc_info:
            await gate.refresh(params, STORAGE_KEY)

        assert exc_info.value.error_code == ErrorCode.NETWORK_SERVER_ERROR
        assert exc_info.value.context['status'] == 503
        assert store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_out_of_range_expires_in_is_ignored(self, gate, store, http_client, params):
        http_client.post_form.return_value = _ok({'access_token': 'tok', 'expires_in': 10 ** 12})

        record = await gate.refresh(params, STORAGE_KEY)

        assert record.token == 'tok'
        assert record.expires_at is None
        assert store.get(STORAGE_KEY).value == 'tok'

    @pytest.mark.asyncio
    async def test_out_of_range_jwt_exp_is_ignored(self, gate, store, http_client, params):
        token = jwt.encode({'exp': 10 ** 13}, 'secret', algorithm='HS256')
        http_client.post_form.return_value = _ok({'access_token': token})

        record = await gate.refresh(params, STORAGE_KEY)

        assert record.expires_at is None
        assert store.get(STORAGE_KEY).value == token

    @pytest.mark.asyncio
    async def test_unexpected_error_is_structured(self, store, http_client, params):
        audit_logger = Mock()
        gate = TokenRefreshGate(store, http_client, audit_logger=audit_logger)
        failure = RuntimeError("boom")
        http_client.post_form.side_effect = failure

        with pytest.raises(RefreshGateError) as exc_info:
            await gate.refresh(params, STORAGE_KEY)

        assert exc_info.value.error_code == ErrorCode.INTERNAL_UNEXPECTED_ERROR
        assert exc_info.value.context['storage_key'] == STORAGE_KEY
        assert exc_info.value.__cause__ is failure
        assert audit_logger.log_token_refresh.call_args.kwargs['success'] is False

    @pytest.mark.asyncio
    async def test_missing_response_message(self, gate, http_client, params):
        http_client.post_form.return_value = TokenEndpointResponse(200, None, '{"access_token": "t"}')

        with pytest.raises(EmptyResponseError):
            await gate.refresh(params, STORAGE_KEY)

    @pytest.mark.asyncio
    async def test_empty_body(self, gate, store, http_client, params):
        http_client.post_form.return_value = TokenEndpointResponse(200, "OK", "   ")

        with pytest.raises(EmptyResponseError):
            await gate.refresh(params, STORAGE_KEY)
        assert store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, gate, store, http_client, params):
        http_client.post_form.side_effect = NetworkError("connection refused")

        with pytest.raises(NetworkError):
            await gate.refresh(params, STORAGE_KEY)

        assert http_client.post_form.await_count == 1
        assert store.get(STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, http_client, params):
        failing_store = Mock()
        failing_store.put.side_effect = StorageError("disk full", storage_key=STORAGE_KEY)
        gate = TokenRefreshGate(failing_store, http_client, audit_logger=Mock())

        with pytest.raises(StorageError):
            await gate.refresh(params, STORAGE_KEY)

    @pytest.mark.asyncio
    async def test_missing_storage_key(self, gate, http_client, params):
        with pytest.raises(ConfigurationError):
            await gate.refresh(params, None)
        http_client.post_form.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, gate, http_client):
        with pytest.raises(ConfigurationError) as exc_info:
            await gate.refresh(RefreshParameters(refresh_token="r1"), STORAGE_KEY)

        assert exc_info.value.context['config_key'] == 'token_endpoint_url'
        http_client.post_form.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_is_audited(self, store, http_client, params):
        audit_logger = Mock()
        gate = TokenRefreshGate(store, http_client, audit_logger=audit_logger)
        http_client.post_form.return_value = TokenEndpointResponse(401, "Unauthorized", "")

        with pytest.raises(HttpStatusError):
            await gate.refresh(params, STORAGE_KEY)

        audit_logger.log_token_refresh.assert_called_once()
        assert audit_logger.log_token_refresh.call_args.kwargs['success'] is False

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, gate, store, http_client, params):
        store.put(STORAGE_KEY, "old-token")

        await gate.refresh(params, STORAGE_KEY)

        assert store.get(STORAGE_KEY).value == "new-access-token"


class TestInvalidate:
    """Test removal of saved tokens."""

    def test_invalidate_removes_token(self, gate, store):
        store.put(STORAGE_KEY, "saved-token")

        assert gate.invalidate(STORAGE_KEY) is True
        assert gate.try_reuse(STORAGE_KEY) is None

    def test_invalidate_absent_token(self, gate):
        assert gate.invalidate(STORAGE_KEY) is False
