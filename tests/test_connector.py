"""
Tests for the message-context connector.

This module tests how ``uri.var.*`` properties are mapped onto the token gate
and how the resulting token is published back into the context.
"""

import json
import pytest
from unittest.mock import AsyncMock, Mock

from refresh_gate.auth.token_gate import TokenRefreshGate
from refresh_gate.auth.token_storage import InMemoryTokenStore
from refresh_gate.connector import (
    RefreshAccessTokenConnector, parameters_from_context,
    ACCESS_TOKEN, API_URL, ACCESS_TOKEN_REGISTRY_PATH
)
from refresh_gate.shared.exceptions import ConfigurationError, HttpStatusError
from refresh_gate.shared.models import TokenEndpointResponse

REGISTRY_PATH = "conf:/repository/esb/connectors/salesforce/accessToken"


@pytest.fixture
def store():
    return InMemoryTokenStore()


@pytest.fixture
def http_client():
    client = AsyncMock()
    client.post_form.return_value = TokenEndpointResponse(
        200, "OK", json.dumps({'access_token': 'fresh', 'instance_url': 'https://na9.example.com'})
    )
    return client


@pytest.fixture
def connector(store, http_client):
    return RefreshAccessTokenConnector(TokenRefreshGate(store, http_client, audit_logger=Mock()))


@pytest.fixture
def context():
    return {
        'uri.var.hostName': 'https://login.example.com',
        'uri.var.clientId': 'c1',
        'uri.var.clientSecret': 's1',
        'uri.var.refreshToken': 'r1',
        'uri.var.accessTokenRegistryPath': REGISTRY_PATH,
        'Accept-Encoding': 'gzip',
        'Cache-Control': 'no-cache',
        'Pragma': 'no-cache',
    }


def test_parameters_from_context(context):
    params = parameters_from_context(context)

    assert params.host == 'https://login.example.com'
    assert params.client_id == 'c1'
    assert params.client_secret == 's1'
    assert params.refresh_token == 'r1'
    assert params.custom_url is None
    assert params.resolve_token_endpoint() == 'https://login.example.com/services/oauth2/token'


def test_empty_properties_are_treated_as_absent(context):
    context['uri.var.clientSecret'] = ''

    assert parameters_from_context(context).client_secret is None


@pytest.mark.asyncio
async def test_connect_refreshes_and_publishes_token(connector, context, store, http_client):
    record = await connector.connect(context)

    assert record.token == 'fresh'
    assert context[ACCESS_TOKEN] == 'fresh'
    assert context[API_URL] == 'https://na9.example.com'
    assert store.get(REGISTRY_PATH).value == 'fresh'
    assert 'Accept-Encoding' not in context
    assert 'Cache-Control' not in context
    assert 'Pragma' not in context
    http_client.post_form.assert_awaited_once()


@pytest.mark.asyncio
async def test_connect_reuses_saved_token(connector, context, store, http_client):
    store.put(REGISTRY_PATH, 'saved')

    await connector.connect(context)

    assert context[ACCESS_TOKEN] == 'saved'
    assert API_URL not in context
    http_client.post_form.assert_not_called()


@pytest.mark.asyncio
async def test_connect_requires_registry_path(connector, context, http_client):
    del context[ACCESS_TOKEN_REGISTRY_PATH]

    with pytest.raises(ConfigurationError, match="registry path not provided"):
        await connector.connect(context)

    http_client.post_form.assert_not_called()


@pytest.mark.asyncio
async def test_connect_failure_leaves_token_unset(connector, context, http_client):
    http_client.post_form.return_value = TokenEndpointResponse(401, "Unauthorized", "")

    with pytest.raises(HttpStatusError):
        await connector.connect(context)

    assert ACCESS_TOKEN not in context
    assert 'Cache-Control' not in context


def test_reuse_saved_access_token(connector, context, store):
    assert connector.reuse_saved_access_token(context) is True
    assert ACCESS_TOKEN not in context

    store.put(REGISTRY_PATH, 'saved')

    assert connector.reuse_saved_access_token(context) is False
    assert context[ACCESS_TOKEN] == 'saved'
