"""
Pytest configuration for contract tests

Provides an httpx client factory backed by MockTransport so fetch behavior
is tested against scripted HTTP exchanges instead of the network.
"""
import httpx
import pytest


@pytest.fixture
def mock_http():
    """
    Build an httpx.Client whose requests are answered by handler.

    Usage:
        client, requests = mock_http(lambda request: httpx.Response(200))

    Every request the client sends is appended to the returned list.
    """
    clients = []

    def factory(handler):
        requests = []

        def recording_handler(request):
            requests.append(request)
            return handler(request)

        client = httpx.Client(transport=httpx.MockTransport(recording_handler))
        clients.append(client)
        return client, requests

    yield factory

    for client in clients:
        client.close()
