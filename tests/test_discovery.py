"""Tests for the OpenID discovery cache."""

import httpx
import pytest

from bffauth.service.discovery import OpenIDDiscovery
from bffauth.service.errors import DiscoveryError
from conftest import ISSUER, FakeClock

WELL_KNOWN = "/.well-known/openid-configuration"


async def test_configuration_is_cached(idp, http_client):
    discovery = OpenIDDiscovery(ISSUER, http_client)
    first = await discovery.get_configuration()
    second = await discovery.get_configuration()
    assert first is second
    assert first.token_endpoint == f"{ISSUER}/oauth/token"
    assert idp.count(WELL_KNOWN) == 1


async def test_cache_expires_after_ttl(idp, http_client):
    clock = FakeClock(now=0)
    discovery = OpenIDDiscovery(ISSUER, http_client, ttl_seconds=3600, clock=clock)
    await discovery.get_configuration()
    clock.advance(3599)
    await discovery.get_configuration()
    assert idp.count(WELL_KNOWN) == 1
    clock.advance(2)
    await discovery.get_configuration()
    assert idp.count(WELL_KNOWN) == 2


async def test_trailing_slash_on_issuer(idp, http_client):
    discovery = OpenIDDiscovery(ISSUER + "/", http_client)
    assert discovery.url == f"{ISSUER}{WELL_KNOWN}"


async def test_bad_status_raises(idp, http_client):
    idp.discovery_status = 503
    discovery = OpenIDDiscovery(ISSUER, http_client)
    with pytest.raises(DiscoveryError) as exc_info:
        await discovery.get_configuration()
    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "failed to fetch configuration"


async def test_failures_are_not_cached(idp, http_client):
    idp.discovery_status = 503
    discovery = OpenIDDiscovery(ISSUER, http_client)
    with pytest.raises(DiscoveryError):
        await discovery.get_configuration()
    idp.discovery_status = 200
    assert (await discovery.get_configuration()).issuer == ISSUER


async def test_invalid_document_raises():
    def handler(request):
        return httpx.Response(200, text="<html>not json</html>")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(DiscoveryError):
        await OpenIDDiscovery(ISSUER, client).get_configuration()


async def test_missing_endpoints_raise():
    def handler(request):
        return httpx.Response(200, json={"issuer": ISSUER})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(DiscoveryError):
        await OpenIDDiscovery(ISSUER, client).get_configuration()


async def test_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(DiscoveryError) as exc_info:
        await OpenIDDiscovery(ISSUER, client).get_configuration()
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
