import asyncio
import json

import httpx
import pytest

from etl.importer.dispatch import SECRET_HEADER, HttpContinuationDispatcher, NullDispatcher
from etl.importer.errors import DispatchError


def _dispatch(handler, base_url="imports.example.com", secret="s3cret"):
    requests = []

    def _record(request):
        requests.append(request)
        return handler(request)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_record)) as client:
            dispatcher = HttpContinuationDispatcher(base_url, secret=secret, client=client)
            await dispatcher.dispatch(12)

    asyncio.run(_run())
    return requests


def test_posts_import_id_to_trigger_endpoint():
    requests = _dispatch(lambda request: httpx.Response(200, json={"success": True}))

    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://imports.example.com/api/trigger-import"
    assert request.headers[SECRET_HEADER] == "s3cret"
    assert json.loads(request.content) == {"importId": 12}


def test_secret_header_is_omitted_when_unset():
    requests = _dispatch(lambda request: httpx.Response(200), base_url="http://localhost:8000/", secret=None)

    assert str(requests[0].url) == "http://localhost:8000/api/trigger-import"
    assert SECRET_HEADER not in requests[0].headers


def test_non_success_status_raises():
    with pytest.raises(DispatchError, match="HTTP 503: busy"):
        _dispatch(lambda request: httpx.Response(503, text="busy"))


def test_transport_error_raises():
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DispatchError, match="continuation request failed"):
        _dispatch(_refuse)


def test_base_url_is_required():
    with pytest.raises(ValueError):
        HttpContinuationDispatcher("")


def test_null_dispatcher_does_nothing():
    assert asyncio.run(NullDispatcher().dispatch(1)) is None
