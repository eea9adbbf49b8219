import importlib.util
import sys

import httpx
import pytest

from conftest import ROOT


def _load_script():
    spec = importlib.util.spec_from_file_location(
        "trigger_token_refresh", ROOT / "scripts" / "trigger_token_refresh.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


script = _load_script()


async def test_trigger_refresh_posts_with_bearer_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "refreshed": 2, "failed": 0, "total": 3})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    result = await script.trigger_refresh("https://app.example.com/", "key-1", prefix="/auth/", client=client)

    assert result["refreshed"] == 2
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "https://app.example.com/auth/refresh-tokens"
    assert seen[0].headers["Authorization"] == "Bearer key-1"


async def test_trigger_refresh_raises_on_error_status():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    with pytest.raises(httpx.HTTPStatusError):
        await script.trigger_refresh("https://app.example.com", "bad", client=client)


def test_main_requires_api_key(monkeypatch):
    monkeypatch.delenv("TOKEN_REFRESH_API_KEY", raising=False)
    monkeypatch.setattr(sys, "argv", ["trigger_token_refresh.py"])
    with pytest.raises(SystemExit) as exc_info:
        script.main()
    assert exc_info.value.code == 1
