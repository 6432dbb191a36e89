import json

import httpx
import pytest

from yueke.services.wechat_service import WechatSubscribeSender, mask_openid

pytestmark = pytest.mark.anyio("asyncio")

DATA = {"thing41": {"value": "网球课"}, "time43": {"value": "2025-06-03 09:00 - 10:00"}}


class MemoryCache:
    def __init__(self, initial=None):
        self.store = dict(initial or {})

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value

    async def delete(self, key):
        self.store.pop(key, None)


class Gateway:
    """模拟微信网关，记录请求"""

    def __init__(self, send_errcodes=(0,), token="token-1"):
        self.send_errcodes = list(send_errcodes)
        self.token = token
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/cgi-bin/token":
            return httpx.Response(200, json={"access_token": self.token, "expires_in": 7200})
        errcode = self.send_errcodes.pop(0) if self.send_errcodes else 0
        return httpx.Response(200, json={"errcode": errcode, "errmsg": "ok" if errcode == 0 else "error"})

    def paths(self):
        return [r.url.path for r in self.requests]


def make_sender(gateway, cache=None):
    return WechatSubscribeSender(cache=cache or MemoryCache(), transport=httpx.MockTransport(gateway), dry_run=False)


async def test_dry_run_skips_gateway():
    gateway = Gateway()
    sender = WechatSubscribeSender(cache=MemoryCache(), transport=httpx.MockTransport(gateway), dry_run=True)
    result = await sender.send("tmpl", "openid", DATA)
    assert result.success
    assert gateway.requests == []


async def test_send_fetches_and_caches_token():
    gateway = Gateway()
    cache = MemoryCache()
    sender = make_sender(gateway, cache)

    result = await sender.send("tmpl", "openid-1", DATA, "pages/courseDetail/courseDetail?id=7")

    assert result.success
    assert gateway.paths() == ["/cgi-bin/token", "/cgi-bin/message/subscribe/send"]
    assert cache.store[sender.cache_key] == "token-1"
    send_request = gateway.requests[1]
    assert send_request.url.params["access_token"] == "token-1"
    assert json.loads(send_request.content) == {
        "touser": "openid-1",
        "template_id": "tmpl",
        "data": DATA,
        "page": "pages/courseDetail/courseDetail?id=7",
    }


async def test_cached_token_is_reused():
    gateway = Gateway()
    cache = MemoryCache()
    sender = make_sender(gateway, cache)
    cache.store[sender.cache_key] = "cached"

    await sender.send("tmpl", "openid-1", DATA)

    assert gateway.paths() == ["/cgi-bin/message/subscribe/send"]
    assert gateway.requests[0].url.params["access_token"] == "cached"


async def test_invalid_token_is_refreshed_once():
    gateway = Gateway(send_errcodes=[40001, 0], token="fresh")
    cache = MemoryCache()
    sender = make_sender(gateway, cache)
    cache.store[sender.cache_key] = "stale"

    result = await sender.send("tmpl", "openid-1", DATA)

    assert result.success
    assert gateway.paths() == [
        "/cgi-bin/message/subscribe/send",
        "/cgi-bin/token",
        "/cgi-bin/message/subscribe/send",
    ]
    assert gateway.requests[2].url.params["access_token"] == "fresh"


async def test_gateway_error_is_returned():
    gateway = Gateway(send_errcodes=[43101])
    result = await make_sender(gateway).send("tmpl", "openid-1", DATA)
    assert not result.success
    assert result.error_code == "43101"


async def test_empty_field_is_rejected_before_request():
    gateway = Gateway()
    result = await make_sender(gateway).send("tmpl", "openid-1", {"thing4": {"value": "  "}})
    assert result.error_code == "INVALID_DATA"
    assert gateway.requests == []


async def test_network_error_is_returned():
    def broken(request):
        if request.url.path == "/cgi-bin/token":
            return httpx.Response(200, json={"access_token": "t"})
        raise httpx.ConnectError("connection refused", request=request)

    sender = WechatSubscribeSender(cache=MemoryCache(), transport=httpx.MockTransport(broken), dry_run=False)
    result = await sender.send("tmpl", "openid-1", DATA)
    assert result.error_code == "HTTP_ERROR"


async def test_token_failure():
    def denied(request):
        return httpx.Response(200, json={"errcode": 40013, "errmsg": "invalid appid"})

    sender = WechatSubscribeSender(cache=MemoryCache(), transport=httpx.MockTransport(denied), dry_run=False)
    result = await sender.send("tmpl", "openid-1", DATA)
    assert result.error_code == "NO_ACCESS_TOKEN"


def test_mask_openid():
    assert mask_openid("oABCDEFGHIJK") == "oABC****HIJK"
    assert mask_openid("short") == "short"
    assert mask_openid(None) == ""
