import json
import httpx
import pytest

from storefront.domain.exceptions import CartServiceError
from storefront.domain.models import CartItem
from storefront.infrastructure.http_clients import HTTPCartClient, HTTPNotificationsClient


def cart_client(handler):
    return HTTPCartClient("http://cart", "token", transport=httpx.MockTransport(handler))


async def test_get_user_cart():
    def handler(request):
        assert request.url.path == "/api/cart/user-1"
        assert request.headers["X-API-Key"] == "token"
        return httpx.Response(200, json={"items": [{"product_id": "p1", "quantity": 2}]})

    assert await cart_client(handler).get_user_cart("user-1") == [CartItem(product_id="p1", quantity=2)]


async def test_missing_cart_is_empty():
    assert await cart_client(lambda request: httpx.Response(404)).get_user_cart("user-1") == []


def unreachable(request):
    raise httpx.ConnectError("refused", request=request)


@pytest.mark.parametrize("handler", [lambda request: httpx.Response(500), unreachable])
async def test_cart_errors_raise(handler):
    client = cart_client(handler)
    with pytest.raises(CartServiceError):
        await client.get_user_cart("user-1")
    with pytest.raises(CartServiceError):
        await client.clear_user_cart("user-1")


async def test_clear_cart_tolerates_missing_cart():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(404)

    await cart_client(handler).clear_user_cart("user-1")
    assert requests[0].method == "DELETE"


async def test_notification_retries_until_accepted():
    responses = iter([httpx.Response(503), httpx.Response(201)])
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return next(responses)

    client = HTTPNotificationsClient("http://notify", "token", max_retries=3, retry_delay=0,
                                     transport=httpx.MockTransport(handler))

    assert await client.send("Paid", "o-1", "order_o-1_paid", "user-1")
    assert len(sent) == 2
    assert sent[0]["idempotency_key"] == "order_o-1_paid"


async def test_notification_gives_up():
    client = HTTPNotificationsClient("http://notify", "token", max_retries=2, retry_delay=0,
                                     transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    assert not await client.send("Paid", "o-1", "key", "user-1")
