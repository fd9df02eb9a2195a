"""Integration tests for plain HTTP requests against the Bug Market server."""

import asyncio
import json
import logging

import pytest

from glean import Glean
from glean.common.exceptions import HTTPNotOKException, RequestFailedException
from glean.common.settings import DEFAULT_USER_AGENT, RequestOptions, Settings
from glean.driver.request_manager import (
    body_kwargs,
    build_cookie_header,
    build_headers,
)


class TestExtraction:
    async def test_get_page(self, glean, server_url, expected_product_count):
        response = await glean.get(f"{server_url}/products")

        assert response.ok
        assert response.status == 200
        assert response.status_text == "OK"
        assert response.headers["content-type"].startswith("text/html")
        assert response.context.query.count(".product") == expected_product_count

    async def test_relative_urls_use_response_url(self, glean, server_url):
        response = await glean.get(f"{server_url}/products")

        assert response.context.origin == f"{server_url}/products"
        assert response.context.query.url(".title") == (
            f"{server_url}/products/BM-001"
        )

    async def test_select(self, glean, server_url):
        response = await glean.get(f"{server_url}/products/BM-002", select="#product")

        assert response.context.element.get("data-sku") == "BM-002"
        assert response.context.query.content("h1") == "Silk Thread, 100m"

    async def test_select_without_match(self, glean, server_url):
        response = await glean.get(f"{server_url}/products", select=".sold-out")

        assert response.ok
        assert response.context is None

    async def test_select_all(self, glean, server_url):
        response = await glean.get(f"{server_url}/products", select_all=".product")

        assert [c.query.attribute(None, "data-sku") for c in response.context] == [
            "BM-001",
            "BM-002",
            "BM-003",
        ]

    async def test_query_options_reach_context(self, glean, server_url):
        response = await glean.get(
            f"{server_url}/products", select_all=".price", separator=","
        )
        assert [c.query.number() for c in response.context] == [1234.5, 12.0, 7.25]

    async def test_extract_disabled(self, glean, server_url):
        response = await glean.get(f"{server_url}/products", extract=False)

        assert response.ok
        assert response.context is None
        assert "Bug Market" in response.response.text

    async def test_xml_declaration(self, glean, server_url):
        response = await glean.get(f"{server_url}/encoded")
        assert response.context.query.content("p") == "Encoded"

    async def test_json(self, glean, server_url):
        response = await glean.get(f"{server_url}/api/products/BM-001")

        assert response.data == {
            "sku": "BM-001",
            "name": "Premium Leaf Litter",
            "seller": "Barry Beetle",
            "tags": ["compost", "organic"],
        }
        assert response.context is None

    async def test_broken_json_falls_back_to_text(self, glean, server_url, caplog):
        with caplog.at_level(logging.WARNING):
            response = await glean.get(f"{server_url}/api/broken")

        assert response.ok
        assert response.data == "{not json"
        assert "Could not parse JSON" in caplog.text


class TestStatus:
    async def test_not_found(self, glean, server_url, caplog):
        response = await glean.get(f"{server_url}/products/BM-404")

        assert not response.ok
        assert response.status == 404
        assert response.context is None
        assert "HTTP_NOT_OK" in caplog.text

    async def test_server_error_keeps_headers(self, glean, server_url):
        response = await glean.get(f"{server_url}/status/500")

        assert not response.ok
        assert response.status == 500
        assert response.status_text == "Internal Server Error"
        assert response.headers["x-bug-market"] == "status"

    async def test_raises_when_configured(self, glean, server_url):
        glean.configure(throw_errors=True)

        with pytest.raises(HTTPNotOKException) as excinfo:
            await glean.get(f"{server_url}/status/503")

        assert excinfo.value.status == 503
        assert excinfo.value.response.headers["x-bug-market"] == "status"

    async def test_connection_error(self, glean):
        response = await glean.get("http://127.0.0.1:1/products")

        assert not response.ok
        assert response.status is None
        assert response.status_text == "ConnectError"
        assert response.url == "http://127.0.0.1:1/products"

    async def test_connection_error_raises_when_configured(self, glean):
        glean.configure(throw_errors=True)

        with pytest.raises(RequestFailedException) as excinfo:
            await glean.get("http://127.0.0.1:1/products")

        assert excinfo.value.status is None
        assert excinfo.value.code == "REQUEST_FAILED"

    async def test_timeout(self, glean, server_url):
        response = await glean.get(f"{server_url}/slow?delay=500", timeout=100)

        assert not response.ok
        assert response.status_text == "ReadTimeout"


class TestRedirects:
    async def test_followed(self, glean, server_url):
        response = await glean.get(f"{server_url}/redirect/2")

        assert response.ok
        assert response.url == f"{server_url}/products"
        assert response.context.query.exists(".product")

    async def test_not_followed(self, glean, server_url):
        response = await glean.get(
            f"{server_url}/redirect/2", follow_redirects=False
        )

        assert not response.ok
        assert response.status == 302
        assert response.headers["location"] == "/redirect/1"

    async def test_too_many(self, glean, server_url):
        response = await glean.get(f"{server_url}/redirect/4", max_redirects=2)

        assert not response.ok
        assert response.status_text == "TooManyRedirects"

    async def test_transport_interface(self, glean, server_url):
        response = await glean.get(f"{server_url}/redirect/2", interface="transport")

        assert response.ok
        assert response.url == f"{server_url}/products"

    async def test_transport_interface_stops_at_limit(self, glean, server_url):
        response = await glean.get(
            f"{server_url}/redirect/4", interface="transport", max_redirects=2
        )

        assert not response.ok
        assert response.status == 302
        assert response.url == f"{server_url}/redirect/2"


class TestHeaders:
    async def test_default_headers(self, glean, server_url):
        response = await glean.get(f"{server_url}/headers")

        assert response.data["user-agent"] == DEFAULT_USER_AGENT
        assert response.data["accept-language"] == "en-US,en;q=0.5"
        assert "cookie" not in response.data

    async def test_api_user_agent(self, glean, server_url):
        response = await glean.get(f"{server_url}/headers", api=True)
        assert response.data["user-agent"] == "glean"

    async def test_configured_and_call_headers(self, glean, server_url):
        glean.configure(headers={"X-Market": "bugs", "x-region": "meadow"})

        response = await glean.get(
            f"{server_url}/headers",
            headers={"x-region": "pond", "accept-language": None},
        )

        assert response.data["x-market"] == "bugs"
        assert response.data["x-region"] == "pond"
        assert "accept-language" not in response.data

    async def test_cookies(self, glean, server_url):
        glean.configure(cookies={"session": "abc", "theme": "dark"})

        response = await glean.get(
            f"{server_url}/headers", cookies={"theme": "light"}
        )

        assert response.data["cookie"] == "session=abc; theme=light"


class TestBodies:
    async def test_post_json(self, glean, server_url):
        response = await glean.post(f"{server_url}/echo", {"name": "moth"})

        assert response.data["method"] == "POST"
        assert response.data["content_type"] == "application/json"
        assert json.loads(response.data["body"]) == {"name": "moth"}

    async def test_post_form(self, glean, server_url):
        response = await glean.post(
            f"{server_url}/echo", {"name": "moth"}, form=True
        )

        assert response.data["content_type"] == "application/x-www-form-urlencoded"
        assert response.data["body"] == "name=moth"

    async def test_post_text(self, glean, server_url):
        response = await glean.post(f"{server_url}/echo", "raw larvae")
        assert response.data["body"] == "raw larvae"

    async def test_request_with_method(self, glean, server_url):
        response = await glean.request(f"{server_url}/echo", "x", "put")
        assert response.data["method"] == "PUT"


class TestLifecycle:
    async def test_events(self, glean, server_url):
        seen = []
        glean.on("request_init", lambda payload: seen.append(("init", payload)))
        glean.on("request_success", lambda payload: seen.append(("ok", payload)))
        glean.on("request_error", lambda payload: seen.append(("error", payload)))

        await glean.get(f"{server_url}/products")
        await glean.get(f"{server_url}/status/500")

        assert [name for name, _ in seen] == ["init", "ok", "init", "error"]
        assert seen[0][1]["method"] == "GET"
        assert seen[3][1]["status"] == 500

    async def test_abort_before_start(self, glean, server_url):
        abort = asyncio.Event()
        abort.set()

        response = await glean.get(f"{server_url}/products", abort=abort)

        assert not response.ok
        assert response.status_text == "RequestAborted"

    async def test_abort_in_flight(self, glean, server_url):
        abort = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, abort.set)

        response = await glean.get(f"{server_url}/slow?delay=300", abort=abort)

        assert not response.ok
        assert response.status_text == "RequestAborted"

    async def test_clients_shared_and_closed(self, server_url):
        glean = Glean(limits={"default": {"interval": 0}})

        await glean.get(f"{server_url}/products")
        await glean.get(f"{server_url}/products/BM-001")
        assert len(glean.requests.clients) == 1

        await glean.aclose()
        assert len(glean.requests.clients) == 0

    async def test_context_manager(self, server_url):
        async with Glean() as glean:
            response = await glean.get(f"{server_url}/products")
            assert response.ok

        assert len(glean.requests.clients) == 0


class TestHelpers:
    def test_cookie_header_from_string(self):
        assert build_cookie_header({"a": "1"}, "b=2") == "a=1; b=2"
        assert build_cookie_header({}, None) is None

    def test_header_names_are_lower_cased(self):
        headers = build_headers(
            Settings(),
            RequestOptions(headers={"X-Bug": "1"}),
            "agent",
        )
        assert headers["x-bug"] == "1"
        assert headers["user-agent"] == "agent"

    def test_body_kwargs(self):
        assert body_kwargs(None) == {}
        assert body_kwargs([1, 2]) == {"json": [1, 2]}
        assert body_kwargs({"a": 1}, form=True) == {"data": {"a": 1}}
        assert body_kwargs(b"raw") == {"content": b"raw"}
