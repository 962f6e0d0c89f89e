from __future__ import annotations

import json

import httpx
import pytest

from onboarding.identity.gateway import HttpIdentityGateway, IdentityGatewayError, is_already_registered_message
from onboarding.identity.lookup import PaginatedEmailScan


def make_gateway(handler) -> HttpIdentityGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpIdentityGateway(client, "http://identity:9999/", "service-key")


def test_send_invite_posts_email_and_redirect():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "user-1"})

    make_gateway(handler).send_invite(
        "ada@example.com", "https://app.example.com/auth/accept-invite", {"invitation_id": "inv-1"}
    )

    (request,) = seen
    assert request.method == "POST"
    assert request.url.path == "/auth/v1/invite"
    assert request.url.params["redirect_to"] == "https://app.example.com/auth/accept-invite"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"
    assert json.loads(request.content) == {"email": "ada@example.com", "data": {"invitation_id": "inv-1"}}


def test_provider_error_message_is_preserved():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"msg": "A user with this email address has already been registered"})

    with pytest.raises(IdentityGatewayError) as excinfo:
        make_gateway(handler).send_invite("ada@example.com", "https://app.example.com", {})

    assert excinfo.value.status_code == 422
    assert excinfo.value.is_already_registered


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("A user with this email address has already been registered", True),
        ("Email already registered", True),
        ("User already exists", True),
        ("Email rate limit exceeded", False),
        ("", False),
        (None, False),
    ],
)
def test_already_registered_classification(message, expected):
    assert is_already_registered_message(message) is expected


def test_missing_identity_is_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "User not found"})

    assert make_gateway(handler).get_identity_by_id("nobody") is None


def test_get_identity_unwraps_user_envelope():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"user": {"id": "user-1", "email": "ada@example.com", "email_confirmed_at": "2026-01-01T00:00:00Z"}},
        )

    identity = make_gateway(handler).get_identity_by_id("user-1")

    assert identity.id == "user-1"
    assert identity.is_confirmed


def test_transport_failure_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(IdentityGatewayError) as excinfo:
        make_gateway(handler).delete_identity("user-1")

    assert excinfo.value.status_code is None
    assert "connection refused" in excinfo.value.message


def test_update_credentials_confirms_new_email():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    gateway = make_gateway(handler)
    gateway.update_credentials("user-1", email="new@example.com")
    gateway.update_credentials("user-1")

    assert bodies == [{"email": "new@example.com", "email_confirm": True}]


def test_email_scan_pages_until_short_page():
    pages: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        pages.append(page)
        users = [{"id": f"{page}-{i}", "email": f"user{page}{i}@example.com"} for i in range(2 if page < 3 else 1)]
        return httpx.Response(200, json={"users": users})

    scan = PaginatedEmailScan(make_gateway(handler), per_page=2)

    assert scan.find_by_email("nobody@example.com") is None
    assert pages == [1, 2, 3]
    assert scan.find_by_email("USER21@example.com").id == "2-1"


def test_email_change_uses_the_user_token():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "user-1"})

    make_gateway(handler).request_email_change(
        "user-token", "ada@newco.example.com", "https://app.example.com/account/security"
    )

    (request,) = seen
    assert request.method == "PUT"
    assert request.url.path == "/auth/v1/user"
    assert request.url.params["redirect_to"] == "https://app.example.com/account/security"
    assert request.headers["authorization"] == "Bearer user-token"
    assert request.headers["apikey"] == "service-key"
    assert json.loads(request.content) == {"email": "ada@newco.example.com"}
