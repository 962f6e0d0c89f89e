"""Admin-level client for the identity provider's REST API."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx

from ..domain.models import Identity

logger = logging.getLogger(__name__)

_ALREADY_REGISTERED = re.compile(r"already (?:been )?registered|already exists", re.IGNORECASE)


class IdentityGatewayError(Exception):
    """Error returned by the identity provider, with its message preserved for classification."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or "not found" in self.message.lower()

    @property
    def is_already_registered(self) -> bool:
        return is_already_registered_message(self.message)


def is_already_registered_message(message: str | None) -> bool:
    """Match the provider's duplicate-registration wording, e.g. 'has already been registered'."""
    return bool(_ALREADY_REGISTERED.search(message or ""))


class IdentityGateway(Protocol):
    """Capabilities the onboarding workflows need from the identity store."""

    def list_identities(self, page: int, per_page: int) -> list[Identity]: ...

    def get_identity_by_id(self, identity_id: str) -> Identity | None: ...

    def delete_identity(self, identity_id: str) -> None: ...

    def send_invite(self, email: str, redirect_url: str, data: dict[str, Any]) -> None: ...

    def reset_password(self, email: str, redirect_url: str) -> None: ...

    def request_email_change(self, access_token: str, new_email: str, redirect_url: str) -> None: ...

    def update_credentials(
        self,
        identity_id: str,
        *,
        email: str | None = None,
        password: str | None = None,
    ) -> None: ...


class HttpIdentityGateway:
    """Identity gateway speaking the provider's ``/auth/v1`` admin endpoints."""

    def __init__(self, client: httpx.Client, base_url: str, service_key: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        bearer: str | None = None,
    ) -> Any:
        url = self._base_url + path
        headers = {
            "apikey": self._service_key,
            "Authorization": f"Bearer {bearer or self._service_key}",
            "Accept": "application/json",
        }
        try:
            resp = self._client.request(method, url, headers=headers, params=params, json=json_body)
        except httpx.RequestError as exc:
            raise IdentityGatewayError(f"identity request failed for {method} {path}: {exc}") from exc

        if resp.status_code >= 400:
            raise IdentityGatewayError(_error_message(resp), status_code=resp.status_code)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def list_identities(self, page: int, per_page: int) -> list[Identity]:
        """Return one page of identities from the admin listing."""
        body = self._request("GET", "/auth/v1/admin/users", params={"page": page, "per_page": per_page})
        users = body.get("users", []) if isinstance(body, dict) else (body or [])
        return [_to_identity(item) for item in users]

    def get_identity_by_id(self, identity_id: str) -> Identity | None:
        """Fetch an identity by id, or ``None`` when the provider reports it missing."""
        try:
            body = self._request("GET", f"/auth/v1/admin/users/{identity_id}")
        except IdentityGatewayError as exc:
            if exc.is_not_found:
                return None
            raise
        if not body:
            return None
        return _to_identity(body.get("user", body))

    def delete_identity(self, identity_id: str) -> None:
        """Hard-delete an identity."""
        self._request("DELETE", f"/auth/v1/admin/users/{identity_id}")
        logger.info("identity %s deleted", identity_id)

    def send_invite(self, email: str, redirect_url: str, data: dict[str, Any]) -> None:
        """Create an unconfirmed identity for ``email`` and mail it an invite link."""
        self._request(
            "POST",
            "/auth/v1/invite",
            params={"redirect_to": redirect_url},
            json_body={"email": email, "data": data},
        )

    def reset_password(self, email: str, redirect_url: str) -> None:
        """Mail a password recovery link to ``email``."""
        self._request(
            "POST",
            "/auth/v1/recover",
            params={"redirect_to": redirect_url},
            json_body={"email": email},
        )

    def request_email_change(self, access_token: str, new_email: str, redirect_url: str) -> None:
        """Start the provider's email-change confirmation as the user holding ``access_token``."""
        self._request(
            "PUT",
            "/auth/v1/user",
            params={"redirect_to": redirect_url},
            json_body={"email": new_email},
            bearer=access_token,
        )

    def update_credentials(
        self,
        identity_id: str,
        *,
        email: str | None = None,
        password: str | None = None,
    ) -> None:
        """Set a new email (pre-confirmed) and/or password on an identity."""
        payload: dict[str, Any] = {}
        if email is not None:
            payload["email"] = email
            payload["email_confirm"] = True
        if password is not None:
            payload["password"] = password
        if not payload:
            return
        self._request("PUT", f"/auth/v1/admin/users/{identity_id}", json_body=payload)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"identity provider returned {resp.status_code}"
    if isinstance(body, dict):
        for key in ("msg", "message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"identity provider returned {resp.status_code}"


def _to_identity(item: dict[str, Any]) -> Identity:
    return Identity(
        id=item["id"],
        email=item.get("email"),
        email_confirmed_at=item.get("email_confirmed_at"),
    )
