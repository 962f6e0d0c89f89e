"""Email-to-identity lookup strategies."""

from __future__ import annotations

from typing import Protocol

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..domain.models import Identity
from .gateway import IdentityGateway, IdentityGatewayError

MAX_EMAIL_LENGTH = 254

_EMAIL_ADAPTER = TypeAdapter(EmailStr)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def is_valid_email(value: str) -> bool:
    """Syntax check with the same rules as the request models' ``EmailStr`` fields."""
    if not value or len(value) > MAX_EMAIL_LENGTH:
        return False
    try:
        _EMAIL_ADAPTER.validate_python(value)
    except PydanticValidationError:
        return False
    return True


class IdentityEmailLookup(Protocol):
    def find_by_email(self, email: str) -> Identity | None: ...


class PaginatedEmailScan:
    """Linear scan over the identity listing until an email match is found.

    Used when the identity provider offers no indexed lookup by email. The scan
    stops on the first short page or after ``max_pages``.
    """

    def __init__(self, gateway: IdentityGateway, *, per_page: int = 200, max_pages: int = 50) -> None:
        self._gateway = gateway
        self._per_page = per_page
        self._max_pages = max_pages

    def find_by_email(self, email: str) -> Identity | None:
        target = normalize_email(email)
        for page in range(1, self._max_pages + 1):
            try:
                identities = self._gateway.list_identities(page, self._per_page)
            except IdentityGatewayError as exc:
                raise IdentityGatewayError(
                    f"identity lookup failed: {exc.message}", status_code=exc.status_code
                ) from exc

            for identity in identities:
                if normalize_email(identity.email or "") == target:
                    return identity

            if len(identities) < self._per_page:
                break
        return None
