"""Account slug derivation and collision-resolving account creation."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Protocol

from .errors import ConflictError, UniqueConstraintError, ValidationError
from .models import Account, TrialState

MAX_SLUG_ATTEMPTS = 25

_INVALID_SLUG_CHARS = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_REPEATED_DASHES = re.compile(r"-+")


class AccountWriter(Protocol):
    def insert_account(
        self,
        *,
        name: str,
        slug: str,
        created_by: str | None = None,
        trial_started_at: datetime | None = None,
        trial_ends_at: datetime | None = None,
        trial_state: TrialState | None = None,
    ) -> Account: ...


def slugify(value: str) -> str:
    slug = _INVALID_SLUG_CHARS.sub("", value.lower().strip())
    slug = _WHITESPACE.sub("-", slug)
    slug = _REPEATED_DASHES.sub("-", slug)
    return slug.strip("-")


def candidate_slugs(base: str, attempts: int = MAX_SLUG_ATTEMPTS):
    """Yield ``base``, ``base-2``, ``base-3`` ... up to ``attempts`` candidates."""
    for attempt in range(attempts):
        yield base if attempt == 0 else f"{base}-{attempt + 1}"


def create_unique_account(
    store: AccountWriter,
    name: str,
    *,
    created_by: str | None = None,
    trial_started_at: datetime | None = None,
    trial_ends_at: datetime | None = None,
    trial_state: TrialState | None = None,
) -> Account:
    """Insert an account, appending a numeric suffix to the slug on each collision.

    Raises
    ------
    ValidationError
        When the name produces an empty slug.
    ConflictError
        When every candidate slug is already taken.
    """
    base = slugify(name)
    if not base:
        raise ValidationError("VALIDATION_SLUG_EMPTY", "The company name does not produce a valid slug.")
    for slug in candidate_slugs(base):
        try:
            return store.insert_account(
                name=name,
                slug=slug,
                created_by=created_by,
                trial_started_at=trial_started_at,
                trial_ends_at=trial_ends_at,
                trial_state=trial_state,
            )
        except UniqueConstraintError:
            continue
    raise ConflictError("ACCOUNT_SLUG_COLLISION", f"No free slug found for {base!r}.")
