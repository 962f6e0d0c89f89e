"""Database repository for accounts, memberships, invitations and audit data."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from psycopg import errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.errors import UniqueConstraintError
from .domain.models import (
    Account,
    AccountStatus,
    AuditEntry,
    Invitation,
    InvitationStatus,
    Membership,
    MembershipRole,
    MembershipStatus,
    MemberView,
    Profile,
    SignupAttempt,
    TrialState,
)

_ACCOUNT_COLUMNS = (
    "id, name, slug, status, trial_state, trial_started_at, trial_ends_at, "
    "created_by, created_at, archived_at, archived_by"
)
_INVITATION_COLUMNS = "id, account_id, email, role, status, expires_at, created_at, invited_by, meta"
_MEMBERSHIP_COLUMNS = "id, account_id, user_id, role, status, created_at"

# Column names accepted by update_account; anything else is a programming error.
_ACCOUNT_MUTABLE = {"name", "slug", "status", "archived_at", "archived_by", "trial_state", "trial_ends_at"}


class OnboardingRepository:
    """Postgres-backed persistence for the onboarding workflows."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def _fetchone(self, query: str, params: Iterable[Any]) -> tuple | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, tuple(params))
                return cur.fetchone()

    def _fetchall(self, query: str, params: Iterable[Any]) -> list[tuple]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, tuple(params))
                return cur.fetchall()

    def _write(self, query: str, params: Iterable[Any], *, returning: bool = False) -> Any:
        """Run a single mutating statement, translating unique violations."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(query, tuple(params))
                except errors.UniqueViolation as exc:
                    conn.rollback()
                    raise UniqueConstraintError(exc.diag.constraint_name, str(exc)) from exc
                result = cur.fetchone() if returning else cur.rowcount
                conn.commit()
        return result

    # -- profiles ---------------------------------------------------------

    def get_profile(self, user_id: str) -> Profile | None:
        """Return the profile for ``user_id`` if present."""
        row = self._fetchone(
            "SELECT id, email, full_name, global_role FROM profiles WHERE id = %s",
            (user_id,),
        )
        return Profile(*row) if row else None

    def find_profile_by_email(self, email: str, *, exclude_id: str | None = None) -> Profile | None:
        """Case-insensitive email match, optionally ignoring one profile id."""
        query = "SELECT id, email, full_name, global_role FROM profiles WHERE lower(email) = lower(%s)"
        params: list[Any] = [email]
        if exclude_id:
            query += " AND id <> %s"
            params.append(exclude_id)
        row = self._fetchone(query + " ORDER BY id LIMIT 1", params)
        return Profile(*row) if row else None

    def update_profile(self, user_id: str, changes: dict[str, Any]) -> None:
        """Apply column changes to a profile row."""
        allowed = {key: value for key, value in changes.items() if key in {"full_name", "email"}}
        if not allowed:
            return
        assignments = ", ".join(f"{column} = %s" for column in allowed)
        self._write(
            f"UPDATE profiles SET {assignments} WHERE id = %s",
            [*allowed.values(), user_id],
        )

    def count_platform_admins(self, *, exclude_id: str | None = None) -> int:
        """Count profiles holding the global ADMIN role."""
        query = "SELECT count(*) FROM profiles WHERE global_role = 'ADMIN'"
        params: list[Any] = []
        if exclude_id:
            query += " AND id <> %s"
            params.append(exclude_id)
        row = self._fetchone(query, params)
        return int(row[0]) if row else 0

    # -- memberships ------------------------------------------------------

    def count_active_memberships(self, user_id: str) -> tuple[int, str | None]:
        """Return (active membership count, account id of the most recent one)."""
        row = self._fetchone(
            """
            SELECT count(*) OVER (), account_id
            FROM account_memberships
            WHERE user_id = %s AND status = 'ACTIVE'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (user_id,),
        )
        if not row:
            return 0, None
        return int(row[0]), row[1]

    def get_membership(self, membership_id: str, account_id: str) -> Membership | None:
        """Return a membership scoped to its account, or ``None``."""
        row = self._fetchone(
            f"SELECT {_MEMBERSHIP_COLUMNS} FROM account_memberships WHERE id = %s AND account_id = %s",
            (membership_id, account_id),
        )
        return self._map_membership(row) if row else None

    def get_membership_for_user(self, account_id: str, user_id: str) -> Membership | None:
        """Return the caller's membership in an account, if any."""
        row = self._fetchone(
            f"""
            SELECT {_MEMBERSHIP_COLUMNS}
            FROM account_memberships
            WHERE account_id = %s AND user_id = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (account_id, user_id),
        )
        return self._map_membership(row) if row else None

    def count_active_admins(self, account_id: str, *, exclude_user_id: str | None = None) -> int:
        """Count ACTIVE ADMIN memberships of an account."""
        query = (
            "SELECT count(*) FROM account_memberships "
            "WHERE account_id = %s AND status = 'ACTIVE' AND role = 'ADMIN'"
        )
        params: list[Any] = [account_id]
        if exclude_user_id:
            query += " AND user_id <> %s"
            params.append(exclude_user_id)
        row = self._fetchone(query, params)
        return int(row[0]) if row else 0

    def update_membership_role(self, membership_id: str, account_id: str, role: MembershipRole) -> bool:
        """Change a membership's role; False when the row is gone."""
        updated = self._write(
            "UPDATE account_memberships SET role = %s WHERE id = %s AND account_id = %s",
            (role.value, membership_id, account_id),
        )
        return updated == 1

    def delete_membership(self, membership_id: str, account_id: str) -> bool:
        """Delete one membership; False when the row is gone."""
        deleted = self._write(
            "DELETE FROM account_memberships WHERE id = %s AND account_id = %s",
            (membership_id, account_id),
        )
        return deleted == 1

    def delete_memberships_for_user(self, user_id: str) -> int:
        """Delete every membership held by a user."""
        return self._write("DELETE FROM account_memberships WHERE user_id = %s", (user_id,))

    def count_memberships_for_user(self, user_id: str) -> int:
        """Count memberships of a user across all accounts."""
        row = self._fetchone("SELECT count(*) FROM account_memberships WHERE user_id = %s", (user_id,))
        return int(row[0]) if row else 0

    def list_members(self, account_id: str) -> list[MemberView]:
        """List an account's memberships joined with member profiles."""
        rows = self._fetchall(
            """
            SELECT m.id, m.account_id, m.user_id, m.role, m.status, m.created_at,
                   p.id, p.email, p.full_name, p.global_role
            FROM account_memberships m
            LEFT JOIN profiles p ON p.id = m.user_id
            WHERE m.account_id = %s
            ORDER BY m.created_at DESC
            """,
            (account_id,),
        )
        return [
            MemberView(
                membership=self._map_membership(row[:6]),
                profile=Profile(*row[6:]) if row[6] else None,
            )
            for row in rows
        ]

    def has_membership_with_status(
        self, account_id: str, user_id: str, statuses: Iterable[MembershipStatus]
    ) -> bool:
        """Whether the user has a membership in one of ``statuses``."""
        row = self._fetchone(
            """
            SELECT 1 FROM account_memberships
            WHERE account_id = %s AND user_id = %s AND status = ANY(%s)
            LIMIT 1
            """,
            (account_id, user_id, [status.value for status in statuses]),
        )
        return row is not None

    # -- accounts ---------------------------------------------------------

    def get_account(self, account_id: str) -> Account | None:
        """Return an account by id if present."""
        row = self._fetchone(f"SELECT {_ACCOUNT_COLUMNS} FROM platform_accounts WHERE id = %s", (account_id,))
        return self._map_account(row) if row else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts, newest first."""
        rows = self._fetchall(
            f"SELECT {_ACCOUNT_COLUMNS} FROM platform_accounts ORDER BY created_at DESC", ()
        )
        return [self._map_account(row) for row in rows]

    def insert_account(
        self,
        *,
        name: str,
        slug: str,
        created_by: str | None = None,
        trial_started_at: datetime | None = None,
        trial_ends_at: datetime | None = None,
        trial_state: TrialState | None = None,
    ) -> Account:
        """Insert an ACTIVE account; raises ``UniqueConstraintError`` on slug collisions."""
        row = self._write(
            f"""
            INSERT INTO platform_accounts
                (id, name, slug, status, created_by, trial_started_at, trial_ends_at, trial_state, created_at)
            VALUES (%s, %s, %s, 'ACTIVE', %s, %s, %s, %s, %s)
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                name,
                slug,
                created_by,
                trial_started_at,
                trial_ends_at,
                trial_state.value if trial_state else None,
                datetime.now(timezone.utc),
            ),
            returning=True,
        )
        return self._map_account(row)

    def update_account(self, account_id: str, changes: dict[str, Any]) -> Account | None:
        """Apply column changes to an account and return the updated row."""
        unknown = set(changes) - _ACCOUNT_MUTABLE
        if unknown:
            raise ValueError(f"unsupported account columns: {sorted(unknown)}")
        values = [value.value if isinstance(value, AccountStatus) else value for value in changes.values()]
        assignments = ", ".join(f"{column} = %s" for column in changes)
        row = self._write(
            f"UPDATE platform_accounts SET {assignments} WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}",
            [*values, account_id],
            returning=True,
        )
        return self._map_account(row) if row else None

    def delete_account(self, account_id: str) -> bool:
        """Delete an account row; False when it did not exist."""
        return self._write("DELETE FROM platform_accounts WHERE id = %s", (account_id,)) == 1

    def clear_user_references(self, user_id: str) -> None:
        """Detach a user from accounts/invitations they created before the user is removed."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("UPDATE platform_accounts SET created_by = NULL WHERE created_by = %s", (user_id,))
                cur.execute("UPDATE platform_accounts SET archived_by = NULL WHERE archived_by = %s", (user_id,))
                cur.execute("UPDATE account_invitations SET invited_by = NULL WHERE invited_by = %s", (user_id,))
                conn.commit()

    # -- invitations ------------------------------------------------------

    def insert_invitation(
        self,
        *,
        account_id: str,
        email: str,
        role: MembershipRole,
        invited_by: str | None,
        expires_at: datetime,
        meta: dict[str, Any],
    ) -> Invitation:
        """Insert a PENDING invitation; raises ``UniqueConstraintError`` on a duplicate."""
        row = self._write(
            f"""
            INSERT INTO account_invitations
                (id, account_id, email, role, status, invited_by, expires_at, created_at, meta)
            VALUES (%s, %s, %s, %s, 'PENDING', %s, %s, %s, %s)
            RETURNING {_INVITATION_COLUMNS}
            """,
            (
                str(uuid.uuid4()),
                account_id,
                email,
                role.value,
                invited_by,
                expires_at,
                datetime.now(timezone.utc),
                Json(meta),
            ),
            returning=True,
        )
        return self._map_invitation(row)

    def get_invitation(self, invitation_id: str, account_id: str) -> Invitation | None:
        """Return an invitation scoped to its account, or ``None``."""
        row = self._fetchone(
            f"SELECT {_INVITATION_COLUMNS} FROM account_invitations WHERE id = %s AND account_id = %s",
            (invitation_id, account_id),
        )
        return self._map_invitation(row) if row else None

    def find_pending_invitation(self, account_id: str, email: str) -> Invitation | None:
        """Return the PENDING invitation for an account and email, if any."""
        row = self._fetchone(
            f"""
            SELECT {_INVITATION_COLUMNS}
            FROM account_invitations
            WHERE account_id = %s AND status = 'PENDING' AND lower(email) = lower(%s)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (account_id, email),
        )
        return self._map_invitation(row) if row else None

    def list_pending_invitations_for_email(self, email: str) -> list[Invitation]:
        """Return every PENDING invitation addressed to ``email``."""
        rows = self._fetchall(
            f"""
            SELECT {_INVITATION_COLUMNS}
            FROM account_invitations
            WHERE status = 'PENDING' AND lower(email) = lower(%s)
            ORDER BY created_at DESC
            """,
            (email,),
        )
        return [self._map_invitation(row) for row in rows]

    def transition_invitation(
        self,
        invitation_id: str,
        *,
        expected: InvitationStatus,
        target: InvitationStatus,
        meta: dict[str, Any] | None = None,
    ) -> Invitation | None:
        """Compare-and-swap the invitation status; ``None`` means the precondition failed."""
        if meta is None:
            row = self._write(
                f"""
                UPDATE account_invitations SET status = %s
                WHERE id = %s AND status = %s
                RETURNING {_INVITATION_COLUMNS}
                """,
                (target.value, invitation_id, expected.value),
                returning=True,
            )
        else:
            row = self._write(
                f"""
                UPDATE account_invitations SET status = %s, meta = %s
                WHERE id = %s AND status = %s
                RETURNING {_INVITATION_COLUMNS}
                """,
                (target.value, Json(meta), invitation_id, expected.value),
                returning=True,
            )
        return self._map_invitation(row) if row else None

    def expire_invitations(self, invitation_ids: list[str]) -> int:
        """Mark the given PENDING invitations EXPIRED."""
        if not invitation_ids:
            return 0
        return self._write(
            "UPDATE account_invitations SET status = 'EXPIRED' WHERE id = ANY(%s) AND status = 'PENDING'",
            (invitation_ids,),
        )

    def revoke_pending_invitations_for_email(self, email: str) -> int:
        """Revoke every PENDING invitation addressed to ``email``."""
        return self._write(
            "UPDATE account_invitations SET status = 'REVOKED' WHERE status = 'PENDING' AND lower(email) = lower(%s)",
            (email,),
        )

    def delete_invitations_for_account(self, account_id: str) -> int:
        """Delete all invitations of an account."""
        return self._write("DELETE FROM account_invitations WHERE account_id = %s", (account_id,))

    def count_invitations(self, account_id: str) -> int:
        """Count invitations of an account."""
        row = self._fetchone("SELECT count(*) FROM account_invitations WHERE account_id = %s", (account_id,))
        return int(row[0]) if row else 0

    # -- audit & signup log -----------------------------------------------

    def write_audit_entry(self, entry: AuditEntry) -> None:
        """Record an audit trail entry for an administrative mutation."""
        self._write(
            """
            INSERT INTO admin_access_audit (admin_user_id, target_account_id, action, resource, resource_id, meta)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                entry.admin_user_id,
                entry.target_account_id,
                entry.action,
                entry.resource,
                entry.resource_id,
                Json(entry.meta),
            ),
        )

    def insert_signup_attempt(self, attempt: SignupAttempt) -> None:
        """Append one row to the self-signup attempts log."""
        self._write(
            """
            INSERT INTO self_signup_attempts (email_norm, ip_hash, user_agent, result_code, created_at)
            VALUES (%s, %s, %s, %s, COALESCE(%s, NOW()))
            """,
            (attempt.email_norm, attempt.ip_hash, attempt.user_agent, attempt.result_code, attempt.created_at),
        )

    def count_signup_attempts(
        self,
        *,
        since: datetime,
        ip_hash: str | None = None,
        email_norm: str | None = None,
    ) -> int:
        """Count logged signup attempts since ``since`` for an IP hash or email."""
        clauses = ["created_at >= %s"]
        params: list[Any] = [since]
        if ip_hash is not None:
            clauses.append("ip_hash = %s")
            params.append(ip_hash)
        if email_norm is not None:
            clauses.append("email_norm = %s")
            params.append(email_norm)
        where_sql = " AND ".join(clauses)
        row = self._fetchone(f"SELECT count(*) FROM self_signup_attempts WHERE {where_sql}", params)
        return int(row[0]) if row else 0

    # -- row mapping ------------------------------------------------------

    def _map_account(self, row: tuple) -> Account:
        return Account(
            id=str(row[0]),
            name=row[1],
            slug=row[2],
            status=AccountStatus(row[3]),
            trial_state=TrialState(row[4]) if row[4] else None,
            trial_started_at=row[5],
            trial_ends_at=row[6],
            created_by=row[7],
            created_at=row[8],
            archived_at=row[9],
            archived_by=row[10],
        )

    def _map_membership(self, row: tuple) -> Membership:
        return Membership(
            id=str(row[0]),
            account_id=str(row[1]),
            user_id=str(row[2]),
            role=MembershipRole(row[3]),
            status=MembershipStatus(row[4]),
            created_at=row[5],
        )

    def _map_invitation(self, row: tuple) -> Invitation:
        return Invitation(
            id=str(row[0]),
            account_id=str(row[1]),
            email=row[2],
            role=MembershipRole(row[3]),
            status=InvitationStatus(row[4]),
            expires_at=row[5],
            created_at=row[6],
            invited_by=row[7],
            meta=row[8] if isinstance(row[8], dict) else {},
        )
