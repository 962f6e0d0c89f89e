from __future__ import annotations

from datetime import timedelta

import pytest

from onboarding.domain.contracts import RegisterTrialInput
from onboarding.domain.models import MembershipRole, TrialState
from onboarding.domain.registration import SEEDED_MESSAGE
from onboarding.security.rate_limiter import hash_client_address
from onboarding.security.signup_lock import SignupLockError


def form(email="ada@example.com", company="Acme Inc", **extra) -> RegisterTrialInput:
    values = {
        "full_name": "Ada Lovelace",
        "company_name": company,
        "email": email,
        "ip_address": "198.51.100.7",
        "user_agent": "Mozilla/5.0",
    }
    values.update(extra)
    return RegisterTrialInput(**values)


def test_registration_seeds_trial_account(services, repo, clock):
    result = services.registration.register(form(email="  Ada@Example.com "))

    assert result.ok
    assert result.code == "REGISTRATION_SEEDED"
    assert result.message == SEEDED_MESSAGE
    assert result.email_sent is None
    account = repo.accounts[result.account_id]
    assert account.slug == "acme-inc"
    assert account.trial_state == TrialState.TRIAL_ACTIVE
    assert (account.trial_ends_at - account.trial_started_at).days == 14
    invitation = repo.invitations[result.existing_invitation_id]
    assert invitation.email == "ada@example.com"
    assert invitation.role == MembershipRole.ADMIN
    assert invitation.meta["source"] == "self_register_trial"
    assert invitation.meta["requested_full_name"] == "Ada Lovelace"
    attempt = repo.signup_attempts[-1]
    assert attempt.result_code == "REGISTRATION_SEEDED"
    assert attempt.email_norm == "ada@example.com"
    assert attempt.ip_hash == hash_client_address("198.51.100.7", "pepper")
    assert attempt.created_at == clock.now


def test_repeat_registration_reuses_pending(services, repo):
    first = services.registration.register(form())
    second = services.registration.register(form())

    assert second.ok
    assert second.code == "REGISTRATION_REUSED_PENDING"
    assert second.reused_pending is True
    assert second.account_id == first.account_id
    assert second.existing_invitation_id == first.existing_invitation_id
    assert len(repo.accounts) == 1


def test_company_slug_collisions_get_suffixes(services):
    first = services.registration.register(form(email="one@example.com"))
    second = services.registration.register(form(email="two@example.com"))

    assert first.account_slug == "acme-inc"
    assert second.account_slug == "acme-inc-2"


def test_email_rate_limit_window(services, clock):
    codes = [services.registration.register(form()).code for _ in range(4)]
    clock.advance(seconds=3601)
    later = services.registration.register(form())

    assert codes == [
        "REGISTRATION_SEEDED",
        "REGISTRATION_REUSED_PENDING",
        "REGISTRATION_REUSED_PENDING",
        "RATE_LIMITED",
    ]
    assert later.code == "REGISTRATION_REUSED_PENDING"


def test_ip_rate_limit_counts_every_outcome(services):
    for idx in range(5):
        services.registration.register(form(email=f"user{idx}@example.com", full_name="x"))

    result = services.registration.register(form(email="fresh@example.com"))

    assert result.code == "RATE_LIMITED"


def test_honeypot_returns_seeded_shape_without_writes(services, repo):
    result = services.registration.register(form(honeypot="https://spam.example.com"))

    assert result.ok
    assert result.code == "REGISTRATION_SEEDED"
    assert result.message == SEEDED_MESSAGE
    assert result.account_id is None
    assert repo.accounts == {}
    assert repo.signup_attempts[-1].result_code == "REGISTRATION_SEEDED"


@pytest.mark.parametrize(
    "overrides",
    [
        {"full_name": "A"},
        {"company_name": " "},
        {"email": "not-an-email"},
        {"email": ""},
    ],
)
def test_invalid_forms_are_rejected(services, repo, overrides):
    result = services.registration.register(form(**overrides))

    assert not result.ok
    assert result.code == "INVALID_INPUT"
    assert repo.accounts == {}


def test_existing_users_are_turned_away(services, repo, gateway):
    gateway.add_identity("known@example.com", confirmed=True)

    result = services.registration.register(form(email="known@example.com"))

    assert not result.ok
    assert result.code == "EMAIL_ALREADY_REGISTERED"
    assert repo.accounts == {}


def test_ghost_identity_is_reaped_before_seeding(services, gateway, sleeps):
    ghost = gateway.add_identity("ghost@example.com")

    result = services.registration.register(form(email="ghost@example.com"))

    assert result.code == "REGISTRATION_SEEDED"
    assert ghost.id in gateway.deleted
    assert sleeps == [0.2]


def test_foreign_pending_invitation_is_reported(services, repo, clock, account):
    pending = repo.insert_invitation(
        account_id=account.id,
        email="invitee@example.com",
        role=MembershipRole.VIEWER,
        invited_by=None,
        expires_at=clock.now + timedelta(days=3),
        meta={"source": "invite-account-user"},
    )

    result = services.registration.register(form(email="invitee@example.com"))

    assert result.code == "EMAIL_ALREADY_REGISTERED"
    assert result.existing_invitation_id == pending.id


def test_invitation_insert_failure_removes_account(services, repo):
    repo.fail_invitation_insert = True

    result = services.registration.register(form())

    assert not result.ok
    assert result.code == "REGISTRATION_SEED_FAILED"
    assert repo.accounts == {}
    assert repo.signup_attempts[-1].result_code == "REGISTRATION_SEED_FAILED"


def test_lock_failure_fails_the_seed(repo, make_services):
    class BusyLock:
        def hold(self, email):
            raise SignupLockError("signup lock failed: another registration for this email is in progress")

    result = make_services(lock=BusyLock()).registration.register(form())

    assert result.code == "REGISTRATION_SEED_FAILED"
    assert repo.accounts == {}


def test_disabled_registration(repo, make_services):
    result = make_services(self_signup_enabled=False).registration.register(form())

    assert result.code == "FEATURE_DISABLED"
    assert repo.signup_attempts[-1].result_code == "FEATURE_DISABLED"


def test_confirmation_invite_is_opt_in(gateway, make_services):
    result = make_services(self_signup_send_invite=True).registration.register(form())

    assert result.email_sent is True
    assert gateway.invites[0][0] == "ada@example.com"
    assert gateway.invites[0][2]["invited_role"] == "ADMIN"


def test_confirmation_failure_keeps_the_seed(repo, gateway, make_services):
    gateway.invite_errors = ["smtp relay unavailable"]

    result = make_services(self_signup_send_invite=True).registration.register(form())

    assert result.ok
    assert result.email_sent is False
    assert result.account_id in repo.accounts


def test_repeat_registration_sends_a_fresh_link(repo, gateway, make_services):
    registration = make_services(self_signup_send_invite=True).registration
    first = registration.register(form())
    first_identity = gateway.find("ada@example.com")

    second = registration.register(form())

    assert second.code == "REGISTRATION_REUSED_PENDING"
    assert second.existing_invitation_id == first.existing_invitation_id
    assert second.email_sent is True
    assert "has been sent" in second.message
    assert first_identity.id in gateway.deleted
    assert gateway.find("ada@example.com") is not None
    assert [invite[0] for invite in gateway.invites] == ["ada@example.com", "ada@example.com"]
    assert len(repo.accounts) == 1
