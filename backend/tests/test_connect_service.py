"""Stripe Connect sync and onboarding tests"""
import pytest
from urllib.parse import urlparse, parse_qs

from conftest import make_product

from app.core.exceptions import NotFoundError
from app.db.helpers import as_utc
from app.models.connect_account import StripeConnectAccount
from app.models.creator_profile import CreatorProfile
from app.models.user import User
from app.services.auth_service import create_user
from app.services.connect_service import (
    sync_account_state, handle_account_updated, find_creator_for_account,
    create_connect_link, complete_connect_oauth, sync_for_creator, get_connect_status
)
from app.services.creator_status import compute_creator_active


def account(account_id="acct_new", details=True, charges=True, payouts=True):
    return {
        "id": account_id,
        "details_submitted": details,
        "charges_enabled": charges,
        "payouts_enabled": payouts,
    }


@pytest.fixture
def new_creator(db_session):
    user = create_user(email="newcreator@resend.dev", password="CreatorPassword123!", db=db_session, role="creator")
    db_session.add(CreatorProfile(user_id=user.id, display_name="Newbie", is_profile_complete=True))
    db_session.commit()
    return user


def _row(db_session, user_id):
    return db_session.query(StripeConnectAccount).filter(StripeConnectAccount.user_id == user_id).one()


@pytest.mark.critical
class TestSyncAccountState:

    def test_connected_at_only_after_details_submitted(self, db_session, new_creator):
        sync_account_state(db_session, new_creator.id, account(details=False, charges=False))
        assert _row(db_session, new_creator.id).connected_at is None

        sync_account_state(db_session, new_creator.id, account())
        assert _row(db_session, new_creator.id).connected_at is not None

    def test_connected_at_set_once(self, db_session, new_creator):
        sync_account_state(db_session, new_creator.id, account())
        first = as_utc(_row(db_session, new_creator.id).connected_at)

        sync_account_state(db_session, new_creator.id, account(details=False, charges=False))
        sync_account_state(db_session, new_creator.id, account())

        db_session.expire_all()
        row = _row(db_session, new_creator.id)
        assert as_utc(row.connected_at) == first
        assert row.charges_enabled is True

    def test_flags_mirror_latest_snapshot(self, db_session, new_creator):
        sync_account_state(db_session, new_creator.id, account())
        sync_account_state(db_session, new_creator.id, account(charges=False, payouts=False))

        db_session.expire_all()
        row = _row(db_session, new_creator.id)
        assert row.details_submitted is True
        assert row.charges_enabled is False
        assert row.payouts_enabled is False
        assert db_session.query(StripeConnectAccount).count() == 1

    def test_recomputes_creator_active(self, db_session, new_creator):
        make_product(db_session, new_creator)
        profile = db_session.query(CreatorProfile).filter(CreatorProfile.user_id == new_creator.id).one()
        assert profile.is_active is False

        sync_account_state(db_session, new_creator.id, account())

        db_session.refresh(profile)
        assert profile.is_active is True

    def test_recompute_failure_does_not_fail_sync(self, db_session, new_creator, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr("app.services.connect_service.recompute_creator_active", broken)

        row = sync_account_state(db_session, new_creator.id, account())
        assert row.details_submitted is True


@pytest.mark.high
class TestCreatorActive:

    def test_requires_complete_profile(self, db_session, creator):
        make_product(db_session, creator)
        assert compute_creator_active(db_session, creator.id) is True

        profile = db_session.query(CreatorProfile).filter(CreatorProfile.user_id == creator.id).one()
        profile.is_profile_complete = False
        db_session.commit()
        assert compute_creator_active(db_session, creator.id) is False

    def test_requires_product(self, db_session, creator):
        assert compute_creator_active(db_session, creator.id) is False

    def test_details_submitted_is_enough(self, db_session, new_creator):
        make_product(db_session, new_creator)
        sync_account_state(db_session, new_creator.id, account(charges=False, payouts=False))
        assert compute_creator_active(db_session, new_creator.id) is True


@pytest.mark.critical
class TestAccountUpdated:

    def test_unmapped_account_is_a_noop(self, db_session):
        assert handle_account_updated(db_session, account("acct_stranger")) is None
        assert db_session.query(StripeConnectAccount).count() == 0

    def test_mapped_account_syncs(self, db_session, creator):
        assert handle_account_updated(db_session, account("acct_test123", charges=False)) == creator.id
        db_session.expire_all()
        assert _row(db_session, creator.id).charges_enabled is False

    def test_falls_back_to_user_account_ref(self, db_session, new_creator):
        new_creator.stripe_account_id = "acct_legacy"
        db_session.commit()

        assert find_creator_for_account(db_session, "acct_legacy") == new_creator.id
        handle_account_updated(db_session, account("acct_legacy"))
        assert _row(db_session, new_creator.id).stripe_account_id == "acct_legacy"


@pytest.mark.high
class TestConnectOAuth:

    def test_link_carries_state(self, new_creator, mock_redis):
        url = create_connect_link(new_creator.id)

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://connect.stripe.com/oauth/authorize")
        assert query["client_id"] == ["ca_test"]
        assert query["redirect_uri"][0].endswith("/api/stripe-connect/oauth/callback")
        assert mock_redis.get(f"connect_state:{query['state'][0]}") == str(new_creator.id)

    def test_complete_links_and_syncs(self, db_session, new_creator, auto_mock_stripe):
        state = parse_qs(urlparse(create_connect_link(new_creator.id)).query)["state"][0]
        auto_mock_stripe.OAuth.token.return_value = {"stripe_user_id": "acct_new"}
        auto_mock_stripe.Account.retrieve.return_value = account("acct_new")

        row = complete_connect_oauth(db_session, "ac_code", state)

        auto_mock_stripe.OAuth.token.assert_called_once_with(grant_type="authorization_code", code="ac_code")
        assert row.stripe_account_id == "acct_new"
        assert row.connected_at is not None
        db_session.refresh(new_creator)
        assert new_creator.stripe_account_id == "acct_new"

    def test_state_is_single_use(self, db_session, new_creator, auto_mock_stripe):
        state = parse_qs(urlparse(create_connect_link(new_creator.id)).query)["state"][0]
        auto_mock_stripe.OAuth.token.return_value = {"stripe_user_id": "acct_new"}
        auto_mock_stripe.Account.retrieve.return_value = account("acct_new")
        complete_connect_oauth(db_session, "ac_code", state)

        with pytest.raises(ValueError, match="Invalid or expired OAuth state"):
            complete_connect_oauth(db_session, "ac_code", state)

    def test_unknown_state_rejected(self, db_session, auto_mock_stripe):
        with pytest.raises(ValueError, match="Invalid or expired OAuth state"):
            complete_connect_oauth(db_session, "ac_code", "forged")
        auto_mock_stripe.OAuth.token.assert_not_called()

    def test_account_linked_elsewhere_rejected(self, db_session, creator, new_creator, auto_mock_stripe):
        state = parse_qs(urlparse(create_connect_link(new_creator.id)).query)["state"][0]
        auto_mock_stripe.OAuth.token.return_value = {"stripe_user_id": "acct_test123"}

        with pytest.raises(ValueError, match="already linked"):
            complete_connect_oauth(db_session, "ac_code", state)
        assert db_session.query(User).filter(User.id == new_creator.id).one().stripe_account_id is None


@pytest.mark.medium
class TestSyncAndStatus:

    def test_sync_without_account(self, db_session, new_creator):
        with pytest.raises(NotFoundError):
            sync_for_creator(db_session, new_creator.id)

    def test_sync_refetches(self, db_session, creator, auto_mock_stripe):
        auto_mock_stripe.Account.retrieve.return_value = account("acct_test123", payouts=False)

        row = sync_for_creator(db_session, creator.id)

        auto_mock_stripe.Account.retrieve.assert_called_once_with("acct_test123")
        assert row.payouts_enabled is False

    def test_status_before_connecting(self, db_session, new_creator):
        status = get_connect_status(db_session, new_creator.id)
        assert status["connected"] is False
        assert status["connected_at"] is None

    def test_status_after_connecting(self, db_session, new_creator):
        sync_account_state(db_session, new_creator.id, account())
        status = get_connect_status(db_session, new_creator.id)
        assert status["connected"] is True
        assert status["stripe_account_id"] == "acct_new"
