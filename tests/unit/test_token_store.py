"""Tests for TokenStore - bearer token issue, rotation and lookup."""

from datetime import timedelta

import pytest

from iap_license.models import TokenRecord, TokenSettings
from iap_license.repositories.table import EntityNotFoundError, Table, TableError
from iap_license.repositories.token_store import TokenConflictError, TokenStore
from iap_license.utils.clock import Clock
from iap_license.utils.token_generator import is_valid_token

TENANT = "DivisiBill"


class RacingDeleteTable(Table):
    """Token table where another caller always deletes the row first."""

    def __init__(self):
        super().__init__("RacingTokens", TokenRecord)

    def delete_entity(self, partition_key, row_key, if_match=None):
        super().delete_entity(partition_key, row_key, if_match=if_match)
        raise EntityNotFoundError(f"{row_key} already deleted")


class BrokenDeleteTable(Table):
    """Token table whose deletes fail with a storage error."""

    def __init__(self):
        super().__init__("BrokenTokens", TokenRecord)

    def delete_entity(self, partition_key, row_key, if_match=None):
        raise TableError("storage unavailable")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def table():
    return Table("TestTokens", TokenRecord)


@pytest.fixture
def store(table, clock):
    return TokenStore(table, TENANT, settings=TokenSettings(lifetime_seconds=60, renew_window_seconds=5), clock=clock)


class TestIssue:
    """Test first issuance."""

    def test_issue_returns_token_that_resolves(self, store):
        token = store.issue_or_rotate("acct-1")
        assert token is not None
        assert is_valid_token(token)
        assert store.resolve(token) == "acct-1"

    def test_token_expires_after_lifetime(self, store, table, clock):
        token = store.issue_or_rotate("acct-1")
        record = table.get_entity(TENANT, token)
        assert record.time_expired - clock.now() <= timedelta(seconds=60)
        assert record.time_expired - clock.now() > timedelta(seconds=55)

    def test_empty_user_key_raises(self, store):
        with pytest.raises(ValueError):
            store.issue_or_rotate("")

    def test_each_user_gets_own_token(self, store):
        first = store.issue_or_rotate("acct-1")
        second = store.issue_or_rotate("acct-2")
        assert first != second
        assert store.resolve(second) == "acct-2"


class TestRotation:
    """Test the expiry-imminent rotation window."""

    def test_current_token_not_replaced(self, store, clock):
        store.issue_or_rotate("acct-1")
        clock.advance(seconds=30)
        assert store.issue_or_rotate("acct-1") is None

    def test_rotates_inside_renew_window(self, store, table, clock):
        old = store.issue_or_rotate("acct-1")
        clock.advance(seconds=57)

        new = store.issue_or_rotate("acct-1")

        assert new is not None
        assert new != old
        assert store.resolve(old) is None
        assert store.resolve(new) == "acct-1"
        assert table.count() == 1

    def test_expired_token_is_replaced(self, store, clock):
        old = store.issue_or_rotate("acct-1")
        clock.advance(seconds=120)

        new = store.issue_or_rotate("acct-1")
        assert new is not None and new != old
        assert store.resolve(new) == "acct-1"

    def test_old_token_already_gone_is_not_an_error(self, clock):
        table = RacingDeleteTable()
        store = TokenStore(table, TENANT, clock=clock)
        old = store.issue_or_rotate("acct-1")
        clock.advance(seconds=58)

        new = store.issue_or_rotate("acct-1")
        assert new is not None and new != old
        assert store.resolve(new) == "acct-1"

    def test_delete_failure_raises_conflict(self, clock):
        table = BrokenDeleteTable()
        store = TokenStore(table, TENANT, clock=clock)
        store.issue_or_rotate("acct-1")
        clock.advance(seconds=58)

        with pytest.raises(TokenConflictError):
            store.issue_or_rotate("acct-1")


class TestResolve:
    """Test token lookup."""

    def test_unknown_token(self, store):
        assert store.resolve("no-such-token") is None

    def test_empty_token(self, store):
        assert store.resolve("") is None
        assert store.resolve(None) is None

    def test_expired_token_never_resolves(self, store, clock):
        token = store.issue_or_rotate("acct-1")
        clock.advance(seconds=61)
        assert store.resolve(token) is None

    def test_token_from_other_tenant_not_visible(self, table, clock):
        ours = TokenStore(table, TENANT, clock=clock)
        theirs = TokenStore(table, "OtherTenant", clock=clock)
        token = theirs.issue_or_rotate("acct-1")
        assert ours.resolve(token) is None
