"""Tests for QuotaLedger - purchase records, scan quota and consolidation."""

import time
from threading import Thread

import pytest

from iap_license.models import (
    LedgerSettings,
    ProductDefinition,
    ProductType,
    PurchaseRecord,
    ScanCount,
)
from iap_license.repositories.product_catalog import ProductCatalog
from iap_license.repositories.quota_ledger import (
    LedgerConflictError,
    QuotaConsolidationError,
    QuotaLedger,
)
from iap_license.repositories.table import (
    PreconditionFailedError,
    SqlTable,
    Table,
    TransactionFailedError,
    create_sql_engine,
)
from iap_license.utils.clock import Clock

TENANT = "DivisiBill"


class FlakyTransactionTable(Table):
    """Table whose first ``failures`` transactions are rejected."""

    def __init__(self, failures: int):
        super().__init__("FlakyLicenses", PurchaseRecord)
        self.failures = failures
        self.transactions = 0

    def submit_transaction(self, actions):
        self.transactions += 1
        if self.transactions <= self.failures:
            raise TransactionFailedError("simulated concurrent change", failed_index=0)
        return super().submit_transaction(actions)


class FlakyUpdateTable(Table):
    """Table whose first ``failures`` conditional updates lose the race."""

    def __init__(self, failures: int):
        super().__init__("FlakyLicenses", PurchaseRecord)
        self.failures = failures
        self.updates = 0

    def update_entity(self, entity, if_match=None):
        self.updates += 1
        if self.updates <= self.failures:
            raise PreconditionFailedError("simulated concurrent write")
        return super().update_entity(entity, if_match=if_match)



class SlowQueryTable(Table):
    """Table whose queries take ``delay`` seconds, widening read-then-write windows."""

    def __init__(self, delay: float = 0.0):
        super().__init__("SlowLicenses", PurchaseRecord)
        self.delay = delay

    def query(self, *args, **kwargs):
        rows = super().query(*args, **kwargs)
        time.sleep(self.delay)
        return rows


def run_concurrently(*calls):
    """Run each call on its own thread; return their results in order."""
    results = [None] * len(calls)

    def run(index, call):
        results[index] = call()

    threads = [Thread(target=run, args=(i, call)) for i, call in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results

@pytest.fixture
def catalog():
    return ProductCatalog(
        [
            ProductDefinition(id="ocr.calls", type=ProductType.CONSUMABLE, scans_per_unit=30),
            ProductDefinition(id="pro.subscription", type=ProductType.SUBSCRIPTION, grants_pro=True),
            ProductDefinition(id="pro.upgrade", type=ProductType.NON_CONSUMABLE, grants_pro=True),
        ]
    )


@pytest.fixture
def table():
    return Table("TestLicenses", PurchaseRecord)


@pytest.fixture
def ledger(table, catalog):
    return QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3), clock=Clock())


def set_scans(table, order_id, scans):
    record = table.get_entity(TENANT, order_id)
    table.update_entity(record.model_copy(update={"scans_left": scans}))


class TestRecordPurchase:
    """Test recording purchases."""

    def test_fresh_consumable_purchase_grants_scans(self, ledger):
        """Scenario: fresh order O1 for ocr.calls, quantity 1."""
        assert ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1", quantity=1) is True
        assert ledger.get_scans("O1", "tok-1") == 30

    def test_quantity_multiplies_grant(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1", quantity=3)
        assert ledger.get_scans("O1", "tok-1") == 90

    def test_zero_quantity_still_grants_one_unit(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1", quantity=0)
        assert ledger.get_scans("O1", "tok-1") == 30

    def test_non_consumable_has_no_scans(self, ledger):
        assert ledger.record_purchase("P1", "pro.upgrade", "tok-p", "acct-1") is True
        assert ledger.get_scans("P1", "tok-p") == 0

    def test_duplicate_order_rejected_and_scans_unchanged(self, ledger, table):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        set_scans(table, "O1", 12)

        assert ledger.record_purchase("O1", "ocr.calls", "tok-other", "acct-1") is False
        assert ledger.get_scans("O1", "tok-1") == 12

    def test_purchase_token_bound_to_other_order_rejected(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")

        assert ledger.record_purchase("O2", "ocr.calls", "tok-1", "acct-1") is False
        assert ledger.find_record("O2") is None

    def test_empty_ids_raise(self, ledger):
        with pytest.raises(ValueError):
            ledger.record_purchase("", "ocr.calls")
        with pytest.raises(ValueError):
            ledger.record_purchase("O1", "")


class TestConsolidation:
    """Test folding unused scans into a new consumable purchase."""

    def test_carry_over_from_previous_purchase(self, ledger, table):
        """Scenario: O1 has 12 left, O2 from the same account gets 30 + 12."""
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        set_scans(table, "O1", 12)

        assert ledger.record_purchase("O2", "ocr.calls", "tok-2", "acct-1") is True
        assert ledger.get_scans("O1", "tok-1") == 0
        assert ledger.get_scans("O2", "tok-2") == 42

    def test_conservation_across_many_records(self, ledger, table):
        quotas = [3, 7, 11, 1]
        for i, q in enumerate(quotas):
            ledger.record_purchase(f"O{i}", "ocr.calls", f"tok-{i}", "acct-1")
            set_scans(table, f"O{i}", q)
        # The first three records were folded into later ones as they were recorded,
        # so reset them to simulate independent prior quotas
        for i, q in enumerate(quotas):
            set_scans(table, f"O{i}", q)

        ledger.record_purchase("NEW", "ocr.calls", "tok-new", "acct-1")

        assert ledger.total_scans("acct-1") == 30 + sum(quotas)
        for i in range(len(quotas)):
            assert table.get_entity(TENANT, f"O{i}").scans_left == 0

    def test_other_accounts_untouched(self, ledger, table):
        ledger.record_purchase("A1", "ocr.calls", "tok-a", "acct-a")
        ledger.record_purchase("B1", "ocr.calls", "tok-b", "acct-b")

        ledger.record_purchase("A2", "ocr.calls", "tok-a2", "acct-a")

        assert ledger.get_scans("B1", "tok-b") == 30
        assert ledger.get_scans("A2", "tok-a2") == 60

    def test_no_account_id_never_merges(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "")
        ledger.record_purchase("O2", "ocr.calls", "tok-2", "")

        assert ledger.get_scans("O1", "tok-1") == 30
        assert ledger.get_scans("O2", "tok-2") == 30

    def test_pro_purchase_does_not_absorb_scans(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        ledger.record_purchase("P1", "pro.subscription", "tok-p", "acct-1")

        assert ledger.get_scans("O1", "tok-1") == 30
        assert ledger.get_scans("P1", "tok-p") == 0

    def test_transaction_failure_retried(self, catalog):
        table = FlakyTransactionTable(failures=2)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")

        assert ledger.record_purchase("O2", "ocr.calls", "tok-2", "acct-1") is True
        assert table.transactions == 3
        assert ledger.get_scans("O1", "tok-1") == 0
        assert ledger.get_scans("O2", "tok-2") == 60

    def test_exhausted_retries_raise_and_grant_nothing(self, catalog):
        table = FlakyTransactionTable(failures=10)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")

        with pytest.raises(QuotaConsolidationError):
            ledger.record_purchase("O2", "ocr.calls", "tok-2", "acct-1")

        assert ledger.find_record("O2") is None
        assert ledger.get_scans("O1", "tok-1") == 30

    def test_concurrent_consolidations_conserve_quota(self, catalog):
        table = Table("TestLicenses", PurchaseRecord)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=20))
        ledger.record_purchase("O0", "ocr.calls", "tok-0", "acct-1")
        errors = []

        def buy(i):
            try:
                ledger.record_purchase(f"O{i}", "ocr.calls", f"tok-{i}", "acct-1")
            except QuotaConsolidationError as e:
                errors.append(e)

        threads = [Thread(target=buy, args=(i,)) for i in range(1, 6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        recorded = 6 - len(errors)
        assert ledger.total_scans("acct-1") == 30 * recorded

    def test_concurrent_purchases_with_same_token_bind_once(self, catalog):
        table = SlowQueryTable(delay=0.05)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=5))

        results = run_concurrently(
            lambda: ledger.record_purchase("O1", "ocr.calls", "same-token", "acct-x"),
            lambda: ledger.record_purchase("O2", "ocr.calls", "same-token", "acct-x"),
        )

        assert sorted(results) == [False, True]
        bound = table.query(partition_key=TENANT, predicate=lambda r: r.purchase_token == "same-token")
        assert len(bound) == 1
        assert ledger.total_scans("acct-x") == 30

    def test_same_token_from_two_workers_binds_once(self, catalog, tmp_path):
        url = f"sqlite:///{tmp_path / 'licenses.db'}"
        engines = [create_sql_engine(url), create_sql_engine(url)]
        ledgers = [
            QuotaLedger(SqlTable("Licenses", PurchaseRecord, engine), catalog, TENANT) for engine in engines
        ]

        results = run_concurrently(
            lambda: ledgers[0].record_purchase("O1", "ocr.calls", "same-token", "acct-x"),
            lambda: ledgers[1].record_purchase("O2", "ocr.calls", "same-token", "acct-x"),
        )

        assert sorted(results) == [False, True]
        winner = ledgers[1].find_by_purchase_token("same-token")
        assert winner.order_id == ("O1" if results[0] else "O2")
        assert ledgers[0].total_scans("acct-x") == 30
        for engine in engines:
            engine.dispose()


class TestGetScans:
    """Test quota lookup and legacy token backfill."""

    def test_unknown_order_returns_not_found(self, ledger):
        assert ledger.get_scans("missing", "tok") == ScanCount.NOT_FOUND

    def test_mismatched_token_returns_conflict(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        assert ledger.get_scans("O1", "tok-stolen") == ScanCount.TOKEN_CONFLICT

    def test_none_token_skips_check(self, ledger):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        assert ledger.get_scans("O1") == 30

    def test_legacy_record_gets_token_backfilled(self, ledger, table):
        ledger.record_purchase("O1", "ocr.calls", "", "acct-1")

        assert ledger.get_scans("O1", "tok-late") == 30
        record = table.get_entity(TENANT, "O1")
        assert record.purchase_token == "tok-late"
        assert record.time_used is not None
        assert ledger.get_scans("O1", "tok-other") == ScanCount.TOKEN_CONFLICT

    def test_backfill_refused_when_token_bound_elsewhere(self, ledger, table):
        ledger.record_purchase("O1", "ocr.calls", "", "acct-1")
        ledger.record_purchase("O2", "pro.upgrade", "tok-2", "acct-2")

        assert ledger.get_scans("O1", "tok-2") == ScanCount.TOKEN_CONFLICT
        assert table.get_entity(TENANT, "O1").purchase_token == ""

    def test_backfill_retries_on_conflict(self, catalog):
        table = FlakyUpdateTable(failures=1)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "", "acct-1")

        assert ledger.get_scans("O1", "tok-late") == 30
        assert table.get_entity(TENANT, "O1").purchase_token == "tok-late"

    def test_backfill_exhausted_raises(self, catalog):
        table = FlakyUpdateTable(failures=10)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "", "acct-1")

        with pytest.raises(LedgerConflictError):
            ledger.get_scans("O1", "tok-late")

    def test_concurrent_backfills_of_same_token_bind_once(self, catalog):
        table = SlowQueryTable()
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "", "acct-1")
        ledger.record_purchase("O2", "ocr.calls", "", "acct-2")
        table.delay = 0.05

        results = run_concurrently(
            lambda: ledger.get_scans("O1", "tok-late"),
            lambda: ledger.get_scans("O2", "tok-late"),
        )

        assert sorted(results) == [ScanCount.TOKEN_CONFLICT, 30]
        tokens = [table.get_entity(TENANT, order_id).purchase_token for order_id in ("O1", "O2")]
        assert sorted(tokens) == ["", "tok-late"]


class TestDecrementScans:
    """Test quota use."""

    def test_decrement_never_goes_negative(self, ledger, table):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        set_scans(table, "O1", 2)

        assert ledger.decrement_scans("O1") == 1
        assert ledger.decrement_scans("O1") == 0
        assert ledger.decrement_scans("O1") == 0
        assert table.get_entity(TENANT, "O1").scans_left == 0

    def test_decrement_unknown_order_returns_zero(self, ledger):
        assert ledger.decrement_scans("missing") == 0

    def test_decrement_updates_time_used(self, ledger, table):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        assert table.get_entity(TENANT, "O1").time_used is None

        ledger.decrement_scans("O1")
        assert table.get_entity(TENANT, "O1").time_used is not None

    def test_decrement_retries_on_conflict(self, catalog):
        table = FlakyUpdateTable(failures=2)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")

        assert ledger.decrement_scans("O1") == 29

    def test_decrement_exhausted_retries_raise(self, catalog):
        table = FlakyUpdateTable(failures=10)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=3))
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")

        with pytest.raises(LedgerConflictError):
            ledger.decrement_scans("O1")

    def test_concurrent_decrements_are_all_counted(self, catalog):
        table = Table("TestLicenses", PurchaseRecord)
        ledger = QuotaLedger(table, catalog, TENANT, settings=LedgerSettings(max_attempts=50))
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")

        threads = [Thread(target=ledger.decrement_scans, args=("O1",)) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert ledger.get_scans("O1") == 20


class TestUpdateTimeUsed:
    def test_touches_existing_record(self, ledger, table):
        ledger.record_purchase("O1", "ocr.calls", "tok-1", "acct-1")
        assert ledger.update_time_used("O1") is True
        assert table.get_entity(TENANT, "O1").time_used is not None

    def test_missing_record(self, ledger):
        assert ledger.update_time_used("missing") is False
