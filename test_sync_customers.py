"""Tests for the reconciliation engine.

API2 is replaced by an in-memory fake, API1 by a Mock returning a fixed
list, and the watermark lives in a temp directory.
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock, Mock

import pytest

from clients import ExtractionError, RequestError, SourceClient
from models import DestinationCustomer, Outcome, SourceCustomer, SyncStats
from sync_customers import CustomerSync
from utils import PersistenceError, WatermarkStore


def customer(name: str, updated_at: str = "2024-01-01T00:00:00Z", arr: float = 100) -> SourceCustomer:
    return SourceCustomer(
        name=name, active_at="2023-06-01", arr=arr, team_member_id=1, updated_at=updated_at
    )


class FakeDestination:
    """In-memory API2 keyed by name."""

    def __init__(self, existing: list[DestinationCustomer] | None = None, fail_lookup: set | None = None):
        self.rows: dict[int, DestinationCustomer] = {}
        self.next_id = 1
        self.fail_lookup = fail_lookup or set()
        self.calls: list[tuple[str, str]] = []
        for row in existing or []:
            self._insert(row)

    def _insert(self, row: DestinationCustomer) -> DestinationCustomer:
        stored = DestinationCustomer(**{**row.__dict__, "id": self.next_id})
        self.rows[self.next_id] = stored
        self.next_id += 1
        return stored

    async def find_by_name(self, name):
        self.calls.append(("find", name))
        await asyncio.sleep(0)
        if name in self.fail_lookup:
            raise RequestError("API2: Server error.", 500)
        return [row for row in self.rows.values() if row.name == name]

    async def create(self, row):
        self.calls.append(("create", row.name))
        await asyncio.sleep(0)
        return self._insert(row)

    async def update(self, row):
        self.calls.append(("update", row.name))
        await asyncio.sleep(0)
        self.rows[row.id] = row
        return row

    def snapshot(self) -> dict:
        return {k: v.__dict__.copy() for k, v in self.rows.items()}


def make_source(customers) -> Mock:
    source = Mock()
    source.fetch_changed.return_value = customers
    return source


@pytest.fixture
def store(tmp_path):
    return WatermarkStore(str(tmp_path / "last_sync_date.json"))


# ---------------------------------------------------------------------------
# reconcile - create vs update
# ---------------------------------------------------------------------------

class TestReconcile:

    @pytest.mark.asyncio
    async def test_no_match_creates(self, store):
        dest = FakeDestination()
        engine = CustomerSync(make_source([]), dest, store)

        outcome = await engine.reconcile(customer("Acme"))

        assert outcome is Outcome.CREATED
        assert dest.calls == [("find", "Acme"), ("create", "Acme")]

    @pytest.mark.asyncio
    async def test_match_updates_first_id(self, store):
        dest = FakeDestination([DestinationCustomer(name="Acme"), DestinationCustomer(name="Acme")])
        engine = CustomerSync(make_source([]), dest, store)

        outcome = await engine.reconcile(customer("Acme", arr=999))

        assert outcome is Outcome.UPDATED
        assert dest.calls == [("find", "Acme"), ("update", "Acme")]
        assert dest.rows[1].arr == 999
        assert dest.rows[2].arr is None

    @pytest.mark.asyncio
    async def test_payload_has_business_fields_only(self, store):
        dest = Mock()
        dest.find_by_name = AsyncMock(return_value=[DestinationCustomer(id=42, name="Acme")])
        dest.update = AsyncMock()
        engine = CustomerSync(make_source([]), dest, store)

        await engine.reconcile(customer("Acme"))

        sent = dest.update.call_args.args[0]
        assert sent.to_payload() == {
            "name": "Acme",
            "activeAt": "2023-06-01",
            "arr": 100,
            "teamMemberId": 1,
            "id": 42,
        }

    @pytest.mark.asyncio
    async def test_failure_is_caught(self, store):
        dest = FakeDestination(fail_lookup={"Acme"})
        log = Mock()
        engine = CustomerSync(make_source([]), dest, store, log=log)

        assert await engine.reconcile(customer("Acme")) is Outcome.ERROR
        log.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self, store):
        dest = FakeDestination([DestinationCustomer(name="Old")])
        engine = CustomerSync(make_source([]), dest, store, dry_run=True)

        assert await engine.reconcile(customer("Old")) is Outcome.WOULD_UPDATE
        assert await engine.reconcile(customer("New")) is Outcome.WOULD_CREATE
        assert [c for c in dest.calls if c[0] != "find"] == []


# ---------------------------------------------------------------------------
# dispatch - groups and statistics
# ---------------------------------------------------------------------------

class TestDispatch:

    @pytest.mark.asyncio
    async def test_error_isolation_in_group_of_five(self, store):
        names = ["a", "b", "bad", "d", "e"]
        dest = FakeDestination(fail_lookup={"bad"})
        engine = CustomerSync(make_source([]), dest, store, concurrency=5)

        stats = await engine.dispatch([customer(n) for n in names])

        assert stats.errors == 1
        assert stats.created == 4
        assert sorted(c[1] for c in dest.calls if c[0] == "create") == ["a", "b", "d", "e"]

    @pytest.mark.asyncio
    async def test_groups_join_before_next_starts(self, store):
        events = []
        in_flight = 0
        peak = 0

        class TracingDestination(FakeDestination):
            async def find_by_name(self, name):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                events.append(("start", name))
                await asyncio.sleep(0.01)
                events.append(("end", name))
                in_flight -= 1
                return []

        engine = CustomerSync(make_source([]), TracingDestination(), store, concurrency=3)
        stats = await engine.dispatch([customer(str(i)) for i in range(7)])

        assert peak == 3
        assert stats.groups == 3
        groups = [["0", "1", "2"], ["3", "4", "5"], ["6"]]
        for current, following in zip(groups, groups[1:]):
            last_end = max(events.index(("end", n)) for n in current)
            next_start = min(events.index(("start", n)) for n in following)
            assert last_end < next_start

    @pytest.mark.asyncio
    async def test_chunks_processed_is_first_group_size(self, store):
        engine = CustomerSync(make_source([]), FakeDestination(), store, concurrency=4)

        stats = await engine.dispatch([customer(str(i)) for i in range(10)])

        assert stats.chunks_processed == 4
        assert stats.groups == 3

    @pytest.mark.asyncio
    async def test_chunks_processed_small_batch(self, store):
        engine = CustomerSync(make_source([]), FakeDestination(), store, concurrency=5)

        stats = await engine.dispatch([customer("a"), customer("b")])

        assert stats.chunks_processed == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, store):
        engine = CustomerSync(make_source([]), FakeDestination(), store)
        assert await engine.dispatch([]) == SyncStats()

    def test_invalid_concurrency(self, store):
        with pytest.raises(ValueError):
            CustomerSync(make_source([]), FakeDestination(), store, concurrency=0)


# ---------------------------------------------------------------------------
# run - whole pass
# ---------------------------------------------------------------------------

class TestRun:

    @pytest.mark.asyncio
    async def test_end_to_end_first_run(self, store):
        customers = [
            customer("New One", "2024-03-01T10:00:00Z"),
            customer("Existing", "2024-03-05T08:30:00Z"),
            customer("New Two", "2024-03-02T00:00:00Z"),
        ]
        source = make_source(customers)
        dest = FakeDestination([DestinationCustomer(name="Existing")])

        result = await CustomerSync(source, dest, store).run()

        source.fetch_changed.assert_called_once_with(None)
        assert result.ok
        assert result.stats.created == 2
        assert result.stats.updated == 1
        assert result.stats.errors == 0
        assert result.watermark == "2024-03-05T08:30:00Z"
        assert store.load() == "2024-03-05T08:30:00Z"
        assert not os.path.exists(store.lock_path)

    @pytest.mark.asyncio
    async def test_uses_stored_watermark(self, store):
        store.save("2024-01-01T00:00:00Z")
        source = make_source([])

        result = await CustomerSync(source, FakeDestination(), store).run()

        source.fetch_changed.assert_called_once_with("2024-01-01T00:00:00Z")
        assert result.watermark == "2024-01-01T00:00:00Z"
        assert store.load() == "2024-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_since_overrides_stored_watermark(self, store):
        store.save("2024-05-01T00:00:00Z")
        source = make_source([])

        await CustomerSync(source, FakeDestination(), store, since="2024-01-01T00:00:00Z").run()

        source.fetch_changed.assert_called_once_with("2024-01-01T00:00:00Z")

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, store):
        customers = [customer(f"C{i}", f"2024-01-0{i + 1}T00:00:00Z") for i in range(4)]
        dest = FakeDestination()

        first = await CustomerSync(make_source(customers), dest, store, concurrency=2).run()
        after_first = dest.snapshot()
        second = await CustomerSync(make_source(customers), dest, store, concurrency=2).run()

        assert first.stats.created == 4
        assert second.stats.created == 0
        assert second.stats.updated == 4
        assert dest.snapshot() == after_first

    @pytest.mark.asyncio
    async def test_record_errors_still_advance_watermark(self, store):
        customers = [
            customer("ok", "2024-01-01T00:00:00Z"),
            customer("bad", "2024-02-01T00:00:00Z"),
        ]
        dest = FakeDestination(fail_lookup={"bad"})

        result = await CustomerSync(make_source(customers), dest, store).run()

        assert result.ok
        assert result.stats.errors == 1
        assert store.load() == "2024-02-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_malformed_page_is_extraction_failure(self, store):
        session = Mock()
        session.get.return_value = Mock(status_code=200, ok=True, json=Mock(return_value=["not-a-dict"]))
        source = SourceClient(
            {"source": {"endpoint": "https://api1.example.com/customers", "api_key": "k"}},
            session=session,
        )
        dest = FakeDestination()

        result = await CustomerSync(source, dest, store).run()

        assert result.status == "extraction_failed"
        assert dest.calls == []
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_unwritable_state_directory_is_persistence_failure(self, tmp_path):
        store = WatermarkStore(str(tmp_path / "no-such-dir" / "state.json"))
        source = make_source([customer("a")])
        log = Mock()

        result = await CustomerSync(source, FakeDestination(), store, log=log).run()

        assert result.status == "persistence_failed"
        assert not result.ok
        source.fetch_changed.assert_not_called()
        log.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_extraction_failure_leaves_watermark(self, store):
        store.save("2024-01-01T00:00:00Z")
        source = Mock()
        source.fetch_changed.side_effect = ExtractionError("API1: Server error.", 500)
        dest = FakeDestination()
        log = Mock()

        result = await CustomerSync(source, dest, store, log=log).run()

        assert result.status == "extraction_failed"
        assert result.stats is None
        assert dest.calls == []
        assert store.load() == "2024-01-01T00:00:00Z"
        log.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported(self, store):
        store.save = Mock(side_effect=PersistenceError("disk full"))

        result = await CustomerSync(
            make_source([customer("a", "2024-01-01T00:00:00Z")]), FakeDestination(), store
        ).run()

        assert result.status == "persistence_failed"
        assert result.stats.created == 1
        assert result.watermark is None

    @pytest.mark.asyncio
    async def test_dry_run_does_not_persist(self, store):
        dest = FakeDestination()

        result = await CustomerSync(
            make_source([customer("a", "2024-01-01T00:00:00Z")]), dest, store, dry_run=True
        ).run()

        assert result.ok
        assert result.stats.skipped == 1
        assert result.stats.created == 0
        assert dest.rows == {}
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_locked_run_does_nothing(self, store):
        source = make_source([customer("a")])

        with store.lease():
            result = await CustomerSync(source, FakeDestination(), store).run()

        assert result.status == "locked"
        source.fetch_changed.assert_not_called()

    @pytest.mark.asyncio
    async def test_statistics_are_logged(self, store):
        log = Mock()

        await CustomerSync(make_source([customer("a")]), FakeDestination(), store, log=log).run()

        messages = [c.args[0] for c in log.info.call_args_list]
        assert "Number of Items Created: 1" in messages
        assert "Number of Items Updated: 0" in messages
        assert "Number of Chunks Processed: 1" in messages
        assert "Number of Errors Encountered: 0" in messages

    @pytest.mark.asyncio
    async def test_state_file_format(self, store):
        await CustomerSync(
            make_source([customer("a", "2024-07-07T07:07:07Z")]), FakeDestination(), store
        ).run()

        with open(store.path) as f:
            assert json.load(f) == {"lastSyncDate": "2024-07-07T07:07:07Z"}
