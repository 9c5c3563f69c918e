"""
Sync customers from API1 to API2.

Each invocation performs one incremental pass: customers changed since the
stored watermark are fetched from API1 and created or updated in API2 by
name. Meant to be run periodically (cron or similar).

Usage:
    # One sync pass using config.json and/or environment variables
    python sync_customers.py

    # Dry-run - look up every customer but write nothing
    python sync_customers.py --dry-run

    # Re-sync everything changed since a given timestamp
    python sync_customers.py --since 2024-01-01T00:00:00Z
"""

import argparse
import asyncio

from loguru import logger

from clients import DestinationClient, ExtractionError, SourceClient
from models import DestinationCustomer, Outcome, SourceCustomer, SyncConfig, SyncResult, SyncStats
from patterns import Patterns
from utils import (
    LeaseUnavailable,
    PersistenceError,
    WatermarkStore,
    chunked,
    compute_next_watermark,
    load_config_safe,
    setup_logging,
)


class CustomerSync:
    """Runs one incremental sync pass from API1 to API2."""

    def __init__(
        self,
        source: SourceClient,
        destination: DestinationClient,
        store: WatermarkStore,
        *,
        concurrency: int = 5,
        dry_run: bool = False,
        since: str | None = None,
        log=logger,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.source = source
        self.destination = destination
        self.store = store
        self.concurrency = concurrency
        self.dry_run = dry_run
        self.since = since
        self.log = log

    async def run(self) -> SyncResult:
        """Run one pass. Never raises for extraction, persistence or record errors."""
        try:
            with self.store.lease():
                return await self._run()
        except LeaseUnavailable as e:
            self.log.warning(f"Sync already running, skipping this pass: {e}")
            return SyncResult(status="locked")
        except PersistenceError as e:
            self.log.error(f"Sync failed: {e}")
            return SyncResult(status="persistence_failed")

    async def _run(self) -> SyncResult:
        previous = self.since if self.since is not None else self.store.load()
        self.log.info(f"Starting sync (last sync date: {previous or 'never'})")

        try:
            customers = await asyncio.to_thread(self.source.fetch_changed, previous)
        except ExtractionError as e:
            self.log.error(f"Sync failed: {e}")
            return SyncResult(
                status="extraction_failed", previous_watermark=previous, watermark=previous
            )

        stats = await self.dispatch(customers)
        watermark = compute_next_watermark(customers, previous)
        result = SyncResult(
            status="success", previous_watermark=previous, watermark=watermark, stats=stats
        )

        if watermark == previous:
            self.log.info("No updates newer than the last sync date.")

        if self.dry_run:
            self.log.info(f"Dry-run: last sync date would be {watermark}")
            result.watermark = previous
        else:
            try:
                self.store.save(watermark)
            except PersistenceError as e:
                self.log.error(f"Sync failed: {e}")
                result.status = "persistence_failed"
                result.watermark = previous

        if result.ok:
            self.log.info("Synchronization process completed.")
        self.report(stats)
        return result

    async def dispatch(self, customers: list[SourceCustomer]) -> SyncStats:
        """Reconcile customers group by group; each group runs concurrently."""
        stats = SyncStats()
        groups = chunked(customers, self.concurrency)
        if groups:
            stats.chunks_processed = len(groups[0])

        for group in groups:
            outcomes = await asyncio.gather(*(self.reconcile(c) for c in group))
            for outcome in outcomes:
                stats.record(outcome)
            stats.groups += 1

        return stats

    async def reconcile(self, customer: SourceCustomer) -> Outcome:
        """Create or update one customer in API2. Failures are logged, not raised."""
        try:
            matches = await self.destination.find_by_name(customer.name)
            payload = DestinationCustomer.from_source(customer)

            if matches:
                payload.id = matches[0].id
                if self.dry_run:
                    self.log.info(f"Dry-run: would update customer: {customer.name}")
                    return Outcome.WOULD_UPDATE
                await self.destination.update(payload)
                outcome = Outcome.UPDATED
            else:
                if self.dry_run:
                    self.log.info(f"Dry-run: would create customer: {customer.name}")
                    return Outcome.WOULD_CREATE
                await self.destination.create(payload)
                outcome = Outcome.CREATED

            self.log.info(f"Sync completed for customer: {customer.name}")
            return outcome
        except Exception as e:
            self.log.error(f"Error synchronizing customer {customer.name!r}: {e}")
            return Outcome.ERROR

    def report(self, stats: SyncStats) -> None:
        self.log.info(f"Number of Items Updated: {stats.updated}")
        self.log.info(f"Number of Items Created: {stats.created}")
        self.log.info(f"Number of Chunks Processed: {stats.chunks_processed}")
        self.log.info(f"Number of Errors Encountered: {stats.errors}")
        if self.dry_run:
            self.log.info(f"Number of Writes Skipped (dry-run): {stats.skipped}")


def build_sync(config: dict, *, dry_run: bool = False, since: str | None = None) -> CustomerSync:
    """Wire clients and store from a validated config dict."""
    sync_config = SyncConfig.from_dict(config)
    return CustomerSync(
        SourceClient(config, timeout_s=sync_config.timeout_s),
        DestinationClient(config, sync_config=sync_config),
        WatermarkStore(sync_config.state_file, lock_stale_s=sync_config.lock_stale_s),
        concurrency=sync_config.max_concurrent_requests,
        dry_run=dry_run,
        since=since,
    )


def print_summary(result: SyncResult) -> None:
    print()
    print("=" * 60)
    print(f"[*] Status: {result.status}")
    print(f"[*] Last sync date: {result.previous_watermark or 'never'} -> {result.watermark or 'never'}")
    if result.stats:
        s = result.stats
        print(f"[*] Created: {s.created}  Updated: {s.updated}  Errors: {s.errors}  Groups: {s.groups}")
        if s.skipped:
            print(f"[*] Skipped (dry-run): {s.skipped}")
    print("=" * 60)


def main():
    parser = argparse.ArgumentParser(
        description="Sync customers from API1 to API2",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # One sync pass
    python sync_customers.py

    # Dry-run - look up every customer but write nothing
    python sync_customers.py --dry-run

    # Ignore the stored watermark and sync from a given timestamp
    python sync_customers.py --since 2024-01-01T00:00:00Z
        """,
    )

    parser.add_argument("--config", default="config.json", help="Path to config.json")
    parser.add_argument(
        "--dry-run", action="store_true", help="Look up customers but do not write anything"
    )
    parser.add_argument("--since", help="Override the stored last sync date (ISO-8601)")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines")

    args = parser.parse_args()

    if args.since and not Patterns.ISO_TIMESTAMP.match(args.since):
        print(f"Error: Invalid --since '{args.since}'. Expected ISO-8601 (e.g., 2024-01-01T00:00:00Z)")
        return 1

    if not Patterns.LOG_LEVEL.match(args.log_level):
        print(f"Error: Unknown log level '{args.log_level}'")
        return 1

    setup_logging(args.log_level, args.json_logs)

    config = load_config_safe(args.config)
    if config is None:
        return 1

    sync = build_sync(config, dry_run=args.dry_run, since=args.since)
    result = asyncio.run(sync.run())
    print_summary(result)
    return 0 if result.ok else 1


if __name__ == "__main__":
    exit(main())
