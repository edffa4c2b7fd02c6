from __future__ import annotations

import argparse
import os
import time
from datetime import datetime, timezone

from dotenv import load_dotenv

from .config import RelayConfigError, SettingsStore, load_relay_config_from_env
from .ledger import LedgerRecord, SqliteLedger, now_ms
from .observability import configure_logging_from_env
from .publisher import HomeAssistantPublisher, PublishError


def _parse_dt(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _iter_replay_records(
    ledger: SqliteLedger,
    *,
    since: datetime,
    until: datetime | None,
    max_records: int | None,
) -> list[LedgerRecord]:
    end_ms = _to_ms(until) if until is not None else now_ms()
    records = ledger.records_by_time_range(_to_ms(since), end_ms, unsent_only=True)
    if max_records is not None:
        records = records[: max(0, max_records)]
    return records


def replay_records(
    ledger: SqliteLedger,
    publisher: HomeAssistantPublisher,
    records: list[LedgerRecord],
    *,
    rate_limit_rps: float = 5.0,
    sleep=time.sleep,
) -> tuple[int, int]:
    """Publish each record synchronously. Returns (sent, failed)."""

    min_interval_s = 1.0 / float(rate_limit_rps) if rate_limit_rps > 0 else 0.0
    sent = 0
    failed = 0
    for record in records:
        started = time.perf_counter()
        try:
            entity = publisher.publish(record.key, record.value)
        except PublishError as exc:
            failed += 1
            print(f"[replay] failed id={record.id} key={record.key}: {exc}")
        else:
            ledger.mark_sent(record.id)
            sent += 1
            print(f"[replay] sent id={record.id} entity={entity} value={record.value}")

        elapsed = time.perf_counter() - started
        if min_interval_s > elapsed:
            sleep(min_interval_s - elapsed)
    return sent, failed


def main() -> None:
    load_dotenv()
    configure_logging_from_env()

    parser = argparse.ArgumentParser(description="Re-publish unsent ledger records by time range")
    parser.add_argument("--since", required=True, help="Inclusive start timestamp (ISO-8601)")
    parser.add_argument("--until", default=None, help="Inclusive end timestamp (ISO-8601, default now)")
    parser.add_argument(
        "--rate-limit-rps",
        type=float,
        default=5.0,
        help="Maximum state updates per second (0 disables rate limiting)",
    )
    parser.add_argument("--max-records", type=int, default=None, help="Optional cap on replayed records")
    parser.add_argument(
        "--ledger-db",
        default=os.getenv("LEDGER_DB_PATH", "./obd_relay_ledger.sqlite"),
        help="Path to the local SQLite ledger",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print replay plan without posting")
    args = parser.parse_args()

    since = _parse_dt(args.since)
    until = _parse_dt(args.until) if args.until else None
    if until is not None and since > until:
        raise SystemExit("--since must be <= --until")
    if args.max_records is not None and args.max_records < 1:
        raise SystemExit("--max-records must be >= 1")

    try:
        config = load_relay_config_from_env(SettingsStore.from_env().load())
    except RelayConfigError as exc:
        raise SystemExit(f"[replay] invalid relay config: {exc}") from exc

    ledger = SqliteLedger(args.ledger_db)
    records = _iter_replay_records(ledger, since=since, until=until, max_records=args.max_records)

    print(
        "[replay] ledger=%s since=%s until=%s records=%s"
        % (
            args.ledger_db,
            since.isoformat(),
            until.isoformat() if until else "(now)",
            len(records),
        )
    )

    if args.dry_run or not records:
        return

    if not config.base_url or not config.token:
        raise SystemExit("[replay] HA_URL and HA_TOKEN must be configured")

    publisher = HomeAssistantPublisher.from_config(config)
    try:
        sent, failed = replay_records(ledger, publisher, records, rate_limit_rps=args.rate_limit_rps)
    finally:
        publisher.close()

    print(f"[replay] complete sent={sent} failed={failed}")


if __name__ == "__main__":
    main()
