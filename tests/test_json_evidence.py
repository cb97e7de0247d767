from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from adapters.json_evidence import HintPassthroughParser, JsonEvidenceCollector, record_from_entry
from core.fingerprints import evidence_fingerprint, message_evidence_id
from core.models import Cadence, ReceiptKind, RunType

OWNER = "owner-1"


def _write(tmp_path, payload) -> str:
    path = tmp_path / "messages.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_record_id_prefers_explicit_then_message_then_fingerprint() -> None:
    explicit = record_from_entry(OWNER, {"id": "e1", "message_id": "m1", "received_at": "2025-05-01"})
    by_message = record_from_entry(OWNER, {"message_id": "m1", "received_at": "2025-05-01"})
    by_content = record_from_entry(OWNER, {"subject": "Receipt", "body": "Paid", "received_at": "2025-05-01"})

    assert explicit.id == "e1"
    assert by_message.id == message_evidence_id(OWNER, "m1")
    assert by_message.message_id == "m1"
    assert by_content.id == evidence_fingerprint(
        OWNER, "Receipt", "Paid", datetime(2025, 5, 1, tzinfo=timezone.utc)
    )


def test_record_from_entry_reads_hints_and_timestamps() -> None:
    record = record_from_entry(
        OWNER,
        {
            "id": "e1",
            "received_at": 1_746_100_800_000,
            "merchant": "Netflix",
            "amount": "15,49",
            "currency": "usd",
            "cadence": "monthly",
            "kind": "refund",
        },
    )

    assert record.received_at == datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert record.merchant_text == "Netflix"
    assert record.amount == 15.49
    assert record.cadence_hint == Cadence.MONTHLY
    assert record.receipt_kind == ReceiptKind.REFUND
    assert record.parsed is False


@pytest.mark.parametrize(
    "raw",
    [1_746_100_800, 1_746_100_800_000, "2025-05-01T12:00:00Z", "2025-05-01 14:00:00+02:00", "2025-05-01T12:00:00"],
)
def test_timestamps_normalise_to_utc(raw) -> None:
    record = record_from_entry(OWNER, {"id": "e1", "received_at": raw})

    assert record.received_at == datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_fingerprint_ignores_case_and_whitespace() -> None:
    when = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)

    first = evidence_fingerprint(OWNER, "Your  Netflix receipt", "Total:\n$15.49", when)
    second = evidence_fingerprint(OWNER, "your netflix receipt ", "TOTAL: $15.49", when)

    assert first == second
    assert first != evidence_fingerprint("owner-2", "Your Netflix receipt", "Total: $15.49", when)
    assert message_evidence_id(OWNER, "m1") != message_evidence_id("owner-2", "m1")


def test_collector_pages_with_offset_cursor(tmp_path) -> None:
    entries = [{"id": f"e{index}", "received_at": f"2025-05-0{index}"} for index in range(1, 6)]
    collector = JsonEvidenceCollector(_write(tmp_path, entries), page_size=2)

    async def collect():
        await collector.connect(OWNER)
        pages = []
        cursor = None
        while True:
            page = await collector.fetch_page(OWNER, cursor, RunType.FULL)
            pages.append(page)
            cursor = page.next_cursor
            if cursor is None:
                return pages

    pages = asyncio.run(collect())

    assert [[record.id for record in page.records] for page in pages] == [["e1", "e2"], ["e3", "e4"], ["e5"]]
    assert [page.next_cursor for page in pages] == ["2", "4", None]


def test_collector_accepts_messages_wrapper_and_skips_bad_entries(tmp_path) -> None:
    payload = {
        "messages": [
            {"id": "good", "received_at": "2025-05-01"},
            {"id": "no-date"},
            {"id": "bad-kind", "received_at": "2025-05-01", "kind": "gift"},
            {"id": "bad-date", "received_at": "not a date"},
        ]
    }
    collector = JsonEvidenceCollector(_write(tmp_path, payload), page_size=10)

    page = asyncio.run(collector.fetch_page(OWNER, None, RunType.INCREMENTAL))

    assert [record.id for record in page.records] == ["good"]
    assert page.next_cursor is None


def test_collector_rejects_missing_file_and_bad_page_size(tmp_path) -> None:
    collector = JsonEvidenceCollector(str(tmp_path / "missing.json"))

    with pytest.raises(FileNotFoundError):
        asyncio.run(collector.connect(OWNER))
    with pytest.raises(ValueError):
        JsonEvidenceCollector(str(tmp_path / "missing.json"), page_size=0)


def test_collector_rejects_non_list_payload(tmp_path) -> None:
    collector = JsonEvidenceCollector(_write(tmp_path, {"messages": {"id": "e1"}}))

    with pytest.raises(ValueError):
        asyncio.run(collector.connect(OWNER))


def test_parser_fills_gaps_from_text() -> None:
    records = [
        record_from_entry(
            OWNER,
            {"id": "e1", "received_at": "2025-05-01", "subject": "Your Netflix receipt", "body": "Total: $15.49"},
        ),
        record_from_entry(
            OWNER,
            {"id": "e2", "received_at": "2025-05-01", "subject": "Payment from Acme Cloud invoice", "body": "Amount 99 EUR"},
        ),
        record_from_entry(OWNER, {"id": "e3", "received_at": "2025-05-01", "subject": "Hello there"}),
    ]

    result = asyncio.run(HintPassthroughParser().parse_batch(records))

    assert result.failures == []
    netflix, acme, other = result.records
    assert (netflix.merchant_text, netflix.amount, netflix.currency) == ("Netflix", 15.49, "USD")
    assert (acme.merchant_text, acme.amount, acme.currency) == ("Acme Cloud", 99.0, "EUR")
    assert (other.merchant_text, other.amount, other.currency) == (None, None, None)
    assert all(record.parsed for record in result.records)


def test_parser_keeps_export_hints() -> None:
    record = record_from_entry(
        OWNER,
        {
            "id": "e1",
            "received_at": "2025-05-01",
            "merchant": "Spotify",
            "amount": 11.99,
            "currency": "gbp",
            "subject": "Your Netflix receipt",
            "body": "Total: $15.49",
        },
    )

    [parsed] = asyncio.run(HintPassthroughParser().parse_batch([record])).records

    assert (parsed.merchant_text, parsed.amount, parsed.currency) == ("Spotify", 11.99, "GBP")
