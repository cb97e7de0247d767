from __future__ import annotations

from dataclasses import replace

import pytest

from core.config import DetectionConfig
from core.merchants import display_name, group_by_merchant, is_blocked, normalize_aliases, normalize_merchant_key


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("PAYPAL *Netflix.com (US)", "netflix"),
        ("Netflix, Inc.", "netflix"),
        ("  NETFLIX   ", "netflix"),
        ("SQ *Blue Bottle Coffee", "blue bottle coffee"),
        ("Spotify USA Inc", "spotify usa"),
        ("Adobe Systems Ltd.", "adobe systems"),
        ("Hulu, LLC", "hulu"),
        ("Disney+", "disney+"),
        ("AT&T Wireless", "at&t wireless"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_merchant_key(raw: str | None, expected: str) -> None:
    assert normalize_merchant_key(raw) == expected


def test_aliases_are_normalised_on_both_sides() -> None:
    aliases = normalize_aliases({"Amazon Prime Video": "Amazon Prime", "Prime Video (UK)": "Amazon Prime"})

    assert aliases == {"amazon prime video": "amazon prime", "prime video": "amazon prime"}
    assert normalize_merchant_key("AMAZON PRIME VIDEO", aliases) == "amazon prime"


def test_blocklist_drops_processors_and_empty_keys() -> None:
    blocklist = DetectionConfig().blocklist

    assert is_blocked("paypal", blocklist)
    assert is_blocked("", blocklist)
    assert not is_blocked("netflix", blocklist)


def test_group_by_merchant_sorts_keys_and_records(make_record) -> None:
    records = [
        make_record("e1", "Spotify", days_ago=40),
        make_record("e2", "PAYPAL *Netflix.com", days_ago=30),
        make_record("e3", "Netflix, Inc.", days_ago=5),
        make_record("e4", "PayPal", days_ago=3),
        make_record("e5", "Spotify", days_ago=10),
    ]

    groups = group_by_merchant(records, blocklist=DetectionConfig().blocklist)

    assert list(groups) == ["netflix", "spotify"]
    assert [record.id for record in groups["netflix"]] == ["e3", "e2"]
    assert [record.id for record in groups["spotify"]] == ["e5", "e1"]


def test_structured_merchant_key_wins_over_text(make_record) -> None:
    record = replace(make_record("e1", "Some Processor Ref 99", days_ago=1), merchant_key="Netflix")

    groups = group_by_merchant([record])

    assert list(groups) == ["netflix"]


def test_display_name_strips_processor_noise(make_record) -> None:
    assert display_name(make_record("e1", "PAYPAL *Netflix.com (US)", days_ago=1)) == "Netflix.com"
    assert display_name(make_record("e2", "Spotify", days_ago=1)) == "Spotify"
