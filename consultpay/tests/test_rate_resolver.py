"""
Rate Resolver Tests.

Canonical rates win, legacy fields are a read-only fallback.
"""

import logging
from decimal import Decimal

import pytest

from consultpay.app.core.exceptions import RateNotConfiguredError
from consultpay.app.domain.billing.rate_resolver import (
    find_rate_conflicts,
    log_rate_conflicts,
    resolve_rate,
    resolve_rate_strict,
)
from consultpay.app.models.consultation_enums import ConsultationType
from consultpay.app.models.enums import UserRole
from consultpay.app.models.user import User


def provider(**fields):
    return User(id=7, email="p@example.com", full_name="Provider", role=UserRole.PROVIDER, **fields)


def test_canonical_rate_wins_over_legacy():
    p = provider(audio_rate=Decimal("3.00"), legacy_rates={"audio": 5, "perMinute": {"audioVideo": 4}})
    assert resolve_rate(p, ConsultationType.AUDIO) == Decimal("3.00")


def test_legacy_fallback_order_for_audio_and_video():
    p = provider(legacy_rates={"audio": 5, "video": 6, "audioVideo": 7, "perMinute": {"audio": 8, "audioVideo": 9}})
    assert resolve_rate(p, "audio") == Decimal("9.00")

    p = provider(legacy_rates={"audio": 5, "video": 6, "audioVideo": 7, "perMinute": {"video": 8}})
    assert resolve_rate(p, "video") == Decimal("8.00")
    assert resolve_rate(p, "audio") == Decimal("7.00")

    p = provider(legacy_rates={"video": 6})
    assert resolve_rate(p, "video") == Decimal("6.00")
    assert resolve_rate(p, "audio") == Decimal("0.00")


def test_chat_only_uses_chat_fields():
    p = provider(audio_rate=Decimal("3"), legacy_rates={"audioVideo": 4})
    assert resolve_rate(p, ConsultationType.CHAT) == Decimal("0.00")

    p = provider(legacy_rates={"chat": "2.5"})
    assert resolve_rate(p, ConsultationType.CHAT) == Decimal("2.50")


def test_explicit_zero_means_free_and_stops_fallback():
    p = provider(video_rate=Decimal("0"), legacy_rates={"video": 12})
    assert resolve_rate(p, "video") == Decimal("0.00")


def test_negative_and_garbage_values_are_ignored():
    p = provider(audio_rate=Decimal("-1"), legacy_rates={"perMinute": {"audioVideo": "abc"}, "audio": 3})
    assert resolve_rate(p, "audio") == Decimal("3.00")


def test_strict_resolution_distinguishes_unset_from_free():
    with pytest.raises(RateNotConfiguredError):
        resolve_rate_strict(provider(), "audio")
    assert resolve_rate_strict(provider(audio_rate=Decimal("0")), "audio") == Decimal("0.00")


def test_conflicting_fields_are_reported(caplog):
    p = provider(audio_rate=Decimal("3"), legacy_rates={"perMinute": {"audio": "0.12"}})
    conflicts = find_rate_conflicts(p, "audio")
    assert conflicts == {"audio_rate": Decimal("3.00"), "rates.perMinute.audio": Decimal("0.12")}

    with caplog.at_level(logging.WARNING):
        log_rate_conflicts(p, "audio")
    assert "conflicting audio rates" in caplog.text


def test_agreeing_fields_are_not_conflicts():
    p = provider(video_rate=Decimal("5"), legacy_rates={"video": 5, "audioVideo": "5.00"})
    assert find_rate_conflicts(p, "video") == {}
