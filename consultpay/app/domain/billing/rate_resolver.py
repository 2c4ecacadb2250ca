"""
Rate Resolver.

Resolves the per-minute rate a provider charges for a consultation type.

Precedence:
1. Canonical column on the provider (`chat_rate`, `audio_rate`, `video_rate`)
2. Legacy `rates` document, read-only:
   audio/video: perMinute.audioVideo -> perMinute.<type> -> audioVideo -> <type>
   chat:        chat
3. 0 (free)

Negative or non-numeric values are ignored. An explicit 0 is a valid rate
and stops the fallback.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from consultpay.app.core.exceptions import RateNotConfiguredError
from consultpay.app.domain.billing.calculator import round2, ZERO
from consultpay.app.models.consultation_enums import ConsultationType

logger = logging.getLogger(__name__)

CANONICAL_FIELDS = {
    ConsultationType.CHAT: "chat_rate",
    ConsultationType.AUDIO: "audio_rate",
    ConsultationType.VIDEO: "video_rate",
}

# Paths into the legacy `rates` document, in fallback order
LEGACY_PATHS = {
    ConsultationType.CHAT: [("chat",)],
    ConsultationType.AUDIO: [
        ("perMinute", "audioVideo"),
        ("perMinute", "audio"),
        ("audioVideo",),
        ("audio",),
    ],
    ConsultationType.VIDEO: [
        ("perMinute", "audioVideo"),
        ("perMinute", "video"),
        ("audioVideo",),
        ("video",),
    ],
}


def _as_rate(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate < 0:
        return None
    return round2(rate)


def _legacy_value(rates: Optional[dict], path: Tuple[str, ...]):
    node = rates
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _candidates(provider, consultation_type: ConsultationType) -> List[Tuple[str, Decimal]]:
    """All populated rate fields for the type, in precedence order."""
    found = []

    canonical = CANONICAL_FIELDS[consultation_type]
    rate = _as_rate(getattr(provider, canonical, None))
    if rate is not None:
        found.append((canonical, rate))

    legacy = getattr(provider, "legacy_rates", None) or {}
    for path in LEGACY_PATHS[consultation_type]:
        rate = _as_rate(_legacy_value(legacy, path))
        if rate is not None:
            found.append(("rates." + ".".join(path), rate))

    return found


def resolve_rate(provider, consultation_type) -> Decimal:
    """Per-minute rate for the type; 0 means free."""
    candidates = _candidates(provider, ConsultationType(consultation_type))
    if not candidates:
        return ZERO
    return candidates[0][1]


def resolve_rate_strict(provider, consultation_type) -> Decimal:
    """Like resolve_rate, but raises RateNotConfiguredError when no field is populated."""
    consultation_type = ConsultationType(consultation_type)
    candidates = _candidates(provider, consultation_type)
    if not candidates:
        raise RateNotConfiguredError(provider.id, consultation_type.value)
    return candidates[0][1]


def find_rate_conflicts(provider, consultation_type) -> Dict[str, Decimal]:
    """
    Populated rate fields that disagree with each other.

    Returns an empty dict when all populated fields agree.
    """
    candidates = _candidates(provider, ConsultationType(consultation_type))
    if len({rate for _, rate in candidates}) <= 1:
        return {}
    return dict(candidates)


def log_rate_conflicts(provider, consultation_type) -> Dict[str, Decimal]:
    """Warn about disagreeing rate fields. Not called while settling."""
    conflicts = find_rate_conflicts(provider, consultation_type)
    if conflicts:
        logger.warning(
            "Provider %s has conflicting %s rates: %s (using %s)",
            provider.id,
            ConsultationType(consultation_type).value,
            {field: str(rate) for field, rate in conflicts.items()},
            resolve_rate(provider, consultation_type),
        )
    return conflicts
