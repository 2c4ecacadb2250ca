"""
Billing enumerations.
"""

import enum


class TransactionType(str, enum.Enum):
    """Wallet transaction type."""
    PAYMENT = "payment"  # Client pays for a consultation
    EARNING = "earning"  # Provider share of a consultation
    REFUND = "refund"  # Reversal returning money to a wallet
    CREDIT = "credit"  # Top-up or platform compensation
    DEBIT = "debit"  # Reversal taking money out of a wallet
    WITHDRAWAL = "withdrawal"  # Provider payout


class TransactionStatus(str, enum.Enum):
    """Wallet transaction status."""
    PENDING = "pending"  # Withdrawal holding its funds, awaiting review
    COMPLETED = "completed"
    CANCELLED = "cancelled"  # Offset by a reversal entry; still part of history


# Entries that moved money. A pending withdrawal has already left the wallet,
# and a cancelled entry is always paired with its reversal.
POSTED_STATUSES = (TransactionStatus.PENDING, TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)


class IncidentKind(str, enum.Enum):
    """Operator-facing billing incident kinds."""
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"  # Billable consultation without client payment
    GHOST_EARNING = "GHOST_EARNING"  # Provider earning without client payment
    ORPHAN_TRANSACTION = "ORPHAN_TRANSACTION"  # Transaction for an unknown consultation
    LEDGER_DRIFT = "LEDGER_DRIFT"  # Wallet balance != sum of posted deltas
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"  # Settlement gave up after retries


class IncidentStatus(str, enum.Enum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
