"""
Account enumerations.

Defines the role and kind of wallet owners.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operator with access to reversal and reconciliation tools
        CLIENT: Books and pays for consultations (default role)
        PROVIDER: Offers consultations and earns from them
    """
    ADMIN = "ADMIN"
    CLIENT = "CLIENT"
    PROVIDER = "PROVIDER"


class OwnerKind(str, enum.Enum):
    """Discriminator for wallet owners (registered user or guest)."""
    USER = "USER"
    GUEST = "GUEST"
