# src/core/database.py
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from prisma import Prisma

# Global Prisma instance, created on first use so that importing the app does
# not require a generated client
_prisma: Optional["Prisma"] = None


def get_prisma() -> "Prisma":
    """Return the process-wide Prisma client."""
    global _prisma
    if _prisma is None:
        from prisma import Prisma

        _prisma = Prisma()
    return _prisma


async def get_db() -> "Prisma":
    """Database dependency for FastAPI dependency injection."""
    return get_prisma()
