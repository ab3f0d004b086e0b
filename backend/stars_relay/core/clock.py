import asyncio
from datetime import datetime, timezone


class Clock:
    """Time source for every polling and backoff loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> float:
        return self.now().timestamp()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


system_clock = Clock()


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes coming back from the database as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
