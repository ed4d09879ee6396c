import asyncio

from .availability import expire_stale
from .config import SERVICE_NAME
from .db import SessionLocal


async def expiry_loop(stop_event: asyncio.Event, interval_seconds: float, session_factory=SessionLocal):
    """Periodic sweep on top of the lazy expiry done by availability reads."""
    while not stop_event.is_set():
        try:
            async with session_factory() as db:
                await expire_stale(db)
        except Exception as e:
            print(f"[{SERVICE_NAME}] expiry sweep failed: {e}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
