"""
Thread offloading for sync ledger work called from async handlers.

Ledger transactions use sync SQLAlchemy sessions; running them through
asyncio.to_thread keeps the event loop free while a transaction waits on
row locks.
"""

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


async def run_io_task(fn: Callable, *args, **kwargs) -> Any:
    """
    Execute a blocking function in the default thread pool

    Args:
        fn: Function to execute
        *args: Function arguments
        **kwargs: Function keyword arguments

    Returns:
        Function result (exceptions propagate unchanged)
    """
    return await asyncio.to_thread(fn, *args, **kwargs)


__all__ = ['run_io_task']
