import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("STORE_BACKEND", "sql").lower()  # 'sql' | 'memory'

if BACKEND == "memory":
    from ._memory import VoucherStore as _VoucherStore
else:
    from ._sql import VoucherStore as _VoucherStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              gated: Gated = None,
              memory=None):
    if BACKEND == "memory":
        if memory is None:
            raise RuntimeError(
                "VoucherStore(memory) requires memory=VoucherStore"
            )
        # the in-memory store *is* the shared state
        return memory
    if db is None:
        raise RuntimeError("VoucherStore(sql) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("VoucherStore(sql) requires gated=Gated")
    return _VoucherStore(db=db, gated=gated)


VoucherStore = _VoucherStore
__all__ = ["VoucherStore", "new_store", "BACKEND"]
