"""
Per-record mutual exclusion port.

Every read-modify-write of a payment runs inside `lock(transaction_reference)`.
"""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class RecordLocker(Protocol):
    def lock(self, key: str) -> AsyncContextManager[None]: ...
