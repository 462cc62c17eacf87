"""ByteStore protocol — the capability set every physical store provides."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

    from .types import ObjectStat, StoredObject


@runtime_checkable
class ByteStore(Protocol):
    """Uniform read/write/move/delete/stat primitives keyed by storage key.

    Managed stores use opaque id-derived keys; custom drives use paths
    relative to the user's drive root. Deleting a missing key is a no-op.
    """

    def read(self, key: str) -> AsyncIterator[bytes]: ...

    async def read_bytes(self, key: str) -> bytes: ...

    async def write(
        self,
        key: str,
        data: bytes | AsyncIterable[bytes],
        *,
        max_bytes: int | None = None,
        overwrite: bool = True,
    ) -> StoredObject: ...

    async def delete(self, key: str) -> None: ...

    async def move(self, key: str, new_key: str) -> None: ...

    async def copy(self, key: str, new_key: str) -> StoredObject: ...

    async def stat(self, key: str) -> ObjectStat: ...

    async def exists(self, key: str) -> bool: ...

    async def iter_objects(self) -> list[ObjectStat]: ...
