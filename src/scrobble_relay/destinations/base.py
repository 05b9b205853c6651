"""Interface every destination client satisfies."""

from typing import Protocol

from ..models import Destination, PlaybackEvent


class DestinationClient(Protocol):
    """Records a completed watch on one tracking service.

    Implementations raise ``DestinationError`` with a readable message on
    any failure and never retry on their own.
    """

    destination: Destination

    async def record_watch(self, access_token: str, event: PlaybackEvent, is_rewatch: bool) -> None: ...

    async def close(self) -> None: ...
