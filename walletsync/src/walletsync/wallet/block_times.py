"""
Block height -> block timestamp resolution for confirmation times.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import BackendMisbehavingError


class BlockTimeResolver:
    """
    Lazily resolves block timestamps, one batched header fetch per call.

    Only heights that are actually needed get fetched, and a timestamp, once
    known for a height, is never overwritten within the session.
    """

    def __init__(self, backend: BlockchainBackend):
        self._backend = backend
        self._times: dict[int, int] = {}
        self.header_batches = 0

    def get(self, height: int) -> int | None:
        return self._times.get(height)

    def missing(self, heights: Iterable[int], limit: int) -> list[int]:
        """
        Distinct uncached heights, in first-seen order, at most ``limit`` of them.

        Consumes ``heights`` lazily and stops as soon as the limit is reached.
        """
        result: list[int] = []
        seen: set[int] = set()
        if limit <= 0:
            return result
        for height in heights:
            if height in self._times or height in seen:
                continue
            seen.add(height)
            result.append(height)
            if len(result) >= limit:
                break
        return result

    async def resolve(self, heights: Iterable[int]) -> dict[int, int]:
        """
        Resolve timestamps for ``heights``.

        Heights already cached are not re-fetched. The rest are requested in
        one ``batch_block_header`` call; callers cap the batch size by
        pre-filtering with ``missing``.

        Returns:
            Mapping of every requested height to its block timestamp

        Raises:
            BackendMisbehavingError: The backend returned fewer headers than requested
            TransportError: The backend call failed
        """
        requested = list(dict.fromkeys(heights))
        to_fetch = [h for h in requested if h not in self._times]

        if to_fetch:
            logger.debug(f"Fetching {len(to_fetch)} block header(s)")
            headers = await self._backend.batch_block_header(to_fetch)
            self.header_batches += 1
            if len(headers) != len(to_fetch):
                raise BackendMisbehavingError(
                    f"Requested {len(to_fetch)} block header(s), backend returned {len(headers)}"
                )
            for height, header in zip(to_fetch, headers):
                self._times.setdefault(height, header.timestamp)

        return {height: self._times[height] for height in requested}

    def __len__(self) -> int:
        return len(self._times)
