import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, NamedTuple

logger = logging.getLogger(__name__)

# Document-store limit on values in a single "$in" style filter.
DEFAULT_CHUNK_SIZE = 10


class BatchFetchResult(NamedTuple):
    items: List[Any]
    failed_ids: List[str]


def unique_ids(ids: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in ids:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def chunk_ids(ids: Iterable[str], chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[List[str]]:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    ordered = unique_ids(ids)
    return [ordered[i:i + chunk_size] for i in range(0, len(ordered), chunk_size)]


async def batched_fetch(
    ids: Iterable[str],
    chunk_size: int,
    batch_fn: Callable[[List[str]], Awaitable[List[Any]]],
    fallback_fn: Callable[[str], Awaitable[List[Any]]],
    label: str = "batch"
) -> BatchFetchResult:
    """
    Run batch_fn once per chunk of ids, concurrently across chunks.

    When a chunk query raises, every id of that chunk is retried one at a
    time through fallback_fn. Ids whose retry also raises are reported in
    failed_ids instead of being dropped silently.
    """

    async def fetch_chunk(chunk: List[str]) -> BatchFetchResult:
        try:
            return BatchFetchResult(list(await batch_fn(chunk)), [])
        except Exception as exc:
            logger.warning(f"[{label}] chunk query failed for {len(chunk)} ids, retrying one by one: {exc}")

        items: List[Any] = []
        failed: List[str] = []
        for item_id in chunk:
            try:
                items.extend(await fallback_fn(item_id))
            except Exception as exc:
                logger.error(f"[{label}] fallback query failed for {item_id}: {exc}")
                failed.append(item_id)
        return BatchFetchResult(items, failed)

    chunk_results = await asyncio.gather(*(fetch_chunk(chunk) for chunk in chunk_ids(ids, chunk_size)))

    items: List[Any] = []
    failed_ids: List[str] = []
    for result in chunk_results:
        items.extend(result.items)
        failed_ids.extend(result.failed_ids)
    return BatchFetchResult(items, failed_ids)
