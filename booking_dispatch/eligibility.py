import logging
from typing import Iterable, List

from .clients import BackendError, BookingBackendClient
from .schemas import Worker

logger = logging.getLogger(__name__)


def parse_skill_set(raw) -> set[int]:
    """
    "1, 2,3" -> {1, 2, 3}. Empty, blank and non-numeric tokens are dropped,
    so a malformed skill string just means the worker matches nothing.
    """
    if raw is None or isinstance(raw, bool):
        return set()
    if isinstance(raw, int):
        return {raw}

    skills = set()
    for token in str(raw).split(","):
        token = token.strip()
        if not token:
            continue
        try:
            skills.add(int(token))
        except ValueError:
            continue
    return skills


def _category(category_id) -> int | None:
    try:
        return int(str(category_id).strip())
    except (TypeError, ValueError):
        return None


def eligible(workers: Iterable[Worker], category_id) -> List[Worker]:
    category = _category(category_id)
    if category is None:
        return []
    return [w for w in workers if category in parse_skill_set(w.skill_id)]


async def fetch_eligible_workers(client: BookingBackendClient, category_id) -> List[Worker]:
    # a failed roster fetch is "nobody eligible"; the caller does not retry
    try:
        workers = await client.list_workers()
    except BackendError as e:
        logger.warning("worker roster fetch failed, treating as no eligible workers: %s", e)
        return []

    matching = eligible(workers, category_id)
    logger.info("found %d eligible worker(s) of %d for category %s", len(matching), len(workers), category_id)
    return matching
