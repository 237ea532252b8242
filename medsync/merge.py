"""
Merge Resolver - reconcile received records with the local list

Strategies:
- merge (recommended): keep every local record, add incoming records that
  are not duplicates, give added records fresh ids
- replace: the incoming list replaces the local list as-is

Duplicates are detected by (lowercased name, daily dosage, interval). Two
medications that only differ in notes or stock count are treated as the
same record.
"""

import inspect
import logging
import uuid
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Set, Tuple, Union

from medsync.records import MedicationRecord, RecordList

logger = logging.getLogger(__name__)


class MergeStrategy(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


StrategyChooser = Callable[[int, int], Union[MergeStrategy, Awaitable[MergeStrategy]]]


def duplicate_key(record: MedicationRecord) -> Tuple[str, float, str]:
    return (record.name.lower(), record.daily_dosage, record.interval)


def _fresh_id(taken: Set[str]) -> str:
    new_id = uuid.uuid4().hex
    while new_id in taken:
        new_id = uuid.uuid4().hex
    return new_id


def merge_records(
    existing: RecordList,
    incoming: RecordList,
    strategy: MergeStrategy = MergeStrategy.MERGE,
) -> RecordList:
    """
    Merge incoming records into the existing list.

    Args:
        existing: Current local records (not modified)
        incoming: Records received from the other device
        strategy: merge or replace

    Returns:
        The resolved list that should replace the local store
    """
    if MergeStrategy(strategy) is MergeStrategy.REPLACE:
        return list(incoming)

    existing_keys = {duplicate_key(record) for record in existing}
    taken_ids = {record.id for record in existing}

    added: List[MedicationRecord] = []
    for record in incoming:
        if duplicate_key(record) in existing_keys:
            continue
        new_id = _fresh_id(taken_ids)
        taken_ids.add(new_id)
        # Round-trip through validation so dates are real datetimes even for
        # records built with model_construct
        data = record.model_dump(by_alias=True)
        data["id"] = new_id
        added.append(MedicationRecord.model_validate(data))

    logger.info(
        f"Merged {len(added)} of {len(incoming)} incoming records "
        f"({len(incoming) - len(added)} duplicates skipped)"
    )
    return list(existing) + added


async def resolve_import(
    existing: RecordList,
    incoming: Iterable[MedicationRecord],
    choose_strategy: StrategyChooser,
) -> RecordList:
    """
    Decide how received records land in the local store.

    An empty local store imports the incoming list directly and never asks
    for a strategy. Otherwise choose_strategy(existing_count, incoming_count)
    is called (sync or async) and its answer is applied.
    """
    incoming = list(incoming)
    if not existing:
        logger.info(f"Local store empty, importing {len(incoming)} records directly")
        return incoming

    choice = choose_strategy(len(existing), len(incoming))
    if inspect.isawaitable(choice):
        choice = await choice

    return merge_records(existing, incoming, MergeStrategy(choice))
