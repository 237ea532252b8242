"""
Medication Records - payload schema for device-to-device transfer

The sync core treats records as opaque values: it only needs name, daily
dosage and interval for duplicate detection. Field names are camelCase on
the wire so exports from the web app load unchanged; unknown fields are
kept as-is.
"""

from __future__ import annotations

import json
from datetime import datetime, UTC
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

Number = Union[int, float]


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class IntakeLog(_WireModel):
    """One logged intake of an as-needed medication"""
    date: datetime
    amount: Number
    note: Optional[str] = None


class MedicationRecord(_WireModel):
    """A medication entry as stored by the local record store"""
    id: str
    name: str
    pzn: Optional[str] = None
    description: Optional[str] = None
    active_ingredient: Optional[str] = None
    indication: Optional[str] = None
    current_amount: Number = 0
    daily_dosage: Number = 0
    interval: str = "daily"
    reminder_threshold_days: Number = 7
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_refilled: Optional[datetime] = None
    manual_info_override: Optional[bool] = None
    personal_notes: Optional[str] = None
    intake_log: Optional[List[IntakeLog]] = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


RecordList = List[MedicationRecord]

_record_list = TypeAdapter(List[MedicationRecord])


def parse_records(data: Any) -> RecordList:
    """Validate a decoded JSON value into records (raises pydantic.ValidationError)"""
    return _record_list.validate_python(data)


def dump_records(records: RecordList) -> list:
    return [record.to_wire() for record in records]


def records_to_json(records: RecordList) -> str:
    return json.dumps(dump_records(records), ensure_ascii=False)


def records_from_json(text: Union[str, bytes]) -> RecordList:
    """Decode a JSON array of records (raises ValueError on malformed input)"""
    return parse_records(json.loads(text))
