"""
Record schema for survey archives.

The wire document uses the camelCase keys of the surveying app
(``surveyId``, ``photoIds`` ...); Python code uses the snake_case
attribute names. Unknown keys are dropped on validation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .errors import SchemaValidationFailure


SurveyType = Literal["Pre-Sale", "Demolition", "Re-Inspection", "Workplace"]
DocumentType = Literal["AMPR", "AMPRU", "ARRA", "ARRAU", "HSMR"]
ExternalInternal = Literal["External", "Internal", "Not Specified", ""]
SampleStatus = Literal["Sample", "Similar to Sample", "Not Sampled"]
Unit = Literal["m2", "pieces", "lineal meters", "length", ""]
Condition = Literal["Good", "Medium", "Poor", ""]
Accessibility = Literal["Accessible", "Limited Access", "Generally Inaccessible", ""]
RiskLevel = Literal["Low", "Medium", "High"]

# Required but nullable on Item: written as null rather than dropped
_NULLABLE_ITEM_FIELDS = (
    ("painted", "painted"),
    ("friable", "friable"),
    ("warning_labels_visible", "warningLabelsVisible"),
)


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Survey(_Record):
    survey_id: str = Field(min_length=1)
    job_id: str
    site_name: str
    client_name: str
    site_contact_name: Optional[str] = None
    site_contact_phone: Optional[str] = None
    survey_type: SurveyType
    document_type: DocumentType
    surveyor: str
    date: str
    created_at: str
    updated_at: str


class Room(_Record):
    room_id: str = Field(min_length=1)
    survey_id: str
    room_name: str
    created_at: str


class Item(_Record):
    item_id: str = Field(min_length=1)
    survey_id: str
    reference_number: str
    photo_reference: Optional[str] = None
    building_area: str
    external_internal: ExternalInternal
    location1: str
    location2: str
    item_use: str
    material_type: str
    asbestos_types: List[str]
    sample_status: SampleStatus
    sample_reference: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[Unit] = None
    length: Optional[float] = None
    width: Optional[float] = None
    diameter: Optional[float] = None
    thickness: Optional[float] = None
    painted: Optional[bool]
    friable: Optional[bool]
    condition: Condition
    accessibility: Accessibility
    warning_labels_visible: Optional[bool]
    risk_level: RiskLevel
    recommendation: str
    warning_labels_affixed: Optional[float] = None
    notes: Optional[str] = None
    photo_ids: List[str] = Field(default_factory=list)
    # Legacy field kept for older records; only photo_ids drive archiving
    photos: List[str] = Field(default_factory=list)
    photo_references: Optional[List[str]] = None
    created_at: str


class SurveyData(_Record):
    """The record document: one survey with its rooms and items."""

    survey: Survey
    rooms: List[Room] = Field(default_factory=list)
    items: List[Item] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_graph(self) -> "SurveyData":
        sid = self.survey.survey_id
        seen_rooms = set()
        for room in self.rooms:
            if room.survey_id != sid:
                raise ValueError(f"room {room.room_id} belongs to survey {room.survey_id}, not {sid}")
            if room.room_id in seen_rooms:
                raise ValueError(f"duplicate roomId {room.room_id}")
            seen_rooms.add(room.room_id)
        seen_items = set()
        for item in self.items:
            if item.survey_id != sid:
                raise ValueError(f"item {item.item_id} belongs to survey {item.survey_id}, not {sid}")
            if item.item_id in seen_items:
                raise ValueError(f"duplicate itemId {item.item_id}")
            seen_items.add(item.item_id)
        return self

    def referenced_photo_ids(self) -> List[str]:
        """Unique photo ids across all items, in first-reference order."""
        out: List[str] = []
        seen = set()
        for item in self.items:
            for pid in item.photo_ids:
                if pid and pid not in seen:
                    seen.add(pid)
                    out.append(pid)
        return out


@dataclass(frozen=True)
class PhotoBlob:
    photo_id: str
    content: bytes
    filename: str = ""
    captured_at: Optional[str] = None


def build_document(survey: Survey, rooms: List[Room], items: List[Item]) -> SurveyData:
    """Assemble and validate a record document from typed records."""
    for obj, kind in [(survey, Survey)] + [(r, Room) for r in rooms] + [(i, Item) for i in items]:
        if not isinstance(obj, kind):
            raise TypeError(f"expected {kind.__name__}, got {type(obj).__name__}")
    try:
        return SurveyData.model_validate(
            {
                "survey": survey.model_dump(by_alias=True),
                "rooms": [r.model_dump(by_alias=True) for r in rooms],
                "items": [i.model_dump(by_alias=True) for i in items],
            }
        )
    except ValidationError as exc:
        raise SchemaValidationFailure("Survey record graph is invalid", exc.errors()) from exc


def dump_document(data: SurveyData) -> bytes:
    """Canonical UTF-8 JSON: aliased keys, sorted, compact.

    Unset optional fields are omitted; the tri-state item flags stay as
    explicit ``null``.
    """
    payload = data.model_dump(by_alias=True, mode="json", exclude_none=True)
    for item, raw in zip(data.items, payload["items"]):
        for attr, key in _NULLABLE_ITEM_FIELDS:
            raw[key] = getattr(item, attr)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def load_document(raw: bytes) -> SurveyData:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise SchemaValidationFailure(f"Record document is not valid JSON: {exc}") from exc
    try:
        return SurveyData.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationFailure("Record document failed schema validation", exc.errors()) from exc
