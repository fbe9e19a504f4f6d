"""
Collection registry

Every collection the API serves is declared here: its field table, the
fields free-text search looks at, the indexes the store must carry and the
pydantic model that performs structural validation before a write.
Nothing in this module touches the database.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Literal, Optional, Tuple, Type

from bson import ObjectId
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from errors import InvalidCollection, ValidationFailed


class Collection(str, Enum):
    USERS = "users"
    POSITIONS = "positions"
    CANDIDATES = "candidates"
    VOTES = "votes"
    ELECTIONS = "elections"


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT_ID = "objectId"
    OBJECT = "object"


@dataclass(frozen=True)
class FieldSpec:
    type: FieldType
    required: bool = False
    unique: bool = False
    default: Any = None
    enum: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class IndexSpec:
    keys: Tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class CollectionSpec:
    name: Collection
    singular: str
    fields: Dict[str, FieldSpec]
    searchable_fields: Tuple[str, ...]
    indexes: Tuple[IndexSpec, ...]
    validator: Type[BaseModel]
    hidden_fields: Tuple[str, ...] = ()

    def defaults(self) -> Dict[str, Any]:
        return {name: spec.default for name, spec in self.fields.items() if spec.default is not None}


_datetime_adapter = TypeAdapter(datetime)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a date or datetime, returning an aware UTC value or None."""
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _object_id_string(value: Any, label: str) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, str) and not ObjectId.is_valid(value):
        raise ValueError(f"{label} must be a valid ObjectId (24-character hex string)")
    return value


Status = Literal["active", "inactive"]


# Validation models
class UserCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    nis: StrictStr = Field(..., min_length=1)
    password: StrictStr = Field(..., min_length=1)
    nama_lengkap: StrictStr = Field(..., min_length=1)
    role: Optional[Literal["voter", "admin"]] = None
    status: Optional[Status] = None


class PositionCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    position_id: StrictInt = Field(..., gt=0)
    name: StrictStr = Field(..., min_length=1)
    description: Optional[StrictStr] = None
    status: Optional[Status] = None


class ElectionCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    period_start: StrictInt = Field(..., gt=0)
    period_end: StrictInt = Field(..., gt=0)
    voting_start: Optional[datetime] = None
    voting_end: Optional[datetime] = None
    status: Optional[Literal["upcoming", "ongoing", "closed"]] = None

    @model_validator(mode="after")
    def check_ranges(self):
        if self.period_start >= self.period_end:
            raise ValueError("Period start must be less than period end")
        if self.voting_start and self.voting_end:
            start = parse_datetime(self.voting_start)
            end = parse_datetime(self.voting_end)
            if start >= end:
                raise ValueError("Voting start must be before voting end")
        return self


class VisionMission(BaseModel):
    model_config = ConfigDict(extra="allow")

    vision: Optional[StrictStr] = None
    mission: Optional[StrictStr] = None


class CandidateCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    position_id: StrictInt = Field(..., gt=0)
    candidate_number: StrictInt = Field(..., gt=0)
    period_start: StrictInt = Field(..., gt=0)
    period_end: StrictInt = Field(..., gt=0)
    user_id: StrictStr
    name: StrictStr = Field(..., min_length=1)
    profile: StrictStr
    image: Optional[StrictStr] = None
    vision_mission: Optional[VisionMission] = None
    program_kerja: Optional[StrictStr] = None
    status: Optional[Status] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def validate_user_id(cls, v):
        return _object_id_string(v, "user_id")

    @model_validator(mode="after")
    def check_period(self):
        if self.period_start >= self.period_end:
            raise ValueError("Period start must be less than period end")
        return self


class VoteCreate(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: StrictStr
    candidate_id: StrictStr
    position_id: StrictInt = Field(..., gt=0)
    period_start: StrictInt = Field(..., gt=0)
    period_end: StrictInt = Field(..., gt=0)

    @field_validator("user_id", "candidate_id", mode="before")
    @classmethod
    def validate_object_ids(cls, v, info):
        return _object_id_string(v, info.field_name)

    @model_validator(mode="after")
    def check_period(self):
        if self.period_start >= self.period_end:
            raise ValueError("Period start must be less than period end")
        return self


def _timestamps() -> Dict[str, FieldSpec]:
    return {
        "created_at": FieldSpec(FieldType.DATE),
        "updated_at": FieldSpec(FieldType.DATE),
        "deleted_at": FieldSpec(FieldType.DATE),
    }


ACTIVE_STATUS = ("active", "inactive")

REGISTRY: Dict[Collection, CollectionSpec] = {
    Collection.USERS: CollectionSpec(
        name=Collection.USERS,
        singular="user",
        fields={
            "nis": FieldSpec(FieldType.STRING, required=True, unique=True),
            "password": FieldSpec(FieldType.STRING, required=True),
            "nama_lengkap": FieldSpec(FieldType.STRING, required=True),
            "role": FieldSpec(FieldType.STRING, default="voter", enum=("voter", "admin")),
            "status": FieldSpec(FieldType.STRING, default="active", enum=ACTIVE_STATUS),
            "last_login_at": FieldSpec(FieldType.DATE),
            **_timestamps(),
        },
        searchable_fields=("nis", "nama_lengkap", "role", "status"),
        indexes=(
            IndexSpec(("nis",), unique=True),
            IndexSpec(("deleted_at",)),
            IndexSpec(("status",)),
            IndexSpec(("role",)),
        ),
        validator=UserCreate,
        hidden_fields=("password",),
    ),
    Collection.POSITIONS: CollectionSpec(
        name=Collection.POSITIONS,
        singular="position",
        fields={
            "position_id": FieldSpec(FieldType.NUMBER, required=True, unique=True),
            "name": FieldSpec(FieldType.STRING, required=True, unique=True),
            "description": FieldSpec(FieldType.STRING),
            "status": FieldSpec(FieldType.STRING, default="active", enum=ACTIVE_STATUS),
            **_timestamps(),
        },
        searchable_fields=("name", "description", "status"),
        indexes=(
            IndexSpec(("position_id",), unique=True),
            IndexSpec(("name",), unique=True),
            IndexSpec(("deleted_at",)),
            IndexSpec(("status",)),
        ),
        validator=PositionCreate,
    ),
    Collection.CANDIDATES: CollectionSpec(
        name=Collection.CANDIDATES,
        singular="candidate",
        fields={
            "position_id": FieldSpec(FieldType.NUMBER, required=True),
            "candidate_number": FieldSpec(FieldType.NUMBER, required=True),
            "period_start": FieldSpec(FieldType.NUMBER, required=True),
            "period_end": FieldSpec(FieldType.NUMBER, required=True),
            "user_id": FieldSpec(FieldType.OBJECT_ID, required=True),
            "name": FieldSpec(FieldType.STRING, required=True),
            "image": FieldSpec(FieldType.STRING, default="/candidate/default.png"),
            "profile": FieldSpec(FieldType.STRING, required=True),
            "vision_mission": FieldSpec(FieldType.OBJECT),
            "program_kerja": FieldSpec(FieldType.STRING),
            "status": FieldSpec(FieldType.STRING, default="active", enum=ACTIVE_STATUS),
            **_timestamps(),
        },
        searchable_fields=("name", "profile", "program_kerja", "status"),
        indexes=(
            IndexSpec(("position_id", "candidate_number", "period_start", "period_end"), unique=True),
            IndexSpec(("user_id", "period_start", "period_end")),
            IndexSpec(("deleted_at",)),
            IndexSpec(("status",)),
            IndexSpec(("period_start", "period_end")),
        ),
        validator=CandidateCreate,
    ),
    Collection.VOTES: CollectionSpec(
        name=Collection.VOTES,
        singular="vote",
        fields={
            "user_id": FieldSpec(FieldType.OBJECT_ID, required=True),
            "candidate_id": FieldSpec(FieldType.OBJECT_ID, required=True),
            "position_id": FieldSpec(FieldType.NUMBER, required=True),
            "period_start": FieldSpec(FieldType.NUMBER, required=True),
            "period_end": FieldSpec(FieldType.NUMBER, required=True),
            **_timestamps(),
        },
        searchable_fields=(),
        indexes=(
            IndexSpec(("user_id", "position_id", "period_start", "period_end"), unique=True),
            IndexSpec(("candidate_id",)),
            IndexSpec(("position_id",)),
            IndexSpec(("deleted_at",)),
            IndexSpec(("period_start", "period_end")),
        ),
        validator=VoteCreate,
    ),
    Collection.ELECTIONS: CollectionSpec(
        name=Collection.ELECTIONS,
        singular="election",
        fields={
            "period_start": FieldSpec(FieldType.NUMBER, required=True),
            "period_end": FieldSpec(FieldType.NUMBER, required=True),
            "voting_start": FieldSpec(FieldType.DATE),
            "voting_end": FieldSpec(FieldType.DATE),
            "status": FieldSpec(FieldType.STRING, default="upcoming", enum=("upcoming", "ongoing", "closed")),
            **_timestamps(),
        },
        searchable_fields=("status",),
        indexes=(
            IndexSpec(("period_start", "period_end"), unique=True),
            IndexSpec(("deleted_at",)),
            IndexSpec(("status",)),
            IndexSpec(("voting_start",)),
            IndexSpec(("voting_end",)),
        ),
        validator=ElectionCreate,
    ),
}


def get_collection_spec(name: Any) -> CollectionSpec:
    try:
        return REGISTRY[Collection(name)]
    except ValueError:
        valid = ", ".join(c.value for c in Collection)
        raise InvalidCollection(f"Invalid collection name. Valid collections: {valid}")


def _describe(error: Dict[str, Any]) -> str:
    message = error["msg"]
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {message}" if location else message


def validate_document(spec: CollectionSpec, data: Dict[str, Any]) -> None:
    try:
        spec.validator.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed("Validation failed: " + ", ".join(_describe(err) for err in exc.errors()))


def date_fields(spec: CollectionSpec) -> Iterable[str]:
    return [name for name, field in spec.fields.items() if field.type == FieldType.DATE]


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None
