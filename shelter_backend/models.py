from sqlmodel import SQLModel, Field
import datetime
import math
import uuid
from enum import IntEnum
from typing import Optional

from pydantic import field_validator
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from .admission import BookingPolicy, BookingStatus, BookingType, as_utc


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC on the way in and on the way out.

    SQLite keeps no offset, so values read back from it are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


############
# USER MODEL
############


class UserBase(SQLModel):
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class User(UserBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    hashed_password: str
    is_admin: bool = False


class UserCreate(UserBase):
    password: str


class UserRead(UserBase):
    id: uuid.UUID
    is_admin: bool


###############
# SHELTER MODEL
###############


class ShelterBase(SQLModel):
    name: str = Field(index=True)
    description: Optional[str] = None
    capacity: int = Field(gt=0)
    booking_policy: BookingPolicy = BookingPolicy.BOTH
    latitude: float = Field(ge=-90, le=90, index=True)
    longitude: float = Field(ge=-180, le=180, index=True)


class Shelter(ShelterBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    is_active: bool = True
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ShelterCreate(ShelterBase):
    pass


class ShelterUpdate(SQLModel):
    name: str
    description: Optional[str] = None
    capacity: int = Field(gt=0)
    is_active: bool


class ShelterRead(ShelterBase):
    id: uuid.UUID
    owner_id: uuid.UUID
    is_active: bool
    created_at: datetime.datetime
    updated_at: datetime.datetime


###############
# BOOKING MODEL
###############


class BookingBase(SQLModel):
    start_utc: datetime.datetime = Field(sa_type=UTCDateTime)
    end_utc: datetime.datetime = Field(sa_type=UTCDateTime)
    guests: int = Field(default=1, ge=1)
    type: BookingType = BookingType.INCLUSIVE


class Booking(BookingBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    shelter_id: uuid.UUID = Field(foreign_key="shelter.id", index=True)
    booker_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    status: BookingStatus = Field(default=BookingStatus.PENDING, index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class BookingCreate(BookingBase):
    @field_validator("start_utc", "end_utc")
    @classmethod
    def normalise_to_utc(cls, value: datetime.datetime) -> datetime.datetime:
        return as_utc(value)


class BookingRead(BookingBase):
    id: uuid.UUID
    shelter_id: uuid.UUID
    booker_id: uuid.UUID
    status: BookingStatus
    created_at: datetime.datetime
    booker_name: Optional[str] = None


##############
# REVIEW MODEL
##############


class Rating(IntEnum):
    POOR = 1
    LACKING = 2
    FAIR = 3
    GOOD = 4
    EXCELLENT = 5


class ReviewBase(SQLModel):
    rating: Rating
    comment: Optional[str] = None


class Review(ReviewBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    shelter_id: uuid.UUID = Field(foreign_key="shelter.id", index=True)
    reviewer_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime.datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ReviewCreate(ReviewBase):
    pass


class ReviewRead(ReviewBase):
    id: uuid.UUID
    shelter_id: uuid.UUID
    reviewer_id: uuid.UUID
    created_at: datetime.datetime
    updated_at: datetime.datetime


class ReviewSummary(SQLModel):
    average_rating: float
    total_count: int

    @classmethod
    def from_ratings(cls, ratings: list[int]) -> "ReviewSummary":
        if not ratings:
            return cls(average_rating=0, total_count=0)
        return cls(
            average_rating=round(sum(ratings) / len(ratings), 2),
            total_count=len(ratings),
        )


class ShelterDetail(ShelterRead):
    review_summary: ReviewSummary


class ShelterSearchResult(ShelterRead):
    review_summary: ReviewSummary


class Pagination(SQLModel):
    page: int
    page_size: int
    total_count: int
    total_pages: int

    @classmethod
    def of(cls, page: int, page_size: int, total_count: int) -> "Pagination":
        return cls(
            page=page,
            page_size=page_size,
            total_count=total_count,
            total_pages=math.ceil(total_count / page_size),
        )


class ReviewPage(SQLModel):
    reviews: list[ReviewRead]
    pagination: Pagination
