"""Database access for shelters, bookings and reviews.

Admission decisions themselves live in :mod:`.admission`; this module supplies
them with a consistent view of a shelter's bookings and persists the result in
the same transaction.
"""

import datetime
import logging
import uuid
from collections import defaultdict
from typing import Optional

from sqlmodel import Session, col, func, select

from .admission import (
    AdmissionError,
    BookingStatus,
    TimeWindow,
    admit,
    booking_window,
    cancel,
    transition,
)
from .models import (
    Booking,
    BookingCreate,
    Review,
    ReviewCreate,
    ReviewSummary,
    Shelter,
    ShelterCreate,
    ShelterUpdate,
    User,
    utcnow,
)
from .search import BoundingBox, search

logger = logging.getLogger(__name__)


# --- Shelters ---
def create_shelter(
    session: Session, shelter_in: ShelterCreate, owner_id: uuid.UUID
) -> Shelter:
    shelter = Shelter.model_validate(shelter_in, update={"owner_id": owner_id})
    session.add(shelter)
    session.commit()
    session.refresh(shelter)
    logger.info("Created shelter %s for owner %s", shelter.id, owner_id)
    return shelter


def update_shelter(
    session: Session, shelter: Shelter, shelter_in: ShelterUpdate
) -> Shelter:
    for key, value in shelter_in.model_dump().items():
        setattr(shelter, key, value)
    shelter.updated_at = utcnow()
    session.add(shelter)
    session.commit()
    session.refresh(shelter)
    logger.info("Updated shelter %s", shelter.id)
    return shelter


def delete_shelter(session: Session, shelter: Shelter) -> None:
    for model in (Booking, Review):
        for row in session.exec(select(model).where(model.shelter_id == shelter.id)):
            session.delete(row)
    session.flush()
    session.delete(shelter)
    session.commit()
    logger.info("Deleted shelter %s", shelter.id)


def lock_shelter_statement(shelter_id: uuid.UUID):
    return (
        select(Shelter)
        .where(Shelter.id == shelter_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def lock_shelter(session: Session, shelter_id: uuid.UUID) -> Optional[Shelter]:
    """Load a shelter with a row lock held until the transaction ends.

    Every admission for the shelter goes through this lock, so two requests
    for the same shelter never decide against the same snapshot. Requests for
    other shelters lock other rows.
    """
    return session.exec(lock_shelter_statement(shelter_id)).first()


def search_shelters(
    session: Session, bbox: Optional[BoundingBox] = None, limit: Optional[int] = None
) -> list[Shelter]:
    query = select(Shelter)
    if bbox is not None:
        query = query.where(
            Shelter.latitude >= bbox.min_lat,
            Shelter.latitude <= bbox.max_lat,
            Shelter.longitude >= bbox.min_lon,
            Shelter.longitude <= bbox.max_lon,
        )
    return search(session.exec(query).all(), bbox, limit)


# --- Bookings ---
def find_active_bookings(
    session: Session, shelter_id: uuid.UUID, window: TimeWindow
) -> list[Booking]:
    """Non-cancelled bookings of the shelter that overlap ``window``."""
    statement = (
        select(Booking)
        .where(Booking.shelter_id == shelter_id)
        .where(Booking.status != BookingStatus.CANCELLED)
        .where(Booking.start_utc < window.end)
        .where(Booking.end_utc > window.start)
    )
    return session.exec(statement).all()


def create_booking(
    session: Session,
    shelter_id: uuid.UUID,
    booker_id: uuid.UUID,
    booking_in: BookingCreate,
) -> Optional[Booking]:
    """Admit and store a booking, or raise the reason it was rejected.

    Returns ``None`` if the shelter does not exist.
    """
    shelter = lock_shelter(session, shelter_id)
    if shelter is None:
        session.rollback()
        return None

    booking = Booking.model_validate(
        booking_in, update={"shelter_id": shelter_id, "booker_id": booker_id}
    )
    try:
        existing = find_active_bookings(session, shelter_id, booking_window(booking))
        transition(booking, admit(shelter, existing, booking))
    except AdmissionError as exc:
        session.rollback()
        logger.info(
            "Rejected %s booking on shelter %s: %s",
            booking.type.value,
            shelter_id,
            exc,
        )
        raise

    session.add(booking)
    session.commit()
    session.refresh(booking)
    logger.info(
        "Created booking %s on shelter %s (%s, %d guests)",
        booking.id,
        shelter_id,
        booking.type.value,
        booking.guests,
    )
    return booking


def cancel_booking(session: Session, booking: Booking) -> Booking:
    lock_shelter(session, booking.shelter_id)
    session.refresh(booking)
    try:
        cancel(booking)
    except AdmissionError:
        session.rollback()
        raise
    booking.updated_at = utcnow()
    session.add(booking)
    session.commit()
    session.refresh(booking)
    logger.info("Cancelled booking %s", booking.id)
    return booking


def list_shelter_bookings(
    session: Session,
    shelter_id: uuid.UUID,
    from_utc: Optional[datetime.datetime] = None,
    to_utc: Optional[datetime.datetime] = None,
) -> list[Booking]:
    """Bookings touching ``[from_utc, to_utc]``, both ends inclusive."""
    query = select(Booking).where(Booking.shelter_id == shelter_id)
    if from_utc:
        query = query.where(Booking.end_utc >= from_utc)
    if to_utc:
        query = query.where(Booking.start_utc <= to_utc)
    return session.exec(query.order_by(Booking.start_utc)).all()


# --- Reviews ---
def create_review(
    session: Session,
    shelter_id: uuid.UUID,
    reviewer_id: uuid.UUID,
    review_in: ReviewCreate,
) -> Review:
    review = Review.model_validate(
        review_in, update={"shelter_id": shelter_id, "reviewer_id": reviewer_id}
    )
    session.add(review)
    session.commit()
    session.refresh(review)
    return review


def list_reviews(
    session: Session, shelter_id: uuid.UUID, page: int = 1, page_size: int = 10
) -> tuple[list[Review], int]:
    total_count = session.exec(
        select(func.count()).select_from(Review).where(Review.shelter_id == shelter_id)
    ).one()
    reviews = session.exec(
        select(Review)
        .where(Review.shelter_id == shelter_id)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return reviews, total_count


def review_summary(session: Session, shelter_id: uuid.UUID) -> ReviewSummary:
    ratings = session.exec(
        select(Review.rating).where(Review.shelter_id == shelter_id)
    ).all()
    return ReviewSummary.from_ratings(ratings)


def review_summaries(
    session: Session, shelter_ids: list[uuid.UUID]
) -> dict[uuid.UUID, ReviewSummary]:
    """Review summaries for several shelters from a single query."""
    ratings = defaultdict(list)
    if shelter_ids:
        rows = session.exec(
            select(Review.shelter_id, Review.rating).where(
                col(Review.shelter_id).in_(shelter_ids)
            )
        ).all()
        for shelter_id, rating in rows:
            ratings[shelter_id].append(rating)
    return {
        shelter_id: ReviewSummary.from_ratings(ratings[shelter_id])
        for shelter_id in shelter_ids
    }


# --- Users ---
def first_names(
    session: Session, user_ids: list[uuid.UUID]
) -> dict[uuid.UUID, Optional[str]]:
    if not user_ids:
        return {}
    rows = session.exec(
        select(User.id, User.first_name).where(col(User.id).in_(set(user_ids)))
    ).all()
    return dict(rows)
