from contextlib import asynccontextmanager
from typing import Annotated
from fastapi import Depends, FastAPI, HTTPException, status, Query
from fastapi.security import OAuth2PasswordRequestForm
from datetime import datetime
from sqlmodel import Session, select
import logging
import os
import uuid
from typing import Optional

from .admission import AdmissionError, as_utc
from .auth import (
    Token,
    authenticate_user,
    create_access_token,
    get_current_user,
    get_password_hash,
    require_admin,
)
from .database import create_db_and_tables, get_session
from .models import (
    Booking,
    BookingCreate,
    BookingRead,
    Pagination,
    ReviewCreate,
    ReviewPage,
    ReviewRead,
    Shelter,
    ShelterCreate,
    ShelterDetail,
    ShelterRead,
    ShelterSearchResult,
    ShelterUpdate,
    User,
    UserCreate,
    UserRead,
)
from .search import BoundingBox
from . import store

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Shelter bookings API",
    description="API to list shelters, search them by area, and book them exclusively or by the place.",
    version="0.3.0",
)


def get_shelter_or_404(session: Session, id: uuid.UUID) -> Shelter:
    shelter = session.get(Shelter, id)
    if not shelter:
        raise HTTPException(status_code=404, detail="Shelter not found")
    return shelter


def admission_http_error(exc: AdmissionError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def booking_reads(session: Session, bookings: list[Booking]) -> list[BookingRead]:
    names = store.first_names(session, [booking.booker_id for booking in bookings])
    return [
        BookingRead.model_validate(
            booking, update={"booker_name": names.get(booking.booker_id)}
        )
        for booking in bookings
    ]


# --- Users ---
@app.post(
    "/register",
    response_model=UserRead,
    summary="Register new user",
    response_description="User data",
    tags=["Users"],
)
def register_user(user: UserCreate, session: Session = Depends(get_session)):
    """
    Register new user.
    """
    existing_user = session.exec(
        select(User).where(User.username == user.username)
    ).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Username already taken")

    db_user = User.model_validate(
        user, update={"hashed_password": get_password_hash(user.password)}
    )
    session.add(db_user)
    session.commit()
    session.refresh(db_user)
    logger.info("Registered user %s", db_user.id)
    return db_user


@app.post(
    "/token", summary="Log in", response_description="Bearer token", tags=["Users"]
)
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session),
) -> Token:
    """Obtain token for login"""
    user = authenticate_user(session, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return create_access_token(user.username)


@app.get(
    "/users/me",
    response_model=UserRead,
    summary="Get current user",
    response_description="Current user data",
    tags=["Users"],
)
def read_users_me(current_user: Annotated[User, Depends(get_current_user)]):
    """Get current user data."""
    return current_user


# --- Shelters ---
@app.post(
    "/shelters",
    response_model=ShelterRead,
    status_code=status.HTTP_201_CREATED,
    summary="List a new shelter",
    response_description="Shelter data",
    tags=["Shelters"],
)
def create_shelter(
    shelter: ShelterCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """List a new shelter owned by the current user."""
    return store.create_shelter(session, shelter, current_user.id)


@app.get(
    "/shelters",
    response_model=list[ShelterSearchResult],
    summary="Search shelters",
    response_description="Shelters ordered by name, with review summaries",
    tags=["Shelters"],
)
def search_shelters(
    session: Session = Depends(get_session),
    min_lat: Optional[float] = Query(None, ge=-90, le=90, description="Southern edge"),
    max_lat: Optional[float] = Query(None, ge=-90, le=90, description="Northern edge"),
    min_lon: Optional[float] = Query(None, ge=-180, le=180, description="Western edge"),
    max_lon: Optional[float] = Query(None, ge=-180, le=180, description="Eastern edge"),
    limit: Optional[int] = Query(None, ge=0, description="Maximum number of results"),
):
    """
    Search shelters, optionally inside a bounding box.

    - **min_lat**, **max_lat**, **min_lon**, **max_lon**: box edges, inclusive.
      The box is only applied when all four are given.
    - **limit**: Optional cap on the number of shelters returned
    """
    bbox = BoundingBox.from_params(min_lat, max_lat, min_lon, max_lon)
    shelters = store.search_shelters(session, bbox, limit)
    summaries = store.review_summaries(session, [shelter.id for shelter in shelters])
    return [
        ShelterSearchResult.model_validate(
            shelter, update={"review_summary": summaries[shelter.id]}
        )
        for shelter in shelters
    ]


@app.get(
    "/shelters/{id}",
    response_model=ShelterDetail,
    summary="Get shelter",
    response_description="Shelter data with review summary",
    tags=["Shelters"],
)
def get_shelter(id: uuid.UUID, session: Session = Depends(get_session)):
    """Get a shelter by ID."""
    shelter = get_shelter_or_404(session, id)
    return ShelterDetail.model_validate(
        shelter, update={"review_summary": store.review_summary(session, id)}
    )


@app.put(
    "/shelters/{id}",
    response_model=ShelterRead,
    summary="Update shelter",
    response_description="Updated shelter data",
    tags=["Shelters"],
)
def update_shelter(
    id: uuid.UUID,
    updated_shelter: ShelterUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Update name, description, capacity or active flag. Owner or admin only.
    Deactivating a shelter keeps its bookings but blocks new ones.
    """
    shelter = get_shelter_or_404(session, id)
    if shelter.owner_id != current_user.id and not current_user.is_admin:
        raise HTTPException(
            status_code=403, detail="Not authorised to change someone else's shelter"
        )
    return store.update_shelter(session, shelter, updated_shelter)


@app.delete(
    "/shelters/{id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete shelter",
    tags=["Shelters"],
)
def delete_shelter(
    id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Delete a shelter with its bookings and reviews. Admin access only."""
    require_admin(current_user)
    shelter = get_shelter_or_404(session, id)
    store.delete_shelter(session, shelter)


# --- Bookings ---
@app.post(
    "/shelters/{id}/bookings",
    response_model=BookingRead,
    status_code=status.HTTP_201_CREATED,
    summary="Book shelter",
    response_description="Confirmed booking",
    tags=["Bookings"],
)
def create_booking(
    id: uuid.UUID,
    booking: BookingCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Book a shelter if the requested time and guests fit.
    - **start_utc**: Start of the booking (inclusive)
    - **end_utc**: End of the booking (exclusive)
    - **guests**: Places needed, counted against capacity for inclusive bookings
    - **type**: `exclusive` for the whole shelter, `inclusive` to share it
    """
    try:
        db_booking = store.create_booking(session, id, current_user.id, booking)
    except AdmissionError as exc:
        raise admission_http_error(exc)
    if db_booking is None:
        raise HTTPException(status_code=404, detail="Shelter not found")
    return booking_reads(session, [db_booking])[0]


@app.get(
    "/shelters/{id}/bookings",
    response_model=list[BookingRead],
    summary="List shelter bookings",
    response_description="List of bookings ordered by start",
    tags=["Bookings"],
)
def list_shelter_bookings(
    id: uuid.UUID,
    session: Session = Depends(get_session),
    datetime_from: Optional[datetime] = Query(
        None, alias="from", description="Bookings ending at or after"
    ),
    datetime_until: Optional[datetime] = Query(
        None, alias="to", description="Bookings starting at or before"
    ),
):
    """List bookings of a shelter, including cancelled ones, with optional time filter.
    - **from**: Optional earliest end time
    - **to**: Optional latest start time
    """
    bookings = store.list_shelter_bookings(
        session,
        id,
        as_utc(datetime_from) if datetime_from else None,
        as_utc(datetime_until) if datetime_until else None,
    )
    return booking_reads(session, bookings)


@app.get(
    "/bookings/{id}",
    response_model=BookingRead,
    dependencies=[Depends(get_current_user)],
    summary="Get booking",
    response_description="Booking data",
    tags=["Bookings"],
)
def get_booking(id: uuid.UUID, session: Session = Depends(get_session)):
    """Get a booking by ID."""
    db_booking = session.get(Booking, id)
    if not db_booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking_reads(session, [db_booking])[0]


@app.post(
    "/bookings/{id}/cancel",
    response_model=BookingRead,
    summary="Cancel booking",
    response_description="Cancelled booking",
    tags=["Bookings"],
)
def cancel_booking(
    id: uuid.UUID,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """
    Cancel a booking. Booker, shelter owner or admin only.
    -**id**: Booking ID.
    """
    db_booking = session.get(Booking, id)
    if not db_booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    shelter = session.get(Shelter, db_booking.shelter_id)
    allowed = (
        db_booking.booker_id == current_user.id
        or (shelter is not None and shelter.owner_id == current_user.id)
        or current_user.is_admin
    )
    if not allowed:
        raise HTTPException(
            status_code=403, detail="Not authorised to cancel someone else's booking"
        )
    try:
        cancelled = store.cancel_booking(session, db_booking)
    except AdmissionError as exc:
        raise admission_http_error(exc)
    return booking_reads(session, [cancelled])[0]


# --- Reviews ---
@app.get(
    "/shelters/{id}/reviews",
    response_model=ReviewPage,
    summary="List shelter reviews",
    response_description="Page of reviews, newest first",
    tags=["Reviews"],
)
def list_reviews(
    id: uuid.UUID,
    session: Session = Depends(get_session),
    page: int = Query(1, description="Page number, from 1"),
    page_size: int = Query(DEFAULT_PAGE_SIZE, description="Reviews per page, 1-100"),
):
    """Out-of-range paging values fall back to the first page of 10."""
    if page < 1:
        page = 1
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        page_size = DEFAULT_PAGE_SIZE

    reviews, total_count = store.list_reviews(session, id, page, page_size)
    return ReviewPage(
        reviews=[ReviewRead.model_validate(review) for review in reviews],
        pagination=Pagination.of(page, page_size, total_count),
    )


@app.post(
    "/shelters/{id}/reviews",
    response_model=ReviewRead,
    status_code=status.HTTP_201_CREATED,
    summary="Review shelter",
    response_description="Review data",
    tags=["Reviews"],
)
def create_review(
    id: uuid.UUID,
    review: ReviewCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    """Leave a 1-5 rating with an optional comment."""
    get_shelter_or_404(session, id)
    return store.create_review(session, id, current_user.id, review)
