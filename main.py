import logging
import os
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

from bookings import BookingRepository
from config import get_settings
from database import ensure_indexes, get_db
from errors import NotFoundError, register_error_handlers
from favorites import FavoritesRepository
from identity import AuthStateChanged, FirebaseIdentityProvider, IdentityGateway, IdentityProvider, Session
from inquiries import InquiryRepository
from listings import ListingRepository, filter_by_amenities, filter_by_text
from reviews import ReviewRepository
from schemas import (
    Amenity, Booking, BookingCreate, BookingStatus, Inquiry, InquiryCreate, Listing, ListingFilters,
    ListingIn, PasswordResetRequest, ProfileUpdate, Review, ReviewCreate, Role, RoomType, SignInRequest,
    SignUpRequest, SupportTicket, SupportTicketCreate, TicketCategory, TicketPriority, TicketStatus, User,
)
from support import SupportTicketRepository

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = getattr(logging, get_settings().LOG_LEVEL, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)


def _log_auth_state(event: AuthStateChanged) -> None:
    if event.signed_in:
        logger.info("Auth state: %s signed in", event.uid)
    else:
        logger.info("Auth state: signed out")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.warning("Could not create indexes: %s", e)
    unsubscribe = get_identity_provider().on_auth_state_changed(_log_auth_state)
    yield
    unsubscribe()


_configure_logging()

app = FastAPI(title="Gharpayy PG Rental API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


# ------------------------
# Dependencies
# ------------------------
class IdResponse(BaseModel):
    id: str


@lru_cache()
def get_identity_provider() -> IdentityProvider:
    return FirebaseIdentityProvider(get_settings())


def get_database() -> Database:
    return get_db()


def get_identity(db: Database = Depends(get_database), provider: IdentityProvider = Depends(get_identity_provider)) -> IdentityGateway:
    return IdentityGateway(provider, db)


def get_listings(db: Database = Depends(get_database)) -> ListingRepository:
    return ListingRepository(db)


def get_bookings(db: Database = Depends(get_database), listings: ListingRepository = Depends(get_listings)) -> BookingRepository:
    return BookingRepository(db, listings)


def get_inquiries(db: Database = Depends(get_database), listings: ListingRepository = Depends(get_listings)) -> InquiryRepository:
    return InquiryRepository(db, listings)


def get_reviews(db: Database = Depends(get_database), listings: ListingRepository = Depends(get_listings)) -> ReviewRepository:
    return ReviewRepository(db, listings)


def get_favorites(db: Database = Depends(get_database), listings: ListingRepository = Depends(get_listings)) -> FavoritesRepository:
    return FavoritesRepository(db, listings)


def get_tickets(db: Database = Depends(get_database)) -> SupportTicketRepository:
    return SupportTicketRepository(db)


def _parse_bearer(authorization: str) -> str:
    try:
        scheme, token = authorization.split(" ")
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header format")
    return token


def get_session(authorization: Optional[str] = Header(None), identity: IdentityGateway = Depends(get_identity)) -> Session:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    return identity.session_for_token(_parse_bearer(authorization))


def get_optional_session(authorization: Optional[str] = Header(None), identity: IdentityGateway = Depends(get_identity)) -> Optional[Session]:
    if not authorization:
        return None
    return identity.session_for_token(_parse_bearer(authorization))


def require_role(session: Session, *roles: Role) -> None:
    if session.role not in roles:
        raise HTTPException(status_code=403, detail=f"Only {' or '.join(roles)} accounts can do this")


def _ensure_listing_owner(session: Session, listing: Listing) -> None:
    if session.role != "admin" and listing.owner_id != session.user_id:
        raise HTTPException(status_code=403, detail="Only the listing owner can do this")


def _visible_listing(listings: ListingRepository, listing_id: str, session: Optional[Session]) -> Listing:
    """Unapproved or inactive listings exist only for their owner and admins."""
    listing = listings.require(listing_id)
    if not listing.is_visible:
        if session is None or (session.role != "admin" and session.user_id != listing.owner_id):
            raise NotFoundError("Listing not found")
    return listing


@app.get("/")
def root():
    return {"name": "Gharpayy PG Rental API", "status": "ok"}


@app.get("/health")
def health(db: Database = Depends(get_database)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "database_url": "set" if os.getenv("DATABASE_URL") else "default",
        "database_name": db.name,
    }
    try:
        db.command("ping")
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# ------------------------
# Auth
# ------------------------
class SignInResponse(BaseModel):
    token: str
    refresh_token: Optional[str] = None
    user: User


@app.post("/auth/signup", response_model=User)
def sign_up(payload: SignUpRequest, identity: IdentityGateway = Depends(get_identity)):
    if payload.role == "admin":
        raise HTTPException(status_code=403, detail="Admin accounts cannot be self-registered")
    return identity.sign_up(payload.email, payload.password, payload.name, payload.phone, payload.role)


@app.post("/auth/signin", response_model=SignInResponse)
def sign_in(payload: SignInRequest, identity: IdentityGateway = Depends(get_identity)):
    session = identity.sign_in(payload.email, payload.password)
    return SignInResponse(token=session.token, refresh_token=session.refresh_token, user=session.user)


@app.post("/auth/signout")
def sign_out(session: Session = Depends(get_session), identity: IdentityGateway = Depends(get_identity)):
    identity.sign_out(session)
    return {"signed_out": True}


@app.post("/auth/reset-password")
def reset_password(payload: PasswordResetRequest, identity: IdentityGateway = Depends(get_identity)):
    return {"sent": identity.reset_password(payload.email)}


# ------------------------
# Users
# ------------------------
@app.get("/users/me", response_model=User)
def get_me(session: Session = Depends(get_session)):
    return session.user


@app.put("/users/me", response_model=User)
def update_me(payload: ProfileUpdate, session: Session = Depends(get_session), identity: IdentityGateway = Depends(get_identity)):
    return identity.update_profile(session.user_id, payload.name, payload.phone)


@app.get("/users/me/profile")
def get_my_profile(session: Session = Depends(get_session), identity: IdentityGateway = Depends(get_identity)):
    return identity.load_profile(session.user)


# ------------------------
# Listings
# ------------------------
@app.post("/listings", response_model=IdResponse)
def create_listing(payload: ListingIn, session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    require_role(session, "owner")
    return {"id": listings.create(session.user_id, payload)}


@app.get("/listings")
def list_listings(
    max_rent: Optional[float] = Query(None, ge=0),
    room_type: Optional[RoomType] = None,
    city: Optional[str] = None,
    amenities: List[Amenity] = Query([]),
    q: Optional[str] = Query(None, description="Search across title, city and address"),
    listings: ListingRepository = Depends(get_listings),
):
    filters = ListingFilters(max_rent=max_rent, room_type=room_type, city=city, amenities=amenities)
    items = filter_by_text(filter_by_amenities(listings.list(filters), filters.amenities), q)
    return {"items": items, "count": len(items)}


@app.get("/listings/{listing_id}", response_model=Listing)
def get_listing(listing_id: str, session: Optional[Session] = Depends(get_optional_session), listings: ListingRepository = Depends(get_listings)):
    return _visible_listing(listings, listing_id, session)


@app.put("/listings/{listing_id}", response_model=Listing)
def update_listing(listing_id: str, payload: ListingIn, session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    _ensure_listing_owner(session, listings.require(listing_id))
    return listings.update(listing_id, payload)


@app.delete("/listings/{listing_id}")
def delete_listing(listing_id: str, session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    _ensure_listing_owner(session, listings.require(listing_id))
    listings.delete(listing_id)
    return {"deleted": True}


@app.get("/owners/me/listings", response_model=List[Listing])
def my_listings(session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    require_role(session, "owner")
    return listings.list_by_owner(session.user_id)


@app.get("/listings/{listing_id}/bookings", response_model=List[Booking])
def listing_bookings(
    listing_id: str,
    session: Session = Depends(get_session),
    listings: ListingRepository = Depends(get_listings),
    bookings: BookingRepository = Depends(get_bookings),
):
    _ensure_listing_owner(session, listings.require(listing_id))
    return bookings.list_by_listing(listing_id)


@app.get("/listings/{listing_id}/inquiries", response_model=List[Inquiry])
def listing_inquiries(
    listing_id: str,
    session: Session = Depends(get_session),
    listings: ListingRepository = Depends(get_listings),
    inquiries: InquiryRepository = Depends(get_inquiries),
):
    _ensure_listing_owner(session, listings.require(listing_id))
    return inquiries.list_by_listing(listing_id)


# ------------------------
# Reviews
# ------------------------
class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


@app.get("/listings/{listing_id}/reviews", response_model=List[Review])
def listing_reviews(
    listing_id: str,
    session: Optional[Session] = Depends(get_optional_session),
    listings: ListingRepository = Depends(get_listings),
    reviews: ReviewRepository = Depends(get_reviews),
):
    _visible_listing(listings, listing_id, session)
    return reviews.list_by_listing(listing_id)


@app.post("/listings/{listing_id}/reviews", response_model=IdResponse)
def add_review(
    listing_id: str,
    payload: ReviewBody,
    session: Session = Depends(get_session),
    listings: ListingRepository = Depends(get_listings),
    reviews: ReviewRepository = Depends(get_reviews),
):
    require_role(session, "tenant")
    _visible_listing(listings, listing_id, session)
    request = ReviewCreate(listing_id=listing_id, rating=payload.rating, comment=payload.comment)
    return {"id": reviews.add(session.user_id, request)}


# ------------------------
# Bookings
# ------------------------
class BookingStatusUpdate(BaseModel):
    status: BookingStatus


@app.post("/bookings", response_model=IdResponse)
def create_booking(payload: BookingCreate, session: Session = Depends(get_session), bookings: BookingRepository = Depends(get_bookings)):
    require_role(session, "tenant")
    return {"id": bookings.create(session.user_id, payload)}


@app.get("/bookings/me", response_model=List[Booking])
def my_bookings(session: Session = Depends(get_session), bookings: BookingRepository = Depends(get_bookings)):
    if session.role == "tenant":
        return bookings.list_by_tenant(session.user_id)
    if session.role == "owner":
        return bookings.list_by_owner(session.user_id)
    raise HTTPException(status_code=403, detail="Only tenants and owners have bookings")


@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, session: Session = Depends(get_session), bookings: BookingRepository = Depends(get_bookings)):
    booking = bookings.require(booking_id)
    if session.role != "admin" and session.user_id not in (booking.tenant_id, booking.owner_id):
        raise HTTPException(status_code=403, detail="Not authorized to view this booking")
    return booking


@app.post("/bookings/{booking_id}/status", response_model=Booking)
def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    session: Session = Depends(get_session),
    bookings: BookingRepository = Depends(get_bookings),
):
    booking = bookings.require(booking_id)
    if session.role != "admin":
        if session.user_id == booking.owner_id:
            pass
        elif session.user_id == booking.tenant_id:
            if payload.status != "cancelled":
                raise HTTPException(status_code=403, detail="Tenants can only cancel their bookings")
        else:
            raise HTTPException(status_code=403, detail="Not authorized to change this booking")
    return bookings.transition(booking_id, payload.status)


# ------------------------
# Inquiries
# ------------------------
class InquiryAnswer(BaseModel):
    response: str = Field(..., min_length=1)


@app.post("/inquiries", response_model=IdResponse)
def create_inquiry(payload: InquiryCreate, session: Session = Depends(get_session), inquiries: InquiryRepository = Depends(get_inquiries)):
    require_role(session, "tenant")
    return {"id": inquiries.create(session.user_id, payload)}


@app.get("/inquiries/me", response_model=List[Inquiry])
def my_inquiries(session: Session = Depends(get_session), inquiries: InquiryRepository = Depends(get_inquiries)):
    if session.role == "tenant":
        return inquiries.list_by_tenant(session.user_id)
    if session.role == "owner":
        return inquiries.list_by_owner(session.user_id)
    raise HTTPException(status_code=403, detail="Only tenants and owners have inquiries")


def _ensure_inquiry_owner(session: Session, inquiry: Inquiry) -> None:
    if session.role != "admin" and inquiry.owner_id != session.user_id:
        raise HTTPException(status_code=403, detail="Only the listing owner can answer this inquiry")


@app.post("/inquiries/{inquiry_id}/respond", response_model=Inquiry)
def respond_inquiry(
    inquiry_id: str,
    payload: InquiryAnswer,
    session: Session = Depends(get_session),
    inquiries: InquiryRepository = Depends(get_inquiries),
):
    _ensure_inquiry_owner(session, inquiries.require(inquiry_id))
    return inquiries.respond(inquiry_id, payload.response)


@app.post("/inquiries/{inquiry_id}/read")
def read_inquiry(inquiry_id: str, session: Session = Depends(get_session), inquiries: InquiryRepository = Depends(get_inquiries)):
    _ensure_inquiry_owner(session, inquiries.require(inquiry_id))
    inquiries.mark_read(inquiry_id)
    return {"read": True}


# ------------------------
# Favorites
# ------------------------
@app.get("/favorites", response_model=List[Listing])
def list_favorites(session: Session = Depends(get_session), favorites: FavoritesRepository = Depends(get_favorites)):
    require_role(session, "tenant")
    return favorites.list_favorites(session.user_id)


@app.put("/favorites/{listing_id}")
def add_favorite(
    listing_id: str,
    session: Session = Depends(get_session),
    favorites: FavoritesRepository = Depends(get_favorites),
    listings: ListingRepository = Depends(get_listings),
):
    require_role(session, "tenant")
    _visible_listing(listings, listing_id, session)
    favorites.add(session.user_id, listing_id)
    return {"favorite": True}


@app.delete("/favorites/{listing_id}")
def remove_favorite(listing_id: str, session: Session = Depends(get_session), favorites: FavoritesRepository = Depends(get_favorites)):
    require_role(session, "tenant")
    favorites.remove(session.user_id, listing_id)
    return {"favorite": False}


# ------------------------
# Support tickets
# ------------------------
class SupportTicketUpdate(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: TicketCategory
    priority: TicketPriority
    status: TicketStatus


@app.post("/support/tickets", response_model=IdResponse)
def create_ticket(payload: SupportTicketCreate, session: Session = Depends(get_session), tickets: SupportTicketRepository = Depends(get_tickets)):
    return {"id": tickets.create(session.user_id, payload)}


@app.get("/support/tickets", response_model=List[SupportTicket])
def list_tickets(
    status: Optional[TicketStatus] = None,
    session: Session = Depends(get_session),
    tickets: SupportTicketRepository = Depends(get_tickets),
):
    require_role(session, "admin")
    return tickets.list(status)


@app.put("/support/tickets/{ticket_id}", response_model=SupportTicket)
def update_ticket(
    ticket_id: str,
    payload: SupportTicketUpdate,
    session: Session = Depends(get_session),
    tickets: SupportTicketRepository = Depends(get_tickets),
):
    require_role(session, "admin")
    current = tickets.require(ticket_id)
    return tickets.update(current.model_copy(update=payload.model_dump()))


# ------------------------
# Admin
# ------------------------
@app.get("/admin/listings/pending", response_model=List[Listing])
def pending_listings(session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    require_role(session, "admin")
    return listings.list_pending()


@app.post("/admin/listings/{listing_id}/approve")
def approve_listing(listing_id: str, session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    require_role(session, "admin")
    listings.approve(listing_id)
    return {"approved": True}


@app.post("/admin/listings/{listing_id}/reject")
def reject_listing(listing_id: str, session: Session = Depends(get_session), listings: ListingRepository = Depends(get_listings)):
    require_role(session, "admin")
    listings.reject(listing_id)
    return {"approved": False}


@app.get("/admin/users", response_model=List[User])
def admin_list_users(
    role: Optional[Role] = None,
    session: Session = Depends(get_session),
    identity: IdentityGateway = Depends(get_identity),
):
    require_role(session, "admin")
    return identity.list_users(role)


@app.post("/admin/owners/{owner_id}/verify-license")
def verify_owner_license(owner_id: str, session: Session = Depends(get_session), identity: IdentityGateway = Depends(get_identity)):
    require_role(session, "admin")
    identity.verify_owner_license(owner_id)
    return {"verified": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
