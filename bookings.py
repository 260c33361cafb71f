"""
Booking repository and booking lifecycle.

    pending -> confirmed -> active -> completed
       |           |          |
       +-----------+----------+--> cancelled

A booking holds a room while it is pending, confirmed or active. Creating one
reserves the room before the booking record is written, and a failed write
gives the room back, so no booking exists without its reservation. Moving a
booking into completed or cancelled releases the room.
"""
import logging
from typing import List, Optional

from pymongo.errors import PyMongoError

from database import Repository, encode_document
from errors import InvalidTransition, InvariantViolation, NotFoundError
from listings import ListingRepository
from schemas import COLLECTIONS, Booking, BookingCreate, BookingStatus, now_utc

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"active", "cancelled"},
    "active": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
ROOM_HOLDING = {"pending", "confirmed", "active"}
TERMINAL = {"completed", "cancelled"}


def can_transition(current: BookingStatus, new: BookingStatus) -> bool:
    return new in TRANSITIONS[current]


class BookingRepository(Repository):
    collection_key = "booking"
    model = Booking

    def __init__(self, db, listings: ListingRepository):
        super().__init__(db)
        self.listings = listings
        self.tenants = db[COLLECTIONS["tenant"]]
        self.owners = db[COLLECTIONS["owner"]]

    def create(self, tenant_id: str, request: BookingCreate) -> str:
        listing = self.listings.require(request.listing_id)
        if not listing.is_visible:
            raise InvariantViolation("Listing is not open for booking")

        self.listings.set_available_rooms(listing.id, -1)
        data = {
            "tenant_id": tenant_id,
            "listing_id": listing.id,
            "owner_id": listing.owner_id,
            "check_in_date": request.check_in_date,
            "check_out_date": request.check_out_date,
            "monthly_rent": listing.rent,
            "security_deposit": listing.security_deposit,
            "status": "pending",
        }
        try:
            booking_id = self._insert(data)
        except PyMongoError:
            logger.warning("Booking insert for listing %s failed, releasing the reserved room", listing.id)
            self.listings.set_available_rooms(listing.id, +1)
            raise

        self._record(tenant_id, listing.owner_id, booking_id)
        return booking_id

    def get_by_id(self, booking_id: str) -> Optional[Booking]:
        return self._get(booking_id)

    def require(self, booking_id: str) -> Booking:
        booking = self._get(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    def update(self, booking: Booking) -> Booking:
        """Replace the stored booking; a status change must follow TRANSITIONS."""
        current = self.require(booking.id)
        if (booking.tenant_id, booking.listing_id, booking.owner_id) != (current.tenant_id, current.listing_id, current.owner_id):
            raise InvalidTransition("tenant_id, listing_id and owner_id of a booking cannot change")
        if booking.status != current.status and not can_transition(current.status, booking.status):
            raise InvalidTransition(f"Cannot move a booking from {current.status} to {booking.status}")

        updated = booking.model_copy(update={"created_at": current.created_at, "updated_at": now_utc()})
        res = self.collection.replace_one(
            {"_id": self._key(booking.id), "status": current.status},
            encode_document(updated),
        )
        if res.matched_count == 0:
            raise InvalidTransition("Booking was changed by someone else, reload and retry")

        if current.status in ROOM_HOLDING and updated.status in TERMINAL:
            self._release_room(updated)
        return updated

    def transition(self, booking_id: str, status: BookingStatus) -> Booking:
        booking = self.require(booking_id)
        if booking.status == status:
            raise InvalidTransition(f"Booking is already {status}")
        return self.update(booking.model_copy(update={"status": status}))

    def list_by_listing(self, listing_id: str) -> List[Booking]:
        return self._find({"listing_id": listing_id})

    def list_by_tenant(self, tenant_id: str) -> List[Booking]:
        return self._find({"tenant_id": tenant_id})

    def list_by_owner(self, owner_id: str) -> List[Booking]:
        return self._find({"owner_id": owner_id})

    def _release_room(self, booking: Booking) -> None:
        try:
            self.listings.set_available_rooms(booking.listing_id, +1)
        except (NotFoundError, InvariantViolation) as e:
            logger.warning("Could not release room of booking %s: %s", booking.id, e.detail)

    def _record(self, tenant_id: str, owner_id: str, booking_id: str) -> None:
        try:
            self.tenants.update_one({"_id": tenant_id}, {"$addToSet": {"booking_history": booking_id}})
            self.owners.update_one({"_id": owner_id}, {"$inc": {"total_bookings": 1}})
        except PyMongoError:
            logger.exception("Could not record booking %s on tenant/owner profiles", booking_id)
