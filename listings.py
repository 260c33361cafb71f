"""
Listing repository.

available_rooms is the only counter in the system shared by concurrent
writers. It is changed only by set_available_rooms() and by update() when
total_rooms changes. Both go through one read / check / compare-and-set loop
over available_rooms and total_rooms, which retries with backoff when another
writer got there first.
"""
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from pymongo.errors import PyMongoError

from config import get_settings
from database import NEWEST_FIRST, Repository
from errors import InvariantViolation, NotFoundError
from schemas import COLLECTIONS, Listing, ListingFilters, ListingIn, now_utc

logger = logging.getLogger(__name__)


def check_room_bounds(available_rooms: int, total_rooms: int) -> None:
    if available_rooms < 0 or available_rooms > total_rooms:
        raise InvariantViolation(
            f"available_rooms must be between 0 and total_rooms ({total_rooms}), got {available_rooms}"
        )


def filter_by_amenities(listings: Iterable[Listing], amenities: Iterable[str]) -> List[Listing]:
    """Keep listings offering every requested amenity."""
    wanted = set(amenities)
    if not wanted:
        return list(listings)
    return [l for l in listings if wanted.issubset(l.amenities)]


def filter_by_text(listings: Iterable[Listing], query: Optional[str]) -> List[Listing]:
    """Case-insensitive match on title, city or full address."""
    q = (query or "").strip().lower()
    if not q:
        return list(listings)
    return [
        l for l in listings
        if q in l.title.lower() or q in l.address.city.lower() or q in l.address.full_address.lower()
    ]


class ListingRepository(Repository):
    collection_key = "listing"
    model = Listing

    def __init__(self, db, max_attempts: Optional[int] = None, backoff_ms: Optional[int] = None):
        super().__init__(db)
        settings = get_settings()
        self.max_attempts = max_attempts or settings.ROOM_TXN_MAX_ATTEMPTS
        self.backoff_ms = settings.ROOM_TXN_BACKOFF_MS if backoff_ms is None else backoff_ms
        self.owners = db[COLLECTIONS["owner"]]

    # ---------- CRUD ----------
    def create(self, owner_id: str, payload: ListingIn) -> str:
        data = payload.model_dump()
        if data["available_rooms"] is None:
            data["available_rooms"] = data["total_rooms"]
        check_room_bounds(data["available_rooms"], data["total_rooms"])
        data.update({
            "owner_id": owner_id,
            "is_approved": False,
            "rating": 0.0,
            "review_count": 0,
        })
        listing_id = self._insert(data)
        try:
            self.owners.update_one({"_id": owner_id}, {"$addToSet": {"properties": listing_id}})
        except PyMongoError:
            logger.exception("Could not link listing %s to owner %s", listing_id, owner_id)
        return listing_id

    def get_by_id(self, listing_id: str) -> Optional[Listing]:
        return self._get(listing_id)

    def require(self, listing_id: str) -> Listing:
        listing = self._get(listing_id)
        if listing is None:
            raise NotFoundError("Listing not found")
        return listing

    def update(self, listing_id: str, payload: ListingIn) -> Listing:
        """
        Set the owner-editable fields; moderation and rating fields are kept.

        available_rooms is never taken from the payload. A change of
        total_rooms shifts available_rooms by the same amount in one
        compare-and-set, so rooms held by bookings stay held.
        """
        fields = payload.model_dump(exclude={"available_rooms", "total_rooms"})
        new_total = payload.total_rooms

        def resize(available: int, total: int) -> Dict[str, Any]:
            held = total - available
            if new_total < held:
                raise InvariantViolation(f"total_rooms cannot drop below the {held} rooms held by bookings")
            return {**fields, "total_rooms": new_total, "available_rooms": available + (new_total - total)}

        self._update_rooms(listing_id, resize)
        return self.require(listing_id)

    def delete(self, listing_id: str) -> None:
        listing = self.require(listing_id)
        self.collection.delete_one({"_id": self._key(listing_id)})
        try:
            self.owners.update_one({"_id": listing.owner_id}, {"$pull": {"properties": listing_id}})
        except PyMongoError:
            logger.exception("Could not unlink listing %s from owner %s", listing_id, listing.owner_id)

    # ---------- Queries ----------
    def list(self, filters: Optional[ListingFilters] = None) -> List[Listing]:
        """Tenant-facing search. Amenity filtering is left to filter_by_amenities()."""
        filt: Dict[str, Any] = {"is_approved": True, "is_active": True}
        if filters is not None:
            if filters.max_rent is not None:
                filt["rent"] = {"$lte": filters.max_rent}
            if filters.room_type:
                filt["room_type"] = filters.room_type
            if filters.city:
                filt["address.city"] = filters.city
        return self._find(filt, sort=NEWEST_FIRST)

    def list_by_owner(self, owner_id: str) -> List[Listing]:
        return self._find({"owner_id": owner_id})

    def list_pending(self) -> List[Listing]:
        return self._find({"is_approved": False})

    # ---------- Moderation ----------
    def approve(self, listing_id: str) -> None:
        self._moderate(listing_id, {"is_approved": True})
        logger.info("Approved listing %s", listing_id)

    def reject(self, listing_id: str) -> None:
        self._moderate(listing_id, {"is_approved": False, "is_active": False})
        logger.info("Rejected listing %s", listing_id)

    def _moderate(self, listing_id: str, fields: Dict[str, Any]) -> None:
        fields["updated_at"] = now_utc()
        res = self.collection.update_one({"_id": self._key(listing_id)}, {"$set": fields})
        if res.matched_count == 0:
            raise NotFoundError("Listing not found")

    def set_rating(self, listing_id: str, rating: float, review_count: int) -> None:
        res = self.collection.update_one(
            {"_id": self._key(listing_id)},
            {"$set": {"rating": rating, "review_count": review_count}},
        )
        if res.matched_count == 0:
            raise NotFoundError("Listing not found")

    # ---------- Room inventory ----------
    def set_available_rooms(self, listing_id: str, delta: int) -> int:
        """
        Atomically add delta (-1 reserves a room, +1 releases one) to
        available_rooms and return the new value.

        Raises InvariantViolation when the result would leave [0, total_rooms]
        or when the counter stays contended for every attempt.
        """
        def shift(available: int, total: int) -> Dict[str, Any]:
            new = available + delta
            check_room_bounds(new, total)
            return {"available_rooms": new}

        return self._update_rooms(listing_id, shift)["available_rooms"]

    def _update_rooms(self, listing_id: str, compute: Callable[[int, int], Dict[str, Any]]) -> Dict[str, Any]:
        """Read the room counters, let compute() derive the $set fields, write them if the counters are unchanged."""
        key = self._key(listing_id)
        for attempt in range(self.max_attempts):
            snapshot = self._read_rooms(key)
            if snapshot is None:
                raise NotFoundError("Listing not found")
            available, total = snapshot["available_rooms"], snapshot["total_rooms"]
            fields = compute(available, total)
            fields["updated_at"] = now_utc()

            res = self.collection.update_one(
                {"_id": key, "available_rooms": available, "total_rooms": total},
                {"$set": fields},
            )
            if res.matched_count == 1:
                return fields

            logger.debug("Room counters of %s changed under us (attempt %d)", listing_id, attempt + 1)
            if self.backoff_ms:
                time.sleep(self.backoff_ms * (2 ** attempt) / 1000.0)

        raise InvariantViolation(f"Room count of listing {listing_id} is under contention, try again")

    def _read_rooms(self, key) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({"_id": key}, {"available_rooms": 1, "total_rooms": 1})
