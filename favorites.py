from typing import List

from pymongo.database import Database

from errors import InvalidIdError, NotFoundError
from listings import ListingRepository
from schemas import COLLECTIONS, Listing


class FavoritesRepository:
    """Favorite listing ids kept as a set on the tenant profile."""

    def __init__(self, db: Database, listings: ListingRepository):
        self.tenants = db[COLLECTIONS["tenant"]]
        self.listings = listings

    def add(self, user_id: str, listing_id: str) -> None:
        self._update(user_id, {"$addToSet": {"favorite_listings": listing_id}})

    def remove(self, user_id: str, listing_id: str) -> None:
        self._update(user_id, {"$pull": {"favorite_listings": listing_id}})

    def list_ids(self, user_id: str) -> List[str]:
        doc = self.tenants.find_one({"_id": user_id}, {"favorite_listings": 1})
        if doc is None:
            raise NotFoundError("Tenant profile not found")
        return list(doc.get("favorite_listings") or [])

    def list_favorites(self, user_id: str) -> List[Listing]:
        """Point-read each favorite; ids whose listing is gone are skipped."""
        found = []
        for listing_id in self.list_ids(user_id):
            try:
                listing = self.listings.get_by_id(listing_id)
            except InvalidIdError:
                continue
            if listing is not None:
                found.append(listing)
        return found

    def _update(self, user_id: str, update: dict) -> None:
        res = self.tenants.update_one({"_id": user_id}, update)
        if res.matched_count == 0:
            raise NotFoundError("Tenant profile not found")
