from typing import List, Optional

from database import Repository
from errors import InvalidTransition, NotFoundError
from listings import ListingRepository
from schemas import Inquiry, InquiryCreate, now_utc


class InquiryRepository(Repository):
    collection_key = "inquiry"
    model = Inquiry

    def __init__(self, db, listings: ListingRepository):
        super().__init__(db)
        self.listings = listings

    def create(self, tenant_id: str, request: InquiryCreate) -> str:
        listing = self.listings.require(request.listing_id)
        return self._insert({
            "tenant_id": tenant_id,
            "listing_id": listing.id,
            "owner_id": listing.owner_id,
            "message": request.message,
            "is_read": False,
            "response": None,
            "responded_at": None,
        })

    def get_by_id(self, inquiry_id: str) -> Optional[Inquiry]:
        return self._get(inquiry_id)

    def require(self, inquiry_id: str) -> Inquiry:
        inquiry = self._get(inquiry_id)
        if inquiry is None:
            raise NotFoundError("Inquiry not found")
        return inquiry

    def respond(self, inquiry_id: str, response: str) -> Inquiry:
        """Answer an inquiry once; it is marked read at the same time."""
        self.require(inquiry_id)
        res = self.collection.update_one(
            {"_id": self._key(inquiry_id), "response": None},
            {"$set": {"response": response, "is_read": True, "responded_at": now_utc()}},
        )
        if res.matched_count == 0:
            raise InvalidTransition("Inquiry has already been answered")
        return self.require(inquiry_id)

    def mark_read(self, inquiry_id: str) -> None:
        res = self.collection.update_one({"_id": self._key(inquiry_id)}, {"$set": {"is_read": True}})
        if res.matched_count == 0:
            raise NotFoundError("Inquiry not found")

    def list_by_listing(self, listing_id: str) -> List[Inquiry]:
        return self._find({"listing_id": listing_id})

    def list_by_tenant(self, tenant_id: str) -> List[Inquiry]:
        return self._find({"tenant_id": tenant_id})

    def list_by_owner(self, owner_id: str) -> List[Inquiry]:
        return self._find({"owner_id": owner_id})
