from typing import List, Tuple

from database import Repository
from listings import ListingRepository
from schemas import Review, ReviewCreate


class ReviewRepository(Repository):
    """Append-only reviews; each addition recomputes the listing's rating."""

    collection_key = "review"
    model = Review

    def __init__(self, db, listings: ListingRepository):
        super().__init__(db)
        self.listings = listings

    def add(self, tenant_id: str, request: ReviewCreate) -> str:
        listing = self.listings.require(request.listing_id)
        review_id = self._insert({
            "tenant_id": tenant_id,
            "listing_id": listing.id,
            "rating": request.rating,
            "comment": request.comment,
        })
        rating, count = self.summary(listing.id)
        self.listings.set_rating(listing.id, rating, count)
        return review_id

    def summary(self, listing_id: str) -> Tuple[float, int]:
        # Reads every review of the listing: O(n) per call.
        ratings = [d["rating"] for d in self.collection.find({"listing_id": listing_id}, {"rating": 1})]
        if not ratings:
            return 0.0, 0
        return sum(ratings) / len(ratings), len(ratings)

    def list_by_listing(self, listing_id: str) -> List[Review]:
        return self._find({"listing_id": listing_id})
