import pytest
from pydantic import ValidationError

from errors import NotFoundError
from schemas import ReviewCreate


def test_first_review_sets_rating_and_count(reviews, listings, listing_factory, tenant):
    listing = listing_factory()

    reviews.add(tenant.id, ReviewCreate(listing_id=listing.id, rating=4, comment="Good food"))

    updated = listings.require(listing.id)
    assert updated.rating == 4.0
    assert updated.review_count == 1


def test_new_review_moves_the_mean(reviews, listings, listing_factory, tenant):
    listing = listing_factory()
    for rating in (5, 4, 3):
        reviews.add(tenant.id, ReviewCreate(listing_id=listing.id, rating=rating))
    before = listings.require(listing.id)
    m, k = before.rating, before.review_count

    reviews.add(tenant.id, ReviewCreate(listing_id=listing.id, rating=1))

    after = listings.require(listing.id)
    assert after.review_count == k + 1
    assert after.rating == pytest.approx((m * k + 1) / (k + 1))
    assert after.rating == pytest.approx(3.25)


def test_reviews_of_other_listings_do_not_count(reviews, listings, listing_factory, tenant):
    listing = listing_factory()
    other = listing_factory()
    reviews.add(tenant.id, ReviewCreate(listing_id=other.id, rating=1))

    reviews.add(tenant.id, ReviewCreate(listing_id=listing.id, rating=5))

    assert listings.require(listing.id).rating == 5.0
    assert listings.require(listing.id).review_count == 1


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_rating_must_be_between_one_and_five(rating):
    with pytest.raises(ValidationError):
        ReviewCreate(listing_id="64b7f0c2a1b2c3d4e5f60718", rating=rating)


def test_review_for_unknown_listing(reviews, tenant, db):
    with pytest.raises(NotFoundError):
        reviews.add(tenant.id, ReviewCreate(listing_id="64b7f0c2a1b2c3d4e5f60718", rating=3))

    assert db["reviews"].count_documents({}) == 0


def test_list_by_listing_is_newest_first(reviews, listing_factory, tenant):
    listing = listing_factory()
    first = reviews.add(tenant.id, ReviewCreate(listing_id=listing.id, rating=3, comment="ok"))
    second = reviews.add(tenant.id, ReviewCreate(listing_id=listing.id, rating=5, comment="great"))

    assert [r.id for r in reviews.list_by_listing(listing.id)] == [second, first]
