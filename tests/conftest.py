# tests/conftest.py
import itertools
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from bookings import BookingRepository
from errors import AuthError
from favorites import FavoritesRepository
from identity import AuthResult, IdentityGateway, IdentityProvider
from inquiries import InquiryRepository
from listings import ListingRepository
from main import app, get_database, get_identity_provider
from reviews import ReviewRepository
from schemas import Address, BookingCreate, ListingIn
from support import SupportTicketRepository

PASSWORD = "pass12345"


class FakeIdentityProvider(IdentityProvider):
    """In-memory stand-in for Firebase Authentication."""

    def __init__(self):
        super().__init__()
        self.accounts = {}
        self.tokens = {}
        self.reset_requests = []
        self.signed_out = []
        self._seq = itertools.count(1)

    def create_account(self, email, password, display_name=None):
        if email in self.accounts:
            raise AuthError("An account with this email already exists", status_code=409)
        if len(password) < 6:
            raise AuthError("Password must be at least 6 characters long", status_code=400)
        uid = f"uid-{next(self._seq)}"
        self.accounts[email] = (uid, password)
        return uid

    def authenticate(self, email, password):
        account = self.accounts.get(email)
        if account is None or account[1] != password:
            raise AuthError("Invalid email or password")
        uid = account[0]
        token = f"token-{uid}-{next(self._seq)}"
        self.tokens[token] = uid
        self.auth_state.publish(uid)
        return AuthResult(uid=uid, id_token=token, refresh_token=f"refresh-{uid}")

    def send_password_reset(self, email):
        if email not in self.accounts:
            raise AuthError("Unknown account", status_code=400)
        self.reset_requests.append(email)

    def verify_token(self, token):
        uid = self.tokens.get(token)
        if uid is None:
            raise AuthError("Invalid token")
        return uid

    def sign_out(self, uid):
        self.tokens = {t: u for t, u in self.tokens.items() if u != uid}
        self.signed_out.append(uid)
        self.auth_state.publish(None)


@pytest.fixture
def db():
    return mongomock.MongoClient()["gharpayy_test"]


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def identity(provider, db):
    return IdentityGateway(provider, db)


@pytest.fixture
def listings(db):
    return ListingRepository(db, backoff_ms=0)


@pytest.fixture
def bookings(db, listings):
    return BookingRepository(db, listings)


@pytest.fixture
def inquiries(db, listings):
    return InquiryRepository(db, listings)


@pytest.fixture
def reviews(db, listings):
    return ReviewRepository(db, listings)


@pytest.fixture
def favorites(db, listings):
    return FavoritesRepository(db, listings)


@pytest.fixture
def tickets(db):
    return SupportTicketRepository(db)


@pytest.fixture
def user_factory(identity):
    """
    Usage:
      u = user_factory()
      owner = user_factory(role="owner", email="owner@example.com")
    """
    seq = itertools.count(1)

    def make_user(*, role="tenant", email=None, name=None, phone=None, password=PASSWORD):
        n = next(seq)
        if email is None:
            email = f"{role}{n}@example.com"
        return identity.sign_up(email, password, name or f"{role.title()} {n}", phone, role)

    return make_user


@pytest.fixture
def tenant(user_factory):
    return user_factory(role="tenant", email="tenant@example.com", name="Tara Tenant")


@pytest.fixture
def owner(user_factory):
    return user_factory(role="owner", email="owner@example.com", name="Omar Owner")


@pytest.fixture
def admin(user_factory):
    return user_factory(role="admin", email="admin@example.com", name="Ada Admin")


def listing_payload(**overrides):
    data = {
        "title": "Sunrise PG for Women",
        "description": "Clean rooms close to the metro",
        "address": Address(street="12 MG Road", city="Bengaluru", state="Karnataka", pincode="560001"),
        "rent": 9000.0,
        "security_deposit": 18000.0,
        "room_type": "shared",
        "total_rooms": 20,
        "amenities": ["wifi", "meals", "laundry"],
        "rules": ["No smoking"],
    }
    data.update(overrides)
    return ListingIn(**data)


@pytest.fixture
def listing_factory(listings, owner):
    """
    Usage:
      listing = listing_factory()
      pending = listing_factory(approved=False, rent=5000.0)
    """
    def make_listing(*, owner_id=None, approved=True, **overrides):
        listing_id = listings.create(owner_id or owner.id, listing_payload(**overrides))
        if approved:
            listings.approve(listing_id)
        return listings.require(listing_id)

    return make_listing


def booking_request(listing_id, days_from_now=7):
    check_in = datetime.now(timezone.utc) + timedelta(days=days_from_now)
    return BookingCreate(listing_id=listing_id, check_in_date=check_in)


@pytest.fixture
def api_client(db, provider):
    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[get_identity_provider] = lambda: provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(provider):
    """Sign a user in at the provider and return bearer headers for them."""
    def make_headers(user, password=PASSWORD):
        result = provider.authenticate(user.email, password)
        return {"Authorization": f"Bearer {result.id_token}"}

    return make_headers
