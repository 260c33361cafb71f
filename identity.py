"""
Identity gateway over Firebase Authentication.

Account creation and token verification go through the Firebase Admin SDK.
Password sign-in and password-reset mails are only exposed by the Identity
Toolkit REST API, so those two calls are made with requests.

There is no process-wide "current user": each request builds a Session from
its bearer token, and sign-in/sign-out are announced on an AuthStateChannel
for anything that wants to follow them.
"""
import json
import logging
from typing import Callable, Dict, List, Optional

import firebase_admin
import requests
from firebase_admin import auth as fb_auth, credentials
from firebase_admin import exceptions as fb_exceptions
from pydantic import BaseModel, TypeAdapter, ValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError
from requests.adapters import HTTPAdapter, Retry

from config import Settings, get_settings
from database import decode_document, encode_document
from errors import AppError, AuthError, DecodeError, NetworkError, NotFoundError
from schemas import COLLECTIONS, AdminProfile, OwnerProfile, Profile, Role, TenantProfile, User, now_utc

logger = logging.getLogger(__name__)

PROFILE_COLLECTIONS = {
    "tenant": COLLECTIONS["tenant"],
    "owner": COLLECTIONS["owner"],
}

_profile_adapter = TypeAdapter(Profile)


class AuthResult(BaseModel):
    uid: str
    id_token: str
    refresh_token: Optional[str] = None


class AuthStateChanged(BaseModel):
    uid: Optional[str] = None

    @property
    def signed_in(self) -> bool:
        return self.uid is not None


class AuthStateChannel:
    """Delivers AuthStateChanged events to subscribers in subscription order."""

    def __init__(self):
        self._listeners: List[Callable[[AuthStateChanged], None]] = []

    def subscribe(self, callback: Callable[[AuthStateChanged], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def publish(self, uid: Optional[str]) -> None:
        event = AuthStateChanged(uid=uid)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Auth state listener %r failed", callback)


class IdentityProvider:
    """Contract of the external identity service."""

    def __init__(self):
        self.auth_state = AuthStateChannel()

    def create_account(self, email: str, password: str, display_name: Optional[str] = None) -> str:
        raise NotImplementedError

    def authenticate(self, email: str, password: str) -> AuthResult:
        raise NotImplementedError

    def send_password_reset(self, email: str) -> None:
        raise NotImplementedError

    def verify_token(self, token: str) -> str:
        raise NotImplementedError

    def sign_out(self, uid: str) -> None:
        raise NotImplementedError

    def on_auth_state_changed(self, callback: Callable[[AuthStateChanged], None]) -> Callable[[], None]:
        return self.auth_state.subscribe(callback)


def init_firebase(settings: Settings):
    if firebase_admin._apps:
        return firebase_admin.get_app()
    cred_json = settings.FIREBASE_SERVICE_ACCOUNT_JSON
    if cred_json:
        cred = credentials.Certificate(json.loads(cred_json))
        return firebase_admin.initialize_app(cred)
    return firebase_admin.initialize_app()


def _http_session(settings: Settings) -> requests.Session:
    retry = Retry(
        total=settings.HTTP_MAX_RETRIES,
        backoff_factor=0.3,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=frozenset({"POST"}),
    )
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retry))
    return session


# Identity Toolkit error codes -> (message, status)
_REST_ERRORS: Dict[str, tuple] = {
    "EMAIL_NOT_FOUND": ("Invalid email or password", 401),
    "INVALID_PASSWORD": ("Invalid email or password", 401),
    "INVALID_LOGIN_CREDENTIALS": ("Invalid email or password", 401),
    "INVALID_EMAIL": ("Invalid email address", 400),
    "USER_DISABLED": ("This account has been disabled", 403),
    "TOO_MANY_ATTEMPTS_TRY_LATER": ("Too many attempts, try again later", 429),
}


class FirebaseIdentityProvider(IdentityProvider):
    IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"

    def __init__(self, settings: Optional[Settings] = None, http: Optional[requests.Session] = None):
        super().__init__()
        self.settings = settings or get_settings()
        self.app = init_firebase(self.settings)
        self.http = http or _http_session(self.settings)

    def create_account(self, email, password, display_name=None):
        try:
            record = fb_auth.create_user(email=email, password=password, display_name=display_name, app=self.app)
        except fb_auth.EmailAlreadyExistsError:
            raise AuthError("An account with this email already exists", status_code=409)
        except ValueError as e:
            # firebase_admin validates password length and email format locally
            raise AuthError(str(e), status_code=400)
        except fb_exceptions.UnavailableError as e:
            raise NetworkError(f"Identity provider unavailable: {e}")
        except fb_exceptions.FirebaseError as e:
            raise AuthError(str(e))
        return record.uid

    def authenticate(self, email, password):
        data = self._post("accounts:signInWithPassword", {
            "email": email,
            "password": password,
            "returnSecureToken": True,
        })
        result = AuthResult(uid=data["localId"], id_token=data["idToken"], refresh_token=data.get("refreshToken"))
        self.auth_state.publish(result.uid)
        return result

    def send_password_reset(self, email):
        self._post("accounts:sendOobCode", {"requestType": "PASSWORD_RESET", "email": email})

    def verify_token(self, token):
        try:
            decoded = fb_auth.verify_id_token(token, app=self.app, check_revoked=True)
        except fb_auth.CertificateFetchError as e:
            raise NetworkError(f"Could not fetch token certificates: {e}")
        except (ValueError, fb_exceptions.FirebaseError) as e:
            raise AuthError(f"Invalid token: {str(e)[:100]}")
        return decoded["uid"]

    def sign_out(self, uid):
        try:
            fb_auth.revoke_refresh_tokens(uid, app=self.app)
        except fb_auth.UserNotFoundError:
            raise AuthError("Unknown account")
        except fb_exceptions.FirebaseError as e:
            raise NetworkError(f"Identity provider unavailable: {e}")
        self.auth_state.publish(None)

    def _post(self, endpoint: str, payload: dict) -> dict:
        if not self.settings.FIREBASE_API_KEY:
            raise AppError("FIREBASE_API_KEY is not configured")
        try:
            resp = self.http.post(
                f"{self.IDENTITY_TOOLKIT_URL}/{endpoint}",
                params={"key": self.settings.FIREBASE_API_KEY},
                json=payload,
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Identity provider unavailable: {e.__class__.__name__}")

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 500:
            raise NetworkError(f"Identity provider returned HTTP {resp.status_code}")
        if not resp.ok:
            message = ((data or {}).get("error") or {}).get("message", "")
            code = message.split(":")[0].strip()
            detail, status = _REST_ERRORS.get(code, (message or "Authentication failed", 401))
            raise AuthError(detail, status_code=status)
        return data


class Session(BaseModel):
    """Per-request identity context injected into handlers."""
    user: User
    token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> Role:
        return self.user.role


def new_profile(user: User) -> Profile:
    if user.role == "tenant":
        return TenantProfile(user_id=user.id)
    if user.role == "owner":
        return OwnerProfile(user_id=user.id)
    if user.role == "admin":
        return AdminProfile(user_id=user.id)
    raise ValueError(f"Unknown role {user.role!r}")


class IdentityGateway:
    def __init__(self, provider: IdentityProvider, db: Database):
        self.provider = provider
        self.db = db
        self.users = db[COLLECTIONS["user"]]

    # ---------- Accounts ----------
    def sign_up(self, email: str, password: str, name: str, phone: Optional[str] = None, role: Role = "tenant") -> User:
        uid = self.provider.create_account(email, password, display_name=name)
        user = User(id=uid, email=email, name=name, phone=phone, role=role)
        try:
            self.users.insert_one({"_id": uid, **encode_document(user)})
        except PyMongoError:
            # The credential already exists at the provider and is not rolled back.
            logger.exception("Created credential %s but could not store its user record", uid)
            raise NetworkError("Account created but the profile could not be saved")
        self._create_role_profile(user)
        logger.info("Signed up %s as %s", uid, role)
        return user

    def sign_in(self, email: str, password: str) -> Session:
        result = self.provider.authenticate(email, password)
        user = decode_document(User, self.users.find_one({"_id": result.uid}))
        if user is None:
            raise AuthError("No profile exists for this account")
        logger.info("Signed in %s", user.id)
        return Session(user=user, token=result.id_token, refresh_token=result.refresh_token)

    def sign_out(self, session: Session) -> None:
        try:
            self.provider.sign_out(session.user_id)
        except AppError as e:
            logger.warning("Sign-out for %s did not reach the provider: %s", session.user_id, e.detail)
            return
        logger.info("Signed out %s", session.user_id)

    def reset_password(self, email: str) -> bool:
        try:
            self.provider.send_password_reset(email)
        except AppError as e:
            logger.warning("Password reset request failed: %s", e.detail)
            return False
        return True

    def session_for_token(self, token: str) -> Session:
        uid = self.provider.verify_token(token)
        user = decode_document(User, self.users.find_one({"_id": uid}))
        if user is None:
            raise AuthError("No profile exists for this account")
        return Session(user=user, token=token)

    # ---------- Users ----------
    def get_user(self, user_id: str) -> User:
        user = decode_document(User, self.users.find_one({"_id": user_id}))
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_profile(self, user_id: str, name: str, phone: Optional[str]) -> User:
        res = self.users.update_one(
            {"_id": user_id},
            {"$set": {"name": name, "phone": phone, "updated_at": now_utc()}},
        )
        if res.matched_count == 0:
            raise NotFoundError("User not found")
        return self.get_user(user_id)

    def list_users(self, role: Optional[Role] = None) -> List[User]:
        filt = {"role": role} if role else {}
        return [decode_document(User, d) for d in self.users.find(filt).sort("created_at", -1)]

    # ---------- Role profiles ----------
    def load_profile(self, user: User) -> Profile:
        if user.role == "admin":
            return AdminProfile(user_id=user.id)
        doc = self.db[PROFILE_COLLECTIONS[user.role]].find_one({"_id": user.id})
        if doc is None:
            raise NotFoundError(f"No {user.role} profile for this user")
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["role"] = user.role
        try:
            return _profile_adapter.validate_python(data)
        except ValidationError as e:
            raise DecodeError(f"{user.role} profile {user.id} does not match the expected shape ({e.error_count()} field errors)")

    def verify_owner_license(self, owner_id: str) -> None:
        res = self.db[COLLECTIONS["owner"]].update_one({"_id": owner_id}, {"$set": {"is_license_verified": True}})
        if res.matched_count == 0:
            raise NotFoundError("Owner not found")
        self.users.update_one({"_id": owner_id}, {"$set": {"is_verified": True, "updated_at": now_utc()}})
        logger.info("Verified owner license for %s", owner_id)

    def _create_role_profile(self, user: User) -> None:
        profile = new_profile(user)
        if isinstance(profile, AdminProfile):
            return
        try:
            self.db[PROFILE_COLLECTIONS[user.role]].replace_one(
                {"_id": user.id}, profile.model_dump(), upsert=True,
            )
        except PyMongoError:
            logger.exception("Could not create %s profile for %s", user.role, user.id)
