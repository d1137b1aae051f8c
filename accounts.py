import datetime
import logging

import jwt

from errors import ValidationError

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)
MIN_PASSWORD_LENGTH = 3
SESSION_KEY = "auth"


class AuthContext:
    def __init__(self, user_id, username, name="", role=ROLE_USER, token=None):
        self.user_id = user_id
        self.username = username
        self.name = name or username
        self.role = role if role in ROLES else ROLE_USER
        self.token = token

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    def to_session(self):
        return {
            "user_id": self.user_id,
            "username": self.username,
            "name": self.name,
            "role": self.role,
            "token": self.token,
        }

    @classmethod
    def from_session(cls, data):
        if not data or not data.get("user_id"):
            return None
        return cls(
            data["user_id"],
            data.get("username", ""),
            name=data.get("name", ""),
            role=data.get("role", ROLE_USER),
            token=data.get("token"),
        )

    @classmethod
    def from_login_response(cls, payload):
        payload = payload or {}
        user_data = payload.get("data") or payload.get("user") or payload
        if isinstance(user_data, dict) and isinstance(user_data.get("user"), dict):
            token = user_data.get("token")
            user_data = dict(user_data["user"], token=user_data["user"].get("token") or token)
        user_id = user_data.get("_id") or user_data.get("id")
        if not user_id:
            raise ValidationError("Login response did not include a user id.")
        return cls(
            str(user_id),
            user_data.get("username", ""),
            name=user_data.get("name", ""),
            role=user_data.get("role", ROLE_USER),
            token=user_data.get("token") or payload.get("token"),
        )


def normalize_username(value):
    return (value or "").strip()


def token_expires_at(token):
    if not token:
        return None
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    return datetime.datetime.fromtimestamp(int(exp), tz=datetime.timezone.utc)


def token_expired(token, now=None):
    expires_at = token_expires_at(token)
    if expires_at is None:
        return False
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return expires_at <= now


def validate_new_password(password, confirm_password):
    if password != confirm_password:
        return "Passwords do not match"
    if len(password or "") < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    return None


def login(client, username, password):
    username = normalize_username(username)
    if not username or not password:
        raise ValidationError("Username and password are required")
    payload = client.login(username, password)
    context = AuthContext.from_login_response(payload)
    client.token = context.token
    return context


def signup(client, username, name, role, password, confirm_password):
    username = normalize_username(username)
    if not username:
        raise ValidationError("Username is required")
    if role not in ROLES:
        raise ValidationError("Role must be admin or user")
    error = validate_new_password(password, confirm_password)
    if error:
        raise ValidationError(error)
    return client.signup(username, (name or "").strip(), role, password)


def reset_password(client, username, old_password, new_password, confirm_password):
    username = normalize_username(username)
    if not username:
        raise ValidationError("Username is required")
    error = validate_new_password(new_password, confirm_password)
    if error:
        raise ValidationError(error)
    return client.reset_password(username, old_password, new_password)
