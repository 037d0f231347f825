"""
Authentication: registration, login with lockout, token rotation, password
flows and the FastAPI dependencies that guard routes.
"""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import PASSWORD_RESET_TOKEN_HOURS, VERIFICATION_TOKEN_HOURS, settings
from database import as_utc, get_db, now_utc
from emails import send_password_reset_email, send_verification_email
from errors import ApiError, AuthError, ValidationError
from repositories import HIDDEN_FIELDS, TokenRepository, UserRepository
from schemas import ROLE_HIERARCHY, full_name
from security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    generate_token,
    hash_password,
    verify_password,
)
from services import LogService, NotificationService

logger = logging.getLogger(__name__)

SELF_REGISTER_ROLES = ("student", "teacher")
INACTIVE_STATUSES = ("inactive", "suspended", "deleted")


def public_user(user: dict) -> dict:
    return {key: value for key, value in user.items() if key not in HIDDEN_FIELDS["user"]}


class AuthService:

    def __init__(self, db, meta: Optional[dict] = None):
        self.users = UserRepository(db)
        self.tokens = TokenRepository(db)
        self.activity = LogService(db, meta)
        self.notifications = NotificationService(db)
        self.meta = meta or {}

    def _issue_tokens(self, user: dict) -> dict:
        refresh_token = create_refresh_token(user)
        self.tokens.create(
            {
                "token": refresh_token,
                "user": user["_id"],
                "type": "refresh",
                "expires_at": now_utc() + timedelta(days=settings.refresh_token_days),
                "metadata": {
                    "ip_address": self.meta.get("ip"),
                    "user_agent": self.meta.get("user_agent"),
                    "last_used": now_utc(),
                },
            }
        )
        return {
            "access_token": create_access_token(user),
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_in": settings.access_token_minutes * 60,
        }

    def register(self, data: dict) -> dict:
        email = data["email"].strip().lower()
        role = data.get("role") or "student"
        if role not in SELF_REGISTER_ROLES:
            raise ApiError.bad_request(f"Cannot self-register with role '{role}'", "VALIDATION_INVALID_ROLE")
        if self.users.exists({"email": email}):
            raise ApiError.conflict("User with this email already exists", "CONFLICT_EMAIL_EXISTS")

        token = generate_token()
        profile_data = {
            key: data[key]
            for key in ("first_name", "last_name", "middle_name", "contact_number", "student_details", "staff_details")
            if data.get(key) is not None
        }
        user = self.users.create_user_with_profile(
            {
                "email": email,
                "password_hash": hash_password(data["password"]),
                "role": role,
                "status": "pending",
                "department": data.get("department"),
                "verification_token": {
                    "token": token,
                    "expires_at": now_utc() + timedelta(hours=VERIFICATION_TOKEN_HOURS),
                },
            },
            profile_data,
        )
        send_verification_email(email, full_name(user["profile"]) or email, token)
        self.activity.create_log(
            user_id=user["_id"], action="register", entity="user", entity_id=user["_id"],
            description=f"Registered {email} as {role}",
        )
        logger.info("Registered %s (%s), awaiting verification", email, role)
        return user

    def verify_email(self, token: str) -> dict:
        user = self.users.find_one(
            {"verification_token.token": token}, throw_if_not_found=False, include_hidden=True
        )
        if not user:
            raise AuthError.token_invalid("Invalid verification token")
        expires_at = as_utc(user["verification_token"]["expires_at"])
        if expires_at < now_utc():
            raise AuthError.token_expired("Verification token has expired")

        updates = {"is_email_verified": True, "verification_token": None}
        if user["status"] == "pending":
            updates["status"] = "verified"
        user = self.users.update_by_id(user["_id"], updates)
        self.activity.create_log(
            user_id=user["_id"], action="verify_email", entity="user", entity_id=user["_id"],
            description=f"Verified email {user['email']}",
        )
        self.notifications.notify_admins(
            "approval_request",
            "New account awaiting approval",
            f"{user['email']} ({user['role']}) verified their email and is waiting for approval.",
            related_entity="user",
            related_entity_id=user["_id"],
        )
        return user

    def login(self, email: str, password: str) -> dict:
        user = self.users.find_by_email_with_password(email)
        if not user:
            raise AuthError.invalid_credentials()

        attempts = user.get("failed_login_attempts") or {}
        locked_until = as_utc(attempts.get("locked_until"))
        if locked_until and locked_until > now_utc():
            raise AuthError.account_locked(details={"locked_until": locked_until.isoformat()})

        if not verify_password(password, user.get("password_hash")):
            updated = self.users.record_failed_login(user["_id"])
            locked_until = as_utc(updated["failed_login_attempts"].get("locked_until"))
            if locked_until and locked_until > now_utc():
                raise AuthError.account_locked(details={"locked_until": locked_until.isoformat()})
            raise AuthError.invalid_credentials()

        status = user.get("status")
        if status == "pending":
            raise AuthError.not_verified()
        if status == "verified":
            raise AuthError.not_approved()
        if status in INACTIVE_STATUSES:
            raise AuthError(f"Account is {status}", "AUTH_ACCOUNT_INACTIVE")

        if attempts.get("count") or attempts.get("locked_until"):
            self.users.reset_failed_logins(user["_id"])
        user = self.users.update_last_login(user["_id"], self.meta.get("ip"))
        tokens = self._issue_tokens(user)
        self.activity.create_log(
            user_id=user["_id"], action="login", entity="user", entity_id=user["_id"],
            description=f"{user['email']} logged in",
        )
        return {"user": self.users.find_user_with_profile({"_id": user["_id"]}), "tokens": tokens}

    def refresh(self, refresh_token: str) -> dict:
        payload = decode_token(refresh_token, refresh=True)
        record = self.tokens.find_by_token(refresh_token, throw_if_not_found=False)
        if not record or record.get("blacklisted"):
            raise AuthError.token_invalid("Refresh token has been revoked")
        user = self.users.find_by_id(payload["sub"], throw_if_not_found=False)
        if not user or user.get("status") != "active":
            raise AuthError.token_invalid("User is no longer active")

        self.tokens.blacklist_token(refresh_token)
        return self._issue_tokens(user)

    def logout(self, refresh_token: Optional[str], user: dict):
        if refresh_token:
            self.tokens.blacklist_token(refresh_token)
        self.activity.create_log(
            user_id=user["_id"], action="logout", entity="user", entity_id=user["_id"],
            description=f"{user['email']} logged out",
        )

    def request_password_reset(self, email: str):
        user = self.users.find_user_with_profile({"email": email.strip().lower()}, throw_if_not_found=False)
        if not user:
            # Do not reveal which emails are registered
            logger.info("Password reset requested for unknown email")
            return
        token = generate_token()
        self.users.update_by_id(
            user["_id"],
            {"password_reset_token": {"token": token, "expires_at": now_utc() + timedelta(hours=PASSWORD_RESET_TOKEN_HOURS)}},
        )
        send_password_reset_email(user["email"], full_name(user.get("profile") or {}) or user["email"], token)

    def reset_password(self, token: str, new_password: str):
        user = self.users.find_one(
            {"password_reset_token.token": token}, throw_if_not_found=False, include_hidden=True
        )
        if not user:
            raise AuthError.token_invalid("Invalid password reset token")
        if as_utc(user["password_reset_token"]["expires_at"]) < now_utc():
            raise AuthError.token_expired("Password reset token has expired")

        self.users.update_by_id(
            user["_id"],
            {
                "password_hash": hash_password(new_password),
                "password_reset_token": None,
                "failed_login_attempts": {"count": 0, "last_attempt": None, "locked_until": None},
            },
        )
        self.tokens.blacklist_all_user_tokens(user["_id"])
        self.activity.create_log(
            user_id=user["_id"], action="reset_password", entity="user", entity_id=user["_id"],
            description=f"Password reset for {user['email']}",
        )

    def change_password(self, user_id, current_password: str, new_password: str):
        user = self.users.find_by_id(user_id, include_hidden=True)
        if not verify_password(current_password, user.get("password_hash")):
            raise AuthError.invalid_credentials("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError.invalid_input("New password must differ from the current password")
        self.users.update_by_id(user["_id"], {"password_hash": hash_password(new_password)})
        self.tokens.blacklist_all_user_tokens(user["_id"])
        self.activity.create_log(
            user_id=user["_id"], action="change_password", entity="user", entity_id=user["_id"],
            description=f"Password changed for {user['email']}",
        )

    def me(self, user_id) -> dict:
        return self.users.find_user_with_profile({"_id": user_id})


# -----------------------------
# Route dependencies
# -----------------------------

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db=Depends(get_db),
) -> dict:
    if credentials is None or not credentials.credentials:
        raise AuthError.token_invalid("Authentication token is missing")
    payload = decode_token(credentials.credentials)
    user = UserRepository(db).find_by_id(payload["sub"], throw_if_not_found=False)
    if not user:
        raise AuthError.token_invalid("User not found")
    if user.get("status") != "active":
        raise AuthError(f"Account is {user.get('status')}", "AUTH_ACCOUNT_INACTIVE")
    request.state.user = {"id": str(user["_id"]), "role": user.get("role"), "email": user.get("email")}
    return user


def require_roles(*roles: str):
    """Dependency factory admitting any role at or above one of `roles`."""
    allowed = {role for required in roles for role in ROLE_HIERARCHY[required]}

    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in allowed:
            raise AuthError.insufficient_permissions(
                details={"required": list(roles), "role": user.get("role")}
            )
        return user

    return dependency


def request_meta(request: Request) -> dict:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "method": request.method,
        "path": request.url.path,
    }
