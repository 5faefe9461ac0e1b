"""
Account endpoints: signup/login/logout, own profile, password changes,
provider onboarding and the public provider directory.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Depends, Query, Response
from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import settings
import verification
from database import (
    as_utc,
    create_document,
    get_db,
    get_documents,
    now,
    to_public_id,
    update_document,
)
from errors import ConflictError, Forbidden, InvalidCredentials, ValidationError
from ratelimit import login_limiter, signup_limiter
from schemas import (
    ROLES,
    AvailabilityStatus,
    CamelModel,
    FixedRateProject,
    GeoPoint,
    Portfolio,
    ProviderDetails,
    ServiceArea,
    Skill,
    User,
    validate_document,
)
from security import (
    PASSWORD_POLICY,
    clear_auth_cookie,
    create_access_token,
    get_current_user,
    hash_password,
    is_account_usable,
    password_meets_policy,
    set_auth_cookie,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

LOCKED_MESSAGE = "Too many failed login attempts. Please try again later."


# ----------------------------
# Payloads
# ----------------------------

class SignupProviderDetails(CamelModel):
    # Anything else a client sends (verification fields included) is dropped.
    bio: Optional[str] = Field(None, max_length=500)
    skills: List[Skill] = Field(default_factory=list)
    hourly_rate: Optional[float] = Field(None, ge=0)
    experience_years: Optional[float] = Field(None, ge=0)


class SignupRequest(CamelModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    provider_details: Optional[SignupProviderDetails] = None


class LoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class LocationUpdate(GeoPoint):
    address: str = Field(..., min_length=1, max_length=300)


class ProfileUpdate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = Field(None, max_length=40)
    avatar: Optional[str] = Field(None, max_length=2000)
    bio: Optional[str] = None
    location: Optional[LocationUpdate] = None


class ChangePasswordRequest(CamelModel):
    old_password: Optional[str] = None
    new_password: Optional[str] = None


class OnboardingUpdate(CamelModel):
    """Every field a provider may change through onboarding; nothing else is accepted."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    headline: Optional[str] = Field(None, max_length=120)
    work_description: Optional[str] = Field(None, max_length=500)
    skills: Optional[List[Skill]] = None
    hourly_rate: Optional[float] = Field(None, ge=0)
    min_call_out_fee: Optional[float] = Field(None, ge=0)
    travel_fee_per_km: Optional[float] = Field(None, ge=0)
    travel_threshold_km: Optional[float] = Field(None, ge=0)
    fixed_rate_projects: Optional[List[FixedRateProject]] = None
    availability_status: Optional[AvailabilityStatus] = None
    portfolios: Optional[List[Portfolio]] = None
    service_areas: Optional[List[ServiceArea]] = Field(None, min_length=1)
    experience_years: Optional[float] = Field(None, ge=0)
    verification_status: Optional[str] = Field(None, pattern="^(incomplete|pending)$")


# ----------------------------
# Helpers
# ----------------------------

def normalize_email(raw: str) -> str:
    email = raw.lower().strip()
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError("Invalid email format")
    return email


def public_user(user: dict) -> dict:
    view = {
        "id": user["_id"],
        "fullName": user.get("fullName"),
        "email": user.get("email"),
        "role": user.get("role"),
        "phone": user.get("phone"),
        "avatar": user.get("avatar"),
        "bio": user.get("bio"),
        "location": user.get("location"),
        "isActive": user.get("isActive", True),
        "isEmailVerified": user.get("isEmailVerified", False),
        "createdAt": user.get("createdAt"),
    }
    if user.get("role") == "provider":
        details = ProviderDetails().model_dump(by_alias=True)
        details.update(user.get("providerDetails") or {})
        view["providerDetails"] = details
        view["ratings"] = user.get("ratings") or {"average": 0, "count": 0}
    return to_public_id(view)


def provider_card(user: dict) -> dict:
    details = user.get("providerDetails") or {}
    skills = details.get("skills") or []
    ratings = user.get("ratings") or {}
    return {
        "id": str(user["_id"]),
        "name": user.get("fullName"),
        "avatar": user.get("avatar") or "/placeholder.svg",
        "headline": details.get("headline") or "Professional service provider",
        "primarySkill": skills[0]["name"] if skills else "General Service",
        "experience": details.get("experienceYears") or 0,
        "rating": ratings.get("average", 0),
        "reviewsCount": ratings.get("count", 0),
        "bio": details.get("workDescription") or "",
    }


def _issue_session(response: Response, user: dict) -> str:
    token = create_access_token(str(user["_id"]), user["role"])
    set_auth_cookie(response, token)
    return token


def _is_locked(user: dict) -> bool:
    lock_until = as_utc(user.get("lockUntil"))
    return lock_until is not None and lock_until > now()


def _register_failed_login(db: Database, user: dict) -> None:
    attempts = user.get("loginAttempts", 0) + 1
    if attempts >= settings.MAX_LOGIN_ATTEMPTS:
        lock_until = now() + timedelta(minutes=settings.LOCK_MINUTES)
        db["user"].update_one(
            {"_id": user["_id"]}, {"$set": {"loginAttempts": 0, "lockUntil": lock_until}}
        )
        logger.warning("Locked account %s until %s", user["_id"], lock_until.isoformat())
    else:
        db["user"].update_one({"_id": user["_id"]}, {"$inc": {"loginAttempts": 1}})


# ----------------------------
# Auth endpoints
# ----------------------------

@router.post("/signup", status_code=201, dependencies=[Depends(signup_limiter)])
def signup(payload: SignupRequest, response: Response, db: Database = Depends(get_db)):
    full_name = (payload.full_name or "").strip()
    if not full_name or not payload.email or not payload.password:
        raise ValidationError("Missing required fields: fullName, email, password")
    if payload.role and payload.role not in ROLES:
        raise ValidationError("Invalid role. Use 'customer', 'provider', or 'admin'.")

    email = normalize_email(payload.email)
    if not password_meets_policy(payload.password):
        raise ValidationError(PASSWORD_POLICY)
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already in use")

    role = payload.role or "customer"
    data = {"fullName": full_name, "email": email, "role": role}
    if payload.phone and payload.phone.strip():
        data["phone"] = payload.phone.strip()
    if role == "provider" and payload.provider_details is not None:
        data["providerDetails"] = payload.provider_details.model_dump(by_alias=True, exclude_none=True)
    user = validate_document(User, data)

    doc = user.model_dump(by_alias=True, exclude_none=True)
    doc["password"] = hash_password(payload.password)
    doc["reviews"] = []
    try:
        doc["_id"] = create_document(db, "user", doc)
    except DuplicateKeyError:
        raise ConflictError("Email already in use")

    logger.info("New %s account %s", role, doc["_id"])
    token = _issue_session(response, doc)
    return {
        "success": True,
        "message": "User created successfully",
        "token": token,
        "user": public_user(doc),
    }


@router.post("/login", dependencies=[Depends(login_limiter)])
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db)):
    if not payload.email or not payload.password:
        raise ValidationError("Missing email or password")
    email = normalize_email(payload.email)

    user = db["user"].find_one({"email": email})
    if user is None or not is_account_usable(user):
        logger.info("Rejected login for unknown or inactive account")
        raise InvalidCredentials()
    if _is_locked(user):
        raise InvalidCredentials(LOCKED_MESSAGE)
    if not verify_password(payload.password, user.get("password", "")):
        _register_failed_login(db, user)
        logger.info("Wrong password for user %s", user["_id"])
        raise InvalidCredentials()

    if user.get("loginAttempts") or user.get("lockUntil"):
        db["user"].update_one(
            {"_id": user["_id"]}, {"$set": {"loginAttempts": 0}, "$unset": {"lockUntil": ""}}
        )

    token = _issue_session(response, user)
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "user": public_user(user),
    }


@router.post("/logout")
def logout(response: Response):
    clear_auth_cookie(response)
    return {"success": True, "message": "Logged out successfully"}


# ----------------------------
# Own profile
# ----------------------------

@router.get("/profile")
def get_profile(user: dict = Depends(get_current_user)):
    return {"success": True, "user": public_user(user)}


@router.patch("/profile")
def update_profile(
    payload: ProfileUpdate,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    set_fields, unset_fields = {}, []

    if "full_name" in changes:
        full_name = (changes["full_name"] or "").strip()
        if len(full_name) < 2:
            raise ValidationError("Full name must be a string with at least 2 characters.")
        set_fields["fullName"] = full_name

    if "email" in changes:
        if not changes["email"]:
            raise ValidationError("Invalid email format.")
        email = normalize_email(changes["email"])
        if db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
            raise ConflictError("Email already in use.")
        set_fields["email"] = email

    for field in ("phone", "avatar"):
        if field in changes:
            value = (changes[field] or "").strip()
            if value:
                set_fields[field] = value
            else:
                unset_fields.append(field)

    if "bio" in changes:
        bio = (changes["bio"] or "").strip()[:500]
        if bio:
            set_fields["bio"] = bio
        else:
            unset_fields.append("bio")

    if "location" in changes:
        if payload.location is None:
            unset_fields.append("location")
        else:
            set_fields["location"] = payload.location.model_dump(by_alias=True, exclude_none=True)

    try:
        updated = update_document(db, "user", user, set_fields, unset_fields)
    except DuplicateKeyError:
        raise ConflictError("Email already in use.")
    return {"success": True, "message": "Profile updated successfully", "user": public_user(updated)}


@router.patch("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    response: Response,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if not payload.old_password or not payload.new_password:
        raise ValidationError("Both old and new passwords are required.")
    if not password_meets_policy(payload.new_password):
        raise ValidationError("New " + PASSWORD_POLICY[0].lower() + PASSWORD_POLICY[1:])
    if not verify_password(payload.old_password, user.get("password", "")):
        raise InvalidCredentials("Old password is incorrect.")
    if verify_password(payload.new_password, user["password"]):
        raise ValidationError("New password must be different from the current one.")

    updated = update_document(db, "user", user, {"password": hash_password(payload.new_password)})
    logger.info("Password changed for user %s", user["_id"])
    token = _issue_session(response, updated)
    return {"success": True, "message": "Password updated successfully.", "token": token}


@router.patch("/onboarding")
def save_onboarding(
    payload: OnboardingUpdate,
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    if user.get("role") != "provider":
        raise Forbidden("Only providers can complete onboarding")

    dumped = payload.model_dump(by_alias=True, exclude_none=True)
    target = dumped.pop("verificationStatus", None)

    set_fields, unset_fields = {}, []
    merged = dict(user.get("providerDetails") or {})
    for name in payload.model_fields_set:
        alias = OnboardingUpdate.model_fields[name].alias
        if alias == "verificationStatus":
            continue
        value = dumped.get(alias)
        if isinstance(value, str):
            value = value.strip()
        path = f"providerDetails.{alias}"
        if value is None:
            unset_fields.append(path)
            merged.pop(alias, None)
        else:
            set_fields[path] = value
            merged[alias] = value

    if target:
        status_set, status_unset = verification.self_service_changes(user, target, merged, now())
        set_fields.update(status_set)
        unset_fields.extend(status_unset)
        if status_set:
            logger.info("Provider %s moved application to %s", user["_id"], target)

    updated = update_document(db, "user", user, set_fields, unset_fields)
    return {
        "success": True,
        "message": "Onboarding details updated successfully",
        "providerDetails": to_public_id(updated.get("providerDetails") or {}),
    }


# ----------------------------
# Public directory
# ----------------------------

@router.get("/providers")
def list_public_providers(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Database = Depends(get_db),
):
    docs = get_documents(
        db,
        "user",
        {
            "role": "provider",
            "providerDetails.isVerified": True,
            "isActive": True,
            "isSuspended": {"$ne": True},
            "deletedAt": {"$exists": False},
        },
        sort=[("ratings.average", -1), ("_id", -1)],
        skip=skip,
        limit=limit,
    )
    providers = [provider_card(d) for d in docs]
    return {"success": True, "count": len(providers), "providers": providers}
