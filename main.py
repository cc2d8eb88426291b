import hmac
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
import notifications
import voting
from database import DatabaseUnavailable, create_document, read_blob, write_blob
from schemas import (
    AppMeta,
    Category,
    Listing,
    MiscSettings,
    Moderator,
    Report,
    Suggestion,
    Tier,
    User as UserSchema,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
logger = logging.getLogger(__name__)

APP_NAME = "Tier List API"
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change")
JWT_ALG = "HS256"
JWT_EXPIRE_MINUTES = 60 * 24 * 14  # 14 days
SUPER_ADMIN_USERNAME = os.getenv("SUPER_ADMIN_USERNAME", "")
SCHEDULER_TOKEN = os.getenv("SCHEDULER_TOKEN", "")
DEFAULT_AVATAR = os.getenv(
    "DEFAULT_AVATAR_URL",
    "https://www.redditstatic.com/avatars/defaults/v2/avatar_default_1.png",
)

OTHERS = voting.OTHERS_CATEGORY_ID
OTHERS_PREFIX = "Others - "

DEFAULT_TIERS = [
    {"id": "S", "name": "S", "colour": "#FF7F7F", "order": 0},
    {"id": "A", "name": "A", "colour": "#FFBf7F", "order": 1},
    {"id": "B", "name": "B", "colour": "#FFFF7F", "order": 2},
    {"id": "C", "name": "C", "colour": "#7FFF7F", "order": 3},
    {"id": "D", "name": "D", "colour": "#7FFFFF", "order": 4},
]

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI(title=APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error envelopes ----------

def error_response(status_code: int, message: str):
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


@app.exception_handler(StarletteHTTPException)
async def http_error(_request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        return error_response(404, "Route not found")
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error(_request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request body"
    return error_response(400, message)


@app.exception_handler(DatabaseUnavailable)
async def database_error(_request: Request, _exc: DatabaseUnavailable):
    return error_response(500, "Database not configured")


def handle_errors(message: str):
    """Log unexpected failures and answer with a 500 envelope carrying message."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except (HTTPException, DatabaseUnavailable):
                raise
            except Exception:
                logger.exception(message)
                raise HTTPException(status_code=500, detail=message)
        return wrapper
    return decorator


# ---------- Auth Helpers ----------

def create_token(username: str, user_id: str):
    payload = {
        "sub": username,
        "uid": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def _decode_authorization(authorization: str):
    try:
        scheme, token = authorization.split(" ", 1)
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
        data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    username = data.get("sub")
    if not username:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"username": username, "id": data.get("uid") or username}


def verify_token(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication required")
    return _decode_authorization(authorization)


def optional_user(authorization: Optional[str] = Header(None)):
    if not authorization:
        return None
    return _decode_authorization(authorization)


def _users():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db["user"]


def resolve_avatar(username: str) -> str:
    user = _users().find_one({"username_lower": username.lower()})
    return (user or {}).get("avatarUrl") or DEFAULT_AVATAR


def is_moderator(app_id: str, username: Optional[str]) -> bool:
    if not username:
        return False
    if SUPER_ADMIN_USERNAME and username.lower() == SUPER_ADMIN_USERNAME.lower():
        return True
    return any(m["username"].lower() == username.lower() for m in read_moderators(app_id))


def require_moderator(app_id: str, user=Depends(verify_token)):
    if not is_moderator(app_id, user["username"]):
        raise HTTPException(status_code=403, detail="Moderator access required")
    return user


def verify_scheduler(x_scheduler_token: Optional[str] = Header(None)):
    """Scheduler callbacks carry the shared SCHEDULER_TOKEN; unset means closed."""
    if not SCHEDULER_TOKEN or not x_scheduler_token:
        raise HTTPException(status_code=401, detail="Scheduler token required")
    if not hmac.compare_digest(x_scheduler_token, SCHEDULER_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid scheduler token")


# ---------- Storage helpers ----------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def blob_key(resource: str, app_id: str) -> str:
    return f"{resource}:{app_id}"


def read_collection(resource: str, app_id: str, default: Optional[list] = None) -> list:
    """Read a per-instance collection, storing `default` when it does not exist yet."""
    key = blob_key(resource, app_id)
    items = read_blob(key)
    if items is None:
        items = [dict(item) for item in (default or [])]
        write_blob(key, items)
    return items


def write_collection(resource: str, app_id: str, items: list):
    write_blob(blob_key(resource, app_id), items)


def ensure_votes(listing: dict) -> dict:
    listing["votes"] = listing.get("votes") or {}
    listing["userVotes"] = listing.get("userVotes") or {}
    if listing.get("totalVotes") is None:
        listing["totalVotes"] = sum(listing["votes"].values())
    return listing


def read_listings(app_id: str) -> List[dict]:
    return [ensure_votes(dict(l)) for l in read_collection("listings", app_id)]


def read_tiers(app_id: str) -> List[dict]:
    return voting.sort_tiers(read_collection("tiers", app_id, DEFAULT_TIERS))


def read_misc(app_id: str) -> dict:
    stored = read_blob(blob_key("misc", app_id))
    if stored is None:
        return MiscSettings(
            callToAction="Vote for your favorite movies of 2025",
            shortDescription="Top Movies 2025",
        ).model_dump()
    return stored


def save_misc_settings(app_id: str, settings: dict) -> dict:
    existing = read_blob(blob_key("misc", app_id))
    if existing is None:
        existing = MiscSettings(autoApproveSuggestions=True).model_dump()
    updated = {**existing, **settings}
    write_blob(blob_key("misc", app_id), updated)
    return updated


def read_app_meta(app_id: str) -> Optional[dict]:
    return read_blob(f"app:meta:{app_id}")


def read_moderators(app_id: str) -> List[dict]:
    """Stored moderators, with the tier list's installer always present."""
    moderators = read_collection("moderators", app_id)
    meta = read_app_meta(app_id)
    if meta:
        has_installer = any(
            m["id"] == meta["installerId"]
            or m["username"].lower() == meta["installerUsername"].lower()
            for m in moderators
        )
        if not has_installer:
            moderators.append(Moderator(
                id=meta["installerId"],
                username=meta["installerUsername"],
                avatarUrl=resolve_avatar(meta["installerUsername"]),
                modSince=meta["createdAt"],
                source="installer",
            ).dump())
            write_collection("moderators", app_id, moderators)
    return moderators


def _same_item(a: dict, b: dict) -> bool:
    """Same trimmed, case-folded name and same image."""
    return (
        (a.get("name") or "").strip().lower() == (b.get("name") or "").strip().lower()
        and a.get("imageUrl") == b.get("imageUrl")
    )


def listing_from_suggestion(suggestion: dict, app_id: str) -> dict:
    category_id = suggestion.get("categoryId") or OTHERS
    category = None
    if suggestion.get("customCategory"):
        category_id = OTHERS
        category = f"{OTHERS_PREFIX}{suggestion['customCategory']}"
    elif category_id == OTHERS:
        category = "Others"
    now = now_iso()
    return Listing(
        id=new_id("listing"),
        appId=app_id,
        name=(suggestion.get("name") or "").strip(),
        imageUrl=suggestion["imageUrl"],
        categoryId=category_id,
        category=category,
        url=suggestion.get("url"),
        createdAt=now,
        updatedAt=now,
    ).dump()


def _trimmed(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


def _find_index(items: List[dict], item_id: str) -> int:
    return next((i for i, item in enumerate(items) if item.get("id") == item_id), -1)


# ---------- Models for requests ----------

class RegisterRequest(BaseModel):
    username: str
    password: str
    email: Optional[EmailStr] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class CreateAppRequest(BaseModel):
    title: Optional[str] = None
    shortDescription: Optional[str] = None
    callToAction: Optional[str] = None
    votingExpiry: Optional[Union[str, List[str]]] = "never"


class TierBody(BaseModel):
    name: Optional[str] = None
    colour: Optional[str] = None
    order: Optional[int] = None


class CategoryBody(BaseModel):
    name: Optional[str] = None


class MergeRequest(BaseModel):
    fromCategoryId: Optional[str] = None
    toCategoryId: Optional[str] = None


class ListingBody(BaseModel):
    name: Optional[str] = None
    imageUrl: Optional[str] = None
    categoryId: Optional[str] = None
    category: Optional[str] = None
    url: Optional[str] = None


class VoteRequest(BaseModel):
    appId: Optional[str] = None
    listingId: Optional[str] = None
    tier: Optional[str] = None


class SuggestionBody(BaseModel):
    name: Optional[str] = None
    imageUrl: Optional[str] = None
    url: Optional[str] = None
    notes: Optional[str] = None
    customCategory: Optional[str] = None
    categoryId: Optional[str] = None
    status: Optional[str] = None


class ReportCreate(BaseModel):
    listingId: Optional[str] = None
    listingName: Optional[str] = None
    listingImageUrl: Optional[str] = None
    category: Optional[str] = None
    issue: Optional[str] = None
    comment: Optional[str] = None


class ReportUpdate(BaseModel):
    action: Optional[str] = None
    issue: Optional[str] = None
    comment: Optional[str] = None


class ModeratorAdd(BaseModel):
    username: Optional[str] = None


class MiscUpdate(BaseModel):
    title: Optional[str] = None
    callToAction: Optional[str] = None
    shortDescription: Optional[str] = None
    expiryDate: Optional[str] = None
    autoApproveSuggestions: Optional[bool] = None
    featuredItemId: Optional[str] = None
    featuredItem: Optional[Dict[str, Any]] = None
    backgroundColor: Optional[str] = None
    appIconUri: Optional[str] = None


class JobRequest(BaseModel):
    data: Optional[Dict[str, Any]] = None
    postId: Optional[str] = None
    authorName: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return self.data or {"postId": self.postId, "authorName": self.authorName}


# ---------- Basic routes ----------

@app.get("/")
def root():
    return {"message": f"{APP_NAME} running"}


@app.get("/test")
def test_database():
    info = {
        "backend": "running",
        "database": "disconnected",
        "collections": [],
    }
    try:
        if database.db is not None:
            info["database"] = "connected"
            info["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


# ---------- Auth endpoints ----------

@app.post("/auth/register")
def register(req: RegisterRequest):
    username = req.username.strip()
    if not username or not req.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    users = _users()
    if users.find_one({"username_lower": username.lower()}):
        raise HTTPException(status_code=400, detail="Username already registered")

    user_doc = UserSchema(
        username=username,
        email=req.email,
        password_hash=pwd_context.hash(req.password),
    ).model_dump()
    user_doc["username_lower"] = username.lower()
    user_id = create_document("user", user_doc)

    token = create_token(username, user_id)
    return {"status": "success", "token": token, "user": {"id": user_id, "username": username}}


@app.post("/auth/login")
def login(req: LoginRequest):
    user = _users().find_one({"username_lower": req.username.strip().lower()})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not pwd_context.verify(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    user_id = str(user["_id"])
    token = create_token(user["username"], user_id)
    return {"status": "success", "token": token, "user": {"id": user_id, "username": user["username"]}}


@app.get("/api/auth")
@handle_errors("Authentication failed")
def auth_status(user=Depends(optional_user)):
    if not user:
        return {"type": "auth", "authenticated": False}

    profile = _users().find_one({"username_lower": user["username"].lower()}) or {}
    karma = profile.get("karma") or {}
    post_karma = karma.get("post", 0)
    comment_karma = karma.get("comment", 0)
    return {
        "type": "auth",
        "authenticated": True,
        "username": user["username"],
        "userId": user["id"],
        "displayName": profile.get("username") or user["username"],
        "avatarUrl": profile.get("avatarUrl") or DEFAULT_AVATAR,
        "karma": {"total": post_karma + comment_karma, "post": post_karma, "comment": comment_karma},
    }


# ---------- App instances ----------

@app.post("/api/app", status_code=201)
@handle_errors("Failed to create tier list")
def create_app(body: CreateAppRequest, user=Depends(verify_token)):
    title = (body.title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    if len(title) > 300:
        raise HTTPException(status_code=400, detail="Title must be 300 characters or less")

    preset = body.votingExpiry
    if isinstance(preset, list):
        preset = preset[0] if preset else None
    expiry = voting.expiry_from_preset(preset)

    app_id = uuid4().hex[:10]
    created = now_iso()
    save_misc_settings(app_id, {
        "title": title,
        "shortDescription": (body.shortDescription or "")[:120],
        "callToAction": (body.callToAction or "")[:120],
        "expiryDate": expiry.isoformat().replace("+00:00", "Z") if expiry else None,
        "createdAt": int(datetime.now(timezone.utc).timestamp() * 1000),
        "backgroundColor": "#0E1113",
    })

    meta = AppMeta(
        appId=app_id,
        installerId=user["id"],
        installerUsername=user["username"],
        createdAt=created,
    ).dump()
    write_blob(f"app:meta:{app_id}", meta)
    logger.info("Created tier list %s for %s", app_id, user["username"])
    return {"status": "success", **meta}


@app.get("/api/app")
@handle_errors("Failed to resolve app metadata")
def get_app(postId: Optional[str] = None, user=Depends(optional_user)):
    if not postId:
        logger.warning("GET /api/app - Missing postId query param")
        raise HTTPException(status_code=400, detail="Missing postId query parameter")

    meta = read_app_meta(postId)
    if not meta:
        # Synthesised only; never stored.
        installer = user or {"id": "unknown", "username": "unknown"}
        meta = AppMeta(
            appId=postId,
            installerId=installer["id"],
            installerUsername=installer["username"],
            createdAt=now_iso(),
        ).dump()
    return {"status": "success", **meta}


# ---------- Tiers ----------

@app.get("/api/tiers/{app_id}")
@handle_errors("Failed to fetch tiers")
def list_tiers(app_id: str):
    return {"status": "success", "data": read_tiers(app_id)}


@app.post("/api/tiers/{app_id}", status_code=201)
@handle_errors("Failed to create tier")
def create_tier(app_id: str, body: TierBody, user=Depends(require_moderator)):
    name = (body.name or "").strip()
    colour = (body.colour or "").strip()
    if not name or not colour:
        raise HTTPException(status_code=400, detail="Name and colour are required")

    tiers = read_tiers(app_id)
    if any(t["name"] == name for t in tiers):
        raise HTTPException(status_code=400, detail="A tier with this name already exists")

    tier = Tier(id=new_id("tier"), name=name, colour=colour, order=len(tiers)).dump()
    tiers.append(tier)
    write_collection("tiers", app_id, tiers)
    return {"status": "success", "tier": tier}


def rename_tier_votes(listings: List[dict], old_name: str, new_name: str) -> bool:
    changed = False
    for listing in listings:
        votes = listing.get("votes") or {}
        if old_name in votes:
            votes[new_name] = votes.get(new_name, 0) + votes.pop(old_name)
            listing["votes"] = votes
            changed = True
        user_votes = listing.get("userVotes") or {}
        for user_id, tier_name in user_votes.items():
            if tier_name == old_name:
                user_votes[user_id] = new_name
                changed = True
    return changed


def drop_tier_votes(listings: List[dict], name: str) -> bool:
    changed = False
    for listing in listings:
        votes = listing.get("votes") or {}
        if name in votes:
            del votes[name]
            listing["totalVotes"] = sum(votes.values())
            changed = True
        user_votes = listing.get("userVotes") or {}
        for user_id in [u for u, t in user_votes.items() if t == name]:
            del user_votes[user_id]
            changed = True
    return changed


@app.put("/api/tiers/{app_id}/{tier_id}")
@handle_errors("Failed to update tier")
def update_tier(app_id: str, tier_id: str, body: TierBody, user=Depends(require_moderator)):
    tiers = read_blob(blob_key("tiers", app_id))
    if tiers is None:
        raise HTTPException(status_code=404, detail="App not found")
    tiers = voting.sort_tiers(tiers)

    index = _find_index(tiers, tier_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Tier not found")

    tier = tiers[index]
    old_name = tier["name"]
    new_name = body.name.strip() if body.name is not None else old_name
    if not new_name:
        raise HTTPException(status_code=400, detail="Tier name cannot be empty")
    if new_name != old_name and any(t["name"] == new_name for t in tiers):
        raise HTTPException(status_code=400, detail="A tier with this name already exists")

    tier["name"] = new_name
    if body.colour is not None:
        tier["colour"] = body.colour
    if body.order is not None:
        tiers.pop(index)
        tiers.insert(max(body.order, 0), tier)
        for position, t in enumerate(tiers):
            t["order"] = position

    if new_name != old_name:
        listings = read_blob(blob_key("listings", app_id))
        if listings and rename_tier_votes(listings, old_name, new_name):
            write_collection("listings", app_id, listings)

    write_collection("tiers", app_id, tiers)
    return {"status": "success", "tier": tier}


@app.delete("/api/tiers/{app_id}/{tier_id}")
@handle_errors("Failed to delete tier")
def delete_tier(app_id: str, tier_id: str, user=Depends(require_moderator)):
    tiers = read_blob(blob_key("tiers", app_id))
    if tiers is None:
        raise HTTPException(status_code=404, detail="App not found")
    tiers = voting.sort_tiers(tiers)

    index = _find_index(tiers, tier_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Tier not found")

    deleted = tiers.pop(index)
    for position, t in enumerate(tiers):
        t["order"] = position

    listings = read_blob(blob_key("listings", app_id))
    if listings and drop_tier_votes(listings, deleted["name"]):
        write_collection("listings", app_id, listings)

    write_collection("tiers", app_id, tiers)
    return {"status": "success", "message": "Tier deleted successfully"}


# ---------- Categories ----------

def _name_taken(categories: List[dict], name: str, skip_index: int = -1) -> bool:
    return any(
        i != skip_index and c["name"].lower() == name.lower()
        for i, c in enumerate(categories)
    )


def _reassign_category(app_id: str, from_id: str, to_id: str, clear_display: bool = False):
    for resource in ("listings", "suggestions"):
        items = read_blob(blob_key(resource, app_id)) or []
        for item in items:
            if item.get("categoryId") == from_id:
                item["categoryId"] = to_id
                if clear_display:
                    item.pop("category", None)
        write_collection(resource, app_id, items)


@app.get("/api/categories/{app_id}")
@handle_errors("Failed to fetch categories")
def list_categories(app_id: str):
    return {"status": "success", "data": read_collection("categories", app_id)}


@app.post("/api/categories/{app_id}/merge")
@handle_errors("Failed to merge categories")
def merge_categories(app_id: str, body: MergeRequest, user=Depends(require_moderator)):
    if not body.fromCategoryId or not body.toCategoryId:
        raise HTTPException(status_code=400, detail="fromCategoryId and toCategoryId are required")
    if body.fromCategoryId == body.toCategoryId:
        raise HTTPException(status_code=400, detail="Cannot merge a category into itself")

    categories = read_blob(blob_key("categories", app_id))
    if categories is None:
        raise HTTPException(status_code=404, detail="App not found")

    from_index = _find_index(categories, body.fromCategoryId)
    if from_index == -1 or _find_index(categories, body.toCategoryId) == -1:
        raise HTTPException(status_code=404, detail="Category not found")

    categories.pop(from_index)
    _reassign_category(app_id, body.fromCategoryId, body.toCategoryId)
    write_collection("categories", app_id, categories)
    return {"status": "success", "data": categories, "message": "Category merged successfully"}


@app.post("/api/categories/{app_id}", status_code=201)
@handle_errors("Failed to create category")
def create_category(app_id: str, body: CategoryBody, user=Depends(require_moderator)):
    name = (body.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")

    categories = read_collection("categories", app_id)
    if _name_taken(categories, name):
        raise HTTPException(status_code=400, detail="A category with this name already exists")

    category = Category(id=new_id("cat"), name=name, createdAt=now_iso()).dump()
    categories.append(category)
    write_collection("categories", app_id, categories)
    return {"status": "success", "category": category}


@app.put("/api/categories/{app_id}/{category_id}")
@handle_errors("Failed to update category")
def update_category(app_id: str, category_id: str, body: CategoryBody, user=Depends(require_moderator)):
    name = (body.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")

    categories = read_blob(blob_key("categories", app_id))
    if categories is None:
        raise HTTPException(status_code=404, detail="App not found")

    index = _find_index(categories, category_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Category not found")
    if _name_taken(categories, name, skip_index=index):
        raise HTTPException(status_code=400, detail="A category with this name already exists")

    categories[index]["name"] = name
    write_collection("categories", app_id, categories)
    return {"status": "success", "category": categories[index]}


@app.delete("/api/categories/{app_id}/{category_id}")
@handle_errors("Failed to delete category")
def delete_category(app_id: str, category_id: str, user=Depends(require_moderator)):
    categories = read_blob(blob_key("categories", app_id))
    if categories is None:
        raise HTTPException(status_code=404, detail="App not found")

    index = _find_index(categories, category_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Category not found")

    categories.pop(index)
    _reassign_category(app_id, category_id, OTHERS, clear_display=True)
    write_collection("categories", app_id, categories)
    return {"status": "success", "message": "Category deleted successfully"}


# ---------- Listings ----------

@app.get("/api/listings/{app_id}")
@handle_errors("Failed to fetch listings")
def list_listings(app_id: str):
    return {"status": "success", "data": read_listings(app_id)}


@app.post("/api/listings/{app_id}", status_code=201)
@handle_errors("Failed to create listing")
def create_listing(app_id: str, body: ListingBody, user=Depends(require_moderator)):
    image_url = _trimmed(body.imageUrl)
    if not image_url:
        raise HTTPException(status_code=400, detail="Image URL is required")

    listings = read_listings(app_id)
    now = now_iso()
    listing = Listing(
        id=new_id("listing"),
        appId=app_id,
        name=_trimmed(body.name) or "",
        imageUrl=image_url,
        categoryId=_trimmed(body.categoryId) or OTHERS,
        category=_trimmed(body.category),
        url=_trimmed(body.url),
        createdAt=now,
        updatedAt=now,
    ).dump()
    listings.append(listing)
    write_collection("listings", app_id, listings)
    return {"status": "success", "listing": listing}


@app.get("/api/listings/{app_id}/{listing_id}")
@handle_errors("Failed to fetch listing")
def get_listing(app_id: str, listing_id: str):
    listings = read_listings(app_id)
    index = _find_index(listings, listing_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Listing not found")
    return {"status": "success", "listing": listings[index]}


@app.put("/api/listings/{app_id}/{listing_id}")
@handle_errors("Failed to update listing")
def update_listing(app_id: str, listing_id: str, body: ListingBody, user=Depends(require_moderator)):
    listings = read_listings(app_id)
    index = _find_index(listings, listing_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Listing not found")

    listing = listings[index]
    changes = body.model_dump(exclude_unset=True)

    if "name" in changes:
        listing["name"] = _trimmed(changes["name"]) or ""
    if "imageUrl" in changes:
        image_url = _trimmed(changes["imageUrl"])
        if not image_url:
            raise HTTPException(status_code=400, detail="Image URL cannot be empty")
        listing["imageUrl"] = image_url
    if "categoryId" in changes:
        category_id = _trimmed(changes["categoryId"])
        if not category_id:
            raise HTTPException(status_code=400, detail="Category cannot be empty")
        listing["categoryId"] = category_id
        if "category" not in changes:
            listing.pop("category", None)
    if "category" in changes:
        category = _trimmed(changes["category"])
        if category:
            listing["category"] = category
        else:
            listing.pop("category", None)
    if "url" in changes:
        url = _trimmed(changes["url"])
        if url:
            listing["url"] = url
        else:
            listing.pop("url", None)

    listing["updatedAt"] = now_iso()
    write_collection("listings", app_id, listings)
    return {"status": "success", "listing": listing}


def _cleanup_after_listing_delete(app_id: str, deleted: dict, remaining: List[dict]):
    """Drop suggestions that produced the listing and any 'Others - X' category left empty."""
    try:
        suggestions = read_blob(blob_key("suggestions", app_id))
        if suggestions:
            kept = [s for s in suggestions if not _same_item(s, deleted)]
            if len(kept) != len(suggestions):
                write_collection("suggestions", app_id, kept)
    except Exception:
        logger.exception("Error cleaning up matching suggestions")

    display = deleted.get("category") or ""
    if deleted.get("categoryId") != OTHERS or not display.startswith(OTHERS_PREFIX):
        return
    category_name = display[len(OTHERS_PREFIX):].strip()
    still_used = any(l.get("categoryId") == OTHERS and l.get("category") == display for l in remaining)
    if still_used or not category_name:
        return
    try:
        categories = read_blob(blob_key("categories", app_id))
        if categories:
            kept = [c for c in categories if c["name"].lower() != category_name.lower()]
            if len(kept) != len(categories):
                write_collection("categories", app_id, kept)
    except Exception:
        logger.exception("Error cleaning up unused category")


@app.delete("/api/listings/{app_id}/{listing_id}")
@handle_errors("Failed to delete listing")
def delete_listing(app_id: str, listing_id: str, user=Depends(require_moderator)):
    listings = read_listings(app_id)
    index = _find_index(listings, listing_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Listing not found")

    deleted = listings.pop(index)
    write_collection("listings", app_id, listings)
    _cleanup_after_listing_delete(app_id, deleted, listings)
    return {"status": "success", "message": "Listing deleted"}


@app.post("/api/vote")
@handle_errors("Failed to submit vote")
def vote(body: VoteRequest, user=Depends(verify_token)):
    if not body.listingId or not body.tier:
        raise HTTPException(status_code=400, detail="listingId and tier are required")
    if not body.appId:
        raise HTTPException(status_code=400, detail="appId is required")
    app_id = body.appId

    misc = read_blob(blob_key("misc", app_id)) or {}
    if voting.is_expired(misc.get("expiryDate")):
        raise HTTPException(status_code=403, detail="Voting has expired")

    if body.tier not in {t["name"] for t in read_tiers(app_id)}:
        raise HTTPException(status_code=400, detail="Unknown tier")

    listings = read_listings(app_id)
    index = _find_index(listings, body.listingId)
    if index == -1:
        raise HTTPException(status_code=404, detail="Listing not found")

    listing = listings[index]
    if listing["userVotes"].get(user["id"]):
        raise HTTPException(status_code=409, detail="You have already voted on this listing")

    # Read-modify-write of the whole blob; concurrent voters can clobber each other.
    listing["votes"][body.tier] = listing["votes"].get(body.tier, 0) + 1
    listing["userVotes"][user["id"]] = body.tier
    listing["totalVotes"] = sum(listing["votes"].values())
    listing["updatedAt"] = now_iso()

    write_collection("listings", app_id, listings)
    return {"status": "success", "listing": listing}


@app.get("/api/tierlist/{app_id}")
@handle_errors("Failed to build tier list")
def tier_list(app_id: str, categoryId: Optional[str] = None, view: str = "community", user=Depends(optional_user)):
    if view not in ("community", "mine"):
        raise HTTPException(status_code=400, detail="view must be 'community' or 'mine'")

    tiers = read_tiers(app_id)
    listings = voting.filter_by_category(read_listings(app_id), categoryId)
    if view == "mine":
        buckets = voting.listings_by_user_tier(listings, tiers, user["id"] if user else None)
    else:
        buckets = voting.listings_by_dominant_tier(listings, tiers)

    for entries in buckets.values():
        entries.sort(key=lambda e: e["percent"], reverse=True)

    misc = read_blob(blob_key("misc", app_id)) or {}
    return {
        "status": "success",
        "tiers": tiers,
        "data": buckets,
        "contributors": voting.count_contributors(listings, tiers),
        "expired": voting.is_expired(misc.get("expiryDate")),
    }


# ---------- Suggestions ----------

def _valid_status(status: str) -> bool:
    return status in ("pending", "approved", "rejected")


def _set_optional(item: dict, field: str, value: str):
    value = value.strip()
    if value:
        item[field] = value
    else:
        item.pop(field, None)


@app.get("/api/suggestions/{app_id}")
@handle_errors("Failed to fetch suggestions")
def list_suggestions(app_id: str, user=Depends(require_moderator)):
    return {"status": "success", "data": read_collection("suggestions", app_id)}


@app.post("/api/suggestions/{app_id}", status_code=201)
@handle_errors("Failed to create suggestion")
def create_suggestion(app_id: str, body: SuggestionBody, user=Depends(verify_token)):
    image_url = _trimmed(body.imageUrl)
    if not image_url:
        raise HTTPException(status_code=400, detail="Image URL is required")

    suggestions = read_collection("suggestions", app_id)
    misc = read_blob(blob_key("misc", app_id)) or {}
    auto_approve = bool(misc.get("autoApproveSuggestions"))

    now = now_iso()
    suggestion = Suggestion(
        id=new_id("suggestion"),
        appId=app_id,
        name=_trimmed(body.name) or "",
        imageUrl=image_url,
        url=_trimmed(body.url),
        notes=_trimmed(body.notes),
        customCategory=_trimmed(body.customCategory),
        categoryId=_trimmed(body.categoryId) or OTHERS,
        status="approved" if auto_approve else "pending",
        autoApproved=auto_approve,
        createdAt=now,
        updatedAt=now,
    ).dump()
    suggestions.append(suggestion)
    write_collection("suggestions", app_id, suggestions)

    notifications.schedule_buffered_notification(app_id)

    if auto_approve:
        listings = read_listings(app_id)
        listings.append(listing_from_suggestion(suggestion, app_id))
        write_collection("listings", app_id, listings)

    return {"status": "success", "suggestion": suggestion}


@app.put("/api/suggestions/{app_id}/{suggestion_id}")
@handle_errors("Failed to update suggestion")
def update_suggestion(app_id: str, suggestion_id: str, body: SuggestionBody, user=Depends(require_moderator)):
    suggestions = read_collection("suggestions", app_id)
    index = _find_index(suggestions, suggestion_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Suggestion not found")

    suggestion = suggestions[index]
    previous_status = suggestion.get("status")

    if body.name is not None:
        suggestion["name"] = body.name.strip()
    if body.imageUrl is not None:
        if not body.imageUrl.strip():
            raise HTTPException(status_code=400, detail="Image URL cannot be empty")
        suggestion["imageUrl"] = body.imageUrl.strip()
    if body.url is not None:
        _set_optional(suggestion, "url", body.url)
    if body.notes is not None:
        _set_optional(suggestion, "notes", body.notes)
    if body.customCategory is not None:
        _set_optional(suggestion, "customCategory", body.customCategory)
    if body.categoryId is not None:
        if not body.categoryId.strip():
            raise HTTPException(status_code=400, detail="Category cannot be empty")
        suggestion["categoryId"] = body.categoryId.strip()
    if body.status is not None:
        if not _valid_status(body.status):
            raise HTTPException(status_code=400, detail="Invalid status value")
        suggestion["status"] = body.status
        if body.status == "approved" and suggestion.get("autoApproved") is not True:
            suggestion["autoApproved"] = False

    suggestion["updatedAt"] = now_iso()
    write_collection("suggestions", app_id, suggestions)

    if suggestion["status"] == "approved" and previous_status != "approved":
        listings = read_listings(app_id)
        if not any(_same_item(l, suggestion) for l in listings):
            listings.append(listing_from_suggestion(suggestion, app_id))
            write_collection("listings", app_id, listings)

    return {"status": "success", "suggestion": suggestion}


@app.delete("/api/suggestions/{app_id}/{suggestion_id}")
@handle_errors("Failed to delete suggestion")
def delete_suggestion(app_id: str, suggestion_id: str, user=Depends(require_moderator)):
    suggestions = read_collection("suggestions", app_id)
    index = _find_index(suggestions, suggestion_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Suggestion not found")

    suggestions.pop(index)
    write_collection("suggestions", app_id, suggestions)
    return {"status": "success", "message": "Suggestion deleted"}


# ---------- Reports ----------

def _refresh_listing_fields(report: dict, listing: dict, keep_existing: bool = False):
    for report_field, listing_field in (
        ("listingName", "name"),
        ("listingImageUrl", "imageUrl"),
        ("category", "category"),
        ("listingUrl", "url"),
    ):
        value = listing.get(listing_field)
        if value:
            report[report_field] = value
        elif not keep_existing:
            report.pop(report_field, None)


@app.get("/api/reports/{app_id}")
@handle_errors("Failed to fetch reports")
def list_reports(app_id: str, user=Depends(require_moderator)):
    reports = read_collection("reports", app_id)
    pending = [r for r in reports if not r.get("status") or r.get("status") == "action-needed"]
    if len(pending) != len(reports):
        write_collection("reports", app_id, pending)

    listings_by_id = {l["id"]: l for l in read_listings(app_id)}
    fresh = []
    for report in pending:
        report = dict(report)
        listing = listings_by_id.get(report.get("listingId"))
        if listing:
            listing_url = report.get("listingUrl")
            _refresh_listing_fields(report, listing)
            if not listing.get("url") and listing_url:
                report["listingUrl"] = listing_url
        fresh.append(report)
    return {"status": "success", "data": fresh}


@app.post("/api/reports/{app_id}", status_code=201)
@handle_errors("Failed to create report")
def create_report(app_id: str, body: ReportCreate, user=Depends(verify_token)):
    listing_id = _trimmed(body.listingId)
    issue = _trimmed(body.issue)
    if not listing_id:
        raise HTTPException(status_code=400, detail="listingId is required")
    if not issue:
        raise HTTPException(status_code=400, detail="issue is required")

    reports = read_collection("reports", app_id)
    if any(r.get("listingId") == listing_id and r.get("reporterId") == user["id"] for r in reports):
        raise HTTPException(status_code=409, detail="You have already reported this item")

    report = Report(
        id=new_id("report"),
        appId=app_id,
        reporterId=user["id"],
        reporterName=user["username"],
        listingId=listing_id,
        listingName=_trimmed(body.listingName),
        listingImageUrl=_trimmed(body.listingImageUrl),
        category=_trimmed(body.category),
        issue=issue,
        comment=_trimmed(body.comment),
        createdAt=now_iso(),
    ).dump()
    reports.insert(0, report)
    write_collection("reports", app_id, reports)

    notifications.schedule_buffered_notification(app_id)
    return {"status": "success", "report": report}


@app.put("/api/reports/{app_id}/{report_id}")
@handle_errors("Failed to update report")
def update_report(app_id: str, report_id: str, body: ReportUpdate, user=Depends(require_moderator)):
    if not body.action:
        raise HTTPException(status_code=400, detail="action is required")

    reports = read_collection("reports", app_id)
    index = _find_index(reports, report_id)
    if index == -1:
        raise HTTPException(status_code=404, detail="Report not found")
    report = reports[index]

    if body.action == "edit":
        issue, comment = _trimmed(body.issue), _trimmed(body.comment)
        if not issue or not comment:
            raise HTTPException(status_code=400, detail="issue and comment are required")
        report["issue"] = issue
        report["comment"] = comment
        report["status"] = "action-needed"
        report.pop("actionTaken", None)
        report.pop("resolvedAt", None)
        listing = next((l for l in read_listings(app_id) if l["id"] == report["listingId"]), None)
        if listing:
            _refresh_listing_fields(report, listing, keep_existing=True)
        write_collection("reports", app_id, reports)
        return {"status": "success", "report": report}

    if body.action == "remove":
        listings = read_blob(blob_key("listings", app_id)) or []
        remaining = [l for l in listings if l.get("id") != report["listingId"]]
        if len(remaining) != len(listings):
            write_collection("listings", app_id, remaining)
    elif body.action != "ignore":
        raise HTTPException(status_code=400, detail="Unsupported action")

    removed = reports.pop(index)
    removed["actionTaken"] = body.action
    removed["resolvedAt"] = now_iso()
    write_collection("reports", app_id, reports)
    logger.info("Report %s resolved with %s by %s", report_id, body.action, user["username"])
    return {"status": "success", "report": removed}


# ---------- Moderators ----------

def _normalize_mod_id(value: str) -> str:
    return re.sub(r"^u/", "", value.lower())


def _matches_moderator(mod: dict, moderator_id: str) -> bool:
    wanted = _normalize_mod_id(moderator_id)
    return (
        mod["id"] == moderator_id
        or _normalize_mod_id(mod["id"]) == wanted
        or _normalize_mod_id(mod["username"]) == wanted
    )


@app.get("/api/moderators/{app_id}")
@handle_errors("Failed to fetch moderators")
def list_moderators(app_id: str, user=Depends(optional_user)):
    moderators = read_moderators(app_id)
    meta = read_app_meta(app_id) or {}
    return {
        "status": "success",
        "data": moderators,
        "subreddit": meta.get("subreddit") or None,
        "isModerator": is_moderator(app_id, user["username"] if user else None),
    }


@app.post("/api/moderators/{app_id}", status_code=201)
@handle_errors("Failed to add moderator")
def add_moderator(app_id: str, body: ModeratorAdd, user=Depends(require_moderator)):
    username = _trimmed(body.username)
    if not username:
        raise HTTPException(status_code=400, detail="Username is required")

    moderators = read_moderators(app_id)
    if any(m["username"].lower() == username.lower() for m in moderators):
        raise HTTPException(status_code=400, detail="Moderator already added")

    moderators.append(Moderator(
        id=username.lower(),
        username=username,
        avatarUrl=resolve_avatar(username),
        modSince=now_iso(),
        source="app",
    ).dump())
    write_collection("moderators", app_id, moderators)
    logger.info("%s added %s as moderator of %s", user["username"], username, app_id)
    return {"status": "success", "data": moderators}


@app.delete("/api/moderators/{app_id}/{moderator_id:path}")
@handle_errors("Failed to remove moderator")
def remove_moderator(app_id: str, moderator_id: str, user=Depends(require_moderator)):
    moderators = read_moderators(app_id)
    target = next((m for m in moderators if _matches_moderator(m, moderator_id)), None)
    if not target:
        raise HTTPException(status_code=404, detail="Moderator not found")
    if target.get("source") == "installer":
        raise HTTPException(status_code=400, detail="This moderator is permanent and cannot be removed")

    remaining = [m for m in moderators if not _matches_moderator(m, moderator_id)]
    write_collection("moderators", app_id, remaining)
    return {"status": "success", "data": read_moderators(app_id)}


# ---------- Misc settings ----------

@app.get("/api/misc/{app_id}")
@handle_errors("Failed to fetch misc settings")
def get_misc(app_id: str):
    return {"status": "success", "data": read_misc(app_id)}


@app.post("/api/misc/{app_id}")
@handle_errors("Failed to update misc settings")
def update_misc(app_id: str, body: MiscUpdate, user=Depends(require_moderator)):
    changes = body.model_dump(exclude_unset=True)
    if changes.get("expiryDate"):
        try:
            voting.is_expired(changes["expiryDate"])
        except ValueError:
            raise HTTPException(status_code=400, detail="expiryDate must be an ISO-8601 timestamp")
    return {"status": "success", "data": save_misc_settings(app_id, changes)}


# ---------- Scheduler jobs ----------

@app.post("/internal/scheduler/tier-list-summary-dm", dependencies=[Depends(verify_scheduler)])
def summary_dm_job(body: JobRequest):
    logger.info("TIER_LIST_SUMMARY_DM job triggered")
    payload = body.payload()
    post_id, author_name = payload.get("postId"), payload.get("authorName")
    if not post_id or not author_name:
        logger.error("Job missing postId or authorName: %s", payload)
        raise HTTPException(status_code=400, detail="Missing postId or authorName")

    try:
        sent = notifications.run_summary_job(post_id, author_name)
    except DatabaseUnavailable:
        raise
    except Exception:
        logger.exception("Error running TIER_LIST_SUMMARY_DM for %s", post_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"status": "ok", "sent": sent}


@app.post("/internal/scheduler/send-summary-dm", dependencies=[Depends(verify_scheduler)])
def orphaned_summary_job(body: JobRequest):
    logger.info("Catching orphaned SEND_SUMMARY_DM job. No action taken.")
    post_id = body.payload().get("postId")
    if post_id:
        try:
            notifications.clear_buffer(post_id)
        except Exception:
            logger.exception("Error cleaning up orphaned job")
    return {"status": "ok"}


@app.post("/internal/scheduler/run-due", dependencies=[Depends(verify_scheduler)])
@handle_errors("Failed to run scheduled jobs")
def run_due_jobs():
    return {"status": "ok", "ran": notifications.run_due_jobs()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
