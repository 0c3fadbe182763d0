import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from lostfound.config import Config
from lostfound.fanout import POST_KINDS, Author, DispatchReport, NewPost, build_and_dispatch
from lostfound.geo import Candidate, exclude_self, find_within_radius, paginate, parse_coordinate, total_pages
from lostfound.log import setup_logging
from lostfound.store import MongoNotificationSink, MongoStore, serialize_document

logger = logging.getLogger("lostfound.api")

GPS_PATTERN = re.compile(r"^-?\d+\.?\d*,-?\d+\.?\d*$")

app = FastAPI(title="Lost & Found App")

security = HTTPBearer(auto_error=False)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class PostCreate(BaseModel):
    title: str
    date: str
    phone: str
    Category: str
    District: str
    gps: str
    description: str
    reward: Optional[str] = None
    photo: List[str] = []


class LocationUpdate(BaseModel):
    gps: str


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_store(request: Request) -> MongoStore:
    return request.app.state.store


def get_sink(store: MongoStore = Depends(get_store)) -> MongoNotificationSink:
    return MongoNotificationSink(store)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Optional[Author]:
    if credentials is None:
        return None

    try:
        payload = jwt.decode(credentials.credentials, Config.SECRET_KEY, algorithms=[Config.ALGORITHM])
    except JWTError:
        return None

    user_id = payload.get("sub")
    if user_id is None:
        return None
    return Author(id=str(user_id), email=payload.get("email"))


async def require_user(user: Optional[Author] = Depends(get_current_user)) -> Author:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def check_kind(kind: str) -> str:
    if kind not in POST_KINDS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown post kind: {kind}")
    return kind


# =============================================================================
# HELPERS
# =============================================================================

def listing_response(message: str, posts: List[Dict[str, Any]], total: int, page: int) -> JSONResponse:
    return JSONResponse({
        "message": message,
        "posts": posts,
        "totalPages": total_pages(total, Config.PAGE_SIZE),
        "currentPage": page,
        "totalPosts": total,
    })


async def notify_nearby_users(store: MongoStore, sink, post: NewPost, author: Author) -> DispatchReport:
    """Fan out to users near a new post. Never raises."""
    radius = Config.notify_radius(post.kind)
    timeout = Config.FANOUT_TIMEOUT_SECONDS
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        users = await asyncio.wait_for(store.users_with_location(), timeout)
        candidates = exclude_self([Candidate.from_document(user) for user in users], author.id)
        nearby = find_within_radius(candidates, post.gps, radius)
        logger.info("Found %d nearby users within %skm of %s", len(nearby), radius, post.gps)

        return await build_and_dispatch(
            post, author, nearby, sink,
            concurrency=Config.FANOUT_CONCURRENCY,
            timeout=max(0.0, deadline - loop.time()),
        )
    except asyncio.TimeoutError:
        logger.warning("Timed out looking up users near %s post %s", post.kind, post.post_id)
        return DispatchReport()
    except Exception:
        logger.exception("Error notifying nearby users about %s post %s", post.kind, post.post_id)
        return DispatchReport()


# =============================================================================
# APPLICATION STARTUP
# =============================================================================

@app.on_event("startup")
async def startup_event():
    setup_logging()
    app.state.store = MongoStore.from_url(Config.MONGODB_URL, Config.DATABASE_NAME)
    logger.info("Connected to MongoDB database %s", Config.DATABASE_NAME)


@app.on_event("shutdown")
async def shutdown_event():
    app.state.store.close()


# =============================================================================
# API ROUTES
# =============================================================================

@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/api/post/{kind}")
async def create_post(
    payload: PostCreate,
    kind: str = Depends(check_kind),
    user: Author = Depends(require_user),
    store: MongoStore = Depends(get_store),
    sink=Depends(get_sink),
):
    if parse_coordinate(payload.gps) is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid GPS format. Expected format: 'lat,lng'",
        )

    post_data = payload.model_dump()
    post_data.update({
        "email": user.email,
        "authorId": user.id,
        "isDisabled": False,
        "createdAt": datetime.now(timezone.utc),
    })

    post_id = await store.insert_post(kind, post_data)
    post_data["_id"] = post_id
    logger.info("Created %s post %s for user %s", kind, post_id, user.id)

    new_post = NewPost(
        post_id=post_id,
        kind=kind,
        title=payload.title,
        category=payload.Category,
        district=payload.District,
        gps=payload.gps,
    )
    report = await notify_nearby_users(store, sink, new_post, user)
    if report.failed_ids:
        logger.warning("Notifications failed for users: %s", report.failed_ids)

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "message": f"{kind} post created",
            "post": serialize_document(post_data),
            "notifications": report.summary(),
        },
    )


@app.get("/api/post/{kind}")
async def list_posts(
    kind: str = Depends(check_kind),
    post_id: Optional[str] = Query(None, alias="id"),
    user_email: Optional[str] = Query(None, alias="userEmail"),
    gps: Optional[str] = None,
    district: Optional[str] = None,
    search: Optional[str] = None,
    category: Optional[str] = None,
    page: int = 1,
    store: MongoStore = Depends(get_store),
):
    page = max(page, 1)
    skip = (page - 1) * Config.PAGE_SIZE

    try:
        if post_id:
            post = await store.get_post(kind, post_id)
            if post is None:
                return JSONResponse({"message": "Not found"}, status_code=status.HTTP_404_NOT_FOUND)
            return JSONResponse({"message": f"{kind} post retrieved", "post": serialize_document(post)})

        query: Dict[str, Any] = {"isDisabled": {"$ne": True}}
        if user_email:
            # Owners also see their disabled posts
            query = {"email": user_email}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"title": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if category and category != "Reset":
            query["Category"] = category

        if district:
            query["District"] = str(district)
            total = await store.count_posts(kind, query)
            posts = await store.find_posts(kind, query, skip=skip, limit=Config.PAGE_SIZE)
            return listing_response(
                f"{kind} posts retrieved by district",
                [serialize_document(post) for post in posts], total, page,
            )

        center = parse_coordinate(gps)
        if gps and center is None:
            logger.info("Unusable gps %r, returning the default listing", gps)

        if center is not None:
            posts = await store.find_posts(kind, query)
            nearby = find_within_radius(
                [Candidate.from_document(post) for post in posts], center, Config.nearby_radius(kind)
            )
            result = paginate(nearby, page, Config.PAGE_SIZE)

            items = []
            for match in result.items:
                item = serialize_document(match.candidate.payload)
                item["distance"] = round(match.distance_km, 2)
                items.append(item)
            return listing_response("Nearby posts retrieved successfully", items, result.total_items, result.page)

        total = await store.count_posts(kind, query)
        posts = await store.find_posts(kind, query, skip=skip, limit=Config.PAGE_SIZE)
        return listing_response(
            f"{kind} posts retrieved successfully",
            [serialize_document(post) for post in posts], total, page,
        )
    except Exception:
        logger.exception("Error fetching %s posts", kind)
        return JSONResponse(
            {"message": f"Failed to fetch {kind} posts"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


@app.post("/api/user/location")
async def update_location(
    payload: LocationUpdate,
    user: Author = Depends(require_user),
    store: MongoStore = Depends(get_store),
):
    if not GPS_PATTERN.match(payload.gps):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid GPS format. Expected format: 'lat,lng'",
        )

    updated = await store.set_user_location(user.id, payload.gps, user.email)
    return {"message": "Location updated successfully", "user": serialize_document(updated)}


@app.get("/api/user/location")
async def get_location(user: Author = Depends(require_user), store: MongoStore = Depends(get_store)):
    record = await store.get_user(user.id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return {"userId": user.id, "gps": record.get("gps")}


@app.get("/api/notifications")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    user: Author = Depends(require_user),
    store: MongoStore = Depends(get_store),
):
    notifications = await store.list_notifications(user.id, unread_only=unread_only, limit=limit)
    return {"notifications": [serialize_document(n) for n in notifications]}


@app.get("/api/notifications/unread-count")
async def unread_count(user: Author = Depends(require_user), store: MongoStore = Depends(get_store)):
    return {"unread": await store.count_unread(user.id)}


@app.post("/api/notifications/read-all")
async def mark_all_notifications_read(user: Author = Depends(require_user), store: MongoStore = Depends(get_store)):
    updated = await store.mark_all_read(user.id)
    return {"success": True, "updated": updated}


@app.post("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user: Author = Depends(require_user),
    store: MongoStore = Depends(get_store),
):
    if not await store.mark_read(notification_id, user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"success": True}


@app.delete("/api/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    user: Author = Depends(require_user),
    store: MongoStore = Depends(get_store),
):
    if not await store.delete_notification(notification_id, user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
