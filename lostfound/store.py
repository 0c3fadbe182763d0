from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi.encoders import jsonable_encoder
from motor.motor_asyncio import AsyncIOMotorClient

from lostfound.fanout import NotificationJob

POST_COLLECTIONS = {
    "lost": "lost_posts",
    "found": "found_posts",
}


def _object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_document(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a Mongo document JSON friendly"""
    if doc is None:
        return None
    return jsonable_encoder(doc, custom_encoder={ObjectId: str})


class MongoStore:
    """Users, posts and notifications, one instance per running app."""

    def __init__(self, client: AsyncIOMotorClient, database_name: str):
        self.client = client
        self.db = client[database_name]

    @classmethod
    def from_url(cls, url: str, database_name: str) -> "MongoStore":
        return cls(AsyncIOMotorClient(url), database_name)

    def close(self):
        self.client.close()

    def _posts(self, kind: str):
        return self.db[POST_COLLECTIONS[kind]]

    # Users

    async def users_with_location(self) -> List[Dict[str, Any]]:
        return await self.db.users.find({"gps": {"$ne": None}}).to_list(None)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.users.find_one({"_id": user_id})

    async def set_user_location(self, user_id: str, gps: str, email: Optional[str] = None) -> Dict[str, Any]:
        update = {"gps": gps, "updatedAt": datetime.now(timezone.utc)}
        if email:
            update["email"] = email
        await self.db.users.update_one({"_id": user_id}, {"$set": update}, upsert=True)
        return await self.get_user(user_id)

    # Posts

    async def insert_post(self, kind: str, doc: Dict[str, Any]) -> str:
        result = await self._posts(kind).insert_one(doc)
        return str(result.inserted_id)

    async def get_post(self, kind: str, post_id: str) -> Optional[Dict[str, Any]]:
        oid = _object_id(post_id)
        if oid is None:
            return None
        return await self._posts(kind).find_one({"_id": oid})

    async def find_posts(
        self, kind: str, query: Dict[str, Any], skip: int = 0, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        cursor = self._posts(kind).find(query).sort("createdAt", -1).skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list(None)

    async def count_posts(self, kind: str, query: Dict[str, Any]) -> int:
        return await self._posts(kind).count_documents(query)

    # Notifications

    async def insert_notification(self, doc: Dict[str, Any]) -> str:
        result = await self.db.notifications.insert_one(doc)
        return str(result.inserted_id)

    async def list_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"userId": user_id}
        if unread_only:
            query["read"] = False
        cursor = self.db.notifications.find(query).sort("createdAt", -1).limit(limit)
        return await cursor.to_list(None)

    async def count_unread(self, user_id: str) -> int:
        return await self.db.notifications.count_documents({"userId": user_id, "read": False})

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        oid = _object_id(notification_id)
        if oid is None:
            return False
        result = await self.db.notifications.update_one(
            {"_id": oid, "userId": user_id},
            {"$set": {"read": True, "updatedAt": datetime.now(timezone.utc)}},
        )
        return result.matched_count > 0

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.db.notifications.update_many(
            {"userId": user_id, "read": False},
            {"$set": {"read": True, "updatedAt": datetime.now(timezone.utc)}},
        )
        return result.modified_count

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        oid = _object_id(notification_id)
        if oid is None:
            return False
        result = await self.db.notifications.delete_one({"_id": oid, "userId": user_id})
        return result.deleted_count > 0


class MongoNotificationSink:
    """Stores each job as an unread in-app notification."""

    def __init__(self, store: MongoStore):
        self.store = store

    async def deliver(self, job: NotificationJob) -> str:
        now = datetime.now(timezone.utc)
        return await self.store.insert_notification({
            "userId": job.recipient_id,
            "type": job.type,
            "title": job.title,
            "message": job.message,
            "data": job.data,
            "link": job.link,
            "priority": job.priority,
            "read": False,
            "createdAt": now,
            "updatedAt": now,
        })
