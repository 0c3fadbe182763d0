import asyncio
import re
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from lostfound.config import Config
from lostfound.store import POST_COLLECTIONS

import main

# Kurunegala bus stand
CENTER_GPS = "7.487718,80.364272"


def _matches(doc, query):
    for key, cond in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
        elif isinstance(cond, dict) and "$ne" in cond:
            if doc.get(key) == cond["$ne"]:
                return False
        elif isinstance(cond, dict) and "$regex" in cond:
            if not re.search(cond["$regex"], doc.get(key) or "", re.IGNORECASE):
                return False
        elif doc.get(key) != cond:
            return False
    return True


class FakeStore:
    """In-memory stand-in for MongoStore."""

    def __init__(self):
        self.users = {}
        self.posts = {kind: {} for kind in POST_COLLECTIONS}
        self.notifications = {}
        self.fail_user_fetch = False
        self.user_fetch_delay = 0
        self._counter = 0

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}{self._counter}"

    def add_user(self, user_id, gps, email=None):
        self.users[user_id] = {"_id": user_id, "gps": gps, "email": email}

    def add_post(self, kind, **fields):
        post_id = self._next_id(kind)
        fields.setdefault("createdAt", datetime(2024, 1, 1) + timedelta(minutes=self._counter))
        fields.setdefault("isDisabled", False)
        self.posts[kind][post_id] = {"_id": post_id, **fields}
        return post_id

    async def users_with_location(self):
        if self.user_fetch_delay:
            await asyncio.sleep(self.user_fetch_delay)
        if self.fail_user_fetch:
            raise ConnectionError("database unreachable")
        return [user for user in self.users.values() if user.get("gps") is not None]

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def set_user_location(self, user_id, gps, email=None):
        user = self.users.setdefault(user_id, {"_id": user_id})
        user["gps"] = gps
        if email:
            user["email"] = email
        return user

    async def insert_post(self, kind, doc):
        post_id = self._next_id(kind)
        self.posts[kind][post_id] = {"_id": post_id, **doc}
        return post_id

    async def get_post(self, kind, post_id):
        return self.posts[kind].get(post_id)

    async def find_posts(self, kind, query, skip=0, limit=None):
        docs = [doc for doc in self.posts[kind].values() if _matches(doc, query)]
        docs.sort(key=lambda doc: doc["createdAt"], reverse=True)
        docs = docs[skip:]
        return docs[:limit] if limit else docs

    async def count_posts(self, kind, query):
        return len(await self.find_posts(kind, query))

    async def insert_notification(self, doc):
        notification_id = self._next_id("n")
        self.notifications[notification_id] = {"_id": notification_id, **doc}
        return notification_id

    async def list_notifications(self, user_id, unread_only=False, limit=50):
        docs = [
            doc for doc in self.notifications.values()
            if doc["userId"] == user_id and (not unread_only or not doc["read"])
        ]
        return docs[:limit]

    async def count_unread(self, user_id):
        return len(await self.list_notifications(user_id, unread_only=True))

    async def mark_read(self, notification_id, user_id):
        doc = self.notifications.get(notification_id)
        if doc is None or doc["userId"] != user_id:
            return False
        doc["read"] = True
        return True

    async def mark_all_read(self, user_id):
        unread = [doc for doc in self.notifications.values() if doc["userId"] == user_id and not doc["read"]]
        for doc in unread:
            doc["read"] = True
        return len(unread)

    async def delete_notification(self, notification_id, user_id):
        doc = self.notifications.get(notification_id)
        if doc is None or doc["userId"] != user_id:
            return False
        del self.notifications[notification_id]
        return True


class RecordingSink:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.jobs = []

    async def deliver(self, job):
        if job.recipient_id in self.fail_for:
            raise RuntimeError(f"sink rejected {job.recipient_id}")
        self.jobs.append(job)
        return f"notification-{len(self.jobs)}"


def make_token(user_id="author", email="author@example.com", secret=None):
    claims = {"sub": user_id, "email": email}
    return jwt.encode(claims, secret or Config.SECRET_KEY, algorithm=Config.ALGORITHM)


def auth_header(user_id="author", email="author@example.com"):
    return {"Authorization": f"Bearer {make_token(user_id, email)}"}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def client(store, sink):
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_sink] = lambda: sink
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
