"""
Nearby-user notifications for newly created lost/found posts.

Delivery is best effort: a failing or slow sink never bubbles up to the
caller, the outcome is summarised in a DispatchReport instead.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from lostfound.config import Config
from lostfound.geo import ProximityResult, exclude_self

logger = logging.getLogger(__name__)

POST_KINDS = ("lost", "found")


class NotificationType(Enum):
    ITEM_FOUND = "item_found"
    ITEM_LOST = "item_lost"
    MATCH_FOUND = "match_found"
    MESSAGE = "message"
    QR_SCAN = "qr_scan"


_TEMPLATES = {
    "lost": {
        "type": NotificationType.ITEM_LOST.value,
        "title": "Lost Item Nearby: {title}",
        "message": "Someone lost a {title} ({category}) near your location in {district}",
    },
    "found": {
        "type": NotificationType.ITEM_FOUND.value,
        "title": "Found Item Nearby: {title}",
        "message": "Someone found a {title} ({category}) near your location in {district}",
    },
}


@dataclass(frozen=True)
class Author:
    id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class NewPost:
    post_id: str
    kind: str
    title: str
    category: str
    district: str
    gps: str

    def __post_init__(self):
        if self.kind not in POST_KINDS:
            raise ValueError(f"Unknown post kind: {self.kind!r}")


@dataclass(frozen=True)
class NotificationJob:
    recipient_id: str
    type: str
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    link: Optional[str] = None
    priority: str = "medium"


@dataclass
class DispatchReport:
    attempted: int = 0
    succeeded: int = 0
    failed_ids: List[str] = field(default_factory=list)
    abandoned_ids: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": len(self.failed_ids),
            "abandoned": len(self.abandoned_ids),
        }


class NotificationSink(Protocol):
    async def deliver(self, job: NotificationJob) -> str:
        ...


def build_jobs(post: NewPost, author: Author, nearby: Iterable[ProximityResult]) -> List[NotificationJob]:
    """One job per nearby recipient, author excluded, duplicates dropped"""
    template = _TEMPLATES[post.kind]
    values = {"title": post.title, "category": post.category, "district": post.district}

    jobs = []
    seen = set()
    for result in exclude_self(nearby, author.id):
        if result.id in seen:
            continue
        seen.add(result.id)

        jobs.append(NotificationJob(
            recipient_id=result.id,
            type=template["type"],
            title=template["title"].format(**values),
            message=template["message"].format(**values),
            data={
                "postId": post.post_id,
                "category": post.category,
                "location": post.district,
                "distance": f"{result.distance_km:.1f} km away",
            },
            link=f"/{post.kind}/{post.post_id}",
            priority="medium",
        ))
    return jobs


async def dispatch(
    jobs: List[NotificationJob],
    sink: NotificationSink,
    concurrency: int = Config.FANOUT_CONCURRENCY,
    timeout: Optional[float] = Config.FANOUT_TIMEOUT_SECONDS,
) -> DispatchReport:
    report = DispatchReport(attempted=len(jobs))
    if not jobs:
        return report

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _deliver(job: NotificationJob):
        async with semaphore:
            return await sink.deliver(job)

    tasks = [asyncio.ensure_future(_deliver(job)) for job in jobs]
    try:
        _, pending = await asyncio.wait(tasks, timeout=timeout)
    finally:
        unfinished = [task for task in tasks if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)

    for job, task in zip(jobs, tasks):
        if task in pending or task.cancelled():
            report.abandoned_ids.append(job.recipient_id)
        elif task.exception() is not None:
            logger.warning("Notification to %s failed: %r", job.recipient_id, task.exception())
            report.failed_ids.append(job.recipient_id)
        else:
            report.succeeded += 1

    if report.abandoned_ids:
        logger.warning(
            "Notification fan-out timed out after %ss, abandoned %d job(s)",
            timeout, len(report.abandoned_ids),
        )
    return report


async def build_and_dispatch(
    post: NewPost,
    author: Author,
    nearby: Iterable[ProximityResult],
    sink: NotificationSink,
    *,
    concurrency: int = Config.FANOUT_CONCURRENCY,
    timeout: Optional[float] = Config.FANOUT_TIMEOUT_SECONDS,
) -> DispatchReport:
    jobs = build_jobs(post, author, nearby)
    report = await dispatch(jobs, sink, concurrency=concurrency, timeout=timeout)
    logger.info(
        "Notified nearby users for %s post %s: %d/%d delivered",
        post.kind, post.post_id, report.succeeded, report.attempted,
    )
    return report
