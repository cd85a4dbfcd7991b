"""Notification service: like, follow and comment events directed at a user."""
import logging
from typing import Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, now, oid, paginate, to_public
from errors import NotFound, ValidationFailed
from schemas import NOTIFICATION_TYPES, Notification

logger = logging.getLogger(__name__)

SENDER_FIELDS = {"username": 1, "full_name": 1, "profile_img": 1}
POST_FIELDS = {"text": 1, "img": 1}
POST_TYPES = ("like", "comment")


def display_name(user: dict) -> str:
    return user.get("full_name") or user.get("username") or "Someone"


def like_message(first_liker: dict, like_count: int) -> str:
    name = display_name(first_liker)
    if like_count <= 1:
        return f"{name} liked your post"
    others = like_count - 1
    return f"{name} and {others} other{'s' if others > 1 else ''} liked your post"


class NotificationService:
    def __init__(self, database: Database):
        self.db = database
        self.collection = database["notification"]

    def create(self, from_id: str, to_id: str, type: str, post_id: Optional[str] = None, message: Optional[str] = None) -> str:
        if type not in NOTIFICATION_TYPES:
            raise ValidationFailed(f"Invalid notification type: {type}")
        if type in POST_TYPES and not post_id:
            raise ValidationFailed(f"A post is required for {type} notifications")
        notification = Notification(from_user=from_id, to_user=to_id, type=type, post=post_id, message=message)
        notification_id = create_document(self.db, "notification", notification)
        logger.debug("Notification %s (%s) %s -> %s", notification_id, type, from_id, to_id)
        return notification_id

    def _populate(self, notification: dict) -> dict:
        sender = self.db["user"].find_one({"_id": oid(notification["from_user"], "User")}, SENDER_FIELDS)
        notification["from_user"] = sender
        if notification.get("post"):
            try:
                notification["post"] = self.db["post"].find_one({"_id": oid(notification["post"], "Post")}, POST_FIELDS)
            except NotFound:
                notification["post"] = None
        return notification

    def list(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive")
        query = {"to_user": user_id}
        skip = (page - 1) * limit
        cursor = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).skip(skip).limit(limit)
        notifications = [to_public(self._populate(n)) for n in cursor]
        total = self.collection.count_documents(query)
        return {
            "notifications": notifications,
            "pagination": paginate(page, limit, total, len(notifications), "notifications"),
        }

    def unread_count(self, user_id: str) -> int:
        return self.collection.count_documents({"to_user": user_id, "read": False})

    def _owned(self, notification_id: str, user_id: str) -> dict:
        notification = self.collection.find_one({"_id": oid(notification_id, "Notification"), "to_user": user_id})
        if not notification:
            raise NotFound("Notification not found")
        return notification

    def mark_read(self, notification_id: str, user_id: str) -> None:
        notification = self._owned(notification_id, user_id)
        if not notification.get("read"):
            self.collection.update_one({"_id": notification["_id"]}, {"$set": {"read": True, "updated_at": now()}})

    def mark_all_read(self, user_id: str) -> int:
        result = self.collection.update_many({"to_user": user_id, "read": False}, {"$set": {"read": True, "updated_at": now()}})
        return result.modified_count

    def delete(self, notification_id: str, user_id: str) -> None:
        notification = self._owned(notification_id, user_id)
        self.collection.delete_one({"_id": notification["_id"]})

    def delete_all(self, user_id: str) -> int:
        return self.collection.delete_many({"to_user": user_id}).deleted_count

    # Aggregated like notifications: one row per post, refreshed on each like.

    def record_like(self, liker: dict, post: dict) -> None:
        owner_id = post["user"]
        liker_id = str(liker["_id"])
        if owner_id == liker_id:
            return
        post_id = str(post["_id"])
        message = like_message(liker, len([uid for uid in post.get("likes", []) if uid != owner_id]))
        existing = self.collection.find_one({"to_user": owner_id, "type": "like", "post": post_id})
        if existing:
            self.collection.update_one(
                {"_id": existing["_id"]},
                {"$set": {"from_user": liker_id, "message": message, "read": False, "created_at": now(), "updated_at": now()}},
            )
        else:
            self.create(liker_id, owner_id, "like", post_id, message)

    def retract_like(self, post: dict) -> None:
        """Refresh the like notification of ``post`` after an unlike."""
        post_id = str(post["_id"])
        query = {"to_user": post["user"], "type": "like", "post": post_id}
        likes = [uid for uid in post.get("likes", []) if uid != post["user"]]
        if not likes:
            self.collection.delete_one(query)
            return
        first = self.db["user"].find_one({"_id": oid(likes[0], "User")}, SENDER_FIELDS) or {}
        self.collection.update_one(
            query,
            {"$set": {"from_user": likes[0], "message": like_message(first, len(likes)), "updated_at": now()}},
        )

    def remove_follow(self, from_id: str, to_id: str) -> None:
        self.collection.delete_one({"from_user": from_id, "to_user": to_id, "type": "follow"})
