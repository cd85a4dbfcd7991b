"""
Posts: lifecycle, visibility filtering, likes and two-level comment threads.

Visibility rules for a viewer who is not the owner: ``public`` posts are
always visible, ``followers`` posts only when the viewer follows the owner,
``private`` posts never.
"""
import logging
import re
import uuid
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, find_by_id, now, oid, paginate, to_public
from errors import NotFound, PermissionDenied, ValidationFailed
from media import MediaStore, MediaUpload
from notifications import NotificationService, display_name
from schemas import VISIBILITIES, Comment, Post, Reply

logger = logging.getLogger(__name__)

MAX_TEXT = 280
AUTHOR_FIELDS = {"username": 1, "full_name": 1, "profile_img": 1}
MENTION_RE = re.compile(r"@([a-zA-Z0-9_]{3,20})")
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def visible_to(post: dict, viewer_id: str, owner_followers: List[str]) -> bool:
    if post["user"] == viewer_id:
        return True
    if post.get("visibility", "public") == "public":
        return True
    return post.get("visibility") == "followers" and viewer_id in owner_followers


class PostService:
    def __init__(self, database: Database, notifications: NotificationService, media: Optional[MediaStore] = None):
        self.db = database
        self.notifications = notifications
        self.media = media

    def _author(self, user_id: str) -> Optional[dict]:
        try:
            return self.db["user"].find_one({"_id": oid(user_id, "User")}, AUTHOR_FIELDS)
        except NotFound:
            return None

    def _populate(self, post: dict) -> dict:
        authors = {}

        def author(uid):
            if uid not in authors:
                authors[uid] = self._author(uid)
            return authors[uid]

        post["user"] = author(post["user"])
        for comment in post.get("comments", []):
            comment["user"] = author(comment["user"])
            for reply in comment.get("replies", []):
                reply["user"] = author(reply["user"])
        return to_public(post)

    def _owned(self, post_id: str, requester_id: str, action: str) -> dict:
        post = find_by_id(self.db, "post", post_id, "Post")
        if post["user"] != requester_id:
            raise PermissionDenied(f"You are not authorized to {action} this post")
        return post

    def _mentions(self, text: str) -> List[str]:
        names = {m.lower() for m in MENTION_RE.findall(text)}
        if not names:
            return []
        return [str(u["_id"]) for u in self.db["user"].find({"username": {"$in": sorted(names)}}, {"_id": 1})]

    def _page(self, query: dict, page: int, limit: int) -> dict:
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive")
        skip = (page - 1) * limit
        posts = [self._populate(p) for p in self.db["post"].find(query).sort(NEWEST_FIRST).skip(skip).limit(limit)]
        total = self.db["post"].count_documents(query)
        return {"posts": posts, "pagination": paginate(page, limit, total, len(posts), "posts")}

    # -- lifecycle --

    def create(self, user_id: str, text: Optional[str] = None, upload: Optional[MediaUpload] = None,
               visibility: str = "public") -> dict:
        text = (text or "").strip() or None
        if not text and upload is None:
            raise ValidationFailed("Post must have text or image")
        if text and len(text) > MAX_TEXT:
            raise ValidationFailed(f"Post text must be {MAX_TEXT} characters or less")
        if visibility not in VISIBILITIES:
            raise ValidationFailed("Invalid visibility setting")
        img = None
        if upload is not None:
            if self.media is None:
                raise ValidationFailed("Image uploads are not available")
            img = self.media.save(upload)
        post_id = create_document(self.db, "post", Post(user=user_id, text=text, img=img, visibility=visibility))
        logger.info("Post %s created by %s", post_id, user_id)
        return self._populate(find_by_id(self.db, "post", post_id, "Post"))

    def update(self, post_id: str, requester_id: str, text: Optional[str]) -> dict:
        post = self._owned(post_id, requester_id, "update")
        text = (text or "").strip()
        if not text:
            raise ValidationFailed("Post text cannot be empty")
        if len(text) > MAX_TEXT:
            raise ValidationFailed(f"Post text must be {MAX_TEXT} characters or less")
        self.db["post"].update_one({"_id": post["_id"]}, {"$set": {"text": text, "updated_at": now()}})
        return self._populate(find_by_id(self.db, "post", post_id, "Post"))

    def set_visibility(self, post_id: str, requester_id: str, visibility: str) -> dict:
        if visibility not in VISIBILITIES:
            raise ValidationFailed("Invalid visibility setting")
        post = self._owned(post_id, requester_id, "update")
        self.db["post"].update_one({"_id": post["_id"]}, {"$set": {"visibility": visibility, "updated_at": now()}})
        return self._populate(find_by_id(self.db, "post", post_id, "Post"))

    def delete(self, post_id: str, requester_id: str) -> None:
        post = self._owned(post_id, requester_id, "delete")
        if post.get("img") and self.media is not None:
            self.media.delete(post["img"])
        post_id = str(post["_id"])
        self.db["post"].delete_one({"_id": post["_id"]})
        self.db["user"].update_many({"liked_posts": post_id}, {"$pull": {"liked_posts": post_id}})
        self.db["notification"].delete_many({"post": post_id})
        logger.info("Post %s deleted by %s", post_id, requester_id)

    # -- listing --

    def list_for_user(self, viewer_id: str, owner_id: str) -> List[dict]:
        owner = find_by_id(self.db, "user", owner_id, "User", {"followers": 1})
        query = {"user": str(owner["_id"])}
        if viewer_id != query["user"]:
            allowed = ["public"]
            if viewer_id in owner.get("followers", []):
                allowed.append("followers")
            query["visibility"] = {"$in": allowed}
        return [self._populate(p) for p in self.db["post"].find(query).sort(NEWEST_FIRST)]

    def list_all(self, viewer_id: str, page: int = 1, limit: int = 20) -> dict:
        viewer = find_by_id(self.db, "user", viewer_id, "User", {"following": 1})
        query = {"$or": [
            {"visibility": "public"},
            {"user": viewer_id},
            {"visibility": "followers", "user": {"$in": viewer.get("following", [])}},
        ]}
        return self._page(query, page, limit)

    def dashboard(self, viewer_id: str, page: int = 1, limit: int = 20) -> dict:
        viewer = find_by_id(self.db, "user", viewer_id, "User", {"following": 1})
        query = {"$or": [
            {"user": viewer_id},
            {"user": {"$in": viewer.get("following", [])}, "visibility": {"$in": ["public", "followers"]}},
        ]}
        return self._page(query, page, limit)

    # -- interactions --

    def _visible_post(self, post_id: str, user_id: str) -> dict:
        post = find_by_id(self.db, "post", post_id, "Post")
        owner = self.db["user"].find_one({"_id": oid(post["user"], "User")}, {"followers": 1}) or {}
        if not visible_to(post, user_id, owner.get("followers", [])):
            raise NotFound("Post not found")
        return post

    def toggle_like(self, post_id: str, user_id: str) -> List[str]:
        post = self._visible_post(post_id, user_id)
        post_id = str(post["_id"])
        if user_id in post.get("likes", []):
            self.db["post"].update_one({"_id": post["_id"]}, {"$pull": {"likes": user_id}})
            self.db["user"].update_one({"_id": oid(user_id, "User")}, {"$pull": {"liked_posts": post_id}})
            updated = find_by_id(self.db, "post", post_id, "Post")
            self.notifications.retract_like(updated)
        else:
            self.db["post"].update_one({"_id": post["_id"]}, {"$addToSet": {"likes": user_id}})
            self.db["user"].update_one({"_id": oid(user_id, "User")}, {"$addToSet": {"liked_posts": post_id}})
            updated = find_by_id(self.db, "post", post_id, "Post")
            liker = find_by_id(self.db, "user", user_id, "User", AUTHOR_FIELDS)
            self.notifications.record_like(liker, updated)
        return updated.get("likes", [])

    def add_comment(self, post_id: str, user_id: str, text: Optional[str]) -> dict:
        text = (text or "").strip()
        if not text:
            raise ValidationFailed("Text field is required")
        post = self._visible_post(post_id, user_id)
        comment = Comment(
            id=uuid.uuid4().hex,
            text=text,
            user=user_id,
            mentions=self._mentions(text),
            created_at=now(),
        )
        self.db["post"].update_one({"_id": post["_id"]}, {"$push": {"comments": comment.model_dump()}})
        self._notify_comment(post, user_id, "commented on your post")
        return self._populate(find_by_id(self.db, "post", post_id, "Post"))

    def add_reply(self, post_id: str, comment_id: str, user_id: str, text: Optional[str],
                  reply_to: Optional[str] = None) -> dict:
        text = (text or "").strip()
        if not text:
            raise ValidationFailed("Text field is required")
        post = self._visible_post(post_id, user_id)
        index = next((i for i, c in enumerate(post.get("comments", [])) if c.get("id") == comment_id), None)
        if index is None:
            raise NotFound("Comment not found")
        reply = Reply(
            id=uuid.uuid4().hex,
            text=text,
            user=user_id,
            mentions=self._mentions(text),
            reply_to=reply_to or post["comments"][index]["user"],
            parent_comment=comment_id,
            created_at=now(),
        )
        self.db["post"].update_one({"_id": post["_id"]}, {"$push": {f"comments.{index}.replies": reply.model_dump()}})
        self._notify_comment(post, user_id, "replied to a comment on your post")
        return self._populate(find_by_id(self.db, "post", post_id, "Post"))

    def _notify_comment(self, post: dict, user_id: str, action: str) -> None:
        if post["user"] == user_id:
            return
        commenter = self._author(user_id) or {}
        self.notifications.create(user_id, post["user"], "comment", str(post["_id"]), f"{display_name(commenter)} {action}")
