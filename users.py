"""Profiles and the follow graph."""
import logging
import re
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from auth import USERNAME_RE
from database import find_by_id, now, oid, paginate, to_public
from errors import NotFound, ValidationFailed
from media import MediaStore, MediaUpload
from notifications import NotificationService

logger = logging.getLogger(__name__)

PUBLIC_FIELDS = {"password_hash": 0}
FIELD_LIMITS = {"bio": 160, "location": 50, "website": 100}
SEARCH_LIMIT = 10
SUGGESTION_LIMIT = 6


class UserService:
    def __init__(self, database: Database, notifications: NotificationService, media: Optional[MediaStore] = None):
        self.db = database
        self.notifications = notifications
        self.media = media

    def get_profile(self, username: str) -> dict:
        user = self.db["user"].find_one({"username": (username or "").lower()}, PUBLIC_FIELDS)
        if not user:
            raise NotFound("User not found")
        return to_public(user)

    def update_profile(self, user_id: str, full_name: Optional[str] = None, username: Optional[str] = None,
                       email: Optional[str] = None, bio: Optional[str] = None, location: Optional[str] = None,
                       website: Optional[str] = None) -> dict:
        user = find_by_id(self.db, "user", user_id, "User")
        changes = {}

        if email and email.lower() != user["email"]:
            email = email.lower()
            if self.db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
                raise ValidationFailed("Email is already taken")
            changes["email"] = email

        if username and username.lower() != user["username"]:
            if not USERNAME_RE.match(username):
                raise ValidationFailed("Username must be 3-20 letters, numbers or underscores")
            username = username.lower()
            if self.db["user"].find_one({"username": username, "_id": {"$ne": user["_id"]}}):
                raise ValidationFailed("Username is already taken")
            changes["username"] = username

        if full_name:
            changes["full_name"] = full_name.strip()
        for field, value in (("bio", bio), ("location", location), ("website", website)):
            if value is None:
                continue
            if len(value) > FIELD_LIMITS[field]:
                raise ValidationFailed(f"{field.capitalize()} must be {FIELD_LIMITS[field]} characters or less")
            changes[field] = value

        if changes:
            changes["updated_at"] = now()
            self.db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
        return to_public(find_by_id(self.db, "user", user_id, "User", PUBLIC_FIELDS))

    def upload_profile_image(self, user_id: str, upload: Optional[MediaUpload]) -> dict:
        """Replace the profile picture; the previous file is removed if it can be."""
        if upload is None:
            raise ValidationFailed("Profile image is required")
        if self.media is None:
            raise ValidationFailed("Image uploads are not available")
        user = find_by_id(self.db, "user", user_id, "User", {"profile_img": 1})
        url = self.media.save(upload, folder="profiles")
        self.db["user"].update_one({"_id": user["_id"]}, {"$set": {"profile_img": url, "updated_at": now()}})
        if user.get("profile_img"):
            self.media.delete(user["profile_img"])
        logger.info("Profile image updated for %s", user_id)
        return to_public(find_by_id(self.db, "user", user_id, "User", PUBLIC_FIELDS))

    def follow_toggle(self, current_id: str, target_id: str) -> bool:
        """Follow or unfollow ``target_id``; return True when now following."""
        target = find_by_id(self.db, "user", target_id, "User", {"_id": 1})
        target_id = str(target["_id"])
        if current_id == target_id:
            raise ValidationFailed("You can't follow/unfollow yourself")
        current = find_by_id(self.db, "user", current_id, "User", {"following": 1})

        if target_id in current.get("following", []):
            self.db["user"].update_one({"_id": target["_id"]}, {"$pull": {"followers": current_id}})
            self.db["user"].update_one({"_id": current["_id"]}, {"$pull": {"following": target_id}})
            self.notifications.remove_follow(current_id, target_id)
            logger.info("%s unfollowed %s", current_id, target_id)
            return False

        self.db["user"].update_one({"_id": target["_id"]}, {"$addToSet": {"followers": current_id}})
        self.db["user"].update_one({"_id": current["_id"]}, {"$addToSet": {"following": target_id}})
        self.notifications.create(current_id, target_id, "follow")
        logger.info("%s followed %s", current_id, target_id)
        return True

    def search(self, current_id: str, query: Optional[str]) -> List[dict]:
        query = (query or "").strip()
        if not query:
            raise ValidationFailed("Search query is required")
        pattern = {"$regex": re.escape(query), "$options": "i"}
        cursor = self.db["user"].find(
            {
                "_id": {"$ne": oid(current_id, "User")},
                "$or": [{"full_name": pattern}, {"username": pattern}, {"email": pattern}],
            },
            PUBLIC_FIELDS,
        ).limit(SEARCH_LIMIT)
        return [to_public(u) for u in cursor]

    def _connections(self, user_id: str, field: str, page: int, limit: int) -> dict:
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive")
        user = find_by_id(self.db, "user", user_id, "User", {field: 1})
        ids = [oid(uid, "User") for uid in user.get(field, [])]
        skip = (page - 1) * limit
        people = [
            to_public(u)
            for u in self.db["user"].find({"_id": {"$in": ids}}, PUBLIC_FIELDS)
            .sort("created_at", DESCENDING).skip(skip).limit(limit)
        ]
        return {field: people, "pagination": paginate(page, limit, len(ids), len(people), field)}

    def followers(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        return self._connections(user_id, "followers", page, limit)

    def following(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        return self._connections(user_id, "following", page, limit)

    def suggested(self, user_id: str) -> List[dict]:
        """Friends of friends ranked by mutual count, topped up with popular users."""
        current = find_by_id(self.db, "user", user_id, "User", {"following": 1})
        following = set(current.get("following", []))
        excluded = following | {user_id}

        mutuals = {}
        followed_ids = [oid(uid, "User") for uid in following]
        for friend in self.db["user"].find({"_id": {"$in": followed_ids}}, {"following": 1}):
            for candidate in friend.get("following", []):
                if candidate not in excluded:
                    mutuals.setdefault(candidate, []).append(str(friend["_id"]))

        ranked = sorted(mutuals.items(), key=lambda item: len(item[1]), reverse=True)[:SUGGESTION_LIMIT]
        suggestions = []
        for candidate, via in ranked:
            user = self.db["user"].find_one({"_id": oid(candidate, "User")}, PUBLIC_FIELDS)
            if user:
                user["mutual_count"] = len(via)
                user["mutual_friends"] = via
                suggestions.append(user)

        if len(suggestions) < SUGGESTION_LIMIT:
            skip_ids = [oid(uid, "User") for uid in excluded] + [u["_id"] for u in suggestions]
            popular = sorted(
                self.db["user"].find({"_id": {"$nin": skip_ids}}, PUBLIC_FIELDS),
                key=lambda u: len(u.get("followers", [])),
                reverse=True,
            )
            suggestions.extend(popular[:SUGGESTION_LIMIT - len(suggestions)])
        return [to_public(u) for u in suggestions[:SUGGESTION_LIMIT]]
