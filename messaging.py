"""
Direct-message conversations between two users.

Every write that other participants should see live is followed by a publish
to the conversation's room on the real-time hub. Publishing never affects the
outcome of the write.
"""
import logging
import re
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, find_by_id, now, oid, paginate, to_public
from errors import NotFound, PermissionDenied, ValidationFailed
from schemas import Conversation, Message, ReadReceipt

logger = logging.getLogger(__name__)

PARTICIPANT_FIELDS = {"username": 1, "full_name": 1, "profile_img": 1}
LAST_MESSAGE_FIELDS = {"content": 1, "message_type": 1, "created_at": 1, "sender": 1}
MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 10


def participant_key(a: str, b: str) -> str:
    return ":".join(sorted((a, b)))


class ConversationService:
    def __init__(self, database: Database, hub=None):
        self.db = database
        self.hub = hub

    # -- population helpers --

    def _user(self, user_id: str, fields=PARTICIPANT_FIELDS) -> Optional[dict]:
        try:
            return self.db["user"].find_one({"_id": oid(user_id, "User")}, fields)
        except NotFound:
            return None

    def _populate_conversation(self, conversation: dict, exclude: Optional[str] = None) -> dict:
        participants = []
        for uid in conversation.get("participants", []):
            if uid == exclude:
                continue
            user = self._user(uid)
            if user:
                participants.append(user)
        conversation["participants"] = participants

        last = None
        if conversation.get("last_message"):
            last = self.db["message"].find_one({"_id": oid(conversation["last_message"], "Message")}, LAST_MESSAGE_FIELDS)
            if last:
                last["sender"] = self._user(last["sender"], {"username": 1, "full_name": 1})
        conversation["last_message"] = last
        return conversation

    def _populate_message(self, message: dict) -> dict:
        message["sender"] = self._user(message["sender"])
        return message

    def _participating(self, conversation_id: str, user_id: str) -> dict:
        conversation = self.db["conversation"].find_one({"_id": oid(conversation_id, "Conversation"), "participants": user_id})
        if not conversation:
            raise NotFound("Conversation not found or access denied")
        return conversation

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        try:
            self._participating(conversation_id, user_id)
        except NotFound:
            return False
        return True

    def _publish(self, conversation_id: str, event: str, payload) -> None:
        if self.hub is None:
            logger.warning("Real-time hub not configured, %s for %s not emitted", event, conversation_id)
            return
        try:
            self.hub.publish(conversation_id, event, payload)
        except Exception:
            logger.warning("Failed to emit %s to room %s", event, conversation_id, exc_info=True)

    # -- operations --

    def find_or_create_conversation(self, requester_id: str, other_user_id: str) -> dict:
        other = self._user(other_user_id)
        if other is None:
            raise NotFound("User not found")
        other_user_id = str(other["_id"])
        if requester_id == other_user_id:
            raise ValidationFailed("Cannot create conversation with yourself")

        key = participant_key(requester_id, other_user_id)
        conversation = self.db["conversation"].find_one({"participant_key": key})
        if not conversation:
            try:
                create_document(self.db, "conversation", Conversation(
                    participants=[requester_id, other_user_id],
                    participant_key=key,
                    last_activity=now(),
                ))
                logger.info("Conversation created between %s and %s", requester_id, other_user_id)
            except DuplicateKeyError:
                logger.info("Conversation for %s created concurrently, reusing it", key)
            conversation = self.db["conversation"].find_one({"participant_key": key})
        return to_public(self._populate_conversation(conversation, exclude=requester_id))

    def list_conversations(self, user_id: str) -> List[dict]:
        cursor = self.db["conversation"].find({"participants": user_id}).sort([("last_activity", DESCENDING), ("_id", DESCENDING)])
        result = []
        for conversation in cursor:
            conversation = self._populate_conversation(conversation, exclude=user_id)
            if conversation["participants"]:
                result.append(to_public(conversation))
        return result

    def list_messages(self, conversation_id: str, requester_id: str, page: int = 1, limit: int = 50) -> dict:
        if page < 1 or limit < 1:
            raise ValidationFailed("page and limit must be positive")
        conversation = self._participating(conversation_id, requester_id)
        conversation_id = str(conversation["_id"])
        skip = (page - 1) * limit

        cursor = (
            self.db["message"]
            .find({"conversation": conversation_id})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip(skip)
            .limit(limit)
        )
        messages = [self._populate_message(m) for m in cursor]
        messages.reverse()

        receipt = ReadReceipt(user=requester_id, read_at=now()).model_dump()
        self.db["message"].update_many(
            {
                "conversation": conversation_id,
                "sender": {"$ne": requester_id},
                "read_by.user": {"$ne": requester_id},
            },
            {"$push": {"read_by": receipt}},
        )

        total = self.db["message"].count_documents({"conversation": conversation_id})
        return {
            "messages": [to_public(m) for m in messages],
            "pagination": paginate(page, limit, total, len(messages), "messages"),
        }

    def send_message(self, conversation_id: str, sender_id: str, content: Optional[str],
                     message_type: str = "text", image_url: Optional[str] = None) -> dict:
        if not content or not content.strip():
            raise ValidationFailed("Message content cannot be empty")
        if message_type not in ("text", "image"):
            raise ValidationFailed("Invalid message type")
        conversation = self._participating(conversation_id, sender_id)
        conversation_id = str(conversation["_id"])

        sent_at = now()
        message = Message(
            conversation=conversation_id,
            sender=sender_id,
            content=content.strip(),
            message_type=message_type,
            image_url=image_url,
            read_by=[ReadReceipt(user=sender_id, read_at=sent_at)],
        )
        message_id = create_document(self.db, "message", message)
        self.db["conversation"].update_one(
            {"_id": conversation["_id"]},
            {"$set": {"last_message": message_id, "last_activity": sent_at, "updated_at": sent_at}},
        )

        created = to_public(self._populate_message(find_by_id(self.db, "message", message_id, "Message")))
        self._publish(conversation_id, "newMessage", created)
        updated = self.db["conversation"].find_one({"_id": conversation["_id"]})
        if updated:
            self._publish(conversation_id, "conversationUpdated", to_public(self._populate_conversation(updated)))
        return created

    def delete_message(self, message_id: str, requester_id: str) -> None:
        message = find_by_id(self.db, "message", message_id, "Message")
        if message["sender"] != requester_id:
            raise PermissionDenied("You can only delete your own messages")
        self.db["message"].delete_one({"_id": message["_id"]})
        self._publish(message["conversation"], "messageDeleted", {"messageId": str(message["_id"])})

    def search_messaging_targets(self, requester_id: str, query: Optional[str]) -> List[dict]:
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            raise ValidationFailed(f"Search query must be at least {MIN_SEARCH_LENGTH} characters")
        pattern = {"$regex": re.escape(query), "$options": "i"}
        cursor = self.db["user"].find(
            {
                "_id": {"$ne": oid(requester_id, "User")},
                "$or": [{"username": pattern}, {"full_name": pattern}],
            },
            PARTICIPANT_FIELDS,
        ).limit(SEARCH_LIMIT)
        return [to_public(u) for u in cursor]
