"""
Database Schemas for Sparrow

Each Pydantic model represents a collection in your database.
Collection name is the lowercase of the class name by convention.
References to other documents are stored as the string form of their _id.
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr

Visibility = Literal["public", "followers", "private"]
MessageType = Literal["text", "image"]
NotificationType = Literal["like", "follow", "comment"]

VISIBILITIES = ("public", "followers", "private")
NOTIFICATION_TYPES = ("like", "follow", "comment")

# Core domain models

class User(BaseModel):
    full_name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Unique, stored lowercase")
    username: str = Field(..., min_length=3, max_length=20, description="Unique lowercase handle")
    password_hash: str
    profile_img: str = ""
    cover_img: str = ""
    bio: str = Field("", max_length=160)
    location: str = Field("", max_length=50)
    website: str = Field("", max_length=100)
    followers: List[str] = Field(default_factory=list, description="User ids following this user")
    following: List[str] = Field(default_factory=list, description="User ids this user follows")
    liked_posts: List[str] = Field(default_factory=list)


class Reply(BaseModel):
    id: str = Field(..., description="Embedded reply id")
    text: str
    user: str
    mentions: List[str] = Field(default_factory=list)
    reply_to: Optional[str] = Field(None, description="User being replied to")
    parent_comment: str
    created_at: datetime


class Comment(BaseModel):
    id: str = Field(..., description="Embedded comment id")
    text: str
    user: str
    mentions: List[str] = Field(default_factory=list)
    reply_to: Optional[str] = None
    replies: List[Reply] = Field(default_factory=list)
    created_at: datetime


class Post(BaseModel):
    user: str = Field(..., description="Owner user id")
    text: Optional[str] = Field(None, max_length=280)
    img: Optional[str] = Field(None, description="Public media URL")
    visibility: Visibility = "public"
    likes: List[str] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)


class Conversation(BaseModel):
    participants: List[str] = Field(..., min_length=2, max_length=2)
    participant_key: str = Field(..., description="Sorted participant ids joined by ':'")
    last_message: Optional[str] = None
    last_activity: datetime


class ReadReceipt(BaseModel):
    user: str
    read_at: datetime


class Message(BaseModel):
    conversation: str
    sender: str
    content: str = Field(..., min_length=1)
    message_type: MessageType = "text"
    image_url: Optional[str] = None
    read_by: List[ReadReceipt] = Field(default_factory=list)
    edited: bool = False
    edited_at: Optional[datetime] = None


class Notification(BaseModel):
    from_user: str
    to_user: str
    type: NotificationType
    post: Optional[str] = None
    message: Optional[str] = None
    read: bool = False


# Request bodies

class SignupRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str
    username: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    full_name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None


class SendMessageRequest(BaseModel):
    content: str = ""
    messageType: MessageType = "text"
    imageUrl: Optional[str] = None


class UpdatePostRequest(BaseModel):
    text: str = ""


class VisibilityRequest(BaseModel):
    visibility: str


class CommentRequest(BaseModel):
    text: str = ""
    reply_to: Optional[str] = None
