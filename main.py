import asyncio
import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, Response, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

import config
import database
from auth import AuthService, issue_token, token_from_request, verify_token
from errors import ServiceError, register_error_handlers
from media import MediaStore, MediaUpload
from messaging import ConversationService
from notifications import NotificationService
from posts import PostService
from realtime import RealtimeHub, WebSocketConnection
from schemas import (
    CommentRequest,
    LoginRequest,
    ProfileUpdateRequest,
    SendMessageRequest,
    SignupRequest,
    UpdatePostRequest,
    VisibilityRequest,
)
from users import UserService

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


class Services:
    """Everything a request needs, bound to one database."""

    def __init__(self, db, media: Optional[MediaStore] = None):
        self.db = db
        self.media = media
        self.auth = AuthService(db)
        self.notifications = NotificationService(db)
        self.conversations = ConversationService(db)
        self.hub = RealtimeHub(verify_token, self.conversations.is_participant)
        self.conversations.hub = self.hub
        self.users = UserService(db, self.notifications, media)
        self.posts = PostService(db, self.notifications, media)


app = FastAPI(title="Sparrow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

app.state.services = None
if database.db is not None:
    app.state.services = Services(database.db, MediaStore())
    database.ensure_indexes(database.db)
    app.mount(config.MEDIA_URL, StaticFiles(directory=config.MEDIA_ROOT, check_dir=False), name="media")


def get_services(request: Request) -> Services:
    services = request.app.state.services
    if services is None:
        raise ServiceError("Database not available")
    return services


def current_user(request: Request, services: Services = Depends(get_services)) -> dict:
    return services.auth.current_user(token_from_request(request))


def uid(user: dict) -> str:
    return str(user["_id"])


def read_upload(upload: Optional[UploadFile], services: Services) -> Optional[MediaUpload]:
    if upload is None or not upload.filename:
        return None
    # one byte past the limit so oversized files are still detected
    limit = services.media.max_bytes if services.media else config.MAX_UPLOAD_BYTES
    return MediaUpload(upload.filename, upload.content_type or "", upload.file.read(limit + 1))


def session_response(response: Response, user: dict, status: int = 200) -> dict:
    token = issue_token(uid(user))
    response.status_code = status
    response.set_cookie(
        config.SESSION_COOKIE,
        token,
        max_age=config.SESSION_TTL,
        httponly=True,
        samesite="strict",
        secure=os.getenv("ENV") == "production",
    )
    return {"user": database.to_public(user), "token": token}


@app.get("/")
def root():
    return {"status": "ok", "service": "sparrow-api"}


@app.get("/test")
def test_database(request: Request):
    status = {
        "backend": "running",
        "database": "unavailable",
        "collections": []
    }
    services = request.app.state.services
    try:
        if services is not None:
            status["database"] = "connected"
            status["collections"] = services.db.list_collection_names()[:10]
    except Exception as e:
        status["database"] = f"error: {str(e)[:60]}"
    return status


# ----------------- Auth -----------------

@app.post("/api/auth/signup")
def signup(payload: SignupRequest, response: Response, services: Services = Depends(get_services)):
    user = services.auth.signup(payload.full_name, payload.email, payload.password, payload.username)
    return session_response(response, user, status=201)


@app.post("/api/auth/login")
def login(payload: LoginRequest, response: Response, services: Services = Depends(get_services)):
    user = services.auth.login(payload.email, payload.password)
    return session_response(response, user)


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(config.SESSION_COOKIE)
    return {"message": "Logged out successfully"}


@app.get("/api/auth/me")
def me(user: dict = Depends(current_user)):
    return database.to_public(user)


# ----------------- Users -----------------

@app.get("/api/users/profile/{username}")
def get_profile(username: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.get_profile(username)


@app.post("/api/users/update")
def update_profile(payload: ProfileUpdateRequest, user: dict = Depends(current_user),
                   services: Services = Depends(get_services)):
    return services.users.update_profile(uid(user), **payload.model_dump())


@app.post("/api/users/upload-image")
def upload_profile_image(profile_img: Optional[UploadFile] = File(None), user: dict = Depends(current_user),
                         services: Services = Depends(get_services)):
    return services.users.upload_profile_image(uid(user), read_upload(profile_img, services))


@app.get("/api/users/search")
def search_users(q: Optional[str] = None, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.search(uid(user), q)


@app.post("/api/users/follow/{target_id}")
def follow_unfollow(target_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    following = services.users.follow_toggle(uid(user), target_id)
    message = "User followed successfully" if following else "User unfollowed successfully"
    return {"message": message, "following": following}


@app.get("/api/users/suggested")
def suggested_users(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.suggested(uid(user))


@app.get("/api/users/{user_id}/followers")
def followers(user_id: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
              user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.followers(user_id, page, limit)


@app.get("/api/users/{user_id}/following")
def following(user_id: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
              user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.users.following(user_id, page, limit)


# ----------------- Messages -----------------

@app.get("/api/messages/conversations")
def list_conversations(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.conversations.list_conversations(uid(user))


@app.get("/api/messages/conversations/{participant_id}")
def get_or_create_conversation(participant_id: str, user: dict = Depends(current_user),
                               services: Services = Depends(get_services)):
    return services.conversations.find_or_create_conversation(uid(user), participant_id)


@app.get("/api/messages/search")
def search_messaging_targets(q: Optional[str] = None, user: dict = Depends(current_user),
                             services: Services = Depends(get_services)):
    return services.conversations.search_messaging_targets(uid(user), q)


@app.get("/api/messages/{conversation_id}/messages")
def list_messages(conversation_id: str, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
                  user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.conversations.list_messages(conversation_id, uid(user), page, limit)


@app.post("/api/messages/{conversation_id}/messages", status_code=201)
def send_message(conversation_id: str, payload: SendMessageRequest, user: dict = Depends(current_user),
                 services: Services = Depends(get_services)):
    return services.conversations.send_message(
        conversation_id, uid(user), payload.content, payload.messageType, payload.imageUrl
    )


@app.delete("/api/messages/messages/{message_id}")
def delete_message(message_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    services.conversations.delete_message(message_id, uid(user))
    return {"message": "Message deleted successfully"}


# ----------------- Notifications -----------------

@app.get("/api/notifications")
def list_notifications(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                       user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.notifications.list(uid(user), page, limit)


@app.get("/api/notifications/unread-count")
def unread_count(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return {"count": services.notifications.unread_count(uid(user))}


@app.patch("/api/notifications/read-all")
def mark_all_read(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    services.notifications.mark_all_read(uid(user))
    return {"message": "All notifications marked as read"}


@app.patch("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    services.notifications.mark_read(notification_id, uid(user))
    return {"message": "Notification marked as read"}


@app.delete("/api/notifications/{notification_id}")
def delete_notification(notification_id: str, user: dict = Depends(current_user),
                        services: Services = Depends(get_services)):
    services.notifications.delete(notification_id, uid(user))
    return {"message": "Notification deleted successfully"}


@app.delete("/api/notifications")
def delete_notifications(user: dict = Depends(current_user), services: Services = Depends(get_services)):
    services.notifications.delete_all(uid(user))
    return {"message": "Notifications deleted successfully"}


# ----------------- Posts -----------------

@app.post("/api/posts/create", status_code=201)
def create_post(text: Optional[str] = Form(None), visibility: str = Form("public"),
                img: Optional[UploadFile] = File(None), user: dict = Depends(current_user),
                services: Services = Depends(get_services)):
    return services.posts.create(uid(user), text, read_upload(img, services), visibility)


@app.get("/api/posts/all")
def all_posts(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
              user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.posts.list_all(uid(user), page, limit)


@app.get("/api/posts/dashboard-posts")
def dashboard_posts(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                    user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.posts.dashboard(uid(user), page, limit)


@app.get("/api/posts/user/{user_id}")
def user_posts(user_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.posts.list_for_user(uid(user), user_id)


@app.put("/api/posts/{post_id}")
def update_post(post_id: str, payload: UpdatePostRequest, user: dict = Depends(current_user),
                services: Services = Depends(get_services)):
    return services.posts.update(post_id, uid(user), payload.text)


@app.put("/api/posts/{post_id}/visibility")
def update_post_visibility(post_id: str, payload: VisibilityRequest, user: dict = Depends(current_user),
                           services: Services = Depends(get_services)):
    return services.posts.set_visibility(post_id, uid(user), payload.visibility)


@app.delete("/api/posts/{post_id}")
def delete_post(post_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    services.posts.delete(post_id, uid(user))
    return {"message": "Post deleted successfully"}


@app.post("/api/posts/like/{post_id}")
def like_unlike_post(post_id: str, user: dict = Depends(current_user), services: Services = Depends(get_services)):
    return services.posts.toggle_like(post_id, uid(user))


@app.post("/api/posts/comment/{post_id}", status_code=201)
def comment_on_post(post_id: str, payload: CommentRequest, user: dict = Depends(current_user),
                    services: Services = Depends(get_services)):
    return services.posts.add_comment(post_id, uid(user), payload.text)


@app.post("/api/posts/comment/{post_id}/{comment_id}/reply", status_code=201)
def reply_to_comment(post_id: str, comment_id: str, payload: CommentRequest, user: dict = Depends(current_user),
                     services: Services = Depends(get_services)):
    return services.posts.add_reply(post_id, comment_id, uid(user), payload.text, payload.reply_to)


# ----------------- Real-time -----------------

@app.websocket("/ws")
async def realtime(websocket: WebSocket):
    services = websocket.app.state.services
    await websocket.accept()
    if services is None:
        await websocket.close(code=1011, reason="Database not available")
        return
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    logger.info("Connection opened: %s", connection.id)
    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                connection.deliver("error", {"error": "Frames must be JSON objects"})
                continue
            if not isinstance(frame, dict) or not frame.get("event"):
                connection.deliver("error", {"error": "Frames must look like {\"event\": ..., \"data\": ...}"})
                continue
            await run_in_threadpool(services.hub.handle, connection, frame["event"], frame.get("data"))
    except WebSocketDisconnect as exc:
        logger.info("Connection closed: %s (%s)", connection.id, exc.code)
    finally:
        services.hub.disconnect(connection)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
