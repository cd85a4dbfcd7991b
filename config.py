"""
Runtime settings for the Sparrow API.

Values come from the environment (a local .env file is loaded when present).
"""
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
SESSION_TTL = int(os.getenv("SESSION_TTL", 15 * 24 * 60 * 60))  # 15 days
SESSION_COOKIE = "jwt"

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

MEDIA_ROOT = os.getenv("MEDIA_ROOT", "uploads")
MEDIA_URL = os.getenv("MEDIA_URL", "/media")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))  # 5MB

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))
