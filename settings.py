"""
Runtime configuration for the Kalakriti backend.

Settings are read from the environment once, at process start, and handed to
create_app(). Nothing else in the code base looks at os.environ.
"""

import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import Request
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:19006",  # Expo web
    "exp://localhost:19000",
    "http://localhost:19000",
]


class Settings(BaseModel):
    model_config = {"frozen": True}

    environment: str = "production"
    port: int = 5000

    mongodb_uri: str = "mongodb://localhost:27017"
    database_name: str = "kalakriti"

    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"
    token_ttl_hours: int = 24
    bcrypt_rounds: int = 10

    cors_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    max_body_bytes: int = 10 * 1024 * 1024

    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None
    image_folder: str = "kalakriti_products"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        origins = list(DEFAULT_CORS_ORIGINS)
        for origin in os.getenv("CORS_ORIGIN", "").split(","):
            origin = origin.strip()
            if origin and origin not in origins:
                origins.append(origin)

        settings = cls(
            environment=os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "production",
            port=int(os.getenv("PORT", 5000)),
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "kalakriti"),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            token_ttl_hours=int(os.getenv("TOKEN_TTL_HOURS", 24)),
            cors_origins=origins,
            max_body_bytes=int(os.getenv("MAX_BODY_MB", 10)) * 1024 * 1024,
            cloudinary_cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
            cloudinary_api_key=os.getenv("CLOUDINARY_API_KEY"),
            cloudinary_api_secret=os.getenv("CLOUDINARY_API_SECRET"),
            image_folder=os.getenv("CLOUDINARY_FOLDER", "kalakriti_products"),
        )
        if settings.jwt_secret == "devsecret" and not settings.is_development:
            logger.warning("JWT_SECRET is not set; using the development secret")
        return settings


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.is_development else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
