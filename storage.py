"""
Product image storage on Cloudinary.

Images arrive as base64 strings, optionally already prefixed with a data URI.
Uploads go to a single folder and the permanent secure_url is what gets stored
on the product.
"""

import logging
from typing import Any, Dict, Optional

import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader
from fastapi import Request

from errors import ConfigurationError, InvalidInputError, StorageUnavailableError
from settings import Settings

logger = logging.getLogger(__name__)

DATA_URI_PREFIX = "data:image/jpeg;base64,"
ALLOWED_FORMATS = ["jpg", "jpeg", "png"]


def normalize_image_data(image_data: Optional[str]) -> str:
    if not image_data:
        raise InvalidInputError()
    if "data:image" in image_data:
        return image_data
    return DATA_URI_PREFIX + image_data


def public_id_from_url(url: str, folder: str) -> Optional[str]:
    """Recover the Cloudinary public id of an uploaded image from its URL.

    https://res.cloudinary.com/<cloud>/image/upload/v123/<folder>/abc.jpg
    yields "<folder>/abc".
    """
    marker = f"/{folder}/"
    if "/upload/" not in url or marker not in url:
        return None
    name = url.split(marker, 1)[1].split("?", 1)[0].split("#", 1)[0]
    if not name:
        return None
    stem, dot, _ = name.rpartition(".")
    if dot and "/" not in name[len(stem):]:
        name = stem
    return f"{folder}/{name}"


class ImageStore:
    def __init__(self, cloud_name: str, api_key: str, api_secret: str, folder: str = "kalakriti_products"):
        self.folder = folder
        self._credentials = {
            "cloud_name": cloud_name,
            "api_key": api_key,
            "api_secret": api_secret,
            "secure": True,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImageStore":
        missing = [
            name
            for name, value in (
                ("CLOUDINARY_CLOUD_NAME", settings.cloudinary_cloud_name),
                ("CLOUDINARY_API_KEY", settings.cloudinary_api_key),
                ("CLOUDINARY_API_SECRET", settings.cloudinary_api_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing required environment variable: {', '.join(missing)}")
        return cls(
            settings.cloudinary_cloud_name,
            settings.cloudinary_api_key,
            settings.cloudinary_api_secret,
            folder=settings.image_folder,
        )

    def store(self, image_data: Optional[str]) -> str:
        data_uri = normalize_image_data(image_data)
        logger.debug("Uploading to Cloudinary with length: %d", len(data_uri))
        try:
            response: Dict[str, Any] = cloudinary.uploader.upload(
                data_uri,
                folder=self.folder,
                resource_type="auto",
                allowed_formats=ALLOWED_FORMATS,
                **self._credentials,
            )
        except (cloudinary.exceptions.Error, OSError) as exc:
            logger.error("Cloudinary upload error: %s", exc)
            raise StorageUnavailableError(f"Image upload failed: {exc}") from exc

        url = response.get("secure_url")
        if not url:
            raise StorageUnavailableError("Image upload returned no URL")
        logger.info("Cloudinary upload successful: %s", url)
        return url

    def delete(self, url: str) -> None:
        public_id = public_id_from_url(url, self.folder)
        if public_id is None:
            logger.warning("Not a %s image URL, skipping delete: %s", self.folder, url)
            return
        try:
            cloudinary.uploader.destroy(public_id, invalidate=True, **self._credentials)
            logger.info("Deleted orphaned image %s", public_id)
        except (cloudinary.exceptions.Error, OSError) as exc:
            logger.warning("Could not delete image %s: %s", public_id, exc)

    def ping(self) -> bool:
        try:
            cloudinary.api.ping(**self._credentials)
        except (cloudinary.exceptions.Error, OSError) as exc:
            logger.error("Cloudinary connection error: %s", exc)
            return False
        logger.info("Cloudinary connection successful")
        return True


def get_image_store(request: Request) -> ImageStore:
    return request.app.state.image_store
