"""
Media storage for image messages.
Images are validated with Pillow, then stored either in S3 (aioboto3) or on
local disk (aiofiles). Each stored object is identified by its key, which is
kept on the message row as image_public_id so it can be deleted later.
"""

import io
import os
import uuid
import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

import aioboto3
import aiofiles
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError

from .errors import ConfigError, MediaTimeoutError, UploadFailedError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = int(os.getenv('MEDIA_MAX_FILE_SIZE', str(5 * 1024 * 1024)))  # 5MB
ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp', '.gif'}
MAX_IMAGE_SIZE = (2048, 2048)
MEDIA_TIMEOUT_SECONDS = float(os.getenv('MEDIA_TIMEOUT_SECONDS', '15'))

CONTENT_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.webp': 'image/webp',
    '.gif': 'image/gif',
}
PIL_FORMATS = {'.jpg': 'JPEG', '.jpeg': 'JPEG', '.png': 'PNG', '.webp': 'WEBP'}


@dataclass(frozen=True)
class StoredMedia:
    url: str
    public_id: str


def _shrink(content: bytes, ext: str) -> bytes:
    """Downscale images larger than MAX_IMAGE_SIZE, keeping their format. GIFs are left alone."""
    if ext not in PIL_FORMATS:
        return content
    with Image.open(io.BytesIO(content)) as img:
        if img.width <= MAX_IMAGE_SIZE[0] and img.height <= MAX_IMAGE_SIZE[1]:
            return content
        fmt = PIL_FORMATS[ext]
        if fmt == 'JPEG' and img.mode != 'RGB':
            img = img.convert('RGB')
        img.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
        output = io.BytesIO()
        img.save(output, format=fmt)
        return output.getvalue()


async def read_image(file: UploadFile) -> Tuple[bytes, str]:
    """Validate an uploaded image and return its bytes and normalised extension."""
    if file.size and file.size > MAX_FILE_SIZE:
        raise ValidationError('Image too large. Max size is 5MB')

    ext = os.path.splitext(file.filename or '')[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"Invalid file type. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}")

    content = await file.read()
    if not content:
        raise ValidationError('Image file is empty')
    if len(content) > MAX_FILE_SIZE:
        raise ValidationError('Image too large. Max size is 5MB')

    try:
        with Image.open(io.BytesIO(content)) as img:
            img.verify()
        content = _shrink(content, ext)
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError):
        raise ValidationError('Invalid image file')
    return content, ext


class MediaUploader:
    """Base uploader: subclasses implement _put, _remove and public_url."""

    timeout = MEDIA_TIMEOUT_SECONDS

    @staticmethod
    def generate_key(owner_id: int, ext: str) -> str:
        return f"messages/user_{owner_id}/{uuid.uuid4().hex}{ext}"

    def public_url(self, key: str) -> str:
        raise NotImplementedError

    async def _put(self, key: str, content: bytes, content_type: str) -> None:
        raise NotImplementedError

    async def _remove(self, key: str) -> None:
        raise NotImplementedError

    async def upload_image(self, owner_id: int, file: UploadFile) -> StoredMedia:
        content, ext = await read_image(file)
        key = self.generate_key(owner_id, ext)
        try:
            await asyncio.wait_for(self._put(key, content, CONTENT_TYPES[ext]), self.timeout)
        except asyncio.TimeoutError:
            logger.warning('media_upload_timeout', extra={'key': key})
            raise MediaTimeoutError()
        logger.info('media_uploaded', extra={'key': key, 'bytes': len(content)})
        return StoredMedia(url=self.public_url(key), public_id=key)

    async def delete(self, public_id: str) -> None:
        try:
            await asyncio.wait_for(self._remove(public_id), self.timeout)
        except asyncio.TimeoutError:
            raise MediaTimeoutError()


class S3MediaUploader(MediaUploader):
    def __init__(self):
        # Support both AWS_S3_BUCKET (preferred) and legacy AWS_S3_BUCKET_NAME
        self.bucket = os.getenv('AWS_S3_BUCKET') or os.getenv('AWS_S3_BUCKET_NAME')
        self.region = os.getenv('AWS_S3_REGION') or os.getenv('AWS_REGION', 'us-east-1')
        self.session = aioboto3.Session()
        self.config = Config(
            signature_version='s3v4',
            connect_timeout=5,
            read_timeout=self.timeout,
            retries={'max_attempts': 2},
        )

    def _client(self):
        if not self.bucket:
            raise ConfigError('Media storage is not configured')
        return self.session.client(
            's3',
            region_name=self.region,
            aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID'),
            aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY'),
            config=self.config,
        )

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def _put(self, key: str, content: bytes, content_type: str) -> None:
        try:
            async with self._client() as client:
                await client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=content,
                    ContentType=content_type,
                    CacheControl='max-age=31536000',
                    Metadata={'uploaded-by': 'messego-backend', 'file-type': 'message-image'},
                )
        except (BotoCoreError, ClientError) as e:
            raise UploadFailedError(f"Failed to upload image: {e}")

    async def _remove(self, key: str) -> None:
        try:
            async with self._client() as client:
                await client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to delete image: {e}")


class LocalMediaUploader(MediaUploader):
    """Stores images under MEDIA_ROOT; meant for development and single-node setups."""

    def __init__(self, root: str = None, base_url: str = None):
        self.root = os.path.abspath(root or os.getenv('MEDIA_ROOT', 'media'))
        self.base_url = (base_url or os.getenv('MEDIA_BASE_URL', '/media')).rstrip('/')

    def path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise UpstreamError('Invalid media key')
        return path

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    async def _put(self, key: str, content: bytes, content_type: str) -> None:
        path = self.path_for(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            async with aiofiles.open(path, 'wb') as f:
                await f.write(content)
        except OSError as e:
            raise UploadFailedError(f"Failed to store image: {e}")

    async def _remove(self, key: str) -> None:
        path = self.path_for(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise UpstreamError(f"Failed to delete image: {e}")


@lru_cache()
def get_media_uploader() -> MediaUploader:
    backend = os.getenv('MEDIA_BACKEND', 's3').lower()
    if backend == 'local':
        return LocalMediaUploader()
    if backend == 's3':
        return S3MediaUploader()
    raise ConfigError(f"Unknown MEDIA_BACKEND: {backend}")
