import io
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from PIL import Image
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Configure test environment before the app is imported
os.environ.setdefault('JWT_SECRET', 'test-secret')
os.environ.setdefault('DATABASE_URL', 'sqlite+aiosqlite://')

from messego.errors import UploadFailedError, UpstreamError  # noqa: E402
from messego.gate import SESSION_COOKIE_NAME  # noqa: E402
from messego.main import app  # noqa: E402
from messego.media import MediaUploader, get_media_uploader  # noqa: E402
from messego.models import Base, get_session  # noqa: E402

PASSWORD = 'Secret123!'


class FakeUploader(MediaUploader):
    """In-memory object store; flip fail_upload / fail_delete to simulate outages."""

    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.fail_upload = False
        self.fail_delete = False

    def public_url(self, key):
        return f"https://media.test/{key}"

    async def _put(self, key, content, content_type):
        if self.fail_upload:
            raise UploadFailedError('Failed to upload image: storage down')
        self.objects[key] = content

    async def _remove(self, key):
        if self.fail_delete:
            raise UpstreamError('Failed to delete image: storage down')
        self.objects.pop(key, None)
        self.deleted.append(key)


def png_bytes(size=(10, 10)) -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', size, (200, 30, 30)).save(buf, format='PNG')
    return buf.getvalue()


def as_user(token: str) -> dict:
    return {'Cookie': f'{SESSION_COOKIE_NAME}={token}'}


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        'sqlite+aiosqlite://',
        poolclass=StaticPool,
        connect_args={'check_same_thread': False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest_asyncio.fixture
async def client(session_factory, uploader):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_media_uploader] = lambda: uploader
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(client):
    """Register and log in a user; returns (user dict, token)."""

    async def _make(name: str, email: str, password: str = PASSWORD):
        r = await client.post('/api/auth/signup', json={'name': name, 'email': email, 'password': password})
        assert r.status_code == 201, r.text
        user = r.json()['data']['user']
        r = await client.post('/api/auth/login', json={'email': email, 'password': password})
        assert r.status_code == 200, r.text
        token = r.json()['data']['token']
        # requests authenticate explicitly, never through the shared jar
        client.cookies.clear()
        return user, token

    return _make
