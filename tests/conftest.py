import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_indexes
from errors import InvalidInputError, StorageUnavailableError
from main import create_app
from settings import Settings


class FakeImageStore:
    """Stands in for Cloudinary; images listed in `rejected` fail to upload."""

    folder = "kalakriti_products"

    def __init__(self):
        self.uploaded = []
        self.deleted = []
        self.rejected = set()

    def store(self, image_data):
        if not image_data:
            raise InvalidInputError()
        if image_data in self.rejected:
            raise StorageUnavailableError("Image upload failed: rejected by store")
        url = f"https://res.cloudinary.com/demo/image/upload/v1/{self.folder}/img{len(self.uploaded)}.jpg"
        self.uploaded.append(url)
        return url

    def delete(self, url):
        self.deleted.append(url)


@pytest.fixture
def settings():
    return Settings(environment="development", jwt_secret="test-secret")


@pytest.fixture
def db():
    database = mongomock.MongoClient().kalakriti
    create_indexes(database, text_indexes=False)
    return database


@pytest.fixture
def image_store():
    return FakeImageStore()


@pytest.fixture
def app(settings, db, image_store):
    return create_app(settings, db=db, image_store=image_store)


@pytest.fixture
def client(app):
    return TestClient(app)


def register(client, name="Asha", email="asha@example.com", password="secret123", role="artisan"):
    resp = client.post(
        "/api/auth/register",
        json={"name": name, "email": email, "password": password, "role": role},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def bearer(session):
    return {"Authorization": f"Bearer {session['token']}"}


@pytest.fixture
def artisan(client):
    return register(client, name="Asha", email="asha@example.com", role="artisan")


@pytest.fixture
def buyer(client):
    return register(client, name="Ravi", email="ravi@example.com", role="buyer")
