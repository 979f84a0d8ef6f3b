import os

os.environ["JWT_SECRET"] = "test-secret-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["API_PREFIX"] = "/api"

import httpx
import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from database import ensure_indexes, get_db
from main import app

API = "/api"


def sample_course(**overrides):
    course = {
        "title": "Docker in Practice",
        "description": "Containers from first image to compose stacks",
        "category": "DevOps",
        "videos": [
            {"title": "Intro", "youtubeId": "dQw4w9WgXcQ"},
            {"title": "Images", "youtubeId": "abcdefghijk"},
            {"title": "Compose", "youtubeId": "ABCDEFGHIJK"},
        ],
    }
    course.update(overrides)
    return course


@pytest_asyncio.fixture
async def db():
    client = AsyncMongoMockClient()
    database = client["learntube_test"]
    await ensure_indexes(database)
    yield database


@pytest_asyncio.fixture
async def client(db):
    app.dependency_overrides[get_db] = lambda: db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def register(client, role, email, name=None, password="secret123"):
    response = await client.post(
        f"{API}/auth/register",
        json={"name": name or email.split("@")[0], "email": email, "password": password, "role": role},
    )
    assert response.status_code == 201, response.text
    data = response.json()
    return {"Authorization": f"Bearer {data['token']}"}, data["user"]


@pytest_asyncio.fixture
async def instructor(client):
    return await register(client, "instructor", "ada@learntube.io", name="Ada")


@pytest_asyncio.fixture
async def other_instructor(client):
    return await register(client, "instructor", "grace@learntube.io", name="Grace")


@pytest_asyncio.fixture
async def student(client):
    return await register(client, "student", "sam@learntube.io", name="Sam")


@pytest_asyncio.fixture
async def other_student(client):
    return await register(client, "student", "kim@learntube.io", name="Kim")


@pytest.fixture
def course_payload():
    return sample_course()


@pytest_asyncio.fixture
async def course(client, instructor, course_payload):
    headers, _ = instructor
    response = await client.post(f"{API}/courses", json=course_payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["course"]
