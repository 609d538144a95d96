"""
Pytest configuration and fixtures for Annotation API tests.
"""

import os
import shutil
import tempfile
from typing import List, Optional
from uuid import uuid4

import fitz  # PyMuPDF
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_DATA_DIR = tempfile.mkdtemp(prefix="annotation_test_data_")
os.environ["DATABASE_PATH"] = os.path.join(TEST_DATA_DIR, "annotations.db")
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["PASSWORD_HASH_ITERATIONS"] = "1000"
os.environ["OLLAMA_BASE_URL"] = "http://127.0.0.1:9"
os.environ["AWS_S3_BUCKET_NAME"] = ""
os.environ["STORAGE_CLEANUP_ON_DELETE"] = "false"

from annotation_api.annotation_manager import AnnotationManager  # noqa: E402
from annotation_api.database import AnnotationDatabase  # noqa: E402
from annotation_api.events import ProgressBroadcaster  # noqa: E402
from annotation_api.generator import GenerationResult, parse_annotation_response  # noqa: E402
from annotation_api.main import annotation_manager, app, identity_service  # noqa: E402
from annotation_api.models import UserRole  # noqa: E402


class StubGenerator:
    """Generator that returns a canned model response, or raises a canned error."""

    def __init__(self, response: str = "GENRE: Educational\nCats are mammals.", error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.calls: List[tuple] = []

    def generate(self, text: str, title: str) -> GenerationResult:
        self.calls.append((text, title))
        if self.error is not None:
            raise self.error
        return parse_annotation_response(self.response)


class StubPublisher:
    """In-memory stand-in for AWSPublisher."""

    base_url = "https://test-bucket.s3.amazonaws.com/"

    def __init__(self):
        self.speech_calls: List[tuple] = []
        self.images: List[tuple] = []
        self.deleted: List[str] = []

    def publish_speech(self, text: str, annotation_id: str) -> str:
        self.speech_calls.append((text, annotation_id))
        return f"{self.base_url}tts/{annotation_id}_{len(self.speech_calls)}.mp3"

    def publish_image(self, data: bytes, annotation_id: str, content_type: str) -> str:
        self.images.append((data, annotation_id, content_type))
        return f"{self.base_url}images/{annotation_id}_{len(self.images)}.png"

    def key_for_url(self, url: Optional[str]) -> Optional[str]:
        if not url or not url.startswith(self.base_url):
            return None
        return url[len(self.base_url):]

    def delete_object(self, key: str) -> None:
        self.deleted.append(key)

    def test_connection(self) -> None:
        return None


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Remove the temporary database directory after the run."""
    yield TEST_DATA_DIR
    shutil.rmtree(TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def stub_generator(monkeypatch):
    """Replace the app's Ollama client with a stub."""
    generator = StubGenerator()
    monkeypatch.setattr(annotation_manager, "generator", generator)
    return generator


@pytest.fixture
def stub_publisher(monkeypatch):
    """Give the app an in-memory publisher."""
    publisher = StubPublisher()
    monkeypatch.setattr(annotation_manager, "publisher", publisher)
    return publisher


def build_pdf(*pages: str) -> bytes:
    """Build a real PDF with one page per argument; empty strings give blank pages."""
    doc = fitz.open()
    try:
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text)
        return doc.tobytes()
    finally:
        doc.close()


@pytest.fixture
def sample_pdf():
    """A one-page PDF with a single sentence of text."""
    return build_pdf("Cats are mammals.")


@pytest.fixture
def blank_pdf():
    """A valid PDF with no text at all."""
    return build_pdf("")


def register(client, role: str = "user", password: str = "secret123") -> dict:
    email = f"{role}-{uuid4().hex[:8]}@studynotes.io"
    response = client.post(
        "/auth/register",
        json={"email": email, "password": password, "name": f"Test {role}"},
    )
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    data["password"] = password
    return data


@pytest.fixture
def content_user(client):
    """A registered user promoted to the content role through the identity service."""
    data = register(client, role="content")
    promoted = identity_service.set_role(data["user"]["id"], UserRole.CONTENT)
    data["user"]["role"] = promoted.role.value
    return data


@pytest.fixture
def reader_user(client):
    """A registered user with the plain user role."""
    return register(client, role="user")


@pytest.fixture
def content_headers(content_user):
    return {"Authorization": f"Bearer {content_user['token']}"}


@pytest.fixture
def reader_headers(reader_user):
    return {"Authorization": f"Bearer {reader_user['token']}"}


@pytest.fixture
def manager(tmp_path):
    """An AnnotationManager on a fresh database with stub backends."""
    return AnnotationManager(
        database=AnnotationDatabase(tmp_path / "annotations.db"),
        generator=StubGenerator(),
        publisher=StubPublisher(),
        broadcaster=ProgressBroadcaster(),
    )

