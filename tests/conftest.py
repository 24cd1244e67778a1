"""Pytest configuration and fixtures."""

import os
import shutil
import tempfile

# Settings are read at import time, so point them at a scratch area first
_TEST_ROOT = tempfile.mkdtemp(prefix="ezmark-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_ROOT, 'test.db')}"
os.environ["PUBLIC_DIR"] = os.path.join(_TEST_ROOT, "public")
os.environ["OPENAI_API_KEY"] = ""
os.environ["QWEN_API_KEY"] = ""
os.environ["SUBJECTIVE_PREFETCH"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from ezmark.config import settings  # noqa: E402
from ezmark.database import Base, SessionLocal, engine  # noqa: E402
import ezmark.models  # noqa: E402,F401


EXAM_DATA = {
    "id": "exam-1",
    "title": "Midterm",
    "components": [
        {
            "id": "header",
            "type": "default-header",
            "position": {"pageIndex": 0, "top": 0, "left": 0, "width": 210, "height": 60},
        },
        {
            "id": "q1",
            "type": "multiple-choice",
            "question": "1 + 1 = ?",
            "options": [{"label": "A", "content": "2"}, {"label": "B", "content": "3"}],
            "answer": ["A"],
            "score": 2,
            "questionNumber": 1,
            "position": {"pageIndex": 0, "top": 80, "left": 10, "width": 190, "height": 30},
        },
        {
            "id": "q2",
            "type": "open",
            "content": "Explain photosynthesis.",
            "answer": "Light to chemical energy",
            "lines": 5,
            "score": 5,
            "questionNumber": 2,
            "position": {"pageIndex": 0, "top": 150, "left": 10, "width": 190, "height": 60},
        },
        {
            "id": "q3",
            "type": "fill-in-blank",
            "content": "Water boils at ___ C",
            "answer": "100",
            "score": 3,
            "questionNumber": 3,
            "position": {"pageIndex": 0, "top": 220, "left": 10, "width": 190, "height": 20},
        },
    ],
}


@pytest.fixture(autouse=True)
def fresh_state():
    """Empty database and public directory for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    shutil.rmtree(settings.public_dir, ignore_errors=True)
    os.makedirs(settings.uploads_dir, exist_ok=True)
    os.makedirs(settings.pipeline_dir, exist_ok=True)
    os.makedirs(settings.pdf_dir, exist_ok=True)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from ezmark.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def exam_data():
    import copy

    return copy.deepcopy(EXAM_DATA)


@pytest.fixture
def seeded(client, exam_data):
    """Teacher, two students, a class, an exam and a schedule created through the API."""
    teacher = client.post("/api/users", json={"data": {"username": "ms.lee"}}).json()["data"]
    students = [
        client.post("/api/students", json={"data": {"name": name, "studentId": sid, "teacher": teacher["documentId"]}}).json()["data"]
        for name, sid in (("Alice", "S001"), ("Bob", "S002"))
    ]
    klass = client.post("/api/classes", json={"data": {
        "name": "Class A",
        "students": [s["documentId"] for s in students],
        "teacher": teacher["documentId"],
    }}).json()["data"]
    exam = client.post("/api/exams", json={"data": {
        "projectName": "Midterm",
        "user": teacher["documentId"],
        "examData": exam_data,
    }}).json()["data"]
    schedule = client.post("/api/schedules", json={"data": {
        "name": "Midterm - Class A",
        "exam": exam["documentId"],
        "class": klass["documentId"],
        "teacher": teacher["documentId"],
    }}).json()["data"]
    return {
        "teacher": teacher,
        "students": students,
        "class": klass,
        "exam": exam,
        "schedule": schedule,
    }


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)
