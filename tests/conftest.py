import pytest
from fastapi.testclient import TestClient
from data.database import Base, engine, SessionLocal
from main import app  # import your FastAPI app
from services.assignment import get_random_source
from services.cache import get_cache_client, get_mock_cache_client

# Root conftest.py points DATABASE_URL at ./test.db before anything is imported
AUTH_HEADERS = {"Authorization": "Bearer fake-client-token"}


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def cache_client():
    return get_mock_cache_client()


@pytest.fixture
def client(cache_client):
    app.dependency_overrides[get_cache_client] = lambda: cache_client
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def fixed_random():
    """Overrides the assignment random source with a repeating sequence."""
    def install(*values):
        sequence = list(values)
        state = {"index": 0}

        def rand():
            value = sequence[state["index"] % len(sequence)]
            state["index"] += 1
            return value

        app.dependency_overrides[get_random_source] = lambda: rand
        return rand

    return install


@pytest.fixture
def auth_headers():
    return dict(AUTH_HEADERS)


def _build_payload(**overrides):
    payload = {
        "name": "Homepage hero test",
        "description": "Hero copy A/B test",
        "pageId": "page-123",
        "variants": [
            {"id": "control", "name": "Control", "components": [], "trafficPercentage": 50, "isControl": True},
            {"id": "v1", "name": "Bold hero", "components": [{"type": "hero"}], "trafficPercentage": 50, "isControl": False},
        ],
        "trafficSplit": {"control": 50, "v1": 50},
        "conversionGoal": "signup",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_payload():
    return _build_payload


@pytest.fixture
def create_test(client, auth_headers):
    def _create(start=False, **overrides):
        response = client.post("/ab-tests", json=_build_payload(**overrides), headers=auth_headers)
        assert response.status_code == 201, response.text
        test = response.json()
        if start:
            response = client.post(f"/ab-tests/{test['id']}/start", headers=auth_headers)
            assert response.status_code == 200, response.text
            test = response.json()
        return test

    return _create
