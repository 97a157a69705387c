from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import main
from auth import get_verifier
from database import get_blog_store, get_request_store, get_user_store
from errors import Unauthenticated
from tests.memory_store import MemoryBlogStore, MemoryDonationRequestStore, MemoryUserStore


class FakeVerifier:
    """Accepts tokens of the form "token-<email>"."""

    def verify(self, token):
        if not token.startswith("token-"):
            raise Unauthenticated()
        return token[len("token-"):].lower()


def auth(email):
    return {"Authorization": f"Bearer token-{email}"}


REQUEST_BODY = {
    "requesterName": "A",
    "requesterEmail": "a@x.com",
    "recipientName": "B",
    "bloodGroup": "O+",
    "recipientDistrict": "Dhaka",
}


@pytest.fixture
def stores():
    users = MemoryUserStore()
    users.add("Alice", "a@x.com", role="donor")
    users.add("Dan", "d@x.com", role="donor")
    users.add("Eve", "e@x.com", role="donor")
    users.add("Vera", "v@x.com", role="volunteer")
    users.add("Ada", "admin@x.com", role="admin")
    return SimpleNamespace(
        requests=MemoryDonationRequestStore(),
        users=users,
        blogs=MemoryBlogStore(),
    )


@pytest.fixture
def client(stores):
    app = main.app
    app.dependency_overrides[get_request_store] = lambda: stores.requests
    app.dependency_overrides[get_user_store] = lambda: stores.users
    app.dependency_overrides[get_blog_store] = lambda: stores.blogs
    app.dependency_overrides[get_verifier] = lambda: FakeVerifier()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def pending_id(client):
    res = client.post("/donationRequests", json=REQUEST_BODY, headers=auth("a@x.com"))
    assert res.status_code == 201
    return res.json()["insertedId"]


@pytest.fixture
def inprogress_id(client, pending_id):
    res = client.post(f"/donationRequests/{pending_id}/confirm", headers=auth("d@x.com"))
    assert res.status_code == 200
    return pending_id
