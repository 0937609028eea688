import os

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.pop("AI_API_KEY", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mercado_felino import chat
from mercado_felino.chat import ModelReply
from mercado_felino.database import Base, get_db
from mercado_felino.main import app
from mercado_felino.models import Product

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class FakeConversation:
    def __init__(self, model):
        self.model = model

    def _next(self):
        if self.model.replies:
            reply = self.model.replies.pop(0)
        else:
            reply = ModelReply(text="Miau! ¿En qué te ayudo?")
        if isinstance(reply, Exception):
            raise reply
        return reply

    def send(self, text):
        self.model.sent.append(text)
        return self._next()

    def send_tool_results(self, results):
        self.model.tool_results.append(list(results))
        return self._next()


class FakeChatModel:
    """Scripted stand-in for the generative model."""

    def __init__(self):
        self.replies = []
        self.histories = []
        self.tools = []
        self.sent = []
        self.tool_results = []

    def start(self, history, tools):
        self.histories.append(list(history))
        self.tools.append(list(tools))
        return FakeConversation(self)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def chat_model():
    model = FakeChatModel()
    app.dependency_overrides[chat.get_chat_model] = lambda: model
    return model


def register(client, username, password="secret", role=None):
    body = {"username": username, "password": password}
    if role:
        body["role"] = role
    response = client.post("/api/auth/register", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def auth_headers(user):
    return {"Authorization": f"Bearer {user['token']}"}


@pytest.fixture
def user(client):
    return register(client, "michi")


@pytest.fixture
def admin(client):
    return register(client, "boss", role="admin")


@pytest.fixture
def make_product(db):
    def _make(name="Rascador", stock=10, price=25.0, description="Rascador de sisal", category=None):
        product = Product(name=name, description=description, price=price, stock=stock, category=category)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product.id
    return _make
