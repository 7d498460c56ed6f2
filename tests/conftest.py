import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from split_service.config import Settings
from split_service.context import build_context, get_context
from split_service.database import Base, get_db
from split_service.jobs import RecordingJobQueue
from split_service.content import InMemoryContentRepository
from split_service.schemas import ExperimentCreate, GoalCreate
from split_service.services import experiment_service
from split_service.utils.cache import completed_stats_cache
from fastapi.testclient import TestClient
from split_service.main import app

import split_service.models  # noqa: F401

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_TOKEN = "test-token"


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test"""
    Base.metadata.create_all(bind=engine)
    completed_stats_cache.clear()
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return Settings(api_tokens=[TEST_TOKEN])


@pytest.fixture
def content():
    return InMemoryContentRepository()


@pytest.fixture
def jobs():
    return RecordingJobQueue()


@pytest.fixture
def notifications():
    """Messages handed to the notifier: (recipient, subject, body)"""
    return []


@pytest.fixture
def ctx(db, settings, content, jobs, notifications):
    # db first: the cascade listener queries tables as soon as nodes change
    return build_context(
        settings=settings,
        content=content,
        session_factory=TestingSessionLocal,
        jobs=jobs,
        notifier=lambda recipient, subject, body: notifications.append((recipient, subject, body)),
    )


@pytest.fixture
def tree(ctx, content):
    """
    1 Home
      10 Pricing            (control)
        11 Plans
          13 Enterprise
        12 FAQ
      20 Pricing v2         (variant, no children of its own)
      30 Plans v2
    """
    content.add_node(1, None, "Home")
    content.add_node(10, 1, "Pricing")
    content.add_node(11, 10, "Plans")
    content.add_node(13, 11, "Enterprise")
    content.add_node(12, 10, "FAQ")
    content.add_node(20, 1, "Pricing v2")
    content.add_node(30, 1, "Plans v2")
    return content


@pytest.fixture
def draft_experiment(db, ctx, tree):
    return experiment_service.create_experiment(db, ctx, ExperimentCreate(
        name="Pricing Page",
        handle="pricing-page",
        control_node_id=10,
        variant_node_id=20,
        traffic_split=50,
        goals=[
            GoalCreate(goal_type="form"),
            GoalCreate(goal_type="phone", sort_order=1),
            GoalCreate(goal_type="email", sort_order=2),
            GoalCreate(goal_type="download", sort_order=3),
        ],
    ))


@pytest.fixture
def sample_experiment(db, ctx, draft_experiment):
    """Running experiment on node 10 (control) vs node 20 (variant)"""
    return experiment_service.start_experiment(db, ctx, draft_experiment)


@pytest.fixture
def client(db, ctx):
    """Test client with database and context dependency overrides"""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {TEST_TOKEN}"}
