"""
Shared fixtures: settings tuned for tests and a ``Services`` container wired
to the in-memory fakes.
"""

import pytest

from agentkb.config import Settings
from agentkb.container import Services
from agentkb.services.object_storage import ObjectStorage

from tests.fakes import (
    FakeChatFactory,
    FakeClock,
    FakeDocumentStore,
    FakeGenAI,
    FakeS3Client,
)

MODEL_ID = "5e7f9a1b-3c5d-4e7f-8a9b-1c3d5e7f9a1b"
PROJECT_ID = "7a9b1c3d-5e7f-4a9b-8c1d-3e5f7a9b1c3d"
DATABASE_ID = "2c4e6a8b-0d2f-4b6d-8f0a-2c4e6a8b0d2f"


def make_settings(**overrides) -> Settings:
    values = dict(
        do_api_token="test-token",
        do_model_id=MODEL_ID,
        do_project_id=PROJECT_ID,
        do_database_id=DATABASE_ID,
        do_embedding_model_id=None,
        do_embedding_model_name=None,
        storage_bucket="maia",
        agent_instruction="You are a careful medical records assistant.",
        agent_instruction_file=None,
        agent_temperature=0.0,
        deployment_poll_interval=30.0,
        deployment_poll_attempts=50,
        deployment_early_failure_window=120.0,
        endpoint_poll_interval=30.0,
        endpoint_poll_attempts=20,
        indexing_poll_interval=15.0,
        indexing_max_duration=3600.0,
        ephemeral_indexing_enabled=False,
        resume_indexing_on_startup=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def genai(clock):
    return FakeGenAI(clock)


@pytest.fixture
def documents():
    return FakeDocumentStore()


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def storage(s3, clock):
    return ObjectStorage(s3, "maia", sleep=clock.sleep)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def chat_factory():
    return FakeChatFactory()


@pytest.fixture
def services(settings, genai, documents, storage, clock, chat_factory):
    return Services.create(
        settings,
        genai,
        documents,
        storage,
        clock=clock,
        chat_factory=chat_factory,
    )
