"""
Tests for conflict-safe user document updates.
"""

import pytest

from agentkb.errors import DocumentConflictError, DocumentNotFoundError
from agentkb.services.user_store import UserStore, update_document

from tests.fakes import USERS_DB, FakeDocumentStore


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def store():
    store = FakeDocumentStore()
    store.seed({"_id": "alice", "kbName": "alice-kb-20260301123456", "workflowStage": "approved"})
    return store


class TestUpdateDocument:
    @pytest.mark.asyncio
    async def test_transform_merges_partial(self, store):
        doc = await update_document(store, USERS_DB, "alice", lambda latest: {"assignedAgentId": "a-1"})
        assert doc["assignedAgentId"] == "a-1"
        assert doc["kbName"] == "alice-kb-20260301123456"
        assert store.doc("alice")["_rev"].startswith("2-")

    @pytest.mark.asyncio
    async def test_none_from_transform_writes_nothing(self, store):
        doc = await update_document(store, USERS_DB, "alice", lambda latest: None)
        assert store.save_attempts == 0
        assert doc["_id"] == "alice"

    @pytest.mark.asyncio
    async def test_identical_partial_writes_nothing(self, store):
        await update_document(store, USERS_DB, "alice", lambda latest: {"workflowStage": "approved"})
        assert store.save_attempts == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, store):
        sleeps = _Sleeps()
        store.force_conflicts = 10
        with pytest.raises(DocumentConflictError) as exc_info:
            await update_document(
                store, USERS_DB, "alice", lambda latest: {"provisioned": True}, sleep=sleeps
            )
        assert store.save_attempts == 3
        assert sleeps.delays == [0.15, 0.3]
        assert exc_info.value.status_code == 409
        assert "provisioned" not in store.doc("alice")

    @pytest.mark.asyncio
    async def test_succeeds_on_last_attempt(self, store):
        sleeps = _Sleeps()
        store.force_conflicts = 2
        doc = await update_document(
            store, USERS_DB, "alice", lambda latest: {"provisioned": True}, sleep=sleeps
        )
        assert doc["provisioned"] is True
        assert store.save_attempts == 3

    @pytest.mark.asyncio
    async def test_concurrent_writer_is_not_lost(self, store):
        sleeps = _Sleeps()
        store.before_save = lambda s: s.bump("alice", kbId="kb-from-other-writer")

        doc = await update_document(
            store, USERS_DB, "alice", lambda latest: {"assignedAgentId": "a-1"}, sleep=sleeps
        )

        assert doc["kbId"] == "kb-from-other-writer"
        assert doc["assignedAgentId"] == "a-1"
        assert store.save_attempts == 2
        assert len(sleeps.delays) == 1

    @pytest.mark.asyncio
    async def test_transform_sees_latest_revision(self, store):
        store.bump("alice", connectedKBs=["alice-kb-20260301123456"])
        seen = []

        def transform(latest):
            seen.append(list(latest.get("connectedKBs") or []))
            return {"connectedKBs": latest["connectedKBs"] + ["extra"]}

        doc = await update_document(store, USERS_DB, "alice", transform)
        assert seen == [["alice-kb-20260301123456"]]
        assert doc["connectedKBs"] == ["alice-kb-20260301123456", "extra"]

    @pytest.mark.asyncio
    async def test_transform_on_missing_document(self, store):
        with pytest.raises(DocumentNotFoundError):
            await update_document(store, USERS_DB, "nobody", lambda latest: {"x": 1})

    @pytest.mark.asyncio
    async def test_replacement_creates_missing_document(self, store):
        doc = await update_document(store, USERS_DB, "bob", {"workflowStage": "approved"})
        assert doc["_id"] == "bob"
        assert store.doc("bob")["workflowStage"] == "approved"


class TestUserStore:
    @pytest.mark.asyncio
    async def test_crud(self, store):
        users = UserStore(store)
        assert (await users.get("alice"))["kbName"].startswith("alice-kb-")
        await users.update("alice", lambda latest: {"provisioned": True})
        assert [d["_id"] for d in await users.find({"provisioned": True})] == ["alice"]
        assert len(await users.all()) == 1
        assert await users.delete("alice") is True
        assert await users.delete("alice") is False
