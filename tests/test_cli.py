"""
Operator commands, called with the test container instead of live clients.
"""

import argparse

import pytest

from agentkb import cli


def args(**values):
    return argparse.Namespace(**values)


class TestCommands:
    @pytest.mark.asyncio
    async def test_reconcile_unknown_user(self, services, capsys):
        code = await cli.cmd_reconcile(services, args(user_id="nobody"))
        assert code == 1
        assert "not found" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_provision_without_token(self, services, documents, capsys):
        documents.seed({"_id": "alice", "workflowStage": "approved"})

        code = await cli.cmd_provision(services, args(user_id="alice", token=None))

        assert code == 0
        assert documents.doc("alice")["provisioned"] is True
        assert '"status": "completed"' in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_destroy_requires_confirmation(self, services, documents):
        documents.seed({"_id": "alice"})
        code = await cli.cmd_destroy(services, args(user_id="alice", yes=False))
        assert code == 1
        assert documents.doc("alice") is not None

    @pytest.mark.asyncio
    async def test_connect_kb(self, services, genai, documents, capsys):
        agent = genai.add_agent("alice-agent-20260301-093000")
        kb = genai.add_kb("alice-kb-legacy")
        documents.seed({"_id": "alice", "assignedAgentId": agent["uuid"], "connectedKBs": ["old-kb"]})

        code = await cli.cmd_connect_kb(services, args(user_id="alice", kb_id=kb["uuid"]))

        assert code == 0
        doc = documents.doc("alice")
        assert doc["kbId"] == kb["uuid"]
        assert doc["connectedKBs"] == ["old-kb", "alice-kb-legacy"]
        assert genai.agent.attach_calls == [(agent["uuid"], kb["uuid"])]
        assert '"attached": true' in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_connect_kb_twice_is_harmless(self, services, genai, documents):
        agent = genai.add_agent("alice-agent-20260301-093000")
        kb = genai.add_kb("alice-kb-legacy")
        documents.seed({"_id": "alice", "assignedAgentId": agent["uuid"]})

        await cli.cmd_connect_kb(services, args(user_id="alice", kb_id=kb["uuid"]))
        await cli.cmd_connect_kb(services, args(user_id="alice", kb_id=kb["uuid"]))

        assert documents.doc("alice")["connectedKBs"] == ["alice-kb-legacy"]

    @pytest.mark.asyncio
    async def test_add_datasource(self, services, genai, capsys):
        kb = genai.add_kb("alice-kb-legacy")

        code = await cli.cmd_add_datasource(
            services, args(kb_id=kb["uuid"], item_path="alice/alice-kb-legacy/", bucket=None)
        )

        assert code == 0
        source = genai.data_sources[kb["uuid"]][0]["spaces_data_source"]
        assert source == {"bucket_name": "maia", "item_path": "alice/alice-kb-legacy/"}
        assert "added to" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_storage_usage(self, services, s3, capsys):
        s3.put("alice/a.pdf", b"x" * 2048)
        code = await cli.cmd_storage_usage(services, args(user_id="alice"))
        assert code == 0
        assert "alice: 2048 bytes" in capsys.readouterr().out
