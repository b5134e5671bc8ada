"""
Monitor API Tests
=================
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from finance_core.variants import SAVINGS_PLAN
from owner.owner_client import OwnerClient
from server.compute_server import ComputeServer
from server.monitor import create_monitor_app


@pytest.fixture
def served(config, audit, adapter_factory):
    """A compute server that has completed one savings_plan session"""
    compute = ComputeServer(config, adapter_factory=adapter_factory, audit_log=audit)

    async def scenario():
        await compute.start()
        host, port = compute.address
        try:
            client = OwnerClient(config, adapter_factory=adapter_factory, audit_log=audit)
            await client.run(SAVINGS_PLAN, {'income': ["100"], 'expense': ["25"]}, host, port)
            while not compute.records:
                await asyncio.sleep(0.01)
        finally:
            await compute.stop()

    asyncio.run(scenario())
    return compute


class TestMonitor:
    """Tests for the FastAPI monitor"""

    @pytest.fixture
    def client(self, served):
        return TestClient(create_monitor_app(served))

    def test_status(self, client):
        response = client.get("/status")
        assert response.status_code == 200
        data = response.json()
        assert data['sessions_completed'] == 1
        assert data['sessions_failed'] == 0
        assert data['can_decrypt'] is False

    def test_index_page(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "Confidential Budget Exchange" in response.text
        assert SAVINGS_PLAN in response.text

    def test_sessions(self, client):
        sessions = client.get("/api/sessions").json()
        assert len(sessions) == 1
        assert sessions[0]['status'] == "completed"
        assert sessions[0]['results_sent'] == 2

    def test_sessions_limit_validated(self, client):
        assert client.get("/api/sessions", params={'limit': 0}).status_code == 400

    def test_variants(self, client):
        names = [v['name'] for v in client.get("/api/variants").json()]
        assert names == ["budget_goal", "savings_plan", "itemized_budget"]

    def test_audit_report(self, client):
        report = client.get("/api/audit").json()
        assert report['compute_privacy_audit']['privacy_preserved'] is True
        assert report['conclusion'].startswith("PRIVACY PRESERVED")

    def test_audit_for_session(self, client, served):
        session_id = served.records[-1].session_id
        entries = client.get("/api/audit", params={'session_id': session_id}).json()
        assert {e['entity'] for e in entries} == {"compute"}
        assert "evaluate" in [e['operation'] for e in entries]

    def test_audit_unknown_session(self, client):
        assert client.get("/api/audit", params={'session_id': "nope"}).status_code == 404
