"""
Exchange Tests
==============
Complete owner <-> compute sessions over local TCP with the clear-text
primitive stand-in, including failures in the middle of a session.
"""

import asyncio
import time
from decimal import Decimal

import pytest

from finance_core.errors import ExchangeError, ProtocolError, SchemeValidationError
from finance_core.fixed_point import FixedPointCodec
from finance_core.pipeline import InputSpec, PipelineDefinition, Sub
from finance_core.primitives import SchemeSettings
from finance_core.variants import BUDGET_GOAL, ITEMIZED_BUDGET, SAVINGS_PLAN, build_registry

from exchange.envelope import Envelope, MessageRole
from exchange.framing import open_channel
from exchange.handshake import owner_handshake
from exchange.session import OwnerSession
from owner.owner_client import OwnerClient
from server.compute_server import ComputeServer

from conftest import ClearTextPrimitives


async def wait_for_records(compute, count, timeout=5.0):
    async def poll():
        while len(compute.records) < count:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


async def start_compute(config, audit, adapter_factory, registry=None):
    compute = ComputeServer(config, adapter_factory=adapter_factory, audit_log=audit, registry=registry)
    await compute.start()
    return compute


async def run_exchange(config, audit, adapter_factory, variant, figures):
    compute = await start_compute(config, audit, adapter_factory)
    host, port = compute.address
    try:
        client = OwnerClient(config, adapter_factory=adapter_factory, audit_log=audit)
        report = await client.run(variant, figures, host=host, port=port)
        await wait_for_records(compute, 1)
    finally:
        await compute.stop()
    return report, compute


async def raw_owner(config, compute, variant):
    """Owner session that has completed the handshake and sends nothing else"""
    host, port = compute.address
    channel = await open_channel(host, port, config)
    session = OwnerSession(
        channel=channel,
        adapter=ClearTextPrimitives(),
        codec=FixedPointCodec(100),
        definition=build_registry()[variant],
    )
    await owner_handshake(session, SchemeSettings())
    return session


class TestCompleteSessions:
    """Sessions that run to completion"""

    def test_budget_goal(self, config, audit, adapter_factory):
        report, compute = asyncio.run(run_exchange(config, audit, adapter_factory, BUDGET_GOAL, {
            'total_income': ["1500.75"],
            'savings_goal': ["500.00"],
            'essential_expenses': ["450.50"],
            'non_essential_expenses': ["120.00"],
        }))

        assert report.matches
        assert list(report.outputs) == ["total_expenses", "net_income", "goal_difference"]
        assert report.amounts("total_expenses") == [Decimal("570.50")]
        assert report.amounts("net_income") == [Decimal("930.25")]
        assert report.amounts("goal_difference") == [Decimal("430.25")]

        record = compute.records[-1]
        assert record.status == "completed"
        assert record.variant == BUDGET_GOAL
        assert record.inputs_received == 4
        assert record.results_sent == 3
        assert record.handshake == "ready"
        assert audit.verify_no_violations()

    def test_lines_totalled_locally(self, config, audit, adapter_factory):
        report, _ = asyncio.run(run_exchange(config, audit, adapter_factory, BUDGET_GOAL, {
            'total_income': ["1000.00", "500.75"],
            'savings_goal': ["500.00"],
            'essential_expenses': ["300.50", "150.00"],
            'non_essential_expenses': [],
        }))

        assert report.inputs['total_income'] == [150075]
        assert report.inputs['non_essential_expenses'] == [0]
        assert report.amounts("net_income") == [Decimal("1050.25")]

    def test_savings_plan(self, config, audit, adapter_factory):
        report, _ = asyncio.run(run_exchange(config, audit, adapter_factory, SAVINGS_PLAN, {
            'income': ["1500.75", "250.00", "75.20"],
            'expense': ["450.50", "120.00"],
        }))

        assert report.matches
        assert report.inputs['expense'] == [45050, 12000, 0]
        assert report.amounts("net_income") == [Decimal("1050.25"), Decimal("130"), Decimal("75.2")]
        contribution = report.outputs["savings_contribution"]
        assert contribution.exponent == 2
        assert contribution.scaled == [2251125, 375000, 112800]
        assert contribution.amounts == [Decimal("225.1125"), Decimal("37.5"), Decimal("11.28")]

    def test_itemized_budget(self, config, audit, adapter_factory):
        report, _ = asyncio.run(run_exchange(config, audit, adapter_factory, ITEMIZED_BUDGET, {
            'income_items': ["1500.75", "250.00", "75.20"],
            'expense_items': ["450.50", "120.00", "30.80"],
            'savings_goal': ["500"],
        }))

        assert report.matches
        assert report.amounts("total_income") == [Decimal("1825.95")]
        assert report.amounts("total_expenses") == [Decimal("601.30")]
        assert report.amounts("goal_difference") == [Decimal("724.65")]

    def test_negative_results(self, config, audit, adapter_factory):
        report, _ = asyncio.run(run_exchange(config, audit, adapter_factory, BUDGET_GOAL, {
            'total_income': ["100"],
            'savings_goal': ["50"],
            'essential_expenses': ["120.25"],
        }))

        assert report.amounts("net_income") == [Decimal("-20.25")]
        assert report.amounts("goal_difference") == [Decimal("-70.25")]

    def test_concurrent_sessions_are_independent(self, config, audit, adapter_factory):
        async def scenario():
            compute = await start_compute(config, audit, adapter_factory)
            host, port = compute.address
            try:
                client = OwnerClient(config, adapter_factory=adapter_factory, audit_log=audit)
                reports = await asyncio.gather(
                    client.run(SAVINGS_PLAN, {'income': ["100"], 'expense': ["40"]}, host, port),
                    client.run(SAVINGS_PLAN, {'income': ["200"], 'expense': ["10"]}, host, port),
                    client.run(BUDGET_GOAL, {'total_income': ["10"]}, host, port),
                )
                await wait_for_records(compute, 3)
            finally:
                await compute.stop()
            return reports, compute

        reports, compute = asyncio.run(scenario())
        assert [r.amounts("net_income") for r in reports] == [
            [Decimal("60")], [Decimal("190")], [Decimal("10")],
        ]
        assert len({r.session_id for r in reports}) == 3
        assert compute.get_status()['sessions_completed'] == 3
        assert compute.get_status()['can_decrypt'] is False

    def test_unknown_figure_name(self, config, adapter_factory):
        client = OwnerClient(config, adapter_factory=adapter_factory)
        with pytest.raises(ValueError, match="no input"):
            asyncio.run(client.run(BUDGET_GOAL, {'salary': ["1"]}))

    def test_overflowing_result_rejected_before_connecting(self, config, audit):
        created = []

        def factory():
            created.append(ClearTextPrimitives())
            return created[-1]

        async def scenario():
            compute = await start_compute(config, audit, factory)
            host, port = compute.address
            try:
                client = OwnerClient(config, adapter_factory=factory, audit_log=audit)
                with pytest.raises(SchemeValidationError, match="savings_contribution"):
                    await client.run(SAVINGS_PLAN, {'income': ["400000.00"]}, host, port)
            finally:
                await compute.stop()
            return compute

        compute = asyncio.run(scenario())
        assert created == []
        assert len(compute.records) == 0
        assert audit.get_all_entries() == []


class TestFailedSessions:
    """Every failure aborts the session and is recorded"""

    def test_input_at_wrong_scale(self, config, audit, adapter_factory):
        async def scenario():
            compute = await start_compute(config, audit, adapter_factory)
            try:
                session = await raw_owner(config, compute, SAVINGS_PLAN)
                adapter = session.adapter
                payload = adapter.serialize_encrypted(adapter.encrypt(adapter.encode([150075])))
                await session.send(Envelope.wrap(
                    MessageRole.ENCRYPTED_INPUT, SAVINGS_PLAN, payload, label="income",
                    scale_exponent=2,
                ))
                with pytest.raises(ProtocolError, match="peer aborted") as exc:
                    (await session.receive()).expect(MessageRole.ENCRYPTED_RESULT, SAVINGS_PLAN)
                await session.channel.close()
                await wait_for_records(compute, 1)
                return exc.value, compute
            finally:
                await compute.stop()

        error, compute = asyncio.run(scenario())
        assert error.remote_kind == "scale_mismatch"
        record = compute.records[-1]
        assert record.status == "failed"
        assert record.error_kind == "scale_mismatch"
        assert record.results_sent == 0

    def test_input_out_of_order(self, config, audit, adapter_factory):
        async def scenario():
            compute = await start_compute(config, audit, adapter_factory)
            try:
                session = await raw_owner(config, compute, SAVINGS_PLAN)
                adapter = session.adapter
                payload = adapter.serialize_encrypted(adapter.encrypt(adapter.encode([1])))
                await session.send(Envelope.wrap(
                    MessageRole.ENCRYPTED_INPUT, SAVINGS_PLAN, payload, label="expense",
                    scale_exponent=1,
                ))
                with pytest.raises(ProtocolError) as exc:
                    (await session.receive()).expect(MessageRole.ENCRYPTED_RESULT, SAVINGS_PLAN)
                await session.channel.close()
                await wait_for_records(compute, 1)
                return exc.value, compute
            finally:
                await compute.stop()

        error, compute = asyncio.run(scenario())
        assert error.remote_kind == "protocol"
        assert compute.records[-1].error_kind == "protocol"

    def test_peer_closes_mid_session(self, config, audit, adapter_factory):
        async def scenario():
            compute = await start_compute(config, audit, adapter_factory)
            try:
                session = await raw_owner(config, compute, BUDGET_GOAL)
                adapter = session.adapter
                payload = adapter.serialize_encrypted(adapter.encrypt(adapter.encode([150075])))
                await session.send(Envelope.wrap(
                    MessageRole.ENCRYPTED_INPUT, BUDGET_GOAL, payload, label="total_income",
                    scale_exponent=1,
                ))
                await session.channel.close()
                await wait_for_records(compute, 1)
                return compute
            finally:
                await compute.stop()

        compute = asyncio.run(scenario())
        record = compute.records[-1]
        assert record.status == "failed"
        assert record.error_kind == "transport"
        assert record.inputs_received == 1
        operations = [e.operation for e in audit.get_entries_for_session(record.session_id)]
        assert "evaluate" not in operations
        assert operations[-1] == "abort"

    def test_variant_unknown_to_compute(self, config, audit, adapter_factory):
        extra = build_registry()
        extra['net_only'] = PipelineDefinition(
            name='net_only',
            inputs=[InputSpec("income"), InputSpec("expense")],
            nodes=[Sub("net_income", "income", "expense")],
            outputs=["net_income"],
        )

        async def scenario():
            compute = await start_compute(config, audit, adapter_factory)
            host, port = compute.address
            try:
                client = OwnerClient(config, adapter_factory=adapter_factory, registry=extra)
                with pytest.raises(ExchangeError):
                    await client.run('net_only', {'income': ["1"], 'expense': ["1"]}, host, port)
                await wait_for_records(compute, 1)
            finally:
                await compute.stop()
            return compute

        compute = asyncio.run(scenario())
        record = compute.records[-1]
        assert record.error_kind == "protocol"
        assert "unsupported session variant" in record.error_message
        assert record.handshake == "failed"


class SlowKeyPrimitives(ClearTextPrimitives):
    """Stand-in whose key loading holds the calling thread"""

    def load_key(self, role, blob):
        time.sleep(0.4)
        super().load_key(role, blob)


class TestEventLoop:
    """Primitive work must not stall other tasks on the loop"""

    def test_key_loading_leaves_loop_responsive(self, config, audit, adapter_factory):
        async def heartbeat(gaps, stop):
            last = time.monotonic()
            while not stop.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        async def scenario():
            compute = await start_compute(config, audit, SlowKeyPrimitives)
            host, port = compute.address
            gaps, stop = [], asyncio.Event()
            ticker = asyncio.ensure_future(heartbeat(gaps, stop))
            try:
                client = OwnerClient(config, adapter_factory=adapter_factory)
                report = await client.run(BUDGET_GOAL, {'total_income': ["10"]}, host, port)
                await wait_for_records(compute, 1)
            finally:
                stop.set()
                await ticker
                await compute.stop()
            return report, gaps

        report, gaps = asyncio.run(scenario())
        assert report.matches
        assert max(gaps) < 0.3
