"""
Tests for auto-sync planning and execution.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from ledgerflow.models.reconciliation import SuggestedAction
from ledgerflow.models.records import Record
from ledgerflow.services.errors import UpstreamError
from ledgerflow.services.sync_planner import (
    SyncPlan,
    SyncRules,
    execute_sync,
    is_duplicate,
    plan_sync,
    validate_candidate,
)


def record(amount, description="lunch", when=date(2026, 2, 8)):
    return Record(amount=Decimal(str(amount)), date=when, description=description, source="submitted")


def action(rec, kind="create_record"):
    return SuggestedAction(action=kind, record=rec, reason="not found in ledger")


class FakeStore:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.created = []
        self.auth = []

    async def create(self, rec, auth_context=None):
        self.auth.append(auth_context)
        if rec.description in self.fail_on:
            raise UpstreamError("ledger backend", 422, "category missing")
        self.created.append(rec)
        return {"id": len(self.created), **rec.to_payload()}


class TestValidateCandidate:

    @pytest.mark.parametrize("rec,reason", [
        (record(0), "Invalid or missing amount"),
        (record(-5), "Invalid or missing amount"),
        (record(10, description="  "), "Missing description"),
        (record("0.50"), "Amount below minimum threshold (1.0)"),
        (record(25000), "Amount exceeds auto-sync limit (10000.0), requires manual approval"),
    ])
    def test_rejections(self, rec, reason):
        assert validate_candidate(rec, SyncRules()) == reason

    def test_limits_are_inclusive(self):
        rules = SyncRules()
        assert validate_candidate(record(1), rules) is None
        assert validate_candidate(record(10000), rules) is None

    def test_undated_records(self):
        undated = record(50, when=None)
        assert validate_candidate(undated, SyncRules()) is None
        assert validate_candidate(undated, SyncRules(allow_undated=False)) == "Date required but missing"


class TestPlanSync:

    def test_duplicate_of_existing_ledger_row(self):
        existing = [Record(amount=Decimal("500.005"), description="Lunch")]
        assert is_duplicate(record(500), existing)
        assert not is_duplicate(record(500, "dinner"), existing)
        assert not is_duplicate(record("500.02"), existing)

    def test_plan_approves_and_rejects(self):
        actions = [action(record(500)), action(record(25000, "laptop")), action(record(40, "taxi"))]
        existing = [record(40, "taxi")]

        plan = plan_sync(actions, existing)

        assert [r.description for r in plan.approved] == ["lunch"]
        assert [(f.record.description, f.stage) for f in plan.rejected] == [
            ("laptop", "validation"),
            ("taxi", "validation"),
        ]
        assert plan.rejected[1].reason == "Duplicate of existing ledger record"

    def test_batch_cannot_duplicate_itself(self):
        plan = plan_sync([action(record(500)), action(record(500))], [])

        assert len(plan.approved) == 1
        assert len(plan.rejected) == 1

    def test_duplicates_allowed_by_rule(self):
        plan = plan_sync([action(record(500)), action(record(500))], [], SyncRules(allow_duplicates=True))
        assert len(plan.approved) == 2

    def test_other_actions_are_ignored(self):
        plan = plan_sync([action(record(500), kind="flag_for_review")], [])
        assert plan.approved == []
        assert plan.rejected == []


class TestExecuteSync:

    def test_creates_each_approved_record(self):
        store = FakeStore()
        plan = SyncPlan(approved=[record(500), record(40, "taxi")])

        synced, failures = asyncio.run(execute_sync(plan, store, {"token": "abc"}))

        assert [r.description for r in synced] == ["lunch", "taxi"]
        assert all(r.source == "ledger" for r in synced)
        assert synced[0].source_id == "1"
        assert failures == []
        assert store.auth == [{"token": "abc"}, {"token": "abc"}]

    def test_failed_create_does_not_stop_the_batch(self):
        store = FakeStore(fail_on={"lunch"})
        plan = plan_sync([action(record(500)), action(record(40, "taxi")), action(record(0, "zero"))], [])

        synced, failures = asyncio.run(execute_sync(plan, store))

        assert [r.description for r in synced] == ["taxi"]
        assert [(f.record.description, f.stage) for f in failures] == [
            ("zero", "validation"),
            ("lunch", "create"),
        ]
        assert "rejected the request (422)" in failures[1].reason

    def test_slow_create_times_out(self):
        class SlowStore:
            async def create(self, rec, auth_context=None):
                await asyncio.sleep(1)

        plan = SyncPlan(approved=[record(500)])

        synced, failures = asyncio.run(execute_sync(plan, SlowStore(), timeout=0.01))

        assert synced == []
        assert failures[0].stage == "create"
        assert failures[0].reason == "TimeoutError"
