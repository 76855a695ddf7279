"""Unit tests for typed orchestrator metadata.

Tests cover:
- Awaits gate parsing and satisfaction
- Approval count validation
- Agent metadata discriminated union
- Orchestrator task metadata round trip through a metadata map
- Steward trigger validation
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pydantic
import pytest

from switchyard.orchestrator.types import (
    ApprovalGate,
    CronTrigger,
    EventTrigger,
    ExternalGate,
    MergeStatus,
    OrchestratorTaskMetadata,
    StewardMetadata,
    TimerGate,
    ValidatesMetadata,
    WebhookGate,
    WorkerMetadata,
    WorkerMode,
    awaits_metadata_adapter,
    get_orchestrator_metadata,
    parse_agent_metadata,
    with_orchestrator_metadata,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestAwaitsGates:
    """Test gate parsing and satisfaction."""

    def test_timer_gate(self) -> None:
        gate = awaits_metadata_adapter.validate_python(
            {"gateType": "timer", "waitUntil": "2026-03-02T12:00:00Z"}
        )
        assert isinstance(gate, TimerGate)
        assert not gate.is_satisfied(NOW - timedelta(seconds=1))
        assert gate.is_satisfied(NOW)

    def test_naive_timer_assumed_utc(self) -> None:
        gate = TimerGate(wait_until=datetime(2026, 3, 2, 12, 0))
        assert gate.wait_until.tzinfo is timezone.utc

    def test_approval_gate_counts_only_required_approvers(self) -> None:
        gate = awaits_metadata_adapter.validate_python(
            {
                "gateType": "approval",
                "requiredApprovers": ["el-usr1", "el-usr2", "el-usr3"],
                "approvalCount": 2,
                "currentApprovers": ["el-usr1", "el-other"],
            }
        )
        assert isinstance(gate, ApprovalGate)
        assert gate.required_count == 2
        assert not gate.is_satisfied(NOW)

        gate.current_approvers.append("el-usr3")
        assert gate.is_satisfied(NOW)

    def test_approval_defaults_to_all_required(self) -> None:
        gate = ApprovalGate(required_approvers=["el-usr1", "el-usr2"], current_approvers=["el-usr1"])
        assert gate.required_count == 2
        assert not gate.is_satisfied(NOW)

    @pytest.mark.parametrize("count", [0, 3])
    def test_approval_count_out_of_range(self, count: int) -> None:
        with pytest.raises(pydantic.ValidationError, match="approvalCount"):
            ApprovalGate(required_approvers=["el-usr1", "el-usr2"], approval_count=count)

    def test_approval_requires_approvers(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ApprovalGate(required_approvers=[])

    def test_external_and_webhook_gates(self) -> None:
        external = awaits_metadata_adapter.validate_python(
            {"gateType": "external", "externalSystem": "ci", "externalId": "run-42"}
        )
        assert isinstance(external, ExternalGate)
        assert not external.is_satisfied(NOW)

        webhook = awaits_metadata_adapter.validate_python(
            {"gateType": "webhook", "callbackId": "cb-1", "satisfied": True}
        )
        assert isinstance(webhook, WebhookGate)
        assert webhook.is_satisfied(NOW)

    def test_unknown_gate_type_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            awaits_metadata_adapter.validate_python({"gateType": "manual"})


class TestValidatesMetadata:
    def test_strips_test_type(self) -> None:
        meta = ValidatesMetadata.model_validate({"testType": " unit ", "result": "pass"})
        assert meta.test_type == "unit"

    def test_rejects_unknown_result(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ValidatesMetadata.model_validate({"testType": "unit", "result": "flaky"})


class TestAgentMetadata:
    """Test the agent metadata union."""

    def test_empty_metadata(self) -> None:
        assert parse_agent_metadata(None) is None
        assert parse_agent_metadata({}) is None

    def test_worker(self) -> None:
        meta = parse_agent_metadata(
            {
                "agentRole": "worker",
                "workerMode": "persistent",
                "capabilities": {"skills": ["backend"], "maxConcurrentTasks": 2},
            }
        )
        assert isinstance(meta, WorkerMetadata)
        assert meta.worker_mode is WorkerMode.PERSISTENT
        assert meta.capabilities.max_concurrent_tasks == 2

    def test_steward_with_triggers(self) -> None:
        meta = parse_agent_metadata(
            {
                "agentRole": "steward",
                "stewardFocus": "merge",
                "triggers": [
                    {"type": "cron", "schedule": "*/5 * * * *"},
                    {"type": "event", "event": "task_completed"},
                ],
            }
        )
        assert isinstance(meta, StewardMetadata)
        assert isinstance(meta.triggers[0], CronTrigger)
        assert isinstance(meta.triggers[1], EventTrigger)

    def test_steward_requires_focus(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            parse_agent_metadata({"agentRole": "steward"})

    def test_invalid_cron_rejected(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            CronTrigger(schedule="every minute")

    def test_serializes_camel_case(self) -> None:
        data = WorkerMetadata(channel_id="el-chn1", worker_mode=WorkerMode.EPHEMERAL).to_json_dict()
        assert data["agentRole"] == "worker"
        assert data["channelId"] == "el-chn1"
        assert data["workerMode"] == "ephemeral"
        assert "branch" not in data


class TestOrchestratorMetadata:
    """Test the orchestrator block helpers."""

    def test_missing_block_gives_defaults(self) -> None:
        orch = get_orchestrator_metadata(None)
        assert orch.assigned_agent is None
        assert orch.handoff_history == []

    def test_replace_block_keeps_other_keys(self) -> None:
        metadata = {"capabilityRequirements": {"requiredSkills": ["x"]}, "custom": 1}
        orch = OrchestratorTaskMetadata(
            assigned_agent="el-agt1",
            branch="agent/alice/el-task1",
            merge_status=MergeStatus.PENDING,
        )

        updated = with_orchestrator_metadata(metadata, orch)

        assert updated["custom"] == 1
        assert updated["capabilityRequirements"] == {"requiredSkills": ["x"]}
        assert updated["orchestrator"] == {
            "assignedAgent": "el-agt1",
            "branch": "agent/alice/el-task1",
            "mergeStatus": "pending",
            "handoffHistory": [],
        }
        assert "orchestrator" not in metadata
        assert get_orchestrator_metadata(updated).merge_status is MergeStatus.PENDING

    def test_unknown_keys_preserved(self) -> None:
        orch = get_orchestrator_metadata({"orchestrator": {"reviewer": "el-usr1"}})
        assert orch.to_json_dict()["reviewer"] == "el-usr1"
