"""Tests for workflow definition models and their validation."""

from datetime import time, timedelta

import pytest
from pydantic import ValidationError

from crm_workflows.models.core import (
    BranchNodeConfig,
    DateBasedTrigger,
    EntityEvent,
    EventType,
    ExecutionLog,
    FieldChangedTrigger,
    FireWebhookConfig,
    UpdateFieldConfig,
    WaitNodeConfig,
    WorkflowActionConfig,
    WorkflowDefinition,
    WorkflowNode,
    WorkflowTriggerContext,
)


def branch_definition(*connections):
    return {
        "nodes": [
            {"id": "b1", "type": "branch"},
            {"id": "a1", "type": "action"},
            {"id": "a2", "type": "action"},
        ],
        "connections": list(connections),
    }


class TestWorkflowDefinition:
    """Test cases for definition structure validation."""

    def test_duplicate_node_ids_rejected(self):
        with pytest.raises(ValidationError, match="unique"):
            WorkflowDefinition.model_validate({"nodes": [{"id": "n1", "type": "action"}, {"id": "n1", "type": "wait"}]})

    def test_connection_to_missing_node_rejected(self):
        with pytest.raises(ValidationError, match="non-existent target node"):
            WorkflowDefinition.model_validate({
                "nodes": [{"id": "n1", "type": "trigger"}],
                "connections": [{"source_node_id": "n1", "target_node_id": "ghost"}],
            })

    def test_branch_outputs_must_be_yes_or_no(self):
        with pytest.raises(ValidationError, match="output 'yes' or 'no'"):
            WorkflowDefinition.model_validate(branch_definition(
                {"source_node_id": "b1", "target_node_id": "a1", "source_output": "maybe"},
            ))

    def test_branch_output_used_once(self):
        with pytest.raises(ValidationError, match="more than one 'yes'"):
            WorkflowDefinition.model_validate(branch_definition(
                {"source_node_id": "b1", "target_node_id": "a1", "source_output": "yes"},
                {"source_node_id": "b1", "target_node_id": "a2", "source_output": "YES"},
            ))

    def test_action_must_reference_node(self):
        with pytest.raises(ValidationError, match="non-existent node"):
            WorkflowDefinition.model_validate({
                "nodes": [{"id": "a1", "type": "action"}],
                "actions": [{"node_id": "a9", "action_type": "updateField", "config": {"field_name": "x"}}],
            })

    def test_successors_by_output(self):
        definition = WorkflowDefinition.model_validate(branch_definition(
            {"source_node_id": "b1", "target_node_id": "a1", "source_output": " Yes "},
            {"source_node_id": "b1", "target_node_id": "a2", "source_output": "no"},
        ))

        assert definition.successors("b1") == ["a1", "a2"]
        assert definition.successors("b1", "yes") == ["a1"]
        assert definition.successors("b1", "no") == ["a2"]

    def test_definition_survives_json_round_trip(self):
        definition = WorkflowDefinition.model_validate({
            "nodes": [
                {"id": "t1", "type": "trigger"},
                {"id": "w1", "type": "wait", "config": {"delay_hours": 4}},
                {"id": "a1", "type": "action"},
            ],
            "connections": [
                {"source_node_id": "t1", "target_node_id": "w1"},
                {"source_node_id": "w1", "target_node_id": "a1"},
            ],
            "triggers": [{"trigger_type": "dateBased", "field_name": "birthday", "preferred_time": "08:00:00"}],
            "actions": [{"node_id": "a1", "action_type": "fireWebhook", "config": {"url": "https://example.com"}}],
        })

        restored = WorkflowDefinition.model_validate(definition.model_dump(mode="json"))

        assert restored == definition
        assert restored.node_map()["w1"].wait_config.delay == timedelta(hours=4)
        assert restored.triggers[0].preferred_time == time(8, 0)


class TestNodeConfigs:
    """Test cases for typed node configs."""

    def test_branch_config_parsed(self):
        node = WorkflowNode.model_validate({
            "id": "b1",
            "type": "branch",
            "config": {"condition_groups": [{"conditions": [{"field": "x", "operator": "equals", "value": 1}]}]},
        })

        assert isinstance(node.config, BranchNodeConfig)
        assert node.branch_config.condition_groups[0].conditions[0].value == "1"

    def test_wait_delay_sums_units(self):
        node = WorkflowNode.model_validate({
            "id": "w1",
            "type": "wait",
            "config": {"delay_minutes": 30, "delay_hours": 2, "delay_days": 1},
        })

        assert isinstance(node.config, WaitNodeConfig)
        assert node.wait_config.delay == timedelta(days=1, hours=2, minutes=30)

    def test_negative_wait_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowNode.model_validate({"id": "w1", "type": "wait", "config": {"delay_days": -1}})

    def test_unknown_node_type_keeps_raw_config(self):
        node = WorkflowNode.model_validate({"id": "n1", "type": "annotation", "config": {"note": "hi"}})

        assert node.config == {"note": "hi"}
        assert node.wait_config.delay == timedelta(0)

    def test_empty_node_id_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowNode.model_validate({"id": "  ", "type": "action"})


class TestActionConfigs:
    """Test cases for action config coercion."""

    def test_config_typed_by_action_type(self):
        action = WorkflowActionConfig.model_validate({
            "node_id": "a1",
            "action_type": "updateField",
            "config": {"field_name": "status", "value": "Won"},
        })

        assert isinstance(action.config, UpdateFieldConfig)
        assert action.continue_on_error is False

    def test_invalid_webhook_url_rejected(self):
        with pytest.raises(ValidationError, match="http"):
            WorkflowActionConfig.model_validate({
                "node_id": "a1",
                "action_type": "fireWebhook",
                "config": {"url": "ftp://example.com"},
            })

    def test_webhook_defaults(self):
        config = FireWebhookConfig(url="https://example.com")

        assert config.method == "POST"
        assert config.headers == {}

    def test_unknown_action_type_keeps_raw_config(self):
        action = WorkflowActionConfig.model_validate({
            "node_id": "a1",
            "action_type": "sendFax",
            "config": {"number": "123"},
        })

        assert action.config == {"number": "123"}


class TestTriggers:
    """Test cases for trigger definitions."""

    def test_triggers_discriminated_by_type(self):
        definition = WorkflowDefinition.model_validate({"triggers": [
            {"trigger_type": "fieldChanged", "field_name": "stage"},
            {"trigger_type": "dateBased", "field_name": "close_date", "date_offset_days": 3},
        ]})

        assert isinstance(definition.triggers[0], FieldChangedTrigger)
        assert isinstance(definition.triggers[1], DateBasedTrigger)
        assert definition.trigger_summary() == ["FieldChanged:stage", "DateBased:close_date"]
        assert definition.date_triggers() == [definition.triggers[1]]

    def test_unknown_trigger_type_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowDefinition.model_validate({"triggers": [{"trigger_type": "webhookReceived"}]})

    def test_field_changed_matching(self):
        trigger = FieldChangedTrigger(field_name="stage")
        changed = EntityEvent(
            entity_type="Deal", event_type=EventType.UPDATED, entity_id="d1", changed_properties={"stage": "Won"}
        )
        untouched = EntityEvent(
            entity_type="Deal", event_type=EventType.UPDATED, entity_id="d1", changed_properties={"amount": 5}
        )
        created = EntityEvent(entity_type="Deal", event_type=EventType.CREATED, entity_id="d1")

        assert trigger.matches(changed)
        assert not trigger.matches(untouched)
        assert not trigger.matches(created)


class TestExecutionModels:
    """Test cases for trigger contexts and execution logs."""

    def test_context_properties_decode(self):
        context = WorkflowTriggerContext(
            workflow_id="wf",
            entity_id="c1",
            entity_type="Contact",
            tenant_id="t1",
            trigger_type="FieldChanged:status",
            event_type="Updated",
            changed_properties_json='{"status": "Hot"}',
        )

        assert context.changed_properties == {"status": "Hot"}
        assert context.old_property_values is None

    def test_negative_depth_rejected(self):
        with pytest.raises(ValidationError):
            WorkflowTriggerContext(
                workflow_id="wf", entity_id="c1", entity_type="Contact", tenant_id="t1",
                trigger_type="RecordCreated", event_type="Created", current_depth=-1,
            )

    def test_log_started_from_context(self):
        context = WorkflowTriggerContext(
            workflow_id="wf", entity_id="c1", entity_type="Contact", tenant_id="t1",
            trigger_type="DateBased", event_type="DateBased:birthday",
        )

        log = ExecutionLog.start(context)

        assert log.trigger_event == "DateBased:birthday"
        assert log.status is None
        assert log.action_logs == []
