"""Tests for workflow authoring and lifecycle management."""

import pytest
from pydantic import ValidationError

from crm_workflows.core.exceptions import ProtectedResourceError, WorkflowNotFoundError, WorkflowValidationError
from crm_workflows.core.workflow_manager import WorkflowManager
from crm_workflows.models.core import (
    SaveAsTemplateRequest,
    WorkflowCreate,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTemplate,
    WorkflowUpdate,
)

TENANT = "tenant-1"

RUNNABLE_DEFINITION = {
    "nodes": [
        {"id": "t1", "type": "trigger"},
        {"id": "a1", "type": "action"},
    ],
    "connections": [{"source_node_id": "t1", "target_node_id": "a1"}],
    "triggers": [{"trigger_type": "recordCreated", "node_id": "t1"}],
    "actions": [{
        "node_id": "a1",
        "action_type": "updateField",
        "config": {"field_name": "status", "value": "New"},
    }],
}


@pytest.fixture
def manager(repository, cache):
    return WorkflowManager(repository, cache)


def create_request(definition=None, **overrides):
    payload = {
        "name": "Welcome new contacts",
        "entity_type": "Contact",
        "definition": definition if definition is not None else RUNNABLE_DEFINITION,
    }
    payload.update(overrides)
    return WorkflowCreate.model_validate(payload)


class TestWorkflowCreation:
    """Test cases for creating workflows."""

    def test_create_workflow_as_draft(self, manager):
        """Test that new workflows are stored as inactive drafts."""
        workflow = manager.create_workflow(TENANT, create_request())

        assert workflow.status == WorkflowStatus.DRAFT
        assert workflow.is_active is False
        assert workflow.trigger_summary == ["RecordCreated"]
        assert workflow.execution_count == 0

        stored = manager.get_workflow(TENANT, workflow.id)
        assert stored.name == "Welcome new contacts"
        assert stored.definition.actions[0].config.field_name == "status"

    def test_create_and_activate(self, manager):
        workflow = manager.create_workflow(TENANT, create_request(activate=True))

        assert workflow.status == WorkflowStatus.ACTIVE
        assert workflow.is_runnable

    def test_invalid_entity_type_rejected(self, manager):
        with pytest.raises(WorkflowValidationError) as exc_info:
            manager.create_workflow(TENANT, create_request(entity_type="Invoice"))

        assert "Invalid entity type: Invoice" in exc_info.value.message

    def test_trigger_summary_lists_every_trigger(self, manager):
        definition = {
            "triggers": [
                {"trigger_type": "fieldChanged", "field_name": "stage"},
                {"trigger_type": "dateBased", "field_name": "close_date", "date_offset_days": 7},
                {"trigger_type": "recordDeleted"},
            ],
        }
        workflow = manager.create_workflow(TENANT, create_request(definition, entity_type="Deal"))

        assert workflow.trigger_summary == ["FieldChanged:stage", "DateBased:close_date", "RecordDeleted"]


class TestWorkflowLifecycle:
    """Test cases for activation, deactivation and status changes."""

    def test_activation_requires_trigger(self, manager):
        definition = {"actions": [{"node_id": "a1", "action_type": "updateField", "config": {"field_name": "x"}}]}
        workflow = manager.create_workflow(TENANT, create_request(definition))

        with pytest.raises(WorkflowValidationError) as exc_info:
            manager.activate_workflow(TENANT, workflow.id)

        assert exc_info.value.message == "Workflow must have at least one trigger to activate."

    def test_activation_requires_action(self, manager):
        workflow = manager.create_workflow(
            TENANT, create_request({"triggers": [{"trigger_type": "recordCreated"}]})
        )

        with pytest.raises(WorkflowValidationError) as exc_info:
            manager.activate_workflow(TENANT, workflow.id)

        assert exc_info.value.message == "Workflow must have at least one action to activate."

    def test_deactivate_pauses(self, manager):
        workflow = manager.create_workflow(TENANT, create_request(activate=True))

        paused = manager.deactivate_workflow(TENANT, workflow.id)

        assert paused.status == WorkflowStatus.PAUSED
        assert not paused.is_runnable

    def test_set_status_toggles_activity(self, manager):
        workflow = manager.create_workflow(TENANT, create_request(activate=True))

        disabled = manager.set_status(TENANT, workflow.id, False)
        enabled = manager.set_status(TENANT, workflow.id, True)

        assert disabled.status == WorkflowStatus.PAUSED and disabled.is_active is False
        assert enabled.status == WorkflowStatus.ACTIVE and enabled.is_active is True

    def test_activation_invalidates_cache(self, manager, repository, cache):
        """Test that the matcher sees an activated workflow immediately."""
        workflow = manager.create_workflow(TENANT, create_request())
        assert cache.get_or_load(TENANT, "Contact", repository.get_active_workflows) == []

        manager.activate_workflow(TENANT, workflow.id)

        active = cache.get_or_load(TENANT, "Contact", repository.get_active_workflows)
        assert [item.id for item in active] == [workflow.id]


class TestWorkflowEditing:
    """Test cases for update, duplicate and delete."""

    def test_update_definition_recomputes_summary(self, manager):
        workflow = manager.create_workflow(TENANT, create_request())
        definition = WorkflowDefinition.model_validate({
            "triggers": [{"trigger_type": "fieldChanged", "field_name": "email"}],
        })

        updated = manager.update_workflow(TENANT, workflow.id, WorkflowUpdate(name=" Renamed ", definition=definition))

        assert updated.name == "Renamed"
        assert updated.trigger_summary == ["FieldChanged:email"]
        assert manager.get_workflow(TENANT, workflow.id).trigger_summary == ["FieldChanged:email"]

    def test_entity_type_change_invalidates_both_types(self, manager, repository, cache):
        workflow = manager.create_workflow(TENANT, create_request(activate=True))
        cache.get_or_load(TENANT, "Contact", repository.get_active_workflows)
        cache.get_or_load(TENANT, "Lead", repository.get_active_workflows)

        manager.update_workflow(TENANT, workflow.id, WorkflowUpdate(entity_type="Lead"))

        assert cache.get_or_load(TENANT, "Contact", repository.get_active_workflows) == []
        assert len(cache.get_or_load(TENANT, "Lead", repository.get_active_workflows)) == 1

    def test_duplicate_creates_draft_copy(self, manager, repository):
        workflow = manager.create_workflow(TENANT, create_request(activate=True))
        repository.record_execution(workflow.id)

        duplicate = manager.duplicate_workflow(TENANT, workflow.id)

        assert duplicate.id != workflow.id
        assert duplicate.name == "Welcome new contacts (Copy)"
        assert duplicate.status == WorkflowStatus.DRAFT
        assert duplicate.execution_count == 0
        assert duplicate.definition == manager.get_workflow(TENANT, workflow.id).definition

    def test_delete_workflow(self, manager):
        workflow = manager.create_workflow(TENANT, create_request())

        manager.delete_workflow(TENANT, workflow.id)

        with pytest.raises(WorkflowNotFoundError):
            manager.get_workflow(TENANT, workflow.id)

    def test_workflows_are_tenant_scoped(self, manager):
        workflow = manager.create_workflow(TENANT, create_request())

        with pytest.raises(WorkflowNotFoundError):
            manager.get_workflow("tenant-2", workflow.id)
        with pytest.raises(WorkflowNotFoundError):
            manager.delete_workflow("tenant-2", workflow.id)
        assert manager.list_workflows("tenant-2") == []
        assert len(manager.list_workflows(TENANT)) == 1

    def test_list_filters(self, manager):
        manager.create_workflow(TENANT, create_request(activate=True))
        manager.create_workflow(TENANT, create_request(entity_type="Deal", name="Deal workflow"))

        assert [w.name for w in manager.list_workflows(TENANT, entity_type="Deal")] == ["Deal workflow"]
        assert len(manager.list_workflows(TENANT, status=WorkflowStatus.ACTIVE)) == 1


class TestDefinitionValidation:
    """Test cases for non-blocking definition checks."""

    def test_unreachable_nodes_warned(self, manager):
        definition = WorkflowDefinition.model_validate({
            **RUNNABLE_DEFINITION,
            "nodes": RUNNABLE_DEFINITION["nodes"] + [{"id": "orphan", "type": "action"}],
        })

        result = manager.validate_definition(definition)

        assert result.is_valid
        assert "Nodes not reachable from any trigger: orphan" in result.warnings

    def test_unknown_types_warned(self, manager):
        definition = WorkflowDefinition.model_validate({
            "nodes": [{"id": "t1", "type": "trigger"}, {"id": "n1", "type": "annotation"}],
            "connections": [{"source_node_id": "t1", "target_node_id": "n1"}],
            "triggers": [{"trigger_type": "recordCreated", "node_id": "t1"}],
            "actions": [{"node_id": "n1", "action_type": "sendFax", "config": {}}],
        })

        result = manager.validate_definition(definition)

        assert any("unknown type 'annotation'" in warning for warning in result.warnings)
        assert any("unsupported type 'sendFax'" in warning for warning in result.warnings)

    def test_empty_definition_warns(self, manager):
        result = manager.validate_definition(WorkflowDefinition())

        assert result.is_valid
        assert "Workflow has no triggers" in result.warnings
        assert "Workflow has no actions" in result.warnings


@pytest.fixture
def system_template(repository):
    return repository.create_template(WorkflowTemplate(
        tenant_id=None,
        name="Stale deal reminder",
        description="Flag deals that stopped moving",
        category="sales",
        entity_type="Deal",
        definition=WorkflowDefinition.model_validate(RUNNABLE_DEFINITION),
        is_system=True,
    ))


class TestWorkflowTemplates:
    """Test cases for the template gallery."""

    def test_save_workflow_as_template(self, manager):
        workflow = manager.create_workflow(TENANT, create_request())

        template = manager.save_as_template(
            TENANT, workflow.id, SaveAsTemplateRequest(name="  Onboarding  ", category="Engagement")
        )

        assert template.name == "Onboarding"
        assert template.category == "engagement"
        assert template.entity_type == "Contact"
        assert template.is_system is False
        assert template.tenant_id == TENANT
        assert manager.get_template(TENANT, template.id).definition == workflow.definition

    def test_unknown_category_falls_back_to_custom(self, manager):
        workflow = manager.create_workflow(TENANT, create_request())

        unknown = manager.save_as_template(TENANT, workflow.id, SaveAsTemplateRequest(name="A", category="misc"))
        missing = manager.save_as_template(TENANT, workflow.id, SaveAsTemplateRequest(name="B"))

        assert unknown.category == "custom"
        assert missing.category == "custom"

    @pytest.mark.parametrize("name", ["", "   ", "x" * 201])
    def test_template_name_is_validated(self, name):
        with pytest.raises(ValidationError):
            SaveAsTemplateRequest(name=name)

    def test_list_puts_system_templates_first(self, manager, system_template):
        workflow = manager.create_workflow(TENANT, create_request())
        manager.save_as_template(TENANT, workflow.id, SaveAsTemplateRequest(name="Alpha"))

        names = [template.name for template in manager.list_templates(TENANT)]

        assert names == ["Stale deal reminder", "Alpha"]
        assert [t.name for t in manager.list_templates(TENANT, category="sales")] == ["Stale deal reminder"]
        assert [t.name for t in manager.list_templates(TENANT, entity_type="Contact")] == ["Alpha"]

    def test_custom_templates_are_tenant_scoped(self, manager, system_template):
        workflow = manager.create_workflow(TENANT, create_request())
        template = manager.save_as_template(TENANT, workflow.id, SaveAsTemplateRequest(name="Private"))

        assert [t.id for t in manager.list_templates("tenant-2")] == [system_template.id]
        assert manager.get_template("tenant-2", system_template.id).is_system
        with pytest.raises(WorkflowNotFoundError):
            manager.get_template("tenant-2", template.id)
        with pytest.raises(WorkflowNotFoundError):
            manager.delete_template("tenant-2", template.id)

    def test_apply_creates_inactive_draft(self, manager, system_template):
        workflow = manager.apply_template(TENANT, system_template.id)

        assert workflow.name == "Stale deal reminder"
        assert workflow.description == "Flag deals that stopped moving"
        assert workflow.entity_type == "Deal"
        assert workflow.status == WorkflowStatus.DRAFT
        assert workflow.is_active is False
        assert workflow.trigger_summary == ["RecordCreated"]
        assert workflow.definition == system_template.definition

    def test_delete_custom_template(self, manager):
        workflow = manager.create_workflow(TENANT, create_request())
        template = manager.save_as_template(TENANT, workflow.id, SaveAsTemplateRequest(name="Temporary"))

        manager.delete_template(TENANT, template.id)

        with pytest.raises(WorkflowNotFoundError):
            manager.get_template(TENANT, template.id)

    def test_system_template_cannot_be_deleted(self, manager, system_template):
        with pytest.raises(ProtectedResourceError):
            manager.delete_template(TENANT, system_template.id)

        assert manager.get_template(TENANT, system_template.id).id == system_template.id


class TestEntityFields:
    """Test cases for the entity field catalogue."""

    def test_standard_fields_of_deal(self, manager):
        fields = {field.name: field for field in manager.get_entity_fields("Deal")}

        assert fields["expected_close_date"].field_type == "date"
        assert fields["value"].field_type == "number"
        assert fields["pipeline_id"].field_type == "relation"
        assert fields["expected_close_date"].label == "Expected Close Date"
        assert "created_at" in fields and "updated_at" in fields

    def test_lead_conversion_flag_is_checkbox(self, manager):
        fields = {field.name: field.field_type for field in manager.get_entity_fields("Lead")}

        assert fields["is_converted"] == "checkbox"

    def test_unknown_entity_type_rejected(self, manager):
        with pytest.raises(WorkflowValidationError) as exc_info:
            manager.get_entity_fields("Invoice")

        assert exc_info.value.message.startswith("Invalid entity type: Invoice. Must be one of:")
