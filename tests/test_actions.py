"""Tests for the built-in workflow actions and the action executor."""

import json
from datetime import timedelta
from unittest.mock import Mock

import pytest
import requests

from crm_workflows.actions import (
    CreateActivityAction,
    EnrollInSequenceAction,
    FireWebhookAction,
    SendEmailAction,
    SendNotificationAction,
    UpdateFieldAction,
    build_default_actions,
    render_template,
)
from crm_workflows.core.action_executor import ActionExecutor
from crm_workflows.core.exceptions import ActionExecutionError, StorageError
from crm_workflows.models.core import (
    CreateActivityConfig,
    EnrollInSequenceConfig,
    FireWebhookConfig,
    SendEmailConfig,
    SendNotificationConfig,
    UpdateFieldConfig,
    WorkflowActionConfig,
    WorkflowTriggerContext,
    utc_now,
)
from crm_workflows.storage.models import (
    EmailTemplateModel,
    NotificationModel,
    OutboundEmailModel,
    SequenceEnrollmentModel,
)

TENANT = "tenant-1"


def context(entity_id="c1", entity_type="Contact"):
    return WorkflowTriggerContext(
        workflow_id="wf-1",
        entity_id=entity_id,
        entity_type=entity_type,
        tenant_id=TENANT,
        trigger_type="RecordCreated",
        event_type="Created",
    )


@pytest.fixture
def contact(entity_store):
    entity_store.create_record(TENANT, "Contact", {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "owner_id": "user-1",
        "deal_id": "d1",
        "score": 42,
    }, entity_id="c1")
    return entity_store.load_entity_data("Contact", "c1")


class TestTemplates:
    """Test cases for merge field rendering."""

    def test_render_known_and_unknown_fields(self):
        data = {"first_name": "Ada", "company": {"name": "Acme"}, "score": 4.0}

        rendered = render_template("Hi {{ first_name }} of {{company.name}} ({{score}}){{missing}}", data)

        assert rendered == "Hi Ada of Acme (4)"

    def test_merge_fields_match_case_insensitively(self):
        assert render_template("{{FirstName}}", {"firstname": "Ada"}) == "Ada"

    def test_empty_template(self):
        assert render_template(None, {"a": 1}) == ""


class TestRecordActions:
    """Test cases for actions writing records."""

    def test_update_field_static_value(self, entity_store, contact):
        UpdateFieldAction(entity_store).execute(
            UpdateFieldConfig(field_name="status", value="Qualified"), contact, context()
        )

        assert entity_store.load_entity_data("Contact", "c1")["status"] == "Qualified"

    def test_update_field_dynamic_value(self, entity_store, contact):
        UpdateFieldAction(entity_store).execute(
            UpdateFieldConfig(field_name="custom.primary_email", is_dynamic=True, dynamic_source_field="email"),
            contact,
            context(),
        )

        assert entity_store.load_entity_data("Contact", "c1")["custom"] == {"primary_email": "ada@example.com"}

    def test_dynamic_update_requires_source(self, entity_store, contact):
        with pytest.raises(ActionExecutionError):
            UpdateFieldAction(entity_store).execute(
                UpdateFieldConfig(field_name="status", is_dynamic=True), contact, context()
            )

    def test_update_missing_record_fails(self, entity_store):
        with pytest.raises(StorageError):
            UpdateFieldAction(entity_store).execute(UpdateFieldConfig(field_name="status", value="x"), {}, context())

    def test_create_activity_linked_to_record(self, entity_store, contact):
        events = []
        entity_store.subscribe(events.append)

        CreateActivityAction(entity_store).execute(
            CreateActivityConfig(subject="Call {{first_name}}", priority="High", due_date_offset_days=2),
            contact,
            context(),
        )

        assert len(events) == 1
        activity = entity_store.load_entity_data("Activity", events[0].entity_id)
        assert activity["subject"] == "Call Ada"
        assert activity["priority"] == "High"
        assert activity["owner_id"] == "user-1"
        assert activity["linked_entity_id"] == "c1"
        assert activity["linked_entity_name"] == "Ada Lovelace"
        assert activity["due_date"] == (utc_now() + timedelta(days=2)).date().isoformat()
        assert activity["tenant_id"] == TENANT


class TestNotificationAction:
    """Test cases for in-app notifications."""

    def test_notify_record_owner(self, session_factory, entity_store, contact):
        SendNotificationAction(entity_store, session_factory).execute(
            SendNotificationConfig(title="New contact {{first_name}}", message="Score {{score}}"),
            contact,
            context(),
        )

        db = session_factory()
        try:
            notifications = db.query(NotificationModel).all()
            assert len(notifications) == 1
            assert notifications[0].user_id == "user-1"
            assert notifications[0].title == "New contact Ada"
            assert notifications[0].message == "Score 42"
            assert notifications[0].tenant_id == TENANT
        finally:
            db.close()

    def test_notify_deal_owner_through_linked_deal(self, session_factory, entity_store, contact):
        entity_store.create_record(TENANT, "Deal", {"title": "Big deal", "owner_id": "user-9"}, entity_id="d1")

        SendNotificationAction(entity_store, session_factory).execute(
            SendNotificationConfig(title="Deal contact changed", recipient_type="deal_owner"), contact, context()
        )

        db = session_factory()
        try:
            assert [n.user_id for n in db.query(NotificationModel).all()] == ["user-9"]
        finally:
            db.close()

    def test_missing_recipient_sends_nothing(self, session_factory, entity_store):
        SendNotificationAction(entity_store, session_factory).execute(
            SendNotificationConfig(title="Orphan"), {"first_name": "Nobody"}, context()
        )

        db = session_factory()
        try:
            assert db.query(NotificationModel).count() == 0
        finally:
            db.close()


class TestEmailAction:
    """Test cases for template emails."""

    @pytest.fixture
    def template(self, session_factory):
        db = session_factory()
        db.add(EmailTemplateModel(
            id="tpl-1", tenant_id=TENANT, name="Welcome",
            subject="Welcome {{first_name}}", body="Hello {{first_name}} {{last_name}}",
        ))
        db.commit()
        db.close()
        return "tpl-1"

    def _emails(self, session_factory):
        db = session_factory()
        try:
            return [(e.recipient, e.subject, e.body) for e in db.query(OutboundEmailModel).all()]
        finally:
            db.close()

    def test_email_rendered_from_template(self, session_factory, template, contact):
        SendEmailAction(session_factory).execute(SendEmailConfig(email_template_id=template), contact, context())

        assert self._emails(session_factory) == [("ada@example.com", "Welcome Ada", "Hello Ada Lovelace")]

    def test_missing_template_sends_nothing(self, session_factory, contact):
        SendEmailAction(session_factory).execute(SendEmailConfig(email_template_id="nope"), contact, context())

        assert self._emails(session_factory) == []

    def test_template_of_other_tenant_not_used(self, session_factory, template, contact):
        other = context().model_copy(update={"tenant_id": "tenant-2"})

        SendEmailAction(session_factory).execute(SendEmailConfig(email_template_id=template), contact, other)

        assert self._emails(session_factory) == []

    def test_missing_recipient_sends_nothing(self, session_factory, template, contact):
        SendEmailAction(session_factory).execute(
            SendEmailConfig(email_template_id=template, recipient_field="secondary_email"), contact, context()
        )

        assert self._emails(session_factory) == []


class TestWebhookAction:
    """Test cases for outbound webhooks."""

    def test_posts_default_payload(self, contact):
        http = Mock()
        http.request.return_value = Mock(status_code=204)
        config = FireWebhookConfig(url="https://hooks.example.com/crm", headers={"X-Token": "secret"})

        FireWebhookAction(http=http, default_timeout=3.0).execute(config, contact, context())

        args, kwargs = http.request.call_args
        assert args == ("POST", "https://hooks.example.com/crm")
        assert kwargs["timeout"] == 3.0
        assert kwargs["headers"] == {"Content-Type": "application/json", "X-Token": "secret"}
        payload = json.loads(kwargs["data"].decode("utf-8"))
        assert payload["entity_id"] == "c1"
        assert payload["workflow_id"] == "wf-1"
        assert payload["data"]["email"] == "ada@example.com"

    def test_payload_template_and_method(self, contact):
        http = Mock()
        http.request.return_value = Mock(status_code=200)
        config = FireWebhookConfig(
            url="https://hooks.example.com/crm",
            method="put",
            payload_template='{"email": "{{email}}"}',
            timeout_seconds=1.5,
        )

        FireWebhookAction(http=http).execute(config, contact, context())

        args, kwargs = http.request.call_args
        assert args[0] == "PUT"
        assert kwargs["data"] == b'{"email": "ada@example.com"}'
        assert kwargs["timeout"] == 1.5

    def test_error_status_fails(self, contact):
        http = Mock()
        http.request.return_value = Mock(status_code=500)

        with pytest.raises(ActionExecutionError) as exc_info:
            FireWebhookAction(http=http).execute(FireWebhookConfig(url="https://hooks.example.com"), contact, context())

        assert "HTTP 500" in exc_info.value.message

    def test_connection_error_fails(self, contact):
        http = Mock()
        http.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(ActionExecutionError) as exc_info:
            FireWebhookAction(http=http).execute(FireWebhookConfig(url="https://hooks.example.com"), contact, context())

        assert "refused" in exc_info.value.message


class TestSequenceAction:
    """Test cases for sequence enrollment."""

    def _enrollments(self, session_factory):
        db = session_factory()
        try:
            return db.query(SequenceEnrollmentModel).all()
        finally:
            db.close()

    def test_enroll_contact_once(self, session_factory, contact):
        action = EnrollInSequenceAction(session_factory)
        config = EnrollInSequenceConfig(sequence_id="seq-1")

        action.execute(config, contact, context())
        action.execute(config, contact, context())

        enrollments = self._enrollments(session_factory)
        assert len(enrollments) == 1
        assert enrollments[0].status == "active"
        assert enrollments[0].current_step == 0
        assert enrollments[0].enrolled_by_workflow_id == "wf-1"

    def test_only_contacts_can_enroll(self, session_factory):
        with pytest.raises(ActionExecutionError):
            EnrollInSequenceAction(session_factory).execute(
                EnrollInSequenceConfig(sequence_id="seq-1"), {}, context(entity_type="Deal")
            )


class TestActionExecutor:
    """Test cases for dispatching action configs."""

    def _config(self, action_type, config=None):
        return WorkflowActionConfig(node_id="a1", action_type=action_type, config=config or {})

    def test_unsupported_type_is_failure(self):
        result = ActionExecutor().execute(self._config("sendFax"), {}, context())

        assert not result.succeeded
        assert result.error_message == "Unsupported workflow action type: sendFax"

    def test_structural_types_succeed(self):
        executor = ActionExecutor()

        assert executor.execute(self._config("branch"), {}, context()).succeeded
        assert executor.execute(self._config("wait"), {}, context()).succeeded

    def test_unexpected_exception_becomes_failure(self):
        action = Mock()
        action.execute.side_effect = KeyError("boom")
        executor = ActionExecutor({"custom": action})

        result = executor.execute(self._config("custom"), {}, context())

        assert not result.succeeded
        assert "boom" in result.error_message

    def test_default_actions_cover_every_action_type(self, entity_store, session_factory):
        executor = ActionExecutor(build_default_actions(entity_store, session_factory))

        assert executor.list_action_types() == sorted([
            "createActivity", "enrollInSequence", "fireWebhook",
            "sendEmail", "sendNotification", "updateField",
        ])

    def test_register_replaces_implementation(self):
        first, second = Mock(), Mock()
        executor = ActionExecutor({"custom": first})

        executor.register(" custom ", second)
        executor.execute(self._config("custom"), {}, context())

        assert executor.is_registered("custom")
        assert not executor.is_registered("branch")
        first.execute.assert_not_called()
        second.execute.assert_called_once()

    def test_register_rejects_empty_type(self):
        with pytest.raises(ActionExecutionError):
            ActionExecutor().register("  ", Mock())
