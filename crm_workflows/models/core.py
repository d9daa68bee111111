"""Core Pydantic models for the CRM workflow engine."""

import json
import uuid
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form stored by the database layer."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class NodeType(str, Enum):
    """Graph node kinds understood by the execution engine."""
    TRIGGER = "trigger"
    ACTION = "action"
    BRANCH = "branch"
    WAIT = "wait"
    CONDITION = "condition"


class ActionType(str, Enum):
    """Action types that can be attached to action nodes."""
    UPDATE_FIELD = "updateField"
    SEND_NOTIFICATION = "sendNotification"
    CREATE_ACTIVITY = "createActivity"
    SEND_EMAIL = "sendEmail"
    FIRE_WEBHOOK = "fireWebhook"
    ENROLL_IN_SEQUENCE = "enrollInSequence"
    BRANCH = "branch"
    WAIT = "wait"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class ExecutionStatus(str, Enum):
    """Overall outcome of a workflow execution."""
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partiallyFailed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"


class ActionStatus(str, Enum):
    """Outcome of a single executed action."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EventType(str, Enum):
    """Entity lifecycle event kinds."""
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"


class ValidationResult(BaseModel):
    """Result of workflow definition validation."""
    is_valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


# Conditions

class WorkflowCondition(BaseModel):
    """A single field-level predicate."""
    field: str = Field(..., description="Entity field, optionally one level of dot notation")
    operator: str = Field(..., description="Comparison operator")
    value: Optional[str] = Field(None, description="Target value")
    from_value: Optional[str] = Field(None, description="Previous value for changed_from_to")

    @field_validator('value', 'from_value', mode='before')
    @classmethod
    def coerce_to_string(cls, v):
        """Condition values are compared as strings; accept JSON scalars."""
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


class WorkflowConditionGroup(BaseModel):
    """Conditions combined with AND; groups are combined with OR."""
    id: Optional[str] = Field(None, description="Group identifier")
    node_id: Optional[str] = Field(None, description="Owning node, if any")
    conditions: List[WorkflowCondition] = Field(default_factory=list)


# Triggers

class _TriggerBase(BaseModel):
    id: Optional[str] = Field(None, description="Trigger identifier")
    node_id: Optional[str] = Field(None, description="Trigger node this trigger belongs to")

    def summary_label(self) -> str:
        raise NotImplementedError

    def matches(self, event: "EntityEvent") -> bool:
        return False


class RecordCreatedTrigger(_TriggerBase):
    trigger_type: Literal["recordCreated"] = "recordCreated"

    def summary_label(self) -> str:
        return "RecordCreated"

    def matches(self, event: "EntityEvent") -> bool:
        return event.event_type == EventType.CREATED


class RecordUpdatedTrigger(_TriggerBase):
    trigger_type: Literal["recordUpdated"] = "recordUpdated"

    def summary_label(self) -> str:
        return "RecordUpdated"

    def matches(self, event: "EntityEvent") -> bool:
        return event.event_type == EventType.UPDATED


class RecordDeletedTrigger(_TriggerBase):
    trigger_type: Literal["recordDeleted"] = "recordDeleted"

    def summary_label(self) -> str:
        return "RecordDeleted"

    def matches(self, event: "EntityEvent") -> bool:
        return event.event_type == EventType.DELETED


class FieldChangedTrigger(_TriggerBase):
    """Fires on update events that touched ``field_name``."""
    trigger_type: Literal["fieldChanged"] = "fieldChanged"
    field_name: str = Field(..., min_length=1)
    operator: Optional[str] = None
    value: Optional[str] = None
    from_value: Optional[str] = None

    def summary_label(self) -> str:
        return f"FieldChanged:{self.field_name}"

    def matches(self, event: "EntityEvent") -> bool:
        if event.event_type != EventType.UPDATED or not event.changed_properties:
            return False
        return self.field_name in event.changed_properties


class DateBasedTrigger(_TriggerBase):
    """Fires from the periodic date scan, never from entity events.

    ``date_offset_days`` is how many days before the date field the workflow
    fires; a negative offset fires that many days after it.
    """
    trigger_type: Literal["dateBased"] = "dateBased"
    field_name: str = Field(..., min_length=1)
    date_offset_days: int = Field(0, description="Days before the date field to fire")
    preferred_time: Optional[time] = Field(None, description="Preferred time of day (UTC)")

    def summary_label(self) -> str:
        return f"DateBased:{self.field_name}"


WorkflowTrigger = Annotated[
    Union[RecordCreatedTrigger, RecordUpdatedTrigger, RecordDeletedTrigger, FieldChangedTrigger, DateBasedTrigger],
    Field(discriminator="trigger_type"),
]


# Node configs

class BranchNodeConfig(BaseModel):
    """Nested condition groups deciding between the "yes" and "no" outputs."""
    condition_groups: List[WorkflowConditionGroup] = Field(default_factory=list)


class WaitNodeConfig(BaseModel):
    """Duration a wait node suspends the run for."""
    delay_minutes: int = Field(0, ge=0)
    delay_hours: int = Field(0, ge=0)
    delay_days: int = Field(0, ge=0)

    @property
    def delay(self) -> timedelta:
        return timedelta(days=self.delay_days, hours=self.delay_hours, minutes=self.delay_minutes)


# Plain mappings are tried first so opaque configs are never coerced into a model
NodeConfig = Annotated[
    Union[Dict[str, Any], BranchNodeConfig, WaitNodeConfig],
    Field(union_mode="left_to_right"),
]


class WorkflowNode(BaseModel):
    """A node of the workflow graph.

    ``config`` is coerced into a typed model for branch and wait nodes so that
    malformed payloads are rejected when the workflow is saved. Other node
    kinds, including ones this engine does not know, keep an opaque mapping.
    """
    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Node kind")
    label: Optional[str] = Field(None, description="Display label")
    position: Optional[Dict[str, float]] = Field(None, description="Canvas position")
    config: NodeConfig = Field(default_factory=dict)

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not empty."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    @model_validator(mode='before')
    @classmethod
    def coerce_config(cls, data):
        """Pick the config model matching the node type."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        node_type = data.get("type")
        config = data.get("config")
        if config is None:
            config = {}
        if node_type == NodeType.BRANCH.value and not isinstance(config, BranchNodeConfig):
            data["config"] = BranchNodeConfig.model_validate(config)
        elif node_type == NodeType.WAIT.value and not isinstance(config, WaitNodeConfig):
            data["config"] = WaitNodeConfig.model_validate(config)
        else:
            data["config"] = config
        return data

    @property
    def branch_config(self) -> BranchNodeConfig:
        if isinstance(self.config, BranchNodeConfig):
            return self.config
        return BranchNodeConfig()

    @property
    def wait_config(self) -> WaitNodeConfig:
        if isinstance(self.config, WaitNodeConfig):
            return self.config
        return WaitNodeConfig()


class WorkflowConnection(BaseModel):
    """Directed edge between two nodes."""
    id: Optional[str] = Field(None, description="Connection identifier")
    source_node_id: str = Field(..., description="Source node ID")
    target_node_id: str = Field(..., description="Target node ID")
    source_output: Optional[str] = Field(None, description="Branch output: yes or no")

    @field_validator('source_output')
    @classmethod
    def normalize_output(cls, v):
        """Branch outputs are matched case-insensitively."""
        if v is None or not v.strip():
            return None
        return v.strip().lower()


# Action configs

class UpdateFieldConfig(BaseModel):
    field_name: str = Field(..., min_length=1)
    value: Any = None
    is_dynamic: bool = False
    dynamic_source_field: Optional[str] = None


class SendNotificationConfig(BaseModel):
    title: str = Field(..., min_length=1)
    message: Optional[str] = None
    recipient_type: Literal["record_owner", "deal_owner", "specific_user"] = "record_owner"
    recipient_id: Optional[str] = None


class CreateActivityConfig(BaseModel):
    subject: str = Field(..., min_length=1)
    type: str = "Task"
    priority: str = "Medium"
    due_date_offset_days: int = 1
    assignee_type: Optional[Literal["record_owner", "deal_owner", "specific_user"]] = None
    assignee_id: Optional[str] = None


class SendEmailConfig(BaseModel):
    email_template_id: str = Field(..., min_length=1)
    recipient_field: str = "email"


class FireWebhookConfig(BaseModel):
    url: str = Field(..., min_length=1)
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload_template: Optional[str] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)

    @field_validator('method', mode='before')
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator('url')
    @classmethod
    def validate_url(cls, v):
        """Webhooks must target an HTTP(S) endpoint."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("Webhook URL must start with http:// or https://")
        return v


class EnrollInSequenceConfig(BaseModel):
    sequence_id: str = Field(..., min_length=1)


ACTION_CONFIG_MODELS = {
    ActionType.UPDATE_FIELD.value: UpdateFieldConfig,
    ActionType.SEND_NOTIFICATION.value: SendNotificationConfig,
    ActionType.CREATE_ACTIVITY.value: CreateActivityConfig,
    ActionType.SEND_EMAIL.value: SendEmailConfig,
    ActionType.FIRE_WEBHOOK.value: FireWebhookConfig,
    ActionType.ENROLL_IN_SEQUENCE.value: EnrollInSequenceConfig,
}

ActionConfigPayload = Annotated[
    Union[
        Dict[str, Any],
        UpdateFieldConfig,
        SendNotificationConfig,
        CreateActivityConfig,
        SendEmailConfig,
        FireWebhookConfig,
        EnrollInSequenceConfig,
    ],
    Field(union_mode="left_to_right"),
]


class WorkflowActionConfig(BaseModel):
    """Action attached to an action node."""
    id: Optional[str] = Field(None, description="Action identifier")
    node_id: str = Field(..., description="Action node this config belongs to")
    action_type: str = Field(..., description="Action type")
    continue_on_error: bool = Field(False, description="Keep traversing when the action fails")
    order: int = Field(0, description="Execution order in linear mode")
    config: ActionConfigPayload = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def coerce_config(cls, data):
        """Validate the config payload against the model of its action type."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        action_type = data.get("action_type")
        if isinstance(action_type, ActionType):
            action_type = action_type.value
            data["action_type"] = action_type
        config = data.get("config")
        if config is None:
            config = {}
        model = ACTION_CONFIG_MODELS.get(action_type)
        if model is not None and not isinstance(config, model):
            if isinstance(config, BaseModel):
                config = config.model_dump()
            config = model.model_validate(config)
        data["config"] = config
        return data


# Definition

class WorkflowDefinition(BaseModel):
    """Complete definition of a workflow graph."""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[WorkflowConnection] = Field(default_factory=list)
    triggers: List[WorkflowTrigger] = Field(default_factory=list)
    conditions: List[WorkflowConditionGroup] = Field(default_factory=list)
    actions: List[WorkflowActionConfig] = Field(default_factory=list)

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode='after')
    def validate_graph_structure(self):
        """Validate connections, branch outputs and action references."""
        node_ids = {node.id for node in self.nodes}
        node_types = {node.id: node.type for node in self.nodes}

        for connection in self.connections:
            if connection.source_node_id not in node_ids:
                raise ValueError(f"Connection references non-existent source node: {connection.source_node_id}")
            if connection.target_node_id not in node_ids:
                raise ValueError(f"Connection references non-existent target node: {connection.target_node_id}")

        branch_outputs: Dict[str, List[str]] = {}
        for connection in self.connections:
            if node_types.get(connection.source_node_id) != NodeType.BRANCH.value:
                continue
            output = connection.source_output
            if output not in ("yes", "no"):
                raise ValueError(
                    f"Branch node '{connection.source_node_id}' connection must use output 'yes' or 'no'"
                )
            outputs = branch_outputs.setdefault(connection.source_node_id, [])
            if output in outputs:
                raise ValueError(
                    f"Branch node '{connection.source_node_id}' has more than one '{output}' connection"
                )
            outputs.append(output)

        if self.nodes:
            seen_action_nodes = set()
            for action in self.actions:
                if action.node_id not in node_ids:
                    raise ValueError(f"Action references non-existent node: {action.node_id}")
                if action.node_id in seen_action_nodes:
                    raise ValueError(f"Node '{action.node_id}' has more than one action config")
                seen_action_nodes.add(action.node_id)

        return self

    def validate_structure(self) -> ValidationResult:
        """Collect non-fatal problems of an already well-formed definition."""
        errors = []
        warnings = []

        if not self.triggers:
            warnings.append("Workflow has no triggers")
        if not self.actions:
            warnings.append("Workflow has no actions")

        known_types = {node_type.value for node_type in NodeType}
        configured_nodes = {action.node_id for action in self.actions}
        for node in self.nodes:
            if node.type not in known_types:
                warnings.append(f"Node '{node.id}' has unknown type '{node.type}' and will be passed through")
            elif node.type == NodeType.ACTION.value and node.id not in configured_nodes:
                warnings.append(f"Action node '{node.id}' has no action config")

        known_actions = {action_type.value for action_type in ActionType}
        for action in self.actions:
            if action.action_type not in known_actions:
                warnings.append(f"Action on node '{action.node_id}' has unsupported type '{action.action_type}'")

        if self.nodes and not self.trigger_nodes():
            warnings.append("Workflow has no trigger nodes; actions will run in declared order")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def node_map(self) -> Dict[str, WorkflowNode]:
        return {node.id: node for node in self.nodes}

    def trigger_nodes(self) -> List[WorkflowNode]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER.value]

    def successors(self, node_id: str, output: Optional[str] = None) -> List[str]:
        """Target node ids of ``node_id``'s connections, optionally for one branch output."""
        return [
            connection.target_node_id
            for connection in self.connections
            if connection.source_node_id == node_id
            and (output is None or connection.source_output == output)
        ]

    def action_for_node(self, node_id: str) -> Optional[WorkflowActionConfig]:
        for action in self.actions:
            if action.node_id == node_id:
                return action
        return None

    def trigger_summary(self) -> List[str]:
        return [trigger.summary_label() for trigger in self.triggers]

    def date_triggers(self) -> List[DateBasedTrigger]:
        return [trigger for trigger in self.triggers if isinstance(trigger, DateBasedTrigger)]


# Workflows

class Workflow(BaseModel):
    """A stored workflow with its lifecycle state."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str = Field(..., description="Owning tenant")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = None
    entity_type: str = Field(..., description="Entity type the workflow listens to")
    definition: WorkflowDefinition = Field(default_factory=WorkflowDefinition)
    trigger_summary: List[str] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    is_active: bool = False
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_runnable(self) -> bool:
        """Only active workflows that have not been switched off execute."""
        return self.status == WorkflowStatus.ACTIVE and self.is_active


class WorkflowCreate(BaseModel):
    """Fields accepted when creating a workflow."""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    entity_type: str = Field(..., min_length=1)
    definition: WorkflowDefinition = Field(default_factory=WorkflowDefinition)
    activate: bool = Field(False, description="Activate immediately after creation")

    @field_validator('name', 'entity_type')
    @classmethod
    def strip_value(cls, v):
        if not v.strip():
            raise ValueError("Value cannot be empty")
        return v.strip()


class WorkflowUpdate(BaseModel):
    """Fields accepted when updating a workflow; omitted fields are unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    entity_type: Optional[str] = Field(None, min_length=1)
    definition: Optional[WorkflowDefinition] = None


# Templates

TEMPLATE_CATEGORIES = ("sales", "engagement", "operational", "custom")
DEFAULT_TEMPLATE_CATEGORY = "custom"


class WorkflowTemplate(BaseModel):
    """Reusable workflow definition.

    System templates have no tenant and are visible to every tenant; custom
    templates belong to the tenant that saved them.
    """
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    tenant_id: Optional[str] = Field(None, description="Owning tenant; None for system templates")
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: str = DEFAULT_TEMPLATE_CATEGORY
    entity_type: str
    definition: WorkflowDefinition = Field(default_factory=WorkflowDefinition)
    is_system: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def node_count(self) -> int:
        return len(self.definition.nodes)


class WorkflowTemplateSummary(BaseModel):
    """Gallery entry of a template, without its definition."""
    id: str
    name: str
    description: Optional[str] = None
    category: str
    entity_type: str
    is_system: bool
    node_count: int

    @classmethod
    def from_template(cls, template: WorkflowTemplate) -> "WorkflowTemplateSummary":
        return cls(
            id=template.id,
            name=template.name,
            description=template.description,
            category=template.category,
            entity_type=template.entity_type,
            is_system=template.is_system,
            node_count=template.node_count,
        )


class SaveAsTemplateRequest(BaseModel):
    """Fields accepted when saving a workflow as a template."""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        if not v.strip():
            raise ValueError("Template name is required")
        return v.strip()

    @field_validator('category')
    @classmethod
    def normalize_category(cls, v):
        """Unknown or missing categories fall back to ``custom``."""
        if v and v.strip().lower() in TEMPLATE_CATEGORIES:
            return v.strip().lower()
        return DEFAULT_TEMPLATE_CATEGORY


class EntityField(BaseModel):
    """A field of an entity type offered to trigger and condition editors."""
    name: str
    label: str
    field_type: str


# Events and execution

class EntityEvent(BaseModel):
    """Lifecycle notification for a persisted entity change."""
    entity_type: str
    event_type: EventType
    entity_id: str
    tenant_id: Optional[str] = None
    changed_properties: Optional[Dict[str, Any]] = None
    old_property_values: Optional[Dict[str, Any]] = None


def encode_properties(properties: Optional[Dict[str, Any]]) -> Optional[str]:
    """Serialize a property map for transport inside a trigger context."""
    if properties is None:
        return None
    return json.dumps(properties, default=str)


def decode_properties(payload: Optional[str]) -> Optional[Dict[str, Any]]:
    if not payload:
        return None
    decoded = json.loads(payload)
    return decoded if isinstance(decoded, dict) else None


class WorkflowTriggerContext(BaseModel):
    """Unit of work handed to the job queue; contains only serializable values."""
    workflow_id: str
    entity_id: str
    entity_type: str
    tenant_id: str
    trigger_type: str
    event_type: str
    changed_properties_json: Optional[str] = None
    old_property_values_json: Optional[str] = None
    current_depth: int = Field(0, ge=0)

    @property
    def changed_properties(self) -> Optional[Dict[str, Any]]:
        return decode_properties(self.changed_properties_json)

    @property
    def old_property_values(self) -> Optional[Dict[str, Any]]:
        return decode_properties(self.old_property_values_json)


class ActionLog(BaseModel):
    """Record of one executed action node."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    action_type: str
    action_node_id: str
    order: int = 0
    status: ActionStatus
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0


class ExecutionLog(BaseModel):
    """Audit record of one logical workflow run, possibly spanning waits."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    workflow_id: str
    entity_id: str
    entity_type: str
    trigger_type: str
    trigger_event: str
    conditions_evaluated: bool = False
    conditions_passed: bool = False
    status: Optional[ExecutionStatus] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    action_logs: List[ActionLog] = Field(default_factory=list)

    @classmethod
    def start(cls, context: WorkflowTriggerContext) -> "ExecutionLog":
        return cls(
            tenant_id=context.tenant_id,
            workflow_id=context.workflow_id,
            entity_id=context.entity_id,
            entity_type=context.entity_type,
            trigger_type=context.trigger_type,
            trigger_event=context.event_type,
        )
