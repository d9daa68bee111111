"""Data models for the CRM workflow engine."""

from .core import (
    ActionLog,
    ActionStatus,
    ActionType,
    BranchNodeConfig,
    DEFAULT_TEMPLATE_CATEGORY,
    TEMPLATE_CATEGORIES,
    DateBasedTrigger,
    EntityEvent,
    EntityField,
    EventType,
    ExecutionLog,
    ExecutionStatus,
    FieldChangedTrigger,
    NodeType,
    SaveAsTemplateRequest,
    ValidationResult,
    WaitNodeConfig,
    Workflow,
    WorkflowActionConfig,
    WorkflowCondition,
    WorkflowConditionGroup,
    WorkflowConnection,
    WorkflowCreate,
    WorkflowDefinition,
    WorkflowNode,
    WorkflowStatus,
    WorkflowTemplate,
    WorkflowTemplateSummary,
    WorkflowTriggerContext,
    WorkflowUpdate,
)

__all__ = [
    "ActionLog",
    "ActionStatus",
    "ActionType",
    "BranchNodeConfig",
    "DEFAULT_TEMPLATE_CATEGORY",
    "TEMPLATE_CATEGORIES",
    "DateBasedTrigger",
    "EntityEvent",
    "EntityField",
    "EventType",
    "ExecutionLog",
    "ExecutionStatus",
    "FieldChangedTrigger",
    "NodeType",
    "SaveAsTemplateRequest",
    "ValidationResult",
    "WaitNodeConfig",
    "Workflow",
    "WorkflowActionConfig",
    "WorkflowCondition",
    "WorkflowConditionGroup",
    "WorkflowConnection",
    "WorkflowCreate",
    "WorkflowDefinition",
    "WorkflowNode",
    "WorkflowStatus",
    "WorkflowTemplate",
    "WorkflowTemplateSummary",
    "WorkflowTriggerContext",
    "WorkflowUpdate",
]
