"""Agent and channel status graph with tenant provisioning."""

from .config import AppConfig
from .database import Database, DatabaseConfig, PoolConfig
from .exceptions import (
    InvariantViolation,
    NotFound,
    PersistFailure,
    PresenceError,
    ProvisioningFailure,
    UnknownTransitionTarget,
)
from .graph import Selector, apply_blocked_defaults, compute_sibling_resets, validate_rename, validate_timer_target
from .models import ActivityStatus, Channel, GlobalStatus, Ponder, Signal, Status, Tenant
from .orm import ORM, Model, ModelManager, ModelRegistry, ModelScope, default_registry, model
from .provisioning import (
    ActivityStatusTemplate,
    ChannelTemplate,
    GlobalStatusTemplate,
    PonderTemplate,
    ProvisioningTemplates,
    SignalTemplate,
    StatusTemplate,
    TenantProvisioner,
)
from .repositories import Repositories
from .services import (
    GlobalStatusCreate,
    GlobalStatusPatch,
    GlobalStatusService,
    StatusCreate,
    StatusPatch,
    StatusService,
)
from .storage import sql_repositories
from .tenancy import RequestContext
from .testing import InMemoryStore, memory_repositories

__all__ = [
    "ORM",
    "ActivityStatus",
    "ActivityStatusTemplate",
    "AppConfig",
    "Channel",
    "ChannelTemplate",
    "Database",
    "DatabaseConfig",
    "GlobalStatus",
    "GlobalStatusCreate",
    "GlobalStatusPatch",
    "GlobalStatusService",
    "GlobalStatusTemplate",
    "InMemoryStore",
    "InvariantViolation",
    "Model",
    "ModelManager",
    "ModelRegistry",
    "ModelScope",
    "NotFound",
    "PersistFailure",
    "PoolConfig",
    "Ponder",
    "PonderTemplate",
    "PresenceError",
    "ProvisioningFailure",
    "ProvisioningTemplates",
    "Repositories",
    "RequestContext",
    "Selector",
    "Signal",
    "SignalTemplate",
    "Status",
    "StatusCreate",
    "StatusPatch",
    "StatusService",
    "StatusTemplate",
    "Tenant",
    "TenantProvisioner",
    "UnknownTransitionTarget",
    "apply_blocked_defaults",
    "compute_sibling_resets",
    "default_registry",
    "memory_repositories",
    "model",
    "sql_repositories",
    "validate_rename",
    "validate_timer_target",
]
