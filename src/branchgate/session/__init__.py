"""
Session lifecycle for multi-channel access.

- policy: per-access-method SessionPolicy table
- models: Session, BranchContext, DeviceInfo and event payloads
- events: lifecycle pub/sub
- manager: SessionManager, the create/validate/refresh/terminate orchestrator
"""

from branchgate.session.events import SessionEventBus
from branchgate.session.manager import SessionManager
from branchgate.session.models import (
    BranchContext,
    DeviceInfo,
    Session,
    SessionEvent,
    SessionState,
    SessionTimeoutWarning,
    TerminationReason,
)
from branchgate.session.policy import (
    DEFAULT_POLICY_TABLE,
    PolicyRegistry,
    SessionPolicy,
    load_policy_registry,
)

__all__ = [
    "BranchContext",
    "DEFAULT_POLICY_TABLE",
    "DeviceInfo",
    "PolicyRegistry",
    "Session",
    "SessionEvent",
    "SessionEventBus",
    "SessionManager",
    "SessionPolicy",
    "SessionState",
    "SessionTimeoutWarning",
    "TerminationReason",
    "load_policy_registry",
]
