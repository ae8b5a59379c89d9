"""
Per-channel session policies.

A PolicyRegistry is built once at startup and never changes afterwards. Every
policy is validated when the registry is built, so a malformed table fails
before the first session is created. All durations are integer milliseconds.
"""

from dataclasses import asdict, dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import yaml

from branchgate.errors import ConfigError
from branchgate.logger import get_logger

logger = get_logger(__name__)

SECOND = 1000
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE


@dataclass(frozen=True)
class SessionPolicy:
    """Time-based and behavioural rules for sessions of one access method."""

    access_method: str
    session_duration: int
    inactivity_timeout: int
    warning_lead_time: int = 0
    require_reauth: bool = False
    reauth_interval: Optional[int] = None
    auto_terminate_after_transaction: bool = False

    def __post_init__(self):
        if not self.access_method:
            raise ConfigError("Policy is missing an access method")

        for name in ("session_duration", "inactivity_timeout", "warning_lead_time"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(
                    f"Policy '{self.access_method}': {name} must be an integer "
                    f"number of milliseconds, got {value!r}"
                )

        if not self.session_duration > self.warning_lead_time >= 0:
            raise ConfigError(
                f"Policy '{self.access_method}': requires "
                f"session_duration > warning_lead_time >= 0 "
                f"(got {self.session_duration} / {self.warning_lead_time})"
            )

        if self.inactivity_timeout <= 0:
            raise ConfigError(
                f"Policy '{self.access_method}': inactivity_timeout must be positive"
            )

        if self.reauth_interval is not None and (
            isinstance(self.reauth_interval, bool)
            or not isinstance(self.reauth_interval, int)
            or self.reauth_interval <= 0
        ):
            raise ConfigError(
                f"Policy '{self.access_method}': reauth_interval must be a "
                f"positive integer, got {self.reauth_interval!r}"
            )

        if self.require_reauth and self.reauth_interval is None:
            raise ConfigError(
                f"Policy '{self.access_method}': require_reauth needs a reauth_interval"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Keys accepted in policy tables, mapped to SessionPolicy fields.
_FIELD_ALIASES = {
    "accessMethod": "access_method",
    "sessionDuration": "session_duration",
    "inactivityTimeout": "inactivity_timeout",
    "warningLeadTime": "warning_lead_time",
    "warningTime": "warning_lead_time",
    "warning_time": "warning_lead_time",
    "requireReauth": "require_reauth",
    "reauthInterval": "reauth_interval",
    "autoTerminateAfterTransaction": "auto_terminate_after_transaction",
}
_POLICY_FIELDS = set(SessionPolicy.__dataclass_fields__)


def _policy_from_entry(access_method: str, entry: Mapping[str, Any]) -> SessionPolicy:
    if not isinstance(entry, Mapping):
        raise ConfigError(f"Policy '{access_method}' must be a mapping")

    kwargs: Dict[str, Any] = {}
    for key, value in entry.items():
        field_name = _FIELD_ALIASES.get(key, key)
        if field_name not in _POLICY_FIELDS:
            raise ConfigError(f"Policy '{access_method}': unknown field '{key}'")
        kwargs[field_name] = value

    declared = kwargs.setdefault("access_method", access_method)
    if declared != access_method:
        raise ConfigError(
            f"Policy keyed '{access_method}' declares access method '{declared}'"
        )

    try:
        return SessionPolicy(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Policy '{access_method}': {e}") from e


class PolicyRegistry:
    """Read-only mapping from access method to SessionPolicy."""

    def __init__(self, policies: Iterable[SessionPolicy]):
        table: Dict[str, SessionPolicy] = {}
        for policy in policies:
            if policy.access_method in table:
                raise ConfigError(
                    f"Duplicate policy for access method '{policy.access_method}'"
                )
            table[policy.access_method] = policy
        if not table:
            raise ConfigError("Policy table is empty")
        self._policies = MappingProxyType(table)

    @classmethod
    def from_mapping(cls, table: Mapping[str, Mapping[str, Any]]) -> "PolicyRegistry":
        """Build a registry from a plain ``{access_method: {field: value}}`` table."""
        if not isinstance(table, Mapping):
            raise ConfigError("Policy table must be a mapping of access methods")
        return cls(_policy_from_entry(str(method), entry) for method, entry in table.items())

    def policy_for(self, access_method: str) -> SessionPolicy:
        try:
            return self._policies[access_method]
        except KeyError:
            raise ConfigError(
                f"Unknown access method '{access_method}'",
                details={"available": self.access_methods()},
            ) from None

    def access_methods(self) -> List[str]:
        return sorted(self._policies)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {method: self._policies[method].to_dict() for method in self.access_methods()}

    def __contains__(self, access_method: object) -> bool:
        return access_method in self._policies

    def __iter__(self) -> Iterator[SessionPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)


DEFAULT_POLICY_TABLE: Dict[str, Dict[str, Any]] = {
    "mobile_app": {
        "session_duration": 24 * HOUR,
        "inactivity_timeout": 10 * MINUTE,
        "warning_lead_time": 2 * MINUTE,
        "require_reauth": True,
        "reauth_interval": 4 * HOUR,
    },
    "branch_tablet": {
        "session_duration": 15 * MINUTE,
        "inactivity_timeout": 10 * MINUTE,
        "warning_lead_time": 1 * MINUTE,
        "auto_terminate_after_transaction": True,
    },
    "qr_code": {
        "session_duration": 30 * MINUTE,
        "inactivity_timeout": 10 * MINUTE,
        "warning_lead_time": 2 * MINUTE,
    },
    "agent_portal": {
        "session_duration": 8 * HOUR,
        "inactivity_timeout": 30 * MINUTE,
        "warning_lead_time": 5 * MINUTE,
        "require_reauth": True,
        "reauth_interval": 4 * HOUR,
    },
    "customer_kiosk": {
        "session_duration": 5 * MINUTE,
        "inactivity_timeout": 2 * MINUTE,
        "warning_lead_time": 30 * SECOND,
        "auto_terminate_after_transaction": True,
    },
    "web_self_service": {
        "session_duration": 30 * MINUTE,
        "inactivity_timeout": 10 * MINUTE,
        "warning_lead_time": 2 * MINUTE,
    },
}


def load_policy_registry(path: Optional[Union[str, Path]] = None) -> PolicyRegistry:
    """
    Load the policy table from a YAML file, or the built-in table when no path is given.

    The file may hold the table at the top level or under a ``policies`` key.

    Raises:
        ConfigError: If the file is missing, unreadable or any policy is invalid.
    """
    if path is None:
        registry = PolicyRegistry.from_mapping(DEFAULT_POLICY_TABLE)
        logger.debug(f"Loaded built-in policy table ({len(registry)} access methods)")
        return registry

    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read policy file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse policy file {path}: {e}") from e

    if isinstance(data, Mapping) and "policies" in data:
        data = data["policies"]

    registry = PolicyRegistry.from_mapping(data or {})
    logger.info(f"Loaded {len(registry)} session policies from {path}")
    return registry
