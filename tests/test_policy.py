"""
Unit tests for the policy registry.
"""

import pytest

from branchgate.errors import ConfigError
from branchgate.session.policy import (
    DEFAULT_POLICY_TABLE,
    HOUR,
    MINUTE,
    SECOND,
    PolicyRegistry,
    SessionPolicy,
    load_policy_registry,
)


class TestSessionPolicy:
    def test_valid_policy(self):
        policy = SessionPolicy("qr_code", 30 * MINUTE, 10 * MINUTE, 2 * MINUTE)
        assert policy.require_reauth is False
        assert policy.reauth_interval is None
        assert policy.to_dict()["session_duration"] == 30 * MINUTE

    def test_warning_must_be_shorter_than_duration(self):
        with pytest.raises(ConfigError):
            SessionPolicy("x", session_duration=MINUTE, inactivity_timeout=MINUTE, warning_lead_time=MINUTE)

    def test_negative_warning_rejected(self):
        with pytest.raises(ConfigError):
            SessionPolicy("x", MINUTE, MINUTE, warning_lead_time=-1)

    def test_non_positive_inactivity_rejected(self):
        with pytest.raises(ConfigError):
            SessionPolicy("x", MINUTE, 0)

    def test_non_integer_duration_rejected(self):
        with pytest.raises(ConfigError):
            SessionPolicy("x", 1.5, MINUTE)

    def test_reauth_requires_interval(self):
        with pytest.raises(ConfigError):
            SessionPolicy("x", HOUR, MINUTE, require_reauth=True)

    def test_policy_is_immutable(self):
        policy = SessionPolicy("x", HOUR, MINUTE)
        with pytest.raises(AttributeError):
            policy.session_duration = 1


class TestDefaultTable:
    def test_all_access_methods_present(self):
        registry = load_policy_registry()
        assert registry.access_methods() == sorted(
            [
                "agent_portal",
                "branch_tablet",
                "customer_kiosk",
                "mobile_app",
                "qr_code",
                "web_self_service",
            ]
        )

    def test_branch_tablet_values(self):
        policy = load_policy_registry().policy_for("branch_tablet")
        assert policy.session_duration == 15 * MINUTE
        assert policy.inactivity_timeout == 10 * MINUTE
        assert policy.warning_lead_time == 1 * MINUTE
        assert policy.auto_terminate_after_transaction is True
        assert policy.require_reauth is False

    def test_kiosk_is_single_use(self):
        policy = load_policy_registry().policy_for("customer_kiosk")
        assert policy.session_duration == 5 * MINUTE
        assert policy.warning_lead_time == 30 * SECOND
        assert policy.auto_terminate_after_transaction is True

    def test_mobile_requires_reauth(self):
        policy = load_policy_registry().policy_for("mobile_app")
        assert policy.require_reauth is True
        assert policy.reauth_interval == 4 * HOUR


class TestPolicyRegistry:
    def test_unknown_method_lists_available(self):
        registry = load_policy_registry()
        with pytest.raises(ConfigError) as exc:
            registry.policy_for("carrier_pigeon")
        assert "branch_tablet" in exc.value.details["available"]

    def test_duplicate_rejected(self):
        policy = SessionPolicy("x", HOUR, MINUTE)
        with pytest.raises(ConfigError):
            PolicyRegistry([policy, policy])

    def test_empty_rejected(self):
        with pytest.raises(ConfigError):
            PolicyRegistry([])

    def test_camel_case_keys_accepted(self):
        registry = PolicyRegistry.from_mapping(
            {"kiosk": {"sessionDuration": 60000, "inactivityTimeout": 30000, "warningTime": 5000}}
        )
        assert registry.policy_for("kiosk").warning_lead_time == 5000

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigError, match="unknown field"):
            PolicyRegistry.from_mapping(
                {"kiosk": {"session_duration": 60000, "inactivity_timeout": 1, "colour": "red"}}
            )

    def test_mismatched_access_method_rejected(self):
        with pytest.raises(ConfigError):
            PolicyRegistry.from_mapping(
                {"kiosk": {"access_method": "tablet", "session_duration": 60000, "inactivity_timeout": 1}}
            )

    def test_registry_is_read_only(self):
        registry = load_policy_registry()
        with pytest.raises(TypeError):
            registry._policies["new"] = None

    def test_container_protocol(self):
        registry = PolicyRegistry.from_mapping(DEFAULT_POLICY_TABLE)
        assert "qr_code" in registry
        assert "fax" not in registry
        assert len(registry) == len(DEFAULT_POLICY_TABLE)
        assert {p.access_method for p in registry} == set(DEFAULT_POLICY_TABLE)


class TestLoadPolicyFile:
    def test_load_with_policies_key(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(
            "policies:\n"
            "  branch_tablet:\n"
            "    session_duration: 600000\n"
            "    inactivity_timeout: 300000\n"
            "    warning_lead_time: 60000\n",
            encoding="utf-8",
        )
        registry = load_policy_registry(path)
        assert registry.access_methods() == ["branch_tablet"]
        assert registry.policy_for("branch_tablet").session_duration == 600000

    def test_load_top_level_table(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(
            "qr_code:\n  session_duration: 1000\n  inactivity_timeout: 500\n",
            encoding="utf-8",
        )
        assert "qr_code" in load_policy_registry(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_policy_registry(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("policies: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigError, match="Cannot parse"):
            load_policy_registry(path)

    def test_invalid_policy_fails_fast(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "kiosk:\n  session_duration: 1000\n  inactivity_timeout: 500\n  warning_lead_time: 1000\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigError):
            load_policy_registry(path)
