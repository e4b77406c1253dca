"""Tests for environment config and policy overrides."""

import pytest

from fleetops.reconciler.config import (
    DEFAULT_POLICIES,
    FleetManagerPolicy,
    OpsConfig,
    apply_overrides,
    load_policy_overrides,
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "VALIDATOR_BASE_URL", "VALIDATOR_EMAIL", "VALIDATOR_PASSWORD",
        "OPS_EMAIL", "OPS_PASSWORD", "OPS_STATE_FILE", "OPS_POLICY_FILE",
        "REALTIME_URL", "WEB_URL", "SLACK_WEBHOOK_URL", "COMMS_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestFromEnv:
    """Test loading configuration from environment variables."""

    def test_defaults(self, clean_env):
        config = OpsConfig.from_env()

        assert config.base_url == "http://localhost:3000"
        assert config.state_file == "logs/ops-state.json"
        assert not config.has_credentials

    def test_ops_credentials_win_over_validator(self, clean_env):
        clean_env.setenv("VALIDATOR_EMAIL", "validator@example.com")
        clean_env.setenv("VALIDATOR_PASSWORD", "v-secret")
        clean_env.setenv("OPS_EMAIL", "ops@example.com")
        clean_env.setenv("OPS_PASSWORD", "o-secret")

        config = OpsConfig.from_env()

        assert (config.email, config.password) == ("ops@example.com", "o-secret")
        assert config.dashboard_email == "validator@example.com"

    def test_validator_credentials_are_the_fallback(self, clean_env):
        clean_env.setenv("VALIDATOR_EMAIL", "validator@example.com")
        clean_env.setenv("VALIDATOR_PASSWORD", "v-secret")

        config = OpsConfig.from_env()

        assert config.email == "validator@example.com"
        assert config.has_credentials

    def test_trailing_slash_is_stripped(self, clean_env):
        clean_env.setenv("VALIDATOR_BASE_URL", "https://ops.example.com/")

        assert OpsConfig.from_env().base_url == "https://ops.example.com"


class TestServiceDefinitions:
    def test_three_supervised_services(self):
        config = OpsConfig(base_url="http://api:3000", realtime_url="http://rt:3002", web_url="http://web:3001")

        services = {s.name: s for s in config.service_definitions()}

        assert services["middleware"].health_url == "http://api:3000/api/v1/health/ready"
        assert services["realtime"].health_url == "http://rt:3002/health"
        assert services["web"].health_url == "http://web:3001/"
        assert services["web"].memory_limit_bytes == 1024 * 1024 * 1024


class TestPolicyOverrides:
    """Test the YAML policy file."""

    def test_overrides_known_fields(self, tmp_path):
        policy_file = tmp_path / "policy.yaml"
        policy_file.write_text(
            "fleet-manager:\n"
            "  offline_threshold_minutes: 5\n"
            "  max_ping_attempts: 4\n"
        )
        config = OpsConfig(policy_file=str(policy_file))

        policy = config.policy_for("fleet-manager")

        assert policy.offline_threshold_minutes == 5
        assert policy.max_ping_attempts == 4
        assert policy.persistent_threshold_minutes == 60
        assert config.policy_for("schedule-doctor") == DEFAULT_POLICIES["schedule-doctor"]

    def test_unknown_keys_are_ignored(self):
        policy = apply_overrides(FleetManagerPolicy(), {"bogus": 1, "cluster_min_displays": 5}, "fleet-manager")

        assert policy.cluster_min_displays == 5
        assert not hasattr(policy, "bogus")

    def test_missing_file_means_defaults(self, tmp_path):
        assert load_policy_overrides(str(tmp_path / "absent.yaml")) == {}
        assert OpsConfig(policy_file=str(tmp_path / "absent.yaml")).policy_for("fleet-manager") == FleetManagerPolicy()

    def test_broken_yaml_means_defaults(self, tmp_path):
        policy_file = tmp_path / "policy.yaml"
        policy_file.write_text("fleet-manager: [unclosed\n")

        assert load_policy_overrides(str(policy_file)) == {}

    def test_non_mapping_sections_are_dropped(self, tmp_path):
        policy_file = tmp_path / "policy.yaml"
        policy_file.write_text("fleet-manager: 3\nschedule-doctor:\n  max_deactivate_attempts: 1\n")

        assert load_policy_overrides(str(policy_file)) == {"schedule-doctor": {"max_deactivate_attempts": 1}}

    def test_values_are_converted_to_field_types(self, tmp_path):
        policy_file = tmp_path / "policy.yaml"
        policy_file.write_text(
            "health-guardian:\n"
            "  max_attempts: \"3\"\n"
            "  restart_cooldown_seconds: \"soon\"\n"
            "  memory_threshold_pct: 90\n"
            "fleet-manager:\n"
            "  max_ping_attempts: null\n"
            "  cluster_min_displays: 2.5\n"
            "ops-reporter:\n"
            "  expected_agents:\n"
            "    health-guardian: \"15\"\n"
        )
        config = OpsConfig(policy_file=str(policy_file))

        guardian = config.policy_for("health-guardian")
        fleet = config.policy_for("fleet-manager")
        reporter = config.policy_for("ops-reporter")

        assert guardian.max_attempts == 3
        assert guardian.restart_cooldown_seconds == 30.0
        assert isinstance(guardian.memory_threshold_pct, float)
        assert fleet.max_ping_attempts is None
        assert fleet.cluster_min_displays == 3
        assert reporter.expected_agents == {"health-guardian": 15.0}

    def test_null_for_required_field_is_skipped(self):
        policy = apply_overrides(FleetManagerPolicy(), {"offline_threshold_minutes": None}, "fleet-manager")

        assert policy.offline_threshold_minutes == 15.0
