"""
Tests for configuration loading.

Covers:
- Shipped settings, policy pack and workflows load and are consistent
- SIGNING_* environment overrides and type coercion
- Settings invariants (TTL cap, sample rate, positive timeouts)
- Policy pack parsing errors and merging of several files
- Checksums are deterministic
"""

import pytest

from signing_config import get_policy_pack, get_settings, shipped_workflow
from signing_config.loader import (
    DEFAULTS_DIR,
    compute_checksum,
    load_policy_pack,
    load_settings,
    load_workflow_definition,
    parse_policy_pack,
    parse_settings,
)
from signing_config.settings import MAX_AUTHZ_CACHE_TTL_SECONDS, OrchestratorSettings
from signing_kernel.domain.authz import PolicyType
from signing_kernel.exceptions import ConfigurationError


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        "orchestrator:\n"
        "  database_url: sqlite:///signing.db\n"
        "  authz_cache_ttl_seconds: 60\n"
        "  policy_allowed_sample_rate: 0.25\n"
        "  trusted_issuers: [Root A, Root B]\n"
    )
    return path


class TestShippedDefaults:

    def test_shipped_settings(self):
        settings = load_settings(env={})

        assert settings.authz_cache_ttl_seconds == 300.0
        assert settings.policy_allowed_sample_rate == 0.1
        assert settings.allowed_sample_every == 10
        assert settings.reminder_interval_seconds == 86400
        assert settings.escalation_delay_seconds == 259200
        assert settings.trusted_issuers == ("Qualified Trust Service CA",)

    def test_get_settings_logs_config_trace(self, captured_logs, monkeypatch):
        monkeypatch.delenv("SIGNING_DATABASE_URL", raising=False)
        get_settings()

        traces = [r for r in captured_logs() if r["message"] == "CONFIG_TRACE"]
        assert len(traces) == 1

    def test_shipped_policy_pack(self):
        pack = get_policy_pack()

        ids = [p.policy_id for p in pack.policies]
        assert "assignee-acts-on-task" in ids
        assert "super-admin-all" in ids
        assert len(ids) == len(set(ids))
        assert set(pack.role_permissions) == {
            "super_admin", "org_admin", "manager", "user", "viewer", "external_signer",
        }
        assert pack.role_permissions["super_admin"] == ("*",)
        assert len(pack.checksum) == 64

    def test_every_rbac_role_is_defined(self):
        pack = get_policy_pack()

        for policy in pack.policies:
            if policy.type in (PolicyType.RBAC, PolicyType.HYBRID):
                assert set(policy.roles) <= set(pack.role_permissions), policy.policy_id

    def test_shipped_workflows_load(self):
        definition = shipped_workflow("sequential_two_signer")

        assert definition.workflow_id == "sequential_two_signer"
        assert [n.id for n in definition.nodes] == ["start", "sign_a", "sign_b", "end"]
        assert definition.node("sign_a").config["due_in_seconds"] == 604800


class TestSettingsOverrides:

    def test_file_values(self, settings_file):
        settings = load_settings(settings_file, env={})

        assert settings.database_url == "sqlite:///signing.db"
        assert settings.authz_cache_ttl_seconds == 60.0
        assert settings.allowed_sample_every == 4
        assert settings.trusted_issuers == ("Root A", "Root B")
        assert settings.port_timeout_seconds == OrchestratorSettings().port_timeout_seconds

    def test_environment_wins(self, settings_file):
        env = {
            "SIGNING_DATABASE_URL": "postgresql://signing@localhost/signing",
            "SIGNING_AUTHZ_CACHE_MAX_ENTRIES": "50",
            "SIGNING_TRUSTED_ISSUERS": "Root C, Root D",
            "SIGNING_UNRELATED": "ignored",
        }

        settings = load_settings(settings_file, env=env)

        assert settings.database_url == "postgresql://signing@localhost/signing"
        assert settings.authz_cache_max_entries == 50
        assert settings.trusted_issuers == ("Root C", "Root D")

    def test_bad_environment_value(self, settings_file):
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(settings_file, env={"SIGNING_AUTHZ_CACHE_MAX_ENTRIES": "lots"})

        assert "authz_cache_max_entries" in exc_info.value.reason

    def test_unknown_key(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_settings({"databse_url": "x"})

        assert exc_info.value.reason == "unknown settings: databse_url"

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError):
            load_settings(path, env={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("orchestrator: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_settings(path, env={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "missing.yaml", env={})


class TestSettingsInvariants:

    def test_ttl_is_capped(self):
        assert OrchestratorSettings(authz_cache_ttl_seconds=3600).authz_cache_ttl_seconds == MAX_AUTHZ_CACHE_TTL_SECONDS

    @pytest.mark.parametrize("rate", [-0.1, 1.5])
    def test_sample_rate_range(self, rate):
        with pytest.raises(ValueError):
            OrchestratorSettings(policy_allowed_sample_rate=rate)

    def test_sampling_disabled(self):
        assert OrchestratorSettings(policy_allowed_sample_rate=0.0).allowed_sample_every == 0
        assert OrchestratorSettings(policy_allowed_sample_rate=1.0).allowed_sample_every == 1

    def test_positive_port_timeout(self):
        with pytest.raises(ValueError):
            OrchestratorSettings(port_timeout_seconds=0)

    def test_cache_needs_room(self):
        with pytest.raises(ValueError):
            OrchestratorSettings(authz_cache_max_entries=0)

    def test_retry_budget_not_negative(self):
        with pytest.raises(ValueError):
            OrchestratorSettings(service_retry_total_delay_seconds=-1)

        assert OrchestratorSettings(service_retry_total_delay_seconds=0).service_retry_total_delay_seconds == 0

    def test_invalid_values_become_configuration_errors(self):
        with pytest.raises(ConfigurationError):
            parse_settings({"policy_allowed_sample_rate": 2})


class TestPolicyPacks:

    def test_duplicate_policy_ids(self):
        data = {"policies": [
            {"policy_id": "p", "type": "rebac", "effect": "allow", "relationships": ["task_assignee"]},
            {"policy_id": "p", "type": "rbac", "effect": "allow", "roles": ["user"]},
        ]}

        with pytest.raises(ConfigurationError) as exc_info:
            parse_policy_pack(data)

        assert exc_info.value.reason == "duplicate policy ids: p"

    def test_malformed_policy(self):
        with pytest.raises(ConfigurationError):
            parse_policy_pack({"policies": [{"policy_id": "p", "type": "magic", "effect": "allow"}]})

    def test_relationships_and_assignments(self):
        pack = parse_policy_pack({
            "name": "seed",
            "relationships": [{"subject": "alice", "relation": "org_member", "object": "org-1",
                               "object_type": "organization"}],
            "role_assignments": [{"subject": "alice", "role": "user"}],
        })

        assert pack.name == "seed"
        assert pack.relationships[0].relation == "org_member"
        assert pack.role_assignments == (("alice", "user"),)

    def test_later_files_extend_earlier_ones(self, tmp_path):
        extra = tmp_path / "extra.yaml"
        extra.write_text(
            "name: extra\n"
            "role_permissions:\n"
            "  auditor: [workflow:audit]\n"
            "policies:\n"
            "  - policy_id: auditors-read-trails\n"
            "    type: rbac\n"
            "    effect: allow\n"
            "    roles: [auditor]\n"
            "    permissions: [workflow:audit]\n"
            "    resource_types: [workflow_instance]\n"
            "    actions: [workflow:audit]\n"
        )
        base = get_policy_pack()

        merged = load_policy_pack(*_default_pack_paths(), extra)

        assert len(merged.policies) == len(base.policies) + 1
        assert merged.role_permissions["auditor"] == ("workflow:audit",)
        assert merged.name.endswith("+extra")


def _default_pack_paths():
    return (DEFAULTS_DIR / "role_permissions.yaml", DEFAULTS_DIR / "policies.yaml")


class TestWorkflowFiles:

    def test_top_level_definition(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(
            "workflow_id: tiny\n"
            "nodes: [{id: start, kind: start}, {id: end, kind: end}]\n"
            "edges: [{source_id: start, target_id: end}]\n"
        )

        definition = load_workflow_definition(path)

        assert definition.workflow_id == "tiny"
        assert definition.name == "tiny"

    def test_unknown_node_kind(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text("workflow_id: bad\nnodes: [{id: start, kind: teleport}]\n")

        with pytest.raises(ConfigurationError):
            load_workflow_definition(path)


class TestChecksum:

    def test_key_order_does_not_matter(self):
        assert compute_checksum({"a": 1, "b": [1, 2]}) == compute_checksum({"b": [1, 2], "a": 1})

    def test_content_matters(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})
