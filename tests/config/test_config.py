from pathlib import Path

import pytest
import yaml

from config.config import (
    DEFAULT_CONFIG_FILE,
    LoaderConfig,
    TargetConfig,
    _deep_merge,
    _expand_env_vars,
    _parse_steps,
    build_config,
    get_config,
    load_config,
    load_yaml,
    memory_overrides,
    reset_config,
    set_config,
)


def _memory_section(**overrides):
    section = {
        "queue": {"kind": "memory"},
        "staging": {"kind": "memory"},
        "targets": {"primary": {"kind": "memory", "table_name": "public.events"}},
    }
    return _deep_merge(section, overrides)


def _write_config(tmp_path, section):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"loadpipe": section}))
    return path


def _redshift_target(**overrides):
    target = {
        "kind": "redshift",
        "table_name": "public.events",
        "cluster_identifier": "analytics",
        "database": "dev",
        "db_user": "loader",
        "copy_iam_role": "arn:aws:iam::123:role/copy",
    }
    target.update(overrides)
    return target


# =========================================================================
# load_yaml / env expansion / merge
# =========================================================================


class TestLoadYaml:
    def test_returns_empty_dict_for_nonexistent_file(self):
        assert load_yaml(Path("/nonexistent/path/config.yaml")) == {}

    def test_loads_yaml_file(self, tmp_path):
        config_file = tmp_path / "test.yaml"
        config_file.write_text("key: value\nnested:\n  a: 1\n")
        assert load_yaml(config_file) == {"key": "value", "nested": {"a": 1}}

    def test_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_yaml(config_file) == {}


class TestExpandEnvVars:
    def test_expands_set_variable(self, monkeypatch):
        monkeypatch.setenv("LOADPIPE_TEST_BUCKET", "staging-bucket")
        assert _expand_env_vars({"bucket": "${LOADPIPE_TEST_BUCKET}"}) == {
            "bucket": "staging-bucket"
        }

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("LOADPIPE_TEST_UNSET", raising=False)
        assert _expand_env_vars("${LOADPIPE_TEST_UNSET:-fallback}") == "fallback"

    def test_empty_default(self, monkeypatch):
        monkeypatch.delenv("LOADPIPE_TEST_UNSET", raising=False)
        assert _expand_env_vars("${LOADPIPE_TEST_UNSET:-}") == ""

    def test_unset_without_default_left_as_is(self, monkeypatch):
        monkeypatch.delenv("LOADPIPE_TEST_UNSET", raising=False)
        assert _expand_env_vars("${LOADPIPE_TEST_UNSET}") == "${LOADPIPE_TEST_UNSET}"

    def test_recurses_into_lists(self, monkeypatch):
        monkeypatch.setenv("LOADPIPE_TEST_X", "1")
        assert _expand_env_vars([{"a": "${LOADPIPE_TEST_X}"}, 2]) == [{"a": "1"}, 2]


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"targets": {"primary": {"kind": "redshift", "table_name": "t"}}}
        merged = _deep_merge(base, {"targets": {"primary": {"kind": "memory"}}})
        assert merged == {"targets": {"primary": {"kind": "memory", "table_name": "t"}}}
        assert base["targets"]["primary"]["kind"] == "redshift"


class TestParseSteps:
    def test_mapping_form(self):
        assert _parse_steps([{"jobs": 5, "delay_seconds": 1}]) == [(5, 1.0)]

    def test_pair_form(self):
        assert _parse_steps([["8", "3"]]) == [(8, 3.0)]

    def test_none(self):
        assert _parse_steps(None) == []


# =========================================================================
# build_config / validate
# =========================================================================


class TestBuildConfig:
    def test_minimal_memory_config(self):
        config = build_config(_memory_section())
        config.validate()
        assert config.queue.kind == "memory"
        assert config.primary.name == "primary"
        assert config.secondary is None
        assert config.secondary_enabled is False
        assert config.batch.target_batch_size == 500

    def test_missing_primary(self):
        with pytest.raises(ValueError, match="targets.primary"):
            build_config({"targets": {}})

    def test_unknown_setting_rejected(self):
        with pytest.raises(ValueError, match="unknown setting"):
            build_config(_memory_section(batch={"batch_size": 10}))

    def test_string_values_coerced(self):
        config = build_config(
            _memory_section(
                batch={"target_batch_size": "25", "max_wait_seconds": "1.5"},
                targets={"primary": {"schema_evolution": "false"}},
            )
        )
        assert config.batch.target_batch_size == 25
        assert config.batch.max_wait_seconds == 1.5
        assert config.primary.schema_evolution is False

    def test_secondary_parsed_with_default_name(self):
        config = build_config(
            _memory_section(targets={"secondary": {"kind": "memory", "table_name": "t"}})
        )
        assert config.secondary.name == "secondary"
        assert config.secondary_enabled is True

    def test_disabled_secondary(self):
        config = build_config(
            _memory_section(
                targets={"secondary": {"kind": "memory", "table_name": "t", "enabled": "false"}}
            )
        )
        assert config.secondary is not None
        assert config.secondary_enabled is False

    def test_backpressure_steps(self):
        config = build_config(
            _memory_section(
                backpressure={
                    "low_water_mark": 2,
                    "steps": [{"jobs": 2, "delay_seconds": 0.5}, {"jobs": 4, "delay_seconds": 2}],
                    "saturation_mark": 6,
                }
            )
        )
        assert config.backpressure.steps == [(2, 0.5), (4, 2.0)]

    def test_retry_mapping_kept(self):
        config = build_config(_memory_section(retry={"max_attempts": 5}))
        assert config.retry == {"max_attempts": 5}


class TestValidate:
    def _validate(self, **overrides):
        build_config(_memory_section(**overrides)).validate()

    def test_sqs_requires_queue_url(self):
        with pytest.raises(ValueError, match="queue_url is required"):
            self._validate(queue={"kind": "sqs"})

    def test_sqs_max_messages_range(self):
        with pytest.raises(ValueError, match="max_messages must be between 1 and 10"):
            self._validate(queue={"kind": "sqs", "queue_url": "https://q", "max_messages": 50})

    def test_unknown_queue_kind(self):
        with pytest.raises(ValueError, match="kind must be one of"):
            self._validate(queue={"kind": "kafka"})

    def test_s3_requires_bucket(self):
        with pytest.raises(ValueError, match="bucket is required"):
            self._validate(staging={"kind": "s3"})

    def test_target_requires_table(self):
        with pytest.raises(ValueError, match="table_name is required"):
            self._validate(targets={"primary": {"table_name": ""}})

    def test_primary_cannot_be_disabled(self):
        with pytest.raises(ValueError, match="cannot be disabled"):
            self._validate(targets={"primary": {"enabled": False}})

    def test_secondary_name_must_differ(self):
        with pytest.raises(ValueError, match="name must differ"):
            self._validate(
                targets={"secondary": {"kind": "memory", "table_name": "t", "name": "primary"}}
            )

    def test_max_wait_below_poll_interval(self):
        with pytest.raises(ValueError, match="must be >= poll_interval_seconds"):
            self._validate(
                targets={"primary": {"poll_interval_seconds": 10, "max_wait_seconds": 5}}
            )

    def test_batch_size_positive(self):
        with pytest.raises(ValueError, match="target_batch_size"):
            self._validate(batch={"target_batch_size": 0})

    def test_batch_max_wait_positive(self):
        with pytest.raises(ValueError, match="max_wait_seconds must be > 0"):
            self._validate(batch={"max_wait_seconds": 0})

    def test_redshift_target_valid(self):
        self._validate(targets={"primary": _redshift_target()})

    def test_redshift_requires_endpoint(self):
        with pytest.raises(ValueError, match="cluster_identifier or workgroup_name"):
            self._validate(targets={"primary": _redshift_target(cluster_identifier="")})

    def test_redshift_cluster_requires_user_or_secret(self):
        with pytest.raises(ValueError, match="db_user or secret_arn"):
            self._validate(targets={"primary": _redshift_target(db_user="")})

    def test_redshift_serverless_needs_no_user(self):
        self._validate(
            targets={
                "primary": _redshift_target(
                    cluster_identifier="", workgroup_name="wg", db_user=""
                )
            }
        )

    def test_redshift_requires_copy_credentials(self):
        with pytest.raises(ValueError, match="copy_iam_role or access_key_id"):
            self._validate(targets={"primary": _redshift_target(copy_iam_role="")})

    def test_redshift_access_keys_accepted(self):
        self._validate(
            targets={
                "primary": _redshift_target(
                    copy_iam_role="", access_key_id="AKIA", secret_access_key="secret"
                )
            }
        )

    def test_backpressure_steps_below_low_water_mark(self):
        with pytest.raises(ValueError, match="below low_water_mark"):
            self._validate(backpressure={"steps": [[2, 1.0]]})

    def test_backpressure_delays_must_not_decrease(self):
        with pytest.raises(ValueError, match="non-decreasing delays"):
            self._validate(backpressure={"steps": [[5, 3.0], [8, 1.0]]})

    def test_saturation_mark_above_steps(self):
        with pytest.raises(ValueError, match="saturation_mark"):
            self._validate(backpressure={"saturation_mark": 11})

    def test_saturation_delay_at_least_largest_step(self):
        with pytest.raises(ValueError, match="saturation_delay_seconds"):
            self._validate(backpressure={"saturation_delay_seconds": 2})

    def test_visibility_must_cover_in_flight_time(self):
        # 30s batch wait, two 30s saturation delays, 360s load wait
        with pytest.raises(ValueError, match=r"visibility_timeout_seconds (300).*450s"):
            self._validate(queue={"visibility_timeout_seconds": 300})

    def test_visibility_uses_slowest_enabled_target(self):
        secondary = {"kind": "memory", "table_name": "t", "max_wait_seconds": 900}
        with pytest.raises(ValueError, match="visibility_timeout_seconds"):
            self._validate(targets={"secondary": secondary})
        self._validate(targets={"secondary": dict(secondary, enabled=False)})

    def test_default_visibility_covers_in_flight_time(self):
        config = build_config(_memory_section())
        assert config.max_in_flight_seconds == 450.0
        assert config.queue.visibility_timeout_seconds > config.max_in_flight_seconds


# =========================================================================
# load_config / singleton
# =========================================================================


class TestLoadConfig:
    def test_loads_and_validates_file(self, tmp_path):
        path = _write_config(tmp_path, _memory_section(batch={"target_batch_size": 10}))
        config = load_config(path)
        assert isinstance(config, LoaderConfig)
        assert config.batch.target_batch_size == 10

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_missing_section(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"other": {}}))
        with pytest.raises(ValueError, match="missing 'loadpipe:' section"):
            load_config(path)

    def test_overrides_applied_before_validation(self, tmp_path):
        section = _memory_section()
        section["queue"] = {"kind": "sqs"}
        path = _write_config(tmp_path, section)

        with pytest.raises(ValueError):
            load_config(path)
        config = load_config(path, overrides={"queue": {"kind": "memory"}})
        assert config.queue.kind == "memory"

    def test_env_expansion_in_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOADPIPE_TEST_TABLE", "analytics.events")
        section = _memory_section(targets={"primary": {"table_name": "${LOADPIPE_TEST_TABLE}"}})
        config = load_config(_write_config(tmp_path, section))
        assert config.primary.table_name == "analytics.events"

    def test_default_file_memory_only(self):
        assert DEFAULT_CONFIG_FILE.exists()
        config = load_config(memory_only=True)
        assert config.queue.kind == "memory"
        assert config.primary.kind == "memory"
        assert config.secondary.kind == "memory"
        assert config.retry["max_attempts"] == 3

    def test_memory_only_does_not_add_secondary(self, tmp_path):
        section = _memory_section()
        section["queue"] = {"kind": "sqs"}
        section["targets"]["primary"]["kind"] = "redshift"

        config = load_config(_write_config(tmp_path, section), memory_only=True)

        assert config.primary.kind == "memory"
        assert config.secondary is None


class TestMemoryOverrides:
    def test_only_configured_targets(self):
        overrides = memory_overrides({"targets": {"primary": {"kind": "redshift"}}})
        assert overrides == {
            "queue": {"kind": "memory"},
            "staging": {"kind": "memory"},
            "targets": {"primary": {"kind": "memory"}},
        }


class TestSingleton:
    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_set_and_get(self):
        config = build_config(_memory_section())
        set_config(config)
        assert get_config() is config

    def test_reset_forces_reload(self, monkeypatch):
        loaded = build_config(_memory_section())
        monkeypatch.setattr("config.config.load_config", lambda: loaded)
        set_config(build_config(_memory_section()))
        reset_config()
        assert get_config() is loaded


class TestTargetConfig:
    def test_endpoint_prefers_workgroup(self):
        assert TargetConfig(cluster_identifier="c", workgroup_name="w").endpoint == "w"
        assert TargetConfig(cluster_identifier="c").endpoint == "c"
