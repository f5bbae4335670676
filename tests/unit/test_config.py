"""
Unit tests for configuration loading.
"""

import pytest
from pydantic import ValidationError
from searchgate.config import Config, LazyConfig, PaginationOptions, ReliabilityConfig, find_config_file, settings


@pytest.mark.unit
class TestDefaults:
    """Test documented defaults."""

    def test_reliability_defaults(self):
        """Test the gate defaults."""
        config = ReliabilityConfig()

        assert config.empty_result_threshold == 3
        assert config.initial_backoff_ms == 1000
        assert config.max_backoff_ms == 30000
        assert config.min_jitter_ms == 100
        assert config.max_jitter_ms == 500
        assert config.failure_threshold == 5
        assert config.circuit_reset_timeout_ms == 60000
        assert config.max_retries == 3
        assert config.retry_delay_ms == 1000

    def test_cache_defaults(self):
        """Test the cache defaults."""
        config = Config()

        assert config.cache.result_ttl_seconds == 300
        assert config.cache.token_max_age_seconds == 300
        assert config.pagination.max_results == 10


@pytest.mark.unit
class TestValidation:
    """Test option validation."""

    @pytest.mark.parametrize("value", [0, 51])
    def test_max_results_range(self, value):
        """Test max_results must stay within 1..50."""
        with pytest.raises(ValidationError):
            PaginationOptions(max_results=value)

    def test_jitter_range_must_be_ordered(self):
        """Test min jitter above max jitter is rejected."""
        with pytest.raises(ValidationError):
            ReliabilityConfig(min_jitter_ms=600, max_jitter_ms=500)

    def test_backoff_range_must_be_ordered(self):
        """Test an initial backoff above the ceiling is rejected."""
        with pytest.raises(ValidationError):
            ReliabilityConfig(initial_backoff_ms=5000, max_backoff_ms=1000)

    def test_camel_and_snake_case(self):
        """Test host names and Python names are both accepted."""
        assert PaginationOptions(maxResults=20).max_results == 20
        assert PaginationOptions(max_results=20).max_results == 20

    def test_unknown_pagination_option_is_rejected(self):
        """Test a misspelled pagination option fails instead of being dropped."""
        with pytest.raises(ValidationError):
            PaginationOptions.model_validate({"maxResult": 5})

    def test_operation_limit_requires_max_requests(self):
        """Test a quota without max_requests is rejected."""
        with pytest.raises(ValidationError):
            ReliabilityConfig.model_validate({"operationLimits": {"search": {"windowMs": 1000}}})


@pytest.mark.unit
class TestLoading:
    """Test the loading entry points."""

    def test_from_mapping_routes_flat_options(self):
        """Test flat host options land in their sections."""
        config = Config.from_mapping(
            {
                "maxRetries": 5,
                "failureThreshold": 2,
                "delayBetweenRequestsMs": 250,
                "maxResults": 30,
                "token_cache_max_entries": 8,
                "unrelated": True,
            }
        )

        assert config.reliability.max_retries == 5
        assert config.reliability.failure_threshold == 2
        assert config.pagination.delay_between_requests_ms == 250
        assert config.pagination.max_results == 30
        assert config.cache.token_cache_max_entries == 8

    def test_from_mapping_accepts_sections(self):
        """Test nested sections are passed through."""
        config = Config.from_mapping({"reliability": {"maxJitterMs": 900}, "monitoring": {"log_level": "DEBUG"}})

        assert config.reliability.max_jitter_ms == 900
        assert config.monitoring.log_level == "DEBUG"

    def test_from_yaml(self, tmp_path):
        """Test loading a YAML file."""
        path = tmp_path / "searchgate.yaml"
        path.write_text("reliability:\n  failureThreshold: 7\npagination:\n  page_size: 20\n")

        config = Config.from_yaml(path)

        assert config.reliability.failure_threshold == 7
        assert config.pagination.page_size == 20

    def test_operation_limits_from_yaml(self, tmp_path):
        """Test per-operation quotas replace the default table."""
        path = tmp_path / "searchgate.yaml"
        path.write_text(
            "reliability:\n"
            "  operationLimits:\n"
            "    search:\n"
            "      maxRequests: 10\n"
            "      burstAllowance: 2\n"
            "      retryAfterMs: 5000\n"
        )

        limits = Config.from_yaml(path).reliability.operation_limits

        assert list(limits) == ["search"]
        assert limits["search"].effective_limit == 12
        assert limits["search"].window_ms == 60000
        assert limits["search"].retry_after_ms == 5000

    def test_from_empty_yaml(self, tmp_path):
        """Test an empty file yields defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert Config.from_yaml(path).reliability.max_retries == 3

    def test_from_missing_yaml(self, tmp_path):
        """Test a missing file is reported."""
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "nope.yaml")

    def test_environment_overrides(self, monkeypatch):
        """Test nested values can be set from the environment."""
        monkeypatch.setenv("SEARCHGATE_RELIABILITY__MAX_RETRIES", "9")

        assert Config().reliability.max_retries == 9

    def test_log_file_parent_is_created(self, tmp_path):
        """Test a configured log file gets its directory."""
        log_file = tmp_path / "logs" / "searchgate.log"

        config = Config.from_mapping({"monitoring": {"log_file": str(log_file)}})

        assert config.monitoring.log_file == str(log_file)
        assert log_file.parent.is_dir()


@pytest.mark.unit
class TestDiscovery:
    """Test working-directory discovery and the lazy settings proxy."""

    @pytest.fixture(autouse=True)
    def isolated_settings(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        LazyConfig.reset()
        yield
        LazyConfig.reset()

    def test_find_config_file_prefers_searchgate_yaml(self, tmp_path):
        """Test searchgate.yaml wins over config.yaml."""
        (tmp_path / "config.yaml").write_text("")
        (tmp_path / "searchgate.yaml").write_text("")

        assert find_config_file() == tmp_path / "searchgate.yaml"

    def test_find_config_file_none(self):
        """Test nothing is found in an empty directory."""
        assert find_config_file() is None

    def test_lazy_settings_load_on_first_access(self, tmp_path):
        """Test the proxy reads the discovered file."""
        (tmp_path / "config.yaml").write_text("reliability:\n  maxRetries: 4\n")

        assert settings.reliability.max_retries == 4

    def test_lazy_settings_fall_back_on_invalid_file(self, tmp_path):
        """Test an invalid file falls back to defaults instead of raising."""
        (tmp_path / "config.yaml").write_text("pagination:\n  maxResults: 500\n")

        assert settings.pagination.max_results == 10
