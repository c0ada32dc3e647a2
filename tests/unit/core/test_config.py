from pathlib import Path

from leakshield.core.config import SweepConfig
from leakshield.core.constants import DEFAULT_HTTP_TIMEOUT, MAX_WORKERS


class TestSweepConfig:
    def test_from_env_defaults(self):
        """
        GIVEN no LEAKSHIELD_ variables
        WHEN building the config from the environment
        THEN defaults are used
        """
        config = SweepConfig.from_env({})

        assert config.max_workers == MAX_WORKERS
        assert config.http_timeout == DEFAULT_HTTP_TIMEOUT
        assert config.report_root == Path("keys")
        assert config.region == "us-east-1"

    def test_from_env_reads_values(self):
        """
        GIVEN LEAKSHIELD_ variables
        WHEN building the config from the environment
        THEN their values are used
        """
        config = SweepConfig.from_env(
            {
                "LEAKSHIELD_MAX_WORKERS": "3",
                "LEAKSHIELD_HTTP_TIMEOUT": "2.5",
                "LEAKSHIELD_REPORT_ROOT": "/tmp/reports",
            }
        )

        assert config.max_workers == 3
        assert config.http_timeout == 2.5
        assert config.report_root == Path("/tmp/reports")

    def test_from_env_ignores_invalid_values(self, caplog):
        """
        GIVEN invalid LEAKSHIELD_ variables
        WHEN building the config from the environment
        THEN they are ignored with a warning
        """
        config = SweepConfig.from_env(
            {"LEAKSHIELD_MAX_WORKERS": "many", "LEAKSHIELD_TOOL_TIMEOUT": "0"}
        )

        assert config.max_workers == MAX_WORKERS
        assert config.tool_timeout == 0
        assert "LEAKSHIELD_MAX_WORKERS" in caplog.text

    def test_with_overrides_skips_none(self):
        """
        GIVEN a config
        WHEN applying overrides, some of them None
        THEN only the non-None ones change the config
        """
        config = SweepConfig(limit=10).with_overrides(limit=None, max_workers=2, save=True)

        assert config.limit == 10
        assert config.max_workers == 2
        assert config.save is True
