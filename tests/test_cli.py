"""Tests for the command line entry point (manifest_sync/cli.py)"""

import io
import json
from unittest.mock import patch

import pytest

from manifest_sync.cli import main, normalize_domain, run
from manifest_sync.config_manager import ConfigManager
from manifest_sync.error_utils import create_fetch_error

NO_CONFIG = ["--config", "/nonexistent/config.yaml"]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("ARCHS", "ALL_ARCHS", "CONFIG_FILE", "REGISTRY_USERNAME", "REGISTRY_PASSWORD"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def patched_client(rck_registry):
    """Route main() to the in-memory registry"""
    with patch("manifest_sync.cli.resolve_credentials", return_value=None):
        with patch("manifest_sync.cli.SkopeoRegistryClient", return_value=rck_registry) as mock_client:
            yield mock_client


class TestRun:
    """Tests for run()"""

    def test_prints_plan_for_stale_manifest(self, rck_registry):
        out = io.StringIO()
        cm = ConfigManager(config_file="/nonexistent/config.yaml")

        result = run(rck_registry, cm, "registry.io", stdout=out)

        assert len(result.updates) == 1
        lines = out.getvalue().splitlines()
        assert lines == result.plan
        assert lines[0].startswith("docker manifest create --insecure --amend registry.io/rck:latest ")
        assert sorted(lines[0].split()[6:]) == ["registry.io/amd64/rck:latest", "registry.io/s390x/rck:latest"]
        assert lines[1] == "docker manifest push --insecure registry.io/rck:latest"

    def test_no_output_when_in_sync(self, rck_registry, caplog):
        out = io.StringIO()
        cm = ConfigManager(config_file="/nonexistent/config.yaml", validate=False)
        cm.set_override("architectures.process", "amd64")

        with caplog.at_level("INFO"):
            result = run(rck_registry, cm, "registry.io", stdout=out)

        assert result.updates == []
        assert out.getvalue() == ""
        assert "number of updates: 0" in caplog.text


class TestMain:
    """Tests for main()"""

    def test_requires_exactly_one_domain(self, patched_client):
        assert main(NO_CONFIG) == 1
        assert main(NO_CONFIG + ["a.io", "b.io"]) == 1
        patched_client.assert_not_called()

    def test_empty_architecture_list_fails_before_network(self, patched_client):
        assert main(NO_CONFIG + ["-a", ",", "registry.io"]) == 1
        assert main(NO_CONFIG + ["--all", "", "-a", "amd64", "registry.io"]) == 1
        patched_client.assert_not_called()

    def test_end_to_end(self, patched_client, capsys):
        assert main(NO_CONFIG + ["registry.io"]) == 0

        out = capsys.readouterr().out.splitlines()
        assert len(out) == 2
        assert out[1] == "docker manifest push --insecure registry.io/rck:latest"
        assert patched_client.call_args[0][0] == "registry.io"

    def test_excluded_architecture_reports_nothing(self, patched_client, rck_registry, capsys):
        assert main(NO_CONFIG + ["-a", "amd64", "registry.io"]) == 0

        assert capsys.readouterr().out == ""
        assert rck_registry.fetched("fetch_digest:s390x") == []

    def test_domain_is_normalized(self, patched_client):
        main(NO_CONFIG + ["https://registry.io/"])
        assert patched_client.call_args[0][0] == "registry.io"

    def test_fetch_error_exits_non_zero_without_plan(self, patched_client, rck_registry, capsys):
        rck_registry.failures["fetch_digest:s390x/rck:latest"] = create_fetch_error(
            "registry.io/s390x/rck:latest", RuntimeError("manifest unknown")
        )

        assert main(NO_CONFIG + ["registry.io"]) == 1
        assert capsys.readouterr().out == ""

    def test_writes_json_report(self, patched_client, tmp_path):
        report_path = tmp_path / "reports" / "updates.json"

        assert main(NO_CONFIG + ["--report", str(report_path), "registry.io"]) == 0

        report = json.loads(report_path.read_text())
        assert report["domain"] == "registry.io"
        assert report["number_of_updates"] == 1
        assert report["updates"][0]["repo_tag"] == "rck:latest"
        assert report["updates"][0]["balance"] == {"sha256:BBB": 1}
        assert len(report["plan"]) == 2

    def test_report_timestamp_keeps_earlier_reports(self, patched_client, tmp_path):
        report_path = tmp_path / "updates.json"

        with patch("manifest_sync.report_utils.get_timestamp_suffix", return_value="2026-10-18-12-00-00"):
            assert main(NO_CONFIG + ["--report", str(report_path), "--report-timestamp", "registry.io"]) == 0

        assert not report_path.exists()
        stamped = tmp_path / "updates-2026-10-18-12-00-00.json"
        assert json.loads(stamped.read_text())["number_of_updates"] == 1

    def test_summary_goes_to_stderr(self, patched_client, capsys):
        assert main(NO_CONFIG + ["--summary", "registry.io"]) == 0

        captured = capsys.readouterr()
        assert "sha256:BBB" in captured.err
        assert "missing from manifest list" in captured.err
        assert "sha256:BBB" not in captured.out

    def test_print_config(self, patched_client, capsys):
        assert main(NO_CONFIG + ["--print-config", "-a", "arm64", "registry.io"]) == 0

        assert "Architectures To Process: arm64" in capsys.readouterr().out
        patched_client.assert_not_called()

    def test_invalid_worker_count_is_usage_error(self):
        with pytest.raises(SystemExit) as exc_info:
            main(NO_CONFIG + ["--max-workers", "many", "registry.io"])
        assert exc_info.value.code == 2


@pytest.mark.parametrize("raw,expected", [
    ("registry.io", "registry.io"),
    ("https://registry.io", "registry.io"),
    ("http://localhost:5000/", "localhost:5000"),
])
def test_normalize_domain(raw, expected):
    assert normalize_domain(raw) == expected
