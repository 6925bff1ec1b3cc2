"""Tests for the batch entry point and the Typer CLI."""

import json
from unittest.mock import MagicMock, Mock, patch

import pytest
from typer.testing import CliRunner

from conftest import COLLECTION_ID
from directory_sync.cli import app
from directory_sync.domain.ports import OperationOutcome, Result
from directory_sync.domain.services.sync_orchestrator import SyncOrchestrator
from directory_sync.infrastructure.config_manager import ConfigManager, DirectoryConfig, SyncConfig
from directory_sync.main import (
    ATTRIBUTES,
    BIOBANKS,
    SIZES,
    STAR_MODEL,
    create_directory_gateway,
    enabled_pipelines,
    main,
    run_pipelines,
    run_sync,
)

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "directory-sync.json"
    path.write_text(json.dumps({
        "fhir": {"base_url": "http://fhir.test/fhir"},
        "directory": {"base_url": "https://directory.test", "token": "abc"},
        "sync": {"default_collection_id": COLLECTION_ID},
    }), encoding="utf-8")
    return path


def context_manager(value):
    cm = MagicMock()
    cm.__enter__.return_value = value
    return cm


class TestRunSync:
    """Test suite for pipeline selection and wiring."""

    def test_enabled_pipelines_follow_config(self):
        assert enabled_pipelines(SyncConfig()) == [BIOBANKS, SIZES]
        config = SyncConfig(update_biobanks=False, sync_attributes=True, sync_star_model=True)
        assert enabled_pipelines(config) == [SIZES, ATTRIBUTES, STAR_MODEL]

    def test_run_pipelines_passes_sync_settings(self):
        orchestrator = Mock(spec=SyncOrchestrator)
        orchestrator.send_star_model_updates_to_directory.return_value = [OperationOutcome.information("ok")]
        sync_config = SyncConfig(default_collection_id=COLLECTION_ID, min_donors=3)

        outcomes = run_pipelines(orchestrator, sync_config, [STAR_MODEL])

        assert outcomes == {STAR_MODEL: [OperationOutcome.information("ok")]}
        orchestrator.send_star_model_updates_to_directory.assert_called_once_with(
            sync_config.default_registry_id, 3
        )

    def test_unknown_pipeline(self):
        with pytest.raises(ValueError):
            run_pipelines(Mock(spec=SyncOrchestrator), SyncConfig(), ["everything"])

    def test_token_skips_login(self):
        result = create_directory_gateway(DirectoryConfig(token="abc"))
        assert result.is_success()
        assert result.value.token == "abc"
        result.value.close()

    def test_login_failure_stops_the_run(self):
        config_manager = ConfigManager({"directory": {"username": "user", "password": "wrong"}})
        failure = Result.from_outcome(OperationOutcome.registry_error("login", "Unauthorized"))

        with patch("directory_sync.main.create_directory_gateway", return_value=failure), \
                patch("directory_sync.main.create_fhir_gateway") as create_fhir_gateway:
            outcomes = run_sync(config_manager, [SIZES])

        assert list(outcomes) == ["login"]
        assert outcomes["login"][0].is_error()
        create_fhir_gateway.assert_not_called()

    def test_run_sync_end_to_end(self, single_collection_clinical, registry):
        config_manager = ConfigManager({"directory": {"token": "abc"}})
        directory = context_manager(registry)
        fhir = context_manager(single_collection_clinical)

        with patch("directory_sync.main.create_directory_gateway", return_value=Result.success_result(directory)), \
                patch("directory_sync.main.create_fhir_gateway", return_value=fhir):
            outcomes = run_sync(config_manager, [SIZES, STAR_MODEL], overrides={"min_donors": 2})

        assert outcomes[SIZES] == [OperationOutcome.update_successful("collection size", 1)]
        assert outcomes[STAR_MODEL] == [OperationOutcome.update_successful("star model fact", 1)]
        directory.__exit__.assert_called_once()
        fhir.__exit__.assert_called_once()

    def test_main_returns_exit_code(self, config_file, capsys):
        outcomes = {SIZES: [OperationOutcome.registry_error("collection size update", "HTTP 403")]}
        with patch("directory_sync.main.run_sync", return_value=outcomes) as run_sync_mock, \
                patch("directory_sync.main.setup_logging"):
            exit_code = main(["--config", str(config_file), "--pipeline", SIZES])

        assert exit_code == 1
        assert run_sync_mock.call_args.args[1] == [SIZES]
        assert "HTTP 403" in capsys.readouterr().out

    def test_main_missing_config_file(self, tmp_path):
        with patch("directory_sync.main.setup_logging"), patch("directory_sync.main.run_sync") as run_sync_mock:
            exit_code = main(["--config", str(tmp_path / "missing.json")])

        assert exit_code == 1
        run_sync_mock.assert_not_called()

    def test_main_invalid_directory_config(self, tmp_path):
        config_file = tmp_path / "invalid.json"
        config_file.write_text(json.dumps({"directory": {"username": "user"}}), encoding="utf-8")

        with patch("directory_sync.main.setup_logging"), \
                patch("directory_sync.main.create_directory_gateway") as create_directory_gateway:
            exit_code = main(["--config", str(config_file), "--pipeline", SIZES])

        assert exit_code == 1
        create_directory_gateway.assert_not_called()


class TestCli:
    """Test suite for the Typer commands."""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self):
        with patch("directory_sync.cli.setup_logging"):
            yield

    def test_check_config_masks_secrets(self, config_file):
        result = runner.invoke(app, ["check-config", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.stdout
        assert "abc" not in result.stdout

    def test_check_config_invalid(self, tmp_path):
        config_file = tmp_path / "invalid.json"
        config_file.write_text(json.dumps({"directory": {"username": "user"}}), encoding="utf-8")

        result = runner.invoke(app, ["check-config", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["sync", "--config", str(tmp_path / "missing.json")])
        assert result.exit_code == 1

    def test_sizes_success(self, config_file):
        outcomes = {SIZES: [OperationOutcome.update_successful("collection size", 4)]}
        with patch("directory_sync.cli.run_sync", return_value=outcomes) as run_sync_mock:
            result = runner.invoke(app, ["sizes", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Sync finished" in result.stdout
        assert run_sync_mock.call_args.args[1] == [SIZES]

    def test_errors_give_exit_code_1_and_report(self, config_file, tmp_path):
        outcomes = {SIZES: [OperationOutcome.registry_error("collection size update", "HTTP 403")]}
        report_path = tmp_path / "report.json"
        with patch("directory_sync.cli.run_sync", return_value=outcomes):
            result = runner.invoke(app, ["sizes", "--config", str(config_file), "--report", str(report_path)])

        assert result.exit_code == 1
        assert "Sync finished with errors" in result.stdout
        assert json.loads(report_path.read_text(encoding="utf-8"))["summary"]["failed_pipelines"] == [SIZES]

    def test_star_model_overrides(self, config_file):
        with patch("directory_sync.cli.run_sync", return_value={}) as run_sync_mock:
            result = runner.invoke(app, ["star-model", "--config", str(config_file), "--min-donors", "5"])

        assert result.exit_code == 0
        args = run_sync_mock.call_args.args
        assert args[1] == [STAR_MODEL]
        assert args[2] == {"min_donors": 5}

    def test_invalid_override_is_reported(self, config_file):
        result = runner.invoke(
            app, ["attributes", "--config", str(config_file), "--default-collection", "not-a-collection"]
        )

        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout
