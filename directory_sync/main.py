"""Main entry point for the Directory Sync batch job.

This module wires the FHIR and Directory gateways to the sync orchestrator
and runs the enabled pipelines once.

Security Impact:
    - Directory credentials are read through the configuration manager and
      only unwrapped at login
    - A failed login stops the run before any data is read

Architecture:
    - Follows Hexagonal Architecture principles
    - Gateways are created here and closed when the run ends
    - Pipelines run sequentially; each pipeline's outcomes are collected
"""

import argparse
import logging
import sys
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError

from directory_sync.adapters.directory import DirectoryGateway
from directory_sync.adapters.fhir import FhirGateway
from directory_sync.domain.ports import OperationOutcome, Result
from directory_sync.domain.services.sync_orchestrator import SyncOrchestrator
from directory_sync.infrastructure.config_manager import (
    ConfigManager,
    DirectoryConfig,
    FhirConfig,
    SyncConfig,
)
from directory_sync.infrastructure.logging_config import setup_logging
from directory_sync.infrastructure.settings import settings
from directory_sync.infrastructure.sync_report import (
    build_sync_report,
    has_errors,
    print_sync_report_summary,
)

logger = logging.getLogger(__name__)

BIOBANKS = "biobanks"
SIZES = "sizes"
ATTRIBUTES = "attributes"
STAR_MODEL = "star-model"
PIPELINES = (BIOBANKS, SIZES, ATTRIBUTES, STAR_MODEL)


def create_fhir_gateway(fhir_config: FhirConfig) -> FhirGateway:
    logger.info(f"Initializing FHIR gateway with base URL: {fhir_config.base_url}")
    return FhirGateway(fhir_config.base_url, timeout=fhir_config.timeout)


def create_directory_gateway(directory_config: DirectoryConfig) -> Result[DirectoryGateway]:
    """Create a Directory gateway and authenticate it.

    A configured token is used as is; otherwise the gateway logs in with the
    configured user name and password.

    Returns:
        Result[DirectoryGateway]: Authenticated gateway, or the login failure
    """
    logger.info(f"Initializing Directory gateway with base URL: {directory_config.base_url}")
    if directory_config.token is not None:
        gateway = DirectoryGateway(
            directory_config.base_url,
            token=directory_config.token.get_secret_value(),
            timeout=directory_config.timeout,
        )
        return Result.success_result(gateway)

    gateway = DirectoryGateway(directory_config.base_url, timeout=directory_config.timeout)
    login_result = gateway.login(directory_config.username, directory_config.password.get_secret_value())
    if login_result.is_failure():
        gateway.close()
        return login_result
    return Result.success_result(gateway)


def enabled_pipelines(sync_config: SyncConfig) -> list[str]:
    """Pipelines switched on in the configuration, in run order."""
    enabled = {
        BIOBANKS: sync_config.update_biobanks,
        SIZES: sync_config.sync_sizes,
        ATTRIBUTES: sync_config.sync_attributes,
        STAR_MODEL: sync_config.sync_star_model,
    }
    return [pipeline for pipeline in PIPELINES if enabled[pipeline]]


def run_pipelines(
    orchestrator: SyncOrchestrator,
    sync_config: SyncConfig,
    pipelines: list[str]
) -> dict[str, list[OperationOutcome]]:
    """Run the given pipelines in order and collect their outcomes."""
    default_collection_id = sync_config.default_registry_id
    runners = {
        BIOBANKS: orchestrator.update_all_biobanks_on_fhir_server,
        SIZES: orchestrator.sync_collection_sizes,
        ATTRIBUTES: lambda: orchestrator.send_updates_to_directory(default_collection_id),
        STAR_MODEL: lambda: orchestrator.send_star_model_updates_to_directory(
            default_collection_id, sync_config.min_donors
        ),
    }

    outcomes: dict[str, list[OperationOutcome]] = {}
    for pipeline in pipelines:
        if pipeline not in runners:
            raise ValueError(f"Unknown pipeline: {pipeline}. Supported: {', '.join(PIPELINES)}")
        logger.info(f"Running pipeline: {pipeline}")
        outcomes[pipeline] = runners[pipeline]()
        for outcome in outcomes[pipeline]:
            log = logger.error if outcome.is_error() else logger.info
            log(f"[{pipeline}] {outcome.severity.value}: {outcome.diagnostics}")
    return outcomes


def run_sync(
    config_manager: ConfigManager,
    pipelines: Optional[list[str]] = None,
    overrides: Optional[dict] = None
) -> dict[str, list[OperationOutcome]]:
    """Run a complete sync.

    Parameters:
        config_manager: Source of FHIR, Directory and sync configuration
        pipelines: Pipelines to run (defaults to those enabled in the config)
        overrides: Sync settings replacing the configured ones, validated
            like the configuration itself

    Returns:
        dict: Outcomes keyed by pipeline name. A failed Directory login is
            reported under the "login" key and no pipeline runs.
    """
    sync_config = config_manager.get_sync_config()
    if overrides:
        sync_config = SyncConfig(**{**sync_config.model_dump(), **overrides})
    pipelines = pipelines if pipelines is not None else enabled_pipelines(sync_config)

    directory_result = create_directory_gateway(config_manager.get_directory_config())
    if directory_result.is_failure():
        logger.error(f"Directory login failed: {directory_result.error}")
        return {"login": [directory_result.outcome()]}

    with ExitStack() as stack:
        directory = stack.enter_context(directory_result.value)
        fhir = stack.enter_context(create_fhir_gateway(config_manager.get_fhir_config()))
        orchestrator = SyncOrchestrator(
            fhir,
            directory,
            diagnosis_available_enabled=sync_config.diagnosis_available_enabled,
        )
        return run_pipelines(orchestrator, sync_config, pipelines)


def main(argv: Optional[list[str]] = None) -> int:
    """Run the sync once and return the process exit code."""
    parser = argparse.ArgumentParser(description="Sync a FHIR store with the BBMRI-ERIC Directory")
    parser.add_argument("--config", help="JSON configuration file (default: environment)")
    parser.add_argument("--pipeline", action="append", choices=PIPELINES,
                        help="Pipeline to run; repeat for several (default: enabled in config)")
    parser.add_argument("--report", help="Save the sync report to this JSON file")
    args = parser.parse_args(argv)

    setup_logging(use_json=settings.log_json, log_level=settings.log_level)

    started_at = datetime.now(timezone.utc)
    try:
        config_manager = ConfigManager.from_file(args.config) if args.config else settings.config_manager
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    try:
        outcomes = run_sync(config_manager, args.pipeline)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    report_result = build_sync_report(outcomes, output_path=args.report, started_at=started_at)
    if report_result.is_success():
        print_sync_report_summary(report_result.value)
    else:
        logger.error(f"Failed to build sync report: {report_result.error}")

    return 1 if has_errors(outcomes) else 0


if __name__ == "__main__":
    sys.exit(main())
