"""Sync Orchestration between the FHIR Store and the Directory.

This module sequences the sync pipelines. Every pipeline is a strict
left-to-right chain of steps; the first failing step ends the pipeline and is
reported as a single ERROR outcome naming the step and the upstream cause.

Pipelines:
    - Size sync: FHIR collection sizes -> per country, filter to ids known to
      the Directory -> push sizes. Countries are processed independently.
    - Attribute sync: FHIR collection statistics -> convert -> fetch Directory
      snapshots -> merge -> push.
    - Star model sync: FHIR specimens and patients -> aggregate -> correct
      diagnoses against the Directory -> replace the facts of the site's
      collections.
    - Biobank sync: copy Directory biobank names onto FHIR Organizations.

Architecture:
    - Depends only on ClinicalPort and RegistryPort
    - Every public method returns a list of OperationOutcome and never raises
    - No retries; retry and backoff belong to the transport
"""

import logging
from enum import Enum
from typing import Optional

from directory_sync.domain.models import FactRecord, Organization
from directory_sync.domain.ports import (
    ClinicalPort,
    OperationOutcome,
    RegistryPort,
    Result,
    Severity,
)
from directory_sync.domain.registry_id import RegistryId, country_code_of
from directory_sync.domain.services.attribute_converter import CollectionAttributeConverter
from directory_sync.domain.services.collection_statistics import (
    CollectionStatisticsBuilder,
    fetch_collection_sizes,
)
from directory_sync.domain.services.diagnosis_corrector import DiagnosisCorrector
from directory_sync.domain.services.directory_merge import merge
from directory_sync.domain.services.star_model import DEFAULT_MIN_DONORS, StarModelAggregator
from directory_sync.domain.services.star_model_extractor import StarModelExtractor
from directory_sync.domain.utils import trace_from_exception
from directory_sync.domain.vocabulary import VocabularyConverter, default_converter

logger = logging.getLogger(__name__)


class SyncStage(str, Enum):
    """Stage of a pipeline run."""
    FETCHING = "fetching"
    CONVERTING = "converting"
    RECONCILING = "reconciling"
    PUSHING = "pushing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def error_message(result: Result) -> str:
    """Diagnostic of a failed result, for embedding in a pipeline error."""
    return result.error or "no diagnostics"


class SyncOrchestrator:
    """Runs the sync pipelines against a FHIR store and the Directory.

    Parameters:
        clinical: FHIR store port
        registry: Directory port
        vocabulary: Converter for FHIR values
        diagnosis_available_enabled: Report diagnoses in the collection
            attribute sync (off by default)

    Example:
        ```python
        orchestrator = SyncOrchestrator(fhir_gateway, directory_gateway)
        outcomes = orchestrator.sync_collection_sizes()
        outcomes += orchestrator.send_star_model_updates_to_directory(None, min_donors=10)
        ```
    """

    def __init__(
        self,
        clinical: ClinicalPort,
        registry: RegistryPort,
        vocabulary: VocabularyConverter = default_converter,
        diagnosis_available_enabled: bool = False
    ):
        self.clinical = clinical
        self.registry = registry
        self.vocabulary = vocabulary
        self.attribute_converter = CollectionAttributeConverter(
            vocabulary=vocabulary,
            diagnosis_available_enabled=diagnosis_available_enabled
        )
        self.statistics_builder = CollectionStatisticsBuilder(clinical)
        self.star_model_extractor = StarModelExtractor(clinical, vocabulary)
        self.star_model_aggregator = StarModelAggregator()
        self.diagnosis_corrector = DiagnosisCorrector(registry)
        self.stage: Optional[SyncStage] = None

    def _enter(self, pipeline: str, stage: SyncStage) -> None:
        self.stage = stage
        logger.info(f"{pipeline}: {stage.value}", extra={"pipeline": pipeline})

    def _fail(self, pipeline: str, diagnostics: str) -> list[OperationOutcome]:
        self._enter(pipeline, SyncStage.FAILED)
        logger.error(f"{pipeline} failed: {diagnostics}", extra={"pipeline": pipeline})
        return [OperationOutcome.error(diagnostics)]

    def _finish(self, pipeline: str, outcomes: list[OperationOutcome]) -> list[OperationOutcome]:
        if any(outcome.is_error() for outcome in outcomes):
            self._enter(pipeline, SyncStage.FAILED)
        else:
            self._enter(pipeline, SyncStage.SUCCEEDED)
        return outcomes

    # ========================================================================
    # Size sync
    # ========================================================================

    def sync_collection_sizes(self) -> list[OperationOutcome]:
        """Push FHIR specimen counts for collections the Directory knows.

        Returns:
            list[OperationOutcome]: One outcome per country, or a single ERROR
                outcome if the sizes could not be fetched from FHIR
        """
        pipeline = "Collection size sync"
        self._enter(pipeline, SyncStage.FETCHING)
        sizes_result = fetch_collection_sizes(self.clinical)
        if sizes_result.is_failure():
            return self._fail(
                pipeline, f"Problem getting collection sizes from FHIR store, {error_message(sizes_result)}"
            )

        self._enter(pipeline, SyncStage.PUSHING)
        outcomes = [
            self.update_collection_sizes(country_code, sizes)
            for country_code, sizes in self.group_sizes_by_country(sizes_result.value).items()
        ]
        return self._finish(pipeline, outcomes)

    @staticmethod
    def group_sizes_by_country(sizes: dict[RegistryId, int]) -> dict[str, list[tuple[RegistryId, int]]]:
        """Group sizes by country; countries and ids in a stable order."""
        grouped: dict[str, list[tuple[RegistryId, int]]] = {}
        for registry_id in sorted(sizes, key=str):
            grouped.setdefault(registry_id.country_code, []).append((registry_id, sizes[registry_id]))
        return dict(sorted(grouped.items()))

    def update_collection_sizes(self, country_code: str, sizes: list[tuple[RegistryId, int]]) -> OperationOutcome:
        """Filter one country's sizes to known collections and push them.

        A failure in this country is returned as its outcome and never
        affects other countries.
        """
        try:
            known_ids_result = self.registry.list_collection_ids(country_code)
            if known_ids_result.is_failure():
                return known_ids_result.outcome()

            known_ids = known_ids_result.value
            known_sizes = [(registry_id, size) for registry_id, size in sizes if registry_id in known_ids]
            skipped = len(sizes) - len(known_sizes)
            if skipped:
                logger.warning(
                    f"{skipped} collections of {country_code} are unknown to the Directory, skipping them",
                    extra={"country_code": country_code}
                )
            return self.registry.update_collection_sizes(country_code, known_sizes)
        except Exception as e:
            logger.error(f"Unexpected error updating collection sizes for {country_code}: {e}")
            return OperationOutcome.error(
                f"Problem updating collection sizes for {country_code}: {trace_from_exception(e)}"
            )

    # ========================================================================
    # Attribute sync
    # ========================================================================

    def send_updates_to_directory(self, default_collection_id: Optional[RegistryId]) -> list[OperationOutcome]:
        """Send aggregated collection attributes from the FHIR store to the Directory.

        Steps:
            1. Fetch collection statistics from the FHIR store
            2. Convert them into a Directory collection PUT payload
            3. Fetch the Directory's view of exactly those collections;
               a collection missing from the Directory is a breaking error
            4. Merge the Directory's descriptive metadata into the payload
            5. Push the payload

        Parameters:
            default_collection_id: Collection for specimens without one

        Returns:
            list[OperationOutcome]: The push outcome, or a single ERROR outcome
                naming the failing step
        """
        pipeline = "Collection attribute sync"
        try:
            self._enter(pipeline, SyncStage.FETCHING)
            stats_result = self.statistics_builder.fetch_collection_stats(default_collection_id)
            if stats_result.is_failure():
                return self._fail(
                    pipeline, f"Problem getting collections from FHIR store, {error_message(stats_result)}"
                )

            self._enter(pipeline, SyncStage.CONVERTING)
            put_result = self.attribute_converter.convert(stats_result.value)
            if put_result.is_failure():
                return self._fail(
                    pipeline,
                    f"Problem converting FHIR attributes to Directory attributes, {error_message(put_result)}"
                )
            collection_put = put_result.value
            if not collection_put.entities:
                self._enter(pipeline, SyncStage.SUCCEEDED)
                return [OperationOutcome.information("No collections with specimens found in FHIR store")]

            self._enter(pipeline, SyncStage.RECONCILING)
            country_code = collection_put.country_code
            if country_code is None:
                return self._fail(
                    pipeline, f"Problem getting collections from Directory, invalid collection id "
                              f"{collection_put.collection_ids[0]}"
                )
            snapshots_result = self.registry.fetch_collection_snapshots(country_code, collection_put.collection_ids)
            if snapshots_result.is_failure():
                return self._fail(
                    pipeline, f"Problem getting collections from Directory, {error_message(snapshots_result)}"
                )

            merged_result = merge(snapshots_result.value, collection_put)
            if merged_result.is_failure():
                return self._fail(
                    pipeline,
                    f"Problem merging Directory GET attributes to Directory PUT attributes, "
                    f"{error_message(merged_result)}"
                )

            self._enter(pipeline, SyncStage.PUSHING)
            outcome = self.registry.push_collection_attributes(country_code, merged_result.value)
            return self._finish(pipeline, [outcome])
        except Exception as e:
            return self._fail(pipeline, f"send_updates_to_directory - unexpected error: {trace_from_exception(e)}")

    # ========================================================================
    # Star model sync
    # ========================================================================

    def send_star_model_updates_to_directory(
        self,
        default_collection_id: Optional[RegistryId],
        min_donors: int = DEFAULT_MIN_DONORS
    ) -> list[OperationOutcome]:
        """Build the star model fact tables and replace them in the Directory.

        Parameters:
            default_collection_id: Collection for specimens without one
            min_donors: Groups with fewer donors are not disclosed

        Returns:
            list[OperationOutcome]: One outcome per country pushed, or a single
                ERROR outcome naming the failing step

        Security Impact:
            - The donor threshold is applied during aggregation, before any
              record leaves the site
        """
        pipeline = "Star model sync"
        try:
            self._enter(pipeline, SyncStage.FETCHING)
            dataset_result = self.star_model_extractor.populate(default_collection_id, min_donors)
            if dataset_result.is_failure():
                return self._fail(
                    pipeline,
                    f"Problem getting star model information from FHIR store, {error_message(dataset_result)}"
                )

            self._enter(pipeline, SyncStage.CONVERTING)
            dataset = self.star_model_aggregator.create_fact_tables(dataset_result.value)

            self._enter(pipeline, SyncStage.RECONCILING)
            corrected_result = self.diagnosis_corrector.correct(dataset)
            if corrected_result.is_failure():
                return self._fail(
                    pipeline, f"Problem validating diagnoses against the Directory, {error_message(corrected_result)}"
                )

            self._enter(pipeline, SyncStage.PUSHING)
            facts_by_country = dataset.facts_by_country()
            if not facts_by_country:
                self._enter(pipeline, SyncStage.SUCCEEDED)
                return [OperationOutcome.information(
                    f"No star model facts with at least {min_donors} donors, nothing to send"
                )]

            outcomes = [
                self.replace_fact_table(
                    country_code,
                    [cid for cid in dataset.input_collection_ids if country_code_of(cid) == country_code],
                    facts
                )
                for country_code, facts in sorted(facts_by_country.items())
            ]
            return self._finish(pipeline, outcomes)
        except Exception as e:
            return self._fail(
                pipeline, f"send_star_model_updates_to_directory - unexpected error: {trace_from_exception(e)}"
            )

    def replace_fact_table(
        self,
        country_code: str,
        collection_ids: list[str],
        facts: list[FactRecord]
    ) -> OperationOutcome:
        """Delete the previous facts of the site's collections and push the new ones."""
        logger.info(
            f"Replacing star model facts of {len(collection_ids)} collections with {len(facts)} facts",
            extra={"country_code": country_code}
        )
        delete_outcome = self.registry.delete_fact_table(country_code, collection_ids)
        if delete_outcome.is_error():
            return delete_outcome
        return self.registry.push_fact_table(country_code, facts)

    # ========================================================================
    # Biobank sync
    # ========================================================================

    def update_all_biobanks_on_fhir_server(self) -> list[OperationOutcome]:
        """Copy the Directory's biobank names onto the FHIR biobank Organizations.

        Returns:
            list[OperationOutcome]: One outcome per FHIR biobank, or a single
                outcome if the biobanks could not be listed
        """
        pipeline = "Biobank sync"
        self._enter(pipeline, SyncStage.FETCHING)
        biobanks_result = self.clinical.list_biobanks()
        if biobanks_result.is_failure():
            return self._fail(pipeline, f"Problem getting biobanks from FHIR store, {error_message(biobanks_result)}")

        self._enter(pipeline, SyncStage.PUSHING)
        outcomes = [self.update_biobank_on_fhir_server(biobank) for biobank in biobanks_result.value]
        return self._finish(pipeline, outcomes)

    def update_biobank_on_fhir_server(self, fhir_biobank: Organization) -> OperationOutcome:
        """Update one FHIR biobank if its Directory name differs."""
        biobank_id = RegistryId.parse(fhir_biobank.bbmri_eric_id)
        if biobank_id is None:
            return OperationOutcome.error("No BBMRI Identifier for Organization")

        directory_biobank_result = self.registry.fetch_biobank(biobank_id)
        if directory_biobank_result.is_failure():
            outcome = directory_biobank_result.outcome()
            if outcome.severity == Severity.INFORMATION:
                logger.info(outcome.diagnostics)
            return outcome

        directory_name = directory_biobank_result.value.name
        if directory_name == fhir_biobank.name:
            return OperationOutcome.information("No Update necessary")

        logger.info(f"Renaming FHIR biobank {fhir_biobank.resource_id} to {directory_name!r}")
        return self.clinical.update_resource(fhir_biobank.model_copy(update={"name": directory_name}))
