"""Collection Statistics from the FHIR Store.

This module computes what the Directory wants to know about each collection:
the specimen count (via the size measure or the single-collection shortcut)
and the full aggregate statistics (donors, sexes, ages, materials, storage
temperatures, diagnoses) used by the attribute sync.
"""

import logging
from typing import Optional

import pandas as pd

from directory_sync.domain.models import CollectionStat, Organization
from directory_sync.domain.ports import ClinicalPort, Result
from directory_sync.domain.registry_id import COLLECTION_MARKER, RegistryId
from directory_sync.domain.services.star_model_extractor import SingleCollectionFallback
from directory_sync.domain.utils import age_in_years

logger = logging.getLogger(__name__)

SIZE_MEASURE_URL = "https://fhir.bbmri.de/Measure/size"


def is_single_collection_site(biobanks: list[Organization], collections: list[Organization]) -> Optional[RegistryId]:
    """The collection id of a site with one biobank holding one collection, else None.

    The collection id must be the biobank id followed by ":collection:<suffix>".
    """
    if len(biobanks) != 1 or len(collections) != 1:
        return None

    biobank_id = RegistryId.parse(biobanks[0].bbmri_eric_id)
    collection_id = RegistryId.parse(collections[0].bbmri_eric_id)
    if biobank_id is None or collection_id is None or biobank_id.is_collection:
        return None
    if not str(collection_id).startswith(str(biobank_id) + COLLECTION_MARKER):
        return None
    if len(str(collection_id).split(":")) != 5:
        return None
    return collection_id


def map_to_counts(counts: dict[str, int], collections: list[Organization]) -> dict[RegistryId, int]:
    """Re-key measure counts from FHIR resource id to BBMRI-ERIC id.

    Organizations without a valid BBMRI-ERIC id are dropped; counts of
    Organizations sharing an id are summed.
    """
    sizes: dict[RegistryId, int] = {}
    for organization in collections:
        registry_id = RegistryId.parse(organization.bbmri_eric_id)
        if registry_id is None or organization.resource_id not in counts:
            continue
        sizes[registry_id] = sizes.get(registry_id, 0) + counts[organization.resource_id]
    return sizes


def fetch_collection_sizes(clinical: ClinicalPort) -> Result[dict[RegistryId, int]]:
    """Specimen counts per collection, keyed by BBMRI-ERIC id.

    A site with exactly one biobank and one collection gets the total specimen
    count without evaluating the size measure.
    """
    biobanks = clinical.list_biobanks()
    collections = clinical.list_collections()
    if biobanks.is_success() and collections.is_success():
        collection_id = is_single_collection_site(biobanks.value, collections.value)
        if collection_id is not None:
            specimen_count = clinical.fetch_specimen_count()
            if specimen_count.is_success():
                logger.info(f"Single collection site, {specimen_count.value} specimens in {collection_id}")
                return Result.success_result({collection_id: specimen_count.value})

    return clinical.evaluate_size_measure(SIZE_MEASURE_URL).flat_map(
        lambda counts: clinical.fetch_collections(list(counts)).map(
            lambda organizations: map_to_counts(counts, organizations)
        )
    )


class CollectionStatisticsBuilder:
    """Builds one CollectionStat per collection from specimens and their donors."""

    def __init__(self, clinical: ClinicalPort):
        self.clinical = clinical
        self.fallback = SingleCollectionFallback(clinical)

    def fetch_collection_stats(self, default_collection_id: Optional[RegistryId]) -> Result[list[CollectionStat]]:
        """Fetch specimens and patients and aggregate them per collection.

        Parameters:
            default_collection_id: Collection for specimens without one

        Returns:
            Result[list[CollectionStat]]: One entry per collection with specimens
        """
        fallback_collection_id = self.fallback.resolve(default_collection_id)

        specimens_result = self.clinical.fetch_specimens_by_collection(fallback_collection_id)
        if specimens_result.is_failure():
            return specimens_result.with_context("Problem finding specimens")
        specimens_by_collection = specimens_result.value

        all_specimens = [s for specimens in specimens_by_collection.values() for s in specimens]
        patients_result = self.clinical.fetch_patients_for(all_specimens)
        if patients_result.is_failure():
            return patients_result.with_context("Problem finding patients")
        patients = {patient.resource_id: patient for patient in patients_result.value}

        records = []
        for collection_id, specimens in specimens_by_collection.items():
            for specimen in specimens:
                patient = patients.get(specimen.patient_id) if specimen.patient_id else None
                records.append({
                    "collection": collection_id,
                    "patient_id": specimen.patient_id,
                    "sex": patient.gender if patient else None,
                    "age": age_in_years(patient.birth_date, specimen.collected) if patient else None,
                    "material": specimen.material,
                    "storage_temperature": specimen.storage_temperature,
                    "diagnoses": list(dict.fromkeys(
                        (patient.condition_codes if patient else []) + specimen.diagnosis_codes
                    )),
                })

        if not records:
            return Result.success_result([])

        df = pd.DataFrame(records)
        stats = [self._collection_stat(collection_id, group) for collection_id, group in df.groupby("collection", sort=False)]
        logger.info(f"Computed statistics for {len(stats)} collections")
        return Result.success_result(stats)

    @staticmethod
    def _collection_stat(collection_id: str, group: pd.DataFrame) -> CollectionStat:
        ages = group["age"].dropna()
        return CollectionStat(
            id=collection_id,
            size=len(group),
            number_of_donors=int(group["patient_id"].dropna().nunique()),
            sex=list(dict.fromkeys(group["sex"].dropna())),
            age_low=int(ages.min()) if not ages.empty else None,
            age_high=int(ages.max()) if not ages.empty else None,
            materials=list(dict.fromkeys(group["material"].dropna())),
            storage_temperatures=list(dict.fromkeys(group["storage_temperature"].dropna())),
            diagnosis_available=list(dict.fromkeys(d for ds in group["diagnoses"] for d in ds)),
        )
