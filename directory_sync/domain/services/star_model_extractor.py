"""Star Model Input Extraction.

Pulls Specimens and Patients from the FHIR store and turns every
Patient x Specimen x Diagnosis combination into an InputRow of a
StarModelDataset.
"""

import logging
from typing import Optional

from directory_sync.domain.models import InputRow, Patient, Specimen
from directory_sync.domain.ports import ClinicalPort, Result
from directory_sync.domain.registry_id import RegistryId
from directory_sync.domain.services.star_model import DEFAULT_MIN_DONORS, StarModelDataset
from directory_sync.domain.utils import age_in_years
from directory_sync.domain.vocabulary import VocabularyConverter, default_converter

logger = logging.getLogger(__name__)


class SingleCollectionFallback:
    """Decides which collection receives specimens without a collection reference.

    An explicitly configured default collection always wins. Otherwise, if the
    site knows exactly one collection with a valid BBMRI-ERIC id, every
    unassigned specimen belongs to it. In all other cases unassigned specimens
    cannot be attributed and are left out.
    """

    def __init__(self, clinical: ClinicalPort):
        self.clinical = clinical

    def resolve(self, default_collection_id: Optional[RegistryId]) -> Optional[RegistryId]:
        if default_collection_id is not None:
            return default_collection_id

        collections_result = self.clinical.list_collections()
        if collections_result.is_failure():
            logger.warning(f"Could not list collections for the fallback policy: {collections_result.error}")
            return None

        collection_ids = [
            RegistryId.parse(organization.bbmri_eric_id) for organization in collections_result.value
        ]
        collection_ids = [registry_id for registry_id in collection_ids if registry_id is not None]
        if len(collection_ids) == 1:
            logger.info(f"Single collection site, assigning unassigned specimens to {collection_ids[0]}")
            return collection_ids[0]

        return None


class StarModelExtractor:
    """Populates a StarModelDataset from the FHIR store.

    Parameters:
        clinical: FHIR store port
        vocabulary: Converter applied to sex, material and diagnosis values
    """

    def __init__(self, clinical: ClinicalPort, vocabulary: VocabularyConverter = default_converter):
        self.clinical = clinical
        self.vocabulary = vocabulary
        self.fallback = SingleCollectionFallback(clinical)

    def populate(
        self,
        default_collection_id: Optional[RegistryId],
        min_donors: int = DEFAULT_MIN_DONORS
    ) -> Result[StarModelDataset]:
        """Fetch specimens and patients and build the dataset's input rows.

        Parameters:
            default_collection_id: Collection for specimens without one
            min_donors: Donor threshold stored on the dataset

        Returns:
            Result[StarModelDataset]: Populated dataset or failure
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

        dataset = StarModelDataset(min_donors=min_donors)
        for collection_id, specimens in specimens_by_collection.items():
            for specimen in specimens:
                self.populate_specimen(dataset, collection_id, specimen, patients)

        logger.info(
            f"Extracted {dataset.input_row_count} star model rows from "
            f"{len(all_specimens)} specimens in {len(specimens_by_collection)} collections"
        )
        return Result.success_result(dataset)

    def populate_specimen(
        self,
        dataset: StarModelDataset,
        collection_id: str,
        specimen: Specimen,
        patients: dict[str, Patient]
    ) -> None:
        """Add one row per diagnosis of a specimen's donor."""
        patient = patients.get(specimen.patient_id) if specimen.patient_id else None
        if patient is None:
            logger.warning(f"Specimen {specimen.resource_id} has no resolvable patient, skipping")
            return

        age = age_in_years(patient.birth_date, specimen.collected)
        diagnoses = list(dict.fromkeys(patient.condition_codes + specimen.diagnosis_codes))

        for diagnosis in diagnoses:
            dataset.add_input_row(collection_id, InputRow.from_raw(
                collection=collection_id,
                sample_material=specimen.material,
                patient_id=patient.resource_id,
                sex=patient.gender,
                age=str(age) if age is not None else None,
                diagnosis=diagnosis,
                converter=self.vocabulary,
            ))
