"""Shared fixtures: in-memory FHIR store and Directory ports.

The fakes implement the port contracts with plain dictionaries so that
domain services and the orchestrator can be tested without HTTP.
"""

from datetime import date
from typing import Optional

import pytest

from directory_sync.domain.models import (
    Biobank,
    CollectionPut,
    FactRecord,
    Organization,
    Patient,
    RegistrySnapshot,
    Specimen,
)
from directory_sync.domain.ports import ClinicalPort, OperationOutcome, RegistryPort, Result
from directory_sync.domain.registry_id import RegistryId

COLLECTION_ID = "bbmri-eric:ID:DE_12:collection:0"
BIOBANK_ID = "bbmri-eric:ID:DE_12"


class InMemoryClinical(ClinicalPort):
    """FHIR store holding Organizations, Specimens and Patients in memory."""

    def __init__(
        self,
        biobanks: Optional[list[Organization]] = None,
        collections: Optional[list[Organization]] = None,
        specimens: Optional[dict[str, list[Specimen]]] = None,
        patients: Optional[list[Patient]] = None,
        measure_counts: Optional[dict[str, int]] = None,
    ):
        self.biobanks = biobanks or []
        self.collections = collections or []
        self.specimens = specimens or {}
        self.patients = patients or []
        self.measure_counts = measure_counts or {}
        self.updated: list[Organization] = []
        self.requested_default_ids: list[Optional[RegistryId]] = []

    def list_biobanks(self):
        return Result.success_result(list(self.biobanks))

    def list_collections(self):
        return Result.success_result(list(self.collections))

    def evaluate_size_measure(self, measure_url):
        return Result.success_result(dict(self.measure_counts))

    def fetch_collections(self, resource_ids):
        return Result.success_result([c for c in self.collections if c.resource_id in resource_ids])

    def fetch_specimen_count(self):
        return Result.success_result(sum(len(s) for s in self.specimens.values()))

    def fetch_specimens_by_collection(self, default_collection_id):
        self.requested_default_ids.append(default_collection_id)
        return Result.success_result({cid: list(s) for cid, s in self.specimens.items()})

    def fetch_patients_for(self, specimens):
        wanted = {s.patient_id for s in specimens}
        return Result.success_result([p for p in self.patients if p.resource_id in wanted])

    def update_resource(self, resource):
        self.updated.append(resource)
        return OperationOutcome.information(f"Updated Organization/{resource.resource_id}")


class InMemoryRegistry(RegistryPort):
    """Directory holding collections, biobanks, facts and ICD codes in memory."""

    def __init__(
        self,
        collection_ids: Optional[dict[str, set[str]]] = None,
        snapshots: Optional[dict[str, RegistrySnapshot]] = None,
        biobanks: Optional[dict[str, Biobank]] = None,
        icd_codes: Optional[set[str]] = None,
        icd_lookup_error: Optional[str] = None,
    ):
        self.collection_ids = collection_ids or {}
        self.snapshots = snapshots or {}
        self.biobanks = biobanks or {}
        self.icd_codes = icd_codes
        self.icd_lookup_error = icd_lookup_error
        self.sizes: dict[str, int] = {}
        self.size_pushes: list[tuple[str, list[tuple[RegistryId, int]]]] = []
        self.attribute_pushes: list[tuple[str, CollectionPut]] = []
        self.facts: dict[str, FactRecord] = {}
        self.deleted_for: list[tuple[str, list[str]]] = []
        self.icd_lookups: list[str] = []

    def login(self, username, password):
        return Result.success_result("token")

    def fetch_biobank(self, biobank_id):
        biobank = self.biobanks.get(str(biobank_id))
        if biobank is None:
            return Result.from_outcome(OperationOutcome.not_found(f"No Biobank in Directory for {biobank_id}"))
        return Result.success_result(biobank)

    def list_collection_ids(self, country_code):
        ids = {RegistryId.parse(cid) for cid in self.collection_ids.get(country_code, set())}
        return Result.success_result(ids)

    def update_collection_sizes(self, country_code, sizes):
        if not sizes:
            return OperationOutcome.registry_error("collection size update", "Empty list of collection sizes")
        self.size_pushes.append((country_code, list(sizes)))
        for registry_id, size in sizes:
            self.sizes[str(registry_id)] = size
        return OperationOutcome.update_successful("collection size", len(sizes))

    def fetch_collection_snapshots(self, country_code, collection_ids):
        missing = [cid for cid in collection_ids if cid not in self.snapshots]
        if missing:
            return Result.from_outcome(OperationOutcome.registry_error(
                "fetch collections", f"Collections not found in Directory: {', '.join(missing)}"
            ))
        return Result.success_result({cid: self.snapshots[cid] for cid in collection_ids})

    def push_collection_attributes(self, country_code, collection_put):
        self.attribute_pushes.append((country_code, collection_put))
        return OperationOutcome.update_successful("collection attribute", len(collection_put.entities))

    def push_fact_table(self, country_code, facts):
        for fact in facts:
            self.facts[fact.id] = fact
        return OperationOutcome.update_successful("star model fact", len(facts))

    def delete_fact_table(self, country_code, collection_ids):
        self.deleted_for.append((country_code, list(collection_ids)))
        self.facts = {fid: f for fid, f in self.facts.items() if f.collection not in collection_ids}
        return OperationOutcome.information("Deleted star model facts")

    def is_valid_icd_value(self, diagnosis):
        self.icd_lookups.append(diagnosis)
        if self.icd_lookup_error is not None:
            return Result.from_outcome(OperationOutcome.registry_error("ICD-10 lookup", self.icd_lookup_error))
        return Result.success_result(self.icd_codes is None or diagnosis in self.icd_codes)


def organization(resource_id: str, bbmri_eric_id: Optional[str], name: Optional[str] = None) -> Organization:
    return Organization(resource_id=resource_id, bbmri_eric_id=bbmri_eric_id, name=name)


def specimen(
    resource_id: str,
    patient_id: str,
    material: str = "tissue",
    collected: date = date(2020, 6, 1),
    collection_id: str = COLLECTION_ID,
    storage_temperature: Optional[str] = None,
    diagnosis_codes: Optional[list[str]] = None,
) -> Specimen:
    return Specimen(
        resource_id=resource_id,
        patient_id=patient_id,
        material=material,
        collected=collected,
        collection_id=collection_id,
        storage_temperature=storage_temperature,
        diagnosis_codes=diagnosis_codes or [],
    )


def patient(resource_id: str, gender: str = "male", birth_date: date = date(1990, 1, 1),
            condition_codes: Optional[list[str]] = None) -> Patient:
    return Patient(
        resource_id=resource_id,
        gender=gender,
        birth_date=birth_date,
        condition_codes=condition_codes if condition_codes is not None else ["C75"],
    )


@pytest.fixture
def single_collection_clinical():
    """One biobank, one collection, two male donors aged 30 and 31 with C75 tissue samples."""
    return InMemoryClinical(
        biobanks=[organization("biobank-1", BIOBANK_ID, "Biobank One")],
        collections=[organization("collection-1", COLLECTION_ID, "Collection One")],
        specimens={COLLECTION_ID: [
            specimen("s1", "p1", material="tissue", collected=date(2020, 6, 1)),
            specimen("s2", "p2", material="tissue", collected=date(2021, 6, 1)),
        ]},
        patients=[
            patient("p1", birth_date=date(1990, 1, 1)),
            patient("p2", birth_date=date(1990, 1, 1)),
        ],
    )


@pytest.fixture
def registry():
    return InMemoryRegistry(
        collection_ids={"DE": {COLLECTION_ID}},
        snapshots={COLLECTION_ID: RegistrySnapshot(
            id=COLLECTION_ID,
            name="Collection One",
            description="Tumour tissue",
            contact_id="bbmri-eric:contactID:DE_1",
            country_id="DE",
            biobank_id=BIOBANK_ID,
            type_ids=["SAMPLE", "DISEASE_SPECIFIC"],
            data_category_ids=["BIOLOGICAL_SAMPLES"],
            network_ids=[],
        )},
        biobanks={BIOBANK_ID: Biobank(id=BIOBANK_ID, name="Biobank One")},
    )
