"""Domain Model Definitions.

This module defines the typed records exchanged between the FHIR store, the
sync pipeline and the Directory. Wire dictionaries are produced only at the
serialization boundary (to_wire methods); inside the pipeline everything is a
validated model with named fields.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Read-only records (InputRow, FactRecord, RegistrySnapshot) are frozen
    - CollectionEntity is mutable: the converter fills statistics and the
      merge step fills descriptive metadata
"""

from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from directory_sync.domain.registry_id import RegistryId
from directory_sync.domain.vocabulary import VocabularyConverter, default_converter

BBMRI_ERIC_IDENTIFIER_SYSTEM = "http://www.bbmri-eric.eu/"


# ============================================================================
# Clinical (FHIR) resources
# ============================================================================

class Organization(BaseModel):
    """FHIR Organization representing a biobank or a collection.

    Parameters:
        resource_id: FHIR logical id (e.g. "collection-1")
        bbmri_eric_id: Identifier value with system http://www.bbmri-eric.eu/
        name: Organization name
        raw: The FHIR resource as received, used when writing the resource back
    """

    resource_id: str = Field(..., description="FHIR logical id")
    bbmri_eric_id: Optional[str] = Field(None, description="BBMRI-ERIC identifier value")
    name: Optional[str] = Field(None, description="Organization name")
    raw: dict[str, Any] = Field(default_factory=dict, description="FHIR JSON resource")

    def to_fhir(self) -> dict[str, Any]:
        """FHIR JSON for this Organization with the current name applied."""
        resource = dict(self.raw)
        resource.setdefault("resourceType", "Organization")
        resource["id"] = self.resource_id
        if self.name is not None:
            resource["name"] = self.name
        return resource


class Specimen(BaseModel):
    """FHIR Specimen reduced to the attributes the sync needs."""

    resource_id: str
    patient_id: Optional[str] = None
    material: Optional[str] = None
    collected: Optional[date] = None
    collection_id: Optional[str] = Field(None, description="BBMRI-ERIC collection id")
    storage_temperature: Optional[str] = None
    diagnosis_codes: list[str] = Field(default_factory=list)


class Patient(BaseModel):
    """FHIR Patient reduced to the attributes the sync needs."""

    resource_id: str
    gender: Optional[str] = None
    birth_date: Optional[date] = None
    condition_codes: list[str] = Field(default_factory=list)


# ============================================================================
# Collection statistics and the Directory PUT payload
# ============================================================================

class CollectionStat(BaseModel):
    """Aggregate statistics for one collection, computed from the FHIR store.

    Parameters:
        id: BBMRI-ERIC collection id
        size: Number of specimens
        number_of_donors: Number of distinct patients
        sex: FHIR gender codes present in the collection
        age_low: Youngest age at collection, in years
        age_high: Oldest age at collection, in years
        materials: FHIR sample material codes
        storage_temperatures: FHIR storage temperature codes
        diagnosis_available: ICD-10 codes present in the collection
    """

    id: str
    size: Optional[int] = None
    number_of_donors: Optional[int] = None
    sex: list[str] = Field(default_factory=list)
    age_low: Optional[int] = None
    age_high: Optional[int] = None
    materials: list[str] = Field(default_factory=list)
    storage_temperatures: list[str] = Field(default_factory=list)
    diagnosis_available: list[str] = Field(default_factory=list)


class CollectionEntity(BaseModel):
    """One collection entity of a Directory PUT payload."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    size: Optional[int] = None
    order_of_magnitude: Optional[int] = None
    number_of_donors: Optional[int] = None
    order_of_magnitude_donors: Optional[int] = None
    sex: list[str] = Field(default_factory=list)
    age_low: Optional[int] = None
    age_high: Optional[int] = None
    materials: list[str] = Field(default_factory=list)
    storage_temperatures: list[str] = Field(default_factory=list)
    diagnosis_available: list[str] = Field(default_factory=list)
    type: list[str] = Field(default_factory=list)
    data_categories: list[str] = Field(default_factory=list)
    network: list[str] = Field(default_factory=list)
    name: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[str] = None
    country: Optional[str] = None
    biobank: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        """Directory JSON for this entity.

        Empty descriptive strings and missing counts are omitted; ages are
        always present (null when unknown); lists are always present.
        """
        wire = self.model_dump()
        for key in ("size", "order_of_magnitude", "number_of_donors", "order_of_magnitude_donors"):
            if wire[key] is None:
                del wire[key]
        for key in ("name", "description", "contact", "country", "biobank"):
            if not wire[key]:
                del wire[key]
        return wire


class CollectionPut(BaseModel):
    """Directory PUT payload: an ordered list of collection entities."""

    entities: list[CollectionEntity] = Field(default_factory=list)

    @property
    def collection_ids(self) -> list[str]:
        return [entity.id for entity in self.entities]

    @property
    def country_code(self) -> Optional[str]:
        """Country code of the first entity; all entities share one country."""
        if not self.entities:
            return None
        registry_id = RegistryId.parse(self.entities[0].id)
        return registry_id.country_code if registry_id else None

    def get_entity(self, collection_id: str) -> Optional[CollectionEntity]:
        for entity in self.entities:
            if entity.id == collection_id:
                return entity
        return None

    def to_wire(self) -> dict[str, Any]:
        return {"entities": [entity.to_wire() for entity in self.entities]}


# ============================================================================
# Directory (registry) records
# ============================================================================

class Biobank(BaseModel):
    """Biobank as stored in the Directory."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None


def _ref_id(item: dict, key: str) -> Optional[str]:
    ref = item.get(key)
    if ref is None:
        return None
    if not isinstance(ref, dict):
        raise ValueError(f"Expected object for '{key}', got {type(ref).__name__}")
    return ref.get("id")


def _ref_ids(item: dict, key: str) -> list[str]:
    refs = item.get(key) or []
    if not isinstance(refs, list):
        raise ValueError(f"Expected list for '{key}', got {type(refs).__name__}")
    return [ref["id"] for ref in refs]


class RegistrySnapshot(BaseModel):
    """The Directory's current descriptive metadata for one collection."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    contact_id: Optional[str] = None
    country_id: Optional[str] = None
    biobank_id: Optional[str] = None
    type_ids: list[str] = Field(default_factory=list)
    data_category_ids: list[str] = Field(default_factory=list)
    network_ids: list[str] = Field(default_factory=list)

    @classmethod
    def from_item(cls, item: dict) -> "RegistrySnapshot":
        """Build a snapshot from a Directory collection item.

        Raises:
            ValueError: If the item does not have the expected shape
            KeyError: If a referenced entity has no id
        """
        if not isinstance(item, dict) or "id" not in item:
            raise ValueError(f"Directory collection item without id: {item!r}")

        return cls(
            id=item["id"],
            name=item.get("name"),
            description=item.get("description"),
            contact_id=_ref_id(item, "contact"),
            country_id=_ref_id(item, "country"),
            biobank_id=_ref_id(item, "biobank"),
            type_ids=_ref_ids(item, "type"),
            data_category_ids=_ref_ids(item, "data_categories"),
            network_ids=_ref_ids(item, "network"),
        )


# ============================================================================
# Star model records
# ============================================================================

class InputRow(BaseModel):
    """One Patient x Specimen x Diagnosis combination, in Directory vocabulary."""

    model_config = ConfigDict(frozen=True)

    collection: Optional[str] = None
    sample_material: Optional[str] = None
    patient_id: Optional[str] = None
    sex: Optional[str] = None
    age_at_primary_diagnosis: Optional[str] = None
    hist_loc: Optional[str] = None

    @classmethod
    def from_raw(
        cls,
        collection: Optional[str],
        sample_material: Optional[str],
        patient_id: Optional[str],
        sex: Optional[str],
        age: Optional[str],
        diagnosis: Optional[str] = None,
        converter: VocabularyConverter = default_converter
    ) -> "InputRow":
        """Create a row from FHIR values, converting them to Directory vocabulary."""
        return cls(
            collection=collection,
            sample_material=converter.material(sample_material),
            patient_id=patient_id,
            sex=converter.sex(sex),
            age_at_primary_diagnosis=age,
            hist_loc=converter.diagnosis(diagnosis),
        )


class FactRecord(BaseModel):
    """One anonymized star model group, ready to be pushed to the Directory."""

    model_config = ConfigDict(frozen=True)

    sex: str
    disease: str
    age_range: str
    sample_type: str
    number_of_donors: int = Field(..., ge=0)
    number_of_samples: int = Field(..., ge=0)
    id: str
    last_update: date
    collection: str

    @field_validator("id")
    @classmethod
    def validate_fact_id(cls, v: str) -> str:
        if not v.startswith("bbmri-eric:factID:"):
            raise ValueError(f"Fact id must start with 'bbmri-eric:factID:'. Got: {v}")
        return v

    def to_wire(self) -> dict[str, str]:
        """Directory JSON for this fact; counts are sent as strings."""
        return {
            "sex": self.sex,
            "disease": self.disease,
            "age_range": self.age_range,
            "sample_type": self.sample_type,
            "number_of_donors": str(self.number_of_donors),
            "number_of_samples": str(self.number_of_samples),
            "id": self.id,
            "last_update": self.last_update.isoformat(),
            "collection": self.collection,
        }
