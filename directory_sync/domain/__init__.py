"""Domain layer for Directory Sync.

This module contains the identifier, vocabulary and data models together with
the ports that the FHIR and Directory adapters implement.
All domain models are pure Python with no external dependencies beyond Pydantic.
"""

from .models import (
    Biobank,
    CollectionEntity,
    CollectionPut,
    CollectionStat,
    FactRecord,
    InputRow,
    Organization,
    Patient,
    RegistrySnapshot,
    Specimen,
)
from .ports import OperationOutcome, Result, Severity
from .registry_id import RegistryId
from .vocabulary import VocabularyConverter, default_converter

__all__ = [
    "Biobank",
    "CollectionEntity",
    "CollectionPut",
    "CollectionStat",
    "FactRecord",
    "InputRow",
    "OperationOutcome",
    "Organization",
    "Patient",
    "RegistryId",
    "RegistrySnapshot",
    "Result",
    "Severity",
    "Specimen",
    "VocabularyConverter",
    "default_converter",
]
