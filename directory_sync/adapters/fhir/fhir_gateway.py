"""FHIR Store Adapter.

This adapter implements the ClinicalPort contract against a FHIR R4 REST
server (e.g. Blaze) using the BBMRI.de profiles for biobanks, collections
and specimens.

Security Impact:
    - Only aggregate-relevant attributes are read from Patient resources
      (gender, birth date, condition codes); names and addresses are ignored
    - Transport failures are reported as failed Results, never raised

Architecture:
    - Implements ClinicalPort (Hexagonal Architecture)
    - One requests.Session per gateway; use as a context manager
    - Searches follow Bundle "next" links until the result set is exhausted
    - FHIR JSON is parsed into domain models at this boundary
"""

import logging
from datetime import date
from typing import Any, Iterator, Optional

import requests

from directory_sync.domain.models import BBMRI_ERIC_IDENTIFIER_SYSTEM, Organization, Patient, Specimen
from directory_sync.domain.ports import ClinicalPort, ClinicalSourceError, OperationOutcome, Result, Severity
from directory_sync.domain.registry_id import RegistryId

logger = logging.getLogger(__name__)

BIOBANK_PROFILE = "https://fhir.bbmri.de/StructureDefinition/Biobank"
COLLECTION_PROFILE = "https://fhir.bbmri.de/StructureDefinition/Collection"
CUSTODIAN_EXTENSION = "https://fhir.bbmri.de/StructureDefinition/Custodian"
STORAGE_TEMPERATURE_EXTENSION = "https://fhir.bbmri.de/StructureDefinition/StorageTemperature"
SAMPLE_DIAGNOSIS_EXTENSION = "https://fhir.bbmri.de/StructureDefinition/SampleDiagnosis"

ICD_10_SYSTEMS = (
    "http://hl7.org/fhir/sid/icd-10",
    "http://fhir.de/CodeSystem/dimdi/icd-10-gm",
    "http://fhir.de/CodeSystem/bfarm/icd-10-gm",
)

SEARCH_PAGE_SIZE = 500
ID_CHUNK_SIZE = 100


# ============================================================================
# FHIR JSON parsing
# ============================================================================

def parse_fhir_date(value: Optional[str]) -> Optional[date]:
    """Parse a FHIR date or dateTime; partial dates are completed with day/month 1.

    Examples:
        "1980-05-17" -> date(1980, 5, 17)
        "2020-01-04T10:00:00+01:00" -> date(2020, 1, 4)
        "1980" -> date(1980, 1, 1)
    """
    if not value:
        return None
    parts = value[:10].split("-")
    try:
        year = int(parts[0])
        month = int(parts[1]) if len(parts) > 1 else 1
        day = int(parts[2]) if len(parts) > 2 else 1
        return date(year, month, day)
    except (ValueError, IndexError):
        logger.warning(f"Unparseable FHIR date: {value!r}")
        return None


def reference_id(reference: Optional[dict], resource_type: str) -> Optional[str]:
    """Logical id from a Reference like {"reference": "Patient/123"}."""
    if not reference:
        return None
    value = reference.get("reference") or ""
    parts = value.split("/")
    if len(parts) >= 2 and parts[-2] == resource_type:
        return parts[-1]
    return None


def extensions(resource: dict, url: str) -> list[dict]:
    return [ext for ext in resource.get("extension", []) if ext.get("url") == url]


def codes(concept: Optional[dict], systems: Optional[tuple[str, ...]] = None) -> list[str]:
    """Codes of a CodeableConcept, optionally restricted to the given systems."""
    if not concept:
        return []
    return [
        coding["code"] for coding in concept.get("coding", [])
        if coding.get("code") and (systems is None or coding.get("system") in systems)
    ]


def parse_organization(resource: dict) -> Organization:
    identifier = next(
        (i.get("value") for i in resource.get("identifier", []) if i.get("system") == BBMRI_ERIC_IDENTIFIER_SYSTEM),
        None
    )
    return Organization(
        resource_id=resource["id"],
        bbmri_eric_id=identifier,
        name=resource.get("name"),
        raw=resource,
    )


def parse_specimen(resource: dict, collection_id: Optional[str] = None) -> Specimen:
    """Build a Specimen; the material is the type's text, else its first code."""
    specimen_type = resource.get("type") or {}
    material = specimen_type.get("text")
    if not material:
        type_codes = codes(specimen_type)
        material = type_codes[0] if type_codes else None

    storage_temperature = None
    for ext in extensions(resource, STORAGE_TEMPERATURE_EXTENSION):
        temperature_codes = codes(ext.get("valueCodeableConcept"))
        if temperature_codes:
            storage_temperature = temperature_codes[0]
            break

    diagnosis_codes = []
    for ext in extensions(resource, SAMPLE_DIAGNOSIS_EXTENSION):
        diagnosis_codes.extend(codes(ext.get("valueCodeableConcept")))

    collection = resource.get("collection") or {}
    return Specimen(
        resource_id=resource["id"],
        patient_id=reference_id(resource.get("subject"), "Patient"),
        material=material,
        collected=parse_fhir_date(collection.get("collectedDateTime")),
        collection_id=collection_id,
        storage_temperature=storage_temperature,
        diagnosis_codes=list(dict.fromkeys(diagnosis_codes)),
    )


def custodian_id(resource: dict) -> Optional[str]:
    """Organization id referenced by a Specimen's custodian extension."""
    for ext in extensions(resource, CUSTODIAN_EXTENSION):
        organization_id = reference_id(ext.get("valueReference"), "Organization")
        if organization_id:
            return organization_id
    return None


def extract_stratifier_counts(report: dict) -> dict[str, int]:
    """Counts of the first stratifier, keyed by Organization id.

    Strata whose value is not of the form "Organization/<id>" are skipped.
    """
    groups = report.get("group") or [{}]
    stratifiers = groups[0].get("stratifier") or [{}]
    counts: dict[str, int] = {}
    for stratum in stratifiers[0].get("stratum", []):
        text = (stratum.get("value") or {}).get("text") or ""
        parts = text.split("/")
        if len(parts) != 2:
            continue
        populations = stratum.get("population") or [{}]
        counts[parts[1]] = int(populations[0].get("count", 0))
    return counts


def outcome_from_fhir(resource: Optional[dict], default: OperationOutcome) -> OperationOutcome:
    """First issue of a FHIR OperationOutcome resource, or the default."""
    if not resource or resource.get("resourceType") != "OperationOutcome" or not resource.get("issue"):
        return default
    issue = resource["issue"][0]
    try:
        severity = Severity(issue.get("severity", "information"))
    except ValueError:
        severity = Severity.INFORMATION
    return OperationOutcome(
        severity=severity,
        diagnostics=issue.get("diagnostics") or default.diagnostics,
        code=issue.get("code"),
    )


# ============================================================================
# Gateway
# ============================================================================

class FhirGateway(ClinicalPort):
    """ClinicalPort implementation over FHIR REST.

    Parameters:
        base_url: FHIR base URL, e.g. "https://blaze.example.org/fhir"
        timeout: Per-request timeout in seconds
        session: Optional pre-configured requests.Session

    Example:
        ```python
        with FhirGateway("http://localhost:8080/fhir") as fhir:
            biobanks = fhir.list_biobanks()
        ```
    """

    def __init__(self, base_url: str, timeout: float = 30, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/fhir+json"})

    def __enter__(self) -> "FhirGateway":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------------

    def _get_json(self, url: str, params: Optional[dict] = None) -> dict:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise ClinicalSourceError(f"GET {url} failed: {e}", action=url) from e

    def _search(self, resource_type: str, params: dict) -> Iterator[dict]:
        """Yield every entry resource of a search, following "next" links."""
        url: Optional[str] = f"{self.base_url}/{resource_type}"
        page_params: Optional[dict] = {"_count": SEARCH_PAGE_SIZE, **params}
        while url:
            bundle = self._get_json(url, page_params)
            for entry in bundle.get("entry", []):
                if "resource" in entry:
                    yield entry["resource"]
            url = next((link["url"] for link in bundle.get("link", []) if link.get("relation") == "next"), None)
            page_params = None

    def _search_organizations(self, profile: str, what: str) -> Result[list[Organization]]:
        try:
            organizations = [
                parse_organization(resource)
                for resource in self._search("Organization", {"_profile": profile})
                if resource.get("resourceType") == "Organization"
            ]
            logger.debug(f"Found {len(organizations)} {what} in FHIR store")
            return Result.success_result(organizations)
        except Exception as e:
            logger.error(f"Error listing {what}: {e}")
            return Result.failure_result(f"Error listing {what}: {e}", error_type="ClinicalSourceError")

    # ------------------------------------------------------------------------
    # ClinicalPort
    # ------------------------------------------------------------------------

    def list_biobanks(self) -> Result[list[Organization]]:
        return self._search_organizations(BIOBANK_PROFILE, "biobanks")

    def list_collections(self) -> Result[list[Organization]]:
        return self._search_organizations(COLLECTION_PROFILE, "collections")

    def evaluate_size_measure(self, measure_url: str) -> Result[dict[str, int]]:
        """Run $evaluate-measure over the whole period and read the strata.

        The server may answer with a MeasureReport or with Parameters
        wrapping one.
        """
        params = {"measure": measure_url, "periodStart": "1900", "periodEnd": "2100"}
        try:
            response = self._get_json(f"{self.base_url}/Measure/$evaluate-measure", params)
            if response.get("resourceType") == "Parameters":
                response = (response.get("parameter") or [{}])[0].get("resource") or {}
            if response.get("resourceType") != "MeasureReport":
                raise ClinicalSourceError(f"Expected a MeasureReport, got {response.get('resourceType')}")
            counts = extract_stratifier_counts(response)
            logger.info(f"Measure {measure_url} reported {len(counts)} collections")
            return Result.success_result(counts)
        except Exception as e:
            logger.error(f"Error evaluating measure {measure_url}: {e}")
            return Result.failure_result(
                f"Error evaluating measure {measure_url}: {e}", error_type="ClinicalSourceError"
            )

    def fetch_collections(self, resource_ids: list[str]) -> Result[list[Organization]]:
        try:
            organizations = []
            for start in range(0, len(resource_ids), ID_CHUNK_SIZE):
                chunk = resource_ids[start:start + ID_CHUNK_SIZE]
                organizations.extend(
                    parse_organization(resource)
                    for resource in self._search("Organization", {"_id": ",".join(chunk)})
                    if resource.get("resourceType") == "Organization"
                )
            return Result.success_result(organizations)
        except Exception as e:
            logger.error(f"Error fetching collections: {e}")
            return Result.failure_result(f"Error fetching collections: {e}", error_type="ClinicalSourceError")

    def fetch_specimen_count(self) -> Result[int]:
        try:
            bundle = self._get_json(f"{self.base_url}/Specimen", {"_summary": "count"})
            return Result.success_result(int(bundle["total"]))
        except Exception as e:
            logger.error(f"Error counting specimens: {e}")
            return Result.failure_result(f"Error counting specimens: {e}", error_type="ClinicalSourceError")

    def fetch_specimens_by_collection(
        self,
        default_collection_id: Optional[RegistryId]
    ) -> Result[dict[str, list[Specimen]]]:
        """Fetch all specimens grouped by the BBMRI-ERIC id of their custodian collection."""
        collections_result = self.list_collections()
        if collections_result.is_failure():
            return collections_result
        collection_ids = {
            organization.resource_id: organization.bbmri_eric_id
            for organization in collections_result.value
            if RegistryId.parse(organization.bbmri_eric_id) is not None
        }
        default_id = str(default_collection_id) if default_collection_id else None

        try:
            specimens_by_collection: dict[str, list[Specimen]] = {}
            unassigned = 0
            for resource in self._search("Specimen", {}):
                if resource.get("resourceType") != "Specimen":
                    continue
                collection_id = collection_ids.get(custodian_id(resource) or "", default_id)
                if collection_id is None:
                    unassigned += 1
                    continue
                specimens_by_collection.setdefault(collection_id, []).append(parse_specimen(resource, collection_id))

            if unassigned:
                logger.warning(f"{unassigned} specimens have no collection and no default collection is set")
            return Result.success_result(specimens_by_collection)
        except Exception as e:
            logger.error(f"Error fetching specimens: {e}")
            return Result.failure_result(f"Error fetching specimens: {e}", error_type="ClinicalSourceError")

    def fetch_patients_for(self, specimens: list[Specimen]) -> Result[list[Patient]]:
        """Fetch the donors of the given specimens together with their Conditions."""
        patient_ids = list(dict.fromkeys(s.patient_id for s in specimens if s.patient_id))
        try:
            patients: dict[str, dict[str, Any]] = {}
            conditions: dict[str, list[str]] = {}
            for start in range(0, len(patient_ids), ID_CHUNK_SIZE):
                chunk = patient_ids[start:start + ID_CHUNK_SIZE]
                params = {"_id": ",".join(chunk), "_revinclude": "Condition:subject"}
                for resource in self._search("Patient", params):
                    if resource.get("resourceType") == "Patient":
                        patients[resource["id"]] = resource
                    elif resource.get("resourceType") == "Condition":
                        subject_id = reference_id(resource.get("subject"), "Patient")
                        if subject_id:
                            conditions.setdefault(subject_id, []).extend(codes(resource.get("code"), ICD_10_SYSTEMS))

            result = [
                Patient(
                    resource_id=patient_id,
                    gender=resource.get("gender"),
                    birth_date=parse_fhir_date(resource.get("birthDate")),
                    condition_codes=list(dict.fromkeys(conditions.get(patient_id, []))),
                )
                for patient_id, resource in patients.items()
            ]
            return Result.success_result(result)
        except Exception as e:
            logger.error(f"Error fetching patients: {e}")
            return Result.failure_result(f"Error fetching patients: {e}", error_type="ClinicalSourceError")

    def update_resource(self, resource: Organization) -> OperationOutcome:
        url = f"{self.base_url}/Organization/{resource.resource_id}"
        try:
            response = self.session.put(
                url,
                json=resource.to_fhir(),
                headers={"Content-Type": "application/fhir+json", "Prefer": "return=OperationOutcome"},
                timeout=self.timeout,
            )
            body = response.json() if response.content else None
            if not response.ok:
                return outcome_from_fhir(
                    body, OperationOutcome.error(f"Update of Organization/{resource.resource_id} failed: "
                                                 f"HTTP {response.status_code}")
                )
            return outcome_from_fhir(
                body, OperationOutcome.information(f"Updated Organization/{resource.resource_id}")
            )
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Error updating Organization/{resource.resource_id}: {e}")
            return OperationOutcome.error(str(e))
