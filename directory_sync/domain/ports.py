"""Domain Ports - Abstract Contracts for the Clinical Store and the Directory.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement, together with the Result and OperationOutcome types used to report
success or failure across component boundaries.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (FHIR REST, MOLGENIS REST) implement these ports
    - Domain Core is isolated from transport and authentication specifics
    - Fallible operations return Result objects, never raise across a port
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from directory_sync.domain.models import (
    Biobank,
    CollectionPut,
    CollectionStat,
    FactRecord,
    Organization,
    Patient,
    RegistrySnapshot,
    Specimen,
)
from directory_sync.domain.registry_id import RegistryId

# Type variables for Result generic
T = TypeVar('T')
U = TypeVar('U')


# ============================================================================
# Operation Outcome
# ============================================================================

class Severity(str, Enum):
    """Severity of an operation outcome (FHIR IssueSeverity vocabulary)."""
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFORMATION = "information"


@dataclass(frozen=True)
class OperationOutcome:
    """Structured outcome of a single sync action.

    Attributes:
        severity: Outcome severity (ERROR, INFORMATION, ...)
        diagnostics: Human-readable diagnostic, including the action name
            and the upstream cause
        code: Optional issue code (e.g. "not-found")
    """

    severity: Severity
    diagnostics: str
    code: Optional[str] = None

    @classmethod
    def error(cls, diagnostics: str, code: Optional[str] = None) -> 'OperationOutcome':
        """Create an ERROR outcome."""
        return cls(severity=Severity.ERROR, diagnostics=diagnostics, code=code)

    @classmethod
    def information(cls, diagnostics: str, code: Optional[str] = None) -> 'OperationOutcome':
        """Create an INFORMATION outcome."""
        return cls(severity=Severity.INFORMATION, diagnostics=diagnostics, code=code)

    @classmethod
    def registry_error(cls, action: str, cause: str) -> 'OperationOutcome':
        """ERROR outcome for a failed Directory call."""
        return cls.error(f"Error in BBMRI Directory response for {action}, cause: {cause}")

    @classmethod
    def not_found(cls, what: str) -> 'OperationOutcome':
        """INFORMATION outcome for a resource missing in the Directory."""
        return cls.information(what, code="not-found")

    @classmethod
    def update_successful(cls, updated_attribute: str, number: int) -> 'OperationOutcome':
        """INFORMATION outcome for a successful Directory update."""
        return cls.information(f"Successful update of {number} {updated_attribute} values")

    def is_error(self) -> bool:
        """True for ERROR and FATAL outcomes."""
        return self.severity in (Severity.ERROR, Severity.FATAL)

    def to_dict(self) -> dict:
        """Serialize for reports and logs."""
        return {
            "severity": self.severity.value,
            "diagnostics": self.diagnostics,
            "code": self.code,
        }


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    This type replaces exception propagation between components. Combinators
    (map, flat_map) short-circuit on the first failure, so a pipeline written
    as a chain of flat_map calls stops at the first failing step.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error diagnostic (only present if success=False)
        error_type: Type of error (ConversionError, RegistryError, etc.)
        error_details: Additional error context (action, country_code, etc.)
        severity: Severity reported when the failure becomes an outcome

    Example:
        ```python
        result = (
            clinical.fetch_collection_stats(default_id)
            .flat_map(converter.convert)
        )
        if result.is_failure():
            outcomes = [result.outcome()]
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None
    severity: Severity = Severity.ERROR

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None,
        severity: Severity = Severity.ERROR
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "ConversionError", "RegistryError")
            error_details: Additional context (action, collection_id, etc.)
            severity: Severity of the failure when reported as an outcome

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {},
            severity=severity
        )

    @classmethod
    def from_outcome(cls, outcome: OperationOutcome, error_type: str = "RegistryError") -> 'Result[T]':
        """Create a failure result carrying an existing outcome's severity and diagnostics."""
        details = {"code": outcome.code} if outcome.code else {}
        return cls.failure_result(outcome.diagnostics, error_type=error_type,
                                  error_details=details, severity=outcome.severity)

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success

    def map(self, fn: Callable[[T], U]) -> 'Result[U]':
        """Apply fn to the value of a successful result; failures pass through."""
        if not self.success:
            return self  # type: ignore[return-value]
        return Result.success_result(fn(self.value))

    def flat_map(self, fn: Callable[[T], 'Result[U]']) -> 'Result[U]':
        """Chain a fallible step; the first failure wins."""
        if not self.success:
            return self  # type: ignore[return-value]
        return fn(self.value)

    def fold(self, on_failure: Callable[['Result[T]'], Any], on_success: Callable[[T], Any]) -> Any:
        """Collapse the result into a single value."""
        if self.success:
            return on_success(self.value)
        return on_failure(self)

    def with_context(self, action: str) -> 'Result[T]':
        """Prefix a failure's diagnostic with the action that produced it."""
        if self.success:
            return self
        return replace(self, error=f"{action}, {self.error}")

    def outcome(self) -> OperationOutcome:
        """Convert a failure into an OperationOutcome.

        Raises:
            ValueError: If called on a successful result
        """
        if self.success:
            raise ValueError("Successful result has no failure outcome")
        code = (self.error_details or {}).get("code")
        return OperationOutcome(severity=self.severity, diagnostics=self.error or "", code=code)


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class DirectorySyncError(Exception):
    """Base exception for all sync-related errors.

    These exceptions are raised inside components and converted into a
    failed Result at the batch boundary; they never cross a port.
    """
    pass


class ConversionError(DirectorySyncError):
    """Raised when FHIR attributes cannot be converted to Directory attributes.

    Attributes:
        collection_id: The collection whose conversion failed
    """

    def __init__(self, message: str, collection_id: Optional[str] = None):
        super().__init__(message)
        self.collection_id = collection_id


class MergeError(DirectorySyncError):
    """Raised when Directory GET data cannot be merged into the PUT payload.

    Attributes:
        collection_id: The collection whose merge failed
    """

    def __init__(self, message: str, collection_id: Optional[str] = None):
        super().__init__(message)
        self.collection_id = collection_id


class RegistryError(DirectorySyncError):
    """Raised when a Directory response is malformed or unexpected."""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class ClinicalSourceError(DirectorySyncError):
    """Raised when a FHIR store response is malformed or unexpected."""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


# ============================================================================
# Ports
# ============================================================================

class ClinicalPort(ABC):
    """Abstract contract for the clinical data store (FHIR server).

    Key Principles:
        - Every method returns a Result; transport errors become failures
        - Resources are returned as validated domain models
        - Measure evaluation details stay inside the adapter
    """

    @abstractmethod
    def list_biobanks(self) -> Result[list[Organization]]:
        """List all Organizations with the biobank profile."""
        pass

    @abstractmethod
    def list_collections(self) -> Result[list[Organization]]:
        """List all Organizations with the collection profile."""
        pass

    @abstractmethod
    def evaluate_size_measure(self, measure_url: str) -> Result[dict[str, int]]:
        """Evaluate the size measure and return counts keyed by Organization id.

        Parameters:
            measure_url: Canonical URL of the measure to evaluate

        Returns:
            Result[dict[str, int]]: Specimen count per collection Organization id
                (the stratifier value), not per BBMRI-ERIC identifier
        """
        pass

    @abstractmethod
    def fetch_collections(self, resource_ids: list[str]) -> Result[list[Organization]]:
        """Fetch collection Organizations by FHIR resource id."""
        pass

    @abstractmethod
    def fetch_specimen_count(self) -> Result[int]:
        """Total number of Specimen resources on the server."""
        pass

    @abstractmethod
    def fetch_specimens_by_collection(
        self,
        default_collection_id: Optional[RegistryId]
    ) -> Result[dict[str, list[Specimen]]]:
        """Fetch all specimens grouped by BBMRI-ERIC collection id.

        Specimens without a collection reference are grouped under the
        default collection id if one is given, and dropped otherwise.
        """
        pass

    @abstractmethod
    def fetch_patients_for(self, specimens: list[Specimen]) -> Result[list[Patient]]:
        """Fetch the Patients referenced by the given specimens."""
        pass

    @abstractmethod
    def update_resource(self, resource: Organization) -> OperationOutcome:
        """Update a resource on the FHIR server."""
        pass


class RegistryPort(ABC):
    """Abstract contract for the BBMRI-ERIC Directory.

    Key Principles:
        - Every read returns a Result, every write returns an OperationOutcome
        - Country codes select the national node entity
        - Payloads are built by the domain; adapters only serialize them
    """

    @abstractmethod
    def login(self, username: str, password: str) -> Result[str]:
        """Authenticate and return a session token."""
        pass

    @abstractmethod
    def fetch_biobank(self, biobank_id: RegistryId) -> Result[Biobank]:
        """Fetch a biobank. NotFound is an INFORMATION failure."""
        pass

    @abstractmethod
    def list_collection_ids(self, country_code: str) -> Result[set[RegistryId]]:
        """List all collection ids known to the country's national node."""
        pass

    @abstractmethod
    def update_collection_sizes(self, country_code: str, sizes: list[tuple[RegistryId, int]]) -> OperationOutcome:
        """Push collection sizes for one country in a single call."""
        pass

    @abstractmethod
    def fetch_collection_snapshots(
        self,
        country_code: str,
        collection_ids: list[str]
    ) -> Result[dict[str, RegistrySnapshot]]:
        """Fetch the Directory's current view of the given collections."""
        pass

    @abstractmethod
    def push_collection_attributes(self, country_code: str, collection_put: CollectionPut) -> OperationOutcome:
        """Push a merged collection PUT payload for one country."""
        pass

    @abstractmethod
    def push_fact_table(self, country_code: str, facts: list[FactRecord]) -> OperationOutcome:
        """Push star model fact records for one country."""
        pass

    @abstractmethod
    def delete_fact_table(self, country_code: str, collection_ids: list[str]) -> OperationOutcome:
        """Delete previously pushed fact records of the given collections."""
        pass

    @abstractmethod
    def is_valid_icd_value(self, diagnosis: str) -> Result[bool]:
        """Whether the Directory accepts the given MIRIAM ICD-10 code; a failed lookup is a failed Result."""
        pass
