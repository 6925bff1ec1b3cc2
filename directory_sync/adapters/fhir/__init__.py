"""FHIR store adapter."""

from directory_sync.adapters.fhir.fhir_gateway import FhirGateway

__all__ = ["FhirGateway"]
