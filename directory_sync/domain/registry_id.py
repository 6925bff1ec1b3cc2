"""BBMRI-ERIC Identifier Value Object.

This module defines RegistryId, the structured identifier used to reference
biobanks and collections in both the FHIR store and the Directory.

Format:
    bbmri-eric:ID:<country-code>_<suffix>
    bbmri-eric:ID:<country-code>_<suffix>:collection:<suffix2>

Architecture:
    - Pure domain value object with zero infrastructure dependencies
    - Immutable and hashable so it can be used as a dictionary key
    - Parsing never raises: malformed input yields None so callers can filter
"""

import re
from dataclasses import dataclass
from typing import Optional

ID_PREFIX = "bbmri-eric:ID:"
COLLECTION_MARKER = ":collection:"

_PATTERN = re.compile(r"bbmri-eric:ID:([A-Z]{2})(_.+)")


@dataclass(frozen=True)
class RegistryId:
    """A validated BBMRI-ERIC identifier.

    Attributes:
        country_code: Two-letter upper-case country code, e.g. "DE"
        suffix: Everything after the country code, starting with "_"

    Example:
        ```python
        registry_id = RegistryId.parse("bbmri-eric:ID:DE_185943:collection:0")
        registry_id.country_code  # "DE"
        str(registry_id)          # "bbmri-eric:ID:DE_185943:collection:0"
        RegistryId.parse("foo:ID:DE_X")  # None
        ```
    """

    country_code: str
    suffix: str

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["RegistryId"]:
        """Try to create an identifier from a string.

        Parameters:
            value: Candidate identifier string

        Returns:
            RegistryId if the whole string matches the identifier format,
            None otherwise (including None input)
        """
        if not value or not isinstance(value, str):
            return None

        match = _PATTERN.fullmatch(value)
        if match is None:
            return None

        return cls(country_code=match.group(1), suffix=match.group(2))

    @property
    def is_collection(self) -> bool:
        """True if this identifier references a collection."""
        return COLLECTION_MARKER in self.suffix

    @property
    def biobank_id(self) -> "RegistryId":
        """Identifier of the biobank owning this collection (self for biobanks)."""
        if not self.is_collection:
            return self
        return RegistryId(self.country_code, self.suffix.split(COLLECTION_MARKER, 1)[0])

    @property
    def local_part(self) -> str:
        """Identifier without the fixed "bbmri-eric:ID:" prefix."""
        return f"{self.country_code}{self.suffix}"

    def __str__(self) -> str:
        return f"{ID_PREFIX}{self.country_code}{self.suffix}"


def country_code_of(value: Optional[str]) -> Optional[str]:
    """Country code of an identifier string, or None if it does not parse."""
    registry_id = RegistryId.parse(value)
    return registry_id.country_code if registry_id else None
