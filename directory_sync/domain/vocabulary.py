"""FHIR to Directory Vocabulary Conversion.

This module maps single FHIR values (sex, sample material, storage
temperature, ICD-10 diagnosis) to the Directory's vocabulary.

Architecture:
    - Rule tables are immutable, ordered data injected into the converter
    - All conversions are pure and total: None in, None out
    - List variants deduplicate, since several FHIR codes collapse to the
      same Directory code
"""

import logging
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

MIRIAM_ICD_PREFIX = "urn:miriam:icd:"

# Ordered (pattern, replacement) pairs. Every rule is applied in turn, so the
# output of one rule is the input of the next.
MATERIAL_RULES: tuple[tuple[str, str], ...] = (
    # Different names in FHIR and the Directory
    (r"_VITAL", ""),
    (r"^TISSUE_FORMALIN$", "TISSUE_PARAFFIN_EMBEDDED"),
    (r"^TISSUE$", "TISSUE_FROZEN"),
    (r"^CF_DNA$", "CDNA"),
    (r"^BLOOD_SERUM$", "SERUM"),
    (r"^STOOL_FAECES$", "FECES"),
    (r"^BLOOD_PLASMA$", "SERUM"),
    # Present in FHIR but unknown to the Directory
    (r"^.*_OTHER$", "OTHER"),
    (r"^DERIVATIVE$", "OTHER"),
    (r"^CSF_LIQUOR$", "OTHER"),
    (r"^LIQUID$", "OTHER"),
    (r"^ASCITES$", "OTHER"),
    (r"^TISSUE_PAXGENE_OR_ELSE$", "OTHER"),
)

# The Directory knows every FHIR temperature code except gaseous nitrogen.
STORAGE_TEMPERATURE_RULES: tuple[tuple[str, str], ...] = (
    (r"temperatureGN", "temperatureOther"),
)


def _compile(rules: Iterable[tuple[str, str]]) -> tuple[tuple[re.Pattern, str], ...]:
    return tuple((re.compile(pattern), replacement) for pattern, replacement in rules)


def _distinct(values: Iterable[Optional[str]]) -> list[str]:
    """Drop None values and duplicates, keeping first-seen order."""
    return list(dict.fromkeys(v for v in values if v is not None))


class VocabularyConverter:
    """Converts FHIR attribute values into Directory attribute values.

    Parameters:
        material_rules: Ordered rewrite rules for sample materials
        storage_temperature_rules: Ordered rewrite rules for storage temperatures

    Example:
        ```python
        converter = VocabularyConverter()
        converter.material("Tissue-Vital")                  # "TISSUE_FROZEN"
        converter.materials(["TISSUE", "Blood-Serum"])      # ["TISSUE_FROZEN", "SERUM"]
        converter.diagnosis("C75")                          # "urn:miriam:icd:C75"
        ```
    """

    def __init__(
        self,
        material_rules: Iterable[tuple[str, str]] = MATERIAL_RULES,
        storage_temperature_rules: Iterable[tuple[str, str]] = STORAGE_TEMPERATURE_RULES
    ):
        self._material_rules = _compile(material_rules)
        self._storage_temperature_rules = _compile(storage_temperature_rules)

    @staticmethod
    def sex(code: Optional[str]) -> Optional[str]:
        """Sex codes largely overlap, but the Directory wants upper case."""
        if code is None:
            return None
        return code.upper()

    def material(self, code: Optional[str]) -> Optional[str]:
        """Convert a FHIR sample material code to a Directory material.

        Parameters:
            code: FHIR material code, e.g. "tissue-formalin"

        Returns:
            Directory material, e.g. "TISSUE_PARAFFIN_EMBEDDED", or None
        """
        if code is None:
            return None

        material = code.upper().replace("-", "_")
        for pattern, replacement in self._material_rules:
            material = pattern.sub(replacement, material)
        return material

    def materials(self, codes: Optional[Iterable[Optional[str]]]) -> list[str]:
        """Convert and deduplicate a list of material codes."""
        return _distinct(self.material(code) for code in (codes or []))

    def storage_temperature(self, code: Optional[str]) -> Optional[str]:
        """Convert a FHIR storage temperature code."""
        if code is None:
            return None

        temperature = code
        for pattern, replacement in self._storage_temperature_rules:
            temperature = pattern.sub(replacement, temperature)
        return temperature

    def storage_temperatures(self, codes: Optional[Iterable[Optional[str]]]) -> list[str]:
        """Convert and deduplicate a list of storage temperature codes."""
        return _distinct(self.storage_temperature(code) for code in (codes or []))

    @staticmethod
    def diagnosis(code: Optional[str]) -> Optional[str]:
        """Convert an ICD-10 code to a MIRIAM ICD URN.

        Codes already carrying the MIRIAM prefix pass through. Bare codes of
        length 3 or 5 (e.g. "C75", "E23.1") are prefixed. Anything else is
        rejected.

        Returns:
            MIRIAM diagnosis, or None if the code was rejected
        """
        if code is None:
            return None

        if code.startswith(MIRIAM_ICD_PREFIX):
            return code
        if len(code) in (3, 5):
            return MIRIAM_ICD_PREFIX + code

        logger.warning(f"Invalid diagnosis code, dropping it: {code}")
        return None

    def diagnoses(self, codes: Optional[Iterable[Optional[str]]]) -> list[str]:
        """Convert a list of ICD-10 codes, dropping rejected codes and duplicates."""
        return _distinct(self.diagnosis(code) for code in (codes or []))


# Shared converter using the fixed rule tables
default_converter = VocabularyConverter()
