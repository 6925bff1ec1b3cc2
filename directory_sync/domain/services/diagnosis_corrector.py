"""Star Model Diagnosis Correction.

The Directory only accepts ICD-10 codes it knows, and rejects a whole fact
upload over a single unknown code. Before pushing, every diagnosis used by the
facts is checked against the Directory; unknown codes are remapped to their
three-character category where the Directory knows that, and dropped otherwise.
"""

import logging
from typing import Optional

from directory_sync.domain.ports import RegistryError, RegistryPort, Result
from directory_sync.domain.services.star_model import StarModelDataset
from directory_sync.domain.vocabulary import MIRIAM_ICD_PREFIX

logger = logging.getLogger(__name__)


def icd_category(diagnosis: str) -> Optional[str]:
    """"urn:miriam:icd:C75.1" -> "urn:miriam:icd:C75"; None if already a category."""
    if not diagnosis.startswith(MIRIAM_ICD_PREFIX):
        return None
    code = diagnosis[len(MIRIAM_ICD_PREFIX):]
    if len(code) <= 3:
        return None
    return MIRIAM_ICD_PREFIX + code[:3]


class DiagnosisCorrector:
    """Collects and applies diagnosis corrections for a StarModelDataset."""

    def __init__(self, registry: RegistryPort):
        self.registry = registry

    def collect_corrections(self, dataset: StarModelDataset) -> Result[dict[str, Optional[str]]]:
        """Check every fact diagnosis against the Directory.

        Returns:
            Result[dict]: Unknown diagnosis -> replacement (None means drop).
                Known diagnoses are not listed. The first failed lookup fails
                the whole check and leaves the dataset untouched.
        """
        corrections: dict[str, Optional[str]] = {}
        known: dict[str, bool] = {}

        def is_known(code: str) -> bool:
            if code not in known:
                lookup = self.registry.is_valid_icd_value(code)
                if lookup.is_failure():
                    raise RegistryError(lookup.error or f"lookup of {code} failed", action="ICD-10 lookup")
                known[code] = lookup.value
            return known[code]

        try:
            for diagnosis in dataset.diagnoses:
                if is_known(diagnosis):
                    continue
                category = icd_category(diagnosis)
                if category is not None and is_known(category):
                    logger.info(f"Diagnosis {diagnosis} unknown to the Directory, using {category}")
                    corrections[diagnosis] = category
                else:
                    logger.warning(f"Diagnosis {diagnosis} unknown to the Directory, dropping its facts")
                    corrections[diagnosis] = None
        except RegistryError as e:
            return Result.failure_result(e, error_type="RegistryError", error_details={"action": e.action})

        dataset.diagnosis_corrections.update(corrections)
        return Result.success_result(corrections)

    def correct(self, dataset: StarModelDataset) -> Result[StarModelDataset]:
        """Collect corrections and apply them to the dataset's facts."""
        corrections_result = self.collect_corrections(dataset)
        if corrections_result.is_failure():
            return corrections_result  # type: ignore[return-value]
        dataset.apply_diagnosis_corrections()
        return Result.success_result(dataset)
