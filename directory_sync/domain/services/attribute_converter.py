"""Collection Attribute Conversion.

Converts aggregate FHIR collection statistics into a Directory collection PUT
payload. Conversion is all-or-nothing: if any single collection fails, the
whole batch fails and no partial payload is returned.
"""

import logging
import math
import traceback
from typing import Optional

from directory_sync.domain.models import CollectionEntity, CollectionPut, CollectionStat
from directory_sync.domain.ports import ConversionError, Result
from directory_sync.domain.vocabulary import VocabularyConverter, default_converter

logger = logging.getLogger(__name__)


def order_of_magnitude(value: Optional[int], field_name: str, collection_id: str) -> int:
    """floor(log10(value)), mandatory in the Directory.

    Raises:
        ConversionError: If value is missing, zero or negative
    """
    if value is None or value <= 0:
        raise ConversionError(
            f"Cannot derive order of magnitude from {field_name}={value} for collection {collection_id}",
            collection_id=collection_id
        )
    return int(math.floor(math.log10(value)))


class CollectionAttributeConverter:
    """Applies the vocabulary conversion across a batch of collections.

    Parameters:
        vocabulary: Converter for single attribute values
        diagnosis_available_enabled: Report converted diagnoses in
            diagnosis_available. Off by default: the Directory rejects the
            whole PUT when it does not know a single ICD-10 code.
    """

    def __init__(
        self,
        vocabulary: VocabularyConverter = default_converter,
        diagnosis_available_enabled: bool = False
    ):
        self.vocabulary = vocabulary
        self.diagnosis_available_enabled = diagnosis_available_enabled

    def convert(self, collection_stats: list[CollectionStat]) -> Result[CollectionPut]:
        """Convert a batch of collection statistics.

        Parameters:
            collection_stats: Statistics for every collection of the site

        Returns:
            Result[CollectionPut]: The complete payload, or a single failure
                if any collection could not be converted
        """
        collection_put = CollectionPut()
        for collection_stat in collection_stats:
            try:
                collection_put.entities.append(self.convert_collection(collection_stat))
            except Exception as e:
                logger.error(
                    f"Problem converting FHIR attributes to Directory attributes for "
                    f"{collection_stat.id}: {e}\n{traceback.format_exc()}"
                )
                return Result.failure_result(
                    e,
                    error_type="ConversionError",
                    error_details={"collection_id": collection_stat.id}
                )

        logger.info(f"Converted {len(collection_put.entities)} collections to Directory attributes")
        return Result.success_result(collection_put)

    def convert_collection(self, collection_stat: CollectionStat) -> CollectionEntity:
        """Convert one collection.

        Raises:
            ConversionError: If size or donor count cannot be converted
        """
        collection_id = collection_stat.id
        vocabulary = self.vocabulary

        if self.diagnosis_available_enabled:
            diagnoses = vocabulary.diagnoses(collection_stat.diagnosis_available)
        else:
            diagnoses = []

        return CollectionEntity(
            id=collection_id,
            size=collection_stat.size,
            order_of_magnitude=order_of_magnitude(collection_stat.size, "size", collection_id),
            number_of_donors=collection_stat.number_of_donors,
            order_of_magnitude_donors=order_of_magnitude(
                collection_stat.number_of_donors, "number_of_donors", collection_id
            ),
            sex=[vocabulary.sex(s) for s in collection_stat.sex if s is not None],
            age_low=collection_stat.age_low,
            age_high=collection_stat.age_high,
            materials=vocabulary.materials(collection_stat.materials),
            storage_temperatures=vocabulary.storage_temperatures(collection_stat.storage_temperatures),
            diagnosis_available=diagnoses,
        )
