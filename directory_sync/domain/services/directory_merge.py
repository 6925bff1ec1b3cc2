"""Directory GET to Directory PUT Merge.

Copies the Directory's descriptive metadata (name, description, contact,
country, biobank, type, data categories, networks) into the locally built PUT
payload, so that a PUT does not blank out fields the sync does not compute.
"""

import logging
import traceback

from directory_sync.domain.models import CollectionEntity, CollectionPut, RegistrySnapshot
from directory_sync.domain.ports import MergeError, Result

logger = logging.getLogger(__name__)


def merge_snapshot(snapshot: RegistrySnapshot, entity: CollectionEntity) -> CollectionEntity:
    """Copy one snapshot's descriptive fields into the matching entity."""
    if snapshot.id != entity.id:
        raise MergeError(f"Snapshot {snapshot.id} does not match entity {entity.id}", collection_id=entity.id)

    entity.name = snapshot.name
    entity.description = snapshot.description
    entity.contact = snapshot.contact_id
    entity.country = snapshot.country_id
    entity.biobank = snapshot.biobank_id
    entity.type = list(snapshot.type_ids)
    entity.data_categories = list(snapshot.data_category_ids)
    entity.network = list(snapshot.network_ids)
    return entity


def merge(snapshots: dict[str, RegistrySnapshot], collection_put: CollectionPut) -> Result[CollectionPut]:
    """Merge Directory snapshots into every entity of the PUT payload.

    Parameters:
        snapshots: Directory snapshots keyed by collection id
        collection_put: Payload built from FHIR data

    Returns:
        Result[CollectionPut]: The merged payload, or a single failure if any
            entity has no snapshot or a snapshot cannot be merged
    """
    merged = collection_put.model_copy(deep=True)
    for entity in merged.entities:
        try:
            snapshot = snapshots.get(entity.id)
            if snapshot is None:
                raise MergeError(f"Collection {entity.id} not found in the Directory", collection_id=entity.id)
            merge_snapshot(snapshot, entity)
        except Exception as e:
            logger.error(
                f"Problem merging Directory GET into Directory PUT for {entity.id}: {e}\n"
                f"{traceback.format_exc()}"
            )
            return Result.failure_result(
                e,
                error_type="MergeError",
                error_details={"collection_id": entity.id}
            )

    return Result.success_result(merged)
