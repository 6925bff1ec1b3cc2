"""BBMRI-ERIC Directory Adapter.

This adapter implements the RegistryPort contract against the MOLGENIS REST
API of the BBMRI-ERIC Directory. Every national node has its own entities,
e.g. "eu_bbmri_eric_DE_collections"; the country code of a RegistryId selects
the entity.

Security Impact:
    - The session token is sent as the x-molgenis-token header only
    - Credentials are passed in, never read from the environment here
    - Updating collections requires "update data" permission on the
      national node's Collections entity

Architecture:
    - Implements RegistryPort (Hexagonal Architecture)
    - Reads return Result objects, writes return OperationOutcome objects
    - Error diagnostics carry the action name and the Directory's response
"""

import logging
from typing import Any, Optional

import requests

from directory_sync.domain.models import Biobank, CollectionPut, FactRecord, RegistrySnapshot
from directory_sync.domain.ports import OperationOutcome, RegistryError, RegistryPort, Result
from directory_sync.domain.registry_id import RegistryId

logger = logging.getLogger(__name__)

# The Directory returns at most 10000 items per request
MAX_ITEMS = 10000
FACT_BATCH_SIZE = 1000
DISEASE_TYPES_ENTITY = "eu_bbmri_eric_disease_types"


def biobanks_entity(country_code: str) -> str:
    return f"eu_bbmri_eric_{country_code}_biobanks"


def collections_entity(country_code: str) -> str:
    return f"eu_bbmri_eric_{country_code}_collections"


def facts_entity(country_code: str) -> str:
    return f"eu_bbmri_eric_{country_code}_facts"


def rsql_in(attribute: str, values: list[str]) -> str:
    """RSQL membership query, e.g. id=in=("a","b")."""
    quoted = ",".join(f'"{value}"' for value in values)
    return f"{attribute}=in=({quoted})"


def batches(items: list, size: int) -> list[list]:
    return [items[start:start + size] for start in range(0, len(items), size)]


class DirectoryGateway(RegistryPort):
    """RegistryPort implementation over the MOLGENIS REST API.

    Parameters:
        base_url: Directory base URL, e.g. "https://directory.bbmri-eric.eu"
        token: Pre-issued session token (optional, see login)
        timeout: Per-request timeout in seconds
        session: Optional pre-configured requests.Session

    Example:
        ```python
        with DirectoryGateway("https://directory.bbmri-eric.eu") as directory:
            directory.login("user", "secret")
            ids = directory.list_collection_ids("DE")
        ```
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self.token: Optional[str] = None
        self._icd_cache: dict[str, bool] = {}
        if token:
            self.set_token(token)

    def __enter__(self) -> "DirectoryGateway":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def set_token(self, token: str) -> None:
        self.token = token
        self.session.headers.update({"x-molgenis-token": token})

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v2/{path}"

    def _get_items(self, entity: str, params: dict, action: str) -> list[dict]:
        """GET an entity collection and return its items.

        Raises:
            RegistryError: On transport errors, non-200 responses or bodies
                without an item list
        """
        try:
            response = self.session.get(self._url(entity), params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise RegistryError(str(e), action=action) from e
        if response.status_code != 200:
            raise RegistryError(response.text, action=action)
        try:
            items = response.json()["items"]
        except (ValueError, KeyError, TypeError) as e:
            raise RegistryError(f"Unexpected response body: {e}", action=action) from e
        if not isinstance(items, list):
            raise RegistryError("Unexpected response body: items is not a list", action=action)
        return items

    def _get_all_items(self, entity: str, params: dict, action: str) -> list[dict]:
        """GET every page of an entity collection, MAX_ITEMS at a time.

        Raises:
            RegistryError: If any page fails
        """
        items: list[dict] = []
        start = 0
        while True:
            page = self._get_items(entity, {**params, "start": start, "num": MAX_ITEMS}, action)
            items.extend(page)
            if len(page) < MAX_ITEMS:
                return items
            start += MAX_ITEMS

    def _write(self, method: str, path: str, payload: Any, action: str) -> Optional[OperationOutcome]:
        """Send a write request; None on success, an ERROR outcome otherwise."""
        try:
            response = self.session.request(method, self._url(path), json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Directory {action} failed: {e}")
            return OperationOutcome.registry_error(action, str(e))
        if response.status_code >= 300:
            logger.error(f"Directory {action} failed with HTTP {response.status_code}: {response.text}")
            return OperationOutcome.registry_error(action, response.text)
        return None

    # ------------------------------------------------------------------------
    # RegistryPort
    # ------------------------------------------------------------------------

    def login(self, username: str, password: str) -> Result[str]:
        """Log in and keep the session token for all further requests."""
        action = "login"
        try:
            response = self.session.post(
                f"{self.base_url}/api/v1/login",
                json={"username": username, "password": password},
                timeout=self.timeout,
            )
            if response.status_code != 200:
                return Result.from_outcome(OperationOutcome.registry_error(action, response.text))
            token = response.json().get("token")
        except (requests.RequestException, ValueError) as e:
            return Result.from_outcome(OperationOutcome.registry_error(action, str(e)))

        if not token:
            return Result.from_outcome(OperationOutcome.registry_error(action, "No token in login response"))
        self.set_token(token)
        logger.info(f"Logged in to the Directory as {username}")
        return Result.success_result(token)

    def fetch_biobank(self, biobank_id: RegistryId) -> Result[Biobank]:
        url = self._url(f"{biobanks_entity(biobank_id.country_code)}/{biobank_id}")
        try:
            response = self.session.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return Result.from_outcome(OperationOutcome.not_found(f"No Biobank in Directory for {biobank_id}"))
            if response.status_code != 200:
                return Result.from_outcome(OperationOutcome.registry_error(str(biobank_id), response.text))
            return Result.success_result(Biobank.model_validate(response.json()))
        except Exception as e:
            return Result.from_outcome(OperationOutcome.registry_error(str(biobank_id), str(e)))

    def list_collection_ids(self, country_code: str) -> Result[set[RegistryId]]:
        action = "list collection ids"
        try:
            items = self._get_all_items(collections_entity(country_code), {"attrs": "id"}, action)
        except RegistryError as e:
            return Result.from_outcome(OperationOutcome.registry_error(action, str(e)))

        collection_ids = {RegistryId.parse(item.get("id")) for item in items}
        collection_ids.discard(None)
        logger.debug(f"Directory knows {len(collection_ids)} collections for {country_code}")
        return Result.success_result(collection_ids)

    def update_collection_sizes(self, country_code: str, sizes: list[tuple[RegistryId, int]]) -> OperationOutcome:
        action = "collection size update"
        if not sizes:
            return OperationOutcome.registry_error(action, "Empty list of collection sizes")

        payload = {"entities": [{"id": str(registry_id), "size": size} for registry_id, size in sizes]}
        error = self._write("PUT", f"{collections_entity(country_code)}/size", payload, action)
        if error is not None:
            return error
        return OperationOutcome.update_successful("collection size", len(sizes))

    def fetch_collection_snapshots(
        self,
        country_code: str,
        collection_ids: list[str]
    ) -> Result[dict[str, RegistrySnapshot]]:
        """Fetch the Directory's collections; every requested id must be present."""
        action = "fetch collections"
        try:
            items = self._get_all_items(
                collections_entity(country_code),
                {"q": rsql_in("id", collection_ids)},
                action
            )
            snapshots = {}
            for item in items:
                snapshot = RegistrySnapshot.from_item(item)
                snapshots[snapshot.id] = snapshot
        except RegistryError as e:
            return Result.from_outcome(OperationOutcome.registry_error(action, str(e)))
        except (ValueError, KeyError, TypeError) as e:
            return Result.from_outcome(OperationOutcome.registry_error(action, f"Unexpected collection item: {e}"))

        missing = [collection_id for collection_id in collection_ids if collection_id not in snapshots]
        if missing:
            return Result.from_outcome(
                OperationOutcome.registry_error(action, f"Collections not found in Directory: {', '.join(missing)}")
            )
        return Result.success_result(snapshots)

    def push_collection_attributes(self, country_code: str, collection_put: CollectionPut) -> OperationOutcome:
        action = "collection attribute update"
        error = self._write("PUT", collections_entity(country_code), collection_put.to_wire(), action)
        if error is not None:
            return error
        return OperationOutcome.update_successful("collection attribute", len(collection_put.entities))

    def push_fact_table(self, country_code: str, facts: list[FactRecord]) -> OperationOutcome:
        """Insert fact records in batches of FACT_BATCH_SIZE."""
        action = "star model fact table update"
        if not facts:
            return OperationOutcome.information("No star model facts to send")

        for batch in batches(facts, FACT_BATCH_SIZE):
            error = self._write("POST", facts_entity(country_code), {"entities": [f.to_wire() for f in batch]}, action)
            if error is not None:
                return error
        return OperationOutcome.update_successful("star model fact", len(facts))

    def delete_fact_table(self, country_code: str, collection_ids: list[str]) -> OperationOutcome:
        """Delete the facts of the given collections from the national node."""
        action = "star model fact table deletion"
        if not collection_ids:
            return OperationOutcome.information("No collections to delete facts for")

        try:
            items = self._get_all_items(
                facts_entity(country_code),
                {"attrs": "id", "q": rsql_in("collection", collection_ids)},
                action
            )
        except RegistryError as e:
            return OperationOutcome.registry_error(action, str(e))

        fact_ids = [item["id"] for item in items if "id" in item]
        for batch in batches(fact_ids, FACT_BATCH_SIZE):
            error = self._write("DELETE", facts_entity(country_code), {"entities": batch}, action)
            if error is not None:
                return error
        logger.info(f"Deleted {len(fact_ids)} previous star model facts for {country_code}")
        return OperationOutcome.information(f"Deleted {len(fact_ids)} star model facts")

    def is_valid_icd_value(self, diagnosis: str) -> Result[bool]:
        """Whether the Directory's disease types contain the code.

        Answers are cached per gateway; failed lookups are not cached so a
        later call asks again.
        """
        if diagnosis in self._icd_cache:
            return Result.success_result(self._icd_cache[diagnosis])

        action = "ICD-10 lookup"
        try:
            items = self._get_items(DISEASE_TYPES_ENTITY, {"q": f'id=="{diagnosis}"', "attrs": "id"}, action)
        except RegistryError as e:
            logger.error(f"Could not check diagnosis {diagnosis} against the Directory: {e}")
            return Result.from_outcome(OperationOutcome.registry_error(action, str(e)))

        valid = len(items) > 0
        self._icd_cache[diagnosis] = valid
        return Result.success_result(valid)
