"""Test suite for the Directory gateway using a mocked requests.Session.

Security Impact:
    - Verifies the session token is only sent as the x-molgenis-token header
    - Verifies fact deletion is restricted to the given collections
"""

from datetime import date
from unittest.mock import MagicMock, Mock

import pytest
import requests

from directory_sync.adapters.directory.directory_gateway import (
    FACT_BATCH_SIZE,
    MAX_ITEMS,
    DirectoryGateway,
    batches,
    rsql_in,
)
from directory_sync.domain.models import CollectionEntity, CollectionPut, FactRecord
from directory_sync.domain.ports import OperationOutcome, Severity
from directory_sync.domain.registry_id import RegistryId

BASE_URL = "https://directory.test"
COLLECTION_ID = "bbmri-eric:ID:DE_12:collection:0"
OTHER_COLLECTION_ID = "bbmri-eric:ID:DE_12:collection:1"


def response(body=None, status=200, text=""):
    mock_response = Mock()
    mock_response.status_code = status
    mock_response.text = text
    mock_response.json.return_value = body
    return mock_response


def fact(index):
    return FactRecord(
        sex="MALE",
        disease="urn:miriam:icd:C75",
        age_range="Adult",
        sample_type="DNA",
        number_of_donors=10,
        number_of_samples=10,
        id=f"bbmri-eric:factID:DE_12_collection_0_{index}",
        last_update=date(2024, 1, 1),
        collection=COLLECTION_ID,
    )


@pytest.fixture
def session():
    mock_session = MagicMock(spec=requests.Session)
    mock_session.headers = {}
    return mock_session


@pytest.fixture
def gateway(session):
    return DirectoryGateway(BASE_URL, token="secret-token", timeout=5, session=session)


class TestHelpers:
    """Test suite for query helpers."""

    def test_rsql_in(self):
        assert rsql_in("id", ["a", "b"]) == 'id=in=("a","b")'

    def test_batches(self):
        assert batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert batches([], 2) == []


class TestLogin:
    """Test suite for authentication."""

    def test_token_header(self, gateway, session):
        assert session.headers["x-molgenis-token"] == "secret-token"

    def test_login_stores_token(self, session):
        gateway = DirectoryGateway(BASE_URL, session=session)
        session.post.return_value = response({"token": "issued-token", "username": "user"})

        result = gateway.login("user", "password")

        assert result.value == "issued-token"
        assert session.headers["x-molgenis-token"] == "issued-token"
        args, kwargs = session.post.call_args
        assert args[0] == f"{BASE_URL}/api/v1/login"
        assert kwargs["json"] == {"username": "user", "password": "password"}

    def test_login_rejected(self, session):
        gateway = DirectoryGateway(BASE_URL, session=session)
        session.post.return_value = response(status=401, text="Unauthorized")

        result = gateway.login("user", "wrong")

        assert result.is_failure()
        assert result.error == "Error in BBMRI Directory response for login, cause: Unauthorized"
        assert "x-molgenis-token" not in session.headers

    def test_login_connection_error(self, session):
        gateway = DirectoryGateway(BASE_URL, session=session)
        session.post.side_effect = requests.ConnectionError("unreachable")
        assert gateway.login("user", "password").is_failure()


class TestReads:
    """Test suite for biobank and collection reads."""

    def test_fetch_biobank(self, gateway, session):
        session.get.return_value = response({"_href": "/api/v2/...", "id": "bbmri-eric:ID:DE_12",
                                             "name": "Biobank"})

        result = gateway.fetch_biobank(RegistryId.parse("bbmri-eric:ID:DE_12"))

        assert result.value.name == "Biobank"
        assert session.get.call_args.args[0] == f"{BASE_URL}/api/v2/eu_bbmri_eric_DE_biobanks/bbmri-eric:ID:DE_12"

    def test_fetch_biobank_not_found(self, gateway, session):
        session.get.return_value = response(status=404, text="Not found")

        outcome = gateway.fetch_biobank(RegistryId.parse("bbmri-eric:ID:DE_12")).outcome()

        assert outcome.severity == Severity.INFORMATION
        assert outcome.code == "not-found"
        assert outcome.diagnostics == "No Biobank in Directory for bbmri-eric:ID:DE_12"

    def test_list_collection_ids(self, gateway, session):
        session.get.return_value = response({"items": [{"id": COLLECTION_ID}, {"id": "garbage"}]})

        result = gateway.list_collection_ids("DE")

        assert result.value == {RegistryId.parse(COLLECTION_ID)}
        args, kwargs = session.get.call_args
        assert args[0] == f"{BASE_URL}/api/v2/eu_bbmri_eric_DE_collections"
        assert kwargs["params"] == {"attrs": "id", "start": 0, "num": 10000}

    def test_list_collection_ids_pages(self, gateway, session):
        first_page = [{"id": f"bbmri-eric:ID:DE_12:collection:{i}"} for i in range(MAX_ITEMS)]
        session.get.side_effect = [response({"items": first_page}), response({"items": []})]

        result = gateway.list_collection_ids("DE")

        assert len(result.value) == MAX_ITEMS
        assert session.get.call_count == 2
        assert session.get.call_args.kwargs["params"] == {"attrs": "id", "start": MAX_ITEMS, "num": MAX_ITEMS}

    def test_list_collection_ids_error(self, gateway, session):
        session.get.return_value = response(status=500, text="Internal error")

        result = gateway.list_collection_ids("DE")

        assert result.is_failure()
        assert "Internal error" in result.error

    def test_fetch_collection_snapshots(self, gateway, session):
        session.get.return_value = response({"items": [
            {"id": COLLECTION_ID, "name": "One", "type": [{"id": "SAMPLE"}], "country": {"id": "DE"}},
        ]})

        result = gateway.fetch_collection_snapshots("DE", [COLLECTION_ID])

        snapshot = result.value[COLLECTION_ID]
        assert snapshot.name == "One"
        assert snapshot.type_ids == ["SAMPLE"]
        assert snapshot.country_id == "DE"
        assert session.get.call_args.kwargs["params"]["q"] == f'id=in=("{COLLECTION_ID}")'

    def test_missing_snapshot_is_an_error(self, gateway, session):
        session.get.return_value = response({"items": [{"id": COLLECTION_ID}]})

        result = gateway.fetch_collection_snapshots("DE", [COLLECTION_ID, OTHER_COLLECTION_ID])

        assert result.is_failure()
        assert OTHER_COLLECTION_ID in result.error

    def test_icd_lookup_is_cached(self, gateway, session):
        session.get.return_value = response({"items": [{"id": "urn:miriam:icd:C75"}]})

        assert gateway.is_valid_icd_value("urn:miriam:icd:C75").value is True
        assert gateway.is_valid_icd_value("urn:miriam:icd:C75").value is True

        session.get.assert_called_once()
        assert session.get.call_args.kwargs["params"]["q"] == 'id=="urn:miriam:icd:C75"'

    def test_icd_lookup_unknown_code(self, gateway, session):
        session.get.return_value = response({"items": []})
        assert gateway.is_valid_icd_value("urn:miriam:icd:X99").value is False

    def test_failed_icd_lookup_is_not_cached(self, gateway, session):
        session.get.side_effect = [
            response(status=503, text="Service Unavailable"),
            response({"items": [{"id": "urn:miriam:icd:C75"}]}),
        ]

        failed = gateway.is_valid_icd_value("urn:miriam:icd:C75")

        assert failed.is_failure()
        assert failed.error == "Error in BBMRI Directory response for ICD-10 lookup, cause: Service Unavailable"
        assert gateway.is_valid_icd_value("urn:miriam:icd:C75").value is True
        assert session.get.call_count == 2


class TestWrites:
    """Test suite for size, attribute and fact table writes."""

    def test_update_collection_sizes(self, gateway, session):
        session.request.return_value = response(status=204)

        outcome = gateway.update_collection_sizes("DE", [(RegistryId.parse(COLLECTION_ID), 7)])

        assert outcome == OperationOutcome.update_successful("collection size", 1)
        args, kwargs = session.request.call_args
        assert args == ("PUT", f"{BASE_URL}/api/v2/eu_bbmri_eric_DE_collections/size")
        assert kwargs["json"] == {"entities": [{"id": COLLECTION_ID, "size": 7}]}

    def test_empty_size_list_is_an_error(self, gateway, session):
        outcome = gateway.update_collection_sizes("DE", [])

        assert outcome.is_error()
        assert "Empty list of collection sizes" in outcome.diagnostics
        session.request.assert_not_called()

    def test_rejected_size_update(self, gateway, session):
        session.request.return_value = response(status=403, text="No write permission")

        outcome = gateway.update_collection_sizes("DE", [(RegistryId.parse(COLLECTION_ID), 7)])

        assert outcome == OperationOutcome.registry_error("collection size update", "No write permission")

    def test_push_collection_attributes(self, gateway, session):
        session.request.return_value = response(status=200)
        collection_put = CollectionPut(entities=[CollectionEntity(id=COLLECTION_ID, size=3, name="One")])

        outcome = gateway.push_collection_attributes("DE", collection_put)

        assert outcome == OperationOutcome.update_successful("collection attribute", 1)
        args, kwargs = session.request.call_args
        assert args == ("PUT", f"{BASE_URL}/api/v2/eu_bbmri_eric_DE_collections")
        assert kwargs["json"]["entities"][0]["name"] == "One"

    def test_push_fact_table_in_batches(self, gateway, session):
        session.request.return_value = response(status=201)
        facts = [fact(i) for i in range(FACT_BATCH_SIZE + 1)]

        outcome = gateway.push_fact_table("DE", facts)

        assert outcome == OperationOutcome.update_successful("star model fact", FACT_BATCH_SIZE + 1)
        assert session.request.call_count == 2
        first_batch = session.request.call_args_list[0].kwargs["json"]["entities"]
        assert len(first_batch) == FACT_BATCH_SIZE
        assert first_batch[0]["number_of_donors"] == "10"

    def test_push_fact_table_stops_at_first_failed_batch(self, gateway, session):
        session.request.side_effect = [response(status=400, text="Unknown disease")]

        outcome = gateway.push_fact_table("DE", [fact(i) for i in range(FACT_BATCH_SIZE + 1)])

        assert outcome.is_error()
        assert session.request.call_count == 1

    def test_delete_fact_table_only_touches_given_collections(self, gateway, session):
        session.get.return_value = response({"items": [{"id": "f1"}, {"id": "f2"}]})
        session.request.return_value = response(status=204)

        outcome = gateway.delete_fact_table("DE", [COLLECTION_ID])

        assert not outcome.is_error()
        params = session.get.call_args.kwargs["params"]
        assert params["q"] == f'collection=in=("{COLLECTION_ID}")'
        args, kwargs = session.request.call_args
        assert args == ("DELETE", f"{BASE_URL}/api/v2/eu_bbmri_eric_DE_facts")
        assert kwargs["json"] == {"entities": ["f1", "f2"]}

    def test_delete_without_collections_is_a_no_op(self, gateway, session):
        outcome = gateway.delete_fact_table("DE", [])

        assert outcome.severity == Severity.INFORMATION
        session.get.assert_not_called()
        session.request.assert_not_called()

    def test_delete_fact_table_reads_every_page(self, gateway, session):
        first_page = [{"id": f"f{i}"} for i in range(MAX_ITEMS)]
        session.get.side_effect = [response({"items": first_page}), response({"items": [{"id": "last"}]})]
        session.request.return_value = response(status=204)

        outcome = gateway.delete_fact_table("DE", [COLLECTION_ID])

        assert outcome.diagnostics == f"Deleted {MAX_ITEMS + 1} star model facts"
        first_call, second_call = session.get.call_args_list
        assert first_call.kwargs["params"]["start"] == 0
        assert second_call.kwargs["params"]["start"] == MAX_ITEMS
        assert second_call.kwargs["params"]["q"] == f'collection=in=("{COLLECTION_ID}")'
        deleted = [i for c in session.request.call_args_list for i in c.kwargs["json"]["entities"]]
        assert len(deleted) == MAX_ITEMS + 1
        assert deleted[-1] == "last"

    def test_failed_second_page_deletes_nothing(self, gateway, session):
        session.get.side_effect = [
            response({"items": [{"id": f"f{i}"} for i in range(MAX_ITEMS)]}),
            response(status=500, text="Internal error"),
        ]

        outcome = gateway.delete_fact_table("DE", [COLLECTION_ID])

        assert outcome.is_error()
        session.request.assert_not_called()
