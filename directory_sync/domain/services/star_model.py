"""Star Model Aggregation.

This module turns per-patient input rows into anonymized fact records. Rows
are grouped by (sex, diagnosis, age range, sample material); each group's row
count is both its donor count and its sample count. Groups smaller than the
minimum donor threshold are never disclosed.

Security Impact:
    - The donor threshold is applied before any fact record is built
    - Fact records carry counts only, no patient identifiers
    - Rows with unknown grouping values are discarded, not bucketed

Architecture:
    - StarModelDataset is a run-scoped accumulator owned by the aggregation step
    - Grouping is vectorized with pandas
    - Fact ids use an explicit, documented 32-bit string hash so ids are
      stable across runs and compatible with previously published facts
"""

import logging
from datetime import date
from typing import Optional

import pandas as pd

from directory_sync.domain.models import FactRecord, InputRow
from directory_sync.domain.registry_id import ID_PREFIX, RegistryId

logger = logging.getLogger(__name__)

FACT_ID_PREFIX = "bbmri-eric:factID:"
DEFAULT_MIN_DONORS = 10

GROUP_COLUMNS = ["sex", "hist_loc", "age_range", "sample_material"]

# (exclusive upper bound in years, label)
AGE_RANGES: tuple[tuple[int, str], ...] = (
    (1, "Infant"),
    (2, "Infant"),
    (13, "Child"),
    (18, "Adolescent"),
    (45, "Adult"),
    (65, "Middle-aged"),
    (80, "Aged (65-79 years)"),
)
OLDEST_AGE_RANGE = "Aged (>80 years)"
UNKNOWN_AGE_RANGE = "Unknown"


def cut_age_range(age: Optional[str]) -> Optional[str]:
    """Bin an age in years into a Directory age range.

    Parameters:
        age: Age at primary diagnosis as a string

    Returns:
        Age range label; "Unknown" for a missing or blank age; None for a
        malformed age, so the row is discarded with the other incomplete rows
    """
    if age is None or not str(age).strip():
        return UNKNOWN_AGE_RANGE

    try:
        age_value = int(str(age).strip())
    except ValueError:
        logger.warning(f"Unparseable age at diagnosis, discarding row: {age!r}")
        return None

    for upper_bound, label in AGE_RANGES:
        if age_value < upper_bound:
            return label
    return OLDEST_AGE_RANGE


def java_string_hash(value: str) -> int:
    """32-bit polynomial string hash over UTF-16 code units, signed.

    h = 31 * h + code_unit (mod 2**32), the same value as java.lang.String#hashCode.
    """
    data = value.encode("utf-16-be")
    h = 0
    for i in range(0, len(data), 2):
        h = (31 * h + ((data[i] << 8) | data[i + 1])) & 0xFFFFFFFF
    return h - 0x100000000 if h >= 0x80000000 else h


def make_fact_id(collection_id: str, group_key: str) -> str:
    """Fact id unique per (collection, group).

    Example:
        make_fact_id("bbmri-eric:ID:DE_12:collection:0", "MALE_urn:miriam:icd:C75_Adult_TISSUE_FROZEN")
        -> "bbmri-eric:factID:DE_12_collection_0_<hash>"
    """
    local_part = collection_id[len(ID_PREFIX):] if collection_id.startswith(ID_PREFIX) else collection_id
    return f"{FACT_ID_PREFIX}{local_part.replace(':', '_')}_{abs(java_string_hash(group_key))}"


class StarModelDataset:
    """Input rows per collection, the resulting fact records, and the threshold.

    Parameters:
        min_donors: Minimum group size for a fact to be disclosed (0 disables)
    """

    def __init__(self, min_donors: int = DEFAULT_MIN_DONORS):
        if min_donors < 0:
            raise ValueError(f"min_donors must not be negative. Got: {min_donors}")
        self.min_donors = min_donors
        self._input_rows: dict[str, list[InputRow]] = {}
        self.facts: list[FactRecord] = []
        self.diagnosis_corrections: dict[str, Optional[str]] = {}

    def add_input_row(self, collection_id: str, row: InputRow) -> None:
        self._input_rows.setdefault(collection_id, []).append(row)

    def input_rows(self, collection_id: str) -> list[InputRow]:
        return list(self._input_rows.get(collection_id, []))

    @property
    def input_collection_ids(self) -> list[str]:
        return list(self._input_rows)

    @property
    def input_row_count(self) -> int:
        return sum(len(rows) for rows in self._input_rows.values())

    def add_facts(self, facts: list[FactRecord]) -> None:
        self.facts.extend(facts)

    @property
    def fact_count(self) -> int:
        return len(self.facts)

    def facts_by_country(self) -> dict[str, list[FactRecord]]:
        """Group facts by the country code of their collection."""
        grouped: dict[str, list[FactRecord]] = {}
        for fact in self.facts:
            registry_id = RegistryId.parse(fact.collection)
            if registry_id is None:
                logger.warning(f"Fact {fact.id} has an invalid collection id: {fact.collection}")
                continue
            grouped.setdefault(registry_id.country_code, []).append(fact)
        return grouped

    @property
    def diagnoses(self) -> list[str]:
        """Distinct diagnoses used by the fact records."""
        return list(dict.fromkeys(fact.disease for fact in self.facts))

    def apply_diagnosis_corrections(self) -> int:
        """Replace or drop fact diagnoses according to collected corrections.

        A correction mapping a diagnosis to None drops every fact using it.

        Returns:
            int: Number of facts dropped
        """
        corrected: list[FactRecord] = []
        dropped = 0
        for fact in self.facts:
            if fact.disease not in self.diagnosis_corrections:
                corrected.append(fact)
                continue
            replacement = self.diagnosis_corrections[fact.disease]
            if replacement is None:
                dropped += 1
                continue
            corrected.append(fact.model_copy(update={"disease": replacement}))

        if dropped:
            logger.info(f"Dropped {dropped} facts with diagnoses unknown to the Directory")
        self.facts = corrected
        return dropped


class StarModelAggregator:
    """Builds fact tables from a StarModelDataset's input rows."""

    def create_fact_tables(self, dataset: StarModelDataset, today: Optional[date] = None) -> StarModelDataset:
        """Aggregate every collection of the dataset into its fact list.

        Parameters:
            dataset: Dataset holding input rows and the donor threshold
            today: Date stamped on the facts (defaults to date.today())

        Returns:
            StarModelDataset: The same dataset, with facts appended
        """
        today = today or date.today()
        for collection_id in dataset.input_collection_ids:
            facts = self.create_fact_table(
                collection_id, dataset.min_donors, dataset.input_rows(collection_id), today
            )
            dataset.add_facts(facts)
            logger.info(f"Collection {collection_id}: {len(facts)} facts", extra={"collection_id": collection_id})
        return dataset

    def create_fact_table(
        self,
        collection_id: str,
        min_donors: int,
        rows: list[InputRow],
        today: date
    ) -> list[FactRecord]:
        """Aggregate one collection's rows into anonymized fact records."""
        if not rows:
            return []

        df = pd.DataFrame([row.model_dump() for row in rows])
        df["age_range"] = df["age_at_primary_diagnosis"].map(cut_age_range)

        complete = df.dropna(subset=GROUP_COLUMNS)
        discarded = len(df) - len(complete)
        if discarded:
            logger.debug(f"Collection {collection_id}: discarded {discarded} rows with missing values")
        if complete.empty:
            return []

        counts = complete.groupby(GROUP_COLUMNS, sort=True).size().reset_index(name="donors")

        # Privacy threshold, before anything is built from the groups
        if min_donors > 0:
            counts = counts[counts["donors"] >= min_donors]

        facts = []
        for group in counts.itertuples(index=False):
            group_key = "_".join((group.sex, group.hist_loc, group.age_range, group.sample_material))
            count = int(group.donors)
            facts.append(FactRecord(
                sex=group.sex,
                disease=group.hist_loc,
                age_range=group.age_range,
                sample_type=group.sample_material,
                number_of_donors=count,
                number_of_samples=count,
                id=make_fact_id(collection_id, group_key),
                last_update=today,
                collection=collection_id,
            ))
        return facts
