"""
Dataset aggregation – merge same-type tables into named, row-level datasets.

Each rule selects contributing tables by keyword and a confidence floor:

  Equipment  ← ``equipment`` keyword, medium/high tables   → high
  Skills     ← ``skill`` keyword, any confidence           → medium
  Injuries   ← ``injury`` keyword, medium/high tables      → high

A table can feed several datasets. A dataset that would end up with no rows
is not emitted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from rules_index.ingestion.schemas import (
    Confidence,
    Dataset,
    DatasetRow,
    DatasetType,
    Section,
    Table,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatasetRule:
    name: str
    dataset_type: DatasetType
    keyword: str
    allow_low: bool
    confidence: Confidence

    def accepts(self, table: Table) -> bool:
        if self.keyword not in table.keywords:
            return False
        return self.allow_low or table.confidence != Confidence.LOW


DATASET_RULES: tuple[DatasetRule, ...] = (
    DatasetRule("Equipment", DatasetType.EQUIPMENT, "equipment", False, Confidence.HIGH),
    DatasetRule("Skills", DatasetType.SKILLS, "skill", True, Confidence.MEDIUM),
    DatasetRule("Injuries", DatasetType.INJURIES, "injury", False, Confidence.HIGH),
)


def _source_path(table: Table, sections_by_id: dict[str, Section]) -> str | None:
    section = sections_by_id.get(table.section_id) if table.section_id else None
    if section is not None and section.section_path:
        return " > ".join(section.section_path)
    return table.title_guess


def aggregate_datasets(
    source_id: str,
    tables: list[Table],
    sections: list[Section] | None = None,
) -> tuple[list[Dataset], list[DatasetRow]]:
    """Build datasets (and their rows) from the tables of one source."""
    sections_by_id = {s.id: s for s in sections or []}
    datasets: list[Dataset] = []
    rows: list[DatasetRow] = []

    for rule in DATASET_RULES:
        contributing = [t for t in tables if t.parsed_rows and rule.accepts(t)]
        if not contributing:
            continue

        dataset = Dataset(
            source_id=source_id,
            name=rule.name,
            dataset_type=rule.dataset_type,
            confidence=rule.confidence,
        )
        fields: dict[str, None] = {}
        dataset_rows: list[DatasetRow] = []
        for table in contributing:
            path = _source_path(table, sections_by_id)
            for record in table.parsed_rows or []:
                fields.update(dict.fromkeys(record))
                dataset_rows.append(
                    DatasetRow(
                        dataset_id=dataset.id,
                        data=dict(record),
                        page_number=table.page_number,
                        source_path=path,
                    )
                )

        if not dataset_rows:
            continue
        dataset.fields = list(fields)
        datasets.append(dataset)
        rows.extend(dataset_rows)
        logger.debug(
            "Dataset %s: %d row(s) from %d table(s).",
            rule.name, len(dataset_rows), len(contributing),
        )

    return datasets, rows
