"""
Tests for the store, the source registry and the end-to-end index lifecycle.

Run: python -m pytest tests/ -v
"""

from __future__ import annotations

import pytest


RULEBOOK_PAGES = [
    "Skirmish Rules\n"
    "COMBAT SKILLS\n\n"
    "1: Weapon Master - +1 to hit\n2: Parry\n3: Riposte\n4: Counter\n5: Brutal\n6: Berserk\n\n"
    "1",
    "Skirmish Rules\n"
    "Equipment\nSword 10gc\nShield 5gc\nHelm 8gc\n\n"
    "2",
    "Skirmish Rules\n"
    "INJURY TABLE\n\n"
    "1-2 Dead\n3-4 Hurt\n5-6 Full recovery\n\n"
    "3",
]


def _roll_pages(count: int) -> list[str]:
    """One three-row roll table per page, with page-specific rows."""
    return [
        f"TABLE {n}\n\n1: Gold {n}\n2: Silver {n}\n3: Copper {n}"
        for n in range(1, count + 1)
    ]


@pytest.fixture
def store(tmp_path):
    from rules_index.ingestion.store import RulesStore

    s = RulesStore(tmp_path / "rules.db")
    s.create_schema()
    return s


@pytest.fixture
def source(store):
    from rules_index.ingestion.schemas import SourceType
    from rules_index.services.source_registry import create_source

    src = create_source(store, "campaign-1", SourceType.EXTERNAL_JSON, "Skirmish Rules", ["core"])
    store.set_input(src.id, RULEBOOK_PAGES)
    return src


# ═══════════════════════════════════════════════════════════════════════════
# Registry tests
# ═══════════════════════════════════════════════════════════════════════════

class TestRegistry:
    def test_create_and_get(self, store):
        from rules_index.ingestion.schemas import IndexStatus, SourceType
        from rules_index.services.source_registry import create_source, get_source

        created = create_source(store, "c1", SourceType.PASTED_TEXT, "  House Rules ", ["a", "b", "a", " "])
        fetched = get_source(store, created.id)
        assert fetched.title == "House Rules"
        assert fetched.tags == ["a", "b"]
        assert fetched.index_status == IndexStatus.NOT_INDEXED

    def test_list_by_campaign(self, store):
        from rules_index.ingestion.schemas import SourceType
        from rules_index.services.source_registry import create_source, list_sources

        create_source(store, "c1", SourceType.PASTED_TEXT, "One")
        create_source(store, "c1", SourceType.PASTED_TEXT, "Two")
        create_source(store, "c2", SourceType.PASTED_TEXT, "Other")
        assert [s.title for s in list_sources(store, "c1")] == ["One", "Two"]
        assert len(list_sources(store)) == 3

    def test_update_source(self, store, source):
        from rules_index.services.source_registry import update_source

        updated = update_source(store, source.id, tags=["core", "errata", "core"])
        assert updated.title == "Skirmish Rules"
        assert updated.tags == ["core", "errata"]

        renamed = update_source(store, source.id, title="Skirmish Rules v2")
        assert renamed.title == "Skirmish Rules v2"
        assert renamed.tags == ["core", "errata"]

    def test_pasted_source_pseudo_pages(self, store):
        from rules_index.services.source_registry import create_pasted_source

        text = "\n\n".join(["x" * 5000, "y" * 5000])
        src = create_pasted_source(store, "c1", "Pasted", text)
        assert store.get_input(src.id) == ["x" * 5000, "y" * 5000]

    def test_json_pages_sorted(self):
        from rules_index.services.source_registry import pages_from_json

        payload = {"pages": [{"pageNumber": 2, "text": "second"}, {"pageNumber": 1, "text": "first"}]}
        assert pages_from_json(payload) == ["first", "second"]
        assert pages_from_json({"text": "short text"}) == ["short text"]

    def test_json_payload_rejected(self):
        from rules_index.ingestion.errors import RulesIndexError
        from rules_index.services.source_registry import pages_from_json

        with pytest.raises(RulesIndexError):
            pages_from_json({"pages": [{"pageNumber": 1}]})
        with pytest.raises(RulesIndexError):
            pages_from_json({"chapters": []})

    def test_json_page_numbers_validated(self):
        from rules_index.ingestion.errors import RulesIndexError
        from rules_index.services.source_registry import pages_from_json

        with pytest.raises(RulesIndexError, match="invalid pageNumber"):
            pages_from_json({"pages": [{"pageNumber": "one", "text": "abc"}]})
        with pytest.raises(RulesIndexError, match="invalid pageNumber"):
            pages_from_json({"pages": [{"pageNumber": None, "text": "abc"}]})
        with pytest.raises(RulesIndexError, match="repeats pageNumber 1"):
            pages_from_json({"pages": [{"pageNumber": 1, "text": "a"}, {"pageNumber": "1", "text": "b"}]})
        assert pages_from_json({"pages": [{"pageNumber": "2", "text": "b"}, {"pageNumber": 1, "text": "a"}]}) == ["a", "b"]

    def test_set_input_returns_source(self, store, source):
        from rules_index.services.source_registry import set_input

        updated = set_input(store, source.id, ["new page"])
        assert updated.id == source.id
        assert store.get_input(source.id) == ["new page"]

    def test_unknown_source(self, store):
        from rules_index.ingestion.errors import SourceNotFoundError

        with pytest.raises(SourceNotFoundError):
            store.get_source("missing")
        with pytest.raises(SourceNotFoundError):
            store.set_input("missing", ["text"])
        with pytest.raises(SourceNotFoundError):
            store.delete_source("missing")


# ═══════════════════════════════════════════════════════════════════════════
# State machine tests
# ═══════════════════════════════════════════════════════════════════════════

class TestStateMachine:
    def test_allowed_transitions(self):
        from rules_index.ingestion.errors import InvalidTransitionError
        from rules_index.ingestion.schemas import IndexStatus as S
        from rules_index.ingestion.store import check_transition

        check_transition(S.NOT_INDEXED, S.INDEXING)
        check_transition(S.INDEXING, S.INDEXED)
        check_transition(S.INDEXING, S.FAILED)
        check_transition(S.INDEXED, S.INDEXING)
        check_transition(S.FAILED, S.INDEXING)

        for current, target in [
            (S.NOT_INDEXED, S.INDEXED),
            (S.INDEXED, S.FAILED),
            (S.FAILED, S.INDEXED),
            (S.INDEXING, S.NOT_INDEXED),
        ]:
            with pytest.raises(InvalidTransitionError):
                check_transition(current, target)

    def test_mark_indexed_requires_lease(self, store, source):
        from rules_index.ingestion.errors import InvalidTransitionError
        from rules_index.ingestion.schemas import IndexStats

        with pytest.raises(InvalidTransitionError):
            store.mark_indexed(source.id, IndexStats())

    def test_second_run_rejected(self, store, source):
        from rules_index.ingestion.errors import IndexingInProgressError
        from rules_index.ingestion.pipeline import index_source
        from rules_index.ingestion.schemas import IndexStatus

        leased = store.begin_indexing(source.id)
        assert leased.index_status == IndexStatus.INDEXING
        assert leased.index_started_at is not None

        with pytest.raises(IndexingInProgressError):
            index_source(source.id, store=store)
        with pytest.raises(IndexingInProgressError):
            store.begin_indexing(source.id)

    def test_expired_lease_is_retaken(self, store, source):
        from rules_index.ingestion.pipeline import index_source

        store.begin_indexing(source.id)
        with store._connect() as conn:
            conn.execute(
                "UPDATE rules_sources SET index_started_at = ? WHERE id = ?",
                ("2000-01-01T00:00:00+00:00", source.id),
            )

        result = index_source(source.id, store=store)
        assert result.success

    def test_begin_indexing_unknown_source(self, store):
        from rules_index.ingestion.errors import SourceNotFoundError

        with pytest.raises(SourceNotFoundError):
            store.begin_indexing("missing")


# ═══════════════════════════════════════════════════════════════════════════
# End-to-end pipeline tests
# ═══════════════════════════════════════════════════════════════════════════

class TestPipeline:
    def test_index_rulebook(self, store, source):
        from rules_index.ingestion.pipeline import index_source
        from rules_index.ingestion.schemas import IndexStatus

        result = index_source(source.id, store=store)
        assert result.success, result.error
        stats = result.stats
        assert stats.pages == 3
        assert stats.sections == 2
        assert stats.chunks >= 1
        assert (stats.tables_high, stats.tables_medium, stats.tables_low) == (2, 1, 0)
        assert stats.datasets == 3
        assert stats.dataset_rows == 12
        assert not stats.scanned_suspect
        assert "saving" in stats.time_ms_by_stage

        stored = store.get_source(source.id)
        assert stored.index_status == IndexStatus.INDEXED
        assert stored.index_stats == stats
        assert stored.index_error is None
        assert stored.last_indexed_at is not None
        assert stored.index_started_at is None

        counts = store.entity_counts(source.id)
        assert counts == {
            "pages": 3,
            "sections": 2,
            "chunks": stats.chunks,
            "tables": 3,
            "datasets": 3,
            "dataset_rows": 12,
        }

    def test_cleaned_pages_stored(self, store, source):
        from rules_index.ingestion.pipeline import index_source

        index_source(source.id, store=store)
        pages = store.list_pages(source.id)
        assert [p.page_number for p in pages] == [1, 2, 3]
        assert all("Skirmish Rules" not in p.text for p in pages)
        assert pages[1].text == "Equipment\nSword 10gc\nShield 5gc\nHelm 8gc"
        assert pages[1].char_count == len(pages[1].text)

    def test_datasets_and_rows(self, store, source):
        from rules_index.ingestion.pipeline import index_source

        index_source(source.id, store=store)
        datasets = {d.name: d for d in store.list_datasets(source.id)}
        assert set(datasets) == {"Equipment", "Skills", "Injuries"}

        rows = store.list_dataset_rows(datasets["Equipment"].id)
        assert [r.data["Name"] for r in rows] == ["Sword", "Shield", "Helm"]
        assert rows[0].page_number == 2
        assert rows[0].source_path == "COMBAT SKILLS"

    def test_reindex_is_idempotent(self, store, source):
        from rules_index.ingestion.pipeline import index_source

        first = index_source(source.id, store=store)
        counts_first = store.entity_counts(source.id)
        second = index_source(source.id, store=store)
        counts_second = store.entity_counts(source.id)

        assert counts_first == counts_second
        assert first.stats.model_dump(exclude={"time_ms_by_stage"}) == second.stats.model_dump(
            exclude={"time_ms_by_stage"}
        )

        chunks = store.list_chunks(source.id)
        assert [c.order_index for c in chunks] == list(range(len(chunks)))
        assert len({c.id for c in chunks}) == len(chunks)

    def test_reindex_replaces_tables(self, store):
        from rules_index.ingestion.pipeline import index_source
        from rules_index.ingestion.schemas import SourceType
        from rules_index.services.source_registry import create_source

        src = create_source(store, "c1", SourceType.EXTERNAL_JSON, "Loot")
        store.set_input(src.id, _roll_pages(3))
        assert index_source(src.id, store=store).success
        old_ids = {t.id for t in store.list_tables(src.id)}
        assert len(old_ids) == 3

        result = index_source(src.id, store=store, raw_pages=_roll_pages(5))
        assert result.success
        tables = store.list_tables(src.id)
        assert len(tables) == 5
        assert not old_ids & {t.id for t in tables}
        assert store.get_input(src.id) == _roll_pages(5)

    def test_empty_input_fails(self, store):
        from rules_index.ingestion.pipeline import EMPTY_INPUT_MESSAGE, index_source
        from rules_index.ingestion.schemas import IndexStatus, SourceType
        from rules_index.services.source_registry import create_source

        src = create_source(store, "c1", SourceType.PASTED_TEXT, "Nothing yet")
        result = index_source(src.id, store=store)

        assert not result.success
        assert result.error.stage == "empty"
        assert result.error.message == EMPTY_INPUT_MESSAGE == "No pages found to index"

        stored = store.get_source(src.id)
        assert stored.index_status == IndexStatus.FAILED
        assert stored.index_error.stage == "empty"
        assert stored.index_started_at is None

    def test_stage_failure_is_recorded(self, store, source, monkeypatch):
        import rules_index.ingestion.pipeline as pipeline
        from rules_index.ingestion.schemas import IndexStatus

        def boom(*args, **kwargs):
            raise RuntimeError("detector exploded")

        monkeypatch.setattr(pipeline, "detect_tables", boom)
        result = pipeline.index_source(source.id, store=store)

        assert not result.success
        assert result.error.stage == "detecting_tables"
        assert result.error.message == "detector exploded"
        assert store.get_source(source.id).index_status == IndexStatus.FAILED

    def test_failed_save_keeps_previous_generation(self, store, source, monkeypatch):
        import rules_index.ingestion.pipeline as pipeline
        from rules_index.ingestion.schemas import Chunk, IndexBundle, IndexStatus, Page

        assert pipeline.index_source(source.id, store=store).success
        before = store.entity_counts(source.id)

        def broken_build(source_id, raw_pages):
            page = Page(source_id=source_id, page_number=1, text="x", char_count=1)
            chunk = Chunk(source_id=source_id, text="x", page_start=1, page_end=1, order_index=0)
            duplicate = chunk.model_copy()
            return IndexBundle(source_id=source_id, pages=[page], chunks=[chunk, duplicate]), {}

        monkeypatch.setattr(pipeline, "build_index", broken_build)
        result = pipeline.index_source(source.id, store=store)

        assert not result.success
        assert result.error.stage == "saving"
        assert store.entity_counts(source.id) == before
        assert store.get_source(source.id).index_status == IndexStatus.FAILED

    def test_success_after_failure_clears_error(self, store):
        from rules_index.ingestion.pipeline import index_source
        from rules_index.ingestion.schemas import SourceType
        from rules_index.services.source_registry import create_source

        src = create_source(store, "c1", SourceType.EXTERNAL_JSON, "Later")
        assert not index_source(src.id, store=store).success
        assert index_source(src.id, store=store, raw_pages=_roll_pages(1)).success

        stored = store.get_source(src.id)
        assert stored.index_error is None
        assert stored.index_stats.pages == 1

    def test_unknown_source_raises(self, store):
        from rules_index.ingestion.errors import SourceNotFoundError
        from rules_index.ingestion.pipeline import index_source

        with pytest.raises(SourceNotFoundError):
            index_source("missing", store=store)

    def test_delete_cascades(self, store, source):
        from rules_index.ingestion.errors import SourceNotFoundError
        from rules_index.ingestion.pipeline import index_source
        from rules_index.services.source_registry import delete_source

        index_source(source.id, store=store)
        dataset_ids = [d.id for d in store.list_datasets(source.id)]
        delete_source(store, source.id)

        assert all(count == 0 for count in store.entity_counts(source.id).values())
        assert all(store.list_dataset_rows(d) == [] for d in dataset_ids)
        with store._connect() as conn:
            inputs = conn.execute("SELECT COUNT(*) FROM rules_source_inputs").fetchone()[0]
        assert inputs == 0
        with pytest.raises(SourceNotFoundError):
            store.get_source(source.id)

    def test_build_index_without_store(self):
        from rules_index.ingestion.pipeline import build_index

        bundle, timings = build_index("src", RULEBOOK_PAGES)
        assert len(bundle.pages) == 3
        assert len(bundle.tables) == 3
        assert {"cleaning", "sections", "chunking", "detecting_tables", "detecting_datasets"} <= set(timings)

    def test_tables_belong_to_heading_above_them(self):
        from rules_index.ingestion.pipeline import build_index

        pages = [
            "INJURY TABLE\n\n1: Dead\n2: Hurt\n3: Fine\n\n"
            "SHOOTING\n\nModels with missile weapons may shoot at any visible enemy in range.",
            "1: Hit\n2: Miss\n3: Jam\n\n"
            "MORALE\n\nWarbands that lose a quarter of their models must take a rout test.",
        ]
        bundle, _ = build_index("src", pages)
        titles = {s.id: s.title for s in bundle.sections}

        assert [(t.page_number, titles[t.section_id]) for t in bundle.tables] == [
            (1, "INJURY TABLE"),
            (2, "SHOOTING"),
        ]
        (injuries,) = [d for d in bundle.datasets if d.name == "Injuries"]
        rows = [r for r in bundle.dataset_rows if r.dataset_id == injuries.id]
        assert {r.source_path for r in rows} == {"INJURY TABLE"}

    def test_source_deleted_mid_run_still_returns_failure(self, store, source, monkeypatch):
        import rules_index.ingestion.pipeline as pipeline

        real_build = pipeline.build_index

        def build_then_delete(source_id, raw_pages):
            built = real_build(source_id, raw_pages)
            store.delete_source(source_id)
            return built

        monkeypatch.setattr(pipeline, "build_index", build_then_delete)
        result = pipeline.index_source(source.id, store=store)

        assert not result.success
        assert result.error.stage == "saving"


# ═══════════════════════════════════════════════════════════════════════════
# Store tests
# ═══════════════════════════════════════════════════════════════════════════

class TestStore:
    def test_chunks_inserted_in_batches(self, store, source, monkeypatch):
        from rules_index.ingestion.config import ingest_settings
        from rules_index.ingestion.schemas import Chunk, IndexBundle

        monkeypatch.setattr(ingest_settings, "chunk_insert_batch_size", 2)
        chunks = [
            Chunk(source_id=source.id, text=f"chunk {i}", page_start=1, page_end=1, order_index=i)
            for i in range(5)
        ]
        store.replace_index(source.id, IndexBundle(source_id=source.id, chunks=chunks))

        stored = store.list_chunks(source.id)
        assert [c.order_index for c in stored] == [0, 1, 2, 3, 4]
        assert [c.text for c in stored] == [f"chunk {i}" for i in range(5)]

    def test_many_chunks_across_default_batches(self, store, source):
        from rules_index.ingestion.schemas import Chunk, IndexBundle

        chunks = [
            Chunk(source_id=source.id, text=f"chunk {i}", page_start=1, page_end=1, order_index=i)
            for i in range(250)
        ]
        store.replace_index(source.id, IndexBundle(source_id=source.id, chunks=chunks))
        assert store.entity_counts(source.id)["chunks"] == 250
        assert [c.order_index for c in store.list_chunks(source.id)] == list(range(250))
