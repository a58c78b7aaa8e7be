# =============================================================================
# tests/unit/test_local_cache.py
# Unit Tests for the file-backed LocalCache
# =============================================================================

import threading

import pytest

from casefile_core.errors import PersistenceError
from casefile_core.models.beneficiary_form import CityRef, CountyRef
from casefile_core.models.forms import FormDefinition, FormSummary
from casefile_core.offline.local_cache import LocalCache, form_key
from conftest import make_question, make_section


class TestGetSet:
    """Test the generic key-value operations"""

    def test_missing_key_returns_none(self, local_cache):
        assert local_cache.get("nothing") is None
        assert not local_cache.has("nothing")

    def test_set_then_get(self, local_cache):
        local_cache.set("settings", {"language": "ro"})

        assert local_cache.get("settings") == {"language": "ro"}
        assert "settings" in local_cache.keys()

    def test_values_survive_reopen(self, tmp_path):
        """A new LocalCache over the same directory sees earlier writes"""
        LocalCache(tmp_path / "cache").set("counties", [{"id": 1, "name": "Alba"}])

        reopened = LocalCache(tmp_path / "cache")

        assert reopened.get("counties") == [{"id": 1, "name": "Alba"}]

    def test_corrupted_entry_is_discarded(self, local_cache):
        """An entry whose file no longer matches its hash reads as missing"""
        local_cache.set("settings", {"language": "ro"})
        path = local_cache._path_for("settings")
        path.write_text('{"language": "tampered"}')

        assert local_cache.get("settings") is None
        assert not local_cache.has("settings")

    def test_delete(self, local_cache):
        local_cache.set("settings", {})
        local_cache.delete("settings")

        assert local_cache.get("settings") is None


class TestConcurrentAccess:
    """Test readers and writers of the same key from several threads"""

    def test_reads_during_rewrites_never_miss(self, local_cache):
        """A read racing a rewrite sees the old or the new value, never a discarded entry"""
        local_cache.set("counties", [{"id": 0}])
        stop = threading.Event()
        reads = []
        errors = []

        def write():
            try:
                for i in range(1, 100):
                    local_cache.set("counties", [{"id": i}])
            except Exception as e:
                errors.append(e)
            finally:
                stop.set()

        def read():
            try:
                while True:
                    reads.append(local_cache.get("counties"))
                    if stop.is_set():
                        break
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write)] + [threading.Thread(target=read) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        assert reads
        assert None not in reads
        assert local_cache.has("counties")
        assert local_cache.get("counties") == [{"id": 99}]


class TestFormCatalog:
    """Test typed helpers for summaries and definitions"""

    def test_summaries_stored_sorted_by_id(self, local_cache):
        local_cache.set_form_summaries([FormSummary(12, 1), FormSummary(3, 2)])

        assert [s.id for s in local_cache.get_form_summaries()] == [3, 12]
        assert local_cache.get_form_summary(3).version == 2
        assert local_cache.get_form_summary(99) is None

    def test_install_form_replaces_summary_and_definition(self, local_cache):
        section = make_section(1, make_question(101))
        local_cache.set_form_summaries([FormSummary(10, 1), FormSummary(11, 1)])

        local_cache.install_form(FormSummary(10, 2), FormDefinition(10, 2, (section,)))

        assert local_cache.get_form_summary(10).version == 2
        assert local_cache.get_form_summary(11).version == 1
        definition = local_cache.load_form(10)
        assert definition.key == (10, 2)
        assert definition.questions[0].id == 101
        assert local_cache.has(form_key(10))

    def test_failed_summary_write_restores_definition(self, local_cache, monkeypatch):
        """Summary and definition stay on the same version when the summary write fails"""
        local_cache.install_form(FormSummary(10, 1), FormDefinition(10, 1, (make_section(1, make_question(101)),)))

        def broken_summaries(summaries):
            raise PersistenceError("disk full", entity="cache", operation="write")

        monkeypatch.setattr(local_cache, "set_form_summaries", broken_summaries)

        with pytest.raises(PersistenceError):
            local_cache.install_form(
                FormSummary(10, 2), FormDefinition(10, 2, (make_section(1, make_question(201)),))
            )

        assert local_cache.get_form_summary(10).version == 1
        definition = local_cache.load_form(10)
        assert definition.version == 1
        assert definition.questions[0].id == 101

    def test_failed_first_install_leaves_nothing(self, local_cache, monkeypatch):
        def broken_summaries(summaries):
            raise PersistenceError("disk full", entity="cache", operation="write")

        monkeypatch.setattr(local_cache, "set_form_summaries", broken_summaries)

        with pytest.raises(PersistenceError):
            local_cache.install_form(FormSummary(10, 1), FormDefinition(10, 1, (make_section(1, make_question(101)),)))

        assert local_cache.get_form_summary(10) is None
        assert local_cache.load_form(10) is None
        assert not local_cache.has(form_key(10))

    def test_definition_round_trips_question_metadata(self, local_cache):
        question = make_question(103, options=["Yes", ""], free_text_last=True, mandatory=True)
        local_cache.save_form(FormDefinition(7, 1, (make_section(2, question),)))

        loaded = local_cache.load_form(7).find_question(103)

        assert loaded is not None
        section, meta = loaded
        assert section.id == 2
        assert meta == question


class TestReferenceLists:
    """Test counties and cities"""

    def test_counties_and_cities(self, local_cache):
        assert local_cache.get_counties() is None

        local_cache.set_counties([CountyRef(1, "Alba", "AB")])
        local_cache.set_cities([CityRef(10, "Blaj")], county_id=1)

        assert local_cache.get_counties() == [CountyRef(1, "Alba", "AB")]
        assert local_cache.get_cities(1) == [CityRef(10, "Blaj")]
        assert local_cache.get_cities(2) is None
