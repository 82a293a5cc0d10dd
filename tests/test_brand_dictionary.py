import json
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from services.brand_dictionary import FALLBACK_BRANDS, BrandDictionary, brand_similarity  # noqa: E402


def _write_brands(path, *brands):
    path.write_text(
        json.dumps({"categories": [{"name": "Test", "brands": list(brands)}]}),
        encoding="utf-8",
    )


def test_longest_brand_wins(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "MANN", "MANN+HUMMEL", "SKF")
    brands = BrandDictionary(path)

    assert brands.find_brand("Filtre MANN+HUMMEL W 712/75") == "MANN+HUMMEL"
    assert brands.find_brand("Oil filter mann W 712/75") == "MANN"


def test_brand_matches_on_word_boundaries(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "CAT", "SKF")
    brands = BrandDictionary(path)

    assert brands.find_brand("Category of bearings") is None
    assert brands.find_brand("Bucket tooth for cat 950") == "CATERPILLAR"


def test_multi_word_brands_tolerate_spacing(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "JOHN DEERE")
    brands = BrandDictionary(path)

    assert brands.find_brand("Seal kit John  Deere 310") == "JOHN DEERE"


def test_missing_file_uses_fallback_list(tmp_path):
    brands = BrandDictionary(tmp_path / "missing.json")

    snapshot = brands.snapshot()

    assert snapshot.source == "fallback"
    assert set(snapshot.brands) == set(FALLBACK_BRANDS)
    assert brands.find_brand("Roulement Timken 30208") == "TIMKEN"
    assert brands.reload_if_changed() is False


def test_reload_if_changed_publishes_new_snapshot(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "SKF")
    brands = BrandDictionary(path)
    first = brands.snapshot()
    assert brands.find_brand("Parker hose") is None

    _write_brands(path, "SKF", "PARKER")
    os.utime(path, (first.mtime + 10, first.mtime + 10))

    assert brands.reload_if_changed() is True
    assert brands.find_brand("Parker hose") == "PARKER"
    assert brands.reload_if_changed() is False
    # Readers holding the old snapshot keep a consistent view.
    assert "PARKER" not in first


def test_unknown_brand_candidates_skip_generic_words(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "SKF")
    brands = BrandDictionary(path)

    candidates = brands.unknown_brand_candidates("HYDRAULIC PUMP REXNORD for SKF housing")

    assert candidates == ["REXNORD"]


def test_longest_brand_wins_wherever_it_appears(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "SKF", "CATERPILLAR")
    brands = BrandDictionary(path)

    assert brands.find_brand("SKF bearing for CATERPILLAR 320D") == "CATERPILLAR"


def test_misspelled_brand_found_by_similarity(tmp_path):
    path = tmp_path / "brands.json"
    _write_brands(path, "CAT", "CATERPILLAR", "SKF")
    brands = BrandDictionary(path)

    assert brands.find_brand("Filtre CATERPILAR 1R-0750") == "CATERPILLAR"
    assert brands.find_brand("Filtre CATERPILAR 1R-0750", fuzzy=False) is None
    # Short brands only match exactly.
    assert brands.find_brand("Roulement SFK 6205") is None


def test_brand_similarity_scores():
    assert brand_similarity("VOLVO", "VOLVO") == 1.0
    assert brand_similarity("", "VOLVO") == 0.0
    assert brand_similarity("CATERPILAR", "CATERPILLAR") == 1.0
    assert brand_similarity("FILTRE", "FIRETROL") == pytest.approx(0.85)
    assert brand_similarity("GASKET", "CATERPILLAR") < 0.5


@pytest.mark.parametrize(
    "filename,expected",
    [
        ("SKF_bearings.xlsx", "SKF"),
        ("devis-caterpillar320D.pdf", "CATERPILLAR"),
        ("cat-parts.docx", "CATERPILLAR"),
        ("catalogue.pdf", None),
        ("quote.pdf", None),
    ],
)
def test_brand_from_filename(tmp_path, filename, expected):
    path = tmp_path / "brands.json"
    _write_brands(path, "CAT", "CATERPILLAR", "SKF")

    assert BrandDictionary(path).find_brand_in_filename(filename) == expected
