"""Multi-language header vocabulary for procurement line-item tables.

Each :class:`~utils.procurement_schema.ColumnType` owns a list of header
phrases per language plus an importance weight.  Structural columns (line
number, quantity, description) weigh the most because they are what makes a
row look like the header of an items table; metadata columns weigh the least
and ``unknown`` never contributes to a score.

The tables are indexed by the enum so a new column type cannot be added
without also deciding its vocabulary and weight (``_check_exhaustive`` runs at
import time).
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from utils.procurement_schema import ColumnType

COLUMN_VOCABULARY: Dict[ColumnType, Dict[str, Tuple[str, ...]]] = {
    ColumnType.LINE_NO: {
        "en": (
            "line", "line no", "line number", "ln", "l/n", "item", "item no",
            "item#", "item #", "sr", "seq", "sequence", "row", "position",
            "pos", "no", "no.",
        ),
        "fr": ("ligne", "n°", "n° ligne", "numéro", "numero", "num"),
    },
    ColumnType.QTY: {
        "en": (
            "qty", "quantity", "quan", "req qty", "requested qty",
            "required qty", "demand qty", "order qty", "ordered", "qnty",
            "sum of qty", "total qty",
        ),
        "fr": (
            "qté", "qte", "quantité", "quantite", "besoin", "nb", "nombre",
            "demandées", "demandees", "commander", "à commander",
        ),
    },
    ColumnType.UOM: {
        "en": (
            "uom", "u/m", "u. m.", "um", "unit", "unit of measure", "unity",
            "pack", "packaging", "ea", "pcs", "pc", "each",
        ),
        "fr": (
            "unité", "unite", "unité de mesure", "cond", "conditioning",
            "colisage",
        ),
    },
    ColumnType.ITEM_CODE: {
        "en": (
            "item code", "material", "material code", "mat code",
            "product code", "stock code", "inventory code", "sap code",
            "internal code",
        ),
        "fr": (
            "code article", "code", "article code", "code sap", "code interne",
            "article", "art", "ref interne", "référence interne",
        ),
    },
    ColumnType.PART_NUMBER: {
        "en": (
            "part number", "part no", "part no.", "p/n", "pn", "mpn", "part #",
            "part#", "manufacturer part", "oem part", "oem p/n", "ref part",
            "catalog no", "cat no", "cat#", "catalogue", "reference part",
            "mfr part no", "supplier code",
        ),
        "fr": (
            "référence", "reference", "réf", "ref", "ref fournisseur",
            "code fournisseur", "n° pièce", "numéro de pièce",
        ),
    },
    ColumnType.BRAND: {
        "en": (
            "brand", "manufacturer", "mfr", "mfg", "make", "oem",
            "original equipment manufacturer", "vendor brand", "origin",
            "vendor",
        ),
        "fr": (
            "marque", "fabricant", "constructeur", "fournisseur", "marque oem",
            "provenance marque",
        ),
    },
    ColumnType.MODEL: {
        "en": (
            "model", "type", "series", "range", "machine", "equipment",
            "application", "for",
        ),
        "fr": ("modèle", "modele", "série", "serie", "gamme", "equipement", "pour"),
    },
    ColumnType.DESCRIPTION: {
        "en": (
            "description", "item description", "desc", "product", "service",
            "work", "scope", "nomenclature", "material", "item", "article",
        ),
        "fr": ("désignation", "designation", "libellé", "libelle", "produit", "objet"),
    },
    ColumnType.SPECIFICATION: {
        "en": (
            "spec", "specification", "specifications", "technical", "tech",
            "tech details", "dimension", "dimensions", "rating", "class",
            "pressure", "pn", "dn", "size",
        ),
        "fr": (
            "spécification", "spécifications", "caractéristiques", "technique",
            "taille",
        ),
    },
    ColumnType.REMARK: {
        "en": (
            "remark", "remarks", "comment", "comments", "note", "notes",
            "observations", "instruction", "instructions",
        ),
        "fr": (
            "remarque", "commentaire", "observation", "obs", "info",
            "information", "précisions", "precisions",
        ),
    },
    ColumnType.SERIAL: {
        "en": (
            "serial", "serial no", "serial number", "s/n", "sn", "serial#",
            "chassis", "vin",
        ),
        "fr": ("n° série", "numéro de série", "numero de serie"),
    },
    ColumnType.ASSET: {
        "en": (
            "asset", "asset no", "asset number", "tag", "tag no", "tag number",
            "equipment tag", "tag#", "id", "fleet", "fleet no",
        ),
        "fr": (
            "immobilisation", "immo", "equipment no", "equipment number",
            "n° équipement", "code équipement", "code equipement",
        ),
    },
    ColumnType.DRAWING: {
        "en": (
            "drawing", "dwg", "drawing no", "sketch", "diagram", "datasheet",
            "data sheet", "manual", "catalog",
        ),
        "fr": ("plan", "n° plan", "schéma", "fiche technique"),
    },
    ColumnType.UNIT_PRICE: {
        "en": ("unit price", "u/price", "price", "unit cost", "rate"),
        "fr": ("prix unitaire", "prix unit", "p.u.", "pu", "coût unitaire", "prix"),
    },
    ColumnType.TOTAL_PRICE: {
        "en": (
            "total price", "total", "amount", "extended price", "line total",
            "extended",
        ),
        "fr": ("prix total", "montant", "total ligne"),
    },
    ColumnType.CURRENCY: {
        "en": ("currency", "cur", "ccy", "money", "usd", "eur", "xof", "cfa", "fcfa"),
        "fr": ("devise",),
    },
    ColumnType.DELIVERY_DATE: {
        "en": (
            "required by", "need by", "delivery date", "requested date",
            "lead time", "eta", "required date",
        ),
        "fr": (
            "date livraison", "date de livraison", "délai", "delai",
            "date souhaitée", "date requise",
        ),
    },
    ColumnType.DELIVERY_LOC: {
        "en": (
            "delivery loc", "delivery location", "ship to", "site", "plant",
            "warehouse",
        ),
        "fr": (
            "livraison", "lieu livraison", "lieu de livraison", "destination",
            "magasin", "livrer à",
        ),
    },
    ColumnType.UNKNOWN: {},
}

COLUMN_WEIGHTS: Dict[ColumnType, int] = {
    ColumnType.LINE_NO: 3,
    ColumnType.QTY: 3,
    ColumnType.UOM: 2,
    ColumnType.DESCRIPTION: 3,
    ColumnType.ITEM_CODE: 2,
    ColumnType.PART_NUMBER: 2,
    ColumnType.BRAND: 2,
    ColumnType.MODEL: 1,
    ColumnType.SPECIFICATION: 1,
    ColumnType.REMARK: 1,
    ColumnType.SERIAL: 1,
    ColumnType.ASSET: 1,
    ColumnType.DRAWING: 1,
    ColumnType.UNIT_PRICE: 1,
    ColumnType.TOTAL_PRICE: 1,
    ColumnType.CURRENCY: 1,
    ColumnType.DELIVERY_DATE: 1,
    ColumnType.DELIVERY_LOC: 1,
    ColumnType.UNKNOWN: 0,
}


def _check_exhaustive() -> None:
    missing_vocab = [ct.value for ct in ColumnType if ct not in COLUMN_VOCABULARY]
    missing_weight = [ct.value for ct in ColumnType if ct not in COLUMN_WEIGHTS]
    if missing_vocab or missing_weight:
        raise RuntimeError(
            "column tables out of sync: vocabulary=%s weights=%s"
            % (missing_vocab, missing_weight)
        )


_check_exhaustive()


def keywords_for(
    column_type: ColumnType, languages: Optional[Iterable[str]] = None
) -> List[str]:
    """Return the header phrases for ``column_type`` in ``languages`` (all by default)."""

    per_language = COLUMN_VOCABULARY.get(column_type, {})
    selected = per_language.keys() if languages is None else languages
    keywords: List[str] = []
    for language in selected:
        for keyword in per_language.get(language, ()):
            if keyword not in keywords:
                keywords.append(keyword)
    return keywords


def weight_of(column_type: ColumnType) -> int:
    return COLUMN_WEIGHTS.get(column_type, 0)


def build_vocabulary(
    languages: Optional[Sequence[str]] = None,
    extra: Optional[Mapping[ColumnType, Sequence[str]]] = None,
) -> Dict[ColumnType, Tuple[str, ...]]:
    """Flatten the per-language tables into ``type -> keywords``.

    ``extra`` lets callers extend the vocabulary (e.g. a customer specific
    header wording) without editing the module tables.  ``unknown`` is never
    part of the result.
    """

    vocabulary: Dict[ColumnType, Tuple[str, ...]] = {}
    for column_type in ColumnType:
        if column_type is ColumnType.UNKNOWN:
            continue
        keywords = keywords_for(column_type, languages)
        for keyword in (extra or {}).get(column_type, ()):
            if keyword not in keywords:
                keywords.append(keyword)
        if keywords:
            vocabulary[column_type] = tuple(keywords)
    return vocabulary


__all__ = [
    "COLUMN_VOCABULARY",
    "COLUMN_WEIGHTS",
    "build_vocabulary",
    "keywords_for",
    "weight_of",
]
