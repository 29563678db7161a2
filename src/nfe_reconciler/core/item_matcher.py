"""Matching logic between NF-e line items and the tenant's product variants."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from ..config import MatchingSettings
from .errors import ProductMatchingError, ReconciliationError
from .models import (
    CatalogSuggestion,
    InvoiceLineItem,
    MatchingStats,
    ProductMatch,
    ProductMatchResult,
    ProductVariant,
)
from .similarity import normalize_code, normalize_unit, text_similarity
from .stores import CatalogStore, MappingPreferenceStore
from .utils import strip_accents


LOGGER = logging.getLogger(__name__)

MANUAL_MAPPING_REASON = "Mapeamento manual salvo"
DEFAULT_CATEGORY = "Outros Produtos Químicos"

# Checked in order against the accent-free, lowercased description
CATEGORY_KEYWORDS = (
    ("Ácidos", ("acido", "acid")),
    ("Bases", ("base", "soda", "hidroxido")),
    ("Sais", ("sal", "cloreto", "sulfato")),
    ("Solventes", ("solvente", "alcool", "acetona")),
    ("Óxidos", ("oxido", "peroxido")),
    ("Gases", ("gas",)),
)

_QUANTITY_RE = re.compile(r"\b\d+(?:[.,]\d+)?\s*(?:kg|l|ml|g|ton|t)\b", re.IGNORECASE)
_PERCENT_RE = re.compile(r"\b\d+(?:[.,]\d+)?\s*%")
_WHITESPACE_RE = re.compile(r"\s+")


class ProductItemMatcher:
    """Score NF-e line items against every active variant of a tenant.

    The score of a candidate is ``achieved / max_score`` where the points
    come from :class:`~nfe_reconciler.config.ScoringWeights`.  The internal
    code match is partial credit for the code slot, so ``max_score`` is the
    same for every candidate.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        preferences: Optional[MappingPreferenceStore] = None,
        settings: Optional[MatchingSettings] = None,
    ) -> None:
        self.catalog = catalog
        self.preferences = preferences
        self.settings = settings or MatchingSettings()

    def find_matches(self, item: InvoiceLineItem, tenant_id: int, use_preferences: bool = True) -> ProductMatchResult:
        try:
            if use_preferences and self.preferences is not None:
                mapped = self._match_from_preference(item, tenant_id)
                if mapped is not None:
                    return mapped

            variants = self.catalog.list_active_variants(tenant_id)
            matches = self.calculate_matches(item, variants)
            matches.sort(key=lambda match: match.similarity, reverse=True)
            suggestions = self.generate_suggestions(item, matches)
        except ReconciliationError:
            raise
        except Exception as exc:
            LOGGER.error("Matching failed for item %s: %s", item.code, exc)
            raise ProductMatchingError(exc) from exc

        best = matches[0] if matches else None
        has_exact = best is not None and best.similarity >= self.settings.exact_threshold
        LOGGER.debug(
            "Item %s: %s candidates, best %s (%.3f)",
            item.code,
            len(matches),
            best.variant_id if best else None,
            best.similarity if best else 0.0,
        )
        return ProductMatchResult(
            item=item,
            matches=matches[: self.settings.max_candidates],
            has_exact_match=has_exact,
            best_match=best,
            suggestions=suggestions,
        )

    def bulk_match(self, items: Iterable[InvoiceLineItem], tenant_id: int, use_preferences: bool = True) -> List[ProductMatchResult]:
        """Match every item independently; a failing item becomes a catalogue creation suggestion."""

        results: List[ProductMatchResult] = []
        for item in items:
            try:
                results.append(self.find_matches(item, tenant_id, use_preferences=use_preferences))
            except ReconciliationError as exc:
                LOGGER.warning("Matching failed for item %s (%s): %s", item.code, item.description, exc)
                results.append(
                    ProductMatchResult(
                        item=item,
                        suggestions=CatalogSuggestion(create_new=True, suggested_base_name=item.description),
                    )
                )
        return results

    def save_mapping_preference(self, item: InvoiceLineItem, variant_id: int, tenant_id: int, manual: bool = True) -> None:
        if self.preferences is None:
            LOGGER.info("No preference store configured; mapping %s -> %s not saved", item.code, variant_id)
            return
        self.preferences.save(tenant_id, item.code, item.description, variant_id, manual)

    def _match_from_preference(self, item: InvoiceLineItem, tenant_id: int) -> Optional[ProductMatchResult]:
        variant_id = self.preferences.lookup(tenant_id, item.code)
        if variant_id is None:
            return None
        variant = self.catalog.get_variant(tenant_id, variant_id)
        if variant is None:
            LOGGER.info("Saved mapping for %s points to missing variant %s", item.code, variant_id)
            return None
        match = self._to_match(variant, 1.0, [MANUAL_MAPPING_REASON])
        return ProductMatchResult(
            item=item,
            matches=[match],
            has_exact_match=True,
            best_match=match,
            suggestions=CatalogSuggestion(create_new=False),
        )

    def calculate_matches(self, item: InvoiceLineItem, variants: Iterable[ProductVariant]) -> List[ProductMatch]:
        matches: List[ProductMatch] = []
        for variant in variants:
            similarity = self.calculate_similarity(item, variant)
            if similarity > self.settings.min_similarity:
                matches.append(self._to_match(variant, similarity, self.match_reasons(item, variant, similarity)))
        return matches

    def calculate_similarity(self, item: InvoiceLineItem, variant: ProductVariant) -> float:
        weights = self.settings.weights
        score = 0.0

        code = normalize_code(item.code)
        if code and code == normalize_code(variant.sku):
            score += weights.code_exact
        elif code and code == normalize_code(variant.internal_code):
            score += weights.code_internal

        score += text_similarity(item.description, variant.technical_name) * weights.technical_name
        if variant.commercial_name:
            score += text_similarity(item.description, variant.commercial_name) * weights.commercial_name
        score += text_similarity(item.description, variant.base_product.technical_name) * weights.base_name

        if self._same_unit(item, variant):
            score += weights.unit
        if self._same_ncm(item, variant):
            score += weights.ncm

        max_score = weights.max_score
        return score / max_score if max_score > 0 else 0.0

    def match_reasons(self, item: InvoiceLineItem, variant: ProductVariant, similarity: float) -> List[str]:
        reasons: List[str] = []

        code = normalize_code(item.code)
        if code and code == normalize_code(variant.sku):
            reasons.append("Código/SKU idêntico")
        elif code and code == normalize_code(variant.internal_code):
            reasons.append("Código interno idêntico")

        technical = text_similarity(item.description, variant.technical_name)
        if technical > 0.8:
            reasons.append("Nome técnico muito similar")
        elif technical > 0.6:
            reasons.append("Nome técnico similar")

        if variant.commercial_name:
            commercial = text_similarity(item.description, variant.commercial_name)
            if commercial > 0.8:
                reasons.append("Nome comercial muito similar")
            elif commercial > 0.6:
                reasons.append("Nome comercial similar")

        if self._same_unit(item, variant):
            reasons.append("Unidade de medida idêntica")
        if self._same_ncm(item, variant):
            reasons.append("NCM idêntico")

        if similarity > 0.9:
            reasons.append("Alta similaridade geral")
        elif similarity > 0.7:
            reasons.append("Boa similaridade geral")
        elif similarity > 0.5:
            reasons.append("Similaridade moderada")
        return reasons

    def generate_suggestions(self, item: InvoiceLineItem, ranked: List[ProductMatch]) -> CatalogSuggestion:
        if ranked and ranked[0].similarity >= self.settings.create_threshold:
            return CatalogSuggestion(create_new=False)
        return CatalogSuggestion(
            create_new=True,
            suggested_category=suggest_category(item.description),
            suggested_base_name=clean_product_name(item.description),
        )

    def get_matching_stats(self, results: Iterable[ProductMatchResult]) -> MatchingStats:
        stats = MatchingStats()
        for result in results:
            stats.total_items += 1
            if result.has_exact_match:
                stats.exact_matches += 1
            elif result.best_match and result.best_match.similarity > self.settings.good_threshold:
                stats.good_matches += 1
            elif not result.matches:
                stats.no_matches += 1
            else:
                stats.needs_review += 1
        return stats

    @staticmethod
    def _same_unit(item: InvoiceLineItem, variant: ProductVariant) -> bool:
        unit = normalize_unit(item.unit)
        return bool(unit) and unit == normalize_unit(variant.default_measure_unit)

    @staticmethod
    def _same_ncm(item: InvoiceLineItem, variant: ProductVariant) -> bool:
        ncm = variant.base_product.ncm
        return bool(item.ncm and ncm) and item.ncm == ncm

    @staticmethod
    def _to_match(variant: ProductVariant, similarity: float, reasons: List[str]) -> ProductMatch:
        base = variant.base_product
        return ProductMatch(
            variant_id=variant.id,
            base_product_id=base.id,
            sku=variant.sku,
            technical_name=variant.technical_name,
            commercial_name=variant.commercial_name,
            internal_code=variant.internal_code,
            default_measure_unit=variant.default_measure_unit,
            category=base.subcategory.category.name,
            subcategory=base.subcategory.name,
            base_technical_name=base.technical_name,
            base_commercial_name=base.commercial_name,
            similarity=similarity,
            match_reasons=reasons,
        )


def suggest_category(description: str) -> str:
    text = strip_accents(description or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def clean_product_name(name: str) -> str:
    """Drop embedded quantities (``5 kg``) and percentages (``98%``) from a description."""

    cleaned = _QUANTITY_RE.sub("", name or "")
    cleaned = _PERCENT_RE.sub("", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


__all__ = ["ProductItemMatcher", "suggest_category", "clean_product_name", "MANUAL_MAPPING_REASON"]
