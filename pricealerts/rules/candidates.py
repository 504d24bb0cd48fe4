# -*- coding: utf-8 -*-
"""
Candidate selection: narrows the catalog to the items a rule could fire for,
using only the rule's static filters, before any field is resolved.
"""
from typing import List

from loguru import logger

from pricealerts.interfaces import CatalogIndex
from pricealerts.rules.types import AlertRule

DEFAULT_UNFILTERED_LIMIT = 5000


class CandidateSelector:

    def __init__(self, unfiltered_catalog_limit: int = DEFAULT_UNFILTERED_LIMIT):
        """
        Args:
            unfiltered_catalog_limit: Largest catalog an unfiltered rule may scan.
                Above it the rule yields no candidates (authoring should reject it).
        """
        self.unfiltered_catalog_limit = unfiltered_catalog_limit

    def select(self, rule: AlertRule, catalog: CatalogIndex) -> List[str]:
        """
        Item ids to evaluate for this rule.

        Order of precedence:
        1. explicit id allowlist, returned as-is (deduplicated)
        2. category set and/or price ceiling, pushed down to the catalog index
        3. no filter: whole catalog, only below the configured size limit
        """
        if rule.item_ids:
            return list(dict.fromkeys(rule.item_ids))

        if rule.categories or rule.max_price is not None:
            return catalog.query(categories=sorted(rule.categories), max_price=rule.max_price)

        size = catalog.count()
        if size > self.unfiltered_catalog_limit:
            logger.error(
                f"Rule {rule.id} '{rule.name}' has no item filters and the catalog has "
                f"{size} items (limit {self.unfiltered_catalog_limit}), skipping"
            )
            return []
        return catalog.all_item_ids()


_selector_instance = None


def get_candidate_selector() -> CandidateSelector:
    """Get global candidate selector configured from YAML (singleton)."""
    global _selector_instance
    if _selector_instance is None:
        from pricealerts.config import get_candidates_config

        _selector_instance = CandidateSelector(
            unfiltered_catalog_limit=get_candidates_config()['unfiltered_catalog_limit']
        )
    return _selector_instance
