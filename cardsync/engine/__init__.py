from cardsync.engine.matching import (
    AmbiguousMatch,
    CardMatch,
    GroupMatchResult,
    ProductMatchResult,
    SetMatch,
    TimeBudget,
    match_groups_to_sets,
    match_products_to_cards,
    score_set,
)
from cardsync.engine.normalize import (
    normalize_card_name,
    normalize_card_number,
    normalize_set_name,
    normalize_text,
    similarity,
)

__all__ = [
    "AmbiguousMatch",
    "CardMatch",
    "GroupMatchResult",
    "ProductMatchResult",
    "SetMatch",
    "TimeBudget",
    "match_groups_to_sets",
    "match_products_to_cards",
    "normalize_card_name",
    "normalize_card_number",
    "normalize_set_name",
    "normalize_text",
    "score_set",
    "similarity",
]
