"""Ingredient Matching Service: resolve recipe ingredient names to inventory rows.

Recipe ingredients are typed by catalog operators ("16oz Plastic Cups",
"Whip Cream", "Oreo Crushed") while inventory rows carry whatever name the
store uses ("Plastic Cup 16oz", "Whipped Cream"). Matching runs in tiers:

1. Exact match after normalization             -> 1.0
2. Containment (phrase, reordered, token subset) -> 0.9 / 0.85 / 0.8
3. Token-level fuzzy score (normalized Levenshtein per token), or the
   synonym score, whichever is higher            -> < 1.0

A recipe is only resolved when every ingredient has exactly one clear winner
at or above the acceptance threshold. Anything else raises ResolutionError so
an operator decides; low-confidence matches are never silently accepted.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import re

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.recipe import IngredientRequirement
from app.models.stock import InventoryItem
from app.services.stock_sync_errors import ResolutionError

logger = logging.getLogger(__name__)


class ConfidenceTier(str, Enum):
    """Bucketed label derived from a similarity score."""
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNMATCHED = "unmatched"


class MatchMethod(str, Enum):
    """Scoring path that produced a match."""
    EXACT = "exact"
    CONTAINMENT = "containment"
    TOKEN = "token"
    SYNONYM = "synonym"


TIER_THRESHOLDS: Tuple[Tuple[float, ConfidenceTier], ...] = (
    (0.95, ConfidenceTier.VERY_HIGH),
    (0.85, ConfidenceTier.HIGH),
    (0.75, ConfidenceTier.MEDIUM),
    (0.6, ConfidenceTier.LOW),
)

# Containment weights by match type
PHRASE_CONTAINMENT_SCORE = 0.9
REORDERED_TOKENS_SCORE = 0.85
TOKEN_SUBSET_SCORE = 0.8

# Per-token scoring
SUBSTRING_TOKEN_SCORE = 0.8
MIN_TOKEN_SIMILARITY = 0.7

# Synonym path is discounted against a literal match
SYNONYM_TOKEN_SCORE = 0.9
SYNONYM_WEIGHT = 0.9

# Fuzzy paths never reach the exact-match score
MAX_FUZZY_SCORE = 0.99

SYNONYMS: Dict[str, List[str]] = {
    "cup": ["glass", "container", "tumbler"],
    "lid": ["cover", "top", "cap"],
    "sauce": ["syrup", "topping", "drizzle"],
    "crushed": ["crumbled", "broken", "crumb"],
    "powder": ["mix", "dust"],
    "bag": ["pouch", "sack", "package"],
    "box": ["container", "carton"],
    "water": ["h2o", "aqua"],
    "tea": ["chai"],
    "coffee": ["espresso", "brew"],
    "straw": ["stirrer"],
    "paper": ["parchment"],
}

# Whole-name variations for common ingredients; members of a group match each other
INGREDIENT_VARIATIONS: Dict[str, List[str]] = {
    "regular croissant": ["croissant", "plain croissant", "butter croissant"],
    "whipped cream": ["whip cream", "whipping cream"],
    "chocolate syrup": ["choco syrup", "chocolate sauce", "cocoa syrup"],
    "caramel syrup": ["caramel sauce"],
    "nutella": ["hazelnut spread", "chocolate hazelnut spread"],
    "biscoff spread": ["biscoff", "cookie butter", "speculoos"],
    "kitkat": ["kit kat"],
    "chopstick": ["chopsticks", "wooden stick", "bamboo stick"],
    "wax paper": ["parchment paper", "baking paper", "food paper"],
}

_NUMBER_WORDS = {
    "eight": "8", "ten": "10", "twelve": "12", "sixteen": "16",
    "twenty": "20", "twenty two": "22", "thirty two": "32",
}

# Applied in order to lower-cased text, before punctuation is stripped
_ABBREVIATIONS: Tuple[Tuple[str, str], ...] = (
    (r"&", " and "),
    (r"\bw/\s*", "with "),
    (r"#\s*(\d+)", r"no \1"),
    (r"\b(\d+(?:\.\d+)?)\s*(?:oz|ounces?)\b", r"\1oz"),
    (r"\b(\d+(?:\.\d+)?)\s*(?:ml|milliliters?|millilitres?)\b", r"\1ml"),
    (r"\b(\d+(?:\.\d+)?)\s*(?:g|grams?|gms)\b", r"\1g"),
    (r"\b(\d+(?:\.\d+)?)\s*(?:kg|kilograms?|kilos?)\b", r"\1kg"),
    (r"\b(\d+(?:\.\d+)?)\s*(?:l|liters?|litres?)\b", r"\1l"),
    (r"\bpcs?\b", "pieces"),
)


def normalize_name(text: str) -> str:
    """Lowercase, expand abbreviations, strip punctuation, collapse whitespace."""
    if not text:
        return ""

    name = text.lower().strip()
    for word, digits in sorted(_NUMBER_WORDS.items(), key=lambda kv: -len(kv[0])):
        name = re.sub(rf"\b{word}\b", digits, name)
    for pattern, replacement in _ABBREVIATIONS:
        name = re.sub(pattern, replacement, name)

    name = re.sub(r"[^\w\s]", " ", name)
    name = re.sub(r"_", " ", name)
    tokens = [_singular(t) for t in name.split()]
    return " ".join(tokens)


def _singular(token: str) -> str:
    # "cups" -> "cup", "glass" stays; measured tokens like "16oz" are left alone
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss") and not token[0].isdigit():
        return token[:-1]
    return token


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def token_similarity(a: str, b: str) -> float:
    """Similarity of two single tokens in [0, 1]."""
    if a == b:
        return 1.0
    if a in b or b in a:
        return SUBSTRING_TOKEN_SCORE
    longest = max(len(a), len(b))
    return 1.0 - levenshtein_distance(a, b) / longest


def confidence_tier(score: float) -> ConfidenceTier:
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return ConfidenceTier.UNMATCHED


def _build_synonym_index() -> Dict[str, set]:
    index: Dict[str, set] = {}
    for key, words in SYNONYMS.items():
        group = {key, *words}
        for word in group:
            index.setdefault(word, set()).update(group - {word})
    return index


def _build_variation_index() -> Dict[str, int]:
    index: Dict[str, int] = {}
    for group_id, (canonical, variations) in enumerate(INGREDIENT_VARIATIONS.items()):
        for phrase in (canonical, *variations):
            index[normalize_name(phrase)] = group_id
    return index


_SYNONYM_INDEX = _build_synonym_index()
_VARIATION_INDEX = _build_variation_index()


@dataclass
class NameScore:
    """Breakdown of one name-to-name comparison."""
    score: float
    method: MatchMethod
    containment: float
    edit_distance: int


def score_names(requirement_name: str, candidate_name: str) -> NameScore:
    """Score how well an inventory name matches a requirement name."""
    req = normalize_name(requirement_name)
    cand = normalize_name(candidate_name)
    distance = levenshtein_distance(req, cand)

    if not req or not cand:
        return NameScore(0.0, MatchMethod.TOKEN, 0.0, distance)

    if req == cand:
        return NameScore(1.0, MatchMethod.EXACT, 1.0, 0)

    containment = _containment_score(req, cand)
    if containment:
        return NameScore(containment, MatchMethod.CONTAINMENT, containment, distance)

    token_score = min(_token_score(req.split(), cand.split()), MAX_FUZZY_SCORE)
    synonym_score = min(_synonym_score(req, cand), MAX_FUZZY_SCORE)
    if synonym_score > token_score:
        return NameScore(synonym_score, MatchMethod.SYNONYM, 0.0, distance)
    return NameScore(token_score, MatchMethod.TOKEN, 0.0, distance)


def _containment_score(req: str, cand: str) -> float:
    padded_req, padded_cand = f" {req} ", f" {cand} "
    if padded_req in padded_cand or padded_cand in padded_req:
        return PHRASE_CONTAINMENT_SCORE

    req_tokens, cand_tokens = set(req.split()), set(cand.split())
    if req_tokens == cand_tokens:
        return REORDERED_TOKENS_SCORE
    if req_tokens <= cand_tokens or cand_tokens <= req_tokens:
        return TOKEN_SUBSET_SCORE
    return 0.0


def _token_score(req_tokens: Sequence[str], cand_tokens: Sequence[str]) -> float:
    if not req_tokens or not cand_tokens:
        return 0.0

    total = 0.0
    for token in req_tokens:
        best = max(token_similarity(token, other) for other in cand_tokens)
        if best >= MIN_TOKEN_SIMILARITY:
            total += best
    return total / max(len(req_tokens), len(cand_tokens))


def _synonym_score(req: str, cand: str) -> float:
    req_group = _VARIATION_INDEX.get(req)
    if req_group is not None and req_group == _VARIATION_INDEX.get(cand):
        return PHRASE_CONTAINMENT_SCORE

    req_tokens, cand_tokens = req.split(), cand.split()
    used_synonym = False
    total = 0.0
    for token in req_tokens:
        best = 0.0
        for other in cand_tokens:
            if token == other:
                best = 1.0
                break
            if other in _SYNONYM_INDEX.get(token, ()):
                best = max(best, SYNONYM_TOKEN_SCORE)
        if 0.0 < best < 1.0:
            used_synonym = True
        total += best

    if not used_synonym:
        return 0.0
    return SYNONYM_WEIGHT * total / max(len(req_tokens), len(cand_tokens))


@dataclass
class IngredientMatch:
    """Result of resolving one requirement against one inventory row."""
    inventory_item: InventoryItem
    score: float
    method: MatchMethod
    containment: float = 0.0
    edit_distance: int = 0

    @property
    def confidence(self) -> ConfidenceTier:
        return confidence_tier(self.score)

    def sort_key(self) -> tuple:
        # Best first: score, then exact, then containment, then edit distance
        return (
            -round(self.score, 6),
            self.method != MatchMethod.EXACT,
            -self.containment,
            self.edit_distance,
            self.inventory_item.name,
        )

    def to_dict(self) -> Dict:
        return {
            "inventory_item_id": self.inventory_item.id,
            "inventory_item_name": self.inventory_item.name,
            "unit": self.inventory_item.unit,
            "score": round(self.score, 4),
            "confidence": self.confidence.value,
            "method": self.method.value,
        }


@dataclass
class ResolvedRequirement:
    """A requirement together with the single match accepted for it."""
    requirement: IngredientRequirement
    match: IngredientMatch


class MatchingConfig:
    """Thresholds for ingredient resolution."""

    def __init__(
        self,
        default_threshold: Optional[float] = None,
        acceptance_threshold: Optional[float] = None,
        ambiguity_delta: Optional[float] = None,
    ):
        self.default_threshold = (
            settings.match_default_threshold if default_threshold is None else default_threshold
        )
        self.acceptance_threshold = (
            settings.mapping_acceptance_threshold
            if acceptance_threshold is None else acceptance_threshold
        )
        self.ambiguity_delta = (
            settings.match_ambiguity_delta if ambiguity_delta is None else ambiguity_delta
        )


class IngredientMatchingService:
    """Resolve ingredient requirements to concrete inventory rows."""

    def __init__(self, db: Optional[Session] = None, config: Optional[MatchingConfig] = None):
        self.db = db
        self.config = config or MatchingConfig()

    def resolve(
        self,
        requirement: IngredientRequirement,
        candidates: Iterable[InventoryItem],
        threshold: Optional[float] = None,
    ) -> List[IngredientMatch]:
        """Return candidates scoring at or above *threshold*, best first."""
        return self.resolve_name(requirement.ingredient_name, candidates, threshold)

    def resolve_name(
        self,
        name: str,
        candidates: Iterable[InventoryItem],
        threshold: Optional[float] = None,
    ) -> List[IngredientMatch]:
        if threshold is None:
            threshold = self.config.default_threshold

        matches = []
        for item in candidates:
            scored = score_names(name, item.name)
            if scored.score >= threshold:
                matches.append(IngredientMatch(
                    inventory_item=item,
                    score=scored.score,
                    method=scored.method,
                    containment=scored.containment,
                    edit_distance=scored.edit_distance,
                ))

        matches.sort(key=IngredientMatch.sort_key)
        return matches

    def resolve_recipe(
        self,
        recipe_name: str,
        requirements: Sequence[IngredientRequirement],
        candidates: Sequence[InventoryItem],
        threshold: Optional[float] = None,
    ) -> List[ResolvedRequirement]:
        """Resolve every requirement of a recipe, or raise ResolutionError.

        All-or-nothing: a single unmatched or ambiguous requirement fails the
        whole recipe so a partially correct mapping is never produced.
        """
        if threshold is None:
            threshold = self.config.acceptance_threshold

        if not requirements:
            raise ResolutionError(recipe_name, [{
                "ingredient": "-",
                "reason": "recipe has no ingredient requirements",
                "candidates": [],
            }])

        resolved: List[ResolvedRequirement] = []
        problems: List[Dict] = []

        for requirement in requirements:
            matches = self.resolve(requirement, candidates, threshold)
            if not matches:
                problems.append({
                    "ingredient": requirement.ingredient_name,
                    "reason": f"no inventory item scores at or above {threshold}",
                    "candidates": [
                        m.to_dict() for m in self.resolve(requirement, candidates, 0.0)[:3]
                    ],
                })
                continue

            best = matches[0]
            rivals = [
                m for m in matches[1:]
                if best.score - m.score < self.config.ambiguity_delta
            ]
            if rivals:
                problems.append({
                    "ingredient": requirement.ingredient_name,
                    "reason": "ambiguous: several inventory items match equally well",
                    "candidates": [m.to_dict() for m in [best, *rivals]],
                })
                continue

            resolved.append(ResolvedRequirement(requirement=requirement, match=best))

        if problems:
            logger.warning(
                f"Ingredient resolution failed for recipe '{recipe_name}': "
                f"{len(problems)} of {len(requirements)} ingredients unresolved"
            )
            raise ResolutionError(recipe_name, problems)

        logger.info(
            f"Resolved {len(resolved)} ingredients for recipe '{recipe_name}'"
        )
        return resolved

    def match_ingredient(
        self,
        name: str,
        store_id: int,
        threshold: Optional[float] = None,
        limit: int = 5,
    ) -> List[IngredientMatch]:
        """Preview matches for one ingredient name against a store's inventory."""
        if self.db is None:
            raise RuntimeError("match_ingredient requires a database session")

        candidates = self.db.query(InventoryItem).filter(
            InventoryItem.store_id == store_id,
            InventoryItem.active == True,  # noqa: E712
        ).all()
        return self.resolve_name(name, candidates, threshold)[:limit]
