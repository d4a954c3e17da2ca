"""Registry of metered features, their metadata payloads and cost functions.

Each feature declares a frozen dataclass describing the work it is about to
do and a side-effect-free function pricing that work, so a cost is always
known before credits are committed.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, is_dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

from credits.models import FeatureType

from .errors import CreditLedgerError
from .pricing import calculate_geogrid_cost, geogrid_rates, get_feature_cost

RANK_TRACKING_COST_PER_KEYWORD = 2
LLM_COST_PER_QUESTION_PROVIDER = 1
RSS_COST_PER_POST = 1
REVIEW_MATCHING_FALLBACK_COST = 1
BACKLINKS_FALLBACK_COST = 5


class UnknownFeatureError(CreditLedgerError):
    """Raised when a feature type has no registered cost function."""


@dataclass(frozen=True)
class GeoGridMetadata:
    grid_size: int
    keyword_count: int = 1
    location_id: Optional[str] = None


@dataclass(frozen=True)
class RankTrackingMetadata:
    """One desktop and one mobile lookup per keyword."""

    keyword_count: int
    location_code: Optional[int] = None


@dataclass(frozen=True)
class LLMVisibilityMetadata:
    question_count: int
    providers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReviewMatchingMetadata:
    review_count: int = 0


@dataclass(frozen=True)
class BacklinksMetadata:
    domain: str = ""
    check_type: str = "full"


@dataclass(frozen=True)
class RSSFeedsMetadata:
    post_count: int
    feed_id: Optional[str] = None


@dataclass(frozen=True)
class ConceptScheduleMetadata:
    """A scheduled bundle of checks charged as one operation."""

    schedule_id: Optional[str] = None
    rank_tracking: Optional[RankTrackingMetadata] = None
    geo_grid: Optional[GeoGridMetadata] = None
    llm_visibility: Optional[LLMVisibilityMetadata] = None
    review_matching: Optional[ReviewMatchingMetadata] = None


@dataclass(frozen=True)
class FeatureDefinition:
    feature_type: FeatureType
    metadata_class: Type
    cost: Callable[[Any], int]


_REGISTRY: Dict[FeatureType, FeatureDefinition] = {}


def register(feature_type: FeatureType, metadata_class: Type):
    def decorator(func: Callable[[Any], int]) -> Callable[[Any], int]:
        _REGISTRY[feature_type] = FeatureDefinition(feature_type, metadata_class, func)
        return func

    return decorator


def get_feature(feature_type) -> FeatureDefinition:
    try:
        return _REGISTRY[FeatureType(feature_type)]
    except (KeyError, ValueError) as exc:
        raise UnknownFeatureError(f"Unknown feature type '{feature_type}'.") from exc


def registered_features() -> Tuple[FeatureType, ...]:
    return tuple(_REGISTRY)


def estimate_cost(feature_type, metadata) -> int:
    """Price ``metadata`` with the feature's registered cost function."""

    definition = get_feature(feature_type)
    if isinstance(metadata, dict):
        metadata = coerce_metadata(definition, metadata)
    if not isinstance(metadata, definition.metadata_class):
        raise TypeError(
            f"{definition.feature_type.value} expects {definition.metadata_class.__name__}, "
            f"got {type(metadata).__name__}."
        )
    return definition.cost(metadata)


def coerce_metadata(definition: FeatureDefinition, payload: dict):
    if definition.metadata_class is ConceptScheduleMetadata:
        nested = {
            "rank_tracking": RankTrackingMetadata,
            "geo_grid": GeoGridMetadata,
            "llm_visibility": LLMVisibilityMetadata,
            "review_matching": ReviewMatchingMetadata,
        }
        payload = dict(payload)
        for field_name, cls in nested.items():
            value = payload.get(field_name)
            if isinstance(value, dict):
                payload[field_name] = _build(cls, value)
        return _build(ConceptScheduleMetadata, payload)
    return _build(definition.metadata_class, payload)


def _build(cls: Type, payload: dict):
    if cls is LLMVisibilityMetadata and "providers" in payload:
        payload = {**payload, "providers": tuple(payload["providers"])}
    try:
        return cls(**payload)
    except TypeError as exc:
        raise ValueError(f"Invalid {cls.__name__} payload: {exc}") from exc


def serialise_metadata(metadata) -> Optional[dict]:
    """JSON-ready form of a metadata payload for the ledger's ``feature_metadata``."""

    if metadata is None:
        return None
    if is_dataclass(metadata) and not isinstance(metadata, type):
        return asdict(metadata)
    if isinstance(metadata, dict):
        return metadata
    raise TypeError(f"Feature metadata must be a dataclass or dict, got {type(metadata).__name__}.")


@register(FeatureType.GEO_GRID, GeoGridMetadata)
def geo_grid_cost(metadata: GeoGridMetadata) -> int:
    return calculate_geogrid_cost(metadata.grid_size, metadata.keyword_count, **geogrid_rates())


@register(FeatureType.RANK_TRACKING, RankTrackingMetadata)
def rank_tracking_cost(metadata: RankTrackingMetadata) -> int:
    if metadata.keyword_count < 0:
        raise ValueError("Keyword count cannot be negative.")
    per_keyword = get_feature_cost(FeatureType.RANK_TRACKING, "per_keyword", fallback=RANK_TRACKING_COST_PER_KEYWORD)
    return per_keyword * metadata.keyword_count


@register(FeatureType.LLM_VISIBILITY, LLMVisibilityMetadata)
def llm_visibility_cost(metadata: LLMVisibilityMetadata) -> int:
    if metadata.question_count < 0:
        raise ValueError("Question count cannot be negative.")
    per_pair = get_feature_cost(
        FeatureType.LLM_VISIBILITY, "per_question_provider", fallback=LLM_COST_PER_QUESTION_PROVIDER
    )
    return per_pair * metadata.question_count * len(metadata.providers)


@register(FeatureType.REVIEW_MATCHING, ReviewMatchingMetadata)
def review_matching_cost(metadata: ReviewMatchingMetadata) -> int:
    return get_feature_cost(FeatureType.REVIEW_MATCHING, fallback=REVIEW_MATCHING_FALLBACK_COST)


@register(FeatureType.BACKLINKS, BacklinksMetadata)
def backlinks_cost(metadata: BacklinksMetadata) -> int:
    return get_feature_cost(FeatureType.BACKLINKS, fallback=BACKLINKS_FALLBACK_COST)


@register(FeatureType.RSS_FEEDS, RSSFeedsMetadata)
def rss_feeds_cost(metadata: RSSFeedsMetadata) -> int:
    if metadata.post_count < 0:
        raise ValueError("Post count cannot be negative.")
    return get_feature_cost(FeatureType.RSS_FEEDS, "per_post", fallback=RSS_COST_PER_POST) * metadata.post_count


@register(FeatureType.CONCEPT_SCHEDULE, ConceptScheduleMetadata)
def concept_schedule_cost(metadata: ConceptScheduleMetadata) -> int:
    total = 0
    if metadata.rank_tracking is not None:
        total += rank_tracking_cost(metadata.rank_tracking)
    if metadata.geo_grid is not None:
        total += geo_grid_cost(metadata.geo_grid)
    if metadata.llm_visibility is not None:
        total += llm_visibility_cost(metadata.llm_visibility)
    if metadata.review_matching is not None:
        total += review_matching_cost(metadata.review_matching)
    return total
