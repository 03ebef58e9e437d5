"""
Rating aggregation.

A product's `rating` and `reviewCount` are recomputed from its full review
set after every review create, update or delete. The read-recompute-write is
not isolated from concurrent reviews; when two land at once the last write to
the product wins.
"""
from typing import Sequence, Tuple

import structlog

from database import Repository

logger = structlog.get_logger(__name__)


def average_rating(ratings: Sequence[int]) -> float:
    if not ratings:
        return 0.0
    return sum(ratings) / len(ratings)


def recompute_product_rating(repo: Repository, product_id: str) -> Tuple[float, int]:
    ratings = repo.review_ratings(product_id)
    rating = average_rating(ratings)
    repo.update("product", product_id, {"rating": rating, "reviewCount": len(ratings)})
    logger.info("rating_recomputed", product_id=product_id, rating=rating, review_count=len(ratings))
    return rating, len(ratings)
