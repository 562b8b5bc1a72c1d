"""
K-means++ clustering of customer feature vectors.

Features are min-max normalized per dimension, centroids are seeded with
k-means++ and refined with Lloyd's algorithm. When no cluster count is given
the engine scans a range of k and keeps the one with the best silhouette score,
with a small bonus for fewer clusters.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import structlog

from saas_ontology.config import settings
from saas_ontology.schemas.segmentation import Cluster, ClusterCharacteristics, ClusteringFeatures, ClusteringResult

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 100
AUTO_K_MAX_ITERATIONS = 50
SIMPLICITY_BONUS = 0.1


@dataclass
class KMeansFit:
    """Outcome of one k-means run on normalized data."""

    assignments: np.ndarray
    centroids: np.ndarray
    inertia: float
    iterations: int
    converged: bool


def normalize_features(matrix: np.ndarray) -> np.ndarray:
    """Min-max scale every column to [0, 1]; constant columns become 0."""
    if matrix.size == 0:
        return matrix.astype(float)
    lows = matrix.min(axis=0)
    spans = matrix.max(axis=0) - lows
    safe_spans = np.where(spans > 0, spans, 1.0)
    return np.where(spans > 0, (matrix - lows) / safe_spans, 0.0)


def kmeans_plus_plus(data: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """
    Choose ``k`` initial centroids.

    The first centroid is a uniformly random point; every further centroid is a
    point drawn with probability proportional to its squared distance to the
    nearest centroid chosen so far.
    """
    n = len(data)
    centroids = [data[rng.integers(n)]]

    for _ in range(1, k):
        chosen = np.asarray(centroids)
        d2 = ((data[:, None, :] - chosen[None, :, :]) ** 2).sum(axis=2).min(axis=1)
        total = d2.sum()
        if total > 0:
            index = rng.choice(n, p=d2 / total)
        else:
            index = rng.integers(n)
        centroids.append(data[index])

    return np.asarray(centroids, dtype=float)


def squared_distances(data: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """(n, k) matrix of squared euclidean distances."""
    return ((data[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)


def lloyd(data: np.ndarray, initial_centroids: np.ndarray, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> KMeansFit:
    """
    Lloyd's algorithm from the given centroids.

    Stops when assignments no longer change (converged) or after
    ``max_iterations`` centroid updates. Empty clusters keep their centroid.
    """
    centroids = np.array(initial_centroids, dtype=float)
    k = len(centroids)
    assignments = np.full(len(data), -1)
    iterations = 0
    converged = False

    while iterations < max_iterations:
        new_assignments = squared_distances(data, centroids).argmin(axis=1)
        if np.array_equal(new_assignments, assignments):
            converged = True
            break
        assignments = new_assignments

        for cluster in range(k):
            members = data[assignments == cluster]
            if len(members):
                centroids[cluster] = members.mean(axis=0)
        iterations += 1

    distances = squared_distances(data, centroids)
    inertia = float(distances[np.arange(len(data)), assignments].sum())
    return KMeansFit(assignments, centroids, inertia, iterations, converged)


def run_kmeans(
    data: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> KMeansFit:
    """Lloyd's algorithm from a k-means++ start."""
    return lloyd(data, kmeans_plus_plus(data, k, rng), max_iterations)


def best_kmeans(
    data: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    n_init: Optional[int] = None,
) -> KMeansFit:
    """Lowest-inertia fit over ``n_init`` independently seeded runs."""
    n_init = n_init or settings.clustering_n_init
    fits = [run_kmeans(data, k, rng, max_iterations) for _ in range(max(1, n_init))]
    return min(fits, key=lambda fit: fit.inertia)


def refine(data: np.ndarray, fit: KMeansFit, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> KMeansFit:
    """Continue Lloyd iterations on a fit that stopped at an iteration cap."""
    if fit.converged:
        return fit
    polished = lloyd(data, fit.centroids, max_iterations)
    polished.iterations += fit.iterations
    return polished


def silhouette_score(data: np.ndarray, assignments: np.ndarray, k: int) -> float:
    """
    Mean silhouette coefficient of all points.

    Returns 0 when k <= 1 or there are no more points than clusters. A point
    whose cluster is the only populated one scores 0.
    """
    n = len(data)
    if k <= 1 or n <= k:
        return 0.0

    distances = np.sqrt(squared_distances(data, data))
    labels = [c for c in range(k) if np.any(assignments == c)]

    mean_to_cluster = np.full((n, k), np.inf)
    for cluster in labels:
        mask = assignments == cluster
        mean_to_cluster[:, cluster] = distances[:, mask].mean(axis=1)

    scores = np.zeros(n)
    for i in range(n):
        own = assignments[i]
        peers = int(np.sum(assignments == own)) - 1
        a = distances[i, assignments == own].sum() / peers if peers > 0 else 0.0

        others = [mean_to_cluster[i, c] for c in labels if c != own]
        b = min(others) if others else a

        largest = max(a, b)
        scores[i] = (b - a) / largest if largest > 0 else 0.0

    return float(scores.mean())


def scan_cluster_counts(
    data: np.ndarray,
    rng: np.random.Generator,
    min_k: int = 2,
    max_k: Optional[int] = None,
    n_init: Optional[int] = None,
) -> Tuple[int, Optional[KMeansFit]]:
    """
    Scan ``min_k..max_k`` for the k maximizing ``silhouette + 0.1 * (max_k - k)``.

    Returns:
        The winning k and the fit it was scored on. The fit is None when the
        range is empty and k falls back to ``min_k`` (or n for tiny inputs).
    """
    n = len(data)
    if max_k is None:
        max_k = min(8, n // 10)
    if n < min_k:
        return max(1, n), None

    best_k = min_k
    best_fit: Optional[KMeansFit] = None
    best_score = -np.inf
    for k in range(min_k, min(max_k, n - 1) + 1):
        fit = best_kmeans(data, k, rng, AUTO_K_MAX_ITERATIONS, n_init)
        score = silhouette_score(data, fit.assignments, k) + SIMPLICITY_BONUS * (max_k - k)
        logger.debug("cluster_count_scored", k=k, score=round(score, 4))
        if score > best_score:
            best_score = score
            best_k = k
            best_fit = fit

    return best_k, best_fit


def find_optimal_k(
    data: np.ndarray,
    rng: np.random.Generator,
    min_k: int = 2,
    max_k: Optional[int] = None,
    n_init: Optional[int] = None,
) -> int:
    k, _ = scan_cluster_counts(data, rng, min_k=min_k, max_k=max_k, n_init=n_init)
    return k


def label_cluster(chars: ClusterCharacteristics) -> Tuple[str, str]:
    """
    Human-readable name and description from a cluster's averages.

    Rules are evaluated in order; the first match wins.
    """
    mrr_level = "high" if chars.avg_mrr >= 5000 else "mid" if chars.avg_mrr >= 500 else "low"
    tenure_level = "long" if chars.avg_tenure >= 18 else "mid" if chars.avg_tenure >= 6 else "new"
    growth_level = (
        "growing" if chars.avg_growth_rate >= 0.1 else "stable" if chars.avg_growth_rate >= 0 else "declining"
    )
    size_level = (
        "enterprise" if chars.avg_company_size >= 3 else "mid-market" if chars.avg_company_size >= 2 else "small"
    )
    size_title = size_level.capitalize()
    avg_mrr = f"€{chars.avg_mrr:.0f}/mo"

    if mrr_level == "high" and tenure_level == "long":
        return (
            "Enterprise Loyalists",
            f"High-value customers (avg {avg_mrr}) with long tenure. Focus on retention and expansion.",
        )
    if mrr_level == "high":
        return (
            "Rising Stars",
            f"Recent high-value customers (avg {avg_mrr}). Strong onboarding and success focus needed.",
        )
    if growth_level == "growing":
        return (
            "Growth Accounts",
            f"{size_title} businesses showing expansion signals. Prime upgrade candidates.",
        )
    if tenure_level == "long" and mrr_level == "mid":
        return (
            "Steady State",
            f"Stable mid-tier customers with {chars.avg_tenure:.0f} months tenure. Reliable base revenue.",
        )
    if tenure_level == "new" and mrr_level == "low":
        return (
            "New Starters",
            f"Recent {size_level} customers exploring the product. Critical onboarding period.",
        )
    if growth_level == "declining":
        return (
            "At-Risk Accounts",
            "Customers showing decline signals. Requires intervention and success outreach.",
        )
    return f"{size_title} Segment", f"{size_title} customers with avg {avg_mrr} revenue."


def cluster_customers(
    features: Sequence[ClusteringFeatures],
    k: Optional[int] = None,
    min_k: int = 2,
    max_k: Optional[int] = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    rng: Optional[np.random.Generator] = None,
    n_init: Optional[int] = None,
) -> ClusteringResult:
    """
    Cluster customers and describe each cluster.

    Args:
        features: One feature vector per customer
        k: Cluster count; chosen automatically when omitted
        min_k: Smallest k scanned in automatic mode
        max_k: Largest k scanned (defaults to min(8, n // 10))
        max_iterations: Lloyd iteration cap for the final fit
        rng: Random source for k-means++ seeding
        n_init: Independent restarts per k, best inertia kept
            (``settings.clustering_n_init`` when omitted)

    Returns:
        ClusteringResult with clusters sorted by descending average MRR
    """
    if not features:
        return ClusteringResult()

    rng = rng if rng is not None else np.random.default_rng()
    raw = np.asarray([f.vector() for f in features], dtype=float)
    data = normalize_features(raw)
    n = len(data)

    fit: Optional[KMeansFit] = None
    if k is None:
        k, fit = scan_cluster_counts(data, rng, min_k=min_k, max_k=max_k, n_init=n_init)
    k = max(1, min(k, n))

    # The scan's winning fit is kept; refitting could land in a worse optimum
    fit = refine(data, fit, max_iterations) if fit is not None else best_kmeans(data, k, rng, max_iterations, n_init)
    silhouette = silhouette_score(data, fit.assignments, k)

    clusters: List[Cluster] = []
    for cluster in range(k):
        mask = fit.assignments == cluster
        if not mask.any():
            continue
        member_rows = raw[mask]
        chars = ClusterCharacteristics(
            avg_mrr=float(member_rows[:, 0].mean()),
            avg_tenure=float(member_rows[:, 1].mean()),
            avg_growth_rate=float(member_rows[:, 2].mean()),
            avg_company_size=float(member_rows[:, 3].mean()),
            avg_usage_score=float(member_rows[:, 4].mean()),
        )
        name, description = label_cluster(chars)
        clusters.append(
            Cluster(
                id=cluster,
                centroid=[float(v) for v in fit.centroids[cluster]],
                member_ids=[features[i].customer_id for i in np.flatnonzero(mask)],
                size=int(mask.sum()),
                characteristics=chars,
                name=name,
                description=description,
            )
        )

    clusters.sort(key=lambda c: c.characteristics.avg_mrr, reverse=True)
    for index, cluster in enumerate(clusters):
        cluster.id = index

    logger.info(
        "customers_clustered",
        customers=n,
        k=len(clusters),
        silhouette=round(silhouette, 4),
        iterations=fit.iterations,
        converged=fit.converged,
    )

    return ClusteringResult(
        clusters=clusters,
        k=len(clusters),
        silhouette_score=silhouette,
        inertia=fit.inertia,
        iterations=fit.iterations,
        converged=fit.converged,
    )
