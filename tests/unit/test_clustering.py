"""Unit tests for k-means++ clustering."""
from uuid import uuid4

import numpy as np
import pytest

from saas_ontology.config import settings
from saas_ontology.schemas.segmentation import ClusterCharacteristics, ClusteringFeatures
from saas_ontology.services.clustering import (
    cluster_customers,
    find_optimal_k,
    label_cluster,
    normalize_features,
    scan_cluster_counts,
    silhouette_score,
)


def _two_groups(per_group: int = 50):
    """Low-MRR and high-MRR customers that differ in nothing else."""
    return [
        ClusteringFeatures(
            customer_id=uuid4(),
            mrr=10.0 if i < per_group else 1000.0,
            tenure_months=12,
            growth_rate=0.0,
            company_size=2,
        )
        for i in range(per_group * 2)
    ]


def test_normalize_features_scales_columns_and_zeroes_constant_ones():
    matrix = np.array([[0.0, 5.0], [10.0, 5.0], [5.0, 5.0]])
    normalized = normalize_features(matrix)
    assert normalized[:, 0].tolist() == [0.0, 1.0, 0.5]
    assert normalized[:, 1].tolist() == [0.0, 0.0, 0.0]


def test_silhouette_is_zero_for_a_single_cluster():
    data = np.array([[0.0], [1.0], [2.0]])
    assert silhouette_score(data, np.zeros(3, dtype=int), 1) == 0.0


def test_silhouette_of_perfectly_separated_groups_is_one():
    data = np.array([[0.0], [0.0], [1.0], [1.0]])
    assert silhouette_score(data, np.array([0, 0, 1, 1]), 2) == pytest.approx(1.0)


def test_auto_k_finds_two_well_separated_groups():
    """Test that two obvious MRR groups are recovered without a given cluster count."""
    features = _two_groups()

    result = cluster_customers(features, rng=np.random.default_rng(42), n_init=5)

    assert result.k == 2
    assert [cluster.size for cluster in result.clusters] == [50, 50]
    # Highest average MRR first
    assert result.clusters[0].characteristics.avg_mrr == 1000.0
    assert result.clusters[1].characteristics.avg_mrr == 10.0
    assert result.clusters[0].id == 0
    assert set(result.clusters[0].member_ids) == {f.customer_id for f in features[50:]}
    assert result.silhouette_score == pytest.approx(1.0)


def _two_price_points_four_sizes():
    """MRR alternates 10/1000 while company size cycles evenly through all four buckets."""
    return [
        ClusteringFeatures(
            customer_id=uuid4(),
            mrr=10.0 if i % 2 == 0 else 1000.0,
            tenure_months=12,
            growth_rate=0.0,
            company_size=(i // 2) % 4 + 1,
        )
        for i in range(100)
    ]


@pytest.mark.parametrize("seed", range(25))
def test_auto_k_splits_on_mrr_across_company_size_buckets(monkeypatch, seed):
    """Test that default auto-k separates the price points rather than the size buckets."""
    monkeypatch.setattr(settings, "clustering_n_init", 5)
    features = _two_price_points_four_sizes()

    result = cluster_customers(features, rng=np.random.default_rng(seed))

    assert result.k == 2
    assert result.silhouette_score > 0.5
    assert [cluster.characteristics.avg_mrr for cluster in result.clusters] == [1000.0, 10.0]
    assert [cluster.size for cluster in result.clusters] == [50, 50]


def test_auto_k_keeps_the_fit_it_scored():
    data = normalize_features(np.asarray([f.vector() for f in _two_price_points_four_sizes()]))

    k, fit = scan_cluster_counts(data, np.random.default_rng(1), n_init=5)

    assert k == 2
    assert fit is not None
    assert silhouette_score(data, fit.assignments, k) > 0.5


def test_find_optimal_k_prefers_fewer_clusters_on_ties():
    data = normalize_features(np.asarray([f.vector() for f in _two_groups()]))
    assert find_optimal_k(data, np.random.default_rng(7)) == 2


def test_single_cluster_has_zero_silhouette_and_total_variance_inertia():
    rng = np.random.default_rng(3)
    features = [
        ClusteringFeatures(
            customer_id=uuid4(),
            mrr=float(rng.integers(10, 1000)),
            tenure_months=float(rng.integers(1, 36)),
            growth_rate=float(rng.normal()),
            company_size=int(rng.integers(1, 5)),
            usage_score=float(rng.integers(0, 101)),
        )
        for _ in range(30)
    ]

    result = cluster_customers(features, k=1, rng=np.random.default_rng(0))

    data = normalize_features(np.asarray([f.vector() for f in features]))
    expected_inertia = float(((data - data.mean(axis=0)) ** 2).sum())
    assert result.k == 1
    assert result.silhouette_score == 0.0
    assert result.inertia == pytest.approx(expected_inertia)
    assert result.converged is True
    assert result.clusters[0].size == 30


def test_same_seed_gives_same_clusters():
    features = _two_groups(20)
    first = cluster_customers(features, k=3, rng=np.random.default_rng(11))
    second = cluster_customers(features, k=3, rng=np.random.default_rng(11))
    assert [c.member_ids for c in first.clusters] == [c.member_ids for c in second.clusters]


def test_no_features_gives_empty_result():
    result = cluster_customers([])
    assert result.k == 0
    assert result.clusters == []


@pytest.mark.parametrize(
    "chars, expected",
    [
        (dict(avg_mrr=6000, avg_tenure=24, avg_growth_rate=0, avg_company_size=4), "Enterprise Loyalists"),
        (dict(avg_mrr=6000, avg_tenure=2, avg_growth_rate=0, avg_company_size=4), "Rising Stars"),
        (dict(avg_mrr=800, avg_tenure=10, avg_growth_rate=0.2, avg_company_size=2), "Growth Accounts"),
        (dict(avg_mrr=800, avg_tenure=24, avg_growth_rate=0, avg_company_size=2), "Steady State"),
        (dict(avg_mrr=100, avg_tenure=2, avg_growth_rate=0, avg_company_size=1), "New Starters"),
        (dict(avg_mrr=100, avg_tenure=10, avg_growth_rate=-0.2, avg_company_size=1), "At-Risk Accounts"),
        (dict(avg_mrr=100, avg_tenure=10, avg_growth_rate=0, avg_company_size=1), "Small Segment"),
    ],
)
def test_label_cluster(chars, expected):
    name, description = label_cluster(ClusterCharacteristics(avg_usage_score=50, **chars))
    assert name == expected
    assert description
