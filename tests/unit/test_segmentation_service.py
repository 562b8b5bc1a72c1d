"""Unit tests for segment criteria and segment definitions."""
from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from saas_ontology.models import CompanySize, ExpansionEvent
from saas_ontology.schemas.segmentation import (
    Cluster,
    ClusterCharacteristics,
    ClusteringResult,
    CompanySizeCriterion,
    MrrRangeCriterion,
    RFMSegment,
    RfmSegmentCriterion,
    TenureRangeCriterion,
    UnknownCriterion,
)
from saas_ontology.services.segmentation_service import (
    build_clustering_features,
    build_segment_definitions,
    calculate_quality_metrics,
    criterion_matches,
    estimated_churn_rate,
    parse_criteria,
    segment_matches,
)
from tests.utils.factories import CustomerFactory, ExpansionEventFactory


def test_parse_criteria_reads_legacy_map_form():
    criteria = parse_criteria(
        {
            "mrrRange": {"min": 100, "max": 500},
            "tenureRange": {"min": 3, "max": 12},
            "companySizes": ["smb"],
            "rfmSegments": ["champions"],
            "industries": ["retail"],
        }
    )

    assert criteria[0] == MrrRangeCriterion(min=100, max=500)
    assert criteria[1] == TenureRangeCriterion(min_months=3, max_months=12)
    assert criteria[2] == CompanySizeCriterion(sizes=["smb"])
    assert criteria[3] == RfmSegmentCriterion(segments=[RFMSegment.CHAMPIONS])
    assert criteria[4] == UnknownCriterion(raw={"industries": ["retail"]})


def test_parse_criteria_reads_tagged_list_and_keeps_unknown_entries():
    criteria = parse_criteria(
        [
            {"kind": "mrr_range", "min": 10},
            {"kind": "geo", "countries": ["DE"]},
            "garbage",
        ]
    )

    assert criteria[0] == MrrRangeCriterion(min=10)
    assert criteria[1] == UnknownCriterion(raw={"kind": "geo", "countries": ["DE"]})
    assert criteria[2] == UnknownCriterion(raw={"value": "garbage"})


def test_parse_criteria_of_nothing():
    assert parse_criteria(None) == []
    assert parse_criteria({}) == []


def test_criterion_matches():
    customer = CustomerFactory.build({"mrr": 250.0, "tenure_months": 8, "company_size": CompanySize.SMB})

    assert criterion_matches(MrrRangeCriterion(min=100, max=300), customer)
    assert not criterion_matches(MrrRangeCriterion(min=300), customer)
    assert criterion_matches(TenureRangeCriterion(max_months=8), customer)
    assert not criterion_matches(TenureRangeCriterion(min_months=12), customer)
    assert criterion_matches(CompanySizeCriterion(sizes=["smb", "startup"]), customer)
    assert not criterion_matches(CompanySizeCriterion(sizes=["enterprise"]), customer)
    assert criterion_matches(CompanySizeCriterion(sizes=[]), customer)
    assert criterion_matches(UnknownCriterion(raw={"x": 1}), customer)


def test_rfm_criterion_only_restricts_scored_customers():
    customer = CustomerFactory.build()
    criterion = RfmSegmentCriterion(segments=[RFMSegment.CHAMPIONS])

    assert criterion_matches(criterion, customer)
    assert criterion_matches(criterion, customer, "champions")
    assert not criterion_matches(criterion, customer, "lost")


def test_segment_matches_requires_every_criterion():
    customer = CustomerFactory.build({"mrr": 250.0, "tenure_months": 8})
    assert segment_matches([MrrRangeCriterion(min=100), TenureRangeCriterion(max_months=10)], customer)
    assert not segment_matches([MrrRangeCriterion(min=100), TenureRangeCriterion(max_months=4)], customer)


def test_estimated_churn_rate():
    assert estimated_churn_rate(24) == 0.03
    assert estimated_churn_rate(12) == 0.08


def test_clustering_features_growth_rate_uses_recent_events():
    as_of = datetime(2024, 6, 1)
    customer = CustomerFactory.build({"mrr": 200.0, "company_size": CompanySize.ENTERPRISE})
    events = [
        ExpansionEvent(**ExpansionEventFactory.create({"customer_id": customer.id, "mrr_delta": 50.0, "occurred_at": as_of - timedelta(days=30)})),
        ExpansionEvent(**ExpansionEventFactory.create({"customer_id": customer.id, "mrr_delta": 999.0, "occurred_at": datetime(2023, 1, 1)})),
    ]

    [features] = build_clustering_features([customer], events, as_of)

    assert features.growth_rate == 0.25
    assert features.company_size == 4
    assert features.usage_score == 50.0


def _cluster(cluster_id: int, name: str, members, avg_tenure: float) -> Cluster:
    return Cluster(
        id=cluster_id,
        centroid=[0.0] * 5,
        member_ids=[m.id for m in members],
        size=len(members),
        characteristics=ClusterCharacteristics(
            avg_mrr=sum(m.mrr for m in members) / len(members),
            avg_tenure=avg_tenure,
            avg_growth_rate=0.0,
            avg_company_size=2,
            avg_usage_score=50,
        ),
        name=name,
        description=f"{name} customers",
    )


def test_segment_definitions_economics_and_duplicate_names():
    """Test that clusters with the same label become distinctly named segments."""
    big = [CustomerFactory.build({"mrr": 300.0, "tenure_months": 24}) for _ in range(3)]
    small = [CustomerFactory.build({"mrr": 100.0, "tenure_months": 2}) for _ in range(2)]
    clustering = ClusteringResult(
        clusters=[_cluster(0, "Steady State", big, 24), _cluster(1, "Steady State", small, 2)],
        k=2,
        silhouette_score=0.6,
    )

    segments = build_segment_definitions(clustering, big + small, rfm_scores=[])

    assert [s.name for s in segments] == ["Steady State", "Steady State 2"]
    first, second = segments
    assert first.customer_count == 3
    assert first.total_mrr == 900.0
    assert first.churn_rate == 0.03
    assert second.churn_rate == 0.08
    assert first.avg_ltv == pytest.approx(300.0 * 12 / 0.03 * 0.7)
    assert first.retention_curve[0] == 1.0
    assert len(first.retention_curve) == 12
    assert first.revenue_share == pytest.approx(0.818181, rel=1e-4)
    assert first.criteria[0] == MrrRangeCriterion(min=300.0, max=300.0)

    quality = calculate_quality_metrics(segments, clustering)
    assert quality.segment_count == 2
    assert quality.avg_segment_size == 2.5
    assert quality.silhouette_score == 0.6
    assert quality.economics_variance > 0
