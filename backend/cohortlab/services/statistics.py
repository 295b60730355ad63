"""Statistics engine: per-variant aggregation and significance testing."""
import math
from typing import Dict, Iterable, List, Optional

from cohortlab.models.experiment import (
    Experiment,
    ExperimentEvent,
    ExperimentResults,
    Recommendation,
    SignificanceTest,
    VariantMetrics,
)

Z_95 = 1.96
SIGNIFICANCE_LEVEL = 0.05


def normal_cdf(x: float) -> float:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1 + math.erf(x / math.sqrt(2)))


def two_tailed_p_value(z_score: float) -> float:
    return 2 * (1 - normal_cdf(abs(z_score)))


def variant_metrics(events: List[ExperimentEvent], primary_metric: str) -> VariantMetrics:
    """
    Aggregate the events of one variant.

    Sample size counts distinct users with at least one event. Mean and
    standard error are taken over primary-metric events, where an event
    without a value counts as 1.
    """
    users = {event.user_id for event in events}
    sample_size = len(users)

    conversions = [event for event in events if event.event_type == primary_metric]
    values = [event.value if event.value is not None else 1.0 for event in conversions]
    n = len(values)

    conversion_rate = n / sample_size if sample_size else 0.0
    mean = sum(values) / n if n else 0.0

    standard_error = 0.0
    if n > 1:
        variance = sum((value - mean) ** 2 for value in values) / (n - 1)
        standard_error = math.sqrt(variance / n)

    margin = Z_95 * standard_error
    custom_metrics = {
        "total_events": float(len(events)),
        "unique_users": float(sample_size),
        "average_events_per_user": len(events) / sample_size if sample_size else 0.0,
    }

    return VariantMetrics(
        sample_size=sample_size,
        conversion_rate=conversion_rate,
        mean=mean,
        standard_error=standard_error,
        confidence_interval=(mean - margin, mean + margin),
        custom_metrics=custom_metrics,
    )


def significance_test(experiment: Experiment, metrics: Dict[str, VariantMetrics]) -> SignificanceTest:
    """
    Normal-approximation z-test of control against the best treatment.

    Experiments without a control or without a treatment get a neutral
    result (p = 1, z = 0).
    """
    control = experiment.control
    treatments = [v for v in experiment.variants if not v.is_control]
    if control is None or not treatments:
        return SignificanceTest()

    best = max(treatments, key=lambda v: metrics[v.id].mean)
    control_metrics = metrics[control.id]
    treatment_metrics = metrics[best.id]

    pooled_se = math.sqrt(control_metrics.standard_error ** 2 + treatment_metrics.standard_error ** 2)
    z_score = (treatment_metrics.mean - control_metrics.mean) / pooled_se if pooled_se > 0 else 0.0
    p_value = two_tailed_p_value(z_score)

    return SignificanceTest(
        p_value=p_value,
        z_score=z_score,
        significant=p_value < SIGNIFICANCE_LEVEL,
        control_variant=control.id,
        treatment_variant=best.id,
    )


def recommend(significance: SignificanceTest, metrics: Dict[str, VariantMetrics]) -> Recommendation:
    if not significance.significant:
        return Recommendation.INCONCLUSIVE

    control = metrics[significance.control_variant]
    treatment = metrics[significance.treatment_variant]
    if treatment.mean > control.mean:
        return Recommendation.WINNER
    return Recommendation.ROLLBACK


def winning_variant(metrics: Dict[str, VariantMetrics]) -> Optional[str]:
    best_id = None
    best_mean = -math.inf
    for variant_id, metric in metrics.items():
        if metric.mean > best_mean:
            best_mean = metric.mean
            best_id = variant_id
    return best_id


def compute_results(experiment: Experiment, events: Iterable[ExperimentEvent]) -> ExperimentResults:
    """Aggregate an experiment's events into a results snapshot."""
    by_variant: Dict[str, List[ExperimentEvent]] = {v.id: [] for v in experiment.variants}
    for event in events:
        if event.experiment_id == experiment.id and event.variant_id in by_variant:
            by_variant[event.variant_id].append(event)

    metrics = {
        variant_id: variant_metrics(variant_events, experiment.primary_metric)
        for variant_id, variant_events in by_variant.items()
    }
    significance = significance_test(experiment, metrics)

    return ExperimentResults(
        experiment_id=experiment.id,
        sample_sizes={variant_id: m.sample_size for variant_id, m in metrics.items()},
        metrics=metrics,
        significance=significance,
        recommendation=recommend(significance, metrics),
        winning_variant=winning_variant(metrics) if significance.significant else None,
        confidence=experiment.confidence_level,
        sample_size_reached=all(m.sample_size >= experiment.minimum_sample_size for m in metrics.values()),
    )
