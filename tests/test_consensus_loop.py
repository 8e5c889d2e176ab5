import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from magcal.errors import NumericalInstabilityError, RobustEstimationError
from magcal.robust.estimators import (
    BoundedCostScorer,
    ConsensusLoop,
    InlierCountScorer,
    MedianScorer,
    ProgressiveSampler,
    UniformSampler,
    adaptive_iterations,
)
from magcal.robust.types import RobustEstimatorMethod, RobustEstimatorSettings


TRUE_VALUE = 5.0


class ConstantModel:
    """Toy 1-D model: every inlier observes TRUE_VALUE exactly."""

    def __init__(self, rng, n=200, outlier_fraction=0.2):
        self.data = np.full(n, TRUE_VALUE)
        self.outliers = rng.uniform(0.0, 1.0, n) < outlier_fraction
        self.data[self.outliers] = rng.uniform(100.0, 200.0, int(self.outliers.sum()))
        self.quality = np.where(self.outliers, 0.1, 1.0) + rng.uniform(0.0, 0.05, n)

    def fit(self, indices):
        return [float(np.mean(self.data[indices]))]

    def residuals(self, value):
        return np.abs(self.data - value)


def _settings(method, quality=None, **kw):
    values = dict(method=method, subset_size=2, confidence=0.99,
                  max_iterations=5000, progress_delta=0.05,
                  threshold=1e-6, stop_threshold=1e-9, inlier_factor=1.5,
                  quality_scores=quality)
    values.update(kw)
    return RobustEstimatorSettings(**values)


def test_adaptive_iterations():
    assert adaptive_iterations(1.0, 4, 0.99, 5000) == 1
    assert adaptive_iterations(0.0, 4, 0.99, 5000) == 5000
    assert adaptive_iterations(0.5, 2, 0.99, 5000) == 17
    assert adaptive_iterations(0.8, 4, 0.99, 5000) == 9
    assert adaptive_iterations(0.01, 13, 0.99, 5000) == 5000


def test_every_method_recovers_constant():
    rng = np.random.default_rng(21)
    for method in RobustEstimatorMethod:
        num_valid = 0
        for _ in range(10):
            model = ConstantModel(rng)
            quality = model.quality if method.is_progressive else None
            loop = ConsensusLoop(_settings(method, quality), model.data.size,
                                 model.fit, model.residuals, rng=rng)

            value, evaluation = loop.estimate()
            assert loop.iterations < 5000

            if value != pytest.approx(TRUE_VALUE):
                continue
            assert evaluation.num_inliers == int((~model.outliers).sum())
            assert np.array_equal(evaluation.inliers, ~model.outliers)
            num_valid += 1

        assert num_valid > 0, method.name


def test_median_method_stops_when_median_below_stop_threshold():
    rng = np.random.default_rng(22)
    model = ConstantModel(rng, outlier_fraction=0.1)
    # Best-quality samples are inliers: the first subset is outlier free
    loop = ConsensusLoop(_settings(RobustEstimatorMethod.PROMEDS, model.quality),
                         model.data.size,
                         model.fit, model.residuals, rng=rng)

    _, evaluation = loop.estimate()

    assert evaluation.score == 0.0
    assert loop.iterations == 1
    # Threshold never falls below the stop threshold
    assert evaluation.threshold == 1e-9


def test_iteration_and_progress_notifications():
    rng = np.random.default_rng(23)
    model = ConstantModel(rng)
    iterations = []
    progress = []
    loop = ConsensusLoop(_settings(RobustEstimatorMethod.RANSAC, progress_delta=0.01),
                         model.data.size, model.fit, model.residuals,
                         on_next_iteration=iterations.append,
                         on_progress_change=progress.append, rng=rng)
    loop.estimate()

    assert iterations == list(range(1, loop.iterations + 1))
    assert len(progress) >= 1
    assert all(0.0 < p <= 1.0 for p in progress)
    assert all(b - a >= 0.01 for a, b in zip(progress, progress[1:]))


def test_discarded_subsets_count_toward_max_iterations():
    rng = np.random.default_rng(24)
    model = ConstantModel(rng)

    def always_unstable(indices):
        raise NumericalInstabilityError("singular subset")

    loop = ConsensusLoop(_settings(RobustEstimatorMethod.MSAC, max_iterations=50),
                         model.data.size, always_unstable, model.residuals, rng=rng)
    with pytest.raises(RobustEstimationError):
        loop.estimate()
    assert loop.iterations == 50
    assert loop.discarded_subsets == 50


def test_discarded_subsets_are_not_effective_iterations():
    rng = np.random.default_rng(25)
    model = ConstantModel(rng, outlier_fraction=0.0)
    calls = []

    def flaky(indices):
        calls.append(1)
        if len(calls) % 2 == 1:
            raise NumericalInstabilityError("unstable")
        return model.fit(indices)

    loop = ConsensusLoop(_settings(RobustEstimatorMethod.RANSAC), model.data.size,
                         flaky, model.residuals, rng=rng)
    value, _ = loop.estimate()

    assert value == pytest.approx(TRUE_VALUE)
    # All-inlier data: bound is 1 effective iteration
    assert loop.iterations == 2
    assert loop.discarded_subsets == 1


def test_candidate_needs_subset_size_inliers():
    rng = np.random.default_rng(26)
    # All values distinct: the mean of two values is within 1e-12 of none
    data = rng.uniform(0.0, 1.0, 50)
    loop = ConsensusLoop(
        _settings(RobustEstimatorMethod.RANSAC, threshold=1e-12, max_iterations=30),
        data.size, lambda idx: [float(np.mean(data[idx]))],
        lambda value: np.abs(data - value), rng=rng)
    with pytest.raises(RobustEstimationError):
        loop.estimate()
    assert loop.iterations == 30


def test_too_few_samples_raises():
    loop = ConsensusLoop(_settings(RobustEstimatorMethod.LMEDS, subset_size=5), 4,
                         lambda idx: [0.0], lambda value: np.zeros(4))
    with pytest.raises(RobustEstimationError):
        loop.estimate()


def test_scorers():
    residuals = np.array([0.0, 1.0, 2.0, 3.0, 100.0])

    count = InlierCountScorer(2.0).evaluate(residuals)
    assert count.num_inliers == 3
    assert count.residual_sum == 3.0

    msac = BoundedCostScorer(2.0).evaluate(residuals)
    assert msac.score == pytest.approx(0.0 + 1.0 + 2.0 + 2.0 + 2.0)

    median = MedianScorer(stop_threshold=1e-9, inlier_factor=1.5,
                          total_samples=5, subset_size=2)
    evaluation = median.evaluate(residuals)
    expected_threshold = 1.5 * 1.4826 * (1.0 + 5.0 / 3.0) * 2.0
    assert evaluation.score == 2.0
    assert evaluation.threshold == pytest.approx(expected_threshold)
    assert evaluation.num_inliers == 4
    assert not median.converged(evaluation)

    floored = median.evaluate(np.zeros(5))
    assert floored.threshold == 1e-9
    assert median.converged(floored)


def test_inlier_count_ties_prefer_lower_residual_sum():
    scorer = InlierCountScorer(1.0)
    a = scorer.evaluate(np.array([0.5, 0.5, 5.0]))
    b = scorer.evaluate(np.array([0.1, 0.1, 5.0]))
    assert scorer.improves(b, a)
    assert not scorer.improves(a, b)
    assert scorer.improves(a, None)


def test_uniform_sampler_draws_distinct_indices():
    sampler = UniformSampler(10, 4, np.random.default_rng(27))
    for _ in range(20):
        idx = sampler.draw()
        assert len(set(idx.tolist())) == 4
        assert idx.min() >= 0 and idx.max() < 10


def test_progressive_sampler_starts_with_best_quality():
    rng = np.random.default_rng(28)
    quality = rng.uniform(0.0, 1.0, 100)
    best_three = set(np.argsort(-quality)[:3].tolist())
    sampler = ProgressiveSampler(quality, 2, 10000, rng)

    first = sampler.draw()
    assert set(first.tolist()) <= best_three

    for _ in range(20000):
        idx = sampler.draw()
        assert len(set(idx.tolist())) == 2
    # Eventually the whole set is sampled
    assert sampler.n == 100
