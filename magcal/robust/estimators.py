"""
Sample-Consensus Loop

One loop drives the five robust methods. Each method is a combination of a
sampling policy and a scoring policy:

    Method    Sampler        Scorer
    -------   ------------   -----------------------------------------
    RANSAC    uniform        inlier count, ties -> lowest residual sum
    LMedS     uniform        median residual
    MSAC      uniform        bounded cost sum(min(r, threshold))
    PROSAC    progressive    inlier count, ties -> lowest residual sum
    PROMedS   progressive    median residual

Loop per iteration:
    1. draw subset_size distinct measurement indices
    2. fit candidate solution(s) on the subset (NumericalInstabilityError
       discards the subset)
    3. residual of every measurement under each candidate
    4. classify inliers and score; keep the best valid candidate
    5. shrink the iteration bound from the best inlier ratio:
           N = log(1 - confidence) / log(1 - ratio^subset_size)

A candidate is valid only when it has at least subset_size inliers.
Discarded subsets count toward max_iterations but not toward the adaptive
bound.

Author: magcal project
"""

import math
import numpy as np
from typing import Callable, Optional, Sequence

from ..errors import NumericalInstabilityError, RobustEstimationError
from .. import config
from .types import RobustEstimatorMethod, RobustEstimatorSettings


# Scale of the median absolute deviation of a normal distribution
MAD_CONSISTENCY = 1.4826

# Finite-sample correction numerator of the LMedS scale estimate
LMEDS_SMALL_SAMPLE_CORRECTION = 5.0


def adaptive_iterations(inlier_ratio: float, subset_size: int,
                        confidence: float, max_iterations: int) -> int:
    """
    Iterations needed to draw one all-inlier subset with the given
    confidence, clamped to [1, max_iterations].
    """
    if inlier_ratio >= 1.0:
        return 1
    p = inlier_ratio ** subset_size
    if p <= 0.0:
        return max_iterations
    denom = math.log1p(-p)
    if denom >= 0.0:
        return max_iterations
    n = math.log(1.0 - confidence) / denom
    if not math.isfinite(n) or n >= max_iterations:
        return max_iterations
    return max(1, int(math.ceil(n)))


class CandidateEvaluation:
    """Inlier classification and score of one candidate solution."""

    __slots__ = ("residuals", "inliers", "num_inliers", "threshold",
                 "score", "residual_sum")

    def __init__(self, residuals, inliers, threshold, score):
        self.residuals = residuals
        self.inliers = inliers
        self.num_inliers = int(np.count_nonzero(inliers))
        self.threshold = float(threshold)
        self.score = float(score)
        self.residual_sum = float(np.sum(residuals[inliers]))


# =============================================================================
# Scoring policies
# =============================================================================

class InlierCountScorer:
    """RANSAC/PROSAC: fixed threshold, maximize inliers."""

    def __init__(self, threshold: float):
        self.threshold = threshold

    def evaluate(self, residuals: np.ndarray) -> CandidateEvaluation:
        inliers = residuals <= self.threshold
        return CandidateEvaluation(residuals, inliers, self.threshold,
                                   np.count_nonzero(inliers))

    def improves(self, evaluation, best) -> bool:
        if best is None:
            return True
        if evaluation.num_inliers != best.num_inliers:
            return evaluation.num_inliers > best.num_inliers
        return evaluation.residual_sum < best.residual_sum

    def converged(self, best) -> bool:
        return False


class BoundedCostScorer:
    """MSAC: fixed threshold, minimize sum(min(r, threshold))."""

    def __init__(self, threshold: float):
        self.threshold = threshold

    def evaluate(self, residuals: np.ndarray) -> CandidateEvaluation:
        inliers = residuals <= self.threshold
        cost = np.sum(np.minimum(residuals, self.threshold))
        return CandidateEvaluation(residuals, inliers, self.threshold, cost)

    def improves(self, evaluation, best) -> bool:
        return best is None or evaluation.score < best.score

    def converged(self, best) -> bool:
        return False


class MedianScorer:
    """
    LMedS/PROMedS: minimize the median residual.

    Inlier threshold is a robust scale estimate derived from the median:
        inlier_factor * 1.4826 * (1 + 5 / (n - subset_size)) * median
    and never falls below stop_threshold.
    """

    def __init__(self, stop_threshold: float, inlier_factor: float,
                 total_samples: int, subset_size: int):
        self.stop_threshold = stop_threshold
        self.inlier_factor = inlier_factor
        self.scale_factor = MAD_CONSISTENCY * (
            1.0 + LMEDS_SMALL_SAMPLE_CORRECTION / max(total_samples - subset_size, 1))

    def evaluate(self, residuals: np.ndarray) -> CandidateEvaluation:
        median = float(np.median(residuals))
        threshold = max(self.inlier_factor * self.scale_factor * median,
                        self.stop_threshold)
        inliers = residuals <= threshold
        return CandidateEvaluation(residuals, inliers, threshold, median)

    def improves(self, evaluation, best) -> bool:
        return best is None or evaluation.score < best.score

    def converged(self, best) -> bool:
        return best.score < self.stop_threshold


# =============================================================================
# Sampling policies
# =============================================================================

class UniformSampler:
    """Uniform subsets without replacement."""

    def __init__(self, total_samples: int, subset_size: int, rng: np.random.Generator):
        self.total_samples = total_samples
        self.subset_size = subset_size
        self.rng = rng

    def draw(self) -> np.ndarray:
        return self.rng.choice(self.total_samples, self.subset_size, replace=False)


class ProgressiveSampler:
    """
    PROSAC sampler (Chum & Matas, 2005).

    Samples are drawn from a prefix of the measurements sorted by descending
    quality score. The prefix grows following the expected number of draws
    T'_n so that sampling degrades into uniform sampling over all
    measurements after about max_iterations draws.
    """

    def __init__(self, quality_scores: Sequence[float], subset_size: int,
                 max_iterations: int, rng: np.random.Generator):
        scores = np.asarray(quality_scores, dtype=float)
        self.order = np.argsort(-scores, kind="stable")
        self.total_samples = scores.size
        self.subset_size = subset_size
        self.rng = rng

        m = subset_size
        t_n = float(max_iterations)
        for i in range(m):
            t_n *= (m - i) / (self.total_samples - i)
        self.n = m
        self.t_n = t_n
        self.t_n_prime = 1
        self.t = 0

    def _grow(self):
        m = self.subset_size
        t_next = self.t_n * (self.n + 1) / (self.n + 1 - m)
        self.n += 1
        self.t_n_prime += int(math.ceil(t_next - self.t_n))
        self.t_n = t_next

    def draw(self) -> np.ndarray:
        self.t += 1
        while self.t >= self.t_n_prime and self.n < self.total_samples:
            self._grow()

        m = self.subset_size
        if self.t_n_prime < self.t:
            positions = self.rng.choice(self.n, m, replace=False)
        else:
            positions = np.append(
                self.rng.choice(self.n - 1, m - 1, replace=False), self.n - 1)
        return self.order[positions]


# =============================================================================
# Consensus loop
# =============================================================================

class ConsensusLoop:
    """
    Generic consensus driver parameterized by a RobustEstimatorSettings
    snapshot.

    Args:
        settings: Frozen loop configuration
        total_samples: Number of measurements
        fit_subset: callable(indices) -> list of candidate solutions. May
            raise NumericalInstabilityError.
        compute_residuals: callable(candidate) -> residual per measurement
        on_next_iteration: callable(iteration) fired for every subset attempt
        on_progress_change: callable(progress) fired when progress advanced
            by at least progress_delta
        rng: numpy Generator used for sampling
    """

    def __init__(self, settings: RobustEstimatorSettings, total_samples: int,
                 fit_subset: Callable, compute_residuals: Callable,
                 on_next_iteration: Optional[Callable] = None,
                 on_progress_change: Optional[Callable] = None,
                 rng: Optional[np.random.Generator] = None,
                 verbose: bool = False):
        self.settings = settings
        self.total_samples = total_samples
        self.fit_subset = fit_subset
        self.compute_residuals = compute_residuals
        self.on_next_iteration = on_next_iteration
        self.on_progress_change = on_progress_change
        self.rng = rng if rng is not None else np.random.default_rng()
        self.verbose = verbose or config.VERBOSE_ROBUST

        self.iterations = 0
        self.discarded_subsets = 0

    def _make_sampler(self):
        s = self.settings
        if s.method.is_progressive:
            return ProgressiveSampler(s.quality_scores, s.subset_size,
                                      s.max_iterations, self.rng)
        return UniformSampler(self.total_samples, s.subset_size, self.rng)

    def _make_scorer(self):
        s = self.settings
        if s.method.is_median_based:
            return MedianScorer(s.stop_threshold, s.inlier_factor,
                                self.total_samples, s.subset_size)
        if s.method == RobustEstimatorMethod.MSAC:
            return BoundedCostScorer(s.threshold)
        return InlierCountScorer(s.threshold)

    def estimate(self):
        """
        Run the loop.

        Returns:
            (best_candidate, best_evaluation)

        Raises:
            RobustEstimationError: if no valid candidate was found
        """
        s = self.settings
        if self.total_samples < s.subset_size:
            raise RobustEstimationError(
                f"{self.total_samples} measurements, subset size {s.subset_size}")

        sampler = self._make_sampler()
        scorer = self._make_scorer()

        best_candidate = None
        best = None
        bound = s.max_iterations
        effective = 0
        last_progress = 0.0
        self.iterations = 0
        self.discarded_subsets = 0

        while self.iterations < s.max_iterations and effective < bound:
            self.iterations += 1
            indices = sampler.draw()
            if self.on_next_iteration is not None:
                self.on_next_iteration(self.iterations)

            try:
                candidates = self.fit_subset(indices)
            except NumericalInstabilityError as e:
                self.discarded_subsets += 1
                if self.verbose:
                    print(f"[ROBUST-LOOP] iter={self.iterations} subset discarded: {e}")
                continue
            effective += 1

            for candidate in candidates:
                try:
                    residuals = np.asarray(self.compute_residuals(candidate), dtype=float)
                except NumericalInstabilityError:
                    continue
                if not np.all(np.isfinite(residuals)):
                    continue

                evaluation = scorer.evaluate(residuals)
                if evaluation.num_inliers < s.subset_size:
                    continue
                if scorer.improves(evaluation, best):
                    best_candidate, best = candidate, evaluation
                    bound = adaptive_iterations(
                        best.num_inliers / self.total_samples, s.subset_size,
                        s.confidence, s.max_iterations)
                    if self.verbose:
                        print(f"[ROBUST-LOOP] iter={self.iterations} new best: "
                              f"inliers={best.num_inliers}/{self.total_samples} "
                              f"score={best.score:.6e} bound={bound}")

            if best is not None and scorer.converged(best):
                break

            progress = min(effective / bound, 1.0)
            if (self.on_progress_change is not None and progress > last_progress
                    and progress - last_progress >= s.progress_delta):
                last_progress = progress
                self.on_progress_change(progress)

        if best is None:
            raise RobustEstimationError(
                f"{s.method.name}: no valid candidate after {self.iterations} iterations "
                f"({self.discarded_subsets} subsets discarded)")
        return best_candidate, best
