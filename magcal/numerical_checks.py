#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Numerical Validation and Tripwire Module
========================================

Guards used by the fitters to turn NaN/inf results and rank-deficient
systems into NumericalInstabilityError instead of propagating garbage
parameters into the consensus loop.
"""

import numpy as np

from .errors import NumericalInstabilityError
from . import config


def assert_finite(name, M, extra_info=None, raise_on_fail=False, verbose=None):
    """
    Tripwire: Check matrix/vector for inf/nan and dump diagnostics if found.

    Parameters:
    -----------
    name : str
        Descriptive name of the quantity being checked
    M : np.ndarray
        Matrix or vector to validate
    extra_info : dict, optional
        Additional diagnostic information to dump
    raise_on_fail : bool
        If True, raises NumericalInstabilityError on failure.
    verbose : bool, optional
        Dump diagnostics. Defaults to config.VERBOSE_DEBUG.

    Returns:
    --------
    bool : True if finite, False if inf/nan detected
    """
    if verbose is None:
        verbose = config.VERBOSE_DEBUG

    if M is None:
        if verbose:
            print(f"[TRIPWIRE] {name}: is None!")
        if raise_on_fail:
            raise NumericalInstabilityError(f"{name} is None")
        return False

    M = np.asarray(M)
    if np.all(np.isfinite(M)):
        return True

    if verbose:
        print(f"[TRIPWIRE] NaN/inf DETECTED in {name}, shape={M.shape}, "
              f"nan={np.any(np.isnan(M))}, inf={np.any(np.isinf(M))}")
        if M.size <= 36:
            print(f"[TRIPWIRE] {name}=\n{M}")
        if extra_info:
            for key, val in extra_info.items():
                if isinstance(val, np.ndarray) and val.size > 10:
                    print(f"[TRIPWIRE]   {key}: shape={val.shape}, norm={np.linalg.norm(val):.6e}")
                else:
                    print(f"[TRIPWIRE]   {key}: {val}")

    if raise_on_fail:
        raise NumericalInstabilityError(f"NaN/inf detected in {name}")
    return False


def check_rank(name, A, expected_rank, rtol=1e-10):
    """
    Raise NumericalInstabilityError when A has numerical rank below
    expected_rank.

    The singular values are compared relative to the largest one so the
    test does not depend on the flux density units.
    """
    assert_finite(name, A, raise_on_fail=True)
    s = np.linalg.svd(A, compute_uv=False)
    if s.size < expected_rank or s[0] <= 0.0:
        raise NumericalInstabilityError(f"{name}: rank deficient (empty spectrum)")
    rank = int(np.sum(s > rtol * s[0]))
    if rank < expected_rank:
        if config.VERBOSE_DEBUG:
            print(f"[TRIPWIRE] {name}: rank {rank} < {expected_rank}, "
                  f"sigma_min/sigma_max={s[-1] / s[0]:.3e}")
        raise NumericalInstabilityError(
            f"{name}: rank {rank} below required {expected_rank}")
    return s
