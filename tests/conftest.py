"""
Pytest configuration file.

Ensures the repo root is on sys.path so that 'import grnjdr' works without an
install, and provides small synthetic cohorts shared by the test modules.
"""
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))


def _sample_ids(n):
    return [f"TCGA-AA-{i:04d}-01" for i in range(n)]


@pytest.fixture
def survival_cohort():
    """
    120 samples where Factor1 drives the hazard and Factor2/Factor3 are noise.
    """
    rng = np.random.default_rng(0)
    n = 120
    samples = _sample_ids(n)
    factors = pd.DataFrame(
        {
            "Factor1": rng.normal(size=n),
            "Factor2": rng.normal(size=n),
            "Factor3": rng.normal(size=n),
        },
        index=samples,
    )
    hazard = 0.001 * np.exp(1.2 * factors["Factor1"].to_numpy())
    event_time = rng.exponential(1.0 / hazard)
    censor_time = rng.exponential(3000.0, size=n)
    time = np.minimum(event_time, censor_time) + 1.0
    event = (event_time <= censor_time).astype(int)
    survival = pd.DataFrame({"time": time, "event": event}, index=samples)
    return factors, survival


@pytest.fixture
def omics_views():
    """Two small matched views (samples x features) without missing values."""
    rng = np.random.default_rng(1)
    n = 30
    samples = _sample_ids(n)
    latent = rng.normal(size=(n, 2))
    expr = latent @ rng.normal(size=(2, 40)) + 0.3 * rng.normal(size=(n, 40))
    indeg = latent @ rng.normal(size=(2, 25)) + 0.3 * rng.normal(size=(n, 25))
    return {
        "expression": pd.DataFrame(expr, index=samples,
                                   columns=[f"GENE{i}" for i in range(40)]),
        "indegree": pd.DataFrame(indeg, index=samples,
                                 columns=[f"GENE{i}" for i in range(25)]),
    }
