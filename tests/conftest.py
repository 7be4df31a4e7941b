import os

import arviz as az
import numpy as np
import pandas as pd
import pytest
from ete3 import Tree

from mvpmm.analysis.comparative_methods import phylo_vcv
from mvpmm.core.config import DefaultConfig
from mvpmm.methods.bayesian import MultivariatePMM

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXAMPLES_DIR = os.path.join(BASE_DIR, "examples")


def make_posterior(data, A, n_chains=2, n_draws=200, seed=1):
    """
    Posterior-shaped InferenceData for a bivariate gaussian MV-PMM with
    residual correlation, centred near the observed data.
    """
    rng = np.random.default_rng(seed)
    traits = ['y1', 'y2']
    taxa = list(data['animal'])
    n, k = len(taxa), len(traits)
    Y = data[traits].values.astype(float)
    shape = (n_chains, n_draws)

    intercept = Y.mean(axis=0) + rng.normal(0, 0.05, shape + (k,))
    sd_phylo = np.abs(0.6 + rng.normal(0, 0.05, shape + (k,)))
    cor_phylo = np.tile(np.array([[1.0, 0.4], [0.4, 1.0]]), shape + (1, 1))
    effect = 0.8 * (Y - Y.mean(axis=0))[None, None] + rng.normal(0, 0.05, shape + (n, k))
    sd_resid = np.abs(0.3 + rng.normal(0, 0.02, shape + (k,)))
    cor_resid = np.tile(np.eye(k), shape + (1, 1))
    L_A = np.linalg.cholesky(A.loc[taxa, taxa].values)

    return az.from_dict(
        posterior={
            'Intercept': intercept,
            'sd_phylo': sd_phylo,
            'cor_phylo': cor_phylo,
            'phylo_effect': effect,
            'sd_resid': sd_resid,
            'cor_resid': cor_resid,
        },
        sample_stats={'diverging': np.zeros(shape, dtype=bool)},
        observed_data={'y': Y},
        constant_data={'L_A': L_A},
        coords={'obs': taxa, 'obs_bis': taxa, 'trait': traits, 'trait_bis': traits},
        dims={
            'Intercept': ['trait'],
            'sd_phylo': ['trait'],
            'cor_phylo': ['trait', 'trait_bis'],
            'phylo_effect': ['obs', 'trait'],
            'sd_resid': ['trait'],
            'cor_resid': ['trait', 'trait_bis'],
            'y': ['obs', 'trait'],
            'L_A': ['obs', 'obs_bis'],
        },
    )


@pytest.fixture
def example_tree():
    return Tree(os.path.join(EXAMPLES_DIR, "simulated_tree.nwk"), format=1)


@pytest.fixture
def example_traits():
    data = pd.read_csv(os.path.join(EXAMPLES_DIR, "simulated_traits.csv"))
    data['obs'] = np.arange(1, len(data) + 1)
    return data


@pytest.fixture
def fitted_pmm(example_tree, example_traits):
    A = phylo_vcv(example_tree, taxa=example_traits['animal'], corr=True)
    config = DefaultConfig()
    config.save_plots = False
    return MultivariatePMM.from_inference_data(make_posterior(example_traits, A), config)
