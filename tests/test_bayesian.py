import os

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytest
from ete3 import Tree

from mvpmm.analysis.comparative_methods import phylo_vcv
from mvpmm.core.config import DefaultConfig
from mvpmm.methods.bayesian import MultivariatePMM, _safe_cholesky

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXAMPLES_DIR = os.path.join(BASE_DIR, "examples")


def bernoulli_posterior(data, A, n_chains=2, n_draws=100, seed=3):
    """Posterior-shaped InferenceData for a gaussian + bernoulli model without residual correlation."""
    rng = np.random.default_rng(seed)
    traits = ['y1', 'y2']
    taxa = list(data['animal'])
    n = len(taxa)
    shape = (n_chains, n_draws)
    idata = az.from_dict(
        posterior={
            'Intercept': rng.normal(0, 0.1, shape + (2,)),
            'sd_phylo': np.abs(rng.normal(0.5, 0.05, shape + (2,))),
            'cor_phylo': np.tile(np.eye(2), shape + (1, 1)),
            'phylo_effect': rng.normal(0, 0.3, shape + (n, 2)),
            'sigma_y1': np.abs(rng.normal(0.4, 0.02, shape)),
        },
        observed_data={'y_y1': data['y1'].values, 'y_y2': data['y2'].values},
        constant_data={'L_A': np.linalg.cholesky(A.loc[taxa, taxa].values)},
        coords={'obs': taxa, 'obs_bis': taxa, 'trait': traits, 'trait_bis': traits},
        dims={
            'Intercept': ['trait'],
            'sd_phylo': ['trait'],
            'cor_phylo': ['trait', 'trait_bis'],
            'phylo_effect': ['obs', 'trait'],
            'y_y1': ['obs'],
            'y_y2': ['obs'],
            'L_A': ['obs', 'obs_bis'],
        },
    )
    idata.posterior.attrs['families'] = 'gaussian,bernoulli'
    idata.posterior.attrs['residual_correlation'] = 0
    return idata


class TestModelConstruction:
    """
    Tests for building the PyMC model of the MV-PMM.
    """
    def setup_method(self, method):
        tree_path = os.path.join(EXAMPLES_DIR, "simulated_tree.nwk")
        traits_path = os.path.join(EXAMPLES_DIR, "simulated_traits.csv")
        if not os.path.exists(tree_path):
            raise FileNotFoundError(f"Test setup failed: Tree file not found at {tree_path}")
        if not os.path.exists(traits_path):
            raise FileNotFoundError(f"Test setup failed: Traits file not found at {traits_path}")
        self.tree = Tree(tree_path, format=1)
        self.data = pd.read_csv(traits_path)
        self.A = phylo_vcv(self.tree, corr=True)
        self.config = DefaultConfig()

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            MultivariatePMM(['y1'], ['gaussian'], self.config)
        with pytest.raises(ValueError):
            MultivariatePMM(['y1', 'y2'], ['gaussian'], self.config)
        with pytest.raises(ValueError):
            MultivariatePMM(['y1', 'y2'], ['gaussian', 'poisson'], self.config)

    def test_residual_correlation_only_for_gaussian(self):
        assert MultivariatePMM(['y1', 'y2'], ['gaussian', 'gaussian'], self.config).residual_correlation
        assert not MultivariatePMM(['y1', 'y2'], ['gaussian', 'bernoulli'], self.config).residual_correlation
        self.config.residual_correlation = False
        assert not MultivariatePMM(['y1', 'y2'], ['gaussian', 'gaussian'], self.config).residual_correlation

    def test_gaussian_model_variables(self):
        pmm = MultivariatePMM(['y1', 'y2'], ['gaussian', 'gaussian'], self.config)
        model = pmm.build_model(self.data, self.A)
        names = set(model.named_vars)
        for name in ('Intercept', 'sd_phylo', 'cor_phylo', 'z_phylo', 'phylo_effect', 'sd_resid',
                     'cor_resid', 'y', 'L_A'):
            assert name in names
        assert list(model.coords['trait']) == ['y1', 'y2']
        assert list(model.coords['obs']) == list(self.data['animal'])
        assert np.isfinite(model.compile_logp()(model.initial_point()))

    def test_mixed_family_model_variables(self):
        data = self.data.copy()
        data['y2'] = (data['y2'] > 0).astype(int)
        pmm = MultivariatePMM(['y1', 'y2'], ['gaussian', 'bernoulli'], self.config)
        model = pmm.build_model(data, self.A)
        names = set(model.named_vars)
        assert {'sigma_y1', 'y_y1', 'y_y2'} <= names
        assert 'y' not in names and 'sd_resid' not in names and 'sigma_y2' not in names

    def test_bernoulli_requires_binary_data(self):
        pmm = MultivariatePMM(['y1', 'y2'], ['gaussian', 'bernoulli'], self.config)
        with pytest.raises(ValueError):
            pmm.build_model(self.data, self.A)

    def test_data_checks(self):
        pmm = MultivariatePMM(['y1', 'y2'], None, self.config)
        with pytest.raises(KeyError):
            pmm.build_model(self.data.drop(columns='y2'), self.A)
        duplicated = pd.concat([self.data, self.data.iloc[:1]], ignore_index=True)
        with pytest.raises(ValueError):
            pmm.build_model(duplicated, self.A)

    def test_matrix_follows_data_order(self):
        shuffled = self.data.sample(frac=1.0, random_state=1).reset_index(drop=True)
        pmm = MultivariatePMM(config=self.config)
        pmm.build_model(shuffled, self.A)
        assert list(pmm.A.index) == list(shuffled['animal'])
        assert list(pmm.data['obs']) == list(range(1, len(shuffled) + 1))

    def test_sampling_requires_model(self):
        pmm = MultivariatePMM(config=self.config)
        with pytest.raises(ValueError):
            pmm.mcmc_sampling()
        with pytest.raises(ValueError):
            pmm.posterior_predict()

    def test_short_sampling_run(self):
        pmm = MultivariatePMM(config=self.config)
        trace = pmm.fit(self.data, self.A, draws=30, tune=30, chains=1, cores=1, random_seed=1)
        assert trace.posterior.sizes['draw'] == 30
        assert trace.posterior.attrs['families'] == 'gaussian,gaussian'
        assert pmm.draws('phylo_effect').shape == (30, len(self.data), 2)
        assert 'chol_phylo_corr' not in trace.posterior and 'chol_phylo_stds' not in trace.posterior

    def test_phylo_effect_prior_is_kronecker(self):
        # With L_B fixed, vec(L_A Z L_B') stacked trait-major has covariance B ⊗ A
        pmm = MultivariatePMM(['y1', 'y2'], ['gaussian', 'gaussian'], self.config)
        model = pmm.build_model(self.data, self.A)
        L_B = np.array([[0.8, 0.0], [0.45, 0.6]])
        fixed = pm.do(model, {'chol_phylo': L_B[np.tril_indices(2)]})
        effects = pm.draw(fixed['phylo_effect'], draws=4000, random_seed=5)
        n = len(self.data)
        stacked = effects.transpose(0, 2, 1).reshape(4000, 2 * n)
        expected = np.kron(L_B @ L_B.T, pmm.A.values)
        cov = np.cov(stacked.T)
        assert np.allclose(cov, expected, atol=0.1)
        assert np.allclose(cov[:n, n:], 0.36 * pmm.A.values, atol=0.1)


class TestFittedModel:
    """
    Posterior summaries and predictions from a model with a synthetic posterior.
    """
    def test_draws_and_labels(self, fitted_pmm):
        assert fitted_pmm.draws('Intercept').shape == (400, 2)
        assert fitted_pmm.parameter_labels() == [
            'Intercept[y1]', 'Intercept[y2]', 'sd_phylo[y1]', 'sd_phylo[y2]', 'cor_phylo[y1, y2]',
            'sd_resid[y1]', 'sd_resid[y2]', 'cor_resid[y1, y2]',
        ]
        draws = fitted_pmm.population_draws()
        assert list(draws.columns) == fitted_pmm.parameter_labels()
        assert np.allclose(draws['cor_phylo[y1, y2]'], 0.4)

    def test_posterior_analysis(self, fitted_pmm):
        summary = fitted_pmm.posterior_analysis()
        assert list(summary.index) == fitted_pmm.parameter_labels()
        assert 'hdi_5%' in summary.columns and 'hdi_95%' in summary.columns

    def test_posterior_covariances_and_slopes(self, fitted_pmm):
        B, C = fitted_pmm.posterior_covariances()
        assert B.shape == (400, 2, 2) and C.shape == (400, 2, 2)
        assert np.allclose(C[:, 0, 1], 0.0)
        slopes = fitted_pmm.partition_slopes()
        assert set(slopes) == {'phylo', 'resid'}
        assert slopes['phylo'].loc['y1', 'y2'] == pytest.approx(0.4, abs=0.05)
        assert slopes['resid'].loc['y1', 'y2'] == pytest.approx(0.0)

    def test_prediction_modes(self, fitted_pmm):
        n = len(fitted_pmm.taxa)
        for mode in ('conditional', 'fixed', 'marginal'):
            predictions = fitted_pmm.posterior_predict(mode, rng=0)
            assert set(predictions) == {'y1', 'y2'}
            assert predictions['y1'].shape == (400, n)
        with pytest.raises(ValueError):
            fitted_pmm.posterior_predict('population', rng=0)

    def test_fixed_mode_ignores_taxon_effects(self, fitted_pmm):
        predictions = fitted_pmm.posterior_predict('fixed', rng=0)['y1']
        means = predictions.mean(axis=0)
        assert np.ptp(means) < 0.2

    def test_pointwise_log_likelihood(self, fitted_pmm):
        ll = fitted_pmm.pointwise_log_likelihood('y2')
        assert ll.shape == (2, 200, len(fitted_pmm.taxa))
        assert np.isfinite(ll).all()

    def test_save_and_load(self, fitted_pmm, tmp_path):
        path = tmp_path / "fit.nc"
        fitted_pmm.save(path)
        loaded = MultivariatePMM.load(path)
        assert loaded.traits == ['y1', 'y2']
        assert loaded.residual_correlation
        assert loaded.taxa == fitted_pmm.taxa
        assert np.allclose(loaded.data[['y1', 'y2']].values, fitted_pmm.data[['y1', 'y2']].values)
        assert np.allclose(loaded.A.values, fitted_pmm.A.values)

    def test_drop_taxon(self, fitted_pmm):
        data, A = MultivariatePMM.drop_taxon(fitted_pmm.data, fitted_pmm.A, 't3')
        assert 't3' not in set(data['animal']) and 't3' not in A.index
        assert A.shape == (len(data), len(data))
        assert list(data['obs']) == list(range(1, len(data) + 1))
        with pytest.raises(KeyError):
            MultivariatePMM.drop_taxon(data, A, 't3')


class TestMixedFamilies:
    def setup_method(self, method):
        tree = Tree(os.path.join(EXAMPLES_DIR, "simulated_tree.nwk"), format=1)
        data = pd.read_csv(os.path.join(EXAMPLES_DIR, "simulated_traits.csv"))
        data['y2'] = (data['y2'] > 0).astype(int)
        A = phylo_vcv(tree, taxa=data['animal'], corr=True)
        self.pmm = MultivariatePMM.from_inference_data(bernoulli_posterior(data, A))

    def test_restored_families(self):
        assert self.pmm.families == ['gaussian', 'bernoulli']
        assert not self.pmm.residual_correlation
        assert self.pmm.residual_sd_draws('y2') is None
        assert self.pmm.parameter_labels()[-1] == 'sigma_y1'

    def test_bernoulli_predictions(self):
        predictions = self.pmm.posterior_predict('conditional', rng=4)
        assert set(np.unique(predictions['y2'])) <= {0.0, 1.0}
        _, C = self.pmm.posterior_covariances()
        assert np.allclose(C[:, 1, 1], 0.0)

    def test_bernoulli_log_likelihood(self):
        ll = self.pmm.pointwise_log_likelihood('y2')
        assert (ll <= 0).all()


def test_safe_cholesky():
    L = _safe_cholesky(np.array([[1.0, 1.0], [1.0, 1.0]]))
    assert np.allclose(L @ L.T, np.ones((2, 2)), atol=1e-3)
    with pytest.raises(np.linalg.LinAlgError):
        _safe_cholesky(np.array([[1.0, 2.0], [2.0, 1.0]]))
