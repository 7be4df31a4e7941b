import os

import numpy as np
import pytest

from mvpmm.analysis.comparative_methods import phylo_vcv
from mvpmm.core.config import DefaultConfig
from mvpmm.core.framework import PhylogeneticMixedModelFramework
from mvpmm.core.pipeline import FitResult, Pipeline
from mvpmm.methods.bayesian import MultivariatePMM
from mvpmm.simulation.traits import trait_covariance

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
EXAMPLES_DIR = os.path.join(BASE_DIR, "examples")


class TestPipeline:
    """
    Tests for the simulation study pipeline, using the PGLS and ML fits.
    """
    def setup_method(self, method):
        self.config = DefaultConfig()
        self.config.tree_replicates = 1
        self.config.save_plots = False
        self.pipeline = Pipeline(self.config)

    def test_run_simulation(self):
        datasets = self.pipeline.run_simulation()
        assert len(datasets) == 10
        assert len(self.pipeline.tree_replicates) == 1

    def test_fit_dataset(self):
        dataset = self.pipeline.run_simulation()[0]
        result = self.pipeline.fit_dataset(dataset, methods=['pgls', 'ml'])
        assert isinstance(result, FitResult)
        assert result.pmm is None
        assert 'y2' in result.pgls.params.index
        assert result.ml.parameters['B'].shape == (2, 2)

    def test_unknown_method(self):
        dataset = self.pipeline.run_simulation()[0]
        with pytest.raises(ValueError):
            self.pipeline.fit_dataset(dataset, methods=['reml'])

    def test_non_gaussian_traits_skip_pgls(self):
        self.config.families = ['gaussian', 'bernoulli']
        dataset = self.pipeline.run_simulation()[0]
        result = self.pipeline.fit_dataset(dataset, methods=['pgls', 'ml'])
        assert result.pgls is None and result.ml is None

    def test_binary_price_traits(self):
        self.config.families = ['gaussian', 'bernoulli']
        datasets = self.pipeline.run_simulation()
        price = next(ds for ds in datasets if ds.scenario == 'Price_0.75')
        niches = self.pipeline.tree_replicates[0].niches.loc[price.data['animal']]
        assert np.allclose(price.data['y1'], niches['niche1'])
        assert set(price.data['y2'].unique()) <= {0, 1}
        A = phylo_vcv(price.tree, taxa=price.data['animal'], corr=True)
        model = MultivariatePMM(['y1', 'y2'], self.config.families, self.config).build_model(price.data, A)
        assert 'y_y2' in model.named_vars

    def test_run_analysis_summary(self):
        summary = self.pipeline.run_analysis(methods=['pgls', 'ml'])
        assert list(summary.columns) == ['replicate', 'tree_type', 'scenario', 'method', 'parameter',
                                         'estimate', 'lower', 'upper', 'true']
        assert set(summary['method']) == {'pgls', 'ml'}
        assert set(summary['scenario']) == {'BM1', 'BM2', 'BM3', 'BM4', 'Price_0.75'}
        bm3 = summary[(summary['scenario'] == 'BM3') & (summary['parameter'] == 'cor_phylo[y1, y2]')]
        assert np.allclose(bm3['true'], 0.5)
        price = summary[(summary['scenario'] == 'Price_0.75') & (summary['method'] == 'ml')]
        assert price['true'].isna().all()

    def test_save_results(self, tmp_path):
        self.pipeline.run_analysis(methods=['pgls'])
        directory = self.pipeline.save_results(str(tmp_path / "study"))
        files = set(os.listdir(directory))
        assert 'summary.csv' in files
        assert 'tree_rep1_short.nwk' in files and 'tree_rep1_long.nwk' in files
        assert 'rep1_short_BM1.csv' in files
        assert not any(name.endswith('.nc') for name in files)
        assert not any(name.endswith('.html') for name in files)

    def test_tree_figures_highlight_founders(self, tmp_path):
        self.config.save_plots = True
        self.pipeline.run_simulation()
        directory = self.pipeline.save_results(str(tmp_path / "study"))
        figures = [name for name in os.listdir(directory) if name.startswith('tree_') and name.endswith('.html')]
        assert len(figures) == len(self.pipeline.datasets)
        assert 'tree_rep1_short_BM1.html' in figures

        founders = self.pipeline.tree_replicates[0].founders
        self.config.save_plots = False
        fig = self.pipeline.visualize()['rep1_long_BM3']
        tips = fig.data[1]
        red = {name for name, color in zip(tips.text, tips.textfont.color) if color == 'red'}
        assert red == set(founders) and len(red) == 2


class TestFramework:
    """
    Tests for the single-dataset framework that do not need MCMC sampling.
    """
    def setup_method(self, method):
        self.config = DefaultConfig()
        self.config.save_plots = False
        self.framework = PhylogeneticMixedModelFramework(self.config)

    def test_fit_requires_data(self):
        with pytest.raises(ValueError):
            self.framework.fit()
        with pytest.raises(ValueError):
            self.framework.diagnose()
        with pytest.raises(ValueError):
            self.framework.refit_without('t1')
        with pytest.raises(ValueError):
            self.framework.save_fit('fit.nc')

    def test_load_data(self):
        tree, traits = self.framework.load_data(os.path.join(EXAMPLES_DIR, "simulated_tree.nwk"),
                                                os.path.join(EXAMPLES_DIR, "simulated_traits.csv"))
        assert len(tree) == len(traits) == 10
        assert list(self.framework.A.index) == list(traits['animal'])
        assert np.allclose(np.diag(self.framework.A), 1.0)

    def test_simulate_data(self):
        B = trait_covariance([0.75, 0.75], 0.5)
        C = trait_covariance([0.25, 0.25], 0.0)
        tree, traits = self.framework.simulate_data(15, B, C, rng=3)
        assert len(tree) == 15
        assert list(traits.columns) == ['animal', 'y1', 'y2', 'obs']
        assert sorted(traits['animal']) == sorted(tree.get_leaf_names())

    def test_diagnose_and_visualize(self, fitted_pmm, tmp_path):
        self.framework.pmm = fitted_pmm
        truth = {'Intercept[y1]': 0.0, 'sd_phylo[y1]': 0.6}
        results = self.framework.diagnose(true_values=truth, rng=1)
        assert {'convergence', 'summary', 'ppc', 'loo', 'residuals', 'recovery'} <= set(results)
        assert set(results['loo']) == {'y1', 'y2'}
        assert list(results['recovery'].index) == ['Intercept[y1]', 'sd_phylo[y1]']

        self.config.save_plots = True
        self.config.output_directory = str(tmp_path / "plots")
        figures = self.framework.visualize(true_values=truth)
        assert {'trace', 'ppc_conditional', 'ppc_fixed', 'ppc_marginal', 'loo', 'residual_qq',
                'recovery'} <= set(figures)
        assert 'tree' not in figures
        assert os.path.exists(os.path.join(self.config.output_directory, "loo.html"))

    def test_save_and_load_fit(self, fitted_pmm, tmp_path):
        self.framework.pmm = fitted_pmm
        path = str(tmp_path / "fit.nc")
        self.framework.save_fit(path)
        other = PhylogeneticMixedModelFramework(self.config)
        pmm = other.load_fit(path)
        assert other.traits is pmm.data
        assert pmm.taxa == fitted_pmm.taxa


class TestFrameworkRefit:
    def test_refit_without_taxon(self):
        config = DefaultConfig()
        config.save_plots = False
        framework = PhylogeneticMixedModelFramework(config)
        framework.load_data(os.path.join(EXAMPLES_DIR, "simulated_tree.nwk"),
                            os.path.join(EXAMPLES_DIR, "simulated_traits.csv"))
        sampling = dict(draws=30, tune=30, chains=1, cores=1, random_seed=2)
        framework.fit(**sampling)
        refit = framework.refit_without('t3', **sampling)
        assert len(refit.taxa) == len(framework.pmm.taxa) - 1 == 9
        assert 't3' not in refit.taxa and 't3' not in refit.A.index
        assert refit.trace.posterior.sizes['obs'] == 9
