import logging

import numpy as np

from ..analysis import diagnostics
from ..analysis.comparative_methods import phylo_vcv
from ..methods.bayesian import MultivariatePMM
from ..simulation.traits import simulate_traits
from ..simulation.trees import simulate_bd_tree
from ..visualization.interactive import InteractiveVisualizer
from .config import DefaultConfig
from .data_loader import DataLoader

logger = logging.getLogger(__name__)


class PhylogeneticMixedModelFramework:
    """
    Main entry point for fitting and validating a multivariate phylogenetic
    mixed model on one dataset. Integrates data loading or simulation,
    fitting, diagnostics and visualization.
    """
    def __init__(self, config=None):
        """
        Args:
            config: A configuration object. If None, DefaultConfig is used.
                    It is passed down to the loader, model and visualizer.
        """
        self.config = config or DefaultConfig()
        self.data_loader = DataLoader(self.config)
        self.visualizer = InteractiveVisualizer(self.config)

        self.tree = None
        self.traits = None
        self.A = None
        self.pmm = None
        self.diagnostics = {}

    def load_data(self, tree_file: str, traits_file: str, **kwargs):
        """
        Loads and validates a tree and trait table.

        Args:
            tree_file (str): Newick tree.
            traits_file (str): CSV trait table.
            **kwargs: Passed to ``DataLoader.load_traits``.
        """
        self.tree = self.data_loader.load_tree(tree_file)
        self.traits = self.data_loader.load_traits(traits_file, **kwargs)
        self.data_loader.validate_data(self.tree, self.traits)
        self.A = phylo_vcv(self.tree, taxa=self.traits['animal'], corr=self.config.standardize_vcv)
        return self.tree, self.traits

    def simulate_data(self, n_taxa, B, C, beta=None, rng=None):
        """
        Simulates a birth-death tree and one trait table on it.

        Args:
            n_taxa (int): Number of taxa.
            B, C: Phylogenetic and residual trait-level covariance matrices.
            beta: Intercepts (default ``config.intercepts``).
        """
        rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(
            self.config.seed if rng is None else rng)
        beta = self.config.intercepts if beta is None else beta
        self.tree = simulate_bd_tree(n_taxa, self.config.birth_rate, self.config.death_rate, rng,
                                     prefix=self.config.tip_prefix)
        self.A = phylo_vcv(self.tree, corr=self.config.standardize_vcv)
        self.traits = simulate_traits(self.A, B, C, beta, self.config.families, rng, traits=self.config.traits)
        return self.tree, self.traits

    def fit(self, **sampling_kwargs):
        """Fits the MV-PMM to the loaded or simulated data."""
        if self.traits is None or self.A is None:
            raise ValueError("Load or simulate data before fitting.")
        self.pmm = MultivariatePMM(self.config.traits, self.config.families, self.config)
        self.pmm.fit(self.traits, self.A, **sampling_kwargs)
        return self.pmm

    def refit_without(self, taxon, **sampling_kwargs):
        """Fits the model again with one taxon left out of the data and A."""
        if self.pmm is None:
            raise ValueError("Fit the model before refitting without a taxon.")
        data, A = MultivariatePMM.drop_taxon(self.pmm.data, self.pmm.A, taxon)
        refit = MultivariatePMM(self.config.traits, self.config.families, self.config)
        refit.fit(data, A, **sampling_kwargs)
        return refit

    def diagnose(self, true_values=None, rng=None):
        """
        Runs convergence diagnostics, posterior-predictive checks, LOO
        predictive checks and residual analysis, plus parameter recovery when
        the generating values are known.

        Returns:
            dict of diagnostic results, also kept in ``self.diagnostics``.
        """
        if self.pmm is None:
            raise ValueError("Fit or load a model before running diagnostics.")
        rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        pmm = self.pmm
        results = {
            'convergence': diagnostics.convergence_diagnostics(
                pmm.trace, var_names=pmm._var_names(), rhat_threshold=self.config.rhat_threshold,
                max_treedepth=self.config.max_treedepth),
            'summary': pmm.posterior_analysis(),
            'ppc': diagnostics.posterior_predictive_checks(pmm, rng=rng),
            'loo': {trait: diagnostics.loo_predictive_intervals(pmm, trait, rng=rng) for trait in pmm.traits},
            'residuals': diagnostics.residual_analysis(pmm, rng=rng),
        }
        if true_values:
            results['recovery'] = diagnostics.parameter_recovery(pmm.population_draws(), true_values,
                                                                 self.config.hdi_prob)
        self.diagnostics = results
        return results

    def visualize(self, true_values=None, show_plot=False):
        """
        Builds (and saves, if configured) the diagnostic figures.

        Returns:
            dict: figure name -> plotly Figure.
        """
        if self.pmm is None:
            raise ValueError("Fit or load a model before visualizing.")
        if not self.diagnostics:
            self.diagnose(true_values)
        figures = {
            'trace': self.visualizer.plot_trace(self.pmm.trace, ['Intercept', 'sd_phylo'], show_plot),
            'ppc_conditional': self.visualizer.plot_ppc_intervals(self.diagnostics['ppc'], 'conditional',
                                                                  show_plot=show_plot),
            'ppc_fixed': self.visualizer.plot_ppc_intervals(self.diagnostics['ppc'], 'fixed', show_plot=show_plot),
            'ppc_marginal': self.visualizer.plot_ppc_intervals(self.diagnostics['ppc'], 'marginal',
                                                               show_plot=show_plot),
            'loo': self.visualizer.plot_loo_predictions(self.diagnostics['loo'], show_plot),
            'residual_qq': self.visualizer.plot_residual_qq(self.diagnostics['residuals'], show_plot),
        }
        if self.tree is not None and self.traits is not None:
            figures['tree'] = self.visualizer.plot_tree_with_traits(self.tree, self.traits,
                                                                    self.config.traits[:2], show_plot=show_plot)
        if true_values:
            figures['recovery'] = self.visualizer.plot_recovery(self.pmm.population_draws(), true_values, show_plot)
        for name, fig in figures.items():
            self.visualizer.save_figure(fig, name)
        return figures

    def save_fit(self, file_path: str):
        if self.pmm is None:
            raise ValueError("No fitted model to save.")
        return self.data_loader.save_fit(self.pmm, file_path)

    def load_fit(self, file_path: str):
        self.pmm = self.data_loader.load_fit(file_path)
        self.traits = self.pmm.data
        self.A = self.pmm.A
        return self.pmm
