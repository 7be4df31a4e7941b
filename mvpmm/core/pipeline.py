import logging
import os

import numpy as np
import pandas as pd

from ..analysis.comparative_methods import phylo_vcv, pgls, pgls_table
from ..core.config import DefaultConfig
from ..core.data_loader import DataLoader
from ..methods.bayesian import MultivariatePMM
from ..methods.maximum_likelihood import MaximumLikelihoodPMM
from ..simulation.traits import simulate_datasets
from ..simulation.trees import simulate_tree_replicates
from ..visualization.interactive import InteractiveVisualizer

logger = logging.getLogger(__name__)


class FitResult:
    """Fits of one simulated dataset: PGLS, ML and Bayesian MV-PMM."""
    def __init__(self, dataset, pgls=None, ml=None, pmm=None):
        self.dataset = dataset
        self.pgls = pgls
        self.ml = ml
        self.pmm = pmm

    def __repr__(self):
        fitted = [name for name in ('pgls', 'ml', 'pmm') if getattr(self, name) is not None]
        return f"FitResult({self.dataset.label}, fitted={fitted})"


class Pipeline:
    """
    Orchestrates the simulation study: simulate trees and trait data under
    each evolutionary scenario, fit every dataset, and collect estimates next
    to the generating parameters.
    """
    def __init__(self, config=None):
        """
        Initializes the Pipeline with a configuration object.

        Args:
            config: A configuration object. If None, DefaultConfig is used.
        """
        self.config = config if config is not None else DefaultConfig()
        self.rng = np.random.default_rng(self.config.seed)
        self.visualizer = InteractiveVisualizer(self.config)
        self.tree_replicates = None
        self.datasets = None
        self.results = []

    def run_simulation(self, scenarios=None):
        """
        Simulates tree replicates and the trait datasets grown on them.

        Returns:
            list[SimulatedDataset]
        """
        self.tree_replicates = simulate_tree_replicates(self.config, self.rng)
        self.datasets = simulate_datasets(self.tree_replicates, scenarios, self.config, self.rng)
        return self.datasets

    def fit_dataset(self, dataset, methods=None, **sampling_kwargs):
        """
        Fits one dataset with the requested methods.

        Args:
            dataset (SimulatedDataset): Data and tree to fit.
            methods (list): Any of 'pgls', 'ml', 'pmm'. Defaults to
                            ``config.fit_methods``.
            **sampling_kwargs: Passed to ``MultivariatePMM.mcmc_sampling``.

        Returns:
            FitResult
        """
        methods = list(methods or self.config.fit_methods)
        unknown = set(methods) - {'pgls', 'ml', 'pmm'}
        if unknown:
            raise ValueError(f"Unknown fit methods: {sorted(unknown)}")

        traits = list(self.config.traits)
        data = dataset.data
        A = phylo_vcv(dataset.tree, taxa=data['animal'], corr=self.config.standardize_vcv)
        all_gaussian = all(f == 'gaussian' for f in self.config.families)
        result = FitResult(dataset)

        logger.info("Fitting %s with %s", dataset.label, methods)
        if 'pgls' in methods:
            if all_gaussian:
                result.pgls = pgls(A, data, traits[0], traits[1:])
            else:
                logger.warning("PGLS skipped for %s: non-gaussian traits.", dataset.label)
        if 'ml' in methods:
            if all_gaussian:
                ml = MaximumLikelihoodPMM(traits, self.config)
                ml.optimize_parameters(data, A)
                result.ml = ml
            else:
                logger.warning("ML fit skipped for %s: non-gaussian traits.", dataset.label)
        if 'pmm' in methods:
            pmm = MultivariatePMM(traits, self.config.families, self.config)
            pmm.fit(data, A, **sampling_kwargs)
            result.pmm = pmm
        return result

    def run_analysis(self, methods=None, **sampling_kwargs):
        """
        Runs the full study: simulation, fitting and summary.

        Returns:
            pandas.DataFrame: Output of ``summarize``.
        """
        if self.datasets is None:
            self.run_simulation()
        self.results = [self.fit_dataset(dataset, methods, **sampling_kwargs) for dataset in self.datasets]
        return self.summarize()

    def summarize(self):
        """
        One row per dataset, method and parameter with the estimate and,
        for parametric scenarios, the generating value.
        """
        traits = list(self.config.traits)
        rows = []
        for result in self.results:
            ds = result.dataset
            truth = ds.true_values(traits)
            base = {'replicate': ds.replicate, 'tree_type': ds.tree_type, 'scenario': ds.scenario}
            if result.pgls is not None:
                for name, row in pgls_table(result.pgls).iterrows():
                    rows.append(dict(base, method='pgls', parameter=f"{traits[0]}~{name}",
                                     estimate=row['estimate'], lower=np.nan, upper=np.nan, true=np.nan))
            if result.ml is not None:
                for label, value in result.ml.estimates().items():
                    rows.append(dict(base, method='ml', parameter=label, estimate=value,
                                     lower=np.nan, upper=np.nan, true=truth.get(label, np.nan)))
            if result.pmm is not None:
                summary = result.pmm.posterior_analysis()
                lower_col, upper_col = [c for c in summary.columns if c.startswith('hdi_')][:2]
                for label, row in summary.iterrows():
                    rows.append(dict(base, method='pmm', parameter=label, estimate=row['mean'],
                                     lower=row[lower_col], upper=row[upper_col], true=truth.get(label, np.nan)))
                slopes = result.pmm.partition_slopes()
                for part, table in slopes.items():
                    rows.append(dict(base, method='pmm', parameter=f"slope_{part}[{traits[0]}~{traits[1]}]",
                                     estimate=table.loc[traits[0], traits[1]], lower=np.nan, upper=np.nan,
                                     true=np.nan))
        return pd.DataFrame(rows, columns=['replicate', 'tree_type', 'scenario', 'method', 'parameter',
                                           'estimate', 'lower', 'upper', 'true'])

    def save_results(self, directory=None):
        """
        Writes trees (Newick), trait tables (CSV), PMM fits (NetCDF) and the
        summary table into ``directory``, plus one tree figure per dataset
        when ``config.save_plots`` is set.

        Returns:
            str: The output directory.
        """
        directory = directory or self.config.output_directory
        os.makedirs(directory, exist_ok=True)
        loader = DataLoader(self.config)
        for dataset in self.datasets or []:
            loader.save_traits(dataset.data, os.path.join(directory, f"{dataset.label}.csv"))
        for rep in self.tree_replicates or []:
            for tree_type, tree in rep.trees.items():
                loader.save_tree(tree, os.path.join(directory, f"tree_rep{rep.replicate}_{tree_type}.nwk"))
        for result in self.results:
            if result.pmm is not None:
                loader.save_fit(result.pmm, os.path.join(directory, f"fit_{result.dataset.label}.nc"))
        if self.results:
            self.summarize().to_csv(os.path.join(directory, "summary.csv"), index=False)
        if self.config.save_plots:
            self.visualize(directory)
        logger.info("Results written to %s", directory)
        return directory

    def visualize(self, directory=None, show_plot=False):
        """
        Plots every simulated dataset next to its tree, with the founder
        taxon of each clade highlighted.

        Returns:
            dict: dataset label -> plotly Figure.
        """
        founders = {rep.replicate: rep.founders for rep in self.tree_replicates or []}
        figures = {}
        for dataset in self.datasets or []:
            fig = self.visualizer.plot_tree_with_traits(dataset.tree, dataset.data, list(self.config.traits[:2]),
                                                        highlight=founders.get(dataset.replicate),
                                                        show_plot=show_plot)
            self.visualizer.save_figure(fig, f"tree_{dataset.label}", directory)
            figures[dataset.label] = fig
        return figures
