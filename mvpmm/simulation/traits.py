"""
Trait simulation

Draws multivariate trait data over a phylogeny. Phylogenetic effects are one
draw from ``MVN(0, B ⊗ A)`` and residuals one draw from ``MVN(0, C ⊗ I)``,
where B and C are trait-level (co)variance matrices and A is the taxon-level
phylogenetic covariance. Draws are stacked trait-major: the first n entries
belong to trait 1, the next n to trait 2, and so on.
"""
import logging

import numpy as np
import pandas as pd
from scipy.special import expit

from ..analysis.comparative_methods import phylo_vcv

logger = logging.getLogger(__name__)

FAMILIES = ('gaussian', 'bernoulli')


def trait_covariance(sds, rho=0.0):
    """
    Builds a trait-level VCV matrix from standard deviations and correlation.

    Args:
        sds: Standard deviation of each trait (square root of the variances
             on the diagonal).
        rho: Either a scalar correlation shared by every pair of traits or a
             full correlation matrix.

    Returns:
        numpy.ndarray: ``outer(sds, sds) * R`` (pointwise product).
    """
    sds = np.asarray(sds, dtype=float)
    k = sds.size
    if np.ndim(rho) == 0:
        R = np.full((k, k), float(rho))
        np.fill_diagonal(R, 1.0)
    else:
        R = np.asarray(rho, dtype=float)
        if R.shape != (k, k):
            raise ValueError(f"Correlation matrix must be {k}x{k}, got {R.shape}.")
    if np.any(np.abs(R) > 1):
        raise ValueError("Correlations must lie in [-1, 1].")
    return np.outer(sds, sds) * R


def default_scenarios():
    """
    Evolutionary scenarios of the simulation study.

    BM1-BM4 simulate bivariate Brownian motion with increasingly rich
    phylogenetic and residual structure. Price_0.75 has no parameters: its
    traits are the niche states produced while growing the tree.
    """
    return pd.DataFrame({
        'mod_evo': ['BM1', 'BM2', 'BM3', 'BM4', 'Price_0.75'],
        'b11': [0.75, 0.75, 0.75, 0.75, np.nan],
        'b22': [0.0, 0.75, 0.75, 0.75, np.nan],
        'b12_rho': [0.0, 0.0, 0.5, 0.5, np.nan],
        'c11': [0.25, 0.25, 0.25, 0.25, np.nan],
        'c22': [0.25, 0.25, 0.25, 0.25, np.nan],
        'c12_rho': [0.0, 0.0, 0.0, 0.5, np.nan],
    })


def is_parametric(scenario):
    """True when a scenario row carries BM parameters."""
    cols = ['b11', 'b22', 'b12_rho', 'c11', 'c22', 'c12_rho']
    return not pd.isna(scenario[cols]).any()


def scenario_covariances(scenario):
    """Phylogenetic (B) and residual (C) covariance matrices for a scenario row."""
    B = trait_covariance([scenario['b11'], scenario['b22']], scenario['b12_rho'])
    C = trait_covariance([scenario['c11'], scenario['c22']], scenario['c12_rho'])
    return B, C


def simulate_traits(A, B, C, beta, families=None, rng=None, taxa=None, traits=None):
    """
    Simulates one trait table under the multivariate phylogenetic mixed model.

    Args:
        A: Taxon-level covariance (n x n array or DataFrame). Treated as fixed
           and known.
        B: Phylogenetic trait-level covariance (k x k).
        C: Residual trait-level covariance (k x k).
        beta: Intercept of each trait on the link scale.
        families: 'gaussian' or 'bernoulli' per trait (default all gaussian).
        rng: numpy Generator or seed.
        taxa: Taxon names; taken from ``A``'s index when it is a DataFrame.
        traits: Trait column names (default ``y1..yk``).

    Returns:
        pandas.DataFrame: columns ``animal``, one per trait, ``obs``.
    """
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    if isinstance(A, pd.DataFrame):
        taxa = list(A.index) if taxa is None else taxa
        A = A.values
    A = np.asarray(A, dtype=float)
    B = np.asarray(B, dtype=float)
    C = np.asarray(C, dtype=float)
    beta = np.asarray(beta, dtype=float)

    n = A.shape[0]
    k = B.shape[0]
    if C.shape != (k, k) or beta.shape != (k,):
        raise ValueError("B, C and beta must describe the same number of traits.")
    families = list(families) if families is not None else ['gaussian'] * k
    if len(families) != k or any(f not in FAMILIES for f in families):
        raise ValueError(f"families must list one of {FAMILIES} per trait.")
    taxa = list(taxa) if taxa is not None else [f"t{i + 1}" for i in range(n)]
    traits = list(traits) if traits is not None else [f"y{j + 1}" for j in range(k)]

    # Trait-level covariance captured by B (or C), taxon-level by A (or I)
    a = rng.multivariate_normal(np.zeros(n * k), np.kron(B, A))
    e = rng.multivariate_normal(np.zeros(n * k), np.kron(C, np.eye(n)))
    eta = beta[None, :] + a.reshape(k, n).T + e.reshape(k, n).T

    d = pd.DataFrame({'animal': taxa})
    for j, (name, family) in enumerate(zip(traits, families)):
        if family == 'gaussian':
            d[name] = eta[:, j]
        else:
            d[name] = rng.binomial(1, expit(eta[:, j]))
    d['obs'] = np.arange(1, n + 1)
    return d


def fast_bm(tree, sig2=1.0, root_state=0.0, rng=None):
    """
    Simulates a univariate Brownian motion along the branches of ``tree``.

    Returns:
        pandas.Series: tip values indexed by tip name.
    """
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    values = {}
    for node in tree.traverse("preorder"):
        if node is tree:
            values[node] = root_state
        else:
            values[node] = values[node.up] + rng.normal(0.0, np.sqrt(sig2 * node.dist))
    return pd.Series({leaf.name: values[leaf] for leaf in tree.iter_leaves()})


class SimulatedDataset:
    """
    One simulated trait table together with the tree and generating
    parameters it came from.
    """
    def __init__(self, replicate, tree_type, scenario, data, tree, B=None, C=None, beta=None):
        self.replicate = replicate
        self.tree_type = tree_type
        self.scenario = scenario
        self.data = data
        self.tree = tree
        self.B = B
        self.C = C
        self.beta = beta

    @property
    def key(self):
        return (self.replicate, self.tree_type, self.scenario)

    @property
    def label(self):
        return f"rep{self.replicate}_{self.tree_type}_{self.scenario}"

    def true_values(self, traits=None):
        """
        Generating parameters keyed like the PMM posterior summary
        (``Intercept[y1]``, ``sd_phylo[y1]``, ``cor_phylo[y1, y2]``, ...).
        Empty for scenarios without BM parameters.
        """
        if self.B is None:
            return {}
        traits = traits or [c for c in self.data.columns if c not in ('animal', 'obs', 'clade')]
        values = {}
        for j, name in enumerate(traits):
            values[f"Intercept[{name}]"] = self.beta[j]
            values[f"sd_phylo[{name}]"] = np.sqrt(self.B[j, j])
            values[f"sd_resid[{name}]"] = np.sqrt(self.C[j, j])
        for i in range(len(traits)):
            for j in range(i + 1, len(traits)):
                pair = f"{traits[i]}, {traits[j]}"
                values[f"cor_phylo[{pair}]"] = _safe_cor(self.B, i, j)
                values[f"cor_resid[{pair}]"] = _safe_cor(self.C, i, j)
        return values

    def __repr__(self):
        return f"SimulatedDataset({self.label}, n={len(self.data)})"


def _safe_cor(cov, i, j):
    denom = np.sqrt(cov[i, i] * cov[j, j])
    return cov[i, j] / denom if denom > 0 else 0.0


def simulate_datasets(tree_replicates, scenarios=None, config=None, rng=None):
    """
    Simulates trait data for every replicate, tree type and scenario.

    Parametric scenarios draw bivariate BM data on the tree; the others reuse
    the niche states produced by the Price model for that replicate, drawn as
    0/1 outcomes for bernoulli traits.

    Args:
        tree_replicates (list[TreeReplicate]): Output of
            ``simulate_tree_replicates``.
        scenarios (DataFrame): Scenario table; defaults to ``default_scenarios()``.
        config: Configuration supplying trait names, intercepts, families and
            whether the taxon covariance is standardised.
        rng: numpy Generator or seed.

    Returns:
        list[SimulatedDataset]
    """
    from ..core.config import DefaultConfig

    config = config or DefaultConfig()
    scenarios = default_scenarios() if scenarios is None else scenarios
    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    traits = list(config.traits)
    beta = np.asarray(config.intercepts, dtype=float)

    datasets = []
    for rep in tree_replicates:
        for tree_type, tree in rep.trees.items():
            A = phylo_vcv(tree, corr=config.standardize_vcv)
            for _, scenario in scenarios.iterrows():
                if is_parametric(scenario):
                    B, C = scenario_covariances(scenario)
                    d = simulate_traits(A, B, C, beta, config.families, rng, traits=traits)
                elif rep.niches is not None:
                    B = C = None
                    niches = rep.niches.loc[list(A.index)]
                    d = pd.DataFrame({'animal': list(A.index)})
                    for j, (name, family) in enumerate(zip(traits, config.families)):
                        states = niches.iloc[:, j].values
                        # niche states act as the linear predictor of binary traits
                        d[name] = rng.binomial(1, expit(states)) if family == 'bernoulli' else states
                    d['obs'] = np.arange(1, len(d) + 1)
                else:
                    logger.warning("Scenario %s needs Price niche states; replicate %d has none. Skipping.",
                                   scenario['mod_evo'], rep.replicate)
                    continue
                d['clade'] = rep.clades.loc[d['animal']].values
                datasets.append(SimulatedDataset(rep.replicate, tree_type, scenario['mod_evo'], d, tree,
                                                 B, C, None if B is None else beta))
    logger.info("Simulated %d datasets.", len(datasets))
    return datasets
