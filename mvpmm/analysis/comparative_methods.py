"""
Phylogenetic Comparative Methods (PCM)

Covariance matrices derived from trees, PGLS regression, and helpers for
comparing the (co)variance partitions of mixed models with regression fits.
"""
import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm
from ete3 import Tree
from scipy import stats
from scipy.cluster.hierarchy import linkage, to_tree
from scipy.spatial.distance import squareform

logger = logging.getLogger(__name__)


def phylo_vcv(tree, taxa=None, corr=False):
    """
    Brownian-motion covariance of the tips of ``tree`` (ape ``vcv.phylo``).

    Entry (i, j) is the shared path length from the root to the most recent
    common ancestor of tips i and j; the diagonal holds root-to-tip distances.

    Args:
        tree: ete3 tree with branch lengths.
        taxa: Tip names giving the row/column order. Defaults to leaf order.
        corr (bool): Standardise to unit diagonal (correlation matrix).

    Returns:
        pandas.DataFrame indexed by tip name on both axes.
    """
    leaf_names = tree.get_leaf_names()
    taxa = list(taxa) if taxa is not None else leaf_names
    missing = set(taxa) - set(leaf_names)
    if missing:
        raise KeyError(f"Taxa not found in tree: {sorted(missing)}")
    index = {name: i for i, name in enumerate(leaf_names)}

    n = len(leaf_names)
    vcv = np.zeros((n, n))
    depths = {}
    # Preorder: descendants overwrite the block of their ancestors with a larger depth
    for node in tree.traverse("preorder"):
        depths[node] = 0.0 if node is tree else depths[node.up] + node.dist
        idx = [index[name] for name in node.get_leaf_names()]
        vcv[np.ix_(idx, idx)] = depths[node]

    order = [index[name] for name in taxa]
    vcv = pd.DataFrame(vcv[np.ix_(order, order)], index=taxa, columns=taxa)
    return cov_to_cor(vcv) if corr else vcv


def cov_to_cor(cov):
    """Rescales a covariance matrix (array or DataFrame) to a correlation matrix."""
    values = np.asarray(cov, dtype=float)
    sd = np.sqrt(np.diag(values))
    if np.any(sd <= 0):
        raise ValueError("Covariance matrix has non-positive variances; cannot standardise.")
    cor = values / np.outer(sd, sd)
    if isinstance(cov, pd.DataFrame):
        return pd.DataFrame(cor, index=cov.index, columns=cov.columns)
    return cor


def vcv_to_tree(vcv):
    """
    Rebuilds an ultrametric tree from a Brownian-motion covariance matrix.

    Tip-to-tip distances ``C_ii + C_jj - 2 C_ij`` are clustered by average
    linkage; for an ultrametric tree this recovers the topology and branch
    lengths exactly. Correlation matrices with a constant added to the diagonal
    do not satisfy this and give a distorted tree.

    Args:
        vcv (DataFrame): Covariance matrix indexed by tip name.

    Returns:
        ete3.Tree
    """
    values = np.asarray(vcv, dtype=float)
    names = list(vcv.index) if isinstance(vcv, pd.DataFrame) else [f"t{i + 1}" for i in range(len(values))]
    diag = np.diag(values)
    dist = diag[:, None] + diag[None, :] - 2 * values
    dist = (dist + dist.T) / 2
    np.fill_diagonal(dist, 0.0)
    root = to_tree(linkage(squareform(np.clip(dist, 0, None), checks=False), method='average'))

    def height(cluster):
        return cluster.dist / 2

    tree = Tree()
    # Stem shared by every tip: covariance left at the root
    tree.dist = max(float(diag.max()) - height(root), 0.0)
    stack = [(root, tree)]
    while stack:
        cluster, node = stack.pop()
        if cluster.is_leaf():
            node.name = names[cluster.id]
            continue
        for child in (cluster.get_left(), cluster.get_right()):
            child_node = node.add_child(dist=height(cluster) - height(child))
            stack.append((child, child_node))
    return tree


def pgls(A, data, response, predictors, taxon_column='animal'):
    """
    Phylogenetic Generalized Least Squares under Brownian motion.

    Args:
        A (DataFrame): Taxon covariance (or correlation) matrix.
        data (DataFrame): Trait table with one row per taxon.
        response (str): Response column.
        predictors (str or list): Predictor column(s); an intercept is added.
        taxon_column (str): Column matching ``A``'s index.

    Returns:
        statsmodels RegressionResults
    """
    if isinstance(predictors, str):
        predictors = [predictors]
    taxa = list(data[taxon_column])
    V = A.loc[taxa, taxa].values
    X = sm.add_constant(data[predictors].astype(float), has_constant='add')
    y = data[response].astype(float)
    result = sm.GLS(y, X, sigma=V).fit()
    logger.debug("PGLS %s ~ %s: %s", response, " + ".join(predictors), result.params.to_dict())
    return result


def pgls_table(result):
    """Coefficient table (estimate, std_error, t, p) from a PGLS fit."""
    return pd.DataFrame({
        'estimate': result.params,
        'std_error': result.bse,
        't': result.tvalues,
        'p': result.pvalues,
    })


def conditional_slopes(cov, traits=None):
    """
    Regression slopes implied by a covariance matrix.

    Entry (i, j) is the slope of trait i on trait j, ``cov_ij / cov_jj``.
    Applied to the phylogenetic (B) and residual (C) matrices of a PMM this
    gives the among- and within-lineage effects to set against a PGLS slope.
    """
    values = np.asarray(cov, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        slopes = values / np.diag(values)[None, :]
    if traits is None and isinstance(cov, pd.DataFrame):
        traits = list(cov.columns)
    if traits is not None:
        return pd.DataFrame(slopes, index=traits, columns=traits)
    return slopes


def clade_contrast(data, trait, clade_column='clade'):
    """
    Welch t-test of the difference in trait means between two clades.

    Returns:
        dict with the clade means, the difference and the test statistic.
    """
    groups = data.groupby(clade_column)[trait]
    if groups.ngroups != 2:
        raise ValueError(f"Expected exactly two clades in '{clade_column}', found {groups.ngroups}.")
    (label_a, a), (label_b, b) = list(groups)
    test = stats.ttest_ind(a, b, equal_var=False)
    return {
        'clades': (label_a, label_b),
        'mean_a': float(a.mean()),
        'mean_b': float(b.mean()),
        'difference': float(a.mean() - b.mean()),
        't': float(test.statistic),
        'p': float(test.pvalue),
    }


def covariance_to_sd_cor(cov):
    """
    Rescales (co)variances to standard deviations and correlations.

    MCMCglmm-style fits report variances and covariances while brms-style fits
    report standard deviations and correlations; this makes the two comparable.

    Args:
        cov: Covariance matrix, or an array of matrices with the trait axes
             last (e.g. posterior draws of shape (draws, k, k)).

    Returns:
        tuple: (sd, cor) with matching leading dimensions.
    """
    cov = np.asarray(cov, dtype=float)
    sd = np.sqrt(np.diagonal(cov, axis1=-2, axis2=-1))
    with np.errstate(divide='ignore', invalid='ignore'):
        cor = cov / (sd[..., :, None] * sd[..., None, :])
    cor = np.nan_to_num(cor)
    idx = np.arange(cov.shape[-1])
    cor[..., idx, idx] = 1.0
    return sd, cor


def sd_cor_to_covariance(sd, cor):
    """Inverse of ``covariance_to_sd_cor``."""
    sd = np.asarray(sd, dtype=float)
    cor = np.asarray(cor, dtype=float)
    return sd[..., :, None] * cor * sd[..., None, :]
